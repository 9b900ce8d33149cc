#!/usr/bin/env python3
"""
Cassette Pulse Decoder - Core Module
Recovers bit streams from self-clocking cassette tone recordings

A recording is a train of audio pulses. A pulse is the interval between two
negative-to-positive zero crossings on channel 0, and its length says what
it carries:
- 15..19 samples @ 44.1 kHz: one bit
- 35..38 samples @ 44.1 kHz: zero bit
- 41..45 samples @ 44.1 kHz: start pulse
- more than 20000 samples: silence, ends the current section

Every section opens with the sync byte 0x7F (01111111, MSB first). Bits after
it are payload. Once synced, a start pulse may reappear between payload bytes
as an idle marker.

Usage:
    from cassette_decode import AudioFormat, decode, bits_to_bytes

    fmt = AudioFormat(sample_rate=44100, channel_count=1)
    for bits in decode(samples, fmt):
        print(bits_to_bytes(bits).hex())
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)


# =============================================================================
# PART 1: CONSTANTS AND TYPES
# =============================================================================

# Distance from zero (fraction of 16-bit full scale) a sample must reach to
# take part in crossing detection. Keeps hiss from adding crossings.
CROSS_THRESHOLD = 0.1
INT_CROSS_THRESHOLD = int(CROSS_THRESHOLD * 32767)

# Pulse lengths are defined at 44.1 kHz and kept in seconds, so they hold
# at any sample rate. Windows are [low, high).
REFERENCE_RATE = 44100.0
PULSE_ONE = (15 / REFERENCE_RATE, 20 / REFERENCE_RATE)
PULSE_ZERO = (35 / REFERENCE_RATE, 39 / REFERENCE_RATE)
PULSE_START = (41 / REFERENCE_RATE, 46 / REFERENCE_RATE)
PULSE_END = 20000 / REFERENCE_RATE

# 01111111
SYNC_BYTE = 0x7F
SYNC_PATTERN = tuple(int(b) for b in np.unpackbits(np.array([SYNC_BYTE], dtype=np.uint8)))


class Pulse(Enum):
    START = "start"
    ZERO = "zero"
    ONE = "one"


@dataclass(frozen=True)
class AudioFormat:
    """Sample rate and channel layout of a sample buffer"""
    sample_rate: int
    channel_count: int = 1

    def __post_init__(self):
        if int(self.sample_rate) <= 0:
            raise ValueError(f"sample_rate must be positive, got {self.sample_rate}")
        if int(self.channel_count) < 1:
            raise ValueError(f"channel_count must be >= 1, got {self.channel_count}")


class CassetteDecodeError(Exception):
    """Base class for decode failures. Any of them aborts the whole decode."""


class InvalidPulseLength(CassetteDecodeError):
    def __init__(self, duration: float, position: int = -1):
        self.duration = duration
        self.position = position
        where = f" at sample {position}" if position >= 0 else ""
        super().__init__(
            f"Invalid pulse length: {duration:.6f}s "
            f"({duration * REFERENCE_RATE:.1f} samples @ 44.1kHz){where}"
        )


class MisalignedStartPulse(CassetteDecodeError):
    def __init__(self, bit_count: int, section: int = 0):
        self.bit_count = bit_count
        self.section = section
        super().__init__(
            f"Invalid start pulse in section {section}: "
            f"{bit_count} bits since sync is not a whole number of bytes"
        )


class SynchronizationNotFound(CassetteDecodeError):
    def __init__(self, section: int = 0):
        self.section = section
        super().__init__(f"Didn't find start sequence in section {section}")


# =============================================================================
# PART 2: CROSSING DETECTOR
# =============================================================================

def find_crossings(samples: Sequence[int], fmt: AudioFormat) -> np.ndarray:
    """
    Find negative-to-positive crossings on channel 0.

    Only samples louder than INT_CROSS_THRESHOLD count; quieter ones are
    skipped without touching state. A crossing is reported at a loud positive
    sample whose previous loud sample was negative. Falling edges are ignored,
    so there is one crossing per cycle.

    Args:
        samples: Interleaved integer samples
        fmt: Format of the buffer

    Returns:
        Ascending absolute indices into the interleaved buffer
    """
    channels = int(fmt.channel_count)
    data = np.asarray(samples).reshape(-1).astype(np.int64)
    mono = data[::channels]

    loud = np.flatnonzero(np.abs(mono) > INT_CROSS_THRESHOLD)
    if loud.size < 2:
        return np.empty(0, dtype=np.int64)

    signs = np.sign(mono[loud])
    rising = (signs[:-1] < 0) & (signs[1:] > 0)
    return loud[1:][rising] * channels


# =============================================================================
# PART 3: PULSE CLASSIFIER
# =============================================================================

def _within(window, duration: float) -> bool:
    low, high = window
    return low <= duration < high


def classify_pulse(duration: float) -> Optional[Pulse]:
    """Map a crossing-to-crossing time to a pulse, or None for a section gap."""
    if _within(PULSE_ONE, duration):
        return Pulse.ONE
    if _within(PULSE_ZERO, duration):
        return Pulse.ZERO
    if _within(PULSE_START, duration):
        return Pulse.START
    if duration > PULSE_END:
        return None
    raise InvalidPulseLength(duration)


def split_sections(crossings: Sequence[int], fmt: AudioFormat) -> List[List[Pulse]]:
    """
    Classify every crossing gap and group the pulses into sections.

    A silence gap closes the current section even when it is empty. The
    last section is only kept if it holds any pulses.
    """
    sections: List[List[Pulse]] = []
    current: List[Pulse] = []
    rate = float(fmt.sample_rate)

    for start, end in zip(crossings[:-1], crossings[1:]):
        duration = int(end - start) / rate
        try:
            pulse = classify_pulse(duration)
        except InvalidPulseLength:
            raise InvalidPulseLength(duration, int(start)) from None

        if pulse is None:
            logger.debug("Section break after %d pulses at sample %d", len(current), int(start))
            sections.append(current)
            current = []
        else:
            current.append(pulse)

    if current:
        sections.append(current)
    return sections


# =============================================================================
# PART 4: FRAME ASSEMBLER
# =============================================================================

def assemble_section(pulses: Sequence[Pulse], section: int = 0) -> np.ndarray:
    """
    Turn the pulses of one section into payload bits.

    Bits are collected until the last 8 read 01111111; everything up to and
    including that marker is dropped and collection starts over. After that a
    start pulse carries no bit but must fall on a byte boundary.

    Args:
        pulses: Pulses of one section, in order
        section: Section number, for error reporting

    Returns:
        uint8 array of 0/1 payload bits (may be empty)
    """
    active = False
    bits: List[int] = []

    for pulse in pulses:
        if pulse is Pulse.ZERO:
            bits.append(0)
        elif pulse is Pulse.ONE:
            bits.append(1)
        elif active:
            if len(bits) % 8 != 0:
                raise MisalignedStartPulse(len(bits), section)
        else:
            bits.append(0)

        if not active and len(bits) >= 8 and tuple(bits[-8:]) == SYNC_PATTERN:
            active = True
            bits = []

    if not active:
        raise SynchronizationNotFound(section)

    return np.array(bits, dtype=np.uint8)


# =============================================================================
# PART 5: DECODE
# =============================================================================

def decode(samples: Sequence[int], fmt: AudioFormat) -> List[np.ndarray]:
    """
    Decode a cassette recording into one bit array per section.

    Args:
        samples: Interleaved signed samples on a 16-bit scale
        fmt: Sample rate and channel count of the buffer

    Returns:
        List of uint8 0/1 arrays, in section order

    Raises:
        CassetteDecodeError: on the first bad pulse, misaligned start pulse
            or unsynchronized section. Nothing is returned in that case.
    """
    crossings = find_crossings(samples, fmt)
    sections = split_sections(crossings, fmt)
    logger.debug("%d crossings, %d sections", len(crossings), len(sections))

    return [assemble_section(pulses, index) for index, pulses in enumerate(sections)]


def bits_to_bytes(bits: Sequence[int]) -> bytes:
    """Pack bits MSB first. A trailing partial byte is padded with zeros."""
    return np.packbits(np.asarray(bits, dtype=np.uint8)).tobytes()


def decode_bytes(samples: Sequence[int], fmt: AudioFormat) -> List[bytes]:
    return [bits_to_bytes(bits) for bits in decode(samples, fmt)]


def format_bits(bits: Sequence[int]) -> str:
    text = "".join("1" if b else "0" for b in bits)
    return " ".join(text[i:i + 8] for i in range(0, len(text), 8))
