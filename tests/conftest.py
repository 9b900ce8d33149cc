"""Shared pytest fixtures for cassette decoder tests."""

import sys
import types

import numpy as np
import pytest

from cassette_decode import Pulse


# Pulse lengths in samples at 44.1 kHz, inside each classification window
ONE_LEN = 17
ZERO_LEN = 37
START_LEN = 43
GAP_LEN = 30000
LEAD_IN = 10

SYNC_PULSES = [Pulse.START] + [Pulse.ONE] * 7


def scaled(length: int, sample_rate: int) -> int:
    """Pulse length in samples at another sample rate."""
    return int(round(length * sample_rate / 44100))


@pytest.fixture
def byte_pulses():
    """Factory for pulse lengths (in samples) carrying the sync byte plus data."""
    def _generate(data: bytes, sample_rate: int = 44100, sync: bool = True) -> list:
        one, zero, start = (scaled(n, sample_rate) for n in (ONE_LEN, ZERO_LEN, START_LEN))
        lengths = [start] + [one] * 7 if sync else []
        for byte in data:
            for pos in range(7, -1, -1):
                lengths.append(one if byte >> pos & 1 else zero)
        return lengths
    return _generate


@pytest.fixture
def pulse_train():
    """Factory for square waves whose rising edges are `lengths` frames apart."""
    def _generate(
        lengths,
        channels: int = 1,
        amplitude: int = 16000,
        lead_in: int = LEAD_IN,
    ) -> np.ndarray:
        """Build an interleaved int32 buffer.

        Channel 0 starts low for `lead_in` frames, then each length is one
        high half and one low half, and a short high tail closes the last
        pulse. Extra channels carry a fast full-scale square wave that would
        be rejected as invalid pulses if it were ever looked at.

        Returns:
            Interleaved samples, channel 0 rising edges at
            lead_in, lead_in + lengths[0], ...
        """
        parts = [np.full(lead_in, -amplitude)]
        for n in lengths:
            high = n // 2
            parts.append(np.full(high, amplitude))
            parts.append(np.full(n - high, -amplitude))
        parts.append(np.full(5, amplitude))
        mono = np.concatenate(parts).astype(np.int32)
        if channels == 1:
            return mono

        frames = np.empty((len(mono), channels), dtype=np.int32)
        frames[:, 0] = mono
        noise = np.where(np.arange(len(mono)) % 6 < 3, 30000, -30000)
        for ch in range(1, channels):
            frames[:, ch] = noise
        return frames.reshape(-1)
    return _generate


@pytest.fixture
def fake_sounddevice(monkeypatch):
    """Install a stand-in sounddevice module that plays back a preset buffer."""
    fake = types.SimpleNamespace()
    fake.calls = []
    fake.recordings = []  # interleaved int16 buffers, consumed in order
    fake.devices = [
        {"name": "Line In", "max_input_channels": 2, "max_output_channels": 0,
         "default_samplerate": 44100.0},
        {"name": "Speakers", "max_input_channels": 0, "max_output_channels": 2,
         "default_samplerate": 48000.0},
    ]
    fake.error = None

    def query_devices(device=None, kind=None):
        if device is None and kind is None:
            return fake.devices
        return fake.devices[0 if device is None else device]

    def rec(frames, samplerate, channels, dtype, device, blocking):
        fake.calls.append({"frames": frames, "samplerate": samplerate,
                           "channels": channels, "dtype": dtype, "device": device})
        if fake.error is not None:
            raise fake.error
        out = np.zeros((frames, channels), dtype=np.int16)
        if fake.recordings:
            data = np.asarray(fake.recordings.pop(0)).reshape(-1, channels)
            n = min(frames, len(data))
            out[:n] = data[:n]
        return out

    fake.query_devices = query_devices
    fake.rec = rec
    monkeypatch.setitem(sys.modules, "sounddevice", fake)
    return fake
