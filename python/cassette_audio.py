#!/usr/bin/env python3
"""
Cassette audio sources

- WAV files through scipy.io.wavfile
- Live capture through sounddevice (PortAudio)

Both hand the decoder an interleaved int32 buffer on a 16-bit scale plus an
AudioFormat. sounddevice is only imported when a device is actually used, so
file decoding works on hosts without PortAudio.
"""

from __future__ import annotations

import asyncio
import logging
import struct
from dataclasses import dataclass
from typing import Any, AsyncIterator, BinaryIO, Dict, List, Optional, Tuple, Union

import numpy as np
from scipy.io import wavfile

from cassette_decode import AudioFormat

logger = logging.getLogger(__name__)


class AudioSourceError(Exception):
    pass


def _sounddevice():
    try:
        import sounddevice as sd
    except (ImportError, OSError) as e:
        # OSError: PortAudio library missing
        raise AudioSourceError(f"Audio devices unavailable: {e}") from e
    return sd


# ---------------- format mapping ----------------
def format_from_wav(sample_rate: int, data: np.ndarray) -> AudioFormat:
    channels = 1 if data.ndim == 1 else int(data.shape[1])
    return AudioFormat(sample_rate=int(sample_rate), channel_count=channels)


def format_from_stream(sample_rate: float, channels: int) -> AudioFormat:
    return AudioFormat(sample_rate=int(round(sample_rate)), channel_count=int(channels))


def to_decoder_samples(data: np.ndarray) -> np.ndarray:
    """Flatten (frame-major, so channels stay interleaved) onto a 16-bit scale."""
    flat = np.asarray(data).reshape(-1)
    if flat.dtype == np.int16:
        return flat.astype(np.int32)
    if flat.dtype == np.int32:
        return (flat >> 16).astype(np.int32)
    if flat.dtype == np.uint8:
        return (flat.astype(np.int32) - 128) << 8
    if np.issubdtype(flat.dtype, np.floating):
        return np.clip(np.round(flat * 32767.0), -32768, 32767).astype(np.int32)
    raise AudioSourceError(f"Unsupported sample type {flat.dtype}")


# ---------------- WAV files ----------------
def read_wav(source: Union[str, BinaryIO]) -> Tuple[np.ndarray, AudioFormat]:
    """
    Load a WAV file for decoding

    Args:
        source: Path or binary file object

    Returns:
        (samples, format)
    """
    try:
        sample_rate, data = wavfile.read(source)
    except (OSError, ValueError, struct.error) as e:
        # struct.error: truncated RIFF header
        raise AudioSourceError(f"Cannot read WAV: {e}") from e

    fmt = format_from_wav(sample_rate, data)
    samples = to_decoder_samples(data)
    logger.info("Loaded %d frames, %d Hz, %d ch (%s)",
                len(data), fmt.sample_rate, fmt.channel_count, data.dtype)
    return samples, fmt


# ---------------- live capture ----------------
@dataclass
class CaptureConfig:
    # sounddevice index; None = system default input
    device_index: Optional[int] = None
    sample_rate: int = 44100
    channels: int = 1
    window_seconds: float = 10.0


def _device_info_safe(idx: Optional[int]) -> Dict[str, Any]:
    sd = _sounddevice()
    try:
        return dict(sd.query_devices(idx, "input"))
    except Exception:
        return {}


def list_input_devices() -> List[Dict[str, Any]]:
    sd = _sounddevice()
    devs = []
    for i, d in enumerate(sd.query_devices()):
        max_in = int(d.get("max_input_channels", 0) or 0)
        if max_in < 1:
            continue
        devs.append({
            "index": i,
            "name": d.get("name", f"dev{i}"),
            "max_input_channels": max_in,
            "default_samplerate": float(d.get("default_samplerate", 0.0) or 0.0),
        })
    return devs


class LiveCapture:
    """
    Records fixed-length windows from an input device.

    Every window is decoded on its own. A pulse or section that straddles two
    windows is lost.
    """
    def __init__(self, cfg: Optional[CaptureConfig] = None):
        self.cfg = cfg or CaptureConfig()
        self._running = False

    @property
    def fmt(self) -> AudioFormat:
        return format_from_stream(self.cfg.sample_rate, self.cfg.channels)

    @property
    def running(self) -> bool:
        return self._running

    async def capture_window(self, seconds: Optional[float] = None) -> Tuple[np.ndarray, AudioFormat]:
        seconds = self.cfg.window_seconds if seconds is None else float(seconds)
        n = int(self.cfg.sample_rate * seconds)
        if n <= 0:
            raise AudioSourceError(f"Capture window too short: {seconds}s")

        sd = _sounddevice()

        info = _device_info_safe(self.cfg.device_index)
        dev_name = info.get("name", f"device {self.cfg.device_index}")

        def _rec_blocking():
            return sd.rec(
                frames=n,
                samplerate=self.cfg.sample_rate,
                channels=self.cfg.channels,
                dtype="int16",
                device=self.cfg.device_index,
                blocking=True,
            )

        logger.info("Recording %.1fs from '%s'", seconds, dev_name)
        try:
            raw = await asyncio.to_thread(_rec_blocking)
        except Exception as e:
            raise AudioSourceError(f"Capture failed on '{dev_name}': {e}") from e

        if raw is None:
            raise AudioSourceError(f"Capture on '{dev_name}' returned no data")

        # raw shape: (n, ch)
        return to_decoder_samples(raw), self.fmt

    async def batches(self) -> AsyncIterator[Tuple[np.ndarray, AudioFormat]]:
        self._running = True
        try:
            while self._running:
                yield await self.capture_window()
        finally:
            self._running = False

    def stop(self) -> None:
        self._running = False
