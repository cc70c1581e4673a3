#!/usr/bin/env python3
from __future__ import annotations

"""16-bit PCM WAV helpers used when ffmpeg is unavailable and for analysis."""

import io
import math
import sys
import wave
from array import array
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from .errors import AudioAssemblyError

SAMPLE_WIDTH = 2


@dataclass(frozen=True)
class WavInfo:
    sample_rate: int
    channels: int
    sample_width: int
    frames: int

    @property
    def duration_sec(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.frames / float(self.sample_rate)


def is_wav(data: bytes) -> bool:
    return len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WAVE"


def read_wav(data: bytes) -> Tuple[WavInfo, bytes]:
    try:
        with wave.open(io.BytesIO(data), "rb") as wf:
            info = WavInfo(
                sample_rate=wf.getframerate(),
                channels=wf.getnchannels(),
                sample_width=wf.getsampwidth(),
                frames=wf.getnframes(),
            )
            frames = wf.readframes(info.frames)
    except (wave.Error, EOFError) as exc:
        raise AudioAssemblyError(f"Unreadable WAV buffer: {exc}") from exc
    return info, frames


def wav_info(data: bytes) -> WavInfo:
    return read_wav(data)[0]


def pcm_to_wav(pcm: bytes, *, sample_rate: int, channels: int = 1, sample_width: int = SAMPLE_WIDTH) -> bytes:
    out = io.BytesIO()
    with wave.open(out, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm)
    return out.getvalue()


def silence_wav(seconds: float, *, sample_rate: int, channels: int = 1) -> bytes:
    frames = max(0, int(round(seconds * sample_rate)))
    return pcm_to_wav(b"\x00" * (frames * channels * SAMPLE_WIDTH), sample_rate=sample_rate, channels=channels)


def _to_samples(frames: bytes) -> array:
    samples = array("h")
    samples.frombytes(frames[: len(frames) - (len(frames) % SAMPLE_WIDTH)])
    if sys.byteorder == "big":
        samples.byteswap()
    return samples


def _from_samples(samples: array) -> bytes:
    if sys.byteorder == "big":
        samples = array("h", samples)
        samples.byteswap()
    return samples.tobytes()


def _remix(samples: array, channels: int, target_channels: int) -> array:
    if channels == target_channels:
        return samples
    if channels == 1:
        out = array("h")
        for value in samples:
            out.extend([value] * target_channels)
        return out
    out = array("h")
    for i in range(0, len(samples) - channels + 1, channels):
        out.append(int(sum(samples[i : i + channels]) / channels))
    if target_channels > 1:
        return _remix(out, 1, target_channels)
    return out


def _resample(samples: array, channels: int, rate: int, target_rate: int) -> array:
    """Linear-interpolation resampler; adequate for the lossy fallback path."""
    if rate == target_rate or not samples:
        return samples
    frames = len(samples) // channels
    out_frames = max(1, int(round(frames * target_rate / float(rate))))
    step = rate / float(target_rate)
    out = array("h")
    for n in range(out_frames):
        pos = n * step
        left = min(frames - 1, int(pos))
        right = min(frames - 1, left + 1)
        frac = pos - left
        for ch in range(channels):
            a = samples[left * channels + ch]
            b = samples[right * channels + ch]
            out.append(int(round(a + (b - a) * frac)))
    return out


def convert_frames(frames: bytes, info: WavInfo, *, sample_rate: int, channels: int) -> bytes:
    if info.sample_width != SAMPLE_WIDTH:
        raise AudioAssemblyError(f"Only 16-bit PCM is supported without ffmpeg (got {info.sample_width * 8}-bit)")
    if info.sample_rate == sample_rate and info.channels == channels:
        return frames
    samples = _remix(_to_samples(frames), info.channels, channels)
    return _from_samples(_resample(samples, channels, info.sample_rate, sample_rate))


def concat_wavs(buffers: Sequence[bytes], *, sample_rate: int, channels: int) -> bytes:
    """Join WAV buffers end to end after converting each to the target format."""
    parts: List[bytes] = []
    for data in buffers:
        info, frames = read_wav(data)
        parts.append(convert_frames(frames, info, sample_rate=sample_rate, channels=channels))
    return pcm_to_wav(b"".join(parts), sample_rate=sample_rate, channels=channels)


def level_dbfs(frames: bytes, *, mode: str = "rms") -> float:
    samples = _to_samples(frames)
    if not samples:
        return -math.inf
    if mode == "peak":
        value = max(abs(s) for s in samples) / 32768.0
    else:
        value = math.sqrt(sum(float(s) * s for s in samples) / len(samples)) / 32768.0
    if value <= 0:
        return -math.inf
    return 20.0 * math.log10(value)
