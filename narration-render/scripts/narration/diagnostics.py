#!/usr/bin/env python3
from __future__ import annotations

"""Post-render diagnostics: speaking rate, markup density, pauses, loudness.

Diagnostics are informational. `DiagnosticsCollector.collect` never raises;
values it cannot compute fall back to `None` (or an empty list).
"""

import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .audio_assembler import AudioAssembler
from .errors import RenderOperationError
from .logging_utils import Logger
from .segmenter import Manifest, count_words
from .settings import TuningSettings
from .wav_utils import WavInfo, level_dbfs, read_wav

_TAG_RE = re.compile(r"<[^>]+>")
_BREAK_RE = re.compile(r"<break\s+time=\"([^\"]+)\"")

# ITU-R BS.1770 K-weighting offset, applied to plain RMS as a rough LUFS stand-in.
_LUFS_OFFSET_DB = -0.691

JOIN_WINDOW_MS = 50
NEIGHBOR_WINDOW_MS = 200
SPIKE_THRESHOLD_DB = 6.0


def total_words(manifest: Manifest) -> int:
    return sum(count_words(chunk.text) for chunk in manifest.chunks)


def words_per_minute(words: int, duration_sec: float) -> int:
    if duration_sec <= 0:
        return 0
    return int(round(words / duration_sec * 60))


def tag_density_per_10_words(manifest: Manifest) -> float:
    words = total_words(manifest)
    if words <= 0:
        return 0.0
    tags = sum(len(_TAG_RE.findall(chunk.ssml)) for chunk in manifest.chunks)
    return round(tags / float(words) * 10, 2)


def parse_time_ms(value: str) -> float:
    raw = str(value or "").strip().lower()
    try:
        if raw.endswith("ms"):
            return float(raw[:-2])
        if raw.endswith("s"):
            return float(raw[:-1]) * 1000.0
    except ValueError:
        return 0.0
    return 0.0


def breaks_histogram(manifest: Manifest) -> Dict[str, int]:
    """Count pause markers by band: <=200, <=300, <=500, >500 ms."""
    histogram = {"comma": 0, "clause": 0, "sentence": 0, "paragraph": 0}
    for chunk in manifest.chunks:
        for raw in _BREAK_RE.findall(chunk.ssml):
            ms = parse_time_ms(raw)
            if ms <= 200:
                histogram["comma"] += 1
            elif ms <= 300:
                histogram["clause"] += 1
            elif ms <= 500:
                histogram["sentence"] += 1
            else:
                histogram["paragraph"] += 1
    return histogram


def join_positions_ms(durations_sec: Sequence[float], crossfade_ms: float) -> List[float]:
    """Positions of stitch boundaries in the crossfaded output."""
    positions: List[float] = []
    elapsed = 0.0
    for i, duration in enumerate(durations_sec[:-1], start=1):
        elapsed += duration * 1000.0
        positions.append(elapsed - i * crossfade_ms)
    return positions


def _window(frames: bytes, info: WavInfo, start_ms: float, length_ms: float) -> bytes:
    bytes_per_frame = info.channels * info.sample_width
    start = max(0, int(start_ms / 1000.0 * info.sample_rate))
    end = min(info.frames, start + max(1, int(length_ms / 1000.0 * info.sample_rate)))
    if end <= start:
        return b""
    return frames[start * bytes_per_frame : end * bytes_per_frame]


def detect_join_spikes(
    stitched_wav: bytes,
    positions_ms: Sequence[float],
    *,
    threshold_db: float = SPIKE_THRESHOLD_DB,
) -> List[Dict[str, float]]:
    """Joins whose local RMS jumps above the surrounding audio."""
    info, frames = read_wav(stitched_wav)
    if info.sample_width != 2 or info.frames <= 0:
        return []
    spikes: List[Dict[str, float]] = []
    for pos in positions_ms:
        center = level_dbfs(_window(frames, info, pos - JOIN_WINDOW_MS / 2.0, JOIN_WINDOW_MS))
        before = level_dbfs(_window(frames, info, pos - JOIN_WINDOW_MS / 2.0 - NEIGHBOR_WINDOW_MS, NEIGHBOR_WINDOW_MS))
        after = level_dbfs(_window(frames, info, pos + JOIN_WINDOW_MS / 2.0, NEIGHBOR_WINDOW_MS))
        neighbors = [v for v in (before, after) if math.isfinite(v)]
        if not math.isfinite(center) or not neighbors:
            continue
        delta = center - sum(neighbors) / len(neighbors)
        if delta >= threshold_db:
            spikes.append({"posMs": round(pos, 1), "db": round(delta, 2)})
    return spikes


@dataclass
class DiagnosticsCollector:
    assembler: AudioAssembler
    logger: Logger

    def _loudness(self, final_audio: bytes, extension: str, stitched_frames: bytes, settings: TuningSettings) -> Dict[str, Optional[float]]:
        try:
            measured = self.assembler.measure_loudness(
                final_audio,
                extension=extension,
                target_lufs=settings.mastering.target_lufs,
                true_peak_db=settings.mastering.true_peak_db,
            )
            if measured is not None:
                return {
                    key: (value if math.isfinite(value) else None)
                    for key, value in measured.items()
                }
            self.logger.warn("diagnostics_loudness_unparsed")
        except RenderOperationError as exc:
            self.logger.warn("diagnostics_loudness_fallback", error=str(exc))
        rms = level_dbfs(stitched_frames)
        peak = level_dbfs(stitched_frames, mode="peak")
        return {
            "lufsIntegrated": round(rms + _LUFS_OFFSET_DB, 2) if math.isfinite(rms) else None,
            "truePeakDb": round(peak, 2) if math.isfinite(peak) else None,
        }

    def collect(
        self,
        *,
        manifest: Manifest,
        settings: TuningSettings,
        chunk_buffers: Sequence[bytes],
        stitched_wav: bytes,
        final_audio: bytes,
        final_extension: str,
        cache_summary: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        diagnostics: Dict[str, Any] = {
            "wpm": 0,
            "tagDensityPer10Words": 0.0,
            "breaksHistogramMs": {"comma": 0, "clause": 0, "sentence": 0, "paragraph": 0},
            "durationSec": 0.0,
            "lufsIntegrated": None,
            "truePeakDb": None,
            "joinEnergySpikes": [],
        }
        if cache_summary is not None:
            diagnostics["cache"] = dict(cache_summary)
        try:
            diagnostics["tagDensityPer10Words"] = tag_density_per_10_words(manifest)
            diagnostics["breaksHistogramMs"] = breaks_histogram(manifest)
            info, frames = read_wav(stitched_wav)
            duration = round(info.duration_sec, 3)
            diagnostics["durationSec"] = duration
            diagnostics["wpm"] = words_per_minute(total_words(manifest), duration)
            diagnostics.update(self._loudness(final_audio, final_extension, frames, settings))
            if len(chunk_buffers) > 1:
                durations = [read_wav(buf)[0].duration_sec for buf in chunk_buffers]
                # The raw-concat fallback has no overlap; derive the overlap actually applied.
                overlap_ms = max(0.0, (sum(durations) - info.duration_sec) * 1000.0 / (len(durations) - 1))
                overlap_ms = min(overlap_ms, float(settings.stitching.crossfade_ms))
                positions = join_positions_ms(durations, overlap_ms)
                diagnostics["joinEnergySpikes"] = detect_join_spikes(stitched_wav, positions)
        except Exception as exc:  # noqa: BLE001
            self.logger.warn("diagnostics_partial", error=str(exc))
        return diagnostics
