#!/usr/bin/env python3
from __future__ import annotations

"""Crossfade stitching and mastering of synthesized chunk audio.

Stitching chains `acrossfade` joins left to right so the output lasts
`sum(durations) - (N - 1) * crossfade`. Mastering runs highpass, de-esser,
compressor and loudness normalization, then encodes to the export format.
Without a working ffmpeg, stitching degrades to raw PCM concatenation and
mastering returns the stitched WAV unchanged.
"""

import json
import os
import re
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .config import AudioConfig
from .errors import AudioAssemblyError, MediaEngineError
from .logging_utils import Logger
from .settings import ExportSettings, MasteringSettings
from .wav_utils import concat_wavs, read_wav

LOUDNORM_LRA = 7
DEFAULT_BITRATE_KBPS = {"mp3": 224, "aac": 128}


def _run(
    command: List[str],
    logger: Logger,
    *,
    allow_failure: bool = False,
    timeout: Optional[int] = None,
) -> subprocess.CompletedProcess[str]:
    """Execute an ffmpeg command and raise on failure unless allowed."""
    logger.debug("run_command", command=" ".join(command))
    try:
        proc = subprocess.run(
            command,
            check=False,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise MediaEngineError(f"Command could not run: {' '.join(command[:1])}: {exc}") from exc
    if proc.returncode != 0 and not allow_failure:
        logger.error(
            "command_failed",
            command=" ".join(command),
            returncode=proc.returncode,
            stderr=(proc.stderr or "")[-1000:],
        )
        raise MediaEngineError(f"Command failed: {' '.join(command)}")
    return proc


def parse_loudnorm_json(stderr_text: str) -> Optional[Dict[str, str]]:
    """Extract `loudnorm` analysis payload from ffmpeg stderr output."""
    matches = re.findall(r"\{[\s\S]*?\}", stderr_text or "")
    for candidate in reversed(matches):
        try:
            payload = json.loads(candidate)
        except ValueError:
            continue
        keys = {"input_i", "input_tp", "input_lra", "input_thresh", "target_offset"}
        if isinstance(payload, dict) and keys.issubset(payload.keys()):
            return payload
    return None


def build_crossfade_graph(count: int, crossfade_ms: int) -> str:
    """Filter graph chaining `acrossfade` over `count` inputs, ending in `[out]`."""
    if count < 2:
        raise AudioAssemblyError("Crossfade graph needs at least two inputs")
    seconds = max(0, int(crossfade_ms)) / 1000.0
    if seconds <= 0:
        inputs = "".join(f"[{i}:a]" for i in range(count))
        return f"{inputs}concat=n={count}:v=0:a=1[out]"
    parts: List[str] = []
    previous = "[0:a]"
    for i in range(1, count):
        label = "[out]" if i == count - 1 else f"[cf{i}]"
        parts.append(f"{previous}[{i}:a]acrossfade=d={seconds:g}:c1=tri:c2=tri{label}")
        previous = label
    return ";".join(parts)


def _makeup_linear(gain_db: float) -> float:
    return round(max(1.0, min(64.0, 10 ** (gain_db / 20.0))), 4)


def build_mastering_chain(mastering: MasteringSettings) -> List[str]:
    """Ordered mastering filters: highpass, de-esser, compressor, loudnorm."""
    filters: List[str] = []
    if mastering.highpass_hz > 0:
        filters.append(f"highpass=f={mastering.highpass_hz:g}")
    if mastering.deesser_amount > 0:
        cut_db = -(mastering.deesser_amount * 6)
        filters.append(f"equalizer=f={mastering.deesser_hz:g}:width_type=q:width=2:g={cut_db:g}")
    comp = mastering.compressor
    if comp.ratio > 1:
        filters.append(
            f"acompressor=ratio={comp.ratio:g}:attack={comp.attack_ms:g}:"
            f"release={comp.release_ms:g}:makeup={_makeup_linear(comp.gain_db):g}"
        )
    filters.append(f"loudnorm=I={mastering.target_lufs:g}:TP={mastering.true_peak_db:g}:LRA={LOUDNORM_LRA}")
    return filters


def encoder_args(export: ExportSettings) -> Tuple[List[str], str]:
    """ffmpeg codec arguments and file extension for the export format."""
    fmt = export.format
    if fmt == "mp3":
        kbps = export.bitrate_kbps or DEFAULT_BITRATE_KBPS["mp3"]
        return ["-c:a", "libmp3lame", "-b:a", f"{kbps}k", "-f", "mp3"], "mp3"
    if fmt == "aac":
        kbps = export.bitrate_kbps or DEFAULT_BITRATE_KBPS["aac"]
        return ["-c:a", "aac", "-b:a", f"{kbps}k", "-f", "adts"], "aac"
    return ["-c:a", "pcm_s16le", "-f", "wav"], "wav"


@dataclass
class MasterResult:
    audio: bytes
    extension: str
    mastered: bool
    encoded: bool


@dataclass
class AudioAssembler:
    config: AudioConfig
    logger: Logger

    def ffmpeg_available(self) -> bool:
        return shutil.which(self.config.ffmpeg_bin) is not None

    def _ensure_dependencies(self) -> None:
        if not self.ffmpeg_available():
            raise MediaEngineError(f"{self.config.ffmpeg_bin} is required but not found in PATH")

    def _base_cmd(self) -> List[str]:
        return [self.config.ffmpeg_bin, "-hide_banner", "-loglevel", self.config.ffmpeg_loglevel, "-y"]

    def _ffmpeg_stitch(self, buffers: Sequence[bytes], crossfade_ms: int, sample_rate: int, channels: int) -> bytes:
        with tempfile.TemporaryDirectory(prefix="stitch_") as tmp:
            cmd = self._base_cmd()
            for idx, data in enumerate(buffers):
                in_path = os.path.join(tmp, f"in_{idx:04d}.wav")
                with open(in_path, "wb") as f:
                    f.write(data)
                cmd += ["-i", in_path]
            out_path = os.path.join(tmp, "stitched.wav")
            if len(buffers) == 1:
                cmd += ["-map", "0:a"]
            else:
                cmd += ["-filter_complex", build_crossfade_graph(len(buffers), crossfade_ms), "-map", "[out]"]
            cmd += ["-ar", str(sample_rate), "-ac", str(channels), "-c:a", "pcm_s16le", out_path]
            _run(cmd, self.logger, timeout=self.config.timeout_seconds)
            with open(out_path, "rb") as f:
                data = f.read()
        if not data:
            raise MediaEngineError("Stitched audio was not generated correctly")
        return data

    def stitch(self, buffers: Sequence[bytes], *, crossfade_ms: int, sample_rate: int, mono: bool) -> bytes:
        """Join WAV buffers in order with triangular crossfades."""
        if not buffers:
            raise AudioAssemblyError("No audio buffers to stitch")
        channels = 1 if mono else 2
        if len(buffers) == 1:
            info, _frames = read_wav(buffers[0])
            if info.sample_rate == sample_rate and info.channels == channels:
                return buffers[0]
        try:
            self._ensure_dependencies()
            data = self._ffmpeg_stitch(buffers, crossfade_ms, sample_rate, channels)
            self.logger.info("stitch_done", chunks=len(buffers), crossfade_ms=crossfade_ms, bytes=len(data))
            return data
        except MediaEngineError as exc:
            self.logger.warn("stitch_fallback_raw_concat", chunks=len(buffers), error=str(exc))
        return concat_wavs(buffers, sample_rate=sample_rate, channels=channels)

    def master_and_encode(
        self,
        wav_bytes: bytes,
        *,
        mastering: MasteringSettings,
        export: ExportSettings,
    ) -> MasterResult:
        """Apply the mastering chain (when enabled) and encode to the export format."""
        filters = build_mastering_chain(mastering) if mastering.enable else []
        codec_args, extension = encoder_args(export)
        try:
            self._ensure_dependencies()
            with tempfile.TemporaryDirectory(prefix="master_") as tmp:
                in_path = os.path.join(tmp, "input.wav")
                out_path = os.path.join(tmp, f"output.{extension}")
                with open(in_path, "wb") as f:
                    f.write(wav_bytes)
                cmd = self._base_cmd() + ["-i", in_path]
                if filters:
                    cmd += ["-af", ",".join(filters)]
                cmd += codec_args + [out_path]
                _run(cmd, self.logger, timeout=self.config.timeout_seconds)
                with open(out_path, "rb") as f:
                    data = f.read()
            if not data:
                raise MediaEngineError("Final audio was not generated correctly")
        except MediaEngineError as exc:
            self.logger.warn("master_fallback_unmastered", format=export.format, error=str(exc))
            return MasterResult(audio=wav_bytes, extension="wav", mastered=False, encoded=False)
        self.logger.info(
            "master_done",
            mastered=bool(filters),
            format=extension,
            bytes=len(data),
        )
        return MasterResult(audio=data, extension=extension, mastered=bool(filters), encoded=True)

    def measure_loudness(self, audio: bytes, *, extension: str, target_lufs: float = -14.0, true_peak_db: float = -1.0) -> Optional[Dict[str, float]]:
        """Integrated loudness and true peak from a `loudnorm` analysis pass."""
        self._ensure_dependencies()
        with tempfile.TemporaryDirectory(prefix="analyze_") as tmp:
            in_path = os.path.join(tmp, f"analyze.{extension}")
            with open(in_path, "wb") as f:
                f.write(audio)
            cmd = [
                self.config.ffmpeg_bin,
                "-hide_banner",
                "-nostats",
                "-i",
                in_path,
                "-af",
                f"loudnorm=I={target_lufs:g}:TP={true_peak_db:g}:LRA={LOUDNORM_LRA}:print_format=json",
                "-f",
                "null",
                "-",
            ]
            proc = _run(cmd, self.logger, allow_failure=True, timeout=self.config.timeout_seconds)
        measured = parse_loudnorm_json(proc.stderr or "")
        if not measured:
            return None
        try:
            return {
                "lufsIntegrated": float(measured["input_i"]),
                "truePeakDb": float(measured["input_tp"]),
            }
        except (TypeError, ValueError):
            return None
