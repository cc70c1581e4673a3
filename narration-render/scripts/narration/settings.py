#!/usr/bin/env python3
from __future__ import annotations

"""Per-render tuning settings (voice, SSML, chunking, stitching, mastering, export).

Settings travel with a render request and are part of its identity, so they
serialize to plain camelCase dictionaries that hash deterministically.
"""

import copy
import math
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .errors import RenderInputError

EXPORT_FORMATS = ("wav", "mp3", "aac")
SAMPLE_RATES = (44100, 22050)

DEFAULT_SETTINGS: Dict[str, Any] = {
    "eleven": {
        "stability": 0.58,
        "similarityBoost": 0.85,
        "style": 0.22,
        "speakerBoost": True,
    },
    "ssml": {
        "breakMs": {"comma": 140, "clause": 240, "sentence": 420, "paragraph": 800},
        "defaultRate": 0.98,
    },
    "chunking": {"maxSec": 35, "overlapMs": 300, "contextSentences": 2},
    "stitching": {"crossfadeMs": 120, "sampleRate": 44100, "mono": True},
    "mastering": {
        "enable": True,
        "highpassHz": 85,
        "deesserHz": 6500,
        "deesserAmount": 0.5,
        "compressor": {"ratio": 2, "attackMs": 25, "releaseMs": 120, "gainDb": 1.5},
        "loudness": {"targetLUFS": -14, "truePeakDb": -1.0},
    },
    "export": {"format": "mp3", "bitrateKbps": 224},
}


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def _number(payload: Mapping[str, Any], key: str, low: float, high: float, *, where: str) -> float:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(float(value)):
        raise RenderInputError(f"settings.{where}.{key} must be a number")
    if not (low <= float(value) <= high):
        raise RenderInputError(f"settings.{where}.{key} must be within [{low}, {high}], got {value}")
    return float(value)


def _flag(payload: Mapping[str, Any], key: str, *, where: str) -> bool:
    value = payload.get(key)
    if not isinstance(value, bool):
        raise RenderInputError(f"settings.{where}.{key} must be a boolean")
    return value


def _section(payload: Mapping[str, Any], key: str, *, where: str = "") -> Mapping[str, Any]:
    value = payload.get(key)
    if not isinstance(value, Mapping):
        name = f"{where}.{key}" if where else key
        raise RenderInputError(f"settings.{name} must be an object")
    return value


@dataclass(frozen=True)
class VoiceSettings:
    stability: float
    similarity_boost: float
    style: float
    speaker_boost: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stability": self.stability,
            "similarityBoost": self.similarity_boost,
            "style": self.style,
            "speakerBoost": self.speaker_boost,
        }

    def to_engine_payload(self) -> Dict[str, Any]:
        return {
            "stability": self.stability,
            "similarity_boost": self.similarity_boost,
            "style": self.style,
            "use_speaker_boost": self.speaker_boost,
        }


@dataclass(frozen=True)
class BreakSettings:
    comma: int
    clause: int
    sentence: int
    paragraph: int


@dataclass(frozen=True)
class SsmlSettings:
    break_ms: BreakSettings
    default_rate: float


@dataclass(frozen=True)
class ChunkingSettings:
    max_sec: float
    overlap_ms: int
    context_sentences: int


@dataclass(frozen=True)
class StitchingSettings:
    crossfade_ms: int
    sample_rate: int
    mono: bool

    @property
    def channels(self) -> int:
        return 1 if self.mono else 2


@dataclass(frozen=True)
class CompressorSettings:
    ratio: float
    attack_ms: float
    release_ms: float
    gain_db: float


@dataclass(frozen=True)
class MasteringSettings:
    enable: bool
    highpass_hz: float
    deesser_hz: float
    deesser_amount: float
    compressor: CompressorSettings
    target_lufs: float
    true_peak_db: float


@dataclass(frozen=True)
class ExportSettings:
    format: str
    bitrate_kbps: Optional[int]


@dataclass(frozen=True)
class TuningSettings:
    voice: VoiceSettings
    ssml: SsmlSettings
    chunking: ChunkingSettings
    stitching: StitchingSettings
    mastering: MasteringSettings
    export: ExportSettings
    raw: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        """Normalized camelCase payload persisted in request.json."""
        return copy.deepcopy(self.raw)

    @staticmethod
    def defaults() -> "TuningSettings":
        return TuningSettings.from_dict(None)

    @staticmethod
    def from_dict(payload: Optional[Mapping[str, Any]]) -> "TuningSettings":
        """Merge a (partial) settings payload over defaults and validate it."""
        if payload is not None and not isinstance(payload, Mapping):
            raise RenderInputError("settings must be an object")
        merged = _deep_merge(DEFAULT_SETTINGS, payload or {})

        eleven = _section(merged, "eleven")
        voice = VoiceSettings(
            stability=_number(eleven, "stability", 0.0, 1.0, where="eleven"),
            similarity_boost=_number(eleven, "similarityBoost", 0.0, 1.0, where="eleven"),
            style=_number(eleven, "style", 0.0, 1.0, where="eleven"),
            speaker_boost=_flag(eleven, "speakerBoost", where="eleven"),
        )

        ssml = _section(merged, "ssml")
        breaks = _section(ssml, "breakMs", where="ssml")
        ssml_settings = SsmlSettings(
            break_ms=BreakSettings(
                comma=int(_number(breaks, "comma", 0, 2000, where="ssml.breakMs")),
                clause=int(_number(breaks, "clause", 0, 2000, where="ssml.breakMs")),
                sentence=int(_number(breaks, "sentence", 0, 2000, where="ssml.breakMs")),
                paragraph=int(_number(breaks, "paragraph", 0, 3000, where="ssml.breakMs")),
            ),
            default_rate=_number(ssml, "defaultRate", 0.5, 2.0, where="ssml"),
        )

        chunking = _section(merged, "chunking")
        chunking_settings = ChunkingSettings(
            max_sec=_number(chunking, "maxSec", 10, 60, where="chunking"),
            overlap_ms=int(_number(chunking, "overlapMs", 0, 1000, where="chunking")),
            context_sentences=int(_number(chunking, "contextSentences", 0, 5, where="chunking")),
        )

        stitching = _section(merged, "stitching")
        sample_rate = stitching.get("sampleRate")
        if sample_rate not in SAMPLE_RATES or isinstance(sample_rate, bool):
            raise RenderInputError(f"settings.stitching.sampleRate must be one of {SAMPLE_RATES}")
        stitching_settings = StitchingSettings(
            crossfade_ms=int(_number(stitching, "crossfadeMs", 0, 500, where="stitching")),
            sample_rate=int(sample_rate),
            mono=_flag(stitching, "mono", where="stitching"),
        )

        mastering = _section(merged, "mastering")
        compressor = _section(mastering, "compressor", where="mastering")
        loudness = _section(mastering, "loudness", where="mastering")
        highpass = _number(mastering, "highpassHz", 0, 200, where="mastering")
        if 0 < highpass < 20:
            raise RenderInputError("settings.mastering.highpassHz must be 0 (off) or within [20, 200]")
        mastering_settings = MasteringSettings(
            enable=_flag(mastering, "enable", where="mastering"),
            highpass_hz=highpass,
            deesser_hz=_number(mastering, "deesserHz", 3000, 10000, where="mastering"),
            deesser_amount=_number(mastering, "deesserAmount", 0.0, 1.0, where="mastering"),
            compressor=CompressorSettings(
                ratio=_number(compressor, "ratio", 1, 10, where="mastering.compressor"),
                attack_ms=_number(compressor, "attackMs", 1, 100, where="mastering.compressor"),
                release_ms=_number(compressor, "releaseMs", 10, 1000, where="mastering.compressor"),
                gain_db=_number(compressor, "gainDb", -10, 10, where="mastering.compressor"),
            ),
            target_lufs=_number(loudness, "targetLUFS", -30, -6, where="mastering.loudness"),
            true_peak_db=_number(loudness, "truePeakDb", -3, 0, where="mastering.loudness"),
        )

        export = _section(merged, "export")
        fmt = str(export.get("format") or "").strip().lower()
        if fmt not in EXPORT_FORMATS:
            raise RenderInputError(f"settings.export.format must be one of {EXPORT_FORMATS}")
        bitrate: Optional[int] = None
        if export.get("bitrateKbps") is not None:
            bitrate = int(_number(export, "bitrateKbps", 64, 320, where="export"))
        merged["export"]["format"] = fmt

        return TuningSettings(
            voice=voice,
            ssml=ssml_settings,
            chunking=chunking_settings,
            stitching=stitching_settings,
            mastering=mastering_settings,
            export=ExportSettings(format=fmt, bitrate_kbps=bitrate),
            raw=merged,
        )
