#!/usr/bin/env python3
from __future__ import annotations

"""Centralized runtime configuration for the narration render pipeline.

This module maps environment variables into typed dataclasses. Only this
module (and CLI entrypoints) read the environment; everything else receives
an explicit `RenderConfig`.
"""

import dataclasses
import hashlib
import json
import math
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypeVar

from .retry import RetryPolicy


_TRUTHY = {"1", "true", "yes", "on"}

T = TypeVar("T")


def _env_raw(name: str) -> Optional[str]:
    """Trimmed value of `name`, or None when unset or blank."""
    raw = os.environ.get(name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


def _env_parsed(name: str, default: T, parse: Callable[[str], T]) -> T:
    raw = _env_raw(name)
    if raw is None:
        return default
    try:
        return parse(raw)
    except (TypeError, ValueError):
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    return default if raw is None else raw.strip()


def _env_int(name: str, default: int) -> int:
    return _env_parsed(name, default, int)


def _finite_float(raw: str) -> float:
    value = float(raw)
    if not math.isfinite(value):
        raise ValueError(f"not a finite number: {raw}")
    return value


def _env_float(name: str, default: float) -> float:
    return _env_parsed(name, default, _finite_float)


def _env_bool(name: str, default: bool) -> bool:
    return _env_parsed(name, default, lambda raw: raw.lower() in _TRUTHY)


def _bounded(value: int, low: int, high: int) -> int:
    return min(high, max(low, value))


@dataclass(frozen=True)
class LoggingConfig:
    """Logging behavior used by `Logger`."""

    level: str
    heartbeat_seconds: int
    debug_events: bool
    include_event_ids: bool

    @staticmethod
    def from_env() -> "LoggingConfig":
        """Build logging config from environment."""
        return LoggingConfig(
            level=_env_str("LOG_LEVEL", "INFO").upper(),
            heartbeat_seconds=max(1, _env_int("LOG_HEARTBEAT_SECONDS", 15)),
            debug_events=_env_bool("LOG_DEBUG_EVENTS", False),
            include_event_ids=_env_bool("LOG_INCLUDE_EVENT_IDS", True),
        )


@dataclass(frozen=True)
class RetryConfig:
    """Storage read budgets for critical-path and opportunistic reads."""

    critical: RetryPolicy
    opportunistic: RetryPolicy

    @staticmethod
    def defaults() -> "RetryConfig":
        return RetryConfig(
            critical=RetryPolicy(max_attempts=5, base_delay_ms=1000, max_delay_ms=5000, multiplier=2.0),
            opportunistic=RetryPolicy(max_attempts=2, base_delay_ms=250, max_delay_ms=1000, multiplier=2.0),
        )

    @staticmethod
    def from_env() -> "RetryConfig":
        """Build retry budgets, honoring the deployment profile."""
        deployment = _env_str("RENDER_DEPLOYMENT", "default").lower()
        if deployment == "serverless":
            # Short execution ceilings: fewer, longer-spaced attempts.
            critical_attempts, base_ms, max_ms, multiplier = 3, 2000, 8000, 1.5
        else:
            critical_attempts, base_ms, max_ms, multiplier = 5, 1000, 5000, 2.0
        base_ms = max(0, _env_int("STORAGE_RETRY_BASE_MS", base_ms))
        max_ms = max(base_ms, _env_int("STORAGE_RETRY_MAX_MS", max_ms))
        multiplier = max(1.0, _env_float("STORAGE_RETRY_MULTIPLIER", multiplier))
        jitter_ms = max(0, _env_int("STORAGE_RETRY_JITTER_MS", 0))
        return RetryConfig(
            critical=RetryPolicy(
                max_attempts=_bounded(_env_int("STORAGE_CRITICAL_ATTEMPTS", critical_attempts), 1, 20),
                base_delay_ms=base_ms,
                max_delay_ms=max_ms,
                multiplier=multiplier,
                jitter_ms=jitter_ms,
            ),
            opportunistic=RetryPolicy(
                max_attempts=_bounded(_env_int("STORAGE_CACHE_ATTEMPTS", 2), 1, 10),
                base_delay_ms=min(base_ms, 250),
                max_delay_ms=min(max_ms, 1000),
                multiplier=2.0,
                jitter_ms=jitter_ms,
            ),
        )


@dataclass(frozen=True)
class SynthesisConfig:
    """Voice engine selection, credentials, pacing and continuity window."""

    bypass_engine: bool
    api_key: str
    voice_id: str
    model_id: str
    base_url: str
    timeout_seconds: int
    seed: Optional[int]
    context_chars: int
    request_id_window: int
    warmup_calls: int
    warmup_delay_ms: int
    steady_delay_ms: int

    @staticmethod
    def from_env() -> "SynthesisConfig":
        """Build synthesis config from environment."""
        return SynthesisConfig(
            bypass_engine=_env_bool("BYPASS_ELEVENLABS", False),
            api_key=_env_str("ELEVENLABS_API_KEY", ""),
            voice_id=_env_str("ELEVEN_VOICE_ID", ""),
            model_id=_env_str("ELEVEN_MODEL_ID", "eleven_multilingual_v2") or "eleven_multilingual_v2",
            base_url=_env_str("ELEVENLABS_BASE_URL", "https://api.elevenlabs.io").rstrip("/"),
            timeout_seconds=max(5, _env_int("TTS_TIMEOUT_SECONDS", 60)),
            seed=_env_parsed("TTS_SEED", None, int),
            context_chars=_bounded(_env_int("TTS_CONTEXT_CHARS", 300), 0, 1000),
            request_id_window=_bounded(_env_int("TTS_REQUEST_ID_WINDOW", 3), 0, 3),
            warmup_calls=max(0, _env_int("TTS_WARMUP_CALLS", 3)),
            warmup_delay_ms=max(0, _env_int("TTS_WARMUP_DELAY_MS", 1000)),
            steady_delay_ms=max(0, _env_int("TTS_STEADY_DELAY_MS", 250)),
        )


@dataclass(frozen=True)
class AudioConfig:
    """ffmpeg invocation settings."""

    ffmpeg_bin: str
    ffmpeg_loglevel: str
    timeout_seconds: int

    @staticmethod
    def from_env() -> "AudioConfig":
        return AudioConfig(
            ffmpeg_bin=_env_str("FFMPEG_BIN", "ffmpeg") or "ffmpeg",
            ffmpeg_loglevel=_env_str("FFMPEG_LOGLEVEL", "warning"),
            timeout_seconds=max(10, _env_int("AUDIO_TIMEOUT_SECONDS", 300)),
        )


@dataclass(frozen=True)
class StorageConfig:
    root_dir: str
    base_url: str

    @staticmethod
    def from_env() -> "StorageConfig":
        return StorageConfig(
            root_dir=_env_str("RENDER_STORAGE_DIR", "./.render_storage") or "./.render_storage",
            base_url=_env_str("RENDER_STORAGE_BASE_URL", "").rstrip("/"),
        )


@dataclass(frozen=True)
class RenderConfig:
    """Everything a render worker needs, passed in explicitly at job start."""

    logging: LoggingConfig
    retry: RetryConfig
    synthesis: SynthesisConfig
    audio: AudioConfig
    storage: StorageConfig

    @staticmethod
    def from_env() -> "RenderConfig":
        """Build the full render config from environment."""
        return RenderConfig(
            logging=LoggingConfig.from_env(),
            retry=RetryConfig.from_env(),
            synthesis=SynthesisConfig.from_env(),
            audio=AudioConfig.from_env(),
            storage=StorageConfig.from_env(),
        )


def fingerprint_dict(value: Dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON encoding of `value`."""
    encoded = json.dumps(value, ensure_ascii=True, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def config_fingerprint(config: RenderConfig) -> str:
    """Fingerprint of the behavior-relevant config, credentials excluded."""
    payload = dataclasses.asdict(config)
    payload["synthesis"].pop("api_key", None)
    return fingerprint_dict(payload)
