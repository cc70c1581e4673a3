#!/usr/bin/env python3
from __future__ import annotations

"""Deterministic content hashes used as cache keys and request fingerprints."""

import hashlib
import json
import re
import secrets
from typing import Any, Mapping, Union

_WHITESPACE_RE = re.compile(r"\s+")
_CONTENT_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


def sha256_hex(data: Union[bytes, str]) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def canonical_json(value: Any) -> str:
    """JSON with recursively sorted keys and no insignificant whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def normalize_script(text: str) -> str:
    normalized = str(text or "").replace("\r\n", "\n").replace("\r", "\n")
    return _WHITESPACE_RE.sub(" ", normalized).strip()


def script_hash(text: str) -> str:
    """Hash of the script after whitespace and line-ending normalization."""
    return sha256_hex(normalize_script(text))


def settings_hash(settings: Mapping[str, Any]) -> str:
    return sha256_hex(canonical_json(dict(settings)))


def chunk_hash(content: str, voice_settings: Mapping[str, Any]) -> str:
    """Cache key for one chunk: synthesizable content plus voice settings."""
    payload = {"ssml": str(content or "").strip(), "settings": dict(voice_settings)}
    return sha256_hex(canonical_json(payload))


def engine_cache_key(
    content_hash: str,
    *,
    engine: str,
    voice_id: str,
    model_id: str,
    sample_rate: int,
) -> str:
    """Shared-cache key: a chunk hash bound to the engine and voice that render it.

    Audio stored under this key is a pure function of the key, so a bypass
    run or a voice change can never be served to a different engine setup.
    """
    payload = {
        "chunk": str(content_hash),
        "engine": str(engine or ""),
        "voiceId": str(voice_id or ""),
        "modelId": str(model_id or ""),
        "sampleRate": int(sample_rate),
    }
    return sha256_hex(canonical_json(payload))


def is_content_hash(value: str) -> bool:
    return bool(_CONTENT_HASH_RE.match(str(value or "")))


def new_render_id() -> str:
    return secrets.token_urlsafe(12).replace("-", "x").replace("_", "y")
