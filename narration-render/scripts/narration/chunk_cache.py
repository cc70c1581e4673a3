#!/usr/bin/env python3
from __future__ import annotations

"""Content-addressable cache of synthesized chunk audio.

Entries live at `cache/chunks/{key}.wav` and are shared by every render. The
key binds a chunk's content hash to the engine, voice, model and sample rate
that produced the audio, so a chunk synthesized once is reused only by later
jobs that would have asked the same engine for the same thing.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from .errors import ERROR_KIND_NOT_FOUND, RetryExhaustedError, StorageError, classify_render_exception
from .hashing import is_content_hash
from .logging_utils import Logger
from .retry import RetryPolicy, fetch_with_backoff
from .storage import StorageGateway, chunk_cache_path
from .wav_utils import is_wav

CACHE_CHUNKS = "chunks"


@dataclass
class CacheStats:
    """Hit/miss/error counters per cache name."""

    counters: Dict[str, Dict[str, int]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def _bump(self, cache: str, key: str) -> None:
        with self._lock:
            entry = self.counters.setdefault(cache, {"hits": 0, "misses": 0, "errors": 0})
            entry[key] += 1

    def record_hit(self, cache: str = CACHE_CHUNKS) -> None:
        self._bump(cache, "hits")

    def record_miss(self, cache: str = CACHE_CHUNKS) -> None:
        self._bump(cache, "misses")

    def record_error(self, cache: str = CACHE_CHUNKS) -> None:
        self._bump(cache, "errors")

    def summary(self, cache: str = CACHE_CHUNKS) -> Dict[str, float]:
        with self._lock:
            entry = dict(self.counters.get(cache, {"hits": 0, "misses": 0, "errors": 0}))
        lookups = entry["hits"] + entry["misses"]
        entry["hitRate"] = round(entry["hits"] / float(lookups), 4) if lookups else 0.0
        return entry


@dataclass
class ChunkCache:
    storage: StorageGateway
    policy: RetryPolicy
    logger: Logger
    stats: CacheStats = field(default_factory=CacheStats)
    sleep: Callable[[float], None] = time.sleep

    def path_for(self, content_hash: str) -> str:
        if not is_content_hash(content_hash):
            raise StorageError(f"Refusing non-hash cache key: {content_hash!r}")
        return chunk_cache_path(content_hash)

    def lookup(self, content_hash: str) -> Optional[bytes]:
        """Return cached audio, or None on a miss.

        Not-found after the opportunistic budget is a miss. Any other storage
        failure, or a stored payload that is not WAV audio, is counted as an
        error and also reported as a miss so the caller falls through to
        synthesis.
        """
        path = self.path_for(content_hash)
        try:
            data = fetch_with_backoff(
                lambda: self.storage.get(path),
                locator=path,
                policy=self.policy,
                logger=self.logger,
                sleep=self.sleep,
            )
        except RetryExhaustedError as exc:
            kind = classify_render_exception(exc.last_error)
            if kind == ERROR_KIND_NOT_FOUND:
                self.stats.record_miss()
            else:
                self.stats.record_error()
                self.stats.record_miss()
                self.logger.warn("chunk_cache_lookup_failed", hash=content_hash, error_kind=kind, error=str(exc))
            return None
        except StorageError as exc:
            self.stats.record_error()
            self.stats.record_miss()
            self.logger.warn("chunk_cache_lookup_failed", hash=content_hash, error_kind=exc.error_kind, error=str(exc))
            return None
        if not data:
            self.stats.record_miss()
            return None
        if not is_wav(data):
            self.stats.record_error()
            self.stats.record_miss()
            self.logger.warn("chunk_cache_entry_corrupt", hash=content_hash, bytes=len(data))
            return None
        self.stats.record_hit()
        return data

    def store(self, content_hash: str, audio: bytes) -> str:
        """Write (or idempotently overwrite) the entry; returns its URL."""
        result = self.storage.put(self.path_for(content_hash), audio, content_type="audio/wav")
        return str(result.get("url", ""))
