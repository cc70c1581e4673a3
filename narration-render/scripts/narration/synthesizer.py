#!/usr/bin/env python3
from __future__ import annotations

"""Sequential per-chunk synthesis with cache reuse and continuity context.

Chunks are processed strictly in `index` order. Each cache miss calls the
voice engine with a tail of the previous chunk, a head of the next chunk, and
the request ids of the most recent engine calls, then stores the audio in the
shared chunk cache before moving on. A rerun therefore only pays for chunks
that never made it into the cache.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional

from .chunk_cache import ChunkCache
from .config import SynthesisConfig
from .errors import RenderOperationError, SynthesisServiceError
from .hashing import engine_cache_key
from .logging_utils import Logger
from .segmenter import Chunk, Manifest
from .settings import TuningSettings
from .storage import StorageGateway, render_chunk_path
from .synthesis_engine import SynthesisEngine, SynthesisRequest
from .wav_utils import is_wav

ProgressCallback = Callable[[int, int], None]


@dataclass
class SynthesisRunStats:
    cache_hits: int = 0
    engine_calls: int = 0
    cache_store_failures: int = 0
    request_ids: List[str] = field(default_factory=list)


def previous_context(chunks: List[Chunk], position: int, limit: int) -> str:
    if position <= 0 or limit <= 0:
        return ""
    source = chunks[position].previous_context or chunks[position - 1].text
    return source[-limit:]


def next_context(chunks: List[Chunk], position: int, limit: int) -> str:
    if position >= len(chunks) - 1 or limit <= 0:
        return ""
    source = chunks[position].next_context or chunks[position + 1].text
    return source[:limit]


@dataclass
class ChunkSynthesizer:
    config: SynthesisConfig
    engine: SynthesisEngine
    cache: ChunkCache
    storage: StorageGateway
    logger: Logger
    sleep: Callable[[float], None] = time.sleep

    @property
    def voice_id(self) -> str:
        return self.config.voice_id or "bypass"

    @property
    def engine_name(self) -> str:
        return str(getattr(self.engine, "engine_name", "") or type(self.engine).__name__)

    def cache_key(self, chunk: Chunk, settings: TuningSettings) -> str:
        """Shared-cache key for `chunk` as rendered by this engine and voice."""
        return engine_cache_key(
            chunk.hash,
            engine=self.engine_name,
            voice_id=self.voice_id,
            model_id=self.config.model_id,
            sample_rate=settings.stitching.sample_rate,
        )

    def _pacing_delay_seconds(self, engine_calls: int) -> float:
        """Delay before the next engine call, given how many calls already ran."""
        if engine_calls <= 0:
            return 0.0
        if engine_calls < self.config.warmup_calls:
            return self.config.warmup_delay_ms / 1000.0
        return self.config.steady_delay_ms / 1000.0

    def _request_for(
        self,
        chunks: List[Chunk],
        position: int,
        settings: TuningSettings,
        recent_ids: Deque[str],
    ) -> SynthesisRequest:
        limit = self.config.context_chars
        return SynthesisRequest(
            text=chunks[position].ssml,
            voice_id=self.voice_id,
            model_id=self.config.model_id,
            voice_settings=settings.voice.to_engine_payload(),
            sample_rate=settings.stitching.sample_rate,
            previous_text=previous_context(chunks, position, limit),
            next_text=next_context(chunks, position, limit),
            previous_request_ids=list(recent_ids) if self.config.request_id_window > 0 else [],
            seed=self.config.seed,
        )

    def synthesize_all(
        self,
        *,
        render_id: str,
        manifest: Manifest,
        settings: TuningSettings,
        on_progress: Optional[ProgressCallback] = None,
        stats: Optional[SynthesisRunStats] = None,
    ) -> List[bytes]:
        """Return one WAV buffer per chunk, in chunk order."""
        chunks = sorted(manifest.chunks, key=lambda c: c.index)
        total = len(chunks)
        run = stats if stats is not None else SynthesisRunStats()
        recent_ids: Deque[str] = deque(maxlen=max(1, self.config.request_id_window))
        buffers: List[bytes] = []

        for position, chunk in enumerate(chunks):
            log = self.logger.bind(index=chunk.index, hash=chunk.hash[:12])
            cache_key = self.cache_key(chunk, settings)
            audio = self.cache.lookup(cache_key)
            if audio is not None:
                run.cache_hits += 1
                log.info("chunk_cache_hit")
            else:
                delay_s = self._pacing_delay_seconds(run.engine_calls)
                if delay_s > 0:
                    self.sleep(delay_s)
                request = self._request_for(chunks, position, settings, recent_ids)
                started = time.time()
                try:
                    result = self.engine.synthesize(request)
                except RenderOperationError as exc:
                    raise SynthesisServiceError(
                        f"Synthesis failed for chunk {chunk.index}: {exc}",
                        status_code=getattr(exc, "status_code", None),
                    ) from exc
                except Exception as exc:  # noqa: BLE001
                    raise SynthesisServiceError(f"Synthesis failed for chunk {chunk.index}: {exc}") from exc
                run.engine_calls += 1
                audio = result.audio_bytes
                if not audio or not is_wav(audio):
                    raise SynthesisServiceError(f"Synthesis failed for chunk {chunk.index}: engine returned no WAV audio")
                if result.request_id:
                    recent_ids.append(result.request_id)
                    run.request_ids.append(result.request_id)
                log.info(
                    "chunk_synthesized",
                    bytes=len(audio),
                    elapsed_ms=int((time.time() - started) * 1000),
                    engine=result.engine,
                )
                try:
                    self.cache.store(cache_key, audio)
                except RenderOperationError as exc:
                    run.cache_store_failures += 1
                    log.warn("chunk_cache_store_failed", error=str(exc))

            try:
                self.storage.put(
                    render_chunk_path(render_id, chunk.index, chunk.hash),
                    audio,
                    content_type="audio/wav",
                )
            except RenderOperationError as exc:
                log.warn("render_chunk_copy_failed", error=str(exc))
            buffers.append(audio)
            if on_progress is not None:
                on_progress(position + 1, total)
        return buffers

    def summary(self, run: SynthesisRunStats) -> Dict[str, object]:
        return {
            "cache_hits": run.cache_hits,
            "engine_calls": run.engine_calls,
            "cache_store_failures": run.cache_store_failures,
            "request_ids": len(run.request_ids),
        }
