#!/usr/bin/env python3
from __future__ import annotations

"""Render job orchestration: submission and the background worker.

`submit` validates the request, writes the immutable job artifacts and a
queued status, and returns immediately. `process` is the worker entry point;
it is the only status writer once a job exists and always leaves the job in a
terminal state.
"""

import time
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from .audio_assembler import AudioAssembler
from .chunk_cache import CacheStats, ChunkCache
from .config import RenderConfig, config_fingerprint
from .diagnostics import DiagnosticsCollector
from .errors import RenderInputError, classify_render_exception
from .hashing import new_render_id, script_hash, settings_hash
from .job_state import JobStateMachine, utc_now_iso
from .logging_utils import Logger
from .retry import fetch_with_backoff
from .segmenter import Manifest, make_chunks
from .settings import TuningSettings
from .ssml import annotate_text_to_ssml
from .storage import StorageGateway, content_type_for_extension, decode_json, put_json, render_path
from .synthesis_engine import SynthesisEngine
from .synthesizer import ChunkSynthesizer, SynthesisRunStats

MAX_SCRIPT_CHARS = 50_000

REQUEST_ARTIFACT = "request.json"
SSML_ARTIFACT = "ssml.xml"
MANIFEST_ARTIFACT = "manifest.json"
RAW_AUDIO_ARTIFACT = "raw.wav"
DIAGNOSTICS_ARTIFACT = "diagnostics.json"


@dataclass(frozen=True)
class RenderSubmission:
    render_id: str
    script_hash: str
    settings_hash: str
    chunks: int
    estimated_duration_sec: float
    warnings: List[str] = field(default_factory=list)


@dataclass
class RenderHandle:
    render_id: str
    future: Future


@dataclass
class RenderResult:
    render_id: str
    final_path: str
    final_url: str
    extension: str
    mastered: bool
    diagnostics: Dict[str, Any]
    synthesis: Dict[str, object]


def validate_script(raw_script: Any) -> str:
    if not isinstance(raw_script, str):
        raise RenderInputError("rawScript must be a string")
    if not raw_script.strip():
        raise RenderInputError("rawScript is empty")
    if len(raw_script) > MAX_SCRIPT_CHARS:
        raise RenderInputError(f"rawScript exceeds {MAX_SCRIPT_CHARS} characters ({len(raw_script)})")
    return raw_script


@dataclass
class RenderService:
    config: RenderConfig
    storage: StorageGateway
    engine: SynthesisEngine
    logger: Logger
    sleep: Callable[[float], None] = time.sleep

    def _state_machine(self, render_id: str, logger: Logger) -> JobStateMachine:
        return JobStateMachine(
            storage=self.storage,
            render_id=render_id,
            policy=self.config.retry.critical,
            logger=logger,
            sleep=self.sleep,
        )

    def _read_json(self, path: str, logger: Optional[Logger] = None) -> Dict[str, Any]:
        raw = fetch_with_backoff(
            lambda: self.storage.get(path),
            locator=path,
            policy=self.config.retry.critical,
            logger=logger or self.logger,
            sleep=self.sleep,
        )
        return decode_json(raw, path=path)

    def submit(self, raw_script: Any, settings: Optional[Mapping[str, Any]] = None) -> RenderSubmission:
        """Validate and persist a new render job in the queued state."""
        script = validate_script(raw_script)
        tuning = TuningSettings.from_dict(settings)
        document = annotate_text_to_ssml(script, tuning)
        warnings = list(document.warnings)
        chunks = make_chunks(document.body, tuning, warnings=warnings)
        if not chunks:
            raise RenderInputError("Script produced no synthesizable chunks")

        render_id = new_render_id()
        logger = self.logger.for_run(render_id)
        normalized_settings = tuning.to_dict()
        s_hash = script_hash(script)
        st_hash = settings_hash(normalized_settings)
        manifest = Manifest(
            script_hash=s_hash,
            settings_hash=st_hash,
            chunks=chunks,
            chunking=dict(normalized_settings.get("chunking") or {}),
        )

        put_json(
            self.storage,
            render_path(render_id, REQUEST_ARTIFACT),
            {
                "renderId": render_id,
                "rawScript": script,
                "settings": normalized_settings,
                "scriptHash": s_hash,
                "settingsHash": st_hash,
                "createdAt": utc_now_iso(),
            },
        )
        self.storage.put(
            render_path(render_id, SSML_ARTIFACT),
            document.document,
            content_type=content_type_for_extension("xml"),
        )
        put_json(self.storage, render_path(render_id, MANIFEST_ARTIFACT), manifest.to_dict())
        self._state_machine(render_id, logger).create(
            total=len(chunks),
            steps=[{"name": "ssml", "ok": True}, {"name": "chunk", "ok": True}],
        )
        submission = RenderSubmission(
            render_id=render_id,
            script_hash=s_hash,
            settings_hash=st_hash,
            chunks=len(chunks),
            estimated_duration_sec=manifest.total_est_seconds,
            warnings=warnings,
        )
        logger.info(
            "render_submitted",
            chunks=submission.chunks,
            est_sec=submission.estimated_duration_sec,
            warnings=len(warnings),
        )
        return submission

    def submit_and_dispatch(
        self,
        raw_script: Any,
        settings: Optional[Mapping[str, Any]],
        executor: Executor,
    ) -> RenderHandle:
        """Submit, then hand the job to `executor` without waiting for it."""
        submission = self.submit(raw_script, settings)
        future = executor.submit(self.process, submission.render_id)
        return RenderHandle(render_id=submission.render_id, future=future)

    def process(self, render_id: str) -> RenderResult:
        """Run a submitted job to `done`, or record `failed` and re-raise."""
        logger = self.logger.for_run(render_id)
        state = self._state_machine(render_id, logger)
        try:
            with logger.timed("render_process", render_id=render_id):
                return self._process(render_id, logger, state)
        except Exception as exc:
            logger.error("render_failed", error=str(exc), error_kind=classify_render_exception(exc))
            state.fail(str(exc))
            raise

    def _process(self, render_id: str, logger: Logger, state: JobStateMachine) -> RenderResult:
        logger.info("render_config", fingerprint=config_fingerprint(self.config)[:16])
        manifest = Manifest.from_dict(self._read_json(render_path(render_id, MANIFEST_ARTIFACT), logger))
        request = self._read_json(render_path(render_id, REQUEST_ARTIFACT), logger)
        settings = TuningSettings.from_dict(request.get("settings"))
        total = len(manifest.chunks)
        state.start(total)

        cache = ChunkCache(
            storage=self.storage,
            policy=self.config.retry.opportunistic,
            logger=logger,
            stats=CacheStats(),
            sleep=self.sleep,
        )
        synthesizer = ChunkSynthesizer(
            config=self.config.synthesis,
            engine=self.engine,
            cache=cache,
            storage=self.storage,
            logger=logger,
            sleep=self.sleep,
        )
        run = SynthesisRunStats()
        progress = {"done": 0, "total": total}

        def on_progress(done: int, of: int) -> None:
            progress.update(done=done, total=of)
            state.chunk_progress(done, of)

        with logger.heartbeat("synthesize", status_fn=lambda: dict(progress)):
            buffers = synthesizer.synthesize_all(
                render_id=render_id,
                manifest=manifest,
                settings=settings,
                on_progress=on_progress,
                stats=run,
            )

        assembler = AudioAssembler(config=self.config.audio, logger=logger)
        state.step_started("stitch")
        stitched = assembler.stitch(
            buffers,
            crossfade_ms=settings.stitching.crossfade_ms,
            sample_rate=settings.stitching.sample_rate,
            mono=settings.stitching.mono,
        )
        self.storage.put(render_path(render_id, RAW_AUDIO_ARTIFACT), stitched, content_type="audio/wav")
        state.step_done("stitch")

        state.step_started("master")
        mastered = assembler.master_and_encode(stitched, mastering=settings.mastering, export=settings.export)
        final_path = render_path(render_id, f"final.{mastered.extension}")
        stored = self.storage.put(
            final_path,
            mastered.audio,
            content_type=content_type_for_extension(mastered.extension),
        )
        state.step_done("master")

        state.step_started("analyze")
        cache_summary = cache.stats.summary()
        diagnostics = DiagnosticsCollector(assembler=assembler, logger=logger).collect(
            manifest=manifest,
            settings=settings,
            chunk_buffers=buffers,
            stitched_wav=stitched,
            final_audio=mastered.audio,
            final_extension=mastered.extension,
            cache_summary=cache_summary,
        )
        put_json(self.storage, render_path(render_id, DIAGNOSTICS_ARTIFACT), diagnostics)
        state.finish(total)

        logger.info("cache_summary", **cache_summary)
        logger.info(
            "render_done",
            final_path=final_path,
            mastered=mastered.mastered,
            duration_sec=diagnostics.get("durationSec"),
            **synthesizer.summary(run),
        )
        return RenderResult(
            render_id=render_id,
            final_path=final_path,
            final_url=str(stored.get("url", "")),
            extension=mastered.extension,
            mastered=mastered.mastered,
            diagnostics=diagnostics,
            synthesis=synthesizer.summary(run),
        )

    def read_status(self, render_id: str) -> Dict[str, Any]:
        return self._read_json(render_path(render_id, "status.json"))

    def read_manifest(self, render_id: str) -> Manifest:
        return Manifest.from_dict(self._read_json(render_path(render_id, MANIFEST_ARTIFACT)))

    def read_diagnostics(self, render_id: str) -> Dict[str, Any]:
        return self._read_json(render_path(render_id, DIAGNOSTICS_ARTIFACT))

    def list_artifacts(self, render_id: str) -> List[Dict[str, str]]:
        return self.storage.list(render_path(render_id, ""))

