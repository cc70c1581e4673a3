import os
import sys
import unittest
from typing import Optional


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from narration.chunk_cache import ChunkCache  # noqa: E402
from narration.config import LoggingConfig, RetryConfig, SynthesisConfig  # noqa: E402
from narration.errors import (  # noqa: E402
    ERROR_KIND_RATE_LIMIT,
    StorageTransportError,
    SynthesisServiceError,
)
from narration.hashing import chunk_hash  # noqa: E402
from narration.logging_utils import Logger  # noqa: E402
from narration.segmenter import Chunk, Manifest  # noqa: E402
from narration.settings import TuningSettings  # noqa: E402
from narration.storage import InMemoryStorageGateway, chunk_cache_path, render_chunk_path  # noqa: E402
from narration.synthesis_engine import SilenceSynthesisEngine, SynthesisResult  # noqa: E402
from narration.synthesizer import ChunkSynthesizer, SynthesisRunStats, next_context, previous_context  # noqa: E402
from narration.wav_utils import silence_wav  # noqa: E402


def _synthesis_config(**overrides) -> SynthesisConfig:  # noqa: ANN003
    values = dict(
        bypass_engine=True,
        api_key="",
        voice_id="voice-1",
        model_id="eleven_multilingual_v2",
        base_url="https://api.elevenlabs.io",
        timeout_seconds=60,
        seed=None,
        context_chars=300,
        request_id_window=3,
        warmup_calls=3,
        warmup_delay_ms=1000,
        steady_delay_ms=250,
    )
    values.update(overrides)
    return SynthesisConfig(**values)


def _manifest(count: int) -> Manifest:
    chunks = []
    for i in range(count):
        ssml = f"Sentence number {i}."
        chunks.append(
            Chunk(
                index=i,
                text=ssml,
                ssml=ssml,
                hash=chunk_hash(ssml, {"stability": 0.58}),
                est_seconds=1.0,
                char_count=len(ssml),
            )
        )
    return Manifest(script_hash="s", settings_hash="t", chunks=chunks)


class _RecordingEngine:
    engine_name = "recording"

    def __init__(self, fail_on_call: int = 0, error: Optional[Exception] = None) -> None:
        self.requests = []
        self.fail_on_call = fail_on_call
        self.error = error

    def synthesize(self, request):  # noqa: ANN001, ANN201
        self.requests.append(request)
        if self.fail_on_call and len(self.requests) == self.fail_on_call:
            raise self.error or RuntimeError("engine exploded")
        return SynthesisResult(
            audio_bytes=silence_wav(0.2, sample_rate=request.sample_rate),
            request_id=f"req-{len(self.requests)}",
            engine=self.engine_name,
            model=request.model_id,
        )


class _CacheWriteFailingStorage(InMemoryStorageGateway):
    def put(self, path, data, *, content_type=None, access="public"):  # noqa: ANN001, ANN201
        if path.startswith("cache/"):
            raise StorageTransportError("cache bucket unavailable", path=path)
        return super().put(path, data, content_type=content_type, access=access)


class ChunkSynthesizerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.logger = Logger.create(
            LoggingConfig(level="ERROR", heartbeat_seconds=1, debug_events=False, include_event_ids=False)
        )
        self.settings = TuningSettings.defaults()
        self.sleeps = []

    def _synthesizer(self, engine, storage=None, **config) -> ChunkSynthesizer:  # noqa: ANN001, ANN003
        storage = storage if storage is not None else InMemoryStorageGateway()
        cache = ChunkCache(
            storage=storage,
            policy=RetryConfig.defaults().opportunistic,
            logger=self.logger,
            sleep=lambda _s: None,
        )
        return ChunkSynthesizer(
            config=_synthesis_config(**config),
            engine=engine,
            cache=cache,
            storage=storage,
            logger=self.logger,
            sleep=self.sleeps.append,
        )

    def test_pacing_warmup_then_steady(self) -> None:
        engine = _RecordingEngine()
        synth = self._synthesizer(engine)
        buffers = synth.synthesize_all(render_id="r1", manifest=_manifest(5), settings=self.settings)
        self.assertEqual(len(buffers), 5)
        self.assertEqual(len(engine.requests), 5)
        self.assertEqual(self.sleeps, [1.0, 1.0, 0.25, 0.25])

    def test_cached_chunks_skip_engine_and_pacing(self) -> None:
        storage = InMemoryStorageGateway()
        manifest = _manifest(3)
        first = _RecordingEngine()
        self._synthesizer(first, storage).synthesize_all(render_id="r1", manifest=manifest, settings=self.settings)
        self.sleeps.clear()

        second = _RecordingEngine()
        stats = SynthesisRunStats()
        synth = self._synthesizer(second, storage)
        buffers = synth.synthesize_all(render_id="r2", manifest=manifest, settings=self.settings, stats=stats)
        self.assertEqual(second.requests, [])
        self.assertEqual(stats.cache_hits, 3)
        self.assertEqual(self.sleeps, [])
        for chunk, audio in zip(manifest.chunks, buffers):
            self.assertEqual(audio, storage.get(chunk_cache_path(synth.cache_key(chunk, self.settings))))
            self.assertEqual(audio, storage.get(render_chunk_path("r2", chunk.index, chunk.hash)))

    def test_cache_key_binds_engine_voice_model_and_rate(self) -> None:
        chunk = _manifest(1).chunks[0]
        base = self._synthesizer(_RecordingEngine()).cache_key(chunk, self.settings)
        self.assertNotEqual(base, chunk.hash)
        self.assertEqual(base, self._synthesizer(_RecordingEngine()).cache_key(chunk, self.settings))
        self.assertNotEqual(base, self._synthesizer(_RecordingEngine(), voice_id="voice-2").cache_key(chunk, self.settings))
        self.assertNotEqual(base, self._synthesizer(_RecordingEngine(), model_id="other").cache_key(chunk, self.settings))
        self.assertNotEqual(base, self._synthesizer(SilenceSynthesisEngine()).cache_key(chunk, self.settings))
        low_rate = TuningSettings.from_dict({"stitching": {"sampleRate": 22050}})
        self.assertNotEqual(base, self._synthesizer(_RecordingEngine()).cache_key(chunk, low_rate))

    def test_voice_change_does_not_reuse_cached_audio(self) -> None:
        storage = InMemoryStorageGateway()
        manifest = _manifest(2)
        self._synthesizer(_RecordingEngine(), storage).synthesize_all(
            render_id="r1", manifest=manifest, settings=self.settings
        )
        other_voice = _RecordingEngine()
        self._synthesizer(other_voice, storage, voice_id="voice-2").synthesize_all(
            render_id="r2", manifest=manifest, settings=self.settings
        )
        self.assertEqual(len(other_voice.requests), 2)
        self.assertEqual(other_voice.requests[0].voice_id, "voice-2")

    def test_corrupt_cache_entry_falls_through_to_engine(self) -> None:
        storage = InMemoryStorageGateway()
        manifest = _manifest(1)
        engine = _RecordingEngine()
        synth = self._synthesizer(engine, storage)
        key = synth.cache_key(manifest.chunks[0], self.settings)
        storage.put(chunk_cache_path(key), b"<html>not audio</html>")
        buffers = synth.synthesize_all(render_id="r1", manifest=manifest, settings=self.settings)
        self.assertEqual(len(engine.requests), 1)
        self.assertEqual(buffers[0], storage.get(chunk_cache_path(key)))
        summary = synth.cache.stats.summary()
        self.assertEqual((summary["hits"], summary["misses"], summary["errors"]), (0, 1, 1))

    def test_context_and_request_id_window(self) -> None:
        engine = _RecordingEngine()
        manifest = _manifest(5)
        self._synthesizer(engine).synthesize_all(render_id="r1", manifest=manifest, settings=self.settings)
        first, second, last = engine.requests[0], engine.requests[1], engine.requests[4]
        self.assertEqual(first.previous_text, "")
        self.assertEqual(first.next_text, manifest.chunks[1].text)
        self.assertEqual(first.previous_request_ids, [])
        self.assertEqual(second.previous_text, manifest.chunks[0].text)
        self.assertEqual(second.previous_request_ids, ["req-1"])
        self.assertEqual(last.next_text, "")
        self.assertEqual(last.previous_request_ids, ["req-2", "req-3", "req-4"])
        self.assertEqual(last.voice_settings["use_speaker_boost"], True)
        self.assertEqual(last.output_format, "pcm_44100")

    def test_request_id_window_zero_sends_none(self) -> None:
        engine = _RecordingEngine()
        self._synthesizer(engine, request_id_window=0).synthesize_all(
            render_id="r1", manifest=_manifest(3), settings=self.settings
        )
        self.assertEqual([r.previous_request_ids for r in engine.requests], [[], [], []])

    def test_context_helpers_clip_and_prefer_stored_context(self) -> None:
        chunks = _manifest(3).chunks
        chunks[1].previous_context = "stored previous context"
        self.assertEqual(previous_context(chunks, 1, 300), "stored previous context")
        self.assertEqual(previous_context(chunks, 1, 7), "context")
        self.assertEqual(next_context(chunks, 1, 8), "Sentence")
        self.assertEqual(next_context(chunks, 2, 300), "")
        self.assertEqual(previous_context(chunks, 2, 0), "")

    def test_progress_is_reported_per_chunk(self) -> None:
        seen = []
        self._synthesizer(_RecordingEngine()).synthesize_all(
            render_id="r1",
            manifest=_manifest(3),
            settings=self.settings,
            on_progress=lambda done, total: seen.append((done, total)),
        )
        self.assertEqual(seen, [(1, 3), (2, 3), (3, 3)])

    def test_engine_failure_is_wrapped_with_chunk_index(self) -> None:
        engine = _RecordingEngine(fail_on_call=2)
        with self.assertRaises(SynthesisServiceError) as ctx:
            self._synthesizer(engine).synthesize_all(render_id="r1", manifest=_manifest(3), settings=self.settings)
        self.assertIn("Synthesis failed for chunk 1", str(ctx.exception))
        self.assertIn("engine exploded", str(ctx.exception))
        self.assertEqual(len(engine.requests), 2)

    def test_engine_status_code_survives_wrapping(self) -> None:
        engine = _RecordingEngine(fail_on_call=1, error=SynthesisServiceError("slow down", status_code=429))
        with self.assertRaises(SynthesisServiceError) as ctx:
            self._synthesizer(engine).synthesize_all(render_id="r1", manifest=_manifest(1), settings=self.settings)
        self.assertEqual(ctx.exception.status_code, 429)
        self.assertEqual(ctx.exception.error_kind, ERROR_KIND_RATE_LIMIT)

    def test_cache_store_failure_does_not_abort(self) -> None:
        storage = _CacheWriteFailingStorage()
        stats = SynthesisRunStats()
        buffers = self._synthesizer(_RecordingEngine(), storage).synthesize_all(
            render_id="r1", manifest=_manifest(2), settings=self.settings, stats=stats
        )
        self.assertEqual(len(buffers), 2)
        self.assertEqual(stats.cache_store_failures, 2)
        self.assertEqual(len(storage.list("renders/r1/chunks/")), 2)


if __name__ == "__main__":
    unittest.main()
