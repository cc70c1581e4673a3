import dataclasses
import os
import sys
import unittest
from unittest import mock


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from narration.config import (  # noqa: E402
    RenderConfig,
    RetryConfig,
    SynthesisConfig,
    _env_bool,
    config_fingerprint,
)


class RenderConfigTests(unittest.TestCase):
    def test_defaults_from_empty_environment(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            cfg = RenderConfig.from_env()
        self.assertFalse(cfg.synthesis.bypass_engine)
        self.assertEqual(cfg.synthesis.model_id, "eleven_multilingual_v2")
        self.assertEqual(cfg.synthesis.context_chars, 300)
        self.assertEqual(cfg.synthesis.request_id_window, 3)
        self.assertEqual(
            (cfg.synthesis.warmup_calls, cfg.synthesis.warmup_delay_ms, cfg.synthesis.steady_delay_ms),
            (3, 1000, 250),
        )
        self.assertEqual(cfg.retry, RetryConfig.defaults())
        self.assertEqual(cfg.audio.ffmpeg_bin, "ffmpeg")
        self.assertEqual(cfg.logging.level, "INFO")

    def test_bypass_and_seed_from_env(self) -> None:
        with mock.patch.dict(os.environ, {"BYPASS_ELEVENLABS": "true", "TTS_SEED": "42"}, clear=True):
            cfg = SynthesisConfig.from_env()
        self.assertTrue(cfg.bypass_engine)
        self.assertEqual(cfg.seed, 42)
        with mock.patch.dict(os.environ, {"TTS_SEED": "not-a-number"}, clear=True):
            self.assertIsNone(SynthesisConfig.from_env().seed)

    def test_request_id_window_is_clamped(self) -> None:
        with mock.patch.dict(os.environ, {"TTS_REQUEST_ID_WINDOW": "9"}, clear=True):
            self.assertEqual(SynthesisConfig.from_env().request_id_window, 3)

    def test_serverless_deployment_uses_longer_spacing(self) -> None:
        with mock.patch.dict(os.environ, {"RENDER_DEPLOYMENT": "serverless"}, clear=True):
            retry = RetryConfig.from_env()
        self.assertEqual(retry.critical.max_attempts, 3)
        self.assertEqual(retry.critical.base_delay_ms, 2000)
        self.assertEqual(retry.critical.max_delay_ms, 8000)
        self.assertEqual(retry.critical.multiplier, 1.5)

    def test_storage_attempt_overrides(self) -> None:
        env = {"STORAGE_CRITICAL_ATTEMPTS": "7", "STORAGE_CACHE_ATTEMPTS": "0", "STORAGE_RETRY_BASE_MS": "50"}
        with mock.patch.dict(os.environ, env, clear=True):
            retry = RetryConfig.from_env()
        self.assertEqual(retry.critical.max_attempts, 7)
        self.assertEqual(retry.opportunistic.max_attempts, 1)
        self.assertEqual(retry.opportunistic.base_delay_ms, 50)

    def test_retry_multiplier_ignores_non_finite_values(self) -> None:
        with mock.patch.dict(os.environ, {"STORAGE_RETRY_MULTIPLIER": "nan"}, clear=True):
            self.assertEqual(RetryConfig.from_env().critical.multiplier, 2.0)
        with mock.patch.dict(os.environ, {"STORAGE_RETRY_MULTIPLIER": "0.5"}, clear=True):
            self.assertEqual(RetryConfig.from_env().critical.multiplier, 1.0)

    def test_env_bool_empty_uses_default(self) -> None:
        with mock.patch.dict(os.environ, {"TEST_BOOL_EMPTY_CONFIG": ""}, clear=False):
            self.assertTrue(_env_bool("TEST_BOOL_EMPTY_CONFIG", True))

    def test_fingerprint_ignores_api_key(self) -> None:
        with mock.patch.dict(os.environ, {"ELEVENLABS_API_KEY": "one"}, clear=True):
            first = RenderConfig.from_env()
        second = dataclasses.replace(first, synthesis=dataclasses.replace(first.synthesis, api_key="two"))
        third = dataclasses.replace(first, synthesis=dataclasses.replace(first.synthesis, voice_id="other"))
        self.assertEqual(config_fingerprint(first), config_fingerprint(second))
        self.assertNotEqual(config_fingerprint(first), config_fingerprint(third))


if __name__ == "__main__":
    unittest.main()
