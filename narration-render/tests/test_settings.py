import os
import sys
import unittest


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from narration.errors import RenderInputError  # noqa: E402
from narration.settings import DEFAULT_SETTINGS, TuningSettings  # noqa: E402


class TuningSettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = TuningSettings.defaults()
        self.assertAlmostEqual(settings.voice.stability, 0.58)
        self.assertTrue(settings.voice.speaker_boost)
        self.assertEqual(settings.ssml.break_ms.sentence, 420)
        self.assertEqual(settings.chunking.overlap_ms, 300)
        self.assertEqual(settings.stitching.crossfade_ms, 120)
        self.assertEqual(settings.stitching.channels, 1)
        self.assertEqual(settings.export.format, "mp3")
        self.assertEqual(settings.export.bitrate_kbps, 224)
        self.assertEqual(settings.to_dict(), DEFAULT_SETTINGS)

    def test_partial_payload_is_merged_over_defaults(self) -> None:
        settings = TuningSettings.from_dict(
            {"stitching": {"crossfadeMs": 0}, "export": {"format": "WAV"}}
        )
        self.assertEqual(settings.stitching.crossfade_ms, 0)
        self.assertEqual(settings.stitching.sample_rate, 44100)
        self.assertEqual(settings.export.format, "wav")
        self.assertEqual(settings.to_dict()["export"]["format"], "wav")
        self.assertEqual(settings.to_dict()["eleven"], DEFAULT_SETTINGS["eleven"])

    def test_engine_payload_uses_snake_case(self) -> None:
        payload = TuningSettings.defaults().voice.to_engine_payload()
        self.assertEqual(
            sorted(payload),
            ["similarity_boost", "stability", "style", "use_speaker_boost"],
        )

    def test_out_of_range_values_are_rejected(self) -> None:
        bad_payloads = [
            {"chunking": {"maxSec": 5}},
            {"chunking": {"overlapMs": 1500}},
            {"stitching": {"crossfadeMs": 900}},
            {"stitching": {"sampleRate": 48000}},
            {"mastering": {"highpassHz": 10}},
            {"mastering": {"deesserAmount": 1.5}},
            {"export": {"format": "flac"}},
            {"export": {"bitrateKbps": 32}},
            {"eleven": {"stability": "high"}},
            {"eleven": {"speakerBoost": 1}},
        ]
        for payload in bad_payloads:
            with self.subTest(payload=payload):
                with self.assertRaises(RenderInputError):
                    TuningSettings.from_dict(payload)

    def test_highpass_zero_disables_filter(self) -> None:
        settings = TuningSettings.from_dict({"mastering": {"highpassHz": 0}})
        self.assertEqual(settings.mastering.highpass_hz, 0)

    def test_non_mapping_payload_is_rejected(self) -> None:
        with self.assertRaises(RenderInputError):
            TuningSettings.from_dict(["not", "a", "dict"])  # type: ignore[arg-type]


if __name__ == "__main__":
    unittest.main()
