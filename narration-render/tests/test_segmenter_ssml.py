import os
import sys
import unittest


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from narration.errors import RenderInputError  # noqa: E402
from narration.hashing import chunk_hash  # noqa: E402
from narration.segmenter import (  # noqa: E402
    Chunk,
    Manifest,
    count_words,
    estimate_seconds,
    extract_text,
    make_chunks,
    segment_sentences,
)
from narration.settings import TuningSettings  # noqa: E402
from narration.ssml import annotate_text_to_ssml, break_tag  # noqa: E402


def _sentence(n: int, words: int = 20) -> str:
    return " ".join(f"word{n}x{i}" for i in range(words)) + "."


class SsmlAnnotationTests(unittest.TestCase):
    def test_breaks_and_document(self) -> None:
        settings = TuningSettings.defaults()
        doc = annotate_text_to_ssml("First, a clause; then more. Second sentence.\n\nNew paragraph.", settings)
        self.assertIn(f", {break_tag(140)}", doc.body)
        self.assertIn(f"; {break_tag(240)}", doc.body)
        self.assertIn(f"more. {break_tag(420)}", doc.body)
        self.assertIn(break_tag(800), doc.body)
        self.assertEqual(doc.paragraphs, 2)
        self.assertTrue(doc.document.startswith('<speak><prosody rate="98%">'))
        self.assertTrue(doc.document.endswith("</prosody></speak>"))

    def test_text_is_xml_escaped(self) -> None:
        doc = annotate_text_to_ssml("Tom & Jerry <3", TuningSettings.defaults())
        self.assertIn("Tom &amp; Jerry &lt;3", doc.body)
        self.assertEqual(extract_text(doc.body), "Tom & Jerry <3")

    def test_zero_break_settings_disable_markers(self) -> None:
        settings = TuningSettings.from_dict(
            {"ssml": {"breakMs": {"comma": 0, "clause": 0, "sentence": 0, "paragraph": 0}}}
        )
        doc = annotate_text_to_ssml("One, two; three. Four.", settings)
        self.assertEqual(doc.tag_count, 0)


class SegmenterTests(unittest.TestCase):
    def test_segment_sentences_keeps_trailing_markup_and_remainder(self) -> None:
        body = f'Hello there. {break_tag(420)} How are you? trailing words'
        sentences = segment_sentences(body)
        self.assertEqual([s.text for s in sentences], ["Hello there.", "How are you?", "trailing words"])
        self.assertIn(break_tag(420), sentences[0].ssml)

    def test_estimate_seconds_uses_rate(self) -> None:
        text = " ".join(["w"] * 145)
        self.assertAlmostEqual(estimate_seconds(text, 1.0), 60.0)
        self.assertAlmostEqual(estimate_seconds(text, 2.0), 30.0)
        self.assertEqual(count_words("  a b   c "), 3)

    def test_single_short_script_is_one_chunk(self) -> None:
        settings = TuningSettings.defaults()
        doc = annotate_text_to_ssml("Hello world.", settings)
        chunks = make_chunks(doc.body, settings)
        self.assertEqual(len(chunks), 1)
        only = chunks[0]
        self.assertEqual(only.index, 0)
        self.assertEqual(only.text, "Hello world.")
        self.assertNotIn("<break", only.ssml)
        self.assertEqual(only.hash, chunk_hash(only.ssml, settings.voice.to_dict()))
        self.assertEqual(only.previous_context, "")
        self.assertEqual(only.next_context, "")

    def test_chunks_respect_max_seconds_and_carry_overlap_and_context(self) -> None:
        settings = TuningSettings.from_dict({"chunking": {"maxSec": 10, "overlapMs": 300, "contextSentences": 1}})
        script = " ".join(_sentence(n) for n in range(3))
        doc = annotate_text_to_ssml(script, settings)
        chunks = make_chunks(doc.body, settings)
        self.assertEqual([c.index for c in chunks], [0, 1, 2])
        for chunk in chunks:
            self.assertLessEqual(chunk.est_seconds, 10)
        self.assertFalse(chunks[0].ssml.startswith(break_tag(150)))
        self.assertTrue(chunks[0].ssml.endswith(break_tag(150)))
        self.assertTrue(chunks[1].ssml.startswith(break_tag(150)))
        self.assertFalse(chunks[2].ssml.endswith(break_tag(150)))
        self.assertEqual(chunks[1].previous_context, chunks[0].text)
        self.assertEqual(chunks[1].next_context, chunks[2].text)

    def test_voice_settings_change_chunk_hashes(self) -> None:
        base = TuningSettings.defaults()
        other = TuningSettings.from_dict({"eleven": {"stability": 0.3}})
        a = make_chunks(annotate_text_to_ssml("Same words.", base).body, base)
        b = make_chunks(annotate_text_to_ssml("Same words.", other).body, other)
        self.assertEqual(a[0].ssml, b[0].ssml)
        self.assertNotEqual(a[0].hash, b[0].hash)


class ManifestTests(unittest.TestCase):
    def _chunks(self):  # noqa: ANN202
        settings = TuningSettings.from_dict({"chunking": {"maxSec": 10}})
        script = " ".join(_sentence(n) for n in range(3))
        return make_chunks(annotate_text_to_ssml(script, settings).body, settings)

    def test_from_dict_orders_by_explicit_index(self) -> None:
        manifest = Manifest(script_hash="s", settings_hash="t", chunks=self._chunks())
        payload = manifest.to_dict()
        payload["chunks"] = list(reversed(payload["chunks"]))
        loaded = Manifest.from_dict(payload)
        self.assertEqual([c.index for c in loaded.chunks], [0, 1, 2])
        self.assertEqual([c.hash for c in loaded.chunks], [c.hash for c in manifest.chunks])
        self.assertEqual(payload["chunks"][-1]["blob"], f"chunks/0-{manifest.chunks[0].hash}.wav")

    def test_from_dict_rejects_gaps_and_missing_index(self) -> None:
        payload = Manifest(script_hash="s", settings_hash="t", chunks=self._chunks()).to_dict()
        gapped = dict(payload, chunks=[payload["chunks"][0], payload["chunks"][2]])
        with self.assertRaises(RenderInputError):
            Manifest.from_dict(gapped)
        no_index = dict(payload["chunks"][0])
        del no_index["index"]
        with self.assertRaises(RenderInputError):
            Chunk.from_dict(no_index)
        with self.assertRaises(RenderInputError):
            Manifest.from_dict({"chunks": []})


if __name__ == "__main__":
    unittest.main()
