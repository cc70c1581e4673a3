#!/usr/bin/env python3
from __future__ import annotations

"""Sentence-packed chunking of an SSML body into a render manifest."""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from xml.sax.saxutils import unescape

from .errors import RenderInputError
from .hashing import chunk_hash, is_content_hash
from .settings import TuningSettings
from .ssml import break_tag

BASE_WORDS_PER_MIN = 145.0
MAX_CHUNK_CHARS = 1800

_SENTENCE_RE = re.compile(r"([^.!?]*[.!?]+(?:\s*<[^>]+>\s*)*)")
_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")


def extract_text(ssml: str) -> str:
    """Plain text of an SSML fragment: tags removed, entities decoded."""
    return _WHITESPACE_RE.sub(" ", unescape(_TAG_RE.sub(" ", ssml or ""))).strip()


def count_words(text: str) -> int:
    return len(str(text or "").split())


def estimate_seconds(text: str, rate: float = 1.0) -> float:
    wpm = BASE_WORDS_PER_MIN * max(0.1, float(rate))
    return count_words(text) / wpm * 60.0


@dataclass(frozen=True)
class Sentence:
    ssml: str
    text: str


def segment_sentences(body: str) -> List[Sentence]:
    """Split on sentence punctuation, keeping trailing markup with its sentence."""
    sentences: List[Sentence] = []
    last_end = 0
    for match in _SENTENCE_RE.finditer(body or ""):
        piece = match.group(1).strip()
        if not piece:
            continue
        sentences.append(Sentence(ssml=piece, text=extract_text(piece)))
        last_end = match.end()
    remaining = (body or "")[last_end:].strip()
    if remaining:
        sentences.append(Sentence(ssml=remaining, text=extract_text(remaining)))
    return [s for s in sentences if s.text]


@dataclass
class Chunk:
    index: int
    text: str
    ssml: str
    hash: str
    est_seconds: float
    char_count: int
    previous_context: str = ""
    next_context: str = ""

    @property
    def file_name(self) -> str:
        return f"{self.index}-{self.hash}.wav"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "text": self.text,
            "ssml": self.ssml,
            "hash": self.hash,
            "estSeconds": self.est_seconds,
            "charCount": self.char_count,
            "context": {"previousText": self.previous_context, "nextText": self.next_context},
            "blob": f"chunks/{self.file_name}",
        }

    @staticmethod
    def from_dict(payload: Dict[str, Any]) -> "Chunk":
        if not isinstance(payload, dict) or "index" not in payload:
            raise RenderInputError("Manifest chunk is missing an explicit index")
        content_hash = str(payload.get("hash", ""))
        if not is_content_hash(content_hash):
            raise RenderInputError(f"Manifest chunk {payload.get('index')} has an invalid hash")
        context = payload.get("context") or {}
        return Chunk(
            index=int(payload["index"]),
            text=str(payload.get("text", "")),
            ssml=str(payload.get("ssml", "")),
            hash=content_hash,
            est_seconds=float(payload.get("estSeconds", 0.0) or 0.0),
            char_count=int(payload.get("charCount", 0) or 0),
            previous_context=str(context.get("previousText", "") or ""),
            next_context=str(context.get("nextText", "") or ""),
        )


@dataclass
class Manifest:
    script_hash: str
    settings_hash: str
    chunks: List[Chunk]
    chunking: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_est_seconds(self) -> float:
        return round(sum(c.est_seconds for c in self.chunks), 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scriptHash": self.script_hash,
            "settingsHash": self.settings_hash,
            "chunking": dict(self.chunking),
            "chunks": [c.to_dict() for c in self.chunks],
        }

    @staticmethod
    def from_dict(payload: Dict[str, Any]) -> "Manifest":
        raw_chunks = payload.get("chunks")
        if not isinstance(raw_chunks, list) or not raw_chunks:
            raise RenderInputError("Manifest has no chunks")
        chunks = sorted((Chunk.from_dict(item) for item in raw_chunks), key=lambda c: c.index)
        if [c.index for c in chunks] != list(range(len(chunks))):
            raise RenderInputError("Manifest chunk indexes must be contiguous from 0")
        return Manifest(
            script_hash=str(payload.get("scriptHash", "")),
            settings_hash=str(payload.get("settingsHash", "")),
            chunks=chunks,
            chunking=dict(payload.get("chunking") or {}),
        )


def _pack_sentences(sentences: List[Sentence], settings: TuningSettings) -> List[List[Sentence]]:
    rate = settings.ssml.default_rate
    max_sec = settings.chunking.max_sec
    groups: List[List[Sentence]] = []
    current: List[Sentence] = []
    current_text = ""
    current_chars = 0
    for sentence in sentences:
        candidate_text = f"{current_text} {sentence.text}".strip()
        candidate_chars = current_chars + len(sentence.ssml) + (1 if current else 0)
        too_long = estimate_seconds(candidate_text, rate) > max_sec or candidate_chars > MAX_CHUNK_CHARS
        if current and too_long:
            groups.append(current)
            current, current_text, current_chars = [], "", 0
            candidate_text = sentence.text
            candidate_chars = len(sentence.ssml)
        current.append(sentence)
        current_text = candidate_text
        current_chars = candidate_chars
    if current:
        groups.append(current)
    return groups


def make_chunks(body: str, settings: TuningSettings, *, warnings: Optional[List[str]] = None) -> List[Chunk]:
    """Pack sentences into chunks, add overlap pauses, and hash each chunk."""
    sentences = segment_sentences(body)
    if not sentences:
        return []
    groups = _pack_sentences(sentences, settings)
    overlap_half_ms = int(settings.chunking.overlap_ms) // 2
    context_n = int(settings.chunking.context_sentences)
    voice = settings.voice.to_dict()
    chunks: List[Chunk] = []
    for ix, group in enumerate(groups):
        ssml = " ".join(s.ssml for s in group)
        if overlap_half_ms > 0:
            if ix > 0:
                ssml = f"{break_tag(overlap_half_ms)} {ssml}"
            if ix < len(groups) - 1:
                ssml = f"{ssml} {break_tag(overlap_half_ms)}"
        text = " ".join(s.text for s in group)
        previous_context = ""
        next_context = ""
        if context_n > 0 and ix > 0:
            previous_context = " ".join(s.text for s in groups[ix - 1][-context_n:])
        if context_n > 0 and ix < len(groups) - 1:
            next_context = " ".join(s.text for s in groups[ix + 1][:context_n])
        est = round(estimate_seconds(text, settings.ssml.default_rate), 1)
        if warnings is not None and est > settings.chunking.max_sec:
            warnings.append(f"Chunk {ix} estimated at {est}s exceeds maxSec {settings.chunking.max_sec:g}")
        chunks.append(
            Chunk(
                index=ix,
                text=text,
                ssml=ssml.strip(),
                hash=chunk_hash(ssml, voice),
                est_seconds=est,
                char_count=len(ssml.strip()),
                previous_context=previous_context,
                next_context=next_context,
            )
        )
    return chunks
