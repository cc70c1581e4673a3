#!/usr/bin/env python3
from __future__ import annotations

"""Minimal text-to-SSML annotation: escaping plus pause markers.

Pauses follow the configured break table: commas, clause punctuation,
sentence ends, and paragraph boundaries each get a `<break time="Nms"/>`.
"""

import re
from dataclasses import dataclass, field
from typing import List
from xml.sax.saxutils import escape

from .settings import TuningSettings

_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_WHITESPACE_RE = re.compile(r"\s+")
_SENTENCE_END_RE = re.compile(r"([.!?]+[\"')\]]*)\s+(?=\S)")
_CLAUSE_RE = re.compile(r"(?<!&amp)(?<!&lt)(?<!&gt)([;:])\s+(?=\S)")
_COMMA_RE = re.compile(r",\s+(?=\S)")
_TAG_RE = re.compile(r"<[^>]+>")


def break_tag(ms: int) -> str:
    return f'<break time="{int(ms)}ms"/>'


@dataclass
class SsmlDocument:
    body: str
    document: str
    paragraphs: int
    warnings: List[str] = field(default_factory=list)

    @property
    def tag_count(self) -> int:
        return len(_TAG_RE.findall(self.body))


def _annotate_paragraph(text: str, settings: TuningSettings) -> str:
    breaks = settings.ssml.break_ms
    out = escape(_WHITESPACE_RE.sub(" ", text).strip())
    if breaks.comma > 0:
        out = _COMMA_RE.sub(f", {break_tag(breaks.comma)} ", out)
    if breaks.clause > 0:
        out = _CLAUSE_RE.sub(lambda m: f"{m.group(1)} {break_tag(breaks.clause)} ", out)
    if breaks.sentence > 0:
        out = _SENTENCE_END_RE.sub(lambda m: f"{m.group(1)} {break_tag(breaks.sentence)} ", out)
    return out


def annotate_text_to_ssml(raw_script: str, settings: TuningSettings) -> SsmlDocument:
    """Turn plain narration into an SSML body and a full `<speak>` document."""
    normalized = str(raw_script or "").replace("\r\n", "\n").replace("\r", "\n")
    paragraphs = [p for p in (_annotate_paragraph(chunk, settings) for chunk in _PARAGRAPH_SPLIT_RE.split(normalized)) if p]
    warnings: List[str] = []
    joiner = " "
    if settings.ssml.break_ms.paragraph > 0:
        joiner = f" {break_tag(settings.ssml.break_ms.paragraph)} "
    body = joiner.join(paragraphs)
    words = len(_TAG_RE.sub(" ", body).split())
    tags = len(_TAG_RE.findall(body))
    if words and tags / float(words) * 10 > 5:
        warnings.append(f"High pause-marker density: {tags} markers for {words} words")
    document = f'<speak><prosody rate="{int(round(settings.ssml.default_rate * 100))}%">{body}</prosody></speak>'
    return SsmlDocument(body=body, document=document, paragraphs=len(paragraphs), warnings=warnings)
