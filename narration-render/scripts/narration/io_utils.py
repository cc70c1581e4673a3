#!/usr/bin/env python3
from __future__ import annotations

"""Text input helpers for the command-line entrypoint."""

from typing import Callable, Optional, Sequence, Tuple

from .errors import RenderInputError

NARRATION_ENCODINGS = ("utf-8", "utf-8-sig", "cp1252", "latin-1")


def read_text_file_with_fallback(
    path: str,
    *,
    encodings: Sequence[str] = NARRATION_ENCODINGS,
    on_fallback: Optional[Callable[[str], None]] = None,
) -> Tuple[str, str]:
    """Read a narration script, trying each encoding in turn.

    Returns `(content, encoding_used)`. Missing or unreadable files raise
    `OSError` unchanged; only decoding failures fall through to the next
    encoding.
    """
    last_exc: Optional[UnicodeDecodeError] = None
    for enc in encodings:
        try:
            with open(path, "r", encoding=enc) as f:
                data = f.read()
        except UnicodeDecodeError as exc:
            last_exc = exc
            continue
        if enc != encodings[0] and on_fallback is not None:
            on_fallback(enc)
        return data, enc
    raise RenderInputError(f"Could not decode {path} with {', '.join(encodings)}: {last_exc}")
