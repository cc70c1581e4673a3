#!/usr/bin/env python3
from __future__ import annotations

"""Render-scoped structured logging.

Every line goes to stderr as

    [time] [LEVEL] [session:<id>] [render:<id>] [event:<id>] event_name {"field": ...}

Loggers are cheap value objects: `for_run` and `bind` return siblings that
carry the render id and extra context fields into every line they emit.
"""

import json
import sys
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterator, Optional

from .config import LoggingConfig

LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "WARNING": 30, "ERROR": 40}

NO_RENDER = "-"

_EMIT_LOCK = threading.Lock()


def _fields_json(fields: Dict[str, object]) -> str:
    return json.dumps(fields, ensure_ascii=True, sort_keys=True, default=str)


@dataclass(frozen=True)
class Logger:
    """Structured stderr logger tagged with the render it works for."""

    config: LoggingConfig
    session_id: str
    render_id: str = NO_RENDER
    context: Dict[str, object] = field(default_factory=dict)

    @staticmethod
    def create(config: LoggingConfig) -> "Logger":
        return Logger(config=config, session_id=uuid.uuid4().hex[:10])

    def for_run(self, render_id: str) -> "Logger":
        """Sibling logger whose lines carry `render_id`."""
        return replace(self, render_id=str(render_id or self.render_id))

    def bind(self, **fields: object) -> "Logger":
        """Sibling logger that adds `fields` to every line."""
        merged = dict(self.context)
        merged.update(fields)
        return replace(self, context=merged)

    def enabled(self, level: str) -> bool:
        threshold = LEVELS.get(str(self.config.level).upper(), 20)
        return LEVELS.get(level, 20) >= threshold

    def _emit(self, level: str, event: str, fields: Dict[str, object]) -> None:
        if not self.enabled(level):
            return
        payload = dict(self.context)
        payload.update(fields)
        parts = [
            f"[{time.strftime('%Y-%m-%d %H:%M:%S', time.localtime())}]",
            f"[{level}]",
            f"[session:{self.session_id}]",
            f"[render:{self.render_id}]",
        ]
        if self.config.include_event_ids:
            parts.append(f"[event:{uuid.uuid4().hex[:8]}]")
        parts.append(event)
        if payload:
            parts.append(_fields_json(payload))
        line = " ".join(parts)
        with _EMIT_LOCK:
            print(line, file=sys.stderr, flush=True)

    def debug(self, event: str, **fields: object) -> None:
        """Only emitted when debug events are switched on."""
        if self.config.debug_events:
            self._emit("DEBUG", event, fields)

    def info(self, event: str, **fields: object) -> None:
        self._emit("INFO", event, fields)

    def warn(self, event: str, **fields: object) -> None:
        self._emit("WARN", event, fields)

    def error(self, event: str, **fields: object) -> None:
        self._emit("ERROR", event, fields)

    @contextmanager
    def timed(self, name: str, **fields: object) -> Iterator[None]:
        """Log `<name>_started` and `<name>_finished` with elapsed ms and outcome."""
        started = time.monotonic()
        self.info(f"{name}_started", **fields)
        ok = False
        try:
            yield
            ok = True
        finally:
            self.info(
                f"{name}_finished",
                ok=ok,
                elapsed_ms=int((time.monotonic() - started) * 1000),
                **fields,
            )

    @contextmanager
    def heartbeat(
        self,
        label: str,
        status_fn: Optional[Callable[[], Dict[str, object]]] = None,
    ) -> Iterator[None]:
        """Periodic `heartbeat` lines while a long stage runs."""
        stop = threading.Event()
        interval = max(1, int(self.config.heartbeat_seconds))
        started = time.monotonic()

        def beat() -> None:
            while not stop.wait(interval):
                payload: Dict[str, object] = {
                    "label": label,
                    "elapsed_s": int(time.monotonic() - started),
                }
                if status_fn is not None:
                    try:
                        payload.update(status_fn())
                    except Exception as exc:  # noqa: BLE001
                        payload["status_error"] = str(exc)
                self.info("heartbeat", **payload)

        thread = threading.Thread(target=beat, name=f"heartbeat-{label}", daemon=True)
        thread.start()
        try:
            yield
        finally:
            stop.set()
            thread.join(timeout=interval)
