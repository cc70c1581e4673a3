#!/usr/bin/env python3
from __future__ import annotations

"""Render job status: legal transitions, step checklist, persisted snapshots.

Every mutation re-reads `status.json`, merges the change into the full
snapshot and writes the whole object back, so readers always see a complete
status. States only move forward (queued -> running -> done | failed), step
`ok` flags never revert, and `startedAt` never changes after creation.
"""

import datetime as _dt
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .errors import (
    ERROR_KIND_NOT_FOUND,
    InvalidTransitionError,
    RenderOperationError,
    RetryExhaustedError,
    StorageNotFoundError,
)
from .logging_utils import Logger
from .retry import RetryPolicy, fetch_with_backoff
from .storage import StorageGateway, decode_json, put_json, render_path

STATE_QUEUED = "queued"
STATE_RUNNING = "running"
STATE_DONE = "done"
STATE_FAILED = "failed"

TERMINAL_STATES = {STATE_DONE, STATE_FAILED}

LEGAL_TRANSITIONS = {
    STATE_QUEUED: {STATE_QUEUED, STATE_RUNNING, STATE_FAILED},
    STATE_RUNNING: {STATE_RUNNING, STATE_DONE, STATE_FAILED},
    STATE_DONE: set(),
    STATE_FAILED: set(),
}

STEP_ORDER = ["ssml", "chunk", "synthesize", "stitch", "master", "analyze", "complete"]

STATUS_ARTIFACT = "status.json"


def utc_now_iso() -> str:
    now = _dt.datetime.now(_dt.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def check_transition(current: str, target: str) -> None:
    if target not in LEGAL_TRANSITIONS:
        raise InvalidTransitionError(current, target)
    if target not in LEGAL_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(current, target)


def merge_steps(existing: List[Dict[str, Any]], updates: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Merge step updates by name; `ok` is sticky and canonical order is kept."""
    by_name: Dict[str, Dict[str, Any]] = {}
    extra_order: List[str] = []
    for step in list(existing) + list(updates):
        name = str(step.get("name", "")).strip()
        if not name:
            continue
        current = by_name.get(name)
        if current is None:
            current = {"name": name, "ok": False}
            by_name[name] = current
            if name not in STEP_ORDER:
                extra_order.append(name)
        current["ok"] = bool(current.get("ok")) or bool(step.get("ok"))
        for key in ("done", "total"):
            if step.get(key) is not None:
                current[key] = int(step[key])
    ordered = [by_name[name] for name in STEP_ORDER if name in by_name]
    ordered.extend(by_name[name] for name in extra_order)
    return ordered


def new_status(*, state: str = STATE_QUEUED, total: int = 0, now: Optional[str] = None) -> Dict[str, Any]:
    stamp = now or utc_now_iso()
    return {
        "state": state,
        "progress": {"total": int(total), "done": 0},
        "steps": [],
        "startedAt": stamp,
        "updatedAt": stamp,
        "error": None,
    }


@dataclass
class JobStateMachine:
    """Single writer of one render's `status.json`."""

    storage: StorageGateway
    render_id: str
    policy: RetryPolicy
    logger: Logger
    clock: Callable[[], str] = utc_now_iso
    sleep: Callable[[float], None] = time.sleep
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def status_path(self) -> str:
        return render_path(self.render_id, STATUS_ARTIFACT)

    def load(self) -> Optional[Dict[str, Any]]:
        """Read the stored status; None only when it is genuinely absent."""
        try:
            raw = fetch_with_backoff(
                lambda: self.storage.get(self.status_path),
                locator=self.status_path,
                policy=self.policy,
                logger=self.logger,
                sleep=self.sleep,
            )
        except RetryExhaustedError as exc:
            if exc.last_error_kind == ERROR_KIND_NOT_FOUND:
                return None
            raise
        except StorageNotFoundError:
            return None
        return decode_json(raw, path=self.status_path)

    def create(self, *, total: int, steps: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        """Write the initial queued status at submission time."""
        status = new_status(state=STATE_QUEUED, total=total, now=self.clock())
        status["steps"] = merge_steps([], steps or [])
        with self._lock:
            put_json(self.storage, self.status_path, status)
        return status

    def update(
        self,
        *,
        state: Optional[str] = None,
        progress: Optional[Dict[str, int]] = None,
        steps: Optional[List[Dict[str, Any]]] = None,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Read-merge-write the full status snapshot."""
        with self._lock:
            current = self.load()
            if current is None:
                self.logger.warn("status_missing_recreated", render_id=self.render_id)
                current = new_status(state=STATE_QUEUED, now=self.clock())
            current_state = str(current.get("state", STATE_QUEUED))
            if current_state in TERMINAL_STATES:
                raise InvalidTransitionError(current_state, state or current_state)
            if state is not None:
                check_transition(current_state, state)
                current["state"] = state
            if progress is not None:
                merged = dict(current.get("progress") or {})
                merged.update({k: int(v) for k, v in progress.items()})
                current["progress"] = merged
            if steps:
                current["steps"] = merge_steps(list(current.get("steps") or []), steps)
            if error is not None:
                current["error"] = str(error)
            if not current.get("startedAt"):
                current["startedAt"] = self.clock()
            current["updatedAt"] = self.clock()
            put_json(self.storage, self.status_path, current)
            return current

    def start(self, total: int) -> Dict[str, Any]:
        return self.update(
            state=STATE_RUNNING,
            progress={"total": total, "done": 0},
            steps=[
                {"name": "ssml", "ok": True},
                {"name": "chunk", "ok": True},
                {"name": "synthesize", "ok": False, "done": 0, "total": total},
            ],
        )

    def chunk_progress(self, done: int, total: int) -> Dict[str, Any]:
        return self.update(
            progress={"total": total, "done": done},
            steps=[{"name": "synthesize", "ok": done >= total, "done": done, "total": total}],
        )

    def step_started(self, name: str) -> Dict[str, Any]:
        return self.update(steps=[{"name": name, "ok": False}])

    def step_done(self, name: str) -> Dict[str, Any]:
        return self.update(steps=[{"name": name, "ok": True}])

    def finish(self, total: int) -> Dict[str, Any]:
        return self.update(
            state=STATE_DONE,
            progress={"total": total, "done": total},
            steps=[{"name": "analyze", "ok": True}, {"name": "complete", "ok": True}],
        )

    def fail(self, message: str) -> Optional[Dict[str, Any]]:
        """Best-effort terminal failure record; never masks the original error."""
        try:
            return self.update(state=STATE_FAILED, error=message or "Unknown error")
        except InvalidTransitionError as exc:
            self.logger.warn("status_fail_skipped", render_id=self.render_id, reason=str(exc))
        except RenderOperationError as exc:
            self.logger.error("status_fail_not_persisted", render_id=self.render_id, error=str(exc))
        return None
