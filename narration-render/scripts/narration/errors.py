#!/usr/bin/env python3
from __future__ import annotations

import socket
import urllib.error
from typing import Iterable, List, Optional

ERROR_KIND_NOT_FOUND = "not_found"
ERROR_KIND_FORBIDDEN = "forbidden"
ERROR_KIND_NETWORK = "network"
ERROR_KIND_TIMEOUT = "timeout"
ERROR_KIND_RATE_LIMIT = "rate_limit"
ERROR_KIND_STORAGE = "storage"
ERROR_KIND_RETRY_EXHAUSTED = "retry_exhausted"
ERROR_KIND_SYNTHESIS = "synthesis"
ERROR_KIND_MEDIA_ENGINE = "media_engine"
ERROR_KIND_ASSEMBLY = "assembly"
ERROR_KIND_INVALID_INPUT = "invalid_input"
ERROR_KIND_INVALID_TRANSITION = "invalid_transition"
ERROR_KIND_UNKNOWN = "unknown"


class RenderOperationError(RuntimeError):
    def __init__(self, message: str, *, error_kind: str) -> None:
        super().__init__(message)
        self.error_kind = str(error_kind or ERROR_KIND_UNKNOWN).strip().lower()


class StorageError(RenderOperationError):
    def __init__(self, message: str, *, path: str = "", error_kind: str = ERROR_KIND_STORAGE) -> None:
        super().__init__(message, error_kind=error_kind)
        self.path = path


class StorageNotFoundError(StorageError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Object not found: {path}", path=path, error_kind=ERROR_KIND_NOT_FOUND)


class StorageForbiddenError(StorageError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Access denied: {path}", path=path, error_kind=ERROR_KIND_FORBIDDEN)


class StorageTransportError(StorageError):
    def __init__(self, message: str, *, path: str = "") -> None:
        super().__init__(message, path=path, error_kind=ERROR_KIND_NETWORK)


class RetryExhaustedError(RenderOperationError):
    """All attempts of a retried read failed; `last_error` holds the final cause."""

    def __init__(self, *, locator: str, attempts: int, last_error: BaseException) -> None:
        self.locator = locator
        self.attempts = int(attempts)
        self.last_error = last_error
        super().__init__(
            f"Gave up on {locator} after {self.attempts} attempt(s): {last_error}",
            error_kind=ERROR_KIND_RETRY_EXHAUSTED,
        )

    @property
    def last_error_kind(self) -> str:
        return classify_render_exception(self.last_error)


class SynthesisServiceError(RenderOperationError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        code = int(status_code or 0)
        if code == 429:
            kind = ERROR_KIND_RATE_LIMIT
        elif code in {408, 504}:
            kind = ERROR_KIND_TIMEOUT
        else:
            kind = ERROR_KIND_SYNTHESIS
        super().__init__(message, error_kind=kind)
        self.status_code = code or None


class MediaEngineError(RenderOperationError):
    def __init__(self, message: str) -> None:
        super().__init__(message, error_kind=ERROR_KIND_MEDIA_ENGINE)


class AudioAssemblyError(RenderOperationError):
    def __init__(self, message: str) -> None:
        super().__init__(message, error_kind=ERROR_KIND_ASSEMBLY)


class RenderInputError(RenderOperationError):
    def __init__(self, message: str) -> None:
        super().__init__(message, error_kind=ERROR_KIND_INVALID_INPUT)


class InvalidTransitionError(RenderOperationError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Illegal render state transition: {current} -> {target}",
            error_kind=ERROR_KIND_INVALID_TRANSITION,
        )
        self.current = current
        self.target = target


def _iter_exception_chain(exc: BaseException) -> Iterable[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        yield current
        seen.add(id(current))
        next_exc = getattr(current, "__cause__", None) or getattr(current, "__context__", None)
        current = next_exc if isinstance(next_exc, BaseException) else None


def classify_render_exception(exc: BaseException) -> str:
    messages: List[str] = []
    for item in _iter_exception_chain(exc):
        if isinstance(item, RenderOperationError):
            return item.error_kind
        if isinstance(item, (TimeoutError, socket.timeout)):
            return ERROR_KIND_TIMEOUT
        if isinstance(item, urllib.error.HTTPError):
            code = int(getattr(item, "code", 0) or 0)
            if code == 404:
                return ERROR_KIND_NOT_FOUND
            if code == 403:
                return ERROR_KIND_FORBIDDEN
            if code == 429:
                return ERROR_KIND_RATE_LIMIT
            if code in {408, 504}:
                return ERROR_KIND_TIMEOUT
            if code >= 500:
                return ERROR_KIND_NETWORK
        if isinstance(item, urllib.error.URLError):
            reason = getattr(item, "reason", None)
            if isinstance(reason, (TimeoutError, socket.timeout)):
                return ERROR_KIND_TIMEOUT
            return ERROR_KIND_NETWORK
        if isinstance(item, ConnectionError):
            return ERROR_KIND_NETWORK
        messages.append(str(item or ""))

    message = " ".join(messages).lower()
    if "429" in message or "rate limit" in message:
        return ERROR_KIND_RATE_LIMIT
    if "timeout" in message or "timed out" in message:
        return ERROR_KIND_TIMEOUT
    if "connection" in message or "network" in message or "urlopen error" in message:
        return ERROR_KIND_NETWORK
    return ERROR_KIND_UNKNOWN

