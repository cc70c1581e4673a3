#!/usr/bin/env python3
from __future__ import annotations

"""Object storage gateway contract, path scheme, and two local backends."""

import json
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Union, runtime_checkable

from .errors import StorageError, StorageNotFoundError, StorageTransportError

RENDERS_PREFIX = "renders"
CHUNK_CACHE_PREFIX = "cache/chunks"

CONTENT_TYPE_BY_EXTENSION = {
    "json": "application/json",
    "xml": "application/xml",
    "wav": "audio/wav",
    "mp3": "audio/mpeg",
    "aac": "audio/aac",
}

Payload = Union[bytes, str]


def content_type_for_extension(extension: str) -> str:
    normalized = str(extension or "").strip().lower().lstrip(".")
    return CONTENT_TYPE_BY_EXTENSION.get(normalized, "application/octet-stream")


def render_path(render_id: str, artifact: str) -> str:
    return f"{RENDERS_PREFIX}/{render_id}/{artifact}"


def render_chunk_path(render_id: str, index: int, content_hash: str, extension: str = "wav") -> str:
    return render_path(render_id, f"chunks/{int(index)}-{content_hash}.{extension}")


def chunk_cache_path(content_hash: str, extension: str = "wav") -> str:
    return f"{CHUNK_CACHE_PREFIX}/{content_hash}.{extension}"


def _validate_path(path: str) -> str:
    value = str(path or "").strip()
    if not value or value.startswith("/") or "\\" in value:
        raise StorageError(f"Invalid storage path: {path!r}", path=str(path))
    if any(part in {"", ".", ".."} for part in value.split("/")):
        raise StorageError(f"Invalid storage path: {path!r}", path=value)
    return value


def _as_bytes(data: Payload) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


@runtime_checkable
class StorageGateway(Protocol):
    """put/get/list-by-prefix contract consumed by the render pipeline.

    `get` raises `StorageNotFoundError` for missing objects so callers can
    retry through `fetch_with_backoff`.
    """

    def put(
        self,
        path: str,
        data: Payload,
        *,
        content_type: Optional[str] = None,
        access: str = "public",
    ) -> Dict[str, str]:
        ...

    def get(self, path: str) -> bytes:
        ...

    def list(self, prefix: str) -> List[Dict[str, str]]:
        ...


def put_json(storage: StorageGateway, path: str, payload: Dict[str, Any]) -> Dict[str, str]:
    body = json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True) + "\n"
    return storage.put(path, body, content_type="application/json")


def decode_json(raw: bytes, *, path: str = "") -> Dict[str, Any]:
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise StorageError(f"Corrupt JSON object at {path}: {exc}", path=path) from exc
    if not isinstance(payload, dict):
        raise StorageError(f"Expected JSON object at {path}", path=path)
    return payload


@dataclass
class LocalStorageGateway:
    """Filesystem-backed gateway; each put is an atomic replace."""

    root_dir: str
    base_url: str = ""

    def __post_init__(self) -> None:
        self.root_dir = os.path.abspath(self.root_dir)
        os.makedirs(self.root_dir, exist_ok=True)

    def _fs_path(self, path: str) -> str:
        return os.path.join(self.root_dir, *_validate_path(path).split("/"))

    def url_for(self, path: str) -> str:
        if self.base_url:
            return f"{self.base_url.rstrip('/')}/{path}"
        return "file://" + self._fs_path(path)

    def put(
        self,
        path: str,
        data: Payload,
        *,
        content_type: Optional[str] = None,
        access: str = "public",
    ) -> Dict[str, str]:
        target = self._fs_path(path)
        tmp = f"{target}.{threading.get_ident()}.tmp"
        try:
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(tmp, "wb") as f:
                f.write(_as_bytes(data))
            os.replace(tmp, target)
        except OSError as exc:
            try:
                if os.path.exists(tmp):
                    os.remove(tmp)
            except OSError:
                pass
            raise StorageTransportError(f"Failed to write {path}: {exc}", path=path) from exc
        return {"url": self.url_for(path), "path": path}

    def get(self, path: str) -> bytes:
        target = self._fs_path(path)
        try:
            with open(target, "rb") as f:
                return f.read()
        except FileNotFoundError as exc:
            raise StorageNotFoundError(path) from exc
        except OSError as exc:
            raise StorageTransportError(f"Failed to read {path}: {exc}", path=path) from exc

    def list(self, prefix: str) -> List[Dict[str, str]]:
        prefix = str(prefix or "").lstrip("/")
        out: List[Dict[str, str]] = []
        for dirpath, _dirnames, filenames in os.walk(self.root_dir):
            for name in filenames:
                if name.endswith(".tmp"):
                    continue
                rel = os.path.relpath(os.path.join(dirpath, name), self.root_dir).replace(os.sep, "/")
                if rel.startswith(prefix):
                    out.append({"path": rel, "url": self.url_for(rel)})
        out.sort(key=lambda item: item["path"])
        return out


@dataclass
class InMemoryStorageGateway:
    """Thread-safe dictionary-backed gateway."""

    base_url: str = "memory://"
    objects: Dict[str, bytes] = field(default_factory=dict)
    content_types: Dict[str, str] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def put(
        self,
        path: str,
        data: Payload,
        *,
        content_type: Optional[str] = None,
        access: str = "public",
    ) -> Dict[str, str]:
        key = _validate_path(path)
        with self._lock:
            self.objects[key] = _as_bytes(data)
            if content_type:
                self.content_types[key] = content_type
        return {"url": f"{self.base_url}{key}", "path": key}

    def get(self, path: str) -> bytes:
        key = _validate_path(path)
        with self._lock:
            if key not in self.objects:
                raise StorageNotFoundError(key)
            return self.objects[key]

    def list(self, prefix: str) -> List[Dict[str, str]]:
        with self._lock:
            keys = sorted(k for k in self.objects if k.startswith(str(prefix or "")))
        return [{"path": k, "url": f"{self.base_url}{k}"} for k in keys]
