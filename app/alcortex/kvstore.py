"""Keyed JSON blob storage backing every local fallback collection.

Each logical collection lives under one fixed key, serialized as a single JSON
document. With ``FileKeyValueStore`` that is ``<root>/<key>.json``; this layout
is the on-disk format of the local fallback and must stay stable across
restarts. Writes replace the whole blob atomically; a read-modify-write by two
processes on the same key is not coordinated.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

USERS_KEY = "alcortex_db_users"
ACTIVITY_KEY = "alcortex_activity_log"
RECORDS_KEY = "alcortex_emr_vault"
DRAFT_KEY = "alcortex_patient_draft"


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, separators=(",", ":"), default=str)


class KeyValueStore:
    def init(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def get_json(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set_json(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class FileKeyValueStore(KeyValueStore):
    def __init__(self, root: str | Path):
        self._root = Path(root)
        self._open = False

    @property
    def root(self) -> Path:
        return self._root

    def init(self) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        self._open = True

    def close(self) -> None:
        self._open = False

    def _path(self, key: str) -> Path:
        if not self._open:
            raise RuntimeError("key-value store is not initialised")
        if not key or "/" in key or "\\" in key or key.startswith("."):
            raise ValueError(f"invalid storage key: {key!r}")
        return self._root / f"{key}.json"

    def get_json(self, key: str, default: Any = None) -> Any:
        path = self._path(key)
        if not path.exists():
            return default
        return json.loads(path.read_text(encoding="utf-8"))

    def set_json(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = path.with_name(f".{path.name}.tmp")
        tmp_path.write_text(_dumps(value), encoding="utf-8")
        os.replace(tmp_path, path)

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()


class MemoryKeyValueStore(KeyValueStore):
    """In-process store; values are kept serialized so callers never share objects."""

    def __init__(self) -> None:
        self._blobs: dict[str, str] = {}
        self._open = False

    def init(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    def _check(self) -> None:
        if not self._open:
            raise RuntimeError("key-value store is not initialised")

    def get_json(self, key: str, default: Any = None) -> Any:
        self._check()
        raw = self._blobs.get(key)
        if raw is None:
            return default
        return json.loads(raw)

    def set_json(self, key: str, value: Any) -> None:
        self._check()
        self._blobs[key] = _dumps(value)

    def delete(self, key: str) -> None:
        self._check()
        self._blobs.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._blobs)
