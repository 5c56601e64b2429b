"""Record vault persistence.

``RecordStore`` writes and reads the remote backend first and falls back to the
local vault when the remote side is unavailable. Each call is served by exactly
one side; the two are never merged and never reconciled automatically (see
``resync``). Only when both sides fail does a ``PersistenceError`` escape.
"""

from __future__ import annotations

from typing import Iterable

from pydantic import ValidationError

from alcortex.config import Settings
from alcortex.errors import PersistenceError, RemoteUnavailable
from alcortex.kvstore import RECORDS_KEY, FileKeyValueStore, KeyValueStore
from alcortex.remote import HttpRecordBackend, RecordBackend, S3RecordBackend
from alcortex.schemas import SavedRecord


def sort_records(records: Iterable[SavedRecord]) -> list[SavedRecord]:
    """Newest first, one entry per id (the newest copy wins)."""
    ordered = sorted(records, key=lambda record: record.date, reverse=True)
    seen: set[str] = set()
    out: list[SavedRecord] = []
    for record in ordered:
        if record.id in seen:
            continue
        seen.add(record.id)
        out.append(record)
    return out


class LocalRecordVault:
    def __init__(self, kv: KeyValueStore, *, capacity: int = 200, key: str = RECORDS_KEY):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._kv = kv
        self._capacity = capacity
        self._key = key

    @property
    def capacity(self) -> int:
        return self._capacity

    def init(self) -> None:
        self._kv.init()

    def close(self) -> None:
        self._kv.close()

    def _load(self) -> list[SavedRecord]:
        rows = self._kv.get_json(self._key, [])
        if not isinstance(rows, list):
            raise ValueError(f"local vault {self._key} is not a JSON array")
        records: list[SavedRecord] = []
        for row in rows:
            try:
                records.append(SavedRecord.model_validate(row))
            except ValidationError as exc:
                rid = row.get("id") if isinstance(row, dict) else None
                print(f"[alcortex] local_record_skipped: id={rid} errors={exc.error_count()}")
        return records

    def _write(self, records: Iterable[SavedRecord]) -> list[SavedRecord]:
        kept = sort_records(records)
        evicted = kept[self._capacity :]
        kept = kept[: self._capacity]
        if evicted:
            print(f"[alcortex] local_vault_trimmed: evicted={len(evicted)} capacity={self._capacity}")
        self._kv.set_json(self._key, [record.to_wire() for record in kept])
        return kept

    def save(self, record: SavedRecord) -> None:
        records = [existing for existing in self._load() if existing.id != record.id]
        records.append(record)
        self._write(records)

    def list(self) -> list[SavedRecord]:
        return sort_records(self._load())

    def get(self, record_id: str) -> SavedRecord | None:
        for record in self._load():
            if record.id == record_id:
                return record
        return None

    def delete(self, record_id: str) -> None:
        records = self._load()
        remaining = [record for record in records if record.id != record_id]
        if len(remaining) != len(records):
            self._write(remaining)


_LOCAL_ERRORS = (OSError, ValueError, RuntimeError)


class RecordStore:
    def __init__(self, local: LocalRecordVault, remote: RecordBackend | None = None):
        self._local = local
        self._remote = remote

    @property
    def remote_name(self) -> str | None:
        return self._remote.name if self._remote is not None else None

    def init(self) -> None:
        self._local.init()

    async def close(self) -> None:
        if self._remote is not None:
            await self._remote.close()
        self._local.close()

    @staticmethod
    def _fallback(op: str, exc: RemoteUnavailable) -> None:
        print(f"[alcortex] record_store_fallback: op={op} {exc}")

    async def save(self, record: SavedRecord) -> str:
        """Persist ``record``; returns ``"remote"`` or ``"local"`` for the side that took it."""
        if self._remote is not None:
            try:
                await self._remote.save(record)
                return "remote"
            except RemoteUnavailable as exc:
                self._fallback("save", exc)
        try:
            self._local.save(record)
        except _LOCAL_ERRORS as exc:
            raise PersistenceError(f"record {record.id} could not be stored: {exc}") from exc
        return "local"

    async def list(self) -> list[SavedRecord]:
        if self._remote is not None:
            try:
                return sort_records(await self._remote.list())
            except RemoteUnavailable as exc:
                self._fallback("list", exc)
        try:
            return self._local.list()
        except _LOCAL_ERRORS as exc:
            raise PersistenceError(f"records could not be listed: {exc}") from exc

    async def get(self, record_id: str) -> SavedRecord | None:
        if self._remote is not None:
            try:
                return await self._remote.get(record_id)
            except RemoteUnavailable as exc:
                self._fallback("get", exc)
        try:
            return self._local.get(record_id)
        except _LOCAL_ERRORS as exc:
            raise PersistenceError(f"record {record_id} could not be read: {exc}") from exc

    async def delete(self, record_id: str) -> None:
        if self._remote is not None:
            try:
                await self._remote.delete(record_id)
                return
            except RemoteUnavailable as exc:
                self._fallback("delete", exc)
        try:
            self._local.delete(record_id)
        except _LOCAL_ERRORS as exc:
            raise PersistenceError(f"record {record_id} could not be deleted: {exc}") from exc

    async def resync(self, *, prune_local: bool = False) -> list[str]:
        """Push local-only records to the remote backend. Never runs on its own.

        Raises ``RemoteUnavailable`` if the remote side cannot be listed or written;
        records pushed before the failure stay pushed.
        """
        if self._remote is None:
            raise RemoteUnavailable("no remote backend configured")

        remote_ids = {record.id for record in await self._remote.list()}
        pushed: list[str] = []
        for record in self._local.list():
            if record.id in remote_ids:
                continue
            await self._remote.save(record)
            pushed.append(record.id)
            if prune_local:
                self._local.delete(record.id)

        print(f"[alcortex] record_resync: pushed={len(pushed)} remote={self._remote.name}")
        return pushed


def build_record_store(settings: Settings, *, use_http: bool = True) -> RecordStore:
    """Wire the configured remote backend (HTTP first, then S3) over the file-backed vault.

    The API service passes ``use_http=False`` so it never calls itself.
    """
    local = LocalRecordVault(
        FileKeyValueStore(settings.local_storage_dir),
        capacity=settings.local_record_capacity,
    )
    remote: RecordBackend | None = None
    if use_http and settings.api_base_url:
        remote = HttpRecordBackend(settings.api_base_url, timeout_sec=settings.remote_timeout_sec)
    elif settings.s3_bucket:
        remote = S3RecordBackend(
            settings.s3_bucket,
            prefix=settings.s3_prefix,
            region=settings.s3_region,
            timeout_sec=settings.remote_timeout_sec,
        )
    return RecordStore(local, remote)
