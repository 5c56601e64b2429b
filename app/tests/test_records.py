import asyncio
import io
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

from alcortex.errors import PersistenceError, RemoteUnavailable
from alcortex.kvstore import RECORDS_KEY, FileKeyValueStore, MemoryKeyValueStore
from alcortex.records import LocalRecordVault, RecordStore, sort_records
from alcortex.remote import HttpRecordBackend, RecordBackend, S3RecordBackend, record_from_row
from alcortex.schemas import DiagnosisResult, PatientSnapshot, SavedRecord

BASE_DATE = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def _analysis(diagnosis: str = "Acute bronchitis", severity: str = "Moderate") -> DiagnosisResult:
    return DiagnosisResult(
        main_diagnosis=diagnosis,
        differentials=[],
        severity=severity,
        confidence_score=0.7,
        interpretation="Viral pattern.",
        safety_warning="Return if breathless.",
        follow_up="Review in one week.",
        medication_recs="Paracetamol as needed.",
    )


def _record(record_id: str, *, offset_min: int = 0, diagnosis: str = "Acute bronchitis") -> SavedRecord:
    return SavedRecord(
        id=record_id,
        date=BASE_DATE + timedelta(minutes=offset_min),
        patient=PatientSnapshot(name="Ana", rm_no="RM-1", age=34),
        analysis=_analysis(diagnosis),
    )


class MemoryBackend(RecordBackend):
    name = "memory"

    def __init__(self):
        self.records: dict[str, SavedRecord] = {}
        self.available = True

    def _check(self):
        if not self.available:
            raise RemoteUnavailable("memory backend offline")

    async def save(self, record):
        self._check()
        self.records[record.id] = record

    async def list(self):
        self._check()
        return list(self.records.values())

    async def get(self, record_id):
        self._check()
        return self.records.get(record_id)

    async def delete(self, record_id):
        self._check()
        self.records.pop(record_id, None)


def _store(remote: RecordBackend | None = None, *, capacity: int = 200) -> tuple[RecordStore, LocalRecordVault]:
    vault = LocalRecordVault(MemoryKeyValueStore(), capacity=capacity)
    store = RecordStore(vault, remote)
    store.init()
    return store, vault


def test_remote_round_trip_leaves_local_empty():
    remote = MemoryBackend()
    store, vault = _store(remote)
    record = _record("REC-1")

    async def scenario():
        side = await store.save(record)
        return side, await store.get("REC-1")

    side, loaded = asyncio.run(scenario())

    assert side == "remote"
    assert loaded.to_wire() == record.to_wire()
    assert vault.list() == []


def test_fallback_round_trip_when_remote_down():
    remote = MemoryBackend()
    remote.available = False
    store, vault = _store(remote)
    record = _record("REC-2")

    async def scenario():
        side = await store.save(record)
        return side, await store.get("REC-2"), await store.list()

    side, loaded, listed = asyncio.run(scenario())

    assert side == "local"
    assert loaded.to_wire() == record.to_wire()
    assert [r.id for r in listed] == ["REC-2"]
    assert remote.records == {}


def test_last_write_wins_by_id():
    store, _ = _store()

    async def scenario():
        await store.save(_record("REC-3", diagnosis="Influenza"))
        await store.save(_record("REC-3", diagnosis="COVID-19"))
        return await store.list()

    listed = asyncio.run(scenario())

    assert len(listed) == 1
    assert listed[0].analysis.main_diagnosis == "COVID-19"


def test_list_is_date_descending():
    remote = MemoryBackend()
    store, _ = _store(remote)

    async def scenario():
        await store.save(_record("REC-b", offset_min=5))
        await store.save(_record("REC-a", offset_min=1))
        await store.save(_record("REC-c", offset_min=9))
        return await store.list()

    listed = asyncio.run(scenario())

    assert [r.id for r in listed] == ["REC-c", "REC-b", "REC-a"]
    assert all(listed[i].date >= listed[i + 1].date for i in range(len(listed) - 1))


def test_local_vault_is_bounded_and_evicts_oldest():
    store, vault = _store(capacity=200)

    async def scenario():
        for i in range(201):
            await store.save(_record(f"REC-{i:03d}", offset_min=i))
        return await store.list()

    listed = asyncio.run(scenario())

    assert len(listed) == 200
    assert "REC-000" not in {r.id for r in listed}
    assert listed[0].id == "REC-200"
    assert vault.capacity == 200


def test_both_sides_failing_raises_persistence_error():
    remote = MemoryBackend()
    remote.available = False
    vault = LocalRecordVault(MemoryKeyValueStore())
    store = RecordStore(vault, remote)

    with pytest.raises(PersistenceError):
        asyncio.run(store.save(_record("REC-4")))


def test_delete_and_missing_get():
    store, _ = _store(MemoryBackend())

    async def scenario():
        await store.save(_record("REC-5"))
        await store.delete("REC-5")
        return await store.get("REC-5"), await store.get("REC-unknown")

    assert asyncio.run(scenario()) == (None, None)


def test_resync_pushes_local_only_records():
    remote = MemoryBackend()
    store, vault = _store(remote)

    async def scenario():
        remote.available = False
        await store.save(_record("REC-6"))
        remote.available = True
        await store.save(_record("REC-7"))
        return await store.resync(prune_local=True)

    pushed = asyncio.run(scenario())

    assert pushed == ["REC-6"]
    assert set(remote.records) == {"REC-6", "REC-7"}
    assert vault.list() == []


def test_resync_without_remote_raises():
    store, _ = _store()
    with pytest.raises(RemoteUnavailable):
        asyncio.run(store.resync())


def test_file_vault_survives_restart(tmp_path: Path):
    record = _record("REC-8")
    first = LocalRecordVault(FileKeyValueStore(tmp_path))
    first.init()
    first.save(record)
    first.close()

    second = LocalRecordVault(FileKeyValueStore(tmp_path))
    second.init()

    assert (tmp_path / f"{RECORDS_KEY}.json").exists()
    assert [r.to_wire() for r in second.list()] == [record.to_wire()]


def test_naive_dates_are_treated_as_utc():
    record = SavedRecord(
        id="REC-9",
        date=datetime(2024, 5, 1, 9, 0),
        patient=PatientSnapshot(),
        analysis=_analysis(),
    )
    assert record.date.tzinfo is timezone.utc


def test_sort_records_dedupes_keeping_newest():
    older = _record("REC-10", offset_min=1, diagnosis="Old")
    newer = _record("REC-10", offset_min=2, diagnosis="New")
    ordered = sort_records([older, newer])
    assert [r.analysis.main_diagnosis for r in ordered] == ["New"]


def test_record_from_raw_row_parses_json_text_columns():
    record = _record("REC-11")
    row = {
        "recordId": "REC-11",
        "userEmail": "dr.ana@example.org",
        "patientName": "Ana",
        "patientData": json.dumps(record.patient.to_wire()),
        "analysisResult": json.dumps(record.analysis.to_wire()),
        "created_at": "2024-05-01T09:00:00",
    }
    parsed = record_from_row(row)

    assert parsed.id == "REC-11"
    assert parsed.owner == "dr.ana@example.org"
    assert parsed.analysis.main_diagnosis == "Acute bronchitis"
    assert parsed.date == BASE_DATE


def test_http_backend_round_trip_with_mock_transport():
    stored: dict[str, dict] = {}
    seen: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        if request.method == "POST" and request.url.path == "/api/records":
            body = json.loads(request.content)
            stored[body["recordId"]] = body
            return httpx.Response(200, json={"message": "Record saved to EMR Vault"})
        if request.method == "GET" and request.url.path == "/api/records":
            rows = [
                {
                    "recordId": rid,
                    "patientData": json.dumps(body["patientData"]),
                    "analysisResult": body["analysisResult"],
                    "date": body["date"],
                }
                for rid, body in stored.items()
            ]
            rows.append({"recordId": "REC-broken", "patientData": "{not json"})
            return httpx.Response(200, json=rows)
        if request.method == "GET" and request.url.path == "/api/records/REC-missing":
            return httpx.Response(404, json={"detail": "record not found"})
        return httpx.Response(405)

    backend = HttpRecordBackend(
        "http://records.test",
        user_email="dr.ana@example.org",
        transport=httpx.MockTransport(handler),
    )

    async def scenario():
        await backend.save(_record("REC-12"))
        return await backend.list(), await backend.get("REC-missing")

    listed, missing = asyncio.run(scenario())

    assert [r.id for r in listed] == ["REC-12"]
    assert stored["REC-12"]["userEmail"] == "dr.ana@example.org"
    assert stored["REC-12"]["rmNo"] == "RM-1"
    assert missing is None
    assert ("POST", "/api/records") in seen


def test_store_falls_back_when_http_backend_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "Database error"})

    backend = HttpRecordBackend("http://records.test", transport=httpx.MockTransport(handler))
    store, vault = _store(backend)

    side = asyncio.run(store.save(_record("REC-13")))

    assert side == "local"
    assert [r.id for r in vault.list()] == ["REC-13"]


def test_rejected_record_is_not_saved_locally():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "Record requires patientData and analysisResult."})

    backend = HttpRecordBackend("http://records.test", transport=httpx.MockTransport(handler))
    store, vault = _store(backend)

    with pytest.raises(PersistenceError):
        asyncio.run(store.save(_record("REC-15")))
    assert vault.list() == []


def test_throttled_records_api_still_falls_back():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": "slow down"})

    backend = HttpRecordBackend("http://records.test", transport=httpx.MockTransport(handler))
    store, vault = _store(backend)

    assert asyncio.run(store.save(_record("REC-16"))) == "local"
    assert [r.id for r in vault.list()] == ["REC-16"]


class FakeS3:
    def __init__(self):
        self.objects: dict[str, bytes] = {}

    def put_object(self, *, Bucket, Key, Body, ContentType):
        self.objects[Key] = Body

    def get_object(self, *, Bucket, Key):
        if Key not in self.objects:
            error = Exception("not found")
            error.response = {"Error": {"Code": "NoSuchKey"}}
            raise error
        return {"Body": io.BytesIO(self.objects[Key])}

    def list_objects_v2(self, **kwargs):
        keys = sorted(k for k in self.objects if k.startswith(kwargs["Prefix"]))
        return {"Contents": [{"Key": key} for key in keys], "IsTruncated": False}

    def delete_object(self, *, Bucket, Key):
        self.objects.pop(Key, None)


class BrokenS3:
    def put_object(self, **kwargs):
        raise ConnectionError("endpoint unreachable")


def test_s3_backend_round_trip():
    client = FakeS3()
    backend = S3RecordBackend("alcortex-bucket", prefix="emr", client=client)

    async def scenario():
        await backend.save(_record("REC-14"))
        return await backend.get("REC-14"), await backend.get("REC-none"), await backend.list()

    loaded, missing, listed = asyncio.run(scenario())

    assert "emr/records/REC-14.json" in client.objects
    assert loaded.id == "REC-14"
    assert missing is None
    assert [r.id for r in listed] == ["REC-14"]


def test_s3_failure_is_remote_unavailable():
    backend = S3RecordBackend("alcortex-bucket", client=BrokenS3())
    with pytest.raises(RemoteUnavailable):
        asyncio.run(backend.save(_record("REC-15")))
