"""Remote record backends: the Alcortex records API and S3 object storage.

Every failure to reach or use the remote side surfaces as ``RemoteUnavailable``
so ``RecordStore`` can fall back to the local vault. A 4xx rejection from the
records API is a bad record, not an outage: it raises ``PersistenceError`` and
nothing is written locally.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
from pydantic import ValidationError

from alcortex.errors import PersistenceError, RemoteUnavailable
from alcortex.schemas import RecordUpsert, SavedRecord


class RecordBackend:
    name = "remote"

    async def save(self, record: SavedRecord) -> None:
        raise NotImplementedError

    async def list(self) -> list[SavedRecord]:
        raise NotImplementedError

    async def get(self, record_id: str) -> SavedRecord | None:
        raise NotImplementedError

    async def delete(self, record_id: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


def _maybe_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def record_from_row(row: dict[str, Any]) -> SavedRecord:
    """Accept either a denormalized record or a raw vault row with JSON-text columns."""
    if "patient" in row and "analysis" in row:
        return SavedRecord.model_validate(
            {**row, "patient": _maybe_json(row["patient"]), "analysis": _maybe_json(row["analysis"])}
        )
    return SavedRecord.model_validate(
        {
            "id": row.get("recordId") or row.get("id"),
            "date": row.get("date") or row.get("created_at") or row.get("createdAt"),
            "patient": _maybe_json(row.get("patientData")),
            "analysis": _maybe_json(row.get("analysisResult")),
            "owner": row.get("userEmail") or row.get("owner"),
        }
    )


def upsert_body(record: SavedRecord, user_email: str | None = None) -> dict[str, Any]:
    body = RecordUpsert(
        user_email=user_email or record.owner,
        record_id=record.id,
        patient_name=record.patient.name,
        rm_no=record.patient.rm_no,
        patient_data=record.patient,
        analysis_result=record.analysis,
        date=record.date,
    )
    return body.to_wire()


class HttpRecordBackend(RecordBackend):
    name = "http"

    def __init__(
        self,
        base_url: str,
        *,
        timeout_sec: float = 3.0,
        user_email: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout_sec = timeout_sec
        self._user_email = user_email
        self._transport = transport

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_sec,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.request(method, url, **kwargs)
                if response.status_code == 404 and method in {"GET", "DELETE"} and path != "/api/records":
                    return response
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if 400 <= status < 500 and status not in {408, 429}:
                raise PersistenceError(f"{method} {path} rejected with {status}: {exc.response.text[:240]}") from exc
            raise RemoteUnavailable(f"{method} {path} failed: {type(exc).__name__}: {exc}") from exc
        except httpx.HTTPError as exc:
            raise RemoteUnavailable(f"{method} {path} failed: {type(exc).__name__}: {exc}") from exc

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteUnavailable(f"remote returned non-JSON body: {exc}") from exc

    async def save(self, record: SavedRecord) -> None:
        await self._request("POST", "/api/records", json=upsert_body(record, self._user_email))

    async def list(self) -> list[SavedRecord]:
        response = await self._request("GET", "/api/records")
        rows = self._decode(response)
        if not isinstance(rows, list):
            raise RemoteUnavailable("remote record listing is not a JSON array")

        records: list[SavedRecord] = []
        for row in rows:
            try:
                records.append(record_from_row(row))
            except (ValueError, TypeError, AttributeError) as exc:
                rid = row.get("recordId") or row.get("id") if isinstance(row, dict) else None
                print(f"[alcortex] remote_record_skipped: id={rid} {type(exc).__name__}")
        return records

    async def get(self, record_id: str) -> SavedRecord | None:
        response = await self._request("GET", f"/api/records/{record_id}")
        if response.status_code == 404:
            return None
        try:
            return record_from_row(self._decode(response))
        except (ValueError, TypeError, AttributeError) as exc:
            raise RemoteUnavailable(f"remote record {record_id} is unreadable: {exc}") from exc

    async def delete(self, record_id: str) -> None:
        await self._request("DELETE", f"/api/records/{record_id}")


def _s3_error_code(exc: Exception) -> str | None:
    response = getattr(exc, "response", None)
    if isinstance(response, dict):
        return str((response.get("Error") or {}).get("Code") or "") or None
    return None


class S3RecordBackend(RecordBackend):
    """One JSON object per record under ``<prefix>/records/<id>.json``."""

    name = "s3"

    def __init__(
        self,
        bucket: str,
        *,
        prefix: str = "alcortex",
        region: str = "us-east-1",
        timeout_sec: float = 3.0,
        client: Any = None,
    ):
        self._bucket = bucket
        self._prefix = prefix.strip("/")
        self._region = region
        self._timeout_sec = timeout_sec
        self._client = client

    def _s3(self) -> Any:
        if self._client is None:
            try:
                import boto3  # type: ignore
                from botocore.config import Config  # type: ignore

                self._client = boto3.client(
                    "s3",
                    region_name=self._region,
                    config=Config(
                        connect_timeout=self._timeout_sec,
                        read_timeout=self._timeout_sec,
                        retries={"max_attempts": 1},
                    ),
                )
            except Exception as exc:
                raise RemoteUnavailable(f"s3 client unavailable: {type(exc).__name__}: {exc}") from exc
        return self._client

    def _records_prefix(self) -> str:
        return f"{self._prefix}/records/" if self._prefix else "records/"

    def _key(self, record_id: str) -> str:
        return f"{self._records_prefix()}{record_id}.json"

    async def save(self, record: SavedRecord) -> None:
        body = json.dumps(record.to_wire(), ensure_ascii=True, separators=(",", ":")).encode("utf-8")
        try:
            self._s3().put_object(
                Bucket=self._bucket,
                Key=self._key(record.id),
                Body=body,
                ContentType="application/json",
            )
        except RemoteUnavailable:
            raise
        except Exception as exc:
            raise RemoteUnavailable(f"s3 put failed: {type(exc).__name__}: {exc}") from exc

    def _read(self, key: str) -> SavedRecord:
        obj = self._s3().get_object(Bucket=self._bucket, Key=key)
        return SavedRecord.model_validate_json(obj["Body"].read())

    async def list(self) -> list[SavedRecord]:
        records: list[SavedRecord] = []
        token: str | None = None
        try:
            while True:
                kwargs: dict[str, Any] = {"Bucket": self._bucket, "Prefix": self._records_prefix()}
                if token:
                    kwargs["ContinuationToken"] = token
                page = self._s3().list_objects_v2(**kwargs)
                for item in page.get("Contents") or []:
                    key = item["Key"]
                    try:
                        records.append(self._read(key))
                    except ValidationError as exc:
                        print(f"[alcortex] s3_record_skipped: key={key} {type(exc).__name__}")
                if not page.get("IsTruncated"):
                    break
                token = page.get("NextContinuationToken")
        except RemoteUnavailable:
            raise
        except Exception as exc:
            raise RemoteUnavailable(f"s3 list failed: {type(exc).__name__}: {exc}") from exc
        return records

    async def get(self, record_id: str) -> SavedRecord | None:
        try:
            return self._read(self._key(record_id))
        except RemoteUnavailable:
            raise
        except Exception as exc:
            if _s3_error_code(exc) in {"NoSuchKey", "404", "NotFound"}:
                return None
            raise RemoteUnavailable(f"s3 get failed: {type(exc).__name__}: {exc}") from exc

    async def delete(self, record_id: str) -> None:
        try:
            self._s3().delete_object(Bucket=self._bucket, Key=self._key(record_id))
        except RemoteUnavailable:
            raise
        except Exception as exc:
            raise RemoteUnavailable(f"s3 delete failed: {type(exc).__name__}: {exc}") from exc
