"""HTTP entrypoint for the Alcortex diagnostic API."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from alcortex.accounts import AccountLog
from alcortex.config import Settings, get_settings
from alcortex.contract import http_status_for, validate
from alcortex.errors import ContractError, PersistenceError
from alcortex.kvstore import FileKeyValueStore
from alcortex.providers import DiagnosticProvider, GeminiDiagnosticProvider
from alcortex.records import RecordStore, build_record_store
from alcortex.request_builder import build_request, request_fingerprint
from alcortex.schemas import ActivityEntry, DiagnosticRequest, RecordUpsert, SavedRecord, User
from alcortex.utils import elapsed_ms, now_ms, utc_now


def _errors(exc: ValidationError) -> list[dict[str, Any]]:
    return exc.errors(include_url=False, include_context=False, include_input=False)


def _bad_request(message: str, errors: list[dict[str, Any]] | None = None) -> JSONResponse:
    payload: dict[str, Any] = {"error": message, "kind": "invalid_request"}
    if errors:
        payload["detail"] = errors
    return JSONResponse(status_code=400, content=payload)


def create_app(
    settings: Settings | None = None,
    *,
    provider: DiagnosticProvider | None = None,
    store: RecordStore | None = None,
    accounts: AccountLog | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    provider = provider or GeminiDiagnosticProvider(settings)
    store = store or build_record_store(settings, use_http=False)
    accounts = accounts or AccountLog(
        FileKeyValueStore(settings.local_storage_dir),
        activity_capacity=settings.activity_log_capacity,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        store.init()
        accounts.init()
        print(f"[alcortex] api_started: remote={store.remote_name or 'none'} provider={provider.name}")
        try:
            yield
        finally:
            accounts.close()
            await store.close()

    app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "OK",
            "engine": settings.engine_label,
            "timestamp": utc_now().isoformat(),
        }

    @app.post("/api/analyze")
    async def analyze(payload: Any = Body(None)):
        if not isinstance(payload, dict) or not payload.get("patient"):
            return _bad_request("Request body must include patient data.")
        try:
            incoming = DiagnosticRequest.model_validate(payload)
            request = build_request(incoming.patient, incoming.language, incoming.image_uri)
        except ValidationError as exc:
            return _bad_request("Invalid analyze request.", _errors(exc))
        except ValueError as exc:
            return _bad_request(str(exc))

        started = now_ms()
        fingerprint = request_fingerprint(request)[:12]
        try:
            raw = await provider.generate(request)
            result = validate(raw)
        except ContractError as exc:
            print(f"[alcortex] analyze_failed: request={fingerprint} kind={exc.kind} {exc.message}")
            return JSONResponse(status_code=http_status_for(exc), content=exc.to_payload())

        print(
            f"[alcortex] analyze_ok: request={fingerprint} severity={result.severity} "
            f"latency_ms={elapsed_ms(started)}"
        )
        return result.to_wire()

    @app.get("/api/records")
    async def list_records() -> list[dict[str, Any]]:
        try:
            records = await store.list()
        except PersistenceError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return [record.to_wire() for record in records]

    @app.post("/api/records")
    async def save_record(payload: dict[str, Any] = Body(...)):
        try:
            body = RecordUpsert.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(
                status_code=400,
                detail={"error": "Record requires patientData and analysisResult.", "errors": _errors(exc)},
            ) from exc

        record = SavedRecord(
            id=body.record_id,
            date=body.date or utc_now(),
            patient=body.patient_data,
            analysis=body.analysis_result,
            owner=body.user_email,
        )
        try:
            side = await store.save(record)
        except PersistenceError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"message": "Record saved to EMR Vault", "storage": side}

    @app.get("/api/records/{record_id}")
    async def get_record(record_id: str):
        try:
            record = await store.get(record_id)
        except PersistenceError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        if record is None:
            raise HTTPException(status_code=404, detail="record not found")
        return record.to_wire()

    @app.delete("/api/records/{record_id}")
    async def delete_record(record_id: str):
        try:
            await store.delete(record_id)
        except PersistenceError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"message": "Record deleted"}

    @app.post("/api/users/register")
    async def register_user(payload: dict[str, Any] = Body(...)):
        try:
            user = User.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=_errors(exc)) from exc
        try:
            accounts.store_user(user, replace=True)
        except (OSError, RuntimeError, ValueError) as exc:
            raise HTTPException(status_code=500, detail="Database error during registration") from exc
        return {"message": "User registered successfully"}

    @app.post("/api/activity")
    async def log_activity(payload: dict[str, Any] = Body(...)):
        try:
            entry = ActivityEntry.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=_errors(exc)) from exc
        try:
            accounts.append_activity(entry.email, entry.action)
        except (OSError, RuntimeError, ValueError) as exc:
            print(f"[alcortex] activity_log_failed: {type(exc).__name__}: {exc}")
        return {"status": "Logged"}

    return app


app = create_app()
