"""Structured-output contract for the diagnostic provider.

``RESPONSE_SCHEMA`` is sent to the provider as its response schema;
``validate`` turns whatever came back into a ``DiagnosisResult`` or raises the
matching ``ContractError``. Classification order: empty reply, malformed JSON,
schema violation. Provider-side failures (credentials, load) are raised by the
adapters from structured status/codes via ``provider_error``.
"""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import ValidationError

from alcortex.errors import (
    ContractError,
    EmptyResponse,
    MalformedJson,
    ProviderAuthError,
    ProviderError,
    ProviderTransientError,
    SchemaViolation,
)
from alcortex.schemas import SEVERITIES, DiagnosisResult

REQUIRED_FIELDS: tuple[str, ...] = (
    "mainDiagnosis",
    "differentials",
    "severity",
    "confidenceScore",
    "interpretation",
    "safetyWarning",
    "followUp",
    "medicationRecs",
)

RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "mainDiagnosis": {"type": "STRING"},
        "differentials": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "diagnosis": {"type": "STRING"},
                    "icd10": {"type": "STRING"},
                    "confidence": {"type": "NUMBER"},
                },
                "required": ["diagnosis", "icd10", "confidence"],
            },
        },
        "severity": {"type": "STRING", "enum": list(SEVERITIES)},
        "confidenceScore": {"type": "NUMBER"},
        "interpretation": {"type": "STRING"},
        "safetyWarning": {"type": "STRING"},
        "followUp": {"type": "STRING"},
        "medicationRecs": {"type": "STRING"},
    },
    "required": list(REQUIRED_FIELDS),
}

AUTH_STATUS_CODES = frozenset({401, 403})
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
AUTH_PROVIDER_CODES = frozenset({"UNAUTHENTICATED", "PERMISSION_DENIED", "API_KEY_INVALID", "API_KEY_EXPIRED"})
TRANSIENT_PROVIDER_CODES = frozenset({"RESOURCE_EXHAUSTED", "UNAVAILABLE", "DEADLINE_EXCEEDED", "INTERNAL", "ABORTED"})

_FENCE_OPEN = re.compile(r"^```[a-zA-Z]*\s*\n?")
_FENCE_CLOSE = re.compile(r"\n?```\s*$")


def _strip_fence(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN.sub("", cleaned)
        cleaned = _FENCE_CLOSE.sub("", cleaned).strip()
    return cleaned


def _snippet(text: str, limit: int = 240) -> str:
    flat = re.sub(r"\s+", " ", text).strip()
    return flat if len(flat) <= limit else flat[:limit] + "..."


def _schema_errors(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {
            "field": ".".join(str(part) for part in err.get("loc", ())),
            "type": err.get("type"),
            "message": err.get("msg"),
        }
        for err in exc.errors()
    ]


def validate(raw: Any) -> DiagnosisResult:
    """Validate a provider reply (text, bytes or an already-parsed object)."""
    if raw is None:
        raise EmptyResponse("AI response was empty.")

    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode("utf-8", errors="replace")

    if isinstance(raw, str):
        text = _strip_fence(raw)
        if not text:
            raise EmptyResponse("AI response was empty.")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedJson(
                f"AI response is not valid JSON: {exc.msg} at position {exc.pos}",
                detail=_snippet(text),
            ) from exc
    else:
        payload = raw

    if not isinstance(payload, dict):
        raise SchemaViolation(
            f"AI response must be a JSON object, got {type(payload).__name__}",
            detail=_snippet(json.dumps(payload, default=str)),
        )

    missing = [name for name in REQUIRED_FIELDS if name not in payload]
    if missing:
        raise SchemaViolation(
            f"AI response is missing required field(s): {', '.join(missing)}",
            errors=[{"field": name, "type": "missing", "message": "Field required"} for name in missing],
        )

    try:
        return DiagnosisResult.model_validate(payload)
    except ValidationError as exc:
        errors = _schema_errors(exc)
        fields = ", ".join(sorted({err["field"] for err in errors}))
        raise SchemaViolation(f"AI response failed schema checks: {fields}", errors=errors) from exc


def provider_error(
    status_code: int | None,
    message: str,
    *,
    code: str | None = None,
    reasons: tuple[str, ...] = (),
    detail: Any = None,
) -> ProviderError:
    """Map structured provider failure metadata onto the error taxonomy."""
    tokens = {str(code).upper()} if code else set()
    tokens.update(str(reason).upper() for reason in reasons if reason)

    kwargs = {"detail": detail, "status_code": status_code, "code": code}
    if status_code in AUTH_STATUS_CODES or tokens & AUTH_PROVIDER_CODES:
        return ProviderAuthError(message, **kwargs)
    if status_code in TRANSIENT_STATUS_CODES or tokens & TRANSIENT_PROVIDER_CODES:
        return ProviderTransientError(message, **kwargs)
    if status_code is not None and status_code >= 500:
        return ProviderTransientError(message, **kwargs)
    return ProviderError(message, **kwargs)


_KIND_TO_ERROR: dict[str, type[ContractError]] = {
    EmptyResponse.kind: EmptyResponse,
    MalformedJson.kind: MalformedJson,
    SchemaViolation.kind: SchemaViolation,
}


def classify_http_failure(status_code: int, body: Any) -> ContractError:
    """Rebuild the error of a non-2xx ``/api/analyze`` reply (``{error, kind?}``)."""
    message = "Network response was not ok"
    kind = None
    detail = None
    code = None
    if isinstance(body, dict):
        message = str(body.get("error") or message)
        kind = body.get("kind")
        detail = body.get("detail")
        code = body.get("code")

    if kind in _KIND_TO_ERROR:
        if kind == SchemaViolation.kind:
            errors = body.get("errors") if isinstance(body, dict) else None
            return SchemaViolation(message, detail=detail, errors=errors if isinstance(errors, list) else None)
        return _KIND_TO_ERROR[kind](message, detail=detail)
    if kind == ProviderAuthError.kind:
        return ProviderAuthError(message, detail=detail, status_code=status_code, code=code)
    if kind == ProviderTransientError.kind:
        return ProviderTransientError(message, detail=detail, status_code=status_code, code=code)
    if kind == ProviderError.kind:
        return ProviderError(message, detail=detail, status_code=status_code, code=code)
    return provider_error(status_code, message, code=code, detail=detail)


def http_status_for(error: ContractError) -> int:
    if isinstance(error, ProviderAuthError):
        return 401
    if isinstance(error, ProviderTransientError):
        return 503
    return 502
