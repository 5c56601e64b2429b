"""Diagnostic provider adapters.

An adapter turns a ``DiagnosticRequest`` into the provider's raw reply text and
raises the provider side of the error taxonomy from structured status codes.
Reply validation is left to ``alcortex.contract.validate``.
"""

from __future__ import annotations

from typing import Any

import httpx

from alcortex.config import Settings
from alcortex.contract import RESPONSE_SCHEMA, classify_http_failure, provider_error
from alcortex.errors import EmptyResponse, ProviderAuthError, ProviderError, ProviderTransientError
from alcortex.request_builder import render_prompt, request_fingerprint, split_data_uri
from alcortex.schemas import DiagnosticRequest
from alcortex.utils import CancelToken, elapsed_ms, now_ms, run_cancellable


class DiagnosticProvider:
    name = "provider"

    async def generate(self, request: DiagnosticRequest, *, cancel: CancelToken | None = None) -> str | None:
        raise NotImplementedError


def _error_fields(response: httpx.Response) -> tuple[str, str | None, tuple[str, ...]]:
    """``(message, status, reasons)`` from a Google-style ``{"error": {...}}`` body."""
    try:
        data = response.json()
    except ValueError:
        return (response.text[:240] or f"HTTP {response.status_code}", None, ())

    error = data.get("error") if isinstance(data, dict) else None
    if not isinstance(error, dict):
        return (f"HTTP {response.status_code}", None, ())

    reasons: list[str] = []
    for item in error.get("details") or []:
        if isinstance(item, dict) and item.get("reason"):
            reasons.append(str(item["reason"]))
    message = str(error.get("message") or f"HTTP {response.status_code}")
    status = error.get("status")
    return (message, str(status) if status else None, tuple(reasons))


class GeminiDiagnosticProvider(DiagnosticProvider):
    name = "gemini"

    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None):
        self._settings = settings
        self._transport = transport

    @property
    def model_name(self) -> str:
        return self._settings.gemini_model

    def _build_body(self, request: DiagnosticRequest) -> dict[str, Any]:
        parts: list[dict[str, Any]] = [{"text": render_prompt(request)}]
        if request.image_uri:
            inline = split_data_uri(request.image_uri)
            if inline is not None:
                mime_type, data = inline
                parts.append({"inlineData": {"mimeType": mime_type, "data": data}})
            else:
                parts.append({"fileData": {"mimeType": "image/jpeg", "fileUri": request.image_uri}})
        return {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": 0.2,
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA,
            },
        }

    async def _call_model(self, model_name: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._settings.gemini_base_url.rstrip('/')}/models/{model_name}:generateContent"
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.request_timeout_sec,
                transport=self._transport,
            ) as client:
                response = await client.post(url, params={"key": self._settings.gemini_api_key}, json=body)
        except httpx.TimeoutException as exc:
            raise ProviderTransientError(f"Gemini request timed out: {type(exc).__name__}") from exc
        except httpx.TransportError as exc:
            raise ProviderTransientError(f"Gemini transport failure: {type(exc).__name__}: {exc}") from exc

        if response.status_code >= 400:
            message, status, reasons = _error_fields(response)
            raise provider_error(
                response.status_code,
                message,
                code=status,
                reasons=reasons,
                detail={"model": model_name, "reasons": list(reasons)} if reasons else {"model": model_name},
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderTransientError("Gemini returned a non-JSON envelope", detail=response.text[:240]) from exc

    async def _generate(self, request: DiagnosticRequest) -> str | None:
        body = self._build_body(request)
        model_name = self._settings.gemini_model
        fallback = self._settings.gemini_fallback_model
        try:
            data = await self._call_model(model_name, body)
        except ProviderError as exc:
            if exc.status_code == 404 and fallback and fallback != model_name:
                print(f"[alcortex] gemini_model_retry: {model_name} returned 404; retrying {fallback}")
                data = await self._call_model(fallback, body)
            else:
                raise

        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            if feedback.get("blockReason"):
                raise EmptyResponse("AI response was blocked.", detail={"blockReason": feedback["blockReason"]})
            return None

        parts = (((candidates[0] or {}).get("content") or {}).get("parts")) or []
        text = "".join(str(p.get("text", "")) for p in parts if isinstance(p, dict))
        return text or None

    async def generate(self, request: DiagnosticRequest, *, cancel: CancelToken | None = None) -> str | None:
        if not self._settings.gemini_api_key:
            raise ProviderAuthError("Gemini API key is not configured", code="API_KEY_MISSING")

        started = now_ms()
        fingerprint = request_fingerprint(request)[:12]
        text = await run_cancellable(self._generate(request), cancel)
        print(f"[alcortex] gemini_generate: request={fingerprint} latency_ms={elapsed_ms(started)}")
        return text


class RemoteAnalyzeProvider(DiagnosticProvider):
    """Calls a deployed Alcortex service's ``POST /api/analyze``."""

    name = "remote"

    def __init__(
        self,
        base_url: str,
        *,
        timeout_sec: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout_sec = timeout_sec
        self._transport = transport

    async def _post(self, request: DiagnosticRequest) -> str | None:
        url = f"{self._base_url}/api/analyze"
        try:
            async with httpx.AsyncClient(timeout=self._timeout_sec, transport=self._transport) as client:
                response = await client.post(url, json=request.to_wire())
        except httpx.TimeoutException as exc:
            raise ProviderTransientError(f"analyze request timed out: {type(exc).__name__}") from exc
        except httpx.TransportError as exc:
            raise ProviderTransientError(f"analyze transport failure: {type(exc).__name__}: {exc}") from exc

        if response.status_code >= 400:
            try:
                body: Any = response.json()
            except ValueError:
                body = None
            raise classify_http_failure(response.status_code, body)
        return response.text

    async def generate(self, request: DiagnosticRequest, *, cancel: CancelToken | None = None) -> str | None:
        return await run_cancellable(self._post(request), cancel)
