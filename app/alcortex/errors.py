"""Exception taxonomy shared by the intake, diagnostic and persistence paths."""

from __future__ import annotations

from typing import Any


class AlcortexError(Exception):
    """Base class for every error raised by the Alcortex core."""


class ContractError(AlcortexError):
    """A diagnostic attempt failed; ``kind`` is the stable, machine-readable tag."""

    kind = "contract_error"
    retryable = False

    def __init__(self, message: str, *, detail: Any = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "kind": self.kind}
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


class EmptyResponse(ContractError):
    kind = "empty_response"


class MalformedJson(ContractError):
    kind = "malformed_json"


class SchemaViolation(ContractError):
    kind = "schema_violation"

    def __init__(self, message: str, *, detail: Any = None, errors: list[dict[str, Any]] | None = None):
        super().__init__(message, detail=detail)
        self.errors = list(errors or [])

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.errors:
            payload["errors"] = self.errors
        return payload


class ProviderError(ContractError):
    """Provider rejected the call for a reason other than credentials or load."""

    kind = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Any = None,
        status_code: int | None = None,
        code: str | None = None,
    ):
        super().__init__(message, detail=detail)
        self.status_code = status_code
        self.code = code

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.status_code is not None:
            payload["status_code"] = self.status_code
        if self.code:
            payload["code"] = self.code
        return payload


class ProviderAuthError(ProviderError):
    kind = "provider_auth"


class ProviderTransientError(ProviderError):
    kind = "provider_transient"
    retryable = True


class RemoteUnavailable(AlcortexError):
    """Remote record store could not be reached or refused the call."""


class PersistenceError(AlcortexError):
    """The record could not be stored: both sides failed, or the remote rejected it."""


class FieldValidationError(AlcortexError, ValueError):
    def __init__(self, field_name: str, value: Any, message: str):
        super().__init__(f"{field_name}: {message}")
        self.field_name = field_name
        self.value = value


class IntakeStateError(AlcortexError):
    pass


class InvalidTransition(IntakeStateError):
    pass


class SubmissionInProgress(IntakeStateError):
    pass


class SubmissionCancelled(AlcortexError):
    pass
