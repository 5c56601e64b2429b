import json

import pytest
from pydantic import ValidationError

from alcortex.contract import (
    REQUIRED_FIELDS,
    RESPONSE_SCHEMA,
    classify_http_failure,
    http_status_for,
    provider_error,
    validate,
)
from alcortex.errors import (
    EmptyResponse,
    MalformedJson,
    ProviderAuthError,
    ProviderError,
    ProviderTransientError,
    SchemaViolation,
)


def _reply(**overrides):
    payload = {
        "mainDiagnosis": "Community-acquired pneumonia",
        "differentials": [
            {"diagnosis": "Acute bronchitis", "icd10": "J20.9", "confidence": 0.2},
            {"diagnosis": "Pulmonary tuberculosis", "icd10": "A15.0", "confidence": 0.1},
        ],
        "severity": "Moderate",
        "confidenceScore": 0.82,
        "interpretation": "Leukocytosis with fever and productive cough.",
        "safetyWarning": "Escalate if SpO2 drops below 92%.",
        "followUp": "Chest X-ray, review in 48 hours.",
        "medicationRecs": "Amoxicillin 500 mg TID for 5 days.",
    }
    payload.update(overrides)
    return payload


def test_valid_reply_parses():
    result = validate(json.dumps(_reply()))

    assert result.main_diagnosis == "Community-acquired pneumonia"
    assert result.severity == "Moderate"
    assert [d.icd10 for d in result.differentials] == ["J20.9", "A15.0"]
    assert result.to_wire()["confidenceScore"] == 0.82


def test_code_fence_is_tolerated():
    raw = "```json\n" + json.dumps(_reply()) + "\n```"
    assert validate(raw).confidence_score == 0.82


def test_integer_confidence_is_accepted():
    assert validate(json.dumps(_reply(confidenceScore=1))).confidence_score == 1.0


@pytest.mark.parametrize("raw", [None, "", "   \n", b""])
def test_empty_reply(raw):
    with pytest.raises(EmptyResponse):
        validate(raw)


def test_malformed_json_carries_detail():
    with pytest.raises(MalformedJson) as exc_info:
        validate('{"mainDiagnosis": "Flu", ')
    assert exc_info.value.kind == "malformed_json"
    assert "mainDiagnosis" in exc_info.value.detail
    assert exc_info.value.retryable is False


def test_missing_required_field():
    payload = _reply()
    payload.pop("followUp")

    with pytest.raises(SchemaViolation) as exc_info:
        validate(json.dumps(payload))
    assert exc_info.value.errors[0]["field"] == "followUp"


def test_non_object_reply_is_schema_violation():
    with pytest.raises(SchemaViolation):
        validate("[]")


@pytest.mark.parametrize(
    "overrides",
    [
        {"confidenceScore": 1.2},
        {"confidenceScore": -0.01},
        {"confidenceScore": "0.9"},
        {"severity": "Extreme"},
        {"mainDiagnosis": ""},
        {"differentials": [{"diagnosis": "Flu", "icd10": "J11", "confidence": 1.5}]},
        {"differentials": [{"diagnosis": "Flu", "confidence": 0.4}]},
    ],
)
def test_schema_violations(overrides):
    with pytest.raises(SchemaViolation) as exc_info:
        validate(json.dumps(_reply(**overrides)))
    assert exc_info.value.errors
    assert exc_info.value.to_payload()["kind"] == "schema_violation"


def test_result_is_frozen():
    result = validate(json.dumps(_reply()))
    with pytest.raises(ValidationError):
        result.severity = "Critical"


def test_response_schema_requires_every_field():
    assert RESPONSE_SCHEMA["required"] == list(REQUIRED_FIELDS)
    assert RESPONSE_SCHEMA["properties"]["severity"]["enum"] == ["Mild", "Moderate", "Severe", "Critical"]
    item = RESPONSE_SCHEMA["properties"]["differentials"]["items"]
    assert item["required"] == ["diagnosis", "icd10", "confidence"]


def test_provider_error_classification():
    assert isinstance(provider_error(401, "bad key"), ProviderAuthError)
    assert isinstance(provider_error(400, "bad key", reasons=("API_KEY_INVALID",)), ProviderAuthError)
    assert isinstance(provider_error(429, "slow down"), ProviderTransientError)
    assert isinstance(provider_error(503, "overloaded", code="UNAVAILABLE"), ProviderTransientError)
    assert isinstance(provider_error(None, "quota", code="RESOURCE_EXHAUSTED"), ProviderTransientError)

    other = provider_error(400, "bad request", code="INVALID_ARGUMENT")
    assert type(other) is ProviderError
    assert other.kind == "provider_error"
    assert other.retryable is False
    assert provider_error(503, "x").retryable is True


def test_classify_http_failure_rebuilds_kind():
    assert isinstance(classify_http_failure(502, {"error": "bad", "kind": "malformed_json"}), MalformedJson)
    assert isinstance(classify_http_failure(502, {"error": "bad", "kind": "empty_response"}), EmptyResponse)
    schema = classify_http_failure(502, {"error": "bad", "kind": "schema_violation", "errors": [{"field": "x"}]})
    assert isinstance(schema, SchemaViolation)
    assert schema.errors == [{"field": "x"}]
    assert isinstance(classify_http_failure(401, {"error": "no key"}), ProviderAuthError)
    assert isinstance(classify_http_failure(503, None), ProviderTransientError)
    assert type(classify_http_failure(418, {"error": "teapot"})) is ProviderError


def test_http_status_for():
    assert http_status_for(ProviderAuthError("x")) == 401
    assert http_status_for(ProviderTransientError("x")) == 503
    assert http_status_for(MalformedJson("x")) == 502
    assert http_status_for(ProviderError("x")) == 502
