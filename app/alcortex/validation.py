"""Field-level input checks applied while a draft is being edited."""

from __future__ import annotations

import re

from alcortex.errors import FieldValidationError

VITAL_FIELDS = (
    "bp_systolic",
    "bp_diastolic",
    "heart_rate",
    "respiratory_rate",
    "temperature",
    "spo2",
    "weight",
    "height",
)
DECIMAL_VITALS = frozenset({"temperature", "weight", "height"})

_INTEGER_RE = re.compile(r"^[0-9]*$")
_DECIMAL_RE = re.compile(r"^[0-9]*\.?[0-9]*$")
_LAB_VALUE_RE = re.compile(r"^-?\d*\.?\d*$|^Negative$|^Positive$|^Clear$|^Cloudy$|^\+*$", re.IGNORECASE)
_LAB_UNIT_RE = re.compile(r"^[a-zA-Z0-9%/^\-.\s]*$")

_VITAL_KEYS = {
    "bpsystolic": "bp_systolic",
    "bp_systolic": "bp_systolic",
    "bpdiastolic": "bp_diastolic",
    "bp_diastolic": "bp_diastolic",
    "heartrate": "heart_rate",
    "heart_rate": "heart_rate",
    "respiratoryrate": "respiratory_rate",
    "respiratory_rate": "respiratory_rate",
    "temperature": "temperature",
    "spo2": "spo2",
    "weight": "weight",
    "height": "height",
}


def vital_key(name: str) -> str:
    token = str(name or "").strip()
    key = _VITAL_KEYS.get(token.lower()) or _VITAL_KEYS.get(token)
    if key is None:
        raise FieldValidationError(f"vitals.{token}", None, "unknown vitals field")
    return key


def check_vital(name: str, value: str) -> str:
    key = vital_key(name)
    text = "" if value is None else str(value)
    pattern = _DECIMAL_RE if key in DECIMAL_VITALS else _INTEGER_RE
    if text and not pattern.match(text):
        kind = "a decimal number" if key in DECIMAL_VITALS else "a whole number"
        raise FieldValidationError(f"vitals.{key}", value, f"must be {kind}")
    return text


def check_lab_cell(field_name: str, value: str) -> str:
    text = "" if value is None else str(value)
    if not text:
        return text
    if field_name == "value" and not _LAB_VALUE_RE.match(text):
        raise FieldValidationError(
            "lab.value",
            value,
            "must be numeric, Negative/Positive/Clear/Cloudy, or a run of '+'",
        )
    if field_name == "unit" and not _LAB_UNIT_RE.match(text):
        raise FieldValidationError("lab.unit", value, "contains unsupported characters")
    return text
