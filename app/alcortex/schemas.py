"""Pydantic schemas for Alcortex endpoints and internal contracts.

Python attributes are snake_case; the JSON wire format keeps the camelCase keys
the web client and the record vault have always used (``rmNo``, ``labBlood``,
``mainDiagnosis``...). Use ``to_wire()`` to produce that layout.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

from alcortex.labs import default_rows
from alcortex.utils import as_utc
from alcortex.validation import check_vital


Severity = Literal["Mild", "Moderate", "Severe", "Critical"]
Gender = Literal["Male", "Female", "Other"]
BloodType = Literal["A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-"]
SmokingLevel = Literal["None", "Passive", "Active", "Heavy"]
AlcoholLevel = Literal["None", "Occasional", "Active", "Heavy"]
ActivityLevel = Literal["Sedentary", "Light", "Moderate", "Active"]

SEVERITIES: tuple[str, ...] = ("Mild", "Moderate", "Severe", "Critical")


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class LabResult(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, coerce_numbers_to_str=True)

    parameter: str = ""
    value: str = ""
    unit: str = ""
    reference_range: str = ""


class Vitals(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, coerce_numbers_to_str=True)

    bp_systolic: str = ""
    bp_diastolic: str = ""
    heart_rate: str = ""
    respiratory_rate: str = ""
    temperature: str = ""
    spo2: str = ""
    weight: str = ""
    height: str = ""

    @field_validator(
        "bp_systolic",
        "bp_diastolic",
        "heart_rate",
        "respiratory_rate",
        "temperature",
        "spo2",
        "weight",
        "height",
    )
    @classmethod
    def _numeric_text(cls, value: str, info: ValidationInfo) -> str:
        return check_vital(info.field_name, value)


def _panel(name: str):
    return lambda: [LabResult(**row) for row in default_rows(name)]


class PatientSnapshot(WireModel):
    name: str = ""
    rm_no: str = ""
    dob: str = ""
    age: int = Field(default=0, ge=0)
    gender: Gender = "Male"
    blood_type: BloodType = "A+"

    complaints: str = ""
    history: str = ""
    meds: str = ""
    allergies: str = ""
    smoking: SmokingLevel = "None"
    alcohol: AlcoholLevel = "None"
    activity: ActivityLevel = "Moderate"

    vitals: Vitals = Field(default_factory=Vitals)
    lab_blood: list[LabResult] = Field(default_factory=_panel("blood"))
    lab_urine: list[LabResult] = Field(default_factory=_panel("urine"))
    lab_sputum: list[LabResult] = Field(default_factory=_panel("sputum"))

    def panel(self, name: str) -> list[LabResult]:
        return getattr(self, f"lab_{name}")


class Differential(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    diagnosis: str
    icd10: str
    confidence: float = Field(ge=0.0, le=1.0, strict=True)


class DiagnosisResult(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    main_diagnosis: str = Field(min_length=1)
    differentials: tuple[Differential, ...]
    severity: Severity
    confidence_score: float = Field(ge=0.0, le=1.0, strict=True)
    interpretation: str
    safety_warning: str
    follow_up: str
    medication_recs: str


class SavedRecord(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    date: datetime
    patient: PatientSnapshot
    analysis: DiagnosisResult
    owner: str | None = None

    @field_validator("date")
    @classmethod
    def _utc_if_naive(cls, value: datetime) -> datetime:
        return as_utc(value)


class DiagnosticRequest(WireModel):
    """Body of ``POST /api/analyze`` and the canonical provider input."""

    patient: PatientSnapshot
    language: str = "English"
    image_uri: str | None = None


class RecordUpsert(WireModel):
    """Body of ``POST /api/records`` (denormalized row layout of the record vault)."""

    user_email: str | None = None
    record_id: str = Field(min_length=1)
    patient_name: str | None = None
    rm_no: str | None = None
    patient_data: PatientSnapshot
    analysis_result: DiagnosisResult
    date: datetime | None = None


class User(WireModel):
    name: str
    profession_id: str = ""
    language: str = "English"
    email: str = Field(min_length=3)


class ActivityEntry(WireModel):
    email: str
    action: str
    timestamp: datetime | None = None
