"""Build the canonical diagnostic request and the provider prompt.

Everything here is pure: the same snapshot, language and image always yield the
same request, prompt text and fingerprint.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any

from alcortex.labs import PANELS
from alcortex.schemas import DiagnosticRequest, LabResult, PatientSnapshot

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(;[^,;]+)*),(?P<data>.*)$", re.DOTALL)
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=\s]+$")


def normalize_language(value: str | None, *, default: str = "English") -> str:
    token = str(value or "").strip()
    if not token:
        return default
    mapping = {
        "en": "English",
        "eng": "English",
        "english": "English",
        "id": "Bahasa Indonesia",
        "ind": "Bahasa Indonesia",
        "indonesian": "Bahasa Indonesia",
        "bahasa": "Bahasa Indonesia",
        "bahasa indonesia": "Bahasa Indonesia",
        "ru": "Russian",
        "rus": "Russian",
        "russian": "Russian",
    }
    return mapping.get(token.lower(), token)


def normalize_image(image: str | None) -> str | None:
    """Return a single image reference as a data URI or http(s) URL; bare base64 becomes JPEG."""
    if image is None:
        return None
    text = str(image).strip()
    if not text:
        return None
    if text.startswith(("http://", "https://")):
        return text
    if text.startswith("data:"):
        if not _DATA_URI_RE.match(text):
            raise ValueError("image data URI is malformed")
        return text
    if _BASE64_RE.match(text):
        payload = re.sub(r"\s+", "", text)
        return f"data:image/jpeg;base64,{payload}"
    raise ValueError("image must be a data URI, an http(s) URL or base64 content")


def split_data_uri(uri: str) -> tuple[str, str] | None:
    """``(mime_type, base64_payload)`` for a base64 data URI, else ``None``."""
    match = _DATA_URI_RE.match(uri)
    if not match or ";base64" not in (match.group("params") or ""):
        return None
    return match.group("mime") or "image/jpeg", match.group("data")


def _clean_panel(rows: list[LabResult]) -> list[LabResult]:
    cleaned: list[LabResult] = []
    for row in rows:
        parameter = row.parameter.strip()
        value = row.value.strip()
        if not parameter and not value:
            continue
        cleaned.append(
            LabResult(
                parameter=parameter,
                value=value,
                unit=row.unit.strip(),
                reference_range=row.reference_range.strip(),
            )
        )
    return cleaned


def build_request(
    snapshot: PatientSnapshot,
    language: str | None = None,
    image: str | None = None,
) -> DiagnosticRequest:
    patient = snapshot.model_copy(deep=True)
    for panel in PANELS:
        setattr(patient, f"lab_{panel}", _clean_panel(snapshot.panel(panel)))
    return DiagnosticRequest(
        patient=patient,
        language=normalize_language(language),
        image_uri=normalize_image(image),
    )


def canonical_json(request: DiagnosticRequest) -> str:
    return json.dumps(request.to_wire(), ensure_ascii=True, sort_keys=True, separators=(",", ":"))


def request_fingerprint(request: DiagnosticRequest) -> str:
    return hashlib.sha256(canonical_json(request).encode("utf-8")).hexdigest()


def _labs_payload(patient: PatientSnapshot) -> dict[str, list[dict[str, Any]]]:
    return {panel: [row.to_wire() for row in patient.panel(panel)] for panel in PANELS}


def render_prompt(request: DiagnosticRequest) -> str:
    patient = request.patient
    vitals = patient.vitals
    labs = json.dumps(_labs_payload(patient), ensure_ascii=True, sort_keys=True)
    lines = [
        "You are Alcortex AI, a senior clinical diagnostic system.",
        "Analyze the following patient data and provide a rigorous medical report.",
        f"The response MUST be entirely in {request.language}.",
        "",
        f"PATIENT: {patient.name or 'N/A'} ({patient.age}Y, {patient.gender}), blood type {patient.blood_type}",
        "",
        "1. SUBJECTIVE DATA:",
        f"   - Main Complaints: {patient.complaints or 'N/A'}",
        f"   - Medical History: {patient.history or 'N/A'}",
        f"   - Current Medications: {patient.meds or 'N/A'}",
        f"   - Allergies: {patient.allergies or 'N/A'}",
        "",
        "2. OBJECTIVE DATA (VITALS):",
        f"   - BP: {vitals.bp_systolic or '?'}/{vitals.bp_diastolic or '?'} mmHg",
        f"   - Heart Rate: {vitals.heart_rate or 'N/A'} bpm",
        f"   - Resp Rate: {vitals.respiratory_rate or 'N/A'}/min",
        f"   - Temperature: {vitals.temperature or 'N/A'} C",
        f"   - SpO2: {vitals.spo2 or 'N/A'}%",
        f"   - Weight: {vitals.weight or 'N/A'} kg, Height: {vitals.height or 'N/A'} cm",
        "",
        "3. LIFESTYLE FACTORS:",
        f"   - Smoking: {patient.smoking}",
        f"   - Alcohol: {patient.alcohol}",
        f"   - Physical Activity: {patient.activity}",
        "",
        "4. LABORATORY MARKERS (JSON arrays of parameter/value/unit/referenceRange):",
        f"   {labs}",
        "",
    ]
    if request.image_uri:
        lines.append("An imaging scan is provided. Correlate visual pathology with clinical lab markers.")
        lines.append("")
    lines.extend(
        [
            "INSTRUCTIONS:",
            "- Correlate lab abnormalities with clinical symptoms and history.",
            "- Provide a main diagnosis and up to three differential diagnoses with ICD-10 codes, ranked.",
            "- severity must be one of Mild, Moderate, Severe, Critical.",
            "- confidenceScore and every differential confidence must be numbers between 0 and 1.",
            "- Include follow-up plan, medication recommendations and safety warnings.",
            "- Return ONLY valid JSON matching the response schema.",
        ]
    )
    return "\n".join(lines)
