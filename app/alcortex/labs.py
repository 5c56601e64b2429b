"""Laboratory panel catalogue: standard templates and parameter suggestions."""

from __future__ import annotations

from typing import Any

PANELS = ("blood", "urine", "sputum")

COMMON_LAB_PARAMETERS: tuple[str, ...] = (
    # Blood
    "Hemoglobin", "Leukocytes (WBC)", "Platelets", "Hematocrit", "Erythrocytes (RBC)",
    "MCV", "MCH", "MCHC", "RDW", "Neutrophils", "Lymphocytes", "Monocytes", "Eosinophils", "Basophils",
    "Glucose (Fast)", "Glucose (PP)", "HbA1c", "Creatinine", "Urea (BUN)", "Uric Acid",
    "Cholesterol (Total)", "HDL Cholesterol", "LDL Cholesterol", "Triglycerides",
    "ALT (SGPT)", "AST (SGOT)", "Albumin", "Total Protein", "Bilirubin (Total)",
    "Sodium (Na)", "Potassium (K)", "Chloride (Cl)", "Calcium (Ca)",
    "TSH", "FT4", "C-Reactive Protein (CRP)",
    # Urine
    "Urine Color", "Urine Clarity", "Urine pH", "Specific Gravity", "Protein (Urine)",
    "Glucose (Urine)", "Ketones (Urine)", "Bilirubin (Urine)", "Urobilinogen",
    "Nitrite", "Leukocyte Esterase", "Blood (Urine)", "Urine Sediment", "RBC (Urine)", "WBC (Urine)",
    # Sputum
    "AFB (Acid-Fast Bacilli)", "Gram Stain", "Sputum Culture", "Sputum Color", "Sputum Consistency",
)

# Rows loaded by the "template" action of each panel.
STANDARD_LAB_SETS: dict[str, tuple[tuple[str, str, str], ...]] = {
    "blood": (
        ("Hemoglobin", "g/dL", "13.5-17.5"),
        ("Leukocytes (WBC)", "10^3/uL", "4.5-11.0"),
        ("Platelets", "10^3/uL", "150-450"),
        ("Hematocrit", "%", "41-50"),
    ),
    "urine": (
        ("Specific Gravity", "-", "1.005-1.030"),
        ("Urine pH", "-", "4.5-8.0"),
        ("Protein (Urine)", "-", "Negative"),
        ("Glucose (Urine)", "-", "Negative"),
        ("Nitrite", "-", "Negative"),
    ),
    "sputum": (
        ("AFB (Acid-Fast Bacilli)", "-", "Negative"),
        ("Gram Stain", "-", "-"),
        ("Sputum Color", "-", "Clear/White"),
        ("Sputum Consistency", "-", "Mucoid"),
    ),
}

# Rows a fresh draft starts with.
DEFAULT_PANEL_ROWS: dict[str, tuple[tuple[str, str, str], ...]] = {
    "blood": (
        ("Hemoglobin", "g/dL", "13.5-17.5"),
        ("Leukocytes (WBC)", "10^3/uL", "4.5-11.0"),
        ("Platelets", "10^3/uL", "150-450"),
    ),
    "urine": (
        ("Specific Gravity", "-", "1.005-1.030"),
        ("Protein", "-", "Negative"),
    ),
    "sputum": (
        ("AFB", "-", "Negative"),
        ("Gram Stain", "-", "-"),
    ),
}


def normalize_panel(panel: str) -> str:
    token = str(panel or "").strip().lower()
    aliases = {
        "blood": "blood",
        "lab_blood": "blood",
        "labblood": "blood",
        "urine": "urine",
        "lab_urine": "urine",
        "laburine": "urine",
        "sputum": "sputum",
        "lab_sputum": "sputum",
        "labsputum": "sputum",
    }
    if token not in aliases:
        raise KeyError(f"unknown lab panel: {panel!r}")
    return aliases[token]


def _rows(entries: tuple[tuple[str, str, str], ...]) -> list[dict[str, Any]]:
    return [
        {"parameter": parameter, "value": "", "unit": unit, "reference_range": reference_range}
        for parameter, unit, reference_range in entries
    ]


def template_rows(panel: str) -> list[dict[str, Any]]:
    return _rows(STANDARD_LAB_SETS[normalize_panel(panel)])


def default_rows(panel: str) -> list[dict[str, Any]]:
    return _rows(DEFAULT_PANEL_ROWS[normalize_panel(panel)])


def suggest_parameters(query: str, *, limit: int = 8) -> list[str]:
    needle = str(query or "").strip().lower()
    if not needle:
        return []
    return [name for name in COMMON_LAB_PARAMETERS if needle in name.lower()][:limit]
