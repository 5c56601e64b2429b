"""Read-only views over a record set: filtering, dashboard stats, global search."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timezone, tzinfo
from typing import Iterable, Sequence

from alcortex.schemas import SEVERITIES, SavedRecord

WEEKDAYS: tuple[str, ...] = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")
HIGH_ACUITY = frozenset({"Severe", "Critical"})


@dataclass(frozen=True)
class RecordFilter:
    text: str | None = None
    severity: str | None = None
    min_age: int | None = None
    max_age: int | None = None

    def __post_init__(self) -> None:
        if self.severity and self.severity != "All" and self.severity not in SEVERITIES:
            raise ValueError(f"unknown severity filter: {self.severity!r}")
        if self.min_age is not None and self.max_age is not None and self.min_age > self.max_age:
            raise ValueError("min_age must not exceed max_age")


def _matches_text(record: SavedRecord, needle: str) -> bool:
    haystacks = (record.patient.name, record.patient.rm_no, record.analysis.main_diagnosis)
    return any(needle in (value or "").lower() for value in haystacks)


def filter_records(records: Iterable[SavedRecord], criteria: RecordFilter | None = None) -> list[SavedRecord]:
    """Every active predicate must hold; input order is kept."""
    criteria = criteria or RecordFilter()
    needle = (criteria.text or "").strip().lower()
    severity = criteria.severity if criteria.severity and criteria.severity != "All" else None

    out: list[SavedRecord] = []
    for record in records:
        if needle and not _matches_text(record, needle):
            continue
        if severity and record.analysis.severity != severity:
            continue
        age = record.patient.age
        if criteria.min_age is not None and age < criteria.min_age:
            continue
        if criteria.max_age is not None and age > criteria.max_age:
            continue
        out.append(record)
    return out


def dashboard_stats(records: Sequence[SavedRecord], *, tz: tzinfo = timezone.utc) -> dict[str, object]:
    """Headline counts plus a Sun..Sat histogram.

    Weekdays are bucketed in ``tz``, UTC unless the caller passes the clinic's zone.
    """
    total = len(records)
    critical = sum(1 for record in records if record.analysis.severity in HIGH_ACUITY)
    if total:
        avg_confidence = round(sum(record.analysis.confidence_score for record in records) / total * 100)
    else:
        avg_confidence = 0

    # Python weekday() is Monday=0; the chart runs Sunday..Saturday.
    counts = [0] * 7
    for record in records:
        counts[(record.date.astimezone(tz).weekday() + 1) % 7] += 1

    return {
        "total": total,
        "critical": critical,
        "avg_confidence": avg_confidence,
        "weekly": [{"name": name, "count": count} for name, count in zip(WEEKDAYS, counts)],
    }


def search_suggestions(records: Sequence[SavedRecord], query: str, *, limit: int = 5) -> list[SavedRecord]:
    if not (query or "").strip():
        return list(records[:limit])
    return filter_records(records, RecordFilter(text=query))[:limit]
