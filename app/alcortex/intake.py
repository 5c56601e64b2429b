"""Intake wizard state machine.

Profile -> Narrative -> Labs -> Result. The machine owns the mutable draft,
debounces draft autosaves into the scratch key, and runs the diagnostic round
trip (build request, provider call, contract validation, record save) on
``submit()``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable

from pydantic import ValidationError

from alcortex.config import Settings
from alcortex.contract import validate
from alcortex.errors import (
    AlcortexError,
    FieldValidationError,
    InvalidTransition,
    PersistenceError,
    SubmissionCancelled,
    SubmissionInProgress,
)
from alcortex.kvstore import DRAFT_KEY, KeyValueStore
from alcortex.labs import normalize_panel, suggest_parameters, template_rows
from alcortex.providers import DiagnosticProvider
from alcortex.records import RecordStore
from alcortex.request_builder import build_request, request_fingerprint
from alcortex.schemas import LabResult, PatientSnapshot, SavedRecord
from alcortex.utils import CancelToken, derive_age, new_record_id, utc_now
from alcortex.validation import VITAL_FIELDS, check_lab_cell, check_vital, vital_key


class Step(str, Enum):
    PROFILE = "profile"
    NARRATIVE = "narrative"
    LABS = "labs"
    RESULT = "result"


STEPS: tuple[Step, ...] = (Step.PROFILE, Step.NARRATIVE, Step.LABS, Step.RESULT)


class SubmitState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    DONE = "done"


# Plain draft fields settable through ``update``; dob, age, vitals and labs have
# dedicated mutators.
EDITABLE_FIELDS = frozenset(
    {
        "name",
        "rm_no",
        "gender",
        "blood_type",
        "complaints",
        "history",
        "meds",
        "allergies",
        "smoking",
        "alcohol",
        "activity",
    }
)

_LAB_FIELDS = {
    "parameter": "parameter",
    "value": "value",
    "unit": "unit",
    "reference_range": "reference_range",
    "referencerange": "reference_range",
}

_AUTOSAVE_TRIGGERS = ("name", "complaints", "history", "rm_no")

_FAILURE_KINDS = {
    SubmissionCancelled: "cancelled",
    PersistenceError: "persistence_error",
    FieldValidationError: "field_validation",
}


@dataclass(frozen=True)
class SubmissionFailure:
    kind: str
    message: str
    detail: Any = None
    retryable: bool = False

    @classmethod
    def from_exception(cls, exc: AlcortexError) -> "SubmissionFailure":
        kind = getattr(exc, "kind", None)
        if kind is None:
            kind = next((tag for klass, tag in _FAILURE_KINDS.items() if isinstance(exc, klass)), "error")
        return cls(
            kind=kind,
            message=str(getattr(exc, "message", None) or exc),
            detail=getattr(exc, "detail", None),
            retryable=bool(getattr(exc, "retryable", False)),
        )


def _snake(name: str) -> str:
    out = []
    for char in name:
        if char.isupper():
            out.append("_")
            out.append(char.lower())
        else:
            out.append(char)
    return "".join(out)


class IntakeStateMachine:
    def __init__(
        self,
        provider: DiagnosticProvider,
        store: RecordStore,
        kv: KeyValueStore,
        *,
        debounce_sec: float = 2.0,
        default_language: str = "English",
        owner: str | None = None,
        today: Callable[[], date] = date.today,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._provider = provider
        self._store = store
        self._kv = kv
        self._debounce_sec = debounce_sec
        self._default_language = default_language
        self._owner = owner
        self._today = today
        self._clock = clock

        self._draft = PatientSnapshot()
        self._step = Step.PROFILE
        self._submit_state = SubmitState.IDLE
        self._result: SavedRecord | None = None
        self._last_error: SubmissionFailure | None = None
        self._last_args: tuple[str | None, str | None] = (None, None)
        self._autosave_task: asyncio.Task | None = None
        # Bumped by reset(); a submission finishing under an older generation is discarded.
        self._generation = 0
        self._inflight: CancelToken | None = None
        self._settled: asyncio.Event | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        provider: DiagnosticProvider,
        store: RecordStore,
        kv: KeyValueStore,
        **kwargs: Any,
    ) -> "IntakeStateMachine":
        kwargs.setdefault("debounce_sec", settings.autosave_debounce_sec)
        kwargs.setdefault("default_language", settings.default_language)
        return cls(provider, store, kv, **kwargs)

    # -- read side -----------------------------------------------------------

    @property
    def step(self) -> Step:
        return self._step

    @property
    def submit_state(self) -> SubmitState:
        return self._submit_state

    @property
    def draft(self) -> PatientSnapshot:
        """A copy of the draft; mutate through the machine's methods."""
        return self._draft.model_copy(deep=True)

    @property
    def result(self) -> SavedRecord | None:
        if self._result is None:
            return None
        return self._result.model_copy(deep=True)

    @property
    def last_error(self) -> SubmissionFailure | None:
        return self._last_error

    @property
    def has_pending_autosave(self) -> bool:
        return self._autosave_task is not None and not self._autosave_task.done()

    def advisories(self) -> list[str]:
        """Soft cross-field warnings. None of them blocks submission."""
        draft = self._draft
        notes: list[str] = []
        if not draft.name.strip():
            notes.append("Patient name is empty.")
        if not draft.dob.strip():
            notes.append("Date of birth is empty; age stays at its current value.")
        if not draft.complaints.strip():
            notes.append("Main complaints are empty; the analysis will rely on vitals and labs only.")
        if not any(getattr(draft.vitals, key) for key in VITAL_FIELDS):
            notes.append("No vital signs recorded.")
        if not any(row.value.strip() for panel in ("blood", "urine", "sputum") for row in draft.panel(panel)):
            notes.append("No laboratory values recorded.")
        return notes

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> bool:
        """Rehydrate a stored draft if one exists. Returns whether a draft was restored."""
        self._kv.init()
        try:
            stored = self._kv.get_json(DRAFT_KEY)
        except ValueError as exc:
            print(f"[alcortex] draft_rehydrate_failed: {type(exc).__name__}: {exc}")
            return False
        if stored is None:
            return False
        try:
            self._draft = PatientSnapshot.model_validate(stored)
        except ValidationError as exc:
            print(f"[alcortex] draft_rehydrate_failed: ValidationError errors={exc.error_count()}")
            return False
        print("[alcortex] draft_rehydrated")
        return True

    def close(self) -> None:
        self._cancel_autosave()

    def reset(self) -> None:
        """Start a new session. An in-flight submission is cancelled and its outcome dropped."""
        if self._inflight is not None:
            self._inflight.cancel("session reset")
            self._inflight = None
        self._generation += 1
        self._cancel_autosave()
        self._draft = PatientSnapshot()
        self._step = Step.PROFILE
        self._submit_state = SubmitState.IDLE
        self._result = None
        self._last_error = None
        self._last_args = (None, None)

    # -- navigation ----------------------------------------------------------

    def _check_idle(self) -> None:
        if self._submit_state is SubmitState.SUBMITTING:
            raise SubmissionInProgress("the draft is locked while a submission is in flight")

    def next(self) -> Step:
        self._check_idle()
        if self._step is Step.LABS:
            raise InvalidTransition("Labs advances only through submit()")
        if self._step is Step.RESULT:
            raise InvalidTransition("Result is terminal; call reset() to start a new session")
        self._step = STEPS[STEPS.index(self._step) + 1]
        return self._step

    def back(self) -> Step:
        self._check_idle()
        if self._step is Step.PROFILE:
            raise InvalidTransition("already at the first step")
        if self._step is Step.RESULT:
            raise InvalidTransition("Result is terminal; use go_to() or reset()")
        self._step = STEPS[STEPS.index(self._step) - 1]
        return self._step

    def go_to(self, step: Step | str) -> Step:
        self._check_idle()
        target = Step(step)
        if target is Step.RESULT and self._result is None:
            raise InvalidTransition("no result to show yet")
        if self._result is None and STEPS.index(target) > STEPS.index(self._step):
            raise InvalidTransition(f"cannot skip ahead from {self._step.value} to {target.value}")
        self._step = target
        return self._step

    # -- draft mutation ------------------------------------------------------

    def _check_editable(self) -> None:
        self._check_idle()
        if self._step is Step.RESULT:
            raise InvalidTransition("draft is read-only on the result step")

    def update(self, **fields: Any) -> PatientSnapshot:
        """Set plain draft fields. camelCase names are accepted."""
        self._check_editable()
        changes = {_snake(name): value for name, value in fields.items()}
        for name in changes:
            if name == "age":
                raise FieldValidationError("age", changes[name], "age is derived from dob")
            if name not in EDITABLE_FIELDS:
                raise FieldValidationError(name, changes[name], "not an editable field")

        data = self._draft.model_dump()
        data.update(changes)
        try:
            updated = PatientSnapshot.model_validate(data)
        except ValidationError as exc:
            first = exc.errors()[0]
            field_name = ".".join(str(part) for part in first.get("loc", ())) or "draft"
            raise FieldValidationError(field_name, first.get("input"), first.get("msg", "invalid value")) from exc

        self._draft = updated
        self._touch()
        return self.draft

    def set_dob(self, value: Any) -> int:
        """Store the date of birth and re-derive age. Returns the (possibly unchanged) age."""
        self._check_editable()
        self._draft.dob = "" if value is None else str(value).strip()
        age = derive_age(self._draft.dob, self._today())
        if age is not None:
            self._draft.age = age
        self._touch()
        return self._draft.age

    def set_vital(self, name: str, value: Any) -> str:
        self._check_editable()
        key = vital_key(name)
        text = check_vital(key, "" if value is None else str(value))
        setattr(self._draft.vitals, key, text)
        self._touch()
        return text

    def _rows(self, panel: str) -> list[LabResult]:
        return self._draft.panel(normalize_panel(panel))

    def add_lab_row(self, panel: str) -> int:
        self._check_editable()
        rows = self._rows(panel)
        rows.append(LabResult())
        self._touch()
        return len(rows) - 1

    def remove_lab_row(self, panel: str, index: int) -> None:
        self._check_editable()
        rows = self._rows(panel)
        if not 0 <= index < len(rows):
            raise IndexError(f"lab row {index} out of range")
        del rows[index]
        self._touch()

    def update_lab_row(self, panel: str, index: int, field_name: str, value: Any) -> LabResult:
        self._check_editable()
        rows = self._rows(panel)
        if not 0 <= index < len(rows):
            raise IndexError(f"lab row {index} out of range")
        attr = _LAB_FIELDS.get(_snake(field_name).lower())
        if attr is None:
            raise FieldValidationError(f"lab.{field_name}", value, "unknown lab field")
        text = check_lab_cell(attr, "" if value is None else str(value))
        setattr(rows[index], attr, text)
        self._touch()
        return rows[index].model_copy()

    def load_lab_template(self, panel: str) -> int:
        """Load the standard rows; an empty panel is replaced, otherwise rows are appended."""
        self._check_editable()
        key = normalize_panel(panel)
        rows = self._draft.panel(key)
        template = [LabResult(**row) for row in template_rows(key)]
        if all(not row.parameter.strip() and not row.value.strip() for row in rows):
            rows.clear()
        rows.extend(template)
        self._touch()
        return len(rows)

    @staticmethod
    def lab_suggestions(query: str, *, limit: int = 8) -> list[str]:
        return suggest_parameters(query, limit=limit)

    # -- autosave ------------------------------------------------------------

    def _has_content(self) -> bool:
        return any(str(getattr(self._draft, name)).strip() for name in _AUTOSAVE_TRIGGERS)

    def _cancel_autosave(self) -> None:
        if self._autosave_task is not None and not self._autosave_task.done():
            self._autosave_task.cancel()
        self._autosave_task = None

    def _touch(self) -> None:
        self._cancel_autosave()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._autosave_task = loop.create_task(self._autosave_later())

    async def _autosave_later(self) -> None:
        await asyncio.sleep(self._debounce_sec)
        try:
            self._write_draft()
        except (OSError, RuntimeError, ValueError) as exc:
            print(f"[alcortex] draft_autosave_failed: {type(exc).__name__}: {exc}")

    def _write_draft(self) -> bool:
        if not self._has_content():
            return False
        self._kv.set_json(DRAFT_KEY, self._draft.to_wire())
        return True

    def flush(self) -> bool:
        """Write the draft now instead of waiting for the debounce."""
        self._cancel_autosave()
        return self._write_draft()

    # -- submission ----------------------------------------------------------

    async def submit(
        self,
        language: str | None = None,
        image: str | None = None,
        cancel: CancelToken | None = None,
    ) -> SavedRecord:
        if self._submit_state is SubmitState.SUBMITTING:
            raise SubmissionInProgress("a submission is already in flight")
        if self._step is not Step.LABS:
            raise InvalidTransition(f"submit() is only allowed on the labs step, not {self._step.value}")

        generation = self._generation
        token = cancel or CancelToken()
        previous, settled = self._settled, asyncio.Event()
        self._settled = settled
        self._inflight = token
        self._submit_state = SubmitState.SUBMITTING
        self._last_error = None
        self._last_args = (language, image)
        try:
            if previous is not None:
                # a submission abandoned by reset() may still be unwinding
                await previous.wait()
            record = await self._round_trip(language, image, token, generation)
        except AlcortexError as exc:
            if generation == self._generation:
                self._last_error = SubmissionFailure.from_exception(exc)
                print(f"[alcortex] submission_failed: kind={self._last_error.kind} {self._last_error.message}")
            raise
        finally:
            settled.set()
            if generation == self._generation:
                self._inflight = None
                if self._submit_state is SubmitState.SUBMITTING:
                    self._submit_state = SubmitState.IDLE

        self._result = record
        self._step = Step.RESULT
        self._submit_state = SubmitState.DONE
        return record.model_copy(deep=True)

    def _check_current(self, generation: int, record_id: str | None = None) -> None:
        if generation != self._generation:
            print(f"[alcortex] stale_submission_discarded: record={record_id or 'none'}")
            raise SubmissionCancelled("session was reset while the submission was in flight")

    async def _round_trip(
        self,
        language: str | None,
        image: str | None,
        cancel: CancelToken,
        generation: int,
    ) -> SavedRecord:
        snapshot = self._draft.model_copy(deep=True)
        try:
            request = build_request(snapshot, language or self._default_language, image)
        except ValueError as exc:
            raise FieldValidationError("image", None, str(exc)) from exc

        raw = await self._provider.generate(request, cancel=cancel)
        cancel.raise_if_cancelled()
        self._check_current(generation)
        analysis = validate(raw)

        moment = self._clock()
        record = SavedRecord(
            id=new_record_id(moment),
            date=moment,
            patient=snapshot,
            analysis=analysis,
            owner=self._owner,
        )
        side = await self._store.save(record)
        print(
            f"[alcortex] record_saved: id={record.id} side={side} "
            f"request={request_fingerprint(request)[:12]} severity={analysis.severity}"
        )
        # The record stays saved, but a reset session keeps its own draft and step.
        self._check_current(generation, record.id)

        self._cancel_autosave()
        try:
            self._kv.delete(DRAFT_KEY)
        except (OSError, RuntimeError, ValueError) as exc:
            print(f"[alcortex] draft_clear_failed: {type(exc).__name__}: {exc}")
        return record

    async def retry(self, cancel: CancelToken | None = None) -> SavedRecord:
        """Re-submit after a retryable failure. Never called automatically."""
        if self._last_error is None or not self._last_error.retryable:
            raise InvalidTransition("the last failure is not retryable")
        language, image = self._last_args
        return await self.submit(language, image, cancel)
