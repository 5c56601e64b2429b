"""Common utility helpers."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from time import perf_counter
from typing import Any, Awaitable, TypeVar

from alcortex.errors import SubmissionCancelled

T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> float:
    return perf_counter() * 1000.0


def elapsed_ms(start_ms: float) -> int:
    return int(perf_counter() * 1000.0 - start_ms)


def new_record_id(moment: datetime | None = None) -> str:
    moment = moment or utc_now()
    return f"REC-{int(moment.timestamp() * 1000)}"


def parse_dob(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def derive_age(dob: Any, today: date) -> int | None:
    """Whole years between ``dob`` and ``today``; ``None`` when dob is blank or unparseable."""
    birth = parse_dob(dob)
    if birth is None:
        return None
    age = today.year - birth.year
    if (today.month, today.day) < (birth.month, birth.day):
        age -= 1
    return age if age > 0 else 0


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CancelToken:
    """Cooperative abort signal threaded from a submission down to the network call."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SubmissionCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()


async def run_cancellable(awaitable: Awaitable[T], cancel: CancelToken | None) -> T:
    """Await ``awaitable`` unless ``cancel`` fires first, in which case the work is cancelled."""
    if cancel is None:
        return await awaitable
    if cancel.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        cancel.raise_if_cancelled()

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()

    if work.done():
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    raise SubmissionCancelled(cancel.reason or "cancelled")
