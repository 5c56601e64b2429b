"""User registry and activity log.

Same policy as the record vault: try the remote API first, fall back to the
local key-value blobs. Activity logging is best-effort and never raises.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

import httpx
from pydantic import ValidationError

from alcortex.kvstore import ACTIVITY_KEY, USERS_KEY, KeyValueStore
from alcortex.schemas import ActivityEntry, User
from alcortex.utils import utc_now


class AccountLog:
    def __init__(
        self,
        kv: KeyValueStore,
        *,
        base_url: str | None = None,
        timeout_sec: float = 3.0,
        activity_capacity: int = 500,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._kv = kv
        self._base_url = base_url.rstrip("/") if base_url else None
        self._timeout_sec = timeout_sec
        self._activity_capacity = activity_capacity
        self._transport = transport
        self._clock = clock

    def init(self) -> None:
        self._kv.init()

    def close(self) -> None:
        self._kv.close()

    async def _post(self, path: str, body: dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=self._timeout_sec, transport=self._transport) as client:
            response = await client.post(f"{self._base_url}{path}", json=body)
            response.raise_for_status()

    # -- users ---------------------------------------------------------------

    def users(self) -> list[User]:
        rows = self._kv.get_json(USERS_KEY, [])
        out: list[User] = []
        for row in rows if isinstance(rows, list) else []:
            try:
                out.append(User.model_validate(row))
            except ValidationError:
                print("[alcortex] local_user_skipped")
        return out

    def store_user(self, user: User, *, replace: bool = False) -> bool:
        """Write ``user`` to the local registry. Returns False when the email exists and ``replace`` is off."""
        users = self.users()
        for index, existing in enumerate(users):
            if existing.email.lower() == user.email.lower():
                if not replace:
                    return False
                users[index] = user
                break
        else:
            users.append(user)
        self._kv.set_json(USERS_KEY, [item.to_wire() for item in users])
        return True

    async def register_user(self, user: User) -> str:
        """Register remotely; on any failure keep the user locally. Returns the side used."""
        if self._base_url:
            try:
                await self._post("/api/users/register", user.to_wire())
                return "remote"
            except httpx.HTTPError as exc:
                print(f"[alcortex] user_register_fallback: {type(exc).__name__}")
        self.store_user(user)
        return "local"

    # -- activity ------------------------------------------------------------

    def activity(self) -> list[ActivityEntry]:
        rows = self._kv.get_json(ACTIVITY_KEY, [])
        out: list[ActivityEntry] = []
        for row in rows if isinstance(rows, list) else []:
            try:
                out.append(ActivityEntry.model_validate(row))
            except ValidationError:
                print("[alcortex] local_activity_skipped")
        return out

    def append_activity(self, email: str, action: str) -> ActivityEntry:
        entry = ActivityEntry(email=email, action=action, timestamp=self._clock())
        entries = self.activity()
        entries.append(entry)
        entries = entries[-self._activity_capacity :]
        self._kv.set_json(ACTIVITY_KEY, [item.to_wire() for item in entries])
        return entry

    async def log_activity(self, email: str, action: str) -> str | None:
        """Best effort: returns the side that took the entry, or None if neither did."""
        if self._base_url:
            try:
                await self._post("/api/activity", {"email": email, "action": action})
                return "remote"
            except httpx.HTTPError as exc:
                print(f"[alcortex] activity_log_fallback: {type(exc).__name__}")
        try:
            self.append_activity(email, action)
            return "local"
        except (OSError, RuntimeError, ValueError) as exc:
            print(f"[alcortex] activity_log_dropped: {type(exc).__name__}: {exc}")
            return None
