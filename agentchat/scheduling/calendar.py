"""Google Calendar free/busy lookups for the booking card."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable

import httpx

from agentchat.db import Database
from agentchat.errors import ExternalAPIError
from agentchat.models import CalendarConnection

LOGGER = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
FREEBUSY_URL = "https://www.googleapis.com/calendar/v3/freeBusy"
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)

BusyPeriod = tuple[datetime, datetime]


def _parse_instant(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class GoogleCalendarClient:
    """Reads busy intervals for a connected calendar.

    Busy data is opaque start/end pairs only and is meant for the
    UI-facing slot list; it is never handed to prompt building.
    """

    def __init__(
        self,
        db: Database,
        client_id: str,
        client_secret: str,
        timeout_seconds: float = 10.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._db = db
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout_seconds = timeout_seconds
        self._clock = clock

    def get_connection(self, owner_address: str) -> CalendarConnection | None:
        return self._db.get_calendar_connection(owner_address)

    def _is_expired(self, connection: CalendarConnection) -> bool:
        expires_at = connection.token_expires_at
        if expires_at is None:
            return False
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at < self._clock()

    async def refresh(self, connection: CalendarConnection) -> CalendarConnection:
        """Exchange the refresh token once and persist the new access token."""

        data = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": connection.refresh_token or "",
            "grant_type": "refresh_token",
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                response = await client.post(TOKEN_URL, data=data)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            raise ExternalAPIError(f"Calendar token refresh failed: {type(exc).__name__}") from exc
        except ValueError as exc:
            raise ExternalAPIError("Calendar token refresh returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise ExternalAPIError("Calendar token refresh returned an unexpected body")

        access_token = payload.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise ExternalAPIError("Calendar token refresh returned no access token")
        expires_in = payload.get("expires_in")
        try:
            lifetime = timedelta(seconds=int(expires_in)) if expires_in else DEFAULT_TOKEN_LIFETIME
        except (TypeError, ValueError, OverflowError) as exc:
            raise ExternalAPIError(f"Calendar token refresh returned a bad expires_in: {expires_in!r}") from exc
        expires_at = self._clock() + lifetime
        self._db.update_calendar_token(connection.owner_address, access_token, expires_at, connection.provider)
        LOGGER.info("Refreshed calendar token for %s", connection.owner_address)
        return replace(connection, access_token=access_token, token_expires_at=expires_at)

    async def busy_periods(
        self,
        connection: CalendarConnection,
        time_min: datetime,
        time_max: datetime,
    ) -> list[BusyPeriod]:
        """Raises ExternalAPIError when the query cannot be completed."""

        if self._is_expired(connection) and connection.refresh_token:
            try:
                connection = await self.refresh(connection)
            except ExternalAPIError as exc:
                LOGGER.warning("Token refresh failed for %s: %s", connection.owner_address, exc)

        body = {
            "timeMin": _iso(time_min),
            "timeMax": _iso(time_max),
            "items": [{"id": connection.calendar_id}],
        }
        headers = {"Authorization": f"Bearer {connection.access_token}"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                response = await client.post(FREEBUSY_URL, json=body, headers=headers)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            raise ExternalAPIError(f"Free/busy query failed: {type(exc).__name__}") from exc
        except ValueError as exc:
            raise ExternalAPIError("Free/busy query returned a non-JSON body") from exc

        calendars = payload.get("calendars") if isinstance(payload, dict) else None
        if not isinstance(calendars, dict):
            raise ExternalAPIError("Free/busy query returned an unexpected body")
        calendar = calendars.get(connection.calendar_id) or {}
        busy_entries = calendar.get("busy") if isinstance(calendar, dict) else None
        if busy_entries is not None and not isinstance(busy_entries, list):
            raise ExternalAPIError("Free/busy query returned an unexpected busy list")
        periods = []
        for busy in busy_entries or []:
            try:
                periods.append((_parse_instant(busy["start"]), _parse_instant(busy["end"])))
            except (KeyError, TypeError, ValueError):
                LOGGER.debug("Skipping malformed busy period: %r", busy)
        LOGGER.info("Found %d busy periods for %s", len(periods), connection.owner_address)
        return periods
