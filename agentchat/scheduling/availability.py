"""Meeting slot generation and the two availability projections."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agentchat.db import Database
from agentchat.errors import ExternalAPIError
from agentchat.models import AvailabilityWindow, CandidateSlot, SchedulingSettings, SlotSet
from agentchat.scheduling.calendar import BusyPeriod, GoogleCalendarClient

LOGGER = logging.getLogger(__name__)

ADVANCE_NOTICE = timedelta(hours=24)
BUFFER = timedelta(minutes=15)
HORIZON_DAYS = 7
DEFAULT_DURATION_MINUTES = 30
AI_SLOT_LIMIT = 30
UI_SLOT_LIMIT = 50


def _zone(name: str | None) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        LOGGER.warning("Unknown timezone %r, using UTC", name)
        return timezone.utc


def _sunday_based_weekday(day: date) -> int:
    return (day.weekday() + 1) % 7


def generate_candidate_slots(
    windows: Iterable[AvailabilityWindow],
    duration_minutes: int,
    now: datetime,
    advance_notice: timedelta = ADVANCE_NOTICE,
    buffer: timedelta = BUFFER,
    horizon_days: int = HORIZON_DAYS,
) -> list[CandidateSlot]:
    """Walk the horizon day by day and cut each matching window into slots.

    Each day is anchored at noon UTC before its weekday is read in the
    window's own timezone, so a window is matched against the local date
    an owner in that zone would see.
    """
    windows = list(windows)
    duration = timedelta(minutes=duration_minutes)
    earliest = now + advance_notice
    step = duration + buffer
    slots: list[CandidateSlot] = []

    for offset in range(horizon_days):
        anchor = (now + timedelta(days=offset)).astimezone(timezone.utc).replace(
            hour=12, minute=0, second=0, microsecond=0
        )
        for window in windows:
            tz = _zone(window.timezone)
            local_day = anchor.astimezone(tz).date()
            if _sunday_based_weekday(local_day) != window.day_of_week:
                continue
            start = datetime.combine(local_day, window.start_time, tzinfo=tz).astimezone(timezone.utc)
            end = datetime.combine(local_day, window.end_time, tzinfo=tz).astimezone(timezone.utc)
            current = start
            while current + duration <= end:
                if current >= earliest:
                    slots.append(CandidateSlot(current, current + duration))
                current += step
    return slots


def filter_busy(slots: Iterable[CandidateSlot], busy: Iterable[BusyPeriod]) -> list[CandidateSlot]:
    busy = list(busy)
    return [slot for slot in slots if not any(slot.overlaps(start, end) for start, end in busy)]


def _format_date(moment: datetime) -> str:
    return f"{moment.strftime('%A, %B')} {moment.day}"


def _format_time(moment: datetime) -> str:
    hour = moment.hour % 12 or 12
    suffix = "AM" if moment.hour < 12 else "PM"
    return f"{hour}:{moment.minute:02d} {suffix}"


def group_slots_by_date(slots: Iterable[CandidateSlot], tz_name: str, limit: int = AI_SLOT_LIMIT) -> dict[str, list[str]]:
    """Group slot starts as {"Monday, October 20": ["9:00 AM", ...]} in ``tz_name``."""

    tz = _zone(tz_name)
    grouped: dict[str, list[str]] = {}
    for slot in list(slots)[:limit]:
        local = slot.start.astimezone(tz)
        grouped.setdefault(_format_date(local), []).append(_format_time(local))
    return grouped


@dataclass(slots=True, frozen=True)
class SchedulingResult:
    owner_address: str
    settings: SchedulingSettings
    timezone: str
    slot_set: SlotSet

    def prompt_section(self) -> str:
        """Prompt text built from the window-only slots."""

        by_date = group_slots_by_date(self.slot_set.ai_slots, self.timezone, AI_SLOT_LIMIT)
        lines = ["", "## SCHEDULING INFORMATION", "", "You can help users schedule meetings with your creator."]
        if by_date:
            lines.append(f"Here are the general availability windows (times in {self.timezone}):")
            lines.append("")
            lines.extend(f"**{day}:** {', '.join(times)}" for day, times in by_date.items())
            lines.append("")
            lines.append("Note: The interactive booking card below will show the most accurate real-time availability.")
        else:
            lines.append("(No availability windows configured for the next 7 days)")
        lines.append("")
        if self.settings.free_enabled:
            lines.append(f"- **Free calls** available ({self.settings.free_duration_minutes or 15} minutes)")
        if self.settings.paid_enabled:
            price = (self.settings.price_cents or 0) / 100
            lines.append(
                f"- **Paid sessions** available ({self.settings.paid_duration_minutes or 30} minutes) - ${price:.2f} USD"
            )
        lines.append("")
        lines.append(
            "IMPORTANT: The user can book DIRECTLY in this chat. A booking card will appear below your message "
            "with the accurate available times.\n"
            "When helping users schedule:\n"
            "1. Present the general availability times above\n"
            "2. Ask what type of meeting they'd like (free or paid, if both available)\n"
            "3. Tell them to select a time from the interactive booking card that will appear\n"
            "4. The booking card handles collecting their email and completing the reservation\n\n"
            "DO NOT direct users to an external URL - everything is handled in this chat interface.\n"
        )
        return "\n".join(lines)

    def payload(self) -> dict[str, Any]:
        """Booking card data for the caller; may reflect calendar busy periods."""

        ui_slots = self.slot_set.ui_slots
        return {
            "ownerAddress": self.owner_address,
            "slots": [
                {"start": slot.start.isoformat(), "end": slot.end.isoformat()} for slot in ui_slots[:UI_SLOT_LIMIT]
            ],
            "slotsByDate": group_slots_by_date(ui_slots, self.timezone, AI_SLOT_LIMIT),
            "freeEnabled": self.settings.free_enabled,
            "paidEnabled": self.settings.paid_enabled,
            "freeDuration": self.settings.free_duration_minutes or 15,
            "paidDuration": self.settings.paid_duration_minutes or 30,
            "priceCents": self.settings.price_cents or 0,
            "timezone": self.timezone,
        }


SCHEDULING_DISABLED_NOTE = """
## SCHEDULING NOTE

My creator hasn't enabled their public scheduling page yet. Please ask them directly about their availability or suggest they enable the scheduling feature in their settings.
"""


class AvailabilityComputer:
    """Builds the window-only slot list and a calendar-filtered copy of it."""

    def __init__(
        self,
        db: Database,
        calendar: GoogleCalendarClient | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._db = db
        self._calendar = calendar
        self._clock = clock

    async def compute(self, owner_address: str) -> SchedulingResult | None:
        """None when the owner has not enabled scheduling."""

        settings = self._db.get_scheduling_settings(owner_address)
        if settings is None or not settings.enabled:
            return None

        windows = self._db.list_availability_windows(owner_address)
        tz_name = windows[0].timezone if windows else "UTC"
        now = self._clock()
        duration = settings.free_duration_minutes or DEFAULT_DURATION_MINUTES

        ai_slots = tuple(generate_candidate_slots(windows, duration, now))
        ui_slots = await self._filter_for_ui(owner_address, ai_slots, now)
        LOGGER.info(
            "Availability for %s: %d window slots, %d after calendar filtering",
            owner_address,
            len(ai_slots),
            len(ui_slots),
        )
        return SchedulingResult(owner_address, settings, tz_name, SlotSet(ai_slots=ai_slots, ui_slots=ui_slots))

    async def _filter_for_ui(
        self,
        owner_address: str,
        slots: tuple[CandidateSlot, ...],
        now: datetime,
    ) -> tuple[CandidateSlot, ...]:
        if self._calendar is None:
            return slots
        connection = self._calendar.get_connection(owner_address)
        if connection is None or not connection.access_token:
            LOGGER.info("No active calendar connection for %s", owner_address)
            return slots
        try:
            busy = await self._calendar.busy_periods(connection, now, now + timedelta(days=HORIZON_DAYS))
        except ExternalAPIError as exc:
            LOGGER.warning("Calendar check failed for %s, showing all slots: %s", owner_address, exc)
            return slots
        return tuple(filter_busy(slots, busy))
