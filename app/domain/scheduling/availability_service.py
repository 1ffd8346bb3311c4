"""Availability service - Turns templates, overrides and busy time into bookable slots

Per calendar date:
1. effective windows: the winning advanced schedule, else the template's weekly hours
2. location: a non-default location covering the date, else the default one;
   its timezone (then the template's, then DEFAULT_TIMEZONE) anchors the windows
3. busy time: non-cancelled bookings (plus the provider's buffer) and synced events
4. slots step by the duration from each window start and are kept only when free
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...config import DEFAULT_ALLOWED_DURATIONS, SLOT_LEAD_MINUTES
from ...models import AvailabilityTemplate, Provider, ProviderLocation
from .advanced_schedule_service import ResolvedDay, resolve_from_schedules, template_windows_for_day
from .location_service import pick_location_for_date
from .repository import SchedulingRepository
from .time_calculator import (
    intervals_overlap,
    local_today,
    parse_calendar_date,
    resolve_zone,
    to_iso,
    utc_to_local,
    utcnow,
    weekday_name,
    window_bounds_utc,
)

logger = logging.getLogger(__name__)

NO_LOCATION_DISPLAY = "Contact provider for location details"


@dataclass
class DayPlan:
    """Everything needed to cut slots for one calendar date"""

    day: date
    tz: ZoneInfo
    windows: list[dict]
    resolved: ResolvedDay
    location: Optional[ProviderLocation]
    booked: list[tuple[datetime, datetime]] = field(default_factory=list)
    events: list[tuple[datetime, datetime]] = field(default_factory=list)

    @property
    def busy(self) -> list[tuple[datetime, datetime]]:
        return self.booked + self.events


def location_display(location: Optional[ProviderLocation]) -> str:
    if location is None:
        return NO_LOCATION_DISPLAY
    parts = [p for p in (location.city, location.state_province, location.country) if p]
    display = ", ".join(parts)
    if location.description:
        display += f" - {location.description}"
    return display or NO_LOCATION_DISPLAY


def slice_slots(
    window_start: datetime,
    window_end: datetime,
    duration_minutes: int,
    busy: list[tuple[datetime, datetime]],
    not_before: Optional[datetime] = None,
) -> list[tuple[datetime, datetime]]:
    """Cut [window_start, window_end) into back-to-back slots of ``duration_minutes``.

    Slots are aligned to the window start; a slot touching any busy interval
    or starting at/before ``not_before`` is dropped.
    """
    step = timedelta(minutes=duration_minutes)
    slots = []
    start = window_start
    while start + step <= window_end:
        end = start + step
        if (not_before is None or start > not_before) and not any(
            intervals_overlap(start, end, b_start, b_end) for b_start, b_end in busy
        ):
            slots.append((start, end))
        start = end
    return slots


def allowed_durations_for(provider: Provider) -> list[int]:
    return sorted(provider.allowed_durations or DEFAULT_ALLOWED_DURATIONS)


class AvailabilityService:
    """Slot generation and per-day availability preview"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = SchedulingRepository()

    def get_provider(self, provider_id: int) -> Provider:
        provider = self.repo.get_provider(self.db, provider_id)
        if not provider:
            raise HTTPException(status_code=404, detail="Provider not found")
        return provider

    def provider_zone(
        self,
        template: Optional[AvailabilityTemplate],
        locations: list[ProviderLocation],
    ) -> ZoneInfo:
        default_location = next((loc for loc in locations if loc.is_default), None)
        return resolve_zone(
            default_location.timezone if default_location else None,
            template.timezone if template else None,
        )

    def _booked_intervals(
        self, provider: Provider, start: datetime, end: datetime, exclude_booking_id: Optional[int] = None
    ) -> list[tuple[datetime, datetime]]:
        """Non-cancelled bookings padded by the provider's buffer"""
        buffer = timedelta(minutes=provider.buffer_minutes or 0)
        booked = []
        for booking in self.repo.get_active_bookings_between(
            self.db, provider.id, start - buffer, end + buffer, exclude_id=exclude_booking_id
        ):
            b_start = booking.scheduled_at - buffer
            b_end = booking.scheduled_at + timedelta(minutes=booking.duration) + buffer
            if intervals_overlap(b_start, b_end, start, end):
                booked.append((b_start, b_end))
        return booked

    def _event_intervals(self, provider: Provider, start: datetime, end: datetime) -> list[tuple[datetime, datetime]]:
        return [
            (event.start_time, event.end_time)
            for event in self.repo.get_busy_events_between(self.db, provider.id, start, end)
        ]

    def plan_day(
        self,
        provider: Provider,
        template: Optional[AvailabilityTemplate],
        locations: list[ProviderLocation],
        day: date,
        exclude_booking_id: Optional[int] = None,
    ) -> DayPlan:
        if template is not None:
            schedules = self.repo.get_schedules_covering(self.db, template.id, day)
            resolved = resolve_from_schedules(schedules, day)
            windows = (
                resolved.time_windows
                if resolved.uses_advanced
                else template_windows_for_day(template, day)
            )
        else:
            resolved, windows = ResolvedDay(), []

        location = pick_location_for_date(locations, day)
        tz = resolve_zone(
            location.timezone if location else None,
            template.timezone if template else None,
        )

        plan = DayPlan(day=day, tz=tz, windows=windows, resolved=resolved, location=location)
        if windows:
            bounds = [window_bounds_utc(day, w, tz) for w in windows]
            start, end = min(b[0] for b in bounds), max(b[1] for b in bounds)
            plan.booked = self._booked_intervals(provider, start, end, exclude_booking_id)
            plan.events = self._event_intervals(provider, start, end)
        return plan

    @staticmethod
    def slots_for_plan(
        plan: DayPlan, duration_minutes: int, now: Optional[datetime] = None
    ) -> list[tuple[datetime, datetime]]:
        not_before = (now or utcnow()) + timedelta(minutes=SLOT_LEAD_MINUTES)
        slots = []
        for window in plan.windows:
            w_start, w_end = window_bounds_utc(plan.day, window, plan.tz)
            slots.extend(slice_slots(w_start, w_end, duration_minutes, plan.busy, not_before))
        return sorted(slots)

    def _load(self, provider: Provider):
        template = self.repo.get_default_template(self.db, provider.id)
        locations = self.repo.get_locations(self.db, provider.id, active_only=True)
        return template, locations

    def get_slots(
        self,
        provider_id: int,
        date_str: str,
        duration: int,
        now: Optional[datetime] = None,
    ) -> dict:
        """Concrete slots for one date and duration"""
        try:
            target = parse_calendar_date(date_str)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        provider = self.get_provider(provider_id)
        if duration not in allowed_durations_for(provider):
            raise HTTPException(status_code=400, detail="Duration not allowed for this provider")

        template, locations = self._load(provider)
        today = local_today(self.provider_zone(template, locations), now)
        if target < today:
            raise HTTPException(status_code=400, detail="Cannot book appointments in the past")
        if target > today + timedelta(days=provider.advance_booking_days):
            raise HTTPException(
                status_code=400,
                detail=f"Bookings are only available {provider.advance_booking_days} days in advance",
            )

        plan = self.plan_day(provider, template, locations, target)
        display = location_display(plan.location)
        slots = [
            {
                "id": f"slot-{int(start.replace(tzinfo=timezone.utc).timestamp() * 1000)}-{duration}",
                "startTime": to_iso(start),
                "endTime": to_iso(end),
                "duration": duration,
                "provider": {"id": provider.id, "name": provider.name},
                "location": {"display": display},
                "type": "automatic",
            }
            for start, end in self.slots_for_plan(plan, duration, now)
        ]
        logger.debug(f"📅 {len(slots)} slots for provider {provider.id} on {date_str} ({duration}m)")

        return {
            "success": True,
            "date": target.isoformat(),
            "duration": duration,
            "provider": {"id": provider.id, "name": provider.name, "timezone": plan.tz.key},
            "slots": slots,
            "totalSlots": len(slots),
            "availabilitySystem": {
                "advancedSchedulesApplied": plan.resolved.uses_advanced,
                "schedulesFound": len(plan.resolved.applied_schedules),
            },
        }

    def get_preview(self, provider_id: int, days_ahead: int = 14, now: Optional[datetime] = None) -> dict:
        """Per-day summary for [today, today + min(days_ahead, advance_booking_days)]"""
        provider = self.get_provider(provider_id)
        template, locations = self._load(provider)
        durations = allowed_durations_for(provider)
        today = local_today(self.provider_zone(template, locations), now)
        horizon = min(max(days_ahead, 0), provider.advance_booking_days)

        days = []
        for offset in range(horizon + 1):
            day = today + timedelta(days=offset)
            plan = self.plan_day(provider, template, locations, day)
            fitting = [d for d in durations if self.slots_for_plan(plan, d, now)] if plan.windows else []
            days.append(
                {
                    "date": day.isoformat(),
                    "dayOfWeek": weekday_name(day),
                    "hasAvailability": bool(fitting),
                    "availableDurations": fitting,
                    "timeWindows": plan.windows,
                    "location": (
                        {
                            "id": plan.location.id,
                            "city": plan.location.city,
                            "stateProvince": plan.location.state_province,
                            "country": plan.location.country,
                            "description": plan.location.description,
                            "display": location_display(plan.location),
                        }
                        if plan.location
                        else None
                    ),
                    "timezone": plan.tz.key,
                    "usingAdvancedSchedules": plan.resolved.uses_advanced,
                    "schedulesApplied": len(plan.resolved.applied_schedules),
                }
            )

        return {
            "success": True,
            "provider": {"id": provider.id, "name": provider.name},
            "allowedDurations": durations,
            "availability": days,
            "availabilitySystem": {
                "totalDaysWithAdvancedSchedules": sum(1 for d in days if d["usingAdvancedSchedules"]),
            },
        }

    def get_slot_counts(
        self,
        provider_id: Optional[int],
        dates: Optional[list[str]],
        durations: Optional[list[int]],
        now: Optional[datetime] = None,
    ) -> dict:
        """Number of free slots per date and duration, without slot details.

        Dates outside [today, today + advance window] and durations the
        provider does not offer count as zero.
        """
        if not provider_id or not dates or not durations:
            raise HTTPException(
                status_code=400, detail="Provider ID, dates array, and durations array required"
            )
        provider = self.get_provider(provider_id)
        template, locations = self._load(provider)
        allowed = allowed_durations_for(provider)
        today = local_today(self.provider_zone(template, locations), now)
        last_day = today + timedelta(days=provider.advance_booking_days)

        counts: dict[str, dict[int, int]] = {}
        for date_str in dates:
            try:
                day = parse_calendar_date(date_str)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e)) from e
            if day < today or day > last_day:
                counts[day.isoformat()] = {d: 0 for d in durations}
                continue
            plan = self.plan_day(provider, template, locations, day)
            counts[day.isoformat()] = {
                d: len(self.slots_for_plan(plan, d, now)) if d in allowed and plan.windows else 0
                for d in durations
            }

        logger.info(f"🚀 Batch availability: {len(dates)} dates × {len(durations)} durations for provider {provider.id}")
        return {"success": True, "providerId": provider.id, "counts": counts}

    def check_slot(
        self,
        provider: Provider,
        start: datetime,
        duration: int,
        exclude_booking_id: Optional[int] = None,
    ) -> Optional[str]:
        """Reason the slot cannot be booked, or None when it fits and is free"""
        template, locations = self._load(provider)
        end = start + timedelta(minutes=duration)
        # Local date can differ from the UTC date; try the zone of the day the slot falls on
        zone = self.provider_zone(template, locations)
        day = utc_to_local(start, zone).date()
        plan = self.plan_day(provider, template, locations, day, exclude_booking_id=exclude_booking_id)
        if plan.tz.key != zone.key:
            day = utc_to_local(start, plan.tz).date()
            plan = self.plan_day(provider, template, locations, day, exclude_booking_id=exclude_booking_id)

        inside = any(
            w_start <= start and end <= w_end
            for w_start, w_end in (window_bounds_utc(plan.day, w, plan.tz) for w in plan.windows)
        )
        if not inside:
            return "Selected time slot is no longer available"
        if any(intervals_overlap(start, end, b_start, b_end) for b_start, b_end in plan.booked):
            return "Appointment conflicts with existing booking"
        if any(intervals_overlap(start, end, e_start, e_end) for e_start, e_end in plan.events):
            return "Appointment conflicts with existing calendar event"
        return None

    def check_clash(
        self,
        provider: Provider,
        start: datetime,
        duration: int,
        exclude_booking_id: Optional[int] = None,
    ) -> Optional[str]:
        """Like check_slot but ignores availability windows: buffered bookings and synced events only"""
        end = start + timedelta(minutes=duration)
        if self._booked_intervals(provider, start, end, exclude_booking_id):
            return "Appointment conflicts with existing booking"
        events = self._event_intervals(provider, start, end)
        if any(intervals_overlap(start, end, e_start, e_end) for e_start, e_end in events):
            return "Appointment conflicts with existing calendar event"
        return None
