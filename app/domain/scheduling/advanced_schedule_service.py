"""Advanced schedule service - Dated and recurring overrides on top of templates

For a calendar date the active schedules covering it are matched against
their recurrence rules. The single highest-priority match (lowest id on a
tie) supplies the day's windows; a winner without windows for the weekday
makes the day unavailable. No match means the template's weekly hours apply.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...models import AvailabilitySchedule, Provider, ScheduleTimeSlot
from .repository import SchedulingRepository
from .schemas import ScheduleCreate, ScheduleTimeSlotInput, ScheduleUpdate
from .time_calculator import day_of_week, parse_calendar_date

logger = logging.getLogger(__name__)


@dataclass
class ResolvedDay:
    time_windows: list[dict] = field(default_factory=list)
    applied_schedules: list[dict] = field(default_factory=list)

    @property
    def uses_advanced(self) -> bool:
        return bool(self.applied_schedules)


def _interval(schedule: AvailabilitySchedule) -> int:
    return max(schedule.recurrence_interval or 1, 1)


def _schedule_weekdays(schedule: AvailabilitySchedule) -> set[int]:
    """Explicit days_of_week, else the weekdays the schedule has windows on"""
    if schedule.days_of_week:
        return set(schedule.days_of_week)
    return {s.day_of_week for s in schedule.time_slots if s.is_enabled}


def _pattern_matches(schedule: AvailabilitySchedule, target: date) -> bool:
    days_since_start = (target - schedule.start_date).days
    if days_since_start < 0:
        return False
    interval = _interval(schedule)
    weekday = day_of_week(target)
    rtype = (schedule.recurrence_type or "").upper()

    if rtype == "DAILY":
        return days_since_start % interval == 0
    if rtype == "WEEKLY":
        # Multi-week patterns pick their windows by week_number later
        return weekday in _schedule_weekdays(schedule)
    if rtype == "BIWEEKLY":
        return (days_since_start // 14) % interval == 0 and weekday in _schedule_weekdays(schedule)
    if rtype == "MONTHLY":
        if schedule.month_of_year and target.month != schedule.month_of_year:
            return False
        if schedule.week_of_month and -(-target.day // 7) != schedule.week_of_month:
            return False
        return weekday in _schedule_weekdays(schedule)
    if rtype == "YEARLY":
        start = schedule.start_date
        return (
            target.month == start.month
            and target.day == start.day
            and (target.year - start.year) % interval == 0
        )
    return False


def matches_recurrence(schedule: AvailabilitySchedule, target: date) -> bool:
    """Whether ``target`` is an occurrence of ``schedule`` (range checks included)"""
    if target < schedule.start_date:
        return False
    if schedule.end_date and target > schedule.end_date:
        return False
    if not schedule.is_recurring:
        return True
    if schedule.recurrence_end_date and target > schedule.recurrence_end_date:
        return False
    if not _pattern_matches(schedule, target):
        return False
    if schedule.occurrence_count:
        # 0-based index of target among the pattern's dates
        index = 0
        day = schedule.start_date
        while day < target:
            if _pattern_matches(schedule, day):
                index += 1
                if index >= schedule.occurrence_count:
                    return False
            day += timedelta(days=1)
    return True


def week_in_cycle(schedule: AvailabilitySchedule, target: date) -> Optional[int]:
    """0-indexed week of a multi-week WEEKLY pattern, None for everything else"""
    interval = _interval(schedule)
    if (schedule.recurrence_type or "").upper() != "WEEKLY" or interval <= 1:
        return None
    return ((target - schedule.start_date).days // 7) % interval


def windows_for_day(schedule: AvailabilitySchedule, target: date) -> list[dict]:
    """Enabled, de-duplicated windows of ``schedule`` for the target's weekday"""
    weekday = day_of_week(target)
    cycle_week = week_in_cycle(schedule, target)
    seen = set()
    windows = []
    for slot in schedule.time_slots:
        if slot.day_of_week != weekday or not slot.is_enabled:
            continue
        if cycle_week is not None and slot.week_number is not None and slot.week_number != cycle_week:
            continue
        key = (slot.start_time, slot.end_time)
        if key in seen:
            continue
        seen.add(key)
        windows.append({"start": slot.start_time, "end": slot.end_time})
    return sorted(windows, key=lambda w: w["start"])


def resolve_from_schedules(schedules: list[AvailabilitySchedule], target: date) -> ResolvedDay:
    """Pick the winning schedule for ``target`` out of ``schedules``"""
    matching = [s for s in schedules if s.is_active and matches_recurrence(s, target)]
    if not matching:
        return ResolvedDay()

    matching.sort(key=lambda s: (-(s.priority or 0), s.id))
    winner = matching[0]
    windows = windows_for_day(winner, target)
    if not windows:
        logger.debug(f"🚫 Schedule {winner.id} blocks {target.isoformat()} (no windows for weekday)")

    return ResolvedDay(
        time_windows=windows,
        applied_schedules=[
            {"id": s.id, "name": s.name, "priority": s.priority, "winner": s is winner}
            for s in matching
        ],
    )


def template_windows_for_day(template, target: date) -> list[dict]:
    """Plain weekly windows of a template for the target's weekday"""
    weekday = day_of_week(target)
    seen = set()
    windows = []
    for slot in template.time_slots:
        if slot.day_of_week == weekday and slot.is_enabled and (slot.start_time, slot.end_time) not in seen:
            seen.add((slot.start_time, slot.end_time))
            windows.append({"start": slot.start_time, "end": slot.end_time})
    return sorted(windows, key=lambda w: w["start"])


def schedule_to_dict(schedule: AvailabilitySchedule) -> dict:
    return {
        "id": schedule.id,
        "templateId": schedule.template_id,
        "name": schedule.name,
        "description": schedule.description,
        "startDate": schedule.start_date.isoformat(),
        "endDate": schedule.end_date.isoformat() if schedule.end_date else None,
        "isRecurring": schedule.is_recurring,
        "recurrenceType": schedule.recurrence_type,
        "recurrenceInterval": schedule.recurrence_interval,
        "daysOfWeek": schedule.days_of_week or [],
        "weekOfMonth": schedule.week_of_month,
        "monthOfYear": schedule.month_of_year,
        "recurrenceEndDate": (
            schedule.recurrence_end_date.isoformat() if schedule.recurrence_end_date else None
        ),
        "occurrenceCount": schedule.occurrence_count,
        "priority": schedule.priority,
        "isActive": schedule.is_active,
        "timeSlots": [
            {
                "id": s.id,
                "dayOfWeek": s.day_of_week,
                "startTime": s.start_time,
                "endTime": s.end_time,
                "isEnabled": s.is_enabled,
                "weekNumber": s.week_number,
            }
            for s in schedule.time_slots
        ],
    }


class AdvancedScheduleService:
    """Resolution and CRUD for advanced availability schedules"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = SchedulingRepository()

    def resolve_day(self, template_id: int, target: date) -> ResolvedDay:
        schedules = self.repo.get_schedules_covering(self.db, template_id, target)
        return resolve_from_schedules(schedules, target)

    def _get_template(self, template_id: int, provider: Provider):
        template = self.repo.get_template(self.db, template_id, provider.id)
        if not template:
            raise HTTPException(status_code=404, detail="Template not found")
        return template

    def get_schedule(self, schedule_id: int, provider: Provider) -> AvailabilitySchedule:
        schedule = self.repo.get_schedule(self.db, schedule_id, provider.id)
        if not schedule:
            raise HTTPException(status_code=404, detail="Schedule not found")
        return schedule

    def list_schedules(self, template_id: int, provider: Provider) -> list[AvailabilitySchedule]:
        self._get_template(template_id, provider)
        return self.repo.get_schedules(self.db, template_id)

    @staticmethod
    def _build_slots(slots: list[ScheduleTimeSlotInput]) -> list[ScheduleTimeSlot]:
        built = []
        for slot in slots:
            if slot.startTime >= slot.endTime:
                raise HTTPException(
                    status_code=400,
                    detail=f"Start time must be before end time ({slot.startTime}-{slot.endTime})",
                )
            built.append(
                ScheduleTimeSlot(
                    day_of_week=slot.dayOfWeek,
                    start_time=slot.startTime,
                    end_time=slot.endTime,
                    is_enabled=slot.isEnabled,
                    week_number=slot.weekNumber,
                )
            )
        return built

    @staticmethod
    def _validate(schedule: AvailabilitySchedule) -> None:
        if schedule.end_date and schedule.end_date < schedule.start_date:
            raise HTTPException(status_code=400, detail="End date must be on or after start date")
        if schedule.is_recurring and not schedule.recurrence_type:
            raise HTTPException(
                status_code=400, detail="Recurring schedules need a recurrenceType"
            )
        if not schedule.is_recurring:
            schedule.recurrence_type = None

    def create_schedule(self, data: ScheduleCreate, provider: Provider) -> AvailabilitySchedule:
        logger.info(f"📥 Creating advanced schedule '{data.name}' for provider {provider.id}")
        self._get_template(data.templateId, provider)

        schedule = AvailabilitySchedule(
            template_id=data.templateId,
            name=data.name,
            description=data.description,
            start_date=parse_calendar_date(data.startDate),
            end_date=parse_calendar_date(data.endDate) if data.endDate else None,
            is_recurring=data.isRecurring,
            recurrence_type=data.recurrenceType,
            recurrence_interval=data.recurrenceInterval,
            days_of_week=data.daysOfWeek,
            week_of_month=data.weekOfMonth,
            month_of_year=data.monthOfYear,
            recurrence_end_date=(
                parse_calendar_date(data.recurrenceEndDate) if data.recurrenceEndDate else None
            ),
            occurrence_count=data.occurrenceCount,
            priority=data.priority,
            is_active=True,
        )
        self._validate(schedule)
        schedule.time_slots = self._build_slots(data.timeSlots)

        self.db.add(schedule)
        self.db.commit()
        self.db.refresh(schedule)
        logger.info(f"✅ Advanced schedule {schedule.id} created (priority {schedule.priority})")
        return schedule

    def update_schedule(
        self, schedule_id: int, data: ScheduleUpdate, provider: Provider
    ) -> AvailabilitySchedule:
        schedule = self.get_schedule(schedule_id, provider)
        fields = data.model_dump(exclude_unset=True)

        column_map = {
            "name": "name",
            "description": "description",
            "isRecurring": "is_recurring",
            "recurrenceType": "recurrence_type",
            "recurrenceInterval": "recurrence_interval",
            "daysOfWeek": "days_of_week",
            "weekOfMonth": "week_of_month",
            "monthOfYear": "month_of_year",
            "occurrenceCount": "occurrence_count",
            "priority": "priority",
            "isActive": "is_active",
        }
        for key, column in column_map.items():
            if key in fields:
                setattr(schedule, column, fields[key])
        for key, column in (
            ("startDate", "start_date"),
            ("endDate", "end_date"),
            ("recurrenceEndDate", "recurrence_end_date"),
        ):
            if key in fields:
                value = fields[key]
                if key == "startDate" and not value:
                    raise HTTPException(status_code=400, detail="Start date is required")
                setattr(schedule, column, parse_calendar_date(value) if value else None)

        self._validate(schedule)
        if data.timeSlots is not None:
            # Replace all windows
            schedule.time_slots = self._build_slots(data.timeSlots)

        self.db.commit()
        self.db.refresh(schedule)
        logger.info(f"✅ Advanced schedule {schedule.id} updated")
        return schedule

    def toggle_active(self, schedule_id: int, is_active: bool, provider: Provider) -> AvailabilitySchedule:
        schedule = self.get_schedule(schedule_id, provider)
        schedule.is_active = is_active
        self.db.commit()
        self.db.refresh(schedule)
        logger.info(f"🔁 Advanced schedule {schedule.id} {'activated' if is_active else 'deactivated'}")
        return schedule

    def delete_schedule(self, schedule_id: int, provider: Provider) -> dict:
        schedule = self.get_schedule(schedule_id, provider)
        self.db.delete(schedule)
        self.db.commit()
        logger.info(f"🗑️ Advanced schedule {schedule_id} deleted")
        return {"success": True, "message": "Schedule deleted"}
