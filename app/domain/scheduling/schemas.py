"""Scheduling domain schemas - Pydantic models for validation"""

from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, Field, field_validator

from .time_calculator import parse_calendar_date, parse_hhmm

RECURRENCE_TYPES = ("DAILY", "WEEKLY", "BIWEEKLY", "MONTHLY", "YEARLY")


def _validate_hhmm(v):
    if v is None:
        return v
    try:
        return parse_hhmm(v).strftime("%H:%M")
    except ValueError as e:
        raise ValueError(f"Invalid time '{v}', expected HH:MM") from e


def _validate_date(v):
    if v in (None, ""):
        return None
    parse_calendar_date(v)
    return v


def _validate_recurrence_type(v):
    if v is None:
        return v
    v = v.upper()
    if v not in RECURRENCE_TYPES:
        raise ValueError(f"recurrenceType must be one of {', '.join(RECURRENCE_TYPES)}")
    return v


ClockTime = Annotated[str, AfterValidator(_validate_hhmm)]
CalendarDate = Annotated[str, AfterValidator(_validate_date)]
RecurrenceType = Annotated[str, AfterValidator(_validate_recurrence_type)]


# ============================================================================
# TEMPLATES
# ============================================================================


class TimeSlotInput(BaseModel):
    """One weekly window"""

    dayOfWeek: int = Field(ge=0, le=6)
    startTime: ClockTime
    endTime: ClockTime
    isEnabled: bool = True


class TemplateCreate(BaseModel):
    name: str
    description: Optional[str] = None
    timezone: Optional[str] = None
    isDefault: bool = False
    isActive: bool = True
    timeSlots: list[TimeSlotInput] = []


class TemplateUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    timezone: Optional[str] = None
    isDefault: Optional[bool] = None
    isActive: Optional[bool] = None
    timeSlots: Optional[list[TimeSlotInput]] = None


# ============================================================================
# ADVANCED SCHEDULES
# ============================================================================


class ScheduleTimeSlotInput(TimeSlotInput):
    weekNumber: Optional[int] = Field(default=None, ge=0)


def check_days_of_week(days: list[int]) -> list[int]:
    if any(d < 0 or d > 6 for d in days):
        raise ValueError("daysOfWeek values must be between 0 (Sunday) and 6 (Saturday)")
    return sorted(set(days))


class ScheduleCreate(BaseModel):
    """Schema for creating an advanced availability schedule"""

    templateId: int
    name: str
    description: Optional[str] = None
    startDate: CalendarDate
    endDate: Optional[CalendarDate] = None
    isRecurring: bool = False
    recurrenceType: Optional[RecurrenceType] = None
    recurrenceInterval: int = Field(default=1, ge=1)
    daysOfWeek: list[int] = []
    weekOfMonth: Optional[int] = Field(default=None, ge=1, le=5)
    monthOfYear: Optional[int] = Field(default=None, ge=1, le=12)
    recurrenceEndDate: Optional[CalendarDate] = None
    occurrenceCount: Optional[int] = Field(default=None, ge=1)
    priority: int = 0
    timeSlots: list[ScheduleTimeSlotInput] = []

    @field_validator("daysOfWeek")
    @classmethod
    def validate_days(cls, v):
        return check_days_of_week(v)


class ScheduleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    startDate: Optional[CalendarDate] = None
    endDate: Optional[CalendarDate] = None
    isRecurring: Optional[bool] = None
    recurrenceType: Optional[RecurrenceType] = None
    recurrenceInterval: Optional[int] = Field(default=None, ge=1)
    daysOfWeek: Optional[list[int]] = None
    weekOfMonth: Optional[int] = Field(default=None, ge=1, le=5)
    monthOfYear: Optional[int] = Field(default=None, ge=1, le=12)
    recurrenceEndDate: Optional[CalendarDate] = None
    occurrenceCount: Optional[int] = Field(default=None, ge=1)
    priority: Optional[int] = None
    isActive: Optional[bool] = None
    timeSlots: Optional[list[ScheduleTimeSlotInput]] = None

    @field_validator("daysOfWeek")
    @classmethod
    def validate_days(cls, v):
        return check_days_of_week(v) if v is not None else v


class ScheduleToggle(BaseModel):
    isActive: bool


# ============================================================================
# LOCATIONS
# ============================================================================


class LocationCreate(BaseModel):
    """City, state and country are checked by the service (400 when missing)"""

    addressLine1: Optional[str] = None
    addressLine2: Optional[str] = None
    city: Optional[str] = None
    stateProvince: Optional[str] = None
    postalCode: Optional[str] = None
    country: Optional[str] = None
    timezone: Optional[str] = None
    description: Optional[str] = None
    startDate: Optional[CalendarDate] = None
    endDate: Optional[CalendarDate] = None
    isDefault: bool = False
    isActive: bool = True


class LocationUpdate(LocationCreate):
    isDefault: Optional[bool] = None
    isActive: Optional[bool] = None


# ============================================================================
# BOOKINGS
# ============================================================================


class CustomerInput(BaseModel):
    email: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    phone: Optional[str] = None


class BookingCreate(BaseModel):
    """Public booking request. Required fields are enforced by the service."""

    providerId: Optional[int] = None
    scheduledAt: Optional[str] = None
    duration: Optional[int] = None
    customer: Optional[CustomerInput] = None
    serviceType: Optional[str] = None
    notes: Optional[str] = None
    locationId: Optional[int] = None


class RescheduleRequest(BaseModel):
    newDateTime: Optional[str] = None
    duration: Optional[int] = None
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class MagicLinkAction(BaseModel):
    token: Optional[str] = None
    reason: Optional[str] = None


class MagicLinkReschedule(RescheduleRequest):
    token: Optional[str] = None


# ============================================================================
# CALENDAR CONNECTIONS
# ============================================================================


class AppleConnectRequest(BaseModel):
    appleId: str
    appSpecificPassword: str


class ConnectionSettingsUpdate(BaseModel):
    isDefaultForBookings: Optional[bool] = None
    syncEvents: Optional[bool] = None
    allowBookings: Optional[bool] = None
    calendarId: Optional[str] = None
    calendarName: Optional[str] = None
    selectedCalendars: Optional[list[str]] = None


# ============================================================================
# AVAILABILITY
# ============================================================================


class BatchSlotRequest(BaseModel):
    providerId: Optional[int] = None
    dates: Optional[list[str]] = None
    durations: Optional[list[int]] = None
