"""Provider router - Bookings, locations and availability for the signed-in provider"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ...auth import get_current_provider
from ...database import get_db
from ...models import Provider
from .advanced_schedule_service import AdvancedScheduleService, schedule_to_dict
from .booking_service import BookingService, booking_to_dict
from .location_service import LocationService, location_to_dict
from .schemas import (
    CancelRequest,
    LocationCreate,
    LocationUpdate,
    RescheduleRequest,
    ScheduleCreate,
    ScheduleToggle,
    ScheduleUpdate,
    TemplateCreate,
    TemplateUpdate,
)
from .template_service import TemplateService, template_to_dict
from .time_calculator import parse_calendar_date

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/provider", tags=["Provider Scheduling"])


def get_booking_service(db: Session = Depends(get_db)) -> BookingService:
    return BookingService(db)


def get_location_service(db: Session = Depends(get_db)) -> LocationService:
    return LocationService(db)


def get_template_service(db: Session = Depends(get_db)) -> TemplateService:
    return TemplateService(db)


def get_schedule_service(db: Session = Depends(get_db)) -> AdvancedScheduleService:
    return AdvancedScheduleService(db)


# ============================================================================
# BOOKINGS
# ============================================================================


@router.get("/bookings")
async def list_bookings(
    status: Optional[str] = Query(None),
    current_provider: Provider = Depends(get_current_provider),
    service: BookingService = Depends(get_booking_service),
):
    """All bookings of the provider, optionally filtered by status"""
    return service.list_bookings(current_provider, status)


@router.delete("/bookings")
async def delete_finished_bookings(
    current_provider: Provider = Depends(get_current_provider),
    service: BookingService = Depends(get_booking_service),
):
    """Clear out every cancelled and completed booking"""
    return service.delete_finished(current_provider)


@router.get("/bookings/{booking_id}")
async def get_booking(
    booking_id: int,
    current_provider: Provider = Depends(get_current_provider),
    service: BookingService = Depends(get_booking_service),
):
    return booking_to_dict(service.get_provider_booking(booking_id, current_provider))


@router.delete("/bookings/{booking_id}")
async def delete_booking(
    booking_id: int,
    current_provider: Provider = Depends(get_current_provider),
    service: BookingService = Depends(get_booking_service),
):
    """Delete a cancelled or completed booking"""
    booking = service.get_provider_booking(booking_id, current_provider)
    return service.delete(booking)


@router.post("/bookings/{booking_id}/confirm")
async def confirm_booking(
    booking_id: int,
    current_provider: Provider = Depends(get_current_provider),
    service: BookingService = Depends(get_booking_service),
):
    booking = service.get_provider_booking(booking_id, current_provider)
    return await service.confirm(booking, by_customer=False)


@router.post("/bookings/{booking_id}/cancel")
async def cancel_booking(
    booking_id: int,
    data: Optional[CancelRequest] = None,
    current_provider: Provider = Depends(get_current_provider),
    service: BookingService = Depends(get_booking_service),
):
    """Deny a pending booking or cancel a confirmed one"""
    booking = service.get_provider_booking(booking_id, current_provider)
    return await service.cancel(booking, by_customer=False, reason=data.reason if data else None)


@router.post("/bookings/{booking_id}/reschedule")
async def reschedule_booking(
    booking_id: int,
    data: RescheduleRequest,
    current_provider: Provider = Depends(get_current_provider),
    service: BookingService = Depends(get_booking_service),
):
    """Move a booking; it goes back to PENDING until the customer confirms"""
    booking = service.get_provider_booking(booking_id, current_provider)
    return await service.reschedule(
        booking, data.newDateTime, by_customer=False, duration=data.duration, reason=data.reason
    )


@router.post("/bookings/{booking_id}/complete")
async def complete_booking(
    booking_id: int,
    current_provider: Provider = Depends(get_current_provider),
    service: BookingService = Depends(get_booking_service),
):
    booking = service.get_provider_booking(booking_id, current_provider)
    return service.complete(booking)


# ============================================================================
# LOCATIONS
# ============================================================================


@router.get("/location")
async def get_locations(
    current_provider: Provider = Depends(get_current_provider),
    service: LocationService = Depends(get_location_service),
):
    locations = service.get_locations(current_provider)
    return {"locations": [location_to_dict(loc) for loc in locations]}


@router.post("/location")
async def create_location(
    data: LocationCreate,
    current_provider: Provider = Depends(get_current_provider),
    service: LocationService = Depends(get_location_service),
):
    location = service.create_location(data, current_provider)
    return {"success": True, "location": location_to_dict(location)}


@router.get("/location/for-date")
async def get_location_for_date(
    date: str = Query(..., description="Calendar date, YYYY-MM-DD"),
    current_provider: Provider = Depends(get_current_provider),
    service: LocationService = Depends(get_location_service),
):
    """Location that applies on a given date"""
    try:
        target = parse_calendar_date(date)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    location = service.location_for_date(current_provider.id, target)
    return {"date": target.isoformat(), "location": location_to_dict(location)}


@router.put("/location/{location_id}")
async def update_location(
    location_id: int,
    data: LocationUpdate,
    current_provider: Provider = Depends(get_current_provider),
    service: LocationService = Depends(get_location_service),
):
    location = service.update_location(location_id, data, current_provider)
    return {"success": True, "location": location_to_dict(location)}


@router.delete("/location/{location_id}")
async def delete_location(
    location_id: int,
    current_provider: Provider = Depends(get_current_provider),
    service: LocationService = Depends(get_location_service),
):
    return service.delete_location(location_id, current_provider)


# ============================================================================
# AVAILABILITY TEMPLATES
# ============================================================================


@router.get("/availability/templates")
async def get_templates(
    current_provider: Provider = Depends(get_current_provider),
    service: TemplateService = Depends(get_template_service),
):
    return {"templates": [template_to_dict(t) for t in service.get_templates(current_provider)]}


@router.post("/availability/templates")
async def create_template(
    data: TemplateCreate,
    current_provider: Provider = Depends(get_current_provider),
    service: TemplateService = Depends(get_template_service),
):
    template = service.create_template(data, current_provider)
    return {"success": True, "template": template_to_dict(template)}


@router.get("/availability/templates/{template_id}")
async def get_template(
    template_id: int,
    current_provider: Provider = Depends(get_current_provider),
    service: TemplateService = Depends(get_template_service),
):
    return template_to_dict(service.get_template(template_id, current_provider))


@router.put("/availability/templates/{template_id}")
async def update_template(
    template_id: int,
    data: TemplateUpdate,
    current_provider: Provider = Depends(get_current_provider),
    service: TemplateService = Depends(get_template_service),
):
    template = service.update_template(template_id, data, current_provider)
    return {"success": True, "template": template_to_dict(template)}


@router.delete("/availability/templates/{template_id}")
async def delete_template(
    template_id: int,
    current_provider: Provider = Depends(get_current_provider),
    service: TemplateService = Depends(get_template_service),
):
    return service.delete_template(template_id, current_provider)


# ============================================================================
# ADVANCED AVAILABILITY
# ============================================================================


@router.get("/advanced-availability")
async def list_schedules(
    templateId: int = Query(...),
    current_provider: Provider = Depends(get_current_provider),
    service: AdvancedScheduleService = Depends(get_schedule_service),
):
    schedules = service.list_schedules(templateId, current_provider)
    return {"schedules": [schedule_to_dict(s) for s in schedules]}


@router.post("/advanced-availability")
async def create_schedule(
    data: ScheduleCreate,
    current_provider: Provider = Depends(get_current_provider),
    service: AdvancedScheduleService = Depends(get_schedule_service),
):
    schedule = service.create_schedule(data, current_provider)
    return {"success": True, "schedule": schedule_to_dict(schedule)}


@router.get("/advanced-availability/resolve")
async def resolve_day(
    templateId: int = Query(...),
    date: str = Query(..., description="Calendar date, YYYY-MM-DD"),
    current_provider: Provider = Depends(get_current_provider),
    service: AdvancedScheduleService = Depends(get_schedule_service),
):
    """Which schedule wins on a date and the windows it yields"""
    service.list_schedules(templateId, current_provider)  # ownership check
    try:
        target = parse_calendar_date(date)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    resolved = service.resolve_day(templateId, target)
    return {
        "date": target.isoformat(),
        "timeWindows": resolved.time_windows,
        "appliedSchedules": resolved.applied_schedules,
        "usingAdvancedSchedules": resolved.uses_advanced,
    }


@router.get("/advanced-availability/{schedule_id}")
async def get_schedule(
    schedule_id: int,
    current_provider: Provider = Depends(get_current_provider),
    service: AdvancedScheduleService = Depends(get_schedule_service),
):
    return schedule_to_dict(service.get_schedule(schedule_id, current_provider))


@router.put("/advanced-availability/{schedule_id}")
async def update_schedule(
    schedule_id: int,
    data: ScheduleUpdate,
    current_provider: Provider = Depends(get_current_provider),
    service: AdvancedScheduleService = Depends(get_schedule_service),
):
    schedule = service.update_schedule(schedule_id, data, current_provider)
    return {"success": True, "schedule": schedule_to_dict(schedule)}


@router.patch("/advanced-availability/{schedule_id}")
async def toggle_schedule(
    schedule_id: int,
    data: ScheduleToggle,
    current_provider: Provider = Depends(get_current_provider),
    service: AdvancedScheduleService = Depends(get_schedule_service),
):
    schedule = service.toggle_active(schedule_id, data.isActive, current_provider)
    return {"success": True, "schedule": schedule_to_dict(schedule)}


@router.delete("/advanced-availability/{schedule_id}")
async def delete_schedule(
    schedule_id: int,
    current_provider: Provider = Depends(get_current_provider),
    service: AdvancedScheduleService = Depends(get_schedule_service),
):
    return service.delete_schedule(schedule_id, current_provider)
