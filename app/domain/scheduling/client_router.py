"""Client router - Public availability, booking and magic-link endpoints"""

import logging
from html import escape
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from fastapi.responses import HTMLResponse
from sqlalchemy.orm import Session

from ...config import FRONTEND_URL
from ...database import get_db
from ...rate_limiter import create_rate_limiter
from .availability_service import AvailabilityService
from .booking_service import BookingService
from .schemas import BatchSlotRequest, BookingCreate, MagicLinkAction, MagicLinkReschedule

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/client", tags=["Client Booking"])

rate_limit_booking = create_rate_limiter(limit=10, window_seconds=600, key_prefix="book_appointment")
rate_limit_magic_link = create_rate_limiter(limit=30, window_seconds=600, key_prefix="magic_link")


def get_availability_service(db: Session = Depends(get_db)) -> AvailabilityService:
    """Dependency injection for AvailabilityService"""
    return AvailabilityService(db)


def get_booking_service(db: Session = Depends(get_db)) -> BookingService:
    """Dependency injection for BookingService"""
    return BookingService(db)


def wants_html(request: Request) -> bool:
    return "text/html" in request.headers.get("accept", "")


def render_result_page(title: str, message: str, success: bool = True) -> str:
    """Small standalone page for links opened from e-mail"""
    color, background, border = (
        ("#16a34a", "#f0fdf4", "#86efac") if success else ("#dc2626", "#fef2f2", "#fca5a5")
    )
    icon = "✅" if success else "⚠️"
    return f"""<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{escape(title)} - Zone Meet</title>
  </head>
  <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 50px auto; padding: 20px;">
    <div style="text-align: center; margin-bottom: 30px;">
      <h1 style="color: #4f46e5; margin: 0;">Zone Meet</h1>
    </div>
    <div style="background-color: {background}; border: 1px solid {border}; padding: 20px; border-radius: 8px; text-align: center;">
      <h2 style="color: {color}; margin-top: 0;">{icon} {escape(title)}</h2>
      <p>{escape(message)}</p>
    </div>
    <div style="text-align: center; margin-top: 30px;">
      <a href="{FRONTEND_URL}" style="background-color: #4f46e5; color: white; padding: 12px 30px; text-decoration: none; border-radius: 5px; display: inline-block;">
        Return to Zone Meet
      </a>
    </div>
  </body>
</html>"""


async def run_magic_link_action(request: Request, title: str, action):
    """Run a magic-link action, answering with an HTML page for browsers"""
    try:
        result = await action()
    except HTTPException as e:
        if not wants_html(request):
            raise
        detail = e.detail if isinstance(e.detail, str) else "This link could not be used"
        return HTMLResponse(
            render_result_page("Something went wrong", detail, success=False), status_code=e.status_code
        )
    if wants_html(request):
        return HTMLResponse(render_result_page(title, result["message"]))
    return result


def _require_token(token: Optional[str]) -> str:
    if not token:
        raise HTTPException(status_code=400, detail="Missing token")
    return token


# ============================================================================
# AVAILABILITY
# ============================================================================


@router.get("/availability-preview")
async def get_availability_preview(
    providerId: int = Query(...),
    daysAhead: int = Query(14, ge=0, le=365),
    service: AvailabilityService = Depends(get_availability_service),
):
    """Per-day availability summary for the booking calendar"""
    return service.get_preview(providerId, daysAhead)


@router.get("/slots-on-demand")
async def get_slots_on_demand(
    providerId: int = Query(...),
    date: str = Query(..., description="Calendar date, YYYY-MM-DD"),
    duration: int = Query(...),
    service: AvailabilityService = Depends(get_availability_service),
):
    """Concrete bookable slots for one date and duration"""
    return service.get_slots(providerId, date, duration)


@router.post("/batch-slot-availability")
async def batch_slot_availability(
    data: BatchSlotRequest,
    service: AvailabilityService = Depends(get_availability_service),
):
    """Slot counts for several dates and durations at once"""
    return service.get_slot_counts(data.providerId, data.dates, data.durations)


# ============================================================================
# BOOKING
# ============================================================================


@router.post("/book-appointment", dependencies=[Depends(rate_limit_booking)])
async def book_appointment(
    data: BookingCreate,
    service: BookingService = Depends(get_booking_service),
):
    """Create a PENDING booking for a free slot"""
    return await service.create_booking(data)


# ============================================================================
# MAGIC LINKS
# ============================================================================


@router.get("/booking/confirm", dependencies=[Depends(rate_limit_magic_link)])
@router.post("/booking/confirm", dependencies=[Depends(rate_limit_magic_link)])
async def confirm_booking_via_link(
    request: Request,
    token: Optional[str] = Query(None),
    data: Optional[MagicLinkAction] = Body(None),
    service: BookingService = Depends(get_booking_service),
):
    """Customer confirms from the e-mail link"""
    token = token or (data.token if data else None)
    return await run_magic_link_action(
        request,
        "Booking Confirmed",
        lambda: service.confirm_via_link(_require_token(token)),
    )


@router.get("/booking/cancel", dependencies=[Depends(rate_limit_magic_link)])
@router.post("/booking/cancel", dependencies=[Depends(rate_limit_magic_link)])
async def cancel_booking_via_link(
    request: Request,
    token: Optional[str] = Query(None),
    data: Optional[MagicLinkAction] = Body(None),
    service: BookingService = Depends(get_booking_service),
):
    """Customer cancels from the e-mail link"""
    token = token or (data.token if data else None)
    reason = data.reason if data else None
    return await run_magic_link_action(
        request,
        "Booking Cancelled",
        lambda: service.cancel_via_link(_require_token(token), reason),
    )


@router.post("/booking/reschedule", dependencies=[Depends(rate_limit_magic_link)])
async def reschedule_booking_via_link(
    data: MagicLinkReschedule,
    service: BookingService = Depends(get_booking_service),
):
    """Customer picks a new time on the reschedule page"""
    return await service.reschedule_via_link(
        _require_token(data.token), data.newDateTime, data.duration, data.reason
    )


@router.get("/booking/details", dependencies=[Depends(rate_limit_magic_link)])
async def get_booking_details_via_link(
    token: Optional[str] = Query(None),
    service: BookingService = Depends(get_booking_service),
):
    """Booking shown on the reschedule page"""
    return service.details_via_link(_require_token(token))
