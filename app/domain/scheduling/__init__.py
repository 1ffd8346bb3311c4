"""Scheduling domain - Availability engine, bookings and calendar integrations

Layout:
- time_calculator.py - Pure date/time math (zones, windows, overlaps)
- advanced_schedule_service.py - Dated and recurring overrides of a template
- location_service.py - Where the provider is on a given date
- template_service.py - Weekly availability templates
- availability_service.py - Slot generation and per-day previews
- booking_service.py - Booking state machine
- token_service.py - Single-use magic links in customer e-mails
- integration_service.py / calendar_clients.py - External calendars
- notifications.py - Booking e-mails
- client_router.py / provider_router.py / calendar_router.py - HTTP surface
"""

from .calendar_router import router as calendar_router
from .client_router import router as client_router
from .provider_router import router as provider_router

__all__ = ["calendar_router", "client_router", "provider_router"]
