"""
Booking notifications
E-mails for each booking transition. Delivery is best effort: failures come
back as warning strings and never undo the transition.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from ...email_service import (
    send_booking_cancelled,
    send_booking_confirmed_to_customer,
    send_booking_received_to_customer,
    send_booking_rescheduled,
    send_new_booking_to_provider,
)
from ...models import Booking
from .availability_service import location_display
from .time_calculator import utc_to_local
from .token_service import MagicLinkService

logger = logging.getLogger(__name__)


async def send_notification(
    notification_type: str, recipient: Optional[str], email_func, email_kwargs: dict
) -> Optional[str]:
    """
    Send one notification e-mail

    Returns:
        None on success (or when there is no recipient), otherwise a warning message
    """
    if not recipient:
        logger.debug(f"⚠️ No email address for {notification_type} notification")
        return None
    try:
        logger.info(f"📧 Sending {notification_type} email to {recipient}")
        await email_func(**email_kwargs)
        logger.info(f"✅ {notification_type} email sent successfully to {recipient}")
        return None
    except Exception as e:
        logger.error(f"❌ Failed to send {notification_type} email to {recipient}: {e}")
        return f"Failed to send {notification_type.replace('_', ' ')} email"


def format_appointment(start: datetime, duration: int, tz: ZoneInfo) -> tuple[str, str]:
    """("Monday, March 10, 2025", "09:00 AM - 10:00 AM EDT") in the provider's zone"""
    local_start = utc_to_local(start, tz)
    local_end = utc_to_local(start + timedelta(minutes=duration), tz)
    return (
        local_start.strftime("%A, %B %d, %Y"),
        f"{local_start.strftime('%I:%M %p')} - {local_end.strftime('%I:%M %p %Z')}",
    )


class BookingNotifier:
    """Notifications for one booking, with times shown in ``tz``"""

    def __init__(self, booking: Booking, tz: ZoneInfo):
        self.booking = booking
        self.tz = tz

    @property
    def when(self) -> tuple[str, str]:
        return format_appointment(self.booking.scheduled_at, self.booking.duration, self.tz)

    @property
    def location(self) -> Optional[str]:
        return location_display(self.booking.location) if self.booking.location else None

    def _collect(self, results: list[Optional[str]]) -> list[str]:
        return [r for r in results if r]

    async def booking_created(self) -> list[str]:
        booking, customer, provider = self.booking, self.booking.customer, self.booking.provider
        scheduled_date, scheduled_time = self.when
        links = MagicLinkService.links_for_booking(booking)
        return self._collect(
            [
                await send_notification(
                    "booking_received",
                    customer.email,
                    send_booking_received_to_customer,
                    {
                        "customer_email": customer.email,
                        "customer_name": customer.full_name,
                        "provider_name": provider.name,
                        "scheduled_date": scheduled_date,
                        "scheduled_time": scheduled_time,
                        "location": self.location,
                        "confirm_url": links["confirm"],
                        "cancel_url": links["cancel"],
                        "reschedule_url": links["reschedule"],
                    },
                ),
                await send_notification(
                    "new_booking",
                    provider.email,
                    send_new_booking_to_provider,
                    {
                        "provider_email": provider.email,
                        "provider_name": provider.name,
                        "customer_name": customer.full_name,
                        "customer_email": customer.email,
                        "customer_phone": customer.phone,
                        "scheduled_date": scheduled_date,
                        "scheduled_time": scheduled_time,
                        "duration_minutes": booking.duration,
                        "notes": booking.notes,
                    },
                ),
            ]
        )

    async def booking_confirmed(self) -> list[str]:
        booking, customer, provider = self.booking, self.booking.customer, self.booking.provider
        scheduled_date, scheduled_time = self.when
        links = MagicLinkService.links_for_booking(booking)
        return self._collect(
            [
                await send_notification(
                    "booking_confirmed",
                    customer.email,
                    send_booking_confirmed_to_customer,
                    {
                        "customer_email": customer.email,
                        "customer_name": customer.full_name,
                        "provider_name": provider.name,
                        "scheduled_date": scheduled_date,
                        "scheduled_time": scheduled_time,
                        "location": self.location,
                        "cancel_url": links["cancel"],
                        "reschedule_url": links["reschedule"],
                    },
                )
            ]
        )

    async def booking_cancelled(self, by_customer: bool, reason: Optional[str] = None) -> list[str]:
        customer, provider = self.booking.customer, self.booking.provider
        scheduled_date, scheduled_time = self.when
        if by_customer:
            to, recipient_name, other_party = provider.email, provider.name, customer.full_name
        else:
            to, recipient_name, other_party = customer.email, customer.full_name, provider.name
        return self._collect(
            [
                await send_notification(
                    "booking_cancelled",
                    to,
                    send_booking_cancelled,
                    {
                        "to": to,
                        "recipient_name": recipient_name,
                        "other_party_name": other_party,
                        "scheduled_date": scheduled_date,
                        "scheduled_time": scheduled_time,
                        "reason": reason,
                        "cancelled_by_customer": by_customer,
                    },
                )
            ]
        )

    async def booking_rescheduled(
        self, by_customer: bool, previous_start: datetime, reason: Optional[str] = None
    ) -> list[str]:
        booking, customer, provider = self.booking, self.booking.customer, self.booking.provider
        old_date, old_time = format_appointment(previous_start, booking.duration, self.tz)
        scheduled_date, scheduled_time = self.when
        if by_customer:
            to, recipient_name, other_party = provider.email, provider.name, customer.full_name
            confirm_url = None
        else:
            to, recipient_name, other_party = customer.email, customer.full_name, provider.name
            confirm_url = MagicLinkService.build_url(booking, "confirm")
        return self._collect(
            [
                await send_notification(
                    "booking_rescheduled",
                    to,
                    send_booking_rescheduled,
                    {
                        "to": to,
                        "recipient_name": recipient_name,
                        "other_party_name": other_party,
                        "old_date": old_date,
                        "old_time": old_time,
                        "scheduled_date": scheduled_date,
                        "scheduled_time": scheduled_time,
                        "reason": reason,
                        "confirm_url": confirm_url,
                    },
                )
            ]
        )
