"""Booking service - Booking lifecycle for customers and providers

PENDING -> CONFIRMED -> COMPLETED, PENDING/CONFIRMED -> CANCELLED, and
rescheduling back to PENDING. Calendar events and e-mails are side effects:
their failures are logged and returned as ``warnings``.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models import Booking, BookingParty, BookingStatus, Provider
from .availability_service import AvailabilityService, allowed_durations_for, location_display
from .calendar_clients import CalendarAPIError
from .integration_service import CalendarIntegrationService
from .location_service import location_to_dict, pick_location_for_date
from .notifications import BookingNotifier
from .repository import SchedulingRepository
from .schemas import BookingCreate
from .time_calculator import local_today, parse_instant, to_iso, utc_to_local, utcnow
from .token_service import MagicLinkService

logger = logging.getLogger(__name__)

BOOKING_CREATED_MESSAGE = (
    "Booking request submitted successfully! The provider will review your request "
    "and send you a confirmation."
)


def booking_to_dict(booking: Booking) -> dict:
    customer = booking.customer
    return {
        "id": booking.id,
        "providerId": booking.provider_id,
        "scheduledAt": to_iso(booking.scheduled_at),
        "endTime": to_iso(booking.scheduled_at + timedelta(minutes=booking.duration)),
        "duration": booking.duration,
        "serviceType": booking.service_type,
        "notes": booking.notes,
        "status": booking.status,
        "customer": {
            "id": customer.id,
            "email": customer.email,
            "firstName": customer.first_name,
            "lastName": customer.last_name,
            "phone": customer.phone,
        },
        "location": location_to_dict(booking.location),
        "externalEventId": booking.external_event_id,
        "rescheduledBy": booking.rescheduled_by,
        "createdAt": to_iso(booking.created_at),
        "updatedAt": to_iso(booking.updated_at),
    }


class BookingService:
    """Service for booking operations"""

    def __init__(
        self,
        db: Session,
        integrations: Optional[CalendarIntegrationService] = None,
        magic_links: Optional[MagicLinkService] = None,
    ):
        self.db = db
        self.repo = SchedulingRepository()
        self.availability = AvailabilityService(db)
        self.integrations = integrations or CalendarIntegrationService(db)
        self.magic_links = magic_links or MagicLinkService(db)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def provider_zone(self, provider: Provider) -> ZoneInfo:
        template, locations = self.availability._load(provider)
        return self.availability.provider_zone(template, locations)

    def _notifier(self, booking: Booking) -> BookingNotifier:
        return BookingNotifier(booking, self.provider_zone(booking.provider))

    @staticmethod
    def _parse_time(value: Optional[str], field_name: str = "scheduledAt") -> datetime:
        if not value:
            raise HTTPException(status_code=400, detail="New date and time is required")
        try:
            return parse_instant(value)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=f"Invalid {field_name} format") from e

    def _check_window(self, provider: Provider, start: datetime, now: datetime) -> None:
        """Future and inside the provider's advance-booking window"""
        if start <= now:
            raise HTTPException(status_code=400, detail="Cannot book appointments in the past")
        zone = self.provider_zone(provider)
        last_day = local_today(zone, now) + timedelta(days=provider.advance_booking_days)
        if utc_to_local(start, zone).date() > last_day:
            raise HTTPException(
                status_code=400,
                detail=f"Bookings are only available {provider.advance_booking_days} days in advance",
            )

    def get_provider_booking(self, booking_id: int, provider: Provider) -> Booking:
        booking = self.repo.get_provider_booking(self.db, booking_id, provider.id)
        if not booking:
            raise HTTPException(status_code=404, detail="Booking not found or access denied")
        return booking

    def _commit_slot(self, provider_id: int, start: datetime) -> None:
        """Commit a new or moved booking; of two writers racing for one start, the second fails here"""
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(f"🚫 Provider {provider_id} already has a live booking at {to_iso(start)}")
            raise HTTPException(status_code=400, detail="Appointment conflicts with existing booking") from e

    async def _sync_calendar_event(self, booking: Booking, warnings: list[str]) -> None:
        try:
            await self.integrations.create_booking_event(booking)
        except CalendarAPIError as e:
            logger.error(f"❌ Calendar event for booking {booking.id} failed: {str(e)}")
            warnings.append("Booking confirmed but the calendar event could not be created")

    async def _remove_calendar_event(self, booking: Booking, warnings: list[str]) -> None:
        try:
            await self.integrations.delete_booking_event(booking)
        except CalendarAPIError as e:
            logger.error(f"❌ Removing calendar event for booking {booking.id} failed: {str(e)}")
            warnings.append("The calendar event could not be removed")

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_booking(self, data: BookingCreate, now: Optional[datetime] = None) -> dict:
        """Public booking. The slot check and insert run under a row lock on the provider."""
        if not data.providerId or not data.scheduledAt or not data.duration or not data.customer:
            raise HTTPException(
                status_code=400,
                detail="Missing required fields: providerId, scheduledAt, duration, customer",
            )
        email = (data.customer.email or "").strip().lower()
        if not email:
            raise HTTPException(status_code=400, detail="Customer email is required")
        start = self._parse_time(data.scheduledAt)
        now = now or utcnow()

        provider = self.repo.lock_provider(self.db, data.providerId)
        if not provider:
            raise HTTPException(status_code=404, detail="Provider not found")
        if data.duration not in allowed_durations_for(provider):
            raise HTTPException(status_code=400, detail="Duration not allowed for this provider")
        self._check_window(provider, start, now)

        reason = self.availability.check_slot(provider, start, data.duration)
        if reason:
            self.db.rollback()
            logger.info(f"🚫 Booking rejected for provider {provider.id} at {to_iso(start)}: {reason}")
            raise HTTPException(status_code=400, detail=reason)

        if data.locationId:
            location = self.repo.get_location(self.db, data.locationId, provider.id)
            if not location:
                raise HTTPException(status_code=400, detail="Location not found")
        else:
            _, locations = self.availability._load(provider)
            location = pick_location_for_date(
                locations, utc_to_local(start, self.provider_zone(provider)).date()
            )

        customer = self.repo.upsert_customer(
            self.db, email, data.customer.firstName, data.customer.lastName, data.customer.phone
        )
        booking = Booking(
            provider_id=provider.id,
            customer_id=customer.id,
            scheduled_at=start,
            duration=data.duration,
            service_type=data.serviceType or "consultation",
            notes=data.notes,
            status=BookingStatus.PENDING,
            location_id=location.id if location else None,
        )
        self.db.add(booking)
        self._commit_slot(provider.id, start)
        self.db.refresh(booking)
        logger.info(f"✅ Booking {booking.id} created for provider {provider.id} at {to_iso(start)}")

        warnings = await self._notifier(booking).booking_created()
        return {
            "success": True,
            "message": BOOKING_CREATED_MESSAGE,
            "booking": booking_to_dict(booking),
            "warnings": warnings,
        }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def confirm(self, booking: Booking, by_customer: bool = False) -> dict:
        if booking.status == BookingStatus.CONFIRMED:
            return {
                "success": True,
                "message": "Booking already confirmed",
                "booking": booking_to_dict(booking),
                "warnings": [],
            }
        if booking.status != BookingStatus.PENDING:
            raise HTTPException(
                status_code=400, detail=f"Booking is already {booking.status.lower()}"
            )
        party = BookingParty.CUSTOMER if by_customer else BookingParty.PROVIDER
        if booking.rescheduled_by == party:
            other = "provider" if by_customer else "customer"
            raise HTTPException(
                status_code=400, detail=f"The new time is waiting for the {other} to confirm it"
            )

        booking.status = BookingStatus.CONFIRMED
        booking.rescheduled_by = None
        self.db.commit()
        self.db.refresh(booking)
        logger.info(f"✅ Booking {booking.id} confirmed")

        warnings: list[str] = []
        await self._sync_calendar_event(booking, warnings)
        warnings += await self._notifier(booking).booking_confirmed()
        return {
            "success": True,
            "message": "Booking confirmed successfully",
            "booking": booking_to_dict(booking),
            "warnings": warnings,
        }

    async def cancel(self, booking: Booking, by_customer: bool, reason: Optional[str] = None) -> dict:
        if booking.status == BookingStatus.CANCELLED:
            # No write, so updated_at keeps its value
            return {
                "success": True,
                "message": "Booking already cancelled",
                "booking": booking_to_dict(booking),
                "warnings": [],
            }
        if booking.status == BookingStatus.COMPLETED:
            raise HTTPException(status_code=400, detail="Cannot cancel a completed booking")

        action = "denied" if booking.status == BookingStatus.PENDING and not by_customer else "cancelled"
        booking.status = BookingStatus.CANCELLED
        self.db.commit()
        self.db.refresh(booking)
        logger.info(f"❌ Booking {booking.id} {action} by {'customer' if by_customer else 'provider'}")

        warnings: list[str] = []
        await self._remove_calendar_event(booking, warnings)
        warnings += await self._notifier(booking).booking_cancelled(by_customer, reason)
        return {
            "success": True,
            "message": f"Booking {action} successfully",
            "booking": booking_to_dict(booking),
            "warnings": warnings,
        }

    async def reschedule(
        self,
        booking: Booking,
        new_time: Optional[str],
        by_customer: bool,
        duration: Optional[int] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        start = self._parse_time(new_time, "newDateTime")
        now = now or utcnow()
        if start <= now:
            raise HTTPException(status_code=400, detail="New appointment time must be in the future")
        if booking.status == BookingStatus.CANCELLED:
            raise HTTPException(status_code=400, detail="Cannot reschedule a cancelled booking")
        if booking.status == BookingStatus.COMPLETED:
            raise HTTPException(status_code=400, detail="Cannot reschedule a completed booking")

        provider = self.repo.lock_provider(self.db, booking.provider_id) or booking.provider
        new_duration = duration or booking.duration
        if duration and duration not in allowed_durations_for(provider):
            raise HTTPException(status_code=400, detail="Duration not allowed for this provider")

        if by_customer:
            self._check_window(provider, start, now)
            reason_rejected = self.availability.check_slot(
                provider, start, new_duration, exclude_booking_id=booking.id
            )
        else:
            # Providers may move a booking outside their published hours
            reason_rejected = self.availability.check_clash(
                provider, start, new_duration, exclude_booking_id=booking.id
            )
        if reason_rejected:
            self.db.rollback()
            raise HTTPException(status_code=400, detail=reason_rejected)

        previous_start = booking.scheduled_at
        booking.scheduled_at = start
        booking.duration = new_duration
        booking.status = BookingStatus.PENDING
        booking.rescheduled_by = BookingParty.CUSTOMER if by_customer else BookingParty.PROVIDER
        self._commit_slot(provider.id, start)
        self.db.refresh(booking)
        logger.info(f"🔄 Booking {booking.id} rescheduled from {to_iso(previous_start)} to {to_iso(start)}")

        warnings: list[str] = []
        await self._remove_calendar_event(booking, warnings)
        warnings += await self._notifier(booking).booking_rescheduled(by_customer, previous_start, reason)
        return {
            "success": True,
            "message": "Booking rescheduled successfully",
            "booking": booking_to_dict(booking),
            "warnings": warnings,
        }

    def complete(self, booking: Booking) -> dict:
        if booking.status != BookingStatus.CONFIRMED:
            raise HTTPException(status_code=400, detail="Only confirmed bookings can be completed")
        booking.status = BookingStatus.COMPLETED
        self.db.commit()
        self.db.refresh(booking)
        logger.info(f"🏁 Booking {booking.id} completed")
        return {"success": True, "message": "Booking marked as completed", "booking": booking_to_dict(booking)}

    def delete(self, booking: Booking) -> dict:
        if booking.status not in (BookingStatus.CANCELLED, BookingStatus.COMPLETED):
            raise HTTPException(
                status_code=400, detail="Only cancelled or completed bookings can be deleted"
            )
        self.db.delete(booking)
        self.db.commit()
        logger.info(f"🗑️ Booking {booking.id} deleted")
        return {"success": True, "message": "Booking deleted successfully"}

    # ------------------------------------------------------------------
    # Provider
    # ------------------------------------------------------------------

    def list_bookings(self, provider: Provider, status: Optional[str] = None) -> dict:
        if status and status.upper() not in BookingStatus.ALL:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
        bookings = self.repo.get_provider_bookings(self.db, provider.id, status)
        return {"bookings": [booking_to_dict(b) for b in bookings], "total": len(bookings)}

    def delete_finished(self, provider: Provider) -> dict:
        """Bulk delete every cancelled and completed booking"""
        count = (
            self.db.query(Booking)
            .filter(
                Booking.provider_id == provider.id,
                Booking.status.in_([BookingStatus.CANCELLED, BookingStatus.COMPLETED]),
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()
        logger.info(f"🗑️ Deleted {count} finished bookings for provider {provider.id}")
        return {
            "success": True,
            "message": f"Successfully deleted {count} booking(s)",
            "deletedCount": count,
        }

    # ------------------------------------------------------------------
    # Magic links
    # ------------------------------------------------------------------

    async def _redeem(self, token: str, action: str, handler) -> dict:
        """Verify, mark used, run the action; a rejected action hands the token back"""
        booking, payload = self.magic_links.verify(token, action)
        self.magic_links.consume(payload)
        try:
            return await handler(booking)
        except HTTPException:
            self.magic_links.release(payload)
            raise

    async def confirm_via_link(self, token: str) -> dict:
        async def handler(booking: Booking) -> dict:
            return await self.confirm(booking, by_customer=True)

        return await self._redeem(token, "confirm", handler)

    async def cancel_via_link(self, token: str, reason: Optional[str] = None) -> dict:
        async def handler(booking: Booking) -> dict:
            return await self.cancel(booking, by_customer=True, reason=reason)

        return await self._redeem(token, "cancel", handler)

    async def reschedule_via_link(
        self,
        token: str,
        new_time: Optional[str],
        duration: Optional[int] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        async def handler(booking: Booking) -> dict:
            return await self.reschedule(
                booking, new_time, by_customer=True, duration=duration, reason=reason, now=now
            )

        return await self._redeem(token, "reschedule", handler)

    def details_via_link(self, token: str) -> dict:
        """Read-only view for the reschedule page; does not use up the link"""
        booking, _ = self.magic_links.verify(token)
        if booking.status == BookingStatus.CANCELLED:
            raise HTTPException(
                status_code=400, detail="This booking has been cancelled and cannot be rescheduled"
            )
        provider = booking.provider
        zone = self.provider_zone(provider)
        return {
            "success": True,
            "booking": booking_to_dict(booking),
            "provider": {
                "id": provider.id,
                "name": provider.name,
                "timezone": zone.key,
                "allowedDurations": allowed_durations_for(provider),
            },
            "location": location_display(booking.location) if booking.location else None,
        }
