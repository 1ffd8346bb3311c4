"""Scheduling repository - Database operations for availability and bookings"""

from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload, selectinload

from ...models import (
    AvailabilitySchedule,
    AvailabilityTemplate,
    Booking,
    BookingStatus,
    Customer,
    Provider,
    ProviderLocation,
)
from ...models_calendar import CalendarConnection, CalendarEvent


class SchedulingRepository:
    """Repository for scheduling database operations"""

    # Providers
    @staticmethod
    def get_provider(db: Session, provider_id: int) -> Optional[Provider]:
        return (
            db.query(Provider)
            .filter(Provider.id == provider_id, Provider.is_active.is_(True))
            .first()
        )

    @staticmethod
    def lock_provider(db: Session, provider_id: int) -> Optional[Provider]:
        """SELECT ... FOR UPDATE on the provider row; serializes booking writes per provider.

        Dialects without row locks (SQLite) ignore the clause; the partial unique
        index on bookings still rejects a second live booking at the same start.
        """
        return (
            db.query(Provider)
            .filter(Provider.id == provider_id, Provider.is_active.is_(True))
            .with_for_update()
            .first()
        )

    # Templates
    @staticmethod
    def get_default_template(db: Session, provider_id: int) -> Optional[AvailabilityTemplate]:
        return (
            db.query(AvailabilityTemplate)
            .options(selectinload(AvailabilityTemplate.time_slots))
            .filter(
                AvailabilityTemplate.provider_id == provider_id,
                AvailabilityTemplate.is_default.is_(True),
                AvailabilityTemplate.is_active.is_(True),
            )
            .first()
        )

    @staticmethod
    def get_templates(db: Session, provider_id: int) -> list[AvailabilityTemplate]:
        return (
            db.query(AvailabilityTemplate)
            .options(selectinload(AvailabilityTemplate.time_slots))
            .filter(AvailabilityTemplate.provider_id == provider_id)
            .order_by(AvailabilityTemplate.is_default.desc(), AvailabilityTemplate.created_at.asc())
            .all()
        )

    @staticmethod
    def get_template(db: Session, template_id: int, provider_id: int) -> Optional[AvailabilityTemplate]:
        return (
            db.query(AvailabilityTemplate)
            .filter(
                AvailabilityTemplate.id == template_id,
                AvailabilityTemplate.provider_id == provider_id,
            )
            .first()
        )

    @staticmethod
    def unset_default_templates(db: Session, provider_id: int, keep_id: Optional[int] = None) -> None:
        query = db.query(AvailabilityTemplate).filter(
            AvailabilityTemplate.provider_id == provider_id,
            AvailabilityTemplate.is_default.is_(True),
        )
        if keep_id is not None:
            query = query.filter(AvailabilityTemplate.id != keep_id)
        query.update({AvailabilityTemplate.is_default: False}, synchronize_session=False)

    # Advanced schedules
    @staticmethod
    def get_schedules_covering(
        db: Session, template_id: int, target: date
    ) -> list[AvailabilitySchedule]:
        """Active schedules whose [start_date, end_date] contains ``target``"""
        return (
            db.query(AvailabilitySchedule)
            .options(selectinload(AvailabilitySchedule.time_slots))
            .filter(
                AvailabilitySchedule.template_id == template_id,
                AvailabilitySchedule.is_active.is_(True),
                AvailabilitySchedule.start_date <= target,
                or_(AvailabilitySchedule.end_date.is_(None), AvailabilitySchedule.end_date >= target),
            )
            .all()
        )

    @staticmethod
    def get_schedules(db: Session, template_id: int) -> list[AvailabilitySchedule]:
        return (
            db.query(AvailabilitySchedule)
            .options(selectinload(AvailabilitySchedule.time_slots))
            .filter(AvailabilitySchedule.template_id == template_id)
            .order_by(AvailabilitySchedule.priority.desc(), AvailabilitySchedule.id.asc())
            .all()
        )

    @staticmethod
    def get_schedule(db: Session, schedule_id: int, provider_id: int) -> Optional[AvailabilitySchedule]:
        """Schedule owned (through its template) by ``provider_id``"""
        return (
            db.query(AvailabilitySchedule)
            .join(AvailabilityTemplate)
            .options(selectinload(AvailabilitySchedule.time_slots))
            .filter(
                AvailabilitySchedule.id == schedule_id,
                AvailabilityTemplate.provider_id == provider_id,
            )
            .first()
        )

    # Locations
    @staticmethod
    def get_locations(db: Session, provider_id: int, active_only: bool = False) -> list[ProviderLocation]:
        query = db.query(ProviderLocation).filter(ProviderLocation.provider_id == provider_id)
        if active_only:
            query = query.filter(ProviderLocation.is_active.is_(True))
        return query.order_by(ProviderLocation.is_default.desc(), ProviderLocation.start_date.asc()).all()

    @staticmethod
    def get_location(db: Session, location_id: int, provider_id: int) -> Optional[ProviderLocation]:
        return (
            db.query(ProviderLocation)
            .filter(ProviderLocation.id == location_id, ProviderLocation.provider_id == provider_id)
            .first()
        )

    @staticmethod
    def unset_default_locations(db: Session, provider_id: int, keep_id: Optional[int] = None) -> None:
        query = db.query(ProviderLocation).filter(
            ProviderLocation.provider_id == provider_id,
            ProviderLocation.is_default.is_(True),
        )
        if keep_id is not None:
            query = query.filter(ProviderLocation.id != keep_id)
        query.update({ProviderLocation.is_default: False}, synchronize_session=False)

    # Bookings
    @staticmethod
    def get_active_bookings_between(
        db: Session,
        provider_id: int,
        start: datetime,
        end: datetime,
        exclude_id: Optional[int] = None,
        lookback_minutes: int = 24 * 60,
    ) -> list[Booking]:
        """Non-cancelled bookings that may overlap [start, end).

        Bookings store only their start, so the query widens the lower
        bound and callers do the exact overlap test.
        """
        query = db.query(Booking).filter(
            Booking.provider_id == provider_id,
            Booking.status != BookingStatus.CANCELLED,
            Booking.scheduled_at < end,
            Booking.scheduled_at >= start - timedelta(minutes=lookback_minutes),
        )
        if exclude_id is not None:
            query = query.filter(Booking.id != exclude_id)
        return query.all()

    @staticmethod
    def get_busy_events_between(
        db: Session, provider_id: int, start: datetime, end: datetime
    ) -> list[CalendarEvent]:
        """Synced events from active, sync-enabled connections overlapping [start, end)"""
        return (
            db.query(CalendarEvent)
            .join(CalendarConnection)
            .filter(
                CalendarEvent.provider_id == provider_id,
                CalendarConnection.is_active.is_(True),
                CalendarConnection.sync_events.is_(True),
                CalendarEvent.start_time < end,
                CalendarEvent.end_time > start,
            )
            .all()
        )

    @staticmethod
    def get_booking(db: Session, booking_id: int) -> Optional[Booking]:
        return (
            db.query(Booking)
            .options(joinedload(Booking.customer), joinedload(Booking.provider))
            .filter(Booking.id == booking_id)
            .first()
        )

    @staticmethod
    def get_provider_booking(db: Session, booking_id: int, provider_id: int) -> Optional[Booking]:
        return (
            db.query(Booking)
            .options(joinedload(Booking.customer))
            .filter(Booking.id == booking_id, Booking.provider_id == provider_id)
            .first()
        )

    @staticmethod
    def get_provider_bookings(
        db: Session, provider_id: int, status: Optional[str] = None
    ) -> list[Booking]:
        query = (
            db.query(Booking)
            .options(joinedload(Booking.customer))
            .filter(Booking.provider_id == provider_id)
        )
        if status:
            query = query.filter(Booking.status == status.upper())
        return query.order_by(Booking.scheduled_at.asc()).all()

    @staticmethod
    def upsert_customer(
        db: Session,
        email: str,
        first_name: Optional[str],
        last_name: Optional[str],
        phone: Optional[str],
    ) -> Customer:
        """Create the customer or overwrite with the latest details"""
        customer = db.query(Customer).filter(Customer.email == email).first()
        if customer:
            customer.first_name = first_name
            customer.last_name = last_name
            customer.phone = phone
        else:
            customer = Customer(email=email, first_name=first_name, last_name=last_name, phone=phone)
            db.add(customer)
        db.flush()
        return customer

    # Calendar connections
    @staticmethod
    def get_connections(db: Session, provider_id: int) -> list[CalendarConnection]:
        return (
            db.query(CalendarConnection)
            .filter(CalendarConnection.provider_id == provider_id)
            .order_by(CalendarConnection.created_at.desc(), CalendarConnection.id.desc())
            .all()
        )

    @staticmethod
    def get_connection(db: Session, connection_id: int, provider_id: int) -> Optional[CalendarConnection]:
        return (
            db.query(CalendarConnection)
            .filter(CalendarConnection.id == connection_id, CalendarConnection.provider_id == provider_id)
            .first()
        )

    @staticmethod
    def find_connection(
        db: Session, provider_id: int, platform: str, email: str
    ) -> Optional[CalendarConnection]:
        return (
            db.query(CalendarConnection)
            .filter(
                CalendarConnection.provider_id == provider_id,
                CalendarConnection.platform == platform,
                CalendarConnection.email == email,
            )
            .first()
        )

    @staticmethod
    def get_default_connection(db: Session, provider_id: int) -> Optional[CalendarConnection]:
        return (
            db.query(CalendarConnection)
            .filter(
                CalendarConnection.provider_id == provider_id,
                CalendarConnection.is_active.is_(True),
                CalendarConnection.is_default_for_bookings.is_(True),
            )
            .first()
        )

    @staticmethod
    def get_sync_connections(db: Session, provider_id: int) -> list[CalendarConnection]:
        return (
            db.query(CalendarConnection)
            .filter(
                CalendarConnection.provider_id == provider_id,
                CalendarConnection.is_active.is_(True),
                CalendarConnection.sync_events.is_(True),
            )
            .all()
        )

    @staticmethod
    def unset_default_connections(db: Session, provider_id: int, keep_id: Optional[int] = None) -> None:
        query = db.query(CalendarConnection).filter(
            CalendarConnection.provider_id == provider_id,
            CalendarConnection.is_default_for_bookings.is_(True),
        )
        if keep_id is not None:
            query = query.filter(CalendarConnection.id != keep_id)
        query.update({CalendarConnection.is_default_for_bookings: False}, synchronize_session=False)

    @staticmethod
    def replace_events(db: Session, connection: CalendarConnection, events: list[CalendarEvent]) -> None:
        # "fetch" drops the old rows from the session; SQLite may hand their ids to the new ones
        db.query(CalendarEvent).filter(CalendarEvent.connection_id == connection.id).delete(
            synchronize_session="fetch"
        )
        db.add_all(events)
