"""
Calendar integration service
Connections, token storage and refresh, busy-event sync and booking events
"""

import base64
import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...config import CALENDAR_ENCRYPTION_KEY, SECRET_KEY
from ...models import Booking, Provider
from ...models_calendar import CalendarConnection, CalendarEvent, CalendarPlatform
from ...security_utils import generate_timed_token, verify_timed_token
from .availability_service import location_display
from .calendar_clients import (
    CALENDAR_CLIENTS,
    CalendarAPIError,
    CalendarClient,
    CalendarReauthorizationRequired,
)
from .repository import SchedulingRepository
from .time_calculator import to_iso, utcnow

logger = logging.getLogger(__name__)

OAUTH_STATE_SALT = "calendar-oauth-state"
OAUTH_STATE_MAX_AGE = 600
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)
SYNC_PAST_DAYS = 30
SYNC_FUTURE_DAYS = 90

# Calendars matching these names are subscriptions and never receive bookings
READ_ONLY_CALENDAR_PATTERNS = (
    "holidays",
    "birthday",
    "contacts",
    "weather",
    "phases of the moon",
    "week numbers",
    "religious calendar",
    "sports calendar",
)


def _cipher() -> Fernet:
    if CALENDAR_ENCRYPTION_KEY:
        return Fernet(CALENDAR_ENCRYPTION_KEY.encode())
    return Fernet(base64.urlsafe_b64encode(hashlib.sha256(SECRET_KEY.encode()).digest()))


def encrypt_token(value: str) -> str:
    return _cipher().encrypt(value.encode()).decode()


def decrypt_token(value: str) -> str:
    return _cipher().decrypt(value.encode()).decode()


def is_bookable_calendar(calendar: dict) -> bool:
    """Writable and not a known read-only subscription"""
    if not calendar.get("canWrite"):
        return False
    name = (calendar.get("name") or "").lower()
    return not any(pattern in name for pattern in READ_ONLY_CALENDAR_PATTERNS)


def connection_to_dict(connection: CalendarConnection) -> dict:
    return {
        "id": connection.id,
        "platform": connection.platform,
        "email": connection.email,
        "calendarId": connection.calendar_id,
        "calendarName": connection.calendar_name,
        "isActive": connection.is_active,
        "isDefaultForBookings": connection.is_default_for_bookings,
        "syncEvents": connection.sync_events,
        "allowBookings": connection.allow_bookings,
        "selectedCalendars": connection.selected_calendars or [],
        "lastSyncedAt": to_iso(connection.last_synced_at),
        "tokenExpiry": to_iso(connection.token_expiry),
        "createdAt": to_iso(connection.created_at),
    }


class CalendarIntegrationService:
    """Service for external calendar connections"""

    def __init__(self, db: Session, clients: Optional[dict[str, CalendarClient]] = None):
        self.db = db
        self.repo = SchedulingRepository()
        self.clients = clients if clients is not None else CALENDAR_CLIENTS

    def client_for(self, platform: str) -> CalendarClient:
        client = self.clients.get((platform or "").upper())
        if not client:
            raise HTTPException(status_code=400, detail=f"Unsupported calendar platform: {platform}")
        return client

    def get_connection(self, connection_id: int, provider: Provider) -> CalendarConnection:
        connection = self.repo.get_connection(self.db, connection_id, provider.id)
        if not connection:
            raise HTTPException(status_code=404, detail="Calendar connection not found")
        return connection

    def list_connections(self, provider: Provider) -> dict:
        connections = self.repo.get_connections(self.db, provider.id)
        return {"connections": [connection_to_dict(c) for c in connections]}

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def get_access_token(self, connection: CalendarConnection) -> str:
        """Decrypted credential, refreshed first when it expires within five minutes.

        A failed refresh deactivates the connection and raises
        CalendarReauthorizationRequired.
        """
        try:
            if connection.platform == CalendarPlatform.APPLE or not connection.token_expiry:
                return decrypt_token(connection.access_token)
            if connection.token_expiry > utcnow() + TOKEN_REFRESH_MARGIN:
                return decrypt_token(connection.access_token)

            logger.info(f"🔄 {connection.platform} token for connection {connection.id} expiring, refreshing...")
            if not connection.refresh_token:
                raise CalendarReauthorizationRequired("No refresh token stored")
            grant = await self.client_for(connection.platform).refresh(
                decrypt_token(connection.refresh_token)
            )
        except (CalendarReauthorizationRequired, InvalidToken) as e:
            logger.error(f"❌ Cannot use stored token for connection {connection.id}: {e!r}")
            connection.is_active = False
            connection.is_default_for_bookings = False
            self.db.commit()
            raise CalendarReauthorizationRequired(
                f"{connection.platform.title()} calendar needs to be reconnected"
            ) from e

        connection.access_token = encrypt_token(grant.access_token)
        if grant.refresh_token:
            connection.refresh_token = encrypt_token(grant.refresh_token)
        connection.token_expiry = utcnow() + timedelta(seconds=grant.expires_in)
        self.db.commit()
        logger.info(f"✅ {connection.platform} token refreshed for connection {connection.id}")

        # Pick up calendars added since the last refresh
        try:
            await self._refresh_calendar_settings(connection, grant.access_token)
        except CalendarAPIError as e:
            logger.warning(f"⚠️ Could not refresh calendar list for connection {connection.id}: {str(e)}")
        return grant.access_token

    async def _refresh_calendar_settings(self, connection: CalendarConnection, credential: str) -> None:
        calendars = await self.client_for(connection.platform).list_calendars(credential)
        writable = [c.to_dict() for c in calendars if is_bookable_calendar(c.to_dict())]
        connection.calendar_settings = {"writableCalendars": writable}
        if not connection.selected_calendars:
            connection.selected_calendars = [c["id"] for c in writable]
        self.db.commit()

    # ------------------------------------------------------------------
    # Connecting
    # ------------------------------------------------------------------

    def get_authorization_url(self, provider: Provider, platform: str) -> dict:
        client = self.client_for(platform)
        if not client.uses_oauth:
            raise HTTPException(
                status_code=400, detail="Apple Calendar connects with an app-specific password"
            )
        state = generate_timed_token(
            {"provider_id": provider.id, "platform": client.platform}, salt=OAUTH_STATE_SALT
        )
        try:
            url = client.authorization_url(state)
        except CalendarAPIError as e:
            raise HTTPException(status_code=500, detail=str(e)) from e

        logger.info(f"{client.platform} calendar OAuth initiated for provider: {provider.email}")
        return {"authorizationUrl": url, "platform": client.platform}

    def _save_connection(
        self,
        provider_id: int,
        platform: str,
        email: str,
        access_token: str,
        refresh_token: Optional[str],
        token_expiry: Optional[datetime],
    ) -> CalendarConnection:
        connection = self.repo.find_connection(self.db, provider_id, platform, email)
        if connection:
            connection.access_token = encrypt_token(access_token)
            if refresh_token:
                connection.refresh_token = encrypt_token(refresh_token)
            connection.token_expiry = token_expiry
            connection.is_active = True
        else:
            connection = CalendarConnection(
                provider_id=provider_id,
                platform=platform,
                email=email,
                calendar_id="primary",
                access_token=encrypt_token(access_token),
                refresh_token=encrypt_token(refresh_token) if refresh_token else None,
                token_expiry=token_expiry,
                is_active=True,
                sync_events=True,
                allow_bookings=True,
                selected_calendars=[],
                calendar_settings={},
            )
            self.db.add(connection)
            self.db.flush()

        # First usable connection becomes the booking calendar
        if not self.repo.get_default_connection(self.db, provider_id):
            connection.is_default_for_bookings = True
        self.db.commit()
        self.db.refresh(connection)
        return connection

    async def handle_oauth_callback(self, code: Optional[str], state: Optional[str]) -> CalendarConnection:
        if not code:
            raise HTTPException(status_code=400, detail="No authorization code provided")
        data = verify_timed_token(state or "", max_age=OAUTH_STATE_MAX_AGE, salt=OAUTH_STATE_SALT)
        if not data or not data.get("provider_id"):
            raise HTTPException(status_code=400, detail="Invalid or expired OAuth state")

        provider = self.repo.get_provider(self.db, int(data["provider_id"]))
        if not provider:
            raise HTTPException(status_code=404, detail="Provider not found")

        client = self.client_for(data.get("platform"))
        try:
            grant = await client.exchange_code(code)
        except CalendarAPIError as e:
            logger.error(f"❌ {client.platform} code exchange failed: {str(e)}")
            raise HTTPException(status_code=400, detail="Failed to exchange authorization code") from e
        if not grant.email:
            raise HTTPException(status_code=400, detail="Failed to get user info")

        connection = self._save_connection(
            provider.id,
            client.platform,
            grant.email,
            grant.access_token,
            grant.refresh_token,
            utcnow() + timedelta(seconds=grant.expires_in),
        )
        try:
            await self._refresh_calendar_settings(connection, grant.access_token)
        except CalendarAPIError as e:
            logger.warning(f"⚠️ Could not list calendars for new connection {connection.id}: {str(e)}")

        logger.info(f"✅ {client.platform} calendar connected for provider: {provider.email}")
        return connection

    async def connect_apple(self, provider: Provider, apple_id: str, app_password: str) -> dict:
        apple_id = (apple_id or "").strip()
        app_password = (app_password or "").strip()
        if not apple_id or not app_password:
            raise HTTPException(status_code=400, detail="Apple ID and app-specific password are required")

        credential = json.dumps({"appleId": apple_id, "appSpecificPassword": app_password})
        client = self.client_for(CalendarPlatform.APPLE)
        try:
            calendars = await client.list_calendars(credential)
        except CalendarReauthorizationRequired as e:
            raise HTTPException(
                status_code=400, detail="Invalid Apple ID or app-specific password"
            ) from e
        except CalendarAPIError as e:
            logger.error(f"❌ iCloud CalDAV discovery failed for {apple_id}: {str(e)}")
            raise HTTPException(status_code=502, detail="Could not reach iCloud Calendar") from e

        connection = self._save_connection(provider.id, CalendarPlatform.APPLE, apple_id, credential, None, None)
        writable = [c.to_dict() for c in calendars if is_bookable_calendar(c.to_dict())]
        connection.calendar_settings = {"writableCalendars": writable}
        if writable and connection.calendar_id == "primary":
            connection.calendar_id = writable[0]["id"]
            connection.calendar_name = writable[0]["name"]
        connection.selected_calendars = connection.selected_calendars or [c["id"] for c in writable]
        self.db.commit()

        logger.info(f"✅ Apple calendar connected for provider: {provider.email}")
        return {
            "success": True,
            "message": "Apple Calendar connected successfully",
            "connection": connection_to_dict(connection),
        }

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def update_settings(self, connection_id: int, provider: Provider, data: dict) -> dict:
        connection = self.get_connection(connection_id, provider)

        if data.get("isDefaultForBookings") is True:
            if not connection.is_active:
                raise HTTPException(
                    status_code=400, detail="Reconnect this calendar before using it for bookings"
                )
            self.repo.unset_default_connections(self.db, provider.id, keep_id=connection.id)
            connection.is_default_for_bookings = True
        elif data.get("isDefaultForBookings") is False:
            connection.is_default_for_bookings = False

        if data.get("syncEvents") is not None:
            connection.sync_events = data["syncEvents"]
        if data.get("allowBookings") is not None:
            connection.allow_bookings = data["allowBookings"]
        if data.get("calendarId"):
            connection.calendar_id = data["calendarId"]
            connection.calendar_name = data.get("calendarName") or connection.calendar_name
        if data.get("selectedCalendars") is not None:
            connection.selected_calendars = data["selectedCalendars"]

        self.db.commit()
        self.db.refresh(connection)
        logger.info(f"✅ Calendar connection {connection.id} settings updated")
        return {"success": True, "connection": connection_to_dict(connection)}

    def disconnect(self, connection_id: int, provider: Provider) -> dict:
        connection = self.get_connection(connection_id, provider)
        connection.is_active = False
        connection.is_default_for_bookings = False
        self.db.commit()
        logger.info(f"🔌 {connection.platform} calendar {connection.email} disconnected for provider {provider.id}")
        return {"success": True, "message": "Calendar disconnected successfully"}

    async def get_available_calendars(self, connection_id: int, provider: Provider) -> dict:
        connection = self.get_connection(connection_id, provider)
        if not connection.is_active:
            raise HTTPException(status_code=400, detail="Calendar connection is not active")
        try:
            credential = await self.get_access_token(connection)
            calendars = await self.client_for(connection.platform).list_calendars(credential)
        except CalendarReauthorizationRequired as e:
            raise HTTPException(status_code=401, detail=str(e)) from e
        except CalendarAPIError as e:
            logger.error(f"❌ Failed to list calendars for connection {connection.id}: {str(e)}")
            raise HTTPException(status_code=502, detail="Failed to fetch calendars") from e

        items = [c.to_dict() for c in calendars]
        return {
            "calendars": [c for c in items if is_bookable_calendar(c)],
            "totalCalendars": len(items),
        }

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def sync_connection(self, connection: CalendarConnection, now: Optional[datetime] = None) -> int:
        """Replace the stored busy events of one connection. Returns the event count."""
        now = now or utcnow()
        start = now - timedelta(days=SYNC_PAST_DAYS)
        end = now + timedelta(days=SYNC_FUTURE_DAYS)

        credential = await self.get_access_token(connection)
        client = self.client_for(connection.platform)
        calendar_ids = connection.selected_calendars or [connection.calendar_id or "primary"]

        events: list[CalendarEvent] = []
        seen: set[str] = set()
        for calendar_id in calendar_ids:
            for event in await client.fetch_events(credential, calendar_id, start, end):
                if event.external_id in seen or event.end <= event.start:
                    continue
                seen.add(event.external_id)
                events.append(
                    CalendarEvent(
                        connection_id=connection.id,
                        provider_id=connection.provider_id,
                        external_id=event.external_id,
                        title=event.title,
                        start_time=event.start,
                        end_time=event.end,
                        is_all_day=event.is_all_day,
                    )
                )

        # A booking's own event is already covered by the booking row
        own_event_ids = {
            row.external_event_id
            for row in self.db.query(Booking.external_event_id).filter(
                Booking.provider_id == connection.provider_id, Booking.external_event_id.isnot(None)
            )
        }
        events = [e for e in events if e.external_id not in own_event_ids]

        self.repo.replace_events(self.db, connection, events)
        connection.last_synced_at = now
        self.db.commit()
        logger.info(f"📅 Synced {len(events)} events for {connection.platform} connection {connection.id}")
        return len(events)

    async def sync_provider(self, provider_id: int) -> dict:
        """Sync every active connection; one failing connection does not stop the rest"""
        results = {"synced": 0, "events": 0, "errors": []}
        for connection in self.repo.get_sync_connections(self.db, provider_id):
            try:
                results["events"] += await self.sync_connection(connection)
                results["synced"] += 1
            except CalendarAPIError as e:
                logger.warning(f"⚠️ Calendar sync failed for connection {connection.id}: {str(e)}")
                self.db.rollback()
                results["errors"].append({"connectionId": connection.id, "error": str(e)})
        return results

    # ------------------------------------------------------------------
    # Booking events
    # ------------------------------------------------------------------

    async def create_booking_event(self, booking: Booking) -> Optional[str]:
        """Put a confirmed booking on the provider's default calendar.

        Returns the external event id, or None when the provider has no
        default calendar. API errors propagate to the caller.
        """
        connection = self.repo.get_default_connection(self.db, booking.provider_id)
        if not connection or not connection.allow_bookings:
            logger.info(f"No default calendar for provider {booking.provider_id}, skipping event")
            return None

        customer = booking.customer
        end = booking.scheduled_at + timedelta(minutes=booking.duration)
        description = f"Booked by {customer.full_name} ({customer.email})"
        if customer.phone:
            description += f"\nPhone: {customer.phone}"
        if booking.notes:
            description += f"\n\nNotes: {booking.notes}"

        credential = await self.get_access_token(connection)
        event_id = await self.client_for(connection.platform).create_event(
            credential,
            connection.calendar_id or "primary",
            {
                "title": f"{booking.service_type.replace('_', ' ').title()} with {customer.full_name}",
                "description": description,
                "start": booking.scheduled_at,
                "end": end,
                "location": location_display(booking.location) if booking.location else None,
                "attendee_email": customer.email,
            },
        )
        booking.external_event_id = event_id
        self.db.commit()
        logger.info(f"✅ Calendar event {event_id} created for booking {booking.id}")
        return event_id

    async def delete_booking_event(self, booking: Booking) -> None:
        if not booking.external_event_id:
            return
        connection = self.repo.get_default_connection(self.db, booking.provider_id)
        if not connection:
            return
        credential = await self.get_access_token(connection)
        await self.client_for(connection.platform).delete_event(
            credential, connection.calendar_id or "primary", booking.external_event_id
        )
        booking.external_event_id = None
        self.db.commit()
        logger.info(f"🗑️ Calendar event removed for booking {booking.id}")
