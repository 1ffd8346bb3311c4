"""Tests for external calendar connections, token refresh and sync."""

import json
from datetime import datetime, timedelta

import httpx
import pytest
from cryptography.fernet import InvalidToken

from app.domain.scheduling.booking_service import BookingService
from app.domain.scheduling.calendar_router import get_integration_service
from app.domain.scheduling.calendar_clients import (
    GOOGLE_TOKEN_URL,
    CalendarReauthorizationRequired,
    build_ical_event,
    default_calendar_clients,
    parse_ical_events,
)
from app.domain.scheduling.integration_service import (
    OAUTH_STATE_SALT,
    CalendarIntegrationService,
    decrypt_token,
    encrypt_token,
    is_bookable_calendar,
)
from app.domain.scheduling.time_calculator import utcnow
from app.main import app as api
from app.models import BookingStatus
from app.models_calendar import CalendarConnection, CalendarEvent
from app.security_utils import generate_timed_token

from .conftest import at_utc, tomorrow_utc


class FakeGoogle:
    """Just enough of the Google token, userinfo and Calendar APIs"""

    def __init__(self, token_status: int = 200):
        self.token_status = token_status
        self.requests: list[httpx.Request] = []
        self.events: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url == GOOGLE_TOKEN_URL:
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            return httpx.Response(
                200, json={"access_token": "fresh-access", "refresh_token": "fresh-refresh", "expires_in": 3600}
            )
        if "userinfo" in url:
            return httpx.Response(200, json={"email": "ada@gmail.com"})
        if url.split("?")[0].endswith("/users/me/calendarList"):
            return httpx.Response(
                200,
                json={
                    "items": [
                        {"id": "primary", "summary": "Ada", "primary": True, "accessRole": "owner"},
                        {"id": "holidays", "summary": "Holidays in United States", "accessRole": "owner"},
                        {"id": "shared", "summary": "Team", "accessRole": "reader"},
                    ]
                },
            )
        if request.method == "GET" and "/events" in url:
            return httpx.Response(200, json={"items": self.events})
        if request.method == "POST" and url.endswith("/events"):
            return httpx.Response(200, json={"id": "evt-created"})
        if request.method == "DELETE":
            return httpx.Response(204)
        return httpx.Response(404)

    def calls(self, method: str, fragment: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and fragment in str(r.url)]


def network_down(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("network down", request=request)


@pytest.fixture
def google() -> FakeGoogle:
    return FakeGoogle()


@pytest.fixture
def integrations(db_session, google) -> CalendarIntegrationService:
    return CalendarIntegrationService(db_session, default_calendar_clients(httpx.MockTransport(google)))


@pytest.fixture
def connection(db_session, provider) -> CalendarConnection:
    connection = CalendarConnection(
        provider_id=provider.id,
        platform="GOOGLE",
        email="ada@gmail.com",
        calendar_id="primary",
        access_token=encrypt_token("stored-access"),
        refresh_token=encrypt_token("stored-refresh"),
        token_expiry=utcnow() + timedelta(hours=1),
        is_active=True,
        is_default_for_bookings=True,
        sync_events=True,
        allow_bookings=True,
        selected_calendars=["primary"],
    )
    db_session.add(connection)
    db_session.commit()
    db_session.refresh(connection)
    return connection


class TestHelpers:
    """Tests for calendar filtering, token encryption and iCalendar parsing."""

    def test_bookable_calendars(self) -> None:
        assert is_bookable_calendar({"name": "Work", "canWrite": True})
        assert not is_bookable_calendar({"name": "Work", "canWrite": False})
        assert not is_bookable_calendar({"name": "Holidays in Canada", "canWrite": True})
        assert not is_bookable_calendar({"name": "Birthdays", "canWrite": True})

    def test_stored_tokens_are_encrypted(self) -> None:
        stored = encrypt_token("secret-token")
        assert "secret-token" not in stored
        assert decrypt_token(stored) == "secret-token"
        with pytest.raises(InvalidToken):
            decrypt_token("not-encrypted")

    def test_parse_ical(self) -> None:
        data = "\r\n".join(
            [
                "BEGIN:VCALENDAR",
                "BEGIN:VEVENT",
                "UID:one",
                "SUMMARY:Dentist appoint",
                " ment",
                "DTSTART;TZID=America/New_York:20250310T090000",
                "DTEND;TZID=America/New_York:20250310T100000",
                "END:VEVENT",
                "BEGIN:VEVENT",
                "UID:two",
                "DTSTART;VALUE=DATE:20250311",
                "END:VEVENT",
                "BEGIN:VEVENT",
                "UID:three",
                "DTSTART:20250312T120000Z",
                "DTEND:20250312T130000Z",
                "TRANSP:TRANSPARENT",
                "END:VEVENT",
                "END:VCALENDAR",
            ]
        )
        events = parse_ical_events(data)
        assert [e.external_id for e in events] == ["one", "two"]
        assert events[0].title == "Dentist appointment"
        assert events[0].start == datetime(2025, 3, 10, 13, 0)
        assert events[1].is_all_day
        assert events[1].end == datetime(2025, 3, 12, 0, 0)

    def test_built_event_parses_back(self) -> None:
        payload = build_ical_event(
            "booking-1",
            {"title": "Consultation", "start": datetime(2025, 3, 10, 14), "end": datetime(2025, 3, 10, 15)},
        )
        (event,) = parse_ical_events(payload)
        assert (event.external_id, event.start, event.end) == (
            "booking-1",
            datetime(2025, 3, 10, 14),
            datetime(2025, 3, 10, 15),
        )


class TestAccessTokens:
    """Tests for token refresh."""

    @pytest.mark.asyncio
    async def test_fresh_token_is_used_as_is(self, integrations, connection, google) -> None:
        assert await integrations.get_access_token(connection) == "stored-access"
        assert google.requests == []

    @pytest.mark.asyncio
    async def test_expiring_token_is_refreshed(self, db_session, integrations, connection, google) -> None:
        connection.token_expiry = utcnow() + timedelta(minutes=2)
        db_session.commit()

        assert await integrations.get_access_token(connection) == "fresh-access"
        assert decrypt_token(connection.access_token) == "fresh-access"
        assert decrypt_token(connection.refresh_token) == "fresh-refresh"
        assert connection.token_expiry > utcnow() + timedelta(minutes=50)
        # The calendar list is refreshed alongside
        writable = connection.calendar_settings["writableCalendars"]
        assert [c["id"] for c in writable] == ["primary"]

    @pytest.mark.asyncio
    async def test_failed_refresh_deactivates(self, db_session, provider, connection) -> None:
        connection.token_expiry = utcnow() - timedelta(minutes=1)
        db_session.commit()
        service = CalendarIntegrationService(
            db_session, default_calendar_clients(httpx.MockTransport(FakeGoogle(token_status=400)))
        )

        with pytest.raises(CalendarReauthorizationRequired):
            await service.get_access_token(connection)
        assert connection.is_active is False
        assert connection.is_default_for_bookings is False


class TestSync:
    """Tests for pulling busy events."""

    @pytest.mark.asyncio
    async def test_sync_stores_busy_events(self, db_session, integrations, connection, google, make_booking) -> None:
        booking = make_booking(at_utc(tomorrow_utc(), "09:00"), status=BookingStatus.CONFIRMED)
        booking.external_event_id = "evt-booking"
        db_session.commit()
        day = tomorrow_utc().isoformat()
        google.events = [
            {
                "id": "evt-meeting",
                "summary": "Board meeting",
                "start": {"dateTime": f"{day}T13:00:00Z"},
                "end": {"dateTime": f"{day}T14:00:00Z"},
            },
            {
                "id": "evt-free",
                "transparency": "transparent",
                "start": {"dateTime": f"{day}T15:00:00Z"},
                "end": {"dateTime": f"{day}T16:00:00Z"},
            },
            {"id": "evt-gone", "status": "cancelled"},
            {
                "id": "evt-booking",
                "start": {"dateTime": f"{day}T09:00:00Z"},
                "end": {"dateTime": f"{day}T10:00:00Z"},
            },
        ]

        assert await integrations.sync_connection(connection) == 1
        stored = db_session.query(CalendarEvent).all()
        assert [e.external_id for e in stored] == ["evt-meeting"]
        assert stored[0].start_time == at_utc(tomorrow_utc(), "13:00")
        assert connection.last_synced_at is not None

        # A second sync replaces rather than duplicates
        google.events = google.events[:1]
        await integrations.sync_connection(connection)
        assert db_session.query(CalendarEvent).count() == 1

    @pytest.mark.asyncio
    async def test_sync_provider_collects_errors(self, db_session, provider, connection) -> None:
        connection.token_expiry = utcnow() - timedelta(minutes=1)
        db_session.commit()
        service = CalendarIntegrationService(
            db_session, default_calendar_clients(httpx.MockTransport(FakeGoogle(token_status=401)))
        )
        result = await service.sync_provider(provider.id)
        assert result["synced"] == 0
        assert result["errors"][0]["connectionId"] == connection.id

    @pytest.mark.asyncio
    async def test_sync_provider_survives_network_outage(self, db_session, provider, connection) -> None:
        service = CalendarIntegrationService(db_session, default_calendar_clients(httpx.MockTransport(network_down)))
        result = await service.sync_provider(provider.id)
        assert result["synced"] == 0
        assert "unreachable" in result["errors"][0]["error"]
        assert connection.is_active is True


class TestBookingEvents:
    """Tests for pushing bookings onto the provider's calendar."""

    @pytest.mark.asyncio
    async def test_confirm_creates_and_cancel_removes(
        self, db_session, integrations, connection, google, make_booking
    ) -> None:
        booking = make_booking(at_utc(tomorrow_utc(), "10:00"))
        service = BookingService(db_session, integrations=integrations)

        await service.confirm(booking)
        assert booking.external_event_id == "evt-created"
        created = google.calls("POST", "/calendars/primary/events")
        body = json.loads(created[0].content)
        assert body["attendees"] == [{"email": "grace@example.com"}]

        await service.cancel(booking, by_customer=True)
        assert booking.external_event_id is None
        assert google.calls("DELETE", "/events/evt-created")

    @pytest.mark.asyncio
    async def test_calendar_failure_is_a_warning(self, db_session, provider, connection, make_booking) -> None:
        connection.token_expiry = utcnow() - timedelta(minutes=1)
        db_session.commit()
        integrations = CalendarIntegrationService(
            db_session, default_calendar_clients(httpx.MockTransport(FakeGoogle(token_status=400)))
        )
        booking = make_booking(at_utc(tomorrow_utc(), "10:00"))

        result = await BookingService(db_session, integrations=integrations).confirm(booking)
        assert result["booking"]["status"] == BookingStatus.CONFIRMED
        assert result["warnings"] == ["Booking confirmed but the calendar event could not be created"]

    @pytest.mark.asyncio
    async def test_network_outage_is_a_warning(self, db_session, provider, connection, make_booking, outbox) -> None:
        integrations = CalendarIntegrationService(db_session, default_calendar_clients(httpx.MockTransport(network_down)))
        service = BookingService(db_session, integrations=integrations)
        booking = make_booking(at_utc(tomorrow_utc(), "10:00"))

        confirmed = await service.confirm(booking)
        assert confirmed["booking"]["status"] == BookingStatus.CONFIRMED
        assert confirmed["warnings"] == ["Booking confirmed but the calendar event could not be created"]
        assert outbox[-1]["to"] == "grace@example.com"

        booking.external_event_id = "evt-old"
        db_session.commit()
        cancelled = await service.cancel(booking, by_customer=False)
        assert cancelled["booking"]["status"] == BookingStatus.CANCELLED
        assert cancelled["warnings"] == ["The calendar event could not be removed"]
        # An outage is not a credential problem
        assert connection.is_active is True


class TestCalendarEndpoints:
    """Tests for /api/provider/calendar."""

    @pytest.fixture(autouse=True)
    def mocked_service(self, client, db_session, google):
        api.dependency_overrides[get_integration_service] = lambda: CalendarIntegrationService(
            db_session, default_calendar_clients(httpx.MockTransport(google))
        )
        yield
        api.dependency_overrides.pop(get_integration_service, None)

    def test_oauth_callback_saves_connection(self, client, db_session, provider) -> None:
        state = generate_timed_token({"provider_id": provider.id, "platform": "GOOGLE"}, salt=OAUTH_STATE_SALT)
        response = client.get(
            "/api/provider/calendar/auth/google/callback",
            params={"code": "auth-code", "state": state},
            follow_redirects=False,
        )
        assert response.status_code == 302
        assert "connected=google" in response.headers["location"]

        connection = db_session.query(CalendarConnection).one()
        assert connection.email == "ada@gmail.com"
        assert connection.is_default_for_bookings is True
        assert decrypt_token(connection.access_token) == "fresh-access"

    def test_oauth_callback_with_bad_state(self, client) -> None:
        response = client.get(
            "/api/provider/calendar/auth/google/callback",
            params={"code": "auth-code", "state": "forged"},
            follow_redirects=False,
        )
        assert response.status_code == 302
        assert "error=" in response.headers["location"]

    def test_available_calendars_hide_subscriptions(self, client, connection, provider_headers) -> None:
        response = client.get(
            f"/api/provider/calendar/connections/{connection.id}/calendars", headers=provider_headers
        )
        data = response.json()
        assert [c["id"] for c in data["calendars"]] == ["primary"]
        assert data["totalCalendars"] == 3

    def test_single_default_connection(self, client, db_session, provider, connection, provider_headers) -> None:
        other = CalendarConnection(
            provider_id=provider.id,
            platform="OUTLOOK",
            email="ada@outlook.com",
            access_token=encrypt_token("outlook-access"),
            is_active=True,
        )
        db_session.add(other)
        db_session.commit()

        response = client.put(
            f"/api/provider/calendar/connections/{other.id}",
            json={"isDefaultForBookings": True},
            headers=provider_headers,
        )
        assert response.json()["connection"]["isDefaultForBookings"] is True
        db_session.refresh(connection)
        assert connection.is_default_for_bookings is False

    def test_disconnect(self, client, connection, provider_headers) -> None:
        client.delete(f"/api/provider/calendar/connections/{connection.id}", headers=provider_headers)
        listed = client.get("/api/provider/calendar/connections", headers=provider_headers).json()
        assert [c["isActive"] for c in listed["connections"]] == [False]

    def test_apple_connect_requires_credentials(self, client, provider_headers) -> None:
        response = client.post(
            "/api/provider/calendar/apple/connect",
            json={"appleId": "ada@icloud.com", "appSpecificPassword": " "},
            headers=provider_headers,
        )
        assert response.status_code == 400
