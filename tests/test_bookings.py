"""Tests for the booking lifecycle."""

import asyncio
import threading
from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app import email_service
from app.database import Base, enable_sqlite_foreign_keys
from app.domain.scheduling.availability_service import AvailabilityService
from app.domain.scheduling.booking_service import BookingService
from app.domain.scheduling.schemas import BookingCreate, CustomerInput
from app.models import Booking, BookingStatus, Customer, Provider
from app.models_calendar import CalendarConnection, CalendarEvent

from .conftest import add_provider, at_utc, iso_z, tomorrow_utc


def booking_body(provider, start: datetime, duration: int = 60, email: str = "grace@example.com") -> dict:
    return {
        "providerId": provider.id,
        "scheduledAt": iso_z(start),
        "duration": duration,
        "customer": {"email": email, "firstName": "Grace", "lastName": "Hopper"},
        "notes": "First visit",
    }


class TestCreateBooking:
    """Tests for POST /api/client/book-appointment."""

    def test_creates_pending_booking(self, client, provider, outbox) -> None:
        start = at_utc(tomorrow_utc(), "10:00")
        response = client.post(
            "/api/client/book-appointment",
            json=booking_body(provider, start, email="Grace@Example.com"),
        )
        assert response.status_code == 200
        data = response.json()
        assert data["booking"]["status"] == BookingStatus.PENDING
        assert data["booking"]["scheduledAt"] == iso_z(start)
        assert data["booking"]["customer"]["email"] == "grace@example.com"
        assert data["warnings"] == []

        recipients = sorted(mail["to"] for mail in outbox)
        assert recipients == ["ada@example.com", "grace@example.com"]
        customer_mail = next(mail for mail in outbox if mail["to"] == "grace@example.com")
        assert "/api/client/booking/confirm?token=" in customer_mail["body"]

    def test_slot_disappears_after_booking(self, client, provider) -> None:
        day = tomorrow_utc()
        client.post("/api/client/book-appointment", json=booking_body(provider, at_utc(day, "10:00")))
        slots = client.get(
            "/api/client/slots-on-demand",
            params={"providerId": provider.id, "date": day.isoformat(), "duration": 60},
        ).json()
        assert "10:00" not in [s["startTime"][11:16] for s in slots["slots"]]

    def test_double_booking_is_rejected(self, client, provider) -> None:
        start = at_utc(tomorrow_utc(), "10:00")
        first = client.post("/api/client/book-appointment", json=booking_body(provider, start))
        second = client.post(
            "/api/client/book-appointment",
            json=booking_body(provider, start + timedelta(minutes=30), duration=30, email="alan@example.com"),
        )
        assert first.status_code == 200
        assert second.status_code == 400
        assert second.json()["detail"] == "Appointment conflicts with existing booking"

    def test_back_to_back_is_allowed(self, client, provider) -> None:
        start = at_utc(tomorrow_utc(), "10:00")
        client.post("/api/client/book-appointment", json=booking_body(provider, start))
        response = client.post(
            "/api/client/book-appointment",
            json=booking_body(provider, start + timedelta(hours=1), email="alan@example.com"),
        )
        assert response.status_code == 200

    def test_outside_working_hours(self, client, provider) -> None:
        response = client.post(
            "/api/client/book-appointment",
            json=booking_body(provider, at_utc(tomorrow_utc(), "20:00")),
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Selected time slot is no longer available"

    def test_missing_fields(self, client, provider) -> None:
        response = client.post("/api/client/book-appointment", json={"providerId": provider.id})
        assert response.status_code == 400
        assert response.json()["detail"] == "Missing required fields: providerId, scheduledAt, duration, customer"

    def test_customer_email_required(self, client, provider) -> None:
        body = booking_body(provider, at_utc(tomorrow_utc(), "10:00"), email="  ")
        response = client.post("/api/client/book-appointment", json=body)
        assert response.json()["detail"] == "Customer email is required"

    def test_duration_must_be_offered(self, client, provider) -> None:
        response = client.post(
            "/api/client/book-appointment",
            json=booking_body(provider, at_utc(tomorrow_utc(), "10:00"), duration=45),
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Duration not allowed for this provider"

    def test_past_and_far_future(self, client, provider) -> None:
        past = client.post(
            "/api/client/book-appointment",
            json=booking_body(provider, at_utc(tomorrow_utc() - timedelta(days=2), "10:00")),
        )
        far = client.post(
            "/api/client/book-appointment",
            json=booking_body(provider, at_utc(tomorrow_utc() + timedelta(days=40), "10:00")),
        )
        assert past.json()["detail"] == "Cannot book appointments in the past"
        assert far.json()["detail"] == "Bookings are only available 30 days in advance"

    def test_unknown_provider(self, client, provider) -> None:
        body = {**booking_body(provider, at_utc(tomorrow_utc(), "10:00")), "providerId": 999}
        response = client.post("/api/client/book-appointment", json=body)
        assert response.status_code == 404

    def test_email_failure_is_a_warning(self, client, provider, monkeypatch) -> None:
        async def broken_send_email(*args, **kwargs):
            raise email_service.EmailDeliveryError("Email service not configured")

        monkeypatch.setattr(email_service, "send_email", broken_send_email)
        response = client.post(
            "/api/client/book-appointment",
            json=booking_body(provider, at_utc(tomorrow_utc(), "10:00")),
        )
        assert response.status_code == 200
        assert "Failed to send booking received email" in response.json()["warnings"]

    def test_existing_customer_is_updated(self, client, db_session, provider) -> None:
        client.post("/api/client/book-appointment", json=booking_body(provider, at_utc(tomorrow_utc(), "10:00")))
        body = booking_body(provider, at_utc(tomorrow_utc(), "12:00"))
        body["customer"]["phone"] = "+1 555 0100"
        client.post("/api/client/book-appointment", json=body)

        customers = db_session.query(Customer).all()
        assert len(customers) == 1
        assert customers[0].phone == "+1 555 0100"


class TestCreateBookingService:
    """Service-level booking checks with a fixed clock."""

    @pytest.mark.asyncio
    async def test_overlapping_confirmed_booking(self, db_session, provider, make_booking) -> None:
        now = datetime(2030, 3, 3, 6, 0)
        make_booking(datetime(2030, 3, 4, 9, 0), duration=60, status=BookingStatus.CONFIRMED)
        service = BookingService(db_session)
        data = BookingCreate(
            providerId=provider.id,
            scheduledAt="2030-03-04T09:30:00Z",
            duration=30,
            customer=CustomerInput(email="alan@example.com"),
        )
        with pytest.raises(HTTPException) as exc:
            await service.create_booking(data, now=now)
        assert exc.value.detail == "Appointment conflicts with existing booking"

    @pytest.mark.asyncio
    async def test_offset_timestamps_are_normalised(self, db_session, provider) -> None:
        now = datetime(2030, 3, 3, 6, 0)
        data = BookingCreate(
            providerId=provider.id,
            scheduledAt="2030-03-04T11:00:00+01:00",
            duration=60,
            customer=CustomerInput(email="alan@example.com"),
        )
        result = await BookingService(db_session).create_booking(data, now=now)
        assert result["booking"]["scheduledAt"] == "2030-03-04T10:00:00Z"


class TestProviderBookings:
    """Tests for the provider booking endpoints."""

    def test_list_and_filter(self, client, provider_headers, make_booking) -> None:
        day = tomorrow_utc()
        make_booking(at_utc(day, "11:00"))
        make_booking(at_utc(day, "09:00"), status=BookingStatus.CONFIRMED)

        everything = client.get("/api/provider/bookings", headers=provider_headers).json()
        assert everything["total"] == 2
        assert everything["bookings"][0]["scheduledAt"] == iso_z(at_utc(day, "09:00"))

        confirmed = client.get(
            "/api/provider/bookings", params={"status": "confirmed"}, headers=provider_headers
        ).json()
        assert [b["status"] for b in confirmed["bookings"]] == [BookingStatus.CONFIRMED]

    def test_invalid_status_filter(self, client, provider_headers) -> None:
        response = client.get("/api/provider/bookings", params={"status": "bogus"}, headers=provider_headers)
        assert response.status_code == 400

    def test_requires_authentication(self, client) -> None:
        response = client.get("/api/provider/bookings")
        assert response.status_code == 401

    def test_other_providers_booking_is_hidden(self, client, db_session, provider_headers) -> None:
        other = Provider(name="Other", email="other@example.com", allowed_durations=[60])
        customer = Customer(email="someone@example.com")
        db_session.add_all([other, customer])
        db_session.flush()
        booking = Booking(
            provider_id=other.id,
            customer_id=customer.id,
            scheduled_at=at_utc(tomorrow_utc(), "10:00"),
            duration=60,
        )
        db_session.add(booking)
        db_session.commit()

        response = client.get(f"/api/provider/bookings/{booking.id}", headers=provider_headers)
        assert response.status_code == 404
        assert response.json()["detail"] == "Booking not found or access denied"

    def test_confirm(self, client, provider_headers, make_booking, outbox) -> None:
        booking = make_booking(at_utc(tomorrow_utc(), "10:00"))
        response = client.post(f"/api/provider/bookings/{booking.id}/confirm", headers=provider_headers)
        assert response.json()["booking"]["status"] == BookingStatus.CONFIRMED
        assert outbox[-1]["subject"] == "Your appointment is confirmed - Dr. Ada Lovelace"

        again = client.post(f"/api/provider/bookings/{booking.id}/confirm", headers=provider_headers)
        assert again.json()["message"] == "Booking already confirmed"

    def test_deny_pending_and_cancel_confirmed(self, client, provider_headers, make_booking, outbox) -> None:
        pending = make_booking(at_utc(tomorrow_utc(), "10:00"))
        confirmed = make_booking(at_utc(tomorrow_utc(), "12:00"), status=BookingStatus.CONFIRMED)

        denied = client.post(
            f"/api/provider/bookings/{pending.id}/cancel",
            json={"reason": "Fully booked"},
            headers=provider_headers,
        )
        cancelled = client.post(f"/api/provider/bookings/{confirmed.id}/cancel", headers=provider_headers)

        assert denied.json()["message"] == "Booking denied successfully"
        assert cancelled.json()["message"] == "Booking cancelled successfully"
        assert [mail["to"] for mail in outbox] == ["grace@example.com", "grace@example.com"]
        assert "Fully booked" in outbox[0]["body"]

    def test_cancel_is_idempotent(self, client, provider_headers, make_booking, outbox) -> None:
        booking = make_booking(at_utc(tomorrow_utc(), "10:00"), status=BookingStatus.CANCELLED)
        response = client.post(f"/api/provider/bookings/{booking.id}/cancel", headers=provider_headers)
        assert response.status_code == 200
        assert response.json()["message"] == "Booking already cancelled"
        assert outbox == []

    def test_cannot_cancel_completed(self, client, provider_headers, make_booking) -> None:
        booking = make_booking(at_utc(tomorrow_utc(), "10:00"), status=BookingStatus.COMPLETED)
        response = client.post(f"/api/provider/bookings/{booking.id}/cancel", headers=provider_headers)
        assert response.status_code == 400
        assert response.json()["detail"] == "Cannot cancel a completed booking"

    def test_reschedule_outside_hours(self, client, provider_headers, make_booking, outbox) -> None:
        """Providers are not bound by their published hours, only by other bookings."""
        booking = make_booking(at_utc(tomorrow_utc(), "10:00"), status=BookingStatus.CONFIRMED)
        new_start = at_utc(tomorrow_utc(), "19:00")
        response = client.post(
            f"/api/provider/bookings/{booking.id}/reschedule",
            json={"newDateTime": iso_z(new_start), "reason": "Running late"},
            headers=provider_headers,
        )
        assert response.status_code == 200
        data = response.json()["booking"]
        assert data["scheduledAt"] == iso_z(new_start)
        assert data["status"] == BookingStatus.PENDING
        assert outbox[-1]["to"] == "grace@example.com"
        assert outbox[-1]["subject"].startswith("Appointment rescheduled to")

    def test_reschedule_onto_another_booking(self, client, provider_headers, make_booking) -> None:
        booking = make_booking(at_utc(tomorrow_utc(), "10:00"))
        make_booking(at_utc(tomorrow_utc(), "14:00"), email="alan@example.com")
        response = client.post(
            f"/api/provider/bookings/{booking.id}/reschedule",
            json={"newDateTime": iso_z(at_utc(tomorrow_utc(), "14:30"))},
            headers=provider_headers,
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Appointment conflicts with existing booking"

    def test_reschedule_onto_synced_event(self, client, db_session, provider, provider_headers, make_booking) -> None:
        booking = make_booking(at_utc(tomorrow_utc(), "10:00"))
        connection = CalendarConnection(
            provider_id=provider.id,
            platform="GOOGLE",
            email="ada@gmail.com",
            access_token="encrypted",
            is_active=True,
            sync_events=True,
        )
        db_session.add(connection)
        db_session.flush()
        db_session.add(
            CalendarEvent(
                connection_id=connection.id,
                provider_id=provider.id,
                external_id="evt-dentist",
                start_time=at_utc(tomorrow_utc(), "19:00"),
                end_time=at_utc(tomorrow_utc(), "20:00"),
            )
        )
        db_session.commit()

        response = client.post(
            f"/api/provider/bookings/{booking.id}/reschedule",
            json={"newDateTime": iso_z(at_utc(tomorrow_utc(), "19:30"))},
            headers=provider_headers,
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Appointment conflicts with existing calendar event"

    def test_reschedule_respects_buffer(self, client, db_session, provider, provider_headers, make_booking) -> None:
        provider.buffer_minutes = 30
        db_session.commit()
        booking = make_booking(at_utc(tomorrow_utc(), "10:00"))
        make_booking(at_utc(tomorrow_utc(), "14:00"), email="alan@example.com")

        too_close = client.post(
            f"/api/provider/bookings/{booking.id}/reschedule",
            json={"newDateTime": iso_z(at_utc(tomorrow_utc(), "15:15"))},
            headers=provider_headers,
        )
        assert too_close.json()["detail"] == "Appointment conflicts with existing booking"

        clear = client.post(
            f"/api/provider/bookings/{booking.id}/reschedule",
            json={"newDateTime": iso_z(at_utc(tomorrow_utc(), "15:30"))},
            headers=provider_headers,
        )
        assert clear.status_code == 200

    def test_reschedule_into_its_own_slot(self, client, provider_headers, make_booking) -> None:
        """A booking does not conflict with itself."""
        booking = make_booking(at_utc(tomorrow_utc(), "10:00"))
        response = client.post(
            f"/api/provider/bookings/{booking.id}/reschedule",
            json={"newDateTime": iso_z(at_utc(tomorrow_utc(), "10:30"))},
            headers=provider_headers,
        )
        assert response.status_code == 200

    def test_reschedule_into_the_past(self, client, provider_headers, make_booking) -> None:
        booking = make_booking(at_utc(tomorrow_utc(), "10:00"))
        response = client.post(
            f"/api/provider/bookings/{booking.id}/reschedule",
            json={"newDateTime": iso_z(at_utc(tomorrow_utc() - timedelta(days=2), "10:00"))},
            headers=provider_headers,
        )
        assert response.json()["detail"] == "New appointment time must be in the future"

    def test_reschedule_requires_new_time(self, client, provider_headers, make_booking) -> None:
        booking = make_booking(at_utc(tomorrow_utc(), "10:00"))
        response = client.post(
            f"/api/provider/bookings/{booking.id}/reschedule", json={}, headers=provider_headers
        )
        assert response.json()["detail"] == "New date and time is required"

    def test_complete(self, client, provider_headers, make_booking) -> None:
        pending = make_booking(at_utc(tomorrow_utc(), "10:00"))
        confirmed = make_booking(at_utc(tomorrow_utc(), "12:00"), status=BookingStatus.CONFIRMED)

        rejected = client.post(f"/api/provider/bookings/{pending.id}/complete", headers=provider_headers)
        completed = client.post(f"/api/provider/bookings/{confirmed.id}/complete", headers=provider_headers)

        assert rejected.json()["detail"] == "Only confirmed bookings can be completed"
        assert completed.json()["booking"]["status"] == BookingStatus.COMPLETED

    def test_delete(self, client, provider_headers, make_booking) -> None:
        pending = make_booking(at_utc(tomorrow_utc(), "10:00"))
        cancelled = make_booking(at_utc(tomorrow_utc(), "12:00"), status=BookingStatus.CANCELLED)

        rejected = client.delete(f"/api/provider/bookings/{pending.id}", headers=provider_headers)
        deleted = client.delete(f"/api/provider/bookings/{cancelled.id}", headers=provider_headers)
        missing = client.get(f"/api/provider/bookings/{cancelled.id}", headers=provider_headers)

        assert rejected.json()["detail"] == "Only cancelled or completed bookings can be deleted"
        assert deleted.status_code == 200
        assert missing.status_code == 404

    def test_bulk_delete_finished(self, client, provider_headers, make_booking) -> None:
        make_booking(at_utc(tomorrow_utc(), "09:00"), status=BookingStatus.CANCELLED)
        make_booking(at_utc(tomorrow_utc(), "10:00"), status=BookingStatus.COMPLETED)
        make_booking(at_utc(tomorrow_utc(), "11:00"))

        response = client.delete("/api/provider/bookings", headers=provider_headers)
        assert response.json()["message"] == "Successfully deleted 2 booking(s)"

        remaining = client.get("/api/provider/bookings", headers=provider_headers).json()
        assert [b["status"] for b in remaining["bookings"]] == [BookingStatus.PENDING]

    def test_state_change_needs_csrf_header(self, client, access_token, make_booking) -> None:
        booking = make_booking(at_utc(tomorrow_utc(), "10:00"))
        client.get("/csrf-token")
        response = client.post(
            f"/api/provider/bookings/{booking.id}/confirm",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        assert response.status_code == 403


class TestConcurrentBooking:
    """Two customers racing for the same slot on a file-backed database."""

    def test_only_one_of_two_racing_bookings_wins(self, tmp_path, monkeypatch) -> None:
        race_engine = create_engine(
            f"sqlite:///{tmp_path / 'race.db'}", connect_args={"check_same_thread": False}
        )
        enable_sqlite_foreign_keys(race_engine)
        Base.metadata.create_all(bind=race_engine)
        RaceSession = sessionmaker(autocommit=False, autoflush=False, bind=race_engine)
        with RaceSession() as session:
            provider_id = add_provider(session).id

        # Both requests pass the availability check before either one inserts
        both_checked = threading.Barrier(2, timeout=10)
        check_slot = AvailabilityService.check_slot

        def check_then_wait(self, *args, **kwargs):
            reason = check_slot(self, *args, **kwargs)
            both_checked.wait()
            return reason

        monkeypatch.setattr(AvailabilityService, "check_slot", check_then_wait)

        outcomes: list[str] = []

        def book(email: str) -> None:
            data = BookingCreate(
                providerId=provider_id,
                scheduledAt="2030-03-04T10:00:00Z",
                duration=60,
                customer=CustomerInput(email=email),
            )
            with RaceSession() as session:
                try:
                    asyncio.run(BookingService(session).create_booking(data, now=datetime(2030, 3, 3, 6, 0)))
                    outcomes.append("booked")
                except HTTPException as e:
                    outcomes.append(e.detail)

        threads = [threading.Thread(target=book, args=(email,)) for email in ("grace@example.com", "alan@example.com")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        try:
            assert sorted(outcomes) == ["Appointment conflicts with existing booking", "booked"]
            with RaceSession() as session:
                assert session.query(Booking).filter_by(provider_id=provider_id).count() == 1
        finally:
            race_engine.dispose()
