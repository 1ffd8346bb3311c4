"""Tests for slot generation, previews and batch counts."""

from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

import pytest
from fastapi import HTTPException

from app.domain.scheduling.availability_service import AvailabilityService, slice_slots
from app.domain.scheduling.time_calculator import local_to_utc
from app.models import AvailabilitySchedule, BookingStatus, ProviderLocation
from app.models_calendar import CalendarConnection, CalendarEvent

from .conftest import at_utc, tomorrow_utc

# Fixed clock for service-level tests: 2030-03-04 is a Monday
NOW = datetime(2030, 3, 3, 6, 0)
DAY = date(2030, 3, 4)


def slot_starts(result: dict) -> list[str]:
    return [slot["startTime"][11:16] for slot in result["slots"]]


class TestSliceSlots:
    """Tests for cutting a window into slots."""

    def test_aligned_to_window_start(self) -> None:
        start = datetime(2030, 1, 1, 9, 0)
        slots = slice_slots(start, start + timedelta(hours=2, minutes=30), 60, [])
        assert [s[0].hour for s in slots] == [9, 10]

    def test_busy_and_lead_time(self) -> None:
        start = datetime(2030, 1, 1, 9, 0)
        busy = [(datetime(2030, 1, 1, 10, 15), datetime(2030, 1, 1, 10, 45))]
        slots = slice_slots(start, start + timedelta(hours=4), 60, busy, not_before=start)
        # 09:00 is not after not_before, 10:00 overlaps the busy block
        assert [s[0].hour for s in slots] == [11, 12]


class TestSlotsForDate:
    """Tests for AvailabilityService.get_slots."""

    def test_template_hours(self, db_session, provider) -> None:
        result = AvailabilityService(db_session).get_slots(provider.id, DAY.isoformat(), 60, now=NOW)
        assert slot_starts(result) == ["09:00", "10:00", "11:00", "12:00", "13:00", "14:00", "15:00", "16:00"]
        assert result["totalSlots"] == 8
        assert result["slots"][0]["location"]["display"] == "Contact provider for location details"

    def test_existing_booking_blocks_slots(self, db_session, provider, make_booking) -> None:
        make_booking(at_utc(DAY, "10:00"), duration=60)
        result = AvailabilityService(db_session).get_slots(provider.id, DAY.isoformat(), 30, now=NOW)
        starts = slot_starts(result)
        assert "10:00" not in starts and "10:30" not in starts
        assert "09:30" in starts and "11:00" in starts

    def test_confirmed_half_hour_in_a_morning_window(self, db_session, template, make_booking) -> None:
        for slot in template.time_slots:
            slot.end_time = "12:00"
        db_session.commit()
        make_booking(at_utc(DAY, "10:00"), duration=30, status=BookingStatus.CONFIRMED)
        result = AvailabilityService(db_session).get_slots(template.provider_id, DAY.isoformat(), 30, now=NOW)
        assert slot_starts(result) == ["09:00", "09:30", "10:30", "11:00", "11:30"]

    def test_cancelled_booking_frees_the_slot(self, db_session, provider, make_booking) -> None:
        make_booking(at_utc(DAY, "10:00"), status=BookingStatus.CANCELLED)
        result = AvailabilityService(db_session).get_slots(provider.id, DAY.isoformat(), 60, now=NOW)
        assert "10:00" in slot_starts(result)

    def test_buffer_pads_bookings(self, db_session, provider, make_booking) -> None:
        provider.buffer_minutes = 30
        db_session.commit()
        make_booking(at_utc(DAY, "12:00"), duration=60)
        result = AvailabilityService(db_session).get_slots(provider.id, DAY.isoformat(), 60, now=NOW)
        assert slot_starts(result) == ["09:00", "10:00", "14:00", "15:00", "16:00"]

    def test_synced_events_block_slots(self, db_session, provider) -> None:
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
                external_id="evt-1",
                start_time=at_utc(DAY, "13:00"),
                end_time=at_utc(DAY, "14:00"),
            )
        )
        db_session.commit()

        result = AvailabilityService(db_session).get_slots(provider.id, DAY.isoformat(), 60, now=NOW)
        assert "13:00" not in slot_starts(result)

        connection.sync_events = False
        db_session.commit()
        result = AvailabilityService(db_session).get_slots(provider.id, DAY.isoformat(), 60, now=NOW)
        assert "13:00" in slot_starts(result)

    def test_location_timezone_anchors_windows(self, db_session, provider) -> None:
        db_session.add(
            ProviderLocation(
                provider_id=provider.id,
                city="Chicago",
                state_province="IL",
                country="US",
                timezone="America/Chicago",
                start_date=date(1900, 1, 1),
                end_date=date(2099, 12, 31),
                is_default=True,
                is_active=True,
            )
        )
        db_session.commit()

        result = AvailabilityService(db_session).get_slots(provider.id, DAY.isoformat(), 60, now=NOW)
        expected = local_to_utc(DAY, time(9, 0), ZoneInfo("America/Chicago"))
        assert result["slots"][0]["startTime"] == expected.isoformat() + "Z"
        assert result["provider"]["timezone"] == "America/Chicago"
        assert result["slots"][0]["location"]["display"] == "Chicago, IL, US"

    def test_blocking_schedule(self, db_session, provider, template) -> None:
        db_session.add(
            AvailabilitySchedule(
                template_id=template.id,
                name="Conference",
                start_date=DAY,
                end_date=DAY,
                priority=1,
                is_active=True,
            )
        )
        db_session.commit()

        result = AvailabilityService(db_session).get_slots(provider.id, DAY.isoformat(), 60, now=NOW)
        assert result["slots"] == []
        assert result["availabilitySystem"]["advancedSchedulesApplied"] is True

    @pytest.mark.parametrize(
        "date_str, duration, detail",
        [
            ("2030-03-02", 60, "Cannot book appointments in the past"),
            ("2030-04-30", 60, "Bookings are only available 30 days in advance"),
            ("2030-03-04", 45, "Duration not allowed for this provider"),
            ("03/04/2030", 60, "Invalid date format: 03/04/2030. Use YYYY-MM-DD"),
        ],
    )
    def test_rejections(self, db_session, provider, date_str, duration, detail) -> None:
        with pytest.raises(HTTPException) as exc:
            AvailabilityService(db_session).get_slots(provider.id, date_str, duration, now=NOW)
        assert exc.value.status_code == 400
        assert exc.value.detail == detail

    def test_unknown_provider(self, db_session) -> None:
        with pytest.raises(HTTPException) as exc:
            AvailabilityService(db_session).get_slots(42, DAY.isoformat(), 60, now=NOW)
        assert exc.value.status_code == 404


class TestPreviewAndBatch:
    """Tests for the preview and batch count operations."""

    def test_preview_window(self, db_session, provider) -> None:
        result = AvailabilityService(db_session).get_preview(provider.id, days_ahead=2, now=NOW)
        days = result["availability"]
        assert [d["date"] for d in days] == ["2030-03-03", "2030-03-04", "2030-03-05"]
        assert days[1]["dayOfWeek"] == "Monday"
        assert days[1]["availableDurations"] == [30, 60]
        assert days[1]["timeWindows"] == [{"start": "09:00", "end": "17:00"}]

    def test_preview_is_capped_by_advance_window(self, db_session, provider) -> None:
        provider.advance_booking_days = 1
        db_session.commit()
        result = AvailabilityService(db_session).get_preview(provider.id, days_ahead=14, now=NOW)
        assert len(result["availability"]) == 2

    def test_batch_counts(self, db_session, provider, make_booking) -> None:
        make_booking(at_utc(DAY, "09:00"), duration=60)
        result = AvailabilityService(db_session).get_slot_counts(
            provider.id, ["2030-03-04", "2030-06-01"], [60, 45], now=NOW
        )
        assert result["counts"]["2030-03-04"] == {60: 7, 45: 0}
        assert result["counts"]["2030-06-01"] == {60: 0, 45: 0}

    def test_batch_requires_inputs(self, db_session, provider) -> None:
        with pytest.raises(HTTPException) as exc:
            AvailabilityService(db_session).get_slot_counts(provider.id, [], [60])
        assert exc.value.detail == "Provider ID, dates array, and durations array required"


class TestAvailabilityEndpoints:
    """Tests for the public availability endpoints."""

    def test_slots_on_demand(self, client, provider) -> None:
        response = client.get(
            "/api/client/slots-on-demand",
            params={"providerId": provider.id, "date": tomorrow_utc().isoformat(), "duration": 60},
        )
        assert response.status_code == 200
        assert response.json()["totalSlots"] == 8

    def test_preview(self, client, provider) -> None:
        response = client.get(
            "/api/client/availability-preview", params={"providerId": provider.id, "daysAhead": 3}
        )
        assert response.status_code == 200
        assert len(response.json()["availability"]) == 4

    def test_batch(self, client, provider) -> None:
        day = tomorrow_utc().isoformat()
        response = client.post(
            "/api/client/batch-slot-availability",
            json={"providerId": provider.id, "dates": [day], "durations": [30, 60]},
        )
        assert response.status_code == 200
        assert response.json()["counts"][day] == {"30": 16, "60": 8}
