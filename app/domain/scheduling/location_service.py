"""Location service - Date-ranged provider locations with one default"""

import logging
from datetime import date
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...models import Booking, Provider, ProviderLocation
from .repository import SchedulingRepository
from .schemas import LocationCreate, LocationUpdate
from .time_calculator import parse_calendar_date

logger = logging.getLogger(__name__)

# Indefinite range stored on default locations
DEFAULT_LOCATION_START = date(1900, 1, 1)
DEFAULT_LOCATION_END = date(2099, 12, 31)


def pick_location_for_date(
    locations: list[ProviderLocation], target: date
) -> Optional[ProviderLocation]:
    """Non-default location covering ``target`` (earliest start), else the default"""
    covering = [
        loc
        for loc in locations
        if loc.is_active and not loc.is_default and loc.start_date <= target <= loc.end_date
    ]
    if covering:
        return min(covering, key=lambda loc: (loc.start_date, loc.id))
    return next((loc for loc in locations if loc.is_active and loc.is_default), None)


def location_to_dict(location: Optional[ProviderLocation]) -> Optional[dict]:
    if location is None:
        return None
    return {
        "id": location.id,
        "addressLine1": location.address_line1,
        "addressLine2": location.address_line2,
        "city": location.city,
        "stateProvince": location.state_province,
        "postalCode": location.postal_code,
        "country": location.country,
        "timezone": location.timezone,
        "description": location.description,
        "startDate": location.start_date.isoformat(),
        "endDate": location.end_date.isoformat(),
        "isDefault": location.is_default,
        "isActive": location.is_active,
        "display": location.display,
    }


class LocationService:
    """Service layer for provider locations"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = SchedulingRepository()

    def get_locations(self, provider: Provider) -> list[ProviderLocation]:
        return self.repo.get_locations(self.db, provider.id)

    def get_location(self, location_id: int, provider: Provider) -> ProviderLocation:
        location = self.repo.get_location(self.db, location_id, provider.id)
        if not location:
            raise HTTPException(status_code=404, detail="Location not found")
        return location

    def location_for_date(self, provider_id: int, target: date) -> Optional[ProviderLocation]:
        locations = self.repo.get_locations(self.db, provider_id, active_only=True)
        return pick_location_for_date(locations, target)

    @staticmethod
    def _resolve_range(
        is_default: bool, start_date: Optional[str], end_date: Optional[str]
    ) -> tuple[date, date]:
        if is_default:
            # Submitted dates are ignored for the default location
            return DEFAULT_LOCATION_START, DEFAULT_LOCATION_END
        if not start_date or not end_date:
            raise HTTPException(
                status_code=400,
                detail="Start date and end date are required for non-default locations",
            )
        start, end = parse_calendar_date(start_date), parse_calendar_date(end_date)
        if start >= end:
            raise HTTPException(status_code=400, detail="Start date must be before end date")
        return start, end

    def create_location(self, data: LocationCreate, provider: Provider) -> ProviderLocation:
        logger.info(f"📥 Creating location for provider {provider.id} (default={data.isDefault})")
        if not data.city or not data.stateProvince or not data.country:
            raise HTTPException(
                status_code=400, detail="City, state/province, and country are required"
            )

        start, end = self._resolve_range(data.isDefault, data.startDate, data.endDate)
        if data.isDefault:
            self.repo.unset_default_locations(self.db, provider.id)

        location = ProviderLocation(
            provider_id=provider.id,
            address_line1=data.addressLine1,
            address_line2=data.addressLine2,
            city=data.city,
            state_province=data.stateProvince,
            postal_code=data.postalCode,
            country=data.country,
            timezone=data.timezone,
            description=data.description,
            start_date=start,
            end_date=end,
            is_default=data.isDefault,
            is_active=data.isActive,
        )
        self.db.add(location)
        self.db.commit()
        self.db.refresh(location)
        logger.info(f"✅ Location {location.id} created ({location.display})")
        return location

    def update_location(
        self, location_id: int, data: LocationUpdate, provider: Provider
    ) -> ProviderLocation:
        location = self.get_location(location_id, provider)
        fields = data.model_dump(exclude_unset=True)

        for key, column in (
            ("addressLine1", "address_line1"),
            ("addressLine2", "address_line2"),
            ("postalCode", "postal_code"),
            ("timezone", "timezone"),
            ("description", "description"),
        ):
            if key in fields:
                setattr(location, column, fields[key])
        for key, column in (("city", "city"), ("stateProvince", "state_province"), ("country", "country")):
            if key in fields:
                if not fields[key]:
                    raise HTTPException(
                        status_code=400, detail="City, state/province, and country are required"
                    )
                setattr(location, column, fields[key])
        if fields.get("isActive") is not None:
            location.is_active = fields["isActive"]

        is_default = location.is_default if fields.get("isDefault") is None else fields["isDefault"]
        if is_default:
            location.start_date, location.end_date = DEFAULT_LOCATION_START, DEFAULT_LOCATION_END
            self.repo.unset_default_locations(self.db, provider.id, keep_id=location.id)
        elif location.is_default or "startDate" in fields or "endDate" in fields:
            # Leaving default status (or moving dates) needs a real range
            start = fields.get("startDate") or (
                None if location.is_default else location.start_date.isoformat()
            )
            end = fields.get("endDate") or (
                None if location.is_default else location.end_date.isoformat()
            )
            location.start_date, location.end_date = self._resolve_range(False, start, end)
        location.is_default = is_default

        self.db.commit()
        self.db.refresh(location)
        logger.info(f"✅ Location {location.id} updated")
        return location

    def delete_location(self, location_id: int, provider: Provider) -> dict:
        location = self.get_location(location_id, provider)
        self.db.query(Booking).filter(Booking.location_id == location.id).update(
            {Booking.location_id: None}, synchronize_session=False
        )
        self.db.delete(location)
        self.db.commit()
        logger.info(f"🗑️ Location {location_id} deleted")
        return {"success": True, "message": "Location deleted"}
