from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .config import DEFAULT_ADVANCE_BOOKING_DAYS, DEFAULT_ALLOWED_DURATIONS
from .database import Base


class BookingStatus:
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"

    ALL = (PENDING, CONFIRMED, CANCELLED, COMPLETED)


class BookingParty:
    CUSTOMER = "CUSTOMER"
    PROVIDER = "PROVIDER"


class Provider(Base):
    __tablename__ = "providers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    phone = Column(String(50), nullable=True)
    password_hash = Column(String(255), nullable=True)
    company = Column(String(255), nullable=True)
    # Appointment lengths (minutes) customers may pick
    allowed_durations = Column(JSON, default=lambda: list(DEFAULT_ALLOWED_DURATIONS), nullable=False)
    advance_booking_days = Column(Integer, default=DEFAULT_ADVANCE_BOOKING_DAYS, nullable=False)
    default_duration = Column(Integer, default=60, nullable=False)
    # Gap kept free around each booking
    buffer_minutes = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    templates = relationship(
        "AvailabilityTemplate", back_populates="provider", cascade="all, delete-orphan"
    )
    locations = relationship(
        "ProviderLocation", back_populates="provider", cascade="all, delete-orphan"
    )
    bookings = relationship("Booking", back_populates="provider", cascade="all, delete-orphan")


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    bookings = relationship("Booking", back_populates="customer")

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or self.email


class AvailabilityTemplate(Base):
    """Weekly recurring availability for a provider"""

    __tablename__ = "availability_templates"

    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(Integer, ForeignKey("providers.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    timezone = Column(String(64), nullable=True)  # IANA name, e.g. America/Chicago
    is_default = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    provider = relationship("Provider", back_populates="templates")
    time_slots = relationship(
        "TemplateTimeSlot",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="TemplateTimeSlot.day_of_week",
    )
    schedules = relationship(
        "AvailabilitySchedule", back_populates="template", cascade="all, delete-orphan"
    )


class TemplateTimeSlot(Base):
    __tablename__ = "template_time_slots"

    id = Column(Integer, primary_key=True, index=True)
    template_id = Column(Integer, ForeignKey("availability_templates.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)  # 0=Sunday .. 6=Saturday
    start_time = Column(String(5), nullable=False)  # HH:MM
    end_time = Column(String(5), nullable=False)  # HH:MM
    is_enabled = Column(Boolean, default=True, nullable=False)

    template = relationship("AvailabilityTemplate", back_populates="time_slots")


class ProviderLocation(Base):
    __tablename__ = "provider_locations"

    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(Integer, ForeignKey("providers.id"), nullable=False, index=True)
    address_line1 = Column(String(255), nullable=True)
    address_line2 = Column(String(255), nullable=True)
    city = Column(String(255), nullable=False)
    state_province = Column(String(255), nullable=False)
    postal_code = Column(String(32), nullable=True)
    country = Column(String(255), nullable=False)
    timezone = Column(String(64), nullable=True)
    description = Column(Text, nullable=True)
    # Calendar dates, no time component
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    provider = relationship("Provider", back_populates="locations")

    @property
    def display(self) -> str:
        return f"{self.city}, {self.state_province}, {self.country}"


class AvailabilitySchedule(Base):
    """Dated or recurring override layered on top of a template"""

    __tablename__ = "availability_schedules"

    id = Column(Integer, primary_key=True, index=True)
    template_id = Column(Integer, ForeignKey("availability_templates.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    is_recurring = Column(Boolean, default=False, nullable=False)
    recurrence_type = Column(String(20), nullable=True)  # DAILY, WEEKLY, BIWEEKLY, MONTHLY, YEARLY
    recurrence_interval = Column(Integer, default=1, nullable=True)
    days_of_week = Column(JSON, default=list, nullable=True)  # [0..6], 0=Sunday
    week_of_month = Column(Integer, nullable=True)  # 1..5
    month_of_year = Column(Integer, nullable=True)  # 1..12
    recurrence_end_date = Column(Date, nullable=True)
    occurrence_count = Column(Integer, nullable=True)
    priority = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    template = relationship("AvailabilityTemplate", back_populates="schedules")
    time_slots = relationship(
        "ScheduleTimeSlot", back_populates="schedule", cascade="all, delete-orphan"
    )


class ScheduleTimeSlot(Base):
    __tablename__ = "schedule_time_slots"

    id = Column(Integer, primary_key=True, index=True)
    schedule_id = Column(Integer, ForeignKey("availability_schedules.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    is_enabled = Column(Boolean, default=True, nullable=False)
    # 0-indexed week inside a multi-week pattern; NULL applies to every week
    week_number = Column(Integer, nullable=True)

    schedule = relationship("AvailabilitySchedule", back_populates="time_slots")


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(Integer, ForeignKey("providers.id"), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    scheduled_at = Column(DateTime, nullable=False, index=True)  # naive UTC
    duration = Column(Integer, nullable=False)  # minutes
    service_type = Column(String(100), default="consultation", nullable=False)
    notes = Column(Text, nullable=True)
    status = Column(String(20), default=BookingStatus.PENDING, nullable=False, index=True)
    location_id = Column(Integer, ForeignKey("provider_locations.id"), nullable=True)
    external_event_id = Column(String(500), nullable=True)
    # Party that proposed the pending time; the other one has to confirm it
    rescheduled_by = Column(String(20), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    provider = relationship("Provider", back_populates="bookings")
    customer = relationship("Customer", back_populates="bookings")
    location = relationship("ProviderLocation")

    __table_args__ = (
        # Two live bookings can never start at the same instant for one provider
        Index(
            "uq_bookings_provider_start_live",
            "provider_id",
            "scheduled_at",
            unique=True,
            sqlite_where=text("status != 'CANCELLED'"),
            postgresql_where=text("status != 'CANCELLED'"),
        ),
    )
