"""
External Calendar Connection Models
"""
from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class CalendarPlatform:
    GOOGLE = "GOOGLE"
    OUTLOOK = "OUTLOOK"
    TEAMS = "TEAMS"
    APPLE = "APPLE"

    ALL = (GOOGLE, OUTLOOK, TEAMS, APPLE)
    OAUTH = (GOOGLE, OUTLOOK, TEAMS)


class CalendarConnection(Base):
    __tablename__ = "calendar_connections"

    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(Integer, ForeignKey("providers.id"), nullable=False, index=True)
    platform = Column(String(20), nullable=False)
    email = Column(String(255), nullable=False)
    calendar_id = Column(String(500), nullable=False, default="primary")
    calendar_name = Column(String(255), nullable=True)

    # OAuth tokens (encrypted). For APPLE the access token holds the
    # encrypted app-specific password and there is no refresh token.
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    token_expiry = Column(DateTime, nullable=True)

    # Settings
    is_active = Column(Boolean, default=True, nullable=False)
    is_default_for_bookings = Column(Boolean, default=False, nullable=False)
    sync_events = Column(Boolean, default=True, nullable=False)
    allow_bookings = Column(Boolean, default=True, nullable=False)
    selected_calendars = Column(JSON, default=list, nullable=True)
    calendar_settings = Column(JSON, default=dict, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    provider = relationship("Provider")
    events = relationship(
        "CalendarEvent", back_populates="connection", cascade="all, delete-orphan"
    )


class CalendarEvent(Base):
    """Busy block pulled from an external calendar"""

    __tablename__ = "calendar_events"

    id = Column(Integer, primary_key=True, index=True)
    connection_id = Column(Integer, ForeignKey("calendar_connections.id"), nullable=False, index=True)
    provider_id = Column(Integer, ForeignKey("providers.id"), nullable=False, index=True)
    external_id = Column(String(500), nullable=False)
    title = Column(String(500), nullable=True)
    start_time = Column(DateTime, nullable=False, index=True)  # naive UTC
    end_time = Column(DateTime, nullable=False)
    is_all_day = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    connection = relationship("CalendarConnection", back_populates="events")
