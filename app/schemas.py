from typing import Optional, List
from datetime import datetime

from pydantic import BaseModel, Field


class MessageResponse(BaseModel):
    message: str


# Provider Auth Schemas
class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=256)


class RefreshRequest(BaseModel):
    refreshToken: str


class LogoutRequest(BaseModel):
    refreshToken: Optional[str] = None


class ProviderResponse(BaseModel):
    id: int
    name: str
    email: str
    company: Optional[str] = None
    allowed_durations: List[int]
    advance_booking_days: int
    default_duration: int
    buffer_minutes: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TokenResponse(BaseModel):
    accessToken: str
    refreshToken: str
    tokenType: str = "bearer"
    expiresIn: int
    provider: Optional[ProviderResponse] = None
