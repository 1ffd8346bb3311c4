"""Calendar router - External calendar connections for the signed-in provider"""

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from ...auth import get_current_provider
from ...config import FRONTEND_URL
from ...database import get_db
from ...models import Provider
from .calendar_clients import CalendarAPIError, CalendarReauthorizationRequired
from .integration_service import CalendarIntegrationService, connection_to_dict
from .schemas import AppleConnectRequest, ConnectionSettingsUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/provider/calendar", tags=["Provider Calendar"])

CALENDAR_SETTINGS_PAGE = f"{FRONTEND_URL}/provider/calendar"


def get_integration_service(db: Session = Depends(get_db)) -> CalendarIntegrationService:
    return CalendarIntegrationService(db)


def _settings_redirect(**params) -> RedirectResponse:
    return RedirectResponse(f"{CALENDAR_SETTINGS_PAGE}?{urlencode(params)}", status_code=302)


@router.get("/connections")
async def list_connections(
    current_provider: Provider = Depends(get_current_provider),
    service: CalendarIntegrationService = Depends(get_integration_service),
):
    return service.list_connections(current_provider)


# ============================================================================
# CONNECTING
# ============================================================================


@router.get("/connect/{platform}")
async def get_authorization_url(
    platform: str,
    current_provider: Provider = Depends(get_current_provider),
    service: CalendarIntegrationService = Depends(get_integration_service),
):
    """OAuth consent URL for GOOGLE, OUTLOOK or TEAMS"""
    return service.get_authorization_url(current_provider, platform)


@router.get("/auth/{callback_platform}/callback")
async def oauth_callback(
    callback_platform: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    service: CalendarIntegrationService = Depends(get_integration_service),
):
    """Browser redirect target of the OAuth consent screen.

    The signed ``state`` names the provider and platform, so this route is
    unauthenticated. Outlook and Teams share the Microsoft callback.
    """
    if error:
        logger.warning(f"⚠️ {callback_platform} OAuth denied: {error}")
        return _settings_redirect(error=error)
    try:
        connection = await service.handle_oauth_callback(code, state)
    except HTTPException as e:
        return _settings_redirect(error=e.detail if isinstance(e.detail, str) else "connection_failed")
    return _settings_redirect(connected=connection.platform.lower(), connectionId=connection.id)


@router.post("/apple/connect")
async def connect_apple_calendar(
    data: AppleConnectRequest,
    current_provider: Provider = Depends(get_current_provider),
    service: CalendarIntegrationService = Depends(get_integration_service),
):
    """Connect iCloud with an Apple ID and app-specific password"""
    return await service.connect_apple(current_provider, data.appleId, data.appSpecificPassword)


# ============================================================================
# MANAGING
# ============================================================================


@router.put("/connections/{connection_id}")
async def update_connection_settings(
    connection_id: int,
    data: ConnectionSettingsUpdate,
    current_provider: Provider = Depends(get_current_provider),
    service: CalendarIntegrationService = Depends(get_integration_service),
):
    return service.update_settings(connection_id, current_provider, data.model_dump(exclude_unset=True))


@router.delete("/connections/{connection_id}")
async def disconnect_calendar(
    connection_id: int,
    current_provider: Provider = Depends(get_current_provider),
    service: CalendarIntegrationService = Depends(get_integration_service),
):
    return service.disconnect(connection_id, current_provider)


@router.get("/connections/{connection_id}/calendars")
async def get_available_calendars(
    connection_id: int,
    current_provider: Provider = Depends(get_current_provider),
    service: CalendarIntegrationService = Depends(get_integration_service),
):
    """Writable calendars of the account, without holiday/birthday style subscriptions"""
    return await service.get_available_calendars(connection_id, current_provider)


@router.post("/connections/{connection_id}/sync")
async def sync_connection(
    connection_id: int,
    current_provider: Provider = Depends(get_current_provider),
    service: CalendarIntegrationService = Depends(get_integration_service),
):
    connection = service.get_connection(connection_id, current_provider)
    if not connection.is_active:
        raise HTTPException(status_code=400, detail="Calendar connection is not active")
    try:
        count = await service.sync_connection(connection)
    except CalendarReauthorizationRequired as e:
        raise HTTPException(status_code=401, detail=str(e)) from e
    except CalendarAPIError as e:
        logger.error(f"❌ Manual sync failed for connection {connection.id}: {str(e)}")
        raise HTTPException(status_code=502, detail=f"Calendar sync failed: {str(e)}") from e
    return {"success": True, "eventsSynced": count, "connection": connection_to_dict(connection)}


@router.post("/sync")
async def sync_all_connections(
    current_provider: Provider = Depends(get_current_provider),
    service: CalendarIntegrationService = Depends(get_integration_service),
):
    """Sync every active connection of the provider"""
    return {"success": True, **await service.sync_provider(current_provider.id)}
