import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from ..auth import create_token_pair, decode_provider_token, get_current_provider, security
from ..database import SessionLocal, get_db
from ..domain.scheduling.integration_service import CalendarIntegrationService
from ..models import Provider
from ..rate_limiter import create_rate_limiter, get_client_ip
from ..schemas import LoginRequest, LogoutRequest, MessageResponse, ProviderResponse, RefreshRequest
from ..security_utils import (
    account_lockout,
    log_security_event,
    mask_sensitive_data,
    token_blacklist,
    verify_password_bcrypt,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/provider/auth", tags=["Provider Authentication"])

rate_limit_login = create_rate_limiter(limit=10, window_seconds=900, key_prefix="login")
rate_limit_refresh = create_rate_limiter(limit=30, window_seconds=900, key_prefix="token_refresh")


def _locked_response(status: dict) -> HTTPException:
    if status["permanent"]:
        detail = "Account locked due to too many failed login attempts. Please contact support."
    else:
        unlock_at = datetime.fromtimestamp(status["unlock_at"], tz=timezone.utc)
        detail = f"Account temporarily locked. Try again after {unlock_at.strftime('%H:%M UTC')}."
    return HTTPException(status_code=423, detail=detail)


async def sync_calendars_in_background(provider_id: int):
    """Refresh busy times from every connected calendar after login"""
    db = SessionLocal()
    try:
        result = await CalendarIntegrationService(db).sync_provider(provider_id)
        logger.info(f"📅 Login sync for provider {provider_id}: {result}")
    except Exception as e:
        logger.error(f"❌ Login calendar sync failed for provider {provider_id}: {str(e)}")
    finally:
        db.close()


@router.post("/login", dependencies=[Depends(rate_limit_login)])
async def login(
    data: LoginRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """Exchange e-mail and password for an access/refresh token pair"""
    email = data.email.strip().lower()
    ip_address = get_client_ip(request)

    status = account_lockout.status(email)
    if status["locked"]:
        logger.warning(f"🔒 Login attempt on locked account {mask_sensitive_data(email)}")
        raise _locked_response(status)

    provider = db.query(Provider).filter(Provider.email == email).first()
    if (
        not provider
        or not provider.is_active
        or not provider.password_hash
        or not verify_password_bcrypt(data.password, provider.password_hash)
    ):
        account_lockout.record_failure(email)
        log_security_event("failed_login", user_id=email, ip_address=ip_address)
        status = account_lockout.status(email)
        if status["locked"]:
            raise _locked_response(status)
        remaining = account_lockout.remaining_attempts(email)
        raise HTTPException(
            status_code=401,
            detail=f"Invalid credentials. {remaining} attempts remaining.",
        )

    account_lockout.record_success(email)
    log_security_event("login", user_id=str(provider.id), ip_address=ip_address)
    logger.info(f"✅ Provider {provider.id} logged in")

    background_tasks.add_task(sync_calendars_in_background, provider.id)

    return {
        **create_token_pair(provider),
        "provider": ProviderResponse.model_validate(provider).model_dump(),
    }


@router.post("/refresh", dependencies=[Depends(rate_limit_refresh)])
async def refresh_tokens(data: RefreshRequest, db: Session = Depends(get_db)):
    """Rotate a refresh token into a new token pair"""
    payload = decode_provider_token(data.refreshToken, expected_type="refresh")
    provider = (
        db.query(Provider)
        .filter(Provider.id == int(payload["sub"]), Provider.is_active.is_(True))
        .first()
    )
    if not provider:
        raise HTTPException(status_code=401, detail="Authentication failed")

    # Old refresh token cannot be replayed
    token_blacklist.revoke(data.refreshToken, payload.get("exp"))
    logger.info(f"🔄 Tokens refreshed for provider {provider.id}")
    return create_token_pair(provider)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    data: Optional[LogoutRequest] = None,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
):
    """Revoke the presented access token (and refresh token, if sent)"""
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    payload = decode_provider_token(credentials.credentials)
    token_blacklist.revoke(credentials.credentials, payload.get("exp"))

    if data and data.refreshToken:
        try:
            refresh_payload = decode_provider_token(data.refreshToken, expected_type="refresh")
            token_blacklist.revoke(data.refreshToken, refresh_payload.get("exp"))
        except HTTPException:
            logger.debug("Refresh token on logout already invalid")

    log_security_event("logout", user_id=payload["sub"], ip_address=get_client_ip(request))
    logger.info(f"👋 Provider {payload['sub']} logged out")
    return {"message": "Logged out successfully"}


@router.get("/me", response_model=ProviderResponse)
async def get_me(current_provider: Provider = Depends(get_current_provider)):
    return current_provider
