import logging
from datetime import timedelta

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError
from sqlalchemy.orm import Session

from .config import ACCESS_TOKEN_EXPIRE_MINUTES, REFRESH_TOKEN_EXPIRE_DAYS
from .database import get_db
from .models import Provider
from .security_utils import create_jwt_token, decode_jwt_token, token_blacklist

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def create_token_pair(provider: Provider) -> dict:
    """Access + refresh JWTs for a provider"""
    claims = {"sub": str(provider.id), "email": provider.email}
    access_token = create_jwt_token(
        {**claims, "type": "access"}, timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    refresh_token = create_jwt_token(
        {**claims, "type": "refresh"}, timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS)
    )
    return {
        "accessToken": access_token,
        "refreshToken": refresh_token,
        "tokenType": "bearer",
        "expiresIn": ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    }


def decode_provider_token(token: str, expected_type: str = "access") -> dict:
    """Validate a provider JWT and return its claims (401 on any problem)"""
    if len(token.split(".")) != 3:
        logger.warning(f"⚠️ Malformed token received, length: {len(token)}")
        raise HTTPException(status_code=401, detail="Invalid token format. Expected a valid JWT token.")

    try:
        payload = decode_jwt_token(token)
    except ExpiredSignatureError as e:
        raise HTTPException(
            status_code=401,
            detail="Token has expired. Please refresh your session.",
            headers={"X-Token-Expired": "true"},
        ) from e
    except JWTError as e:
        logger.warning(f"⚠️ Token verification failed: {str(e)}")
        raise HTTPException(status_code=401, detail="Invalid token") from e

    if payload.get("type") != expected_type or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token claims")
    if token_blacklist.is_revoked(token):
        logger.info(f"🚫 Revoked token presented for provider {payload.get('sub')}")
        raise HTTPException(status_code=401, detail="Token has been revoked")
    return payload


async def get_current_provider(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> Provider:
    """Get current provider from the Bearer access token"""
    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated. Please provide a valid Bearer token in the Authorization header.",
        )

    payload = decode_provider_token(credentials.credentials)
    provider = (
        db.query(Provider)
        .filter(Provider.id == int(payload["sub"]), Provider.is_active.is_(True))
        .first()
    )
    if not provider:
        logger.warning(f"⚠️ Token for unknown or inactive provider {payload['sub']}")
        raise HTTPException(status_code=401, detail="Authentication failed")

    logger.debug(f"✅ Provider authenticated: {provider.email}")
    return provider
