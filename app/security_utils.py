"""
Security Utilities
Password hashing, signed tokens, account lockout and token blacklist
"""

import hashlib
import json
import logging
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

# Token generation and validation
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from jose import jwt as jose_jwt

# Password hashing
from passlib.context import CryptContext

from .config import (
    JWT_ALGORITHM,
    LOCKOUT_MAX_ATTEMPTS,
    LOCKOUT_PERMANENT_THRESHOLD,
    LOCKOUT_RESET_WINDOW_MINUTES,
    SECRET_KEY,
)
from .security_store import KeyValueStore, get_store

logger = logging.getLogger(__name__)

# Password hashing context
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


# ============================================================================
# PASSWORD SECURITY
# ============================================================================


def hash_password_bcrypt(password: str) -> str:
    """Hash password using bcrypt"""
    return pwd_context.hash(password)


def verify_password_bcrypt(plain_password: str, hashed_password: str) -> bool:
    """Verify password against bcrypt hash"""
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError as e:
        logger.error(f"Password verification error: {e}")
        return False


# ============================================================================
# TOKEN GENERATION
# ============================================================================


def generate_timed_token(data: dict[str, Any], salt: str = "security-token") -> str:
    """
    Generate a time-limited token using itsdangerous
    Used for the OAuth ``state`` round trip
    """
    serializer = URLSafeTimedSerializer(SECRET_KEY)
    return serializer.dumps(data, salt=salt)


def verify_timed_token(
    token: str, max_age: int = 3600, salt: str = "security-token"
) -> Optional[dict[str, Any]]:
    """
    Verify and decode a timed token

    Returns:
        Decoded data if valid, None if invalid or expired
    """
    serializer = URLSafeTimedSerializer(SECRET_KEY)
    try:
        return serializer.loads(token, salt=salt, max_age=max_age)
    except SignatureExpired:
        logger.warning("Token expired")
        return None
    except BadSignature:
        logger.warning("Invalid token signature")
        return None


def create_jwt_token(data: dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT token with ``exp``, ``iat`` and a unique ``jti``

    Args:
        data: Data to encode in the token
        expires_delta: Token expiration time (default 15 minutes)
    """
    now = datetime.now(timezone.utc)
    to_encode = data.copy()
    to_encode.update(
        {
            "exp": now + (expires_delta or timedelta(minutes=15)),
            "iat": now,
            "jti": to_encode.get("jti") or secrets.token_hex(16),
        }
    )
    return jose_jwt.encode(to_encode, SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_jwt_token(token: str) -> dict[str, Any]:
    """Decode a JWT, raising ``JWTError`` (incl. ``ExpiredSignatureError``) when invalid"""
    return jose_jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


# ============================================================================
# ACCOUNT LOCKOUT
# ============================================================================


class AccountLockout:
    """
    Progressive lockout for brute force protection

    From LOCKOUT_MAX_ATTEMPTS failures on, every further failure locks the
    account for the next step of LOCKOUT_DURATIONS_MINUTES; at
    LOCKOUT_PERMANENT_THRESHOLD the lock becomes permanent. Counters are
    forgotten after LOCKOUT_RESET_WINDOW_MINUTES without attempts.
    """

    LOCKOUT_DURATIONS_MINUTES = [1, 5, 15, 30, 60]

    def __init__(self, store: Optional[KeyValueStore] = None):
        self._store = store

    @property
    def store(self) -> KeyValueStore:
        return self._store or get_store()

    @staticmethod
    def _key(identifier: str) -> str:
        return f"lockout:{hashlib.sha256(identifier.lower().encode()).hexdigest()[:32]}"

    def _load(self, identifier: str) -> dict:
        raw = self.store.get(self._key(identifier))
        if not raw:
            return {"attempts": 0, "locked_until": None, "permanent": False}
        return json.loads(raw)

    def status(self, identifier: str) -> dict:
        """{"locked": bool, "permanent": bool, "unlock_at": epoch seconds or None}"""
        entry = self._load(identifier)
        if entry["permanent"]:
            return {"locked": True, "permanent": True, "unlock_at": None}
        locked_until = entry.get("locked_until")
        if locked_until and time.time() < locked_until:
            return {"locked": True, "permanent": False, "unlock_at": locked_until}
        return {"locked": False, "permanent": False, "unlock_at": None}

    def record_failure(self, identifier: str) -> dict:
        entry = self._load(identifier)
        entry["attempts"] += 1
        ttl = LOCKOUT_RESET_WINDOW_MINUTES * 60

        if entry["attempts"] >= LOCKOUT_PERMANENT_THRESHOLD:
            entry["permanent"] = True
            ttl = None
            logger.warning(f"🔒 PERMANENT LOCKOUT: {mask_sensitive_data(identifier)} ({entry['attempts']} failed attempts)")
            log_security_event("permanent_lockout", user_id=identifier)
        elif entry["attempts"] >= LOCKOUT_MAX_ATTEMPTS:
            index = min(entry["attempts"] - LOCKOUT_MAX_ATTEMPTS, len(self.LOCKOUT_DURATIONS_MINUTES) - 1)
            minutes = self.LOCKOUT_DURATIONS_MINUTES[index]
            entry["locked_until"] = time.time() + minutes * 60
            ttl += minutes * 60
            logger.warning(
                f"⏰ TEMPORARY LOCKOUT: {mask_sensitive_data(identifier)} locked for {minutes} min "
                f"(attempt {entry['attempts']})"
            )

        self.store.set(self._key(identifier), json.dumps(entry), ex=ttl)
        return entry

    def record_success(self, identifier: str) -> None:
        if not self._load(identifier)["permanent"]:
            self.store.delete(self._key(identifier))

    def remaining_attempts(self, identifier: str) -> int:
        entry = self._load(identifier)
        if entry["permanent"]:
            return 0
        return max(0, LOCKOUT_MAX_ATTEMPTS - entry["attempts"])

    def unlock(self, identifier: str) -> None:
        self.store.delete(self._key(identifier))
        logger.info(f"🔓 Account manually unlocked: {mask_sensitive_data(identifier)}")


# ============================================================================
# TOKEN BLACKLIST
# ============================================================================


class TokenBlacklist:
    """Revoked JWTs, keyed by token hash until the token would have expired"""

    def __init__(self, store: Optional[KeyValueStore] = None):
        self._store = store

    @property
    def store(self) -> KeyValueStore:
        return self._store or get_store()

    def revoke(self, token: str, expires_at: Optional[int] = None) -> None:
        ttl = int(expires_at - time.time()) if expires_at else 24 * 3600
        if ttl <= 0:
            return
        self.store.set(f"blacklist:{hash_token(token)}", "1", ex=ttl)

    def is_revoked(self, token: str) -> bool:
        return self.store.exists(f"blacklist:{hash_token(token)}")


account_lockout = AccountLockout()
token_blacklist = TokenBlacklist()


# ============================================================================
# AUDIT LOGGING
# ============================================================================


def log_security_event(
    event_type: str,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
):
    """
    Log security-related events for audit trail

    Args:
        event_type: Type of security event (login, logout, failed_auth, etc.)
        user_id: User identifier
        ip_address: Client IP address
        details: Additional event details
    """
    log_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type,
        "user_id": mask_sensitive_data(str(user_id)) if user_id else None,
        "ip_address": ip_address,
        "details": details or {},
    }
    logger.info(f"SECURITY_EVENT: {log_entry}")


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================


def mask_sensitive_data(data: str, visible_chars: int = 4) -> str:
    """
    Mask sensitive data for logging/display

    Args:
        data: Sensitive data to mask
        visible_chars: Number of characters to show at the end
    """
    if len(data) <= visible_chars:
        return "*" * len(data)

    return "*" * (len(data) - visible_chars) + data[-visible_chars:]
