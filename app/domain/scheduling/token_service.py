"""
Magic links
Signed, single-use tokens that let a customer act on one booking from an e-mail
"""

import logging
import time
from datetime import timedelta
from typing import Optional

from fastapi import HTTPException
from jose import ExpiredSignatureError, JWTError
from sqlalchemy.orm import Session

from ...config import API_BASE_URL, FRONTEND_URL, MAGIC_LINK_EXPIRY_HOURS
from ...models import Booking
from ...security_store import KeyValueStore, get_store
from ...security_utils import create_jwt_token, decode_jwt_token
from .repository import SchedulingRepository

logger = logging.getLogger(__name__)

MAGIC_LINK_TYPE = "magic_link"
MAGIC_LINK_ACTIONS = ("confirm", "cancel", "reschedule")
USED_KEY_PREFIX = "magic_link_used"


class MagicLinkService:
    """Issue and redeem magic-link tokens"""

    def __init__(self, db: Session, store: Optional[KeyValueStore] = None):
        self.db = db
        self.repo = SchedulingRepository()
        self._store = store

    @property
    def store(self) -> KeyValueStore:
        return self._store or get_store()

    @staticmethod
    def generate(booking: Booking, action: str) -> str:
        if action not in MAGIC_LINK_ACTIONS:
            raise ValueError(f"Unknown magic link action: {action}")
        return create_jwt_token(
            {
                "booking_id": booking.id,
                "customer_email": booking.customer.email.lower(),
                "action": action,
                "type": MAGIC_LINK_TYPE,
            },
            timedelta(hours=MAGIC_LINK_EXPIRY_HOURS),
        )

    @classmethod
    def build_url(cls, booking: Booking, action: str) -> str:
        token = cls.generate(booking, action)
        if action == "reschedule":
            return f"{FRONTEND_URL}/booking/reschedule?token={token}"
        return f"{API_BASE_URL}/api/client/booking/{action}?token={token}"

    @classmethod
    def links_for_booking(cls, booking: Booking) -> dict:
        return {action: cls.build_url(booking, action) for action in MAGIC_LINK_ACTIONS}

    @staticmethod
    def decode(token: str) -> dict:
        try:
            payload = decode_jwt_token(token)
        except ExpiredSignatureError as e:
            raise HTTPException(status_code=401, detail="This link has expired") from e
        except JWTError as e:
            logger.warning(f"⚠️ Invalid magic link presented: {str(e)}")
            raise HTTPException(status_code=401, detail="Invalid or malformed link") from e

        if payload.get("type") != MAGIC_LINK_TYPE or not payload.get("booking_id") or not payload.get("jti"):
            raise HTTPException(status_code=401, detail="Invalid or malformed link")
        return payload

    def verify(self, token: str, action: Optional[str] = None) -> tuple[Booking, dict]:
        """Signature, expiry, action and the booking's current customer e-mail.

        Does not consume the token; see ``consume``.
        """
        payload = self.decode(token)
        if action and payload.get("action") != action:
            raise HTTPException(status_code=400, detail="This link cannot be used for this action")

        booking = self.repo.get_booking(self.db, int(payload["booking_id"]))
        # A changed customer e-mail invalidates older links; report it like a missing booking
        if not booking or booking.customer.email.lower() != (payload.get("customer_email") or "").lower():
            raise HTTPException(status_code=404, detail="Booking not found")
        return booking, payload

    def _used_key(self, payload: dict) -> str:
        return f"{USED_KEY_PREFIX}:{payload['jti']}"

    def consume(self, payload: dict) -> None:
        """Mark the token used; a second redemption gets 400"""
        ttl = max(1, int(payload.get("exp", time.time()) - time.time()))
        if not self.store.set_if_absent(self._used_key(payload), "1", ex=ttl):
            logger.warning(f"🚫 Magic link reuse for booking {payload.get('booking_id')}")
            raise HTTPException(status_code=400, detail="This link has already been used")

    def release(self, payload: dict) -> None:
        """Give the token back after the action itself was rejected"""
        self.store.delete(self._used_key(payload))
