# /clinicbot/services/security_service.py

import hmac
import logging
import re
from typing import Optional

from clinicbot.exceptions import RateLimited
from clinicbot.utils.metrics import rate_limited_counter

# This service provides the input-hygiene and abuse-protection pieces the
# dialogue engine relies on: phone normalization, API key checks,
# the per-identity rate limiter and duplicate-delivery suppression.

logger = logging.getLogger(__name__)

PHONE_SHAPE_RE = re.compile(r"^\+?[78][\d\-()]{10,}$")


class SecurityService:
    @staticmethod
    def verify_api_key(provided: Optional[str], expected: Optional[str]) -> bool:
        if not expected:
            return True
        if not provided:
            return False
        return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


class EnhancedSecurityService(SecurityService):
    @staticmethod
    def sanitize_phone_number(phone: Optional[str]) -> str:
        """
        Normalizes a phone number to E.164 (e.g. +77012345678).
        - Local Russian/Kazakh forms are converted: 8XXXXXXXXXX -> +7XXXXXXXXXX,
          7XXXXXXXXXX -> +7XXXXXXXXXX, a bare 10-digit number gets +7.
        - Returns an empty string for invalid or empty inputs (instead of raising).
        """
        if not phone or not isinstance(phone, str):
            return ""

        clean_phone = re.sub(r"[^\d+]", "", phone.strip())
        digits = clean_phone.lstrip("+")
        if not digits.isdigit():
            return ""

        if not clean_phone.startswith("+"):
            if len(digits) == 11 and digits.startswith("8"):
                digits = "7" + digits[1:]
            elif len(digits) == 10:
                digits = "7" + digits

        clean_phone = "+" + digits
        if not re.match(r"^\+\d{10,15}$", clean_phone):
            return ""

        return clean_phone

    @staticmethod
    def is_phone_shaped(value: str) -> bool:
        """Loose shape check used by the phone validation rule."""
        if not value:
            return False
        return bool(PHONE_SHAPE_RE.match(re.sub(r"\s", "", value)))

    @classmethod
    def normalize_channel_user_id(cls, channel_user_id: Optional[str]) -> Optional[str]:
        """
        Phone-like chat ids (WhatsApp, SMS) are normalized like phone numbers so
        the same person resolves to one patient; other ids (Telegram) are kept.
        """
        if not channel_user_id:
            return None
        candidate = channel_user_id.strip()
        if re.match(r"^\+?\d{10,15}$", re.sub(r"[\s\-()]", "", candidate)):
            return cls.sanitize_phone_number(candidate) or candidate
        return candidate


# --- Rate Limiting & Duplicate Suppression ---

class IdentityRateLimiter:
    """
    Fixed-window counter per identity (INCR + EXPIRE). Counts are approximate:
    if Redis is unavailable the message is allowed through.
    """

    def __init__(self, redis_client, limit: int = 30, window: int = 60):
        self.redis = redis_client
        self.limit = limit
        self.window = window

    async def check(self, identity: str) -> None:
        if not self.redis:
            return
        key = f"rate_limit:identity:{identity}"
        try:
            current_count = await self.redis.incr(key)
            if current_count == 1:
                await self.redis.expire(key, self.window)
        except Exception as e:
            logger.warning(f"Rate limiter unavailable for {identity}: {e}")
            return
        if current_count > self.limit:
            rate_limited_counter.inc()
            raise RateLimited(identity, current_count, self.limit)


class DuplicateDeliveryGuard:
    """Remembers provider message ids so a re-delivered webhook is processed once."""

    def __init__(self, redis_client, ttl: int = 600):
        self.redis = redis_client
        self.ttl = ttl

    async def first_delivery(self, channel: str, identity: str, message_id: Optional[str]) -> bool:
        if not self.redis or not message_id:
            return True
        try:
            # set with nx=True returns True only if the key did not exist yet.
            return bool(await self.redis.set(f"processed:{channel}:{identity}:{message_id}", "1", ex=self.ttl, nx=True))
        except Exception as e:
            logger.warning(f"Duplicate check failed for {message_id}: {e}")
            return True

    async def forget(self, channel: str, identity: str, message_id: Optional[str]) -> None:
        """Releases a message id so a turn that failed to commit can be retried."""
        if not self.redis or not message_id:
            return
        try:
            await self.redis.delete(f"processed:{channel}:{identity}:{message_id}")
        except Exception as e:
            logger.warning(f"Could not release duplicate marker for {message_id}: {e}")
