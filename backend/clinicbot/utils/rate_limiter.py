# /clinicbot/utils/rate_limiter.py

from slowapi import Limiter
from clinicbot.utils.request_utils import get_remote_address
from clinicbot.config.settings import settings

# HTTP-level limiter for the API surface. The per-patient message budget is
# enforced separately by IdentityRateLimiter inside the orchestrator.

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"]
)
