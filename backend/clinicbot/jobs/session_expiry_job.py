# /clinicbot/jobs/session_expiry_job.py

"""
Idle session expiry job.

Deactivates sessions whose last activity is older than the session timeout,
so the next message from that patient starts a fresh conversation instead
of resuming a half-finished flow. The orchestrator applies the same rule
lazily on the next message; this job keeps the `sessions` collection from
accumulating stale active documents between messages.
"""

from datetime import datetime, timedelta
import logging

from clinicbot.config.settings import settings

logger = logging.getLogger(__name__)


async def expire_idle_sessions(session_store, now: datetime, timeout_minutes: int | None = None) -> int:
    """
    Args:
        session_store: SessionStore (or anything with `deactivate_idle`)
        now: Current time, timezone-aware
        timeout_minutes: Idle threshold; defaults to the session timeout setting

    Returns:
        Number of sessions deactivated
    """
    minutes = timeout_minutes if timeout_minutes is not None else settings.session_timeout_minutes
    cutoff = now - timedelta(minutes=minutes)
    expired = await session_store.deactivate_idle(cutoff)
    logger.info(f"Session expiry run complete: {expired} sessions deactivated (cutoff {cutoff.isoformat()})")
    return expired
