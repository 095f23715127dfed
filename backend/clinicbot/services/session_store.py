# /clinicbot/services/session_store.py

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import tenacity
from pymongo import ReturnDocument
from pymongo.errors import AutoReconnect, DuplicateKeyError, NetworkTimeout, PyMongoError

from clinicbot.config.settings import settings
from clinicbot.exceptions import PersistenceFailure, SessionConflict
from clinicbot.models.conversation import ConversationState, RepairedState, Session, load_state, utcnow
from clinicbot.utils.metrics import session_store_operations
from clinicbot.workflows.registry import registry as default_registry

logger = logging.getLogger(__name__)


class SessionStore:
    """
    Persists Sessions in the `sessions` collection.

    Concurrency contract: a unique partial index on (patient_id, channel)
    for active sessions keeps one active session per patient and channel,
    and every state write is a compare-and-swap on `version`. Timeouts and
    driver errors surface as PersistenceFailure.
    """

    def __init__(self, db, settings_obj=settings, registry=None):
        self.collection = db["sessions"]
        self.settings = settings_obj
        self.registry = registry or default_registry

    # ==================== Helper Methods ====================

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((AutoReconnect, NetworkTimeout)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=0.1, max=1),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _attempt(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        return await operation()

    async def _run(self, name: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        try:
            result = await asyncio.wait_for(self._attempt(operation), timeout=self.settings.store_timeout_seconds)
        except asyncio.TimeoutError as e:
            session_store_operations.labels(operation=name, status="timeout").inc()
            raise PersistenceFailure(f"Session store {name} timed out") from e
        except PyMongoError as e:
            session_store_operations.labels(operation=name, status="error").inc()
            raise PersistenceFailure(f"Session store {name} failed: {type(e).__name__}") from e
        session_store_operations.labels(operation=name, status="success").inc()
        return result

    def _to_session(self, document: Dict[str, Any]) -> Session:
        loaded = load_state(document.get("state"), self.registry, self.settings.default_language)
        repaired = None
        if isinstance(loaded, RepairedState):
            logger.warning(f"Repaired conversation state of session {document['_id']}: {loaded.reason}")
            repaired = loaded.reason
        return Session(
            id=document["_id"],
            patient_id=document["patient_id"],
            channel=document["channel"],
            clinic_id=document.get("clinic_id"),
            state=loaded.state,
            version=document.get("version", 1),
            last_activity=document.get("last_activity") or utcnow(),
            is_active=document.get("is_active", True),
            created_at=document.get("created_at") or utcnow(),
            repaired=repaired,
        )

    # ==================== Session Operations ====================

    async def get_active_session(self, patient_id: str, channel: str) -> Optional[Session]:
        document = await self._run(
            "get_active",
            lambda: self.collection.find_one({"patient_id": patient_id, "channel": channel, "is_active": True}),
        )
        return self._to_session(document) if document else None

    async def get_session(self, session_id: str) -> Optional[Session]:
        document = await self._run("get", lambda: self.collection.find_one({"_id": session_id}))
        return self._to_session(document) if document else None

    async def create_session(self, patient_id: str, channel: str, clinic_id: Optional[str] = None, language: Optional[str] = None) -> Session:
        """Creates the active session; a concurrent create returns the session that won."""
        now = utcnow()
        state = ConversationState(language=language or self.settings.default_language)
        document = {
            "_id": uuid.uuid4().hex,
            "patient_id": patient_id,
            "channel": channel,
            "clinic_id": clinic_id,
            "state": state.model_dump(),
            "version": 1,
            "last_activity": now,
            "is_active": True,
            "created_at": now,
        }
        try:
            await self._run("create", lambda: self.collection.insert_one(document))
        except PersistenceFailure as e:
            if not isinstance(e.__cause__, DuplicateKeyError):
                raise
            existing = await self.get_active_session(patient_id, channel)
            if existing is None:
                raise
            logger.info(f"Concurrent session create for patient {patient_id} on {channel}; reusing {existing.id}")
            return existing

        logger.info(f"Created session {document['_id']} for patient {patient_id} on {channel}")
        return self._to_session(document)

    async def update_state(self, session_id: str, new_state: ConversationState, expected_version: int) -> Session:
        """
        Compare-and-swap write of the conversation state.

        Raises:
            SessionConflict: the session moved past `expected_version` (or was
                deactivated) and the stored state differs from `new_state`.
        """
        document = await self._run(
            "update_state",
            lambda: self.collection.find_one_and_update(
                {"_id": session_id, "version": expected_version, "is_active": True},
                {"$set": {"state": new_state.model_dump(), "last_activity": utcnow()}, "$inc": {"version": 1}},
                return_document=ReturnDocument.AFTER,
            ),
        )
        if document:
            return self._to_session(document)

        current = await self._run("get", lambda: self.collection.find_one({"_id": session_id}))
        if current and current.get("is_active", False):
            stored = load_state(current.get("state"), self.registry, self.settings.default_language).state
            if stored.same_dialogue(new_state):
                # A retried write that already landed.
                return self._to_session(current)

        session_store_operations.labels(operation="update_state", status="conflict").inc()
        raise SessionConflict(session_id, expected_version)

    async def deactivate(self, session_id: str) -> bool:
        """Ends a session. Returns False if it was already inactive."""
        result = await self._run(
            "deactivate",
            lambda: self.collection.update_one(
                {"_id": session_id, "is_active": True},
                {"$set": {"is_active": False, "ended_at": utcnow()}},
            ),
        )
        return result.modified_count > 0

    async def deactivate_idle(self, older_than: datetime) -> int:
        """Deactivates every active session whose last activity is before `older_than`."""
        result = await self._run(
            "deactivate_idle",
            lambda: self.collection.update_many(
                {"is_active": True, "last_activity": {"$lt": older_than}},
                {"$set": {"is_active": False, "ended_at": utcnow()}},
            ),
        )
        if result.modified_count:
            logger.info(f"Deactivated {result.modified_count} idle sessions")
        return result.modified_count
