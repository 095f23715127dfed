# /clinicbot/services/db_service.py

import asyncio
import logging
import uuid
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ReturnDocument
from pymongo.errors import AutoReconnect, DuplicateKeyError, NetworkTimeout, PyMongoError
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import tenacity

from clinicbot.config.settings import settings
from clinicbot.exceptions import PersistenceFailure
from clinicbot.models.domain import Appointment, Channel, Clinic, Doctor, Identity, Patient
from clinicbot.services.security_service import EnhancedSecurityService
from clinicbot.utils.metrics import database_operations_counter

logger = logging.getLogger(__name__)

# Constants
MAX_DOCTOR_OPTIONS = 10
MAX_APPOINTMENT_OPTIONS = 10
ACTIVE_APPOINTMENT_STATUSES = ["scheduled", "confirmed"]
PROFILE_FIELDS = {"name", "phone", "preferred_language"}


def create_mongo_client(settings_obj=settings) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(
        settings_obj.mongo_uri,
        maxPoolSize=settings_obj.max_pool_size,
        minPoolSize=settings_obj.min_pool_size,
        tls=settings_obj.mongo_ssl,
        tz_aware=True,
        serverSelectionTimeoutMS=5000,
        connectTimeoutMS=10000
    )


class DatabaseService:
    """
    Persistence collaborator of the dialogue engine: patients, doctors,
    clinics, appointments and the message log, all in MongoDB.

    Reads and writes that a turn depends on raise PersistenceFailure on
    timeout or driver error; only the message log is best-effort.
    """

    def __init__(self, db, cache_service=None, settings_obj=settings):
        self.db = db
        self.cache = cache_service
        self.settings = settings_obj

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

    async def _safe_db_operation(self, name: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        """
        Execute database operation with consistent error handling.

        Args:
            name: Operation label for metrics and logs
            operation: Async callable to execute

        Returns:
            Operation result

        Raises:
            PersistenceFailure: on timeout or any driver error (DuplicateKeyError
                is chained as the cause so callers can resolve races)
        """
        try:
            result = await asyncio.wait_for(self._attempt(operation), timeout=self.settings.store_timeout_seconds)
        except asyncio.TimeoutError as e:
            database_operations_counter.labels(operation=name, status="timeout").inc()
            raise PersistenceFailure(f"Database operation {name} timed out") from e
        except PyMongoError as e:
            if not isinstance(e, DuplicateKeyError):
                logger.exception(f"Database operation {name} failed: {type(e).__name__}")
            database_operations_counter.labels(operation=name, status="failed").inc()
            raise PersistenceFailure(f"Database operation {name} failed: {type(e).__name__}") from e
        database_operations_counter.labels(operation=name, status="success").inc()
        return result

    def _now_utc(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _is_duplicate(error: PersistenceFailure) -> bool:
        return isinstance(error.__cause__, DuplicateKeyError)

    @staticmethod
    def _identity_keys(identity: Identity) -> Dict[str, Optional[str]]:
        phone = EnhancedSecurityService.sanitize_phone_number(identity.phone) or None
        chat_id = EnhancedSecurityService.normalize_channel_user_id(identity.channel_user_id)
        return {"phone": phone, "chat_id": chat_id}

    @staticmethod
    def _to_patient(document: Dict[str, Any], channel: Optional[str] = None) -> Patient:
        channels = document.get("channels") or {}
        return Patient(
            id=document["_id"],
            phone=document.get("phone"),
            channel_user_id=channels.get(channel) if channel else None,
            channel=channel,
            name=document.get("name"),
            preferred_language=document.get("preferred_language") or "ru",
            created_at=document.get("created_at") or datetime.now(timezone.utc),
            updated_at=document.get("updated_at"),
        )

    @staticmethod
    def _to_appointment(document: Dict[str, Any]) -> Appointment:
        return Appointment(
            id=str(document["_id"]),
            clinic_id=document.get("clinic_id"),
            patient_id=document["patient_id"],
            doctor_id=document.get("doctor_id"),
            doctor_name=document.get("doctor_name"),
            service_code=document.get("service_code"),
            service_name=document.get("service_name"),
            appointment_date=document["appointment_date"],
            status=document.get("status", "scheduled"),
            confirmed=document.get("confirmed", False),
            idempotency_key=document.get("idempotency_key"),
            created_at=document.get("created_at") or datetime.now(timezone.utc),
        )

    # ==================== Index Management ====================

    async def create_indexes(self) -> None:
        """Create all necessary database indexes on startup."""
        indexes = [
            ("sessions", [("patient_id", 1), ("channel", 1)], {"unique": True, "partialFilterExpression": {"is_active": True}}),
            ("sessions", [("is_active", 1), ("last_activity", 1)], {}),
            ("patients", [("phone", 1)], {"unique": True, "partialFilterExpression": {"phone": {"$type": "string"}}}),
            ("appointments", [("idempotency_key", 1)], {"unique": True, "partialFilterExpression": {"idempotency_key": {"$type": "string"}}}),
            ("appointments", [("patient_id", 1), ("status", 1), ("appointment_date", 1)], {}),
            ("doctors", [("clinic_id", 1), ("services", 1)], {}),
            ("message_logs", [("session_id", 1), ("created_at", -1)], {}),
        ]
        for channel in Channel:
            field = f"channels.{channel.value}"
            indexes.append(("patients", [(field, 1)], {"unique": True, "partialFilterExpression": {field: {"$type": "string"}}}))

        for collection, keys, options in indexes:
            try:
                await self.db[collection].create_index(keys, **options)
                logger.debug(f"Created index on {collection}: {keys}")
            except Exception as e:
                logger.error(f"Failed to create index on {collection} {keys}: {e}")

        logger.info("Database indexes created successfully.")

    async def health_check(self) -> bool:
        """
        Check MongoDB connection health.

        Returns:
            True if connection is healthy
        """
        try:
            await self.db.command('ping')
            return True
        except Exception as e:
            logger.error(f"MongoDB health check failed: {e}")
            return False

    # ==================== Patient Operations ====================

    async def find_by_identity(self, identity: Identity) -> Optional[Patient]:
        keys = self._identity_keys(identity)
        if keys["chat_id"]:
            document = await self._safe_db_operation(
                "find_patient",
                lambda: self.db.patients.find_one({f"channels.{identity.channel}": keys["chat_id"]}),
            )
            if document:
                return self._to_patient(document, identity.channel)
        if keys["phone"]:
            document = await self._safe_db_operation(
                "find_patient",
                lambda: self.db.patients.find_one({"phone": keys["phone"]}),
            )
            if document:
                return self._to_patient(document, identity.channel)
        return None

    async def upsert_patient(self, identity: Identity, language: Optional[str] = None) -> Patient:
        """
        Resolves the identity to one patient, creating it if needed. When the
        phone and the channel id belong to two different records, the channel
        id is moved onto the phone's record (phone wins).
        """
        keys = self._identity_keys(identity)
        if not keys["phone"] and not keys["chat_id"]:
            raise PersistenceFailure("Identity has neither a phone number nor a channel user id")

        channel_field = f"channels.{identity.channel}"
        by_channel = by_phone = None
        if keys["chat_id"]:
            by_channel = await self._safe_db_operation("find_patient", lambda: self.db.patients.find_one({channel_field: keys["chat_id"]}))
        if keys["phone"]:
            by_phone = await self._safe_db_operation("find_patient", lambda: self.db.patients.find_one({"phone": keys["phone"]}))

        now = self._now_utc()
        if by_channel and by_phone and by_channel["_id"] != by_phone["_id"]:
            logger.warning(f"Merging channel identity {identity.key} from patient {by_channel['_id']} into {by_phone['_id']}")
            await self._safe_db_operation(
                "merge_patient",
                lambda: self.db.patients.update_one(
                    {"_id": by_channel["_id"]},
                    {"$unset": {channel_field: ""}, "$set": {"merged_into": by_phone["_id"], "updated_at": now}},
                ),
            )
            primary = by_phone
        else:
            primary = by_channel or by_phone

        if primary is not None:
            updates: Dict[str, Any] = {}
            if keys["chat_id"] and (primary.get("channels") or {}).get(identity.channel) != keys["chat_id"]:
                updates[channel_field] = keys["chat_id"]
            if keys["phone"] and not primary.get("phone"):
                updates["phone"] = keys["phone"]
            if not updates:
                return self._to_patient(primary, identity.channel)
            updates["updated_at"] = now
            document = await self._safe_db_operation(
                "update_patient",
                lambda: self.db.patients.find_one_and_update(
                    {"_id": primary["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
                ),
            )
            return self._to_patient(document or primary, identity.channel)

        document = {
            "_id": uuid.uuid4().hex,
            "phone": keys["phone"],
            "channels": {identity.channel: keys["chat_id"]} if keys["chat_id"] else {},
            "name": None,
            "preferred_language": language or self.settings.default_language,
            "created_at": now,
            "updated_at": now,
        }
        try:
            await self._safe_db_operation("create_patient", lambda: self.db.patients.insert_one(document))
        except PersistenceFailure as e:
            if not self._is_duplicate(e):
                raise
            existing = await self.find_by_identity(identity)
            if existing is None:
                raise
            return existing
        logger.info(f"Created patient {document['_id']} for {identity.key}")
        return self._to_patient(document, identity.channel)

    async def update_patient_profile(self, patient_id: str, fields: Dict[str, Any]) -> str:
        """Writes the known profile fields; returns the id of the record that holds them."""
        updates = {key: value for key, value in fields.items() if key in PROFILE_FIELDS and value}
        if "phone" in updates:
            updates["phone"] = EnhancedSecurityService.sanitize_phone_number(updates["phone"]) or None
            if updates["phone"] is None:
                updates.pop("phone")
        if not updates:
            return patient_id
        updates["updated_at"] = self._now_utc()
        try:
            await self._safe_db_operation(
                "update_profile", lambda: self.db.patients.update_one({"_id": patient_id}, {"$set": updates})
            )
        except PersistenceFailure as e:
            if not self._is_duplicate(e) or "phone" not in updates:
                raise
            remaining = {key: value for key, value in updates.items() if key != "phone"}
            return await self._merge_into_phone_owner(patient_id, updates["phone"], remaining)
        return patient_id

    async def _merge_into_phone_owner(self, patient_id: str, phone: str, updates: Dict[str, Any]) -> str:
        """
        The phone already belongs to another patient record, and that record
        wins: the channel ids, active sessions and appointments of
        `patient_id` move onto it together with the rest of the profile.
        Returns the id of the surviving record.
        """
        owner = await self._safe_db_operation("find_patient", lambda: self.db.patients.find_one({"phone": phone}))
        duplicate = await self._safe_db_operation("find_patient", lambda: self.db.patients.find_one({"_id": patient_id}))
        if owner is None or duplicate is None or owner["_id"] == patient_id:
            await self._safe_db_operation(
                "update_profile", lambda: self.db.patients.update_one({"_id": patient_id}, {"$set": updates})
            )
            return patient_id

        owner_id = owner["_id"]
        channels = {name: value for name, value in (duplicate.get("channels") or {}).items() if value}
        logger.warning(f"Merging patient {patient_id} into {owner_id}, which owns phone {phone}")

        # channel ids are unique, so they leave the duplicate before landing on the owner
        release: Dict[str, Any] = {"$set": {"merged_into": owner_id, "updated_at": updates["updated_at"]}}
        if channels:
            release["$unset"] = {f"channels.{name}": "" for name in channels}
        await self._safe_db_operation("merge_patient", lambda: self.db.patients.update_one({"_id": patient_id}, release))

        owner_updates = {**{f"channels.{name}": value for name, value in channels.items()}, **updates}
        await self._safe_db_operation(
            "merge_patient", lambda: self.db.patients.update_one({"_id": owner_id}, {"$set": owner_updates})
        )

        moved_channels = list(channels)
        if moved_channels:
            await self._safe_db_operation(
                "merge_sessions",
                lambda: self.db.sessions.update_many(
                    {"patient_id": owner_id, "channel": {"$in": moved_channels}, "is_active": True},
                    {"$set": {"is_active": False, "ended_at": updates["updated_at"]}},
                ),
            )
        await self._safe_db_operation(
            "merge_sessions",
            lambda: self.db.sessions.update_many({"patient_id": patient_id, "is_active": True}, {"$set": {"patient_id": owner_id}}),
        )
        await self._safe_db_operation(
            "merge_appointments",
            lambda: self.db.appointments.update_many({"patient_id": patient_id}, {"$set": {"patient_id": owner_id}}),
        )
        return owner_id

    # ==================== Clinic & Doctor Operations ====================

    async def default_clinic_id(self) -> Optional[str]:
        document = await self._safe_db_operation(
            "default_clinic", lambda: self.db.clinics.find_one({"is_active": {"$ne": False}}, sort=[("created_at", 1)])
        )
        return str(document["_id"]) if document else None

    async def get_clinic(self, clinic_id: Optional[str]) -> Clinic:
        """The clinic record (cached), or a clinic built from settings if none is stored."""
        fallback = Clinic(id=clinic_id or "default", name=self.settings.clinic_name, timezone=self.settings.clinic_timezone)
        if not clinic_id:
            return fallback

        async def fetch():
            document = await self._safe_db_operation("get_clinic", lambda: self.db.clinics.find_one({"_id": clinic_id}))
            if not document:
                return None
            document["id"] = str(document.pop("_id"))
            return document

        if self.cache is not None:
            data = await self.cache.get_or_set(f"clinic:{clinic_id}", fetch, ttl=self.settings.clinic_cache_ttl_seconds)
        else:
            data = await fetch()
        if not data:
            return fallback
        return Clinic.model_validate(data)

    async def list_doctors(self, clinic_id: Optional[str], service_code: Optional[str] = None) -> List[Doctor]:
        query: Dict[str, Any] = {"is_active": {"$ne": False}}
        if clinic_id:
            query["clinic_id"] = clinic_id
        if service_code:
            query["services"] = service_code
        documents = await self._safe_db_operation(
            "list_doctors",
            lambda: self.db.doctors.find(query).sort("name", 1).limit(MAX_DOCTOR_OPTIONS).to_list(length=MAX_DOCTOR_OPTIONS),
        )
        return [
            Doctor(
                id=str(document["_id"]),
                name=document["name"],
                specialization=document.get("specialization"),
                services=document.get("services", []),
            )
            for document in documents
        ]

    # ==================== Appointment Operations ====================

    async def _next_appointment_number(self) -> int:
        counter = await self._safe_db_operation(
            "next_sequence",
            lambda: self.db.counters.find_one_and_update(
                {"_id": "appointments"}, {"$inc": {"value": 1}}, upsert=True, return_document=ReturnDocument.AFTER
            ),
        )
        return counter["value"]

    async def create_booking(
        self,
        patient_id: str,
        clinic_id: Optional[str],
        doctor_id: str,
        service_code: str,
        appointment_date: datetime,
        idempotency_key: str,
        doctor_name: Optional[str] = None,
        service_name: Optional[str] = None,
    ) -> Appointment:
        """Creates the appointment once per idempotency key; a repeat returns the first one."""
        existing = await self._safe_db_operation(
            "find_booking", lambda: self.db.appointments.find_one({"idempotency_key": idempotency_key})
        )
        if existing:
            logger.info(f"Booking {existing['_id']} already exists for key {idempotency_key}")
            return self._to_appointment(existing)

        number = await self._next_appointment_number()
        document = {
            "_id": str(number),
            "clinic_id": clinic_id,
            "patient_id": patient_id,
            "doctor_id": doctor_id,
            "doctor_name": doctor_name,
            "service_code": service_code,
            "service_name": service_name,
            "appointment_date": appointment_date,
            "status": "scheduled",
            "confirmed": False,
            "idempotency_key": idempotency_key,
            "created_at": self._now_utc(),
        }
        try:
            await self._safe_db_operation("create_booking", lambda: self.db.appointments.insert_one(document))
        except PersistenceFailure as e:
            if not self._is_duplicate(e):
                raise
            existing = await self._safe_db_operation(
                "find_booking", lambda: self.db.appointments.find_one({"idempotency_key": idempotency_key})
            )
            if existing is None:
                raise
            return self._to_appointment(existing)

        logger.info(f"Created appointment {document['_id']} for patient {patient_id}")
        return self._to_appointment(document)

    async def list_upcoming_appointments(self, patient_id: str, now: Optional[datetime] = None) -> List[Appointment]:
        query = {
            "patient_id": patient_id,
            "status": {"$in": ACTIVE_APPOINTMENT_STATUSES},
            "appointment_date": {"$gte": now or self._now_utc()},
        }
        documents = await self._safe_db_operation(
            "list_appointments",
            lambda: self.db.appointments.find(query).sort("appointment_date", 1).limit(MAX_APPOINTMENT_OPTIONS).to_list(length=MAX_APPOINTMENT_OPTIONS),
        )
        return [self._to_appointment(document) for document in documents]

    async def cancel_appointment(self, appointment_id: str, patient_id: str) -> bool:
        result = await self._safe_db_operation(
            "cancel_appointment",
            lambda: self.db.appointments.update_one(
                {"_id": str(appointment_id), "patient_id": patient_id, "status": {"$in": ACTIVE_APPOINTMENT_STATUSES}},
                {"$set": {"status": "cancelled", "cancelled_at": self._now_utc()}},
            ),
        )
        return result.modified_count > 0

    async def confirm_appointment(self, appointment_id: Optional[str], patient_id: str) -> Optional[Appointment]:
        """Confirms the given appointment, or the patient's nearest one when no id is given."""
        query: Dict[str, Any] = {"patient_id": patient_id, "status": {"$in": ACTIVE_APPOINTMENT_STATUSES}}
        if appointment_id:
            query["_id"] = str(appointment_id)
        else:
            query["appointment_date"] = {"$gte": self._now_utc()}
        document = await self._safe_db_operation(
            "confirm_appointment",
            lambda: self.db.appointments.find_one_and_update(
                query,
                {"$set": {"status": "confirmed", "confirmed": True, "confirmed_at": self._now_utc()}},
                sort=[("appointment_date", 1)],
                return_document=ReturnDocument.AFTER,
            ),
        )
        return self._to_appointment(document) if document else None

    # ==================== Message Log ====================

    async def log_message(self, session_id: str, direction: str, content: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Best-effort message log; failures are logged and swallowed."""
        document = {
            "session_id": session_id,
            "direction": direction,
            "content": content,
            "metadata": metadata or {},
            "created_at": self._now_utc(),
        }
        try:
            await self._safe_db_operation("log_message", lambda: self.db.message_logs.insert_one(document))
        except PersistenceFailure as e:
            logger.warning(f"Failed to log {direction} message for session {session_id}: {e}")
