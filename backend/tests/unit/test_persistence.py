# backend/tests/unit/test_persistence.py

import asyncio
from datetime import datetime, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock
from pymongo.errors import AutoReconnect, DuplicateKeyError, OperationFailure

from clinicbot.exceptions import PersistenceFailure, SessionConflict
from clinicbot.models.conversation import ConversationState, utcnow
from clinicbot.models.domain import Identity
from clinicbot.services.db_service import DatabaseService
from clinicbot.services.session_store import SessionStore


def session_doc(state=None, version=1, is_active=True):
    return {
        "_id": "s1",
        "patient_id": "p1",
        "channel": "telegram",
        "clinic_id": "white-tooth",
        "state": ConversationState().model_dump() if state is None else state,
        "version": version,
        "last_activity": utcnow(),
        "is_active": is_active,
        "created_at": utcnow(),
    }


@pytest.fixture
def sessions_collection():
    return MagicMock()


@pytest.fixture
def session_store(sessions_collection, test_settings, registry):
    return SessionStore({"sessions": sessions_collection}, test_settings, registry)


@pytest.fixture
def mongo_db():
    return MagicMock()


@pytest.fixture
def db_service(mongo_db, test_settings):
    return DatabaseService(mongo_db, settings_obj=test_settings)


# --- SessionStore ---

@pytest.mark.asyncio
class TestSessionStore:

    async def test_create_session(self, session_store, sessions_collection):
        sessions_collection.insert_one = AsyncMock()

        session = await session_store.create_session("p1", "telegram", "white-tooth", language="en")

        assert session.version == 1
        assert session.is_active
        assert session.state.language == "en"
        inserted = sessions_collection.insert_one.await_args.args[0]
        assert inserted["patient_id"] == "p1"
        assert inserted["state"]["flow"] == ""

    async def test_concurrent_create_returns_existing(self, session_store, sessions_collection):
        sessions_collection.insert_one = AsyncMock(side_effect=DuplicateKeyError("E11000 duplicate key"))
        sessions_collection.find_one = AsyncMock(return_value=session_doc())

        session = await session_store.create_session("p1", "telegram")

        assert session.id == "s1"

    async def test_update_state_bumps_version(self, session_store, sessions_collection):
        new_state = ConversationState(flow="BOOKING", step="COLLECT_NAME", instance_id="i1")
        sessions_collection.find_one_and_update = AsyncMock(return_value=session_doc(new_state.model_dump(), version=4))

        session = await session_store.update_state("s1", new_state, 3)

        assert session.version == 4
        query, update = sessions_collection.find_one_and_update.await_args.args
        assert query == {"_id": "s1", "version": 3, "is_active": True}
        assert update["$inc"] == {"version": 1}

    async def test_update_state_conflict(self, session_store, sessions_collection):
        sessions_collection.find_one_and_update = AsyncMock(return_value=None)
        sessions_collection.find_one = AsyncMock(return_value=session_doc(version=5))

        with pytest.raises(SessionConflict) as exc_info:
            await session_store.update_state("s1", ConversationState(flow="BOOKING", step="COLLECT_NAME"), 3)
        assert exc_info.value.expected_version == 3

    async def test_retried_write_that_already_landed_is_accepted(self, session_store, sessions_collection):
        new_state = ConversationState(flow="BOOKING", step="COLLECT_PHONE", data={"patient_name": "Анна"}, instance_id="i1")
        sessions_collection.find_one_and_update = AsyncMock(return_value=None)
        sessions_collection.find_one = AsyncMock(return_value=session_doc(new_state.model_dump(), version=4))

        session = await session_store.update_state("s1", new_state, 3)

        assert session.version == 4

    async def test_write_to_ended_session_conflicts(self, session_store, sessions_collection):
        state = ConversationState()
        sessions_collection.find_one_and_update = AsyncMock(return_value=None)
        sessions_collection.find_one = AsyncMock(return_value=session_doc(state.model_dump(), is_active=False))

        with pytest.raises(SessionConflict):
            await session_store.update_state("s1", state, 1)

    async def test_garbled_document_is_repaired_on_read(self, session_store, sessions_collection):
        sessions_collection.find_one = AsyncMock(return_value=session_doc(state='{"flow": "BOOKING", "step": "NOPE"'))

        session = await session_store.get_active_session("p1", "telegram")

        assert session.state.flow == ""
        assert session.state.step == ""
        assert session.repaired == "unparseable_json"

    async def test_stale_reference_is_reported_on_the_session(self, session_store, sessions_collection):
        sessions_collection.find_one = AsyncMock(return_value=session_doc(state={"flow": "BOOKING", "step": "PICK_SLOT"}))

        session = await session_store.get_active_session("p1", "telegram")

        assert session.state.flow == ""
        assert session.repaired == "stale_reference:BOOKING/PICK_SLOT"

    async def test_timeout_is_a_persistence_failure(self, sessions_collection, test_settings, registry):
        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        sessions_collection.find_one = slow
        store = SessionStore({"sessions": sessions_collection}, test_settings.model_copy(update={"store_timeout_seconds": 0.01}), registry)

        with pytest.raises(PersistenceFailure):
            await store.get_session("s1")

    async def test_driver_error_is_a_persistence_failure(self, session_store, sessions_collection):
        sessions_collection.find_one = AsyncMock(side_effect=OperationFailure("not primary"))
        with pytest.raises(PersistenceFailure):
            await session_store.get_session("s1")

    async def test_transient_errors_are_retried(self, session_store, sessions_collection):
        sessions_collection.find_one = AsyncMock(side_effect=[AutoReconnect("connection reset"), session_doc()])

        session = await session_store.get_session("s1")

        assert session.id == "s1"
        assert sessions_collection.find_one.await_count == 2

    async def test_deactivate(self, session_store, sessions_collection):
        sessions_collection.update_one = AsyncMock(side_effect=[MagicMock(modified_count=1), MagicMock(modified_count=0)])
        assert await session_store.deactivate("s1") is True
        assert await session_store.deactivate("s1") is False

    async def test_deactivate_idle(self, session_store, sessions_collection):
        sessions_collection.update_many = AsyncMock(return_value=MagicMock(modified_count=3))
        cutoff = datetime(2026, 1, 1, tzinfo=timezone.utc)

        assert await session_store.deactivate_idle(cutoff) == 3
        query = sessions_collection.update_many.await_args.args[0]
        assert query == {"is_active": True, "last_activity": {"$lt": cutoff}}


# --- DatabaseService ---

@pytest.mark.asyncio
class TestPatientResolution:

    async def test_new_patient(self, db_service, mongo_db):
        mongo_db.patients.find_one = AsyncMock(return_value=None)
        mongo_db.patients.insert_one = AsyncMock()

        patient = await db_service.upsert_patient(Identity(channel="telegram", channel_user_id="48213"), language="kk")

        document = mongo_db.patients.insert_one.await_args.args[0]
        assert document["channels"] == {"telegram": "48213"}
        assert document["phone"] is None
        assert patient.channel_user_id == "48213"
        assert patient.preferred_language == "kk"

    async def test_whatsapp_chat_id_is_normalized(self, db_service, mongo_db):
        mongo_db.patients.find_one = AsyncMock(return_value=None)
        mongo_db.patients.insert_one = AsyncMock()

        patient = await db_service.upsert_patient(Identity(channel="whatsapp", channel_user_id="87012345678"))

        assert patient.channel_user_id == "+77012345678"

    async def test_known_patient_is_returned_without_writes(self, db_service, mongo_db):
        document = {"_id": "p1", "phone": None, "channels": {"telegram": "48213"}, "name": "Анна", "preferred_language": "ru"}
        mongo_db.patients.find_one = AsyncMock(return_value=document)
        mongo_db.patients.find_one_and_update = AsyncMock()
        mongo_db.patients.insert_one = AsyncMock()

        patient = await db_service.upsert_patient(Identity(channel="telegram", channel_user_id="48213"))

        assert patient.id == "p1"
        assert patient.name == "Анна"
        mongo_db.patients.find_one_and_update.assert_not_awaited()
        mongo_db.patients.insert_one.assert_not_awaited()

    async def test_phone_record_wins_when_identifiers_disagree(self, db_service, mongo_db):
        by_channel = {"_id": "p-chat", "phone": None, "channels": {"telegram": "48213"}}
        by_phone = {"_id": "p-phone", "phone": "+77012345678", "channels": {"whatsapp": "+77012345678"}}
        merged = {**by_phone, "channels": {"whatsapp": "+77012345678", "telegram": "48213"}}
        mongo_db.patients.find_one = AsyncMock(side_effect=[by_channel, by_phone])
        mongo_db.patients.update_one = AsyncMock()
        mongo_db.patients.find_one_and_update = AsyncMock(return_value=merged)

        patient = await db_service.upsert_patient(Identity(channel="telegram", channel_user_id="48213", phone="8 701 234 56 78"))

        assert patient.id == "p-phone"
        unset_query, unset_update = mongo_db.patients.update_one.await_args.args
        assert unset_query == {"_id": "p-chat"}
        assert unset_update["$unset"] == {"channels.telegram": ""}
        link_query, link_update = mongo_db.patients.find_one_and_update.await_args.args
        assert link_query == {"_id": "p-phone"}
        assert link_update["$set"]["channels.telegram"] == "48213"

    async def test_identity_without_identifiers(self, db_service):
        with pytest.raises(PersistenceFailure):
            await db_service.upsert_patient(Identity(channel="sms"))

    async def test_duplicate_phone_merges_into_phone_owner(self, db_service, mongo_db):
        owner = {"_id": "p-phone", "phone": "+77012345678", "channels": {"whatsapp": "+77012345678"}}
        duplicate = {"_id": "p-chat", "phone": None, "channels": {"telegram": "48213"}}
        mongo_db.patients.update_one = AsyncMock(side_effect=[DuplicateKeyError("E11000 phone"), MagicMock(), MagicMock()])
        mongo_db.patients.find_one = AsyncMock(side_effect=[owner, duplicate])
        mongo_db.sessions.update_many = AsyncMock()
        mongo_db.appointments.update_many = AsyncMock()

        surviving_id = await db_service.update_patient_profile("p-chat", {"phone": "8 701 234 56 78"})

        assert surviving_id == "p-phone"
        calls = mongo_db.patients.update_one.await_args_list
        assert calls[0].args[1]["$set"]["phone"] == "+77012345678"
        release_query, release = calls[1].args
        assert release_query == {"_id": "p-chat"}
        assert release["$unset"] == {"channels.telegram": ""}
        assert release["$set"]["merged_into"] == "p-phone"
        owner_query, owner_update = calls[2].args
        assert owner_query == {"_id": "p-phone"}
        assert owner_update["$set"]["channels.telegram"] == "48213"

        closed, moved = [call.args for call in mongo_db.sessions.update_many.await_args_list]
        assert closed[0] == {"patient_id": "p-phone", "channel": {"$in": ["telegram"]}, "is_active": True}
        assert moved == ({"patient_id": "p-chat", "is_active": True}, {"$set": {"patient_id": "p-phone"}})
        assert mongo_db.appointments.update_many.await_args.args == ({"patient_id": "p-chat"}, {"$set": {"patient_id": "p-phone"}})

    async def test_duplicate_phone_keeps_other_fields_when_owner_is_gone(self, db_service, mongo_db):
        mongo_db.patients.update_one = AsyncMock(side_effect=[DuplicateKeyError("E11000 phone"), MagicMock()])
        mongo_db.patients.find_one = AsyncMock(side_effect=[None, {"_id": "p1"}])

        surviving_id = await db_service.update_patient_profile("p1", {"phone": "8 701 234 56 78", "name": "Анна"})

        assert surviving_id == "p1"
        second = mongo_db.patients.update_one.await_args_list[1].args[1]["$set"]
        assert "phone" not in second
        assert second["name"] == "Анна"

    async def test_unknown_profile_fields_are_ignored(self, db_service, mongo_db):
        mongo_db.patients.update_one = AsyncMock()
        await db_service.update_patient_profile("p1", {"is_admin": True})
        mongo_db.patients.update_one.assert_not_awaited()


@pytest.mark.asyncio
class TestBookings:

    async def test_booking_is_created_with_sequential_id(self, db_service, mongo_db):
        mongo_db.appointments.find_one = AsyncMock(return_value=None)
        mongo_db.appointments.insert_one = AsyncMock()
        mongo_db.counters.find_one_and_update = AsyncMock(return_value={"_id": "appointments", "value": 7})

        appointment = await db_service.create_booking(
            patient_id="p1",
            clinic_id="white-tooth",
            doctor_id="ivanov",
            service_code="consultation",
            appointment_date=datetime(2030, 3, 3, 4, 0, tzinfo=timezone.utc),
            idempotency_key="s1:i1",
        )

        assert appointment.id == "7"
        assert appointment.status == "scheduled"
        assert mongo_db.appointments.insert_one.await_args.args[0]["idempotency_key"] == "s1:i1"

    async def test_existing_key_returns_first_booking(self, db_service, mongo_db):
        existing = {"_id": "3", "patient_id": "p1", "appointment_date": datetime(2030, 3, 3, tzinfo=timezone.utc), "idempotency_key": "s1:i1"}
        mongo_db.appointments.find_one = AsyncMock(return_value=existing)
        mongo_db.appointments.insert_one = AsyncMock()

        appointment = await db_service.create_booking("p1", None, "ivanov", "consultation", existing["appointment_date"], "s1:i1")

        assert appointment.id == "3"
        mongo_db.appointments.insert_one.assert_not_awaited()

    async def test_racing_insert_returns_winner(self, db_service, mongo_db):
        winner = {"_id": "4", "patient_id": "p1", "appointment_date": datetime(2030, 3, 3, tzinfo=timezone.utc), "idempotency_key": "s1:i1"}
        mongo_db.appointments.find_one = AsyncMock(side_effect=[None, winner])
        mongo_db.appointments.insert_one = AsyncMock(side_effect=DuplicateKeyError("E11000 idempotency_key"))
        mongo_db.counters.find_one_and_update = AsyncMock(return_value={"value": 5})

        appointment = await db_service.create_booking("p1", None, "ivanov", "consultation", winner["appointment_date"], "s1:i1")

        assert appointment.id == "4"

    async def test_list_doctors_filters_by_service(self, db_service, mongo_db):
        cursor = mongo_db.doctors.find.return_value.sort.return_value.limit.return_value
        cursor.to_list = AsyncMock(return_value=[{"_id": "ivanov", "name": "Доктор Иванов", "services": ["consultation"]}])

        doctors = await db_service.list_doctors("white-tooth", "consultation")

        assert [d.id for d in doctors] == ["ivanov"]
        query = mongo_db.doctors.find.call_args.args[0]
        assert query["services"] == "consultation"
        assert query["clinic_id"] == "white-tooth"

    async def test_cancel_appointment(self, db_service, mongo_db):
        mongo_db.appointments.update_one = AsyncMock(return_value=MagicMock(modified_count=0))
        assert await db_service.cancel_appointment("9", "p1") is False
        query = mongo_db.appointments.update_one.await_args.args[0]
        assert query["patient_id"] == "p1"


@pytest.mark.asyncio
class TestClinicAndLog:

    async def test_missing_clinic_falls_back_to_settings(self, db_service, test_settings):
        clinic = await db_service.get_clinic(None)
        assert clinic.name == test_settings.clinic_name

    async def test_clinic_is_read_through_cache(self, mongo_db, test_settings):
        cache = MagicMock()
        cache.get_or_set = AsyncMock(return_value={"id": "white-tooth", "name": "Белый зуб", "phone": "+77010000000"})
        service = DatabaseService(mongo_db, cache, test_settings)

        clinic = await service.get_clinic("white-tooth")

        assert clinic.phone == "+77010000000"
        assert cache.get_or_set.await_args.args[0] == "clinic:white-tooth"

    async def test_log_failures_are_swallowed(self, db_service, mongo_db):
        mongo_db.message_logs.insert_one = AsyncMock(side_effect=OperationFailure("disk full"))
        await db_service.log_message("s1", "incoming", "привет")

    async def test_create_indexes(self, db_service, mongo_db):
        collection = mongo_db.__getitem__.return_value
        collection.create_index = AsyncMock()

        await db_service.create_indexes()

        calls = collection.create_index.await_args_list
        unique_fields = [c.args[0][0][0] for c in calls if c.kwargs.get("unique")]
        assert "idempotency_key" in unique_fields
        assert "phone" in unique_fields
        assert "channels.telegram" in unique_fields
        assert "patient_id" in unique_fields
