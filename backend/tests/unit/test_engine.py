# backend/tests/unit/test_engine.py

import asyncio
from datetime import timedelta
from zoneinfo import ZoneInfo

import pytest
from unittest.mock import AsyncMock

from clinicbot.config.strings import get_string
from clinicbot.exceptions import PersistenceFailure, RegistryMiss
from clinicbot.models.conversation import ConversationState
from clinicbot.models.domain import Intent, ResponseKind
from clinicbot.workflows.definitions import BOOKING, CANCELLATION
from clinicbot.workflows.engine import FlowExecutor

COMPLETE_BOOKING = {
    "patient_name": "Анна",
    "patient_phone": "+77012345678",
    "service_code": "consultation",
    "service_name": "Консультация",
    "doctor_id": "ivanov",
    "doctor_name": "Доктор Иванов",
    "selected_date": "2030-03-03",
    "selected_date_label": "03.03.2030",
    "selected_time": "10:00",
}


def at(step: str, flow: str = BOOKING, data=None, language: str = "ru") -> ConversationState:
    return ConversationState(flow=flow, step=step, data=data or {}, instance_id="inst-1", language=language)


def answer(state: ConversationState, text: str, name: str = "CONTINUE_FLOW") -> Intent:
    return Intent(name=name, confidence=0.8, state=state, text=text, source="in_flow")


@pytest.mark.asyncio
class TestFlowStart:

    async def test_start_booking(self, executor, registry, turn_context):
        outcome = await executor.start(registry.get_flow(BOOKING), ConversationState(retry_count=2), turn_context)

        state = outcome["state"]
        assert state.flow == BOOKING
        assert state.step == "COLLECT_NAME"
        assert state.instance_id
        assert state.retry_count == 0
        assert outcome["response"].text == get_string("PROMPT_COLLECT_NAME", "ru")
        assert outcome["response"].next_step_hint == "BOOKING:COLLECT_NAME"
        assert outcome["response"].metadata == {"flow": BOOKING, "step": "COLLECT_NAME"}

    async def test_restart_gets_new_instance(self, executor, registry, turn_context):
        flow = registry.get_flow(BOOKING)
        first = await executor.start(flow, ConversationState(), turn_context)
        second = await executor.start(flow, first["state"], turn_context)
        assert first["state"].instance_id != second["state"].instance_id

    async def test_cancellation_without_appointments_ends_immediately(self, executor, registry, turn_context):
        outcome = await executor.start(registry.get_flow(CANCELLATION), ConversationState(), turn_context)

        assert outcome["aborted"]
        assert outcome["state"].flow == ""
        assert outcome["response"].text == get_string("NO_APPOINTMENTS", "ru")

    async def test_abort_keeps_language(self, executor):
        outcome = executor.abort(at("SELECT_TIME", language="en"))
        assert outcome["state"].flow == ""
        assert outcome["state"].language == "en"
        assert outcome["response"].text == get_string("FLOW_CANCELLED", "en")


@pytest.mark.asyncio
class TestStepInput:

    async def test_name_is_stored_and_profile_updated(self, executor, registry, fake_db, turn_context):
        state = at("COLLECT_NAME")
        outcome = await executor.handle_input(registry.get_flow(BOOKING), state, answer(state, "Анна"), turn_context)

        assert outcome["state"].step == "COLLECT_PHONE"
        assert outcome["state"].data["patient_name"] == "Анна"
        assert fake_db.profile_updates == [("patient-1", {"name": "Анна"})]
        assert outcome["response"].text == get_string("PROMPT_COLLECT_PHONE", "ru")

    async def test_invalid_phone_reprompts_same_step(self, executor, registry, fake_db, turn_context):
        state = at("COLLECT_PHONE", data={"patient_name": "Анна"})
        outcome = await executor.handle_input(registry.get_flow(BOOKING), state, answer(state, "12345"), turn_context)

        assert outcome["state"] == state
        assert outcome["response"].text.startswith(get_string("VALIDATION_PHONE_FORMAT", "ru"))
        assert get_string("PROMPT_COLLECT_PHONE", "ru") in outcome["response"].text
        assert fake_db.profile_updates == []

    async def test_phone_is_stored_sanitized(self, executor, registry, turn_context):
        state = at("COLLECT_PHONE", data={"patient_name": "Анна"})
        outcome = await executor.handle_input(registry.get_flow(BOOKING), state, answer(state, "8 701 234 56 78"), turn_context)

        assert outcome["state"].data["patient_phone"] == "+77012345678"
        assert outcome["state"].step == "SELECT_SERVICE"
        assert outcome["response"].kind == ResponseKind.MULTI_CHOICE
        assert [o.id for o in outcome["response"].options] == ["consultation", "cleaning", "treatment", "prosthetics"]

    async def test_service_selection_by_number(self, executor, registry, turn_context):
        state = at("SELECT_SERVICE")
        outcome = await executor.handle_input(registry.get_flow(BOOKING), state, answer(state, "2"), turn_context)

        assert outcome["state"].data["service_code"] == "cleaning"
        assert outcome["state"].data["service_name"] == "Профессиональная чистка"
        assert [o.id for o in outcome["response"].options] == ["ivanov"]

    async def test_doctor_list_falls_back_to_all_doctors(self, executor, registry, turn_context):
        state = at("SELECT_DOCTOR", data={"service_code": "whitening"})
        rendered = await executor.render(registry.get_flow(BOOKING), "SELECT_DOCTOR", state, turn_context)
        assert [o.id for o in rendered.options] == ["ivanov", "sidorov"]

    async def test_date_options_start_tomorrow_in_clinic_timezone(self, executor, registry, turn_context, test_settings):
        rendered = await executor.render(registry.get_flow(BOOKING), "SELECT_DATE", at("SELECT_DATE"), turn_context)

        today = turn_context.now.astimezone(ZoneInfo(test_settings.clinic_timezone)).date()
        assert len(rendered.options) == test_settings.booking_horizon_days
        assert rendered.options[0].value == (today + timedelta(days=1)).isoformat()
        assert rendered.options[0].text == (today + timedelta(days=1)).strftime("%d.%m.%Y")

    async def test_unknown_option_reprompts(self, executor, registry, turn_context):
        state = at("SELECT_TIME", data={"selected_date": "2030-03-03"})
        outcome = await executor.handle_input(registry.get_flow(BOOKING), state, answer(state, "в полночь"), turn_context)

        assert outcome["state"] == state
        assert outcome["response"].text.startswith(get_string("VALIDATION_OPTION", "ru"))

    async def test_profile_write_failure_propagates(self, executor, registry, fake_db, turn_context):
        fake_db.update_patient_profile = AsyncMock(side_effect=PersistenceFailure("mongo down"))
        state = at("COLLECT_NAME")
        with pytest.raises(PersistenceFailure):
            await executor.handle_input(registry.get_flow(BOOKING), state, answer(state, "Анна"), turn_context)

    async def test_unknown_step_is_a_registry_miss(self, executor, registry, turn_context):
        state = at("PICK_SLOT")
        with pytest.raises(RegistryMiss):
            await executor.handle_input(registry.get_flow(BOOKING), state, answer(state, "1"), turn_context)


@pytest.mark.asyncio
class TestConfirmation:

    async def test_prompt_shows_collected_details(self, executor, registry, turn_context):
        rendered = await executor.render(registry.get_flow(BOOKING), "CONFIRMATION", at("CONFIRMATION", data=COMPLETE_BOOKING), turn_context)

        assert "Анна" in rendered.text
        assert "Белый зуб" in rendered.text
        assert "03.03.2030" in rendered.text
        assert [o.text for o in rendered.options] == [get_string("OPTION_CONFIRM", "ru"), get_string("OPTION_CANCEL", "ru")]

    async def test_confirm_creates_booking(self, executor, registry, fake_db, turn_context):
        state = at("CONFIRMATION", data=COMPLETE_BOOKING)
        outcome = await executor.handle_input(registry.get_flow(BOOKING), state, answer(state, "да", "CONFIRM"), turn_context)

        assert outcome["completed"]
        assert outcome["state"].flow == ""
        assert outcome["state"].data == {}
        appointment = fake_db.appointments["1"]
        assert appointment.idempotency_key == "session-1:inst-1"
        assert appointment.doctor_id == "ivanov"
        assert appointment.appointment_date.tzinfo is not None
        assert "1" in outcome["response"].text

    async def test_repeated_confirmation_books_once(self, executor, registry, fake_db, turn_context):
        flow = registry.get_flow(BOOKING)
        state = at("CONFIRMATION", data=COMPLETE_BOOKING)

        first = await executor.handle_input(flow, state, answer(state, "да", "CONFIRM"), turn_context)
        second = await executor.handle_input(flow, state, answer(state, "да", "CONFIRM"), turn_context)

        assert len(fake_db.appointments) == 1
        assert fake_db.booking_calls == 2
        assert first["response"].text == second["response"].text

    async def test_ambiguous_answer_reprompts(self, executor, registry, fake_db, turn_context):
        state = at("CONFIRMATION", data=COMPLETE_BOOKING)
        outcome = await executor.handle_input(registry.get_flow(BOOKING), state, answer(state, "может быть"), turn_context)

        assert not outcome["completed"]
        assert outcome["state"] == state
        assert outcome["response"].text.startswith(get_string("CONFIRMATION_HINT", "ru"))
        assert fake_db.appointments == {}

    async def test_decline_aborts(self, executor, registry, fake_db, turn_context):
        state = at("CONFIRMATION", data=COMPLETE_BOOKING)
        outcome = await executor.handle_input(registry.get_flow(BOOKING), state, answer(state, "нет", "CANCEL_FLOW"), turn_context)

        assert outcome["aborted"]
        assert outcome["state"].flow == ""
        assert fake_db.appointments == {}

    async def test_incomplete_data_is_reported(self, executor, registry, fake_db, turn_context):
        state = at("CONFIRMATION", data={"patient_name": "Анна"})
        outcome = await executor.handle_input(registry.get_flow(BOOKING), state, answer(state, "да", "CONFIRM"), turn_context)

        assert outcome["completed"]
        assert outcome["response"].text == get_string("BOOKING_INCOMPLETE", "ru")
        assert fake_db.booking_calls == 0

    async def test_slow_completion_is_a_persistence_failure(self, registry, fake_db, turn_context, test_settings):
        async def slow_booking(**kwargs):
            await asyncio.sleep(1)

        fake_db.create_booking = slow_booking
        executor = FlowExecutor(registry, fake_db, test_settings.model_copy(update={"completion_timeout_seconds": 0.01}))
        state = at("CONFIRMATION", data=COMPLETE_BOOKING)

        with pytest.raises(PersistenceFailure):
            await executor.handle_input(registry.get_flow(BOOKING), state, answer(state, "да", "CONFIRM"), turn_context)


@pytest.mark.asyncio
class TestCancellationFlow:

    async def test_cancel_existing_appointment(self, executor, registry, fake_db, turn_context):
        appointment = fake_db.add_appointment("patient-1")
        flow = registry.get_flow(CANCELLATION)

        started = await executor.start(flow, ConversationState(), turn_context)
        assert started["state"].step == "SELECT_APPOINTMENT"
        assert [o.value for o in started["response"].options] == [appointment.id]

        state = started["state"]
        picked = await executor.handle_input(flow, state, answer(state, "1"), turn_context)
        assert picked["state"].step == "CONFIRM_CANCELLATION"
        assert picked["state"].data["appointment_id"] == appointment.id
        assert "Консультация" in picked["response"].text

        state = picked["state"]
        done = await executor.handle_input(flow, state, answer(state, "да", "CONFIRM"), turn_context)
        assert done["completed"]
        assert done["response"].text == get_string("APPOINTMENT_CANCELLED", "ru")
        assert fake_db.appointments[appointment.id].status == "cancelled"

    async def test_other_patients_appointments_are_not_offered(self, executor, registry, fake_db, turn_context):
        fake_db.add_appointment("someone-else")
        outcome = await executor.start(registry.get_flow(CANCELLATION), ConversationState(), turn_context)
        assert outcome["aborted"]
