# /clinicbot/workflows/engine.py

"""
Flow execution engine.

Given a flow, the current step and the user's input, the executor:
- Renders steps (resolved prompt text plus the option set for the step)
- Validates input against the step's explicit rules
- Stores the accepted value in ConversationState.data (normalized)
- Advances to the next step, or runs the flow's completion action
  after the last step is accepted

The executor never writes ConversationState: every public operation returns
a StepOutcome carrying the new state, and the orchestrator commits it with a
single compare-and-swap per turn. The only writes performed here are the
patient profile update of profile-bound steps and the completion actions,
both idempotent under a retried turn.
"""

import asyncio
import logging
import uuid
from datetime import datetime, date, time, timedelta
from typing import Any, Dict, List, Optional, TypedDict
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field

from clinicbot.config.settings import settings
from clinicbot.config.strings import SERVICE_CATALOG, get_string, service_label
from clinicbot.exceptions import InvariantViolation, PersistenceFailure, RegistryMiss
from clinicbot.models.conversation import ConversationState, utcnow
from clinicbot.models.domain import Intent, Response
from clinicbot.models.flow import Flow, OptionSource, RenderedStep, RuleKind, Step, StepKind, StepOption
from clinicbot.services.security_service import EnhancedSecurityService
from clinicbot.utils.metrics import flow_events_counter
from clinicbot.workflows.registry import FlowRegistry
from clinicbot.workflows.validator import ValidationResult, match_option, validate_input

logger = logging.getLogger(__name__)


class StepOutcome(TypedDict):
    """Result of one executor operation."""
    response: Response
    state: ConversationState
    completed: bool
    aborted: bool


class TurnContext(BaseModel):
    """Who the turn is for; built by the orchestrator from the session."""
    session_id: str
    patient_id: str
    clinic_id: Optional[str] = None
    clinic_name: str = ""
    now: datetime = Field(default_factory=utcnow)


def _outcome(response: Response, state: ConversationState, completed: bool = False, aborted: bool = False) -> StepOutcome:
    return {"response": response, "state": state, "completed": completed, "aborted": aborted}


class FlowExecutor:
    def __init__(self, registry: FlowRegistry, db, settings_obj=settings):
        self.registry = registry
        self.db = db
        self.settings = settings_obj
        self._completions = {
            "create_booking": self._create_booking,
            "cancel_appointment": self._cancel_appointment,
        }

    # --- Lifecycle ---

    async def start(self, flow: Flow, state: ConversationState, ctx: TurnContext) -> StepOutcome:
        first_step = self.registry.first_step_id(flow.id)
        if first_step is None:
            raise RegistryMiss(f"Flow {flow.id} has no steps")

        new_state = state.reset_flow().model_copy(update={
            "flow": flow.id,
            "step": first_step,
            "instance_id": uuid.uuid4().hex,
            "retry_count": 0,
        })
        rendered = await self.render(flow, first_step, new_state, ctx)
        if rendered.empty:
            flow_events_counter.labels(flow=flow.id, event="empty").inc()
            return _outcome(Response.plain(rendered.text), new_state.reset_flow(), aborted=True)

        flow_events_counter.labels(flow=flow.id, event="started").inc()
        logger.info(f"Flow {flow.id} started for session {ctx.session_id} (instance {new_state.instance_id})")
        return _outcome(self._to_response(rendered), new_state)

    def abort(self, state: ConversationState, reason: str = "FLOW_CANCELLED") -> StepOutcome:
        """Drops the active flow; `reason` is the string key shown to the user."""
        if state.flow:
            flow_events_counter.labels(flow=state.flow, event="aborted").inc()
        return _outcome(Response.plain(get_string(reason, state.language)), state.reset_flow(), aborted=True)

    # --- Rendering ---

    async def render(self, flow: Flow, step_id: str, state: ConversationState, ctx: TurnContext) -> RenderedStep:
        step = self.registry.get_step(flow.id, step_id)
        if step is None:
            raise RegistryMiss(f"Step {step_id} is not part of flow {flow.id}")

        language = state.language
        options = await self._resolve_options(step, state, ctx)
        if step.options_source != OptionSource.STATIC and not options:
            return RenderedStep(
                flow_id=flow.id,
                step_id=step.id,
                kind=step.kind,
                text=get_string(step.empty_prompt or "VALIDATION_INPUT", language),
                empty=True,
            )

        text = get_string(step.prompt, language, **self._prompt_fields(state, ctx))
        return RenderedStep(flow_id=flow.id, step_id=step.id, kind=step.kind, text=text, options=options)

    def _prompt_fields(self, state: ConversationState, ctx: TurnContext) -> Dict[str, Any]:
        not_specified = get_string("NOT_SPECIFIED", state.language)
        data = state.data
        return {
            "patient_name": data.get("patient_name") or not_specified,
            "clinic_name": ctx.clinic_name or not_specified,
            "service_name": data.get("service_name") or not_specified,
            "doctor_name": data.get("doctor_name") or not_specified,
            "date": data.get("selected_date_label") or data.get("selected_date") or not_specified,
            "time": data.get("selected_time") or not_specified,
            "appointment_label": data.get("appointment_label") or not_specified,
        }

    async def _resolve_options(self, step: Step, state: ConversationState, ctx: TurnContext) -> List[StepOption]:
        language = state.language
        source = step.options_source

        if source == OptionSource.STATIC:
            return [
                StepOption(id=option.id, text=get_string(option.text, language), value=option.value, description=option.description)
                for option in step.options
            ]

        if source == OptionSource.SERVICES:
            return [
                StepOption(id=service["code"], text=service_label(service["code"], language), value=service["code"], description=service.get("price"))
                for service in SERVICE_CATALOG
            ]

        if source == OptionSource.DOCTORS:
            doctors = await self.db.list_doctors(ctx.clinic_id, state.data.get("service_code"))
            if not doctors:
                doctors = await self.db.list_doctors(ctx.clinic_id, None)
            return [
                StepOption(id=doctor.id, text=doctor.name, value=doctor.id, description=doctor.specialization)
                for doctor in doctors
            ]

        if source == OptionSource.DATES:
            today = self._clinic_now(ctx).date()
            days = [today + timedelta(days=offset) for offset in range(1, self.settings.booking_horizon_days + 1)]
            return [StepOption(id=day.isoformat(), text=day.strftime("%d.%m.%Y"), value=day.isoformat()) for day in days]

        if source == OptionSource.TIMES:
            return [StepOption(id=slot, text=slot, value=slot) for slot in self.settings.clinic_slots]

        if source == OptionSource.APPOINTMENTS:
            appointments = await self.db.list_upcoming_appointments(ctx.patient_id, ctx.now)
            options = []
            for appointment in appointments:
                local = appointment.appointment_date.astimezone(self._clinic_tz())
                label = f"{local.strftime('%d.%m.%Y %H:%M')} {appointment.service_name or ''}".strip()
                options.append(StepOption(id=appointment.id, text=label, value=appointment.id, description=appointment.doctor_name))
            return options

        return []

    # --- Input handling ---

    def validate(self, step: Step, raw_input: str, rendered: RenderedStep) -> ValidationResult:
        return validate_input(step, raw_input, rendered.options)

    async def apply_input(self, step: Step, raw_input: str, state: ConversationState, ctx: TurnContext, rendered: RenderedStep) -> Dict[str, Any]:
        """
        Returns the flow data with the accepted input stored under the step's
        data key. Selections store the option value plus its display label;
        phone numbers are stored sanitized.
        """
        data = dict(state.data)
        if not step.data_key:
            return data

        if step.kind == StepKind.SELECTION:
            option = match_option(raw_input, rendered.options)
            if option is None:
                raise InvariantViolation(f"Validated input for {step.id} matches no option")
            data[step.data_key] = option.value
            label_key = {
                OptionSource.SERVICES: "service_name",
                OptionSource.DOCTORS: "doctor_name",
                OptionSource.DATES: "selected_date_label",
                OptionSource.APPOINTMENTS: "appointment_label",
            }.get(step.options_source)
            if label_key:
                data[label_key] = option.text
        else:
            value = raw_input.strip()
            if any(rule.kind == RuleKind.PHONE for rule in step.rules):
                value = EnhancedSecurityService.sanitize_phone_number(value) or value
            data[step.data_key] = value

        if step.profile_field:
            # raises PersistenceFailure; the caller keeps the old state
            await self.db.update_patient_profile(ctx.patient_id, {step.profile_field: data[step.data_key]})

        return data

    def advance(self, flow: Flow, state: ConversationState) -> Optional[str]:
        """Next step id, or None when the flow is complete."""
        return self.registry.next_step_id(flow.id, state.step)

    async def handle_input(self, flow: Flow, state: ConversationState, intent: Intent, ctx: TurnContext) -> StepOutcome:
        step = self.registry.get_step(flow.id, state.step)
        if step is None:
            raise RegistryMiss(f"Step {state.step} is not part of flow {flow.id}")

        rendered = await self.render(flow, step.id, state, ctx)
        if rendered.empty:
            return self.abort(state, step.empty_prompt or "FLOW_RESET")

        if step.kind == StepKind.CONFIRMATION:
            if intent.name == "CONFIRM":
                return await self._complete(flow, state, ctx)
            if intent.name == "CANCEL_FLOW":
                return self.abort(state)
            hint = get_string("CONFIRMATION_HINT", state.language)
            return _outcome(self._to_response(rendered, prefix=hint), state)

        raw_input = intent.text or ""
        validation = self.validate(step, raw_input, rendered)
        if not validation["is_valid"]:
            message = get_string(validation["message"] or "VALIDATION_INPUT", state.language)
            logger.info(f"Input rejected at {flow.id}/{step.id}: {validation['error_code']}")
            return _outcome(self._to_response(rendered, prefix=message), state)

        data = await self.apply_input(step, raw_input, state, ctx, rendered)
        accepted = state.model_copy(update={"data": data})

        next_step = self.advance(flow, accepted)
        if next_step is None:
            return await self._complete(flow, accepted, ctx)

        accepted = accepted.model_copy(update={"step": next_step})
        next_rendered = await self.render(flow, next_step, accepted, ctx)
        if next_rendered.empty:
            return self.abort(accepted, self.registry.get_step(flow.id, next_step).empty_prompt or "FLOW_RESET")
        return _outcome(self._to_response(next_rendered), accepted)

    # --- Completion ---

    async def _complete(self, flow: Flow, state: ConversationState, ctx: TurnContext) -> StepOutcome:
        action = self._completions.get(flow.completion)
        if action is None:
            raise InvariantViolation(f"Unknown completion action {flow.completion}")
        try:
            text = await asyncio.wait_for(action(state, ctx), timeout=self.settings.completion_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise PersistenceFailure(f"Completion {flow.completion} timed out") from e

        flow_events_counter.labels(flow=flow.id, event="completed").inc()
        logger.info(f"Flow {flow.id} completed for session {ctx.session_id} (instance {state.instance_id})")
        return _outcome(Response.plain(text), state.reset_flow(), completed=True)

    async def _create_booking(self, state: ConversationState, ctx: TurnContext) -> str:
        data = state.data
        required = ("service_code", "doctor_id", "selected_date", "selected_time")
        if any(not data.get(key) for key in required):
            return get_string("BOOKING_INCOMPLETE", state.language)

        appointment_date = self._appointment_datetime(data["selected_date"], data["selected_time"])
        appointment = await self.db.create_booking(
            patient_id=ctx.patient_id,
            clinic_id=ctx.clinic_id,
            doctor_id=data["doctor_id"],
            doctor_name=data.get("doctor_name"),
            service_code=data["service_code"],
            service_name=data.get("service_name") or service_label(data["service_code"], state.language),
            appointment_date=appointment_date,
            idempotency_key=f"{ctx.session_id}:{state.instance_id}",
        )
        return get_string(
            "BOOKING_CREATED",
            state.language,
            appointment_id=appointment.id,
            service_name=appointment.service_name or data.get("service_name"),
            date=data.get("selected_date_label") or data["selected_date"],
            time=data["selected_time"],
        )

    async def _cancel_appointment(self, state: ConversationState, ctx: TurnContext) -> str:
        appointment_id = state.data.get("appointment_id")
        if appointment_id and await self.db.cancel_appointment(appointment_id, ctx.patient_id):
            return get_string("APPOINTMENT_CANCELLED", state.language)
        return get_string("APPOINTMENT_NOT_FOUND", state.language)

    # --- Helpers ---

    def _clinic_tz(self) -> ZoneInfo:
        return ZoneInfo(self.settings.clinic_timezone)

    def _clinic_now(self, ctx: TurnContext) -> datetime:
        return ctx.now.astimezone(self._clinic_tz())

    def _appointment_datetime(self, day: str, slot: str) -> datetime:
        local = datetime.combine(date.fromisoformat(day), time.fromisoformat(slot), tzinfo=self._clinic_tz())
        return local.astimezone(ZoneInfo("UTC"))

    @staticmethod
    def _to_response(rendered: RenderedStep, prefix: Optional[str] = None) -> Response:
        text = f"{prefix}\n\n{rendered.text}" if prefix else rendered.text
        return Response.choice(
            text,
            rendered.options,
            next_step_hint=f"{rendered.flow_id}:{rendered.step_id}",
            flow=rendered.flow_id,
            step=rendered.step_id,
        )
