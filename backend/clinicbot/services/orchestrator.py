# /clinicbot/services/orchestrator.py

import time
from typing import Any, Dict, Tuple, Union

import structlog

from clinicbot.config.settings import settings
from clinicbot.config.strings import LANGUAGE_LABELS, SERVICE_CATALOG, get_string, service_label, working_hours
from clinicbot.config.rules import BYE_KEYWORDS, THANK_KEYWORDS
from clinicbot.exceptions import InvariantViolation, PersistenceFailure, RateLimited, RegistryMiss, SessionConflict
from clinicbot.models.conversation import ConversationState, Session, utcnow
from clinicbot.models.domain import Clinic, Identity, InboundMessage, Intent, Patient, Response, ResponseOption
from clinicbot.services.nlp_service import normalize_text
from clinicbot.utils.metrics import duplicate_deliveries_counter, response_time_histogram, turn_counter
from clinicbot.workflows.engine import TurnContext

# The orchestrator runs one turn per inbound message:
#   resolve patient/session -> rate limit -> classify -> flow executor or
#   standalone handler -> a single compare-and-swap state write -> Response.
# Every public entry point returns a Response; no exception escapes.

log = structlog.get_logger(__name__)

HandlerResult = Tuple[Response, ConversationState]


class DialogueOrchestrator:
    def __init__(
        self,
        session_store,
        db,
        classifier,
        executor,
        registry,
        rate_limiter=None,
        duplicate_guard=None,
        settings_obj=settings,
        clock=utcnow,
    ):
        self.sessions = session_store
        self.db = db
        self.classifier = classifier
        self.executor = executor
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.duplicate_guard = duplicate_guard
        self.settings = settings_obj
        self.clock = clock
        self._handlers = {
            "GREETING": self._handle_greeting,
            "GET_INFO": self._handle_info,
            "CHANGE_LANGUAGE": self._handle_language,
            "HELP": self._handle_help,
            "SMALL_TALK": self._handle_small_talk,
            "CONFIRM_APPOINTMENT": self._handle_confirm_appointment,
        }

    # --- Entry points ---

    async def handle_inbound(self, message: InboundMessage) -> Response:
        """Handles a normalized adapter record, suppressing re-delivered messages."""
        if self.duplicate_guard is not None:
            first = await self.duplicate_guard.first_delivery(message.channel, message.sender_identity, message.provider_message_id)
            if not first:
                duplicate_deliveries_counter.labels(channel=message.channel).inc()
                log.info("duplicate_delivery_suppressed", channel=message.channel, provider_message_id=message.provider_message_id)
                return Response.noop(duplicate=True)

        identity = Identity(channel=message.channel, channel_user_id=message.sender_identity, phone=message.phone)
        response = await self.handle_message(identity, message.channel, message.effective_text, message.is_button_press)

        if response.metadata.get("error") in ("persistence", "conflict") and self.duplicate_guard is not None:
            # The turn did not commit; let a provider retry through.
            await self.duplicate_guard.forget(message.channel, message.sender_identity, message.provider_message_id)
        return response

    async def handle_message(
        self,
        identity: Union[Identity, str],
        channel: str,
        text: str,
        is_button_press: bool = False,
    ) -> Response:
        if isinstance(identity, str):
            identity = Identity(channel=channel, channel_user_id=identity)
        started = time.monotonic()
        text = (text or "")[:4096]
        # language of the loaded session, once known; error replies use it
        turn = {"language": self.settings.default_language}
        outcome = "ok"

        try:
            if self.rate_limiter is not None:
                await self.rate_limiter.check(identity.key)

            attempts = self.settings.max_turn_attempts
            for attempt in range(1, attempts + 1):
                try:
                    response = await self._run_turn(identity, channel, text, is_button_press, turn)
                    break
                except SessionConflict as e:
                    log.warning("session_conflict", session_id=e.session_id, attempt=attempt, identity=identity.key)
                    if attempt == attempts:
                        outcome = "conflict"
                        response = Response.plain(get_string("CONFLICT_ERROR", turn["language"]), error="conflict")
            if response.metadata.get("error"):
                outcome = response.metadata["error"]

        except RateLimited as e:
            log.info("rate_limited", identity=e.identity, count=e.count, limit=e.limit)
            outcome = "rate_limited"
            response = Response.plain(get_string("RATE_LIMITED", turn["language"]), error="rate_limited")
        except PersistenceFailure as e:
            log.error("persistence_failure", identity=identity.key, error=str(e))
            outcome = "persistence"
            response = Response.plain(get_string("PERSISTENCE_ERROR", turn["language"]), error="persistence")
        except Exception:
            log.exception("turn_failed", identity=identity.key, channel=channel)
            outcome = "internal"
            response = Response.plain(get_string("GENERIC_ERROR", turn["language"]), error="internal")

        turn_counter.labels(channel=channel, outcome=outcome).inc()
        response_time_histogram.labels(endpoint="handle_message").observe(time.monotonic() - started)
        return response

    async def end_session(self, session_id: str) -> bool:
        """Administrative termination; ending an already ended session is a no-op."""
        try:
            ended = await self.sessions.deactivate(session_id)
        except PersistenceFailure as e:
            log.error("end_session_failed", session_id=session_id, error=str(e))
            return False
        log.info("session_ended", session_id=session_id, changed=ended)
        return ended

    # --- Turn ---

    async def _run_turn(self, identity: Identity, channel: str, text: str, is_button_press: bool, turn: Dict[str, Any]) -> Response:
        patient = await self.db.upsert_patient(identity, language=self.settings.default_language)
        session = await self._resolve_session(patient, channel)
        state = session.state
        turn["language"] = state.language
        turn_log = log.bind(session_id=session.id, flow=state.flow, step=state.step)

        try:
            clinic = await self.db.get_clinic(session.clinic_id)
            ctx = TurnContext(
                session_id=session.id,
                patient_id=patient.id,
                clinic_id=session.clinic_id,
                clinic_name=clinic.name,
                now=self.clock(),
            )
            if (session.repaired or "").startswith("stale_reference:"):
                # The stored flow/step no longer exists; the message was an answer to it.
                turn_log.warning("stale_dialogue_reset", reason=session.repaired)
                intent = Intent(name="FLOW_RESET", confidence=1.0, state=state, text=text, source="repair")
                response, new_state = Response.plain(get_string("FLOW_RESET", state.language)), state
            else:
                intent = await self.classifier.classify(
                    text, state, state.language, is_button_press, context=self._classifier_context(clinic, state.language)
                )
                turn_log = turn_log.bind(intent=intent.name, confidence=intent.confidence, source=intent.source)

                try:
                    response, new_state = await self._dispatch(intent, state, patient, clinic, ctx)
                except InvariantViolation as e:
                    turn_log.warning("dialogue_invariant_violated", error=str(e))
                    new_state = state.reset_flow()
                    response = Response.plain(get_string("FLOW_RESET", state.language))

            await self.sessions.update_state(session.id, new_state, session.version)
        except SessionConflict:
            raise
        except PersistenceFailure as e:
            turn_log.error("turn_not_committed", error=str(e))
            return Response.plain(get_string("PERSISTENCE_ERROR", state.language), error="persistence")

        turn_log.info("turn_committed", new_flow=new_state.flow, new_step=new_state.step)
        response.metadata.setdefault("session_id", session.id)
        response.metadata.setdefault("intent", intent.name)

        await self.db.log_message(session.id, "incoming", text, {"intent": intent.name, "confidence": intent.confidence})
        await self.db.log_message(session.id, "outgoing", response.text, {"kind": response.kind.value})
        return response

    async def _resolve_session(self, patient: Patient, channel: str) -> Session:
        session = await self.sessions.get_active_session(patient.id, channel)
        if session is not None and session.is_expired(self.clock(), self.settings.session_timeout_minutes):
            log.info("session_expired", session_id=session.id, patient_id=patient.id)
            await self.sessions.deactivate(session.id)
            session = None
        if session is None:
            clinic_id = await self.db.default_clinic_id()
            session = await self.sessions.create_session(patient.id, channel, clinic_id, language=patient.preferred_language)
        return session

    async def _dispatch(self, intent: Intent, state: ConversationState, patient: Patient, clinic: Clinic, ctx: TurnContext) -> HandlerResult:
        if state.in_flow:
            flow = self.registry.get_flow(state.flow)
            if flow is None:
                raise RegistryMiss(f"Unknown flow {state.flow}")
            if intent.name == "CANCEL_FLOW":
                outcome = self.executor.abort(state)
            else:
                outcome = await self.executor.handle_input(flow, state, intent, ctx)
            return outcome["response"], outcome["state"].model_copy(update={"retry_count": 0})

        if intent.source == "llm" and not intent.hand_off and intent.reply:
            return Response.plain(intent.reply), state.model_copy(update={"retry_count": 0})

        flow = self.registry.flow_for_intent(intent.name)
        if flow is not None:
            outcome = await self.executor.start(flow, state, ctx)
            return outcome["response"], outcome["state"]

        handler = self._handlers.get(intent.name, self._handle_unknown)
        return await handler(intent=intent, state=state, patient=patient, clinic=clinic, ctx=ctx)

    # --- Standalone handlers ---

    def _menu_options(self, language: str) -> list:
        return [
            ResponseOption(id="book_appointment", text=get_string("BUTTON_BOOK", language), value="book_appointment"),
            ResponseOption(id="services_info", text=get_string("BUTTON_SERVICES", language), value="services_info"),
            ResponseOption(id="contact_info", text=get_string("BUTTON_CONTACTS", language), value="contact_info"),
        ]

    async def _handle_greeting(self, state: ConversationState, patient: Patient, clinic: Clinic, **kwargs) -> HandlerResult:
        language = state.language
        if patient.name:
            salutation = get_string("SALUTATION_NAMED", language, name=patient.name)
        else:
            salutation = get_string("SALUTATION", language)
        text = get_string("GREETING", language, salutation=salutation, clinic_name=clinic.name)
        return Response.choice(text, self._menu_options(language)), state.reset_flow().model_copy(update={"retry_count": 0})

    async def _handle_info(self, intent: Intent, state: ConversationState, clinic: Clinic, **kwargs) -> HandlerResult:
        language = state.language
        topic = intent.entity("TOPIC") or "general"
        if topic == "services":
            lines = "\n".join(f"• {service_label(item['code'], language)} - {item['price']}" for item in SERVICE_CATALOG)
            text = get_string("INFO_SERVICES", language, service_lines=lines)
        elif topic == "contacts":
            text = get_string("INFO_CONTACTS", language, phone=clinic.phone, address=clinic.address, hours=working_hours(language))
        else:
            text = get_string("INFO_GENERAL", language, clinic_name=clinic.name, address=clinic.address, phone=clinic.phone)
        return Response.plain(text), state.model_copy(update={"retry_count": 0})

    async def _handle_language(self, intent: Intent, state: ConversationState, patient: Patient, **kwargs) -> HandlerResult:
        requested = intent.entity("LANGUAGE")
        if requested in self.settings.supported_languages:
            await self.db.update_patient_profile(patient.id, {"preferred_language": requested})
            new_state = state.model_copy(update={"language": requested, "retry_count": 0})
            return Response.plain(get_string("LANGUAGE_CHANGED", requested)), new_state

        options = [
            ResponseOption(id=f"lang_{code}", text=LANGUAGE_LABELS.get(code, code), value=f"lang_{code}")
            for code in self.settings.supported_languages
        ]
        return Response.choice(get_string("LANGUAGE_PROMPT", state.language), options), state.model_copy(update={"retry_count": 0})

    async def _handle_help(self, state: ConversationState, **kwargs) -> HandlerResult:
        return Response.choice(get_string("HELP", state.language), self._menu_options(state.language)), state.model_copy(update={"retry_count": 0})

    async def _handle_small_talk(self, intent: Intent, state: ConversationState, **kwargs) -> HandlerResult:
        normalized = normalize_text(intent.text)
        if any(keyword in normalized for keyword in THANK_KEYWORDS):
            key = "SMALL_TALK_THANKS"
        elif any(keyword in normalized for keyword in BYE_KEYWORDS):
            key = "SMALL_TALK_BYE"
        else:
            key = "SMALL_TALK_DEFAULT"
        return Response.plain(get_string(key, state.language)), state.model_copy(update={"retry_count": 0})

    async def _handle_confirm_appointment(self, intent: Intent, state: ConversationState, patient: Patient, ctx: TurnContext, **kwargs) -> HandlerResult:
        appointment_id = intent.entity("APPOINTMENT_ID")
        if not appointment_id:
            upcoming = await self.db.list_upcoming_appointments(patient.id, ctx.now)
            if not upcoming:
                return Response.plain(get_string("APPOINTMENT_NOT_FOUND", state.language)), state.model_copy(update={"retry_count": 0})
            nearest = upcoming[0]
            if (nearest.idempotency_key or "").startswith(f"{ctx.session_id}:"):
                # A bare "yes" right after booking in this session is a repeat of the booking confirmation.
                text = get_string("APPOINTMENT_ALREADY_BOOKED", state.language, appointment_id=nearest.id)
                return Response.plain(text), state.model_copy(update={"retry_count": 0})
            appointment_id = nearest.id
        appointment = await self.db.confirm_appointment(appointment_id, patient.id)
        key = "APPOINTMENT_CONFIRMED" if appointment else "APPOINTMENT_NOT_FOUND"
        return Response.plain(get_string(key, state.language)), state.model_copy(update={"retry_count": 0})

    async def _handle_unknown(self, state: ConversationState, clinic: Clinic, **kwargs) -> HandlerResult:
        language = state.language
        retry_count = state.retry_count + 1
        if retry_count > self.settings.max_fallback_retries:
            text = get_string("FALLBACK_ESCALATE", language, phone=clinic.phone)
            return Response.plain(text, escalated=True), state.model_copy(update={"retry_count": 0})
        return Response.choice(get_string("FALLBACK", language), self._menu_options(language)), state.model_copy(update={"retry_count": retry_count})

    # --- Helpers ---

    @staticmethod
    def _classifier_context(clinic: Clinic, language: str) -> Dict[str, Any]:
        return {
            "clinic_name": clinic.name,
            "services": [service_label(item["code"], language) for item in SERVICE_CATALOG],
            "hours": working_hours(language),
            "phone": clinic.phone,
            "address": clinic.address,
            "language": language,
        }
