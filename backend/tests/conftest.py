import asyncio
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from dotenv import load_dotenv

# Load the test environment FIRST, before any clinicbot imports, so the
# module-level Settings instance picks it up.
load_dotenv(dotenv_path=Path(__file__).resolve().parent.parent / ".env.test", override=True)

from clinicbot.config.settings import Settings  # noqa: E402
from clinicbot.exceptions import SessionConflict  # noqa: E402
from clinicbot.models.conversation import ConversationState, Session, load_state, utcnow  # noqa: E402
from clinicbot.models.domain import Appointment, Clinic, Doctor, Identity, Patient  # noqa: E402
from clinicbot.services.nlp_service import IntentClassifier  # noqa: E402
from clinicbot.services.orchestrator import DialogueOrchestrator  # noqa: E402
from clinicbot.services.security_service import DuplicateDeliveryGuard, EnhancedSecurityService  # noqa: E402
from clinicbot.workflows.engine import FlowExecutor, TurnContext  # noqa: E402
from clinicbot.workflows.registry import FlowRegistry  # noqa: E402


# --- In-memory collaborators ---

class FakeSessionStore:
    """Session store with the same compare-and-swap semantics as the Mongo one."""

    def __init__(self, registry):
        self.registry = registry
        self.sessions: Dict[str, Session] = {}
        self.raw_states: Dict[str, object] = {}
        self.update_calls = 0

    def _load(self, session: Session) -> Session:
        raw = self.raw_states.pop(session.id, None)
        if raw is not None:
            loaded = load_state(raw, self.registry)
            session = session.model_copy(update={"state": loaded.state, "repaired": getattr(loaded, "reason", None)})
        return session.model_copy(deep=True)

    async def get_active_session(self, patient_id, channel):
        await asyncio.sleep(0)
        for session in self.sessions.values():
            if session.patient_id == patient_id and session.channel == channel and session.is_active:
                return self._load(session)
        return None

    async def get_session(self, session_id):
        session = self.sessions.get(session_id)
        return self._load(session) if session else None

    async def create_session(self, patient_id, channel, clinic_id=None, language=None):
        await asyncio.sleep(0)
        for session in self.sessions.values():
            if session.patient_id == patient_id and session.channel == channel and session.is_active:
                return session.model_copy(deep=True)
        session = Session(
            id=uuid.uuid4().hex,
            patient_id=patient_id,
            channel=channel,
            clinic_id=clinic_id,
            state=ConversationState(language=language or "ru"),
        )
        self.sessions[session.id] = session
        return session.model_copy(deep=True)

    async def update_state(self, session_id, new_state, expected_version):
        self.update_calls += 1
        await asyncio.sleep(0)
        current = self.sessions.get(session_id)
        if current is None or not current.is_active:
            raise SessionConflict(session_id, expected_version)
        if current.version != expected_version:
            if current.state.same_dialogue(new_state):
                return current.model_copy(deep=True)
            raise SessionConflict(session_id, expected_version)
        updated = current.model_copy(update={"state": new_state, "version": current.version + 1, "last_activity": utcnow()})
        self.sessions[session_id] = updated
        return updated.model_copy(deep=True)

    async def deactivate(self, session_id):
        current = self.sessions.get(session_id)
        if current is None or not current.is_active:
            return False
        self.sessions[session_id] = current.model_copy(update={"is_active": False})
        return True

    async def deactivate_idle(self, older_than):
        expired = [s.id for s in self.sessions.values() if s.is_active and s.last_activity < older_than]
        for session_id in expired:
            await self.deactivate(session_id)
        return len(expired)

    # helpers for tests
    def only_session(self) -> Session:
        active = [s for s in self.sessions.values() if s.is_active]
        assert len(active) == 1
        return active[0]

    def corrupt(self, session_id, raw):
        self.raw_states[session_id] = raw


class FakeDatabase:
    def __init__(self):
        self.patients: Dict[str, Patient] = {}
        self.appointments: Dict[str, Appointment] = {}
        self.doctors: List[Doctor] = [
            Doctor(id="ivanov", name="Доктор Иванов", specialization="Терапевт", services=["consultation", "treatment", "cleaning"]),
            Doctor(id="sidorov", name="Доктор Сидоров", specialization="Ортопед", services=["consultation", "prosthetics"]),
        ]
        self.clinic = Clinic(id="clinic-1", name="Белый зуб")
        self.logs: List[tuple] = []
        self.profile_updates: List[tuple] = []
        self.booking_calls = 0
        self._sequence = 0

    async def find_by_identity(self, identity: Identity) -> Optional[Patient]:
        chat_id = EnhancedSecurityService.normalize_channel_user_id(identity.channel_user_id)
        phone = EnhancedSecurityService.sanitize_phone_number(identity.phone) or None
        for patient in self.patients.values():
            if chat_id and patient.channel == identity.channel and patient.channel_user_id == chat_id:
                return patient
            if phone and patient.phone == phone:
                return patient
        return None

    async def upsert_patient(self, identity: Identity, language=None) -> Patient:
        await asyncio.sleep(0)
        existing = await self.find_by_identity(identity)
        if existing:
            return existing
        patient = Patient(
            id=uuid.uuid4().hex,
            phone=EnhancedSecurityService.sanitize_phone_number(identity.phone) or None,
            channel_user_id=EnhancedSecurityService.normalize_channel_user_id(identity.channel_user_id),
            channel=identity.channel,
            preferred_language=language or "ru",
        )
        self.patients[patient.id] = patient
        return patient

    async def update_patient_profile(self, patient_id, fields):
        self.profile_updates.append((patient_id, dict(fields)))
        patient = self.patients.get(patient_id)
        if patient:
            self.patients[patient_id] = patient.model_copy(update=fields)
        return patient_id

    async def default_clinic_id(self):
        return self.clinic.id

    async def get_clinic(self, clinic_id):
        return self.clinic

    async def list_doctors(self, clinic_id, service_code=None):
        if service_code:
            return [d for d in self.doctors if service_code in d.services]
        return list(self.doctors)

    async def list_upcoming_appointments(self, patient_id, now=None):
        now = now or utcnow()
        return sorted(
            [a for a in self.appointments.values() if a.patient_id == patient_id and a.status in ("scheduled", "confirmed") and a.appointment_date >= now],
            key=lambda a: a.appointment_date,
        )

    async def create_booking(self, patient_id, clinic_id, doctor_id, service_code, appointment_date, idempotency_key, doctor_name=None, service_name=None):
        self.booking_calls += 1
        for appointment in self.appointments.values():
            if appointment.idempotency_key == idempotency_key:
                return appointment
        self._sequence += 1
        appointment = Appointment(
            id=str(self._sequence),
            clinic_id=clinic_id,
            patient_id=patient_id,
            doctor_id=doctor_id,
            doctor_name=doctor_name,
            service_code=service_code,
            service_name=service_name,
            appointment_date=appointment_date,
            idempotency_key=idempotency_key,
        )
        self.appointments[appointment.id] = appointment
        return appointment

    async def cancel_appointment(self, appointment_id, patient_id):
        appointment = self.appointments.get(str(appointment_id))
        if not appointment or appointment.patient_id != patient_id or appointment.status == "cancelled":
            return False
        self.appointments[appointment.id] = appointment.model_copy(update={"status": "cancelled"})
        return True

    async def confirm_appointment(self, appointment_id, patient_id):
        candidates = [a for a in self.appointments.values() if a.patient_id == patient_id and a.status == "scheduled"]
        if appointment_id:
            candidates = [a for a in candidates if a.id == str(appointment_id)]
        if not candidates:
            return None
        confirmed = candidates[0].model_copy(update={"status": "confirmed", "confirmed": True})
        self.appointments[confirmed.id] = confirmed
        return confirmed

    async def log_message(self, session_id, direction, content, metadata=None):
        self.logs.append((session_id, direction, content))

    async def create_indexes(self):
        return None

    async def health_check(self):
        return True

    # helpers for tests
    def add_appointment(self, patient_id, days_ahead=2, service_name="Консультация") -> Appointment:
        self._sequence += 1
        appointment = Appointment(
            id=str(self._sequence),
            patient_id=patient_id,
            service_code="consultation",
            service_name=service_name,
            appointment_date=utcnow() + timedelta(days=days_ahead),
        )
        self.appointments[appointment.id] = appointment
        return appointment


class FakeRedis:
    """Just enough of redis.asyncio for the rate limiter and duplicate guard."""

    def __init__(self):
        self.values: Dict[str, object] = {}
        self.ttls: Dict[str, int] = {}

    async def incr(self, key):
        self.values[key] = int(self.values.get(key, 0)) + 1
        return self.values[key]

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = value
        if ex:
            self.ttls[key] = ex
        return True

    async def delete(self, key):
        return 1 if self.values.pop(key, None) is not None else 0


# --- Fixtures ---

@pytest.fixture
def test_settings():
    return Settings(
        environment="test",
        llm_classifier_enabled=False,
        gemini_api_key=None,
        openai_api_key=None,
        api_key="test-api-key",
        rate_limit_per_identity=30,
        rate_limit_window_seconds=60,
    )


@pytest.fixture
def registry():
    return FlowRegistry()


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def fake_store(registry):
    return FakeSessionStore(registry)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def executor(registry, fake_db, test_settings):
    return FlowExecutor(registry, fake_db, test_settings)


@pytest.fixture
def classifier(registry):
    return IntentClassifier(registry)


@pytest.fixture
def turn_context():
    return TurnContext(
        session_id="session-1",
        patient_id="patient-1",
        clinic_id="clinic-1",
        clinic_name="Белый зуб",
        now=utcnow(),
    )


@pytest.fixture
def orchestrator_factory(fake_store, fake_db, registry, executor, classifier, test_settings):
    def build(**overrides):
        params = dict(
            session_store=fake_store,
            db=fake_db,
            classifier=classifier,
            executor=executor,
            registry=registry,
            settings_obj=test_settings,
        )
        params.update(overrides)
        return DialogueOrchestrator(**params)
    return build


@pytest.fixture
def orchestrator(orchestrator_factory):
    return orchestrator_factory()


@pytest.fixture
def test_client(mocker, fake_db, fake_store, fake_redis, orchestrator_factory):
    """TestClient whose lifespan wires in-memory collaborators instead of Mongo and Redis."""
    from unittest.mock import AsyncMock, MagicMock

    from fastapi.testclient import TestClient

    from clinicbot.main import app
    from clinicbot.utils.dependencies import ServiceContainer

    cache = MagicMock()
    cache.health_check = AsyncMock(return_value=True)
    cache.close = AsyncMock()
    orchestrator = orchestrator_factory(duplicate_guard=DuplicateDeliveryGuard(fake_redis))
    services = ServiceContainer(MagicMock(), cache, fake_db, fake_store, orchestrator)
    mocker.patch("clinicbot.utils.lifecycle.build_services", return_value=services)

    with TestClient(app) as client:
        yield client
