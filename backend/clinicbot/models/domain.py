# /clinicbot/models/domain.py

import logging
from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from clinicbot.models.conversation import ConversationState, utcnow

# This file defines the core Pydantic models used throughout the dialogue
# engine: identities and persisted entities, the transient Intent, and the
# channel-agnostic inbound/outbound records exchanged with channel adapters.

logger = logging.getLogger(__name__)


class Channel(str, Enum):
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"
    SMS = "sms"
    WEB = "web"


class Identity(BaseModel):
    """Who sent a message: a phone number and/or a channel-specific user id."""
    channel: str
    channel_user_id: Optional[str] = None
    phone: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.channel}:{self.channel_user_id or self.phone}"


class Patient(BaseModel):
    id: str
    phone: Optional[str] = None
    channel_user_id: Optional[str] = None
    channel: Optional[str] = None
    name: Optional[str] = None
    preferred_language: str = "ru"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


class Clinic(BaseModel):
    id: str
    name: str
    phone: str = "+7 (701) 234-56-78"
    address: str = "г. Алматы, ул. Абая, 123"
    timezone: str = "Asia/Almaty"
    languages: List[str] = ["ru"]


class Doctor(BaseModel):
    id: str
    name: str
    specialization: Optional[str] = None
    services: List[str] = []


class Appointment(BaseModel):
    id: str
    clinic_id: Optional[str] = None
    patient_id: str
    doctor_id: Optional[str] = None
    doctor_name: Optional[str] = None
    service_code: Optional[str] = None
    service_name: Optional[str] = None
    appointment_date: datetime
    status: str = "scheduled"
    confirmed: bool = False
    idempotency_key: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class Entity(BaseModel):
    type: str
    value: str
    confidence: float = 0.9
    start: int = 0
    end: int = 0


class Intent(BaseModel):
    """A classifier decision for one message. Never persisted."""
    name: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    entities: List[Entity] = Field(default_factory=list)
    state: ConversationState
    source: str = "pattern"
    text: str = ""
    reply: Optional[str] = None
    hand_off: bool = True

    def entity(self, entity_type: str) -> Optional[str]:
        for entity in self.entities:
            if entity.type == entity_type:
                return entity.value
        return None


class ClassifierVerdict(BaseModel):
    """What the probabilistic classifier collaborator returns."""
    intent: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reply: Optional[str] = None
    hand_off: bool = True


class ResponseKind(str, Enum):
    TEXT = "text"
    SINGLE_CHOICE = "single_choice"
    MULTI_CHOICE = "multi_choice"
    NONE = "none"


class ResponseOption(BaseModel):
    id: str
    text: str
    value: str
    description: Optional[str] = None


# Channels render up to this many options as buttons, more as a list.
MAX_BUTTON_OPTIONS = 3


class Response(BaseModel):
    """Channel-agnostic reply descriptor handed to the channel adapter."""
    kind: ResponseKind = ResponseKind.TEXT
    text: str = ""
    options: List[ResponseOption] = Field(default_factory=list)
    next_step_hint: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def plain(cls, text: str, **metadata) -> "Response":
        return cls(kind=ResponseKind.TEXT, text=text, metadata=metadata)

    @classmethod
    def choice(cls, text: str, options: List[Any], next_step_hint: Optional[str] = None, **metadata) -> "Response":
        converted = [
            option if isinstance(option, ResponseOption) else ResponseOption.model_validate(option.model_dump())
            for option in options
        ]
        if not converted:
            return cls(kind=ResponseKind.TEXT, text=text, next_step_hint=next_step_hint, metadata=metadata)
        kind = ResponseKind.SINGLE_CHOICE if len(converted) <= MAX_BUTTON_OPTIONS else ResponseKind.MULTI_CHOICE
        return cls(kind=kind, text=text, options=converted, next_step_hint=next_step_hint, metadata=metadata)

    @classmethod
    def noop(cls, **metadata) -> "Response":
        return cls(kind=ResponseKind.NONE, text="", metadata=metadata)


class InboundMessage(BaseModel):
    """Normalized inbound record produced by a channel adapter."""
    channel: str
    sender_identity: str = Field(..., min_length=1)
    text: str = ""
    is_button_press: bool = False
    button_payload: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    provider_message_id: Optional[str] = None
    phone: Optional[str] = None

    @property
    def effective_text(self) -> str:
        if self.is_button_press and self.button_payload:
            return self.button_payload
        return self.text
