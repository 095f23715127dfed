# /clinicbot/models/conversation.py

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationState(BaseModel):
    """
    Per-session dialogue state, embedded in the Session document.

    Invariant: `step` is non-empty only if `flow` is non-empty and names a
    registered flow that contains that step. `load_state` repairs stored
    documents that break it.
    """
    flow: str = Field(default="", description="Active flow id, empty if none")
    step: str = Field(default="", description="Current step id within the flow, empty if none")
    data: Dict[str, Any] = Field(default_factory=dict, description="Values collected by the flow's steps")
    retry_count: int = Field(default=0, ge=0, description="Consecutive fallback responses")
    start_time: datetime = Field(default_factory=utcnow, description="When the current flow (or session) started")
    instance_id: str = Field(default="", description="Identifier of the running flow instance")
    language: str = Field(default="ru", description="Conversation language")

    model_config = ConfigDict(extra="ignore")

    @property
    def in_flow(self) -> bool:
        return bool(self.flow and self.step)

    def reset_flow(self) -> "ConversationState":
        """Returns a copy with no active flow; language is kept."""
        return self.model_copy(update={
            "flow": "",
            "step": "",
            "data": {},
            "instance_id": "",
            "start_time": utcnow(),
        })

    def same_dialogue(self, other: "ConversationState") -> bool:
        """Compares the parts of the state a retried write would reproduce."""
        return (
            self.flow == other.flow
            and self.step == other.step
            and self.data == other.data
            and self.retry_count == other.retry_count
            and self.instance_id == other.instance_id
            and self.language == other.language
        )


class Session(BaseModel):
    """One active conversation of a patient on one channel."""
    id: str
    patient_id: str
    channel: str
    clinic_id: Optional[str] = None
    state: ConversationState = Field(default_factory=ConversationState)
    version: int = Field(default=1, description="Compare-and-swap version, bumped on every state write")
    last_activity: datetime = Field(default_factory=utcnow)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    # Set when the stored state had to be repaired on this read; never stored.
    repaired: Optional[str] = None

    def is_expired(self, now: datetime, timeout_minutes: int) -> bool:
        last = self.last_activity
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return (now - last).total_seconds() > timeout_minutes * 60


# --- Typed state loading ---

class ValidState(BaseModel):
    kind: Literal["valid"] = "valid"
    state: ConversationState


class RepairedState(BaseModel):
    kind: Literal["repaired"] = "repaired"
    state: ConversationState
    reason: str


StateLoad = Union[ValidState, RepairedState]


def load_state(raw: Any, registry, default_language: str = "ru") -> StateLoad:
    """
    Turns a stored session payload (dict, JSON string, None or garbage) into a
    ConversationState. Anything unreadable becomes a fresh default state, and
    a stale flow/step reference is reset, both reported as RepairedState.
    """
    default = ConversationState(language=default_language)

    if raw is None:
        return RepairedState(state=default, reason="missing")

    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return RepairedState(state=default, reason="unparseable_json")

    if not isinstance(raw, dict):
        return RepairedState(state=default, reason="not_an_object")

    payload = {key: value for key, value in raw.items() if value is not None}
    payload.setdefault("language", default_language)
    try:
        state = ConversationState.model_validate(payload)
    except ValidationError as e:
        logger.warning(f"Stored conversation state failed validation: {e.error_count()} errors")
        return RepairedState(state=default, reason="invalid_fields")

    if not state.flow and not state.step:
        return ValidState(state=state)

    if not registry.is_valid_position(state.flow, state.step):
        return RepairedState(state=state.reset_flow(), reason=f"stale_reference:{state.flow}/{state.step}")

    return ValidState(state=state)
