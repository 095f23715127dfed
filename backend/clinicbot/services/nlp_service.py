# /clinicbot/services/nlp_service.py

import re
import logging
import unicodedata
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from clinicbot.config import rules
from clinicbot.exceptions import ClassificationUnavailable
from clinicbot.models.conversation import ConversationState
from clinicbot.models.domain import Entity, Intent
from clinicbot.models.flow import StepKind
from clinicbot.utils.metrics import intent_counter

# This service turns a raw message into an Intent. Classification is an
# ordered chain of layers; the first layer that returns an Intent wins:
#   button -> in-flow -> pattern table -> language model -> UNKNOWN

logger = logging.getLogger(__name__)

_PUNCTUATION_RE = re.compile(r"[^\w\s+:./\-]")
_WHITESPACE_RE = re.compile(r"\s+")
_TOKEN_STRIP = ".:-/+"


def _fold_latin(char: str) -> str:
    # Only Latin letters lose their accents; Cyrillic/Kazakh letters (й, ә, қ) are kept.
    if "À" <= char <= "ɏ":
        decomposed = unicodedata.normalize("NFKD", char)
        return "".join(c for c in decomposed if not unicodedata.combining(c))
    return char


def normalize_text(text: Optional[str]) -> str:
    """Lower-case, ё->е, Latin accents folded, punctuation to spaces, whitespace collapsed."""
    if not text:
        return ""
    lowered = unicodedata.normalize("NFC", text).lower().replace("ё", "е")
    folded = "".join(_fold_latin(char) for char in lowered)
    spaced = _PUNCTUATION_RE.sub(" ", folded).replace("_", " ")
    return _WHITESPACE_RE.sub(" ", spaced).strip()


def tokenize(normalized: str) -> List[str]:
    return [token for token in (part.strip(_TOKEN_STRIP) for part in normalized.split()) if token]


def extract_entities(normalized: str) -> List[Entity]:
    """Runs the entity pattern table; dates inside a phone number are ignored."""
    entities: List[Entity] = []
    phone_spans = []
    for entity_type, pattern, group in rules.ENTITY_PATTERNS:
        for match in pattern.finditer(normalized):
            start, end = match.span(group)
            if entity_type != "PHONE" and any(s <= start < e for s, e in phone_spans):
                continue
            value = match.group(group).strip()
            if entity_type == "PHONE":
                phone_spans.append((start, end))
            entities.append(Entity(type=entity_type, value=value, confidence=0.9, start=start, end=end))
    return entities


def _detect_keyword(tokens: Sequence[str], table: Dict[str, Sequence[str]]) -> Optional[str]:
    for key, prefixes in table.items():
        if any(token.startswith(prefix) for token in tokens for prefix in prefixes):
            return key
    return None


class ClassificationRequest(BaseModel):
    raw_text: str
    text: str
    tokens: List[str] = Field(default_factory=list)
    state: ConversationState
    language: str = "ru"
    is_button_press: bool = False
    context: Dict[str, Any] = Field(default_factory=dict)

    def intent(self, name: str, confidence: float, source: str, entities: Optional[List[Entity]] = None, **extra) -> Intent:
        return Intent(
            name=name,
            confidence=confidence,
            entities=entities or [],
            state=self.state,
            source=source,
            text=self.raw_text.strip(),
            **extra,
        )


# --- Layers ---

class ClassifierLayer:
    """One link of the classification chain. Returns None to pass the message on."""
    name = "layer"

    async def classify(self, request: ClassificationRequest) -> Optional[Intent]:
        raise NotImplementedError


class ButtonLayer(ClassifierLayer):
    """Button payloads are literal values and are never second-guessed."""
    name = "button"

    async def classify(self, request: ClassificationRequest) -> Optional[Intent]:
        if not request.is_button_press or request.state.in_flow:
            return None

        payload = request.raw_text.strip().lower()
        if payload in rules.BUTTON_INTENTS:
            intent_name, extra_entities = rules.BUTTON_INTENTS[payload]
            entities = [Entity(type=kind, value=value, confidence=1.0) for kind, value in extra_entities.items()]
            return request.intent(intent_name, 1.0, self.name, entities)

        for prefix, (intent_name, entity_type) in rules.BUTTON_PREFIXES.items():
            if payload.startswith(prefix) and len(payload) > len(prefix):
                entity = Entity(type=entity_type, value=payload[len(prefix):], confidence=1.0)
                return request.intent(intent_name, 1.0, self.name, [entity])

        logger.info(f"Unrecognized button payload outside a flow: {payload}")
        return request.intent("UNKNOWN", 0.1, self.name)


class InFlowLayer(ClassifierLayer):
    """Inside an active flow, input is either an escape, a yes/no, or a step answer."""
    name = "in_flow"

    def __init__(self, registry):
        self.registry = registry

    async def classify(self, request: ClassificationRequest) -> Optional[Intent]:
        state = request.state
        if not state.in_flow:
            return None

        tokens = set(request.tokens)
        if tokens & rules.OVERRIDE_KEYWORDS:
            return request.intent("CANCEL_FLOW", 0.99, self.name)

        step = self.registry.get_step(state.flow, state.step)
        if step is not None and step.kind == StepKind.CONFIRMATION:
            if tokens & rules.AFFIRMATIVE_RESPONSES:
                return request.intent("CONFIRM", 0.98, self.name)
            if tokens & rules.NEGATIVE_RESPONSES:
                return request.intent("CANCEL_FLOW", 0.98, self.name)

        return request.intent("CONTINUE_FLOW", 0.8, self.name)


class PatternLayer(ClassifierLayer):
    """Ordered regex table; the first matching intent wins."""
    name = "pattern"

    def __init__(self, patterns=None):
        self.patterns = patterns if patterns is not None else rules.INTENT_PATTERNS

    async def classify(self, request: ClassificationRequest) -> Optional[Intent]:
        if not request.text:
            return None
        for intent_name, patterns in self.patterns:
            if any(pattern.search(request.text) for pattern in patterns):
                return request.intent(intent_name, 0.9, self.name)
        return None


class ProbabilisticLayer(ClassifierLayer):
    """Asks the language model; any failure degrades to UNKNOWN."""
    name = "llm"

    def __init__(self, ai_service):
        self.ai_service = ai_service

    async def classify(self, request: ClassificationRequest) -> Optional[Intent]:
        if self.ai_service is None or not request.text:
            return None
        context = dict(request.context)
        context.setdefault("language", request.language)
        try:
            verdict = await self.ai_service.classify(request.text, context)
        except ClassificationUnavailable as e:
            logger.warning(f"Language model classification unavailable: {e}")
            return request.intent("UNKNOWN", 0.1, "fallback")

        return request.intent(
            verdict.intent,
            verdict.confidence,
            self.name,
            reply=verdict.reply,
            hand_off=verdict.hand_off,
        )


class DefaultLayer(ClassifierLayer):
    name = "fallback"

    async def classify(self, request: ClassificationRequest) -> Optional[Intent]:
        return request.intent("UNKNOWN", 0.1, self.name)


# --- Classifier ---

class IntentClassifier:
    def __init__(self, registry, ai_service=None, layers: Optional[List[ClassifierLayer]] = None):
        if layers is None:
            layers = [ButtonLayer(), InFlowLayer(registry), PatternLayer()]
            if ai_service is not None:
                layers.append(ProbabilisticLayer(ai_service))
        if not layers or not isinstance(layers[-1], DefaultLayer):
            layers = list(layers) + [DefaultLayer()]
        self.layers = layers

    async def classify(
        self,
        text: str,
        state: ConversationState,
        language: Optional[str] = None,
        is_button_press: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ) -> Intent:
        normalized = normalize_text(text)
        request = ClassificationRequest(
            raw_text=text or "",
            text=normalized,
            tokens=tokenize(normalized),
            state=state,
            language=language or state.language,
            is_button_press=is_button_press,
            context=context or {},
        )

        intent = None
        for layer in self.layers:
            intent = await layer.classify(request)
            if intent is not None:
                break

        intent = self._attach_entities(intent, request)
        intent_counter.labels(intent=intent.name, source=intent.source).inc()
        logger.debug(f"Classified '{normalized}' as {intent.name} ({intent.confidence}) via {intent.source}")
        return intent

    @staticmethod
    def _attach_entities(intent: Intent, request: ClassificationRequest) -> Intent:
        entities = list(intent.entities)
        known_types = {entity.type for entity in entities}

        if intent.name == "GET_INFO" and "TOPIC" not in known_types:
            topic = _detect_keyword(request.tokens, rules.INFO_TOPIC_KEYWORDS) or "general"
            entities.append(Entity(type="TOPIC", value=topic))
        if intent.name == "CHANGE_LANGUAGE" and "LANGUAGE" not in known_types:
            language = _detect_keyword(request.tokens, rules.LANGUAGE_KEYWORDS)
            if language:
                entities.append(Entity(type="LANGUAGE", value=language))

        for entity in extract_entities(request.text):
            if entity.type not in known_types:
                entities.append(entity)
        return intent.model_copy(update={"entities": entities})
