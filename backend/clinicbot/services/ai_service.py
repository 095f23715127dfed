# /clinicbot/services/ai_service.py

import json
import logging
import asyncio
from google import genai
from google.genai.types import GenerateContentConfig, HttpOptions
from openai import AsyncOpenAI
from pydantic import ValidationError
from typing import Any, Dict, Optional

from clinicbot.config.persona import CLASSIFIER_PROMPT_TEMPLATE, CLASSIFIER_SYSTEM_PROMPT
from clinicbot.config.rules import KNOWN_INTENTS
from clinicbot.config.settings import settings
from clinicbot.exceptions import ClassificationUnavailable
from clinicbot.models.domain import ClassifierVerdict
from clinicbot.utils.circuit_breaker import CircuitBreaker
from clinicbot.utils.metrics import ai_requests_counter


# This service is the probabilistic classifier collaborator: it asks a
# language model (Google Gemini first, OpenAI as failover) to name the intent
# of a message the deterministic layers could not place.

logger = logging.getLogger(__name__)


class AIService:
    def __init__(self, settings_obj=settings, gemini_client=None, openai_client=None):
        self.settings = settings_obj
        self.gemini_client = gemini_client
        self.openai_client = openai_client

        if self.gemini_client is None and self.settings.gemini_api_key:
            # v1 API (stable endpoints)
            http_options = HttpOptions(api_version='v1')
            self.gemini_client = genai.Client(api_key=self.settings.gemini_api_key, http_options=http_options)
        if self.openai_client is None and self.settings.openai_api_key:
            self.openai_client = AsyncOpenAI(api_key=self.settings.openai_api_key)

        self.gemini_breaker = CircuitBreaker(name="gemini")
        self.openai_breaker = CircuitBreaker(name="openai")

    @property
    def available(self) -> bool:
        return self.gemini_client is not None or self.openai_client is not None

    async def classify(self, text: str, context: Optional[Dict[str, Any]] = None) -> ClassifierVerdict:
        """
        Classifies `text` with the language model. The whole call (both
        backends included) is bounded by the classifier timeout.

        Raises:
            ClassificationUnavailable: no backend configured, every backend
                failed, timed out or returned something unusable.
        """
        if not self.available:
            raise ClassificationUnavailable("No language model backend configured")

        prompt = self.create_classifier_prompt(text, context or {})
        try:
            payload = await asyncio.wait_for(self.get_ai_json_response(prompt), timeout=self.settings.classifier_timeout_seconds)
        except asyncio.TimeoutError as e:
            ai_requests_counter.labels(model="classifier", status="timeout").inc()
            raise ClassificationUnavailable("Classifier timed out") from e

        return self.parse_verdict(payload)

    def create_classifier_prompt(self, text: str, context: Dict[str, Any]) -> str:
        return CLASSIFIER_PROMPT_TEMPLATE.format(
            system_prompt=CLASSIFIER_SYSTEM_PROMPT,
            clinic_name=context.get("clinic_name", ""),
            services=", ".join(context.get("services", [])),
            hours=context.get("hours", ""),
            phone=context.get("phone", ""),
            address=context.get("address", ""),
            language=context.get("language", self.settings.default_language),
            text=text,
        )

    @staticmethod
    def parse_verdict(payload: Any) -> ClassifierVerdict:
        """Turns model output into a verdict; unknown intent names become UNKNOWN."""
        if not isinstance(payload, dict):
            raise ClassificationUnavailable("Classifier returned a non-object payload")
        intent = str(payload.get("intent") or "UNKNOWN").strip().upper()
        if intent not in KNOWN_INTENTS:
            intent = "UNKNOWN"
        try:
            confidence = min(max(float(payload.get("confidence", 0.5)), 0.0), 1.0)
            return ClassifierVerdict(
                intent=intent,
                confidence=confidence,
                reply=(payload.get("reply") or None),
                hand_off=bool(payload.get("hand_off", True)),
            )
        except (TypeError, ValueError, ValidationError) as e:
            raise ClassificationUnavailable(f"Malformed classifier payload: {e}") from e

    async def get_ai_json_response(self, prompt: str) -> dict:
        """
        Generates a JSON response, trying Gemini first and falling back to OpenAI.
        If both fail, raises ClassificationUnavailable so the rule-based default applies.
        """
        # 1. Try Gemini First
        if self.gemini_client:
            try:
                response = await self.gemini_breaker.call(self._generate_gemini_json_response, prompt)
                ai_requests_counter.labels(model="gemini-json", status="success").inc()
                return response
            except Exception as e:
                logger.error(f"Gemini JSON response generation failed: {e}. Trying OpenAI fallback.")
                ai_requests_counter.labels(model="gemini-json", status="error").inc()

        # 2. Fallback to OpenAI if Gemini failed
        if self.openai_client:
            try:
                response = await self.openai_breaker.call(self._generate_openai_json_response, prompt)
                ai_requests_counter.labels(model="openai-json", status="success").inc()
                return response
            except Exception as e:
                logger.error(f"OpenAI JSON fallback also failed: {e}")
                ai_requests_counter.labels(model="openai-json", status="error").inc()

        raise ClassificationUnavailable("Both Gemini and OpenAI failed to generate a JSON response.")

    async def _generate_gemini_json_response(self, prompt: str) -> dict:
        response = await asyncio.to_thread(
            self.gemini_client.models.generate_content,
            model=self.settings.gemini_model,
            contents=f"{prompt}\n\nPlease respond with valid JSON only.",
            config=GenerateContentConfig(
                temperature=0.1,
                response_mime_type="application/json"
            )
        )
        return json.loads(response.text)

    async def _generate_openai_json_response(self, prompt: str) -> dict:
        """Generates a JSON response from OpenAI using its JSON mode."""
        response = await self.openai_client.chat.completions.create(
            model=self.settings.openai_model,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": "You are a helpful assistant designed to output JSON."},
                {"role": "user", "content": prompt}
            ],
            temperature=0.1,
        )
        return json.loads(response.choices[0].message.content)
