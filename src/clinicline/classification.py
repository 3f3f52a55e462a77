import json
import logging

import httpx

from clinicline.circuit_breaker import CircuitBreaker
from clinicline.validation import classify_intent as keyword_intent

logger = logging.getLogger(__name__)

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
INTENTS = ("book", "reschedule", "cancel", "escalate", "unknown")
KEYWORD_CONFIDENCE = 0.6

INTENT_PROMPT = """You classify the opening request of a caller phoning a medical clinic's receptionist.
Return ONLY valid JSON: {"action": "...", "confidence": 0.0-1.0}

action is exactly one of:
- book: wants a new appointment
- reschedule: wants to move an existing appointment
- cancel: wants to cancel an existing appointment
- escalate: wants to speak to a person, or has a request that is not about appointments
- unknown: unclear, silence, or noise

Only classify what the CALLER said. Do not guess."""


class IntentClassifier:
    """Top-level intent for the first caller turn.

    Uses GPT-4o-mini in JSON mode when an API key is configured; any failure
    (no key, circuit open, HTTP error, malformed reply) falls back to the
    keyword classifier so a turn never waits on the model.
    """

    def __init__(
        self,
        api_key: str = "",
        *,
        model: str = "gpt-4o-mini",
        timeout: float = 3.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._client = client
        self._circuit = CircuitBreaker(label="OpenAI intent")

    def _fallback(self, text: str) -> dict:
        action = keyword_intent(text)
        confidence = 0.0 if action == "unknown" else KEYWORD_CONFIDENCE
        return {"action": action, "confidence": confidence, "source": "keywords"}

    async def classify_intent(self, text: str) -> dict:
        if not text.strip():
            return {"action": "unknown", "confidence": 0.0, "source": "empty"}
        if not self.api_key or not self._circuit.should_try():
            return self._fallback(text)

        try:
            reply = await self._complete(text)
            parsed = json.loads(reply)
            action = str(parsed.get("action", "unknown")).lower()
            if action not in INTENTS:
                raise ValueError(f"unexpected action {action!r}")
            confidence = float(parsed.get("confidence", 0.0))
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            self._circuit.record_failure()
            logger.error("intent classification failed, using keywords: %s", e)
            return self._fallback(text)

        self._circuit.record_success()
        # the model shrugging is not better than a keyword hit
        if action == "unknown":
            fallback = self._fallback(text)
            if fallback["action"] != "unknown":
                return fallback
        return {"action": action, "confidence": confidence, "source": "llm"}

    async def _complete(self, text: str) -> str:
        body = {
            "model": self.model,
            "temperature": 0.0,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": INTENT_PROMPT},
                {"role": "user", "content": text},
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if self._client is not None:
            resp = await self._client.post(OPENAI_URL, headers=headers, json=body)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(OPENAI_URL, headers=headers, json=body)
        resp.raise_for_status()
        return resp.json()["choices"][0]["message"]["content"]
