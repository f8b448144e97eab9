import json
import logging
import re
from typing import Protocol

from pydantic import ValidationError

from .errors import ClassificationFailure, ChatError
from .llm import GeminiClient
from .schemas import ClassificationResult

logger = logging.getLogger("uvicorn.error")

CLASSIFIER_PROMPT = """Classify the user's message into exactly one route.

Routes:
- dashboard: questions about the agency's own data (clients, pipeline, alerts, tickets, emails, calendar) or navigation requests.
- rag: questions answered from the agency's uploaded documents or knowledge base.
- memory: the user asks what was discussed or decided before ("do you remember", "what did we say about").
- web: questions that need current information from the internet.
- casual: greetings, small talk and general questions.

Return only JSON: {"route": "...", "confidence": 0.0-1.0, "reasoning": "short reason"}

Message: """

_JSON_RE = re.compile(r"\{[\s\S]*\}")


class Classifier(Protocol):
    async def classify(self, text: str) -> ClassificationResult:
        ...


class ModelRouteClassifier:
    """Asks the model for a route; any failure surfaces as ClassificationFailure."""

    def __init__(self, client: GeminiClient):
        self.client = client

    async def classify(self, text: str) -> ClassificationResult:
        try:
            result = await self.client.generate(CLASSIFIER_PROMPT + text, temperature=0.0)
        except ChatError as exc:
            raise ClassificationFailure(str(exc)) from exc
        match = _JSON_RE.search(result.text or "")
        if not match:
            raise ClassificationFailure(f"no JSON in classifier output: {result.text[:200]!r}")
        try:
            return ClassificationResult(**json.loads(match.group(0)))
        except (json.JSONDecodeError, TypeError, ValidationError) as exc:
            raise ClassificationFailure(f"invalid classifier output: {exc}") from exc
