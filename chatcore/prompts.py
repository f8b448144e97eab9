import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import AppSettings
from .db import Database
from .memory_store import MemoryStore
from .schemas import ChatMessage, Route, TenantContext

logger = logging.getLogger("uvicorn.error")

CLIENT_CONTEXT_QUERY = "client context preferences decisions"

MEMORY_CAPABILITY = """MEMORY CAPABILITY:
When users ask you to remember, note, or keep track of something, acknowledge it naturally.
If you're asked to remember a preference, decision, or fact about a client, confirm you've noted it."""

WEB_CITATION_INSTRUCTION = """When using information from web search, include inline citation markers like [1], [2], [3] in the text.
Each citation number should reference a source you found.
Example: "Google Ads typically has higher CTR [1] than Meta Ads in search campaigns [2]."""

SUGGESTIONS_INSTRUCTION = """After your answer, add up to three short follow-up questions the user might ask next, in exactly this format:
---SUGGESTIONS---
["first suggestion", "second suggestion", "third suggestion"]"""


def format_messages_for_context(messages: Sequence[ChatMessage]) -> str:
    lines = []
    for message in messages:
        speaker = "User" if message.role == "user" else "Assistant"
        lines.append(f"{speaker}: {message.content}")
    return "\n".join(lines)


def resolve_temperature(route: Route, ai_config: Dict[str, Any], settings: AppSettings) -> float:
    if route == "dashboard":
        return settings.model.dashboard_temperature
    configured = ai_config.get("temperature")
    if isinstance(configured, (int, float)):
        return float(configured)
    return settings.model.default_temperature


class PromptBuilder:
    def __init__(self, settings: AppSettings, db: Database, memory: MemoryStore):
        self.settings = settings
        self.db = db
        self.memory = memory

    async def build(
        self,
        route: Route,
        tenant: TenantContext,
        history: Sequence[ChatMessage],
        overrides: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, float]:
        """Assemble the system prompt and temperature for one turn.

        Context sources that fail to load are skipped with a warning.
        """
        overrides = overrides or {}
        try:
            ai_config = await self.db.get_ai_config(tenant.tenant_id)
        except Exception as exc:
            logger.warning("Failed to load ai_config for tenant %s: %s", tenant.tenant_id[:8], exc)
            ai_config = {}
        try:
            preferences = await self.db.get_user_preferences(tenant.tenant_id, tenant.user_id)
        except Exception as exc:
            logger.warning("Failed to load preferences for user %s: %s", tenant.user_id[:8], exc)
            preferences = {}
        user_ai = preferences.get("ai") if isinstance(preferences.get("ai"), dict) else {}
        name = (
            overrides.get("assistant_name")
            or user_ai.get("assistant_name")
            or ai_config.get("assistant_name")
            or self.settings.assistant_name
        )
        tone = ai_config.get("response_tone") or "professional"
        length = ai_config.get("response_length") or "detailed"

        parts: List[str] = [
            f"Your name is {name}. You are an AI assistant for an agency management platform.\n"
            "You help agency teams manage their clients, view performance data, and navigate the app.\n"
            f"Respond in a {tone} tone. Keep responses {length}.\n"
            f"This query was classified as: {route}",
            MEMORY_CAPABILITY,
        ]
        recent = list(history)[-self.settings.recent_message_limit:]
        if recent:
            parts.append(f"## Recent Conversation\n{format_messages_for_context(recent)}")

        if tenant.client_id:
            try:
                memories = await self.memory.search(
                    CLIENT_CONTEXT_QUERY,
                    tenant.tenant_id,
                    tenant.user_id,
                    client_id=tenant.client_id,
                    limit=self.settings.memory.client_context_limit,
                    min_score=self.settings.memory.client_context_min_score,
                )
            except Exception as exc:
                logger.warning("Failed to load client memories: %s", exc)
                memories = []
            if memories:
                lines = "\n".join(f"[{i + 1}] {m.content}" for i, m in enumerate(memories))
                parts.append(
                    "<client_context>\nThe user is currently working with a specific client. "
                    f"Here are relevant memories for this client:\n{lines}\n"
                    "Use this context to provide client-specific answers.\n</client_context>"
                )

        if route == "web":
            parts.append(WEB_CITATION_INSTRUCTION)
        parts.append(SUGGESTIONS_INSTRUCTION)
        return "\n\n".join(parts), resolve_temperature(route, ai_config, self.settings)
