import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel

from .citations import (
    CitationCollector,
    SuggestionsFilter,
    insert_inline_citations,
    split_suggestions,
    strip_decimal_markers_with_supports,
)
from .config import AppSettings
from .documents import DocumentCatalog, DocumentSearch
from .errors import CancelledFailure, ChatError, CircuitOpenFailure, ToolExecutionFailure
from .functions import FunctionExecutor, summarize_function_result
from .llm import GeminiClient
from .memory_store import MemoryStore
from .recall import recall_query
from .resilience import call_with_retry, sleep_unless_cancelled
from .schemas import (
    ChatMessage,
    CitationChunk,
    ClassificationResult,
    ContentChunk,
    FunctionCallChunk,
    FunctionCallRecord,
    FunctionResultChunk,
    GenerationResult,
    HandlerResult,
    Route,
    Session,
    TenantContext,
)

logger = logging.getLogger("uvicorn.error")

Emit = Callable[[BaseModel], Awaitable[None]]

APOLOGY = "I'm having trouble connecting to the AI service right now. Please try again in a moment."
TOOL_FAILURE_MESSAGE = "I tried to get that information but encountered an error. Please try again."
NO_RESULTS_MESSAGE = "No results found for your request."
FORMAT_FAILURE_MESSAGE = "I found some data but had trouble formatting it. Please try rephrasing your question."
DASHBOARD_HINT = (
    "I can help you with client information, alerts, navigation, and more. "
    "What would you like to know?"
)
DASHBOARD_SUGGESTIONS = ["Show more details", "View related alerts", "Navigate to dashboard"]
NO_TRAINING_DOCUMENTS_MESSAGE = (
    "No documents are currently enabled for AI training. Go to Knowledge Base and enable "
    "'AI Training' on documents you want me to reference."
)
RAG_FAILURE_MESSAGE = (
    "I couldn't search the knowledge base right now. Please try again or ask a different question."
)
RAG_EMPTY_MESSAGE = "I couldn't find anything about that in your documents."
NO_MEMORIES_MESSAGE = (
    "I don't have any memories of us discussing that topic. "
    "Would you like to tell me about it so I can remember for next time?"
)
MEMORY_SUGGESTIONS = ["Tell me more about that", "What else do you remember?", "Let me update you on this"]
CASUAL_FALLBACK = "I'm here to help! You can ask me about clients, performance metrics, or app features."

INTERPRET_INSTRUCTIONS = (
    "Provide a helpful, natural language summary of this data. If the data is empty or shows zero "
    "results, tell the user clearly that nothing was found. Do not output raw JSON. "
    "Use short lists where it helps readability."
)

FALLBACK_NAME_FIELDS = ("name", "title", "subject", "senderName")
FALLBACK_DETAIL_FIELDS = ("stage", "status", "senderEmail", "snippet", "content")
FALLBACK_DATE_FIELDS = ("date", "receivedAt", "created_at", "modifiedTime")
NESTED_LIST_KEYS = ("emails", "events", "files", "clients", "alerts", "tickets", "communications")
MAX_FALLBACK_ITEMS = 10


@dataclass
class Turn:
    message: str
    tenant: TenantContext
    session: Session
    classification: ClassificationResult
    system_prompt: str
    temperature: float
    history: Sequence[ChatMessage] = field(default_factory=list)
    cancel_event: Optional[asyncio.Event] = None

    @property
    def route(self) -> Route:
        return self.classification.route


class RouteHandler(Protocol):
    async def handle(self, turn: Turn, emit: Emit) -> HandlerResult:
        ...


async def emit_text(emit: Emit, text: str, chunk_size: int) -> None:
    for i in range(0, len(text), chunk_size):
        await emit(ContentChunk(content=text[i:i + chunk_size]))


def _first_field(item: Dict[str, Any], fields: Sequence[str]) -> Optional[str]:
    for name in fields:
        value = item.get(name)
        if value not in (None, ""):
            return str(value)
    return None


def format_fallback_result(result: Any) -> str:
    """Render a tool result for people when the model could not summarise it."""
    if isinstance(result, list):
        if not result:
            return NO_RESULTS_MESSAGE
        lines = []
        for i, item in enumerate(result[:MAX_FALLBACK_ITEMS], start=1):
            if not isinstance(item, dict):
                lines.append(f"{i}. {item}")
                continue
            line = f"{i}. **{_first_field(item, FALLBACK_NAME_FIELDS) or 'Item'}**"
            detail = _first_field(item, FALLBACK_DETAIL_FIELDS)
            if detail:
                line += f" - {detail[:100]}"
            date = _first_field(item, FALLBACK_DATE_FIELDS)
            if date:
                line += f" ({date})"
            lines.append(line)
        text = f"Here's what I found ({len(result)} results):\n\n" + "\n".join(lines)
        if len(result) > MAX_FALLBACK_ITEMS:
            text += f"\n\n...and {len(result) - MAX_FALLBACK_ITEMS} more"
        return text
    if isinstance(result, dict):
        for key in NESTED_LIST_KEYS:
            if isinstance(result.get(key), list):
                return format_fallback_result(result[key])
        if isinstance(result.get("message"), str) and result["message"].strip():
            return result["message"]
        if isinstance(result.get("url"), str):
            return f"Here's the page you asked for: {result['url']}"
    return FORMAT_FAILURE_MESSAGE


def _looks_like_raw_data(text: str) -> bool:
    stripped = text.strip()
    if not stripped or stripped[0] not in "[{":
        return False
    try:
        json.loads(stripped)
    except json.JSONDecodeError:
        return False
    return True


class _ModelCaller:
    def __init__(self, model: GeminiClient, settings: AppSettings):
        self.model = model
        self.settings = settings

    async def generate(self, turn: Turn, prompt: str, label: str, **kwargs: Any) -> GenerationResult:
        kwargs.setdefault("system_instruction", turn.system_prompt)
        kwargs.setdefault("temperature", turn.temperature)
        return await call_with_retry(
            lambda: self.model.generate(prompt, **kwargs),
            label,
            delay=self.settings.resilience.retry_delay_s,
            cancel_event=turn.cancel_event,
        )


class DashboardHandler(_ModelCaller):
    def __init__(self, model: GeminiClient, settings: AppSettings, executor: FunctionExecutor):
        super().__init__(model, settings)
        self.executor = executor

    async def handle(self, turn: Turn, emit: Emit) -> HandlerResult:
        first = await self.generate(
            turn, turn.message, "Dashboard route", tools=self.executor.declarations
        )
        if first.function_call is None:
            text, suggestions = split_suggestions(first.text)
            content = text if text and not _looks_like_raw_data(text) else DASHBOARD_HINT
            await emit_text(emit, content, self.settings.stream_chunk_size)
            return HandlerResult(content=content, suggestions=suggestions or DASHBOARD_SUGGESTIONS)

        call = first.function_call
        await emit(FunctionCallChunk(name=call.name, args=call.args))
        try:
            result = await self.executor.execute(call.name, turn.tenant, call.args)
        except ToolExecutionFailure as exc:
            logger.warning("Function %s failed: %s", call.name, exc.detail)
            # Marked as an error so it is never summarised as data.
            error_result = {"error": True, "message": exc.user_message, "functionName": call.name}
            await emit(FunctionResultChunk(name=call.name, success=False, summary=f"{call.name} failed"))
            await emit_text(emit, TOOL_FAILURE_MESSAGE, self.settings.stream_chunk_size)
            return HandlerResult(
                content=TOOL_FAILURE_MESSAGE,
                suggestions=DASHBOARD_SUGGESTIONS,
                function_calls=[FunctionCallRecord(name=call.name, args=call.args, result=error_result, success=False)],
                degraded=True,
            )

        await emit(
            FunctionResultChunk(name=call.name, success=True, summary=summarize_function_result(call.name, result))
        )
        interpret_prompt = (
            f'The user asked: "{turn.message}"\n\n'
            f"I called the function {call.name} and got this result:\n"
            f"{json.dumps(result, default=str)[:12000]}\n\n{INTERPRET_INSTRUCTIONS}"
        )
        text, suggestions = "", []
        try:
            second = await self.generate(
                turn, interpret_prompt, "Dashboard interpretation", temperature=max(turn.temperature, 0.7)
            )
            text, suggestions = split_suggestions(second.text)
        except CancelledFailure:
            raise
        except ChatError as exc:
            logger.warning("Dashboard interpretation failed, using fallback formatter: %s", exc)
        if not text.strip() or _looks_like_raw_data(text):
            text = format_fallback_result(result)
        await emit_text(emit, text, self.settings.stream_chunk_size)
        return HandlerResult(
            content=text,
            suggestions=suggestions or DASHBOARD_SUGGESTIONS,
            function_calls=[FunctionCallRecord(name=call.name, args=call.args, result=result)],
        )


class RagHandler:
    def __init__(self, settings: AppSettings, catalog: DocumentCatalog, search: DocumentSearch):
        self.settings = settings
        self.catalog = catalog
        self.search = search

    async def _lookups(self, tenant_id: str) -> tuple:
        allow_list, store = await asyncio.gather(
            self.catalog.training_allow_list(tenant_id),
            self.catalog.active_store(tenant_id),
            return_exceptions=True,
        )
        for value in (allow_list, store):
            if isinstance(value, asyncio.CancelledError):
                raise value
        if isinstance(allow_list, BaseException):
            # Fail open: search without the allow-list rather than refusing.
            logger.warning("Training allow-list lookup failed: %s", allow_list)
            allow_list = None
        if isinstance(store, BaseException):
            logger.warning("Search store lookup failed: %s", store)
            store = None
        return allow_list, store

    async def handle(self, turn: Turn, emit: Emit) -> HandlerResult:
        chunk_size = self.settings.stream_chunk_size
        allow_list, store = await self._lookups(turn.tenant.tenant_id)
        if allow_list is not None and not allow_list:
            await emit_text(emit, NO_TRAINING_DOCUMENTS_MESSAGE, chunk_size)
            return HandlerResult(content=NO_TRAINING_DOCUMENTS_MESSAGE, metadata={"documents_enabled": 0})

        try:
            found = await self.search.search(
                turn.message,
                turn.tenant.tenant_id,
                client_id=turn.tenant.client_id,
                allow_list=allow_list,
                store_name=store,
            )
        except CancelledFailure:
            raise
        except CircuitOpenFailure as exc:
            logger.warning("Document search skipped: %s", exc.detail)
            await emit_text(emit, exc.user_message, chunk_size)
            return HandlerResult(
                content=exc.user_message,
                degraded=True,
                metadata={"circuit_open": True, "retry_after": exc.retry_after},
            )
        except Exception as exc:
            logger.warning("Document search failed: %s", exc)
            await emit_text(emit, RAG_FAILURE_MESSAGE, chunk_size)
            return HandlerResult(content=RAG_FAILURE_MESSAGE, degraded=True)

        collector = CitationCollector()
        for source in found.sources:
            citation = collector.add_document(source.document_id, source.document_name, source.text[:300] or None)
            if citation is not None:
                await emit(CitationChunk(citation=citation))
        content, suggestions = split_suggestions(found.content)
        content = content or RAG_EMPTY_MESSAGE
        await emit_text(emit, content, chunk_size)
        return HandlerResult(
            content=content,
            citations=collector.citations,
            suggestions=suggestions,
            metadata={"grounded": found.is_grounded, "documents_enabled": len(allow_list or [])},
        )


class MemoryHandler(_ModelCaller):
    def __init__(self, model: GeminiClient, settings: AppSettings, memory: MemoryStore):
        super().__init__(model, settings)
        self.memory = memory

    async def handle(self, turn: Turn, emit: Emit) -> HandlerResult:
        chunk_size = self.settings.stream_chunk_size
        memories = await self.memory.search(
            recall_query(turn.message),
            turn.tenant.tenant_id,
            turn.tenant.user_id,
            client_id=turn.tenant.client_id,
            limit=self.settings.memory.recall_limit,
            min_score=self.settings.memory.recall_min_score,
        )
        if not memories:
            await emit_text(emit, NO_MEMORIES_MESSAGE, chunk_size)
            return HandlerResult(
                content=NO_MEMORIES_MESSAGE, suggestions=MEMORY_SUGGESTIONS, metadata={"memories_used": 0}
            )
        memory_lines = "\n".join(f"[{i + 1}] {m.content}" for i, m in enumerate(memories))
        prompt = (
            "The user is asking about a previous conversation. Based on these memories, provide a helpful response.\n\n"
            f"User's question: {turn.message}\n\nRelevant memories:\n{memory_lines}\n\n"
            "Respond naturally as if you remember the conversation. Be specific about what was discussed. "
            "If the memories don't fully answer the question, say what you do remember and ask for clarification."
        )
        result = await self.generate(turn, prompt, "Memory route")
        content, _ = split_suggestions(result.text)
        content = content or NO_MEMORIES_MESSAGE
        await emit_text(emit, content, chunk_size)
        return HandlerResult(
            content=content, suggestions=MEMORY_SUGGESTIONS, metadata={"memories_used": len(memories)}
        )


class CasualHandler(_ModelCaller):
    """Plain generation; the web route adds search grounding and citations."""

    async def handle(self, turn: Turn, emit: Emit) -> HandlerResult:
        if turn.route == "web":
            return await self._grounded(turn, emit)
        return await self._streamed(turn, emit)

    async def _grounded(self, turn: Turn, emit: Emit) -> HandlerResult:
        result = await self.generate(turn, turn.message, "Web route", web_search=True)
        collector = CitationCollector()
        if not result.text.strip():
            await emit_text(emit, CASUAL_FALLBACK, self.settings.stream_chunk_size)
            return HandlerResult(content=CASUAL_FALLBACK)
        text = result.text
        supports = []
        if result.grounding:
            for citation in collector.add_grounding(result.grounding):
                await emit(CitationChunk(citation=citation))
            supports = result.grounding.supports
        text, supports = strip_decimal_markers_with_supports(text, supports)
        content, suggestions = split_suggestions(text)
        if supports and collector.citations:
            content = insert_inline_citations(content, supports, collector.by_grounding_index)
        await emit_text(emit, content, self.settings.stream_chunk_size)
        return HandlerResult(content=content, citations=collector.citations, suggestions=suggestions)

    async def _streamed(self, turn: Turn, emit: Emit) -> HandlerResult:
        emitted = False
        suggestions_filter = SuggestionsFilter()

        async def attempt() -> None:
            nonlocal emitted
            async for part in self.model.stream_generate(
                turn.message, system_instruction=turn.system_prompt, temperature=turn.temperature
            ):
                out = suggestions_filter.feed(part.text)
                if out:
                    emitted = True
                    await emit(ContentChunk(content=out))

        try:
            await attempt()
        except CancelledFailure:
            raise
        except Exception as exc:
            # Only a stream that produced nothing can be replayed safely.
            if emitted or (turn.cancel_event is not None and turn.cancel_event.is_set()):
                raise
            logger.warning("Casual route stream failed, retrying: %s", exc)
            if await sleep_unless_cancelled(self.settings.resilience.retry_delay_s, turn.cancel_event):
                raise CancelledFailure("casual stream cancelled during backoff") from exc
            suggestions_filter = SuggestionsFilter()
            await attempt()

        tail = suggestions_filter.flush()
        if tail:
            await emit(ContentChunk(content=tail))
        content, suggestions = split_suggestions(suggestions_filter.text)
        if not content.strip():
            content = CASUAL_FALLBACK
            await emit(ContentChunk(content=content))
        return HandlerResult(content=content, suggestions=suggestions)


def build_handler_registry(
    settings: AppSettings,
    model: GeminiClient,
    executor: FunctionExecutor,
    memory: MemoryStore,
    catalog: DocumentCatalog,
    search: DocumentSearch,
) -> Dict[str, RouteHandler]:
    casual = CasualHandler(model, settings)
    return {
        "dashboard": DashboardHandler(model, settings, executor),
        "rag": RagHandler(settings, catalog, search),
        "memory": MemoryHandler(model, settings, memory),
        "casual": casual,
        "web": casual,
    }


async def run_handler(handler: RouteHandler, turn: Turn, emit: Emit) -> HandlerResult:
    """Run a handler under the shared failure policy.

    Cancellation propagates. Any other failure becomes a short apology; content
    already streamed is kept and the apology is appended after it.
    """
    streamed: List[str] = []

    async def tracking_emit(chunk: BaseModel) -> None:
        if isinstance(chunk, ContentChunk):
            streamed.append(chunk.content)
        await emit(chunk)

    try:
        return await handler.handle(turn, tracking_emit)
    except (CancelledFailure, asyncio.CancelledError):
        raise
    except ChatError as exc:
        logger.warning("%s route failed: %s", turn.route, exc.detail or exc)
    except Exception:
        logger.exception("%s route failed unexpectedly", turn.route)
    apology = f"\n\n{APOLOGY}" if streamed else APOLOGY
    await emit(ContentChunk(content=apology))
    return HandlerResult(content="".join(streamed) + apology, degraded=True)
