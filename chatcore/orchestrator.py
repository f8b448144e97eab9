import asyncio
import contextlib
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncGenerator, Dict, List, Optional

from .classifier import Classifier
from .config import AppSettings
from .errors import CancelledFailure, ChatError, PersistenceFailure
from .handlers import RouteHandler, Turn, run_handler
from .llm import GeminiClient
from .memory_store import MemoryStore
from .prompts import PromptBuilder, format_messages_for_context
from .recall import build_suggested_memory, crossed_summary_threshold, should_store_memory
from .resilience import call_with_retry
from .scheduler import BackgroundScheduler, Job
from .schemas import (
    ChatMessage,
    ChatRequest,
    ClassificationResult,
    DoneChunk,
    ErrorChunk,
    HandlerResult,
    MemoryDetection,
    RouteChunk,
    Session,
    StreamChunk,
    SuggestedMemory,
    SuggestionsChunk,
    TenantContext,
    TERMINAL_CHUNK_TYPES,
)
from .sessions import SessionRepository, new_message

logger = logging.getLogger("uvicorn.error")

CANCELLED_MESSAGE = "Request cancelled."
GENERIC_ERROR_MESSAGE = "Something went wrong while answering. Please try again."
MEMORY_RESPONSE_CHARS = 1000

SUMMARY_PROMPT = (
    "Summarize the key facts, decisions, preferences and open tasks from this conversation "
    "in two to four sentences. Write it as notes for a future conversation, without greetings.\n\n"
)


class RequestState(str, Enum):
    START = "start"
    CLASSIFIED = "classified"
    DISPATCHED = "dispatched"
    STREAMING = "streaming"
    FINALIZED = "finalized"
    FAILED = "failed"
    CANCELLED = "cancelled"


_ABORT_STATES = {RequestState.FAILED, RequestState.CANCELLED}
_TRANSITIONS = {
    RequestState.START: {RequestState.CLASSIFIED} | _ABORT_STATES,
    RequestState.CLASSIFIED: {RequestState.DISPATCHED} | _ABORT_STATES,
    RequestState.DISPATCHED: {RequestState.STREAMING} | _ABORT_STATES,
    RequestState.STREAMING: {RequestState.FINALIZED} | _ABORT_STATES,
    RequestState.FINALIZED: set(),
    RequestState.FAILED: set(),
    RequestState.CANCELLED: set(),
}


class RequestTracker:
    def __init__(self, request_id: str):
        self.request_id = request_id
        self.state = RequestState.START
        self.started = time.monotonic()

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self.state]

    def transition(self, new_state: RequestState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal transition {self.state.value} -> {new_state.value}")
        logger.debug("Request %s: %s -> %s", self.request_id[:8], self.state.value, new_state.value)
        self.state = new_state

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


@dataclass
class TurnOutcome:
    tenant: TenantContext
    session: Session
    user_message: ChatMessage
    assistant_message: ChatMessage
    result: HandlerResult
    detection: MemoryDetection
    suggested_memory: Optional[SuggestedMemory] = None
    remembered: bool = False


@dataclass
class _Finalized:
    chunk: DoneChunk


def stored_by_tool(result: HandlerResult) -> bool:
    """True when a successful remember call already wrote this turn's memory."""
    return any(call.name == "remember" and call.success for call in result.function_calls)


_END = object()


class ChatOrchestrator:
    def __init__(
        self,
        settings: AppSettings,
        sessions: SessionRepository,
        memory: MemoryStore,
        classifier: Classifier,
        prompts: PromptBuilder,
        handlers: Dict[str, RouteHandler],
        scheduler: BackgroundScheduler,
        model: GeminiClient,
    ):
        self.settings = settings
        self.sessions = sessions
        self.memory = memory
        self.classifier = classifier
        self.prompts = prompts
        self.handlers = handlers
        self.scheduler = scheduler
        self.model = model

    async def _classify(self, message: str) -> ClassificationResult:
        try:
            return await self.classifier.classify(message)
        except Exception as exc:
            logger.warning("Classification failed, defaulting to casual: %s", exc)
            return ClassificationResult(route="casual", confidence=1.0, reasoning="classifier unavailable")

    async def _append(self, session: Session, message: ChatMessage) -> None:
        try:
            await self.sessions.add_message(session, message)
        except PersistenceFailure as exc:
            # The background persist job writes it again.
            logger.error("Message write failed: %s", exc)

    async def _run_turn(
        self,
        request: ChatRequest,
        tenant: TenantContext,
        tracker: RequestTracker,
        cancel_event: asyncio.Event,
        emit,
    ) -> TurnOutcome:
        session = await self.sessions.get_or_create_session(tenant.tenant_id, tenant.user_id, request.session_id)
        history = list(session.messages)
        user_message = new_message("user", request.message, metadata={"request_id": tracker.request_id})
        await self._append(session, user_message)

        classification = await self._classify(request.message)
        tracker.transition(RequestState.CLASSIFIED)

        system_prompt, temperature = await self.prompts.build(
            classification.route, tenant, history, request.context
        )
        await emit(
            RouteChunk(
                route=classification.route,
                confidence=classification.confidence,
                reasoning=classification.reasoning,
            )
        )
        handler = self.handlers[classification.route]
        tracker.transition(RequestState.DISPATCHED)
        turn = Turn(
            message=request.message,
            tenant=tenant,
            session=session,
            classification=classification,
            system_prompt=system_prompt,
            temperature=temperature,
            history=history,
            cancel_event=cancel_event,
        )
        tracker.transition(RequestState.STREAMING)
        result = await run_handler(handler, turn, emit)

        detection = should_store_memory(request.message, result.content)
        remembered = stored_by_tool(result)
        suggested = None
        if not remembered:
            suggested = build_suggested_memory(detection, request.message, result.content, classification.route)
        if result.suggestions:
            await emit(SuggestionsChunk(suggestions=result.suggestions))

        assistant_message = new_message(
            "assistant",
            result.content,
            route=classification.route,
            citations=result.citations,
            suggestions=result.suggestions,
            metadata={
                **result.metadata,
                "request_id": tracker.request_id,
                "route_confidence": classification.confidence,
                "model": self.model.model_id,
                "latency_ms": tracker.elapsed_ms(),
                "degraded": result.degraded,
                "function_calls": [c.model_dump(mode="json") for c in result.function_calls],
            },
        )
        # Committed before the terminal chunk so callers always see durable state.
        await self._append(session, assistant_message)
        outcome = TurnOutcome(
            tenant=tenant,
            session=session,
            user_message=user_message,
            assistant_message=assistant_message,
            result=result,
            detection=detection,
            suggested_memory=suggested,
            remembered=remembered,
        )
        # From here the turn stands: its jobs run even if the consumer never reads done.
        tracker.transition(RequestState.FINALIZED)
        self.scheduler.schedule(f"turn:{tracker.request_id[:8]}", self.build_turn_jobs(outcome))
        done = DoneChunk(message=assistant_message, session_id=session.id, suggested_memory=suggested)
        await emit(_Finalized(done))
        return outcome

    async def stream(
        self,
        request: ChatRequest,
        tenant: TenantContext,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncGenerator[StreamChunk, None]:
        """Yield the chunks of one chat turn, ending with exactly one done or error chunk."""
        tracker = RequestTracker(request.request_id or str(uuid.uuid4()))
        cancel_event = cancel_event or asyncio.Event()
        queue: asyncio.Queue = asyncio.Queue()

        async def producer() -> None:
            try:
                await self._run_turn(request, tenant, tracker, cancel_event, queue.put)
            except CancelledFailure:
                if not tracker.terminal:
                    tracker.transition(RequestState.CANCELLED)
                queue.put_nowait(ErrorChunk(error=CANCELLED_MESSAGE))
            except Exception:
                logger.exception("Chat request %s failed", tracker.request_id[:8])
                if not tracker.terminal:
                    tracker.transition(RequestState.FAILED)
                queue.put_nowait(ErrorChunk(error=GENERIC_ERROR_MESSAGE))
            finally:
                queue.put_nowait(_END)

        task = asyncio.create_task(producer())
        cancel_waiter = asyncio.create_task(cancel_event.wait())
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    getter.cancel()
                    break
                item = getter.result()
                if item is _END:
                    # Producer ended without a terminal chunk; cannot happen unless it was cancelled.
                    yield ErrorChunk(error=GENERIC_ERROR_MESSAGE)
                    return
                if isinstance(item, _Finalized):
                    yield item.chunk
                    return
                yield item
                if item.type in TERMINAL_CHUNK_TYPES:
                    return
            if tracker.state is RequestState.FINALIZED:
                # The cancel lost the race: the answer is committed and its jobs scheduled.
                while not queue.empty():
                    item = queue.get_nowait()
                    if isinstance(item, _Finalized):
                        logger.info("Chat request %s finalized before cancel", tracker.request_id[:8])
                        yield item.chunk
                        return
            # Cancelled by the caller: abort the in-flight work, then one terminal chunk.
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            if not tracker.terminal:
                tracker.transition(RequestState.CANCELLED)
            logger.info("Chat request %s cancelled", tracker.request_id[:8])
            yield ErrorChunk(error=CANCELLED_MESSAGE)
        finally:
            cancel_waiter.cancel()
            if not task.done():
                task.cancel()

    async def respond(
        self,
        request: ChatRequest,
        tenant: TenantContext,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """Non-streaming variant: the assembled assistant message plus session id."""
        async for chunk in self.stream(request, tenant, cancel_event):
            if isinstance(chunk, DoneChunk):
                payload: Dict[str, Any] = {
                    "message": chunk.message.model_dump(mode="json"),
                    "sessionId": chunk.session_id,
                }
                if chunk.suggested_memory is not None:
                    payload["suggestedMemory"] = chunk.suggested_memory.model_dump(mode="json")
                return payload
            if chunk.type in TERMINAL_CHUNK_TYPES:
                if chunk.error == CANCELLED_MESSAGE:
                    raise CancelledFailure("request cancelled")
                raise ChatError("chat turn failed", user_message=chunk.error)
        raise ChatError("stream ended without a terminal chunk")

    def build_turn_jobs(self, turn: TurnOutcome) -> List[Job]:
        """Follow-up jobs for a finalized turn, run in order after the response."""

        async def persist_messages() -> None:
            await self.sessions.persist_messages(turn.session, [turn.user_message, turn.assistant_message])

        async def write_conversation_memory() -> None:
            if turn.remembered:
                logger.debug("Skipping conversation memory: remember tool stored this turn")
                return
            if turn.detection.should:
                logger.debug("Skipping conversation memory: suggested %s memory instead", turn.detection.type)
                return
            if turn.result.degraded:
                logger.debug("Skipping conversation memory for degraded turn")
                return
            route = turn.assistant_message.route or "casual"
            await self.memory.add(
                f'User: "{turn.user_message.content}" → Assistant response about {route}',
                turn.tenant.tenant_id,
                turn.tenant.user_id,
                client_id=turn.tenant.client_id,
                session_id=turn.session.id,
                type="conversation",
                importance="high" if route == "memory" else "medium",
                topic=route,
                messages=[
                    {"role": "user", "content": turn.user_message.content},
                    {"role": "assistant", "content": turn.assistant_message.content[:MEMORY_RESPONSE_CHARS]},
                ],
            )

        async def summarize_session() -> None:
            await self.summarize_if_due(turn)

        return [
            ("persist messages", persist_messages),
            ("conversation memory", write_conversation_memory),
            ("session summary", summarize_session),
        ]

    async def summarize_if_due(self, turn: TurnOutcome) -> bool:
        interval = self.settings.memory.summary_interval
        count = await self.sessions.persisted_count(turn.session.id)
        if not crossed_summary_threshold(count - 2, count, interval):
            return False
        window = await self.sessions.get_messages(turn.session.id, interval)
        result = await call_with_retry(
            lambda: self.model.generate(SUMMARY_PROMPT + format_messages_for_context(window), temperature=0.3),
            "Session summary",
            delay=self.settings.resilience.retry_delay_s,
        )
        summary = result.text.strip()
        if not summary:
            return False
        await self.memory.store_conversation_summary(
            turn.tenant.tenant_id,
            turn.tenant.user_id,
            summary,
            client_id=turn.tenant.client_id,
            session_id=turn.session.id,
        )
        logger.info("Stored session summary for %s after %s messages", turn.session.id[:8], count)
        return True
