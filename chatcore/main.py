import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from .classifier import Classifier, ModelRouteClassifier
from .config import AppSettings, load_settings
from .db import Database
from .documents import DocumentCatalog, DocumentSearch, DocumentSearchClient
from .errors import ChatError, RateLimitExceeded
from .functions import FunctionExecutor, build_default_executor
from .handlers import build_handler_registry
from .llm import GeminiClient
from .memory_store import MemoryStore
from .orchestrator import ChatOrchestrator
from .prompts import PromptBuilder
from .rate_limiter import RateLimiter
from .resilience import CircuitBreaker
from .scheduler import BackgroundScheduler
from .schemas import ChatRequest, MemoryCreateRequest, MemoryUpdateRequest, TenantContext
from .sessions import SessionRepository

logger = logging.getLogger("uvicorn.error")

Identity = Tuple[str, str]


class DocumentRegistration(BaseModel):
    document_id: str
    title: str = ""
    file_ref: Optional[str] = None
    client_id: Optional[str] = None
    use_for_training: bool = False


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.orchestrator


def get_memory(request: Request) -> MemoryStore:
    return request.app.state.memory


def get_sessions(request: Request) -> SessionRepository:
    return request.app.state.sessions


def get_catalog(request: Request) -> DocumentCatalog:
    return request.app.state.catalog


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_scheduler(request: Request) -> BackgroundScheduler:
    return request.app.state.scheduler


def get_request_cancel_events(request: Request) -> Dict[str, Tuple[Identity, asyncio.Event]]:
    return request.app.state.request_cancel_events


def get_identity(
    x_tenant_id: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
) -> Identity:
    # Set by the authenticating gateway; never taken from the request body.
    if not x_tenant_id or not x_user_id:
        raise HTTPException(status_code=401, detail="Missing tenant or user identity.")
    return x_tenant_id, x_user_id


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


router = APIRouter(prefix="/api/v1")


@router.get("/chat")
async def chat_health(request: Request, settings: AppSettings = Depends(get_settings)):
    search = request.app.state.document_search
    status_fn = getattr(search, "status", None)
    return {
        "status": "ok",
        "has_api_key": bool(settings.model.api_key),
        "model": settings.model.model_id,
        "pending_background_jobs": request.app.state.scheduler.pending,
        "document_search": status_fn() if callable(status_fn) else None,
    }


@router.post("/chat")
async def chat(
    body: ChatRequest,
    identity: Identity = Depends(get_identity),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    limiter: RateLimiter = Depends(get_rate_limiter),
    cancel_events: Dict[str, Tuple[Identity, asyncio.Event]] = Depends(get_request_cancel_events),
):
    tenant_id, user_id = identity
    allowed, remaining, reset_after = limiter.is_allowed(f"chat:{user_id}")
    if not allowed:
        raise RateLimitExceeded(reset_after)
    if not body.message or not body.message.strip():
        raise HTTPException(status_code=400, detail="Message is required")

    tenant = TenantContext(tenant_id=tenant_id, user_id=user_id, client_id=body.client_id)
    request_id = body.request_id or str(uuid.uuid4())
    chat_request = body.model_copy(update={"request_id": request_id})
    cancel_event = asyncio.Event()
    cancel_events[request_id] = (identity, cancel_event)
    headers = {"X-Request-Id": request_id, "X-RateLimit-Remaining": str(remaining)}

    if body.stream:

        async def event_generator():
            try:
                async for chunk in orchestrator.stream(chat_request, tenant, cancel_event):
                    yield sse_format(chunk.model_dump(mode="json"))
            finally:
                cancel_events.pop(request_id, None)

        headers["Cache-Control"] = "no-cache"
        return StreamingResponse(event_generator(), media_type="text/event-stream", headers=headers)

    try:
        payload = await orchestrator.respond(chat_request, tenant, cancel_event)
    finally:
        cancel_events.pop(request_id, None)
    return JSONResponse(payload, headers=headers)


@router.post("/chat/requests/{request_id}/cancel")
async def cancel_chat_request(
    request_id: str,
    identity: Identity = Depends(get_identity),
    cancel_events: Dict[str, Tuple[Identity, asyncio.Event]] = Depends(get_request_cancel_events),
):
    entry = cancel_events.get(request_id)
    if entry is None or entry[0] != identity:
        raise HTTPException(status_code=404, detail="Request not found")
    _, event = entry
    if not event.is_set():
        event.set()
    return {"ok": True, "status": "cancelling"}


@router.get("/chat/sessions")
async def list_chat_sessions(
    limit: int = 20,
    identity: Identity = Depends(get_identity),
    sessions: SessionRepository = Depends(get_sessions),
):
    tenant_id, user_id = identity
    return {"sessions": await sessions.list_sessions(tenant_id, user_id, limit=max(1, min(limit, 100)))}


@router.get("/chat/sessions/{session_id}/messages")
async def get_chat_messages(
    session_id: str,
    limit: int = 50,
    identity: Identity = Depends(get_identity),
    sessions: SessionRepository = Depends(get_sessions),
):
    tenant_id, user_id = identity
    session = await sessions.get_session(session_id, tenant_id, user_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    messages = await sessions.get_messages(session_id, limit=max(1, min(limit, 500)))
    return {"session_id": session_id, "messages": [m.model_dump(mode="json") for m in messages]}


@router.delete("/chat/sessions/{session_id}")
async def delete_chat_session(
    session_id: str,
    identity: Identity = Depends(get_identity),
    sessions: SessionRepository = Depends(get_sessions),
):
    tenant_id, user_id = identity
    if not await sessions.delete_session(session_id, tenant_id, user_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"ok": True}


@router.get("/memory")
async def list_memories(
    q: Optional[str] = None,
    client_id: Optional[str] = None,
    page: int = 1,
    page_size: int = 50,
    identity: Identity = Depends(get_identity),
    memory: MemoryStore = Depends(get_memory),
):
    tenant_id, user_id = identity
    if q:
        records = await memory.search(q, tenant_id, user_id, client_id=client_id, limit=max(1, min(page_size, 50)))
        return {"memories": [r.model_dump(mode="json") for r in records], "total": len(records)}
    result = await memory.list(tenant_id, user_id, client_id=client_id, page=page, page_size=page_size)
    return result.model_dump(mode="json")


@router.post("/memory", status_code=201)
async def create_memory(
    body: MemoryCreateRequest,
    identity: Identity = Depends(get_identity),
    memory: MemoryStore = Depends(get_memory),
):
    tenant_id, user_id = identity
    if not body.content.strip():
        raise HTTPException(status_code=400, detail="Content is required")
    memory_id = await memory.add(
        body.content,
        tenant_id,
        user_id,
        client_id=body.client_id,
        session_id=body.session_id,
        type=body.type,
        importance=body.importance,
        topic=body.topic,
    )
    record = await memory.get(memory_id, tenant_id)
    return record.model_dump(mode="json") if record else {"id": memory_id}


@router.get("/memory/stats")
async def memory_stats(identity: Identity = Depends(get_identity), memory: MemoryStore = Depends(get_memory)):
    tenant_id, user_id = identity
    return await memory.stats(tenant_id, user_id)


async def _owned_memory(memory: MemoryStore, memory_id: str, identity: Identity):
    tenant_id, user_id = identity
    record = await memory.get(memory_id, tenant_id)
    if record is None or record.user_id != user_id:
        raise HTTPException(status_code=404, detail="Memory not found")
    return record


@router.get("/memory/{memory_id}")
async def get_memory_record(
    memory_id: str, identity: Identity = Depends(get_identity), memory: MemoryStore = Depends(get_memory)
):
    record = await _owned_memory(memory, memory_id, identity)
    return record.model_dump(mode="json")


@router.patch("/memory/{memory_id}")
async def update_memory(
    memory_id: str,
    body: MemoryUpdateRequest,
    identity: Identity = Depends(get_identity),
    memory: MemoryStore = Depends(get_memory),
):
    await _owned_memory(memory, memory_id, identity)
    updated = await memory.update(memory_id, identity[0], body.content)
    return updated.model_dump(mode="json") if updated else {"ok": False}


@router.delete("/memory/sessions/{session_id}")
async def clear_session_memories(
    session_id: str, identity: Identity = Depends(get_identity), memory: MemoryStore = Depends(get_memory)
):
    deleted = await memory.clear_session(identity[1], session_id, tenant_id=identity[0])
    return {"ok": True, "deleted": deleted}


@router.delete("/memory/{memory_id}")
async def delete_memory(
    memory_id: str, identity: Identity = Depends(get_identity), memory: MemoryStore = Depends(get_memory)
):
    await _owned_memory(memory, memory_id, identity)
    await memory.delete(memory_id, identity[0])
    return {"ok": True}


@router.get("/memory/{memory_id}/history")
async def memory_history(
    memory_id: str, identity: Identity = Depends(get_identity), memory: MemoryStore = Depends(get_memory)
):
    await _owned_memory(memory, memory_id, identity)
    entries = await memory.history(memory_id, identity[0])
    return {"history": [e.model_dump(mode="json") for e in entries]}


@router.delete("/memory")
async def clear_memories(
    scope: str = "tenant",
    confirm: bool = False,
    identity: Identity = Depends(get_identity),
    memory: MemoryStore = Depends(get_memory),
):
    tenant_id, user_id = identity
    if scope == "user":
        return {"ok": True, "deleted": await memory.clear_user(tenant_id, user_id)}
    if scope != "tenant":
        raise HTTPException(status_code=400, detail="scope must be 'tenant' or 'user'")
    if not confirm:
        raise HTTPException(status_code=400, detail="Tenant offboarding requires confirm=true")
    return {"ok": True, "deleted": await memory.clear_tenant(tenant_id)}


@router.post("/documents", status_code=201)
async def register_document(
    body: DocumentRegistration,
    identity: Identity = Depends(get_identity),
    catalog: DocumentCatalog = Depends(get_catalog),
):
    await catalog.register_document(
        identity[0],
        body.document_id,
        body.title,
        file_ref=body.file_ref,
        client_id=body.client_id,
        use_for_training=body.use_for_training,
    )
    return {"ok": True, "document_id": body.document_id}


@router.patch("/documents/{document_id}/training")
async def set_document_training(
    document_id: str,
    enabled: bool = Body(..., embed=True),
    identity: Identity = Depends(get_identity),
    catalog: DocumentCatalog = Depends(get_catalog),
):
    if not await catalog.set_training(identity[0], document_id, enabled):
        raise HTTPException(status_code=404, detail="Document not found")
    return {"ok": True, "use_for_training": enabled}


@router.put("/settings/ai-config")
async def update_ai_config(
    payload: Dict[str, Any] = Body(...),
    identity: Identity = Depends(get_identity),
    db: Database = Depends(get_db),
):
    allowed = {"assistant_name", "response_tone", "response_length", "temperature"}
    config = {k: v for k, v in payload.items() if k in allowed}
    await db.set_ai_config(identity[0], config)
    return {"ok": True, "ai_config": config}


@router.put("/settings/preferences")
async def update_user_preferences(
    assistant_name: Optional[str] = Body(None, embed=True),
    identity: Identity = Depends(get_identity),
    db: Database = Depends(get_db),
):
    """Per-user assistant name; takes precedence over the tenant's ai_config name."""
    preferences = await db.get_user_preferences(identity[0], identity[1])
    ai = dict(preferences.get("ai") or {})
    if assistant_name and assistant_name.strip():
        ai["assistant_name"] = assistant_name.strip()
    else:
        ai.pop("assistant_name", None)
    preferences["ai"] = ai
    await db.set_user_preferences(identity[0], identity[1], preferences)
    return {"ok": True, "preferences": preferences}


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    headers = {}
    if isinstance(exc, RateLimitExceeded):
        headers["Retry-After"] = str(exc.retry_after)
        headers["X-RateLimit-Remaining"] = "0"
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    model_client: Optional[GeminiClient] = None,
    classifier: Optional[Classifier] = None,
    document_search: Optional[DocumentSearch] = None,
    function_executor: Optional[FunctionExecutor] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        try:
            yield
        finally:
            await app.state.scheduler.drain(app.state.settings.shutdown_drain_timeout_s)
            await app.state.model_client.close()
            close = getattr(app.state.document_search, "close", None)
            if callable(close):
                await close()

    app = FastAPI(title="Agency Chat Core", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.model_client = model_client or GeminiClient(
        settings.model.api_key,
        settings.model.model_id,
        base_url=settings.model.base_url,
        timeout_s=settings.model.timeout_s,
    )
    app.state.classifier = classifier or ModelRouteClassifier(app.state.model_client)
    app.state.document_search = document_search or DocumentSearchClient(
        settings.document_search.base_url,
        settings.document_search.api_key,
        timeout_s=settings.document_search.timeout_s,
        breaker=CircuitBreaker(
            "File Search service",
            threshold=settings.resilience.breaker_threshold,
            cooldown=settings.resilience.breaker_cooldown_s,
        ),
    )
    app.state.memory = MemoryStore(app.state.db)
    app.state.sessions = SessionRepository(app.state.db)
    app.state.catalog = DocumentCatalog(app.state.db)
    app.state.function_executor = function_executor or build_default_executor(app.state.memory, app.state.sessions)
    app.state.scheduler = BackgroundScheduler()
    app.state.rate_limiter = RateLimiter(settings.chat_rate_limit)
    app.state.request_cancel_events = {}
    app.state.orchestrator = ChatOrchestrator(
        settings,
        app.state.sessions,
        app.state.memory,
        app.state.classifier,
        PromptBuilder(settings, app.state.db, app.state.memory),
        build_handler_registry(
            settings,
            app.state.model_client,
            app.state.function_executor,
            app.state.memory,
            app.state.catalog,
            app.state.document_search,
        ),
        app.state.scheduler,
        app.state.model_client,
    )
    app.add_exception_handler(ChatError, chat_error_handler)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import uvicorn

    settings = app.state.settings
    try:
        uvicorn.run(
            "chatcore.main:app",
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level,
        )
    except KeyboardInterrupt:
        pass
