import logging
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, Field, ValidationError

from .errors import ToolExecutionFailure, UnknownFunctionError
from .memory_store import MemoryStore
from .schemas import TenantContext

logger = logging.getLogger("uvicorn.error")

ToolFn = Callable[[TenantContext, BaseModel], Awaitable[Any]]

NAVIGATION_PATHS = {
    "clients": "/clients",
    "client_detail": "/clients/{client_id}",
    "alerts": "/alerts",
    "intelligence": "/intelligence",
    "documents": "/knowledge-base",
    "settings": "/settings",
    "integrations": "/integrations",
}


class NavigateArgs(BaseModel):
    destination: Literal["clients", "client_detail", "alerts", "intelligence", "documents", "settings", "integrations"]
    client_id: Optional[str] = None
    filters: Dict[str, Any] = Field(default_factory=dict)


class RememberArgs(BaseModel):
    content: str
    type: Literal["decision", "preference", "task"] = "decision"
    context: Optional[str] = None
    due: Optional[str] = None
    client_id: Optional[str] = None


class SearchMemoriesArgs(BaseModel):
    query: str
    limit: int = Field(default=5, ge=1, le=20)
    client_id: Optional[str] = None


class ListSessionsArgs(BaseModel):
    limit: int = Field(default=10, ge=1, le=50)


FUNCTION_DECLARATIONS: List[Dict[str, Any]] = [
    {
        "name": "navigate_to",
        "description": "Generate a navigation action to a specific page or view. Returns a URL for the frontend to navigate to.",
        "parameters": {
            "type": "object",
            "properties": {
                "destination": {
                    "type": "string",
                    "description": "Where to navigate",
                    "enum": list(NAVIGATION_PATHS),
                },
                "client_id": {"type": "string", "description": "Client ID (required for client_detail)"},
                "filters": {"type": "object", "description": "Optional filters to apply to the destination"},
            },
            "required": ["destination"],
        },
    },
    {
        "name": "remember",
        "description": "Store a decision, preference or task the user explicitly asked you to remember.",
        "parameters": {
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "The fact to remember, in one sentence"},
                "type": {"type": "string", "enum": ["decision", "preference", "task"]},
                "context": {"type": "string", "description": "Why the decision was made"},
                "due": {"type": "string", "description": "Due date for tasks"},
                "client_id": {"type": "string", "description": "Client the memory is about"},
            },
            "required": ["content"],
        },
    },
    {
        "name": "search_memories",
        "description": "Search what the user and assistant discussed or decided in earlier conversations.",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "limit": {"type": "integer", "description": "Maximum memories to return (default: 5)"},
                "client_id": {"type": "string"},
            },
            "required": ["query"],
        },
    },
    {
        "name": "list_chat_sessions",
        "description": "List the user's recent chat sessions.",
        "parameters": {
            "type": "object",
            "properties": {"limit": {"type": "integer", "description": "Maximum sessions (default: 10)"}},
        },
    },
]


def summarize_function_result(name: str, result: Any) -> str:
    label = name.replace("get_", "").replace("_", " ")
    if isinstance(result, list):
        return f"Found {len(result)} {label}"
    if isinstance(result, dict):
        if "url" in result:
            return f"Navigation ready: {result['url']}"
        return f"Retrieved {label} data"
    return f"Completed {name}"


class FunctionExecutor:
    """Registry of callable tools, always invoked with the caller's tenant context."""

    def __init__(self) -> None:
        self._tools: Dict[str, tuple] = {}
        self.declarations: List[Dict[str, Any]] = []

    def register(self, declaration: Dict[str, Any], args_model: Type[BaseModel], fn: ToolFn) -> None:
        name = declaration["name"]
        self._tools[name] = (args_model, fn)
        self.declarations = [d for d in self.declarations if d["name"] != name] + [declaration]

    def has(self, name: str) -> bool:
        return name in self._tools

    async def execute(self, name: str, context: TenantContext, args: Dict[str, Any]) -> Any:
        if name not in self._tools:
            raise UnknownFunctionError(name)
        args_model, fn = self._tools[name]
        try:
            parsed = args_model(**(args or {}))
        except ValidationError as exc:
            raise ToolExecutionFailure(name, f"invalid arguments: {exc}") from exc
        try:
            return await fn(context, parsed)
        except ToolExecutionFailure:
            raise
        except Exception as exc:
            logger.exception("Tool %s failed", name)
            raise ToolExecutionFailure(name, str(exc)) from exc


def build_default_executor(memory: MemoryStore, sessions: Any) -> FunctionExecutor:
    executor = FunctionExecutor()
    declarations = {d["name"]: d for d in FUNCTION_DECLARATIONS}

    async def navigate_to(ctx: TenantContext, args: NavigateArgs) -> Dict[str, Any]:
        if args.destination == "client_detail" and not args.client_id:
            raise ToolExecutionFailure("navigate_to", "client_id is required for client_detail")
        url = NAVIGATION_PATHS[args.destination].format(client_id=args.client_id)
        if args.filters:
            query = "&".join(f"{k}={v}" for k, v in sorted(args.filters.items()))
            url = f"{url}?{query}"
        return {"url": url, "destination": args.destination}

    async def remember(ctx: TenantContext, args: RememberArgs) -> Dict[str, Any]:
        client_id = args.client_id or ctx.client_id
        if args.type == "decision":
            memory_id = await memory.store_decision(
                ctx.tenant_id, ctx.user_id, args.content, args.context or "", client_id=client_id
            )
        elif args.type == "preference":
            memory_id = await memory.store_preference(ctx.tenant_id, ctx.user_id, args.content, client_id=client_id)
        else:
            memory_id = await memory.store_task(ctx.tenant_id, ctx.user_id, args.content, args.due, client_id=client_id)
        return {"stored": True, "memory_id": memory_id, "type": args.type}

    async def search_memories(ctx: TenantContext, args: SearchMemoriesArgs) -> List[Dict[str, Any]]:
        records = await memory.search(
            args.query,
            ctx.tenant_id,
            ctx.user_id,
            client_id=args.client_id or ctx.client_id,
            limit=args.limit,
        )
        return [
            {"content": r.content, "type": r.type, "created_at": r.created_at.isoformat()} for r in records
        ]

    async def list_chat_sessions(ctx: TenantContext, args: ListSessionsArgs) -> List[Dict[str, Any]]:
        found = await sessions.list_sessions(ctx.tenant_id, ctx.user_id, limit=args.limit)
        return [{"name": s["title"] or "Untitled chat", "date": s["updated_at"], "id": s["id"]} for s in found]

    executor.register(declarations["navigate_to"], NavigateArgs, navigate_to)
    executor.register(declarations["remember"], RememberArgs, remember)
    executor.register(declarations["search_memories"], SearchMemoriesArgs, search_memories)
    executor.register(declarations["list_chat_sessions"], ListSessionsArgs, list_chat_sessions)
    return executor
