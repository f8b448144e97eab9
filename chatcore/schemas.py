import uuid
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


Route = Literal["dashboard", "rag", "memory", "casual", "web"]
ROUTES = ("dashboard", "rag", "memory", "casual", "web")
MemoryType = Literal["conversation", "decision", "preference", "project", "task", "insight"]
Importance = Literal["high", "medium"]

# Days until a record of each type expires; None keeps it forever.
EXPIRATION_DAYS: Dict[str, Optional[int]] = {
    "conversation": 30,
    "decision": None,
    "preference": None,
    "project": 90,
    "task": 14,
    "insight": None,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def expires_at_for(memory_type: str, created_at: datetime) -> Optional[datetime]:
    days = EXPIRATION_DAYS.get(memory_type)
    if days is None:
        return None
    return created_at + timedelta(days=days)


class Citation(BaseModel):
    index: int = Field(ge=1)
    title: str = ""
    url: str
    source: Literal["web", "rag"]
    snippet: Optional[str] = None


class ChatMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    role: Literal["user", "assistant"]
    content: str
    created_at: datetime = Field(default_factory=utc_now)
    route: Optional[Route] = None
    citations: List[Citation] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class Session(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    user_id: str
    title: Optional[str] = None
    messages: List[ChatMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    context: Dict[str, Any] = Field(default_factory=dict)


class MemoryRecord(BaseModel):
    id: str
    content: str
    tenant_id: str
    user_id: str
    client_id: Optional[str] = None
    session_id: Optional[str] = None
    type: MemoryType = "conversation"
    importance: Importance = "medium"
    topic: Optional[str] = None
    messages: List[Dict[str, str]] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None
    score: Optional[float] = None


class MemoryListPage(BaseModel):
    memories: List[MemoryRecord]
    page: int
    page_size: int
    total: int


class MemoryHistoryEntry(BaseModel):
    memory_id: str
    event: Literal["created", "updated", "deleted"]
    old_content: Optional[str] = None
    new_content: Optional[str] = None
    created_at: datetime


class TenantContext(BaseModel):
    tenant_id: str
    user_id: str
    client_id: Optional[str] = None


class ClassificationResult(BaseModel):
    route: Route
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    reasoning: Optional[str] = None


class FunctionCall(BaseModel):
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class GroundingChunk(BaseModel):
    uri: str
    title: str = ""


class GroundingSupport(BaseModel):
    start_index: Optional[int] = None
    end_index: Optional[int] = None
    text: Optional[str] = None
    chunk_indices: List[int] = Field(default_factory=list)


class GroundingMetadata(BaseModel):
    chunks: List[GroundingChunk] = Field(default_factory=list)
    supports: List[GroundingSupport] = Field(default_factory=list)


class GenerationResult(BaseModel):
    text: str = ""
    function_call: Optional[FunctionCall] = None
    grounding: Optional[GroundingMetadata] = None


class MemoryDetection(BaseModel):
    should: bool = False
    type: Optional[MemoryType] = None
    importance: Optional[Importance] = None


class SuggestedMemory(BaseModel):
    content: str
    type: MemoryType
    importance: Importance
    topic: str = ""


class FunctionCallRecord(BaseModel):
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    success: bool = True


class HandlerResult(BaseModel):
    content: str
    citations: List[Citation] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    function_calls: List[FunctionCallRecord] = Field(default_factory=list)
    degraded: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChatRequest(BaseModel):
    message: str
    session_id: Optional[str] = None
    client_id: Optional[str] = None
    stream: bool = False
    request_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class MemoryCreateRequest(BaseModel):
    content: str
    client_id: Optional[str] = None
    session_id: Optional[str] = None
    type: MemoryType = "conversation"
    importance: Importance = "medium"
    topic: Optional[str] = None


class MemoryUpdateRequest(BaseModel):
    content: str


class RouteChunk(BaseModel):
    type: Literal["route"] = "route"
    route: Route
    confidence: float
    reasoning: Optional[str] = None


class ContentChunk(BaseModel):
    type: Literal["content"] = "content"
    content: str


class CitationChunk(BaseModel):
    type: Literal["citation"] = "citation"
    citation: Citation


class FunctionCallChunk(BaseModel):
    type: Literal["function_call"] = "function_call"
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class FunctionResultChunk(BaseModel):
    type: Literal["function_result"] = "function_result"
    name: str
    success: bool
    summary: str


class SuggestionsChunk(BaseModel):
    type: Literal["suggestions"] = "suggestions"
    suggestions: List[str]


class DoneChunk(BaseModel):
    type: Literal["done"] = "done"
    message: ChatMessage
    session_id: str
    suggested_memory: Optional[SuggestedMemory] = None


class ErrorChunk(BaseModel):
    type: Literal["error"] = "error"
    error: str


StreamChunk = Annotated[
    Union[
        RouteChunk,
        ContentChunk,
        CitationChunk,
        FunctionCallChunk,
        FunctionResultChunk,
        SuggestionsChunk,
        DoneChunk,
        ErrorChunk,
    ],
    Field(discriminator="type"),
]

TERMINAL_CHUNK_TYPES = ("done", "error")
