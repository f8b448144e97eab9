import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from .db import Database, utc_now
from .errors import ChatError
from .resilience import CircuitBreaker

logger = logging.getLogger("uvicorn.error")


class DocumentSource(BaseModel):
    document_id: str
    document_name: str = ""
    text: str = ""


class DocumentSearchResult(BaseModel):
    content: str = ""
    sources: List[DocumentSource] = Field(default_factory=list)
    is_grounded: bool = False


class DocumentSearchError(ChatError):
    status_code = 502
    code = "document_search_failed"
    retryable = True


class DocumentSearch(Protocol):
    async def search(
        self,
        query: str,
        tenant_id: str,
        client_id: Optional[str] = None,
        allow_list: Optional[List[str]] = None,
        store_name: Optional[str] = None,
    ) -> DocumentSearchResult:
        ...


class DocumentSearchClient:
    """HTTP client for the document search service, guarded by a circuit breaker."""

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str] = None,
        timeout_s: float = 30.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.breaker = breaker or CircuitBreaker("File Search service")
        self.client = httpx.AsyncClient(timeout=timeout_s)

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def search(
        self,
        query: str,
        tenant_id: str,
        client_id: Optional[str] = None,
        allow_list: Optional[List[str]] = None,
        store_name: Optional[str] = None,
    ) -> DocumentSearchResult:
        payload: Dict[str, Any] = {"query": query, "tenantId": tenant_id}
        if client_id:
            payload["clientId"] = client_id
        if allow_list is not None:
            payload["documentIds"] = allow_list
        if store_name:
            payload["storeName"] = store_name

        async def _call() -> DocumentSearchResult:
            return await self._post("/search", payload)

        return await self.breaker.call(_call)

    async def _post(self, path: str, payload: Dict[str, Any]) -> DocumentSearchResult:
        if not self.enabled:
            raise DocumentSearchError("document search URL is not configured")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            resp = await self.client.post(f"{self.base_url}{path}", json=payload, headers=headers)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise DocumentSearchError(f"HTTP {e.response.status_code}: {e.response.text[:300]}") from e
        except httpx.RequestError as e:
            raise DocumentSearchError(f"request failed: {e}") from e
        except ValueError as e:
            raise DocumentSearchError(f"invalid JSON: {e}") from e
        sources = [
            DocumentSource(
                document_id=str(c.get("documentId") or c.get("document_id") or ""),
                document_name=c.get("documentName") or c.get("title") or "",
                text=c.get("text") or c.get("snippet") or "",
            )
            for c in data.get("citations") or []
            if c.get("documentId") or c.get("document_id")
        ]
        return DocumentSearchResult(
            content=data.get("content") or "",
            sources=sources,
            is_grounded=bool(data.get("isGrounded", bool(sources))),
        )

    def status(self) -> Dict[str, Any]:
        return self.breaker.status()

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


class DocumentCatalog:
    """Per-tenant document metadata: the training allow-list and the search store."""

    def __init__(self, db: Database):
        self.db = db

    async def training_allow_list(self, tenant_id: str) -> List[str]:
        rows = await self.db.fetchall(
            "SELECT COALESCE(file_ref, document_id) AS ref FROM documents "
            "WHERE tenant_id=? AND is_active=1 AND use_for_training=1 ORDER BY created_at",
            (tenant_id,),
        )
        return [r["ref"] for r in rows]

    async def active_store(self, tenant_id: str) -> Optional[str]:
        row = await self.db.fetchone(
            "SELECT store_name FROM file_search_stores WHERE tenant_id=? AND is_active=1", (tenant_id,)
        )
        return row["store_name"] if row else None

    async def register_store(self, tenant_id: str, store_name: str, display_name: Optional[str] = None) -> None:
        await self.db.execute(
            "INSERT INTO file_search_stores(tenant_id, store_name, display_name, is_active, created_at) "
            "VALUES (?,?,?,1,?) ON CONFLICT(tenant_id) DO UPDATE SET store_name=excluded.store_name, "
            "display_name=excluded.display_name, is_active=1",
            (tenant_id, store_name, display_name, utc_now()),
        )

    async def register_document(
        self,
        tenant_id: str,
        document_id: str,
        title: str = "",
        *,
        file_ref: Optional[str] = None,
        client_id: Optional[str] = None,
        use_for_training: bool = False,
    ) -> None:
        await self.db.execute(
            "INSERT OR REPLACE INTO documents(tenant_id, document_id, client_id, title, file_ref, is_active, "
            "use_for_training, created_at) VALUES (?,?,?,?,?,1,?,?)",
            (tenant_id, document_id, client_id, title, file_ref, 1 if use_for_training else 0, utc_now()),
        )

    async def set_training(self, tenant_id: str, document_id: str, enabled: bool) -> bool:
        changed = await self.db.execute(
            "UPDATE documents SET use_for_training=? WHERE tenant_id=? AND document_id=?",
            (1 if enabled else 0, tenant_id, document_id),
        )
        return changed > 0
