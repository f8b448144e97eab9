import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .db import Database, to_iso
from .schemas import (
    Importance,
    MemoryHistoryEntry,
    MemoryListPage,
    MemoryRecord,
    MemoryType,
    expires_at_for,
    new_id,
    utc_now,
)

logger = logging.getLogger("uvicorn.error")

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = {
    "a", "an", "and", "are", "about", "as", "at", "be", "by", "did", "do", "for", "from", "i", "in",
    "is", "it", "me", "my", "of", "on", "or", "that", "the", "this", "to", "us", "was", "we", "what",
    "with", "you", "your",
}
_COLUMNS = (
    "id, tenant_id, user_id, client_id, session_id, type, importance, topic, content, messages_json, "
    "created_at, updated_at, expires_at"
)

MessagePair = List[Dict[str, str]]


def _stem(token: str) -> str:
    if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def _tokens(text: str) -> set:
    return {_stem(t) for t in _TOKEN_RE.findall(text.lower()) if t not in _STOPWORDS}


def relevance(query: str, record: MemoryRecord) -> float:
    """Fraction of query terms found in the record's content or message pair."""
    query_terms = _tokens(query)
    if not query_terms:
        return 0.5
    haystack = record.content + " " + " ".join(m.get("content", "") for m in record.messages)
    doc_terms = _tokens(haystack)
    if not doc_terms:
        return 0.0
    return len(query_terms & doc_terms) / len(query_terms)


def _row_to_record(row: Any, score: Optional[float] = None) -> MemoryRecord:
    messages: MessagePair = []
    if row["messages_json"]:
        try:
            messages = json.loads(row["messages_json"])
        except json.JSONDecodeError:
            messages = []
    return MemoryRecord(
        id=row["id"],
        content=row["content"] or "",
        tenant_id=row["tenant_id"],
        user_id=row["user_id"],
        client_id=row["client_id"],
        session_id=row["session_id"],
        type=row["type"],
        importance=row["importance"],
        topic=row["topic"],
        messages=messages,
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        expires_at=datetime.fromisoformat(row["expires_at"]) if row["expires_at"] else None,
        score=score,
    )


class MemoryStore:
    """Tenant-scoped memory records on top of the shared sqlite database.

    Visibility is decided by the WHERE clause of every read: exact tenant and
    user, plus client when one is given. Session ids are stored as metadata and
    only ever used by ``clear_session``.
    """

    def __init__(self, db: Database):
        self.db = db

    def _scope(
        self, tenant_id: str, user_id: str, client_id: Optional[str], now: datetime
    ) -> Tuple[str, List[Any]]:
        if not tenant_id or not user_id:
            raise ValueError("tenant_id and user_id are required for memory access")
        clauses = ["tenant_id = ?", "user_id = ?", "(expires_at IS NULL OR expires_at > ?)"]
        params: List[Any] = [tenant_id, user_id, to_iso(now)]
        if client_id:
            clauses.append("client_id = ?")
            params.append(client_id)
        return " AND ".join(clauses), params

    async def add(
        self,
        content: Union[str, MessagePair],
        tenant_id: str,
        user_id: str,
        *,
        client_id: Optional[str] = None,
        session_id: Optional[str] = None,
        type: MemoryType = "conversation",
        importance: Importance = "medium",
        topic: Optional[str] = None,
        messages: Optional[MessagePair] = None,
        created_at: Optional[datetime] = None,
    ) -> str:
        if not tenant_id or not user_id:
            raise ValueError("tenant_id and user_id are required for memory access")
        if isinstance(content, list):
            messages = messages or content
            text = "\n".join(f"{m.get('role', 'user')}: {m.get('content', '')}" for m in content)
        else:
            text = content
        created = created_at or utc_now()
        memory_id = new_id()
        await self.db.execute(
            f"INSERT INTO memory_records({_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
            (
                memory_id,
                tenant_id,
                user_id,
                client_id,
                session_id,
                type,
                importance,
                topic,
                text,
                json.dumps(messages) if messages else None,
                to_iso(created),
                to_iso(created),
                to_iso(expires_at_for(type, created)),
            ),
        )
        await self._log_history(memory_id, tenant_id, "created", None, text)
        logger.debug("Stored %s memory %s for user %s", type, memory_id[:8], user_id[:8])
        return memory_id

    async def search(
        self,
        query: str,
        tenant_id: str,
        user_id: str,
        *,
        client_id: Optional[str] = None,
        limit: int = 5,
        min_score: Optional[float] = None,
        types: Optional[Sequence[str]] = None,
        now: Optional[datetime] = None,
    ) -> List[MemoryRecord]:
        where, params = self._scope(tenant_id, user_id, client_id, now or utc_now())
        if types:
            where += f" AND type IN ({','.join('?' for _ in types)})"
            params.extend(types)
        rows = await self.db.fetchall(f"SELECT {_COLUMNS} FROM memory_records WHERE {where}", tuple(params))
        scored: List[MemoryRecord] = []
        for row in rows:
            record = _row_to_record(row)
            score = relevance(query, record)
            if min_score is not None and score < min_score:
                continue
            scored.append(record.model_copy(update={"score": score}))
        scored.sort(key=lambda r: (r.score or 0.0, r.created_at), reverse=True)
        return scored[:limit]

    async def list(
        self,
        tenant_id: str,
        user_id: str,
        *,
        client_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
        now: Optional[datetime] = None,
    ) -> MemoryListPage:
        page = max(1, page)
        page_size = max(1, min(page_size, 200))
        where, params = self._scope(tenant_id, user_id, client_id, now or utc_now())
        total_row = await self.db.fetchone(f"SELECT COUNT(*) AS n FROM memory_records WHERE {where}", tuple(params))
        rows = await self.db.fetchall(
            f"SELECT {_COLUMNS} FROM memory_records WHERE {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
            tuple(params + [page_size, (page - 1) * page_size]),
        )
        return MemoryListPage(
            memories=[_row_to_record(r) for r in rows],
            page=page,
            page_size=page_size,
            total=total_row["n"] if total_row else 0,
        )

    async def recent(self, tenant_id: str, user_id: str, limit: int = 10) -> List[MemoryRecord]:
        page = await self.list(tenant_id, user_id, page_size=limit)
        return page.memories

    async def important(self, tenant_id: str, user_id: str, limit: int = 10) -> List[MemoryRecord]:
        where, params = self._scope(tenant_id, user_id, None, utc_now())
        rows = await self.db.fetchall(
            f"SELECT {_COLUMNS} FROM memory_records WHERE {where} AND importance = 'high' "
            "ORDER BY created_at DESC LIMIT ?",
            tuple(params + [limit]),
        )
        return [_row_to_record(r) for r in rows]

    async def get(self, memory_id: str, tenant_id: str) -> Optional[MemoryRecord]:
        row = await self.db.fetchone(
            f"SELECT {_COLUMNS} FROM memory_records WHERE id = ? AND tenant_id = ?", (memory_id, tenant_id)
        )
        return _row_to_record(row) if row else None

    async def update(self, memory_id: str, tenant_id: str, content: str) -> Optional[MemoryRecord]:
        existing = await self.get(memory_id, tenant_id)
        if existing is None:
            return None
        now = to_iso(utc_now())
        await self.db.execute(
            "UPDATE memory_records SET content = ?, updated_at = ? WHERE id = ? AND tenant_id = ?",
            (content, now, memory_id, tenant_id),
        )
        await self._log_history(memory_id, tenant_id, "updated", existing.content, content)
        return await self.get(memory_id, tenant_id)

    async def delete(self, memory_id: str, tenant_id: str) -> bool:
        existing = await self.get(memory_id, tenant_id)
        if existing is None:
            return False
        await self.db.execute("DELETE FROM memory_records WHERE id = ? AND tenant_id = ?", (memory_id, tenant_id))
        await self._log_history(memory_id, tenant_id, "deleted", existing.content, None)
        return True

    async def history(self, memory_id: str, tenant_id: str) -> List[MemoryHistoryEntry]:
        rows = await self.db.fetchall(
            "SELECT memory_id, event, old_content, new_content, created_at FROM memory_history "
            "WHERE memory_id = ? AND tenant_id = ? ORDER BY id",
            (memory_id, tenant_id),
        )
        return [
            MemoryHistoryEntry(
                memory_id=r["memory_id"],
                event=r["event"],
                old_content=r["old_content"],
                new_content=r["new_content"],
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]

    async def clear_user(self, tenant_id: str, user_id: str) -> int:
        return await self.db.execute(
            "DELETE FROM memory_records WHERE tenant_id = ? AND user_id = ?", (tenant_id, user_id)
        )

    async def clear_tenant(self, tenant_id: str) -> int:
        if not tenant_id:
            raise ValueError("tenant_id is required")
        deleted = await self.db.execute("DELETE FROM memory_records WHERE tenant_id = ?", (tenant_id,))
        await self.db.execute("DELETE FROM memory_history WHERE tenant_id = ?", (tenant_id,))
        logger.info("Cleared %s memories for tenant %s", deleted, tenant_id[:8])
        return deleted

    async def clear_session(self, user_id: str, session_id: str, tenant_id: Optional[str] = None) -> int:
        if not user_id or not session_id:
            raise ValueError("user_id and session_id are required")
        sql = "DELETE FROM memory_records WHERE user_id = ? AND session_id = ?"
        params: List[Any] = [user_id, session_id]
        if tenant_id is not None:
            sql += " AND tenant_id = ?"
            params.append(tenant_id)
        return await self.db.execute(sql, tuple(params))

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        return await self.db.execute(
            "DELETE FROM memory_records WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (to_iso(now or utc_now()),),
        )

    async def stats(self, tenant_id: str, user_id: str) -> Dict[str, Any]:
        where, params = self._scope(tenant_id, user_id, None, utc_now())
        rows = await self.db.fetchall(
            f"SELECT type, importance, COUNT(*) AS n FROM memory_records WHERE {where} GROUP BY type, importance",
            tuple(params),
        )
        by_type: Dict[str, int] = {}
        by_importance: Dict[str, int] = {}
        for r in rows:
            by_type[r["type"]] = by_type.get(r["type"], 0) + r["n"]
            by_importance[r["importance"]] = by_importance.get(r["importance"], 0) + r["n"]
        return {"total": sum(by_type.values()), "by_type": by_type, "by_importance": by_importance}

    async def store_decision(
        self, tenant_id: str, user_id: str, decision: str, context: str = "", **kwargs: Any
    ) -> str:
        content = f"Decision: {decision}. Context: {context}" if context else f"Decision: {decision}"
        return await self.add(content, tenant_id, user_id, type="decision", importance="high", **kwargs)

    async def store_preference(self, tenant_id: str, user_id: str, preference: str, **kwargs: Any) -> str:
        return await self.add(
            f"Preference: {preference}", tenant_id, user_id, type="preference", importance="high", **kwargs
        )

    async def store_task(
        self, tenant_id: str, user_id: str, task: str, due: Optional[str] = None, **kwargs: Any
    ) -> str:
        content = f"Task: {task}. Due: {due}" if due else f"Task: {task}"
        return await self.add(content, tenant_id, user_id, type="task", importance="medium", **kwargs)

    async def store_conversation_summary(
        self, tenant_id: str, user_id: str, summary: str, **kwargs: Any
    ) -> str:
        kwargs.setdefault("topic", "session summary")
        return await self.add(summary, tenant_id, user_id, type="insight", importance="medium", **kwargs)

    async def _log_history(
        self, memory_id: str, tenant_id: str, event: str, old: Optional[str], new: Optional[str]
    ) -> None:
        await self.db.execute(
            "INSERT INTO memory_history(memory_id, tenant_id, event, old_content, new_content, created_at) "
            "VALUES (?,?,?,?,?,?)",
            (memory_id, tenant_id, event, old, new, to_iso(utc_now())),
        )
