import asyncio
import json
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from .db import Database, to_iso
from .errors import PersistenceFailure
from .schemas import ChatMessage, Citation, Session, new_id, utc_now

logger = logging.getLogger("uvicorn.error")

MAX_CACHED_SESSIONS = 1000
TITLE_MAX_CHARS = 60


def _row_to_message(row: Any) -> ChatMessage:
    return ChatMessage(
        id=row["id"],
        role=row["role"],
        content=row["content"] or "",
        created_at=datetime.fromisoformat(row["created_at"]),
        route=row["route"],
        citations=[Citation(**c) for c in json.loads(row["citations_json"] or "[]")],
        suggestions=json.loads(row["suggestions_json"] or "[]"),
        metadata=json.loads(row["metadata_json"] or "{}"),
    )


class SessionRepository:
    """Sessions as append-only message logs.

    Loaded sessions live in an in-process arena; every append happens under the
    session's own lock and is written through to sqlite.
    """

    def __init__(self, db: Database, max_cached: int = MAX_CACHED_SESSIONS):
        self.db = db
        self.max_cached = max_cached
        self._sessions: "OrderedDict[str, Session]" = OrderedDict()
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _cache(self, session: Session) -> None:
        self._sessions[session.id] = session
        self._sessions.move_to_end(session.id)
        while len(self._sessions) > self.max_cached:
            evicted, _ = self._sessions.popitem(last=False)
            lock = self._locks.get(evicted)
            if lock is not None and not lock.locked():
                self._locks.pop(evicted, None)

    async def _load(self, session_id: str) -> Optional[Session]:
        cached = self._sessions.get(session_id)
        if cached is not None:
            self._sessions.move_to_end(session_id)
            return cached
        row = await self.db.fetchone(
            "SELECT id, tenant_id, user_id, title, context_json, created_at, updated_at FROM chat_sessions WHERE id=?",
            (session_id,),
        )
        if not row:
            return None
        rows = await self.db.fetchall(
            "SELECT * FROM chat_messages WHERE session_id=? ORDER BY seq", (session_id,)
        )
        session = Session(
            id=row["id"],
            tenant_id=row["tenant_id"],
            user_id=row["user_id"],
            title=row["title"],
            messages=[_row_to_message(r) for r in rows],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            context=json.loads(row["context_json"] or "{}"),
        )
        self._cache(session)
        return session

    async def get_session(self, session_id: str, tenant_id: str, user_id: str) -> Optional[Session]:
        session = await self._load(session_id)
        if session is None or session.tenant_id != tenant_id or session.user_id != user_id:
            return None
        return session

    async def get_or_create_session(
        self,
        tenant_id: str,
        user_id: str,
        session_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Session:
        if session_id:
            session = await self._load(session_id)
            if session is not None:
                if session.tenant_id == tenant_id and session.user_id == user_id:
                    return session
                # A foreign session id never grants access; start a fresh session instead.
                logger.warning("Session %s does not belong to user %s", session_id[:8], user_id[:8])
        session = Session(tenant_id=tenant_id, user_id=user_id, context=context or {})
        await self.db.execute(
            "INSERT INTO chat_sessions(id, tenant_id, user_id, title, context_json, created_at, updated_at) "
            "VALUES (?,?,?,?,?,?,?)",
            (
                session.id,
                tenant_id,
                user_id,
                None,
                json.dumps(session.context),
                to_iso(session.created_at),
                to_iso(session.updated_at),
            ),
        )
        self._cache(session)
        return session

    async def add_message(self, session: Session, message: ChatMessage) -> None:
        """Append to the session log and write it through.

        The in-memory append always happens; a failed write raises
        PersistenceFailure so the caller can leave it to the background persist job.
        """
        async with self._lock(session.id):
            session.messages.append(message)
            session.updated_at = utc_now()
            if session.title is None and message.role == "user":
                session.title = message.content.strip()[:TITLE_MAX_CHARS] or None
            seq = len(session.messages) - 1
            try:
                await self._write(session, [(seq, message)])
            except Exception as exc:
                raise PersistenceFailure(f"session {session.id[:8]}: {exc}") from exc

    async def persist_messages(self, session: Session, messages: Sequence[ChatMessage]) -> None:
        """Idempotently write messages that are already in the session log."""
        positions = {m.id: i for i, m in enumerate(session.messages)}
        items = []
        for message in messages:
            if message.id not in positions:
                raise ValueError(f"message {message.id} is not part of session {session.id}")
            items.append((positions[message.id], message))
        await self._write(session, items)

    async def _write(self, session: Session, items: Sequence[tuple]) -> None:
        await self.db.executemany(
            "INSERT OR IGNORE INTO chat_messages(id, session_id, seq, role, content, route, citations_json, "
            "suggestions_json, metadata_json, created_at) VALUES (?,?,?,?,?,?,?,?,?,?)",
            [
                (
                    m.id,
                    session.id,
                    seq,
                    m.role,
                    m.content,
                    m.route,
                    json.dumps([c.model_dump() for c in m.citations]),
                    json.dumps(m.suggestions),
                    json.dumps(m.metadata, default=str),
                    to_iso(m.created_at),
                )
                for seq, m in items
            ],
        )
        await self.db.execute(
            "UPDATE chat_sessions SET updated_at=?, title=COALESCE(title, ?) WHERE id=?",
            (to_iso(session.updated_at), session.title, session.id),
        )

    async def get_messages(self, session_id: str, limit: int = 50) -> List[ChatMessage]:
        session = await self._load(session_id)
        if session is None:
            return []
        return list(session.messages[-limit:]) if limit > 0 else []

    async def persisted_count(self, session_id: str) -> int:
        row = await self.db.fetchone("SELECT COUNT(*) AS n FROM chat_messages WHERE session_id=?", (session_id,))
        return row["n"] if row else 0

    async def list_sessions(self, tenant_id: str, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        rows = await self.db.fetchall(
            "SELECT s.id, s.title, s.created_at, s.updated_at, "
            "(SELECT COUNT(*) FROM chat_messages m WHERE m.session_id = s.id) AS message_count "
            "FROM chat_sessions s WHERE s.tenant_id=? AND s.user_id=? ORDER BY s.updated_at DESC LIMIT ?",
            (tenant_id, user_id, limit),
        )
        return [dict(r) for r in rows]

    async def delete_session(self, session_id: str, tenant_id: str, user_id: str) -> bool:
        session = await self.get_session(session_id, tenant_id, user_id)
        if session is None:
            return False
        async with self._lock(session_id):
            await self.db.execute("DELETE FROM chat_messages WHERE session_id=?", (session_id,))
            await self.db.execute("DELETE FROM chat_sessions WHERE id=?", (session_id,))
            self._sessions.pop(session_id, None)
        self._locks.pop(session_id, None)
        return True


def new_message(role: str, content: str, **kwargs: Any) -> ChatMessage:
    return ChatMessage(id=new_id(), role=role, content=content, **kwargs)
