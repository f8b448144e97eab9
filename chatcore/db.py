import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS chat_sessions(
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    title TEXT,
                    context_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_chat_sessions_owner ON chat_sessions(tenant_id, user_id, updated_at);
                CREATE TABLE IF NOT EXISTS chat_messages(
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    role TEXT,
                    content TEXT,
                    route TEXT,
                    citations_json TEXT,
                    suggestions_json TEXT,
                    metadata_json TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_chat_messages_session ON chat_messages(session_id, seq);
                CREATE TABLE IF NOT EXISTS memory_records(
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    client_id TEXT,
                    session_id TEXT,
                    type TEXT,
                    importance TEXT,
                    topic TEXT,
                    content TEXT,
                    messages_json TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    expires_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_memory_scope ON memory_records(tenant_id, user_id, client_id);
                CREATE INDEX IF NOT EXISTS idx_memory_session ON memory_records(user_id, session_id);
                CREATE TABLE IF NOT EXISTS memory_history(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    memory_id TEXT,
                    tenant_id TEXT,
                    event TEXT,
                    old_content TEXT,
                    new_content TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS documents(
                    tenant_id TEXT NOT NULL,
                    document_id TEXT NOT NULL,
                    client_id TEXT,
                    title TEXT,
                    file_ref TEXT,
                    is_active INTEGER DEFAULT 1,
                    use_for_training INTEGER DEFAULT 0,
                    created_at TEXT,
                    PRIMARY KEY(tenant_id, document_id)
                );
                CREATE TABLE IF NOT EXISTS file_search_stores(
                    tenant_id TEXT PRIMARY KEY,
                    store_name TEXT NOT NULL,
                    display_name TEXT,
                    is_active INTEGER DEFAULT 1,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS user_preferences(
                    tenant_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    preferences_json TEXT,
                    updated_at TEXT,
                    PRIMARY KEY (tenant_id, user_id)
                );
                CREATE TABLE IF NOT EXISTS tenant_settings(
                    tenant_id TEXT PRIMARY KEY,
                    ai_config_json TEXT,
                    updated_at TEXT
                );
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    async def executemany(self, query: str, rows: Iterable[Tuple[Any, ...]]) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executemany(query, list(rows))
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def get_ai_config(self, tenant_id: str) -> Dict[str, Any]:
        row = await self.fetchone("SELECT ai_config_json FROM tenant_settings WHERE tenant_id=?", (tenant_id,))
        if not row or not row["ai_config_json"]:
            return {}
        try:
            return json.loads(row["ai_config_json"])
        except json.JSONDecodeError:
            return {}

    async def set_ai_config(self, tenant_id: str, config: Dict[str, Any]) -> None:
        await self.execute(
            "INSERT INTO tenant_settings(tenant_id, ai_config_json, updated_at) VALUES (?,?,?) "
            "ON CONFLICT(tenant_id) DO UPDATE SET ai_config_json=excluded.ai_config_json, "
            "updated_at=excluded.updated_at",
            (tenant_id, json.dumps(config), utc_now()),
        )

    async def get_user_preferences(self, tenant_id: str, user_id: str) -> Dict[str, Any]:
        row = await self.fetchone(
            "SELECT preferences_json FROM user_preferences WHERE tenant_id=? AND user_id=?", (tenant_id, user_id)
        )
        if not row or not row["preferences_json"]:
            return {}
        try:
            return json.loads(row["preferences_json"])
        except json.JSONDecodeError:
            return {}

    async def set_user_preferences(self, tenant_id: str, user_id: str, preferences: Dict[str, Any]) -> None:
        await self.execute(
            "INSERT INTO user_preferences(tenant_id, user_id, preferences_json, updated_at) VALUES (?,?,?,?) "
            "ON CONFLICT(tenant_id, user_id) DO UPDATE SET preferences_json=excluded.preferences_json, "
            "updated_at=excluded.updated_at",
            (tenant_id, user_id, json.dumps(preferences), utc_now()),
        )
