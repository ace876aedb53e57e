from __future__ import annotations

import json
import sqlite3
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .settings import get_settings

DB_PATH = Path(get_settings().database_path)

_CONNECTION: Optional[sqlite3.Connection] = None
_LOCK = threading.Lock()

# Conversation metadata key that binds a conversation to one document.
DOCUMENT_TAG = "document_id"


def _get_connection() -> sqlite3.Connection:
    global _CONNECTION
    if _CONNECTION is None:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        _CONNECTION = sqlite3.connect(DB_PATH, check_same_thread=False)
        _CONNECTION.row_factory = sqlite3.Row
        _CONNECTION.execute("PRAGMA foreign_keys = ON")
    return _CONNECTION


def init_db() -> None:
    conn = _get_connection()
    with _LOCK:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS tenants (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                external_id TEXT NOT NULL UNIQUE,
                email TEXT,
                name TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                tenant_id INTEGER NOT NULL,
                original_name TEXT NOT NULL,
                storage_provider TEXT NOT NULL CHECK (storage_provider IN ('s3', 'local')),
                storage_key TEXT NOT NULL,
                content_type TEXT,
                size_bytes INTEGER,
                created_at REAL NOT NULL,
                FOREIGN KEY(tenant_id) REFERENCES tenants(id) ON DELETE CASCADE
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_documents_tenant_created ON documents(tenant_id, created_at DESC)"
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                tenant_id INTEGER NOT NULL,
                title TEXT,
                metadata TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                FOREIGN KEY(tenant_id) REFERENCES tenants(id) ON DELETE CASCADE
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_conversations_tenant_updated ON conversations(tenant_id, updated_at DESC)"
        )
        # at most one conversation per (tenant, bound document)
        conn.execute(
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_conversations_tenant_document
            ON conversations(tenant_id, json_extract(metadata, '$.{DOCUMENT_TAG}'))
            WHERE json_extract(metadata, '$.{DOCUMENT_TAG}') IS NOT NULL
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                content TEXT NOT NULL,
                model_name TEXT,
                token_count INTEGER,
                created_at REAL NOT NULL,
                FOREIGN KEY(conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_conversation_created ON messages(conversation_id, created_at)"
        )
        conn.commit()


def upsert_tenant(external_id: str, email: Optional[str], name: Optional[str]) -> int:
    """Insert or refresh the tenant row for an external identity and return its id."""
    conn = _get_connection()
    now = time.time()
    with _LOCK:
        conn.execute(
            """
            INSERT INTO tenants (external_id, email, name, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(external_id) DO UPDATE SET
                email = excluded.email,
                name = excluded.name,
                updated_at = excluded.updated_at
            """,
            (external_id, email, name, now, now),
        )
        row = conn.execute(
            "SELECT id FROM tenants WHERE external_id = ?", (external_id,)
        ).fetchone()
        conn.commit()
    return int(row["id"])


def get_tenant(tenant_id: int) -> Optional[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        row = conn.execute(
            "SELECT id, external_id, email, name, created_at, updated_at FROM tenants WHERE id = ?",
            (tenant_id,),
        ).fetchone()
    return dict(row) if row else None


def count_tenants() -> int:
    conn = _get_connection()
    with _LOCK:
        row = conn.execute("SELECT COUNT(*) AS cnt FROM tenants").fetchone()
    return int(row["cnt"] or 0)


def create_document(
    *,
    document_id: str,
    tenant_id: int,
    original_name: str,
    storage_provider: str,
    storage_key: str,
    content_type: Optional[str],
    size_bytes: Optional[int],
) -> bool:
    """Record an accepted upload. Returns False when the id is already taken."""
    conn = _get_connection()
    now = time.time()
    with _LOCK:
        cur = conn.execute(
            """
            INSERT OR IGNORE INTO documents (
                id,
                tenant_id,
                original_name,
                storage_provider,
                storage_key,
                content_type,
                size_bytes,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                document_id,
                tenant_id,
                original_name,
                storage_provider,
                storage_key,
                content_type,
                size_bytes,
                now,
            ),
        )
        conn.commit()
        return cur.rowcount == 1


def get_document(document_id: str) -> Optional[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        row = conn.execute(
            """
            SELECT id, tenant_id, original_name, storage_provider, storage_key, content_type, size_bytes, created_at
            FROM documents
            WHERE id = ?
            """,
            (document_id,),
        ).fetchone()
    return dict(row) if row else None


def delete_document(document_id: str) -> None:
    conn = _get_connection()
    with _LOCK:
        conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        conn.commit()


def list_documents(tenant_id: int, limit: int = 50) -> List[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        rows = conn.execute(
            """
            SELECT id, tenant_id, original_name, storage_provider, storage_key, content_type, size_bytes, created_at
            FROM documents
            WHERE tenant_id = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (tenant_id, max(1, limit)),
        ).fetchall()
    return [dict(row) for row in rows]


def _conversation_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    metadata = json.loads(row["metadata"]) if row["metadata"] else {}
    return {
        "id": row["id"],
        "tenant_id": row["tenant_id"],
        "title": row["title"],
        "metadata": metadata,
        "document_id": metadata.get(DOCUMENT_TAG),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def get_conversation(conversation_id: str) -> Optional[Dict[str, Any]]:
    if not conversation_id:
        return None
    conn = _get_connection()
    with _LOCK:
        row = conn.execute(
            """
            SELECT id, tenant_id, title, metadata, created_at, updated_at
            FROM conversations
            WHERE id = ?
            """,
            (conversation_id,),
        ).fetchone()
    return _conversation_from_row(row) if row else None


def find_conversation_for_document(tenant_id: int, document_id: str) -> Optional[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        row = conn.execute(
            f"""
            SELECT id, tenant_id, title, metadata, created_at, updated_at
            FROM conversations
            WHERE tenant_id = ? AND json_extract(metadata, '$.{DOCUMENT_TAG}') = ?
            ORDER BY created_at ASC
            LIMIT 1
            """,
            (tenant_id, document_id),
        ).fetchone()
    return _conversation_from_row(row) if row else None


def create_conversation(tenant_id: int, *, title: Optional[str], document_id: Optional[str]) -> Tuple[str, bool]:
    """Create a conversation bound to ``document_id``.

    When the tenant already has a conversation for the document the unique
    index rejects the insert and the existing id is returned instead.
    Returns ``(conversation_id, created)``.
    """
    conversation_id = uuid.uuid4().hex
    metadata = {DOCUMENT_TAG: document_id} if document_id else {}
    now = time.time()
    conn = _get_connection()
    with _LOCK:
        cur = conn.execute(
            """
            INSERT OR IGNORE INTO conversations (id, tenant_id, title, metadata, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (conversation_id, tenant_id, title, json.dumps(metadata, ensure_ascii=False), now, now),
        )
        conn.commit()
        if cur.rowcount == 1:
            return conversation_id, True
    existing = find_conversation_for_document(tenant_id, document_id) if document_id else None
    if existing is None:
        raise RuntimeError("conversation insert ignored but no existing conversation found")
    return existing["id"], False


def bind_conversation(conversation_id: str, *, title: str, document_id: str) -> bool:
    """Title an untitled conversation and stamp its document tag.

    Returns False when another conversation of the same tenant is already
    bound to ``document_id``.
    """
    conn = _get_connection()
    now = time.time()
    with _LOCK:
        try:
            conn.execute(
                f"""
                UPDATE conversations
                SET title = ?,
                    metadata = json_set(COALESCE(metadata, '{{}}'), '$.{DOCUMENT_TAG}', ?),
                    updated_at = ?
                WHERE id = ?
                """,
                (title, document_id, now, conversation_id),
            )
        except sqlite3.IntegrityError:
            conn.rollback()
            return False
        conn.commit()
    return True


def list_conversations(tenant_id: int, limit: int = 100) -> List[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        rows = conn.execute(
            """
            SELECT id, tenant_id, title, metadata, created_at, updated_at
            FROM conversations
            WHERE tenant_id = ?
            ORDER BY updated_at DESC
            LIMIT ?
            """,
            (tenant_id, max(1, limit)),
        ).fetchall()
    return [_conversation_from_row(row) for row in rows]


def append_exchange(
    conversation_id: str,
    *,
    question: str,
    answer: str,
    model_name: Optional[str] = None,
    token_count: Optional[int] = None,
) -> Tuple[int, int]:
    """Persist a question and its answer together and touch the conversation.

    The user row is inserted before the assistant row, so ordering by
    ``(created_at, id)`` always yields question then answer.
    """
    conn = _get_connection()
    now = time.time()
    with _LOCK:
        try:
            user_cur = conn.execute(
                """
                INSERT INTO messages (conversation_id, role, content, created_at)
                VALUES (?, 'user', ?, ?)
                """,
                (conversation_id, question, now),
            )
            assistant_cur = conn.execute(
                """
                INSERT INTO messages (conversation_id, role, content, model_name, token_count, created_at)
                VALUES (?, 'assistant', ?, ?, ?, ?)
                """,
                (conversation_id, answer, model_name, token_count, now),
            )
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (now, conversation_id),
            )
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise
    return int(user_cur.lastrowid), int(assistant_cur.lastrowid)


def list_messages(conversation_id: str, limit: int = 500) -> List[Dict[str, Any]]:
    conn = _get_connection()
    with _LOCK:
        rows = conn.execute(
            """
            SELECT id, role, content, model_name, token_count, created_at
            FROM messages
            WHERE conversation_id = ?
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (conversation_id, max(1, limit)),
        ).fetchall()
    return [dict(row) for row in rows]


def clear_connection() -> None:
    global _CONNECTION
    if _CONNECTION is not None:
        _CONNECTION.close()
        _CONNECTION = None
