"""DuckDB-backed implementation of the persistence port.

Database Schema:
    conversations: id, owner_id, title, model_identifier, visibility, created_at
    turns:         id, seq (insertion order), conversation_id, role, content, created_at
    attachments:   id, owner_id, name, content_type, storage_key, size_bytes,
                   status, turn_id, created_at, updated_at

Thread Safety:
    A DuckDB connection is NOT safe for concurrent use. All statements run in
    a worker thread via ``asyncio.to_thread`` and are serialized by a lock, so
    the event loop is never blocked and each statement sees a consistent
    database. Status changes use ``UPDATE ... WHERE status = ? RETURNING``,
    which makes them compare-and-set operations.

Usage:
    store = DuckDBStore("chatline.duckdb")
    await store.create_conversation(conversation)
    turns = await store.list_turns(conversation.id)
"""
import asyncio
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import duckdb

from app.attachments.schemas import Attachment, AttachmentStatus
from app.chat.schemas import Conversation, Role, Turn, Visibility
from app.clock import utcnow
from app.errors import StoreFault

from .base import PersistenceStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SCHEMA = [
    "CREATE SEQUENCE IF NOT EXISTS turns_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id               VARCHAR PRIMARY KEY,
        owner_id         VARCHAR NOT NULL,
        title            VARCHAR NOT NULL,
        model_identifier VARCHAR NOT NULL,
        visibility       VARCHAR NOT NULL DEFAULT 'private',
        created_at       TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS turns (
        id              VARCHAR PRIMARY KEY,
        seq             BIGINT NOT NULL DEFAULT nextval('turns_seq'),
        conversation_id VARCHAR NOT NULL,
        role            VARCHAR NOT NULL,
        content         VARCHAR NOT NULL,
        created_at      TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS attachments (
        id           VARCHAR PRIMARY KEY,
        owner_id     VARCHAR NOT NULL,
        name         VARCHAR NOT NULL,
        content_type VARCHAR NOT NULL,
        storage_key  VARCHAR NOT NULL,
        size_bytes   BIGINT NOT NULL DEFAULT 0,
        status       VARCHAR NOT NULL,
        turn_id      VARCHAR,
        created_at   TIMESTAMP NOT NULL,
        updated_at   TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_conversations_owner ON conversations(owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_turns_conversation ON turns(conversation_id)",
    "CREATE INDEX IF NOT EXISTS idx_attachments_owner ON attachments(owner_id)",
]

_CONVERSATION_COLUMNS = "id, owner_id, title, model_identifier, visibility, created_at"
_TURN_COLUMNS = "id, conversation_id, role, content, created_at"
_ATTACHMENT_COLUMNS = (
    "id, owner_id, name, content_type, storage_key, size_bytes, "
    "status, turn_id, created_at, updated_at"
)

# Updatable conversation fields
_CONVERSATION_UPDATABLE = {"title", "model_identifier", "visibility"}


class DuckDBStore(PersistenceStore):
    """Persistence store over a single DuckDB database file (or ``:memory:``)."""

    def __init__(self, db_path: str = "chatline.duckdb") -> None:
        """Open the database and create the schema if needed.

        Args:
            db_path: Path to the DuckDB file, or ``:memory:``.
        """
        self._db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = duckdb.connect(db_path)
        for statement in _SCHEMA:
            self._connection.execute(statement)
        logger.info("[DuckDBStore] Initialized with db=%s", db_path)

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    async def _run(self, operation: str, entity_id: Optional[str], fn: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        def call() -> T:
            with self._lock:
                if self._connection is None:
                    raise RuntimeError("store is closed")
                return fn(self._connection)

        try:
            return await asyncio.to_thread(call)
        except (duckdb.Error, RuntimeError) as e:
            logger.error("[DuckDBStore] %s failed for %s: %s", operation, entity_id, e)
            raise StoreFault(operation, entity_id, e) from e

    @staticmethod
    def _to_conversation(row) -> Conversation:
        return Conversation(
            id=row[0],
            owner_id=row[1],
            title=row[2],
            model_identifier=row[3],
            visibility=Visibility(row[4]),
            created_at=row[5],
        )

    @staticmethod
    def _to_turn(row) -> Turn:
        return Turn(
            id=row[0],
            conversation_id=row[1],
            role=Role(row[2]),
            content=row[3],
            created_at=row[4],
        )

    @staticmethod
    def _to_attachment(row) -> Attachment:
        return Attachment(
            id=row[0],
            owner_id=row[1],
            name=row[2],
            content_type=row[3],
            storage_key=row[4],
            size_bytes=row[5],
            status=AttachmentStatus(row[6]),
            turn_id=row[7],
            created_at=row[8],
            updated_at=row[9],
        )

    # -----------------------------------------------------------------------
    # Conversations
    # -----------------------------------------------------------------------

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        def op(conn):
            conn.execute(
                f"INSERT INTO conversations ({_CONVERSATION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                [
                    conversation.id,
                    conversation.owner_id,
                    conversation.title,
                    conversation.model_identifier,
                    conversation.visibility.value,
                    conversation.created_at,
                ],
            )

        await self._run("conversation.create", conversation.id, op)
        logger.info("Created conversation record: %s", conversation.id)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        row = await self._run(
            "conversation.get",
            conversation_id,
            lambda conn: conn.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE id = ?",
                [conversation_id],
            ).fetchone(),
        )
        return self._to_conversation(row) if row else None

    async def list_conversations(self, owner_id: str) -> List[Conversation]:
        rows = await self._run(
            "conversation.list",
            owner_id,
            lambda conn: conn.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations "
                "WHERE owner_id = ? ORDER BY created_at DESC",
                [owner_id],
            ).fetchall(),
        )
        return [self._to_conversation(r) for r in rows]

    async def update_conversation(
        self, conversation_id: str, updates: Dict[str, Any]
    ) -> Optional[Conversation]:
        fields = {k: v for k, v in updates.items() if k in _CONVERSATION_UPDATABLE}
        if not fields:
            return await self.get_conversation(conversation_id)
        if isinstance(fields.get("visibility"), Visibility):
            fields["visibility"] = fields["visibility"].value

        set_clause = ", ".join(f"{k} = ?" for k in fields)
        values = list(fields.values()) + [conversation_id]
        row = await self._run(
            "conversation.update",
            conversation_id,
            lambda conn: conn.execute(
                f"UPDATE conversations SET {set_clause} WHERE id = ? "
                f"RETURNING {_CONVERSATION_COLUMNS}",
                values,
            ).fetchone(),
        )
        return self._to_conversation(row) if row else None

    async def delete_conversation(self, conversation_id: str) -> bool:
        row = await self._run(
            "conversation.delete",
            conversation_id,
            lambda conn: conn.execute(
                "DELETE FROM conversations WHERE id = ? RETURNING id", [conversation_id]
            ).fetchone(),
        )
        if row is not None:
            logger.info("Deleted conversation record: %s", conversation_id)
        return row is not None

    async def delete_conversations_by_owner(self, owner_id: str) -> int:
        rows = await self._run(
            "conversation.delete_by_owner",
            owner_id,
            lambda conn: conn.execute(
                "DELETE FROM conversations WHERE owner_id = ? RETURNING id", [owner_id]
            ).fetchall(),
        )
        return len(rows)

    # -----------------------------------------------------------------------
    # Turns
    # -----------------------------------------------------------------------

    async def create_turn(self, turn: Turn) -> Turn:
        await self._run(
            "turn.create",
            turn.id,
            lambda conn: conn.execute(
                f"INSERT INTO turns ({_TURN_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
                [turn.id, turn.conversation_id, turn.role.value, turn.content, turn.created_at],
            ),
        )
        return turn

    async def get_turn(self, turn_id: str) -> Optional[Turn]:
        row = await self._run(
            "turn.get",
            turn_id,
            lambda conn: conn.execute(
                f"SELECT {_TURN_COLUMNS} FROM turns WHERE id = ?", [turn_id]
            ).fetchone(),
        )
        return self._to_turn(row) if row else None

    async def list_turns(self, conversation_id: str) -> List[Turn]:
        rows = await self._run(
            "turn.list",
            conversation_id,
            lambda conn: conn.execute(
                f"SELECT {_TURN_COLUMNS} FROM turns WHERE conversation_id = ? "
                "ORDER BY created_at ASC, seq ASC",
                [conversation_id],
            ).fetchall(),
        )
        return [self._to_turn(r) for r in rows]

    @staticmethod
    def _since_filter(
        conversation_id: str, since: datetime, from_turn_id: Optional[str]
    ) -> Tuple[str, list]:
        """WHERE clause for turns at or after ``since``.

        With ``from_turn_id``, turns sharing the timestamp only match when they
        were inserted at or after that turn.
        """
        if from_turn_id is None:
            return "conversation_id = ? AND created_at >= ?", [conversation_id, since]
        return (
            "conversation_id = ? AND (created_at > ? OR (created_at = ? AND "
            "seq >= (SELECT seq FROM turns WHERE id = ?)))",
            [conversation_id, since, since, from_turn_id],
        )

    async def list_turns_since(
        self, conversation_id: str, since: datetime, from_turn_id: Optional[str] = None
    ) -> List[Turn]:
        where, params = self._since_filter(conversation_id, since, from_turn_id)
        rows = await self._run(
            "turn.list_since",
            conversation_id,
            lambda conn: conn.execute(
                f"SELECT {_TURN_COLUMNS} FROM turns WHERE {where} "
                "ORDER BY created_at ASC, seq ASC",
                params,
            ).fetchall(),
        )
        return [self._to_turn(r) for r in rows]

    async def list_turns_by_owner(self, owner_id: str) -> List[Turn]:
        rows = await self._run(
            "turn.list_by_owner",
            owner_id,
            lambda conn: conn.execute(
                "SELECT t.id, t.conversation_id, t.role, t.content, t.created_at "
                "FROM turns t JOIN conversations c ON t.conversation_id = c.id "
                "WHERE c.owner_id = ? ORDER BY t.created_at ASC, t.seq ASC",
                [owner_id],
            ).fetchall(),
        )
        return [self._to_turn(r) for r in rows]

    async def delete_turns(self, conversation_id: str) -> int:
        rows = await self._run(
            "turn.delete",
            conversation_id,
            lambda conn: conn.execute(
                "DELETE FROM turns WHERE conversation_id = ? RETURNING id", [conversation_id]
            ).fetchall(),
        )
        return len(rows)

    async def delete_turns_since(
        self, conversation_id: str, since: datetime, from_turn_id: Optional[str] = None
    ) -> int:
        where, params = self._since_filter(conversation_id, since, from_turn_id)
        rows = await self._run(
            "turn.delete_since",
            conversation_id,
            lambda conn: conn.execute(
                f"DELETE FROM turns WHERE {where} RETURNING id", params
            ).fetchall(),
        )
        return len(rows)

    async def delete_turns_by_owner(self, owner_id: str) -> int:
        rows = await self._run(
            "turn.delete_by_owner",
            owner_id,
            lambda conn: conn.execute(
                "DELETE FROM turns WHERE conversation_id IN "
                "(SELECT id FROM conversations WHERE owner_id = ?) RETURNING id",
                [owner_id],
            ).fetchall(),
        )
        return len(rows)

    # -----------------------------------------------------------------------
    # Attachments
    # -----------------------------------------------------------------------

    async def create_attachment(self, attachment: Attachment) -> Attachment:
        await self._run(
            "attachment.create",
            attachment.id,
            lambda conn: conn.execute(
                f"INSERT INTO attachments ({_ATTACHMENT_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    attachment.id,
                    attachment.owner_id,
                    attachment.name,
                    attachment.content_type,
                    attachment.storage_key,
                    attachment.size_bytes,
                    attachment.status.value,
                    attachment.turn_id,
                    attachment.created_at,
                    attachment.updated_at,
                ],
            ),
        )
        return attachment

    async def get_attachment(self, attachment_id: str) -> Optional[Attachment]:
        row = await self._run(
            "attachment.get",
            attachment_id,
            lambda conn: conn.execute(
                f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments WHERE id = ?", [attachment_id]
            ).fetchone(),
        )
        return self._to_attachment(row) if row else None

    async def list_attachments_by_owner(
        self, owner_id: str, status: Optional[AttachmentStatus] = None
    ) -> List[Attachment]:
        sql = f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments WHERE owner_id = ?"
        params: List[Any] = [owner_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at DESC"
        rows = await self._run(
            "attachment.list_by_owner", owner_id, lambda conn: conn.execute(sql, params).fetchall()
        )
        return [self._to_attachment(r) for r in rows]

    async def list_attachments_by_turns(
        self, turn_ids: List[str], status: Optional[AttachmentStatus] = None
    ) -> List[Attachment]:
        if not turn_ids:
            return []
        placeholders = ", ".join("?" for _ in turn_ids)
        sql = f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments WHERE turn_id IN ({placeholders})"
        params: List[Any] = list(turn_ids)
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at ASC"
        rows = await self._run(
            "attachment.list_by_turns",
            ",".join(turn_ids),
            lambda conn: conn.execute(sql, params).fetchall(),
        )
        return [self._to_attachment(r) for r in rows]

    async def list_attachments_older_than(
        self, status: AttachmentStatus, cutoff: datetime, field: str = "created_at"
    ) -> List[Attachment]:
        if field not in ("created_at", "updated_at"):
            raise ValueError(f"Unsupported timestamp field: {field}")
        rows = await self._run(
            "attachment.list_older_than",
            status.value,
            lambda conn: conn.execute(
                f"SELECT {_ATTACHMENT_COLUMNS} FROM attachments "
                f"WHERE status = ? AND {field} < ? ORDER BY {field} ASC",
                [status.value, cutoff],
            ).fetchall(),
        )
        return [self._to_attachment(r) for r in rows]

    async def compare_and_set_status(
        self,
        attachment_id: str,
        expected: AttachmentStatus,
        target: AttachmentStatus,
        turn_id: Optional[str] = None,
    ) -> bool:
        new_turn_id = turn_id if target == AttachmentStatus.ACTIVE else None
        row = await self._run(
            "attachment.set_status",
            attachment_id,
            lambda conn: conn.execute(
                "UPDATE attachments SET status = ?, turn_id = ?, updated_at = ? "
                "WHERE id = ? AND status = ? RETURNING id",
                [target.value, new_turn_id, utcnow(), attachment_id, expected.value],
            ).fetchone(),
        )
        return row is not None

    async def purge_attachments(self, attachment_ids: List[str]) -> int:
        if not attachment_ids:
            return 0
        placeholders = ", ".join("?" for _ in attachment_ids)
        rows = await self._run(
            "attachment.purge",
            f"{len(attachment_ids)} records",
            lambda conn: conn.execute(
                f"DELETE FROM attachments WHERE id IN ({placeholders}) "
                "AND status = 'deleted' RETURNING id",
                list(attachment_ids),
            ).fetchall(),
        )
        return len(rows)

    async def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
