from __future__ import annotations

import contextlib
import uuid
from datetime import date
from pathlib import Path
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from parley.logging import get_logger
from parley.storage.errors import ConstraintViolation, StorageUnavailable
from parley.storage.memory import USAGE_SOURCES
from parley.storage.models import (
    Checkpoint,
    Conversation,
    DailyUsage,
    Message,
    PinnedMessage,
    User,
)

_REQUIRED_TABLES = [
    "app_user",
    "user_auth_credential",
    "conversation",
    "message",
    "pinned_message",
    "daily_usage",
    "agent_checkpoint",
]

_SOURCE_COLUMNS = {"shared": "shared_responses", "personal": "personal_responses"}


class PostgresStore:
    """Postgres-backed store with the same surface as ``MemoryStore``."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("database unavailable") from exc

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # row mappers
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            handle=row.get("handle"),
            role=row.get("role") or "user",
            created_at=row["created_at"],
            is_blocked=bool(row.get("is_blocked")),
            daily_limit=row.get("daily_limit"),
            model_key_cipher=row.get("model_key_cipher"),
            profile_summary=row.get("profile_summary"),
            meta=row.get("meta"),
        )

    @staticmethod
    def _conversation_from_row(row: dict) -> Conversation:
        return Conversation(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            title=row.get("title"),
            summary=row.get("summary"),
        )

    @staticmethod
    def _message_from_row(row: dict) -> Message:
        return Message(
            id=str(row["id"]),
            conversation_id=str(row["conversation_id"]),
            role=row["role"],
            content=row["content"],
            seq=row["seq"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _usage_from_row(row: dict) -> DailyUsage:
        return DailyUsage(
            user_id=str(row["user_id"]),
            day=row["day"],
            responses=row["responses"],
            shared_responses=row["shared_responses"],
            personal_responses=row["personal_responses"],
        )

    @staticmethod
    def _checkpoint_from_row(row: dict) -> Checkpoint:
        return Checkpoint(
            id=str(row["id"]),
            thread_id=row["thread_id"],
            config=row["config"],
            checkpoint=row["checkpoint"],
            metadata=row["metadata"],
            created_at=row["created_at"],
            parent_config=row.get("parent_config"),
            pending_writes=list(row.get("pending_writes") or []),
            schema_version=row.get("schema_version") or 1,
            seq=row.get("seq") or 0,
        )

    # users
    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        role: str = "user",
        daily_limit: Optional[int] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, handle, role, daily_limit)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), email, handle, role, daily_limit),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._user_from_row(row) if row else None

    def _update_user(self, user_id: str, assignments: str, params: tuple[Any, ...]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                (*params, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(user_id, "role = %s", (role,))

    def update_user_quota(
        self,
        user_id: str,
        *,
        daily_limit: Optional[int] = None,
        is_blocked: Optional[bool] = None,
        clear_limit: bool = False,
    ) -> Optional[User]:
        assignments: list[str] = []
        params: list[Any] = []
        if clear_limit:
            assignments.append("daily_limit = NULL")
        elif daily_limit is not None:
            assignments.append("daily_limit = %s")
            params.append(daily_limit)
        if is_blocked is not None:
            assignments.append("is_blocked = %s")
            params.append(is_blocked)
        if not assignments:
            return self.get_user(user_id)
        return self._update_user(user_id, ", ".join(assignments), tuple(params))

    def set_user_model_key(self, user_id: str, cipher: Optional[str]) -> Optional[User]:
        return self._update_user(user_id, "model_key_cipher = %s", (cipher,))

    def set_user_profile(self, user_id: str, profile_summary: str) -> Optional[User]:
        return self._update_user(user_id, "profile_summary = %s", (profile_summary,))

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # conversations
    def create_conversation(self, user_id: str, title: Optional[str] = None) -> Conversation:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO conversation (id, user_id, title) VALUES (%s, %s, %s) RETURNING *",
                    (str(uuid.uuid4()), user_id, title),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("conversation owner missing", {"user_id": user_id})
        return self._conversation_from_row(row)

    def get_conversation(
        self, conversation_id: str, *, user_id: Optional[str] = None
    ) -> Optional[Conversation]:
        query = "SELECT * FROM conversation WHERE id = %s"
        params: tuple[Any, ...] = (conversation_id,)
        if user_id:
            query += " AND user_id = %s"
            params = (conversation_id, user_id)
        try:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
        except errors.InvalidTextRepresentation:
            # not a uuid, so it cannot name a conversation
            return None
        return self._conversation_from_row(row) if row else None

    def list_conversations(self, user_id: str, limit: int = 20) -> List[Conversation]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM conversation WHERE user_id = %s ORDER BY updated_at DESC LIMIT %s",
                (user_id, limit),
            ).fetchall()
        return [self._conversation_from_row(r) for r in rows]

    def find_conversation_by_title(self, user_id: str, query: str) -> Optional[Conversation]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM conversation
                WHERE user_id = %s AND title ILIKE %s
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                (user_id, f"%{_escape_like(query)}%"),
            ).fetchone()
        return self._conversation_from_row(row) if row else None

    def rename_conversation(self, conversation_id: str, title: str) -> Optional[Conversation]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE conversation SET title = %s, updated_at = now() WHERE id = %s RETURNING *",
                (title, conversation_id),
            ).fetchone()
        return self._conversation_from_row(row) if row else None

    def set_conversation_summary(self, conversation_id: str, summary: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE conversation SET summary = %s WHERE id = %s",
                (summary, conversation_id),
            )
            return cur.rowcount > 0

    def delete_conversation(self, conversation_id: str) -> bool:
        # message and pinned_message rows cascade
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM conversation WHERE id = %s", (conversation_id,))
            return cur.rowcount > 0

    # messages
    def append_message(self, conversation_id: str, role: str, content: str) -> Message:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO message (id, conversation_id, role, content, seq)
                    VALUES (
                        %s, %s, %s, %s,
                        (SELECT COALESCE(MAX(seq), -1) + 1 FROM message WHERE conversation_id = %s)
                    )
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), conversation_id, role, content, conversation_id),
                ).fetchone()
                conn.execute(
                    "UPDATE conversation SET updated_at = %s WHERE id = %s",
                    (row["created_at"], conversation_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "conversation not found", {"conversation_id": conversation_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "concurrent message append", {"conversation_id": conversation_id}
            )
        return self._message_from_row(row)

    def get_message(self, message_id: str) -> Optional[Message]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM message WHERE id = %s", (message_id,)).fetchone()
        except errors.InvalidTextRepresentation:
            return None
        return self._message_from_row(row) if row else None

    def update_message_content(self, message_id: str, content: str) -> Optional[Message]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE message SET content = %s WHERE id = %s RETURNING *",
                (content, message_id),
            ).fetchone()
            if row:
                conn.execute(
                    "UPDATE conversation SET updated_at = now() WHERE id = %s",
                    (row["conversation_id"],),
                )
        return self._message_from_row(row) if row else None

    def list_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[Message]:
        """Return messages oldest-first; ``limit`` keeps the most recent N."""
        with self._connect() as conn:
            if limit is None:
                rows = conn.execute(
                    "SELECT * FROM message WHERE conversation_id = %s ORDER BY seq ASC",
                    (conversation_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM (
                        SELECT * FROM message WHERE conversation_id = %s
                        ORDER BY seq DESC LIMIT %s
                    ) recent ORDER BY seq ASC
                    """,
                    (conversation_id, max(limit, 0)),
                ).fetchall()
        return [self._message_from_row(r) for r in rows]

    def delete_message(self, message_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM message WHERE id = %s", (message_id,))
            return cur.rowcount > 0

    # pins
    def set_pin(self, user_id: str, message_id: str, pinned: bool) -> bool:
        try:
            with self._connect() as conn:
                if pinned:
                    conn.execute(
                        """
                        INSERT INTO pinned_message (user_id, message_id) VALUES (%s, %s)
                        ON CONFLICT (user_id, message_id) DO NOTHING
                        """,
                        (user_id, message_id),
                    )
                else:
                    conn.execute(
                        "DELETE FROM pinned_message WHERE user_id = %s AND message_id = %s",
                        (user_id, message_id),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("message not found", {"message_id": message_id})
        return pinned

    def list_pins(self, user_id: str) -> List[PinnedMessage]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM pinned_message WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [
            PinnedMessage(
                user_id=str(r["user_id"]),
                message_id=str(r["message_id"]),
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # daily usage
    def get_daily_usage(self, user_id: str, day: date) -> Optional[DailyUsage]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM daily_usage WHERE user_id = %s AND day = %s",
                (user_id, day),
            ).fetchone()
        return self._usage_from_row(row) if row else None

    def increment_daily_usage(self, user_id: str, day: date, source: str) -> DailyUsage:
        if source not in USAGE_SOURCES:
            raise ValueError(f"unknown usage source: {source}")
        column = _SOURCE_COLUMNS[source]
        # single statement: concurrent callers serialize on the row lock
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO daily_usage (user_id, day, responses, {column})
                    VALUES (%s, %s, 1, 1)
                    ON CONFLICT (user_id, day) DO UPDATE
                    SET responses = daily_usage.responses + 1,
                        {column} = daily_usage.{column} + 1
                    RETURNING *
                    """,
                    (user_id, day),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("usage owner missing", {"user_id": user_id})
        return self._usage_from_row(row)

    # checkpoints
    def put_checkpoint(
        self,
        thread_id: str,
        *,
        checkpoint_id: str,
        config: str,
        checkpoint: str,
        metadata: str,
        parent_config: Optional[str] = None,
        pending_writes: Optional[List[str]] = None,
        schema_version: int = 1,
    ) -> Checkpoint:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO agent_checkpoint
                    (id, thread_id, config, checkpoint, metadata, parent_config,
                     pending_writes, schema_version)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    checkpoint_id,
                    thread_id,
                    config,
                    checkpoint,
                    metadata,
                    parent_config,
                    list(pending_writes or []),
                    schema_version,
                ),
            ).fetchone()
        return self._checkpoint_from_row(row)

    def get_latest_checkpoint(self, thread_id: str) -> Optional[Checkpoint]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM agent_checkpoint WHERE thread_id = %s
                ORDER BY created_at DESC, seq DESC LIMIT 1
                """,
                (thread_id,),
            ).fetchone()
        return self._checkpoint_from_row(row) if row else None

    def list_checkpoints(self, thread_id: str, limit: int = 20) -> List[Checkpoint]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM agent_checkpoint WHERE thread_id = %s
                ORDER BY created_at DESC, seq DESC LIMIT %s
                """,
                (thread_id, max(limit, 0)),
            ).fetchall()
        return [self._checkpoint_from_row(r) for r in rows]

    def append_checkpoint_writes(self, thread_id: str, writes: List[str]) -> Optional[Checkpoint]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE agent_checkpoint
                SET pending_writes = pending_writes || %s::text[]
                WHERE id = (
                    SELECT id FROM agent_checkpoint WHERE thread_id = %s
                    ORDER BY created_at DESC, seq DESC LIMIT 1
                    FOR UPDATE
                )
                RETURNING *
                """,
                (list(writes), thread_id),
            ).fetchone()
        return self._checkpoint_from_row(row) if row else None

    def delete_checkpoints(self, thread_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM agent_checkpoint WHERE thread_id = %s", (thread_id,))
            return cur.rowcount


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
