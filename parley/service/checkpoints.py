"""Checkpoint persistence for agent runs.

``CheckpointSaver`` sits between the agent loop and the storage backend. It
resolves the thread id from a run configuration, serializes payloads to JSON
text (dropping values JSON cannot carry, such as callables), tags them with
a schema version and hands opaque strings to the store. Reads decode the
same strings back, so a payload round-trips exactly as written.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Protocol, Sequence, Tuple

from parley.logging import get_logger
from parley.service.errors import ThreadIdMissing
from parley.storage.models import Checkpoint

logger = get_logger(__name__)

CHECKPOINT_SCHEMA_VERSION = 1

PendingWrite = Tuple[str, str, Any]

_DROP = object()


class CheckpointBackend(Protocol):
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
    ) -> Checkpoint: ...

    def get_latest_checkpoint(self, thread_id: str) -> Optional[Checkpoint]: ...

    def list_checkpoints(self, thread_id: str, limit: int = 20) -> List[Checkpoint]: ...

    def append_checkpoint_writes(self, thread_id: str, writes: List[str]) -> Optional[Checkpoint]: ...

    def delete_checkpoints(self, thread_id: str) -> int: ...


@dataclass
class CheckpointTuple:
    config: dict
    checkpoint: dict
    metadata: dict
    parent_config: Optional[dict] = None
    pending_writes: List[PendingWrite] = field(default_factory=list)
    created_at: Optional[datetime] = None
    schema_version: int = CHECKPOINT_SCHEMA_VERSION


def _strip_unserializable(value: Any) -> Any:
    """JSON-native values pass through; anything else is dropped, never coerced."""
    if callable(value):
        return _DROP
    if isinstance(value, dict):
        cleaned = {}
        for key, item in value.items():
            stripped = _strip_unserializable(item)
            if stripped is not _DROP:
                cleaned[str(key)] = stripped
        return cleaned
    if isinstance(value, (list, tuple)):
        # dropped items inside sequences become null so positions are kept
        items = []
        for item in value:
            stripped = _strip_unserializable(item)
            items.append(None if stripped is _DROP else stripped)
        return items
    if isinstance(value, datetime):
        return value.isoformat()
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return _DROP


def safe_dumps(value: Any) -> str:
    """Serialize ``value`` to compact JSON, dropping what JSON cannot carry instead of failing."""
    stripped = _strip_unserializable(value)
    if stripped is _DROP:
        stripped = None
    return json.dumps(stripped, separators=(",", ":"), ensure_ascii=False)


def resolve_thread_id(config: Optional[dict]) -> Optional[str]:
    """Thread id from ``config["configurable"]["thread_id"]``, else ``run_name``."""
    if not isinstance(config, dict):
        return None
    configurable = config.get("configurable")
    if isinstance(configurable, dict):
        thread_id = configurable.get("thread_id")
        if isinstance(thread_id, str) and thread_id:
            return thread_id
    run_name = config.get("run_name")
    if isinstance(run_name, str) and run_name:
        return run_name
    return None


def thread_config(thread_id: str, checkpoint_id: Optional[str] = None) -> dict:
    configurable: dict[str, Any] = {"thread_id": thread_id}
    if checkpoint_id:
        configurable["checkpoint_id"] = checkpoint_id
    return {"configurable": configurable}


class CheckpointSaver:
    """Append-only checkpoint history per thread."""

    def __init__(self, store: CheckpointBackend, *, default_list_limit: int = 20) -> None:
        self.store = store
        self.default_list_limit = default_list_limit

    def _decode(self, row: Checkpoint) -> CheckpointTuple:
        return CheckpointTuple(
            config=json.loads(row.config),
            checkpoint=json.loads(row.checkpoint),
            metadata=json.loads(row.metadata),
            parent_config=json.loads(row.parent_config) if row.parent_config else None,
            pending_writes=[tuple(json.loads(w)) for w in row.pending_writes],
            created_at=row.created_at,
            schema_version=row.schema_version,
        )

    def get_tuple(self, config: dict) -> Optional[CheckpointTuple]:
        thread_id = resolve_thread_id(config)
        if not thread_id:
            return None
        return self.get_latest(thread_id)

    def get_latest(self, thread_id: str) -> Optional[CheckpointTuple]:
        row = self.store.get_latest_checkpoint(thread_id)
        if not row:
            return None
        return self._decode(row)

    def list(self, thread_id: str, limit: Optional[int] = None) -> List[CheckpointTuple]:
        rows = self.store.list_checkpoints(
            thread_id, limit=self.default_list_limit if limit is None else limit
        )
        return [self._decode(row) for row in rows]

    def put(
        self,
        config: dict,
        checkpoint: dict,
        metadata: dict,
        *,
        parent_config: Optional[dict] = None,
    ) -> dict:
        """Persist a new checkpoint and return the run config that addresses it."""
        thread_id = resolve_thread_id(config)
        if not thread_id:
            raise ThreadIdMissing("thread_id missing in config for checkpoint")
        checkpoint_id = str(uuid.uuid4())
        stored_config = {
            **config,
            "configurable": {
                **(config.get("configurable") or {}),
                "thread_id": thread_id,
                "checkpoint_id": checkpoint_id,
            },
        }
        self.store.put_checkpoint(
            thread_id,
            checkpoint_id=checkpoint_id,
            config=safe_dumps(stored_config),
            checkpoint=safe_dumps(checkpoint),
            metadata=safe_dumps(metadata),
            parent_config=safe_dumps(parent_config) if parent_config else None,
            schema_version=CHECKPOINT_SCHEMA_VERSION,
        )
        logger.debug(
            "checkpoint_put",
            thread_id=thread_id,
            checkpoint_id=checkpoint_id,
            step=metadata.get("step") if isinstance(metadata, dict) else None,
        )
        return stored_config

    def put_writes(self, config: dict, writes: Sequence[PendingWrite]) -> None:
        """Attach pending writes to the thread's latest checkpoint.

        A thread with no checkpoint yet gets an empty seed checkpoint first,
        so writes are never dropped.
        """
        thread_id = resolve_thread_id(config)
        if not thread_id:
            raise ThreadIdMissing("thread_id missing in config for pending writes")
        if not writes:
            return
        encoded = [safe_dumps(list(write)) for write in writes]
        if self.store.append_checkpoint_writes(thread_id, encoded) is not None:
            return
        logger.info("checkpoint_seeded_for_writes", thread_id=thread_id, writes=len(encoded))
        checkpoint_id = str(uuid.uuid4())
        self.store.put_checkpoint(
            thread_id,
            checkpoint_id=checkpoint_id,
            config=safe_dumps(thread_config(thread_id, checkpoint_id)),
            checkpoint=safe_dumps({"v": CHECKPOINT_SCHEMA_VERSION, "step": -1, "messages": []}),
            metadata=safe_dumps({"source": "seed", "step": -1, "writes": None}),
            pending_writes=encoded,
            schema_version=CHECKPOINT_SCHEMA_VERSION,
        )

    def delete_thread(self, thread_id: str) -> int:
        removed = self.store.delete_checkpoints(thread_id)
        logger.info("checkpoint_thread_deleted", thread_id=thread_id, removed=removed)
        return removed
