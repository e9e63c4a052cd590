"""Per-thread checkpoint stores.

One checkpoint per thread id, overwritten on every save (last write wins).
Snapshots are serialised on save, so later mutation of the live
Conversation never leaks into a stored checkpoint.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert

from maitre.api.models import Checkpoint, Conversation, Node
from maitre.storage.database import Database
from maitre.storage.models import ThreadCheckpoint

logger = logging.getLogger(__name__)


class Checkpointer(Protocol):
    async def save(self, thread_id: str, snapshot: Checkpoint) -> None: ...

    async def load(self, thread_id: str) -> Checkpoint | None: ...

    async def delete(self, thread_id: str) -> bool: ...


class MemoryCheckpointer:
    """In-process store keeping each snapshot as its JSON serialisation."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def save(self, thread_id: str, snapshot: Checkpoint) -> None:
        if snapshot.thread_id != thread_id:
            raise ValueError(f"snapshot for {snapshot.thread_id!r} saved under {thread_id!r}")
        data = snapshot.model_dump_json()
        async with self._lock:
            self._data[thread_id] = data

    async def load(self, thread_id: str) -> Checkpoint | None:
        async with self._lock:
            data = self._data.get(thread_id)
        if data is None:
            return None
        return Checkpoint.model_validate_json(data)

    async def delete(self, thread_id: str) -> bool:
        async with self._lock:
            return self._data.pop(thread_id, None) is not None

    def __len__(self) -> int:
        return len(self._data)


class SqlCheckpointer:
    """Postgres-backed store (maitre.checkpoints), one upserted row per thread."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def save(self, thread_id: str, snapshot: Checkpoint) -> None:
        if snapshot.thread_id != thread_id:
            raise ValueError(f"snapshot for {snapshot.thread_id!r} saved under {thread_id!r}")
        conversation = snapshot.conversation.model_dump(mode="json")
        stmt = (
            pg_insert(ThreadCheckpoint)
            .values(
                thread_id=thread_id,
                node=snapshot.node.value,
                round_trips=snapshot.round_trips,
                conversation=conversation,
                updated_at=snapshot.updated_at,
            )
            .on_conflict_do_update(
                index_elements=[ThreadCheckpoint.thread_id],
                set_={
                    "node": snapshot.node.value,
                    "round_trips": snapshot.round_trips,
                    "conversation": conversation,
                    "updated_at": snapshot.updated_at,
                },
            )
        )
        async with self.db.session() as session:
            await session.execute(stmt)
            await session.commit()

    async def load(self, thread_id: str) -> Checkpoint | None:
        async with self.db.session() as session:
            row = (
                await session.execute(
                    select(ThreadCheckpoint).where(ThreadCheckpoint.thread_id == thread_id)
                )
            ).scalar_one_or_none()
        if row is None:
            return None
        return Checkpoint(
            thread_id=row.thread_id,
            conversation=Conversation.model_validate(row.conversation),
            node=Node(row.node),
            round_trips=row.round_trips,
            updated_at=row.updated_at or datetime.now(UTC),
        )

    async def delete(self, thread_id: str) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                delete(ThreadCheckpoint).where(ThreadCheckpoint.thread_id == thread_id)
            )
            await session.commit()
        deleted = (result.rowcount or 0) > 0
        if deleted:
            logger.info("Retired thread %s", thread_id)
        return deleted
