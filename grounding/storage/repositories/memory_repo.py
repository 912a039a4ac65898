"""
Memory Repository

Data access layer for conversation memories.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog

from grounding.models.memory import (
    InteractionData,
    Memory,
    MemoryLink,
    MemoryMetadata,
    MemoryPriority,
    MemoryRetention,
    MemoryType,
)
from grounding.storage.database import Database, decode_json

logger = structlog.get_logger(__name__)


class MemoryRepository:
    """
    Repository for conversation memory CRUD operations.

    Provides:
    - Create, read, update, delete operations
    - Filtered listing by user, conversation, type, priority, retention, tags, dates
    - Expiry sweeps
    - Access tracking
    """

    def __init__(self, db: Database):
        self.db = db

    async def create(self, memory: Memory) -> Memory:
        """Persist a fully scored memory."""
        query = """
            INSERT INTO conversation_memory (
                id, user_id, conversation_id, memory_type, interaction_data,
                quality_score, memory_relevance_score, priority, retention, tags,
                links, metadata, version, created_at, updated_at, expires_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
            RETURNING *
        """

        row = await self.db.fetchrow(
            query,
            memory.id,
            memory.user_id,
            memory.conversation_id,
            memory.memory_type.value,
            memory.interaction_data.model_dump(mode="json", exclude_none=True),
            memory.quality_score,
            memory.memory_relevance_score,
            memory.priority.value,
            memory.retention.value,
            list(memory.tags),
            [link.model_dump(mode="json") for link in memory.links],
            memory.metadata.model_dump(mode="json"),
            memory.version,
            memory.created_at,
            memory.updated_at,
            memory.expires_at,
        )
        logger.debug("Memory row inserted", memory_id=str(memory.id), user_id=str(memory.user_id))
        return self._row_to_memory(row)

    async def get_by_id(self, memory_id: UUID) -> Memory | None:
        query = "SELECT * FROM conversation_memory WHERE id = $1"
        row = await self.db.fetchrow(query, memory_id)
        return self._row_to_memory(row) if row else None

    async def get_many(self, memory_ids: list[UUID]) -> list[Memory]:
        if not memory_ids:
            return []
        query = "SELECT * FROM conversation_memory WHERE id = ANY($1::uuid[])"
        rows = await self.db.fetch(query, list(memory_ids))
        return [self._row_to_memory(row) for row in rows]

    async def update(self, memory: Memory) -> Memory | None:
        """
        Write back the mutable fields of a memory.

        Last write wins; the stored version is bumped on every write.
        """
        query = """
            UPDATE conversation_memory
            SET interaction_data = $2, quality_score = $3, memory_relevance_score = $4,
                priority = $5, tags = $6, links = $7, metadata = $8,
                version = version + 1, updated_at = $9
            WHERE id = $1
            RETURNING *
        """

        row = await self.db.fetchrow(
            query,
            memory.id,
            memory.interaction_data.model_dump(mode="json", exclude_none=True),
            memory.quality_score,
            memory.memory_relevance_score,
            memory.priority.value,
            list(memory.tags),
            [link.model_dump(mode="json") for link in memory.links],
            memory.metadata.model_dump(mode="json"),
            memory.updated_at,
        )
        if row is None:
            return None
        return self._row_to_memory(row)

    async def delete_many(self, memory_ids: list[UUID]) -> int:
        if not memory_ids:
            return 0
        query = "DELETE FROM conversation_memory WHERE id = ANY($1::uuid[])"
        status = await self.db.execute(query, list(memory_ids))
        return _affected_rows(status)

    async def delete_expired(self, now: datetime) -> int:
        """Physically delete every memory past its expiry."""
        query = "DELETE FROM conversation_memory WHERE expires_at < $1"
        status = await self.db.execute(query, now)
        deleted = _affected_rows(status)
        logger.info("Expired memories deleted", count=deleted)
        return deleted

    async def list_for_user(
        self,
        user_id: UUID,
        conversation_id: str | None = None,
        memory_types: list[MemoryType] | None = None,
        priorities: list[MemoryPriority] | None = None,
        retentions: list[MemoryRetention] | None = None,
        tags: list[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        exclude_id: UUID | None = None,
        limit: int = 100,
    ) -> list[Memory]:
        """List a user's memories, newest first."""
        conditions = ["user_id = $1"]
        params: list[Any] = [user_id]
        param_idx = 2

        if conversation_id is not None:
            conditions.append(f"conversation_id = ${param_idx}")
            params.append(conversation_id)
            param_idx += 1

        if memory_types:
            conditions.append(f"memory_type = ANY(${param_idx}::text[])")
            params.append([t.value for t in memory_types])
            param_idx += 1

        if priorities:
            conditions.append(f"priority = ANY(${param_idx}::text[])")
            params.append([p.value for p in priorities])
            param_idx += 1

        if retentions:
            conditions.append(f"retention = ANY(${param_idx}::text[])")
            params.append([r.value for r in retentions])
            param_idx += 1

        if tags:
            conditions.append(f"tags && ${param_idx}::text[]")
            params.append(list(tags))
            param_idx += 1

        if start is not None:
            conditions.append(f"created_at >= ${param_idx}")
            params.append(start)
            param_idx += 1

        if end is not None:
            conditions.append(f"created_at <= ${param_idx}")
            params.append(end)
            param_idx += 1

        if exclude_id is not None:
            conditions.append(f"id <> ${param_idx}")
            params.append(exclude_id)
            param_idx += 1

        params.append(limit)
        query = f"""
            SELECT * FROM conversation_memory
            WHERE {' AND '.join(conditions)}
            ORDER BY created_at DESC
            LIMIT ${param_idx}
        """

        rows = await self.db.fetch(query, *params)
        return [self._row_to_memory(row) for row in rows]

    async def record_access(self, memory_ids: list[UUID], now: datetime) -> None:
        """Increment access counters inside the metadata document."""
        if not memory_ids:
            return
        query = """
            UPDATE conversation_memory
            SET metadata = jsonb_set(
                    jsonb_set(metadata, '{access_count}',
                              to_jsonb(COALESCE((metadata->>'access_count')::int, 0) + 1)),
                    '{last_accessed}', to_jsonb($2::text))
            WHERE id = ANY($1::uuid[])
        """
        await self.db.execute(query, list(memory_ids), now.isoformat())

    def _row_to_memory(self, row: Any) -> Memory:
        """Convert database row to Memory model."""
        links = decode_json(row["links"], [])
        return Memory(
            id=row["id"],
            user_id=row["user_id"],
            conversation_id=row["conversation_id"],
            memory_type=MemoryType(row["memory_type"]),
            interaction_data=InteractionData.model_validate(decode_json(row["interaction_data"], {})),
            quality_score=row["quality_score"],
            memory_relevance_score=row["memory_relevance_score"],
            priority=MemoryPriority(row["priority"]),
            retention=MemoryRetention(row["retention"]),
            tags=list(row["tags"] or []),
            links=[MemoryLink.model_validate(link) for link in links],
            metadata=MemoryMetadata.model_validate(decode_json(row["metadata"], {})),
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            expires_at=row["expires_at"],
        )


def _affected_rows(status: str | None) -> int:
    """Parse the row count out of a command tag such as "DELETE 3"."""
    if not status:
        return 0
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0
