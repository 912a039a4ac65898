"""
Knowledge Repository

Data access for verified knowledge entries and the relationships
stored between them.
"""

from typing import Any
from uuid import UUID

import structlog

from grounding.models.knowledge import (
    ContentType,
    FactRelationship,
    KnowledgeEntry,
    RelationshipType,
    VerificationStatus,
)
from grounding.models.requests import KnowledgeSearchFilters
from grounding.storage.database import Database

logger = structlog.get_logger(__name__)


class KnowledgeRepository:
    """
    Repository for knowledge entries and fact relationships.

    Provides:
    - Entry creation and lookup
    - Filtered candidate queries for relevance search
    - Relationship lookup ordered by strength
    - Corpus-wide aggregate counts
    """

    def __init__(self, db: Database):
        self.db = db

    async def create(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        query = """
            INSERT INTO educational_knowledge_base (
                id, source_id, content, content_type, subject, topics,
                confidence, educational_value, difficulty, related_concepts,
                prerequisites, learning_objectives, verification_status,
                last_verified, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)
            RETURNING *
        """

        row = await self.db.fetchrow(
            query,
            entry.id,
            entry.source_id,
            entry.content,
            entry.content_type.value,
            entry.subject,
            list(entry.topics),
            entry.confidence,
            entry.educational_value,
            entry.difficulty,
            list(entry.related_concepts),
            list(entry.prerequisites),
            list(entry.learning_objectives),
            entry.verification_status.value,
            entry.last_verified,
            entry.created_at,
            entry.updated_at,
        )
        logger.info("Knowledge entry created", entry_id=str(entry.id), source_id=str(entry.source_id))
        return self._row_to_entry(row)

    async def get_by_id(self, entry_id: UUID) -> KnowledgeEntry | None:
        row = await self.db.fetchrow(
            "SELECT * FROM educational_knowledge_base WHERE id = $1", entry_id
        )
        return self._row_to_entry(row) if row else None

    async def search(self, filters: KnowledgeSearchFilters, limit: int) -> list[KnowledgeEntry]:
        """
        Fetch candidate entries matching the structured filters.

        Text relevance is scored by the caller; candidates come back
        ordered by educational value.
        """
        conditions = ["TRUE"]
        params: list[Any] = []
        param_idx = 1

        def add(clause: str, value: Any) -> None:
            nonlocal param_idx
            conditions.append(clause.format(idx=param_idx))
            params.append(value)
            param_idx += 1

        if filters.subjects:
            add("k.subject = ANY(${idx}::text[])", list(filters.subjects))
        if filters.topics:
            add("k.topics && ${idx}::text[]", list(filters.topics))
        if filters.content_types:
            add("k.content_type = ANY(${idx}::text[])", [c.value for c in filters.content_types])
        if filters.difficulty:
            add("k.difficulty = ANY(${idx}::int[])", list(filters.difficulty))
        if filters.min_reliability is not None:
            add("k.confidence >= ${idx}", filters.min_reliability)
        if filters.min_educational_value is not None:
            add("k.educational_value >= ${idx}", filters.min_educational_value)
        if filters.source_types:
            add("s.source_type = ANY(${idx}::text[])", [s.value for s in filters.source_types])
        if filters.source_ids:
            add("k.source_id = ANY(${idx}::uuid[])", list(filters.source_ids))
        if filters.verification_status:
            add(
                "k.verification_status = ANY(${idx}::text[])",
                [v.value for v in filters.verification_status],
            )
        if filters.time_range is not None:
            add("k.created_at >= ${idx}", filters.time_range.start)
            add("k.created_at <= ${idx}", filters.time_range.end)

        params.append(limit)
        query = f"""
            SELECT k.* FROM educational_knowledge_base k
            JOIN educational_sources s ON s.id = k.source_id
            WHERE {' AND '.join(conditions)}
            ORDER BY k.educational_value DESC, k.confidence DESC
            LIMIT ${param_idx}
        """

        rows = await self.db.fetch(query, *params)
        return [self._row_to_entry(row) for row in rows]

    # =========================================================================
    # Relationships
    # =========================================================================

    async def create_relationship(self, relationship: FactRelationship) -> FactRelationship:
        query = """
            INSERT INTO fact_relationships (
                id, source_fact_id, target_fact_id, relationship_type, strength, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING *
        """
        row = await self.db.fetchrow(
            query,
            relationship.id,
            relationship.source_fact_id,
            relationship.target_fact_id,
            relationship.relationship_type.value,
            relationship.strength,
            relationship.created_at,
        )
        return self._row_to_relationship(row)

    async def get_relationships(self, fact_id: UUID, limit: int = 50) -> list[FactRelationship]:
        query = """
            SELECT * FROM fact_relationships
            WHERE source_fact_id = $1
            ORDER BY strength DESC
            LIMIT $2
        """
        rows = await self.db.fetch(query, fact_id, limit)
        return [self._row_to_relationship(row) for row in rows]

    # =========================================================================
    # Statistics
    # =========================================================================

    async def count_entries(self) -> tuple[int, int]:
        """Total and verified entry counts."""
        row = await self.db.fetchrow(
            """
            SELECT
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE verification_status = 'verified') AS verified
            FROM educational_knowledge_base
            """
        )
        if not row:
            return 0, 0
        return row["total"] or 0, row["verified"] or 0

    async def histogram(self, column: str) -> dict[str, int]:
        """Entry counts grouped by subject or content_type."""
        if column not in ("subject", "content_type"):
            raise ValueError(f"unsupported histogram column: {column}")
        rows = await self.db.fetch(
            f"""
            SELECT COALESCE({column}, 'unknown') AS bucket, COUNT(*) AS n
            FROM educational_knowledge_base
            GROUP BY bucket
            ORDER BY n DESC
            """
        )
        return {row["bucket"]: row["n"] for row in rows}

    def _row_to_entry(self, row: Any) -> KnowledgeEntry:
        return KnowledgeEntry(
            id=row["id"],
            source_id=row["source_id"],
            content=row["content"],
            content_type=ContentType(row["content_type"]),
            subject=row["subject"],
            topics=list(row["topics"] or []),
            confidence=row["confidence"],
            educational_value=row["educational_value"],
            difficulty=row["difficulty"],
            related_concepts=list(row["related_concepts"] or []),
            prerequisites=list(row["prerequisites"] or []),
            learning_objectives=list(row["learning_objectives"] or []),
            verification_status=VerificationStatus(row["verification_status"]),
            last_verified=row["last_verified"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_relationship(self, row: Any) -> FactRelationship:
        return FactRelationship(
            id=row["id"],
            source_fact_id=row["source_fact_id"],
            target_fact_id=row["target_fact_id"],
            relationship_type=RelationshipType(row["relationship_type"]),
            strength=row["strength"],
            created_at=row["created_at"],
        )
