"""
Source Repository

Data access for the educational sources backing knowledge entries.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog

from grounding.models.knowledge import EducationalSource, SourceType, VerificationStatus
from grounding.models.requests import SourceListRequest
from grounding.storage.database import Database

logger = structlog.get_logger(__name__)


class SourceRepository:
    """Repository for educational source CRUD operations."""

    def __init__(self, db: Database):
        self.db = db

    async def create(self, source: EducationalSource) -> EducationalSource:
        query = """
            INSERT INTO educational_sources (
                id, title, author, url, source_type, reliability,
                verification_status, citations, publication_date, subject,
                topics, content, educational_relevance, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
            RETURNING *
        """

        row = await self.db.fetchrow(
            query,
            source.id,
            source.title,
            source.author,
            source.url,
            source.source_type.value,
            source.reliability,
            source.verification_status.value,
            list(source.citations),
            source.publication_date,
            source.subject,
            list(source.topics),
            source.content,
            source.educational_relevance,
            source.created_at,
            source.updated_at,
        )
        logger.info("Educational source created", source_id=str(source.id), title=source.title)
        return self._row_to_source(row)

    async def get_by_id(self, source_id: UUID) -> EducationalSource | None:
        row = await self.db.fetchrow("SELECT * FROM educational_sources WHERE id = $1", source_id)
        return self._row_to_source(row) if row else None

    async def update_verification(
        self,
        source_id: UUID,
        status: VerificationStatus,
        reliability: float | None,
        now: datetime,
    ) -> EducationalSource | None:
        """Update verification status, and reliability when given."""
        query = """
            UPDATE educational_sources
            SET verification_status = $2,
                reliability = COALESCE($3, reliability),
                updated_at = $4
            WHERE id = $1
            RETURNING *
        """
        row = await self.db.fetchrow(query, source_id, status.value, reliability, now)
        return self._row_to_source(row) if row else None

    async def list_sources(self, request: SourceListRequest) -> list[EducationalSource]:
        conditions = ["reliability >= $1"]
        params: list[Any] = [request.min_reliability]
        param_idx = 2

        if request.verification_status:
            conditions.append(f"verification_status = ANY(${param_idx}::text[])")
            params.append([v.value for v in request.verification_status])
            param_idx += 1

        if request.topics:
            conditions.append(f"topics && ${param_idx}::text[]")
            params.append(list(request.topics))
            param_idx += 1

        params.append(request.limit)
        query = f"""
            SELECT * FROM educational_sources
            WHERE {' AND '.join(conditions)}
            ORDER BY educational_relevance DESC
            LIMIT ${param_idx}
        """
        rows = await self.db.fetch(query, *params)
        return [self._row_to_source(row) for row in rows]

    async def reliability_summary(self) -> tuple[int, float]:
        """Source count and mean reliability."""
        row = await self.db.fetchrow(
            "SELECT COUNT(*) AS total, AVG(reliability) AS avg_reliability FROM educational_sources"
        )
        if not row:
            return 0, 0.0
        return row["total"] or 0, float(row["avg_reliability"] or 0.0)

    def _row_to_source(self, row: Any) -> EducationalSource:
        return EducationalSource(
            id=row["id"],
            title=row["title"],
            author=row["author"],
            url=row["url"],
            source_type=SourceType(row["source_type"]),
            reliability=row["reliability"],
            verification_status=VerificationStatus(row["verification_status"]),
            citations=list(row["citations"] or []),
            publication_date=row["publication_date"],
            subject=row["subject"],
            topics=list(row["topics"] or []),
            content=row["content"] or "",
            educational_relevance=row["educational_relevance"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
