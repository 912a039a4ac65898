"""
Profile Repository

Read-only access to the learner data owned by the surrounding
application: preferences, gamification, study sessions and stored
conversation summaries.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

import structlog

from grounding.models.profile import (
    ConversationSummary,
    GamificationRecord,
    LearningPreferences,
    LearningStyleType,
    SessionOutcome,
    StudySession,
)
from grounding.storage.database import Database

logger = structlog.get_logger(__name__)


class ProfileRepository:
    """Repository over the learner activity tables."""

    def __init__(self, db: Database):
        self.db = db

    async def get_preferences(self, user_id: UUID) -> LearningPreferences | None:
        query = """
            SELECT learning_style, preferred_difficulty, explanation_style, question_frequency
            FROM user_preferences
            WHERE user_id = $1
        """
        row = await self.db.fetchrow(query, user_id)
        if row is None:
            return None
        return LearningPreferences(
            learning_style=LearningStyleType(row["learning_style"] or "reading_writing"),
            preferred_difficulty=row["preferred_difficulty"],
            explanation_style=row["explanation_style"],
            question_frequency=row["question_frequency"],
        )

    async def get_gamification(self, user_id: UUID) -> GamificationRecord | None:
        query = """
            SELECT level, current_streak, total_points
            FROM student_gamification
            WHERE user_id = $1
        """
        row = await self.db.fetchrow(query, user_id)
        if row is None:
            return None
        return GamificationRecord(
            level=row["level"] or 1,
            current_streak=row["current_streak"] or 0,
            total_points=row["total_points"] or 0,
        )

    async def list_study_sessions(
        self,
        user_id: UUID,
        since: datetime,
        limit: int = 50,
    ) -> list[StudySession]:
        """Recent study sessions, newest first."""
        query = """
            SELECT subject, topic, duration, completed, accuracy, difficulty,
                   learning_objective, created_at
            FROM study_sessions
            WHERE user_id = $1 AND created_at >= $2
            ORDER BY created_at DESC
            LIMIT $3
        """
        rows = await self.db.fetch(query, user_id, since, limit)
        return [self._row_to_session(row) for row in rows]

    async def list_conversation_summaries(
        self,
        user_id: UUID,
        limit: int = 10,
        subjects: list[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ConversationSummary]:
        conditions = ["user_id = $1"]
        params: list[Any] = [user_id]
        param_idx = 2

        if subjects:
            conditions.append(f"subjects && ${param_idx}::text[]")
            params.append(list(subjects))
            param_idx += 1
        if start is not None:
            conditions.append(f"created_at >= ${param_idx}")
            params.append(start)
            param_idx += 1
        if end is not None:
            conditions.append(f"created_at <= ${param_idx}")
            params.append(end)
            param_idx += 1

        params.append(limit)
        query = f"""
            SELECT * FROM conversation_summaries
            WHERE {' AND '.join(conditions)}
            ORDER BY created_at DESC
            LIMIT ${param_idx}
        """
        rows = await self.db.fetch(query, *params)
        return [self._row_to_summary(row) for row in rows]

    def _row_to_session(self, row: Any) -> StudySession:
        return StudySession(
            subject=row["subject"],
            topic=row["topic"],
            duration=row["duration"] or 0,
            completed=bool(row["completed"]),
            accuracy=row["accuracy"],
            difficulty=row["difficulty"],
            learning_objective=row["learning_objective"],
            created_at=row["created_at"],
        )

    def _row_to_summary(self, row: Any) -> ConversationSummary:
        return ConversationSummary(
            conversation_id=str(row["conversation_id"]),
            summary=row["summary"] or "",
            key_topics=list(row["key_topics"] or []),
            learning_objectives=list(row["learning_objectives"] or []),
            quality_score=row["quality_score"] if row["quality_score"] is not None else 0.5,
            duration=row["duration"] or 0,
            messages_count=row["messages_count"] or 0,
            subjects=list(row["subjects"] or []),
            difficulty=row["difficulty_level"] or 3,
            outcome=SessionOutcome(row["outcome"] or "in_progress"),
            created_at=row["created_at"],
        )
