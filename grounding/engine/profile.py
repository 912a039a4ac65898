"""
Profile Derivation

Builds the ultra-compressed student profile from raw activity: learning
preferences, gamification and recent study sessions (newest first).
"""

import math
from collections import Counter, defaultdict
from uuid import UUID

from grounding.models.profile import (
    AdaptiveFactors,
    ComplexityLevel,
    CompressedMetadata,
    GamificationRecord,
    LearningPreferences,
    LearningStyle,
    StudyProgress,
    StudySession,
    StylePreferences,
    UltraCompressedProfile,
)

DEFAULT_DIFFICULTY = 3
STRONG_ACCURACY = 0.8
STRONG_SHARE = 0.8
WEAK_ACCURACY = 0.6
WEAK_SHARE = 0.5
WEEKS_IN_WINDOW = 4


def default_profile(user_id: UUID) -> UltraCompressedProfile:
    """Profile used when no activity is available or derivation fails."""
    return UltraCompressedProfile(user_id=user_id)


def derive_profile(
    user_id: UUID,
    preferences: LearningPreferences | None,
    gamification: GamificationRecord | None,
    sessions: list[StudySession],
) -> UltraCompressedProfile:
    preferences = preferences or LearningPreferences()
    gamification = gamification or GamificationRecord()

    return UltraCompressedProfile(
        user_id=user_id,
        learning_style=learning_style(preferences, sessions),
        strong_subjects=subjects_by_share(sessions, lambda a: a > STRONG_ACCURACY, STRONG_SHARE),
        weak_subjects=subjects_by_share(sessions, lambda a: a < WEAK_ACCURACY, WEAK_SHARE),
        current_level=gamification.level,
        streak_days=gamification.current_streak,
        total_points=gamification.total_points,
        preferred_complexity=complexity_level(preferences, sessions),
        recent_topics=recent_topics(sessions),
        study_progress=study_progress(sessions),
        learning_objectives=learning_objectives(sessions),
        last_session_summary=last_session_summary(sessions),
        compressed_metadata=compressed_metadata(sessions),
    )


def learning_style(preferences: LearningPreferences, sessions: list[StudySession]) -> LearningStyle:
    step_by_step = len(sessions) > 10
    examples_first = any(s.topic and "example" in s.topic for s in sessions)
    return LearningStyle(
        type=preferences.learning_style,
        preferences=StylePreferences(
            step_by_step=step_by_step,
            examples_first=examples_first,
            abstract_concepts=not step_by_step,
            practical_application=True,
        ),
        adaptive_factors=AdaptiveFactors(
            question_frequency=preferences.question_frequency or "medium",
        ),
    )


def subjects_by_share(sessions: list[StudySession], hit, share: float, limit: int = 5) -> list[str]:
    """Subjects whose share of sessions satisfying hit(accuracy) exceeds share."""
    totals: dict[str, list[int]] = defaultdict(lambda: [0, 0])
    for session in sessions:
        if not session.subject:
            continue
        stats = totals[session.subject]
        stats[1] += 1
        if session.accuracy is not None and hit(session.accuracy):
            stats[0] += 1

    return [
        subject for subject, (hits, total) in totals.items()
        if total > 0 and hits / total > share
    ][:limit]


def complexity_level(preferences: LearningPreferences, sessions: list[StudySession]) -> ComplexityLevel:
    if sessions:
        average = sum(s.difficulty or DEFAULT_DIFFICULTY for s in sessions) / len(sessions)
    else:
        average = DEFAULT_DIFFICULTY
    current = _clamp_level(math.floor(average + 0.5))
    preferred = _clamp_level(preferences.preferred_difficulty or current)
    return ComplexityLevel(
        current=current,
        preferred=preferred,
        adaptive_range=(max(1, preferred - 1), min(5, preferred + 1)),
    )


def recent_topics(sessions: list[StudySession], window: int = 10) -> list[str]:
    topics = [s.topic for s in sessions if s.topic][:window]
    return list(dict.fromkeys(topics))


def study_progress(sessions: list[StudySession]) -> StudyProgress:
    if not sessions:
        return StudyProgress()
    average_accuracy = sum(s.accuracy or 0.0 for s in sessions) / len(sessions)
    return StudyProgress(
        total_topics=len(sessions),
        completed_topics=sum(1 for s in sessions if s.completed),
        mastery_level=average_accuracy * 100,
        accuracy=average_accuracy * 100,
        time_spent=sum(s.duration for s in sessions),
        last_activity=sessions[0].created_at,
        improvement_rate=len(sessions) / WEEKS_IN_WINDOW,
    )


def learning_objectives(sessions: list[StudySession], limit: int = 5) -> list[str]:
    objectives = [s.learning_objective for s in sessions if s.learning_objective]
    return list(dict.fromkeys(objectives))[:limit]


def last_session_summary(sessions: list[StudySession]) -> str:
    if not sessions:
        return "No recent activity"
    last = sessions[0]
    topic = f" - {last.topic}" if last.topic else ""
    minutes = round(last.duration / 60)
    accuracy = round((last.accuracy or 0.0) * 100)
    return f"Studied {last.subject}{topic} for {minutes} minutes with {accuracy}% accuracy"


def compressed_metadata(sessions: list[StudySession]) -> CompressedMetadata:
    if not sessions:
        return CompressedMetadata()

    subjects = Counter(s.subject or "Unknown" for s in sessions)
    durations = [s.duration for s in sessions if s.duration > 0]
    return CompressedMetadata(
        total_sessions=len(sessions),
        average_session_time=sum(s.duration for s in sessions) / len(sessions),
        most_studied_subject=subjects.most_common(1)[0][0],
        learning_velocity=len(sessions) / WEEKS_IN_WINDOW,
        attention_span=sum(durations) / len(durations) if durations else 0.0,
    )


def _clamp_level(value: int) -> int:
    return max(1, min(5, value))
