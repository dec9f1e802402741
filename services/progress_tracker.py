"""
Progress Tracker – persists adaptive-difficulty updates.

Loads the user's progress row (creating it lazily on the first graded
submission), runs the pure engine and writes the new values back within
the caller's transaction. Also builds the read-only progress overview.
"""

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from models import (
    Badge,
    DifficultyLevel,
    MathProblemSession,
    MathProblemSubmission,
    UserBadge,
    UserProgress,
)
from services.adaptive_difficulty import ProgressSnapshot, apply_result

logger = logging.getLogger(__name__)


async def current_difficulty(db: AsyncSession, user_id: str) -> DifficultyLevel:
    """Tier for the user's next problem; MEDIUM until progress exists."""
    result = await db.execute(
        select(UserProgress.currentDifficulty).where(UserProgress.userId == user_id)
    )
    level = result.scalar_one_or_none()
    return DifficultyLevel(level) if level else DifficultyLevel.MEDIUM


async def record_result(db: AsyncSession, user_id: str, is_correct: bool) -> UserProgress:
    """
    Apply one graded outcome to the user's progress. Does not commit.

    The row is locked FOR UPDATE on databases that support it so two
    feedback jobs for the same user cannot interleave read and write.
    """
    result = await db.execute(
        select(UserProgress).where(UserProgress.userId == user_id).with_for_update()
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = UserProgress(userId=user_id)
        db.add(row)
        before = ProgressSnapshot()
    else:
        before = ProgressSnapshot.from_row(row)

    after = apply_result(before, is_correct)
    after.apply_to(row)

    if after.current_difficulty != before.current_difficulty:
        logger.info(
            f"User {user_id} difficulty {before.current_difficulty.value} "
            f"-> {after.current_difficulty.value}"
        )
    return row


async def progress_overview(db: AsyncSession, user_id: str) -> dict:
    """Progress counters, earned badges (newest first) and the ten latest sessions."""
    row = (
        await db.execute(select(UserProgress).where(UserProgress.userId == user_id))
    ).scalar_one_or_none()
    snapshot = ProgressSnapshot.from_row(row) if row is not None else ProgressSnapshot()

    badges = (
        await db.execute(
            select(Badge, UserBadge.earnedAt)
            .join(UserBadge, UserBadge.badgeId == Badge.id)
            .where(UserBadge.userId == user_id)
            .order_by(UserBadge.earnedAt.desc())
        )
    ).all()

    submission_count = (
        select(func.count(MathProblemSubmission.id))
        .where(MathProblemSubmission.sessionId == MathProblemSession.id)
        .scalar_subquery()
    )
    sessions = (
        await db.execute(
            select(MathProblemSession, submission_count)
            .where(MathProblemSession.userId == user_id)
            .order_by(MathProblemSession.createdAt.desc())
            .limit(10)
        )
    ).all()

    return {
        "progress": {
            "totalProblems": snapshot.total_problems,
            "correctProblems": snapshot.correct_problems,
            "currentStreak": snapshot.current_streak,
            "longestStreak": snapshot.longest_streak,
            "lastFiveResults": list(snapshot.last_five_results),
            "currentDifficulty": snapshot.current_difficulty.value,
        },
        "badges": [
            {
                "id": badge.id,
                "badgeType": badge.badgeType,
                "name": badge.name,
                "description": badge.description,
                "iconUrl": badge.iconUrl,
                "earnedAt": earned_at.isoformat() if earned_at else None,
            }
            for badge, earned_at in badges
        ],
        "recentSessions": [
            {
                "id": session.id,
                "difficultyLevel": session.difficultyLevel,
                "jobStatus": session.jobStatus,
                "submissionCount": count,
                "createdAt": session.createdAt.isoformat() if session.createdAt else None,
            }
            for session, count in sessions
        ],
    }
