"""
Badge Engine – threshold achievements awarded after each graded submission.

Rules are evaluated against the user's *new* progress. Each rule awards
its badge at most once per user; the unique (userId, badgeId) constraint
on user_badges makes that hold even when two feedback jobs for the same
user evaluate concurrently: the losing insert is rolled back and skipped.

PERFECTIONIST and QUICK_SOLVER exist in the catalog but ship without a
rule. Deployments that settle their criteria add them via `register`.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from models import Badge, BadgeType, UserBadge, UserProgress
from services.adaptive_difficulty import ProgressSnapshot

logger = logging.getLogger(__name__)

BADGE_CATALOG = [
    {
        "name": "Streak Master",
        "badgeType": BadgeType.STREAK_MASTER,
        "description": "Earned by solving 5 problems correctly in a row!",
        "iconUrl": "🔥",
    },
    {
        "name": "Persistence",
        "badgeType": BadgeType.PERSISTENCE,
        "description": "Earned by completing 10 problems!",
        "iconUrl": "💪",
    },
    {
        "name": "Perfectionist",
        "badgeType": BadgeType.PERFECTIONIST,
        "description": "Earned by solving 10 problems with 100% accuracy!",
        "iconUrl": "⭐",
    },
    {
        "name": "Quick Solver",
        "badgeType": BadgeType.QUICK_SOLVER,
        "description": "Earned by solving 5 problems in under 10 minutes!",
        "iconUrl": "⚡",
    },
    {
        "name": "Math Genius",
        "badgeType": BadgeType.MATH_GENIUS,
        "description": "Earned by solving 50 problems total!",
        "iconUrl": "🎓",
    },
]


@dataclass(frozen=True)
class BadgeRule:
    badge_type: BadgeType
    is_met: Callable[[ProgressSnapshot], bool]


DEFAULT_BADGE_RULES = (
    BadgeRule(BadgeType.STREAK_MASTER, lambda p: p.current_streak >= 5),
    BadgeRule(BadgeType.PERSISTENCE, lambda p: p.total_problems >= 10),
    BadgeRule(BadgeType.MATH_GENIUS, lambda p: p.total_problems >= 50),
)


def due_badges(
    progress: ProgressSnapshot,
    earned: Iterable[BadgeType],
    rules: Iterable[BadgeRule] = DEFAULT_BADGE_RULES,
) -> list[BadgeType]:
    """Badge types whose threshold is met and which the user does not hold yet."""
    held = set(earned)
    return [
        rule.badge_type
        for rule in rules
        if rule.badge_type not in held and rule.is_met(progress)
    ]


async def seed_badges(session_factory: async_sessionmaker) -> int:
    """Insert catalog entries that are missing. Returns how many were added."""
    async with session_factory() as db:
        result = await db.execute(select(Badge.badgeType))
        present = set(result.scalars().all())

        added = 0
        for entry in BADGE_CATALOG:
            if entry["badgeType"].value in present:
                continue
            db.add(Badge(**{**entry, "badgeType": entry["badgeType"].value}))
            added += 1
        await db.commit()

    if added:
        logger.info(f"Seeded {added} badge(s)")
    return added


class BadgeEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        rules: Iterable[BadgeRule] = DEFAULT_BADGE_RULES,
    ) -> None:
        self._session_factory = session_factory
        self._rules: list[BadgeRule] = list(rules)

    @property
    def rules(self) -> tuple[BadgeRule, ...]:
        return tuple(self._rules)

    def register(self, rule: BadgeRule) -> None:
        self._rules = [r for r in self._rules if r.badge_type != rule.badge_type]
        self._rules.append(rule)

    async def evaluate(self, user_id: str) -> list[BadgeType]:
        """Award every newly met badge. Returns the badge types actually awarded."""
        async with self._session_factory() as db:
            row = (
                await db.execute(select(UserProgress).where(UserProgress.userId == user_id))
            ).scalar_one_or_none()
            if row is None:
                return []

            earned = (
                await db.execute(
                    select(Badge.badgeType)
                    .join(UserBadge, UserBadge.badgeId == Badge.id)
                    .where(UserBadge.userId == user_id)
                )
            ).scalars().all()

        due = due_badges(
            ProgressSnapshot.from_row(row),
            [BadgeType(t) for t in earned],
            self._rules,
        )

        awarded = []
        for badge_type in due:
            if await self._award(user_id, badge_type):
                awarded.append(badge_type)
        return awarded

    async def _award(self, user_id: str, badge_type: BadgeType) -> bool:
        async with self._session_factory() as db:
            badge = (
                await db.execute(select(Badge).where(Badge.badgeType == badge_type.value))
            ).scalar_one_or_none()
            if badge is None:
                logger.warning(f"Badge {badge_type.value} missing from catalog")
                return False

            db.add(UserBadge(userId=user_id, badgeId=badge.id))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.debug(f"User {user_id} already holds {badge_type.value}")
                return False

        logger.info(f"🏅 Awarded {badge_type.value} to user {user_id}")
        return True
