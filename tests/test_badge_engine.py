import asyncio

import pytest
from sqlalchemy import func, select

from models import Badge, BadgeType, UserBadge, UserProgress
from services.adaptive_difficulty import ProgressSnapshot
from services.badge_engine import (
    BADGE_CATALOG,
    BadgeEngine,
    BadgeRule,
    due_badges,
    seed_badges,
)
from services.progress_tracker import record_result


async def _set_progress(session_factory, user_id, **values):
    async with session_factory() as db:
        db.add(UserProgress(userId=user_id, lastFiveResults=[], **values))
        await db.commit()


async def _badges_of(session_factory, user_id):
    async with session_factory() as db:
        result = await db.execute(
            select(Badge.badgeType)
            .join(UserBadge, UserBadge.badgeId == Badge.id)
            .where(UserBadge.userId == user_id)
        )
        return sorted(result.scalars().all())


def test_due_badges_thresholds():
    assert due_badges(ProgressSnapshot(current_streak=5), []) == [BadgeType.STREAK_MASTER]
    assert due_badges(ProgressSnapshot(total_problems=10), []) == [BadgeType.PERSISTENCE]
    assert due_badges(ProgressSnapshot(total_problems=50), []) == [
        BadgeType.PERSISTENCE,
        BadgeType.MATH_GENIUS,
    ]
    assert due_badges(ProgressSnapshot(current_streak=4, total_problems=9), []) == []


def test_due_badges_skips_held_badges():
    progress = ProgressSnapshot(current_streak=5, total_problems=50)
    held = [BadgeType.PERSISTENCE, BadgeType.STREAK_MASTER]

    assert due_badges(progress, held) == [BadgeType.MATH_GENIUS]


def test_catalog_only_badges_have_no_default_rule():
    perfect = ProgressSnapshot(total_problems=10, correct_problems=10, current_streak=3)

    due = due_badges(perfect, [])

    assert BadgeType.PERFECTIONIST not in due
    assert BadgeType.QUICK_SOLVER not in due


@pytest.mark.anyio
async def test_seed_badges_is_idempotent(session_factory):
    # the fixture already seeded once
    assert await seed_badges(session_factory) == 0

    async with session_factory() as db:
        count = (await db.execute(select(func.count(Badge.id)))).scalar_one()
    assert count == len(BADGE_CATALOG)


@pytest.mark.anyio
async def test_tenth_problem_awards_persistence_exactly_once(session_factory):
    await _set_progress(session_factory, "u1", totalProblems=9, correctProblems=5)
    engine = BadgeEngine(session_factory)

    async with session_factory() as db:
        await record_result(db, "u1", is_correct=False)
        await db.commit()
    assert await engine.evaluate("u1") == [BadgeType.PERSISTENCE]

    async with session_factory() as db:
        await record_result(db, "u1", is_correct=True)
        await db.commit()
    assert await engine.evaluate("u1") == []

    assert await _badges_of(session_factory, "u1") == [BadgeType.PERSISTENCE.value]


@pytest.mark.anyio
async def test_concurrent_evaluations_award_once(session_factory):
    await _set_progress(session_factory, "u2", totalProblems=10, correctProblems=6)
    engine = BadgeEngine(session_factory)

    results = await asyncio.gather(*(engine.evaluate("u2") for _ in range(3)))

    awarded = [badge for result in results for badge in result]
    assert awarded == [BadgeType.PERSISTENCE]
    assert await _badges_of(session_factory, "u2") == [BadgeType.PERSISTENCE.value]


@pytest.mark.anyio
async def test_evaluate_without_progress_awards_nothing(session_factory):
    assert await BadgeEngine(session_factory).evaluate("nobody") == []


@pytest.mark.anyio
async def test_registered_rule_is_evaluated(session_factory):
    await _set_progress(session_factory, "u3", totalProblems=10, correctProblems=10)
    engine = BadgeEngine(session_factory)
    engine.register(
        BadgeRule(
            BadgeType.PERFECTIONIST,
            lambda p: p.total_problems >= 10 and p.correct_problems == p.total_problems,
        )
    )

    awarded = await engine.evaluate("u3")

    assert set(awarded) == {BadgeType.PERSISTENCE, BadgeType.PERFECTIONIST}


def test_register_replaces_rule_for_same_badge():
    engine = BadgeEngine(session_factory=None)
    engine.register(BadgeRule(BadgeType.PERSISTENCE, lambda p: p.total_problems >= 20))

    rules = [r for r in engine.rules if r.badge_type is BadgeType.PERSISTENCE]
    assert len(rules) == 1
    assert not rules[0].is_met(ProgressSnapshot(total_problems=10))
