"""
Adaptive Difficulty Engine.

Pure functions over a per-user progress snapshot. The engine keeps the
last five graded outcomes and, once that window is full, moves the
difficulty tier after every graded submission:

    ≥ 4 of 5 correct  → one tier up   (HARD is a ceiling)
    ≤ 2 of 5 correct  → one tier down (EASY is a floor)
    exactly 3 of 5    → unchanged
"""

from dataclasses import dataclass, field, replace

from models import DifficultyLevel

WINDOW_SIZE = 5
STEP_UP_THRESHOLD = 4
STEP_DOWN_THRESHOLD = 2

CORRECT = "correct"
INCORRECT = "incorrect"

_TIERS = [DifficultyLevel.EASY, DifficultyLevel.MEDIUM, DifficultyLevel.HARD]


@dataclass(frozen=True)
class ProgressSnapshot:
    total_problems: int = 0
    correct_problems: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    last_five_results: tuple[str, ...] = field(default_factory=tuple)
    current_difficulty: DifficultyLevel = DifficultyLevel.MEDIUM

    @classmethod
    def from_row(cls, row) -> "ProgressSnapshot":
        return cls(
            total_problems=row.totalProblems or 0,
            correct_problems=row.correctProblems or 0,
            current_streak=row.currentStreak or 0,
            longest_streak=row.longestStreak or 0,
            last_five_results=tuple(row.lastFiveResults or ())[-WINDOW_SIZE:],
            current_difficulty=DifficultyLevel(row.currentDifficulty or DifficultyLevel.MEDIUM.value),
        )

    def apply_to(self, row) -> None:
        row.totalProblems = self.total_problems
        row.correctProblems = self.correct_problems
        row.currentStreak = self.current_streak
        row.longestStreak = self.longest_streak
        row.lastFiveResults = list(self.last_five_results)
        row.currentDifficulty = self.current_difficulty.value


def step_up(level: DifficultyLevel) -> DifficultyLevel:
    if level is DifficultyLevel.HARD:
        return DifficultyLevel.HARD
    return _TIERS[_TIERS.index(level) + 1]


def step_down(level: DifficultyLevel) -> DifficultyLevel:
    if level is DifficultyLevel.EASY:
        return DifficultyLevel.EASY
    return _TIERS[_TIERS.index(level) - 1]


def next_difficulty(current: DifficultyLevel, window: tuple[str, ...] | list[str]) -> DifficultyLevel:
    """Tier for the next problem given the rolling window."""
    if len(window) != WINDOW_SIZE:
        return current

    correct = sum(1 for outcome in window if outcome == CORRECT)
    if correct >= STEP_UP_THRESHOLD:
        return step_up(current)
    if correct <= STEP_DOWN_THRESHOLD:
        return step_down(current)
    return current


def apply_result(progress: ProgressSnapshot, is_correct: bool) -> ProgressSnapshot:
    window = (progress.last_five_results + (CORRECT if is_correct else INCORRECT,))[-WINDOW_SIZE:]
    streak = progress.current_streak + 1 if is_correct else 0

    return replace(
        progress,
        total_problems=progress.total_problems + 1,
        correct_problems=progress.correct_problems + (1 if is_correct else 0),
        current_streak=streak,
        longest_streak=max(progress.longest_streak, streak),
        last_five_results=window,
        current_difficulty=next_difficulty(progress.current_difficulty, window),
    )
