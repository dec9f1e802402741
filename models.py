"""
MathPulse Worker – SQLAlchemy ORM Models.

These models mirror the record store schema shared with the web tier:
problem sessions, graded submissions, per-user progress and the badge
catalog with its append-only award table.

Note: column names are camelCase to match the existing tables exactly.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from database import Base


class DifficultyLevel(str, enum.Enum):
    EASY = "EASY"
    MEDIUM = "MEDIUM"
    HARD = "HARD"


class JobStatus(str, enum.Enum):
    """Generation lifecycle of a problem session."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FeedbackStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class BadgeType(str, enum.Enum):
    STREAK_MASTER = "STREAK_MASTER"
    PERSISTENCE = "PERSISTENCE"
    PERFECTIONIST = "PERFECTIONIST"
    QUICK_SOLVER = "QUICK_SOLVER"
    MATH_GENIUS = "MATH_GENIUS"


def _new_id() -> str:
    return str(uuid.uuid4())


class MathProblemSession(Base):
    __tablename__ = "math_problem_sessions"

    id = Column(String(36), primary_key=True, default=_new_id)
    userId = Column(String(64), nullable=False, index=True)
    problemText = Column(Text, nullable=False)
    correctAnswer = Column(Float, nullable=False, default=0.0)
    difficultyLevel = Column(String(10), nullable=False, default=DifficultyLevel.MEDIUM.value)
    jobStatus = Column(String(20), nullable=False, default=JobStatus.PENDING.value, index=True)
    jobId = Column(String(64), nullable=True)
    createdAt = Column(DateTime, default=datetime.utcnow)
    updatedAt = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MathProblemSubmission(Base):
    __tablename__ = "math_problem_submissions"

    id = Column(String(36), primary_key=True, default=_new_id)
    sessionId = Column(String(36), ForeignKey("math_problem_sessions.id"), nullable=False, index=True)
    userId = Column(String(64), nullable=False, index=True)
    userAnswer = Column(Float, nullable=False)
    isCorrect = Column(Boolean, nullable=False)
    feedbackText = Column(Text, nullable=False)
    feedbackStatus = Column(String(20), nullable=False, default=FeedbackStatus.PENDING.value)
    progressRecorded = Column(Boolean, nullable=False, default=False)
    timeTaken = Column(Integer, nullable=True)
    jobId = Column(String(64), nullable=True)
    createdAt = Column(DateTime, default=datetime.utcnow)


class UserProgress(Base):
    __tablename__ = "user_progress"

    id = Column(String(36), primary_key=True, default=_new_id)
    userId = Column(String(64), unique=True, nullable=False)
    totalProblems = Column(Integer, nullable=False, default=0)
    correctProblems = Column(Integer, nullable=False, default=0)
    currentStreak = Column(Integer, nullable=False, default=0)
    longestStreak = Column(Integer, nullable=False, default=0)
    lastFiveResults = Column(JSON, nullable=False, default=list)
    currentDifficulty = Column(String(10), nullable=False, default=DifficultyLevel.MEDIUM.value)
    updatedAt = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Badge(Base):
    __tablename__ = "badges"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(100), unique=True, nullable=False)
    badgeType = Column(String(30), unique=True, nullable=False)
    description = Column(String(500), nullable=False)
    iconUrl = Column(String(100), nullable=True)


class UserBadge(Base):
    __tablename__ = "user_badges"
    __table_args__ = (UniqueConstraint("userId", "badgeId", name="uq_user_badge"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    userId = Column(String(64), nullable=False, index=True)
    badgeId = Column(String(36), ForeignKey("badges.id"), nullable=False)
    earnedAt = Column(DateTime, default=datetime.utcnow)
