"""SQLModel data models.

This module defines the application's tables using SQLModel. Each class
maps to one table; foreign keys are declared on the child side and the
composite views are assembled by the repositories and services rather
than through ORM relationships, so rows can be read inside a single
store session and handed out detached.
"""

from typing import Optional
from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    """A registered user.

    Fields:
    - `username`: unique login name
    - `password_hash`: hashed password string (never store plaintext)
    - `is_admin`: may author quizzes and see participants
    """
    __tablename__ = "users"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    is_admin: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class Quiz(SQLModel, table=True):
    """A timed quiz. `duration` is in minutes."""
    __tablename__ = "quizzes"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    duration: int
    total_score: int


class Question(SQLModel, table=True):
    """A multiple-choice question belonging to exactly one quiz."""
    __tablename__ = "questions"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Optional[int] = Field(default=None, primary_key=True)
    quiz_id: int = Field(foreign_key="quizzes.id", index=True)
    text: str
    marks: int


class Option(SQLModel, table=True):
    """Possible answer for a `Question`.

    Exactly one option per question has `is_correct` set.
    """
    __tablename__ = "options"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Optional[int] = Field(default=None, primary_key=True)
    question_id: int = Field(foreign_key="questions.id", index=True)
    text: str
    is_correct: bool = False


class Attempt(SQLModel, table=True):
    """One user's timed run at one quiz.

    `score` and `completed_at` stay null while the attempt is active.
    """
    __tablename__ = "attempts"
    __table_args__ = (
        UniqueConstraint("user_id", "quiz_id", name="uq_attempt_user_quiz"),
        {"sqlite_autoincrement": True},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    quiz_id: int = Field(foreign_key="quizzes.id", index=True)
    score: Optional[int] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class Response(SQLModel, table=True):
    """The option chosen for one question inside an `Attempt`."""
    __tablename__ = "responses"
    __table_args__ = (
        UniqueConstraint("attempt_id", "question_id", name="uq_response_attempt_question"),
        {"sqlite_autoincrement": True},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    attempt_id: int = Field(foreign_key="attempts.id", index=True)
    question_id: int = Field(foreign_key="questions.id")
    option_id: int = Field(foreign_key="options.id")
