"""Repository classes encapsulating database operations.

Each repository is small and focused on a single table. Repositories
receive the `Session` of the current store unit of work, return SQLModel
objects, and flush rather than commit: `EntityStore.session()` owns the
transaction so a multi-table write either lands entirely or not at all.
"""

from typing import Dict, Iterable, List, Optional, Sequence
from sqlmodel import Session, select
from . import models
from .errors import NotFoundError, ValidationError


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        if self.get_by_username(user.username) is not None:
            raise ValidationError(f"username already taken: {user.username}")
        self.session.add(user)
        self.session.flush()
        self.session.refresh(user)
        return user

    def get_by_username(self, username: str) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        stmt = select(models.User).where(models.User.username == username)
        return self.session.exec(stmt).first()

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)


class QuizRepository:
    """Create and read `Quiz` rows."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, quiz: models.Quiz) -> models.Quiz:
        self.session.add(quiz)
        self.session.flush()
        self.session.refresh(quiz)
        return quiz

    def get(self, quiz_id: int) -> Optional[models.Quiz]:
        return self.session.get(models.Quiz, quiz_id)

    def get_or_404(self, quiz_id: int) -> models.Quiz:
        """Fetch a quiz or raise `NotFoundError`."""
        quiz = self.get(quiz_id)
        if quiz is None:
            raise NotFoundError(f"quiz not found: {quiz_id}")
        return quiz

    def list_all(self) -> List[models.Quiz]:
        stmt = select(models.Quiz).order_by(models.Quiz.id)
        return list(self.session.exec(stmt).all())


def validate_option_set(options: Sequence[models.Option]) -> None:
    """Raise `ValidationError` unless the set has >= 2 options and exactly one correct."""
    if len(options) < 2:
        raise ValidationError("a question needs at least two options")
    for o in options:
        if not o.text or not o.text.strip():
            raise ValidationError("option text must not be empty")
    correct = sum(1 for o in options if o.is_correct)
    if correct != 1:
        raise ValidationError(f"exactly one option must be correct, got {correct}")


class QuestionRepository:
    """CRUD operations for `Question` and its owned `Option` records."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, question: models.Question, options: List[models.Option]) -> models.Question:
        """Create a question together with its options.

        The option set is validated before anything is added, so a
        malformed set never leaves a half-written question behind. The
        question is flushed first to obtain an id, which is then assigned
        to each option inside the same transaction.
        """
        validate_option_set(options)
        if not question.text or not question.text.strip():
            raise ValidationError("question text must not be empty")
        if question.marks is None or question.marks <= 0:
            raise ValidationError("marks must be greater than zero")
        if self.session.get(models.Quiz, question.quiz_id) is None:
            raise NotFoundError(f"quiz not found: {question.quiz_id}")
        self.session.add(question)
        self.session.flush()
        self.session.refresh(question)
        for o in options:
            o.question_id = question.id
            self.session.add(o)
        self.session.flush()
        return question

    def get(self, question_id: int) -> Optional[models.Question]:
        """Fetch a question by id."""
        return self.session.get(models.Question, question_id)

    def list_for_quiz(self, quiz_id: int) -> List[models.Question]:
        """Return the questions of `quiz_id` in creation order."""
        stmt = select(models.Question).where(models.Question.quiz_id == quiz_id).order_by(models.Question.id)
        return list(self.session.exec(stmt).all())


class OptionRepository:
    """Query helpers for `Option` records."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, option_id: int) -> Optional[models.Option]:
        """Fetch a single option by id."""
        return self.session.get(models.Option, option_id)

    def list_for_question(self, question_id: int) -> List[models.Option]:
        """List all option rows for the provided `question_id`."""
        stmt = select(models.Option).where(models.Option.question_id == question_id).order_by(models.Option.id)
        return list(self.session.exec(stmt).all())

    def list_for_questions(self, question_ids: Iterable[int]) -> Dict[int, List[models.Option]]:
        """Group the options of several questions by question id."""
        ids = list(question_ids)
        grouped: Dict[int, List[models.Option]] = {qid: [] for qid in ids}
        if not ids:
            return grouped
        stmt = select(models.Option).where(models.Option.question_id.in_(ids)).order_by(models.Option.id)
        for o in self.session.exec(stmt).all():
            grouped[o.question_id].append(o)
        return grouped


class AttemptRepository:
    """Create, look up and close `Attempt` rows."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, attempt: models.Attempt) -> models.Attempt:
        self.session.add(attempt)
        self.session.flush()
        self.session.refresh(attempt)
        return attempt

    def get(self, attempt_id: int) -> Optional[models.Attempt]:
        return self.session.get(models.Attempt, attempt_id)

    def get_or_404(self, attempt_id: int) -> models.Attempt:
        attempt = self.get(attempt_id)
        if attempt is None:
            raise NotFoundError(f"attempt not found: {attempt_id}")
        return attempt

    def latest_for_user_quiz(self, user_id: int, quiz_id: int) -> Optional[models.Attempt]:
        """Return the most recent attempt of `user_id` at `quiz_id`, if any."""
        stmt = (
            select(models.Attempt)
            .where(models.Attempt.user_id == user_id, models.Attempt.quiz_id == quiz_id)
            .order_by(models.Attempt.id.desc())
        )
        return self.session.exec(stmt).first()

    def list_for_quiz(self, quiz_id: int) -> List[models.Attempt]:
        stmt = select(models.Attempt).where(models.Attempt.quiz_id == quiz_id).order_by(models.Attempt.id)
        return list(self.session.exec(stmt).all())

    def list_for_user(self, user_id: int) -> List[models.Attempt]:
        stmt = select(models.Attempt).where(models.Attempt.user_id == user_id).order_by(models.Attempt.id)
        return list(self.session.exec(stmt).all())

    def complete(self, attempt: models.Attempt, score: int, completed_at) -> models.Attempt:
        """Close an open attempt. Completed attempts are never rewritten."""
        if attempt.completed_at is not None:
            raise ValueError(f"attempt {attempt.id} is already completed")
        attempt.score = score
        attempt.completed_at = completed_at
        self.session.add(attempt)
        self.session.flush()
        return attempt


class ResponseRepository:
    """Persist and read the answers recorded for an attempt."""
    def __init__(self, session: Session):
        self.session = session

    def list_for_attempt(self, attempt_id: int) -> List[models.Response]:
        stmt = select(models.Response).where(models.Response.attempt_id == attempt_id).order_by(models.Response.id)
        return list(self.session.exec(stmt).all())

    def upsert(self, attempt_id: int, question_id: int, option_id: int) -> models.Response:
        """Record the chosen option, replacing an earlier answer to the same question."""
        existing = self.session.exec(
            select(models.Response).where(
                models.Response.attempt_id == attempt_id,
                models.Response.question_id == question_id,
            )
        ).first()
        if existing:
            existing.option_id = option_id
            self.session.add(existing)
            self.session.flush()
            return existing
        response = models.Response(attempt_id=attempt_id, question_id=question_id, option_id=option_id)
        self.session.add(response)
        self.session.flush()
        self.session.refresh(response)
        return response
