"""Business logic services used by HTTP controllers.

This module holds the service classes that coordinate repositories and
the domain rules:

- `AuthService`: register users, verify credentials, seed the admin.
- `CatalogService`: author quizzes and questions, build the taker and
  admin quiz views and the per-user quiz list.
- `AttemptService`: the attempt state machine (not started, in progress,
  completed), lazy deadline enforcement and scoring.

Services receive an `EntityStore` at construction time and open one
store session per operation; every check-then-act sequence therefore
runs under the store lock. Domain failures are raised as the typed
errors from `errors`.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

import jwt
from passlib.context import CryptContext
from sqlmodel import Session

from . import models, repositories, schemas
from .config import settings
from .database import EntityStore
from .errors import AlreadyCompletedError, ForbiddenError, NotFoundError, ValidationError

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

logger = logging.getLogger("quiz_api.services")
attempt_logger = logging.getLogger("quiz_api.attempts")
catalog_logger = logging.getLogger("quiz_api.catalog")

Clock = Callable[[], datetime]


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from the database."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AuthService:
    """Authentication related operations (register + authenticate)."""
    def __init__(self, store: EntityStore):
        self.store = store

    def register(self, username: str, password: str, is_admin: bool = False) -> schemas.UserOut:
        """Create a new user with a hashed password.

        Raises `ValidationError` when the username is taken.
        """
        hashed = PWD_CTX.hash(password)
        with self.store.session() as session:
            u = models.User(username=username, password_hash=hashed, is_admin=is_admin)
            user = repositories.UserRepository(session).create(u)
            return schemas.UserOut.model_validate(user)

    def ensure_admin(self, username: str, password: str) -> schemas.UserOut:
        """Create the admin account unless a user with that name already exists."""
        with self.store.session() as session:
            repo = repositories.UserRepository(session)
            existing = repo.get_by_username(username)
            if existing:
                return schemas.UserOut.model_validate(existing)
            user = repo.create(models.User(username=username, password_hash=PWD_CTX.hash(password), is_admin=True))
            logger.info("seeded admin account %s", username)
            return schemas.UserOut.model_validate(user)

    def authenticate(self, username: str, password: str) -> Optional[str]:
        """Verify credentials and return a signed JWT token on success.

        Returns `None` if authentication fails.
        """
        with self.store.session() as session:
            user = repositories.UserRepository(session).get_by_username(username)
            if not user:
                return None
            if not PWD_CTX.verify(password, user.password_hash):
                return None
            user_id, name = user.id, user.username
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {"user_id": user_id, "username": name, "exp": int(expire.timestamp())}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    def resolve_caller(self, user_id: int) -> Optional[schemas.Caller]:
        """Return the `Caller` for a user id, or `None` when the user is gone."""
        with self.store.session() as session:
            user = repositories.UserRepository(session).get(user_id)
            if user is None:
                return None
            return schemas.Caller(user_id=user.id, username=user.username, is_admin=user.is_admin)


def score_responses(
    questions: Iterable[models.Question],
    options: Iterable[models.Option],
    responses: Iterable[models.Response],
) -> int:
    """Score a set of responses against the quiz structure.

    A question contributes its `marks` when the chosen option belongs to
    it and is the correct one; unanswered questions, wrong choices and
    responses that do not match the structure contribute nothing. Each
    question is counted at most once. The function only reads its
    arguments, so the stored score can always be re-derived.
    """
    marks = {q.id: q.marks for q in questions}
    by_id = {o.id: o for o in options}
    seen = set()
    total = 0
    for r in responses:
        if r.question_id in seen or r.question_id not in marks:
            continue
        seen.add(r.question_id)
        option = by_id.get(r.option_id)
        if option is not None and option.question_id == r.question_id and option.is_correct:
            total += marks[r.question_id]
    return total


class AttemptService:
    """Start, answer, submit and view quiz attempts.

    Deadlines are enforced lazily: an attempt whose `started_at +
    duration` has passed is completed, with whatever answers were
    recorded, by the first operation that reads it. Because that check
    runs inside a store session it happens exactly once.
    """
    def __init__(self, store: EntityStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or models.utcnow

    def deadline(self, attempt: models.Attempt, quiz: models.Quiz) -> datetime:
        return as_utc(attempt.started_at) + timedelta(minutes=quiz.duration)

    def is_expired(self, attempt: models.Attempt, quiz: models.Quiz) -> bool:
        return self.clock() >= self.deadline(attempt, quiz)

    def expire_if_due(self, session: Session, attempt: models.Attempt, quiz: models.Quiz) -> bool:
        """Complete an open attempt whose deadline has passed.

        Must be called inside a store session. Returns True when this
        call performed the completion.
        """
        if attempt.completed_at is not None or not self.is_expired(attempt, quiz):
            return False
        score = self._score(session, attempt)
        repositories.AttemptRepository(session).complete(attempt, score, self.clock())
        attempt_logger.info(
            "attempt %s expired (user=%s quiz=%s) auto-submitted with score %s",
            attempt.id, attempt.user_id, attempt.quiz_id, score,
        )
        return True

    def _score(self, session: Session, attempt: models.Attempt) -> int:
        questions = repositories.QuestionRepository(session).list_for_quiz(attempt.quiz_id)
        grouped = repositories.OptionRepository(session).list_for_questions(q.id for q in questions)
        options = [o for opts in grouped.values() for o in opts]
        responses = repositories.ResponseRepository(session).list_for_attempt(attempt.id)
        return score_responses(questions, options, responses)

    def _owned(self, session: Session, attempt_id: int, user_id: int):
        attempt = repositories.AttemptRepository(session).get_or_404(attempt_id)
        if attempt.user_id != user_id:
            raise ForbiddenError(f"attempt {attempt_id} belongs to another user")
        quiz = repositories.QuizRepository(session).get_or_404(attempt.quiz_id)
        return attempt, quiz

    def _record(self, session: Session, attempt: models.Attempt, responses: List[dict]) -> None:
        """Validate every answer first, then upsert them all."""
        questions = {q.id for q in repositories.QuestionRepository(session).list_for_quiz(attempt.quiz_id)}
        o_repo = repositories.OptionRepository(session)
        seen = set()
        for r in responses:
            qid, oid = r.get("question_id"), r.get("option_id")
            if qid not in questions:
                raise ValidationError(f"question {qid} is not part of quiz {attempt.quiz_id}")
            if qid in seen:
                raise ValidationError(f"question {qid} answered more than once")
            seen.add(qid)
            option = o_repo.get(oid)
            if option is None or option.question_id != qid:
                raise ValidationError(f"option {oid} does not belong to question {qid}")
        r_repo = repositories.ResponseRepository(session)
        for r in responses:
            r_repo.upsert(attempt.id, r["question_id"], r["option_id"])

    def _view(self, session: Session, attempt: models.Attempt, quiz: models.Quiz) -> schemas.AttemptDetail:
        completed = attempt.completed_at is not None
        details = []
        if completed:
            q_repo = repositories.QuestionRepository(session)
            o_repo = repositories.OptionRepository(session)
            for r in repositories.ResponseRepository(session).list_for_attempt(attempt.id):
                question = q_repo.get(r.question_id)
                option = o_repo.get(r.option_id)
                if question is None or option is None:
                    raise NotFoundError(f"response {r.id} references a missing question or option")
                details.append(schemas.ResponseDetail(
                    id=r.id,
                    question_id=r.question_id,
                    option_id=r.option_id,
                    question=schemas.QuestionOut.model_validate(question),
                    selected_option=schemas.OptionAdminOut.model_validate(option),
                ))
        base = schemas.AttemptOut.model_validate(attempt)
        return schemas.AttemptDetail(
            **base.model_dump(),
            status="completed" if completed else "in-progress",
            expires_at=self.deadline(attempt, quiz),
            quiz=schemas.QuizOut.model_validate(quiz),
            responses=details,
        )

    def start_attempt(self, user_id: int, quiz_id: int) -> schemas.AttemptOut:
        """Start (or resume) the caller's attempt at `quiz_id`.

        An attempt that is still in progress is returned unchanged, so
        reloading the quiz page never creates a second attempt. A quiz
        can only be taken once: a completed attempt, including one that
        expired just now, raises `AlreadyCompletedError`.
        """
        with self.store.session() as session:
            if repositories.UserRepository(session).get(user_id) is None:
                raise NotFoundError(f"user not found: {user_id}")
            quiz = repositories.QuizRepository(session).get_or_404(quiz_id)
            a_repo = repositories.AttemptRepository(session)
            attempt = a_repo.latest_for_user_quiz(user_id, quiz_id)
            if attempt is None:
                attempt = a_repo.create(models.Attempt(user_id=user_id, quiz_id=quiz_id, started_at=self.clock()))
                attempt_logger.info("attempt %s started (user=%s quiz=%s)", attempt.id, user_id, quiz_id)
                return schemas.AttemptOut.model_validate(attempt)
            self.expire_if_due(session, attempt, quiz)
            if attempt.completed_at is None:
                return schemas.AttemptOut.model_validate(attempt)
        # raised after the session so a completion done by expiry is kept
        raise AlreadyCompletedError(f"quiz {quiz_id} already completed by user {user_id}")

    def save_responses(self, attempt_id: int, user_id: int, responses: List[dict]) -> schemas.AttemptDetail:
        """Record answers on an open attempt without submitting it."""
        with self.store.session() as session:
            attempt, quiz = self._owned(session, attempt_id, user_id)
            self.expire_if_due(session, attempt, quiz)
            if attempt.completed_at is None:
                self._record(session, attempt, responses)
                return self._view(session, attempt, quiz)
        raise AlreadyCompletedError(f"attempt {attempt_id} is already completed")

    def submit_responses(self, attempt_id: int, user_id: int, responses: List[dict]) -> schemas.AttemptDetail:
        """Record the final answers, score them and complete the attempt.

        Submission is not idempotent: a second call, or a call after the
        deadline, raises `AlreadyCompletedError` and leaves the stored
        score untouched.
        """
        with self.store.session() as session:
            attempt, quiz = self._owned(session, attempt_id, user_id)
            self.expire_if_due(session, attempt, quiz)
            if attempt.completed_at is None:
                self._record(session, attempt, responses)
                score = self._score(session, attempt)
                repositories.AttemptRepository(session).complete(attempt, score, self.clock())
                attempt_logger.info(
                    "attempt %s submitted (user=%s quiz=%s) score %s/%s",
                    attempt.id, user_id, quiz.id, score, quiz.total_score,
                )
                return self._view(session, attempt, quiz)
        raise AlreadyCompletedError(f"attempt {attempt_id} is already completed")

    def get_attempt_view(self, attempt_id: int, user_id: int) -> schemas.AttemptDetail:
        """Return the attempt; answers are included only once it is completed."""
        with self.store.session() as session:
            attempt, quiz = self._owned(session, attempt_id, user_id)
            self.expire_if_due(session, attempt, quiz)
            return self._view(session, attempt, quiz)

    def _attempt_id_for_quiz(self, user_id: int, quiz_id: int) -> int:
        with self.store.session() as session:
            repositories.QuizRepository(session).get_or_404(quiz_id)
            attempt = repositories.AttemptRepository(session).latest_for_user_quiz(user_id, quiz_id)
            if attempt is None:
                raise NotFoundError(f"no attempt for quiz {quiz_id}")
            return attempt.id

    def get_attempt_for_quiz(self, user_id: int, quiz_id: int) -> schemas.AttemptDetail:
        """Return the caller's active or completed attempt at `quiz_id`."""
        return self.get_attempt_view(self._attempt_id_for_quiz(user_id, quiz_id), user_id)

    def save_for_quiz(self, user_id: int, quiz_id: int, responses: List[dict]) -> schemas.AttemptDetail:
        return self.save_responses(self._attempt_id_for_quiz(user_id, quiz_id), user_id, responses)

    def submit_for_quiz(self, user_id: int, quiz_id: int, responses: List[dict]) -> schemas.AttemptDetail:
        """Submit the caller's attempt at `quiz_id`; the quiz must have been started."""
        return self.submit_responses(self._attempt_id_for_quiz(user_id, quiz_id), user_id, responses)


class CatalogService:
    """Quiz authoring and the read views built on top of the store."""
    def __init__(self, store: EntityStore, attempts: Optional[AttemptService] = None):
        self.store = store
        self.attempts = attempts or AttemptService(store)

    @staticmethod
    def _require_admin(caller: schemas.Caller) -> None:
        if not caller.is_admin:
            raise ForbiddenError("admin privileges required")

    def create_quiz(self, caller: schemas.Caller, title: str, duration: int, total_score: int) -> schemas.QuizOut:
        """Create an empty quiz. Admin only."""
        self._require_admin(caller)
        if not title or not title.strip():
            raise ValidationError("title must not be empty")
        if duration <= 0:
            raise ValidationError("duration must be greater than zero")
        if total_score <= 0:
            raise ValidationError("total_score must be greater than zero")
        with self.store.session() as session:
            quiz = repositories.QuizRepository(session).create(
                models.Quiz(title=title.strip(), duration=duration, total_score=total_score)
            )
            catalog_logger.info("quiz %s created by %s", quiz.id, caller.username or caller.user_id)
            return schemas.QuizOut.model_validate(quiz)

    def add_question(
        self, caller: schemas.Caller, quiz_id: int, text: str, marks: int, options: List[dict]
    ) -> schemas.QuestionWithAdminOptions:
        """Add a question and its options to a quiz as one unit. Admin only.

        Each option is a `{text, is_correct}` dict; there must be at
        least two and exactly one must be correct.
        """
        self._require_admin(caller)
        with self.store.session() as session:
            quiz = repositories.QuizRepository(session).get_or_404(quiz_id)
            q_repo = repositories.QuestionRepository(session)
            rows = [models.Option(text=o.get("text", ""), is_correct=bool(o.get("is_correct"))) for o in options]
            question = q_repo.create(models.Question(quiz_id=quiz_id, text=text, marks=marks), rows)
            marks_total = sum(q.marks for q in q_repo.list_for_quiz(quiz_id))
            if marks_total > quiz.total_score:
                catalog_logger.warning(
                    "quiz %s questions are worth %s marks, more than its total score %s",
                    quiz_id, marks_total, quiz.total_score,
                )
            return schemas.QuestionWithAdminOptions(
                **schemas.QuestionOut.model_validate(question).model_dump(),
                options=[schemas.OptionAdminOut.model_validate(o) for o in rows],
            )

    def _questions(self, session: Session, quiz_id: int):
        questions = repositories.QuestionRepository(session).list_for_quiz(quiz_id)
        grouped = repositories.OptionRepository(session).list_for_questions(q.id for q in questions)
        return questions, grouped

    def _taker_view(self, session: Session, quiz: models.Quiz) -> schemas.QuizDetail:
        questions, grouped = self._questions(session, quiz.id)
        return schemas.QuizDetail(
            **schemas.QuizOut.model_validate(quiz).model_dump(),
            questions=[
                schemas.QuestionWithOptions(
                    **schemas.QuestionOut.model_validate(q).model_dump(),
                    options=[schemas.OptionOut.model_validate(o) for o in grouped[q.id]],
                )
                for q in questions
            ],
        )

    def get_quiz_for_taker(self, quiz_id: int) -> schemas.QuizDetail:
        """Quiz, questions and options with correctness stripped."""
        with self.store.session() as session:
            quiz = repositories.QuizRepository(session).get_or_404(quiz_id)
            return self._taker_view(session, quiz)

    def _admin_questions(self, session: Session, quiz_id: int) -> List[schemas.QuestionWithAdminOptions]:
        questions, grouped = self._questions(session, quiz_id)
        return [
            schemas.QuestionWithAdminOptions(
                **schemas.QuestionOut.model_validate(q).model_dump(),
                options=[schemas.OptionAdminOut.model_validate(o) for o in grouped[q.id]],
            )
            for q in questions
        ]

    def _participants(self, session: Session, quiz: models.Quiz) -> List[schemas.AttemptOut]:
        out = []
        for attempt in repositories.AttemptRepository(session).list_for_quiz(quiz.id):
            self.attempts.expire_if_due(session, attempt, quiz)
            out.append(schemas.AttemptOut.model_validate(attempt))
        return out

    def get_quiz_for_admin(self, quiz_id: int) -> schemas.QuizAdminDetail:
        """Quiz with correctness visible and its participants."""
        with self.store.session() as session:
            quiz = repositories.QuizRepository(session).get_or_404(quiz_id)
            questions = self._admin_questions(session, quiz_id)
            return schemas.QuizAdminDetail(
                **schemas.QuizOut.model_validate(quiz).model_dump(),
                questions=questions,
                participants=self._participants(session, quiz),
                marks_total=sum(q.marks for q in questions),
            )

    def get_quiz_detail(self, caller: schemas.Caller, quiz_id: int):
        """Pick the quiz view the caller is allowed to see.

        Admins get the admin view. Everyone else gets the taker view,
        except that correctness is shown once their own attempt at the
        quiz is completed.
        """
        if caller.is_admin:
            return self.get_quiz_for_admin(quiz_id)
        with self.store.session() as session:
            quiz = repositories.QuizRepository(session).get_or_404(quiz_id)
            attempt = repositories.AttemptRepository(session).latest_for_user_quiz(caller.user_id, quiz_id)
            if attempt is not None:
                self.attempts.expire_if_due(session, attempt, quiz)
            if attempt is not None and attempt.completed_at is not None:
                return schemas.QuizReviewDetail(
                    **schemas.QuizOut.model_validate(quiz).model_dump(),
                    questions=self._admin_questions(session, quiz_id),
                )
            return self._taker_view(session, quiz)

    def list_participants(self, caller: schemas.Caller, quiz_id: int) -> List[schemas.AttemptOut]:
        """All attempts against a quiz. Admin only."""
        self._require_admin(caller)
        with self.store.session() as session:
            quiz = repositories.QuizRepository(session).get_or_404(quiz_id)
            return self._participants(session, quiz)

    def list_quizzes(self) -> List[schemas.QuizOut]:
        with self.store.session() as session:
            return [schemas.QuizOut.model_validate(q) for q in repositories.QuizRepository(session).list_all()]

    def list_quizzes_for_user(self, user_id: int) -> List[schemas.QuizStatus]:
        """Every quiz joined with the user's most recent attempt at it."""
        with self.store.session() as session:
            a_repo = repositories.AttemptRepository(session)
            latest: Dict[int, models.Attempt] = {}
            for attempt in a_repo.list_for_user(user_id):
                latest[attempt.quiz_id] = attempt
            out = []
            for quiz in repositories.QuizRepository(session).list_all():
                attempt = latest.get(quiz.id)
                status, score, attempt_id = "not-started", None, None
                if attempt is not None:
                    self.attempts.expire_if_due(session, attempt, quiz)
                    attempt_id = attempt.id
                    if attempt.completed_at is None:
                        status = "in-progress"
                    else:
                        status, score = "completed", attempt.score
                out.append(schemas.QuizStatus(
                    **schemas.QuizOut.model_validate(quiz).model_dump(),
                    status=status,
                    score=score,
                    attempt_id=attempt_id,
                ))
            return out
