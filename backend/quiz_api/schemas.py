"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests. The output models are built from ORM rows
with `from_attributes`, so the services can hand back detached values.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RegisterIn(BaseModel):
    """Payload for user registration/login endpoints."""
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str
    token_type: str = "bearer"


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    is_admin: bool


class QuizIn(BaseModel):
    """Admin payload for creating a quiz."""
    title: str = Field(min_length=1)
    duration: int = Field(gt=0, description="minutes")
    total_score: int = Field(gt=0)


class OptionIn(BaseModel):
    text: str = Field(min_length=1)
    is_correct: bool = False


class QuestionIn(BaseModel):
    """Admin payload for adding a question with its options."""
    text: str = Field(min_length=1)
    marks: int = Field(gt=0)
    options: List[OptionIn]


class ResponseIn(BaseModel):
    """A single chosen option."""
    question_id: int
    option_id: int


class SubmissionIn(BaseModel):
    responses: List[ResponseIn] = Field(default_factory=list)


class QuizOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    duration: int
    total_score: int


class OptionOut(BaseModel):
    """Option as shown to a quiz taker; correctness is not exposed."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    question_id: int
    text: str


class OptionAdminOut(OptionOut):
    is_correct: bool


class QuestionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    quiz_id: int
    text: str
    marks: int


class QuestionWithOptions(QuestionOut):
    options: List[OptionOut]


class QuestionWithAdminOptions(QuestionOut):
    options: List[OptionAdminOut]


class QuizDetail(QuizOut):
    """Quiz with its questions, correctness hidden."""
    questions: List[QuestionWithOptions]


class AttemptOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    quiz_id: int
    score: Optional[int] = None
    started_at: datetime
    completed_at: Optional[datetime] = None

    @field_validator("started_at", "completed_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # SQLite hands datetimes back without tzinfo; they are stored as UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class QuizAdminDetail(QuizOut):
    """Quiz with correctness visible plus its participants."""
    questions: List[QuestionWithAdminOptions]
    participants: List[AttemptOut]
    marks_total: int


class ResponseDetail(BaseModel):
    """A recorded answer joined with its question and chosen option."""
    id: int
    question_id: int
    option_id: int
    question: QuestionOut
    selected_option: OptionAdminOut


class AttemptDetail(AttemptOut):
    """Attempt view for the results / quiz-taking screens.

    `responses` is only populated once the attempt is completed.
    """
    status: Literal["in-progress", "completed"]
    expires_at: datetime
    quiz: QuizOut
    responses: List[ResponseDetail] = Field(default_factory=list)


class QuizStatus(QuizOut):
    """One row of the caller's quiz list."""
    status: Literal["not-started", "in-progress", "completed"]
    score: Optional[int] = None
    attempt_id: Optional[int] = None


class QuizReviewDetail(QuizOut):
    """Quiz with correctness visible, for a taker whose attempt is completed."""
    questions: List[QuestionWithAdminOptions]


class Caller(BaseModel):
    """Identity resolved by the access gate for the current request."""
    user_id: int
    username: str = ""
    is_admin: bool = False
