"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the timed quiz backend.
Controllers are intentionally thin: they resolve the caller, delegate to
services, and return JSON responses. Domain errors raised by the
services are mapped to status codes by a single exception handler.

Endpoints implemented:
- POST /auth/register
- POST /auth/login
- GET /me
- GET /my-quizzes
- GET /quizzes
- POST /quizzes
- GET /quizzes/{quiz_id}
- POST /quizzes/{quiz_id}/questions
- GET /quizzes/{quiz_id}/participants
- POST /quizzes/{quiz_id}/start
- GET /quizzes/{quiz_id}/response
- PUT /quizzes/{quiz_id}/responses
- POST /quizzes/{quiz_id}/submit
- GET /attempts/{attempt_id}
- GET /health
"""

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from typing import List, Optional
import json
import logging
import time
import uuid
from . import schemas
from .auth import get_current_caller
from .config import settings
from .database import EntityStore, get_store
from .errors import QuizError
from .services import AttemptService, AuthService, CatalogService, Clock

logger = logging.getLogger("quiz_api.api")
if not logging.getLogger().handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)

router = APIRouter()


def get_catalog(request: Request, store: EntityStore = Depends(get_store)) -> CatalogService:
    return CatalogService(store, get_attempts(request, store))


def get_attempts(request: Request, store: EntityStore = Depends(get_store)) -> AttemptService:
    return AttemptService(store, clock=getattr(request.app.state, "clock", None))


def _responses(submission: schemas.SubmissionIn) -> List[dict]:
    return [r.model_dump() for r in submission.responses]


@router.post('/auth/register', response_model=schemas.UserOut)
def register(payload: schemas.RegisterIn, store: EntityStore = Depends(get_store)):
    """Register a new, non-admin user."""
    return AuthService(store).register(payload.username, payload.password)


@router.post('/auth/login', response_model=schemas.TokenOut)
def login(payload: schemas.RegisterIn, store: EntityStore = Depends(get_store)):
    """Authenticate a user and return a short-lived JWT token.

    The returned token contains `user_id` and `username` and is signed
    using the configured JWT secret.
    """
    token = AuthService(store).authenticate(payload.username, payload.password)
    if not token:
        raise HTTPException(status_code=401, detail='invalid credentials')
    return {'access_token': token}


@router.get('/me')
def me(caller: schemas.Caller = Depends(get_current_caller)):
    return {'id': caller.user_id, 'username': caller.username, 'is_admin': caller.is_admin}


@router.get('/my-quizzes', response_model=List[schemas.QuizStatus])
def my_quizzes(caller: schemas.Caller = Depends(get_current_caller), catalog: CatalogService = Depends(get_catalog)):
    """Every quiz with the caller's status (`not-started`, `in-progress`, `completed`) and score."""
    return catalog.list_quizzes_for_user(caller.user_id)


@router.get('/quizzes', response_model=List[schemas.QuizOut])
def list_quizzes(caller: schemas.Caller = Depends(get_current_caller), catalog: CatalogService = Depends(get_catalog)):
    return catalog.list_quizzes()


@router.post('/quizzes', response_model=schemas.QuizOut, status_code=201)
def create_quiz(
    payload: schemas.QuizIn,
    caller: schemas.Caller = Depends(get_current_caller),
    catalog: CatalogService = Depends(get_catalog),
):
    """Create a quiz. Admin only."""
    return catalog.create_quiz(caller, payload.title, payload.duration, payload.total_score)


@router.get('/quizzes/{quiz_id}')
def quiz_detail(quiz_id: int, caller: schemas.Caller = Depends(get_current_caller), catalog: CatalogService = Depends(get_catalog)):
    """Quiz with its questions.

    Option correctness is only included for admins and for callers who
    have completed the quiz.
    """
    return catalog.get_quiz_detail(caller, quiz_id)


@router.post('/quizzes/{quiz_id}/questions', response_model=schemas.QuestionWithAdminOptions, status_code=201)
def add_question(
    quiz_id: int,
    payload: schemas.QuestionIn,
    caller: schemas.Caller = Depends(get_current_caller),
    catalog: CatalogService = Depends(get_catalog),
):
    """Add a question with its options. Admin only; exactly one option must be correct."""
    options = [o.model_dump() for o in payload.options]
    return catalog.add_question(caller, quiz_id, payload.text, payload.marks, options)


@router.get('/quizzes/{quiz_id}/participants', response_model=List[schemas.AttemptOut])
def participants(quiz_id: int, caller: schemas.Caller = Depends(get_current_caller), catalog: CatalogService = Depends(get_catalog)):
    return catalog.list_participants(caller, quiz_id)


@router.post('/quizzes/{quiz_id}/start', response_model=schemas.AttemptOut)
def start_attempt(quiz_id: int, caller: schemas.Caller = Depends(get_current_caller), attempts: AttemptService = Depends(get_attempts)):
    """Start the quiz, or return the attempt already in progress."""
    return attempts.start_attempt(caller.user_id, quiz_id)


@router.get('/quizzes/{quiz_id}/response', response_model=schemas.AttemptDetail)
def current_attempt(quiz_id: int, caller: schemas.Caller = Depends(get_current_caller), attempts: AttemptService = Depends(get_attempts)):
    """The caller's attempt at the quiz; answers are included once it is completed."""
    return attempts.get_attempt_for_quiz(caller.user_id, quiz_id)


@router.put('/quizzes/{quiz_id}/responses', response_model=schemas.AttemptDetail)
def save_responses(
    quiz_id: int,
    submission: schemas.SubmissionIn,
    caller: schemas.Caller = Depends(get_current_caller),
    attempts: AttemptService = Depends(get_attempts),
):
    """Save answers without submitting; they count if the deadline passes first."""
    return attempts.save_for_quiz(caller.user_id, quiz_id, _responses(submission))


@router.post('/quizzes/{quiz_id}/submit', response_model=schemas.AttemptDetail)
def submit(
    quiz_id: int,
    submission: schemas.SubmissionIn,
    caller: schemas.Caller = Depends(get_current_caller),
    attempts: AttemptService = Depends(get_attempts),
):
    """Submit the attempt and return the scored result."""
    return attempts.submit_for_quiz(caller.user_id, quiz_id, _responses(submission))


@router.get('/attempts/{attempt_id}', response_model=schemas.AttemptDetail)
def attempt_view(attempt_id: int, caller: schemas.Caller = Depends(get_current_caller), attempts: AttemptService = Depends(get_attempts)):
    return attempts.get_attempt_view(attempt_id, caller.user_id)


@router.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}


async def quiz_error_handler(request: Request, exc: QuizError):
    logger.info(
        "request_rejected %s",
        json.dumps(
            {
                "request_id": getattr(request.state, "request_id", ""),
                "path": request.url.path,
                "error": type(exc).__name__,
                "detail": str(exc),
            },
            ensure_ascii=True,
        ),
    )
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info(
        "request_done %s",
        json.dumps(
            {
                "request_id": req_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
            },
            ensure_ascii=True,
        ),
    )
    return response


def create_app(store: Optional[EntityStore] = None, clock: Optional[Clock] = None) -> FastAPI:
    """Build the application around an explicitly constructed store.

    Without arguments the store comes from `settings.DATABASE_URL` and the
    configured admin account is seeded. Tests pass their own store and,
    when they need to move time, a clock.
    """
    app = FastAPI(title="Timed Quiz API")
    if store is None:
        store = EntityStore(settings.DATABASE_URL)
    store.create_all()
    AuthService(store).ensure_admin(settings.ADMIN_USERNAME, settings.ADMIN_PASSWORD)
    app.state.store = store
    app.state.clock = clock

    # Allow simple browser testing from localhost frontends
    if settings.ALLOW_DEV_CORS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.middleware("http")(request_context_middleware)
    app.add_exception_handler(QuizError, quiz_error_handler)
    app.include_router(router)
    return app


app = create_app()
