"""
FastAPI Backend Server — Scientific Reasoning Engine

Provides REST API endpoints for step processing, authentication, session
persistence and server-side orchestration.
"""

import logging
from functools import lru_cache
from typing import Any, Callable

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ValidationError

from scireason import __version__
from scireason.auth import AuthService
from scireason.config import Settings, get_settings
from scireason.contracts.schemas import (
    ProcessStepRequest,
    Session,
    StepResult,
    StepStatus,
    StopReason,
    User,
    WireModel,
)
from scireason.contracts.validators import (
    parse_evidence_card,
    parse_hypothesis_card,
    parse_roadmap_card,
)
from scireason.engine.llm_client import LLMClient
from scireason.engine.processor import StepProcessor, StepRunner
from scireason.engine.prompts import step_id
from scireason.errors import (
    AuthError,
    EmailAlreadyRegisteredError,
    SessionAlreadyExistsError,
    SessionNotFoundError,
)
from scireason.kb.card_store import CardStore, SqliteCardStore
from scireason.kb.session_store import SqliteSessionStore
from scireason.verify.heuristics import analyze_session
from scireason.workflow.orchestrator import SessionOrchestrator, new_session_id

logger = logging.getLogger(__name__)

REQUIRED_STEP_FIELDS = ("sessionId", "currentStep", "problemStatement", "mode")

# Fields a client may not overwrite through PUT /api/sessions/{id}
_IMMUTABLE_SESSION_FIELDS = {"id", "user_id", "created_at", "updated_at"}


# ═══════════════════════════════════════════════════════════════
# Services
# ═══════════════════════════════════════════════════════════════


class Services:
    """Everything the endpoints need, built once from settings."""

    def __init__(
        self,
        settings: Settings,
        sessions: SqliteSessionStore | None = None,
        cards: CardStore | None = None,
        runner: StepRunner | None = None,
    ):
        self.settings = settings
        self.sessions = sessions or SqliteSessionStore(settings.db_path)
        self.cards = cards or SqliteCardStore(settings.db_path)
        self.runner = runner or StepProcessor(LLMClient(provider=settings.llm_provider))
        self.auth = AuthService(self.sessions, settings.session_secret, settings.jwt_expiry_days)
        self.orchestrator = SessionOrchestrator(
            self.sessions,
            self.cards,
            self.runner,
            config=settings.reasoning_config(),
        )


@lru_cache
def get_services() -> Services:
    return Services(get_settings())


bearer_scheme = HTTPBearer(auto_error=False)


def current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    services: Services = Depends(get_services),
) -> User:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return services.auth.current_user(credentials.credentials)


async def owned_session(
    session_id: str,
    user: User = Depends(current_user),
    services: Services = Depends(get_services),
) -> Session:
    session = await services.sessions.get(session_id)
    if session is None or session.user_id != user.id:
        raise SessionNotFoundError(session_id)
    return session


# ═══════════════════════════════════════════════════════════════
# App
# ═══════════════════════════════════════════════════════════════

app = FastAPI(
    title="Scientific Reasoning Engine API",
    description="Structured, step-by-step scientific reasoning over research questions",
    version=__version__,
)

# CORS configuration:
# - default keeps localhost development working
# - production can override with CORS_ALLOW_ORIGINS
cors_allow_origins = get_settings().cors_allow_origins or [
    "http://127.0.0.1:5173",
    "http://localhost:5173",
    "http://127.0.0.1:8000",
    "http://localhost:8000",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allow_origins,
    allow_origin_regex=r"^https?://(127\.0\.0\.1|localhost)(:\d+)?$",
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    status = 409 if isinstance(exc, EmailAlreadyRegisteredError) else 401
    return JSONResponse(status_code=status, content={"detail": str(exc)})


@app.exception_handler(SessionNotFoundError)
async def session_not_found_handler(request: Request, exc: SessionNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": "Session not found"})


@app.exception_handler(SessionAlreadyExistsError)
async def session_exists_handler(request: Request, exc: SessionAlreadyExistsError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# ═══════════════════════════════════════════════════════════════
# Request Models
# ═══════════════════════════════════════════════════════════════


class Credentials(BaseModel):
    email: str
    password: str


def _auth_response(token: str, user: User) -> dict[str, Any]:
    return {"token": token, "user": user.to_wire()}


def _stop_body(current_step: int) -> dict[str, Any]:
    return StepResult(
        status=StepStatus.STOP,
        step_id=step_id(current_step),
        reason=StopReason.SAFETY_CONSTRAINT.value,
        what_is_needed_next=["Try again with a clearer research question"],
        suggested_queries=[],
    ).to_wire()


# ═══════════════════════════════════════════════════════════════
# API Endpoints
# ═══════════════════════════════════════════════════════════════


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.post("/api/reasoning/process-step")
async def process_step(request: Request, services: Services = Depends(get_services)):
    """Run one pipeline step and return its StepResult."""
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"detail": "Request body must be JSON"})

    if not isinstance(body, dict):
        return JSONResponse(status_code=400, content={"detail": "Request body must be a JSON object"})

    missing = [f for f in REQUIRED_STEP_FIELDS if body.get(f) in (None, "")]
    if missing:
        return JSONResponse(
            status_code=400,
            content={"detail": f"Missing required fields: {', '.join(missing)}"},
        )

    try:
        step_request = ProcessStepRequest.model_validate(body)
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"detail": str(e)})

    try:
        result = await services.runner.process_step(step_request)
    except Exception as e:
        logger.exception("[STEP] Unhandled error processing %s: %s", step_request.session_id, e)
        return JSONResponse(status_code=500, content=_stop_body(step_request.current_step))

    return result.to_wire()


# --- Auth -----------------------------------------------------------------


@app.post("/api/auth/register")
def register(credentials: Credentials, services: Services = Depends(get_services)):
    token, user = services.auth.register(credentials.email, credentials.password)
    return _auth_response(token, user)


@app.post("/api/auth/login")
def login(credentials: Credentials, services: Services = Depends(get_services)):
    token, user = services.auth.login(credentials.email, credentials.password)
    return _auth_response(token, user)


@app.get("/api/auth/me")
async def me(user: User = Depends(current_user)):
    return user.to_wire()


# --- Sessions -------------------------------------------------------------


@app.get("/api/sessions")
async def list_sessions(
    user: User = Depends(current_user),
    services: Services = Depends(get_services),
):
    """The caller's sessions, most recently updated first."""
    sessions = await services.sessions.list(user.id)
    return [s.to_wire() for s in sessions]


@app.post("/api/sessions", status_code=201)
async def create_session(
    body: dict[str, Any],
    user: User = Depends(current_user),
    services: Services = Depends(get_services),
):
    """Persist a session for the caller.

    The body is a (possibly partial) session in wire form; ``id`` is minted
    when absent and ``userId`` is always the caller.
    """
    try:
        session = Session.model_validate({
            "id": body.get("id") or new_session_id(),
            **{k: v for k, v in body.items() if k != "id"},
            "userId": user.id,
        })
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    created = await services.sessions.create(session)
    return created.to_wire()


@app.get("/api/sessions/{session_id}")
async def get_session(session: Session = Depends(owned_session)):
    return session.to_wire()


@app.put("/api/sessions/{session_id}")
async def update_session(
    body: dict[str, Any],
    session: Session = Depends(owned_session),
    services: Services = Depends(get_services),
):
    """Replace the mutable fields of a session with the body's values."""
    try:
        merged = Session.model_validate({**session.to_wire(), **body})
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    provided = {
        name for name, field in Session.model_fields.items()
        if name in body or field.alias in body
    }
    fields = {
        name: getattr(merged, name)
        for name in provided - _IMMUTABLE_SESSION_FIELDS
    }
    updated = await services.sessions.update(session.id, fields)
    return updated.to_wire()


@app.delete("/api/sessions/{session_id}")
async def delete_session(
    session: Session = Depends(owned_session),
    services: Services = Depends(get_services),
):
    await services.sessions.delete(session.id)
    return {"deleted": True}


@app.post("/api/sessions/{session_id}/continue")
async def continue_session(
    session: Session = Depends(owned_session),
    services: Services = Depends(get_services),
):
    """Process the session's next step on the server."""
    updated = await services.orchestrator.process_next_step(session.id)
    return updated.to_wire()


@app.post("/api/sessions/{session_id}/retry")
async def retry_session(
    session: Session = Depends(owned_session),
    services: Services = Depends(get_services),
):
    """Re-run the step that stopped the session."""
    updated = await services.orchestrator.retry_step(session.id)
    return updated.to_wire()


@app.get("/api/sessions/{session_id}/analysis")
async def session_analysis(session: Session = Depends(owned_session)):
    """Heuristic summaries derived from the session's step data."""
    return analyze_session(session).to_wire()


# --- Cards ----------------------------------------------------------------


def _card_or_404(
    card: dict[str, Any] | None,
    parse: Callable[[Any], WireModel | None],
    kind: str,
) -> dict[str, Any]:
    """The card with schema defaults filled in; stored as-is if it no longer validates."""
    if card is None:
        raise HTTPException(status_code=404, detail=f"{kind} card not found")
    parsed = parse(card)
    if parsed is None:
        logger.warning("[CARD] %s card %s does not match its schema", kind, card.get("id"))
        return card
    return parsed.to_wire()


@app.get("/api/cards/evidence/{card_id}")
async def get_evidence_card(
    card_id: str,
    user: User = Depends(current_user),
    services: Services = Depends(get_services),
):
    card = await services.cards.get_evidence(card_id)
    return _card_or_404(card, parse_evidence_card, "Evidence")


@app.get("/api/cards/hypotheses/{card_id}")
async def get_hypothesis_card(
    card_id: str,
    user: User = Depends(current_user),
    services: Services = Depends(get_services),
):
    card = await services.cards.get_hypothesis(card_id)
    return _card_or_404(card, parse_hypothesis_card, "Hypothesis")


@app.get("/api/cards/roadmaps/{card_id}")
async def get_roadmap_card(
    card_id: str,
    user: User = Depends(current_user),
    services: Services = Depends(get_services),
):
    card = await services.cards.get_roadmap(card_id)
    return _card_or_404(card, parse_roadmap_card, "Roadmap")


# ═══════════════════════════════════════════════════════════════
# Entry Point
# ═══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn

    from scireason.logging_setup import configure_logging

    configure_logging(get_settings().log_level)
    uvicorn.run(app, host="0.0.0.0", port=8000)
