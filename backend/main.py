"""
FastAPI Backend for the Symptom Assessment Pipeline

Tenet #3: Explicit Over Clever - one operation, one JSON contract
Tenet #10: Observable Systems - every response carries X-Correlation-Id
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
import structlog

from triage import __version__
from triage.assessment import AssessmentOrchestrator, Turn, UserContext, build_orchestrator
from triage.config import AppConfig
from triage.errors import InternalError, TriageError
from triage.observability import (
    CORRELATION_HEADER,
    bind_correlation_id,
    clear_correlation_id,
    configure_logging,
    hash_identifier,
)

logger = structlog.get_logger()

SESSION_HEADER = "X-Session-Id"


# Request Models
class UserContextModel(BaseModel):
    """Caller identity forwarded by the web layer."""
    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = None
    name: Optional[str] = None
    is_authenticated: bool = Field(False, alias="isAuthenticated")


class AssessRequest(BaseModel):
    """One user turn. Field constraints are enforced by Turn.create."""
    model_config = ConfigDict(populate_by_name=True)

    message: str
    subject_id: str = Field(alias="subjectId")
    thread_id: Optional[str] = Field(None, alias="threadId")
    user_context: Optional[UserContextModel] = Field(None, alias="userContext")


def _correlation_id(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None)


def _error_response(request: Request, error: TriageError) -> JSONResponse:
    correlation_id = _correlation_id(request)
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_dict(correlation_id),
        headers={CORRELATION_HEADER: correlation_id} if correlation_id else None,
    )


def create_app(orchestrator: Optional[AssessmentOrchestrator] = None) -> FastAPI:
    """
    Build the API.

    Args:
        orchestrator: Pre-built orchestrator (tests). When omitted, one is
                      built from the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.orchestrator is None
        if owned:
            config = AppConfig.from_env()
            configure_logging(config.log_level, config.log_format)
            app.state.orchestrator = build_orchestrator(config)
            logger.info(
                "services_initialized",
                store_mode=config.store.mode,
                ledger_enabled=config.ledger.enabled,
            )
        yield
        if owned:
            await app.state.orchestrator.close()

    app = FastAPI(
        title="Symptom Triage API",
        description="Symptom assessment orchestration with structured records and audit ledger",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    # CORS middleware (allow frontend to connect)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[CORRELATION_HEADER],
    )

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        correlation_id = bind_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @app.exception_handler(TriageError)
    async def triage_error_handler(request: Request, exc: TriageError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log("request_failed", code=exc.code, status=exc.status_code, error=exc.message)
        return _error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in err.get("loc", ()) if p != "body") for err in exc.errors()]
        error = TriageError(
            "Invalid request body",
            details={"fields": fields},
            code="VALIDATION_ERROR",
            status_code=400,
        )
        return _error_response(request, error)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("unhandled_error", error_type=type(exc).__name__, error=str(exc), exc_info=True)
        return _error_response(request, InternalError("Internal server error"))

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "Symptom Triage API",
            "version": __version__,
        }

    @app.get("/health")
    async def health_check(request: Request):
        """Detailed health check."""
        current = request.app.state.orchestrator
        return {
            "status": "healthy" if current is not None else "starting",
            "services": {
                "orchestrator": current is not None,
                "store_mode": current.store.storage_mode if current else None,
                "ledger_enabled": current.ledger is not None if current else False,
            },
        }

    @app.post("/assess")
    async def assess(body: AssessRequest, request: Request):
        """
        Advance a triage conversation by one turn.

        Tenet #1: Safety First - records are only created on an explicit
        completion marker
        """
        current: Optional[AssessmentOrchestrator] = request.app.state.orchestrator
        if current is None:
            raise InternalError("Service not initialized")

        user_context = None
        if body.user_context is not None:
            user_context = UserContext(
                email=body.user_context.email,
                name=body.user_context.name,
                is_authenticated=body.user_context.is_authenticated,
            )
        turn = Turn.create(body.subject_id, body.message, body.thread_id, user_context)
        correlation_id = _correlation_id(request)

        logger.info(
            "assess_request_received",
            subject=hash_identifier(turn.subject_id),
            message_length=len(turn.user_text),
            has_thread=turn.thread_id is not None,
        )

        try:
            result = await current.assess(turn, correlation_id=correlation_id)
        except TriageError:
            raise
        except Exception as e:
            logger.error("assess_request_failed", error_type=type(e).__name__, error=str(e), exc_info=True)
            raise InternalError("Internal server error") from e

        payload = result.to_dict()
        payload["sessionId"] = request.headers.get(SESSION_HEADER) or correlation_id
        payload["correlationId"] = correlation_id
        return payload

    return app


app = create_app()
