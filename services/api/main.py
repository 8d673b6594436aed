"""
Fair directory admin API: duplicate detection and record merging.

Entrypoint: uvicorn services.api.main:app --host 0.0.0.0 --port 8000
"""

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from starlette.responses import JSONResponse

from services.api.config import settings
from services.api.db.engine import create_engine, create_session_factory
from services.api.middleware.sentry import setup_sentry
from services.api.routers import admin_duplicates, health

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    setup_sentry()
    app.state.settings = settings

    sa_engine = None
    app.state.db_session_factory = None
    if settings.database_url:
        try:
            sa_engine = create_engine()
            app.state.db_engine = sa_engine
            app.state.db_session_factory = create_session_factory(sa_engine)
        except Exception as e:
            # Routes that need the DB answer 503 until it is configured
            logger.warning("SA engine failed to init: %s", e)

    yield

    if sa_engine:
        await sa_engine.dispose()


app = FastAPI(
    title="Fair Directory Admin API",
    version=settings.app_version,
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url=None,
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(admin_duplicates.router)


# Request ID injection
@app.middleware("http")
async def request_envelope_middleware(request: Request, call_next) -> Response:
    request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
    request.state.request_id = request_id

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# -- Exception Handlers --

def _error_response(request: Request, status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {"code": code, "message": message},
            "requestId": getattr(request.state, "request_id", str(uuid.uuid4())),
        },
    )


def _detail(exc, default: str) -> str:
    detail = getattr(exc, "detail", None)
    return detail if isinstance(detail, str) and detail else default


@app.exception_handler(400)
async def bad_request_handler(request: Request, exc) -> JSONResponse:
    return _error_response(request, 400, "BAD_REQUEST", _detail(exc, "Bad request."))


@app.exception_handler(401)
async def unauthorized_handler(request: Request, exc) -> JSONResponse:
    return _error_response(request, 401, "UNAUTHORIZED", _detail(exc, "Unauthorized."))


@app.exception_handler(404)
async def not_found_handler(request: Request, exc) -> JSONResponse:
    return _error_response(request, 404, "NOT_FOUND", _detail(exc, "Resource not found."))


@app.exception_handler(422)
async def validation_error_handler(request: Request, exc) -> JSONResponse:
    return _error_response(request, 422, "VALIDATION_ERROR", _detail(exc, "Validation error."))


@app.exception_handler(500)
async def internal_error_handler(request: Request, exc) -> JSONResponse:
    return _error_response(request, 500, "INTERNAL_ERROR", _detail(exc, "An unexpected error occurred."))


@app.exception_handler(503)
async def unavailable_handler(request: Request, exc) -> JSONResponse:
    return _error_response(request, 503, "SERVICE_UNAVAILABLE", _detail(exc, "Service unavailable."))
