"""Regimen API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- Lifespan handler that opens the database pool and builds the engine
- Exception handlers mapping regimen errors to JSON error envelopes
- The schedule router at ``/api/regimen``

Status code mapping:
- ``InvalidTransitionError`` → 409 Conflict
- ``PersistenceError`` → 503 Service Unavailable
- ``pydantic.ValidationError`` → 500 Internal Server Error (malformed stored data)
- ``ValueError`` → 400 Bad Request
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from regimen.api.models import ErrorDetail, ErrorResponse
from regimen.api.router import _get_engine
from regimen.api.router import router as regimen_router
from regimen.config import RegimenSettings
from regimen.db import Database
from regimen.errors import InvalidTransitionError, PersistenceError
from regimen.pipeline import RegimenEngine
from regimen.stores.postgres import postgres_stores

logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_invalid_transition(request: Request, exc: InvalidTransitionError) -> JSONResponse:
    logger.info("Rejected status change: %s", exc)
    return _error(409, "INVALID_TRANSITION", str(exc))


async def _handle_persistence_error(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("Persistence failure: %s", exc, exc_info=exc)
    return _error(503, "PERSISTENCE_ERROR", str(exc))


async def _handle_stored_data_error(request: Request, exc: ValidationError) -> JSONResponse:
    logger.error("Stored data failed validation: %s", exc, exc_info=exc)
    return _error(500, "INVALID_STORED_DATA", "Stored regimen data is malformed")


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    logger.info("Validation error: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(InvalidTransitionError, _handle_invalid_transition)
    app.add_exception_handler(PersistenceError, _handle_persistence_error)
    # ValidationError subclasses ValueError; the more specific handler wins.
    app.add_exception_handler(ValidationError, _handle_stored_data_error)
    app.add_exception_handler(ValueError, _handle_value_error)


def create_app(
    engine: RegimenEngine | None = None,
    settings: RegimenSettings | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    engine:
        A ready engine to serve. When omitted, the lifespan handler connects
        to the database from environment variables and builds one over the
        Postgres stores.
    settings:
        Engine settings used when the engine is built at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if engine is not None:
            yield
            return

        resolved = settings or RegimenSettings()
        db = Database.from_env(resolved.db_name)
        pool = await db.connect()
        started = RegimenEngine(postgres_stores(pool), resolved)
        app.dependency_overrides[_get_engine] = lambda: started
        logger.info("Regimen API connected to database %s", resolved.db_name)
        try:
            yield
        finally:
            await db.close()

    app = FastAPI(title="Regimen API", version="0.1.0", lifespan=lifespan)
    app.router.redirect_slashes = False

    register_error_handlers(app)
    app.include_router(regimen_router)

    if engine is not None:
        app.dependency_overrides[_get_engine] = lambda: engine

    return app
