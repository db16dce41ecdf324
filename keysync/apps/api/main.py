from __future__ import annotations

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from keysync.apps.api.errors import (
    http_exception_handler,
    invalid_payload_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from keysync.apps.api.routes.health import router as health_router
from keysync.apps.api.routes.sync_ops import router as sync_ops_router
from keysync.core.config import get_settings
from keysync.core.errors import InvalidPayloadError
from keysync.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(InvalidPayloadError, invalid_payload_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.include_router(health_router)
    app.include_router(sync_ops_router)
    return app


app = create_app()
