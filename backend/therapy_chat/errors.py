# error taxonomy for the therapy chat core
# service code raises these, main.py turns them into json responses via register_exception_handlers

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class TherapyChatError(Exception):
    """base error, carries the http status used when it reaches a router"""
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str = "Internal error"):
        super().__init__(message)
        self.message = message


class ValidationError(TherapyChatError):
    """bad or missing input, nothing was written"""
    status_code = 400
    code = "validation_error"


class AccessDeniedError(TherapyChatError):
    """caller lacks scope. also used for missing rows so existence never leaks"""
    status_code = 403
    code = "access_denied"


class NotFoundError(TherapyChatError):
    status_code = 404
    code = "not_found"


class NoAccessibleGroupError(TherapyChatError):
    """no single patient group could be resolved for a new conversation"""
    status_code = 409
    code = "no_accessible_group"


class GatewayError(TherapyChatError):
    """ai call failed or returned nothing usable"""
    status_code = 502
    code = "gateway_error"


class StoreError(TherapyChatError):
    status_code = 500
    code = "store_error"


class NotificationError(TherapyChatError):
    """scheduling a notification failed. logged and swallowed by the orchestrator"""
    code = "notification_error"


def register_exception_handlers(app: FastAPI):
    """map the error taxonomy (and raw driver errors) to json responses"""

    @app.exception_handler(TherapyChatError)
    async def therapy_chat_error_handler(request: Request, exc: TherapyChatError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": exc.code},
        )

    @app.exception_handler(PyMongoError)
    async def store_error_handler(request: Request, exc: PyMongoError):
        logger.error(f"Store failure on {request.method} {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(
            status_code=StoreError.status_code,
            content={"detail": "Internal storage error", "error": StoreError.code},
        )
