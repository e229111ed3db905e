"""
Custom exception handlers for FastAPI.
Renders domain errors, validation errors and unexpected failures as JSON.
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.status import HTTP_422_UNPROCESSABLE_ENTITY, HTTP_500_INTERNAL_SERVER_ERROR

from tabsplit.core.errors import TabsplitError
from tabsplit.core.observability import sentry_capture


def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=HTTP_422_UNPROCESSABLE_ENTITY,
        content=jsonable_encoder(
            {
                "error": "Validation error",
                "details": exc.errors(),
            }
        ),
    )


def domain_exception_handler(request: Request, exc: TabsplitError):
    content = {"error": exc.error, "details": exc.message}
    if exc.details is not None:
        content["context"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(content))


def generic_exception_handler(request: Request, exc: Exception):
    sentry_capture(exc)
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "details": str(exc),
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(TabsplitError, domain_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
