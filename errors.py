import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

FIELD_MESSAGES = {
    "title": "Title must be between 1-100 characters",
    "amount": "Amount must be a positive number",
    "category": "Invalid category",
    "date": "Invalid date format",
    "notes": "Notes cannot exceed 500 characters",
    "name": "Name must be between 2-50 characters",
    "email": "Invalid email format",
    "password": "Password must be 8+ chars with uppercase, lowercase, and number",
}


class ApiError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Internal server error"

    def __init__(self, message=None, errors=None, headers=None):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.errors = errors
        self.headers = headers

    def to_dict(self):
        body = {"message": self.message}
        if self.errors is not None:
            body["errors"] = self.errors
        return body


class ValidationFailed(ApiError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Validation failed"


class AuthError(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Not authorized"

    def __init__(self, message=None, errors=None, headers=None):
        super().__init__(
            message, errors, headers or {"WWW-Authenticate": "Bearer"}
        )


class Forbidden(ApiError):
    status_code = status.HTTP_403_FORBIDDEN
    message = "Forbidden"


class NotFound(ApiError):
    status_code = status.HTTP_404_NOT_FOUND
    message = "Not found"


class Conflict(ApiError):
    status_code = status.HTTP_409_CONFLICT
    message = "Conflict"


class RateLimited(ApiError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    message = "Too many requests, please try again later."

    def __init__(self, message=None, retry_after=1, headers=None):
        headers = dict(headers or {})
        headers["Retry-After"] = str(retry_after)
        super().__init__(message, None, headers)
        self.retry_after = retry_after

    def to_dict(self):
        return {"message": self.message, "retry_after": self.retry_after}


def format_validation_errors(errors):
    """Turn pydantic error dicts into [{"field": ..., "message": ...}]."""
    formatted = []
    for error in errors:
        loc = [str(part) for part in error.get("loc", ())]
        # drop the "body"/"path"/"query" prefix FastAPI adds
        if len(loc) > 1 and loc[0] in ("body", "path", "query"):
            loc = loc[1:]
        field = ".".join(loc) or "body"
        if error.get("type") == "field_rule":
            message = error["msg"]
        else:
            message = FIELD_MESSAGES.get(loc[-1] if loc else "", error["msg"])
        formatted.append({"field": field, "message": message})
    return formatted


async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(
        status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers
    )


async def request_validation_handler(request: Request, exc: RequestValidationError):
    failure = ValidationFailed(errors=format_validation_errors(exc.errors()))
    return JSONResponse(status_code=failure.status_code, content=failure.to_dict())


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"message": "Internal server error"},
    )


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
