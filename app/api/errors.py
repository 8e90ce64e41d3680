# app/api/errors.py
import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

# Same body for every failed signature check so clients learn nothing about which check failed
UNAUTHORIZED_MESSAGE = "Invalid signature or unauthorized"


def error_response(status_code: int, message: str, **extra: Any) -> JSONResponse:
    content = {"success": False, "error": message}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def unauthorized_response() -> JSONResponse:
    return error_response(401, UNAUTHORIZED_MESSAGE)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report request body validation failures as 400 with the first readable message."""
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        message = str(first.get("msg", message))
        # pydantic prefixes messages from custom validators
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        location = [str(part) for part in first.get("loc", ()) if part != "body"]
        if location and first.get("type") == "missing":
            message = f"Missing required field: {'.'.join(location)}"
    logger.info(f"Rejected request to {request.url.path}: {message}")
    return error_response(400, message)
