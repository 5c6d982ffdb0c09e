# los servicios lanzan estas excepciones (no HTTPException) para poder usarse fuera de una request
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class RunPoolError(Exception):
    status_code = 400
    message = "Request failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        self.detail = message or self.message


class Unauthenticated(RunPoolError):
    status_code = 401
    message = "Please sign in to continue"


class Forbidden(RunPoolError):
    status_code = 403
    message = "Not allowed"


class InviteEmailMismatch(RunPoolError):
    status_code = 403
    message = "This invite was sent to a different email address"


class InvalidToken(RunPoolError):
    status_code = 404
    message = "This invite is invalid, expired or was revoked"


class TokenConsumed(RunPoolError):
    status_code = 409
    message = "This invite has already been used"


class GroupNotFound(RunPoolError):
    status_code = 404
    message = "Group not found"


class NotFound(RunPoolError):
    status_code = 404
    message = "Not found"


class Conflict(RunPoolError):
    status_code = 409
    message = "Conflict"


class InvalidSignature(RunPoolError):
    status_code = 400
    message = "Invalid webhook signature"


class MalformedEvent(RunPoolError):
    status_code = 400
    message = "Malformed webhook payload"


class TransientStoreError(RunPoolError):
    status_code = 503
    message = "Storage temporarily unavailable, try again"


class SendFailure(RunPoolError):
    status_code = 502
    message = "Notification sender rejected the message"


class ProcessorError(RunPoolError):
    status_code = 502
    message = "Payment processor request failed"


class ConfigurationError(RuntimeError):
    """Raised at startup; never per request."""


async def _runpool_error_handler(request: Request, exc: RunPoolError):
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, type(exc).__name__, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RunPoolError, _runpool_error_handler)
