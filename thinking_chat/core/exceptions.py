from fastapi import Request
from fastapi.responses import JSONResponse


class ChatServiceError(Exception):
    """Base exception for chat service API errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status: int = 500,
        details: dict | None = None,
    ):
        self.code = code
        self.message = message
        self.status = status
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        result = {
            "error": {
                "code": self.code,
                "message": self.message,
                "status": self.status,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result


class NotFoundError(ChatServiceError):
    def __init__(self, message: str = "Resource not found.", details: dict | None = None):
        super().__init__(code="not_found", message=message, status=404, details=details)


class BackendUnavailableError(ChatServiceError):
    def __init__(self, message: str = "Completion endpoint is unavailable.", details: dict | None = None):
        super().__init__(
            code="backend_unavailable",
            message=message,
            status=503,
            details=details or {"suggestion": "Check the configured base URL and try again."},
        )


class EndpointError(ChatServiceError):
    """Upstream completion endpoint answered with a non-2xx status."""

    def __init__(self, upstream_status: int, body: str, endpoint: str | None = None):
        self.upstream_status = upstream_status
        self.body = body
        self.endpoint = endpoint
        snippet = body.strip()[:300]
        message = f"Completion endpoint returned HTTP {upstream_status}"
        if snippet:
            message = f"{message}: {snippet}"
        super().__init__(
            code="upstream_error",
            message=message,
            status=502,
            details={"upstream_status": upstream_status, "endpoint": endpoint},
        )


class GenerationCancelled(Exception):
    """Raised when a cancellation signal stops an in-flight generation.

    Not a ChatServiceError: cancellation is an outcome, not a failure.
    """


class StreamDecodeError(ValueError):
    """A single SSE chunk could not be decoded. Always handled locally."""


async def chat_error_handler(request: Request, exc: ChatServiceError) -> JSONResponse:
    """Global exception handler for ChatServiceError and subclasses."""
    return JSONResponse(status_code=exc.status, content=exc.to_dict())
