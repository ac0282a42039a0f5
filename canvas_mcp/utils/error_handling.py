"""Error taxonomy shared by the OAuth proxy, the credential vault and the Canvas client."""

import json
import logging
from typing import Optional

from aiohttp import web
from fastmcp.exceptions import ToolError

logger = logging.getLogger(__name__)


class OAuthError(Exception):
    """OAuth protocol error rendered as a JSON body with a matching HTTP status."""

    def __init__(self, code: str, description: str, status_code: int = 400):
        super().__init__(description)
        self.code = code
        self.description = description
        self.status_code = status_code

    def to_response(self) -> web.Response:
        return web.Response(
            text=json.dumps({"error": self.code, "error_description": self.description}),
            status=self.status_code,
            content_type="application/json",
        )


class InvalidRequestError(OAuthError):
    """Malformed or missing CSRF token, form state or credential fields (user-fixable)."""

    def __init__(self, description: str):
        super().__init__("invalid_request", description, 400)

    def to_response(self) -> web.Response:
        return web.Response(text=self.description, status=self.status_code)


class UpstreamAuthError(Exception):
    """The identity provider rejected a code exchange or user-info lookup."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def to_response(self) -> web.Response:
        return web.Response(text=self.message, status=self.status_code)


class VaultError(Exception):
    """Stored credentials could not be decoded or decrypted.

    Never surfaced to callers: the vault reports such records as absent.
    """


class CanvasAPIError(Exception):
    """Error response or transport failure from the Canvas API."""

    def __init__(self, message: str, status_code: int = 0, body: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


class NetworkError(CanvasAPIError):
    """Transport-level failure (connect, read, timeout) on a single attempt."""


class MaxRetriesExceededError(CanvasAPIError):
    """Every retry attempt failed with a retryable status or a network error."""

    def __init__(self, attempts: int, status_code: int = 0, body: Optional[str] = None):
        super().__init__(f"Max retries exceeded after {attempts} attempts", status_code, body)
        self.attempts = attempts


class RequestCancelledError(CanvasAPIError):
    """The caller signalled cancellation before the next outbound call."""


def truncate_body(text: str, limit: int = 200) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def handle_canvas_error(error: Exception, operation: str) -> ToolError:
    """Convert an exception raised by a Canvas operation into a tool error result.

    Args:
        error: The exception raised by the client
        operation: Name of the operation, for logging

    Returns:
        A ToolError carrying the user-visible message
    """
    if isinstance(error, CanvasAPIError):
        logger.warning(f"Canvas operation {operation} failed (status {error.status_code}): {error.message}")
        return ToolError(f"Error: {error.message}")

    logger.exception(f"Unexpected error in {operation}")
    return ToolError(f"Error: {error}")
