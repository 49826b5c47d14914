"""Error taxonomy for the chat pipeline.

Each error carries the HTTP status the request handlers answer with.
Background paths catch these at their boundary and only log them.
"""
from typing import Iterable, Optional


class ChatServiceError(Exception):
    """Base class for errors translated into JSON ``{"error": ...}`` responses."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UpstreamProviderError(ChatServiceError):
    """
    Non-2xx or malformed response from a model provider.

    Carries the upstream status, the raw response body, and the target URL
    so the failure can be logged with full context.
    """

    status_code = 502

    def __init__(self, status: int, body: str, url: str, message: Optional[str] = None):
        self.status = status
        self.body = body or ""
        self.url = url
        super().__init__(message or f"Upstream {status}: {self.body[:500] or 'no body'}")

    @property
    def aborted(self) -> bool:
        return self.status == 0


class ProviderTimeoutError(UpstreamProviderError):
    """Provider call exceeded its deadline or was cancelled."""

    def __init__(self, url: str, timeout: Optional[float] = None):
        detail = f"aborted after {timeout:g}s" if timeout is not None else "aborted"
        super().__init__(status=0, body=detail, url=url, message="Upstream request aborted")
        self.timeout = timeout


class ConfigurationError(ChatServiceError):
    """A required endpoint or credential is not configured."""

    status_code = 500

    def __init__(self, missing: Iterable[str]):
        self.missing = list(missing)
        super().__init__(f"Missing configuration: {', '.join(self.missing)}")


class InvalidRequestError(ChatServiceError):
    """Malformed or missing request fields."""

    status_code = 400


class AuthenticationError(ChatServiceError):
    status_code = 401


class PersistenceError(ChatServiceError):
    """A store operation failed."""

    status_code = 500


class ConversationNotFoundError(ChatServiceError, ValueError):
    """Conversation does not exist or is not owned by the caller."""

    status_code = 404

    def __init__(self, conversation_id: int):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found or not owned by user")
