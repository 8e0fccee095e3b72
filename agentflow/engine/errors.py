"""Classified failures of an agent node execution.

Every error that leaves ``AgentNodeExecutor.execute`` is an
``AgentExecutionError`` subclass, so callers can decide what to show the user
and whether a retry makes sense without parsing messages.
"""

from __future__ import annotations

from typing import Any, Mapping


class AgentExecutionError(Exception):
    """Base class for agent node failures."""

    def __init__(self, message: str, status_code: int = 0, error_code: str = ""):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code


class ConfigurationError(AgentExecutionError):
    """Missing or rejected provider credentials. Never retried."""

    def __init__(self, message: str, status_code: int = 0, error_code: str = "configuration"):
        super().__init__(message, status_code=status_code, error_code=error_code)


class RateLimitError(AgentExecutionError):
    """The provider rejected the call for exceeding its rate limit.

    ``headers`` carries the response headers so the signal extractor can read
    the provider's quota and reset hints. ``descriptor`` is set once the retry
    controller has given up and formatted the final message.
    """

    def __init__(
        self,
        message: str,
        status_code: int = 429,
        error_code: str = "rate_limited",
        headers: Mapping[str, str] | None = None,
        descriptor: Any = None,
    ):
        super().__init__(message, status_code=status_code, error_code=error_code)
        self.headers = dict(headers or {})
        self.descriptor = descriptor


class RateLimitTimeoutError(AgentExecutionError):
    """No local token became available in time. Not retried."""

    def __init__(self, message: str, error_code: str = "rate_limit_timeout"):
        super().__init__(message, status_code=0, error_code=error_code)


class ToolExecutionError(AgentExecutionError):
    """A tool server call failed.

    Captured as an ``{"error": ...}`` tool output by the dispatcher; it never
    aborts the node on its own.
    """

    def __init__(self, message: str, status_code: int = 0, error_code: str = "tool_error", server_name: str = ""):
        super().__init__(message, status_code=status_code, error_code=error_code)
        self.server_name = server_name


class ProviderError(AgentExecutionError):
    """Any other provider or execution failure."""

    def __init__(self, message: str, status_code: int = 0, error_code: str = "provider_error"):
        super().__init__(message, status_code=status_code, error_code=error_code)


class ApprovalNotFoundError(LookupError):
    """Raised when responding to an approval that does not exist."""


class ApprovalStateError(ValueError):
    """Raised on an invalid approval transition (e.g. responding twice)."""
