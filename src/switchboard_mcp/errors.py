"""
Error taxonomy for the Switchboard MCP agent layer.
"""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class SwitchboardError(Exception):
    """Base class for all Switchboard MCP errors."""


class ServerNotFoundError(SwitchboardError):
    """Raised when a server name has no configuration."""

    def __init__(self, server_name: str):
        super().__init__(f"No such server: '{server_name}'")
        self.server_name = server_name


class ServerConnectionError(SwitchboardError):
    """The handshake with a server failed."""

    def __init__(self, server_name: str, message: str):
        super().__init__(f"{server_name}: {message}")
        self.server_name = server_name


class RequestError(SwitchboardError):
    """A single request to a server failed."""

    def __init__(self, server_name: str, method: str, message: str):
        super().__init__(f"{server_name}: {method} failed: {message}")
        self.server_name = server_name
        self.method = method


class NotConnectedError(RequestError):
    def __init__(self, server_name: str, method: str):
        super().__init__(server_name, method, "client not connected")


class RequestTimeoutError(RequestError):
    def __init__(self, server_name: str, method: str, elapsed: float):
        super().__init__(server_name, method, f"timed out after {elapsed:.2f}s")
        self.elapsed = elapsed


class RemoteToolError(RequestError):
    """The server answered, but reported an error."""


class ToolValidationError(SwitchboardError):
    """Tool call arguments were rejected before reaching the server."""


class CompletionServiceError(SwitchboardError):
    """The completion service call failed."""


class NoConnectedServersError(SwitchboardError):
    def __init__(self):
        super().__init__("No connected servers available to process query.")


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Outcome of an operation that reports failures as values.

    Exactly one of ``value`` and ``error`` is meaningful: when ``error`` is
    None the operation succeeded (``value`` may legitimately be None).
    """

    value: Optional[T] = None
    error: Optional[SwitchboardError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """
        Return the value, raising the carried error on failure.
        """
        if self.error is not None:
            raise self.error
        return self.value

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: SwitchboardError) -> "Result[T]":
        return cls(error=error)
