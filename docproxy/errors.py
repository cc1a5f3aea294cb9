"""Error taxonomy shared by the registry, grammar, dispatcher and HTTP binding.

Every failure a caller can see is a ``ProxyError`` subclass. ``kind`` names the
failure in responses; ``status_code`` is the HTTP mapping used by the binding.
"""

from __future__ import annotations


class ProxyError(RuntimeError):
    """Base class for failures recovered at the operation boundary."""

    kind: str = "ProxyError"
    status_code: int = 400

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_payload(self) -> dict[str, str]:
        return {"error": self.kind, "message": self.message}


class NotConnectedError(ProxyError):
    """Raised when a session has no connection handle."""

    kind = "NotConnected"
    status_code = 409

    def __init__(self, message: str = "Not connected to a database") -> None:
        super().__init__(message)


class NoActiveSessionError(ProxyError):
    """Raised when ending a session that is already gone."""

    kind = "NoActiveSession"
    status_code = 409

    def __init__(self, message: str = "No active session") -> None:
        super().__init__(message)


class ConnectFailureError(ProxyError):
    """Raised when a connection descriptor cannot be opened."""

    kind = "ConnectFailure"
    status_code = 502


class InvalidCommandFormatError(ProxyError):
    kind = "InvalidCommandFormat"


class DisallowedOperationError(ProxyError):
    """Raised when a command mentions a denylisted keyword."""

    kind = "DisallowedOperation"
    status_code = 403

    def __init__(self, token: str) -> None:
        self.token = token
        super().__init__(f"Operation '{token}' is not allowed")


class UnsupportedOperationError(ProxyError):
    kind = "UnsupportedOperation"

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Unsupported operation '{operation}'")


class ArgumentParseError(ProxyError):
    kind = "ArgumentParseError"


class ArgumentShapeError(ProxyError):
    kind = "ArgumentShapeError"


class BackendError(ProxyError):
    """Wraps a failure reported by the backing store."""

    kind = "BackendError"
    status_code = 502


__all__ = [
    "ArgumentParseError",
    "ArgumentShapeError",
    "BackendError",
    "ConnectFailureError",
    "DisallowedOperationError",
    "InvalidCommandFormatError",
    "NoActiveSessionError",
    "NotConnectedError",
    "ProxyError",
    "UnsupportedOperationError",
]
