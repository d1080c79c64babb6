"""Custom exception hierarchy for the LSP call-hierarchy benchmark."""

from typing import Any


class LSPBenchmarkError(Exception):
    """Base exception for benchmark harness errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(LSPBenchmarkError):
    """Configuration loading or validation error."""


class SpawnError(LSPBenchmarkError):
    """Language server executable missing, unlaunchable or exited immediately."""


class FramingError(LSPBenchmarkError):
    """Malformed data on the server's stdio stream."""


class SessionNotReady(LSPBenchmarkError):
    """A request was issued before the session reached the ready state."""


class RequestTimeout(LSPBenchmarkError):
    """No response arrived for a request within its timeout."""


class ServerCrash(LSPBenchmarkError):
    """The language server process exited unexpectedly."""


class RequestCancelled(LSPBenchmarkError):
    """The run was cancelled while the request was outstanding."""


class DiscoveryError(LSPBenchmarkError):
    """A source file could not be read or parsed during symbol discovery."""

    def __init__(self, message: str, file_path: str, details: dict | None = None):
        super().__init__(message, details)
        self.file_path = file_path


class ProtocolError(LSPBenchmarkError):
    """The server answered a request with a JSON-RPC error response."""

    def __init__(
        self,
        message: str,
        code: int | None = None,
        data: Any | None = None,
        method: str | None = None,
    ):
        super().__init__(message, {"code": code, "data": data, "method": method})
        self.code = code
        self.data = data
        self.method = method

    def __str__(self) -> str:
        if self.code is None:
            return self.message
        return f"LSP error (code {self.code}): {self.message}"
