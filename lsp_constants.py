"""LSP constants and enums used by the benchmark client."""

from enum import Enum
from typing import Any


class LSPErrorCode(Enum):
    """Error codes the client produces or interprets."""

    METHOD_NOT_FOUND = -32601
    # Servers sometimes answer with code 0 or none at all
    UNKNOWN_ERROR_CODE = -32001


class LSPMethod:
    """Method names of the messages the benchmark exchanges."""

    # Lifecycle
    INITIALIZE = "initialize"
    INITIALIZED = "initialized"
    SHUTDOWN = "shutdown"
    EXIT = "exit"
    CANCEL_REQUEST = "$/cancelRequest"

    # Documents
    DID_OPEN = "textDocument/didOpen"
    DID_CLOSE = "textDocument/didClose"

    # Call hierarchy
    PREPARE_CALL_HIERARCHY = "textDocument/prepareCallHierarchy"
    INCOMING_CALLS = "callHierarchy/incomingCalls"
    OUTGOING_CALLS = "callHierarchy/outgoingCalls"

    # Requests initiated by the server
    WORKSPACE_CONFIGURATION = "workspace/configuration"
    WORK_DONE_PROGRESS_CREATE = "window/workDoneProgress/create"
    REGISTER_CAPABILITY = "client/registerCapability"
    UNREGISTER_CAPABILITY = "client/unregisterCapability"
    SHOW_MESSAGE_REQUEST = "window/showMessageRequest"

    # Notifications from the server
    SHOW_MESSAGE = "window/showMessage"
    LOG_MESSAGE = "window/logMessage"
    PROGRESS = "$/progress"


# Server requests answered with a null result
ACKNOWLEDGED_SERVER_REQUESTS = frozenset(
    {
        LSPMethod.WORK_DONE_PROGRESS_CREATE,
        LSPMethod.REGISTER_CAPABILITY,
        LSPMethod.UNREGISTER_CAPABILITY,
        LSPMethod.SHOW_MESSAGE_REQUEST,
    }
)


class LSPCapabilities:
    """Capability payloads sent during initialize."""

    @staticmethod
    def client_capabilities() -> dict[str, Any]:
        """Minimal client capabilities for call-hierarchy requests."""
        return {
            "textDocument": {
                "synchronization": {"dynamicRegistration": False, "didSave": False},
                "callHierarchy": {"dynamicRegistration": False},
            },
            "workspace": {
                "configuration": True,
                "workspaceFolders": True,
            },
            "window": {
                "workDoneProgress": True,
            },
            "general": {
                "positionEncodings": ["utf-16"],
            },
        }
