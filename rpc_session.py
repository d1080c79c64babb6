"""
Async-Native LSP RPC Session

This module layers a JSON-RPC session on top of a running language server:
it performs the initialize handshake, correlates responses to requests by id,
dispatches notifications and exposes the call-hierarchy requests used by the
benchmark.

Architecture:
1. Single asyncio event loop, no threads
2. One reader task per session, bound to the session's lifetime
3. One future per in-flight request, resolved exactly once
4. Responses are matched by id only; arrival order is irrelevant
"""

import asyncio
import inspect
import itertools
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from pylsp_jsonrpc.exceptions import JsonRpcException

from errors import (
    FramingError,
    LSPBenchmarkError,
    ProtocolError,
    RequestCancelled,
    RequestTimeout,
    ServerCrash,
    SessionNotReady,
)
from language_config import LanguageServerConfig
from lsp_constants import ACKNOWLEDGED_SERVER_REQUESTS, LSPCapabilities, LSPErrorCode, LSPMethod
from lsp_transport import LSPMessage, LSPProtocol, MessageKind, read_message
from server_process import ServerHandle, ServerState

CLIENT_NAME = "lsp-call-hierarchy-bench"
CLIENT_VERSION = "1.0.0"

# Time allowed for buffered stdout to be read after the process has exited
EXIT_DRAIN_GRACE = 1.0


class SessionState(Enum):
    """States of an RPC session."""

    STARTING = "starting"
    INITIALIZED = "initialized"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


_HANDLE_STATES = {
    SessionState.INITIALIZED: ServerState.INITIALIZED,
    SessionState.READY: ServerState.READY,
    SessionState.SHUTTING_DOWN: ServerState.SHUTTING_DOWN,
}


@dataclass
class PendingCall:
    """An in-flight request awaiting its response."""

    request_id: int
    method: str
    future: asyncio.Future = field(repr=False)
    sent_at: float


NotificationHandler = Callable[[Any], Any]


class RpcSession:
    """
    JSON-RPC session with one language server.

    The session borrows the handle's stdio pipes for the lifetime of the
    process. Use it as an async context manager so the reader task is torn
    down deterministically.
    """

    def __init__(
        self,
        handle: ServerHandle,
        language_config: LanguageServerConfig,
        logger: logging.Logger | None = None,
        protocol: LSPProtocol | None = None,
    ):
        """
        Initialize the session.

        Args:
            handle: Running server whose pipes this session uses
            language_config: Configuration of the server's language
            logger: Logger instance (defaults to a per-language logger)
            protocol: Message serializer (defaults to LSPProtocol)
        """
        self.handle = handle
        self.language_config = language_config
        self.logger = logger or logging.getLogger(f"{__name__}.{handle.language.value}")
        self.protocol = protocol or LSPProtocol(self.logger)

        self.server_capabilities: dict[str, Any] = {}
        self.fatal_error: LSPBenchmarkError | None = None

        self._state = SessionState.STARTING
        self._ids = itertools.count(1)
        self._pending: dict[int, PendingCall] = {}
        self._write_lock = asyncio.Lock()
        self._reader_task: asyncio.Task | None = None
        self._open_documents: dict[str, int] = {}
        self._cancel_reason: str | None = None

        self._notification_handlers: dict[str, NotificationHandler] = {
            LSPMethod.LOG_MESSAGE: self._log_server_message,
            LSPMethod.SHOW_MESSAGE: self._show_server_message,
            LSPMethod.PROGRESS: self._log_progress,
        }

        self._stats = {
            "messages_sent": 0,
            "messages_received": 0,
            "requests_sent": 0,
            "responses_received": 0,
            "unmatched_responses": 0,
            "notifications_sent": 0,
            "notifications_received": 0,
            "server_requests": 0,
            "timeouts": 0,
            "errors": 0,
        }

        handle.add_exit_callback(self._on_process_exit)

    # Lifecycle

    @property
    def state(self) -> SessionState:
        """Get the current session state."""
        return self._state

    @property
    def is_ready(self) -> bool:
        """Whether call-hierarchy requests may be issued."""
        return self._state == SessionState.READY and self.fatal_error is None

    @property
    def pending_count(self) -> int:
        """Number of requests awaiting a response."""
        return len(self._pending)

    @property
    def stats(self) -> dict[str, int]:
        """Copy of the traffic counters."""
        return dict(self._stats)

    def _set_state(self, new_state: SessionState) -> None:
        """Set session state with logging."""
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self.logger.info(f"🔄 Session state change: {old_state.value} → {new_state.value}")
        handle_state = _HANDLE_STATES.get(new_state)
        if handle_state is not None:
            self.handle.set_state(handle_state)

    def start(self) -> None:
        """Start the reader task."""
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._message_reader_loop())

    async def __aenter__(self) -> "RpcSession":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Stop the reader task and release every outstanding caller."""
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass

        self._fail_pending(
            lambda call: RequestCancelled(
                f"Session closed with {call.method} (ID: {call.request_id}) outstanding"
            )
        )
        self._open_documents.clear()
        self._set_state(SessionState.TERMINATED)
        self.logger.info(f"📊 Session statistics: {self._stats}")

    async def initialize(self, timeout: float) -> dict[str, Any]:
        """
        Perform the initialize handshake.

        Args:
            timeout: Seconds to wait for the initialize response

        Returns:
            The server's initialize result

        Raises:
            SessionNotReady: If the session is not in the starting state
            RequestTimeout, ProtocolError, ServerCrash, FramingError: If the
                handshake fails
        """
        if self._state != SessionState.STARTING:
            raise SessionNotReady(f"Cannot initialize session in state: {self._state.value}")
        self.start()

        root = self.handle.project_root.resolve()
        init_params: dict[str, Any] = {
            "processId": os.getpid(),
            "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
            "rootUri": root.as_uri(),
            "rootPath": str(root),
            "workspaceFolders": [{"uri": root.as_uri(), "name": root.name}],
            "capabilities": LSPCapabilities.client_capabilities(),
        }
        if self.language_config.initialization_options:
            init_params["initializationOptions"] = self.language_config.initialization_options

        self.logger.info("🤝 Sending initialize request...")
        result = await self._request(LSPMethod.INITIALIZE, init_params, timeout)

        if isinstance(result, dict):
            capabilities = result.get("capabilities")
            if isinstance(capabilities, dict):
                self.server_capabilities = capabilities
        if not self.server_capabilities.get("callHierarchyProvider"):
            self.logger.warning("⚠️  Server does not advertise callHierarchyProvider")

        self._set_state(SessionState.INITIALIZED)
        await self.notify(LSPMethod.INITIALIZED, {})
        self._set_state(SessionState.READY)
        self.logger.info("🎉 LSP initialization complete!")
        return result if isinstance(result, dict) else {}

    async def shutdown(self, timeout: float) -> None:
        """Send the shutdown request followed by the exit notification."""
        if self.fatal_error is not None or self._state == SessionState.TERMINATED:
            return
        self._set_state(SessionState.SHUTTING_DOWN)
        try:
            self.logger.info("📤 Sending shutdown request...")
            await self._request(LSPMethod.SHUTDOWN, None, timeout)
        except (RequestTimeout, ProtocolError) as e:
            self.logger.warning(f"⚠️  Shutdown request failed: {e}")
        await self._send_message(self.protocol.create_notification(LSPMethod.EXIT))
        self.logger.info("📤 Sent exit notification")

    @property
    def cancelled(self) -> bool:
        """Whether cancel_all has been called on this session."""
        return self._cancel_reason is not None

    def cancel_all(self, reason: str = "Run cancelled") -> int:
        """Resolve every outstanding request with RequestCancelled.

        Later requests are refused with RequestCancelled as well; only the
        shutdown handshake may still be sent.

        Returns:
            Number of requests cancelled
        """
        self._cancel_reason = reason
        return self._fail_pending(
            lambda call: RequestCancelled(
                f"{reason}: {call.method} (ID: {call.request_id})",
                {"method": call.method},
            )
        )

    # Requests

    async def request(self, method: str, params: Any = None, timeout: float = 30.0) -> Any:
        """
        Send a request and wait for its result.

        Args:
            method: LSP method name
            params: Request parameters
            timeout: Seconds to wait for the response

        Returns:
            The response's result member

        Raises:
            SessionNotReady: If the session is not ready
            RequestTimeout: If no response arrives within timeout
            ProtocolError: If the server answers with an error
            ServerCrash, FramingError: If the session dies first
            RequestCancelled: If the run is cancelled first
        """
        self._check_ready(method)
        if self._cancel_reason is not None:
            raise RequestCancelled(
                f"{self._cancel_reason}: {method} not sent", {"method": method}
            )
        return await self._request(method, params, timeout)

    async def notify(self, method: str, params: Any = None) -> None:
        """Send a notification."""
        if self.fatal_error is not None:
            raise self._dead_session_error(method)
        if self._state == SessionState.TERMINATED:
            raise SessionNotReady(f"Cannot send {method} on a terminated session")
        await self._send_message(self.protocol.create_notification(method, params))

    async def open_document(self, path: Path, text: str | None = None) -> bool:
        """
        Open a document with the server unless it is already open.

        Returns:
            True if a didOpen notification was sent
        """
        self._check_ready(LSPMethod.DID_OPEN)
        uri = path.resolve().as_uri()
        if uri in self._open_documents:
            return False
        self._open_documents[uri] = 1

        if text is None:
            text = path.read_text(encoding="utf-8", errors="replace")
        try:
            await self.notify(
                LSPMethod.DID_OPEN,
                {
                    "textDocument": {
                        "uri": uri,
                        "languageId": self.language_config.language_id,
                        "version": 1,
                        "text": text,
                    }
                },
            )
        except LSPBenchmarkError:
            self._open_documents.pop(uri, None)
            raise
        self.logger.debug(f"📄 Opened document: {uri}")
        return True

    async def close_document(self, path: Path) -> bool:
        """Close a previously opened document."""
        uri = path.resolve().as_uri()
        if self._open_documents.pop(uri, None) is None:
            return False
        await self.notify(LSPMethod.DID_CLOSE, {"textDocument": {"uri": uri}})
        return True

    async def close_all_documents(self) -> int:
        """Close every open document; returns how many were closed."""
        uris = list(self._open_documents)
        self._open_documents.clear()
        for uri in uris:
            await self.notify(LSPMethod.DID_CLOSE, {"textDocument": {"uri": uri}})
        return len(uris)

    def is_document_open(self, path: Path) -> bool:
        """Check whether didOpen has been sent for a path."""
        return path.resolve().as_uri() in self._open_documents

    async def prepare_call_hierarchy(
        self, uri: str, line: int, character: int, timeout: float
    ) -> list[dict[str, Any]]:
        """Resolve call hierarchy items at a position; empty if none."""
        params = {
            "textDocument": {"uri": uri},
            "position": {"line": line, "character": character},
        }
        result = await self.request(LSPMethod.PREPARE_CALL_HIERARCHY, params, timeout)
        return _as_list(result)

    async def incoming_calls(self, item: dict[str, Any], timeout: float) -> list[dict[str, Any]]:
        """Callers of an item returned by prepare_call_hierarchy.

        The item is sent back exactly as the server produced it.
        """
        result = await self.request(LSPMethod.INCOMING_CALLS, {"item": item}, timeout)
        return _as_list(result)

    async def outgoing_calls(self, item: dict[str, Any], timeout: float) -> list[dict[str, Any]]:
        """Callees of an item returned by prepare_call_hierarchy."""
        result = await self.request(LSPMethod.OUTGOING_CALLS, {"item": item}, timeout)
        return _as_list(result)

    def add_notification_handler(self, method: str, handler: NotificationHandler) -> None:
        """Add a notification handler; coroutine functions are awaited."""
        self._notification_handlers[method] = handler

    # Internals

    def _check_ready(self, method: str) -> None:
        if self.fatal_error is not None:
            raise self._dead_session_error(method)
        if self._state != SessionState.READY:
            raise SessionNotReady(
                f"Cannot send {method} in session state: {self._state.value}",
                {"method": method, "state": self._state.value},
            )

    def _dead_session_error(self, method: str) -> LSPBenchmarkError:
        error = self.fatal_error
        message = f"Session is no longer usable ({error}); cannot send {method}"
        if isinstance(error, FramingError):
            return FramingError(message, error.details)
        return ServerCrash(message, error.details if error else {})

    async def _request(self, method: str, params: Any, timeout: float) -> Any:
        if self.fatal_error is not None:
            raise self._dead_session_error(method)

        loop = asyncio.get_running_loop()
        request_id = next(self._ids)
        call = PendingCall(
            request_id=request_id,
            method=method,
            future=loop.create_future(),
            sent_at=loop.time(),
        )
        self._pending[request_id] = call

        try:
            await self._send_message(self.protocol.create_request(method, params, request_id))
            self._stats["requests_sent"] += 1
            response: LSPMessage = await asyncio.wait_for(call.future, timeout=timeout)
        except TimeoutError:
            self._stats["timeouts"] += 1
            self._pending.pop(request_id, None)
            self.logger.warning(f"⏰ Request timeout: {method} (ID: {request_id}) after {timeout}s")
            await self._send_cancel(request_id)
            raise RequestTimeout(
                f"Request timeout: {method} (ID: {request_id}) after {timeout}s",
                {"method": method, "timeout": timeout},
            ) from None
        finally:
            self._pending.pop(request_id, None)

        self.logger.debug(
            f"📥 Response for {method} (ID: {request_id}) after "
            f"{(loop.time() - call.sent_at) * 1000:.1f}ms"
        )
        if response.error is not None:
            raise _protocol_error(method, response.error)
        return response.result

    async def _send_cancel(self, request_id: int) -> None:
        try:
            await self._send_message(
                self.protocol.create_notification(LSPMethod.CANCEL_REQUEST, {"id": request_id})
            )
        except LSPBenchmarkError as e:
            self.logger.debug(f"Could not send cancel for {request_id}: {e}")

    async def _send_message(self, content: dict[str, Any]) -> None:
        """Frame and write a message to the server's stdin."""
        data = self.protocol.serialize_message(content)
        async with self._write_lock:
            try:
                self.handle.stdin.write(data)
                await self.handle.stdin.drain()
            except (ConnectionError, OSError) as e:
                self._stats["errors"] += 1
                raise ServerCrash(
                    f"Failed to write to server: {e}",
                    {"method": content.get("method")},
                ) from e

        self._stats["messages_sent"] += 1
        if "method" in content and "id" not in content:
            self._stats["notifications_sent"] += 1
        self.logger.debug(
            f"📤 Sent message: {content.get('method', 'response')} "
            f"(ID: {content.get('id', 'N/A')}) - {len(data)} bytes"
        )

    async def _message_reader_loop(self) -> None:
        """Decode frames until end of stream, a framing error or cancellation."""
        self.logger.debug("📚 Message reader loop started")
        try:
            while True:
                message = await read_message(self.handle.stdout)
                if message is None:
                    self.logger.warning("📪 Server closed connection")
                    await self._wait_for_exit()
                    self._handle_server_gone()
                    break
                self._stats["messages_received"] += 1
                await self._process_message(message)
        except FramingError as e:
            self._stats["errors"] += 1
            self.logger.error(f"❌ Framing error, terminating session: {e}")
            self._fail_session(e)
        except (ConnectionError, OSError) as e:
            self._stats["errors"] += 1
            self.logger.error(f"❌ Error reading from server: {e}")
            self._fail_session(ServerCrash(f"Error reading from server: {e}"))
        finally:
            self.logger.debug("📚 Message reader loop ended")

    async def _process_message(self, message: LSPMessage) -> None:
        kind = message.kind
        if kind == MessageKind.RESPONSE:
            self._handle_response(message)
        elif kind == MessageKind.NOTIFICATION:
            await self._handle_notification(message)
        elif kind == MessageKind.REQUEST:
            await self._handle_server_request(message)
        else:
            self.logger.warning(f"⚠️  Unknown message type: {message.content}")

    def _handle_response(self, message: LSPMessage) -> None:
        self._stats["responses_received"] += 1
        request_id = message.id
        if isinstance(request_id, str) and request_id.isdigit():
            request_id = int(request_id)

        call = self._pending.pop(request_id, None) if isinstance(request_id, int) else None
        if call is None:
            self._stats["unmatched_responses"] += 1
            self.logger.warning(f"⚠️  No pending request for response ID: {message.id}")
            return
        if call.future.done():
            self.logger.warning(f"⚠️  Response for already completed request {request_id}")
            return
        call.future.set_result(message)

    async def _handle_notification(self, message: LSPMessage) -> None:
        self._stats["notifications_received"] += 1
        handler = self._notification_handlers.get(message.method or "")
        if handler is None:
            self.logger.debug(f"📢 Ignoring server notification: {message.method}")
            return
        try:
            outcome = handler(message.params)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            self._stats["errors"] += 1
            self.logger.error(f"❌ Notification handler for {message.method} failed: {e}")

    async def _handle_server_request(self, message: LSPMessage) -> None:
        """Answer requests the server sends to the client."""
        self._stats["server_requests"] += 1
        self.logger.debug(f"📥 Server request: {message.method} (ID: {message.id})")

        params = message.params if isinstance(message.params, dict) else {}
        if message.method == LSPMethod.WORKSPACE_CONFIGURATION:
            items = params.get("items") or []
            response = self.protocol.create_response(message.id, [None] * len(items))
        elif message.method in ACKNOWLEDGED_SERVER_REQUESTS:
            response = self.protocol.create_response(message.id, None)
        else:
            response = self.protocol.create_error_response(
                message.id,
                LSPErrorCode.METHOD_NOT_FOUND.value,
                f"Method not found: {message.method}",
            )

        try:
            await self._send_message(response)
        except ServerCrash as e:
            self.logger.warning(f"⚠️  Could not answer server request {message.method}: {e}")

    def _log_server_message(self, params: Any) -> None:
        text = params.get("message", "") if isinstance(params, dict) else params
        self.logger.debug(f"📝 Server log: {text}")

    def _show_server_message(self, params: Any) -> None:
        text = params.get("message", "") if isinstance(params, dict) else params
        self.logger.info(f"💬 Server message: {text}")

    def _log_progress(self, params: Any) -> None:
        if not isinstance(params, dict):
            return
        value = params.get("value") or {}
        if isinstance(value, dict):
            self.logger.debug(
                f"⏳ Progress {params.get('token')}: {value.get('kind')} "
                f"{value.get('title') or value.get('message') or ''}"
            )

    async def _wait_for_exit(self) -> None:
        # Stdout usually closes just before the exit status is known
        try:
            await asyncio.wait_for(self.handle.exited.wait(), timeout=EXIT_DRAIN_GRACE)
        except TimeoutError:
            self.logger.debug("Server closed stdout but has not exited yet")

    def _on_process_exit(self, handle: ServerHandle, returncode: int) -> None:
        # Give the reader a moment to consume responses still buffered in the pipe
        if self._reader_task is None or self._reader_task.done():
            self._handle_server_gone()
            return
        asyncio.get_running_loop().call_later(EXIT_DRAIN_GRACE, self._handle_server_gone)

    def _handle_server_gone(self) -> None:
        if self._state == SessionState.TERMINATED and not self._pending:
            return

        returncode = self.handle.returncode
        expected = self._state == SessionState.SHUTTING_DOWN
        if expected:
            self._fail_pending(
                lambda call: ServerCrash(
                    f"Server exited during shutdown with {call.method} outstanding"
                )
            )
            self._set_state(SessionState.TERMINATED)
            return

        details = {"returncode": returncode, "stderr": self.handle.stderr_excerpt()}
        self._fail_session(
            ServerCrash(
                f"Server {self.handle.language.value} exited unexpectedly "
                f"(exit code: {returncode})",
                details,
            )
        )

    def _fail_session(self, error: LSPBenchmarkError) -> None:
        """Mark the session dead and release all callers with the error."""
        if self.fatal_error is None:
            self.fatal_error = error
        details = error.details
        error_type = type(error)
        self._fail_pending(
            lambda call: error_type(
                f"{error.message} ({call.method}, ID: {call.request_id})", details
            )
        )
        self._set_state(SessionState.TERMINATED)

    def _fail_pending(self, make_error: Callable[[PendingCall], Exception]) -> int:
        failed = 0
        while self._pending:
            _, call = self._pending.popitem()
            if not call.future.done():
                call.future.set_exception(make_error(call))
                failed += 1
        return failed


def _as_list(result: Any) -> list[dict[str, Any]]:
    if result is None:
        return []
    if isinstance(result, list):
        return result
    return [result]


def _protocol_error(method: str, error: Any) -> ProtocolError:
    """Build a ProtocolError from a JSON-RPC error member."""
    if not isinstance(error, dict):
        return ProtocolError(f"Malformed error response: {error!r}", method=method)

    code = error.get("code")
    if not isinstance(code, int) or code == 0:
        code = LSPErrorCode.UNKNOWN_ERROR_CODE.value
    message = error.get("message")
    if not isinstance(message, str) or not message:
        message = "Unknown error"

    exc = JsonRpcException.from_dict({"code": code, "message": message, "data": error.get("data")})
    return ProtocolError(exc.message, code=exc.code, data=exc.data, method=method)
