"""
Language Server Process Management

This module owns the language server subprocesses of a benchmark run:
launching them with piped stdio, draining their stderr, reaping their exit
codes and shutting them down gracefully with a forced fallback.

Architecture:
1. One ServerHandle per running server, created only by ServerProcessManager
2. Two supervision tasks per handle (stderr drain, exit watcher)
3. Unexpected exits move the handle to CRASHED and notify exit callbacks
"""

import asyncio
import logging
import os
import shutil
from collections import deque
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from errors import LSPBenchmarkError, ServerCrash, SpawnError
from language_config import Language, LanguageTable

if TYPE_CHECKING:
    from rpc_session import RpcSession

STDERR_TAIL_LINES = 20


class ServerState(Enum):
    """Lifecycle states of a language server process."""

    STARTING = "starting"
    INITIALIZED = "initialized"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"
    CRASHED = "crashed"


ExitCallback = Callable[["ServerHandle", int], None]


class ServerHandle:
    """A running language server process and its stdio pipes."""

    def __init__(
        self,
        language: Language,
        process: asyncio.subprocess.Process,
        project_root: Path,
        command: list[str],
    ):
        self.language = language
        self.process = process
        self.project_root = project_root
        self.command = command
        self.logger = logging.getLogger(f"{__name__}.{language.value}")

        self._state = ServerState.STARTING
        self._exit_callbacks: list[ExitCallback] = []
        self._stderr_task: asyncio.Task | None = None
        self._exit_task: asyncio.Task | None = None

        self.exited = asyncio.Event()
        self.returncode: int | None = None
        self.stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

    @property
    def pid(self) -> int:
        """Process id of the server."""
        return self.process.pid

    @property
    def stdin(self) -> asyncio.StreamWriter:
        """Pipe to the server's stdin."""
        if self.process.stdin is None:
            raise ServerCrash(f"Server {self.language.value} has no stdin pipe")
        return self.process.stdin

    @property
    def stdout(self) -> asyncio.StreamReader:
        """Pipe from the server's stdout."""
        if self.process.stdout is None:
            raise ServerCrash(f"Server {self.language.value} has no stdout pipe")
        return self.process.stdout

    @property
    def state(self) -> ServerState:
        """Current lifecycle state."""
        return self._state

    @property
    def is_alive(self) -> bool:
        """Whether the process has not exited yet."""
        return self.process.returncode is None and not self.exited.is_set()

    def set_state(self, new_state: ServerState) -> None:
        """Set handle state with logging.

        CRASHED and TERMINATED are final.
        """
        old_state = self._state
        if old_state == new_state:
            return
        if old_state in (ServerState.CRASHED, ServerState.TERMINATED):
            self.logger.debug(
                f"Ignoring state change {old_state.value} → {new_state.value}"
            )
            return
        self._state = new_state
        self.logger.info(
            f"🔄 Server {self.language.value} (PID: {self.pid}) state change: "
            f"{old_state.value} → {new_state.value}"
        )

    def add_exit_callback(self, callback: ExitCallback) -> None:
        """Register a callback invoked once when the process exits."""
        if self.returncode is not None:
            callback(self, self.returncode)
            return
        self._exit_callbacks.append(callback)

    def stderr_excerpt(self) -> str:
        """Last lines the server wrote to stderr."""
        return "\n".join(self.stderr_tail)

    def start_supervision(self) -> None:
        """Start the stderr drain and exit watcher tasks."""
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._exit_task = asyncio.create_task(self._watch_exit())

    async def stop_supervision(self, timeout: float) -> None:
        """Wait for supervision tasks to finish, cancelling stragglers."""
        for task in (self._exit_task, self._stderr_task):
            if task is None or task.done():
                continue
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except TimeoutError:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def _drain_stderr(self) -> None:
        stream = self.process.stderr
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # Overlong line, the reader already discarded it
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            self.stderr_tail.append(text)
            self.logger.debug(f"[{self.language.value} stderr] {text}")

    async def _watch_exit(self) -> None:
        returncode = await self.process.wait()
        self._on_exit(returncode)

    def _on_exit(self, returncode: int) -> None:
        self.returncode = returncode
        expected = self._state in (ServerState.SHUTTING_DOWN, ServerState.TERMINATED)
        if expected:
            self.logger.info(
                f"📪 Server {self.language.value} exited (exit code: {returncode})"
            )
        else:
            self.logger.warning(
                f"💥 Server {self.language.value} (PID: {self.pid}) exited unexpectedly "
                f"(exit code: {returncode}) in state {self._state.value}"
            )
            self.set_state(ServerState.CRASHED)
        self.exited.set()

        callbacks, self._exit_callbacks = self._exit_callbacks, []
        for callback in callbacks:
            try:
                callback(self, returncode)
            except Exception as e:
                self.logger.error(f"❌ Error in exit callback: {e}")


class ServerProcessManager:
    """Spawns, supervises and terminates language server processes."""

    def __init__(
        self,
        language_table: LanguageTable,
        shutdown_grace: float = 5.0,
        spawn_probe: float = 0.2,
    ):
        """
        Initialize the process manager.

        Args:
            language_table: Per-language server configuration
            shutdown_grace: Seconds to wait at each step of the shutdown path
            spawn_probe: Seconds to watch a fresh process for an immediate exit
        """
        self.language_table = language_table
        self.shutdown_grace = shutdown_grace
        self.spawn_probe = spawn_probe
        self.logger = logging.getLogger(__name__)
        self._handles: list[ServerHandle] = []

    @property
    def handles(self) -> list[ServerHandle]:
        """Handles that have not been terminated yet."""
        return list(self._handles)

    async def __aenter__(self) -> "ServerProcessManager":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.terminate_all()

    async def spawn(self, language: Language, project_root: Path) -> ServerHandle:
        """
        Launch the configured language server for a project.

        Args:
            language: Language whose server should be started
            project_root: Working directory for the server

        Returns:
            Handle of the running server in STARTING state

        Raises:
            SpawnError: If the executable cannot be resolved or launched, or
                exits immediately
        """
        config = self.language_table.get(language)
        if config is None:
            raise SpawnError(f"No server configured for language: {language.value}")

        executable = shutil.which(config.command)
        if executable is None:
            raise SpawnError(
                f"LSP server for {config.display_name} is not available. "
                f"{config.install_hint}",
                {"command": config.command},
            )

        command = [executable, *config.args]
        env = {**os.environ, **config.env}
        self.logger.info(f"🖥️  Starting server process: {' '.join(command)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(project_root),
                env=env,
            )
        except OSError as e:
            raise SpawnError(
                f"Failed to start LSP server '{config.command}': {e}",
                {"command": command},
            ) from e

        handle = ServerHandle(language, process, Path(project_root), command)
        handle.start_supervision()

        if self.spawn_probe > 0:
            try:
                await asyncio.wait_for(handle.exited.wait(), timeout=self.spawn_probe)
            except TimeoutError:
                pass
            else:
                await handle.stop_supervision(self.shutdown_grace)
                raise SpawnError(
                    f"LSP server '{config.command}' exited immediately "
                    f"(exit code: {handle.returncode})",
                    {"command": command, "stderr": handle.stderr_excerpt()},
                )

        self._handles.append(handle)
        self.logger.info(
            f"✅ Server process started for {config.display_name} (PID: {process.pid})"
        )
        return handle

    async def terminate(
        self, handle: ServerHandle, session: "RpcSession | None" = None
    ) -> int | None:
        """
        Stop a server: protocol shutdown when healthy, then terminate, then kill.

        Args:
            handle: Server to stop
            session: Session on the handle; used for shutdown/exit when ready

        Returns:
            The process exit code, or None if it could not be reaped
        """
        if handle.is_alive:
            healthy = session is not None and session.is_ready
            handle.set_state(ServerState.SHUTTING_DOWN)

            if healthy:
                try:
                    await session.shutdown(timeout=self.shutdown_grace)
                except LSPBenchmarkError as e:
                    self.logger.warning(f"⚠️  Error during protocol shutdown: {e}")

            await self._stop_process(handle, graceful=healthy)

        if session is not None:
            await session.close()

        await handle.stop_supervision(self.shutdown_grace)
        handle.set_state(ServerState.TERMINATED)
        if handle in self._handles:
            self._handles.remove(handle)
        return handle.returncode

    async def terminate_all(self) -> None:
        """Terminate every server still owned by this manager."""
        for handle in list(self._handles):
            await self.terminate(handle)

    async def _stop_process(self, handle: ServerHandle, graceful: bool) -> None:
        # After an exit notification the server should leave on its own
        if graceful and await self._wait_exit(handle):
            return

        if handle.process.stdin is not None and not handle.process.stdin.is_closing():
            handle.process.stdin.close()
        if await self._wait_exit(handle):
            return

        self.logger.warning("⚠️  Server process didn't exit, terminating...")
        try:
            handle.process.terminate()
        except ProcessLookupError:
            pass
        if await self._wait_exit(handle):
            return

        self.logger.warning("⚠️  Server process didn't terminate, killing...")
        try:
            handle.process.kill()
        except ProcessLookupError:
            pass
        if not await self._wait_exit(handle):
            self.logger.error(f"❌ Server process {handle.pid} could not be reaped")

    async def _wait_exit(self, handle: ServerHandle) -> bool:
        try:
            await asyncio.wait_for(handle.exited.wait(), timeout=self.shutdown_grace)
            return True
        except TimeoutError:
            return False
