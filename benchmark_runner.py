"""
Benchmark run orchestration.

Wires the components of one run together: discovers symbols, spawns the
language server, performs the handshake, drives the call-hierarchy probes and
always tears the server down, whatever happened before. Each language gets
its own server, session and report; several languages run concurrently.
"""

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

from benchmark_config import BenchmarkConfig
from benchmark_report import BenchmarkAggregator, BenchmarkRecord, Report
from call_hierarchy import CallHierarchyDriver
from errors import (
    ConfigurationError,
    FramingError,
    ProtocolError,
    RequestTimeout,
    ServerCrash,
    SpawnError,
)
from language_config import Language, LanguageTable, build_language_table
from rpc_session import RpcSession
from server_process import ServerProcessManager
from symbol_discovery import FileSearchConfig, SymbolDiscoverer

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

T = TypeVar("T")


class RunCancelled(Exception):
    """Raised internally when the cancel event wins a race."""


@dataclass
class RunContext:
    """Shared state of one benchmark run."""

    project_root: Path
    config: BenchmarkConfig
    language_table: LanguageTable
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @classmethod
    def create(
        cls,
        project_root: Path,
        config: BenchmarkConfig,
        language_table: LanguageTable | None = None,
    ) -> "RunContext":
        """Build a context, applying server overrides from the configuration.

        Raises:
            ConfigurationError: If the project root is not a directory or an
                override is invalid
        """
        root = Path(project_root).expanduser()
        if not root.is_dir():
            raise ConfigurationError(f"Project path does not exist or is not a directory: {root}")
        return cls(
            project_root=root.resolve(),
            config=config,
            language_table=language_table or build_language_table(config.servers),
        )

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Request cooperative cancellation of the run."""
        if not self.cancel_event.is_set():
            logger.warning("🛑 Cancellation requested")
            self.cancel_event.set()


@dataclass
class LanguageRunResult:
    """Report and exit status of one language's run."""

    language: Language
    report: Report
    exit_code: int


def _log_progress(record: BenchmarkRecord, completed: int) -> None:
    logger.info(
        f"[{completed}] {record.symbol.describe()} → {record.outcome.value} "
        f"({record.timings.total_ms:.1f}ms)"
    )


async def _until_cancelled(awaitable: Awaitable[T], cancel_event: asyncio.Event) -> T:
    """Await ``awaitable`` unless the cancel event is set first."""
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.create_task(cancel_event.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()
    if task.done():
        return task.result()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    raise RunCancelled()


async def run_benchmark(context: RunContext, language: Language) -> LanguageRunResult:
    """
    Run the benchmark for one language.

    Args:
        context: Run configuration and cancellation signal
        language: Language whose server is benchmarked

    Returns:
        The report and the exit status for this language
    """
    config = context.config
    aggregator = BenchmarkAggregator(str(context.project_root), [language.value])
    aggregator.add_listener(_log_progress)

    def finish(exit_code: int) -> LanguageRunResult:
        if context.cancelled:
            exit_code = EXIT_INTERRUPTED
        return LanguageRunResult(language, aggregator.finalize(), exit_code)

    discoverer = SymbolDiscoverer(
        context.language_table,
        search_config=FileSearchConfig.from_benchmark_config(config),
        max_symbols=config.max_symbols,
    )
    try:
        discovery = await asyncio.to_thread(discoverer.discover, context.project_root, language)
    except ConfigurationError as e:
        aggregator.add_server_failure(language.value, "ConfigurationError", e.message, e.details)
        return finish(EXIT_FAILURE)

    aggregator.add_discovery_errors(discovery.errors)
    aggregator.add_symbols_discovered(discovery.total_symbols)

    if discovery.all_files_failed:
        aggregator.add_server_failure(
            language.value,
            "DiscoveryError",
            f"All {discovery.files_scanned} files failed to parse",
        )
        return finish(EXIT_FAILURE)
    if not discovery.symbols:
        logger.warning(f"⚠️  No {language.value} symbols found in {context.project_root}")
        return finish(EXIT_OK)
    if context.cancelled:
        return finish(EXIT_INTERRUPTED)

    async with ServerProcessManager(
        context.language_table,
        shutdown_grace=config.shutdown_grace,
        spawn_probe=config.spawn_probe,
    ) as manager:
        try:
            handle = await manager.spawn(language, context.project_root)
        except SpawnError as e:
            aggregator.add_server_failure(language.value, "SpawnError", e.message, e.details)
            return finish(EXIT_FAILURE)

        session = RpcSession(handle, context.language_table[language])
        exit_code = EXIT_OK
        try:
            session.start()
            try:
                await _until_cancelled(
                    session.initialize(timeout=config.startup_timeout), context.cancel_event
                )
            except RequestTimeout:
                aggregator.add_server_failure(
                    language.value,
                    "StartupTimeout",
                    f"Server did not become ready within {config.startup_timeout}s",
                    {"stderr": handle.stderr_excerpt()},
                )
                return finish(EXIT_FAILURE)
            except (ProtocolError, ServerCrash, FramingError) as e:
                aggregator.add_server_failure(
                    language.value,
                    "StartupFailure",
                    f"Initialize failed: {e}",
                    {"stderr": handle.stderr_excerpt()},
                )
                return finish(EXIT_FAILURE)

            if config.warmup_delay > 0:
                logger.info(f"⏳ Waiting {config.warmup_delay}s for the server to settle...")
                try:
                    await asyncio.wait_for(context.cancel_event.wait(), timeout=config.warmup_delay)
                except TimeoutError:
                    pass

            driver = CallHierarchyDriver(session, config, aggregator.add, context.cancel_event)
            await driver.run(discovery.symbols)

            if session.fatal_error is not None:
                error = session.fatal_error
                aggregator.add_server_failure(
                    language.value, type(error).__name__, error.message, error.details
                )
        except RunCancelled:
            exit_code = EXIT_INTERRUPTED
        finally:
            await manager.terminate(handle, session)

    return finish(exit_code)


async def run_many(context: RunContext, languages: list[Language]) -> list[LanguageRunResult]:
    """Run independent benchmarks for several languages concurrently."""
    return list(await asyncio.gather(*(run_benchmark(context, language) for language in languages)))


def overall_exit_code(results: list[LanguageRunResult]) -> int:
    """Combine per-language exit codes; interruption wins over failure."""
    codes = {result.exit_code for result in results}
    if EXIT_INTERRUPTED in codes:
        return EXIT_INTERRUPTED
    if EXIT_FAILURE in codes:
        return EXIT_FAILURE
    return EXIT_OK
