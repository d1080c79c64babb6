"""
Call-hierarchy driver.

Probes every discovered symbol with the LSP call-hierarchy sequence:
prepareCallHierarchy at the symbol's name, then incomingCalls and
outgoingCalls for each returned item. Probes run concurrently up to the
configured bound and each one yields exactly one BenchmarkRecord.
"""

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path
from typing import Any

from benchmark_config import BenchmarkConfig
from benchmark_report import BenchmarkRecord, Outcome, PhaseTimings
from errors import (
    FramingError,
    LSPBenchmarkError,
    ProtocolError,
    RequestCancelled,
    RequestTimeout,
    ServerCrash,
    SessionNotReady,
)
from rpc_session import RpcSession
from symbol_discovery import Symbol

logger = logging.getLogger(__name__)

RecordSink = Callable[[BenchmarkRecord], None]
CallsRequest = Callable[[dict[str, Any], float], Awaitable[list[dict[str, Any]]]]


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


class _ProbeState:
    """Mutable accumulator for one probe's measurements."""

    def __init__(self):
        self.prepare_ms: float | None = None
        self.incoming_ms: float | None = None
        self.outgoing_ms: float | None = None
        self.item_count = 0
        self.incoming_count = 0
        self.outgoing_count = 0

    def record(self, symbol: Symbol, outcome: Outcome, error: str | None = None) -> BenchmarkRecord:
        return BenchmarkRecord(
            symbol=symbol,
            outcome=outcome,
            timings=PhaseTimings(self.prepare_ms, self.incoming_ms, self.outgoing_ms),
            item_count=self.item_count,
            incoming_count=self.incoming_count,
            outgoing_count=self.outgoing_count,
            error=error,
        )


class CallHierarchyDriver:
    """Runs call-hierarchy probes against one ready session."""

    def __init__(
        self,
        session: RpcSession,
        config: BenchmarkConfig,
        sink: RecordSink,
        cancel_event: asyncio.Event | None = None,
    ):
        """
        Initialize the driver.

        Args:
            session: Ready session of the server under test
            config: Timeouts and concurrency bound
            sink: Receives each record as its probe completes
            cancel_event: Set to stop the run cooperatively
        """
        self.session = session
        self.config = config
        self.sink = sink
        self.cancel_event = cancel_event or asyncio.Event()
        self._semaphore = asyncio.Semaphore(config.max_concurrency)
        self._file_locks: defaultdict[Path, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    async def run(self, symbols: Iterable[Symbol]) -> list[BenchmarkRecord]:
        """
        Probe all symbols.

        Returns:
            Records in completion order, one per symbol
        """
        symbols = list(symbols)
        records: list[BenchmarkRecord] = []
        logger.info(
            f"🚀 Probing {len(symbols)} symbols with concurrency {self.config.max_concurrency}"
        )

        def deliver(record: BenchmarkRecord) -> None:
            records.append(record)
            self.sink(record)

        watcher = asyncio.create_task(self._watch_cancel())
        try:
            await asyncio.gather(*(self._bounded_probe(symbol, deliver) for symbol in symbols))
        finally:
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass

        if self.config.close_documents and self.session.is_ready:
            try:
                closed = await self.session.close_all_documents()
                logger.debug(f"Closed {closed} documents")
            except LSPBenchmarkError as e:
                logger.warning(f"⚠️  Failed to close documents: {e}")

        return records

    async def _watch_cancel(self) -> None:
        await self.cancel_event.wait()
        cancelled = self.session.cancel_all("Run cancelled")
        logger.warning(f"🛑 Run cancelled, released {cancelled} pending requests")

    async def _bounded_probe(self, symbol: Symbol, deliver: RecordSink) -> None:
        state = _ProbeState()
        try:
            async with self._semaphore:
                record = await self.probe(symbol, state)
        except asyncio.CancelledError:
            deliver(state.record(symbol, Outcome.CANCELLED, "Task cancelled"))
            raise
        deliver(record)

    async def probe(self, symbol: Symbol, state: _ProbeState | None = None) -> BenchmarkRecord:
        """Run the call-hierarchy sequence for one symbol."""
        if state is None:
            state = _ProbeState()
        if self.cancelled:
            return state.record(symbol, Outcome.CANCELLED, "Run cancelled")
        if self.session.fatal_error is not None:
            return state.record(symbol, Outcome.SERVER_CRASH, str(self.session.fatal_error))

        try:
            await self._ensure_open(symbol.path)
            await self._run_sequence(symbol, state)
        except ProtocolError as e:
            logger.debug(f"Protocol error for {symbol.describe()}: {e}")
            return state.record(symbol, Outcome.PROTOCOL_ERROR, str(e))
        except RequestTimeout as e:
            return state.record(symbol, Outcome.TIMEOUT, str(e))
        except (ServerCrash, FramingError) as e:
            return state.record(symbol, Outcome.SERVER_CRASH, str(e))
        except RequestCancelled as e:
            return state.record(symbol, Outcome.CANCELLED, str(e))
        except SessionNotReady as e:
            outcome = Outcome.CANCELLED if self.cancelled else Outcome.SERVER_CRASH
            return state.record(symbol, outcome, str(e))
        except OSError as e:
            return state.record(symbol, Outcome.PROTOCOL_ERROR, f"Cannot open document: {e}")

        logger.debug(
            f"✅ {symbol.describe()}: {state.item_count} items, "
            f"{state.incoming_count} incoming, {state.outgoing_count} outgoing"
        )
        return state.record(symbol, Outcome.SUCCESS)

    async def _ensure_open(self, path: Path) -> None:
        # Later probes on the same file wait until didOpen has been written
        async with self._file_locks[path]:
            await self.session.open_document(path)

    async def _run_sequence(self, symbol: Symbol, state: _ProbeState) -> None:
        timeout = self.config.request_timeout

        if self.cancelled:
            raise RequestCancelled("Run cancelled")
        start = time.perf_counter()
        items = await self.session.prepare_call_hierarchy(
            symbol.uri, symbol.line, symbol.character, timeout
        )
        state.prepare_ms = _elapsed_ms(start)
        state.item_count = len(items)
        if not items:
            return

        state.incoming_ms = 0.0
        state.outgoing_ms = 0.0
        for item in items:
            if self.cancelled:
                raise RequestCancelled("Run cancelled")
            results = await asyncio.gather(
                self._timed(self.session.incoming_calls, item, timeout),
                self._timed(self.session.outgoing_calls, item, timeout),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
            (incoming, incoming_ms), (outgoing, outgoing_ms) = results
            state.incoming_ms += incoming_ms
            state.outgoing_ms += outgoing_ms
            state.incoming_count += len(incoming)
            state.outgoing_count += len(outgoing)

    @staticmethod
    async def _timed(
        request: CallsRequest, item: dict[str, Any], timeout: float
    ) -> tuple[list[dict[str, Any]], float]:
        start = time.perf_counter()
        calls = await request(item, timeout)
        return calls, _elapsed_ms(start)
