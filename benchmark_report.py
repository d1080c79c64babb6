"""
Benchmark aggregation and reporting.

Collects one record per probed symbol, keeps running outcome and latency
statistics, and freezes them into a report that can be rendered as a text
table or serialized to JSON.
"""

import json
import logging
import statistics
import time
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from errors import DiscoveryError
from symbol_discovery import Symbol

logger = logging.getLogger(__name__)

PHASES = ("prepare", "incoming", "outgoing")
PERCENTILES = (50, 90, 95, 99)


class Outcome(Enum):
    """Result of probing one symbol."""

    SUCCESS = "success"
    TIMEOUT = "timeout"
    PROTOCOL_ERROR = "protocol_error"
    SERVER_CRASH = "server_crash"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PhaseTimings:
    """Milliseconds spent per request phase; None when a phase never ran."""

    prepare_ms: float | None = None
    incoming_ms: float | None = None
    outgoing_ms: float | None = None

    def get(self, phase: str) -> float | None:
        return getattr(self, f"{phase}_ms")

    @property
    def total_ms(self) -> float:
        return sum(v for v in (self.prepare_ms, self.incoming_ms, self.outgoing_ms) if v is not None)


@dataclass(frozen=True)
class BenchmarkRecord:
    """The measured result of probing one symbol."""

    symbol: Symbol
    outcome: Outcome
    timings: PhaseTimings = field(default_factory=PhaseTimings)
    item_count: int = 0
    incoming_count: int = 0
    outgoing_count: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.symbol.relative_path,
            "symbol": self.symbol.name,
            "kind": self.symbol.kind,
            "line": self.symbol.line,
            "character": self.symbol.character,
            "outcome": self.outcome.value,
            "prepare_ms": self.timings.prepare_ms,
            "incoming_ms": self.timings.incoming_ms,
            "outgoing_ms": self.timings.outgoing_ms,
            "item_count": self.item_count,
            "incoming_count": self.incoming_count,
            "outgoing_count": self.outgoing_count,
            "error": self.error,
        }


@dataclass(frozen=True)
class PhaseStats:
    """Latency distribution of one phase."""

    count: int = 0
    mean_ms: float | None = None
    min_ms: float | None = None
    max_ms: float | None = None
    p50_ms: float | None = None
    p90_ms: float | None = None
    p95_ms: float | None = None
    p99_ms: float | None = None

    @classmethod
    def from_samples(cls, samples: list[float]) -> "PhaseStats":
        if not samples:
            return cls()
        if len(samples) == 1:
            cuts = {p: samples[0] for p in PERCENTILES}
        else:
            quantiles = statistics.quantiles(samples, n=100, method="inclusive")
            cuts = {p: quantiles[p - 1] for p in PERCENTILES}
        return cls(
            count=len(samples),
            mean_ms=statistics.fmean(samples),
            min_ms=min(samples),
            max_ms=max(samples),
            p50_ms=cuts[50],
            p90_ms=cuts[90],
            p95_ms=cuts[95],
            p99_ms=cuts[99],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "mean_ms": self.mean_ms,
            "min_ms": self.min_ms,
            "max_ms": self.max_ms,
            "p50_ms": self.p50_ms,
            "p90_ms": self.p90_ms,
            "p95_ms": self.p95_ms,
            "p99_ms": self.p99_ms,
        }


@dataclass(frozen=True)
class ReportSummary:
    """Totals, outcome histogram and per-phase latency statistics."""

    total: int
    outcomes: dict[str, int]
    phases: dict[str, PhaseStats]
    total_items: int
    total_incoming: int
    total_outgoing: int

    def count(self, outcome: Outcome) -> int:
        return self.outcomes.get(outcome.value, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "outcomes": dict(self.outcomes),
            "phases": {name: stats.to_dict() for name, stats in self.phases.items()},
            "total_items": self.total_items,
            "total_incoming": self.total_incoming,
            "total_outgoing": self.total_outgoing,
        }


@dataclass(frozen=True)
class ServerFailure:
    """A run-level failure: spawn, startup or a session that died."""

    language: str
    kind: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "language": self.language,
            "kind": self.kind,
            "message": self.message,
            "details": self.details,
        }


@dataclass(frozen=True)
class Report:
    """Frozen result of a benchmark run."""

    project_root: str
    languages: tuple[str, ...]
    records: tuple[BenchmarkRecord, ...]
    summary: ReportSummary
    server_failures: tuple[ServerFailure, ...]
    discovery_errors: tuple[dict[str, str | None], ...]
    started_at: str
    duration_s: float
    symbols_discovered: int = 0

    @property
    def ops_per_second(self) -> float:
        """Call hierarchy calls found per second of wall-clock time."""
        if self.duration_s <= 0:
            return 0.0
        return (self.summary.total_incoming + self.summary.total_outgoing) / self.duration_s

    @property
    def has_failures(self) -> bool:
        return bool(self.server_failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_root": self.project_root,
            "languages": list(self.languages),
            "started_at": self.started_at,
            "duration_s": self.duration_s,
            "symbols_discovered": self.symbols_discovered,
            "ops_per_second": self.ops_per_second,
            "summary": self.summary.to_dict(),
            "server_failures": [failure.to_dict() for failure in self.server_failures],
            "discovery_errors": list(self.discovery_errors),
            "records": [record.to_dict() for record in self.records],
        }

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


ProgressListener = Callable[[BenchmarkRecord, int], None]


class BenchmarkAggregator:
    """
    Collects benchmark records as probes complete.

    Records are kept in completion order. Counters are updated on every
    ``add`` so ``snapshot`` can be called at any time during a run.
    """

    def __init__(self, project_root: str, languages: Iterable[str] = ()):
        self.project_root = project_root
        self.languages = tuple(languages)
        self._records: list[BenchmarkRecord] = []
        self._outcomes: Counter[str] = Counter()
        self._samples: dict[str, list[float]] = {phase: [] for phase in PHASES}
        self._totals = {"items": 0, "incoming": 0, "outgoing": 0}
        self._failures: list[ServerFailure] = []
        self._discovery_errors: list[dict[str, str | None]] = []
        self._listeners: list[ProgressListener] = []
        self._symbols_discovered = 0
        self._started_at = datetime.now(UTC)
        self._start = time.perf_counter()
        self._report: Report | None = None

    @property
    def finalized(self) -> bool:
        return self._report is not None

    @property
    def record_count(self) -> int:
        return len(self._records)

    def add_listener(self, listener: ProgressListener) -> None:
        """Register a callback receiving each record and the running count."""
        self._listeners.append(listener)

    def add(self, record: BenchmarkRecord) -> None:
        """
        Append a record and update running statistics.

        Raises:
            RuntimeError: If the aggregator was already finalized
        """
        self._ensure_open()
        self._records.append(record)
        self._outcomes[record.outcome.value] += 1
        for phase in PHASES:
            value = record.timings.get(phase)
            if value is not None:
                self._samples[phase].append(value)
        self._totals["items"] += record.item_count
        self._totals["incoming"] += record.incoming_count
        self._totals["outgoing"] += record.outgoing_count

        for listener in self._listeners:
            try:
                listener(record, len(self._records))
            except Exception as e:
                logger.error(f"❌ Progress listener failed: {e}")

    def add_symbols_discovered(self, count: int) -> None:
        self._ensure_open()
        self._symbols_discovered += count

    def add_server_failure(
        self,
        language: str,
        kind: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record a run-level failure of one language's server."""
        self._ensure_open()
        logger.error(f"❌ {language} server failure ({kind}): {message}")
        self._failures.append(ServerFailure(language, kind, message, dict(details or {})))

    def add_discovery_errors(self, errors: Iterable[DiscoveryError]) -> None:
        """Record files that could not be used for symbol discovery."""
        self._ensure_open()
        for error in errors:
            self._discovery_errors.append({"file": error.file_path, "message": error.message})

    def snapshot(self) -> ReportSummary:
        """Summary of everything recorded so far."""
        return ReportSummary(
            total=len(self._records),
            outcomes=dict(self._outcomes),
            phases={phase: PhaseStats.from_samples(list(samples)) for phase, samples in self._samples.items()},
            total_items=self._totals["items"],
            total_incoming=self._totals["incoming"],
            total_outgoing=self._totals["outgoing"],
        )

    def finalize(self) -> Report:
        """Freeze the aggregator into a report; repeated calls return the same report."""
        if self._report is None:
            self._report = Report(
                project_root=self.project_root,
                languages=self.languages,
                records=tuple(self._records),
                summary=self.snapshot(),
                server_failures=tuple(self._failures),
                discovery_errors=tuple(self._discovery_errors),
                started_at=self._started_at.isoformat(),
                duration_s=time.perf_counter() - self._start,
                symbols_discovered=self._symbols_discovered,
            )
        return self._report

    def _ensure_open(self) -> None:
        if self._report is not None:
            raise RuntimeError("Benchmark aggregator is finalized")


def _fmt_ms(value: float | None) -> str:
    return "-" if value is None else f"{value:.1f}"


def format_report_table(report: Report) -> str:
    """Render a report as a plain-text table."""
    rule = "=" * 80
    summary = report.summary
    lines = [
        rule,
        f"Call hierarchy benchmark: {report.project_root} [{', '.join(report.languages)}]",
        rule,
        f"Symbols discovered: {report.symbols_discovered}   Probed: {summary.total}",
    ]

    outcome_parts = [f"{outcome.value}={summary.count(outcome)}" for outcome in Outcome]
    lines.append(f"Outcomes: {'  '.join(outcome_parts)}")
    lines.append("")

    header = f"{'phase':<10}{'count':>7}{'mean':>10}{'min':>10}{'p50':>10}{'p90':>10}{'p95':>10}{'p99':>10}{'max':>10}"
    lines.append(header + "  (ms)")
    lines.append("-" * len(header))
    for phase in PHASES:
        stats = summary.phases[phase]
        lines.append(
            f"{phase:<10}{stats.count:>7}{_fmt_ms(stats.mean_ms):>10}{_fmt_ms(stats.min_ms):>10}"
            f"{_fmt_ms(stats.p50_ms):>10}{_fmt_ms(stats.p90_ms):>10}{_fmt_ms(stats.p95_ms):>10}"
            f"{_fmt_ms(stats.p99_ms):>10}{_fmt_ms(stats.max_ms):>10}"
        )

    if report.server_failures:
        lines.append("")
        lines.append("Server failures:")
        for failure in report.server_failures:
            lines.append(f"  [{failure.language}] {failure.kind}: {failure.message}")

    if report.discovery_errors:
        lines.append("")
        lines.append(f"Files skipped during discovery: {len(report.discovery_errors)}")
        for error in report.discovery_errors[:10]:
            lines.append(f"  {error['message']}")
        if len(report.discovery_errors) > 10:
            lines.append(f"  ... and {len(report.discovery_errors) - 10} more")

    lines.append("")
    lines.append(
        f"Summary: {summary.total_items} call hierarchy items with {summary.total_incoming} "
        f"incoming and {summary.total_outgoing} outgoing calls found in "
        f"{report.duration_s:.2f}s, {report.ops_per_second:.2f} ops/sec"
    )
    lines.append(rule)
    return "\n".join(lines)
