#!/usr/bin/env python3
"""Command line entry point for the LSP call-hierarchy benchmark.

Usage:
    lsp-bench <project_path> --language python [--language rust ...]

Exit codes: 0 on success, 1 when a server could not be started or the
project could not be parsed, 2 on argument errors, 130 when interrupted.
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path

from benchmark_config import BenchmarkConfig
from benchmark_report import format_report_table
from benchmark_runner import (
    EXIT_FAILURE,
    EXIT_INTERRUPTED,
    EXIT_USAGE,
    LanguageRunResult,
    RunContext,
    overall_exit_code,
    run_many,
)
from errors import ConfigurationError
from language_config import Language, build_language_table

LOG_ENV_VAR = "LSP_BENCH_LOG"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="lsp-bench",
        description="Benchmark LSP call hierarchy requests over a project.",
    )
    parser.add_argument("project_path", help="Root directory of the project to benchmark")
    parser.add_argument(
        "--language",
        "-l",
        action="append",
        required=True,
        help=(
            "Language whose server is benchmarked: "
            f"{', '.join(lang.value for lang in Language)}. "
            "Repeat or comma-separate to run several servers concurrently."
        ),
    )
    parser.add_argument("--include", help="Glob of project-relative paths to include")
    parser.add_argument("--exclude", help="Glob of project-relative paths to exclude")
    parser.add_argument("--timeout", type=float, help="Per-request timeout in seconds")
    parser.add_argument(
        "--startup-timeout", type=float, help="Seconds to wait for the server to become ready"
    )
    parser.add_argument("--concurrency", type=int, help="Concurrent symbol probes per server")
    parser.add_argument("--max-symbols", type=int, help="Probe at most this many symbols")
    parser.add_argument(
        "--warmup", type=float, help="Seconds to wait after initialization before probing"
    )
    parser.add_argument("--config", help="JSON configuration file")
    parser.add_argument("--output", "-o", help="Also write the report to this file")
    parser.add_argument(
        "--format",
        choices=("table", "json"),
        default="table",
        help="Report format (default: table)",
    )
    return parser


def configure_logging(level_name: str | None = None) -> None:
    """Configure root logging from LSP_BENCH_LOG (debug, info or warning)."""
    level_name = (level_name or os.environ.get(LOG_ENV_VAR) or "warning").upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


def parse_languages(values: list[str]) -> list[Language]:
    """Resolve --language values, accepting comma-separated lists.

    Raises:
        ConfigurationError: On an unsupported language name
    """
    languages: list[Language] = []
    for value in values:
        for name in value.split(","):
            if not name.strip():
                continue
            language = Language.from_cli_name(name)
            if language not in languages:
                languages.append(language)
    if not languages:
        raise ConfigurationError("At least one --language is required")
    return languages


def build_config(args: argparse.Namespace) -> BenchmarkConfig:
    """Combine the optional config file with command line overrides.

    Raises:
        ConfigurationError: If the file or the resulting values are invalid
    """
    config = BenchmarkConfig.load_from_file(args.config) if args.config else BenchmarkConfig()
    return config.merge_with(
        {
            "request_timeout": args.timeout,
            "startup_timeout": args.startup_timeout,
            "max_concurrency": args.concurrency,
            "max_symbols": args.max_symbols,
            "warmup_delay": args.warmup,
            "include_glob": args.include,
            "exclude_glob": args.exclude,
        }
    )


def render_results(results: list[LanguageRunResult], output_format: str) -> str:
    """Render every language's report in the requested format."""
    if output_format == "json":
        payload = [result.report.to_dict() for result in results]
        return json.dumps(payload[0] if len(payload) == 1 else payload, indent=2)
    return "\n\n".join(format_report_table(result.report) for result in results)


async def run_cli(context: RunContext, languages: list[Language]) -> list[LanguageRunResult]:
    """Run the benchmark with SIGINT/SIGTERM mapped to cooperative cancellation."""
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, context.cancel)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Signal handlers not supported for {sig!r}")
    try:
        return await run_many(context, languages)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def main(argv: list[str] | None = None) -> int:
    """CLI entry point; returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging()

    try:
        languages = parse_languages(args.language)
        config = build_config(args)
        language_table = build_language_table(config.servers)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    try:
        context = RunContext.create(Path(args.project_path), config, language_table)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE

    try:
        results = asyncio.run(run_cli(context, languages))
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED

    rendered = render_results(results, args.format)
    print(rendered)
    if args.output:
        try:
            Path(args.output).write_text(rendered + "\n", encoding="utf-8")
        except OSError as e:
            print(f"Error: cannot write report to {args.output}: {e}", file=sys.stderr)
            return EXIT_FAILURE

    return overall_exit_code(results)


if __name__ == "__main__":
    sys.exit(main())
