"""CLI entry point for api-probe.

Handles argument parsing and dispatches to test, history or replay mode.

Exit codes: 0 when every outcome passed, 1 when any outcome failed (or the
run was interrupted), 2 on configuration or spec-load errors.
"""

from __future__ import annotations

import argparse
import logging
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from api_probe.models import Operation, Options, RunResult, TestOutcome

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ProgressReporter:
    """Reports progress every few seconds in a background thread.

    Usage:
        reporter = ProgressReporter(total=100)
        reporter.start()
        executor = Executor(options, on_outcome=reporter.on_outcome)
        ...
        reporter.stop()
    """

    def __init__(self, total: int, interval: float = 5.0) -> None:
        self._total = total
        self._interval = interval
        self._completed = 0
        self._failed = 0
        self._start_time = 0.0
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_print_len = 0

    def start(self) -> None:
        self._start_time = time.monotonic()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the reporter and clear the progress line."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
        if self._last_print_len > 0:
            sys.stderr.write("\r" + " " * self._last_print_len + "\r")
            sys.stderr.flush()

    def on_outcome(self, outcome: "TestOutcome") -> None:
        """Executor callback; runs on worker threads."""
        with self._lock:
            self._completed += 1
            if not outcome.success:
                self._failed += 1

    def _run(self) -> None:
        while not self._stop_event.wait(timeout=self._interval):
            self._print_progress()

    def _print_progress(self) -> None:
        with self._lock:
            completed = self._completed
            failed = self._failed

        elapsed = time.monotonic() - self._start_time
        percent = (completed / self._total) * 100 if self._total else 100.0
        line = (
            f"\r[Progress] {completed}/{self._total} operations ({percent:.1f}%) | "
            f"{failed} failed | {elapsed:.0f}s elapsed"
        )
        if len(line) < self._last_print_len:
            line = line + " " * (self._last_print_len - len(line))
        self._last_print_len = len(line)

        sys.stderr.write(line)
        sys.stderr.flush()


# =============================================================================
# Argument types
# =============================================================================


def positive_int(value: str) -> int:
    """Parse and validate a positive integer value.

    Raises:
        argparse.ArgumentTypeError: If value is not a positive integer.
    """
    try:
        result = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid integer '{value}'.")
    if result <= 0:
        raise argparse.ArgumentTypeError(f"Value must be positive, got {result}.")
    return result


def non_negative_int(value: str) -> int:
    try:
        result = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid integer '{value}'.")
    if result < 0:
        raise argparse.ArgumentTypeError(f"Value must not be negative, got {result}.")
    return result


def parse_header(value: str) -> tuple[str, str]:
    """Parse NAME:VALUE format.

    Raises:
        argparse.ArgumentTypeError: If format is invalid.
    """
    name, sep, header_value = value.partition(":")
    if not sep:
        raise argparse.ArgumentTypeError(
            f"Invalid header '{value}'. Expected NAME:VALUE (e.g., 'X-Tenant:acme')"
        )
    name = name.strip()
    if not name:
        raise argparse.ArgumentTypeError(f"Invalid header '{value}'. Name cannot be empty.")
    return (name, header_value.strip())


# =============================================================================
# Parsed arguments
# =============================================================================


@dataclass
class TestArgs:
    """Parsed arguments for test mode."""

    __test__ = False  # not a pytest test class

    spec: Path
    base_url: str | None
    timeout: int | None
    max_retries: int | None
    retry_delay: int | None
    concurrency: int | None
    methods: list[str]
    path: str | None
    bearer: str | None
    api_key: str | None
    api_key_header: str | None
    api_key_query: str | None
    basic: str | None
    headers: list[tuple[str, str]]
    verbose: bool
    run_timeout: int | None
    export: Path | None
    format: str | None
    config: Path | None
    no_history: bool
    debug: bool = False


@dataclass
class HistoryArgs:
    """Parsed arguments for history mode."""

    limit: int | None
    clear: bool = False
    debug: bool = False


@dataclass
class ReplayArgs:
    """Parsed arguments for replay mode."""

    entry_id: str
    export: Path | None
    format: str | None
    no_history: bool
    debug: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with test, history and replay subcommands."""
    from api_probe.exporters import ExportFormat
    from api_probe.models import HttpMethod

    parser = argparse.ArgumentParser(
        prog="api-probe",
        description="Exercise a live HTTP API against its OpenAPI 3.x specification.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True, help="Mode")
    formats = [f.value for f in ExportFormat]

    # Test subcommand
    test_parser = subparsers.add_parser(
        "test",
        help="Send one request per operation in the spec and report the results",
    )
    test_parser.add_argument(
        "--spec", type=Path, required=True,
        help="Path to OpenAPI specification file (YAML or JSON)",
    )
    test_parser.add_argument(
        "--base-url", type=str, default=None,
        help="Base URL of the API under test (or base_url in the config file)",
    )
    test_parser.add_argument(
        "--timeout", type=positive_int, default=None, metavar="MS",
        help="Per-request timeout in milliseconds (default: 10000)",
    )
    test_parser.add_argument(
        "--max-retries", type=non_negative_int, default=None, metavar="N",
        help="Retries after the first attempt for transient failures (default: 3, max 10)",
    )
    test_parser.add_argument(
        "--retry-delay", type=non_negative_int, default=None, metavar="MS",
        help="Base backoff delay in milliseconds; doubles each retry (default: 1000)",
    )
    test_parser.add_argument(
        "--concurrency", type=non_negative_int, default=None, metavar="N",
        help="Worker pool size; 0 uses the CPU count (default: 0)",
    )
    test_parser.add_argument(
        "--method", type=str.upper, action="append", default=[], dest="methods",
        choices=[m.value for m in HttpMethod], metavar="METHOD",
        help="Only test this HTTP method (can be repeated)",
    )
    test_parser.add_argument(
        "--path", type=str, default=None, metavar="FILTER",
        help="Only test paths containing FILTER (glob patterns like '/users/*' allowed)",
    )
    test_parser.add_argument("--bearer", type=str, default=None, metavar="TOKEN",
                             help="Bearer token authentication")
    test_parser.add_argument("--api-key", type=str, default=None, metavar="KEY",
                             help="API key authentication (sent as X-API-Key by default)")
    test_parser.add_argument("--api-key-header", type=str, default=None, metavar="NAME",
                             help="Send the API key in this header")
    test_parser.add_argument("--api-key-query", type=str, default=None, metavar="NAME",
                             help="Send the API key as this query parameter")
    test_parser.add_argument("--basic", type=str, default=None, metavar="USER:PASS",
                             help="HTTP Basic authentication")
    test_parser.add_argument(
        "--header", type=parse_header, action="append", default=[], dest="headers",
        metavar="NAME:VALUE",
        help="Custom request header (can be repeated; later values win)",
    )
    test_parser.add_argument(
        "--verbose", action="store_true",
        help="Record request and response headers in results and exports",
    )
    test_parser.add_argument(
        "--run-timeout", type=positive_int, default=None, metavar="MS",
        help="Stop starting new requests after this many milliseconds",
    )
    _add_export_arguments(test_parser, formats)
    test_parser.add_argument(
        "--config", type=Path, default=None,
        help="Config file (default: ~/.config/api-probe/config.yaml if present)",
    )
    test_parser.add_argument("--no-history", action="store_true",
                             help="Do not record this run in history")
    test_parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    # History subcommand
    history_parser = subparsers.add_parser("history", help="List recorded runs")
    history_parser.add_argument("--limit", type=positive_int, default=None, metavar="N",
                                help="Show at most N entries")
    history_parser.add_argument("--clear", action="store_true", help="Delete all history")
    history_parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    # Replay subcommand
    replay_parser = subparsers.add_parser(
        "replay", help="Re-run a recorded run with the same operations and options"
    )
    replay_parser.add_argument("entry_id", metavar="ID", help="History entry id")
    _add_export_arguments(replay_parser, formats)
    replay_parser.add_argument("--no-history", action="store_true",
                               help="Do not record the replay in history")
    replay_parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    return parser


def _add_export_arguments(parser: argparse.ArgumentParser, formats: list[str]) -> None:
    parser.add_argument(
        "--export", type=Path, default=None, metavar="PATH",
        help="Write results to PATH (.json, .html or .xml)",
    )
    parser.add_argument(
        "--format", type=str, default=None, choices=formats,
        help="Export format (default: inferred from the --export extension)",
    )


def parse_args(args: list[str] | None = None) -> TestArgs | HistoryArgs | ReplayArgs:
    """Parse command-line arguments and return typed args dataclass.

    Raises:
        SystemExit: If arguments are invalid (argparse behavior).
    """
    parser = build_parser()
    namespace = parser.parse_args(args)

    if getattr(namespace, "format", None) and not getattr(namespace, "export", None):
        parser.error("--format requires --export")

    if namespace.command == "test":
        return TestArgs(
            spec=namespace.spec,
            base_url=namespace.base_url,
            timeout=namespace.timeout,
            max_retries=namespace.max_retries,
            retry_delay=namespace.retry_delay,
            concurrency=namespace.concurrency,
            methods=namespace.methods or [],
            path=namespace.path,
            bearer=namespace.bearer,
            api_key=namespace.api_key,
            api_key_header=namespace.api_key_header,
            api_key_query=namespace.api_key_query,
            basic=namespace.basic,
            headers=namespace.headers or [],
            verbose=namespace.verbose,
            run_timeout=namespace.run_timeout,
            export=namespace.export,
            format=namespace.format,
            config=namespace.config,
            no_history=namespace.no_history,
            debug=namespace.debug,
        )
    elif namespace.command == "history":
        return HistoryArgs(limit=namespace.limit, clear=namespace.clear, debug=namespace.debug)
    elif namespace.command == "replay":
        return ReplayArgs(
            entry_id=namespace.entry_id,
            export=namespace.export,
            format=namespace.format,
            no_history=namespace.no_history,
            debug=namespace.debug,
        )
    else:
        parser.error(f"Unknown command: {namespace.command}")


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    try:
        parsed = parse_args(argv)
        configure_logging(parsed.debug)

        if isinstance(parsed, TestArgs):
            return run_test(parsed)
        elif isinstance(parsed, HistoryArgs):
            return run_history(parsed)
        else:
            return run_replay(parsed)

    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return EXIT_FAILED


# =============================================================================
# Modes
# =============================================================================


def cli_option_values(args: TestArgs) -> dict:
    """Map parsed flags onto Options fields. None means "not given"."""
    return {
        "base_url": args.base_url,
        "timeout_ms": args.timeout,
        "max_retries": args.max_retries,
        "retry_delay_ms": args.retry_delay,
        "max_concurrency": args.concurrency,
        "method_filter": args.methods or None,
        "path_filter": args.path,
        "custom_headers": args.headers or None,
        "verbose": True if args.verbose else None,
        "run_timeout_ms": args.run_timeout,
        "bearer_token": args.bearer,
        "api_key": args.api_key,
        "api_key_header": args.api_key_header,
        "api_key_query": args.api_key_query,
        "basic": args.basic,
    }


def run_test(args: TestArgs) -> int:
    """Run test mode: load the spec, run every operation, report."""
    from api_probe.config_loader import ConfigError, build_options
    from api_probe.spec_loader import SpecLoadError, load_spec

    try:
        options = build_options(cli_option_values(args), config_path=args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        spec = load_spec(args.spec)
    except SpecLoadError as e:
        print(f"Error loading OpenAPI spec: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    return _execute_and_report(
        spec.operations,
        options,
        spec_title=spec.title,
        spec_path=str(args.spec),
        export=args.export,
        export_format=args.format,
        record_history=not args.no_history,
    )


def run_history(args: HistoryArgs) -> int:
    """List recorded runs, most recent first."""
    from api_probe.history import HistoryError, HistoryStore, format_duration

    store = HistoryStore()
    if args.clear:
        try:
            store.clear()
        except HistoryError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_FAILED
        print("History cleared.")
        return EXIT_OK

    entries = store.list(limit=args.limit)
    if not entries:
        print("No recorded runs.")
        return EXIT_OK

    print(f"{'ID':<24} {'TIMESTAMP':<26} {'RESULT':<10} {'TIME':>8}  BASE URL")
    for entry in entries:
        result = f"{entry.stats.passed}/{entry.stats.total}"
        print(
            f"{entry.id:<24} {entry.timestamp[:26]:<26} {result:<10} "
            f"{format_duration(entry.stats.total_ms):>8}  {entry.base_url}"
        )
    return EXIT_OK


def run_replay(args: ReplayArgs) -> int:
    """Re-run a recorded entry with its recorded operations and options."""
    from api_probe.history import HistoryError, HistoryStore

    store = HistoryStore()
    try:
        operations, options = store.replay(args.entry_id)
    except HistoryError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    entry = store.get(args.entry_id)
    spec_path = entry.spec_path if entry is not None else ""
    spec_title = entry.result.spec_title if entry is not None and entry.result else ""
    print(f"Replaying {args.entry_id} against {options.base_url}")

    return _execute_and_report(
        operations,
        options,
        spec_title=spec_title,
        spec_path=spec_path,
        export=args.export,
        export_format=args.format,
        record_history=not args.no_history,
    )


def _execute_and_report(
    operations: Sequence["Operation"],
    options: "Options",
    spec_title: str,
    spec_path: str,
    export: Path | None,
    export_format: str | None,
    record_history: bool,
) -> int:
    from api_probe.exporters import ExportError, write_export
    from api_probe.executor import Executor, filter_operations
    from api_probe.history import HistoryError, HistoryStore, create_entry

    selected = filter_operations(operations, options)
    if not selected:
        print("No operations match the given filters.", file=sys.stderr)

    reporter = ProgressReporter(total=len(selected))
    with Executor(options, on_outcome=reporter.on_outcome) as executor:
        reporter.start()
        try:
            result = executor.run(operations, spec_title=spec_title, spec_path=spec_path)
        finally:
            reporter.stop()

    print_results(result)

    if export is not None:
        try:
            written = write_export(result, export, export_format)
            print(f"Results exported to {written}")
        except ExportError as e:
            print(f"Error: {e}", file=sys.stderr)

    if record_history:
        try:
            entry = create_entry(result, selected, options)
            HistoryStore().append(entry)
            print(f"Recorded as {entry.id}")
        except HistoryError as e:
            print(f"Warning: {e}", file=sys.stderr)

    return EXIT_FAILED if result.failed else EXIT_OK


def print_results(result: "RunResult") -> None:
    """Print one line per outcome followed by the summary."""
    for outcome in result.results:
        if outcome.skipped:
            mark = "-"
        else:
            mark = "✓" if outcome.success else "✗"
        status = outcome.status if outcome.status is not None else "ERR"
        line = (
            f"{mark} {outcome.operation.method.value:<7} {outcome.endpoint:<40} "
            f"{status!s:<4} {outcome.duration_ms:>7.0f}ms"
        )
        if not outcome.success:
            line += f"  {outcome.message}"
            if outcome.attempt > 1:
                line += f" (after {outcome.attempt} attempts)"
        print(line)

    stats = result.stats
    print()
    print("=" * 60)
    print(f"Total: {stats.total}  Passed: {stats.passed}  Failed: {stats.failed}"
          + (f"  Skipped: {stats.skipped}" if stats.skipped else ""))
    print(f"Pass rate: {stats.pass_rate:.1f}%")
    print(f"Timing: min {stats.min_ms:.0f}ms  avg {stats.avg_ms:.0f}ms  "
          f"max {stats.max_ms:.0f}ms  total {stats.total_ms:.0f}ms")
    if result.interrupted:
        print("Run was interrupted before all operations completed.")


if __name__ == "__main__":
    sys.exit(main())
