"""Executor - Sends one request per operation and records outcomes.

A fixed-size pool of worker threads pulls operations from a shared queue.
Each worker takes an operation through all of its attempts (see retry.py)
before pulling the next one, so the number of in-flight HTTP requests never
exceeds the pool size.

Usage:
    with Executor(options) as executor:
        result = executor.run(operations, spec_title="Pet Store")
"""

from __future__ import annotations

import fnmatch
import json
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import replace
from threading import Lock
from typing import Any, Callable, Sequence

import httpx

from api_probe.aggregator import aggregate, now_iso, skipped_outcome
from api_probe.models import (
    ApiKeyHeaderAuth,
    Operation,
    Options,
    RequestDescriptor,
    RunResult,
    TestOutcome,
)
from api_probe.request_builder import build
from api_probe.response_check import check_response
from api_probe.retry import (
    AttemptResult,
    AttemptState,
    RetryPolicy,
    classify_exception,
    classify_status,
)

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
_SENSITIVE_HEADERS = frozenset({"authorization", "proxy-authorization", "cookie"})


class ExecutorError(Exception):
    """Base class for executor errors."""


class InvalidRequestError(ExecutorError):
    """The request for an operation cannot be sent as built."""


def encode_body(body: Any) -> bytes | None:
    """Serialize a JSON request body.

    Raises:
        InvalidRequestError: If the body holds values JSON cannot represent.
    """
    if body is None:
        return None
    try:
        return json.dumps(body).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise InvalidRequestError(f"body is not JSON serializable ({e})") from e


def resolve_pool_size(max_concurrency: int) -> int:
    """Worker count: the configured value, or the CPU count when 0."""
    if max_concurrency > 0:
        return max_concurrency
    return max(1, os.cpu_count() or 1)


def path_matches(path: str, pattern: str) -> bool:
    """Case-insensitive glob match if pattern has wildcards, else substring."""
    path_lower = path.lower()
    pattern_lower = pattern.lower()
    if any(ch in pattern for ch in "*?["):
        return fnmatch.fnmatchcase(path_lower, pattern_lower)
    return pattern_lower in path_lower


def filter_operations(operations: Sequence[Operation], options: Options) -> list[Operation]:
    """Apply method_filter and path_filter, preserving declaration order."""
    selected = []
    for operation in operations:
        if options.method_filter is not None and operation.method not in options.method_filter:
            continue
        if options.path_filter and not path_matches(operation.path, options.path_filter):
            continue
        selected.append(operation)
    return selected


class Executor:
    """Runs operations against the API under test with bounded concurrency.

    An Executor is good for one run: once cancelled it stays cancelled.
    """

    def __init__(
        self,
        options: Options,
        transport: httpx.BaseTransport | None = None,
        on_outcome: Callable[[TestOutcome], None] | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            options: Validated run options.
            transport: Optional httpx transport (tests pass httpx.MockTransport).
            on_outcome: Called from worker threads as each outcome completes.
        """
        self._options = options
        self._policy = RetryPolicy(
            max_retries=options.max_retries,
            base_delay_ms=options.retry_delay_ms,
        )
        self._pool_size = resolve_pool_size(options.max_concurrency)
        self._on_outcome = on_outcome

        self._cancel_event = threading.Event()
        self._lock = Lock()
        self._in_flight = 0
        self._peak_in_flight = 0

        self._client = httpx.Client(**self._build_client_kwargs(transport))

    def __enter__(self) -> "Executor":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    @property
    def pool_size(self) -> int:
        return self._pool_size

    @property
    def peak_in_flight(self) -> int:
        """Highest number of simultaneous in-flight requests seen so far."""
        with self._lock:
            return self._peak_in_flight

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Stop starting new attempts. In-flight requests run to completion."""
        self._cancel_event.set()

    def _build_client_kwargs(self, transport: httpx.BaseTransport | None) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "timeout": self._options.timeout_ms / 1000.0,
            "follow_redirects": True,
            "limits": httpx.Limits(
                max_connections=self._pool_size,
                max_keepalive_connections=self._pool_size,
            ),
        }
        if transport is not None:
            kwargs["transport"] = transport
        return kwargs

    def run(
        self,
        operations: Sequence[Operation],
        spec_title: str = "",
        spec_path: str = "",
    ) -> RunResult:
        """Filter, execute and aggregate a run.

        Args:
            operations: All operations from the spec, in declaration order.
            spec_title: info.title of the spec (for reports).
            spec_path: Where the spec was loaded from (for reports).

        Returns:
            RunResult ordered by declaration, including skipped outcomes if
            the run was cancelled.
        """
        selected = filter_operations(operations, self._options)
        started_at = now_iso()
        logger.info(
            "Running %d of %d operations against %s (workers=%d)",
            len(selected), len(operations), self._options.base_url, self._pool_size,
        )
        outcomes = self.execute(selected)
        return aggregate(
            selected,
            outcomes,
            base_url=self._options.base_url,
            started_at=started_at,
            spec_title=spec_title,
            spec_path=spec_path,
            interrupted=self.cancelled,
        )

    def execute(self, operations: Sequence[Operation]) -> list[TestOutcome]:
        """Run every operation and return outcomes in completion order.

        A KeyboardInterrupt cancels the run: workers stop starting attempts,
        in-flight requests finish, and the outcomes gathered so far (plus
        skipped outcomes for the rest) are returned.
        """
        outcomes: list[TestOutcome] = []

        def work(operation: Operation) -> None:
            outcome = self._run_operation(operation)
            with self._lock:
                outcomes.append(outcome)
            if self._on_outcome is not None:
                try:
                    self._on_outcome(outcome)
                except Exception:
                    logger.exception("Outcome callback failed for %s", operation.key)

        timer: threading.Timer | None = None
        if self._options.run_timeout_ms is not None:
            timer = threading.Timer(self._options.run_timeout_ms / 1000.0, self._on_deadline)
            timer.daemon = True
            timer.start()

        pool = ThreadPoolExecutor(max_workers=self._pool_size, thread_name_prefix="api-probe")
        try:
            futures = [pool.submit(work, operation) for operation in operations]
            try:
                wait(futures)
            except KeyboardInterrupt:
                logger.warning("Interrupted; waiting for in-flight requests to finish")
                self.cancel()
                wait(futures)
            for future in futures:
                # Operation failures are outcomes; only internal errors get here
                future.result()
        finally:
            pool.shutdown(wait=True)
            if timer is not None:
                timer.cancel()

        return outcomes

    def _on_deadline(self) -> None:
        logger.warning(
            "Run timeout of %dms reached; skipping remaining operations",
            self._options.run_timeout_ms,
        )
        self.cancel()

    def _run_operation(self, operation: Operation) -> TestOutcome:
        """Take one operation through the attempt state machine."""
        if self._cancel_event.is_set():
            return skipped_outcome(operation)

        attempt = 1
        result, outcome = self._attempt(operation, attempt)
        state = self._policy.next_state(attempt, result)

        while state is AttemptState.RETRY:
            delay = self._policy.delay_before(attempt + 1)
            logger.debug(
                "Retrying %s in %.0fms (attempt %d/%d): %s",
                operation.key, delay * 1000, attempt + 1,
                self._policy.max_attempts, outcome.message,
            )
            # Event.wait returns True as soon as the run is cancelled
            if self._cancel_event.wait(delay):
                break
            attempt += 1
            result, outcome = self._attempt(operation, attempt)
            state = self._policy.next_state(attempt, result)

        if state is AttemptState.TERMINAL and attempt > 1:
            logger.info("%s failed after %d attempts: %s", operation.key, attempt, outcome.message)
        return outcome

    def _attempt(self, operation: Operation, attempt: int) -> tuple[AttemptResult, TestOutcome]:
        """Send one attempt and classify it.

        Anything that goes wrong while building, encoding or sending the
        request concludes this operation only; the rest of the run goes on.
        """
        timestamp = now_iso()
        request: RequestDescriptor | None = None
        response: httpx.Response | None = None

        start_time = time.perf_counter()
        try:
            request = build(operation, self._options)
            content = encode_body(request.body)
            logger.debug("%s %s (attempt %d)", request.method.value, request.url, attempt)
            response = self._send(request, content)
            result = self._classify_response(operation, response)
        except InvalidRequestError as e:
            result = AttemptResult(status=None, message=f"Invalid request: {e}")
        except (httpx.RequestError, httpx.InvalidURL, UnicodeEncodeError) as e:
            result = classify_exception(e)
        except Exception as e:
            logger.warning("Unexpected error testing %s: %r", operation.key, e)
            result = classify_exception(e)
        duration_ms = (time.perf_counter() - start_time) * 1000

        request_headers = None
        response_headers = None
        if self._options.verbose:
            if response is not None:
                request_headers = self._redact_headers(dict(response.request.headers.items()))
                response_headers = dict(response.headers.items())
            elif request is not None:
                request_headers = self._redact_headers(dict(request.headers))

        outcome = TestOutcome(
            operation=operation,
            status=result.status,
            success=result.success,
            message=result.message,
            duration_ms=max(duration_ms, 0.0),
            attempt=attempt,
            timestamp=timestamp,
            request_headers=request_headers,
            response_headers=response_headers,
        )
        return result, outcome

    def _classify_response(self, operation: Operation, response: httpx.Response) -> AttemptResult:
        """Classify the status, annotating successes with the declared-response check."""
        result = classify_status(response.status_code, response.reason_phrase)
        if not result.success:
            return result
        check = check_response(operation, response.status_code, response.headers.get("content-type"))
        if check is None:
            return result
        return replace(result, message=f"{result.message} ({check.note})")

    def _send(self, request: RequestDescriptor, content: bytes | None) -> httpx.Response:
        """Dispatch one request and drain its body within timeout_ms overall.

        httpx applies its timeout per connect/read/write phase, so a server
        that keeps trickling bytes is cut off here instead.
        """
        timeout_ms = self._options.timeout_ms
        deadline = time.perf_counter() + timeout_ms / 1000.0

        with self._lock:
            self._in_flight += 1
            self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
        try:
            with self._client.stream(
                method=request.method.value,
                url=request.url,
                headers=request.headers,
                content=content,
            ) as response:
                for _ in response.iter_bytes():
                    if time.perf_counter() > deadline:
                        break
                if time.perf_counter() > deadline:
                    raise httpx.ReadTimeout(
                        f"Response not complete within {timeout_ms}ms",
                        request=response.request,
                    )
            return response
        finally:
            with self._lock:
                self._in_flight -= 1

    def _redact_headers(self, headers: dict[str, str]) -> dict[str, str]:
        """Mask credentials in captured request headers."""
        sensitive = set(_SENSITIVE_HEADERS)
        if isinstance(self._options.auth, ApiKeyHeaderAuth):
            sensitive.add(self._options.auth.header_name.lower())
        return {k: (REDACTED if k.lower() in sensitive else v) for k, v in headers.items()}


def run_tests(
    operations: Sequence[Operation],
    options: Options,
    spec_title: str = "",
    spec_path: str = "",
    transport: httpx.BaseTransport | None = None,
    on_outcome: Callable[[TestOutcome], None] | None = None,
) -> RunResult:
    """Run all (filtered) operations and return the aggregated result."""
    with Executor(options, transport=transport, on_outcome=on_outcome) as executor:
        return executor.run(operations, spec_title=spec_title, spec_path=spec_path)
