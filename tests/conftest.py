"""Pytest configuration and fixtures for api-probe tests.

This file provides:
- PortReservation: Holds a local port so nothing is listening on it
- TrickleServer: Local HTTP server that sends its body one byte at a time
- Factories: make_operation, make_outcome, make_options, make_result
- Fixtures: Sample spec documents and an isolated config directory
"""

from __future__ import annotations

import socket
import threading
from pathlib import Path
from typing import Any

import httpx
import pytest

from api_probe.aggregator import aggregate
from api_probe.models import (
    DeclaredResponse,
    Operation,
    Options,
    QueryParam,
    RunResult,
    TestOutcome,
)

FIXED_TIMESTAMP = "2024-05-01T12:00:00+00:00"

PETSTORE_YAML = """\
openapi: 3.0.3
info:
  title: Pet Store
  version: 1.0.0
paths:
  /pets:
    get:
      operationId: listPets
      parameters:
        - name: limit
          in: query
          schema:
            type: integer
        - name: tag
          in: query
          schema:
            type: string
    post:
      operationId: createPet
      requestBody:
        content:
          application/json:
            example:
              name: Rex
  /pets/{petId}:
    parameters:
      - name: petId
        in: path
        required: true
        schema:
          type: string
    get:
      operationId: getPet
    delete:
      operationId: deletePet
"""


def make_operation(
    method: str = "GET",
    path: str = "/items",
    query_params: list[QueryParam] | None = None,
    body: Any = None,
    operation_id: str | None = None,
    responses: dict[str, list[str]] | None = None,
) -> Operation:
    """Create an Operation for testing.

    Prefer this over constructing Operation directly - it provides sensible
    defaults and documents which fields are typically varied in tests.
    """
    return Operation(
        method=method,
        path=path,
        query_params=tuple(query_params or ()),
        request_body_example=body,
        operation_id=operation_id,
        responses=tuple(
            DeclaredResponse(status=status, content_types=tuple(types))
            for status, types in (responses or {}).items()
        ),
    )


def make_options(base_url: str = "http://api.test", **overrides: Any) -> Options:
    """Create Options with test-friendly defaults (no backoff delay)."""
    values: dict[str, Any] = {"base_url": base_url, "retry_delay_ms": 0, "max_concurrency": 2}
    values.update(overrides)
    return Options(**values)


def make_outcome(
    operation: Operation | None = None,
    status: int | None = 200,
    success: bool | None = None,
    message: str | None = None,
    duration_ms: float = 10.0,
    attempt: int = 1,
    skipped: bool = False,
) -> TestOutcome:
    """Create a TestOutcome; success and message follow the status by default."""
    if success is None:
        success = status is not None and 200 <= status < 300
    if message is None:
        message = "OK" if success else f"HTTP {status}"
    return TestOutcome(
        operation=operation or make_operation(),
        status=status,
        success=success,
        skipped=skipped,
        message=message,
        duration_ms=duration_ms,
        attempt=attempt,
        timestamp=FIXED_TIMESTAMP,
    )


def make_result(
    outcomes: list[TestOutcome],
    base_url: str = "http://api.test",
    spec_title: str = "Sample API",
    spec_path: str = "openapi.yaml",
) -> RunResult:
    """Aggregate outcomes into a RunResult with fixed timestamps."""
    return aggregate(
        [o.operation for o in outcomes],
        outcomes,
        base_url=base_url,
        started_at=FIXED_TIMESTAMP,
        finished_at=FIXED_TIMESTAMP,
        spec_title=spec_title,
        spec_path=spec_path,
    )


def status_transport(statuses: dict[str, int], default: int = 200) -> httpx.MockTransport:
    """MockTransport answering by "METHOD /path" with a fixed status."""

    def handler(request: httpx.Request) -> httpx.Response:
        key = f"{request.method} {request.url.path}"
        return httpx.Response(statuses.get(key, default), json={})

    return httpx.MockTransport(handler)


class PortReservation:
    """Holds a bound (but not listening) socket on a local port.

    Connecting to the port is refused for as long as the reservation is held,
    which makes it a reliable target for connection-refused scenarios.

    Usage:
        with PortReservation() as reservation:
            url = f"http://127.0.0.1:{reservation.port}"
    """

    def __init__(self) -> None:
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.bind(("127.0.0.1", 0))  # Port 0 = OS assigns ephemeral port
        self._port = self._socket.getsockname()[1]
        self._released = False

    @property
    def port(self) -> int:
        return self._port

    def release(self) -> int:
        """Release the socket. Safe to call multiple times."""
        if not self._released:
            self._socket.close()
            self._released = True
        return self._port

    def __enter__(self) -> PortReservation:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()


class TrickleServer:
    """Serves one HTTP response whose body arrives one byte per interval.

    Every byte lands well inside a per-read timeout, so only a deadline on
    the whole attempt can cut the response off.

    Usage:
        with TrickleServer(body=b"abcdefgh", interval=0.1) as server:
            url = server.url
    """

    def __init__(self, body: bytes = b"abcdefgh", interval: float = 0.1) -> None:
        self._body = body
        self._interval = interval
        self._stop = threading.Event()
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.bind(("127.0.0.1", 0))
        self._socket.listen(1)
        self._socket.settimeout(5.0)
        self._thread = threading.Thread(target=self._serve, daemon=True)

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self._socket.getsockname()[1]}"

    def _serve(self) -> None:
        try:
            conn, _ = self._socket.accept()
        except OSError:
            return
        with conn:
            try:
                conn.recv(65536)
                conn.sendall(
                    b"HTTP/1.1 200 OK\r\n"
                    b"Content-Type: application/json\r\n"
                    + f"Content-Length: {len(self._body)}\r\n\r\n".encode("ascii")
                )
                for byte in self._body:
                    if self._stop.wait(self._interval):
                        return
                    conn.sendall(bytes([byte]))
            except OSError:
                # Client gave up and closed the connection
                return

    def __enter__(self) -> TrickleServer:
        self._thread.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self._stop.set()
        self._socket.close()
        self._thread.join(timeout=5.0)


@pytest.fixture
def closed_port() -> Any:
    with PortReservation() as reservation:
        yield reservation.port


@pytest.fixture
def config_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point API_PROBE_CONFIG_DIR at an empty temp directory."""
    directory = tmp_path / "config"
    monkeypatch.setenv("API_PROBE_CONFIG_DIR", str(directory))
    return directory


@pytest.fixture
def petstore_spec(tmp_path: Path) -> Path:
    path = tmp_path / "petstore.yaml"
    path.write_text(PETSTORE_YAML, encoding="utf-8")
    return path


@pytest.fixture
def recording_transport() -> tuple[httpx.MockTransport, list[httpx.Request]]:
    """MockTransport returning 200 and recording every request it sees."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    return httpx.MockTransport(handler), seen

