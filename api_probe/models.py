"""Internal data models for api-probe.

All models use Pydantic v2. Operations and outcomes are frozen: they are
created once and shared read-only between worker threads.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any, Literal, Self, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Version of the tool (used in User-Agent and reports)
TOOL_VERSION = "0.1.0"

MAX_RETRIES_LIMIT = 10


# =============================================================================
# Operation Models
# =============================================================================


class HttpMethod(str, Enum):
    """HTTP methods an Operation may declare."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"


# Methods that carry a JSON request body
BODY_METHODS = frozenset({HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH})


class QueryParam(BaseModel):
    """One declared query parameter."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(description="Parameter name")
    location: str = Field(default="query", description="Parameter location (in)")
    type: str | None = Field(default=None, description="Schema type (string, integer, ...)")
    example: Any = Field(default=None, description="Declared example (None if absent)")
    enum: tuple[Any, ...] = Field(default=(), description="Allowed values from schema.enum")


class DeclaredResponse(BaseModel):
    """One entry of an operation's responses section."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    status: str = Field(description="Status key as declared: \"200\", \"2XX\" or \"default\"")
    content_types: tuple[str, ...] = Field(
        default=(), description="Media types declared under content (may be empty)"
    )


class Operation(BaseModel):
    """One HTTP method bound to one path in the specification.

    Created once per run by the spec loader and never mutated.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    method: HttpMethod = Field(description="HTTP method")
    path: str = Field(description="Path template with {name} placeholders")
    query_params: tuple[QueryParam, ...] = Field(
        default=(), description="Query parameters in declaration order"
    )
    request_body_example: Any = Field(
        default=None, description="Declared application/json example body"
    )
    operation_id: str | None = Field(default=None, description="OpenAPI operationId")
    summary: str | None = Field(default=None, description="OpenAPI summary")
    responses: tuple[DeclaredResponse, ...] = Field(
        default=(), description="Declared responses in declaration order"
    )

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.upper()
        return v

    @property
    def key(self) -> str:
        """Unique identity of the operation within one spec."""
        return f"{self.method.value} {self.path}"


# =============================================================================
# Authentication Models
# =============================================================================


class NoAuth(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["none"] = "none"


class BearerAuth(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["bearer"] = "bearer"
    token: str = Field(min_length=1, description="Bearer token")


class ApiKeyHeaderAuth(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["api_key_header"] = "api_key_header"
    key: str = Field(min_length=1, description="API key value")
    header_name: str = Field(default="X-API-Key", description="Header carrying the key")

    @field_validator("header_name")
    @classmethod
    def default_header_name(cls, v: str) -> str:
        return v or "X-API-Key"


class ApiKeyQueryAuth(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["api_key_query"] = "api_key_query"
    key: str = Field(min_length=1, description="API key value")
    query_name: str = Field(default="api_key", min_length=1, description="Query parameter name")


class BasicAuth(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["basic"] = "basic"
    username: str = Field(min_length=1, description="Username")
    password: str = Field(default="", description="Password")


AuthConfig = Annotated[
    Union[NoAuth, BearerAuth, ApiKeyHeaderAuth, ApiKeyQueryAuth, BasicAuth],
    Field(discriminator="type"),
]


# =============================================================================
# Run Configuration
# =============================================================================


class Options(BaseModel):
    """Run configuration. Validated before any request is sent."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    base_url: str = Field(min_length=1, description="Base URL of the API under test")
    timeout_ms: int = Field(default=10_000, gt=0, description="Per-request timeout")
    max_retries: int = Field(
        default=3, ge=0, le=MAX_RETRIES_LIMIT, description="Retries after the first attempt"
    )
    retry_delay_ms: int = Field(default=1000, ge=0, description="Base backoff delay")
    max_concurrency: int = Field(default=0, ge=0, description="Worker pool size (0 = auto)")
    method_filter: frozenset[HttpMethod] | None = Field(
        default=None, description="Only run these methods"
    )
    path_filter: str | None = Field(default=None, description="Path substring or glob")
    auth: AuthConfig = Field(default_factory=NoAuth, description="Authentication variant")
    custom_headers: tuple[tuple[str, str], ...] = Field(
        default=(), description="Ordered (name, value) pairs; later entries win"
    )
    verbose: bool = Field(default=False, description="Capture request/response headers")
    run_timeout_ms: int | None = Field(
        default=None, gt=0, description="Run-wide deadline; remaining operations are skipped"
    )

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("base_url must not be empty")
        return v.rstrip("/")

    @field_validator("method_filter", mode="before")
    @classmethod
    def normalize_method_filter(cls, v: Any) -> Any:
        if v is None:
            return None
        methods = [m.upper() if isinstance(m, str) else m for m in v]
        if not methods:
            return None
        return frozenset(methods)

    @field_validator("path_filter")
    @classmethod
    def empty_path_filter_is_none(cls, v: str | None) -> str | None:
        return v or None

    @field_validator("custom_headers", mode="before")
    @classmethod
    def headers_from_mapping(cls, v: Any) -> Any:
        # Accept a mapping as well as a list of pairs (config files use mappings)
        if isinstance(v, dict):
            return tuple(v.items())
        return v

    @model_validator(mode="after")
    def check_header_names(self) -> Self:
        for name, _ in self.custom_headers:
            if not name or not name.strip():
                raise ValueError("custom header names must not be empty")
        return self


# =============================================================================
# Request / Outcome Models
# =============================================================================


class RequestDescriptor(BaseModel):
    """A fully resolved HTTP request, built fresh for every attempt."""

    model_config = ConfigDict(extra="forbid")

    method: HttpMethod = Field(description="HTTP method")
    url: str = Field(description="Absolute URL including query string")
    headers: dict[str, str] = Field(default_factory=dict, description="Request headers")
    body: Any = Field(default=None, description="JSON body (None = no body)")


_PLACEHOLDER = re.compile(r"\{[^}]+\}")


def render_path(path: str) -> str:
    """Replace every {identifier} placeholder with the literal "1"."""
    return _PLACEHOLDER.sub("1", path)


class TestOutcome(BaseModel):
    """Recorded result of one operation's concluding attempt."""

    __test__ = False  # not a pytest test class

    model_config = ConfigDict(extra="forbid", frozen=True)

    operation: Operation = Field(description="The operation this outcome belongs to")
    status: int | None = Field(default=None, description="HTTP status (None if no response)")
    success: bool = Field(description="Whether status was 2xx")
    skipped: bool = Field(default=False, description="Never attempted (run cancelled)")
    message: str = Field(
        description="OK (possibly annotated), HTTP <status> <reason>, or failure category"
    )
    duration_ms: float = Field(default=0.0, ge=0, description="Duration of the concluding attempt")
    attempt: int = Field(default=0, ge=0, description="Number of attempts made")
    timestamp: str = Field(description="ISO 8601 time the concluding attempt started")
    request_headers: dict[str, str] | None = Field(default=None, description="Verbose only")
    response_headers: dict[str, str] | None = Field(default=None, description="Verbose only")

    @property
    def endpoint(self) -> str:
        return render_path(self.operation.path)


# =============================================================================
# Run Result Models
# =============================================================================


class RunStats(BaseModel):
    """Aggregate counts and timing for a run."""

    model_config = ConfigDict(extra="forbid")

    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    min_ms: float = 0.0
    avg_ms: float = 0.0
    max_ms: float = 0.0
    total_ms: float = 0.0

    @property
    def pass_rate(self) -> float:
        """Percentage of passed outcomes (0.0 for an empty run)."""
        if self.total == 0:
            return 0.0
        return self.passed / self.total * 100


class RunResult(BaseModel):
    """One completed (or interrupted) run. Read-only once built."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    results: tuple[TestOutcome, ...] = Field(description="Outcomes in declaration order")
    stats: RunStats = Field(description="Aggregate statistics")
    spec_title: str = Field(default="", description="info.title of the spec")
    spec_path: str = Field(default="", description="Path the spec was loaded from")
    base_url: str = Field(description="Base URL the run targeted")
    started_at: str = Field(description="ISO 8601 run start time")
    finished_at: str | None = Field(default=None, description="ISO 8601 run end time")
    interrupted: bool = Field(default=False, description="Run was cancelled or timed out")

    @property
    def failed(self) -> bool:
        """A run fails iff at least one outcome failed."""
        return self.stats.failed > 0


# =============================================================================
# History Models
# =============================================================================


class HistoryEntry(BaseModel):
    """One recorded run in the persisted history."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(description="Unique entry id")
    timestamp: str = Field(description="ISO 8601 time the entry was recorded")
    spec_path: str = Field(default="", description="Spec path of the run")
    base_url: str = Field(description="Base URL of the run")
    stats: RunStats = Field(description="Stats snapshot")
    operations: list[Operation] = Field(
        default_factory=list, description="Operations run (for replay)"
    )
    options: Options | None = Field(default=None, description="Options snapshot (for replay)")
    result: RunResult | None = Field(default=None, description="Full result, if kept")


class HistoryFile(BaseModel):
    """On-disk history document. Entries are most recent first."""

    model_config = ConfigDict(extra="forbid")

    entries: list[HistoryEntry] = Field(default_factory=list)
