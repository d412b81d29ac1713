"""Request Builder - Turns an Operation into a concrete HTTP request.

build() is pure: the same Operation and Options always produce an equal
RequestDescriptor. The executor calls it once per attempt so no descriptor
is ever shared between workers.
"""

from __future__ import annotations

import copy
import json
from typing import Any

from api_probe.auth import apply_auth, encode_query_component, set_header
from api_probe.models import (
    BODY_METHODS,
    TOOL_VERSION,
    Operation,
    Options,
    QueryParam,
    RequestDescriptor,
    render_path,
)

BASE_HEADERS: tuple[tuple[str, str], ...] = (
    ("Accept", "application/json"),
    ("User-Agent", f"api-probe/{TOOL_VERSION}"),
)


def query_value(param: QueryParam) -> str:
    """Pick a sample value for a query parameter.

    Priority: declared example, then the first enum value, then a type-based
    default ("test" for strings, "true" for booleans, "1" for numbers and
    anything unspecified).
    """
    if param.example is not None:
        return _stringify(param.example)
    if param.enum:
        return _stringify(param.enum[0])
    param_type = (param.type or "").lower()
    if param_type == "string":
        return "test"
    if param_type == "boolean":
        return "true"
    return "1"


def _stringify(value: Any) -> str:
    """Render an example value the way a JSON-speaking client would."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def build_query(operation: Operation) -> str:
    """Build the query string ("" or "?a=1&b=test") in declaration order."""
    pairs = [
        f"{encode_query_component(p.name)}={encode_query_component(query_value(p))}"
        for p in operation.query_params
        if p.location == "query"
    ]
    if not pairs:
        return ""
    return "?" + "&".join(pairs)


def build_body(operation: Operation) -> Any:
    """Body for POST/PUT/PATCH (example or {}); None for other methods."""
    if operation.method not in BODY_METHODS:
        return None
    if operation.request_body_example is None:
        return {}
    return copy.deepcopy(operation.request_body_example)


def build(operation: Operation, options: Options) -> RequestDescriptor:
    """Build the request for one attempt at an operation.

    Header layers, later overriding earlier: base headers, auth headers,
    custom headers in configured order.
    """
    body = build_body(operation)

    headers: dict[str, str] = {}
    for name, value in BASE_HEADERS:
        set_header(headers, name, value)
    if body is not None:
        set_header(headers, "Content-Type", "application/json")

    query = apply_auth(options.auth, headers, build_query(operation))

    for name, value in options.custom_headers:
        set_header(headers, name, value)

    return RequestDescriptor(
        method=operation.method,
        url=f"{options.base_url}{render_path(operation.path)}{query}",
        headers=headers,
        body=body,
    )
