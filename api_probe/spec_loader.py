"""Spec Loader - Reads an OpenAPI 3.x document into immutable Operations.

The raw document is inspected here and nowhere else: everything downstream
works on Operation models. Only the parts the request builder needs are
extracted (method, path, query parameters, JSON body example).
"""

from __future__ import annotations

import datetime
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from api_probe.models import DeclaredResponse, HttpMethod, Operation, QueryParam

logger = logging.getLogger(__name__)

_HTTP_METHODS = {m.value.lower() for m in HttpMethod}


class SpecLoadError(Exception):
    """Raised when a spec cannot be read, parsed or normalized."""


@dataclass
class LoadedSpec:
    """A parsed spec reduced to what a run needs."""

    path: str
    title: str
    version: str
    operations: list[Operation] = field(default_factory=list)


def load_spec(spec_path: Path) -> LoadedSpec:
    """Load and normalize an OpenAPI document.

    Args:
        spec_path: Path to a YAML (.yaml/.yml) or JSON document.

    Raises:
        SpecLoadError: If the file is missing, unparsable, or lacks the
            openapi, info or paths sections.
    """
    try:
        with open(spec_path, "r", encoding="utf-8") as f:
            if spec_path.suffix.lower() == ".json":
                raw = json.load(f)
            else:
                raw = yaml.safe_load(f)
    except FileNotFoundError:
        raise SpecLoadError(f"Spec file not found: {spec_path}")
    except OSError as e:
        raise SpecLoadError(f"Cannot read spec file {spec_path}: {e}") from e
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise SpecLoadError(f"Failed to parse spec: {e}") from e

    return load_spec_document(raw, str(spec_path))


def load_spec_document(raw: Any, path: str = "") -> LoadedSpec:
    """Validate the top-level structure and walk the operations."""
    if not isinstance(raw, dict):
        raise SpecLoadError("Spec must be a mapping at the top level")

    missing = [key for key in ("openapi", "info", "paths") if key not in raw]
    if missing:
        raise SpecLoadError(f"Spec is missing required field(s): {', '.join(missing)}")
    if not isinstance(raw["info"], dict):
        raise SpecLoadError("Spec 'info' must be a mapping")
    if not isinstance(raw["paths"], dict):
        raise SpecLoadError("Spec 'paths' must be a mapping")

    operations = walk_operations(raw)
    logger.debug("Loaded %d operations from %s", len(operations), path or "<document>")
    return LoadedSpec(
        path=path,
        title=str(raw["info"].get("title") or ""),
        version=str(raw["info"].get("version") or ""),
        operations=operations,
    )


def walk_operations(spec: dict[str, Any]) -> list[Operation]:
    """Turn the paths section into Operations in declaration order.

    Path-level parameters apply to every operation under the path; an
    operation-level parameter with the same name and location replaces it.
    """
    operations: list[Operation] = []
    for path, path_item in spec.get("paths", {}).items():
        if not isinstance(path_item, dict):
            continue
        shared = _resolve_parameters(spec, path_item.get("parameters"))

        for method, raw_op in path_item.items():
            if method.lower() not in _HTTP_METHODS or not isinstance(raw_op, dict):
                continue
            params = _merge_parameters(shared, _resolve_parameters(spec, raw_op.get("parameters")))
            try:
                operations.append(
                    Operation(
                        method=method,
                        path=str(path),
                        query_params=tuple(_query_param(p) for p in params if p.get("in") == "query"),
                        request_body_example=_body_example(spec, raw_op.get("requestBody")),
                        operation_id=raw_op.get("operationId"),
                        summary=raw_op.get("summary"),
                        responses=_declared_responses(spec, raw_op.get("responses")),
                    )
                )
            except ValidationError as e:
                raise SpecLoadError(f"Invalid operation {method.upper()} {path}: {e}") from e
    return operations


def _resolve_ref(spec: dict[str, Any], node: Any) -> Any:
    """Follow a local "#/..." $ref. Unresolvable references yield None."""
    seen: set[str] = set()
    while isinstance(node, dict) and "$ref" in node:
        ref = node["$ref"]
        if not isinstance(ref, str) or not ref.startswith("#/") or ref in seen:
            logger.warning("Ignoring unresolvable reference %r", ref)
            return None
        seen.add(ref)
        target: Any = spec
        for part in ref[2:].split("/"):
            part = part.replace("~1", "/").replace("~0", "~")
            if not isinstance(target, dict) or part not in target:
                logger.warning("Ignoring unresolvable reference %r", ref)
                return None
            target = target[part]
        node = target
    return node


def _resolve_parameters(spec: dict[str, Any], raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    resolved = []
    for item in raw:
        param = _resolve_ref(spec, item)
        if isinstance(param, dict) and param.get("name"):
            resolved.append(param)
    return resolved


def _merge_parameters(
    shared: list[dict[str, Any]], own: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    own_keys = {(p["name"], p.get("in")) for p in own}
    return [p for p in shared if (p["name"], p.get("in")) not in own_keys] + own


def _query_param(param: dict[str, Any]) -> QueryParam:
    schema = param.get("schema") if isinstance(param.get("schema"), dict) else {}
    example = param.get("example")
    if example is None:
        example = _first_example_value(param.get("examples"))
    if example is None:
        example = schema.get("example")
    enum = schema.get("enum") if isinstance(schema.get("enum"), list) else []
    return QueryParam(
        name=str(param["name"]),
        location="query",
        type=schema.get("type"),
        example=_json_safe(example),
        enum=tuple(_json_safe(v) for v in enum if v is not None),
    )


def _first_example_value(examples: Any) -> Any:
    if not isinstance(examples, dict):
        return None
    for example in examples.values():
        if isinstance(example, dict) and "value" in example:
            return example["value"]
    return None


def _body_example(spec: dict[str, Any], raw_body: Any) -> Any:
    """Pick the application/json example of a requestBody, if any.

    Priority: media type example, first of media type examples, schema example.
    """
    body = _resolve_ref(spec, raw_body)
    if not isinstance(body, dict):
        return None
    content = body.get("content")
    if not isinstance(content, dict):
        return None
    media = content.get("application/json")
    if not isinstance(media, dict):
        return None

    example = media.get("example")
    if example is None:
        example = _first_example_value(media.get("examples"))
    if example is None:
        schema = _resolve_ref(spec, media.get("schema"))
        if isinstance(schema, dict):
            example = schema.get("example")
    return _json_safe(example)


def _json_safe(value: Any) -> Any:
    """Convert YAML-only scalars (dates, timestamps, bytes) to JSON values.

    yaml.safe_load turns an unquoted 2024-01-01 into a datetime.date, which
    the request body encoder cannot serialize.
    """
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _declared_responses(spec: dict[str, Any], raw: Any) -> tuple[DeclaredResponse, ...]:
    """Status keys and media types of an operation's responses section."""
    if not isinstance(raw, dict):
        return ()
    declared = []
    for status, raw_response in raw.items():
        response = _resolve_ref(spec, raw_response)
        content = response.get("content") if isinstance(response, dict) else None
        content_types = tuple(str(ct) for ct in content) if isinstance(content, dict) else ()
        declared.append(DeclaredResponse(status=str(status), content_types=content_types))
    return tuple(declared)
