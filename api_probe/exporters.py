"""Export Formatters - Render a RunResult as JSON, HTML or JUnit XML.

Renderers are pure: they return bytes and read nothing but the RunResult, so
identical results always render to identical output. write_export() is the
only function that touches disk.
"""

from __future__ import annotations

import json
import re
import xml.etree.ElementTree as ET
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from jinja2 import BaseLoader, Environment, select_autoescape

from api_probe.models import TOOL_VERSION, RunResult, TestOutcome


class ExportError(Exception):
    """Raised when an export cannot be written."""


class ExportFormat(str, Enum):
    JSON = "json"
    HTML = "html"
    JUNIT = "junit"


_EXTENSION_FORMATS = {
    ".json": ExportFormat.JSON,
    ".html": ExportFormat.HTML,
    ".htm": ExportFormat.HTML,
    ".xml": ExportFormat.JUNIT,
}


# =============================================================================
# JSON
# =============================================================================


def _json_result(outcome: TestOutcome) -> dict[str, Any]:
    item: dict[str, Any] = {
        "method": outcome.operation.method.value,
        "endpoint": outcome.endpoint,
        "status": outcome.status,
        "success": outcome.success,
        "message": outcome.message,
        "duration": round(outcome.duration_ms, 3),
        "timestamp": outcome.timestamp,
    }
    if outcome.request_headers is not None:
        item["requestHeaders"] = outcome.request_headers
    if outcome.response_headers is not None:
        item["responseHeaders"] = outcome.response_headers
    return item


def render_json(result: RunResult) -> bytes:
    """Render the JSON export (2-space indent, fixed field order)."""
    data = {
        "timestamp": result.started_at,
        "specPath": result.spec_path,
        "baseUrl": result.base_url,
        "totalTests": result.stats.total,
        "passed": result.stats.passed,
        "failed": result.stats.failed,
        "results": [_json_result(o) for o in result.results],
    }
    return (json.dumps(data, indent=2, ensure_ascii=False) + "\n").encode("utf-8")


# =============================================================================
# JUnit XML
# =============================================================================


def _seconds(ms: float) -> str:
    return f"{ms / 1000:.3f}"


def _class_name(base_url: str) -> str:
    """Turn a base URL into a dotted, Java-style class name."""
    name = re.sub(r"^https?://", "", base_url)
    name = name.replace("/", ".").replace(":", ".").replace("-", "_").strip(".")
    return name or "openapi.tests"


def render_junit(result: RunResult) -> bytes:
    """Render a single JUnit <testsuite> with one <testcase> per outcome."""
    stats = result.stats
    suite = ET.Element(
        "testsuite",
        {
            "name": result.spec_title or "OpenAPI Tests",
            "tests": str(stats.total),
            "failures": str(stats.failed - stats.skipped),
            "errors": "0",
            "skipped": str(stats.skipped),
            "time": _seconds(sum(o.duration_ms for o in result.results)),
            "timestamp": result.started_at,
        },
    )
    properties = ET.SubElement(suite, "properties")
    for name, value in (
        ("spec_path", result.spec_path),
        ("base_url", result.base_url),
        ("test_framework", f"api-probe {TOOL_VERSION}"),
    ):
        ET.SubElement(properties, "property", {"name": name, "value": value})

    class_name = _class_name(result.base_url)
    for outcome in result.results:
        case = ET.SubElement(
            suite,
            "testcase",
            {
                "name": f"{outcome.operation.method.value} {outcome.endpoint}",
                "classname": class_name,
                "time": _seconds(outcome.duration_ms),
            },
        )
        if outcome.skipped:
            ET.SubElement(case, "skipped", {"message": outcome.message})
        elif not outcome.success:
            failure = ET.SubElement(
                case,
                "failure",
                {"message": outcome.message, "type": "AssertionFailure"},
            )
            status = outcome.status if outcome.status is not None else "no response"
            failure.text = (
                f"Expected 2xx status code, got {status}\n"
                f"Endpoint: {outcome.endpoint}\n"
                f"Method: {outcome.operation.method.value}\n"
                f"Attempts: {outcome.attempt}"
            )

    ET.indent(suite, space="  ")
    body = ET.tostring(suite, encoding="unicode")
    return ('<?xml version="1.0" encoding="UTF-8"?>\n' + body + "\n").encode("utf-8")


# =============================================================================
# HTML
# =============================================================================

_HTML_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>API Test Results - {{ title }}</title>
<style>
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
         margin: 0; padding: 24px; background: #f4f6fb; color: #222; }
  .container { max-width: 1200px; margin: 0 auto; background: #fff; border-radius: 8px;
               box-shadow: 0 4px 16px rgba(0,0,0,0.08); overflow: hidden; }
  header { background: #3f51b5; color: #fff; padding: 24px 32px; }
  header h1 { margin: 0 0 4px; font-size: 1.6rem; }
  header p { margin: 2px 0; opacity: 0.85; }
  .summary { display: flex; flex-wrap: wrap; gap: 16px; padding: 24px 32px; }
  .card { flex: 1 1 140px; background: #f8f9fc; border-radius: 6px; padding: 12px 16px; }
  .card .label { font-size: 0.8rem; text-transform: uppercase; color: #666; }
  .card .value { font-size: 1.5rem; font-weight: 600; }
  .card.pass .value { color: #2e7d32; }
  .card.fail .value { color: #c62828; }
  table { width: 100%; border-collapse: collapse; }
  th, td { text-align: left; padding: 8px 32px; border-top: 1px solid #eee; font-size: 0.9rem; }
  th { background: #fafafa; }
  tr.success td.status { color: #2e7d32; font-weight: 600; }
  tr.failure td.status { color: #c62828; font-weight: 600; }
  tr.skipped td { color: #999; }
  .method { font-family: monospace; font-weight: 600; }
  footer { padding: 16px 32px; font-size: 0.8rem; color: #888; }
</style>
</head>
<body>
<div class="container">
  <header>
    <h1>{{ title }}</h1>
    <p>Base URL: {{ result.base_url }}</p>
    {% if result.spec_path %}<p>Spec: {{ result.spec_path }}</p>{% endif %}
    <p>Started: {{ result.started_at }}{% if result.interrupted %} (interrupted){% endif %}</p>
  </header>
  <section class="summary">
    <div class="card"><div class="label">Total</div><div class="value">{{ stats.total }}</div></div>
    <div class="card pass"><div class="label">Passed</div><div class="value">{{ stats.passed }}</div></div>
    <div class="card fail"><div class="label">Failed</div><div class="value">{{ stats.failed }}</div></div>
    <div class="card"><div class="label">Pass rate</div><div class="value">{{ "%.1f"|format(stats.pass_rate) }}%</div></div>
    <div class="card"><div class="label">Avg time</div><div class="value">{{ "%.0f"|format(stats.avg_ms) }}ms</div></div>
    <div class="card"><div class="label">Min / Max</div><div class="value">{{ "%.0f"|format(stats.min_ms) }} / {{ "%.0f"|format(stats.max_ms) }}ms</div></div>
    <div class="card"><div class="label">Total time</div><div class="value">{{ "%.0f"|format(stats.total_ms) }}ms</div></div>
  </section>
  <table>
    <thead>
      <tr><th>Method</th><th>Endpoint</th><th>Status</th><th>Duration</th><th>Message</th></tr>
    </thead>
    <tbody>
    {% for outcome in result.results %}
      <tr class="{{ 'skipped' if outcome.skipped else ('success' if outcome.success else 'failure') }}">
        <td class="method">{{ outcome.operation.method.value }}</td>
        <td>{{ outcome.endpoint }}</td>
        <td class="status">{{ outcome.status if outcome.status is not none else '-' }}</td>
        <td>{{ "%.0f"|format(outcome.duration_ms) }}ms</td>
        <td>{{ outcome.message }}</td>
      </tr>
    {% endfor %}
    </tbody>
  </table>
  <footer>Generated by api-probe {{ version }}</footer>
</div>
</body>
</html>
"""

_env = Environment(
    loader=BaseLoader(),
    autoescape=select_autoescape(enabled_extensions=("html", "xml"), default_for_string=True),
)


def render_html(result: RunResult) -> bytes:
    """Render a self-contained HTML report (inline CSS, no external assets)."""
    html = _env.from_string(_HTML_TEMPLATE).render(
        title=result.spec_title or "API Test Results",
        result=result,
        stats=result.stats,
        version=TOOL_VERSION,
    )
    return html.encode("utf-8")


# =============================================================================
# Writing
# =============================================================================

RENDERERS: dict[ExportFormat, Callable[[RunResult], bytes]] = {
    ExportFormat.JSON: render_json,
    ExportFormat.HTML: render_html,
    ExportFormat.JUNIT: render_junit,
}


def format_for_path(path: Path) -> ExportFormat:
    """Infer the export format from a file extension.

    Raises:
        ExportError: If the extension is not recognized.
    """
    fmt = _EXTENSION_FORMATS.get(path.suffix.lower())
    if fmt is None:
        raise ExportError(
            f"Cannot infer export format from '{path.name}'; use .json, .html or .xml"
        )
    return fmt


def render(result: RunResult, fmt: ExportFormat | str) -> bytes:
    return RENDERERS[ExportFormat(fmt)](result)


def write_export(
    result: RunResult,
    path: Path,
    fmt: ExportFormat | str | None = None,
) -> Path:
    """Render and write an export file atomically.

    Args:
        result: Completed run.
        path: Destination file.
        fmt: Export format; inferred from the extension when None.

    Returns:
        The written path.

    Raises:
        ExportError: If the format is unknown or the file cannot be written.
    """
    export_format = ExportFormat(fmt) if fmt is not None else format_for_path(path)
    data = render(result, export_format)

    # Write to temp file first, then rename for atomicity
    temp_path = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path.write_bytes(data)
        temp_path.replace(path)
    except OSError as e:
        raise ExportError(f"Failed to write {export_format.value} export to {path}: {e}") from e
    return path
