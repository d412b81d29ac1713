"""Tests for api_probe.exporters.

Tests cover:
- JSON field order, indentation and byte-identical output
- JUnit structure (suite counts, testcase names, failure/skipped elements)
- HTML summary, escaping and self-containment
- write_export format inference, atomic write and error reporting
"""

import json
import xml.etree.ElementTree as ET
from pathlib import Path
from unittest.mock import patch

import pytest

from api_probe.aggregator import skipped_outcome
from api_probe.exporters import (
    ExportError,
    ExportFormat,
    format_for_path,
    render_html,
    render_json,
    render_junit,
    write_export,
)
from api_probe.models import TestOutcome
from tests.conftest import FIXED_TIMESTAMP, make_operation, make_outcome, make_result


@pytest.fixture
def mixed_result():
    outcomes = [
        make_outcome(make_operation("GET", "/users"), status=200, duration_ms=12.5),
        make_outcome(
            make_operation("GET", "/users/{id}"),
            status=404,
            message="HTTP 404 Not Found",
            duration_ms=7.25,
        ),
        skipped_outcome(make_operation("DELETE", "/users/{id}"), FIXED_TIMESTAMP),
    ]
    return make_result(outcomes, spec_title="Users API")


class TestRenderJson:
    def test_top_level_fields_in_order(self, mixed_result):
        data = json.loads(render_json(mixed_result))
        assert list(data) == [
            "timestamp", "specPath", "baseUrl", "totalTests", "passed", "failed", "results",
        ]
        assert data["timestamp"] == FIXED_TIMESTAMP
        assert data["specPath"] == "openapi.yaml"
        assert data["baseUrl"] == "http://api.test"
        assert (data["totalTests"], data["passed"], data["failed"]) == (3, 1, 2)

    def test_result_items(self, mixed_result):
        results = json.loads(render_json(mixed_result))["results"]
        assert list(results[0]) == [
            "method", "endpoint", "status", "success", "message", "duration", "timestamp",
        ]
        assert results[1] == {
            "method": "GET",
            "endpoint": "/users/1",
            "status": 404,
            "success": False,
            "message": "HTTP 404 Not Found",
            "duration": 7.25,
            "timestamp": FIXED_TIMESTAMP,
        }
        assert results[2]["status"] is None

    def test_two_space_indent(self, mixed_result):
        text = render_json(mixed_result).decode("utf-8")
        assert text.startswith('{\n  "timestamp"')

    def test_byte_identical_for_identical_results(self, mixed_result):
        copy = type(mixed_result).model_validate_json(mixed_result.model_dump_json())
        assert render_json(mixed_result) == render_json(copy)

    def test_verbose_headers_included(self):
        outcome = TestOutcome(
            operation=make_operation(),
            status=200,
            success=True,
            message="OK",
            duration_ms=1.0,
            attempt=1,
            timestamp=FIXED_TIMESTAMP,
            request_headers={"accept": "application/json"},
            response_headers={"content-type": "application/json"},
        )
        item = json.loads(render_json(make_result([outcome])))["results"][0]
        assert item["requestHeaders"] == {"accept": "application/json"}
        assert item["responseHeaders"] == {"content-type": "application/json"}


class TestRenderJunit:
    def test_suite_attributes(self, mixed_result):
        suite = ET.fromstring(render_junit(mixed_result))
        assert suite.tag == "testsuite"
        assert suite.get("name") == "Users API"
        assert suite.get("tests") == "3"
        assert suite.get("failures") == "1"
        assert suite.get("skipped") == "1"
        assert suite.get("time") == "0.020"

    def test_testcases(self, mixed_result):
        suite = ET.fromstring(render_junit(mixed_result))
        cases = suite.findall("testcase")
        assert [c.get("name") for c in cases] == [
            "GET /users", "GET /users/1", "DELETE /users/1",
        ]
        assert cases[0].find("failure") is None
        assert cases[1].find("failure").get("message") == "HTTP 404 Not Found"
        assert cases[2].find("skipped") is not None
        assert cases[2].find("failure") is None

    def test_xml_declaration(self, mixed_result):
        assert render_junit(mixed_result).startswith(b'<?xml version="1.0" encoding="UTF-8"?>')

    def test_special_characters_escaped(self):
        outcome = make_outcome(status=500, message='HTTP 500 <bad> & "worse"')
        suite = ET.fromstring(render_junit(make_result([outcome])))
        assert suite.find("testcase/failure").get("message") == 'HTTP 500 <bad> & "worse"'


class TestRenderHtml:
    def test_summary_and_rows(self, mixed_result):
        html = render_html(mixed_result).decode("utf-8")
        assert html.startswith("<!DOCTYPE html>")
        assert "Users API" in html
        assert "33.3%" in html
        assert "/users/1" in html
        assert "HTTP 404 Not Found" in html

    def test_autoescaped(self):
        outcome = make_outcome(status=500, message="<script>alert(1)</script>")
        html = render_html(make_result([outcome])).decode("utf-8")
        assert "<script>alert(1)</script>" not in html
        assert "&lt;script&gt;" in html

    def test_self_contained(self, mixed_result):
        html = render_html(mixed_result).decode("utf-8")
        assert "<style>" in html
        assert "<link" not in html
        assert "src=" not in html


class TestWriteExport:
    @pytest.mark.parametrize("name,fmt", [
        ("out.json", ExportFormat.JSON),
        ("out.HTML", ExportFormat.HTML),
        ("out.htm", ExportFormat.HTML),
        ("out.xml", ExportFormat.JUNIT),
    ])
    def test_format_inferred(self, name, fmt):
        assert format_for_path(Path(name)) is fmt

    def test_unknown_extension(self, mixed_result, tmp_path):
        with pytest.raises(ExportError, match="Cannot infer"):
            write_export(mixed_result, tmp_path / "out.txt")

    def test_explicit_format_overrides_extension(self, mixed_result, tmp_path):
        path = write_export(mixed_result, tmp_path / "report.txt", "junit")
        assert ET.fromstring(path.read_bytes()).tag == "testsuite"

    def test_writes_file_and_no_temp_left(self, mixed_result, tmp_path):
        target = tmp_path / "nested" / "results.json"
        write_export(mixed_result, target)
        assert target.read_bytes() == render_json(mixed_result)
        assert list(target.parent.iterdir()) == [target]

    def test_io_error_wrapped(self, mixed_result, tmp_path):
        with patch("pathlib.Path.write_bytes", side_effect=PermissionError("denied")):
            with pytest.raises(ExportError, match="denied"):
                write_export(mixed_result, tmp_path / "results.json")
