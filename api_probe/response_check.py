"""Response check - Compares a response against the operation's declared responses.

Only the status code and the media type are checked; response bodies are
never validated against schemas. The result is an annotation for the
outcome message and never changes whether an attempt succeeded.
"""

from __future__ import annotations

from dataclasses import dataclass

from api_probe.models import DeclaredResponse, Operation

# Assumed when a response carries no Content-Type header
DEFAULT_CONTENT_TYPE = "application/json"


@dataclass(frozen=True)
class ResponseCheck:
    """Outcome of comparing one response with the declared responses."""

    valid: bool
    problem: str | None = None

    @property
    def note(self) -> str:
        return "validated" if self.valid else self.problem or "not validated"


def match_status(
    responses: tuple[DeclaredResponse, ...], status: int
) -> DeclaredResponse | None:
    """Find the declared response for a status.

    An exact code wins over a range ("2XX"), which wins over "default".
    """
    exact = str(status)
    wildcard = f"{status // 100}XX"
    by_key = {r.status.upper(): r for r in responses}
    for key in (exact, wildcard, "DEFAULT"):
        if key in by_key:
            return by_key[key]
    return None


def media_type(content_type: str | None) -> str:
    """Base media type of a Content-Type header, without parameters."""
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def content_type_declared(declared: tuple[str, ...], content_type: str | None) -> bool:
    actual = media_type(content_type) or DEFAULT_CONTENT_TYPE
    for candidate in declared:
        candidate = media_type(candidate)
        if candidate in (actual, "*/*"):
            return True
        if candidate.endswith("/*") and actual.startswith(candidate[:-1]):
            return True
    return False


def check_response(
    operation: Operation, status: int, content_type: str | None
) -> ResponseCheck | None:
    """Check status and Content-Type against the operation's responses.

    Returns:
        None if the operation declares no responses, otherwise a
        ResponseCheck describing the first mismatch found.
    """
    if not operation.responses:
        return None

    declared = match_status(operation.responses, status)
    if declared is None:
        return ResponseCheck(valid=False, problem=f"status {status} not declared")

    if declared.content_types and not content_type_declared(declared.content_types, content_type):
        shown = media_type(content_type) or "none"
        return ResponseCheck(valid=False, problem=f"content-type '{shown}' not declared")

    return ResponseCheck(valid=True)
