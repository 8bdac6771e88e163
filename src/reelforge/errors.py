"""Error taxonomy and provider-error flattening.

Generation providers raise errors in unreliable shapes: plain exceptions,
exceptions wrapped several ``raise ... from`` levels deep, HTTP errors with a
status code and body, futures that resolve (or fail) to the real error, bare
dicts and strings. ``inspect_error`` flattens all of these into one
``ErrorReport`` so nothing downstream needs provider-specific unwrapping.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
import json
import logging
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 1000
MAX_RAW_CHARS = 1500
MAX_CAUSE_DEPTH = 8
FUTURE_RESOLVE_TIMEOUT = 5.0


class ErrorReport(BaseModel):
    summary: str
    type: str
    message: str = ""
    status_code: int | None = None
    response_body: str | None = None
    cause: ErrorReport | None = None
    all_keys: list[str] = Field(default_factory=list)
    raw: str = ""

    def cause_chain(self) -> list[ErrorReport]:
        """This report followed by every nested cause, outermost first."""
        chain: list[ErrorReport] = []
        node: ErrorReport | None = self
        while node is not None:
            chain.append(node)
            node = node.cause
        return chain


# ─── Exceptions ───────────────────────────────────────────────


class ReelforgeError(Exception):
    """Base class for all pipeline errors."""


class PhaseInputError(ReelforgeError):
    """The supplied input does not satisfy the current phase's schema."""


class PipelineCancelled(ReelforgeError):
    """The caller cancelled the invocation; no further work is scheduled."""


class _ReportedError(ReelforgeError):
    def __init__(self, message: str, report: ErrorReport | None = None) -> None:
        super().__init__(message)
        self.report = report or ErrorReport(
            summary=message, type=type(self).__name__, message=message
        )


class PlanningError(_ReportedError):
    """A structured-reasoning call was malformed, refused, or failed."""


class GenerationFailed(_ReportedError):
    """A single image generation produced nothing."""


class ProviderFailure(_ReportedError):
    """The generation provider raised; ``report`` holds the flattened shape."""


class RenderFailure(_ReportedError):
    """One shot's video render failed."""

    def __init__(
        self, shot_index: int, message: str, report: ErrorReport | None = None
    ) -> None:
        super().__init__(message, report)
        self.shot_index = shot_index


# ─── Inspection ───────────────────────────────────────────────


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit]


def _safe_json(value: Any, limit: int) -> str:
    try:
        return _truncate(json.dumps(value, default=str, indent=2), limit)
    except (TypeError, ValueError):
        return _truncate(repr(value), limit)


def _status_code(obj: Any) -> int | None:
    for attr in ("status_code", "status", "code"):
        value = getattr(obj, attr, None)
        if value is None and isinstance(obj, dict):
            value = obj.get(attr)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        # grpc StatusCode enums carry (int, str) tuples
        inner = getattr(value, "value", None)
        if isinstance(inner, tuple) and inner and isinstance(inner[0], int):
            return inner[0]
    response = getattr(obj, "response", None)
    code = getattr(response, "status_code", None)
    return code if isinstance(code, int) else None


def _response_body(obj: Any) -> str | None:
    body = getattr(obj, "response_body", None)
    if body is None and isinstance(obj, dict):
        body = obj.get("response_body") or obj.get("body")
    if body is None:
        response = getattr(obj, "response", None)
        body = getattr(response, "text", None)
    if body is None:
        return None
    return _truncate(str(body), MAX_BODY_CHARS)


def _cause_of(obj: Any) -> Any:
    if isinstance(obj, BaseException):
        if obj.__cause__ is not None:
            return obj.__cause__
        if obj.__context__ is not None and not obj.__suppress_context__:
            return obj.__context__
    cause = getattr(obj, "cause", None)
    if cause is None and isinstance(obj, dict):
        cause = obj.get("cause")
    return cause


def _inspect_single(err: Any, depth: int) -> ErrorReport:
    if err is None:
        return ErrorReport(summary="null error", type="None", raw="None")

    if isinstance(err, str):
        return ErrorReport(summary=err, type="str", message=err, raw=err)

    if isinstance(err, (int, float, bool)):
        return ErrorReport(summary=str(err), type=type(err).__name__, raw=str(err))

    if isinstance(err, dict):
        type_name = "dict"
        message = str(
            err.get("message") or err.get("error") or err.get("detail") or ""
        )
        keys = [str(k) for k in err]
    else:
        type_name = type(err).__name__
        message = str(err) if isinstance(err, BaseException) else ""
        if not message:
            message = str(
                getattr(err, "message", None)
                or getattr(err, "detail", None)
                or getattr(err, "error", None)
                or ""
            )
        keys = sorted(k for k in getattr(err, "__dict__", {}) if not k.startswith("_"))

    status_code = _status_code(err)
    response_body = _response_body(err)

    cause: ErrorReport | None = None
    raw_cause = _cause_of(err)
    if raw_cause is not None and raw_cause is not err and depth < MAX_CAUSE_DEPTH:
        cause = _inspect(raw_cause, depth + 1)

    if isinstance(err, dict):
        raw = _safe_json(err, MAX_RAW_CHARS)
    elif isinstance(err, BaseException):
        raw = _truncate(repr(err), MAX_RAW_CHARS)
    else:
        raw = _safe_json(getattr(err, "__dict__", repr(err)), MAX_RAW_CHARS)

    parts = [
        type_name if type_name not in ("Exception", "dict") else "",
        f"HTTP {status_code}" if status_code else "",
        message or "(no message)",
        f"<- caused by: {cause.summary}" if cause else "",
    ]
    summary = " | ".join(p for p in parts if p)

    return ErrorReport(
        summary=summary,
        type=type_name,
        message=message,
        status_code=status_code,
        response_body=response_body,
        cause=cause,
        all_keys=keys,
        raw=raw,
    )


def _resolve_future(fut: concurrent.futures.Future) -> ErrorReport:
    try:
        resolved_exc = fut.exception(timeout=FUTURE_RESOLVE_TIMEOUT)
    except concurrent.futures.TimeoutError:
        return ErrorReport(
            summary="Future still pending after inspection timeout",
            type="Future<pending>",
        )
    except concurrent.futures.CancelledError:
        return ErrorReport(summary="Future was cancelled", type="Future<cancelled>")
    if resolved_exc is not None:
        inner = _inspect(resolved_exc, 1)
        return inner.model_copy(
            update={
                "summary": f"Future rejected: {inner.summary}",
                "type": f"Future<{inner.type}>",
            }
        )
    inner = _inspect(fut.result(), 1)
    return inner.model_copy(
        update={
            "summary": f"Future resolved to: {inner.summary}",
            "type": f"Future<{inner.type}>",
        }
    )


def _resolve_asyncio_future(fut: asyncio.Future) -> ErrorReport:
    if not fut.done():
        return ErrorReport(
            summary="Future still pending at inspection time", type="Future<pending>"
        )
    if fut.cancelled():
        return ErrorReport(summary="Future was cancelled", type="Future<cancelled>")
    exc = fut.exception()
    if exc is not None:
        inner = _inspect(exc, 1)
        return inner.model_copy(
            update={
                "summary": f"Future rejected: {inner.summary}",
                "type": f"Future<{inner.type}>",
            }
        )
    inner = _inspect(fut.result(), 1)
    return inner.model_copy(
        update={
            "summary": f"Future resolved to: {inner.summary}",
            "type": f"Future<{inner.type}>",
        }
    )


def _inspect(err: Any, depth: int) -> ErrorReport:
    if isinstance(err, concurrent.futures.Future):
        return _resolve_future(err)
    if isinstance(err, asyncio.Future):
        return _resolve_asyncio_future(err)
    if inspect.iscoroutine(err):
        # An un-awaited coroutine carries no error yet; close it so it is not
        # reported as "never awaited" and describe what it was.
        name = getattr(err, "__qualname__", "coroutine")
        err.close()
        return ErrorReport(
            summary=f"Unawaited coroutine {name}", type="coroutine", raw=name
        )
    return _inspect_single(err, depth)


def inspect_error(err: Any) -> ErrorReport:
    """Flatten any error shape into an ``ErrorReport``.

    Errors that already carry a report (``PlanningError``, ``RenderFailure``,
    ...) keep it, so wrapping never loses the original provider detail.
    """
    report = getattr(err, "report", None)
    if isinstance(report, ErrorReport):
        return report
    return _inspect(err, 0)


def format_error_report(report: ErrorReport) -> list[str]:
    """Render a report as lines suitable for ``stage-log`` events."""
    lines = [f"Error: {report.summary}"]
    lines.append(f"Type: {report.type} | Keys: {', '.join(report.all_keys) or '(none)'}")
    if report.status_code:
        lines.append(f"Status: {report.status_code}")
    if report.response_body:
        lines.append(f"Response body: {report.response_body}")
    for depth, cause in enumerate(report.cause_chain()[1:], 1):
        label = "Cause" if depth == 1 else f"Cause[{depth}]"
        lines.append(f"{label}: {cause.summary}")
        if cause.response_body:
            lines.append(f"{label} body: {cause.response_body}")
    lines.append(f"Raw: {report.raw}")
    return lines
