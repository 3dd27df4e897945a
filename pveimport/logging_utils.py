"""Structured logging helpers for the importer CLI and HTTP API."""

from __future__ import annotations

import contextvars
import logging
import sys
from typing import Any
from uuid import uuid4

REQUEST_ID_HEADER = "x-request-id"
_RESERVED_FIELDS = frozenset(vars(logging.makeLogRecord({})).keys()) | {"message", "asctime"}
_REQUEST_ID: contextvars.ContextVar[str] = contextvars.ContextVar(
    "pveimport_request_id",
    default="-",
)


def build_request_id(header_value: str | None) -> str:
    """Normalize an incoming request id header, generating one when absent."""
    candidate = (header_value or "").strip()
    return candidate[:128] if candidate else uuid4().hex


def set_request_id(request_id: str) -> contextvars.Token[str]:
    return _REQUEST_ID.set(request_id)


def reset_request_id(token: contextvars.Token[str]) -> None:
    _REQUEST_ID.reset(token)


def get_request_id() -> str:
    return _REQUEST_ID.get()


class EventFormatter(logging.Formatter):
    """Render log records as ``level event key=value ...`` lines."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        fields = {
            key: value
            for key, value in vars(record).items()
            if key not in _RESERVED_FIELDS and key != "event"
        }
        if not fields:
            return base
        rendered = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        return f"{base} {rendered}"


def configure_logging(*, verbose: bool = False) -> None:
    """Route ``pveimport`` warnings, or debug events when verbose, to stderr."""
    root = logging.getLogger("pveimport")
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    for handler in root.handlers:
        if getattr(handler, "_pveimport", False) and isinstance(handler, logging.StreamHandler):
            handler.setStream(sys.stderr)
            return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(EventFormatter("%(levelname)s %(name)s %(message)s"))
    handler._pveimport = True  # type: ignore[attr-defined]
    root.addHandler(handler)


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc_info: Any | None = None,
    **fields: Any,
) -> None:
    """Emit ``event`` with request context and every non-null field attached."""
    payload: dict[str, Any] = {"event": event, "request_id": get_request_id()}
    for key, value in fields.items():
        if value is not None:
            payload[key] = value
    logger.log(level, event, extra=payload, exc_info=exc_info)
