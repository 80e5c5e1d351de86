"""Loguru configuration for the campaign engine.

Records are emitted as one JSON object per line. Identifiers listed in
``CORRELATION_KEYS`` become top-level keys; every other bound value is nested
under ``context``.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, Literal, TextIO

from loguru import logger
from opentelemetry import trace


LogFormat = Literal["json", "console"]

CORRELATION_KEYS = ("restaurant_id", "campaign_id", "promo_code_id", "send_id", "customer_id")

_CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level> | {extra}"
)

_STDLIB_RECORD_FIELDS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


class InterceptHandler(logging.Handler):
    """Forward stdlib records (uvicorn, sqlalchemy, alembic) to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - bridging glue
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk out of the logging module so Loguru reports the real caller.
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        extra = {key: value for key, value in vars(record).items() if key not in _STDLIB_RECORD_FIELDS}
        logger.bind(stdlib_logger=record.name, **extra).opt(
            depth=depth, exception=record.exc_info
        ).log(level, record.getMessage())


def build_payload(record: Dict[str, Any], metadata: Dict[str, str]) -> Dict[str, Any]:
    """Shape a Loguru record into the JSON document written to the sink."""

    payload: Dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name.lower(),
        "message": record["message"],
        "logger": record["extra"].get("stdlib_logger", record["name"]),
        **metadata,
    }

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        payload["trace_id"] = format(span_context.trace_id, "032x")
        payload["span_id"] = format(span_context.span_id, "016x")

    context: Dict[str, Any] = {}
    for key, value in record["extra"].items():
        if key == "stdlib_logger":
            continue
        if key in CORRELATION_KEYS:
            payload[key] = value
        else:
            context[key] = value
    if context:
        payload["context"] = context

    exception = record["exception"]
    if exception is not None and exception.value is not None:
        payload["exception"] = {"type": type(exception.value).__name__, "detail": str(exception.value)}
    return payload


def _json_sink(stream: TextIO | None, metadata: Dict[str, str]):
    def sink(message) -> None:
        target = stream or sys.stdout
        target.write(json.dumps(build_payload(message.record, metadata), default=str) + "\n")
        target.flush()

    return sink


def configure_logging(
    *,
    service_name: str,
    environment: str,
    version: str,
    level: str = "INFO",
    log_format: LogFormat = "json",
    sql_echo: bool = False,
    stream: TextIO | None = None,
) -> None:
    """Install the campaign engine sink and route stdlib logging through it."""

    logger.remove()
    if log_format == "console":
        logger.add(
            stream or sys.stdout,
            level=level,
            format=_CONSOLE_FORMAT,
            colorize=False,
            backtrace=False,
            diagnose=False,
        )
    else:
        metadata = {"service": service_name, "environment": environment, "version": version}
        logger.add(_json_sink(stream, metadata), level=level, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if sql_echo else logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


__all__ = ["CORRELATION_KEYS", "InterceptHandler", "build_payload", "configure_logging"]
