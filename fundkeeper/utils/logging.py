"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

import structlog


def _tee_to_file(path: Path):
    """Processor that appends each rendered line to the daemon log file.

    The file is opened once, line-buffered.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    stream = open(path, "a", encoding="utf-8", buffering=1)

    def processor(logger, method_name, rendered):
        try:
            stream.write(f"{rendered}\n")
        except (OSError, ValueError):
            # Log file is a convenience copy; stderr output still goes through
            pass
        return rendered

    processor.stream = stream
    return processor


def setup_logging(log_level: str = "INFO", log_file: str | Path | None = None) -> None:
    """Configure structlog. Set JSON_LOGS=1 for JSON output (VPS), default is console (dev)."""
    use_json = os.environ.get("JSON_LOGS", "").strip() in ("1", "true", "yes")

    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer(colors=log_file is None)
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        renderer,
    ]
    if log_file is not None:
        processors.append(_tee_to_file(Path(log_file)))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
