"""
Structured logging configuration using structlog.
JSON lines for machine parsing, pretty console output for local runs.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog


def setup_logging(log_dir: Path, json_logs: bool = True, level: int = logging.INFO) -> None:
    """
    Configure structlog + stdlib logging.

    Parameters
    ----------
    log_dir : Path
        Directory for log files.
    json_logs : bool
        If True, render JSON lines and also write them to ``log_dir/intake.jsonl``.
    level : int
        Minimum level for both the stdlib root logger and structlog.
    """
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    root.addHandler(console)

    if json_logs:
        fh = logging.FileHandler(log_dir / "intake.jsonl", encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        root.addHandler(fh)

    # The orchestrator binds call_sid / recording_sid as contextvars, so
    # merge_contextvars must stay first.
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

