"""Logging configuration for kuberoll.

Structured logging via loguru. As a library kuberoll logs nothing until
``setup_logging`` is called; the CLI does so before every command.

Components bind ``component`` and, where it applies, ``group``, ``node`` or
``target_group``. Those values are rendered in front of every message:

    12:01:07.114 | INFO     | rollout group=workers - Launching 2 new nodes on ASG workers

Example:
    from kuberoll.logging import LogConfig, setup_logging, teardown_logging

    handler_ids = setup_logging(LogConfig(level="DEBUG", file="kuberoll.log"))
    try:
        ...
    finally:
        teardown_logging(handler_ids)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from loguru import logger

if TYPE_CHECKING:
    from loguru import Record

logger.disable("kuberoll")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

CONTEXT_KEYS = ("group", "node", "target_group")


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum console level. The file always receives DEBUG.
        file: Optional log file path.
        console: Log to stderr.
        rotation: File rotation policy, e.g. "50 MB" or "1 day".
        retention: Number of rotated files to keep.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10


def _context(record: Record) -> str:
    extra = record["extra"]
    parts = [f"{key}={extra[key]}" for key in CONTEXT_KEYS if key in extra]
    return (" " + " ".join(parts)) if parts else ""


def _console_format(record: Record) -> str:
    record["extra"]["_context"] = _context(record)
    return (
        "<green>{time:HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{extra[component]}</cyan>{extra[_context]} - "
        "<level>{message}</level>\n{exception}"
    )


def _file_format(record: Record) -> str:
    record["extra"]["_context"] = _context(record)
    return (
        "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
        "{extra[component]}{extra[_context]} | {name}:{function}:{line} - {message}\n{exception}"
    )


def setup_logging(config: LogConfig) -> list[int]:
    """Enable kuberoll logging; returns the handler IDs to pass to teardown_logging."""
    logger.configure(extra={"component": "kuberoll"})
    logger.enable("kuberoll")

    sinks: list[int] = []
    if config.console:
        sinks.append(logger.add(
            sys.stderr,
            level=config.level,
            format=_console_format,
            colorize=True,
            filter="kuberoll",
        ))
    if config.file:
        # diagnose=False keeps AWS credentials out of rendered tracebacks.
        sinks.append(logger.add(
            config.file,
            level="DEBUG",
            format=_file_format,
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            diagnose=False,
            enqueue=True,
            filter="kuberoll",
        ))
    return sinks


def teardown_logging(handler_ids: list[int]) -> None:
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("kuberoll")
