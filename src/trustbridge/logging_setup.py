"""Structured logging — structlog routed through stdlib logging.

Every module logs with ``structlog.get_logger(__name__)`` and an
event-name message plus keyword context:

    logger.info("batch_cut", batch_id=batch.batch_id, size=3)

setup_logging() is called once by the host process. Without it,
structlog's defaults print to stdout, which is fine for tests.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional

import structlog


def setup_logging(
    level: str = "info",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: debug / info / warning / error / critical.
        json_output: One JSON object per line instead of console output.
        log_file: Extra JSON-lines file sink, written alongside stderr.

    Raises:
        ValueError: Unknown level name.
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        raise ValueError(f"Unknown log level: {level}")

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    def formatter_for(final: Any) -> logging.Formatter:
        return structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                final,
            ],
            foreign_pre_chain=shared_processors,
        )

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter_for(renderer))
    handlers: list[logging.Handler] = [console]

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter_for(structlog.processors.JSONRenderer()))
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)
    for handler in handlers:
        root.addHandler(handler)

    # httpx logs every request at INFO.
    for noisy in ("httpx", "httpcore", "web3", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured", level=level, json_output=json_output,
    )
