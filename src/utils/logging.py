"""Structured logging for the listener.

Console output is human readable (INFO+); the rotating log file holds one JSON
object per line (DEBUG+). Both render the same structlog event dict.
"""

import logging
import logging.handlers
from typing import Literal

import pyfiglet  # type: ignore
import structlog
from rich import print
from structlog.typing import Processor

log = structlog.get_logger()

PROCESSORS: list[Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.dev.set_exc_info,
    structlog.processors.TimeStamper("%Y-%m-%d %H:%M:%S", utc=False),
    structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
]

# Client libraries that log every frame at DEBUG
QUIET_LOGGERS = ("aio_pika", "aiormq", "websockets", "web3")

BANNER = pyfiglet.figlet_format("ORBITSPHERE", font="o8")
STATUS_COLORS = {"success": "bold green", "failure": "bold red"}


def _handler(
    handler: logging.Handler, renderer: Processor, level: int
) -> logging.Handler:
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(processor=renderer))
    handler.setLevel(level)
    return handler


def setup_logging(path: str, max_file_size: int, backup_count: int) -> None:
    """Routes structlog through the stdlib root logger

    Args:
        path (str): Log file path
        max_file_size (int): Bytes before the log file rolls over
        backup_count (int): Rolled over files to keep
    """
    structlog.configure(
        processors=PROCESSORS,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO)

    root = logging.getLogger()
    root.setLevel(logging.NOTSET)
    root.addHandler(
        _handler(
            logging.StreamHandler(),
            structlog.dev.ConsoleRenderer(pad_event=50, sort_keys=False),
            logging.INFO,
        )
    )
    root.addHandler(
        _handler(
            logging.handlers.RotatingFileHandler(
                path, maxBytes=max_file_size, backupCount=backup_count
            ),
            structlog.processors.JSONRenderer(),
            logging.DEBUG,
        )
    )


def log_ascii_status(message: str, status: Literal["success", "failure"]) -> None:
    """Prints the ORBITSPHERE banner with a colored status line"""
    color = STATUS_COLORS[status]
    print(
        f"\n[{color}]{BANNER}[/{color}]\n"
        f"Status: [{color}]{status.upper()}[/{color}] {message}"
    )
