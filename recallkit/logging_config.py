"""Centralized logging configuration."""

from __future__ import annotations

import json
import logging
import logging.handlers
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from recallkit.core.protocols import CommandResponse

LOG_DIR = Path("./logs")

_APP_LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
_APP_LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_COMMAND_LOGGER_NAME = "recallkit.commands"


def setup_logging(log_dir: Path | None = None, level: int = logging.INFO) -> None:
    """Configure logging for the whole process. Call once at startup."""
    base_dir = log_dir or LOG_DIR
    base_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)

    # Daily rotating file handler — all application logs
    app_handler = logging.handlers.TimedRotatingFileHandler(
        filename=str(base_dir / "recallkit.log"),
        when="midnight",
        interval=1,
        backupCount=14,
        encoding="utf-8",
    )
    app_handler.setLevel(level)
    app_handler.setFormatter(
        logging.Formatter(_APP_LOG_FORMAT, datefmt=_APP_LOG_DATE_FORMAT)
    )
    root.addHandler(app_handler)

    # Dedicated command logger — JSON Lines, size-rotated
    command_logger = logging.getLogger(_COMMAND_LOGGER_NAME)
    command_logger.propagate = False
    command_handler = logging.handlers.RotatingFileHandler(
        filename=str(base_dir / "commands.jsonl"),
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=5,
        encoding="utf-8",
    )
    command_handler.setLevel(logging.DEBUG)
    command_handler.setFormatter(logging.Formatter("%(message)s"))
    command_logger.addHandler(command_handler)


def log_command_result(response: "CommandResponse", path: str) -> None:
    """Log one processed command as a JSON Lines entry.

    ``path`` names the branch that produced the answer: ``disambiguation``,
    ``direct``, ``recall`` or ``llm``.
    """
    command_logger = logging.getLogger(_COMMAND_LOGGER_NAME)
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "command_id": response.command_id,
        "path": path,
        "actions": [a.type for a in response.actions],
        "memories": [m.id for m in response.memories_used],
    }
    try:
        command_logger.info(json.dumps(entry, ensure_ascii=False, default=str))
    except (TypeError, ValueError):
        command_logger.info(
            json.dumps({"command_id": response.command_id, "error": "serialization_failed"})
        )
