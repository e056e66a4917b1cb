"""
Logging configuration

Console output follows the usual ``asctime | level | name | message``
layout. Each phase run additionally gets a JSON-lines audit file through
``PhaseLogger``, so a long migration stays inspectable after the process
exits.
"""

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

# Logger trees whose records end up in the phase log file
CAPTURED_LOGGERS = ("core", "migration")

LEVEL_NAMES = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "ERROR",
}


def setup_logging(level: int = logging.INFO, verbose: bool = False):
    """Configure console logging"""

    if verbose:
        level = logging.DEBUG

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[console],
        force=True
    )

    # Reduce driver noise
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
    logging.getLogger("asyncssh").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.debug(f"Logging configured at {logging.getLevelName(level)} level")


def file_timestamp(moment: Optional[datetime] = None) -> str:
    """Filesystem-safe timestamp, e.g. ``2024-01-15-10-30-00``."""
    moment = moment or datetime.utcnow()
    return moment.strftime("%Y-%m-%d-%H-%M-%S")


class JsonLinesFormatter(logging.Formatter):
    """Render a record as ``{timestamp, level, phase, message, data}``."""

    def __init__(self, phase: str):
        super().__init__()
        self.phase = phase

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.utcfromtimestamp(record.created).isoformat() + "Z",
            "level": LEVEL_NAMES.get(record.levelno, record.levelname),
            "phase": self.phase,
            "message": record.getMessage(),
        }

        data = getattr(record, "data", None)
        if data is None:
            data = getattr(record, "error_context", None)
        if record.exc_info:
            data = dict(data or {})
            data["exception"] = self.formatException(record.exc_info)
        if data is not None:
            entry["data"] = data

        return json.dumps(entry, default=str)


class PhaseLogger:
    """
    Per-phase structured log file.

    Constructed explicitly for each phase run and passed to whatever needs
    it; attaching and detaching the file handler is scoped to the ``with``
    block, so separate instances never share state.

    Usage:
        with PhaseLogger("transform", output_dir) as plog:
            plog.info("Loaded raw data", {"recipes": 120})
    """

    def __init__(
        self,
        phase: Union[str, Any],
        output_dir: Union[str, Path],
        level: int = logging.DEBUG,
        timestamp: Optional[str] = None
    ):
        self.phase = getattr(phase, "value", phase)
        self.log_dir = Path(output_dir) / "logs"
        self.log_path = self.log_dir / f"{self.phase}-{timestamp or file_timestamp()}.log"
        self.level = level
        self.logger = logging.getLogger(f"migration.phase.{self.phase}")
        self._handler: Optional[logging.Handler] = None
        self._previous_levels: Dict[str, int] = {}

    def open(self) -> "PhaseLogger":
        if self._handler is not None:
            return self

        self.log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(self.log_path, encoding="utf-8")
        handler.setLevel(self.level)
        handler.setFormatter(JsonLinesFormatter(self.phase))

        for name in CAPTURED_LOGGERS:
            tree = logging.getLogger(name)
            tree.addHandler(handler)
            self._previous_levels[name] = tree.level
            if tree.level == logging.NOTSET or tree.level > self.level:
                tree.setLevel(self.level)

        self._handler = handler
        return self

    def close(self) -> None:
        if self._handler is None:
            return

        for name in CAPTURED_LOGGERS:
            tree = logging.getLogger(name)
            tree.removeHandler(self._handler)
            tree.setLevel(self._previous_levels.get(name, tree.level))
        self._handler.close()
        self._handler = None

    def __enter__(self) -> "PhaseLogger":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is not None:
            self.logger.error(f"Phase {self.phase} aborted: {exc}", exc_info=(exc_type, exc, tb))
        self.close()

    def _log(self, level: int, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.logger.log(level, message, extra={"data": data} if data is not None else None)

    def debug(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        self._log(logging.DEBUG, message, data)

    def info(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        self._log(logging.INFO, message, data)

    def warn(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        self._log(logging.WARNING, message, data)

    def error(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        self._log(logging.ERROR, message, data)
