"""Logging setup shared by the CLI and the orchestrator."""

import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
RESET = "\033[0m"

SECONDS_PER_DAY = 86400


class WavepilotFormatter(logging.Formatter):
    """Single-line formatter: ``[HH:MM:SS] LEVEL    module       message``.

    Records logged with ``extra={"node_id": ...}`` get a ``node=<id>``
    prefix on the message so interleaved dispatches stay readable.
    """

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors

    def _level(self, record: logging.LogRecord) -> str:
        if not (self.use_colors and sys.stderr.isatty()):
            return record.levelname
        color = LEVEL_COLORS.get(record.levelname, "")
        return f"{color}{record.levelname}{RESET}"

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        module = record.name.rsplit(".", 1)[-1]

        text = record.getMessage()
        node_id = getattr(record, "node_id", None)
        if node_id is not None:
            text = f"node={node_id} {text}"
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)

        return f"[{clock}] {self._level(record):8} {module:12} {text}"


def _cleanup_old_logs(log_dir: Path, retention_days: int) -> int:
    """Delete ``*.log*`` files in ``log_dir`` not touched for ``retention_days``."""
    if retention_days <= 0:
        return 0

    oldest_allowed = datetime.now().timestamp() - retention_days * SECONDS_PER_DAY
    removed = 0
    for candidate in log_dir.glob("*.log*"):
        try:
            stale = candidate.stat().st_mtime < oldest_allowed
            if stale:
                candidate.unlink()
                removed += 1
        except FileNotFoundError:
            # Rotated away by another run.
            continue
    return removed


def _file_handler(log_file: Path, rotation_mb: int, retention_days: int) -> RotatingFileHandler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    _cleanup_old_logs(log_file.parent, retention_days)

    handler = RotatingFileHandler(
        log_file,
        maxBytes=max(1, rotation_mb) * 1024 * 1024,
        backupCount=max(1, retention_days),
    )
    handler.setFormatter(WavepilotFormatter(use_colors=False))
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    log_dir: Path | None = None,
    rotation_mb: int = 10,
    retention_days: int = 7,
    use_colors: bool = True,
    console: bool = True,
) -> None:
    """Configure the root logger for a wavepilot process.

    Any handlers installed earlier are dropped so repeated CLI invocations
    in one interpreter do not duplicate output.

    Args:
        level: Level name, case-insensitive
        log_file: Explicit log file; wins over ``log_dir``
        log_dir: Directory for a ``wavepilot_<timestamp>.log`` file
        rotation_mb: Size in MB at which the file rolls over
        retention_days: Age in days after which old logs are deleted; also
            the number of rotated backups kept
        use_colors: Color level names on a terminal
        console: Emit to stderr
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    root.handlers.clear()

    if console:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(WavepilotFormatter(use_colors=use_colors))
        root.addHandler(stream)

    if log_file is None and log_dir is not None:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = Path(log_dir) / f"wavepilot_{stamp}.log"
    if log_file is not None:
        root.addHandler(_file_handler(Path(log_file), rotation_mb, retention_days))

    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Return the named logger."""
    return logging.getLogger(name)
