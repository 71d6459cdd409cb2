from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path


_HANDLER_FLAG = "_tally_managed_handler"
_LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
# Libraries that are chatty at DEBUG and drown out import diagnostics.
_NOISY_LOGGERS = ("multipart", "python_multipart", "sqlalchemy.engine")


def _clamp_int(value: object, default: int, minimum: int = 1) -> int:
    try:
        numeric = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return max(minimum, default)
    return max(minimum, numeric)


def _drop_managed_handlers(root_logger: logging.Logger) -> None:
    for handler in list(root_logger.handlers):
        if not getattr(handler, _HANDLER_FLAG, False):
            continue
        root_logger.removeHandler(handler)
        try:
            handler.close()
        except OSError:  # pragma: no cover - file already gone
            pass


def configure_logging(
    data_dir: str,
    debug_enabled: bool = False,
    max_bytes: int = 1_048_576,
    retention: int = 5,
) -> Path:
    """Send application logs to the console and to ``<data_dir>/logs/tally.log``.

    Parameters
    ----------
    data_dir:
        Directory holding the ``logs`` folder.
    debug_enabled:
        Capture DEBUG records (row partitioning, batch lookups) in addition
        to the INFO import summaries.
    max_bytes:
        Rotation threshold for the log file, never below 1 KiB.
    retention:
        Number of rotated files kept next to the active one.

    Calling the function again replaces the handlers it installed earlier,
    so reloading the application state does not duplicate log lines.
    """

    log_dir = Path(data_dir) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "tally.log"

    fmt = logging.Formatter(_LOG_FORMAT)
    log_level = logging.DEBUG if debug_enabled else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    _drop_managed_handlers(root_logger)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(fmt)
    setattr(console_handler, _HANDLER_FLAG, True)
    root_logger.addHandler(console_handler)

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=_clamp_int(max_bytes, 1_048_576, minimum=1024),
        backupCount=_clamp_int(retention, 5, minimum=1),
        encoding="utf-8",
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(fmt)
    setattr(file_handler, _HANDLER_FLAG, True)
    root_logger.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.debug(
        "Logging configured (debug_enabled=%s, log_path=%s)",
        debug_enabled,
        log_path,
    )

    return log_path


def get_logger(name: str = "tally") -> logging.Logger:
    """Return a logger that writes through the shared Tally handlers."""

    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger"]
