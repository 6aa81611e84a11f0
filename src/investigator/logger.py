"""Always-on file logging for investigations.

Everything goes to .investigator_output/investigator.log (rotated at 5 MB,
five backups kept): turn boundaries, model calls and retries, tool
dispatches, compactions and the tool-server lifecycle.  When a run goes
wrong the log is the timeline.

    from .logger import get_logger
    log = get_logger(__name__)

Credentials registered with ``register_secret`` are masked in every record
before it reaches a handler, so tool output that happens to echo a PAT or
API key never lands in the log file.
"""

import logging
import os
import sys
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable, Optional, Set

ROOT_LOGGER = "investigator"
LOG_DIR_NAME = ".investigator_output"
LOG_FILE_NAME = "investigator.log"

_FORMAT = "%(asctime)s.%(msecs)03d | %(levelname)-5s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_MASK = "***"

_initialized = False
_log_dir: Optional[Path] = None
_secrets: Set[str] = set()


class SecretFilter(logging.Filter):
    """Replace registered secrets in the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        if _secrets:
            message = mask_secrets(record.getMessage())
            record.msg = message
            record.args = None
        return True


def register_secret(*values: Optional[str]) -> None:
    """Mask these values in all future log output.  Blank values are ignored."""
    for value in values:
        if value and len(value) >= 4:
            _secrets.add(value)


def mask_secrets(text: str, secrets: Optional[Iterable[str]] = None) -> str:
    for secret in secrets if secrets is not None else _secrets:
        if secret in text:
            text = text.replace(secret, _MASK)
    return text


def log_dir() -> Path:
    """Directory holding the log file, created on first use."""
    global _log_dir
    if _log_dir is None:
        _log_dir = Path.cwd() / LOG_DIR_NAME
    _log_dir.mkdir(parents=True, exist_ok=True)
    return _log_dir


def init_logging(
    workspace: Optional[str] = None,
    level: int = logging.DEBUG,
    stderr: bool = False,
) -> None:
    """Attach the rotating file handler.  Safe to call more than once.

    ``stderr=True`` (or INVESTIGATOR_DEBUG in the environment) also echoes
    records to stderr; stdout is left alone because the tool server speaks
    JSON-RPC on it.
    """
    global _initialized, _log_dir

    if workspace:
        _log_dir = Path(workspace) / LOG_DIR_NAME
    directory = log_dir()

    root = logging.getLogger(ROOT_LOGGER)
    fmt = logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT)

    if (stderr or os.environ.get("INVESTIGATOR_DEBUG")) and not any(
        getattr(h, "_investigator_stderr", False) for h in root.handlers
    ):
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(logging.DEBUG)
        console.setFormatter(fmt)
        console.addFilter(SecretFilter())
        console._investigator_stderr = True
        root.addHandler(console)

    if _initialized:
        return
    _initialized = True
    root.setLevel(level)

    log_path = directory / LOG_FILE_NAME
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(fmt)
    handler.addFilter(SecretFilter())
    root.addHandler(handler)

    root.info("=== investigator logging started === pid=%d python=%s log=%s",
              os.getpid(), sys.version.split()[0], log_path)


def get_logger(name: str) -> logging.Logger:
    """Child of the ``investigator`` logger; initialises logging lazily."""
    if not _initialized:
        init_logging()
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def log_exception(logger: logging.Logger, msg: str, exc: BaseException) -> None:
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("%s: %s\n%s", msg, exc, "".join(tb))


def truncate(text: str, max_len: int = 200) -> str:
    """One-line preview of ``text`` for log messages."""
    if not text:
        return "(empty)"
    text = text.replace("\n", "\\n")
    if len(text) <= max_len:
        return text
    return text[:max_len] + f"...[{len(text)} chars]"
