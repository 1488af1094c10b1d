"""
Logging setup for acctl.

boto3 and botocore log credential lookups and retries at INFO, which drowns
out the account-level messages, so the CLI starts in quiet mode.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

# AWS SDK and HTTP loggers
_LIBRARY_LOGGERS = ("boto3", "botocore", "urllib3", "s3transfer")

_OPS_LOG = "acctl-ops.log"
_OPS_LOG_MAX_BYTES = 1_000_000
_OPS_LOG_BACKUPS = 3

# Handler installed by the last configure_ops_log call
_ops_handler: Optional[RotatingFileHandler] = None


def _set_levels(library: int, acctl: int) -> None:
    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library)
    logging.getLogger("acctl").setLevel(acctl)


def configure_quiet_mode(quiet: bool = True):
    """
    Silence AWS SDK chatter and deprecation warnings.

    Args:
        quiet: If False, leave logging configuration unchanged.
    """
    if not quiet:
        return
    warnings.filterwarnings("ignore", category=DeprecationWarning)
    _set_levels(logging.ERROR, logging.WARNING)


def _has_stderr_handler(logger: logging.Logger) -> bool:
    return any(
        isinstance(h, logging.StreamHandler) and h.stream is sys.stderr
        for h in logger.handlers
    )


def enable_debug_mode():
    """Send acctl debug output to stderr (--verbose or ACCTL_VERBOSE=1)."""
    warnings.filterwarnings("default")
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    if not _has_stderr_handler(root):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S",
        ))
        root.addHandler(handler)
    # Wire-level botocore output is rarely useful
    _set_levels(logging.INFO, logging.DEBUG)


def configure_ops_log(config_dir) -> RotatingFileHandler:
    """
    Record account state changes in {config_dir}/acctl-ops.log.

    Saves, owner conflicts, initializations and account creations are logged
    at INFO or above whether or not --verbose is given. The file rotates at
    1MB and keeps 3 backups. A handler from a previous call is replaced. The
    handler is returned so callers can detach it.
    """
    global _ops_handler
    path = Path(config_dir) / _OPS_LOG
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(path), maxBytes=_OPS_LOG_MAX_BYTES, backupCount=_OPS_LOG_BACKUPS,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s [%(name)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S",
    ))

    logger = logging.getLogger("acctl")
    if _ops_handler is not None:
        logger.removeHandler(_ops_handler)
        _ops_handler.close()
    logger.addHandler(handler)
    _ops_handler = handler
    if logger.level == logging.NOTSET or logger.level > logging.INFO:
        logger.setLevel(logging.INFO)
    return handler
