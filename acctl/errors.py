"""
Error types and error logging utilities for acctl.

Per-account failures are attached to ``Account.err`` rather than raised, so
the exception classes here double as values. The CLI logs full stack traces
for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path

from botocore.exceptions import ClientError


class AcctlError(Exception):
    """Base class for acctl errors."""


class AccountNotFoundError(AcctlError, LookupError):
    """A static account spec entry did not match any account."""

    def __init__(self, what: str, key: str):
        self.what = what
        self.key = key
        super().__init__(f'account {what} "{key}" not found')


class NoCtlError(AcctlError):
    """Account control information has not been initialized."""

    def __init__(self, msg: str = "account control not initialized"):
        super().__init__(msg)


class CtlUpdateError(AcctlError):
    """Account control information was changed by someone else.

    Always recoverable: refresh control information and retry.
    """

    def __init__(self, msg: str = "account control update interrupted"):
        super().__init__(msg)


class CtlDecodeError(AcctlError, ValueError):
    """Stored control information is corrupt or uses an unknown version."""


class AccountCreationError(AcctlError):
    """Asynchronous account creation finished in a non-success state."""

    def __init__(self, reason: str):
        self.reason = reason or "UNKNOWN"
        super().__init__(f"account creation failed ({self.reason})")


class AllocationError(AcctlError):
    """Not enough free accounts matched an allocation request."""


def explain_error(err: BaseException | None) -> str:
    """Return a user-friendly representation of err."""
    if err is None:
        return ""
    if isinstance(err, ClientError):
        info = err.response.get("Error", {})
        return info.get("Message") or info.get("Code") or str(err)
    return str(err)


def _error_log_path() -> Path:
    """Resolve error log path, respecting ACCTL_HOME."""
    home = os.environ.get("ACCTL_HOME")
    if home:
        return Path(home) / "acctl-errors.log"
    return Path.home() / ".acctl" / "acctl-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log, don't crash over it
    return log_path
