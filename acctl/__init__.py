"""
acctl: shared AWS account pool management

A pool of AWS accounts in one organization is shared by many users. Each
account stores a small control record (owner, description, tags) in the
description of a dedicated IAM role. Users select accounts with account
specs, allocate them by setting the owner, tag them, and free them again.

Quick Start:
    from acctl import Controller

    ctl = Controller()      # uses ~/.acctl/acctl.toml
    acs = ctl.alloc(2, "dev,!prod")
    ctl.update("owner=me", tags="busy")
    ctl.free("owner=me")

CLI Usage:
    acctl list "owner=me"
    acctl alloc 2 "dev,!prod"
    acctl tag "busy,!idle" "owner=me"
    acctl free

Account Specs:
    Comma-separated entries. Account ids or names select those accounts.
    Otherwise entries are tags that must be present ("dev") or absent
    ("!prod"), owner criteria ("owner", "!owner", "owner=me",
    "owner!=name"), and "err" to include accounts that cannot be accessed
    or have no control information.

Environment Variables:
    ACCTL_HOME         - Config directory (default: ~/.acctl)
    ACCTL_MASTER_ROLE  - Role assumed in the organization master account
    ACCTL_COMMON_ROLE  - Role assumed in every account (owner identity)
    ACCTL_REGION       - AWS region
    ACCTL_PROFILE      - AWS credentials profile
    ACCTL_WORKERS      - Maximum concurrent per-account operations
"""

from .account import Account, Accounts
from .api import Controller
from .ctl import Ctl
from .errors import (
    AccountCreationError,
    AccountNotFoundError,
    AcctlError,
    AllocationError,
    CtlDecodeError,
    CtlUpdateError,
    NoCtlError,
)
from .provision import CreateAccountRequest, CreateAccountResult, create_accounts
from .spec import AccountSpec

__version__ = "0.1.0"
__all__ = [
    "Account",
    "Accounts",
    "AccountSpec",
    "Controller",
    "Ctl",
    "CreateAccountRequest",
    "CreateAccountResult",
    "create_accounts",
    "AcctlError",
    "AccountCreationError",
    "AccountNotFoundError",
    "AllocationError",
    "CtlDecodeError",
    "CtlUpdateError",
    "NoCtlError",
]
