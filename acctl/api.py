"""
Core API for account pool management.

The Controller ties the account control plane to an AWS organization:

    ctl = Controller()
    for ac in ctl.alloc(2, "!prod"):
        print(ac.id, ac.name)
    ctl.free("owner=me")

Accounts are listed once per Controller and cached. Control information is
loaded on demand and kept current by each operation.
"""

import logging
import threading
import time
from typing import Any, Iterable, Optional

import boto3

from . import tags as tagset
from .account import Account, Accounts
from .aws import Gateway, StaticCreds
from .config import AcctlConfig, load_or_create_config
from .ctl import Ctl
from .errors import AcctlError, AllocationError, NoCtlError, explain_error
from .provision import CreateAccountRequest, CreateAccountResult, create_accounts
from .spec import AccountSpec

logger = logging.getLogger(__name__)

# Tag assigned to newly initialized accounts when no tags are given
INIT_TAG = "init"


class Controller:
    """
    Account pool operations against one AWS organization.

    Args:
        config: Configuration, loaded from the default location if omitted
        gateway: Connected gateway; created from config on first use if omitted
    """

    def __init__(
        self,
        config: Optional[AcctlConfig] = None,
        gateway: Optional[Gateway] = None,
    ):
        self.config = config or load_or_create_config()
        self._gateway = gateway
        self._all: Optional[Accounts] = None
        self._lock = threading.Lock()

    @property
    def gateway(self) -> Gateway:
        if self._gateway is None:
            aws = self.config.aws
            session = boto3.Session(
                profile_name=aws.profile or None,
                region_name=aws.region or None,
            )
            gw = Gateway(
                session,
                master_role=aws.master_role,
                common_role=aws.common_role,
                iam_path=aws.iam_path,
            )
            gw.connect()
            self._gateway = gw
        return self._gateway

    @property
    def owner(self) -> str:
        """Owner identity of this client, which is also the meaning of "me"."""
        return self.gateway.common_role

    @property
    def workers(self) -> int:
        return self.config.exec.workers

    # -------------------------------------------------------------------------
    # Account selection
    # -------------------------------------------------------------------------

    def all_accounts(self, refresh: bool = False) -> Accounts:
        """Return all active accounts in the organization.

        The list is cached; refresh=True reloads it from the directory and
        discards cached control information.
        """
        with self._lock:
            if self._all is None or refresh:
                gw = self.gateway
                iam_factory = gw.iam_factory()
                self._all = Accounts(
                    Account(info.id, info.name).init(iam_factory, gw.creds_provider(info.id))
                    for info in gw.refresh()
                )
                logger.debug("Loaded %d accounts", len(self._all))
            return self._all

    def accounts(self, spec: str = "", refresh: bool = False) -> Accounts:
        """
        Return accounts matching spec, sorted by name.

        Raises:
            AccountNotFoundError: If spec names an account that does not exist
        """
        all = self.all_accounts(refresh)
        all.require_ctl(self.workers)
        return AccountSpec(spec, self.owner).filter(all).sort()

    # -------------------------------------------------------------------------
    # Allocation
    # -------------------------------------------------------------------------

    def alloc(self, num: Optional[int] = None, spec: str = "", owner: Optional[str] = None) -> Accounts:
        """
        Allocate free accounts matching spec by making them owned.

        If num is None, all matching free accounts are allocated. Otherwise,
        num accounts are picked at random. Ownership is confirmed by reading
        it back after a delay, since another client may have claimed the same
        account concurrently.

        Raises:
            AllocationError: If not enough free accounts are available. Any
                accounts allocated before the shortage was found are freed.
        """
        if num is not None and num < 1:
            raise ValueError("number of accounts must be positive")
        acs = self.accounts(spec).filter(Account.is_free).shuffle()
        n = len(acs) if num is None else num
        owner = owner or self.owner
        if not owner:
            raise AcctlError("owner identity is not configured")

        allocated = Accounts()
        while n > 0:
            if len(acs) < n:
                for ac in allocated:
                    ac.ctl.owner = ""
                allocated.save(self.workers)
                n -= len(acs)
                raise AllocationError(
                    f"allocation failed (need {n} more account{'' if n == 1 else 's'})"
                )

            batch, acs = acs[:n], acs[n:]
            for ac in batch:
                ac.ctl.owner = owner
            batch.save(self.workers)
            for ac in batch:
                if ac.err is not None and ac.ctl is not None:
                    ac.ctl.owner = ac.ref.owner
            batch.filter(lambda ac: ac.err is None)

            time.sleep(self.config.exec.alloc_verify_delay)

            batch.refresh_ctl(self.workers).filter(
                lambda ac: ac.err is None and ac.ctl.owner == owner
            )
            n -= len(batch)
            allocated.extend(batch)
            logger.info("Allocated %d account(s) to %s", len(batch), owner)
        return allocated.sort()

    def free(self, spec: str = "", force: bool = False) -> Accounts:
        """Free accounts owned by this client, or any owned accounts if force."""
        acs = self.accounts(spec).filter(
            lambda ac: ac.err is None and ac.ctl is not None and ac.ctl.owner != ""
            and (force or ac.ctl.owner == self.owner)
        )
        for ac in acs:
            ac.ctl.owner = ""
        return acs.save(self.workers)

    # -------------------------------------------------------------------------
    # Control information
    # -------------------------------------------------------------------------

    def update(self, spec: str = "", tags: Optional[str] = None, desc: Optional[str] = None) -> Accounts:
        """
        Change tags and/or description of matching accounts.

        tags is a comma-separated list of tags to set; "!tag" clears a tag.

        Raises:
            ValueError: If neither tags nor desc is given, or tags are invalid
        """
        if tags is None and desc is None:
            raise ValueError("nothing to update (tags or description required)")
        edit = AccountSpec(tags or "")
        edit.update_tags([])  # Validate before touching any account

        acs = self.accounts(spec).filter(lambda ac: ac.err is None and ac.ctl is not None)
        for ac in acs:
            if tags:
                ac.ctl.tags = edit.update_tags(ac.ctl.tags)
            if desc is not None:
                ac.ctl.desc = desc
        return acs.save(self.workers)

    def init(
        self,
        spec: str = "",
        owner: str = "",
        desc: str = "",
        tags: Optional[Iterable[str]] = None,
    ) -> Accounts:
        """
        Create control information in matching accounts that have none.

        Accounts without control information only match specs that include
        "err" or name them directly. Accounts that are already initialized
        get an error result.
        """
        ctl_tags = tagset.normalize(tags) if tags is not None else [INIT_TAG]
        for tag in ctl_tags:
            tagset.parse_tag(tag)
        acs = self.accounts(spec)

        def fn(ac: Account) -> None:
            if ac.ctl is None:
                ac.init_ctl(Ctl(owner=owner, desc=desc, tags=list(ctl_tags)))
            elif ac.err is None:
                ac.err = AcctlError("already initialized")

        return acs.apply(fn, self.workers)

    def rmctl(self, spec: str) -> Accounts:
        """Delete control information from matching accounts."""
        acs = self.accounts(spec)

        def fn(ac: Account) -> None:
            if ac.err is None:
                ac.delete_ctl()

        return acs.apply(fn, self.workers)

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------

    def creds(self, spec: str = "", renew: bool = False) -> list[dict[str, str]]:
        """
        Return temporary credentials for matching accounts.

        Credentials are cached until shortly before they expire; renew=True
        requests new ones. Accounts with errors get an error row instead.
        """
        acs = self.accounts(spec)
        got: dict[str, StaticCreds] = {}

        def fn(ac: Account) -> None:
            if ac.err is None:
                got[ac.id] = ac.creds(renew)

        acs.apply(fn, self.workers)
        return creds_rows(acs, got)

    # -------------------------------------------------------------------------
    # Provisioning
    # -------------------------------------------------------------------------

    def create(self, names: Iterable[str], email_template: str) -> list[CreateAccountResult]:
        """
        Create new accounts in the organization.

        email_template is formatted with {name} set to each account name. New
        accounts are added to the cached account list without control
        information; use init to create it.
        """
        names = list(names)
        if "@" not in email_template:
            raise ValueError(f"invalid email address template {email_template!r}")
        if "{name}" not in email_template and len(names) > 1:
            raise ValueError("email template must contain {name} to create multiple accounts")
        gw = self.gateway
        if not gw.is_master():
            raise AcctlError("account creation requires the organization master account")

        requests = [CreateAccountRequest(name, email_template.format(name=name)) for name in names]
        results = []
        all = self.all_accounts()
        iam_factory = gw.iam_factory()
        for r in create_accounts(
            gw.orgs_client(),
            requests,
            workers=self.config.exec.create_workers,
            poll_interval=self.config.exec.poll_interval,
        ):
            if r.ok:
                gw.update(r.account)
                with self._lock:
                    all.append(Account(r.account.id, r.account.name).init(
                        iam_factory, gw.creds_provider(r.account.id)))
            results.append(r)
        results.sort(key=lambda r: r.account.name)
        return results


# -----------------------------------------------------------------------------
# Output rows
# -----------------------------------------------------------------------------

def account_rows(acs: Accounts) -> list[dict[str, Any]]:
    """Describe accounts and their control information."""
    rows = []
    for ac in acs:
        if ac.err is None and ac.ctl is None:
            ac.err = NoCtlError()
        row = {
            "id": ac.id,
            "name": ac.name,
            "owner": "",
            "desc": "",
            "tags": "",
            "error": explain_error(ac.err),
        }
        if ac.ctl is not None:
            row["owner"] = ac.ctl.owner
            row["desc"] = ac.ctl.desc
            row["tags"] = tagset.format_tags(ac.ctl.tags)
        rows.append(row)
    return rows


def result_rows(acs: Accounts) -> list[dict[str, str]]:
    """Describe the outcome of an operation on each account."""
    return [
        {
            "id": ac.id,
            "name": ac.name,
            "result": "OK" if ac.err is None else "ERROR: " + explain_error(ac.err),
        }
        for ac in acs
    ]


def create_rows(results: list[CreateAccountResult]) -> list[dict[str, str]]:
    return [
        {
            "id": r.account.id,
            "name": r.account.name,
            "email": r.account.email,
            "result": "OK" if r.ok else "ERROR: " + explain_error(r.err),
        }
        for r in results
    ]


def creds_rows(acs: Accounts, creds: dict[str, StaticCreds]) -> list[dict[str, str]]:
    """Describe account credentials, keyed by account id in creds."""
    rows = []
    for ac in acs:
        row = {
            "id": ac.id,
            "name": ac.name,
            "expires": "",
            "access_key_id": "",
            "secret_access_key": "",
            "session_token": "",
            "error": explain_error(ac.err),
        }
        cr = creds.get(ac.id)
        if ac.err is None and cr is not None:
            row["expires"] = cr.expiration.isoformat() if cr.expiration else ""
            row["access_key_id"] = cr.access_key_id
            row["secret_access_key"] = cr.secret_access_key
            row["session_token"] = cr.session_token
        rows.append(row)
    return rows
