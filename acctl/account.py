"""
Accounts and bulk account operations.

An ``Account`` pairs an organization account identity with its control
information. ``ctl`` is the caller's working copy; ``ref`` is the record most
recently read from (or written to) the account and serves as the merge base
when saving. Each account keeps its own baseline, so operations on different
accounts never interact.

``Accounts`` runs per-account work on a fixed-size thread pool. The work is
bound by API calls, so the pool size only limits how many requests are in
flight at once. A failure is recorded in that account's ``err`` and never
affects its siblings.
"""

import logging
import random
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, Optional

from .aws import StaticCreds
from .ctl import Ctl
from .errors import AcctlError, CtlUpdateError, NoCtlError
from .protocol import CredsProvider, IAMClient

logger = logging.getLogger(__name__)

# Maximum number of concurrent per-account operations
DEFAULT_WORKERS = 50


class Account:
    """
    An account in an AWS organization.

    Attributes:
        id: 12-digit account id
        name: Account name
        ctl: Working control information, None until loaded
        err: Error from the most recent operation, if any
        ref: Last control information read from or written to the account
    """

    def __init__(
        self,
        id: str,
        name: str = "",
        ctl: Optional[Ctl] = None,
        err: Optional[BaseException] = None,
    ):
        self.id = id
        self.name = name
        self.ctl = ctl
        self.err = err
        self.ref = Ctl()
        self._iam_factory: Optional[Callable[[Optional[dict]], IAMClient]] = None
        self._creds: Optional[CredsProvider] = None
        self._iam: Optional[IAMClient] = None
        self._iam_key: Optional[str] = None

    def __repr__(self) -> str:
        return f"Account(id={self.id!r}, name={self.name!r})"

    def init(
        self,
        iam_factory: Callable[[Optional[dict]], IAMClient],
        creds: Optional[CredsProvider] = None,
    ) -> "Account":
        """
        Attach the IAM client factory and credentials provider.

        The factory receives the current credentials mapping (or None when
        there is no provider) and returns an IAM client.
        """
        self._iam_factory = iam_factory
        self._creds = creds
        self._iam = None
        self._iam_key = None
        return self

    def iam(self) -> IAMClient:
        """Return an IAM client using current account credentials."""
        if self._iam_factory is None:
            raise AcctlError("account not initialized")
        value = self._creds.get() if self._creds is not None else None
        key = value.get("AccessKeyId") if value else None
        if self._iam is None or key != self._iam_key:
            self._iam = self._iam_factory(value)
            self._iam_key = key
        return self._iam

    def creds(self, renew: bool = False) -> StaticCreds:
        """Return temporary account credentials, renewing them if requested."""
        if self._creds is None:
            raise AcctlError("account not initialized")
        if renew and not isinstance(self._creds, StaticCreds):
            self._creds.reset()
        return StaticCreds.from_mapping(self._creds.get())

    def is_free(self) -> bool:
        return self.err is None and self.ctl is not None and not self.ctl.owner

    # -------------------------------------------------------------------------
    # Control information
    # -------------------------------------------------------------------------

    def refresh_ctl(self) -> None:
        """Load current control information into ref and ctl."""
        try:
            self.ref.load(self.iam())
        except Exception:
            self.ctl = None
            raise
        if self.ctl is None:
            self.ctl = Ctl()
        self.ctl.assign(self.ref)
        self.err = None

    def save_ctl(self) -> None:
        """
        Merge ctl changes with the current state and store the result.

        Raises:
            NoCtlError: If there is no working control information
            CtlUpdateError: If the owner was changed by someone else, or the
                stored value changed during the update
        """
        if self.ctl is None:
            if self.err is None:
                self.err = NoCtlError()
            return

        # Get current state and merge changes
        cur = Ctl()
        cur.load(self.iam())
        self.ctl.merge(cur, self.ref)
        if self.ctl == cur:
            self.ref = cur
            self.err = None
            return

        # Changing the owner requires that current and reference states match
        if self.ctl.owner_conflict(cur, self.ref):
            self.ref = cur
            logger.warning("Account %s owner changed to %r by someone else", self.id, cur.owner)
            raise CtlUpdateError()

        self.ctl.store(self.iam())
        self.ref = self.ctl.copy()
        self.err = None
        logger.info("Saved control information for account %s", self.id)

    def init_ctl(self, ctl: Ctl) -> None:
        """Create control information in an account that has none."""
        ctl.init(self.iam())
        self.ref = ctl.copy()
        self.ctl = ctl.copy()
        self.err = None
        logger.info("Initialized control information for account %s", self.id)

    def delete_ctl(self) -> None:
        """Delete control information from the account."""
        Ctl().delete(self.iam())
        self.ref = Ctl()
        self.ctl = None
        self.err = None
        logger.info("Deleted control information for account %s", self.id)


def _by_name(ac: Account) -> tuple[str, str]:
    return ac.name, ac.id


class Accounts(list):
    """A group of accounts that can be operated on concurrently."""

    def __init__(self, accounts: Iterable[Account] = ()):
        super().__init__(accounts)

    def __getitem__(self, i):
        r = super().__getitem__(i)
        return Accounts(r) if isinstance(i, slice) else r

    def sort(self, key: Optional[Callable[[Account], Any]] = None, reverse: bool = False) -> "Accounts":
        """Sort accounts by name, then id. Returns self."""
        super().sort(key=key or _by_name, reverse=reverse)
        return self

    def shuffle(self) -> "Accounts":
        """Randomize account order. Returns self."""
        random.shuffle(self)
        return self

    def filter(self, fn: Callable[[Account], bool]) -> "Accounts":
        """Remove accounts for which fn returns False, in place. Returns self."""
        n = 0
        for ac in self:
            if fn(ac):
                if self[n] is not ac:
                    self[n] = ac
                n += 1
        del self[n:]
        return self

    def apply(self, fn: Callable[[Account], None], workers: int = DEFAULT_WORKERS) -> "Accounts":
        """
        Run fn on each account concurrently and wait for all calls to finish.

        An exception raised by fn is stored in that account's err.
        """
        n = min(workers, len(self))
        if n <= 0:
            return self

        def run(ac: Account) -> None:
            try:
                fn(ac)
            except Exception as e:
                logger.debug("Account %s: %s", ac.id, e)
                ac.err = e

        with ThreadPoolExecutor(max_workers=n) as ex:
            for _ in ex.map(run, self):
                pass
        return self

    def require_ctl(self, workers: int = DEFAULT_WORKERS) -> "Accounts":
        """
        Ensure that all accounts have control information. Existing
        information is not refreshed; accounts with errors are skipped.
        """
        missing = Accounts(ac for ac in self if ac.ctl is None and ac.err is None)
        if missing:
            missing.refresh_ctl(workers)
        return self

    def refresh_ctl(self, workers: int = DEFAULT_WORKERS) -> "Accounts":
        """Retrieve current control information for all accounts."""
        return self.apply(Account.refresh_ctl, workers)

    def save(self, workers: int = DEFAULT_WORKERS) -> "Accounts":
        """
        Save control information changes for all accounts.

        When changing the owner, callers should refresh control information
        after a delay to confirm that the change stuck.
        """
        return self.apply(Account.save_ctl, workers)
