"""
Account provisioning.

Organizations creates accounts asynchronously and limits the number of
creation requests in progress, so requests are processed by a small pool of
worker threads. Each worker submits a request, polls its status until it
leaves IN_PROGRESS, and reports the result. Results are produced in the
order in which accounts finish, not in request order.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from .aws import AccountInfo
from .errors import AccountCreationError
from .protocol import OrgsClient

logger = logging.getLogger(__name__)

# Only 5 accounts may be created at the same time
MAX_CREATE_WORKERS = 5

DEFAULT_POLL_INTERVAL = 1.0

_IN_PROGRESS = "IN_PROGRESS"
_SUCCEEDED = "SUCCEEDED"


@dataclass
class CreateAccountRequest:
    """Name and root email of a new account.

    role_name, if set, is the role that Organizations creates in the new
    account for access from the master account.
    """
    name: str
    email: str
    role_name: str = ""


@dataclass
class CreateAccountResult:
    """
    Outcome of one creation request.

    On failure, ``account`` carries the requested name and email and ``err``
    holds the error.
    """
    account: AccountInfo
    err: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.err is None


def create_accounts(
    orgs: OrgsClient,
    requests: Iterable[CreateAccountRequest],
    workers: int = MAX_CREATE_WORKERS,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
) -> Iterator[CreateAccountResult]:
    """
    Create new accounts and yield the results as they complete.

    Every request produces exactly one result. Worker threads are started on
    the first iteration; abandoning the iterator leaves them to finish the
    requests already in the queue.
    """
    pending: "queue.Queue[CreateAccountRequest]" = queue.Queue()
    for req in requests:
        pending.put(req)
    total = pending.qsize()
    if total == 0:
        return
    n = max(1, min(workers, MAX_CREATE_WORKERS, total))

    done: "queue.Queue[CreateAccountResult]" = queue.Queue()

    def worker() -> None:
        while True:
            try:
                req = pending.get_nowait()
            except queue.Empty:
                return
            done.put(_create_account(orgs, req, poll_interval))

    logger.info("Creating %d account(s) with %d worker(s)", total, n)
    for i in range(n):
        threading.Thread(target=worker, name=f"acctl-create-{i}", daemon=True).start()
    for _ in range(total):
        yield done.get()


def _create_account(
    orgs: OrgsClient,
    req: CreateAccountRequest,
    poll_interval: float,
) -> CreateAccountResult:
    try:
        info = _submit_and_wait(orgs, req, poll_interval)
    except Exception as e:
        logger.warning("Failed to create account %r: %s", req.name, e)
        return CreateAccountResult(AccountInfo(id="", name=req.name, email=req.email, status=""), e)
    logger.info("Created account %s (%s)", info.id, info.name)
    return CreateAccountResult(info)


def _submit_and_wait(
    orgs: OrgsClient,
    req: CreateAccountRequest,
    poll_interval: float,
) -> AccountInfo:
    params = {"AccountName": req.name, "Email": req.email}
    if req.role_name:
        params["RoleName"] = req.role_name
    status = orgs.create_account(**params)["CreateAccountStatus"]
    logger.debug("Account creation request %s submitted for %r", status.get("Id"), req.name)
    while status.get("State") == _IN_PROGRESS:
        time.sleep(poll_interval)
        out = orgs.describe_create_account_status(CreateAccountRequestId=status["Id"])
        status = out["CreateAccountStatus"]
    if status.get("State") != _SUCCEEDED:
        raise AccountCreationError(status.get("FailureReason", ""))
    out = orgs.describe_account(AccountId=status["AccountId"])
    return AccountInfo.from_api(out["Account"])
