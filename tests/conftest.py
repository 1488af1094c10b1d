"""
Shared pytest fixtures for acctl tests.

Provides in-memory IAM and Organizations fakes so tests never touch AWS.
Fakes raise real botocore ClientError exceptions with the codes AWS uses.
"""

import threading
from typing import Any, Callable, Optional

import pytest
from botocore.exceptions import ClientError

from acctl import tags as tagset
from acctl.account import Account, Accounts
from acctl.aws import IAM_PATH, AccountInfo, StaticCreds
from acctl.config import AcctlConfig, ExecConfig
from acctl.ctl import CTL_ROLE, Ctl


def client_error(code: str, message: str = "", operation: str = "Op") -> ClientError:
    """Build a ClientError the way botocore reports service errors."""
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


def account_id(n: int | str) -> str:
    """Format a short number as a 12-digit account id."""
    return "%012d" % int(n)


class FakeIAM:
    """
    In-memory IAM client for a single account.

    Attributes:
        roles: Role name -> {"Path", "Description", "AssumeRolePolicyDocument"}
        calls: Names of API methods called, in order
        errors: Method name -> exception raised on every call
        echo: If set, description returned by update_role_description
            instead of the stored value
        after_get: One-shot hook run after the next get_role, used to simulate
            a concurrent writer
    """

    def __init__(self):
        self.roles: dict[str, dict[str, str]] = {}
        self.calls: list[str] = []
        self.errors: dict[str, Exception] = {}
        self.echo: Optional[str] = None
        self.after_get: Optional[Callable[["FakeIAM"], None]] = None
        self._lock = threading.RLock()

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.errors:
            raise self.errors[name]

    def _missing(self, name: str, operation: str) -> ClientError:
        return client_error(
            "NoSuchEntity", f"The role with name {name} cannot be found.", operation,
        )

    def get_role(self, *, RoleName: str) -> dict[str, Any]:
        with self._lock:
            self._call("get_role")
            role = self.roles.get(RoleName)
            if role is None:
                raise self._missing(RoleName, "GetRole")
            out = {"RoleName": RoleName, "Path": role["Path"]}
            if role["Description"]:
                out["Description"] = role["Description"]
            hook, self.after_get = self.after_get, None
            if hook is not None:
                hook(self)
            return {"Role": out}

    def create_role(
        self,
        *,
        RoleName: str,
        AssumeRolePolicyDocument: str,
        Description: str = "",
        Path: str = "/",
    ) -> dict[str, Any]:
        with self._lock:
            self._call("create_role")
            if RoleName in self.roles:
                raise client_error(
                    "EntityAlreadyExists", f"Role with name {RoleName} already exists.",
                    "CreateRole",
                )
            self.roles[RoleName] = {
                "Path": Path,
                "Description": Description,
                "AssumeRolePolicyDocument": AssumeRolePolicyDocument,
            }
            # CreateRole does not return the description
            return {"Role": {"RoleName": RoleName, "Path": Path}}

    def update_role_description(self, *, RoleName: str, Description: str) -> dict[str, Any]:
        with self._lock:
            self._call("update_role_description")
            role = self.roles.get(RoleName)
            if role is None:
                raise self._missing(RoleName, "UpdateRoleDescription")
            role["Description"] = Description
            returned = Description if self.echo is None else self.echo
            return {"Role": {"RoleName": RoleName, "Path": role["Path"], "Description": returned}}

    def delete_role(self, *, RoleName: str) -> dict[str, Any]:
        with self._lock:
            self._call("delete_role")
            if self.roles.pop(RoleName, None) is None:
                raise self._missing(RoleName, "DeleteRole")
            return {}

    # Helpers for tests

    def set_ctl(self, ctl: Ctl) -> None:
        with self._lock:
            self.roles[CTL_ROLE] = {
                "Path": IAM_PATH,
                "Description": ctl.copy().encode(),
                "AssumeRolePolicyDocument": "",
            }

    def get_ctl(self) -> Ctl:
        with self._lock:
            return Ctl.decode(self.roles[CTL_ROLE]["Description"])

    def writes(self) -> int:
        return self.calls.count("update_role_description")


class FakeOrgs:
    """
    In-memory Organizations client.

    Account creation stays IN_PROGRESS for ``polls`` status checks. Names
    listed in ``fail`` finish in the FAILED state with the given reason.
    """

    def __init__(self, accounts: Optional[list[AccountInfo]] = None, polls: int = 1):
        self.accounts: dict[str, AccountInfo] = {a.id: a for a in (accounts or [])}
        self.polls = polls
        self.fail: dict[str, str] = {}
        self.errors: dict[str, Exception] = {}
        self.created: list[str] = []
        self.status_calls = 0
        self._requests: dict[str, dict[str, Any]] = {}
        self._next_id = 900
        self._lock = threading.Lock()

    def create_account(self, *, AccountName: str, Email: str, **kwargs) -> dict[str, Any]:
        with self._lock:
            if "create_account" in self.errors:
                raise self.errors["create_account"]
            req_id = f"car-{len(self._requests) + 1}"
            self._requests[req_id] = {"name": AccountName, "email": Email, "polls": self.polls}
            return {"CreateAccountStatus": {
                "Id": req_id, "AccountName": AccountName, "State": "IN_PROGRESS",
            }}

    def describe_create_account_status(self, *, CreateAccountRequestId: str) -> dict[str, Any]:
        with self._lock:
            self.status_calls += 1
            req = self._requests[CreateAccountRequestId]
            status = {"Id": CreateAccountRequestId, "AccountName": req["name"]}
            req["polls"] -= 1
            if req["polls"] > 0:
                status["State"] = "IN_PROGRESS"
            elif req["name"] in self.fail:
                status["State"] = "FAILED"
                status["FailureReason"] = self.fail[req["name"]]
            else:
                if "id" not in req:
                    self._next_id += 1
                    req["id"] = account_id(self._next_id)
                    self.accounts[req["id"]] = AccountInfo(req["id"], req["name"], req["email"])
                    self.created.append(req["name"])
                status["State"] = "SUCCEEDED"
                status["AccountId"] = req["id"]
            return {"CreateAccountStatus": status}

    def describe_account(self, *, AccountId: str) -> dict[str, Any]:
        with self._lock:
            info = self.accounts.get(AccountId)
            if info is None:
                raise client_error("AccountNotFoundException", "not found", "DescribeAccount")
            return {"Account": {
                "Id": info.id, "Name": info.name, "Email": info.email, "Status": info.status,
            }}


class FakeGateway:
    """
    Stand-in for acctl.aws.Gateway backed by FakeIAM and FakeOrgs.

    Each account gets static credentials whose access key is the account
    id, so the IAM factory can route clients to the right FakeIAM.
    """

    def __init__(self, common_role: str = "alice", master: bool = True):
        self.common_role = common_role
        self.master = master
        self.iams: dict[str, FakeIAM] = {}
        self.orgs = FakeOrgs(polls=1)
        self.refreshes = 0

    def add(self, n: int | str, name: str = "", ctl: Optional[Ctl] = None) -> FakeIAM:
        ac_id = account_id(n)
        iam = FakeIAM()
        if ctl is not None:
            iam.set_ctl(ctl)
        self.iams[ac_id] = iam
        self.orgs.accounts[ac_id] = AccountInfo(ac_id, name or f"acct{int(n)}")
        return iam

    def refresh(self) -> list[AccountInfo]:
        self.refreshes += 1
        return self.accounts()

    def accounts(self) -> list[AccountInfo]:
        return [a for a in self.orgs.accounts.values() if a.status == "ACTIVE"]

    def update(self, info: AccountInfo) -> None:
        self.orgs.accounts[info.id] = info
        self.iams.setdefault(info.id, FakeIAM())

    def is_master(self) -> bool:
        return self.master

    def orgs_client(self) -> FakeOrgs:
        return self.orgs

    def creds_provider(self, ac_id: str) -> StaticCreds:
        return StaticCreds(access_key_id=ac_id, secret_access_key="secret", session_token="token")

    def iam_factory(self) -> Callable[[Optional[dict]], FakeIAM]:
        return lambda creds: self.iams[creds["AccessKeyId"]]


def make_accounts(rows: list[dict[str, str]]) -> Accounts:
    """
    Build accounts with loaded control information.

    Each row may contain id (short number), name, owner, tags
    (comma-separated) and err. Accounts with err have no control information.
    """
    acs = Accounts()
    for row in rows:
        set_, _ = tagset.parse_tags(row.get("tags", ""))
        ac = Account(account_id(row["id"]), row.get("name", ""))
        if row.get("err"):
            ac.err = Exception(row["err"])
        else:
            ac.ctl = Ctl(owner=row.get("owner", ""), tags=set_)
        acs.append(ac)
    return acs


def short_ids(acs: Accounts) -> str:
    """Return account ids without leading zeros, comma-separated."""
    return ",".join(ac.id.lstrip("0") for ac in acs)


def iam_account(iam: FakeIAM, n: int | str = 1, name: str = "") -> Account:
    """Create an account whose IAM client is iam."""
    return Account(account_id(n), name or f"acct{int(n)}").init(lambda creds: iam)


@pytest.fixture
def iam():
    """A fresh FakeIAM with no control role."""
    return FakeIAM()


@pytest.fixture
def gateway():
    """A FakeGateway owned by "alice" with no accounts."""
    return FakeGateway()


@pytest.fixture
def config(tmp_path):
    """Configuration without delays, stored in a temporary directory."""
    return AcctlConfig(
        path=tmp_path,
        exec=ExecConfig(workers=4, create_workers=5, poll_interval=0.0, alloc_verify_delay=0.0),
    )
