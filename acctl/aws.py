"""
AWS gateway.

Connects to AWS with boto3, lists organization accounts, and produces
per-account credentials and IAM clients. Member accounts are accessed by
assuming the common role in each of them. If the caller is not in the
organization master account, Organizations calls go through the master role,
which requires an external id derived from organization information.
"""

import hashlib
import hmac
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from .errors import AcctlError

logger = logging.getLogger(__name__)

# Default IAM path for roles managed by acctl
IAM_PATH = "/oktapus/"

# Master role assumed in the organization master account
DEFAULT_MASTER_ROLE = IAM_PATH[1:] + "OktapusOrganizationsProxy"

# Renew cached credentials this long before they expire
CREDS_EXPIRY_MARGIN = timedelta(minutes=5)

# Requested lifetime of assumed role credentials
CREDS_DURATION_SECONDS = 3600


class CredsExpiredError(AcctlError):
    """Static credentials are no longer valid."""

    def __init__(self, msg: str = "credentials have expired"):
        super().__init__(msg)


def error_code(err: BaseException) -> str:
    """Return the AWS error code of err, or an empty string."""
    if isinstance(err, ClientError):
        return err.response.get("Error", {}).get("Code", "")
    return ""


def is_account_id(s: str) -> bool:
    """Check if s is a valid AWS account id (exactly 12 ASCII digits)."""
    return len(s) == 12 and s.isascii() and s.isdigit()


def role_arn(account_id: str, role: str) -> str:
    """Return the IAM role ARN for the given account id and role name."""
    return f"arn:aws:iam::{account_id}:role/{role}"


def assume_role_policy(effect: str, principal: str) -> str:
    """
    Return an assume role (trust) policy document.

    ``assume_role_policy("Deny", "*")`` produces a policy that nobody can
    satisfy, which is what the control role uses.
    """
    doc = {
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": effect,
            "Principal": {"AWS": principal},
            "Action": "sts:AssumeRole",
        }],
    }
    return json.dumps(doc, separators=(",", ":"))


def session_name(user_id: str, user_arn: str) -> str:
    """Derive the role session name for new sessions from the caller identity."""
    if ":" in user_id:
        return user_id.split(":", 1)[1]
    resource = user_arn.split(":", 5)[-1] if user_arn.count(":") >= 5 else ""
    if resource.startswith("user/"):
        return resource.rsplit("/", 1)[1]
    if resource == "root":
        return "OrganizationAccountAccessRole"
    return user_id


# -----------------------------------------------------------------------------
# Credentials
# -----------------------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StaticCreds:
    """Fixed credentials that are valid until their expiration time."""
    access_key_id: str
    secret_access_key: str
    session_token: str = ""
    expiration: Optional[datetime] = None

    @classmethod
    def from_mapping(cls, creds: dict[str, Any]) -> "StaticCreds":
        """Create from an STS ``Credentials`` mapping."""
        exp = creds.get("Expiration")
        if isinstance(exp, str):
            exp = datetime.fromisoformat(exp.replace("Z", "+00:00"))
        if exp is not None and exp.tzinfo is None:
            exp = exp.replace(tzinfo=timezone.utc)
        return cls(
            access_key_id=creds["AccessKeyId"],
            secret_access_key=creds["SecretAccessKey"],
            session_token=creds.get("SessionToken", ""),
            expiration=exp,
        )

    def valid(self, margin: timedelta = timedelta(0)) -> bool:
        """Check if the credentials will still be valid after margin."""
        return self.expiration is None or self.expiration - margin > _now()

    def get(self) -> dict[str, Any]:
        if not self.valid():
            raise CredsExpiredError()
        return {
            "AccessKeyId": self.access_key_id,
            "SecretAccessKey": self.secret_access_key,
            "SessionToken": self.session_token,
            "Expiration": self.expiration,
        }

    def reset(self) -> None:
        """Force the credentials to expire."""
        self.expiration = datetime.min.replace(tzinfo=timezone.utc)


class AssumeRoleCreds:
    """
    Credentials obtained by calling sts:AssumeRole, cached until shortly
    before they expire.

    Safe to share between threads.
    """

    def __init__(
        self,
        sts,
        role: str,
        session: str,
        *,
        external_id: Optional[str] = None,
        duration: int = CREDS_DURATION_SECONDS,
    ):
        self.role = role
        self.session = session
        self._sts = sts
        self._external_id = external_id
        self._duration = duration
        self._cached: Optional[StaticCreds] = None
        self._lock = threading.Lock()

    def get(self) -> dict[str, Any]:
        with self._lock:
            if self._cached is None or not self._cached.valid(CREDS_EXPIRY_MARGIN):
                self._cached = self._retrieve()
            return self._cached.get()

    def reset(self) -> None:
        with self._lock:
            self._cached = None

    def _retrieve(self) -> StaticCreds:
        params: dict[str, Any] = {
            "RoleArn": self.role,
            "RoleSessionName": self.session,
            "DurationSeconds": self._duration,
        }
        if self._external_id:
            params["ExternalId"] = self._external_id
        logger.debug("Assuming role %s", self.role)
        out = self._sts.assume_role(**params)
        return StaticCreds.from_mapping(out["Credentials"])


# -----------------------------------------------------------------------------
# Gateway
# -----------------------------------------------------------------------------

@dataclass
class AccountInfo:
    """Organization account as reported by the directory."""
    id: str
    name: str
    email: str = ""
    status: str = "ACTIVE"

    @classmethod
    def from_api(cls, ac: dict[str, Any]) -> "AccountInfo":
        return cls(
            id=ac.get("Id", ""),
            name=ac.get("Name", ""),
            email=ac.get("Email", ""),
            status=ac.get("Status", ""),
        )


def default_boto_config() -> BotoConfig:
    return BotoConfig(retries={"max_attempts": 5, "mode": "standard"})


class Gateway:
    """
    Entry point to an AWS organization.

    ``connect()`` must be called before anything else. The common role is
    the role assumed in every member account; its name also serves as the
    owner identity of this client.
    """

    def __init__(
        self,
        session: Optional[boto3.Session] = None,
        *,
        master_role: str = "",
        common_role: str = "",
        iam_path: str = IAM_PATH,
        boto_config: Optional[BotoConfig] = None,
    ):
        self._session = session or boto3.Session()
        self._config = boto_config or default_boto_config()
        self.master_role = master_role or DEFAULT_MASTER_ROLE
        self.common_role = common_role
        self.iam_path = iam_path
        self.ident: dict[str, str] = {}
        self.org: dict[str, str] = {}
        self._sts = None
        self._orgs = None
        self._session_name = ""
        self._accounts: dict[str, AccountInfo] = {}
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Get caller identity and organization information."""
        if self._sts is not None:
            raise AcctlError("gateway already connected")
        sts = self._session.client("sts", config=self._config)
        orgs = self._session.client("organizations", config=self._config)
        out = sts.get_caller_identity()
        self.ident = {
            "AccountId": out.get("Account", ""),
            "UserArn": out.get("Arn", ""),
            "UserId": out.get("UserId", ""),
        }
        self.org = orgs.describe_organization()["Organization"]
        self._sts = sts
        self._session_name = session_name(self.ident["UserId"], self.ident["UserArn"])
        if not self.common_role:
            self.common_role = self.iam_path.lstrip("/") + self._session_name
        if self.is_master():
            self._orgs = orgs
        else:
            proxy = self._proxy_creds().get()
            self._orgs = self._client("organizations", proxy)
        logger.info(
            "Connected to organization %s as %s",
            self.org.get("Id", ""), self.ident["UserArn"],
        )

    def is_master(self) -> bool:
        """Check if the caller is in the organization master account."""
        acct = self.ident.get("AccountId", "")
        return bool(acct) and acct == self.org.get("MasterAccountId")

    def orgs_client(self):
        """Return the Organizations client."""
        self._require_connected()
        return self._orgs

    def refresh(self) -> list[AccountInfo]:
        """Reload the list of active accounts in the organization."""
        self._require_connected()
        found: dict[str, AccountInfo] = {}
        for page in self._orgs.get_paginator("list_accounts").paginate():
            for ac in page.get("Accounts", []):
                info = AccountInfo.from_api(ac)
                if info.status == "ACTIVE":
                    found[info.id] = info
        with self._lock:
            self._accounts = found
        logger.debug("Found %d active accounts", len(found))
        return self.accounts()

    def accounts(self) -> list[AccountInfo]:
        with self._lock:
            return list(self._accounts.values())

    def update(self, info: AccountInfo) -> None:
        """Add or replace directory information for one account."""
        with self._lock:
            self._accounts[info.id] = info

    def creds_provider(self, account_id: str) -> AssumeRoleCreds:
        """Return a credentials provider for the common role in account_id."""
        self._require_connected()
        return AssumeRoleCreds(
            self._sts, role_arn(account_id, self.common_role), self._session_name,
        )

    def iam_factory(self) -> Callable[[Optional[dict[str, Any]]], Any]:
        """Return a function that creates an IAM client from credentials."""
        return lambda creds: self._client("iam", creds)

    def _client(self, service: str, creds: Optional[dict[str, Any]]):
        if creds is None:
            return self._session.client(service, config=self._config)
        return self._session.client(
            service,
            aws_access_key_id=creds["AccessKeyId"],
            aws_secret_access_key=creds["SecretAccessKey"],
            aws_session_token=creds.get("SessionToken") or None,
            config=self._config,
        )

    def _proxy_creds(self) -> AssumeRoleCreds:
        """Credentials for the master role, which requires an external id."""
        org_id = self.org.get("Id", "")
        if not org_id:
            raise AcctlError("unknown organization id")
        msg = "oktapus:{}:{}".format(
            self.org.get("MasterAccountId", ""), self.org.get("MasterAccountEmail", ""),
        )
        ext = hmac.new(org_id.encode(), msg.encode(), hashlib.sha512).hexdigest()[:64]
        return AssumeRoleCreds(
            self._sts,
            role_arn(self.org.get("MasterAccountId", ""), self.master_role),
            self._session_name,
            external_id=ext,
        )

    def _require_connected(self) -> None:
        if self._sts is None:
            raise AcctlError("gateway not connected")
