"""
Account control information.

Each account in the pool stores its control record (owner, description and
tags) in the description of a dedicated IAM role. IAM offers no conditional
update, so writes are verified by comparing the description returned from
the update call with the value that was sent. This closes the narrowest race
window but is not a linearizable compare-and-swap: a write landing after the
verification can still be lost. Callers treat ``CtlUpdateError`` as a request
to refresh and retry.

Stored format::

    "1#" + base64(json({"owner": ..., "desc": ..., "tags": [...]}))

Empty fields are omitted from the JSON object.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field

from botocore.exceptions import ClientError

from . import tags as tagset
from .aws import IAM_PATH, assume_role_policy, error_code
from .errors import CtlDecodeError, CtlUpdateError, NoCtlError
from .protocol import IAMClient

logger = logging.getLogger(__name__)

# IAM role that stores account control information in its description
CTL_ROLE = "OktapusAccountControl"

# Encoding version written before the "#" separator
CTL_VERSION = 1

_NO_SUCH_ENTITY = "NoSuchEntity"


@dataclass
class Ctl:
    """
    Account control record.

    Attributes:
        owner: Account owner, empty if the account is free
        desc: Free-text description
        tags: Sorted, unique tag names
    """
    owner: str = ""
    desc: str = ""
    tags: list[str] = field(default_factory=list)

    def copy(self) -> "Ctl":
        """Return a deep copy. Records never share tag lists."""
        return Ctl(owner=self.owner, desc=self.desc, tags=list(self.tags))

    def assign(self, other: "Ctl") -> None:
        """Overwrite this record with a copy of other."""
        if other is not self:
            self.owner = other.owner
            self.desc = other.desc
            self.tags = list(other.tags)

    # -------------------------------------------------------------------------
    # Encoding
    # -------------------------------------------------------------------------

    def encode(self) -> str:
        """Encode control information into its stored string form."""
        self.tags = tagset.normalize(self.tags)
        obj: dict = {}
        if self.owner:
            obj["owner"] = self.owner
        if self.desc:
            obj["desc"] = self.desc
        if self.tags:
            obj["tags"] = self.tags
        raw = json.dumps(obj, separators=(",", ":")).encode("utf-8")
        return f"{CTL_VERSION}#" + base64.b64encode(raw).decode("ascii")

    @classmethod
    def decode(cls, s: str) -> "Ctl":
        """
        Decode control information from its stored string form.

        An empty string decodes to an empty record.

        Raises:
            CtlDecodeError: If s is corrupt or uses an unknown version
        """
        if not s:
            return cls()
        ver = 0
        i = s.find("#")
        if i > 0 and s[:i].isdigit():
            s, ver = s[i + 1:], int(s[:i])
        try:
            raw = base64.b64decode(s, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CtlDecodeError(f"invalid account control encoding: {e}") from e
        if ver != CTL_VERSION:
            raise CtlDecodeError(f"invalid account control version ({ver})")
        try:
            obj = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CtlDecodeError(f"invalid account control data: {e}") from e
        if not isinstance(obj, dict):
            raise CtlDecodeError("invalid account control data: not an object")
        owner = obj.get("owner") or ""
        desc = obj.get("desc") or ""
        tags = obj.get("tags") or []
        if (not isinstance(owner, str) or not isinstance(desc, str)
                or not isinstance(tags, list)
                or not all(isinstance(t, str) for t in tags)):
            raise CtlDecodeError("invalid account control data: bad field type")
        return cls(owner=owner, desc=desc, tags=tagset.normalize(tags))

    # -------------------------------------------------------------------------
    # Merge
    # -------------------------------------------------------------------------

    def merge(self, cur: "Ctl", ref: "Ctl") -> None:
        """
        Perform a 3-way merge of local changes onto the current remote state.

        self holds the desired state, cur the freshly loaded remote state and
        ref the common baseline. Owner and description changes made since ref
        win over remote values; unchanged fields adopt the remote values. Tag
        changes are replayed as a delta onto cur.tags, so concurrent edits of
        different tags compose.
        """
        if self.owner == ref.owner:
            self.owner = cur.owner
        if self.desc == ref.desc:
            self.desc = cur.desc
        set_, clear = tagset.diff(self.tags, ref.tags)
        self.tags = tagset.apply(cur.tags, set_, clear)

    def owner_conflict(self, cur: "Ctl", ref: "Ctl") -> bool:
        """Check if a third party changed the owner since ref."""
        return cur.owner != self.owner and cur.owner != ref.owner

    # -------------------------------------------------------------------------
    # Remote operations
    # -------------------------------------------------------------------------

    def init(self, iam: IAMClient, path: str = IAM_PATH) -> None:
        """
        Create the control role in an account that does not have one.

        The role trust policy denies everyone; the role only exists to hold
        the encoded record.
        """
        b64 = self.encode()
        logger.debug("Creating control role %s%s", path, CTL_ROLE)
        out = iam.create_role(
            Path=path,
            RoleName=CTL_ROLE,
            AssumeRolePolicyDocument=assume_role_policy("Deny", "*"),
            Description=b64,
        )
        # CreateRole does not always echo the description back
        self._verify(out, b64, default=b64)

    def load(self, iam: IAMClient) -> None:
        """
        Replace this record with the stored control information.

        The record is reset to empty if loading fails.

        Raises:
            NoCtlError: If the account has no control role
            CtlDecodeError: If the stored information cannot be decoded
        """
        self.assign(Ctl())
        try:
            out = iam.get_role(RoleName=CTL_ROLE)
        except ClientError as e:
            if error_code(e) == _NO_SUCH_ENTITY:
                raise NoCtlError() from e
            raise
        self.assign(Ctl.decode(out["Role"].get("Description", "")))

    def store(self, iam: IAMClient) -> None:
        """
        Overwrite the stored control information with this record.

        Raises:
            NoCtlError: If the account has no control role
            CtlUpdateError: If the stored value differs from what was written
        """
        b64 = self.encode()
        try:
            out = iam.update_role_description(RoleName=CTL_ROLE, Description=b64)
        except ClientError as e:
            if error_code(e) == _NO_SUCH_ENTITY:
                raise NoCtlError() from e
            raise
        self._verify(out, b64)

    def delete(self, iam: IAMClient) -> None:
        """
        Delete the control role.

        Raises:
            NoCtlError: If the account has no control role
        """
        try:
            iam.delete_role(RoleName=CTL_ROLE)
        except ClientError as e:
            if error_code(e) == _NO_SUCH_ENTITY:
                raise NoCtlError() from e
            raise

    @staticmethod
    def _verify(out: dict, sent: str, default: str = "") -> None:
        got = (out.get("Role") or {}).get("Description", default)
        if got != sent:
            logger.warning("Control update interrupted: stored value differs from sent value")
            raise CtlUpdateError()
