"""
Account specs.

An account spec is a comma-separated list of entries that selects accounts
by id, name, owner or tags::

    owner=me,!staging,err

Account ids or names make the spec static: every listed account must exist,
otherwise the spec fails. Otherwise the spec is dynamic and each account is
matched by owner and by the exact presence or absence of the listed tags.
"""

import logging
from typing import Optional

from . import tags as tagset
from .account import Account, Accounts
from .aws import is_account_id
from .errors import AccountNotFoundError

logger = logging.getLogger(__name__)

# Number of entries that fit the tag bitmask
MAX_TAG_BITS = 64

# Spec types
_UNKNOWN = 0
_IDS = 1
_NAMES = 2
_TAGS = 3

# Selection flags
_ERR = 1
_FREE = 2
_ALLOC = 4
_ALL = _FREE | _ALLOC


class AccountSpec:
    """
    Parsed account spec.

    ``user`` is the owner identity of the caller and determines the meaning
    of ``owner=me``.
    """

    def __init__(self, spec: str, user: str = ""):
        self.spec: list[str] = []
        self.idx: dict[str, int] = {}
        self.owner: Optional[dict[str, bool]] = None
        self.tag_mask = 0
        self.typ = _UNKNOWN
        self.flags = 0
        self._tag_idx: dict[str, int] = {}
        if not spec:
            self.typ = _TAGS
            self.flags = _ALL
            return

        # Lowercased tag name -> (position, negated); the last occurrence wins
        tags: dict[str, tuple[int, bool]] = {}
        self.spec = spec.split(",")
        for i, entry in enumerate(self.spec):
            name, val, neg = tagset.parse_spec_entry(entry)
            if name == "err":
                if neg:
                    self.flags &= ~_ERR
                else:
                    self.flags |= _ERR
            elif name == "owner":
                if not val:
                    self.flags = self.flags & ~_ALL | (_FREE if neg else _ALLOC)
                else:
                    if val == "me":
                        val = user
                    if self.owner is None:
                        self.owner = {}
                    self.owner[val] = not neg
            else:
                self.idx[name] = i
                tags[name.lower()] = (i, neg)
                if self.typ == _UNKNOWN and is_account_id(name):
                    self.typ = _IDS
        if self.typ == _UNKNOWN and len(self.spec) > MAX_TAG_BITS:
            self.typ = _NAMES

        # Without "owner" or "!owner", only positive owner entries restrict
        # the selection to the listed owners.
        if not self.flags & _ALL:
            if self.owner is None or not all(self.owner.values()):
                self.flags |= _ALL

        for name, (i, neg) in tags.items():
            if i < MAX_TAG_BITS:
                self._tag_idx[name] = i
                if not neg:
                    self.tag_mask |= 1 << i

    def __repr__(self) -> str:
        return f"AccountSpec({','.join(self.spec)!r})"

    @property
    def num(self) -> int:
        """Number of unique account ids, names or tags in the spec."""
        return len(self.idx)

    def is_static(self, all: Accounts) -> bool:
        """Check if the spec selects accounts by id or name."""
        if self.typ != _UNKNOWN:
            return self.typ != _TAGS
        for ac in all:
            if ac.name in self.idx:
                self.typ = _NAMES
                return True
        self.typ = _TAGS
        return False

    def filter(self, all: Accounts) -> Accounts:
        """
        Return the accounts that match the spec, in their original order.

        Raises:
            AccountNotFoundError: If a static spec names a missing account
        """
        if self.is_static(all):
            return self._filter_static(all)
        return self._filter_dynamic(all)

    def update_tags(self, tags: list[str]) -> list[str]:
        """
        Apply the spec as a tag edit and return the new sorted tag list.

        Every entry must be a tag name, optionally negated to clear it.

        Raises:
            ValueError: If any entry is not a valid tag
        """
        m = set(tags)
        for entry in self.spec:
            name, neg = tagset.parse_tag(entry, neg_ok=True)
            if neg:
                m.discard(name)
            else:
                m.add(name)
        return sorted(m)

    def _filter_static(self, all: Accounts) -> Accounts:
        # All non-negated entries must match an account; negated entries only
        # exclude. Error status is not considered.
        ids = self.typ == _IDS
        result = Accounts()
        matched: set[str] = set()
        for ac in all:
            key = ac.id if ids else ac.name
            i = self.idx.get(key)
            if i is not None:
                if not tagset.parse_spec_entry(self.spec[i])[2]:
                    result.append(ac)
                matched.add(key)
        if len(matched) != len(self.idx):
            for key, i in self.idx.items():
                if key not in matched and not tagset.parse_spec_entry(self.spec[i])[2]:
                    raise AccountNotFoundError("id" if ids else "name", key)
        return result

    def _filter_dynamic(self, all: Accounts) -> Accounts:
        return Accounts(ac for ac in all if self._match(ac))

    def _match(self, ac: Account) -> bool:
        if ac.ctl is None:
            return bool(self.flags & _ERR)
        owner = ac.ctl.owner
        if not owner:
            if not self.flags & _FREE:
                return False
        elif self.owner is not None and owner in self.owner:
            if not self.owner[owner]:
                return False
        elif not self.flags & _ALLOC:
            return False
        mask = 0
        for tag in ac.ctl.tags:
            i = self._tag_idx.get(tag)
            if i is not None and i < MAX_TAG_BITS:
                mask |= 1 << i
        return mask == self.tag_mask
