"""
Account tags.

Tags are keywords associated with an account. A tag list is always sorted and
free of duplicates; every function here assumes and preserves that form, so
list equality is tag set equality.
"""

import re

# Names with special meaning in account specs. They can never be tags.
SPECIAL_TAGS = frozenset({"err", "owner"})

# Tag names: a letter followed by letters, digits, '-', '.' or '_'
_TAG_NAME_RE = re.compile(r'^[A-Za-z][A-Za-z0-9._-]*$')

# Boolean spellings accepted as spec entry values
_BOOL_VALUES = {
    "1": True, "t": True, "T": True, "true": True, "TRUE": True, "True": True,
    "0": False, "f": False, "F": False, "false": False, "FALSE": False, "False": False,
}


def diff(target: list[str], baseline: list[str]) -> tuple[list[str], list[str]]:
    """Return tags that are set and cleared in target relative to baseline.

    ``apply(baseline, *diff(target, baseline)) == target``.
    """
    set_, clear = [], []
    i = j = 0
    while i < len(target) and j < len(baseline):
        s, c = target[i], baseline[j]
        if s == c:
            i += 1
            j += 1
        elif s < c:
            set_.append(s)
            i += 1
        else:
            clear.append(c)
            j += 1
    set_.extend(target[i:])
    clear.extend(baseline[j:])
    return set_, clear


def apply(tags: list[str], set_: list[str], clear: list[str]) -> list[str]:
    """Return a copy of tags with set_ added and clear removed.

    Setting a tag takes priority over clearing it if the two overlap.
    """
    if not set_ and not clear:
        return list(tags)
    m = set(tags)
    m.difference_update(clear)
    m.update(set_)
    return sorted(m)


def normalize(tags) -> list[str]:
    """Return tags as a sorted list without duplicates."""
    return sorted(set(tags or ()))


def format_tags(tags: list[str]) -> str:
    return ",".join(tags)


def parse_spec_entry(entry: str) -> tuple[str, str, bool]:
    """
    Split one account spec entry into (name, value, negated).

    The general format is ``[!...]name[[!]=value]``. If value is a boolean,
    it determines the initial negation state instead of being returned.
    """
    value = ""
    neg = False
    i = entry.find("=")
    if i != -1:
        entry, value = entry[:i], entry[i + 1:]
        if value in _BOOL_VALUES:
            value, neg = "", not _BOOL_VALUES[value]
        if entry.endswith("!"):
            entry, neg = entry[:-1], not neg
    name = entry.lstrip("!")
    if (len(entry) - len(name)) % 2:
        neg = not neg
    return name, value, neg


def is_special(name: str) -> bool:
    """Check if name is reserved for account spec keywords."""
    return name in SPECIAL_TAGS


def parse_tag(entry: str, neg_ok: bool = False) -> tuple[str, bool]:
    """
    Parse a single tag, returning its lowercased name and negation state.

    Raises:
        ValueError: If entry is not a valid tag
    """
    name, value, neg = parse_spec_entry(entry)
    if (not name or value or (neg and not neg_ok) or is_special(name)
            or not _TAG_NAME_RE.match(name)):
        raise ValueError(f'invalid tag "{entry}"')
    return name.lower(), neg


def parse_tags(s: str) -> tuple[list[str], list[str]]:
    """
    Split a comma-separated tag list into disjoint set and clear lists.

    ``"a,!b"`` sets ``a`` and clears ``b``. The last occurrence of a tag
    decides whether it is set or cleared.

    Raises:
        ValueError: If any entry is not a valid tag
    """
    if not s:
        return [], []
    state: dict[str, bool] = {}
    for entry in s.split(","):
        name, neg = parse_tag(entry, neg_ok=True)
        state[name] = neg
    set_ = sorted(name for name, neg in state.items() if not neg)
    clear = sorted(name for name, neg in state.items() if neg)
    return set_, clear
