"""
Field identity bookkeeping for fieldsync.

Ids are stable: once a field has one it keeps it across renames and
reorders, and an id that was retired is never handed out again. Ids for
scanned columns are derived from the header so that recomputing a preview
yields the same ids; collisions are resolved by suffixing.
"""

import hashlib
import logging
import re
from collections import Counter
from typing import Collection, Iterable, List, Optional, Set

from .fields import COLUMN_ID_PREFIX, CUSTOM_ID_PREFIX, normalize_name


logger = logging.getLogger(__name__)

_CUSTOM_ID_PATTERN = re.compile(rf"^{re.escape(CUSTOM_ID_PREFIX)}(\d+)$")
MAX_SUFFIX = 10_000


def column_id_for(name: str, case_sensitive: bool = False) -> str:
    """Deterministic base id for a scanned column header."""
    digest = hashlib.sha1(
        normalize_name(name, case_sensitive).encode("utf-8")
    ).hexdigest()
    return f"{COLUMN_ID_PREFIX}{digest[:10]}"


def disambiguate(candidate: str, taken: Collection[str]) -> str:
    """
    Return candidate, or candidate with the lowest free numeric suffix.

    Args:
        candidate: Preferred id
        taken: Ids that may not be returned

    Returns:
        An id not contained in taken
    """
    if candidate not in taken:
        return candidate

    for i in range(2, MAX_SUFFIX):
        alternative = f"{candidate}-{i}"
        if alternative not in taken:
            return alternative

    raise RuntimeError(f"Could not find a free id for {candidate}")


def mint_column_id(
    name: str,
    taken: Collection[str],
    retired: Collection[str] = (),
    case_sensitive: bool = False,
) -> str:
    """Mint an id for a newly seen column, avoiding taken and retired ids."""
    blocked = set(taken) | set(retired)
    return disambiguate(column_id_for(name, case_sensitive), blocked)


def custom_index(field_id: str) -> Optional[int]:
    """Numeric part of a custom field id, or None for other ids."""
    match = _CUSTOM_ID_PATTERN.match(field_id or "")
    return int(match.group(1)) if match else None


def next_custom_id(existing: Iterable[str], retired: Iterable[str] = ()) -> str:
    """Next free custom-<n> id, counting up from the highest one in use."""
    used: Set[str] = set(existing) | set(retired)
    highest = max(
        (n for n in (custom_index(i) for i in used) if n is not None),
        default=0,
    )
    index = highest + 1
    while f"{CUSTOM_ID_PREFIX}{index}" in used:
        index += 1
    return f"{CUSTOM_ID_PREFIX}{index}"


def find_duplicate_ids(ids: Iterable[str]) -> List[str]:
    """Ids that occur more than once, in first-seen order."""
    counts = Counter(ids)
    return [field_id for field_id, count in counts.items() if count > 1]


def find_duplicate_names(names: Iterable[str], case_sensitive: bool = False) -> List[str]:
    """Names that occur more than once once normalized."""
    counts = Counter(normalize_name(n, case_sensitive) for n in names)
    return [name for name, count in counts.items() if count > 1 and name]
