"""Field-level merge for conflicting records.

The merge is a shallow union of remote then local. For each conflicting
field, the side whose record timestamp is strictly later wins; when the
timestamps are equal or either is missing, local wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .timestamp_utils import get_updated_at

__all__ = ["MergeResult", "merge_fields", "remote_is_newer"]


@dataclass
class MergeResult:
    """Result of a merge operation.

    Attributes:
        data: The merged record
        local_fields: Conflicting fields taken from the local side
        remote_fields: Conflicting fields taken from the remote side
    """

    data: Dict[str, Any]
    local_fields: List[str] = field(default_factory=list)
    remote_fields: List[str] = field(default_factory=list)


def remote_is_newer(
    local: Optional[Dict[str, Any]], remote: Optional[Dict[str, Any]]
) -> bool:
    """Check whether the remote record carries a strictly later timestamp."""
    local_ts = get_updated_at(local)
    remote_ts = get_updated_at(remote)
    if local_ts is None or remote_ts is None:
        return False
    return remote_ts > local_ts


def merge_fields(
    local: Optional[Dict[str, Any]],
    remote: Optional[Dict[str, Any]],
    conflict_fields: Iterable[str],
) -> MergeResult:
    """Merge two versions of a record field by field.

    Args:
        local: The local version (may be None)
        remote: The remote version (may be None)
        conflict_fields: Fields whose values differ between the two

    Returns:
        MergeResult with the merged data and which side won each field
    """
    local = local or {}
    remote = remote or {}
    merged: Dict[str, Any] = {**remote, **local}
    take_remote = remote_is_newer(local, remote)
    result = MergeResult(data=merged)

    for name in sorted(set(conflict_fields)):
        winner = remote if take_remote else local
        if name in winner:
            merged[name] = winner[name]
        else:
            merged.pop(name, None)
        if take_remote:
            result.remote_fields.append(name)
        else:
            result.local_fields.append(name)

    return result
