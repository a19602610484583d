"""Canonical comparison and diff rendering for drift detection.

Two attribute sets are considered equal when their canonical forms match:
- Mapping keys are sorted
- Lists are treated as unordered collections (sorted by their JSON form)
- Empty values are equivalent: [] == {} == None == missing key

These rules keep provider quirks (rule ordering, null vs empty arrays) from
showing up as drift. Anything else that differs is drift and goes to the
operator for a decision.
"""

from __future__ import annotations

import difflib
import json
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


def canonicalize(value: Any) -> Any:
    """Return an order-insensitive, key-sorted copy of a JSON-like value."""
    if isinstance(value, dict):
        return {
            key: canonicalize(value[key])
            for key in sorted(value)
            if not _is_empty(value[key])
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [canonicalize(item) for item in value]
        return sorted(items, key=_sort_key)
    return value


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (list, dict, str)) and not value)


def _sort_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def attributes_equal(observed: Any, desired: Any) -> bool:
    """True when observed and desired match under canonical comparison."""
    return canonicalize(observed) == canonicalize(desired)


@dataclass
class AttributeDiff:
    """Rendered difference between observed and desired attributes."""

    resource: str
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unified: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "resource": self.resource,
            "added": len(self.added),
            "removed": len(self.removed),
        }


def render_diff(resource: str, observed: Any, desired: Any) -> AttributeDiff:
    """Build a line-level diff of the canonical JSON forms.

    Args:
        resource: Resource label used in the diff header.
        observed: Attributes as the provider reports them.
        desired: Attributes the caller asked for.

    Returns:
        AttributeDiff with unified diff lines and added/removed line lists.
    """
    before = json.dumps(canonicalize(observed), indent=2, sort_keys=True).splitlines()
    after = json.dumps(canonicalize(desired), indent=2, sort_keys=True).splitlines()

    unified = list(
        difflib.unified_diff(
            before,
            after,
            fromfile=f"{resource} (current)",
            tofile=f"{resource} (desired)",
            lineterm="",
        )
    )
    diff = AttributeDiff(resource=resource, unified=unified)
    for line in unified:
        if line.startswith(("+++", "---")):
            continue
        if line.startswith("+"):
            diff.added.append(line[1:])
        elif line.startswith("-"):
            diff.removed.append(line[1:])
    return diff
