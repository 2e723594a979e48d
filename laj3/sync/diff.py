"""Changeset computation between two dictionaries."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple

from .manifest import Dictionary


class ChangeKind(str, Enum):
    """Classification of a path between a reference and a local tree."""
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class Changeset:
    """Every path of two dictionaries, partitioned by change kind."""

    added: Tuple[str, ...] = ()
    modified: Tuple[str, ...] = ()
    removed: Tuple[str, ...] = ()
    unchanged: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.removed)

    @property
    def to_transfer(self) -> Tuple[str, ...]:
        """Paths whose bytes must be fetched, in path order."""
        return tuple(sorted(self.added + self.modified))

    @property
    def total_changes(self) -> int:
        return len(self.added) + len(self.modified) + len(self.removed)

    def kind_of(self, path: str) -> ChangeKind:
        for kind, paths in self.as_dict().items():
            if path in paths:
                return kind
        raise KeyError(path)

    def as_dict(self) -> Dict[ChangeKind, Tuple[str, ...]]:
        return {
            ChangeKind.ADDED: self.added,
            ChangeKind.MODIFIED: self.modified,
            ChangeKind.REMOVED: self.removed,
            ChangeKind.UNCHANGED: self.unchanged,
        }

    def summary(self) -> str:
        parts = []
        if self.added:
            parts.append(f"{len(self.added)} added")
        if self.modified:
            parts.append(f"{len(self.modified)} modified")
        if self.removed:
            parts.append(f"{len(self.removed)} removed")
        return ", ".join(parts) if parts else "no changes"


def diff(reference: Dictionary, local: Dictionary) -> Changeset:
    """Compute the changeset that turns ``local`` into ``reference``."""
    added = []
    modified = []
    unchanged = []

    for ref_entry in reference:
        local_entry = local.get(ref_entry.path)
        if local_entry is None:
            added.append(ref_entry.path)
        elif ref_entry.same_content(local_entry):
            unchanged.append(ref_entry.path)
        else:
            modified.append(ref_entry.path)

    # Dictionaries iterate in path order, so every list is already sorted
    removed = [entry.path for entry in local if entry.path not in reference]

    return Changeset(
        added=tuple(added),
        modified=tuple(modified),
        removed=tuple(removed),
        unchanged=tuple(unchanged),
    )


__all__ = ["ChangeKind", "Changeset", "diff"]
