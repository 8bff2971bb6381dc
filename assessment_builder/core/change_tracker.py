"""
Change Tracker - pending mutations per entity

Maps an entity ref to a pending mutation descriptor and answers
"is there unsaved work?" questions. Re-recording an entity merges into
its existing descriptor instead of overwriting it:

    existing          + new               -> result
    add               + update            -> add (fields merged)
    add               + delete            -> entry dropped (never persisted)
    add               + library_replace   -> add (library_id merged)
    update            + delete            -> delete
    delete            + update            -> delete (update ignored)
    update            + library_replace   -> library_replace (fields merged)
    library_replace   + update            -> library_replace (fields merged)

The tracker doubles as the single-writer edit lock: while any entity has
a pending entry, only that entity's lock root (the owning question for
answers, the entity itself otherwise) accepts further edits.
"""

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from assessment_builder.contracts import Answer, EntityKind

logger = logging.getLogger(__name__)


class ChangeAction(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"
    LIBRARY_REPLACE = "library_replace"


@dataclass(frozen=True)
class PendingChange:
    """
    One pending mutation.

    Attributes:
        ref: Entity ref
        kind: Entity kind
        action: ChangeAction
        fields: Partial field set to persist
    """
    ref: int
    kind: EntityKind
    action: ChangeAction
    fields: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> Dict[str, Any]:
        return {
            'ref': self.ref,
            'kind': self.kind.value,
            'action': self.action.value,
            'fields': copy.deepcopy(self.fields),
        }

    @staticmethod
    def from_json(data: Dict[str, Any]) -> "PendingChange":
        return PendingChange(
            ref=int(data['ref']),
            kind=EntityKind(data['kind']),
            action=ChangeAction(data['action']),
            fields=copy.deepcopy(data.get('fields', {})),
        )


class ChangeTracker:
    """Ordered map of ref -> PendingChange with merge semantics"""

    def __init__(self):
        self._entries: Dict[int, PendingChange] = {}

    # ========================
    # Recording
    # ========================

    def record(self, ref: int, kind: EntityKind, action: ChangeAction, **fields: Any) -> Optional[PendingChange]:
        """
        Record (or merge) a pending mutation.

        Args:
            ref: Entity ref
            kind: Entity kind
            action: Mutation action
            **fields: Changed fields

        Returns:
            PendingChange now held for ref, or None if the entry was dropped
        """
        existing = self._entries.get(ref)
        merged = self._merge(existing, PendingChange(ref, kind, action, dict(fields)))
        if merged is None:
            self._entries.pop(ref, None)
            logger.debug(f"Dropped pending change for {ref} (never persisted)")
        else:
            self._entries[ref] = merged
        return merged

    @staticmethod
    def _merge(existing: Optional[PendingChange], new: PendingChange) -> Optional[PendingChange]:
        if existing is None:
            return new

        fields = {**existing.fields, **new.fields}

        if existing.action == ChangeAction.ADD:
            if new.action == ChangeAction.DELETE:
                return None
            return PendingChange(new.ref, new.kind, ChangeAction.ADD, fields)

        if existing.action == ChangeAction.DELETE:
            return existing

        if new.action == ChangeAction.DELETE:
            return PendingChange(new.ref, new.kind, ChangeAction.DELETE, {})

        if ChangeAction.LIBRARY_REPLACE in (existing.action, new.action):
            return PendingChange(new.ref, new.kind, ChangeAction.LIBRARY_REPLACE, fields)

        if new.action == ChangeAction.ADD:
            # add on a tracked update means the entity was recreated locally
            logger.warning(f"Re-adding entity {new.ref} with a pending update")
            return PendingChange(new.ref, new.kind, ChangeAction.ADD, fields)

        return PendingChange(new.ref, new.kind, ChangeAction.UPDATE, fields)

    def clear(self, ref: int) -> None:
        self._entries.pop(ref, None)

    def clear_many(self, refs: Iterable[int]) -> None:
        for ref in refs:
            self._entries.pop(ref, None)

    def clear_all(self) -> None:
        self._entries.clear()

    def discard_fields(self, ref: int, names: Iterable[str]) -> Optional[PendingChange]:
        """
        Forget fields that have been persisted.

        An update left with no fields is cleared. Add, delete and
        library_replace entries keep their action.

        Returns:
            Remaining PendingChange, or None if cleared
        """
        entry = self._entries.get(ref)
        if entry is None:
            return None
        remaining = {k: v for k, v in entry.fields.items() if k not in set(names)}
        if entry.action == ChangeAction.UPDATE and not remaining:
            del self._entries[ref]
            return None
        updated = PendingChange(entry.ref, entry.kind, entry.action, remaining)
        self._entries[ref] = updated
        return updated

    # ========================
    # Queries
    # ========================

    def get(self, ref: int) -> Optional[PendingChange]:
        return self._entries.get(ref)

    def __contains__(self, ref: object) -> bool:
        return ref in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def pending(self, kind: Optional[EntityKind] = None) -> List[PendingChange]:
        """Pending entries in recording order, optionally filtered by kind."""
        return [e for e in self._entries.values() if kind is None or e.kind == kind]

    def has_pending(self, scope: Any = None) -> bool:
        """
        Whether unsaved work exists.

        Args:
            scope: None (anything), an EntityKind / kind name, or an
                   iterable of refs
        """
        if scope is None:
            return bool(self._entries)
        if isinstance(scope, (EntityKind, str)):
            kind = EntityKind(scope)
            return any(e.kind == kind for e in self._entries.values())
        return any(ref in self._entries for ref in scope)

    # ========================
    # Edit Lock
    # ========================

    @staticmethod
    def lock_root(ref: int, tree) -> int:
        """Question ref for answers, the ref itself otherwise."""
        entity = tree.find(ref)
        if isinstance(entity, Answer):
            return entity.question_ref
        return ref

    def lock_roots(self, tree) -> Set[int]:
        """Lock roots of every pending entry still present in tree."""
        return {self.lock_root(ref, tree) for ref in self._entries if ref in tree}

    def is_locked_for(self, ref: Optional[int], tree) -> bool:
        """
        Whether edits to ref are blocked by another entity's pending work.

        Args:
            ref: Entity about to be edited, or None for "create a new
                 top-level entity" (blocked by any pending work)
            tree: ContentTree used to resolve lock roots
        """
        roots = self.lock_roots(tree)
        if not roots:
            return False
        if ref is None:
            return True
        return bool(roots - {self.lock_root(ref, tree)})

    # ========================
    # Snapshots
    # ========================

    def snapshot(self) -> List[Dict[str, Any]]:
        return [entry.to_json() for entry in self._entries.values()]

    @classmethod
    def from_snapshot(cls, snapshot: Optional[List[Dict[str, Any]]]) -> "ChangeTracker":
        tracker = cls()
        for data in snapshot or []:
            entry = PendingChange.from_json(data)
            tracker._entries[entry.ref] = entry
        return tracker
