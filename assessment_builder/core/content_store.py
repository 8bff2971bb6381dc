"""
Content Tree Store - normalized in-memory assessment tree

Responsibilities:
- Hold sections, subsections, questions and answers as an arena of
  immutable nodes addressed by local integer refs
- Track the ref -> canonical id binding assigned by the backend
- Keep child order and sort_order aligned
- Load server payloads and export lossless snapshots

Design principles:
- Dumb container: no validation rules, no network, no change tracking
- Refs are allocated once and never renamed. A backend id is attached
  with bind(); nothing downstream needs rewriting when it arrives
- "Never persisted" means "no binding"

CRITICAL: ref vs canonical id
- ref: local, stable, int, allocated by this store (1, 2, 3, ...)
- canonical id: backend string id, known only after persistence
- Always look up canonical ids through canonical_id(ref) right before
  building a request; never cache them across awaits
"""

import copy
import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Tuple

from assessment_builder.contracts import (
    Answer,
    Entity,
    EntityKind,
    Question,
    QuestionType,
    Section,
    entity_from_json,
)
from assessment_builder.utils.helpers import extract_id

logger = logging.getLogger(__name__)


class ContentTree:
    """Arena-backed content tree with canonical id bindings"""

    def __init__(self):
        """Initialize an empty tree"""
        self._entities: Dict[int, Entity] = {}
        self._roots: List[int] = []
        self._bindings: Dict[int, str] = {}
        self._next_ref = 1
        # canonical id -> ref, consulted while reloading server content
        self._reusable: Dict[str, int] = {}

    # ========================
    # Private Helpers
    # ========================

    def _allocate(self, canonical_id: Optional[str] = None) -> int:
        """Allocate a ref, reusing the previous ref of a reloaded canonical id."""
        if canonical_id is not None:
            previous = self._reusable.pop(str(canonical_id), None)
            if previous is not None and previous not in self._entities:
                return previous
        ref = self._next_ref
        self._next_ref += 1
        return ref

    def _validate_ref(self, ref: int) -> None:
        """
        Validate that ref exists.

        Raises:
            ValueError: If ref is unknown
        """
        if ref not in self._entities:
            raise ValueError(f"Entity {ref} does not exist")

    def _child_field(self, entity: Entity) -> str:
        return 'answers' if isinstance(entity, Question) else 'children'

    def _container(self, ref: int) -> List[int]:
        """Ordered list of refs sharing ref's parent (including ref)."""
        parent_ref = self.parent_of(ref)
        if parent_ref is None:
            return list(self._roots)
        return list(self.children(parent_ref))

    def _set_children(self, parent_ref: Optional[int], refs: List[int]) -> None:
        if parent_ref is None:
            self._roots = list(refs)
            return
        parent = self._entities[parent_ref]
        self._entities[parent_ref] = replace(parent, **{self._child_field(parent): tuple(refs)})

    def _next_sort_order(self, refs: Iterable[int]) -> int:
        orders = [self._entities[r].sort_order for r in refs if r in self._entities]
        return max(orders, default=0) + 1

    # ========================
    # Creation
    # ========================

    def add_section(
        self,
        label: str,
        parent_ref: Optional[int] = None,
        sort_order: Optional[int] = None,
        canonical_id: Optional[str] = None,
        unsaved: bool = True,
        **fields: Any
    ) -> int:
        """
        Add a parent section (parent_ref=None) or a subsection.

        Args:
            label: Section label
            parent_ref: Owning parent section for subsections
            sort_order: Explicit position (default: after the last sibling)
            canonical_id: Backend id when loading persisted content
            unsaved: Mark as having unacknowledged local edits
            **fields: Extra Section fields (tooltip, library_id, ...)

        Returns:
            int: New ref

        Raises:
            ValueError: If parent_ref is unknown or is itself a subsection
        """
        siblings = self._roots
        if parent_ref is not None:
            self._validate_ref(parent_ref)
            parent = self._entities[parent_ref]
            if not isinstance(parent, Section) or not parent.is_parent:
                raise ValueError(f"Entity {parent_ref} cannot own subsections")
            siblings = list(parent.children)

        ref = self._allocate(canonical_id)
        order = sort_order if sort_order is not None else self._next_sort_order(siblings)
        self._entities[ref] = Section(
            ref=ref, label=label, sort_order=order, parent_ref=parent_ref,
            is_unsaved=unsaved, **fields
        )
        self._set_children(parent_ref, list(siblings) + [ref])
        if canonical_id:
            self.bind(ref, canonical_id)
        return ref

    def add_question(
        self,
        section_ref: int,
        label: str,
        question_type: QuestionType | str,
        sort_order: Optional[int] = None,
        canonical_id: Optional[str] = None,
        unsaved: bool = True,
        **fields: Any
    ) -> int:
        """
        Add a question to a subsection.

        Raises:
            ValueError: If section_ref is unknown or is a parent section
        """
        self._validate_ref(section_ref)
        section = self._entities[section_ref]
        if not isinstance(section, Section) or section.is_parent:
            raise ValueError(f"Entity {section_ref} cannot own questions")

        ref = self._allocate(canonical_id)
        order = sort_order if sort_order is not None else self._next_sort_order(section.children)
        self._entities[ref] = Question(
            ref=ref, section_ref=section_ref, label=label,
            question_type=QuestionType.parse(question_type), sort_order=order,
            is_unsaved=unsaved, **fields
        )
        self._set_children(section_ref, list(section.children) + [ref])
        if canonical_id:
            self.bind(ref, canonical_id)
        return ref

    def add_answer(
        self,
        question_ref: int,
        label: str,
        sort_order: Optional[int] = None,
        canonical_id: Optional[str] = None,
        unsaved: bool = True,
        **fields: Any
    ) -> int:
        """
        Add an answer to a question.

        Raises:
            ValueError: If question_ref is unknown or not a question
        """
        self._validate_ref(question_ref)
        question = self._entities[question_ref]
        if not isinstance(question, Question):
            raise ValueError(f"Entity {question_ref} cannot own answers")

        ref = self._allocate(canonical_id)
        order = sort_order if sort_order is not None else self._next_sort_order(question.answers)
        self._entities[ref] = Answer(
            ref=ref, question_ref=question_ref, label=label, sort_order=order,
            is_unsaved=unsaved, **fields
        )
        self._set_children(question_ref, list(question.answers) + [ref])
        if canonical_id:
            self.bind(ref, canonical_id)
        return ref

    # ========================
    # Access
    # ========================

    def __contains__(self, ref: object) -> bool:
        return ref in self._entities

    def get(self, ref: int) -> Entity:
        """
        Get entity by ref.

        Raises:
            ValueError: If ref is unknown
        """
        self._validate_ref(ref)
        return self._entities[ref]

    def find(self, ref: Optional[int]) -> Optional[Entity]:
        """Get entity by ref, or None."""
        if ref is None:
            return None
        return self._entities.get(ref)

    def kind_of(self, ref: int) -> EntityKind:
        return self.get(ref).kind

    def parent_of(self, ref: int) -> Optional[int]:
        entity = self.get(ref)
        if isinstance(entity, Section):
            return entity.parent_ref
        if isinstance(entity, Question):
            return entity.section_ref
        return entity.question_ref

    def children(self, ref: int) -> Tuple[int, ...]:
        """Ordered child refs (subsections, questions or answers)."""
        entity = self.get(ref)
        if isinstance(entity, Question):
            return entity.answers
        if isinstance(entity, Section):
            return entity.children
        return ()

    def child_entities(self, ref: int, include_deleted: bool = True) -> List[Entity]:
        entities = [self._entities[r] for r in self.children(ref)]
        if include_deleted:
            return entities
        return [e for e in entities if not e.is_deleted]

    def siblings(self, ref: int, include_self: bool = False) -> List[int]:
        """Refs sharing ref's parent, in order."""
        container = self._container(ref)
        return container if include_self else [r for r in container if r != ref]

    def root_sections(self) -> List[int]:
        return list(self._roots)

    def all_refs(self, kind: Optional[EntityKind] = None) -> List[int]:
        if kind is None:
            return sorted(self._entities)
        return sorted(r for r, e in self._entities.items() if e.kind == kind)

    def question_refs(self) -> List[int]:
        """Every question ref in assessment order."""
        refs = []
        for root in self._roots:
            for sub in self.children(root):
                refs.extend(self.children(sub))
        return refs

    def position_key(self, ref: int) -> Tuple[int, ...]:
        """
        Assessment-order key for a node: the sort_orders of the node and
        its ancestors, outermost first. Used for forward-only checks.
        """
        key = []
        current: Optional[int] = ref
        while current is not None:
            key.append(self._entities[current].sort_order)
            current = self.parent_of(current)
        return tuple(reversed(key))

    def owning_question(self, ref: int) -> Optional[int]:
        """Question ref that owns ref (itself for questions), else None."""
        entity = self.get(ref)
        if isinstance(entity, Question):
            return ref
        if isinstance(entity, Answer):
            return entity.question_ref
        return None

    # ========================
    # Mutation
    # ========================

    def update(self, ref: int, **fields: Any) -> Entity:
        """
        Replace fields on an entity.

        Structural fields (ref, parent links, child lists) cannot be
        changed here.

        Raises:
            ValueError: If ref is unknown or a structural field is given
        """
        entity = self.get(ref)
        structural = {'ref', 'parent_ref', 'section_ref', 'question_ref', 'children', 'answers'}
        blocked = structural & set(fields)
        if blocked:
            raise ValueError(f"Structural fields cannot be updated: {sorted(blocked)}")
        if 'question_type' in fields:
            fields['question_type'] = QuestionType.parse(fields['question_type'])
        updated = replace(entity, **fields)
        self._entities[ref] = updated
        return updated

    def mark_unsaved(self, ref: int, unsaved: bool = True) -> None:
        self.update(ref, is_unsaved=unsaved)

    def mark_deleted(self, ref: int, deleted: bool = True) -> None:
        self.update(ref, is_deleted=deleted)

    def remove(self, ref: int) -> List[int]:
        """
        Remove an entity and everything beneath it. Remaining siblings are
        renumbered 1..N.

        Returns:
            list: All removed refs (ref first, then descendants)
        """
        self._validate_ref(ref)
        parent_ref = self.parent_of(ref)

        removed = []
        stack = [ref]
        while stack:
            current = stack.pop()
            removed.append(current)
            stack.extend(self.children(current))

        if parent_ref is None or parent_ref in self._entities:
            container = [r for r in self._container(ref) if r != ref]
            self._set_children(parent_ref, container)
            self._resequence(container)

        for r in removed:
            self._entities.pop(r, None)
            self._bindings.pop(r, None)

        self._refresh_question_count(parent_ref)
        logger.debug(f"Removed entity {ref} and {len(removed) - 1} descendant(s)")
        return removed

    def set_order(self, parent_ref: Optional[int], refs: List[int]) -> None:
        """
        Replace the child order of a container and resequence sort_order
        to 1..N in that order.

        Raises:
            ValueError: If refs is not a permutation of the current children
        """
        current = self.root_sections() if parent_ref is None else list(self.children(parent_ref))
        if sorted(current) != sorted(refs):
            raise ValueError("New order must contain exactly the current children")
        self._set_children(parent_ref, list(refs))
        self._resequence(refs)

    def _resequence(self, refs: List[int]) -> None:
        """Number refs 1..N in the given order."""
        for index, r in enumerate(refs):
            if self._entities[r].sort_order != index + 1:
                self._entities[r] = replace(self._entities[r], sort_order=index + 1)

    def _refresh_question_count(self, section_ref: Optional[int]) -> None:
        section = self._entities.get(section_ref) if section_ref is not None else None
        if isinstance(section, Section) and not section.is_parent:
            live = [r for r in section.children if not self._entities[r].is_deleted]
            self._entities[section_ref] = replace(section, questions_quantity=len(live))

    # ========================
    # Canonical Id Bindings
    # ========================

    def bind(self, ref: int, canonical_id: str) -> None:
        """Attach (or replace) the backend id of an entity."""
        self._validate_ref(ref)
        self._bindings[ref] = str(canonical_id)

    def unbind(self, ref: int) -> None:
        self._bindings.pop(ref, None)

    def canonical_id(self, ref: int) -> Optional[str]:
        return self._bindings.get(ref)

    def ref_for(self, canonical_id: Optional[str]) -> Optional[int]:
        """Reverse lookup: ref currently bound to canonical_id."""
        if canonical_id is None:
            return None
        for ref, bound in self._bindings.items():
            if bound == str(canonical_id):
                return ref
        return None

    def is_persisted(self, ref: int) -> bool:
        return ref in self._bindings

    # ========================
    # Server Payloads
    # ========================

    def load_sections(self, sections_payload: List[Dict[str, Any]]) -> None:
        """
        Replace the whole tree with server sections.

        Saved questions already loaded under a subsection that is still on
        the server stay attached to it; unsaved ones are dropped.

        Args:
            sections_payload: [{'id'|'ids', 'label', 'sort_order',
                                'subsections': [{...}]}]
        """
        reusable = {cid: ref for ref, cid in self._bindings.items()}
        kept = self._saved_questions_by_section()
        next_ref = self._next_ref
        self.__init__()
        self._next_ref = next_ref
        self._reusable = reusable
        for parent in sorted(sections_payload or [], key=lambda s: s.get('sort_order') or 0):
            parent_ref = self.add_section(
                label=parent.get('label', ''),
                sort_order=parent.get('sort_order') or None,
                canonical_id=extract_id(parent),
                unsaved=False,
                tooltip=parent.get('tooltip') or '',
                library_id=parent.get('library_id'),
            )
            subsections = sorted(parent.get('subsections') or [], key=lambda s: s.get('sort_order') or 0)
            for sub in subsections:
                sub_ref = self.add_section(
                    label=sub.get('label', ''),
                    parent_ref=parent_ref,
                    sort_order=sub.get('sort_order') or None,
                    canonical_id=extract_id(sub),
                    unsaved=False,
                    questions_quantity=sub.get('questions_quantity') or 0,
                    tooltip=sub.get('tooltip') or '',
                    library_id=sub.get('library_id'),
                )
                if sub_ref in kept:
                    self._reattach_questions(sub_ref, *kept[sub_ref])
        self._reusable = {}
        logger.info(f"Loaded {len(self._roots)} parent section(s), {len(self._entities)} node(s)")

    def _saved_questions_by_section(self) -> Dict[int, Tuple[Dict[int, Entity], Dict[int, str]]]:
        """Persisted questions and answers of each bound subsection, keyed by section ref."""
        kept = {}
        for ref, entity in self._entities.items():
            if not isinstance(entity, Section) or entity.parent_ref is None or ref not in self._bindings:
                continue
            entities = {}
            for question_ref in entity.children:
                if question_ref not in self._bindings:
                    continue
                entities[question_ref] = self._entities[question_ref]
                for answer_ref in self.children(question_ref):
                    if answer_ref in self._bindings:
                        entities[answer_ref] = self._entities[answer_ref]
            if entities:
                kept[ref] = (entities, {r: self._bindings[r] for r in entities})
        return kept

    def _reattach_questions(self, section_ref: int, entities: Dict[int, Entity], bindings: Dict[int, str]) -> None:
        self._entities.update(entities)
        self._bindings.update(bindings)
        questions = [r for r in entities if isinstance(entities[r], Question)]
        for question_ref in questions:
            answers = [r for r in entities[question_ref].answers if r in entities]
            self._set_children(question_ref, answers)
            self._resequence(answers)
        self._set_children(section_ref, questions)
        self._resequence(questions)

    def replace_section_questions(self, section_ref: int, questions_payload: List[Dict[str, Any]]) -> List[int]:
        """
        Replace a subsection's questions with server data.

        Returns:
            list: Refs removed by the replacement
        """
        removed = []
        for question_ref in list(self.children(section_ref)):
            for ref in [question_ref, *self.children(question_ref)]:
                if ref in self._bindings:
                    self._reusable[self._bindings[ref]] = ref
            removed.extend(self.remove(question_ref))

        for question in sorted(questions_payload or [], key=lambda q: q.get('sort_order') or 0):
            try:
                question_type = QuestionType.parse(question.get('type'))
            except ValueError:
                logger.warning(f"Skipping question with unknown type: {question.get('type')!r}")
                continue
            question_ref = self.add_question(
                section_ref,
                label=question.get('label', ''),
                question_type=question_type,
                sort_order=question.get('sort_order') or None,
                canonical_id=extract_id(question),
                unsaved=False,
                required=bool(question.get('required', False)),
                tooltip=question.get('tooltip') or '',
                voice=question.get('voice') or 'CaseManager',
                alternative_wording=question.get('alternative_wording') or '',
                hidden=bool(question.get('hidden', False)),
                library_id=question.get('library_id'),
            )
            answers = sorted(question.get('answers') or [], key=lambda a: a.get('sort_order') or 0)
            for answer in answers:
                self.add_answer(
                    question_ref,
                    label=answer.get('label', ''),
                    sort_order=answer.get('sort_order') or None,
                    canonical_id=extract_id(answer),
                    unsaved=False,
                    secondary_input_type=answer.get('secondary_input_type'),
                    mutually_exclusive=bool(answer.get('mutually_exclusive', False)),
                    tooltip=answer.get('tooltip') or '',
                    alternative_wording=answer.get('alternative_wording') or '',
                    library_id=answer.get('library_id'),
                )
        self._reusable = {}
        self._refresh_question_count(section_ref)
        return removed

    def copy_question_to_section(
        self,
        question_ref: int,
        target_section_ref: int,
        canonical_id: str,
        answer_ids: Optional[List[Optional[str]]] = None,
        sort_order: Optional[int] = None,
        with_answers: bool = True
    ) -> int:
        """
        Create a persisted copy of a question (and its live answers) in
        another subsection. The source stays untouched.

        Args:
            question_ref: Question to copy
            target_section_ref: Destination subsection
            canonical_id: Backend id of the created copy
            answer_ids: Backend ids of the copied answers, in answer order
            sort_order: Position in the destination
            with_answers: False when the backend copy has no answers yet

        Returns:
            int: Ref of the copy
        """
        source = self.get(question_ref)
        if not isinstance(source, Question):
            raise ValueError(f"Entity {question_ref} is not a question")

        copy_ref = self.add_question(
            target_section_ref,
            label=source.label,
            question_type=source.question_type,
            sort_order=sort_order,
            canonical_id=canonical_id,
            unsaved=False,
            required=source.required,
            tooltip=source.tooltip,
            voice=source.voice,
            alternative_wording=source.alternative_wording,
            hidden=source.hidden,
            library_id=source.library_id,
        )
        live_answers = [a for a in self.child_entities(question_ref) if not a.is_deleted] if with_answers else []
        ids = list(answer_ids or [])
        for index, answer in enumerate(live_answers):
            self.add_answer(
                copy_ref,
                label=answer.label,
                sort_order=index + 1,
                canonical_id=ids[index] if index < len(ids) else None,
                unsaved=False,
                secondary_input_type=answer.secondary_input_type,
                mutually_exclusive=answer.mutually_exclusive,
                tooltip=answer.tooltip,
                alternative_wording=answer.alternative_wording,
                library_id=answer.library_id,
            )
        self._refresh_question_count(target_section_ref)
        return copy_ref

    # ========================
    # Snapshots
    # ========================

    def snapshot(self) -> Dict[str, Any]:
        """
        Lossless, JSON-safe snapshot.

        Returns:
            dict: {'next_ref', 'roots', 'entities', 'bindings'}
        """
        return {
            'next_ref': self._next_ref,
            'roots': list(self._roots),
            'entities': {str(ref): entity.to_json() for ref, entity in self._entities.items()},
            'bindings': {str(ref): cid for ref, cid in self._bindings.items()},
        }

    @classmethod
    def from_snapshot(cls, snapshot: Optional[Dict[str, Any]]) -> "ContentTree":
        """Restore a tree from snapshot() output (None gives an empty tree)."""
        tree = cls()
        if not snapshot:
            return tree
        data = copy.deepcopy(snapshot)
        tree._next_ref = int(data.get('next_ref', 1))
        tree._roots = [int(r) for r in data.get('roots', [])]
        tree._entities = {int(ref): entity_from_json(e) for ref, e in data.get('entities', {}).items()}
        tree._bindings = {int(ref): str(cid) for ref, cid in data.get('bindings', {}).items()}
        return tree

    def get_summary_stats(self) -> Dict[str, Any]:
        """Summary statistics (for debugging/logging)."""
        counts = {kind.value: 0 for kind in EntityKind}
        for entity in self._entities.values():
            counts[entity.kind.value] += 1
        return {
            'entities': counts,
            'persisted': len(self._bindings),
            'unsaved': sum(1 for e in self._entities.values() if e.is_unsaved),
            'deleted_pending': sum(1 for e in self._entities.values() if e.is_deleted),
        }
