"""
Reducer - pure session transitions

reduce(state, action) -> Transition

Architecture:
- Functional core: restore components from the state snapshot, apply
  one action, snapshot them back. No I/O, no awaits.
- Effects describe the network work the action needs; EditSession runs
  them and feeds outcomes back as further actions.
- ValidationError raised by a handler rejects the action: every partial
  mutation is discarded and only an error message is added to the log.
- ValueError (unknown ref, unknown enum value) rejects the action with
  the state unchanged.

State layout (inside the sealed SessionState envelope):
    session_id, assessment_id, label, status,
    tree, last_saved, tracker, relationships, scoring,
    search {slot: {context, results}}, messages, in_flight [refs],
    settings {message_log_limit, min_search_chars}
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from assessment_builder.commands import (
    ActivateScoringModel,
    AddAnswer,
    AddGoal,
    AddIntervention,
    AddQuestion,
    AddRelationship,
    AddSection,
    ApplyLibraryMatch,
    AssessmentLoaded,
    AssessmentStatusChanged,
    ChangeAssessmentStatus,
    ChildrenPersisted,
    CreateScoringModel,
    DeactivateScoringModel,
    DeleteEntity,
    DeleteScoringModel,
    EditEntity,
    EntityPersisted,
    EntityRemoved,
    ExpandGoal,
    ExpandProblem,
    FieldsPersisted,
    GoalsLoaded,
    InterventionsLoaded,
    LibraryBound,
    LoadScoringModels,
    LoadSectionQuestions,
    MessageDismissed,
    MessagePosted,
    MoveQuestion,
    NestedLoadFailed,
    OpenAssessment,
    OpenRelationships,
    QuestionCopiedToSection,
    RelationshipsLoaded,
    RelationshipsLoadFailed,
    RemoveGoal,
    RemoveIntervention,
    RemoveRelationship,
    ReorderSiblings,
    RevertChanges,
    SaveFinished,
    SaveQuestion,
    SaveSection,
    ScoresLoaded,
    ScoringModelsLoaded,
    SearchCleared,
    SearchRequested,
    SearchResultsReceived,
    SectionQuestionsLoaded,
    SessionState,
    SetScore,
    UpdatePlanningItem,
)
from assessment_builder.contracts import Answer, AssessmentStatus, EntityKind, Question, QuestionType, Section
from assessment_builder.core import relationship_cache as relationships
from assessment_builder.core import scoring
from assessment_builder.core.change_tracker import ChangeAction, ChangeTracker
from assessment_builder.core.content_store import ContentTree
from assessment_builder.core.library_matcher import LIBRARY_CONTENT_TYPES
from assessment_builder.core.relationship_cache import RelationshipCache
from assessment_builder.core.reorder_engine import plan_reorder
from assessment_builder.core.scoring import ScoringBook
from assessment_builder.core.search_registry import SEARCH_SLOTS, SearchContext
from assessment_builder.core.validation import (
    check_question_label,
    require_editable,
    validate_question_for_save,
    validate_section_for_save,
)
from assessment_builder.errors import ValidationError
from assessment_builder.results import (
    CancelSearch,
    IllegalCommand,
    LoadAssessmentEffect,
    LoadSectionQuestionsEffect,
    PersistDelete,
    PersistReorder,
    PersistStatus,
    RecordSnapshot,
    RunSearch,
    SaveStage,
    StartMove,
    StartSave,
    Transition,
)
from assessment_builder.utils.helpers import generate_session_id
from assessment_builder.utils.message_log import Severity, append_message, dismiss_message

logger = logging.getLogger(__name__)


EDITABLE_FIELDS = {
    EntityKind.SECTION: {'label', 'tooltip', 'alternative_wording'},
    EntityKind.QUESTION: {'label', 'question_type', 'required', 'tooltip', 'voice',
                          'alternative_wording', 'hidden'},
    EntityKind.ANSWER: {'label', 'secondary_input_type', 'mutually_exclusive', 'tooltip',
                        'alternative_wording'},
}


def initial_state(
    assessment_id: Optional[str] = None,
    label: str = "",
    status: str = "draft",
    message_log_limit: int = 50,
    min_search_chars: int = 2,
    session_id: Optional[str] = None
) -> SessionState:
    """Empty session state."""
    return SessionState.from_json({
        'session_id': session_id or generate_session_id(),
        'assessment_id': assessment_id,
        'label': label,
        'status': AssessmentStatus.parse(status).value,
        'tree': ContentTree().snapshot(),
        'last_saved': None,
        'tracker': [],
        'relationships': RelationshipCache().snapshot(),
        'scoring': ScoringBook().snapshot(),
        'search': {slot: {'context': None, 'results': []} for slot in SEARCH_SLOTS},
        'messages': [],
        'in_flight': [],
        'settings': {
            'message_log_limit': message_log_limit,
            'min_search_chars': min_search_chars,
        },
    })


class _Context:
    """Restored components for one reduction"""

    def __init__(self, state: SessionState):
        data = state.to_json()
        self.data = data
        self.tree = ContentTree.from_snapshot(data.get('tree'))
        self.tracker = ChangeTracker.from_snapshot(data.get('tracker'))
        self.relationships = RelationshipCache.from_snapshot(data.get('relationships'))
        self.scoring = ScoringBook.from_snapshot(data.get('scoring'))
        self.in_flight = set(data.get('in_flight', []))
        self.effects: List[Any] = []
        self.rejection: Optional[str] = None
        self.created_ref: Optional[int] = None

    # ------------------------
    # Handler API
    # ------------------------

    def emit(self, effect) -> None:
        self.effects.append(effect)

    def post(self, severity: Severity, text: str, stage: Optional[str] = None) -> None:
        limit = self.data['settings']['message_log_limit']
        self.data['messages'] = append_message(self.data['messages'], severity, text, stage, limit)

    def reject(self, reason: str) -> None:
        """Refuse the action but keep mutations made so far (e.g. a message)."""
        self.rejection = reason

    def require_editable(self) -> None:
        require_editable(self.data.get('status'))

    def require_unlocked(self, ref: Optional[int], also: Optional[int] = None) -> None:
        """
        Single-writer gate.

        Args:
            ref: Entity about to change (None: any pending work blocks)
            also: Extra lock root tolerated alongside ref's own
        """
        roots = self.tracker.lock_roots(self.tree)
        if not roots:
            return
        allowed = set()
        if ref is not None:
            allowed.add(self.tracker.lock_root(ref, self.tree))
        if also is not None:
            allowed.add(also)
        if roots - allowed:
            raise ValidationError("Save or revert the item you are editing first")

    def require_idle(self, *refs: int) -> None:
        busy = [r for r in refs if r in self.in_flight]
        if busy:
            raise ValidationError("A save for this item is still in progress")

    def answer_id(self, answer_ref: int) -> str:
        answer = self.tree.get(answer_ref)
        if not isinstance(answer, Answer):
            raise ValidationError(f"Entity {answer_ref} is not an answer")
        canonical = self.tree.canonical_id(answer_ref)
        if canonical is None:
            raise ValidationError("Save the answer before editing its relationships")
        return canonical

    def refresh_unsaved(self, ref: Optional[int]) -> None:
        """is_unsaved = ref (or, for questions, one of its answers) has pending work."""
        if ref is None or ref not in self.tree:
            return
        scope = [ref]
        if isinstance(self.tree.get(ref), Question):
            scope.extend(self.tree.children(ref))
        pending = self.tracker.has_pending(scope)
        if self.tree.get(ref).is_unsaved != pending:
            self.tree.mark_unsaved(ref, pending)

    def subtree_refs(self, ref: int) -> List[int]:
        refs = [ref]
        for child in self.tree.children(ref):
            refs.extend(self.subtree_refs(child))
        return refs

    # ------------------------
    # Export
    # ------------------------

    def settle(self) -> None:
        """Nothing pending and nothing in flight: this tree is the last-saved tree."""
        if not self.tracker.has_pending() and not self.in_flight:
            self.data['last_saved'] = self.tree.snapshot()

    def to_state(self) -> SessionState:
        self.data['tree'] = self.tree.snapshot()
        self.data['tracker'] = self.tracker.snapshot()
        self.data['relationships'] = self.relationships.snapshot()
        self.data['scoring'] = self.scoring.snapshot()
        self.data['in_flight'] = sorted(self.in_flight)
        return SessionState.from_json(self.data)


# ========================
# Loading
# ========================

def _open_assessment(ctx: _Context, action: OpenAssessment) -> None:
    if ctx.tracker.has_pending() or ctx.in_flight:
        raise ValidationError("Save or revert your changes before opening another assessment")
    if action.assessment_id != ctx.data.get('assessment_id'):
        ctx.tree = ContentTree()
        ctx.relationships = RelationshipCache()
        ctx.scoring = ScoringBook()
        ctx.data['last_saved'] = None
    ctx.data['assessment_id'] = action.assessment_id
    ctx.emit(LoadAssessmentEffect(action.assessment_id))


def _assessment_loaded(ctx: _Context, action: AssessmentLoaded) -> None:
    if ctx.tracker.has_pending() and not action.force:
        logger.info("Assessment reload skipped: unsaved edits present")
        ctx.reject("Unsaved edits present; reload skipped")
        return
    ctx.tree.load_sections(list(action.sections))
    ctx.tracker.clear_all()
    ctx.data['assessment_id'] = action.assessment_id
    ctx.data['label'] = action.label
    ctx.data['status'] = AssessmentStatus.parse(action.status).value


def _load_section_questions(ctx: _Context, action: LoadSectionQuestions) -> None:
    section = ctx.tree.get(action.section_ref)
    if not isinstance(section, Section) or section.is_parent:
        raise ValidationError("Questions live in subsections")
    if not ctx.tree.is_persisted(action.section_ref):
        ctx.reject("Section has not been saved yet")
        return
    ctx.emit(LoadSectionQuestionsEffect(action.section_ref))


def _section_questions_loaded(ctx: _Context, action: SectionQuestionsLoaded) -> None:
    if action.section_ref not in ctx.tree:
        ctx.reject(f"Section {action.section_ref} no longer exists")
        return
    scope = ctx.subtree_refs(action.section_ref)[1:]
    if ctx.tracker.has_pending(scope):
        logger.info(f"Reload of section {action.section_ref} skipped: unsaved edits present")
        ctx.reject("Unsaved edits present; reload skipped")
        return
    ctx.tree.replace_section_questions(action.section_ref, list(action.questions))


# ========================
# Content Edits
# ========================

def _add_section(ctx: _Context, action: AddSection) -> None:
    ctx.require_editable()
    ctx.require_unlocked(action.parent_ref)
    ref = ctx.tree.add_section(action.label, parent_ref=action.parent_ref, tooltip=action.tooltip)
    ctx.tracker.record(ref, EntityKind.SECTION, ChangeAction.ADD, label=action.label)
    ctx.created_ref = ref


def _add_question(ctx: _Context, action: AddQuestion) -> None:
    ctx.require_editable()
    ctx.require_unlocked(None)
    ref = ctx.tree.add_question(
        action.section_ref,
        label=action.label,
        question_type=QuestionType.parse(action.question_type),
        required=action.required,
        tooltip=action.tooltip,
        voice=action.voice,
        hidden=action.hidden,
    )
    ctx.tracker.record(ref, EntityKind.QUESTION, ChangeAction.ADD, label=action.label)
    ctx.created_ref = ref


def _add_answer(ctx: _Context, action: AddAnswer) -> None:
    ctx.require_editable()
    question = ctx.tree.get(action.question_ref)
    if not isinstance(question, Question):
        raise ValidationError(f"Entity {action.question_ref} is not a question")
    if not question.question_type.is_select:
        raise ValidationError(f"{question.question_type.value} questions cannot have answers")
    if question.is_deleted:
        raise ValidationError("Question is being deleted")
    ctx.require_unlocked(action.question_ref)
    ctx.require_idle(action.question_ref)
    ref = ctx.tree.add_answer(
        action.question_ref,
        label=action.label,
        secondary_input_type=action.secondary_input_type,
        mutually_exclusive=action.mutually_exclusive,
        tooltip=action.tooltip,
    )
    ctx.tracker.record(ref, EntityKind.ANSWER, ChangeAction.ADD, label=action.label)
    ctx.refresh_unsaved(action.question_ref)
    ctx.created_ref = ref


def _edit_entity(ctx: _Context, action: EditEntity) -> None:
    ctx.require_editable()
    entity = ctx.tree.get(action.ref)
    unknown = set(action.fields) - EDITABLE_FIELDS[entity.kind]
    if unknown:
        raise ValidationError(f"Fields cannot be edited: {sorted(unknown)}")
    if entity.is_deleted:
        raise ValidationError("Item is being deleted")
    ctx.require_unlocked(action.ref)
    ctx.require_idle(action.ref, ctx.tracker.lock_root(action.ref, ctx.tree))

    changed = {}
    for name, value in action.fields.items():
        if name == 'question_type':
            value = QuestionType.parse(value)
        if getattr(entity, name) != value:
            changed[name] = value
    if not changed:
        return

    if 'label' in changed and entity.library_id and not ctx.tree.is_persisted(action.ref):
        # a renamed draft no longer matches its library record
        changed['library_id'] = None

    ctx.tree.update(action.ref, **changed)
    tracked = {k: (v.value if isinstance(v, QuestionType) else v) for k, v in changed.items()}
    ctx.tracker.record(action.ref, entity.kind, ChangeAction.UPDATE, **tracked)
    ctx.refresh_unsaved(action.ref)
    ctx.refresh_unsaved(ctx.tree.owning_question(action.ref))


def _apply_library_match(ctx: _Context, action: ApplyLibraryMatch) -> None:
    ctx.require_editable()
    entity = ctx.tree.get(action.ref)
    persisted = ctx.tree.is_persisted(action.ref)
    if isinstance(entity, Section):
        raise ValidationError("Sections cannot be swapped for library content")
    if isinstance(entity, Answer) and persisted:
        raise ValidationError("Saved answers cannot be swapped for library content; delete and re-add instead")
    ctx.require_unlocked(action.ref)
    ctx.require_idle(action.ref)
    ctx.tree.update(action.ref, label=action.label, library_id=action.library_id)
    ctx.tracker.record(action.ref, entity.kind, ChangeAction.LIBRARY_REPLACE,
                       library_id=action.library_id, label=action.label)
    ctx.refresh_unsaved(action.ref)
    ctx.refresh_unsaved(ctx.tree.owning_question(action.ref))


def _delete_entity(ctx: _Context, action: DeleteEntity) -> None:
    ctx.require_editable()
    entity = ctx.tree.get(action.ref)
    ctx.require_unlocked(action.ref)
    ctx.require_idle(action.ref)

    if not ctx.tree.is_persisted(action.ref):
        parent_question = ctx.tree.owning_question(action.ref) if isinstance(entity, Answer) else None
        before = {r: ctx.tree.get(r).sort_order for r in ctx.tree.siblings(action.ref)}
        removed = ctx.tree.remove(action.ref)
        ctx.tracker.clear_many(removed)
        for ref, sort_order in before.items():
            sibling = ctx.tree.get(ref)
            if sibling.sort_order != sort_order and ctx.tree.is_persisted(ref):
                ctx.tracker.record(ref, sibling.kind, ChangeAction.UPDATE, sort_order=sibling.sort_order)
                ctx.refresh_unsaved(ref)
        ctx.refresh_unsaved(parent_question)
        logger.info(f"Removed unsaved {entity.kind.value} {action.ref} locally")
        return

    if not entity.is_deleted:
        ctx.tree.mark_deleted(action.ref)
        ctx.tracker.record(action.ref, entity.kind, ChangeAction.DELETE)
    ctx.in_flight.add(action.ref)
    ctx.emit(PersistDelete(action.ref))


def _reorder_siblings(ctx: _Context, action: ReorderSiblings) -> None:
    ctx.require_editable()
    entity = ctx.tree.get(action.ref)
    if entity.is_deleted:
        raise ValidationError("Item is being deleted")
    ctx.require_unlocked(action.ref)
    siblings = ctx.tree.siblings(action.ref, include_self=True)
    ctx.require_idle(*siblings)
    if any(ctx.tree.get(r).is_deleted for r in siblings):
        raise ValidationError("Wait for pending deletes to finish before reordering")

    new_order, orders = plan_reorder(ctx.tree, action.ref, action.new_index)
    if new_order == siblings and all(ctx.tree.get(r).sort_order == o for r, o in orders.items()):
        return
    parent_ref = ctx.tree.parent_of(action.ref)
    ctx.tree.set_order(parent_ref, new_order)
    for ref in new_order:
        sibling = ctx.tree.get(ref)
        ctx.tracker.record(ref, sibling.kind, ChangeAction.UPDATE, sort_order=orders[ref])
        ctx.refresh_unsaved(ref)

    persisted = tuple(r for r in new_order if ctx.tree.is_persisted(r))
    if persisted:
        ctx.in_flight.update(persisted)
        ctx.emit(PersistReorder(persisted, parent_ref))


def _revert_changes(ctx: _Context, action: RevertChanges) -> None:
    if ctx.in_flight:
        raise ValidationError("Wait for saves in progress to finish before reverting")
    if ctx.data.get('last_saved') is None:
        raise ValidationError("Nothing to revert to")
    ctx.tree = ContentTree.from_snapshot(ctx.data['last_saved'])
    ctx.tracker.clear_all()
    ctx.post(Severity.INFO, "Unsaved changes discarded")


# ========================
# Save / Move Requests
# ========================

def _save_question(ctx: _Context, action: SaveQuestion) -> None:
    ctx.require_editable()
    question = ctx.tree.get(action.ref)
    if not isinstance(question, Question):
        raise ValidationError(f"Entity {action.ref} is not a question")
    ctx.require_idle(*ctx.subtree_refs(action.ref))
    ctx.require_unlocked(action.ref)
    if not ctx.tracker.has_pending(ctx.subtree_refs(action.ref)):
        ctx.post(Severity.INFO, "No changes to save")
        ctx.reject("No changes to save")
        return
    if not ctx.tree.is_persisted(question.section_ref):
        raise ValidationError("Save the section before adding questions to it")
    validate_question_for_save(ctx.tree, action.ref)
    ctx.in_flight.add(action.ref)
    ctx.emit(StartSave(action.ref))


def _save_section(ctx: _Context, action: SaveSection) -> None:
    ctx.require_editable()
    section = ctx.tree.get(action.ref)
    if not isinstance(section, Section):
        raise ValidationError(f"Entity {action.ref} is not a section")
    parent_ref = section.parent_ref
    ctx.require_idle(action.ref, *([parent_ref] if parent_ref is not None else []))
    ctx.require_unlocked(action.ref, also=parent_ref)

    scope = [action.ref]
    if parent_ref is not None and not ctx.tree.is_persisted(parent_ref):
        scope.append(parent_ref)
        validate_section_for_save(ctx.tree, parent_ref)
    if not ctx.tracker.has_pending(scope):
        ctx.post(Severity.INFO, "No changes to save")
        ctx.reject("No changes to save")
        return
    validate_section_for_save(ctx.tree, action.ref)
    ctx.in_flight.update(scope)
    ctx.emit(StartSave(action.ref))


def _move_question(ctx: _Context, action: MoveQuestion) -> None:
    ctx.require_editable()
    question = ctx.tree.get(action.ref)
    if not isinstance(question, Question):
        raise ValidationError(f"Entity {action.ref} is not a question")
    target = ctx.tree.get(action.target_section_ref)
    if not isinstance(target, Section) or target.is_parent:
        raise ValidationError("Questions can only move into a subsection")
    if action.target_section_ref == question.section_ref:
        raise ValidationError("Use reorder to move a question within its section")
    if not ctx.tree.is_persisted(action.ref):
        raise ValidationError("Save the question before moving it")
    if not ctx.tree.is_persisted(action.target_section_ref):
        raise ValidationError("Save the target section before moving questions into it")
    if question.is_deleted:
        raise ValidationError("Question is being deleted")
    ctx.require_idle(action.ref)
    ctx.require_unlocked(None)
    check_question_label(ctx.tree, action.target_section_ref, question.label)
    ctx.in_flight.add(action.ref)
    ctx.emit(StartMove(action.ref, action.target_section_ref))


# ========================
# Saga Feedback
# ========================

def _library_bound(ctx: _Context, action: LibraryBound) -> None:
    entity = ctx.tree.find(action.ref)
    if entity is None:
        ctx.reject(f"Entity {action.ref} no longer exists")
        return
    fields = {'library_id': action.library_id}
    if action.label:
        fields['label'] = action.label
    ctx.tree.update(action.ref, **fields)
    ctx.tracker.record(action.ref, entity.kind, ChangeAction.LIBRARY_REPLACE, **fields)


def _clear_creation(ctx: _Context, ref: int) -> None:
    entry = ctx.tracker.get(ref)
    if entry is not None and entry.action in (ChangeAction.ADD, ChangeAction.LIBRARY_REPLACE):
        ctx.tracker.clear(ref)


def _entity_persisted(ctx: _Context, action: EntityPersisted) -> None:
    if action.ref not in ctx.tree:
        ctx.reject(f"Entity {action.ref} no longer exists")
        return
    ctx.tree.bind(action.ref, action.canonical_id)
    _clear_creation(ctx, action.ref)
    ctx.refresh_unsaved(action.ref)


def _children_persisted(ctx: _Context, action: ChildrenPersisted) -> None:
    for ref, canonical_id in zip(action.answer_refs, action.answer_ids):
        if ref not in ctx.tree:
            continue
        if canonical_id:
            ctx.tree.bind(ref, canonical_id)
        _clear_creation(ctx, ref)
        ctx.refresh_unsaved(ref)
    ctx.refresh_unsaved(action.question_ref)


def _fields_persisted(ctx: _Context, action: FieldsPersisted) -> None:
    if action.ref not in ctx.tree:
        return
    ctx.tracker.discard_fields(action.ref, action.fields)
    ctx.refresh_unsaved(action.ref)
    ctx.refresh_unsaved(ctx.tree.owning_question(action.ref))


def _question_copied(ctx: _Context, action: QuestionCopiedToSection) -> None:
    ctx.created_ref = ctx.tree.copy_question_to_section(
        action.source_ref,
        action.target_section_ref,
        action.canonical_id,
        list(action.answer_ids),
        sort_order=action.sort_order,
        with_answers=action.with_answers,
    )


def _entity_removed(ctx: _Context, action: EntityRemoved) -> None:
    if action.ref not in ctx.tree:
        return
    entity = ctx.tree.get(action.ref)
    parent_question = ctx.tree.owning_question(action.ref) if isinstance(entity, Answer) else None
    removed = ctx.tree.remove(action.ref)
    ctx.tracker.clear_many(removed)
    ctx.in_flight.difference_update(removed)
    ctx.refresh_unsaved(parent_question)


def _save_finished(ctx: _Context, action: SaveFinished) -> None:
    ctx.in_flight.difference_update(action.refs)
    if action.ok:
        ctx.emit(RecordSnapshot("save"))


def _message_posted(ctx: _Context, action: MessagePosted) -> None:
    ctx.post(Severity(action.severity), action.text, action.stage)


def _message_dismissed(ctx: _Context, action: MessageDismissed) -> None:
    ctx.data['messages'] = dismiss_message(ctx.data['messages'], action.index)


# ========================
# Search
# ========================

def _search_requested(ctx: _Context, action: SearchRequested) -> None:
    if action.slot not in SEARCH_SLOTS:
        raise ValueError(f"Unknown search slot: {action.slot}")
    if action.content_type not in LIBRARY_CONTENT_TYPES:
        raise ValueError(f"Unsupported library content type: {action.content_type}")
    text = (action.text or '').strip()
    if len(text) < ctx.data['settings']['min_search_chars']:
        ctx.data['search'][action.slot] = {'context': None, 'results': []}
        ctx.emit(CancelSearch(action.slot))
        return
    context = SearchContext(action.slot, action.content_type, text, action.scope_id).to_json()
    ctx.data['search'][action.slot] = {'context': context, 'results': []}
    ctx.emit(RunSearch(action.slot, context))


def _search_results(ctx: _Context, action: SearchResultsReceived) -> None:
    slot = ctx.data['search'].get(action.slot)
    if slot is None or slot['context'] != action.context:
        ctx.reject("Search context is no longer current")
        return
    slot['results'] = [c.to_json() for c in action.candidates]


def _search_cleared(ctx: _Context, action: SearchCleared) -> None:
    if action.slot not in SEARCH_SLOTS:
        raise ValueError(f"Unknown search slot: {action.slot}")
    ctx.data['search'][action.slot] = {'context': None, 'results': []}
    ctx.emit(CancelSearch(action.slot))


# ========================
# Assessment Status
# ========================

def _change_status(ctx: _Context, action: ChangeAssessmentStatus) -> None:
    if ctx.tracker.has_pending() or ctx.in_flight:
        raise ValidationError("Save or revert your changes before changing the assessment status")
    status = AssessmentStatus.parse(ctx.data.get('status'))
    if action.publish and status == AssessmentStatus.PUBLISHED:
        raise ValidationError("Assessment is already published")
    if not action.publish and status != AssessmentStatus.PUBLISHED:
        raise ValidationError("Only published assessments can be unpublished")
    ctx.emit(PersistStatus(action.publish))


def _status_changed(ctx: _Context, action: AssessmentStatusChanged) -> None:
    ctx.data['status'] = AssessmentStatus.parse(action.status).value


_HANDLERS: Dict[type, Callable[[_Context, Any], None]] = {
    OpenAssessment: _open_assessment,
    AssessmentLoaded: _assessment_loaded,
    LoadSectionQuestions: _load_section_questions,
    SectionQuestionsLoaded: _section_questions_loaded,
    AddSection: _add_section,
    AddQuestion: _add_question,
    AddAnswer: _add_answer,
    EditEntity: _edit_entity,
    ApplyLibraryMatch: _apply_library_match,
    DeleteEntity: _delete_entity,
    ReorderSiblings: _reorder_siblings,
    RevertChanges: _revert_changes,
    SaveQuestion: _save_question,
    SaveSection: _save_section,
    MoveQuestion: _move_question,
    LibraryBound: _library_bound,
    EntityPersisted: _entity_persisted,
    ChildrenPersisted: _children_persisted,
    FieldsPersisted: _fields_persisted,
    QuestionCopiedToSection: _question_copied,
    EntityRemoved: _entity_removed,
    SaveFinished: _save_finished,
    MessagePosted: _message_posted,
    MessageDismissed: _message_dismissed,
    OpenRelationships: relationships.open_relationships,
    RelationshipsLoaded: relationships.relationships_loaded,
    RelationshipsLoadFailed: relationships.relationships_load_failed,
    AddRelationship: relationships.add_relationship,
    RemoveRelationship: relationships.remove_relationship,
    ExpandProblem: relationships.expand_problem,
    ExpandGoal: relationships.expand_goal,
    GoalsLoaded: relationships.goals_loaded,
    InterventionsLoaded: relationships.interventions_loaded,
    NestedLoadFailed: relationships.nested_load_failed,
    AddGoal: relationships.add_goal,
    RemoveGoal: relationships.remove_goal,
    AddIntervention: relationships.add_intervention,
    RemoveIntervention: relationships.remove_intervention,
    UpdatePlanningItem: relationships.update_planning_item,
    SearchRequested: _search_requested,
    SearchResultsReceived: _search_results,
    SearchCleared: _search_cleared,
    LoadScoringModels: scoring.load_scoring_models,
    ScoringModelsLoaded: scoring.scoring_models_loaded,
    CreateScoringModel: scoring.create_scoring_model,
    DeleteScoringModel: scoring.delete_scoring_model,
    ActivateScoringModel: scoring.activate_scoring_model,
    DeactivateScoringModel: scoring.deactivate_scoring_model,
    ScoresLoaded: scoring.scores_loaded,
    SetScore: scoring.set_score,
    ChangeAssessmentStatus: _change_status,
    AssessmentStatusChanged: _status_changed,
}


def reduce(state: SessionState, action) -> Transition:
    """
    Apply one action.

    Args:
        state: Current session state
        action: Any Action

    Returns:
        Transition with the new state, effects to run and, when the
        action was refused, an IllegalCommand
    """
    command_type = type(action).__name__
    handler = _HANDLERS.get(type(action))
    if handler is None:
        return Transition(state, rejection=IllegalCommand(f"Unknown action: {command_type}", command_type))

    ctx = _Context(state)
    try:
        handler(ctx, action)
    except ValidationError as e:
        logger.info(f"{command_type} rejected: {e.message}")
        failed = _Context(state)
        failed.post(Severity.ERROR, e.message, SaveStage.VALIDATING.value)
        return Transition(failed.to_state(), rejection=IllegalCommand(e.message, command_type))
    except ValueError as e:
        logger.warning(f"{command_type} illegal: {e}")
        return Transition(state, rejection=IllegalCommand(str(e), command_type))

    ctx.settle()
    rejection = IllegalCommand(ctx.rejection, command_type) if ctx.rejection else None
    return Transition(ctx.to_state(), tuple(ctx.effects), rejection, ctx.created_ref)
