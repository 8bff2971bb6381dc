"""
Relationship Graph Cache - per-answer relationship panel data

Each persisted answer (keyed by canonical id) caches four independently
loadable categories:
    guidelines, questions (triggered), problems, barriers

Problems nest goals, goals nest interventions. Both nested levels are
fetched lazily and tracked by parent id. Expanded flags are kept apart
from load state so collapsing never throws fetched data away.

Load state per bucket:
    unloaded -> loading -> loaded_empty | loaded

Link changes are optimistic (pending items) and always followed by a
full reload of the owning bucket; pending items never survive a reload.
"""

import copy
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from assessment_builder.contracts import LinkType, PlanningItem
from assessment_builder.core.validation import check_forward_trigger, require_label
from assessment_builder.errors import ValidationError
from assessment_builder.results import (
    LoadGoalsEffect,
    LoadInterventionsEffect,
    LoadRelationshipsEffect,
    PersistGoal,
    PersistIntervention,
    PersistPlanningItem,
    PersistRelationship,
)
from assessment_builder.utils.helpers import labels_equal, normalize_label

logger = logging.getLogger(__name__)


CATEGORIES = ('guidelines', 'questions', 'problems', 'barriers')
NESTED_LEVELS = ('goals', 'interventions')
PLANNING_FIELDS = {'label', 'tooltip', 'alternative_wording', 'custom_attributes'}


class LoadStatus(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED_EMPTY = "loaded_empty"
    LOADED = "loaded"


def parse_relationships(payload: Dict[str, Any]) -> Dict[str, List[PlanningItem]]:
    """
    Split an answer-relationships response into categories.

    Accepts both {'guidelines': {'guidelines': [...]}} and the flat
    {'guidelines': [...]} form.
    """
    parsed = {}
    for category in CATEGORIES:
        value = (payload or {}).get(category)
        if isinstance(value, dict):
            value = value.get(category) or []
        parsed[category] = [PlanningItem.from_payload(item) for item in (value or []) if isinstance(item, dict)]
    return parsed


def _bucket(items: List[PlanningItem], status: LoadStatus) -> Dict[str, Any]:
    return {'status': status.value, 'items': [item.to_json() for item in items]}


def _loaded_status(items: List[Any]) -> LoadStatus:
    return LoadStatus.LOADED if items else LoadStatus.LOADED_EMPTY


class RelationshipCache:
    """Relationship panel cache for every answer opened this session"""

    def __init__(self):
        self._answers: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._nested: Dict[str, Dict[str, Dict[str, Any]]] = {level: {} for level in NESTED_LEVELS}
        self._expanded: Dict[str, bool] = {}

    # ========================
    # Answer Level
    # ========================

    def _categories(self, answer_id: str) -> Dict[str, Dict[str, Any]]:
        if answer_id not in self._answers:
            self._answers[answer_id] = {c: _bucket([], LoadStatus.UNLOADED) for c in CATEGORIES}
        return self._answers[answer_id]

    def status(self, answer_id: str, category: Optional[str] = None) -> LoadStatus:
        """
        Load status of one category, or of the whole answer.

        The whole-answer status is LOADING if any category is loading,
        UNLOADED if any is unloaded, otherwise LOADED unless every
        category is empty.
        """
        if answer_id not in self._answers:
            return LoadStatus.UNLOADED
        buckets = self._answers[answer_id]
        if category is not None:
            return LoadStatus(buckets[category]['status'])
        statuses = {LoadStatus(b['status']) for b in buckets.values()}
        for status in (LoadStatus.LOADING, LoadStatus.UNLOADED, LoadStatus.LOADED):
            if status in statuses:
                return status
        return LoadStatus.LOADED_EMPTY

    def begin_load(self, answer_id: str) -> None:
        for bucket in self._categories(answer_id).values():
            bucket['status'] = LoadStatus.LOADING.value

    def apply_loaded(self, answer_id: str, payload: Dict[str, Any]) -> None:
        """Replace every category with server data (drops pending items)."""
        parsed = parse_relationships(payload)
        self._answers[answer_id] = {c: _bucket(items, _loaded_status(items)) for c, items in parsed.items()}
        counts = {c: len(items) for c, items in parsed.items()}
        logger.info(f"Relationships loaded for answer {answer_id}: {counts}")

    def load_failed(self, answer_id: str) -> None:
        for bucket in self._categories(answer_id).values():
            if bucket['status'] == LoadStatus.LOADING.value:
                confirmed = [i for i in bucket['items'] if not i.get('pending')]
                bucket['status'] = (_loaded_status(confirmed) if confirmed else LoadStatus.UNLOADED).value

    def items(self, answer_id: str, category: str) -> List[PlanningItem]:
        if answer_id not in self._answers:
            return []
        return [PlanningItem(**item) for item in self._answers[answer_id][category]['items']]

    def has_item(self, answer_id: str, category: str, target_id: Optional[str] = None,
                 label: Optional[str] = None) -> bool:
        for item in self.items(answer_id, category):
            if target_id is not None and item.id == str(target_id):
                return True
            if label and labels_equal(item.label, label):
                return True
        return False

    def add_pending(self, answer_id: str, category: str, item: PlanningItem) -> None:
        bucket = self._categories(answer_id)[category]
        bucket['items'].append(item.to_json())

    def remove_item(self, answer_id: str, category: str, item_id: str) -> bool:
        """Remove an item locally; returns whether it was present."""
        bucket = self._categories(answer_id)[category]
        before = len(bucket['items'])
        bucket['items'] = [i for i in bucket['items'] if i['id'] != str(item_id)]
        return len(bucket['items']) != before

    def triggered_question_ids(self, answer_id: str) -> List[str]:
        return [item.id for item in self.items(answer_id, 'questions') if not item.pending]

    def loaded_answer_ids(self) -> List[str]:
        return list(self._answers)

    # ========================
    # Nested Levels
    # ========================

    def _nested_bucket(self, level: str, parent_id: str) -> Dict[str, Any]:
        if level not in self._nested:
            raise ValueError(f"Unknown nested level: {level}")
        buckets = self._nested[level]
        if parent_id not in buckets:
            buckets[parent_id] = _bucket([], LoadStatus.UNLOADED)
        return buckets[parent_id]

    def nested_status(self, level: str, parent_id: str) -> LoadStatus:
        bucket = self._nested.get(level, {}).get(parent_id)
        return LoadStatus(bucket['status']) if bucket else LoadStatus.UNLOADED

    def begin_nested(self, level: str, parent_id: str) -> None:
        self._nested_bucket(level, parent_id)['status'] = LoadStatus.LOADING.value

    def apply_nested(self, level: str, parent_id: str, records: List[Dict[str, Any]]) -> None:
        items = [PlanningItem.from_payload(r) for r in records if isinstance(r, dict)]
        self._nested[level][parent_id] = _bucket(items, _loaded_status(items))

    def nested_failed(self, level: str, parent_id: str) -> None:
        bucket = self._nested_bucket(level, parent_id)
        confirmed = [i for i in bucket['items'] if not i.get('pending')]
        bucket['status'] = (_loaded_status(confirmed) if confirmed else LoadStatus.UNLOADED).value

    def nested_items(self, level: str, parent_id: str) -> List[PlanningItem]:
        bucket = self._nested.get(level, {}).get(parent_id)
        return [PlanningItem(**item) for item in bucket['items']] if bucket else []

    def add_nested_pending(self, level: str, parent_id: str, item: PlanningItem) -> None:
        self._nested_bucket(level, parent_id)['items'].append(item.to_json())

    def remove_nested(self, level: str, parent_id: str, item_id: str) -> bool:
        bucket = self._nested_bucket(level, parent_id)
        before = len(bucket['items'])
        bucket['items'] = [i for i in bucket['items'] if i['id'] != str(item_id)]
        return len(bucket['items']) != before

    def update_item(self, items: List[Dict[str, Any]], item_id: str, fields: Dict[str, Any]) -> bool:
        for item in items:
            if item['id'] == str(item_id):
                item.update(copy.deepcopy(fields))
                return True
        return False

    def planning_bucket(self, level: str, answer_id: str, problem_id: Optional[str] = None,
                        goal_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Raw item list holding a problem, goal or intervention."""
        if level == 'problem':
            return self._categories(answer_id)['problems']['items']
        if level == 'goal':
            return self._nested_bucket('goals', problem_id)['items']
        if level == 'intervention':
            return self._nested_bucket('interventions', goal_id)['items']
        raise ValueError(f"Unknown planning level: {level}")

    # ========================
    # Expansion
    # ========================

    def set_expanded(self, key: str, expanded: bool) -> None:
        self._expanded[key] = bool(expanded)

    def is_expanded(self, key: str) -> bool:
        return self._expanded.get(key, False)

    # ========================
    # Snapshots
    # ========================

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy({
            'answers': self._answers,
            'nested': self._nested,
            'expanded': self._expanded,
        })

    @classmethod
    def from_snapshot(cls, snapshot: Optional[Dict[str, Any]]) -> "RelationshipCache":
        cache = cls()
        if snapshot:
            data = copy.deepcopy(snapshot)
            cache._answers = data.get('answers', {})
            cache._nested.update(data.get('nested', {}))
            cache._expanded = data.get('expanded', {})
        return cache


# ========================
# Reducer Handlers
# ========================
# Each handler takes the reducer context (tree, relationships, emit, ...)
# and the action. Raise ValidationError to reject.

def _pending_id(label: str) -> str:
    return f"pending:{normalize_label(label)}"


def open_relationships(ctx, action) -> None:
    answer_id = ctx.answer_id(action.answer_ref)
    cache = ctx.relationships
    cache.set_expanded(f"answer:{answer_id}", True)
    if not action.force and cache.status(answer_id) != LoadStatus.UNLOADED:
        return
    cache.begin_load(answer_id)
    ctx.emit(LoadRelationshipsEffect(answer_id))


def relationships_loaded(ctx, action) -> None:
    ctx.relationships.apply_loaded(action.answer_id, action.payload)


def relationships_load_failed(ctx, action) -> None:
    ctx.relationships.load_failed(action.answer_id)


def add_relationship(ctx, action) -> None:
    ctx.require_editable()
    link_type = LinkType(action.link_type)
    answer_id = ctx.answer_id(action.answer_ref)
    category = link_type.category
    cache = ctx.relationships

    if link_type in (LinkType.TRIGGERED_QUESTION, LinkType.GUIDELINE):
        if not action.target_id:
            raise ValidationError(f"Choose a {link_type.value.replace('_', ' ')} to link", field='target')
    else:
        require_label(action.label or action.target_id, f"{link_type.value.capitalize()} name")

    if link_type == LinkType.TRIGGERED_QUESTION:
        target_ref = ctx.tree.ref_for(action.target_id)
        if target_ref is not None:
            check_forward_trigger(ctx.tree, action.answer_ref, target_ref)
        else:
            logger.debug(f"Triggered question {action.target_id} not loaded; skipping order check")

    if cache.has_item(answer_id, category, target_id=action.target_id, label=action.label):
        raise ValidationError(f"Already linked to this {link_type.value.replace('_', ' ')}", field='target')

    sort_order = len(cache.items(answer_id, category)) + 1
    cache.add_pending(answer_id, category, PlanningItem(
        id=str(action.target_id or _pending_id(action.label)),
        label=action.label,
        pending=True,
    ))
    ctx.emit(PersistRelationship(
        answer_id=answer_id,
        link_type=link_type,
        target_id=action.target_id,
        label=action.label.strip(),
        add=True,
        sort_order=sort_order,
    ))


def remove_relationship(ctx, action) -> None:
    ctx.require_editable()
    link_type = LinkType(action.link_type)
    answer_id = ctx.answer_id(action.answer_ref)
    if not ctx.relationships.remove_item(answer_id, link_type.category, action.target_id):
        logger.warning(f"Removing {link_type.value} {action.target_id} not present in local cache")
    ctx.emit(PersistRelationship(
        answer_id=answer_id,
        link_type=link_type,
        target_id=action.target_id,
        label="",
        add=False,
    ))


def expand_problem(ctx, action) -> None:
    cache = ctx.relationships
    cache.set_expanded(f"problem:{action.problem_id}", action.expanded)
    if action.expanded and cache.nested_status('goals', action.problem_id) == LoadStatus.UNLOADED:
        cache.begin_nested('goals', action.problem_id)
        ctx.emit(LoadGoalsEffect(action.problem_id))


def expand_goal(ctx, action) -> None:
    cache = ctx.relationships
    cache.set_expanded(f"goal:{action.goal_id}", action.expanded)
    if action.expanded and cache.nested_status('interventions', action.goal_id) == LoadStatus.UNLOADED:
        cache.begin_nested('interventions', action.goal_id)
        ctx.emit(LoadInterventionsEffect(action.goal_id))


def goals_loaded(ctx, action) -> None:
    ctx.relationships.apply_nested('goals', action.problem_id, list(action.goals))


def interventions_loaded(ctx, action) -> None:
    ctx.relationships.apply_nested('interventions', action.goal_id, list(action.interventions))


def nested_load_failed(ctx, action) -> None:
    ctx.relationships.nested_failed(action.level, action.parent_id)


def add_goal(ctx, action) -> None:
    ctx.require_editable()
    require_label(action.label, "Goal name")
    answer_id = ctx.answer_id(action.answer_ref)
    cache = ctx.relationships
    if any(labels_equal(g.label, action.label) for g in cache.nested_items('goals', action.problem_id)):
        raise ValidationError(f"Goal '{action.label.strip()}' already exists for this problem", field='label')
    cache.add_nested_pending('goals', action.problem_id, PlanningItem(
        id=str(action.goal_id or _pending_id(action.label)), label=action.label, pending=True
    ))
    ctx.emit(PersistGoal(answer_id, action.problem_id, action.label.strip(), action.goal_id, add=True))


def remove_goal(ctx, action) -> None:
    ctx.require_editable()
    answer_id = ctx.answer_id(action.answer_ref)
    ctx.relationships.remove_nested('goals', action.problem_id, action.goal_id)
    ctx.emit(PersistGoal(answer_id, action.problem_id, "", action.goal_id, add=False))


def add_intervention(ctx, action) -> None:
    ctx.require_editable()
    require_label(action.label, "Intervention name")
    answer_id = ctx.answer_id(action.answer_ref)
    cache = ctx.relationships
    existing = cache.nested_items('interventions', action.goal_id)
    if any(labels_equal(i.label, action.label) for i in existing):
        raise ValidationError(f"Intervention '{action.label.strip()}' already exists for this goal", field='label')
    cache.add_nested_pending('interventions', action.goal_id, PlanningItem(
        id=str(action.intervention_id or _pending_id(action.label)),
        label=action.label,
        category=action.category,
        pending=True,
    ))
    ctx.emit(PersistIntervention(
        answer_id, action.problem_id, action.goal_id, action.label.strip(),
        action.intervention_id, add=True, category=action.category
    ))


def remove_intervention(ctx, action) -> None:
    ctx.require_editable()
    answer_id = ctx.answer_id(action.answer_ref)
    ctx.relationships.remove_nested('interventions', action.goal_id, action.intervention_id)
    ctx.emit(PersistIntervention(
        answer_id, action.problem_id, action.goal_id, "", action.intervention_id, add=False
    ))


def update_planning_item(ctx, action) -> None:
    ctx.require_editable()
    unknown = set(action.fields) - PLANNING_FIELDS
    if unknown:
        raise ValidationError(f"Fields cannot be edited: {sorted(unknown)}")
    if 'label' in action.fields:
        require_label(action.fields['label'], f"{action.level.capitalize()} name")
    if action.level == 'goal' and not action.problem_id:
        raise ValidationError("Goal updates need the owning problem")
    if action.level == 'intervention' and not action.goal_id:
        raise ValidationError("Intervention updates need the owning goal")

    answer_id = ctx.answer_id(action.answer_ref)
    cache = ctx.relationships
    try:
        bucket = cache.planning_bucket(action.level, answer_id, action.problem_id, action.goal_id)
    except ValueError as e:
        raise ValidationError(str(e)) from e
    if not cache.update_item(bucket, action.item_id, action.fields):
        logger.warning(f"{action.level} {action.item_id} not in local cache; sending update anyway")
    ctx.emit(PersistPlanningItem(
        answer_id=answer_id,
        level=action.level,
        item_id=action.item_id,
        fields=dict(action.fields),
        problem_id=action.problem_id,
        goal_id=action.goal_id,
    ))
