"""
Preview - which questions a respondent would see

Rules:
- Questions not flagged hidden are always visible.
- A hidden question becomes visible when a selected answer of a visible
  question triggers it.
- Hiding cascades: if Q1/A1 triggers Q2 and Q2/A1 triggers Q3, deselecting
  Q1/A1 hides Q2 and then Q3.

Selections map question ref -> tuple of selected answer refs.
"""

import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from assessment_builder.contracts import Answer, Question, QuestionType
from assessment_builder.core.content_store import ContentTree
from assessment_builder.core.relationship_cache import RelationshipCache

logger = logging.getLogger(__name__)

Selections = Dict[int, Tuple[int, ...]]
Triggers = Dict[int, Set[int]]


def trigger_map(tree: ContentTree, cache: RelationshipCache) -> Triggers:
    """
    Answer ref -> refs of the questions it triggers.

    Only answers whose relationships were loaded contribute; targets not
    present in the tree are skipped.
    """
    triggers: Triggers = {}
    for answer_id in cache.loaded_answer_ids():
        answer_ref = tree.ref_for(answer_id)
        if answer_ref is None:
            continue
        targets = {tree.ref_for(qid) for qid in cache.triggered_question_ids(answer_id)}
        targets.discard(None)
        if targets:
            triggers[answer_ref] = targets
    return triggers


def select_answer(tree: ContentTree, selections: Selections, answer_ref: int) -> Selections:
    """
    Toggle one answer and return the new selections.

    Single-select questions keep only the chosen answer. Multiselect
    questions toggle it; a mutually exclusive answer clears the others,
    and choosing any other answer clears a selected exclusive one.
    """
    answer = tree.get(answer_ref)
    if not isinstance(answer, Answer):
        raise ValueError(f"Entity {answer_ref} is not an answer")
    question: Question = tree.get(answer.question_ref)
    current = list(selections.get(question.ref, ()))
    updated = dict(selections)

    if question.question_type == QuestionType.SINGLE_SELECT:
        chosen = [answer_ref]
    elif answer_ref in current:
        chosen = [r for r in current if r != answer_ref]
    elif answer.mutually_exclusive:
        chosen = [answer_ref]
    else:
        chosen = [r for r in current if not tree.get(r).mutually_exclusive] + [answer_ref]

    if chosen:
        updated[question.ref] = tuple(chosen)
    else:
        updated.pop(question.ref, None)
    return updated


def _triggered_by(selections: Selections, triggers: Triggers, visible: Iterable[int]) -> Set[int]:
    shown: Set[int] = set()
    for question_ref in visible:
        for answer_ref in selections.get(question_ref, ()):
            shown |= triggers.get(answer_ref, set())
    return shown


def calculate_visible_questions(
    tree: ContentTree,
    selections: Selections,
    triggers: Triggers,
    question_refs: Optional[List[int]] = None
) -> List[int]:
    """
    Visible question refs, in assessment order.

    Args:
        tree: Content tree
        selections: Selected answers per question
        triggers: Answer ref -> triggered question refs
        question_refs: Questions in scope (default: the whole assessment)

    Returns:
        list: Visible question refs
    """
    scope = [
        r for r in (question_refs if question_refs is not None else tree.question_refs())
        if not tree.get(r).is_deleted
    ]
    in_scope = set(scope)
    always = {r for r in scope if not tree.get(r).hidden}

    # selections on questions outside the scope still trigger
    outside = set(selections) - in_scope
    visible = always | (_triggered_by(selections, triggers, selections) & in_scope)
    while True:
        supported = always | (_triggered_by(selections, triggers, visible | outside) & in_scope)
        if supported == visible:
            break
        visible &= supported

    logger.debug(f"Preview: {len(visible)} of {len(scope)} question(s) visible")
    return [r for r in scope if r in visible]
