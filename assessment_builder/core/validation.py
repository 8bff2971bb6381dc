"""
Validation gates run before any network call.

Every check raises ValidationError with a user-facing message. Nothing
here mutates the tree, so a failed check leaves in-progress edits intact.
"""

import logging
from typing import Iterable, List, Optional

from assessment_builder.contracts import Answer, AssessmentStatus, Question, Section
from assessment_builder.errors import ValidationError
from assessment_builder.utils.helpers import find_duplicate_labels, is_blank, labels_equal

logger = logging.getLogger(__name__)


def require_label(label: Optional[str], what: str = "Label") -> None:
    if is_blank(label):
        raise ValidationError(f"{what} cannot be blank", field='label')


def require_editable(status: AssessmentStatus | str) -> None:
    """Only draft assessments accept content edits."""
    if AssessmentStatus.parse(status) != AssessmentStatus.DRAFT:
        raise ValidationError(
            f"Assessment is {AssessmentStatus.parse(status).value} and cannot be edited",
            field='status'
        )


def _clashes(tree, label: str, refs: Iterable[int], exclude_ref: Optional[int]) -> bool:
    for ref in refs:
        if ref == exclude_ref:
            continue
        entity = tree.get(ref)
        if entity.is_deleted:
            continue
        if labels_equal(entity.label, label):
            return True
    return False


def check_section_label(tree, label: str, parent_ref: Optional[int] = None,
                        exclude_ref: Optional[int] = None) -> None:
    """
    Parent sections are unique among parent sections; subsections are
    unique among subsections of the same parent only.
    """
    require_label(label, "Section name")
    if parent_ref is None:
        siblings = tree.root_sections()
        scope = "section"
    else:
        siblings = tree.children(parent_ref)
        scope = "subsection in this section"
    if _clashes(tree, label, siblings, exclude_ref):
        raise ValidationError(f"A {scope} named '{label.strip()}' already exists", field='label')


def check_question_label(tree, section_ref: int, label: str, exclude_ref: Optional[int] = None) -> None:
    """Question labels are unique among persisted siblings in the subsection."""
    require_label(label, "Question text")
    persisted = [r for r in tree.children(section_ref) if tree.is_persisted(r)]
    if _clashes(tree, label, persisted, exclude_ref):
        raise ValidationError(f"Question '{label.strip()}' already exists in this section", field='label')


def check_answer_labels(labels: List[str]) -> None:
    """Reject blank or duplicate answer labels within one question."""
    for label in labels:
        require_label(label, "Answer text")
    duplicates = find_duplicate_labels(labels)
    if duplicates:
        raise ValidationError(f"Duplicate answer: '{duplicates[0].strip()}'", field='answers')


def check_question_answers(tree, question_ref: int) -> None:
    """
    Select types need at least one live answer; other types carry none.
    Answer labels must be unique within the question.
    """
    question = tree.get(question_ref)
    live = [a for a in tree.child_entities(question_ref) if not a.is_deleted]
    if question.question_type.is_select:
        if not live:
            raise ValidationError(
                f"{question.question_type.value} questions need at least one answer",
                field='answers'
            )
        check_answer_labels([a.label for a in live])
    elif live:
        raise ValidationError(
            f"{question.question_type.value} questions cannot have answers",
            field='answers'
        )


def validate_question_for_save(tree, question_ref: int) -> Question:
    """
    Full gate for saving a question and its answers.

    Returns:
        Question: The validated question

    Raises:
        ValidationError: On the first failed rule
    """
    question = tree.get(question_ref)
    if not isinstance(question, Question):
        raise ValidationError(f"Entity {question_ref} is not a question")
    if question.is_deleted:
        raise ValidationError("Question is being deleted")
    check_question_label(tree, question.section_ref, question.label, exclude_ref=question_ref)
    if question.library_id:
        # library questions bring their own answers
        live = [a for a in tree.child_entities(question_ref) if not a.is_deleted]
        check_answer_labels([a.label for a in live])
    else:
        check_question_answers(tree, question_ref)
    return question


def validate_section_for_save(tree, section_ref: int) -> Section:
    section = tree.get(section_ref)
    if not isinstance(section, Section):
        raise ValidationError(f"Entity {section_ref} is not a section")
    if section.is_deleted:
        raise ValidationError("Section is being deleted")
    check_section_label(tree, section.label, section.parent_ref, exclude_ref=section_ref)
    return section


def check_forward_trigger(tree, answer_ref: int, target_question_ref: int) -> None:
    """
    A triggered question must come later in the assessment than the
    question owning the triggering answer.
    """
    answer = tree.get(answer_ref)
    if not isinstance(answer, Answer):
        raise ValidationError(f"Entity {answer_ref} is not an answer")
    if answer.question_ref == target_question_ref:
        raise ValidationError("A question cannot trigger itself")
    source_key = tree.position_key(answer.question_ref)
    target_key = tree.position_key(target_question_ref)
    if target_key <= source_key:
        raise ValidationError(
            "Triggered questions must appear after the question that triggers them",
            field='target'
        )


def check_single_active_model(active_model_id: Optional[str], model_id: str) -> None:
    """Only one scoring model may be edited at a time."""
    if active_model_id is not None and active_model_id != model_id:
        raise ValidationError("Finish editing the active scoring model first", field='scoring_model')
