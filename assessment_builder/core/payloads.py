"""
Request payload builders for the content API.

Full payloads describe brand-new content. Library payloads carry identity
and ordering only; label, type and the rest are implied by the library
record.
"""

from typing import Any, Dict, Iterable, List, Optional

from assessment_builder.contracts import Answer, Question, QuestionType, Section


QUESTION_API_FIELDS = {
    'label': 'label',
    'question_type': 'type',
    'tooltip': 'tooltip',
    'alternative_wording': 'alternative_wording',
    'sort_order': 'sort_order',
    'voice': 'voice',
    'required': 'required',
    'hidden': 'hidden',
    'library_id': 'library_id',
}

ANSWER_API_FIELDS = {
    'label': 'label',
    'tooltip': 'tooltip',
    'alternative_wording': 'alternative_wording',
    'secondary_input_type': 'secondary_input_type',
    'mutually_exclusive': 'mutually_exclusive',
    'sort_order': 'sort_order',
    'library_id': 'library_id',
}

SECTION_API_FIELDS = {
    'label': 'label',
    'sort_order': 'sort_order',
    'tooltip': 'tooltip',
    'alternative_wording': 'alternative_wording',
    'library_id': 'library_id',
}


def section_payload(section: Section, assessment_id: str, parent_id: Optional[str]) -> Dict[str, Any]:
    return {
        'sort_order': section.sort_order,
        'gt_id': assessment_id,
        'label': section.label.strip(),
        'parent_section_id': parent_id,
        'library_id': section.library_id,
    }


def question_payload(question: Question) -> Dict[str, Any]:
    """Full creation payload. Answers are attached by a separate call."""
    return {
        'label': question.label.strip(),
        'type': question.question_type.value,
        'tooltip': question.tooltip,
        'alternative_wording': question.alternative_wording,
        'sort_order': question.sort_order,
        'custom_attributes': {},
        'voice': question.voice,
        'required': question.required,
        'available': False,
        'has_quality_measures': False,
    }


def library_question_payload(question: Question, sort_order: Optional[int] = None) -> Dict[str, Any]:
    return {
        'sort_order': question.sort_order if sort_order is None else sort_order,
        'library_id': question.library_id,
    }


def answer_payload(answer: Answer, sort_order: int) -> Dict[str, Any]:
    if answer.library_id:
        return {'library_id': answer.library_id, 'sort_order': sort_order}
    return {
        'label': answer.label.strip(),
        'tooltip': answer.tooltip,
        'alternative_wording': answer.alternative_wording,
        'secondary_input_type': answer.secondary_input_type,
        'mutually_exclusive': answer.mutually_exclusive,
        'custom_attributes': {},
        'required': False,
        'sort_order': sort_order,
    }


def answers_payload(answers: Iterable[Answer], start: int = 1) -> List[Dict[str, Any]]:
    """Answer payloads numbered start, start+1, ... in the given order."""
    return [answer_payload(a, start + i) for i, a in enumerate(answers)]


def update_payload(fields: Dict[str, Any], api_fields: Dict[str, str]) -> Dict[str, Any]:
    """
    Partial update payload from tracked fields.

    Unknown fields are dropped; enum values are sent as their value.

    Examples:
        >>> update_payload({'question_type': QuestionType.TEXT}, QUESTION_API_FIELDS)
        {'type': 'Text'}
    """
    payload = {}
    for name, value in fields.items():
        if name not in api_fields:
            continue
        if isinstance(value, QuestionType):
            value = value.value
        if isinstance(value, str) and name == 'label':
            value = value.strip()
        payload[api_fields[name]] = value
    return payload
