"""
Semantic contracts for the assessment builder.

This module defines immutable data structures shared between modules.
They carry shape and meaning only; rules live in core.validation.

Design principles:
- Frozen dataclasses (immutable after creation)
- Entities are addressed by a local arena ref (int), never by the
  backend id. The ref -> canonical id binding lives in the ContentTree.
- JSON round-trip via to_json()/entity_from_json() so session snapshots
  can be persisted

Contents:
- AssessmentStatus, QuestionType, EntityKind: closed vocabularies
- Section, Question, Answer: content tree nodes
- LibraryCandidate: one library search result
- RelationshipLink, PlanningItem, ScoringModel: relationship graph and scoring

Usage:
    from assessment_builder.contracts import Question, QuestionType
"""

from dataclasses import dataclass, asdict, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class AssessmentStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    UNPUBLISHED = "unpublished"

    @classmethod
    def parse(cls, value: Optional[str]) -> "AssessmentStatus":
        """Lenient parse; unknown or missing status is treated as draft."""
        if not value:
            return cls.DRAFT
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.DRAFT


class QuestionType(str, Enum):
    SINGLE_SELECT = "SingleSelect"
    MULTISELECT = "Multiselect"
    TEXT = "Text"
    DATE = "Date"
    NUMERIC = "Numeric"

    @property
    def is_select(self) -> bool:
        """Only select types own answers."""
        return self in (QuestionType.SINGLE_SELECT, QuestionType.MULTISELECT)

    @classmethod
    def parse(cls, value: Any) -> "QuestionType":
        """
        Parse a question type, case-insensitively.

        Raises:
            ValueError: If value is not a known type
        """
        if isinstance(value, QuestionType):
            return value
        text = str(value or '').strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        raise ValueError(f"Unknown question type: {value!r}")


class EntityKind(str, Enum):
    SECTION = "section"
    QUESTION = "question"
    ANSWER = "answer"


@dataclass(frozen=True)
class Section:
    """
    Section node. A section with parent_ref=None is a top-level parent
    section whose children are subsections; a subsection's children are
    questions.

    Attributes:
        ref: Local arena ref
        label: Display label
        sort_order: 1-based position among siblings
        parent_ref: Owning parent section ref (None for parent sections)
        children: Ordered child refs (subsections or questions)
        questions_quantity: Server-reported question count (subsections)
        tooltip: Help text
        alternative_wording: Alternate label
        library_id: Library record this section is bound to
        is_unsaved: Local edits not yet acknowledged by the backend
        is_deleted: Delete requested, awaiting confirmation
    """
    ref: int
    label: str
    sort_order: int
    parent_ref: Optional[int] = None
    children: Tuple[int, ...] = ()
    questions_quantity: int = 0
    tooltip: str = ""
    alternative_wording: str = ""
    library_id: Optional[str] = None
    is_unsaved: bool = False
    is_deleted: bool = False

    kind = EntityKind.SECTION

    @property
    def is_parent(self) -> bool:
        return self.parent_ref is None

    def to_json(self) -> Dict[str, Any]:
        data = asdict(self)
        data['kind'] = self.kind.value
        data['children'] = list(self.children)
        return data


@dataclass(frozen=True)
class Question:
    """
    Question node, owned by a subsection.

    Attributes:
        ref: Local arena ref
        section_ref: Owning subsection ref
        label: Question text
        question_type: QuestionType
        sort_order: 1-based position within the subsection
        answers: Ordered answer refs (select types only)
        required: Whether an answer is mandatory
        tooltip: Help text
        voice: Narrative voice (e.g. 'CaseManager', 'Patient')
        alternative_wording: Alternate label
        hidden: Shown only when triggered by an answer
        library_id: Library record this question is bound to
        is_unsaved: Local edits not yet acknowledged by the backend
        is_deleted: Delete requested, awaiting confirmation
    """
    ref: int
    section_ref: int
    label: str
    question_type: QuestionType
    sort_order: int
    answers: Tuple[int, ...] = ()
    required: bool = False
    tooltip: str = ""
    voice: str = "CaseManager"
    alternative_wording: str = ""
    hidden: bool = False
    library_id: Optional[str] = None
    is_unsaved: bool = False
    is_deleted: bool = False

    kind = EntityKind.QUESTION

    def to_json(self) -> Dict[str, Any]:
        data = asdict(self)
        data['kind'] = self.kind.value
        data['question_type'] = self.question_type.value
        data['answers'] = list(self.answers)
        return data


@dataclass(frozen=True)
class Answer:
    """
    Answer node, owned by a select-type question.

    Attributes:
        ref: Local arena ref
        question_ref: Owning question ref
        label: Answer text, unique within its question
        sort_order: 1-based position, contiguous within the question
        secondary_input_type: Optional free-entry input shown on selection
        mutually_exclusive: Deselects all other answers when chosen
        tooltip: Help text
        alternative_wording: Alternate label
        library_id: Library record this answer is bound to
        is_unsaved: Local edits not yet acknowledged by the backend
        is_deleted: Delete requested, awaiting confirmation
    """
    ref: int
    question_ref: int
    label: str
    sort_order: int
    secondary_input_type: Optional[str] = None
    mutually_exclusive: bool = False
    tooltip: str = ""
    alternative_wording: str = ""
    library_id: Optional[str] = None
    is_unsaved: bool = False
    is_deleted: bool = False

    kind = EntityKind.ANSWER

    def to_json(self) -> Dict[str, Any]:
        data = asdict(self)
        data['kind'] = self.kind.value
        return data


Entity = Section | Question | Answer


def entity_from_json(data: Dict[str, Any]) -> Entity:
    """
    Rebuild an entity from its to_json() form.

    Raises:
        ValueError: If 'kind' is missing or unknown
    """
    payload = dict(data)
    kind = payload.pop('kind', None)
    if kind == EntityKind.SECTION.value:
        payload['children'] = tuple(payload.get('children', ()))
        return Section(**payload)
    if kind == EntityKind.QUESTION.value:
        payload['answers'] = tuple(payload.get('answers', ()))
        payload['question_type'] = QuestionType.parse(payload['question_type'])
        return Question(**payload)
    if kind == EntityKind.ANSWER.value:
        return Answer(**payload)
    raise ValueError(f"Unknown entity kind in snapshot: {kind!r}")


@dataclass(frozen=True)
class LibraryCandidate:
    """
    One library search result.

    Attributes:
        id: Library record id
        label: Library label
        exact_match: Label equals the query (case-insensitive, trimmed)
        master_id: Master record id, preferred for binding when present
        content_type: Searched content type
    """
    id: str
    label: str
    exact_match: bool = False
    master_id: Optional[str] = None
    content_type: str = ""

    @property
    def library_id(self) -> str:
        """Id used when binding a local entity to this record."""
        return self.master_id or self.id

    def to_json(self) -> Dict[str, Any]:
        return asdict(self)


class LinkType(str, Enum):
    TRIGGERED_QUESTION = "triggered_question"
    GUIDELINE = "guideline"
    PROBLEM = "problem"
    BARRIER = "barrier"

    @property
    def category(self) -> str:
        """Relationship cache category holding links of this type."""
        return _LINK_CATEGORIES[self]


_LINK_CATEGORIES = {
    LinkType.TRIGGERED_QUESTION: "questions",
    LinkType.GUIDELINE: "guidelines",
    LinkType.PROBLEM: "problems",
    LinkType.BARRIER: "barriers",
}


@dataclass(frozen=True)
class RelationshipLink:
    """Many-to-many link from an answer to a relationship target."""
    link_type: LinkType
    source_answer_id: str
    target_id: str
    label: str = ""


@dataclass(frozen=True)
class PlanningItem:
    """
    Problem, goal or intervention in the nested clinical-planning graph.

    Attributes:
        id: Canonical id
        label: Display label
        tooltip: Help text
        alternative_wording: Alternate label
        custom_attributes: Free-form attributes
        category: Intervention category (interventions only)
        pending: Optimistic local entry not yet confirmed by a reload
    """
    id: str
    label: str
    tooltip: str = ""
    alternative_wording: str = ""
    custom_attributes: Dict[str, Any] = field(default_factory=dict)
    category: Optional[str] = None
    pending: bool = False

    @staticmethod
    def from_payload(data: Dict[str, Any]) -> "PlanningItem":
        item_id = data.get('id') or (data.get('ids') or {}).get('id') or ""
        return PlanningItem(
            id=str(item_id),
            label=data.get('label') or data.get('name') or "",
            tooltip=data.get('tooltip') or "",
            alternative_wording=data.get('alternative_wording') or "",
            custom_attributes=dict(data.get('custom_attributes') or {}),
            category=data.get('category'),
        )

    def to_json(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ScoringModel:
    """Named numeric weighting scheme over answers."""
    id: str
    label: str
    scoring_type: str

    @staticmethod
    def from_payload(data: Dict[str, Any]) -> "ScoringModel":
        return ScoringModel(
            id=str(data.get('id', '')),
            label=data.get('label', ''),
            scoring_type=data.get('scoring_type', ''),
        )

    def to_json(self) -> Dict[str, Any]:
        return asdict(self)
