"""
Action types for the edit-session reducer.

Actions are the ONLY way to change a session. User intents and saga
feedback (network acknowledgements) are both actions; the reducer turns
each one into a new SessionState plus effects to run.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import copy

from assessment_builder.contracts import LibraryCandidate, LinkType, QuestionType


@dataclass(frozen=True)
class SessionState:
    """
    Opaque value object wrapping the canonical session snapshot.

    Rules:
    - Only the reducer and EditSession look inside _data
    - Immutable after creation
    - Deep copied on construction
    - Serializable to/from JSON

    This is a sealed envelope, not a model.
    """
    _data: Dict[str, Any]

    @property
    def assessment_id(self) -> Optional[str]:
        """
        EXCEPTION: Operational metadata for routing requests.

        This and status are the ONLY permitted accessors.
        """
        return self._data.get('assessment_id')

    @property
    def status(self) -> str:
        return self._data.get('status', 'draft')

    def to_json(self) -> dict:
        """
        Serialize to JSON-safe dict (deep copy).

        Returns:
            dict: Deep copy of internal state
        """
        return copy.deepcopy(self._data)

    @staticmethod
    def from_json(data: dict) -> "SessionState":
        """
        Deserialize from JSON dict.

        Deep copies to ensure sealed envelope - no external
        references can mutate our internal state.
        """
        return SessionState(_data=copy.deepcopy(data))


# ========================
# Loading
# ========================

@dataclass(frozen=True)
class OpenAssessment:
    """Fetch an assessment's sections and replace the local tree."""
    assessment_id: str


@dataclass(frozen=True)
class AssessmentLoaded:
    """
    Server sections arrived.

    Attributes:
        assessment_id: Assessment the sections belong to
        sections: Raw section records (with nested subsections)
        label: Assessment title
        status: draft / published / unpublished
        force: Replace the tree even while edits are pending
    """
    assessment_id: str
    sections: Tuple[Dict[str, Any], ...]
    label: str = ""
    status: str = "draft"
    force: bool = False


@dataclass(frozen=True)
class LoadSectionQuestions:
    section_ref: int


@dataclass(frozen=True)
class SectionQuestionsLoaded:
    section_ref: int
    questions: Tuple[Dict[str, Any], ...]


# ========================
# Content Edits
# ========================

@dataclass(frozen=True)
class AddSection:
    """Create a local parent section (parent_ref=None) or subsection."""
    label: str
    parent_ref: Optional[int] = None
    tooltip: str = ""


@dataclass(frozen=True)
class AddQuestion:
    section_ref: int
    label: str
    question_type: QuestionType | str
    required: bool = False
    tooltip: str = ""
    voice: str = "CaseManager"
    hidden: bool = False


@dataclass(frozen=True)
class AddAnswer:
    question_ref: int
    label: str
    secondary_input_type: Optional[str] = None
    mutually_exclusive: bool = False
    tooltip: str = ""


@dataclass(frozen=True)
class EditEntity:
    """
    Change editable fields of a section, question or answer.

    Attributes:
        ref: Entity ref
        fields: Field name -> new value (unknown names are rejected)
    """
    ref: int
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ApplyLibraryMatch:
    """Bind a question or answer to a library record chosen by the author."""
    ref: int
    library_id: str
    label: str


@dataclass(frozen=True)
class DeleteEntity:
    ref: int


@dataclass(frozen=True)
class ReorderSiblings:
    """Drag-and-drop within the same parent: move ref to new_index (0-based)."""
    ref: int
    new_index: int


@dataclass(frozen=True)
class RevertChanges:
    """Discard unsaved edits and restore the last-saved tree."""
    pass


@dataclass(frozen=True)
class SaveQuestion:
    ref: int


@dataclass(frozen=True)
class SaveSection:
    ref: int


@dataclass(frozen=True)
class MoveQuestion:
    ref: int
    target_section_ref: int


# ========================
# Saga Feedback
# ========================

@dataclass(frozen=True)
class LibraryBound:
    """Pre-save check found an exact library match for a new entity."""
    ref: int
    library_id: str
    label: Optional[str] = None


@dataclass(frozen=True)
class EntityPersisted:
    """Backend acknowledged creation (or rebinding) of ref."""
    ref: int
    canonical_id: str


@dataclass(frozen=True)
class ChildrenPersisted:
    """Answers attached to a question; ids are in answer_refs order."""
    question_ref: int
    answer_refs: Tuple[int, ...]
    answer_ids: Tuple[Optional[str], ...]


@dataclass(frozen=True)
class FieldsPersisted:
    ref: int
    fields: Tuple[str, ...]


@dataclass(frozen=True)
class QuestionCopiedToSection:
    """Move step 1+2 done: the question exists in the target section."""
    source_ref: int
    target_section_ref: int
    canonical_id: str
    answer_ids: Tuple[Optional[str], ...] = ()
    sort_order: Optional[int] = None
    with_answers: bool = True


@dataclass(frozen=True)
class EntityRemoved:
    """Backend confirmed a delete (or a move finished) for ref."""
    ref: int


@dataclass(frozen=True)
class SaveFinished:
    """A workflow over refs settled; releases the in-flight guard."""
    refs: Tuple[int, ...]
    ok: bool


@dataclass(frozen=True)
class MessagePosted:
    severity: str
    text: str
    stage: Optional[str] = None


@dataclass(frozen=True)
class MessageDismissed:
    index: int


# ========================
# Relationships
# ========================

@dataclass(frozen=True)
class OpenRelationships:
    """Load (or reuse) the relationship panel data for a persisted answer."""
    answer_ref: int
    force: bool = False


@dataclass(frozen=True)
class RelationshipsLoaded:
    answer_id: str
    payload: Dict[str, Any]


@dataclass(frozen=True)
class RelationshipsLoadFailed:
    answer_id: str


@dataclass(frozen=True)
class AddRelationship:
    """
    Link an answer to a target.

    Attributes:
        answer_ref: Source answer (must be persisted)
        link_type: LinkType
        target_id: Canonical target id; optional for problems and
                   barriers, which are created from label when missing
        label: Display label of the target
    """
    answer_ref: int
    link_type: LinkType | str
    target_id: Optional[str] = None
    label: str = ""


@dataclass(frozen=True)
class RemoveRelationship:
    answer_ref: int
    link_type: LinkType | str
    target_id: str


@dataclass(frozen=True)
class ExpandProblem:
    answer_ref: int
    problem_id: str
    expanded: bool = True


@dataclass(frozen=True)
class ExpandGoal:
    answer_ref: int
    problem_id: str
    goal_id: str
    expanded: bool = True


@dataclass(frozen=True)
class GoalsLoaded:
    problem_id: str
    goals: Tuple[Dict[str, Any], ...]


@dataclass(frozen=True)
class InterventionsLoaded:
    goal_id: str
    interventions: Tuple[Dict[str, Any], ...]


@dataclass(frozen=True)
class NestedLoadFailed:
    """level is 'goals' (parent_id = problem) or 'interventions' (parent_id = goal)."""
    level: str
    parent_id: str


@dataclass(frozen=True)
class AddGoal:
    answer_ref: int
    problem_id: str
    label: str
    goal_id: Optional[str] = None


@dataclass(frozen=True)
class RemoveGoal:
    answer_ref: int
    problem_id: str
    goal_id: str


@dataclass(frozen=True)
class AddIntervention:
    answer_ref: int
    problem_id: str
    goal_id: str
    label: str
    intervention_id: Optional[str] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class RemoveIntervention:
    answer_ref: int
    problem_id: str
    goal_id: str
    intervention_id: str


@dataclass(frozen=True)
class UpdatePlanningItem:
    """
    Edit details of a problem, goal or intervention.

    Attributes:
        answer_ref: Answer whose panel shows the item
        level: 'problem', 'goal' or 'intervention'
        item_id: Canonical item id
        fields: label / tooltip / alternative_wording / custom_attributes
        problem_id: Owning problem (goals and interventions)
        goal_id: Owning goal (interventions)
    """
    answer_ref: int
    level: str
    item_id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    problem_id: Optional[str] = None
    goal_id: Optional[str] = None


# ========================
# Search
# ========================

@dataclass(frozen=True)
class SearchRequested:
    slot: str
    text: str
    content_type: str
    scope_id: Optional[str] = None


@dataclass(frozen=True)
class SearchResultsReceived:
    slot: str
    context: Dict[str, Any]
    candidates: Tuple[LibraryCandidate, ...]


@dataclass(frozen=True)
class SearchCleared:
    """Field blurred or escaped: drop its context and results."""
    slot: str


# ========================
# Scoring
# ========================

@dataclass(frozen=True)
class LoadScoringModels:
    pass


@dataclass(frozen=True)
class ScoringModelsLoaded:
    models: Tuple[Dict[str, Any], ...]


@dataclass(frozen=True)
class CreateScoringModel:
    label: str
    scoring_type: str


@dataclass(frozen=True)
class DeleteScoringModel:
    model_id: str


@dataclass(frozen=True)
class ActivateScoringModel:
    model_id: str


@dataclass(frozen=True)
class DeactivateScoringModel:
    pass


@dataclass(frozen=True)
class ScoresLoaded:
    model_id: str
    values: Tuple[Dict[str, Any], ...]


@dataclass(frozen=True)
class SetScore:
    answer_ref: int
    value: Any


# ========================
# Assessment Status
# ========================

@dataclass(frozen=True)
class ChangeAssessmentStatus:
    publish: bool


@dataclass(frozen=True)
class AssessmentStatusChanged:
    status: str


Action = (
    OpenAssessment | AssessmentLoaded | LoadSectionQuestions | SectionQuestionsLoaded
    | AddSection | AddQuestion | AddAnswer | EditEntity | ApplyLibraryMatch
    | DeleteEntity | ReorderSiblings | RevertChanges
    | SaveQuestion | SaveSection | MoveQuestion
    | LibraryBound | EntityPersisted | ChildrenPersisted | FieldsPersisted
    | QuestionCopiedToSection | EntityRemoved | SaveFinished
    | MessagePosted | MessageDismissed
    | OpenRelationships | RelationshipsLoaded | RelationshipsLoadFailed
    | AddRelationship | RemoveRelationship | ExpandProblem | ExpandGoal
    | GoalsLoaded | InterventionsLoaded | NestedLoadFailed
    | AddGoal | RemoveGoal | AddIntervention | RemoveIntervention | UpdatePlanningItem
    | SearchRequested | SearchResultsReceived | SearchCleared
    | LoadScoringModels | ScoringModelsLoaded | CreateScoringModel | DeleteScoringModel
    | ActivateScoringModel | DeactivateScoringModel | ScoresLoaded | SetScore
    | ChangeAssessmentStatus | AssessmentStatusChanged
)


# ========================
# Host Decoding
# ========================

# Intents a front end may send. Saga feedback is never accepted from outside.
USER_ACTIONS = {
    cls.__name__: cls for cls in (
        OpenAssessment, LoadSectionQuestions,
        AddSection, AddQuestion, AddAnswer, EditEntity, ApplyLibraryMatch,
        DeleteEntity, ReorderSiblings, RevertChanges,
        SaveQuestion, SaveSection, MoveQuestion, MessageDismissed,
        OpenRelationships, AddRelationship, RemoveRelationship, ExpandProblem, ExpandGoal,
        AddGoal, RemoveGoal, AddIntervention, RemoveIntervention, UpdatePlanningItem,
        SearchRequested, SearchCleared,
        LoadScoringModels, CreateScoringModel, DeleteScoringModel,
        ActivateScoringModel, DeactivateScoringModel, SetScore,
        ChangeAssessmentStatus,
    )
}


def action_from_json(data: Dict[str, Any]):
    """
    Build a user action from {'type': 'AddSection', 'args': {...}}.

    Args:
        data: Decoded request body

    Returns:
        Action instance

    Raises:
        ValueError: If the type is unknown or the args do not fit it
    """
    if not isinstance(data, dict):
        raise ValueError("Action must be a JSON object")
    name = data.get('type')
    cls = USER_ACTIONS.get(name)
    if cls is None:
        raise ValueError(f"Unknown action type: {name!r}")
    args = data.get('args') or {}
    if not isinstance(args, dict):
        raise ValueError("Action args must be a JSON object")
    try:
        return cls(**args)
    except TypeError as e:
        raise ValueError(f"Bad arguments for {name}: {e}") from e
