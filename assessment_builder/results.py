"""
Result types returned by the reducer and the workflow sagas.

Effects are plain values describing I/O to perform. The reducer never
performs them; EditSession runs them and feeds the outcome back as
actions.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from assessment_builder.commands import SessionState
from assessment_builder.contracts import LinkType


@dataclass(frozen=True)
class IllegalCommand:
    """
    Action rejected by the reducer.

    The state in the accompanying Transition may still differ from the
    input state (a validation message is posted for the author).

    Attributes:
        reason: Why the action was rejected
        command_type: Action class name
    """
    reason: str
    command_type: str


# ========================
# Effects
# ========================

@dataclass(frozen=True)
class LoadAssessmentEffect:
    assessment_id: str


@dataclass(frozen=True)
class LoadSectionQuestionsEffect:
    section_ref: int


@dataclass(frozen=True)
class StartSave:
    """Run the save saga for a question or section."""
    ref: int


@dataclass(frozen=True)
class StartMove:
    ref: int
    target_section_ref: int


@dataclass(frozen=True)
class PersistDelete:
    ref: int


@dataclass(frozen=True)
class PersistReorder:
    """
    Persist sort_order of resequenced siblings.

    Attributes:
        refs: Persisted siblings whose sort_order changed
        parent_ref: Container (None for parent sections)
    """
    refs: Tuple[int, ...]
    parent_ref: Optional[int]


@dataclass(frozen=True)
class LoadRelationshipsEffect:
    answer_id: str


@dataclass(frozen=True)
class PersistRelationship:
    answer_id: str
    link_type: LinkType
    target_id: Optional[str]
    label: str
    add: bool
    sort_order: int = 1


@dataclass(frozen=True)
class LoadGoalsEffect:
    problem_id: str


@dataclass(frozen=True)
class LoadInterventionsEffect:
    goal_id: str


@dataclass(frozen=True)
class PersistGoal:
    answer_id: str
    problem_id: str
    label: str
    goal_id: Optional[str]
    add: bool


@dataclass(frozen=True)
class PersistIntervention:
    answer_id: str
    problem_id: str
    goal_id: str
    label: str
    intervention_id: Optional[str]
    add: bool
    category: Optional[str] = None


@dataclass(frozen=True)
class PersistPlanningItem:
    answer_id: str
    level: str
    item_id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    problem_id: Optional[str] = None
    goal_id: Optional[str] = None


@dataclass(frozen=True)
class RunSearch:
    slot: str
    context: Dict[str, Any]


@dataclass(frozen=True)
class CancelSearch:
    slot: str


@dataclass(frozen=True)
class LoadScoringModelsEffect:
    pass


@dataclass(frozen=True)
class PersistScoringModel:
    label: str
    scoring_type: str


@dataclass(frozen=True)
class RemoveScoringModel:
    model_id: str


@dataclass(frozen=True)
class LoadScoresEffect:
    model_id: str


@dataclass(frozen=True)
class PersistScores:
    """Send every score of a model; the saga reads current values from state."""
    model_id: str


@dataclass(frozen=True)
class PersistStatus:
    publish: bool


@dataclass(frozen=True)
class RecordSnapshot:
    """Append a session snapshot after a successful save."""
    reason: str


Effect = (
    LoadAssessmentEffect | LoadSectionQuestionsEffect
    | StartSave | StartMove | PersistDelete | PersistReorder
    | LoadRelationshipsEffect | PersistRelationship
    | LoadGoalsEffect | LoadInterventionsEffect
    | PersistGoal | PersistIntervention | PersistPlanningItem
    | RunSearch | CancelSearch
    | LoadScoringModelsEffect | PersistScoringModel | RemoveScoringModel
    | LoadScoresEffect | PersistScores
    | PersistStatus | RecordSnapshot
)


@dataclass(frozen=True)
class Transition:
    """
    Reducer output.

    Attributes:
        state: New session state
        effects: I/O to run, in order
        rejection: Set when the action was refused
        created_ref: Ref allocated by an Add* action
    """
    state: SessionState
    effects: Tuple[Effect, ...] = ()
    rejection: Optional[IllegalCommand] = None
    created_ref: Optional[int] = None

    @property
    def accepted(self) -> bool:
        return self.rejection is None


# ========================
# Workflows
# ========================

class SaveStage(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    LIBRARY_CHECKING = "library_checking"
    PERSISTING = "persisting"
    ATTACHING_CHILDREN = "attaching_children"
    BUNDLE_PUBLISHING = "bundle_publishing"
    DELETING_SOURCE = "deleting_source"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class WorkflowResult:
    """
    Outcome of a multi-step workflow (save, move, delete, reorder).

    Attributes:
        ok: All required steps succeeded
        stage: DONE on success, otherwise the stage that failed
        ref: Entity the workflow ran for
        canonical_id: Backend id after the workflow (if any)
        message: Author-facing summary
        completed_stages: Stages that finished, in order
    """
    ok: bool
    stage: SaveStage
    ref: Optional[int] = None
    canonical_id: Optional[str] = None
    message: str = ""
    completed_stages: Tuple[SaveStage, ...] = ()


@dataclass(frozen=True)
class ActionOutcome:
    """What EditSession.perform() returns."""
    transition: Transition
    workflows: Tuple[WorkflowResult, ...] = ()

    @property
    def rejected(self) -> bool:
        return self.transition.rejection is not None

    @property
    def ok(self) -> bool:
        return not self.rejected and all(w.ok for w in self.workflows)
