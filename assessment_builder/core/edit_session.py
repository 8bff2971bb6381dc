"""
Edit Session - single-owner store and effect runner

Responsibilities:
- Own the one SessionState of an authoring session
- dispatch(): run the pure reducer (synchronous, nothing can interleave
  between reading and writing the state)
- perform(): dispatch, then await every effect the reducer asked for
- Route effects to the sagas (save orchestrator, relationship service,
  scoring service, catalog) which feed their outcomes back as actions
- Track background work (library bundle publication, typeahead) so
  callers can drain() before shutting down

Design principles:
- All state changes go through the reducer, including saga feedback
- Sagas read fresh copies (tree(), tracker()) right before each request
- Errors surface as messages in the state, never as exceptions
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from assessment_builder.commands import (
    AssessmentLoaded,
    AssessmentStatusChanged,
    MessagePosted,
    OpenAssessment,
    SearchResultsReceived,
    SectionQuestionsLoaded,
    SessionState,
)
from assessment_builder.config import BuilderConfig
from assessment_builder.contracts import LibraryCandidate
from assessment_builder.core.assessment_catalog import AssessmentCatalog
from assessment_builder.core.change_tracker import ChangeTracker
from assessment_builder.core.content_store import ContentTree
from assessment_builder.core.library_matcher import LibraryMatcher
from assessment_builder.core.preview import Selections, calculate_visible_questions, trigger_map
from assessment_builder.core.reducer import initial_state, reduce
from assessment_builder.core.relationship_cache import RelationshipCache
from assessment_builder.core.relationship_service import RelationshipService
from assessment_builder.core.save_orchestrator import SaveOrchestrator
from assessment_builder.core.scoring import ScoringBook, ScoringService, records
from assessment_builder.core.search_registry import SearchContext, SearchContextRegistry
from assessment_builder.errors import BuilderError
from assessment_builder.results import (
    ActionOutcome,
    CancelSearch,
    LoadAssessmentEffect,
    LoadGoalsEffect,
    LoadInterventionsEffect,
    LoadRelationshipsEffect,
    LoadScoresEffect,
    LoadScoringModelsEffect,
    LoadSectionQuestionsEffect,
    PersistDelete,
    PersistGoal,
    PersistIntervention,
    PersistPlanningItem,
    PersistRelationship,
    PersistReorder,
    PersistScores,
    PersistScoringModel,
    PersistStatus,
    RecordSnapshot,
    RemoveScoringModel,
    RunSearch,
    StartMove,
    StartSave,
    Transition,
    WorkflowResult,
)

logger = logging.getLogger(__name__)


def parse_assessment(body: Any) -> Tuple[List[Dict[str, Any]], str, str]:
    """
    Split an assessment response into (sections, label, status).

    Accepts {'sections': [...], 'title': ..., 'status': ...} or a bare
    section list.
    """
    if isinstance(body, list):
        return [s for s in body if isinstance(s, dict)], "", "draft"
    if not isinstance(body, dict):
        return [], "", "draft"
    sections = records(body, 'sections')
    label = body.get('title') or body.get('label') or body.get('name') or ""
    return sections, label, body.get('status') or "draft"


class EditSession:
    """
    Live authoring session over one assessment.

    Usage:
        session = EditSession(api, config)
        await session.open("assessment-1")
        outcome = await session.perform(AddSection("Vitals"))
    """

    def __init__(self, api, config: Optional[BuilderConfig] = None,
                 assessment_id: Optional[str] = None, persistence=None,
                 state: Optional[SessionState] = None):
        """
        Args:
            api: AsyncContentApi (or a fake exposing the same coroutines)
            config: Builder settings (defaults when omitted)
            assessment_id: Assessment to bind the empty session to
            persistence: Optional SessionPersistence for save snapshots
            state: Resume from an existing state instead of an empty one
        """
        self.config = config or BuilderConfig()
        self.api = api
        self.persistence = persistence
        self.state = state or initial_state(
            assessment_id=assessment_id,
            message_log_limit=self.config.message_log_limit,
            min_search_chars=self.config.min_search_chars,
        )

        self.matcher = LibraryMatcher(api)
        self.search = SearchContextRegistry(
            self.matcher,
            self._on_search_results,
            debounce_seconds=self.config.debounce_seconds,
            min_chars=self.config.min_search_chars,
        )
        self.orchestrator = SaveOrchestrator(self)
        self.relationships = RelationshipService(self)
        self.scoring = ScoringService(self)
        self.catalog = AssessmentCatalog(api)
        self._background: Set[asyncio.Task] = set()

        self._runners: Dict[type, Callable[[Any], Awaitable[Any]]] = {
            LoadAssessmentEffect: self._load_assessment,
            LoadSectionQuestionsEffect: self._load_section_questions,
            StartSave: self.orchestrator.save,
            StartMove: self.orchestrator.move,
            PersistDelete: self.orchestrator.delete,
            PersistReorder: self.orchestrator.reorder,
            LoadRelationshipsEffect: self.relationships.load,
            PersistRelationship: self.relationships.persist,
            LoadGoalsEffect: self.relationships.load_goals,
            LoadInterventionsEffect: self.relationships.load_interventions,
            PersistGoal: self.relationships.persist_goal,
            PersistIntervention: self.relationships.persist_intervention,
            PersistPlanningItem: self.relationships.persist_planning_item,
            RunSearch: self._run_search,
            CancelSearch: self._cancel_search,
            LoadScoringModelsEffect: self.scoring.load_models,
            PersistScoringModel: self.scoring.create_model,
            RemoveScoringModel: self.scoring.remove_model,
            LoadScoresEffect: self.scoring.load_scores,
            PersistScores: self.scoring.persist_scores,
            PersistStatus: self._persist_status,
            RecordSnapshot: self._record_snapshot,
        }
        logger.info(f"EditSession initialized (assessment={self.assessment_id})")

    @classmethod
    def resume(cls, api, persistence, assessment_id: str,
               config: Optional[BuilderConfig] = None) -> "EditSession":
        """Session restored from the latest snapshot, or a fresh one if none exists."""
        state = persistence.load_latest(assessment_id)
        return cls(api, config, assessment_id=assessment_id, persistence=persistence, state=state)

    # ========================
    # Store
    # ========================

    @property
    def assessment_id(self) -> Optional[str]:
        return self.state.assessment_id

    def dispatch(self, action) -> Transition:
        """Reduce one action into the session state. Effects are NOT run."""
        transition = reduce(self.state, action)
        self.state = transition.state
        if transition.rejection:
            logger.debug(f"{transition.rejection.command_type} refused: {transition.rejection.reason}")
        return transition

    async def perform(self, action) -> ActionOutcome:
        """
        Dispatch an action and run its effects to completion.

        Returns:
            ActionOutcome with the transition and any workflow results
        """
        transition = self.dispatch(action)
        workflows = await self.run_effects(transition.effects)
        return ActionOutcome(transition, tuple(workflows))

    async def feed(self, action) -> Transition:
        """Saga feedback: dispatch and run follow-up effects."""
        transition = self.dispatch(action)
        await self.run_effects(transition.effects)
        return transition

    async def run_effects(self, effects) -> List[WorkflowResult]:
        results = []
        for effect in effects:
            runner = self._runners.get(type(effect))
            if runner is None:
                logger.error(f"No runner for effect {type(effect).__name__}")
                continue
            result = await runner(effect)
            if isinstance(result, WorkflowResult):
                results.append(result)
        return results

    async def post(self, severity: str, text: str, stage: Optional[str] = None) -> None:
        await self.feed(MessagePosted(severity, text, stage))

    def spawn(self, coro, name: Optional[str] = None) -> asyncio.Task:
        """Start background work the session owns until drain()."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for background tasks and in-progress searches to settle."""
        while self._background:
            await asyncio.gather(*list(self._background))
        await self.search.wait_all()

    def close(self) -> None:
        self.search.close()
        for task in list(self._background):
            task.cancel()

    # ========================
    # Convenience
    # ========================

    async def open(self, assessment_id: str) -> ActionOutcome:
        return await self.perform(OpenAssessment(assessment_id))

    async def reload_assessment(self) -> None:
        if self.assessment_id:
            await self._load_assessment(LoadAssessmentEffect(self.assessment_id))

    async def reload_section(self, section_ref: int) -> None:
        await self._load_section_questions(LoadSectionQuestionsEffect(section_ref))

    # ========================
    # Views (fresh copies, safe to mutate)
    # ========================

    def _data(self) -> Dict[str, Any]:
        return self.state.to_json()

    def tree(self) -> ContentTree:
        return ContentTree.from_snapshot(self._data().get('tree'))

    def tracker(self) -> ChangeTracker:
        return ChangeTracker.from_snapshot(self._data().get('tracker'))

    def relationship_cache(self) -> RelationshipCache:
        return RelationshipCache.from_snapshot(self._data().get('relationships'))

    def scoring_book(self) -> ScoringBook:
        return ScoringBook.from_snapshot(self._data().get('scoring'))

    def messages(self) -> List[Dict[str, Any]]:
        return self._data().get('messages', [])

    def search_results(self, slot: str) -> List[Dict[str, Any]]:
        return self._data()['search'].get(slot, {}).get('results', [])

    def preview(self, selections: Selections, question_refs: Optional[List[int]] = None) -> List[int]:
        """Visible question refs for a preview with the given selections."""
        tree = self.tree()
        triggers = trigger_map(tree, self.relationship_cache())
        return calculate_visible_questions(tree, selections, triggers, question_refs)

    def view(self) -> Dict[str, Any]:
        """JSON projection for front ends."""
        data = self._data()
        tree = ContentTree.from_snapshot(data.get('tree'))
        tracker = ChangeTracker.from_snapshot(data.get('tracker'))
        return {
            'session_id': data.get('session_id'),
            'assessment_id': data.get('assessment_id'),
            'label': data.get('label'),
            'status': data.get('status'),
            'tree': data.get('tree'),
            'pending': tracker.snapshot(),
            'has_pending': tracker.has_pending(),
            'in_flight': data.get('in_flight', []),
            'relationships': data.get('relationships'),
            'scoring': data.get('scoring'),
            'search': data.get('search'),
            'messages': data.get('messages', []),
            'stats': tree.get_summary_stats(),
        }

    # ========================
    # Effect Runners
    # ========================

    async def _load_assessment(self, effect: LoadAssessmentEffect) -> None:
        try:
            body = await self.api.get_assessment(effect.assessment_id)
        except BuilderError as e:
            logger.error(f"Loading assessment {effect.assessment_id} failed: {e}")
            await self.post('error', f"Could not load assessment: {e}")
            return
        sections, label, status = parse_assessment(body)
        await self.feed(AssessmentLoaded(effect.assessment_id, tuple(sections), label, status))

    async def _load_section_questions(self, effect: LoadSectionQuestionsEffect) -> None:
        section_id = self.tree().canonical_id(effect.section_ref)
        if section_id is None:
            logger.warning(f"Section {effect.section_ref} is not saved; nothing to load")
            return
        try:
            body = await self.api.get_section_questions(section_id)
        except BuilderError as e:
            logger.error(f"Loading questions for section {section_id} failed: {e}")
            await self.post('error', f"Could not load questions: {e}")
            return
        await self.feed(SectionQuestionsLoaded(effect.section_ref, tuple(records(body, 'questions'))))

    async def _run_search(self, effect: RunSearch) -> None:
        self.search.request(SearchContext.from_json(effect.context))

    async def _cancel_search(self, effect: CancelSearch) -> None:
        self.search.clear(effect.slot)

    def _on_search_results(self, context: SearchContext, candidates: List[LibraryCandidate]) -> None:
        self.dispatch(SearchResultsReceived(context.slot, context.to_json(), tuple(candidates)))

    async def _persist_status(self, effect: PersistStatus) -> None:
        verb = "publish" if effect.publish else "unpublish"
        try:
            status = await self.catalog.set_status(self.assessment_id, effect.publish)
        except BuilderError as e:
            logger.error(f"Could not {verb} assessment {self.assessment_id}: {e}")
            await self.post('error', f"Could not {verb} assessment: {e}")
            return
        await self.feed(AssessmentStatusChanged(status))
        await self.post('success', f"Assessment {status}")

    async def _record_snapshot(self, effect: RecordSnapshot) -> None:
        if self.persistence is None or not self.assessment_id:
            return
        try:
            self.persistence.save_snapshot(self.state)
        except (OSError, ValueError) as e:
            logger.warning(f"Session snapshot ({effect.reason}) not written: {e}")
