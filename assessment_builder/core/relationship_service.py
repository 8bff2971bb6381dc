"""
Relationship service - runs relationship effects against the content API

Every link change is followed by exactly one reload of the owning level,
whether the change succeeded or not, so optimistic pending items are
always replaced by server truth:
    answer links (guidelines, triggered questions, problems, barriers)
        -> get_answer_relationships
    goals -> get_goals(problem)
    interventions -> get_interventions(goal)

New problems, barriers, goals and interventions created by label are
checked against the library first; an exact match is linked instead of
creating a duplicate.
"""

import logging
from typing import Any, Dict, Optional

from assessment_builder.commands import (
    GoalsLoaded,
    InterventionsLoaded,
    NestedLoadFailed,
    RelationshipsLoaded,
    RelationshipsLoadFailed,
)
from assessment_builder.contracts import LinkType
from assessment_builder.core.scoring import records
from assessment_builder.errors import BuilderError, LibraryCheckFailure
from assessment_builder.results import (
    LoadGoalsEffect,
    LoadInterventionsEffect,
    LoadRelationshipsEffect,
    PersistGoal,
    PersistIntervention,
    PersistPlanningItem,
    PersistRelationship,
)

logger = logging.getLogger(__name__)


class RelationshipService:
    """Relationship loads and link changes for an EditSession"""

    def __init__(self, session):
        self.session = session

    # ========================
    # Loads
    # ========================

    async def load(self, effect: LoadRelationshipsEffect) -> None:
        await self._reload_answer(effect.answer_id)

    async def load_goals(self, effect: LoadGoalsEffect) -> None:
        await self._reload_goals(effect.problem_id)

    async def load_interventions(self, effect: LoadInterventionsEffect) -> None:
        await self._reload_interventions(effect.goal_id)

    async def _reload_answer(self, answer_id: str) -> None:
        session = self.session
        try:
            body = await session.api.get_answer_relationships(answer_id)
        except BuilderError as e:
            logger.error(f"Loading relationships for answer {answer_id} failed: {e}")
            await session.feed(RelationshipsLoadFailed(answer_id))
            await session.post('error', f"Could not load relationships: {e}")
            return
        await session.feed(RelationshipsLoaded(answer_id, body if isinstance(body, dict) else {}))

    async def _reload_goals(self, problem_id: str) -> None:
        session = self.session
        try:
            body = await session.api.get_goals(session.assessment_id, problem_id)
        except BuilderError as e:
            logger.error(f"Loading goals for problem {problem_id} failed: {e}")
            await session.feed(NestedLoadFailed('goals', problem_id))
            await session.post('error', f"Could not load goals: {e}")
            return
        await session.feed(GoalsLoaded(problem_id, tuple(records(body, 'goals'))))

    async def _reload_interventions(self, goal_id: str) -> None:
        session = self.session
        try:
            body = await session.api.get_interventions(session.assessment_id, goal_id)
        except BuilderError as e:
            logger.error(f"Loading interventions for goal {goal_id} failed: {e}")
            await session.feed(NestedLoadFailed('interventions', goal_id))
            await session.post('error', f"Could not load interventions: {e}")
            return
        await session.feed(InterventionsLoaded(goal_id, tuple(records(body, 'interventions'))))

    # ========================
    # Answer Links
    # ========================

    async def persist(self, effect: PersistRelationship) -> None:
        """Add or remove one answer link, then reload the answer's links."""
        session = self.session
        link = effect.link_type.value.replace('_', ' ')
        try:
            if effect.add:
                await self._add_link(effect)
            else:
                await self._remove_link(effect)
        except BuilderError as e:
            verb = "link" if effect.add else "unlink"
            logger.error(f"Could not {verb} {link} for answer {effect.answer_id}: {e}")
            await session.post('error', f"Could not {verb} {link}: {e}")
        else:
            verb = "linked" if effect.add else "unlinked"
            name = f" '{effect.label}'" if effect.label else ""
            await session.post('success', f"{link.capitalize()}{name} {verb}")
        await self._reload_answer(effect.answer_id)

    async def _add_link(self, effect: PersistRelationship) -> None:
        api = self.session.api
        if effect.link_type == LinkType.TRIGGERED_QUESTION:
            await api.add_branch_question(effect.answer_id, effect.target_id)
        elif effect.link_type == LinkType.GUIDELINE:
            await api.add_guideline(effect.answer_id, effect.target_id)
        else:
            payload: Dict[str, Any] = {
                'answer_id': effect.answer_id,
                'label': effect.label,
                'sort_order': effect.sort_order,
                'guideline_template_id': self.session.assessment_id,
            }
            content_type = effect.link_type.value
            existing = effect.target_id or await self._library_id(effect.label, content_type)
            if existing:
                payload[f'{content_type}_id'] = existing
            if effect.link_type == LinkType.PROBLEM:
                await api.add_problem(payload)
            else:
                await api.add_barrier(payload)

    async def _remove_link(self, effect: PersistRelationship) -> None:
        api = self.session.api
        removers = {
            LinkType.TRIGGERED_QUESTION: lambda: api.remove_branch_question(effect.answer_id, effect.target_id),
            LinkType.GUIDELINE: lambda: api.remove_guideline(effect.answer_id, effect.target_id),
            LinkType.PROBLEM: lambda: api.delete_problem(effect.target_id),
            LinkType.BARRIER: lambda: api.delete_barrier(effect.target_id),
        }
        await removers[effect.link_type]()

    async def _library_id(self, label: str, content_type: str) -> Optional[str]:
        """Library id of an exact label match, or None (also when the check fails)."""
        try:
            match = await self.session.matcher.find_exact(label, content_type)
        except LibraryCheckFailure as e:
            logger.warning(f"{e}; creating {content_type} as new content")
            return None
        return match.library_id if match else None

    # ========================
    # Goals and Interventions
    # ========================

    async def persist_goal(self, effect: PersistGoal) -> None:
        session = self.session
        try:
            if effect.add:
                payload: Dict[str, Any] = {
                    'problem_id': effect.problem_id,
                    'label': effect.label,
                    'answer_id': effect.answer_id,
                    'guideline_template_id': session.assessment_id,
                }
                goal_id = effect.goal_id or await self._library_id(effect.label, 'goal')
                if goal_id:
                    payload['goal_id'] = goal_id
                await session.api.add_goal(payload)
                await session.post('success', f"Goal '{effect.label}' added")
            else:
                await session.api.delete_goal(effect.goal_id)
                await session.post('success', "Goal removed")
        except BuilderError as e:
            logger.error(f"Goal change under problem {effect.problem_id} failed: {e}")
            await session.post('error', f"Could not {'add' if effect.add else 'remove'} goal: {e}")
        await self._reload_goals(effect.problem_id)

    async def persist_intervention(self, effect: PersistIntervention) -> None:
        session = self.session
        try:
            if effect.add:
                payload: Dict[str, Any] = {
                    'goal_id': effect.goal_id,
                    'problem_id': effect.problem_id,
                    'label': effect.label,
                    'answer_id': effect.answer_id,
                    'guideline_template_id': session.assessment_id,
                }
                if effect.category:
                    payload['category'] = effect.category
                intervention_id = effect.intervention_id or await self._library_id(effect.label, 'intervention')
                if intervention_id:
                    payload['intervention_id'] = intervention_id
                await session.api.add_intervention(payload)
                await session.post('success', f"Intervention '{effect.label}' added")
            else:
                await session.api.delete_intervention(effect.goal_id, effect.intervention_id)
                await session.post('success', "Intervention removed")
        except BuilderError as e:
            logger.error(f"Intervention change under goal {effect.goal_id} failed: {e}")
            await session.post('error', f"Could not {'add' if effect.add else 'remove'} intervention: {e}")
        await self._reload_interventions(effect.goal_id)

    async def persist_planning_item(self, effect: PersistPlanningItem) -> None:
        """Send edited details of a problem, goal or intervention, then reload its level."""
        session = self.session
        updaters = {
            'problem': session.api.update_problem,
            'goal': session.api.update_goal,
            'intervention': session.api.update_intervention,
        }
        try:
            await updaters[effect.level](effect.item_id, dict(effect.fields))
            await session.post('success', f"{effect.level.capitalize()} updated")
        except BuilderError as e:
            logger.error(f"Updating {effect.level} {effect.item_id} failed: {e}")
            await session.post('error', f"Could not update {effect.level}: {e}")

        if effect.level == 'problem':
            await self._reload_answer(effect.answer_id)
        elif effect.level == 'goal':
            await self._reload_goals(effect.problem_id)
        else:
            await self._reload_interventions(effect.goal_id)
