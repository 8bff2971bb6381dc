"""
Test answer relationships - lazy loads, link changes and planning levels

Every link change must be followed by exactly one reload of the level it
touched.

Run with: pytest tests/test_relationships.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio

from assessment_builder.commands import (
    AddAnswer,
    AddGoal,
    AddIntervention,
    AddRelationship,
    ExpandGoal,
    ExpandProblem,
    OpenRelationships,
    RemoveIntervention,
    RemoveRelationship,
    UpdatePlanningItem,
)
from assessment_builder.core.relationship_cache import LoadStatus, RelationshipCache, parse_relationships
from assessment_builder.errors import NetworkError

from mock_content_api import MockContentApi, make_session, open_loaded

GUIDELINE = {'id': "g-1", 'label': "Pain guideline"}


async def open_answer(session, answer_id="a-1"):
    answer = session.tree().ref_for(answer_id)
    await session.perform(OpenRelationships(answer))
    session.api.calls.clear()
    return answer


def test_parse_accepts_nested_and_flat_forms():
    parsed = parse_relationships({
        'guidelines': {'guidelines': [GUIDELINE]},
        'problems': [{'ids': {'id': "p-1"}, 'label': "Chronic pain"}],
    })

    assert [g.id for g in parsed['guidelines']] == ["g-1"]
    assert [p.id for p in parsed['problems']] == ["p-1"]
    assert parsed['barriers'] == []


def test_cache_status_transitions():
    cache = RelationshipCache()
    assert cache.status("a-1") == LoadStatus.UNLOADED

    cache.begin_load("a-1")
    assert cache.status("a-1") == LoadStatus.LOADING

    cache.apply_loaded("a-1", {'guidelines': [GUIDELINE]})
    assert cache.status("a-1", 'guidelines') == LoadStatus.LOADED
    assert cache.status("a-1", 'problems') == LoadStatus.LOADED_EMPTY
    assert cache.status("a-1") == LoadStatus.LOADED

    cache.apply_loaded("a-1", {})
    assert cache.status("a-1") == LoadStatus.LOADED_EMPTY


def test_open_loads_once_until_forced():
    async def scenario():
        session = make_session()
        await open_loaded(session)
        answer = session.tree().ref_for("a-1")
        await session.perform(OpenRelationships(answer))
        await session.perform(OpenRelationships(answer))
        first = session.api.count('get_answer_relationships')
        await session.perform(OpenRelationships(answer, force=True))
        return session, first

    session, first = asyncio.run(scenario())

    assert first == 1
    assert session.api.count('get_answer_relationships') == 2
    assert session.relationship_cache().status("a-1") == LoadStatus.LOADED_EMPTY


def test_adding_guideline_reloads_exactly_once():
    async def scenario():
        api = MockContentApi()
        session = make_session(api)
        await open_loaded(session)
        answer = await open_answer(session)
        api.relationships['a-1'] = {'guidelines': {'guidelines': [GUIDELINE]}}

        outcome = await session.perform(AddRelationship(answer, 'guideline', target_id="g-1", label="Pain guideline"))
        return session, outcome

    session, outcome = asyncio.run(scenario())

    assert outcome.ok
    assert session.api.calls == [
        ('add_guideline', ("a-1", "g-1")),
        ('get_answer_relationships', ("a-1",)),
    ]
    (item,) = session.relationship_cache().items("a-1", 'guidelines')
    assert item.id == "g-1"
    assert not item.pending
    assert session.messages()[-1]['message'] == "Guideline 'Pain guideline' linked"

    print("✓ Guideline link test passed")


def test_failed_link_still_reloads_and_drops_pending():
    async def scenario():
        api = MockContentApi()
        api.failures['add_guideline'] = NetworkError("HTTP 500", status_code=500)
        session = make_session(api)
        await open_loaded(session)
        answer = await open_answer(session)
        await session.perform(AddRelationship(answer, 'guideline', target_id="g-1", label="Pain guideline"))
        return session

    session = asyncio.run(scenario())

    assert session.api.names() == ['add_guideline', 'get_answer_relationships']
    assert session.relationship_cache().items("a-1", 'guidelines') == []
    assert any(m['severity'] == 'error' for m in session.messages())


def test_duplicate_link_is_rejected_locally():
    async def scenario():
        api = MockContentApi()
        api.relationships['a-1'] = {'guidelines': [GUIDELINE]}
        session = make_session(api)
        await open_loaded(session)
        answer = await open_answer(session)
        outcome = await session.perform(AddRelationship(answer, 'guideline', target_id="g-1"))
        return session, outcome

    session, outcome = asyncio.run(scenario())

    assert outcome.rejected
    assert session.api.calls == []


def test_triggered_question_must_come_later():
    async def scenario():
        session = make_session()
        await open_loaded(session)
        never = await open_answer(session, "a-5")
        backwards = await session.perform(AddRelationship(never, 'triggered_question', target_id="q-1"))
        yes = await open_answer(session, "a-1")
        forwards = await session.perform(AddRelationship(yes, 'triggered_question', target_id="q-2"))
        return session, backwards, forwards

    session, backwards, forwards = asyncio.run(scenario())

    assert backwards.rejected
    assert forwards.ok
    assert session.api.names() == ['add_branch_question', 'get_answer_relationships']
    assert session.api.args('add_branch_question') == [("a-1", "q-2")]


def test_removing_triggered_question():
    async def scenario():
        api = MockContentApi()
        api.relationships['a-1'] = {'questions': [{'id': "q-2", 'label': "Where is the pain?"}]}
        session = make_session(api)
        await open_loaded(session)
        answer = await open_answer(session)
        await session.perform(RemoveRelationship(answer, 'triggered_question', "q-2"))
        return session

    session = asyncio.run(scenario())

    assert session.api.names() == ['remove_branch_question', 'get_answer_relationships']
    assert session.api.args('remove_branch_question') == [("a-1", "q-2")]


def test_problem_by_label_links_library_match():
    async def scenario():
        api = MockContentApi()
        api.library['problem'] = [{'id': "lib-p", 'label': "Chronic pain"}]
        session = make_session(api)
        await open_loaded(session)
        answer = await open_answer(session)
        await session.perform(AddRelationship(answer, 'problem', label=" Chronic pain "))
        return session

    session = asyncio.run(scenario())

    assert session.api.names() == ['typeahead', 'add_problem', 'get_answer_relationships']
    (payload,), = session.api.args('add_problem')
    assert payload == {
        'answer_id': "a-1",
        'label': "Chronic pain",
        'sort_order': 1,
        'guideline_template_id': "gt-1",
        'problem_id': "lib-p",
    }


def test_new_barrier_without_match_is_created():
    async def scenario():
        session = make_session()
        await open_loaded(session)
        answer = await open_answer(session)
        await session.perform(AddRelationship(answer, 'barrier', label="Transport"))
        return session

    session = asyncio.run(scenario())

    (payload,), = session.api.args('add_barrier')
    assert 'barrier_id' not in payload
    assert session.api.count('get_answer_relationships') == 1


def test_goals_load_lazily_and_reload_after_add():
    async def scenario():
        api = MockContentApi()
        api.goals['p-1'] = [{'id': "goal-1", 'label': "Reduce pain"}]
        session = make_session(api)
        await open_loaded(session)
        answer = await open_answer(session)

        await session.perform(ExpandProblem(answer, "p-1"))
        await session.perform(ExpandProblem(answer, "p-1", expanded=False))
        await session.perform(ExpandProblem(answer, "p-1"))
        loads = session.api.count('get_goals')

        session.api.calls.clear()
        await session.perform(AddGoal(answer, "p-1", "Sleep through the night"))
        return session, loads

    session, loads = asyncio.run(scenario())

    assert loads == 1
    assert session.api.names() == ['typeahead', 'add_goal', 'get_goals']
    (payload,), = session.api.args('add_goal')
    assert payload == {
        'problem_id': "p-1",
        'label': "Sleep through the night",
        'answer_id': "a-1",
        'guideline_template_id': "gt-1",
    }
    assert session.api.args('get_goals') == [("gt-1", "p-1")]
    goals = session.relationship_cache().nested_items('goals', "p-1")
    assert [g.label for g in goals] == ["Reduce pain"]


def test_duplicate_goal_label_rejected():
    async def scenario():
        api = MockContentApi()
        api.goals['p-1'] = [{'id': "goal-1", 'label': "Reduce pain"}]
        session = make_session(api)
        await open_loaded(session)
        answer = await open_answer(session)
        await session.perform(ExpandProblem(answer, "p-1"))
        session.api.calls.clear()
        outcome = await session.perform(AddGoal(answer, "p-1", "reduce PAIN"))
        return session, outcome

    session, outcome = asyncio.run(scenario())

    assert outcome.rejected
    assert session.api.calls == []


def test_interventions_add_and_remove():
    async def scenario():
        api = MockContentApi()
        api.interventions['goal-1'] = [{'id': "int-1", 'label': "Ice pack", 'category': "Comfort"}]
        session = make_session(api)
        await open_loaded(session)
        answer = await open_answer(session)
        await session.perform(ExpandGoal(answer, "p-1", "goal-1"))
        session.api.calls.clear()

        await session.perform(AddIntervention(answer, "p-1", "goal-1", "Stretching", category="Exercise"))
        await session.perform(RemoveIntervention(answer, "p-1", "goal-1", "int-1"))
        return session

    session = asyncio.run(scenario())

    assert session.api.names() == [
        'typeahead', 'add_intervention', 'get_interventions',
        'delete_intervention', 'get_interventions',
    ]
    (payload,), = session.api.args('add_intervention')
    assert payload['category'] == "Exercise"
    assert payload['goal_id'] == "goal-1"
    assert session.api.args('delete_intervention') == [("goal-1", "int-1")]


def test_planning_item_update_reloads_its_level():
    async def scenario():
        session = make_session()
        await open_loaded(session)
        answer = await open_answer(session)
        rejected = await session.perform(UpdatePlanningItem(answer, 'goal', "goal-1", {'label': "x"}))
        await session.perform(UpdatePlanningItem(answer, 'goal', "goal-1", {'tooltip': "Daily"}, problem_id="p-1"))
        return session, rejected

    session, rejected = asyncio.run(scenario())

    assert rejected.rejected
    assert session.api.calls == [
        ('update_goal', ("goal-1", {'tooltip': "Daily"})),
        ('get_goals', ("gt-1", "p-1")),
    ]


def test_unsaved_answer_has_no_relationships():
    async def scenario():
        session = make_session()
        await open_loaded(session)
        question = session.tree().ref_for("q-1")
        draft = (await session.perform(AddAnswer(question, "Maybe"))).transition.created_ref
        return session, await session.perform(OpenRelationships(draft))

    session, outcome = asyncio.run(scenario())

    assert outcome.rejected
    assert session.api.calls == []


if __name__ == '__main__':
    print("\nTesting relationships...")
    print("=" * 60)

    test_adding_guideline_reloads_exactly_once()

    print("=" * 60)
    print("Relationship tests passed!\n")
