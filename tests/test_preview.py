"""
Test preview - answer selection rules and triggered question visibility

Run with: pytest tests/test_preview.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio

import pytest

from assessment_builder.commands import OpenRelationships
from assessment_builder.core.content_store import ContentTree
from assessment_builder.core.preview import calculate_visible_questions, select_answer

from mock_content_api import ASSESSMENT, SYMPTOM_QUESTIONS, MockContentApi, make_session, open_loaded

BRANCHING_QUESTIONS = [
    {
        'id': "q-1", 'label': "Do you have pain?", 'type': "SingleSelect", 'sort_order': 1,
        'answers': [
            {'id': "a-1", 'label': "Yes", 'sort_order': 1},
            {'id': "a-2", 'label': "No", 'sort_order': 2},
        ],
    },
    {
        'id': "q-2", 'label': "What kind of pain?", 'type': "SingleSelect", 'sort_order': 2, 'hidden': True,
        'answers': [
            {'id': "a-21", 'label': "Sharp", 'sort_order': 1},
            {'id': "a-22", 'label': "Dull", 'sort_order': 2},
        ],
    },
    {'id': "q-3", 'label': "Where is the sharp pain?", 'type': "Text", 'sort_order': 3, 'hidden': True},
    {'id': "q-4", 'label': "Anything else?", 'type': "Text", 'sort_order': 4},
]


def branching_tree():
    tree = ContentTree()
    tree.load_sections(ASSESSMENT['sections'])
    tree.replace_section_questions(tree.ref_for("s-1"), BRANCHING_QUESTIONS)
    ref = tree.ref_for
    triggers = {ref("a-1"): {ref("q-2")}, ref("a-21"): {ref("q-3")}}
    return tree, ref, triggers


def visible_ids(tree, selections, triggers):
    return [tree.canonical_id(r) for r in calculate_visible_questions(tree, selections, triggers)]


def test_only_unhidden_questions_without_selections():
    tree, _, triggers = branching_tree()
    assert visible_ids(tree, {}, triggers) == ["q-1", "q-4"]


def test_selected_answer_reveals_triggered_question():
    tree, ref, triggers = branching_tree()
    selections = select_answer(tree, {}, ref("a-1"))

    assert visible_ids(tree, selections, triggers) == ["q-1", "q-2", "q-4"]

    selections = select_answer(tree, selections, ref("a-21"))
    assert visible_ids(tree, selections, triggers) == ["q-1", "q-2", "q-3", "q-4"]


def test_hiding_cascades_through_chained_triggers():
    """Q1/A1 -> Q2, Q2/A1 -> Q3: deselecting Q1/A1 hides Q2 and Q3"""
    tree, ref, triggers = branching_tree()
    selections = select_answer(tree, {}, ref("a-1"))
    selections = select_answer(tree, selections, ref("a-21"))

    selections = select_answer(tree, selections, ref("a-2"))

    # Q2 keeps its stale selection, but it no longer counts
    assert selections[ref("q-2")] == (ref("a-21"),)
    assert visible_ids(tree, selections, triggers) == ["q-1", "q-4"]

    print("✓ Cascading hide test passed")


def test_scope_limits_result():
    tree, ref, triggers = branching_tree()
    selections = select_answer(tree, {}, ref("a-1"))

    visible = calculate_visible_questions(tree, selections, triggers, [ref("q-2"), ref("q-4")])

    assert visible == [ref("q-2"), ref("q-4")]


def test_deleted_questions_are_not_shown():
    tree, ref, triggers = branching_tree()
    tree.mark_deleted(ref("q-4"))
    assert visible_ids(tree, {}, triggers) == ["q-1"]


def test_single_select_replaces_selection():
    tree, ref, _ = branching_tree()
    selections = select_answer(tree, {}, ref("a-1"))
    selections = select_answer(tree, selections, ref("a-2"))
    assert selections == {ref("q-1"): (ref("a-2"),)}


def test_multiselect_toggle_and_exclusive_answers():
    tree = ContentTree()
    tree.load_sections(ASSESSMENT['sections'])
    tree.replace_section_questions(tree.ref_for("s-1"), SYMPTOM_QUESTIONS)
    ref = tree.ref_for
    question = ref("q-3")
    daily, weekly, never = ref("a-3"), ref("a-4"), ref("a-5")

    selections = select_answer(tree, {}, daily)
    selections = select_answer(tree, selections, weekly)
    assert selections[question] == (daily, weekly)

    selections = select_answer(tree, selections, daily)
    assert selections[question] == (weekly,)

    # an exclusive answer clears the others
    selections = select_answer(tree, selections, never)
    assert selections[question] == (never,)

    # and any other answer clears the exclusive one
    selections = select_answer(tree, selections, daily)
    assert selections[question] == (daily,)

    selections = select_answer(tree, selections, daily)
    assert question not in selections


def test_select_rejects_non_answers():
    tree, ref, _ = branching_tree()
    with pytest.raises(ValueError):
        select_answer(tree, {}, ref("q-1"))


def test_session_preview_uses_loaded_relationships():
    async def scenario():
        api = MockContentApi()
        api.relationships['a-1'] = {'questions': [{'id': "q-2", 'label': "Where is the pain?"}]}
        session = make_session(api)
        await open_loaded(session)
        tree = session.tree()
        before = session.preview({tree.ref_for("q-1"): (tree.ref_for("a-1"),)})
        await session.perform(OpenRelationships(tree.ref_for("a-1")))
        after = session.preview({tree.ref_for("q-1"): (tree.ref_for("a-1"),)})
        return tree, before, after

    tree, before, after = asyncio.run(scenario())

    assert [tree.canonical_id(r) for r in before] == ["q-1", "q-3"]
    assert [tree.canonical_id(r) for r in after] == ["q-1", "q-2", "q-3"]


if __name__ == '__main__':
    print("\nTesting preview...")
    print("=" * 60)

    test_hiding_cascades_through_chained_triggers()

    print("=" * 60)
    print("Preview tests passed!\n")
