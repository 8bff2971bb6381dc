"""
Test reducer - pure session transitions

Run with: pytest tests/test_reducer.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from assessment_builder.commands import (
    AddAnswer,
    AddQuestion,
    AddSection,
    ApplyLibraryMatch,
    AssessmentLoaded,
    ChangeAssessmentStatus,
    DeleteEntity,
    EditEntity,
    LibraryBound,
    MessageDismissed,
    MoveQuestion,
    ReorderSiblings,
    RevertChanges,
    SaveFinished,
    SaveQuestion,
    SaveSection,
    SearchRequested,
    SearchResultsReceived,
    SectionQuestionsLoaded,
)
from assessment_builder.contracts import LibraryCandidate, QuestionType
from assessment_builder.core.change_tracker import ChangeAction, ChangeTracker
from assessment_builder.core.content_store import ContentTree
from assessment_builder.core.reducer import initial_state, reduce
from assessment_builder.results import (
    CancelSearch,
    PersistDelete,
    PersistReorder,
    PersistStatus,
    RecordSnapshot,
    RunSearch,
    StartMove,
    StartSave,
)

from mock_content_api import ASSESSMENT, ASSESSMENT_ID, SYMPTOM_QUESTIONS


def tree_of(state):
    return ContentTree.from_snapshot(state.to_json()['tree'])


def tracker_of(state):
    return ChangeTracker.from_snapshot(state.to_json()['tracker'])


def messages_of(state):
    return state.to_json()['messages']


def loaded_state(status="draft"):
    """State with the sample assessment and the Symptoms questions loaded."""
    state = initial_state(assessment_id=ASSESSMENT_ID)
    state = reduce(state, AssessmentLoaded(
        ASSESSMENT_ID, tuple(ASSESSMENT['sections']), "Pain Assessment", status
    )).state
    section_ref = tree_of(state).ref_for("s-1")
    return reduce(state, SectionQuestionsLoaded(section_ref, tuple(SYMPTOM_QUESTIONS))).state


def test_initial_state_is_empty_draft():
    state = initial_state(assessment_id="gt-9", message_log_limit=5)
    data = state.to_json()

    assert state.assessment_id == "gt-9"
    assert state.status == "draft"
    assert data['tracker'] == []
    assert data['settings']['message_log_limit'] == 5
    assert set(data['search']) >= {'section_name', 'question_name', 'answer_name'}


def test_add_section_records_add_and_returns_ref():
    state = loaded_state()
    transition = reduce(state, AddSection("Vitals"))

    assert transition.accepted
    assert transition.effects == ()
    ref = transition.created_ref
    assert tree_of(transition.state).get(ref).label == "Vitals"
    assert tracker_of(transition.state).get(ref).action == ChangeAction.ADD

    print("✓ Add section test passed")


def test_single_writer_lock_blocks_other_entities():
    """While one entity is unsaved, edits elsewhere are refused"""
    state = loaded_state()
    transition = reduce(state, AddSection("Vitals"))
    vitals = transition.created_ref
    state = transition.state

    # a subsection under the unsaved parent is part of the same edit
    child = reduce(state, AddSection("Pulse", parent_ref=vitals))
    assert child.accepted

    blocked = reduce(state, AddSection("Other"))
    assert not blocked.accepted
    assert "Save or revert" in blocked.rejection.reason
    assert [tree_of(blocked.state).get(r).label for r in tree_of(blocked.state).root_sections()] == [
        "History", "Plan", "Vitals"
    ]
    assert messages_of(blocked.state)[-1]['severity'] == 'error'
    assert messages_of(blocked.state)[-1]['stage'] == 'validating'

    print("✓ Single-writer lock test passed")


def test_saving_blank_question_is_rejected_without_effects():
    state = loaded_state()
    section_ref = tree_of(state).ref_for("s-2")
    transition = reduce(state, AddQuestion(section_ref, "", "Text"))
    question = transition.created_ref

    saved = reduce(transition.state, SaveQuestion(question))

    assert not saved.accepted
    assert saved.effects == ()
    assert "blank" in saved.rejection.reason
    # the in-progress edit survives
    assert tracker_of(saved.state).get(question).action == ChangeAction.ADD
    assert question in tree_of(saved.state)


def test_save_question_without_changes_is_a_soft_rejection():
    state = loaded_state()
    question = tree_of(state).ref_for("q-1")

    transition = reduce(state, SaveQuestion(question))

    assert not transition.accepted
    assert transition.rejection.reason == "No changes to save"
    assert messages_of(transition.state)[-1]['severity'] == 'info'


def test_save_question_emits_start_save_and_marks_in_flight():
    state = loaded_state()
    section_ref = tree_of(state).ref_for("s-2")
    t = reduce(state, AddQuestion(section_ref, "Pain Level", "SingleSelect"))
    question = t.created_ref
    state = reduce(t.state, AddAnswer(question, "Mild")).state

    transition = reduce(state, SaveQuestion(question))

    assert transition.effects == (StartSave(question),)
    assert question in transition.state.to_json()['in_flight']

    again = reduce(transition.state, SaveQuestion(question))
    assert not again.accepted
    assert "in progress" in again.rejection.reason


def test_save_subsection_includes_unsaved_parent():
    state = loaded_state()
    t = reduce(state, AddSection("Vitals"))
    parent = t.created_ref
    t = reduce(t.state, AddSection("Pulse", parent_ref=parent))
    child = t.created_ref

    transition = reduce(t.state, SaveSection(child))

    assert transition.effects == (StartSave(child),)
    assert sorted(transition.state.to_json()['in_flight']) == sorted([parent, child])


def test_unknown_ref_leaves_state_untouched():
    state = loaded_state()
    transition = reduce(state, EditEntity(9999, {'label': "x"}))

    assert not transition.accepted
    assert transition.state is state


def test_edit_rejects_unknown_fields():
    state = loaded_state()
    question = tree_of(state).ref_for("q-1")

    transition = reduce(state, EditEntity(question, {'sort_order': 5}))

    assert not transition.accepted
    assert not tracker_of(transition.state).has_pending()


def test_edit_records_update_for_persisted_question():
    state = loaded_state()
    question = tree_of(state).ref_for("q-2")

    transition = reduce(state, EditEntity(question, {'label': "Where does it hurt?", 'question_type': "Numeric"}))
    entry = tracker_of(transition.state).get(question)

    assert entry.action == ChangeAction.UPDATE
    assert entry.fields == {'label': "Where does it hurt?", 'question_type': "Numeric"}
    updated = tree_of(transition.state).get(question)
    assert updated.question_type == QuestionType.NUMERIC
    assert updated.is_unsaved


def test_renaming_library_bound_draft_unbinds_it():
    state = loaded_state()
    section_ref = tree_of(state).ref_for("s-2")
    t = reduce(state, AddQuestion(section_ref, "Pain Level", "SingleSelect"))
    question = t.created_ref
    state = reduce(t.state, LibraryBound(question, "lib-q", "Pain Level")).state
    assert tree_of(state).get(question).library_id == "lib-q"

    state = reduce(state, EditEntity(question, {'label': "Pain Score"})).state

    assert tree_of(state).get(question).library_id is None


def test_sections_cannot_take_library_replacement():
    state = loaded_state()
    section_ref = tree_of(state).ref_for("s-1")

    transition = reduce(state, ApplyLibraryMatch(section_ref, "lib-s", "Symptoms"))

    assert not transition.accepted


def test_library_replace_on_persisted_question():
    state = loaded_state()
    question = tree_of(state).ref_for("q-2")

    transition = reduce(state, ApplyLibraryMatch(question, "lib-q", "Pain location"))
    entry = tracker_of(transition.state).get(question)

    assert entry.action == ChangeAction.LIBRARY_REPLACE
    assert entry.fields['library_id'] == "lib-q"
    assert tree_of(transition.state).get(question).label == "Pain location"


def test_delete_unsaved_answer_is_local():
    state = loaded_state()
    question = tree_of(state).ref_for("q-1")
    t = reduce(state, AddAnswer(question, "Maybe"))
    answer = t.created_ref

    transition = reduce(t.state, DeleteEntity(answer))

    assert transition.effects == ()
    assert answer not in tree_of(transition.state)
    assert not tracker_of(transition.state).has_pending()
    assert not tree_of(transition.state).get(question).is_unsaved

    print("✓ Local delete test passed")


def test_local_delete_renumbers_saved_siblings():
    state = loaded_state()
    question = tree_of(state).ref_for("q-1")
    t = reduce(state, AddAnswer(question, "Maybe"))
    maybe = t.created_ref
    t = reduce(t.state, ReorderSiblings(maybe, 0))
    state = reduce(t.state, SaveFinished(t.effects[0].refs, False)).state

    transition = reduce(state, DeleteEntity(maybe))
    tree = tree_of(transition.state)
    tracker = tracker_of(transition.state)
    yes, no = tree.children(question)

    assert [tree.get(r).sort_order for r in (yes, no)] == [1, 2]
    assert tracker.get(yes).fields['sort_order'] == 1
    assert tracker.get(no).fields['sort_order'] == 2


def test_delete_persisted_answer_emits_one_delete():
    state = loaded_state()
    answer = tree_of(state).ref_for("a-2")

    transition = reduce(state, DeleteEntity(answer))

    assert transition.effects == (PersistDelete(answer),)
    assert tree_of(transition.state).get(answer).is_deleted
    assert tracker_of(transition.state).get(answer).action == ChangeAction.DELETE
    assert answer in transition.state.to_json()['in_flight']


def test_reorder_marks_every_sibling_and_resequences():
    state = loaded_state()
    tree = tree_of(state)
    question = tree.ref_for("q-3")
    daily, weekly, never = tree.children(question)

    transition = reduce(state, ReorderSiblings(never, 0))
    tree = tree_of(transition.state)
    tracker = tracker_of(transition.state)

    assert tree.children(question) == (never, daily, weekly)
    assert sorted(tree.get(r).sort_order for r in tree.children(question)) == [1, 2, 3]
    assert {r: tracker.get(r).fields['sort_order'] for r in (never, daily, weekly)} == {
        never: 1, daily: 2, weekly: 3
    }
    assert transition.effects == (PersistReorder((never, daily, weekly), question),)

    print("✓ Reorder test passed")


def test_reorder_to_same_position_is_a_no_op():
    state = loaded_state()
    daily = tree_of(state).ref_for("a-3")

    transition = reduce(state, ReorderSiblings(daily, 0))

    assert transition.accepted
    assert transition.effects == ()
    assert not tracker_of(transition.state).has_pending()


def test_reload_skipped_while_section_has_unsaved_edits():
    state = loaded_state()
    tree = tree_of(state)
    section_ref = tree.ref_for("s-1")
    question = tree.ref_for("q-1")
    state = reduce(state, AddAnswer(question, "Sometimes")).state

    transition = reduce(state, SectionQuestionsLoaded(section_ref, tuple(SYMPTOM_QUESTIONS[:1])))

    assert not transition.accepted
    labels = [tree_of(transition.state).get(r).label for r in tree_of(transition.state).children(question)]
    assert labels == ["Yes", "No", "Sometimes"]


def test_revert_restores_last_saved_tree():
    state = loaded_state()
    section_ref = tree_of(state).ref_for("s-2")
    state = reduce(state, AddQuestion(section_ref, "Temporary", "Text")).state

    transition = reduce(state, RevertChanges())

    assert tree_of(transition.state).children(section_ref) == ()
    assert not tracker_of(transition.state).has_pending()
    assert messages_of(transition.state)[-1]['message'] == "Unsaved changes discarded"


def test_move_checks_target_duplicates():
    state = loaded_state()
    tree = tree_of(state)
    question = tree.ref_for("q-2")
    target = tree.ref_for("s-2")

    transition = reduce(state, MoveQuestion(question, target))
    assert transition.effects == (StartMove(question, target),)

    same = reduce(state, MoveQuestion(question, tree.ref_for("s-1")))
    assert not same.accepted


def test_published_assessment_is_read_only():
    state = loaded_state(status="published")

    assert not reduce(state, AddSection("Vitals")).accepted

    unpublish = reduce(state, ChangeAssessmentStatus(publish=False))
    assert unpublish.effects == (PersistStatus(False),)


def test_publish_requires_clean_session():
    state = loaded_state()
    assert reduce(state, ChangeAssessmentStatus(publish=True)).effects == (PersistStatus(True),)
    assert not reduce(state, ChangeAssessmentStatus(publish=False)).accepted

    dirty = reduce(state, AddSection("Vitals")).state
    assert not reduce(dirty, ChangeAssessmentStatus(publish=True)).accepted


def test_save_finished_releases_guard_and_requests_snapshot():
    state = loaded_state()
    answer = tree_of(state).ref_for("a-2")
    state = reduce(state, DeleteEntity(answer)).state

    transition = reduce(state, SaveFinished((answer,), True))

    assert transition.state.to_json()['in_flight'] == []
    assert transition.effects == (RecordSnapshot("save"),)


def test_short_search_cancels_and_long_search_runs():
    state = loaded_state()

    short = reduce(state, SearchRequested('question_name', "p", 'question'))
    assert short.effects == (CancelSearch('question_name'),)

    long = reduce(state, SearchRequested('question_name', " pain ", 'question'))
    (effect,) = long.effects
    assert isinstance(effect, RunSearch)
    assert effect.context['text'] == "pain"


def test_results_for_stale_context_are_dropped():
    state = loaded_state()
    first = reduce(state, SearchRequested('question_name', "pain", 'question'))
    stale_context = first.effects[0].context
    state = reduce(first.state, SearchRequested('question_name', "pain level", 'question')).state
    candidate = LibraryCandidate(id="lib-1", label="Pain", exact_match=False)

    transition = reduce(state, SearchResultsReceived('question_name', stale_context, (candidate,)))

    assert not transition.accepted
    assert transition.state.to_json()['search']['question_name']['results'] == []


def test_message_dismissal():
    state = loaded_state()
    state = reduce(state, SaveQuestion(tree_of(state).ref_for("q-1"))).state
    assert len(messages_of(state)) == 1

    state = reduce(state, MessageDismissed(0)).state

    assert messages_of(state) == []


if __name__ == '__main__':
    print("\nTesting reducer...")
    print("=" * 60)

    test_add_section_records_add_and_returns_ref()
    test_single_writer_lock_blocks_other_entities()
    test_delete_unsaved_answer_is_local()
    test_reorder_marks_every_sibling_and_resequences()

    print("=" * 60)
    print("Reducer tests passed!\n")
