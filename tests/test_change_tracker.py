"""
Test Change Tracker - merge rules and the single-writer edit lock

Run with: pytest tests/test_change_tracker.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from assessment_builder.contracts import EntityKind
from assessment_builder.core.change_tracker import ChangeAction, ChangeTracker
from assessment_builder.core.content_store import ContentTree

Q = EntityKind.QUESTION


def test_add_then_update_stays_add():
    """A never-persisted entity must never be sent as an update"""
    tracker = ChangeTracker()
    tracker.record(1, Q, ChangeAction.ADD, label="Pain")
    entry = tracker.record(1, Q, ChangeAction.UPDATE, label="Pain Level", required=True)

    assert entry.action == ChangeAction.ADD
    assert entry.fields == {'label': "Pain Level", 'required': True}

    print("✓ Add precedence test passed")


def test_add_then_delete_drops_entry():
    tracker = ChangeTracker()
    tracker.record(1, Q, ChangeAction.ADD, label="Pain")

    assert tracker.record(1, Q, ChangeAction.DELETE) is None
    assert 1 not in tracker
    assert not tracker.has_pending()


def test_updates_merge_fields():
    tracker = ChangeTracker()
    tracker.record(1, Q, ChangeAction.UPDATE, label="A")
    entry = tracker.record(1, Q, ChangeAction.UPDATE, tooltip="help")

    assert entry.action == ChangeAction.UPDATE
    assert entry.fields == {'label': "A", 'tooltip': "help"}


def test_delete_absorbs_later_updates():
    tracker = ChangeTracker()
    tracker.record(1, Q, ChangeAction.UPDATE, label="A")
    tracker.record(1, Q, ChangeAction.DELETE)
    entry = tracker.record(1, Q, ChangeAction.UPDATE, label="B")

    assert entry.action == ChangeAction.DELETE
    assert entry.fields == {}


def test_library_replace_wins_over_update():
    tracker = ChangeTracker()
    tracker.record(1, Q, ChangeAction.UPDATE, tooltip="t")
    entry = tracker.record(1, Q, ChangeAction.LIBRARY_REPLACE, library_id="lib-1", label="Pain")

    assert entry.action == ChangeAction.LIBRARY_REPLACE
    assert entry.fields['library_id'] == "lib-1"

    entry = tracker.record(1, Q, ChangeAction.UPDATE, required=True)
    assert entry.action == ChangeAction.LIBRARY_REPLACE
    assert entry.fields['required'] is True


def test_add_then_library_replace_stays_add():
    tracker = ChangeTracker()
    tracker.record(1, Q, ChangeAction.ADD, label="Pain")
    entry = tracker.record(1, Q, ChangeAction.LIBRARY_REPLACE, library_id="lib-1")

    assert entry.action == ChangeAction.ADD
    assert entry.fields == {'label': "Pain", 'library_id': "lib-1"}


def test_discard_fields_clears_empty_update_only():
    tracker = ChangeTracker()
    tracker.record(1, Q, ChangeAction.UPDATE, sort_order=2)
    tracker.record(2, Q, ChangeAction.ADD, sort_order=1)

    assert tracker.discard_fields(1, ['sort_order']) is None
    assert 1 not in tracker

    remaining = tracker.discard_fields(2, ['sort_order'])
    assert remaining.action == ChangeAction.ADD
    assert 2 in tracker


def test_has_pending_scopes():
    tracker = ChangeTracker()
    tracker.record(5, EntityKind.ANSWER, ChangeAction.ADD, label="Mild")

    assert tracker.has_pending()
    assert tracker.has_pending(EntityKind.ANSWER)
    assert tracker.has_pending('answer')
    assert not tracker.has_pending(EntityKind.SECTION)
    assert tracker.has_pending([4, 5])
    assert not tracker.has_pending([1, 2])
    assert [e.ref for e in tracker.pending(EntityKind.ANSWER)] == [5]


def test_lock_root_of_answer_is_its_question():
    """Editing an answer keeps its question (and siblings) editable, nothing else"""
    tree = ContentTree()
    sub = tree.add_section("Symptoms", parent_ref=tree.add_section("History"))
    question = tree.add_question(sub, "Pain Level", "SingleSelect")
    other = tree.add_question(sub, "Duration", "Text")
    mild = tree.add_answer(question, "Mild")
    severe = tree.add_answer(question, "Severe")

    tracker = ChangeTracker()
    tracker.record(mild, EntityKind.ANSWER, ChangeAction.UPDATE, label="Slight")

    assert tracker.lock_roots(tree) == {question}
    assert not tracker.is_locked_for(question, tree)
    assert not tracker.is_locked_for(severe, tree)
    assert tracker.is_locked_for(other, tree)
    assert tracker.is_locked_for(None, tree)

    print("✓ Edit lock test passed")


def test_snapshot_round_trip_keeps_order_and_actions():
    tracker = ChangeTracker()
    tracker.record(3, Q, ChangeAction.ADD, label="x")
    tracker.record(1, Q, ChangeAction.DELETE)

    restored = ChangeTracker.from_snapshot(tracker.snapshot())

    assert [e.ref for e in restored.pending()] == [3, 1]
    assert restored.get(1).action == ChangeAction.DELETE


if __name__ == '__main__':
    print("\nTesting Change Tracker...")
    print("=" * 60)

    test_add_then_update_stays_add()
    test_lock_root_of_answer_is_its_question()

    print("=" * 60)
    print("Change Tracker tests passed!\n")
