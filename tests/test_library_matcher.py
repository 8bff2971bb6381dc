"""
Test Library Matcher - exactness, pre-save checks and the check queue

Run with: pytest tests/test_library_matcher.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio

import pytest

from assessment_builder.core.library_matcher import LibraryMatcher, classify, first_exact
from assessment_builder.errors import LibraryCheckFailure, NetworkError

from mock_content_api import MockContentApi


def test_classify_flags_exact_labels_in_server_order():
    response = {'results': [
        {'id': "1", 'label': "Pain Level Scale"},
        {'id': "2", 'label': " pain level "},
        {'id': "3", 'label': "Pain Level", 'master_id': 77},
        {'label': "no id"},
    ]}

    candidates = classify("Pain Level", response, 'question')

    assert [c.id for c in candidates] == ["1", "2", "3"]
    assert [c.exact_match for c in candidates] == [False, True, True]
    assert candidates[2].master_id == "77"
    assert first_exact(candidates).id == "2"

    print("✓ Exactness test passed")


def test_classify_accepts_bare_lists_and_garbage():
    assert [c.id for c in classify("x", [{'id': 5, 'label': "x"}])] == ["5"]
    assert classify("x", None) == []
    assert classify("x", {'detail': "nothing"}) == []


def test_find_exact_returns_match_or_none():
    api = MockContentApi()
    api.library['answer'] = [{'id': "lib-a", 'label': "Moderate"}, {'id': "lib-b", 'label': "Moderately"}]
    matcher = LibraryMatcher(api)

    assert asyncio.run(matcher.find_exact("moderate ", 'answer')).library_id == "lib-a"
    assert asyncio.run(matcher.find_exact("Mod", 'answer')) is None
    assert api.args('typeahead')[0] == ('answer', "moderate", None)


def test_find_exact_wraps_transport_errors():
    api = MockContentApi()
    api.failures['typeahead'] = NetworkError("Request timed out")

    with pytest.raises(LibraryCheckFailure):
        asyncio.run(LibraryMatcher(api).find_exact("Mild", 'answer'))


def test_unknown_content_type_is_rejected():
    with pytest.raises(ValueError):
        asyncio.run(LibraryMatcher(MockContentApi()).search("Mild", 'widget'))


def test_check_queue_checks_each_item_in_order():
    api = MockContentApi()
    api.library['answer'] = [{'id': "lib-y", 'label': "Yes"}]

    matches = asyncio.run(LibraryMatcher(api).check_queue([(1, "No"), (2, "Yes"), (3, "Maybe")], 'answer'))

    assert [args[1] for args in api.args('typeahead')] == ["No", "Yes", "Maybe"]
    assert matches[1] is None
    assert matches[2].library_id == "lib-y"
    assert matches[3] is None


def test_check_queue_folds_failures_to_no_match():
    api = MockContentApi()
    api.failures['typeahead'] = NetworkError("HTTP 500", status_code=500)

    matches = asyncio.run(LibraryMatcher(api).check_queue([(1, "No"), (2, "Yes")], 'answer'))

    assert matches == {1: None, 2: None}
    assert api.count('typeahead') == 2


if __name__ == '__main__':
    print("\nTesting Library Matcher...")
    print("=" * 60)

    test_classify_flags_exact_labels_in_server_order()

    print("=" * 60)
    print("Library Matcher tests passed!\n")
