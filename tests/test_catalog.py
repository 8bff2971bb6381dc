"""
Test assessment catalog - listing, version grouping, creation and status

Run with: pytest tests/test_catalog.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio

import pytest

from assessment_builder.commands import ChangeAssessmentStatus
from assessment_builder.core.assessment_catalog import (
    AssessmentCatalog,
    AssessmentPage,
    AssessmentSummary,
    group_versions,
)
from assessment_builder.errors import BackendRejection, NetworkError, ValidationError

from mock_content_api import MockContentApi, make_session, open_loaded


def summary(assessment_id, master_id, version):
    return AssessmentSummary(id=assessment_id, title="Pain", master_id=master_id, version=version)


def test_summary_from_payload():
    row = AssessmentSummary.from_payload({
        'ids': {'id': "gt-9"}, 'title': "Falls Risk", 'version': 2, 'status': "Published",
        'use_case': "CM",
    })

    assert row.id == "gt-9"
    assert row.master_id == "gt-9"
    assert row.version == "2"
    assert row.status == "published"


def test_group_versions_newest_first():
    rows = [
        summary("a1", "m1", "1"),
        summary("b1", "m2", "1.0"),
        summary("a3", "m1", "3"),
        summary("a2", "m1", "draft"),
        summary("a2b", "m1", "2.5"),
    ]

    grouped = group_versions(rows)

    assert list(grouped) == ["m1", "m2"]
    assert [r.id for r in grouped["m1"]] == ["a3", "a2b", "a1", "a2"]

    print("✓ Version grouping test passed")


def test_page_has_more():
    assert AssessmentPage(items=[summary("a", "m", "1")] * 10, offset=0, limit=10, total=25).has_more
    assert not AssessmentPage(items=[summary("a", "m", "1")] * 5, offset=20, limit=10, total=25).has_more
    assert AssessmentPage(items=[summary("a", "m", "1")] * 10, offset=0, limit=10).has_more


def test_list_page_passes_window_and_search():
    api = MockContentApi()
    api.responses['list_assessments'] = {
        'guideline_templates': [{'id': "gt-1", 'title': "Pain Assessment", 'status': "draft"}],
        'total': 11,
    }

    page = asyncio.run(AssessmentCatalog(api).list_page(offset=10, limit=10, search=" pain "))

    assert api.args('list_assessments') == [("CM", 10, 10, "pain")]
    assert [r.title for r in page.items] == ["Pain Assessment"]
    assert page.total == 11
    assert not page.has_more


def test_list_page_rejects_bad_window():
    with pytest.raises(ValueError):
        asyncio.run(AssessmentCatalog(MockContentApi()).list_page(offset=-1))
    with pytest.raises(ValueError):
        asyncio.run(AssessmentCatalog(MockContentApi()).list_page(limit=0))


def test_create_sends_defaults_and_returns_id():
    api = MockContentApi()

    new_id = asyncio.run(AssessmentCatalog(api).create(" Falls Risk ", "CM", "Internal", policy_number="P-7"))

    assert new_id == "gt-new-1"
    (payload,), = api.args('create_assessment')
    assert payload['title'] == "Falls Risk"
    assert payload['use_case_category_id'] is None
    assert payload['policy_number'] == "P-7"
    assert payload['settings'] == {'store_responses': 'use_default'}


def test_create_requires_labels_and_an_id():
    api = MockContentApi()
    with pytest.raises(ValidationError):
        asyncio.run(AssessmentCatalog(api).create("", "CM", "Internal"))
    assert api.calls == []

    api.responses['create_assessment'] = {'detail': "created"}
    with pytest.raises(BackendRejection):
        asyncio.run(AssessmentCatalog(api).create("Falls Risk", "CM", "Internal"))


def test_publish_and_unpublish_through_session():
    async def scenario():
        session = make_session()
        await open_loaded(session)
        await session.perform(ChangeAssessmentStatus(publish=True))
        published = session.state.status
        await session.perform(ChangeAssessmentStatus(publish=False))
        return session, published

    session, published = asyncio.run(scenario())

    assert published == "published"
    assert session.state.status == "unpublished"
    assert session.api.args('set_assessment_status') == [("gt-1", "published"), ("gt-1", "unpublished")]
    assert session.messages()[-1]['message'] == "Assessment unpublished"


def test_failed_publish_keeps_status():
    async def scenario():
        api = MockContentApi()
        api.failures['set_assessment_status'] = NetworkError("HTTP 500", status_code=500)
        session = make_session(api)
        await open_loaded(session)
        await session.perform(ChangeAssessmentStatus(publish=True))
        return session

    session = asyncio.run(scenario())

    assert session.state.status == "draft"
    assert session.messages()[-1]['severity'] == 'error'


if __name__ == '__main__':
    print("\nTesting assessment catalog...")
    print("=" * 60)

    test_group_versions_newest_first()

    print("=" * 60)
    print("Catalog tests passed!\n")
