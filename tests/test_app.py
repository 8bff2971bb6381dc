"""
Test Flask JSON server over an edit session

Uses the Flask test client with the mock content API injected.

Run with: pytest tests/test_app.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

import app as server
from assessment_builder.persistence import SessionPersistence

from mock_content_api import ASSESSMENT_ID, MockContentApi


@pytest.fixture
def api(tmp_path):
    mock = MockContentApi()
    server.builder['api'] = mock
    server.builder['persistence'] = SessionPersistence(base_dir=str(tmp_path))
    server.builder['session'] = None
    yield mock
    if server.builder['session'] is not None:
        server.builder['session'].close()
    server.builder.update({'api': None, 'persistence': None, 'session': None})


@pytest.fixture
def client(api):
    server.app.config['TESTING'] = True
    return server.app.test_client()


def act(client, action_type, **args):
    return client.post('/api/session/actions', json={'type': action_type, 'args': args})


def open_session(client):
    response = client.post('/api/session/open', json={'assessment_id': ASSESSMENT_ID})
    assert response.status_code == 200
    return response.get_json()['view']


def test_index_reports_no_session(client):
    data = client.get('/').get_json()

    assert data['service'] == 'assessment-builder'
    assert data['session_active'] is False


def test_list_assessments_groups_versions(client, api):
    api.responses['list_assessments'] = {
        'guideline_templates': [
            {'id': "gt-1", 'title': "Pain", 'version': "1", 'master_id': "m-1"},
            {'id': "gt-2", 'title': "Pain", 'version': "2", 'master_id': "m-1"},
        ],
        'total': 2,
    }

    response = client.get('/api/assessments?offset=0&limit=10&search=pain')
    data = response.get_json()

    assert response.status_code == 200
    assert [item['id'] for item in data['items']] == ["gt-1", "gt-2"]
    assert data['versions'] == {'m-1': ["gt-2", "gt-1"]}
    assert data['has_more'] is False
    assert api.args('list_assessments') == [("CM", 0, 10, "pain")]

    print("✓ Catalog listing test passed")


def test_list_assessments_rejects_bad_window(client):
    response = client.get('/api/assessments?limit=0')

    assert response.status_code == 400
    assert response.get_json()['success'] is False


def test_create_assessment(client, api):
    response = client.post('/api/assessments', json={
        'title': "Falls Risk", 'use_case': "CM", 'content_source': "Internal",
    })

    assert response.get_json() == {'success': True, 'assessment_id': "gt-new-1"}

    blank = client.post('/api/assessments', json={'title': "", 'use_case': "CM", 'content_source': "Internal"})
    assert blank.status_code == 400
    assert api.count('create_assessment') == 1


def test_actions_require_a_session(client):
    response = act(client, 'AddSection', label="Vitals")

    assert response.status_code == 400
    assert response.get_json()['error'] == 'No active session'


def test_open_loads_the_tree(client, api):
    view = open_session(client)

    assert view['assessment_id'] == ASSESSMENT_ID
    assert view['label'] == "Pain Assessment"
    assert view['status'] == "draft"
    assert set(view['tree']['bindings'].values()) >= {"p-1", "p-2", "s-1", "s-2", "s-3"}
    assert api.names() == ['get_assessment']


def test_open_requires_an_id(client):
    response = client.post('/api/session/open', json={})

    assert response.status_code == 400


def test_add_and_save_section(client, api):
    open_session(client)

    added = act(client, 'AddSection', label="Vitals").get_json()
    ref = added['created_ref']
    assert added['success'] is True
    assert added['view']['has_pending'] is True

    saved = act(client, 'SaveSection', ref=ref).get_json()

    assert saved['success'] is True
    assert saved['workflows'][0]['ok'] is True
    assert saved['workflows'][0]['canonical_id'] == "sec-new-1"
    assert saved['view']['has_pending'] is False
    assert saved['view']['tree']['bindings'][str(ref)] == "sec-new-1"
    assert api.count('add_section') == 1

    print("✓ Add and save section test passed")


def test_rejected_action_reports_reason(client):
    open_session(client)
    ref = act(client, 'AddSection', label="Vitals").get_json()['created_ref']

    blocked = act(client, 'AddSection', label="Other").get_json()

    assert blocked['success'] is False
    assert blocked['rejected'] is True
    assert "Save or revert" in blocked['reason']
    assert blocked['view']['messages'][-1]['severity'] == 'error'

    reverted = act(client, 'RevertChanges').get_json()
    assert reverted['view']['has_pending'] is False
    assert str(ref) not in reverted['view']['tree']['entities']


def test_unknown_or_internal_action_types_are_refused(client):
    open_session(client)

    unknown = act(client, 'Explode')
    internal = act(client, 'EntityPersisted', ref=1, canonical_id="x")
    bad_args = act(client, 'AddSection', title="Vitals")

    assert unknown.status_code == 400
    assert internal.status_code == 400
    assert bad_args.status_code == 400
    assert "Bad arguments" in bad_args.get_json()['error']


def test_preview_returns_visible_questions(client, api):
    view = open_session(client)
    section_ref = next(ref for ref, cid in view['tree']['bindings'].items() if cid == "s-1")
    act(client, 'LoadSectionQuestions', section_ref=int(section_ref))

    data = client.post('/api/session/preview', json={'selections': {}}).get_json()
    bindings = server.builder['session'].tree()

    assert data['success'] is True
    # q-2 is hidden by default
    assert bindings.ref_for("q-2") not in data['visible']
    assert bindings.ref_for("q-1") in data['visible']


def test_close_session(client):
    open_session(client)

    assert client.post('/api/session/close').get_json() == {'success': True}
    assert client.get('/api/session').status_code == 400


if __name__ == '__main__':
    print("\nRun with: pytest tests/test_app.py")
