"""
Flask Web Application for the Assessment Builder

JSON server exposing one edit session over HTTP for a local front end.
Every request runs its async work to completion (including background
bundle publication and typeahead) before responding.
"""

from flask import Flask, request, jsonify
import asyncio
import logging

from assessment_builder.commands import OpenAssessment, action_from_json
from assessment_builder.config import load_config
from assessment_builder.core.assessment_catalog import AssessmentCatalog, group_versions
from assessment_builder.core.edit_session import EditSession
from assessment_builder.errors import BuilderError
from assessment_builder.persistence import SessionPersistence
from assessment_builder.utils.content_api_client import AsyncContentApi, ContentApiClient

config = load_config()

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

# Global state for the current edit session
builder = {
    'api': None,
    'persistence': None,
    'session': None,
}


def initialize_client():
    """Create the content API client and snapshot store (once)"""
    if builder['api'] is None:
        logger.info(f"Connecting to content API at {config.api_root}")
        builder['api'] = AsyncContentApi(ContentApiClient(config))
    if builder['persistence'] is None:
        builder['persistence'] = SessionPersistence(base_dir=config.snapshot_dir)


async def _perform(session, action):
    outcome = await session.perform(action)
    await session.drain()
    return outcome


def _workflow_json(workflow):
    return {
        'ok': workflow.ok,
        'stage': workflow.stage.value,
        'ref': workflow.ref,
        'canonical_id': workflow.canonical_id,
        'message': workflow.message,
        'completed_stages': [s.value for s in workflow.completed_stages],
    }


def _no_session():
    return jsonify({
        'success': False,
        'error': 'No active session'
    }), 400


@app.route('/')
def index():
    """Service info"""
    return jsonify({
        'service': 'assessment-builder',
        'api_root': config.api_root,
        'session_active': builder['session'] is not None,
    })


@app.route('/api/assessments', methods=['GET'])
def list_assessments():
    """One page of assessments, with versions grouped by master id"""
    initialize_client()
    try:
        offset = int(request.args.get('offset', 0))
        limit = int(request.args.get('limit', 10))
        search = request.args.get('search', '')
        use_case = request.args.get('use_case', 'CM')

        page = asyncio.run(AssessmentCatalog(builder['api']).list_page(offset, limit, search, use_case))

        return jsonify({
            'success': True,
            'items': [item.to_json() for item in page.items],
            'versions': {
                master: [item.id for item in items]
                for master, items in group_versions(page.items).items()
            },
            'offset': page.offset,
            'limit': page.limit,
            'total': page.total,
            'has_more': page.has_more,
        })

    except ValueError as e:
        return jsonify({
            'success': False,
            'error': str(e)
        }), 400

    except BuilderError as e:
        logger.error(f"Error listing assessments: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 502


@app.route('/api/assessments', methods=['POST'])
def create_assessment():
    """Create a draft assessment"""
    initialize_client()
    data = request.get_json(silent=True) or {}
    try:
        extra = {k: v for k, v in data.items()
                 if k not in ('title', 'use_case', 'content_source', 'use_case_category_id')}
        assessment_id = asyncio.run(AssessmentCatalog(builder['api']).create(
            data.get('title', ''),
            data.get('use_case', ''),
            data.get('content_source', ''),
            data.get('use_case_category_id'),
            **extra
        ))
        return jsonify({
            'success': True,
            'assessment_id': assessment_id
        })

    except BuilderError as e:
        logger.error(f"Error creating assessment: {e}")
        return jsonify({
            'success': False,
            'error': str(e)
        }), 400


@app.route('/api/session/open', methods=['POST'])
def open_session():
    """Start (or resume) an edit session over one assessment"""
    initialize_client()
    data = request.get_json(silent=True) or {}
    assessment_id = (data.get('assessment_id') or '').strip()

    if not assessment_id:
        return jsonify({
            'success': False,
            'error': 'assessment_id is required'
        }), 400

    previous = builder['session']
    if previous is not None:
        previous.close()

    if data.get('resume'):
        session = EditSession.resume(builder['api'], builder['persistence'], assessment_id, config)
    else:
        session = EditSession(builder['api'], config, persistence=builder['persistence'])
    builder['session'] = session

    outcome = asyncio.run(_perform(session, OpenAssessment(assessment_id)))
    logger.info(f"Session {session.view()['session_id']} opened on {assessment_id}")

    return jsonify({
        'success': not outcome.rejected,
        'view': session.view()
    })


@app.route('/api/session', methods=['GET'])
def get_session():
    """Current session projection"""
    session = builder['session']
    if session is None:
        return _no_session()
    return jsonify({
        'success': True,
        'view': session.view()
    })


@app.route('/api/session/actions', methods=['POST'])
def perform_action():
    """Apply one action: {'type': 'AddSection', 'args': {...}}"""
    session = builder['session']
    if session is None:
        return _no_session()

    try:
        action = action_from_json(request.get_json(silent=True))
    except ValueError as e:
        return jsonify({
            'success': False,
            'error': str(e)
        }), 400

    outcome = asyncio.run(_perform(session, action))
    rejection = outcome.transition.rejection

    return jsonify({
        'success': outcome.ok,
        'rejected': outcome.rejected,
        'reason': rejection.reason if rejection else None,
        'created_ref': outcome.transition.created_ref,
        'workflows': [_workflow_json(w) for w in outcome.workflows],
        'view': session.view()
    })


@app.route('/api/session/preview', methods=['POST'])
def preview():
    """Visible question refs for {'selections': {question_ref: [answer_refs]}}"""
    session = builder['session']
    if session is None:
        return _no_session()

    data = request.get_json(silent=True) or {}
    try:
        selections = {
            int(question_ref): tuple(int(a) for a in answer_refs)
            for question_ref, answer_refs in (data.get('selections') or {}).items()
        }
        question_refs = data.get('question_refs')
        visible = session.preview(selections, [int(r) for r in question_refs] if question_refs else None)
    except (TypeError, ValueError) as e:
        return jsonify({
            'success': False,
            'error': str(e)
        }), 400

    return jsonify({
        'success': True,
        'visible': visible
    })


@app.route('/api/session/close', methods=['POST'])
def close_session():
    """Drop the current session; unsaved edits are lost"""
    session = builder['session']
    if session is None:
        return _no_session()
    session.close()
    builder['session'] = None
    return jsonify({'success': True})


if __name__ == '__main__':
    initialize_client()

    print("\n" + "="*60)
    print("ASSESSMENT BUILDER - WEB INTERFACE")
    print("="*60)
    print(f"\nContent API: {config.api_root}")
    print("Server starting on http://localhost:5000")
    print("\nPress Ctrl+C to stop the server")
    print("="*60 + "\n")

    app.run(debug=True, host='0.0.0.0', port=5000)
