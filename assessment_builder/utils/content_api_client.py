"""
Content API client

ContentApiClient: synchronous JSON client on a requests.Session.
AsyncContentApi: the same calls for the asyncio engine; each call runs in
a worker thread and is bounded by the configured timeout.

Response policy:
- Transport failure, timeout, non-2xx status -> NetworkError
- 204 or empty body -> {}
- 2xx body with 'error', or with a rejection 'detail' ("already belongs
  to", "duplicate", "already exists") and no expected key -> BackendRejection
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import requests

from assessment_builder.config import BuilderConfig
from assessment_builder.errors import BackendRejection, NetworkError
from assessment_builder.utils.helpers import extract_id

logger = logging.getLogger(__name__)


REJECTION_PHRASES = ("already belongs to", "duplicate", "already exists")


def rejection_reason(body: Any, expect: Optional[str] = None) -> Optional[str]:
    """
    Decide whether a 2xx body is a semantic failure.

    Args:
        body: Parsed response body
        expect: Key whose presence proves success (e.g. 'id')

    Returns:
        Rejection message, or None for a genuine success

    Examples:
        >>> rejection_reason({'detail': 'Question already belongs to section'})
        'Question already belongs to section'
        >>> rejection_reason({'id': 'q1', 'detail': 'duplicate'}, expect='id')
    """
    if not isinstance(body, dict):
        return None
    if body.get('error'):
        error = body['error']
        return error if isinstance(error, str) else str(error)
    detail = body.get('detail')
    if isinstance(detail, str) and any(p in detail.lower() for p in REJECTION_PHRASES):
        found = expect is not None and (expect in body or (expect == 'id' and extract_id(body)))
        if not found:
            return detail
    return None


class ContentApiClient:
    """Blocking client for the builder endpoints"""

    def __init__(self, config: BuilderConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.root = config.api_root
        self.session = session or requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        })
        if config.access_token:
            self.session.headers['Authorization'] = f"Bearer {config.access_token}"

    def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        expect: Optional[str] = None,
        detail_is_warning: bool = False
    ) -> Any:
        """
        Send one request and normalize the outcome.

        Args:
            method: HTTP method
            path: Path below the API root
            payload: JSON body
            params: Query parameters
            expect: Key that proves success
            detail_is_warning: Treat a rejection 'detail' as informational

        Returns:
            Parsed JSON body ({} for empty responses)

        Raises:
            NetworkError: Transport failure or non-2xx status
            BackendRejection: 2xx body describing a failure
        """
        url = f"{self.root}{path}"
        try:
            response = self.session.request(
                method, url, json=payload, params=params,
                timeout=self.config.request_timeout_seconds,
            )
        except requests.RequestException as e:
            logger.error(f"{method} {path} failed: {e}")
            raise NetworkError(f"Could not reach the content service: {e}") from e

        if not 200 <= response.status_code < 300:
            logger.error(f"{method} {path} -> HTTP {response.status_code}")
            raise NetworkError(
                f"Content service returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return {}

        try:
            body = response.json()
        except ValueError as e:
            raise BackendRejection("Content service returned a malformed response",
                                   status_code=response.status_code) from e

        if not detail_is_warning:
            reason = rejection_reason(body, expect)
            if reason:
                logger.warning(f"{method} {path} rejected: {reason}")
                raise BackendRejection(reason, status_code=response.status_code, body=body)
        elif isinstance(body, dict) and body.get('error'):
            raise BackendRejection(str(body['error']), status_code=response.status_code, body=body)

        logger.debug(f"{method} {path} -> {response.status_code}")
        return body

    # ========================
    # Assessments
    # ========================

    def list_assessments(self, use_case: str = "CM", offset: int = 0, limit: int = 10,
                         search_value: str = "") -> Any:
        params = {'use_case': use_case, 'offset': offset, 'limit': limit}
        if search_value:
            params['search_value'] = search_value
        return self._request('GET', '/builder/guideline-template', params=params)

    def create_assessment(self, payload: Dict[str, Any]) -> Any:
        return self._request('POST', '/builder/guideline-template', payload, expect='id')

    def get_assessment(self, assessment_id: str) -> Any:
        return self._request('GET', f'/builder/guideline-template/{assessment_id}')

    def set_assessment_status(self, assessment_id: str, status: str) -> Any:
        return self._request('PATCH', f'/builder/guideline-template/{assessment_id}/status',
                             {'status': status})

    # ========================
    # Sections
    # ========================

    def add_section(self, payload: Dict[str, Any]) -> Any:
        return self._request('POST', '/builder/section', payload, expect='id')

    def update_section(self, section_id: str, payload: Dict[str, Any]) -> Any:
        return self._request('PATCH', f'/builder/section/{section_id}', payload)

    def delete_section(self, section_id: str) -> Any:
        return self._request('DELETE', f'/builder/section/{section_id}')

    def get_section_questions(self, section_id: str) -> Any:
        return self._request('GET', f'/builder/section/{section_id}/questions')

    # ========================
    # Questions and Answers
    # ========================

    def add_question_to_section(self, section_id: str, payload: Dict[str, Any]) -> Any:
        return self._request('POST', f'/builder/section/{section_id}/questions', payload, expect='id')

    def update_question(self, question_id: str, payload: Dict[str, Any]) -> Any:
        return self._request('PATCH', f'/builder/question/{question_id}', payload)

    def delete_question(self, question_id: str) -> Any:
        return self._request('DELETE', f'/builder/question/{question_id}')

    def add_answers_to_question(self, question_id: str, answers: List[Dict[str, Any]]) -> Any:
        # a 'detail' here is a duplicate warning, not a failure
        return self._request('POST', f'/builder/question/{question_id}/answers',
                             {'answers': answers}, detail_is_warning=True)

    def update_answer(self, answer_id: str, payload: Dict[str, Any]) -> Any:
        return self._request('PATCH', f'/builder/answer/{answer_id}', payload)

    def delete_answer(self, answer_id: str) -> Any:
        return self._request('DELETE', f'/builder/answer/{answer_id}')

    def create_question_bundle(self, content_id: str) -> Any:
        return self._request('POST', '/builder/library/question/bundle', {'content_id': content_id})

    # ========================
    # Library
    # ========================

    def typeahead(self, content_type: str, text: str, scope_id: Optional[str] = None) -> Any:
        path = ('/builder/guideline-template/typeahead' if content_type == 'guideline'
                else f'/builder/{content_type}/typeahead')
        params = {'text': text}
        if scope_id:
            params['scope_id'] = scope_id
        return self._request('GET', path, params=params)

    # ========================
    # Relationships
    # ========================

    def get_answer_relationships(self, answer_id: str) -> Any:
        return self._request('GET', f'/builder/answer/{answer_id}/relationships')

    def add_branch_question(self, answer_id: str, question_id: str) -> Any:
        return self._request('POST', f'/builder/answer/{answer_id}/branch-question',
                             {'question_id': question_id})

    def remove_branch_question(self, answer_id: str, question_id: str) -> Any:
        return self._request('DELETE', f'/builder/answer/{answer_id}/branch-question/{question_id}')

    def add_guideline(self, answer_id: str, guideline_id: str) -> Any:
        return self._request('POST', f'/builder/answer/{answer_id}/guideline-template',
                             {'guideline_id': guideline_id})

    def remove_guideline(self, answer_id: str, guideline_id: str) -> Any:
        return self._request('DELETE', f'/builder/answer/{answer_id}/guideline-template/{guideline_id}')

    def add_problem(self, payload: Dict[str, Any]) -> Any:
        return self._request('POST', '/builder/problem', payload, expect='id')

    def update_problem(self, problem_id: str, payload: Dict[str, Any]) -> Any:
        return self._request('PATCH', f'/builder/problem/{problem_id}', payload)

    def delete_problem(self, problem_id: str) -> Any:
        return self._request('DELETE', f'/builder/problem/{problem_id}')

    def add_barrier(self, payload: Dict[str, Any]) -> Any:
        return self._request('POST', '/builder/barrier', payload, expect='id')

    def delete_barrier(self, barrier_id: str) -> Any:
        return self._request('DELETE', f'/builder/barrier/{barrier_id}')

    def get_goals(self, assessment_id: str, problem_id: str) -> Any:
        return self._request('GET', f'/builder/guideline-template/{assessment_id}/problem/{problem_id}/goals')

    def add_goal(self, payload: Dict[str, Any]) -> Any:
        return self._request('POST', '/builder/goal', payload, expect='id')

    def update_goal(self, goal_id: str, payload: Dict[str, Any]) -> Any:
        return self._request('PATCH', f'/builder/goal/{goal_id}', payload)

    def delete_goal(self, goal_id: str) -> Any:
        return self._request('DELETE', f'/builder/goal/{goal_id}')

    def get_interventions(self, assessment_id: str, goal_id: str) -> Any:
        return self._request('GET', f'/builder/guideline-template/{assessment_id}/goal/{goal_id}/interventions')

    def add_intervention(self, payload: Dict[str, Any]) -> Any:
        return self._request('POST', '/builder/intervention', payload, expect='id')

    def update_intervention(self, intervention_id: str, payload: Dict[str, Any]) -> Any:
        return self._request('PATCH', f'/builder/intervention/{intervention_id}', payload)

    def delete_intervention(self, goal_id: str, intervention_id: str) -> Any:
        return self._request('DELETE', f'/builder/goal/{goal_id}/intervention/{intervention_id}')

    # ========================
    # Scoring
    # ========================

    def list_scoring_models(self, assessment_id: str) -> Any:
        return self._request('GET', f'/builder/guideline_template/{assessment_id}/scoring_model')

    def get_scoring_model(self, assessment_id: str, model_id: str) -> Any:
        return self._request('GET', f'/builder/guideline_template/{assessment_id}/scoring_model/{model_id}')

    def create_scoring_model(self, payload: Dict[str, Any]) -> Any:
        return self._request('POST', '/builder/scoring_model', payload)

    def update_scoring_model(self, model_id: str, payload: Dict[str, Any]) -> Any:
        return self._request('PATCH', f'/builder/scoring_model/{model_id}', payload)

    def delete_scoring_model(self, assessment_id: str, model_id: str) -> Any:
        return self._request('DELETE', f'/builder/guideline_template/{assessment_id}/scoring_model/{model_id}')


class AsyncContentApi:
    """
    Awaitable facade over ContentApiClient.

    Each call runs in a worker thread under asyncio.wait_for; a call that
    exceeds the timeout raises NetworkError instead of hanging forever.
    """

    def __init__(self, client: ContentApiClient, timeout_seconds: Optional[float] = None):
        self.client = client
        self.timeout_seconds = timeout_seconds or client.config.request_timeout_seconds

    async def _call(self, fn, *args, **kwargs) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), self.timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.error(f"{fn.__name__} timed out after {self.timeout_seconds}s")
            raise NetworkError(f"Request timed out after {self.timeout_seconds}s") from e

    async def list_assessments(self, use_case="CM", offset=0, limit=10, search_value=""):
        return await self._call(self.client.list_assessments, use_case, offset, limit, search_value)

    async def create_assessment(self, payload):
        return await self._call(self.client.create_assessment, payload)

    async def get_assessment(self, assessment_id):
        return await self._call(self.client.get_assessment, assessment_id)

    async def set_assessment_status(self, assessment_id, status):
        return await self._call(self.client.set_assessment_status, assessment_id, status)

    async def add_section(self, payload):
        return await self._call(self.client.add_section, payload)

    async def update_section(self, section_id, payload):
        return await self._call(self.client.update_section, section_id, payload)

    async def delete_section(self, section_id):
        return await self._call(self.client.delete_section, section_id)

    async def get_section_questions(self, section_id):
        return await self._call(self.client.get_section_questions, section_id)

    async def add_question_to_section(self, section_id, payload):
        return await self._call(self.client.add_question_to_section, section_id, payload)

    async def update_question(self, question_id, payload):
        return await self._call(self.client.update_question, question_id, payload)

    async def delete_question(self, question_id):
        return await self._call(self.client.delete_question, question_id)

    async def add_answers_to_question(self, question_id, answers):
        return await self._call(self.client.add_answers_to_question, question_id, answers)

    async def update_answer(self, answer_id, payload):
        return await self._call(self.client.update_answer, answer_id, payload)

    async def delete_answer(self, answer_id):
        return await self._call(self.client.delete_answer, answer_id)

    async def create_question_bundle(self, content_id):
        return await self._call(self.client.create_question_bundle, content_id)

    async def typeahead(self, content_type, text, scope_id=None):
        return await self._call(self.client.typeahead, content_type, text, scope_id)

    async def get_answer_relationships(self, answer_id):
        return await self._call(self.client.get_answer_relationships, answer_id)

    async def add_branch_question(self, answer_id, question_id):
        return await self._call(self.client.add_branch_question, answer_id, question_id)

    async def remove_branch_question(self, answer_id, question_id):
        return await self._call(self.client.remove_branch_question, answer_id, question_id)

    async def add_guideline(self, answer_id, guideline_id):
        return await self._call(self.client.add_guideline, answer_id, guideline_id)

    async def remove_guideline(self, answer_id, guideline_id):
        return await self._call(self.client.remove_guideline, answer_id, guideline_id)

    async def add_problem(self, payload):
        return await self._call(self.client.add_problem, payload)

    async def update_problem(self, problem_id, payload):
        return await self._call(self.client.update_problem, problem_id, payload)

    async def delete_problem(self, problem_id):
        return await self._call(self.client.delete_problem, problem_id)

    async def add_barrier(self, payload):
        return await self._call(self.client.add_barrier, payload)

    async def delete_barrier(self, barrier_id):
        return await self._call(self.client.delete_barrier, barrier_id)

    async def get_goals(self, assessment_id, problem_id):
        return await self._call(self.client.get_goals, assessment_id, problem_id)

    async def add_goal(self, payload):
        return await self._call(self.client.add_goal, payload)

    async def update_goal(self, goal_id, payload):
        return await self._call(self.client.update_goal, goal_id, payload)

    async def delete_goal(self, goal_id):
        return await self._call(self.client.delete_goal, goal_id)

    async def get_interventions(self, assessment_id, goal_id):
        return await self._call(self.client.get_interventions, assessment_id, goal_id)

    async def add_intervention(self, payload):
        return await self._call(self.client.add_intervention, payload)

    async def update_intervention(self, intervention_id, payload):
        return await self._call(self.client.update_intervention, intervention_id, payload)

    async def delete_intervention(self, goal_id, intervention_id):
        return await self._call(self.client.delete_intervention, goal_id, intervention_id)

    async def list_scoring_models(self, assessment_id):
        return await self._call(self.client.list_scoring_models, assessment_id)

    async def get_scoring_model(self, assessment_id, model_id):
        return await self._call(self.client.get_scoring_model, assessment_id, model_id)

    async def create_scoring_model(self, payload):
        return await self._call(self.client.create_scoring_model, payload)

    async def update_scoring_model(self, model_id, payload):
        return await self._call(self.client.update_scoring_model, model_id, payload)

    async def delete_scoring_model(self, assessment_id, model_id):
        return await self._call(self.client.delete_scoring_model, assessment_id, model_id)
