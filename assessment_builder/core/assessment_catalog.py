"""
Assessment catalog - list, create and publish assessments

Listing is paginated on the server. Versions of one assessment share a
master_id; grouped listings put the newest version first.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from assessment_builder.contracts import AssessmentStatus
from assessment_builder.core.scoring import records
from assessment_builder.core.validation import require_label
from assessment_builder.errors import BackendRejection, ValidationError
from assessment_builder.utils.helpers import extract_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssessmentSummary:
    """One row of the assessment listing."""
    id: str
    title: str
    master_id: str
    version: str = ""
    status: str = AssessmentStatus.DRAFT.value
    use_case: str = ""
    policy_number: str = ""

    @staticmethod
    def from_payload(data: Dict[str, Any]) -> "AssessmentSummary":
        assessment_id = extract_id(data) or ""
        return AssessmentSummary(
            id=assessment_id,
            title=data.get('title') or data.get('label') or data.get('name') or "",
            master_id=str(data.get('master_id') or assessment_id),
            version=str(data.get('version') or data.get('version_name') or ""),
            status=AssessmentStatus.parse(data.get('status')).value,
            use_case=data.get('use_case') or "",
            policy_number=data.get('policy_number') or "",
        )

    def to_json(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AssessmentPage:
    items: List[AssessmentSummary]
    offset: int
    limit: int
    total: Optional[int] = None

    @property
    def has_more(self) -> bool:
        if self.total is not None:
            return self.offset + len(self.items) < self.total
        return len(self.items) == self.limit


def _version_number(summary: AssessmentSummary) -> float:
    try:
        return float(summary.version)
    except ValueError:
        return 0.0


def group_versions(summaries: List[AssessmentSummary]) -> Dict[str, List[AssessmentSummary]]:
    """
    Group listing rows by master_id, newest version first in each group.

    Unparseable versions sort as 0. Group order follows first appearance.
    """
    grouped: Dict[str, List[AssessmentSummary]] = {}
    for summary in summaries:
        grouped.setdefault(summary.master_id, []).append(summary)
    for versions in grouped.values():
        versions.sort(key=_version_number, reverse=True)
    return grouped


class AssessmentCatalog:
    """Assessment-level operations outside an edit session"""

    def __init__(self, api):
        """
        Args:
            api: AsyncContentApi (or a fake with the same coroutines)
        """
        self.api = api

    async def list_page(self, offset: int = 0, limit: int = 10, search: str = "",
                        use_case: str = "CM") -> AssessmentPage:
        """
        Fetch one page of assessments.

        Raises:
            ValueError: On a negative offset or non-positive limit
            NetworkError, BackendRejection: From the API
        """
        if offset < 0 or limit <= 0:
            raise ValueError(f"Invalid page window offset={offset} limit={limit}")
        body = await self.api.list_assessments(use_case, offset, limit, search.strip())
        items = [AssessmentSummary.from_payload(r) for r in records(body, 'guideline_templates')]
        total = body.get('total') if isinstance(body, dict) else None
        logger.info(f"Listed {len(items)} assessment(s) at offset {offset}")
        return AssessmentPage(items=items, offset=offset, limit=limit,
                              total=int(total) if total is not None else None)

    async def create(
        self,
        title: str,
        use_case: str,
        content_source: str,
        use_case_category_id: Any = None,
        **extra: Any
    ) -> str:
        """
        Create a draft assessment.

        Args:
            title: Assessment title
            use_case: Use case code (e.g. 'CM')
            content_source: Content source name
            use_case_category_id: Category; may be None but is always sent
            **extra: Optional fields (version_name, policy_number, tooltip, ...)

        Returns:
            str: New assessment id

        Raises:
            ValidationError: Missing title, use case or content source
            BackendRejection: No id in the response
        """
        require_label(title, "Assessment title")
        require_label(use_case, "Use case")
        require_label(content_source, "Content source")

        payload = {
            'title': title.strip(),
            'use_case': use_case,
            'content_source': content_source,
            'use_case_category_id': use_case_category_id,
            'external_id': '',
            'custom_attributes': {},
            'tags': [],
            'tooltip': '',
            'alternative_wording': '',
            'available': False,
            'policy_number': '',
            'quality_measures': {},
            'settings': {'store_responses': 'use_default'},
            'usage': 'Care Planning',
            'mcg_content_enabled': False,
            'select_all_enabled': True,
            'multi_tenant_default': False,
        }
        payload.update({k: v for k, v in extra.items() if v is not None})

        body = await self.api.create_assessment(payload)
        assessment_id = extract_id(body)
        if assessment_id is None:
            raise BackendRejection("No id returned for new assessment", body=body)
        logger.info(f"Created assessment '{payload['title']}' ({assessment_id})")
        return assessment_id

    async def set_status(self, assessment_id: str, publish: bool) -> str:
        """
        Publish or unpublish an assessment.

        Returns:
            str: New status value
        """
        if not assessment_id:
            raise ValidationError("Open an assessment first")
        status = AssessmentStatus.PUBLISHED if publish else AssessmentStatus.UNPUBLISHED
        await self.api.set_assessment_status(assessment_id, status.value)
        logger.info(f"Assessment {assessment_id} is now {status.value}")
        return status.value
