"""
Library Matcher - search the reusable content library

Two uses:
- interactive typeahead (driven by SearchContextRegistry)
- silent pre-save check: one search per new entity; an exact match binds
  the entity to the library record instead of creating new content

Exactness is decided here, by comparing normalized labels, so it does not
depend on the backend's ranking or its own match flag. The first exact
candidate in server order wins.
"""

import logging
from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple

from assessment_builder.contracts import LibraryCandidate
from assessment_builder.errors import BuilderError, LibraryCheckFailure
from assessment_builder.utils.helpers import extract_id, labels_equal

logger = logging.getLogger(__name__)


LIBRARY_CONTENT_TYPES = (
    'section', 'question', 'answer', 'problem', 'barrier',
    'goal', 'intervention', 'guideline',
)


def classify(query: str, results: Any, content_type: str = "") -> List[LibraryCandidate]:
    """
    Turn a typeahead response into candidates flagged for exactness.

    Args:
        query: Text that was searched
        results: {'results': [...]} or a bare list of records
        content_type: Searched content type

    Returns:
        list: LibraryCandidate in server order
    """
    if isinstance(results, dict):
        records = results.get('results') or results.get('items') or []
    else:
        records = results or []

    candidates = []
    for record in records:
        if not isinstance(record, dict):
            continue
        record_id = extract_id(record)
        if record_id is None:
            continue
        label = record.get('label') or record.get('name') or ''
        master_id = record.get('master_id')
        candidates.append(LibraryCandidate(
            id=record_id,
            label=label,
            exact_match=labels_equal(label, query),
            master_id=str(master_id) if master_id else None,
            content_type=content_type,
        ))
    return candidates


def first_exact(candidates: Sequence[LibraryCandidate]) -> Optional[LibraryCandidate]:
    for candidate in candidates:
        if candidate.exact_match:
            return candidate
    return None


class LibraryMatcher:
    """Library search over the content API"""

    def __init__(self, api):
        """
        Args:
            api: Async content API exposing typeahead(content_type, text, scope_id)
        """
        self.api = api

    async def search(self, text: str, content_type: str, scope_id: Optional[str] = None) -> List[LibraryCandidate]:
        """
        One library search.

        Raises:
            ValueError: If content_type is not searchable
            NetworkError, BackendRejection: From the API
        """
        if content_type not in LIBRARY_CONTENT_TYPES:
            raise ValueError(f"Unsupported library content type: {content_type}")
        query = (text or '').strip()
        response = await self.api.typeahead(content_type, query, scope_id)
        candidates = classify(query, response, content_type)
        logger.debug(f"Library search {content_type} '{query}': {len(candidates)} result(s)")
        return candidates

    async def find_exact(self, text: str, content_type: str, scope_id: Optional[str] = None) -> Optional[LibraryCandidate]:
        """
        Pre-save check for one label.

        Returns:
            First exact candidate, or None

        Raises:
            LibraryCheckFailure: If the search itself failed
        """
        try:
            candidates = await self.search(text, content_type, scope_id)
        except BuilderError as e:
            raise LibraryCheckFailure(f"Library check for '{text}' failed: {e}") from e
        match = first_exact(candidates)
        if match:
            logger.info(f"Library match for {content_type} '{text}': {match.library_id}")
        return match

    async def check_queue(
        self,
        items: Sequence[Tuple[Hashable, str]],
        content_type: str,
        scope_id: Optional[str] = None
    ) -> Dict[Hashable, Optional[LibraryCandidate]]:
        """
        Check labels one at a time, in order.

        Each check completes before the next starts. A failed check folds
        to "no match" so the item is created as new content.

        Args:
            items: (key, label) pairs
            content_type: Library content type
            scope_id: Optional search scope

        Returns:
            dict: key -> exact candidate or None, one entry per item
        """
        matches: Dict[Hashable, Optional[LibraryCandidate]] = {}
        for key, label in items:
            try:
                matches[key] = await self.find_exact(label, content_type, scope_id)
            except LibraryCheckFailure as e:
                logger.warning(f"{e}; creating as new content")
                matches[key] = None
        logger.info(f"Library check queue ({content_type}): {len(items)} checked, "
                    f"{sum(1 for m in matches.values() if m)} matched")
        return matches
