"""
Async Search Context Registry - one live typeahead per field

Every interactive search field (slot) owns at most one asyncio task. A new
request for a slot cancels the previous task, so a superseded keystroke
never reaches the network after its debounce window. Results are
delivered only while the originating context is still the slot's current
context; clear() nulls the context, so a slow response for an abandoned
query is dropped.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from assessment_builder.contracts import LibraryCandidate
from assessment_builder.errors import BuilderError

logger = logging.getLogger(__name__)


SEARCH_SLOTS = (
    'section_name',
    'question_name',
    'answer_name',
    'relationship_target',
    'goal',
    'intervention',
)


@dataclass(frozen=True)
class SearchContext:
    slot: str
    content_type: str
    text: str
    scope_id: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_json(data: Dict[str, Any]) -> "SearchContext":
        return SearchContext(**data)


ResultCallback = Callable[[SearchContext, List[LibraryCandidate]], None]


class SearchContextRegistry:
    """Debounced, cancellable typeahead tasks keyed by slot"""

    def __init__(self, matcher, on_results: ResultCallback,
                 debounce_seconds: float = 0.4, min_chars: int = 2):
        """
        Args:
            matcher: LibraryMatcher
            on_results: Called with (context, candidates) for current contexts only
            debounce_seconds: Quiet period before the search fires
            min_chars: Shorter queries are never sent
        """
        self.matcher = matcher
        self.on_results = on_results
        self.debounce_seconds = debounce_seconds
        self.min_chars = min_chars
        self._current: Dict[str, Optional[SearchContext]] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def current(self, slot: str) -> Optional[SearchContext]:
        return self._current.get(slot)

    def request(self, context: SearchContext) -> Optional[asyncio.Task]:
        """
        Start (or restart) the search for context.slot.

        Must be called from a running event loop.

        Returns:
            The new task, or None if the query is too short
        """
        if context.slot not in SEARCH_SLOTS:
            raise ValueError(f"Unknown search slot: {context.slot}")
        self._cancel(context.slot)
        if len(context.text.strip()) < self.min_chars:
            self._current[context.slot] = None
            return None
        self._current[context.slot] = context
        task = asyncio.get_running_loop().create_task(self._run(context))
        self._tasks[context.slot] = task
        return task

    def clear(self, slot: str) -> None:
        """Field blurred or escaped: cancel and forget the slot's search."""
        self._cancel(slot)
        self._current[slot] = None

    def _cancel(self, slot: str) -> None:
        task = self._tasks.pop(slot, None)
        if task is not None and not task.done():
            task.cancel()

    async def _run(self, context: SearchContext) -> None:
        await asyncio.sleep(self.debounce_seconds)
        try:
            candidates = await self.matcher.search(context.text, context.content_type, context.scope_id)
        except BuilderError as e:
            logger.warning(f"Search '{context.text}' ({context.slot}) failed: {e}")
            candidates = []
        if self._current.get(context.slot) != context:
            logger.debug(f"Discarding stale results for slot {context.slot}")
            return
        self.on_results(context, candidates)

    async def wait(self, slot: str) -> None:
        """Wait for the slot's task, if any, to settle."""
        task = self._tasks.get(slot)
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def wait_all(self) -> None:
        for slot in list(self._tasks):
            await self.wait(slot)

    def close(self) -> None:
        for slot in list(self._tasks):
            self.clear(slot)
