# search-as-you-type: debounce keystrokes, cancel superseded searches
import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from utils.config import SEARCH_DEBOUNCE_SECONDS
from utils.logger import get_logger

_logger = get_logger(__name__)

R = TypeVar("R")


class Debouncer(Generic[R]):
    """
    Runs only the latest submitted search, ``delay`` seconds after the last
    keystroke. A newer submit cancels the pending or in-flight task; a stale
    result is never applied even if its search finishes anyway.
    """

    def __init__(self, delay: float = SEARCH_DEBOUNCE_SECONDS):
        self.delay = delay
        self._generation = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def submit(
        self,
        query: str,
        search: Callable[[str], Awaitable[R]],
        apply: Callable[[R], None],
    ) -> asyncio.Task:
        self.cancel()
        self._generation += 1
        self._task = asyncio.create_task(self._run(self._generation, query, search, apply))
        return self._task

    async def _run(
        self,
        generation: int,
        query: str,
        search: Callable[[str], Awaitable[R]],
        apply: Callable[[R], None],
    ) -> None:
        await asyncio.sleep(self.delay)
        _logger.debug(f"Searching for {query!r}")
        result = await search(query)
        if generation != self._generation:
            _logger.debug(f"Discarding stale result for {query!r}")
            return
        apply(result)

    def cancel(self) -> None:
        if self.pending:
            self._task.cancel()

    async def wait(self) -> None:
        """Wait for the latest submission to settle."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass
