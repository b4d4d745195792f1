"""
Poll cycles and the fixed-interval driver.

Each cycle lists its source column, re-queues cards the board has moved back
(processed cards that reappear are unmarked), and hands new cards to its
pipeline. A cycle never overlaps with itself: a tick that arrives while the
previous poll of the same cycle is still running is skipped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from cardflow.board import Board
    from cardflow.ledger import CardLedger
    from cardflow.logger import PipelineLogger
    from cardflow.models import Card, RunOutcome
    from cardflow.pipelines import CardPipeline

logger = logging.getLogger(__name__)


class CardPoller:
    """One poll cycle bound to a source column, a ledger and a pipeline."""

    name = "poller"

    def __init__(
        self,
        board: Board,
        ledger: CardLedger,
        pipeline: CardPipeline,
        source_column: str,
        logger: Optional[PipelineLogger] = None,
    ) -> None:
        self.board = board
        self.ledger = ledger
        self.pipeline = pipeline
        self.source_column = source_column
        self._logger = logger
        self._in_progress = False

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    async def _new_cards(self) -> list[Card]:
        cards = await self.board.list_cards(self.source_column)
        for card in cards:
            if self.ledger.is_processed(card.id):
                self._log("card_requeued_by_board", {"card_id": card.id, "title": card.title})
                await self.ledger.unmark_processed(card.id)
        return [card for card in cards if not self.ledger.is_processed(card.id)]

    def _select(self, cards: list[Card]) -> list[Card]:
        return cards

    async def poll(self) -> list[RunOutcome]:
        """
        Run one poll of this cycle.

        Returns:
            Outcomes of the cards processed (empty when skipped or idle).
            Never raises for board or ledger failures.
        """
        if self._in_progress:
            self._log("poll_skipped", {"cycle": self.name, "reason": "previous poll still running"})
            return []

        self._in_progress = True
        try:
            try:
                new_cards = await self._new_cards()
            except Exception as e:
                self._log("poll_error", {"cycle": self.name, "error": str(e)}, level="error")
                return []

            if not new_cards:
                self._log("poll_idle", {"cycle": self.name}, level="debug")
                return []

            self._log("poll_found", {"cycle": self.name, "count": len(new_cards)})
            outcomes = []
            for card in self._select(new_cards):
                outcomes.append(await self.pipeline.process(card))
            return outcomes
        finally:
            self._in_progress = False


class AnalysisPoller(CardPoller):
    """Processes every new card, one after another."""

    name = "analysis"


class DevelopmentPoller(CardPoller):
    """Processes at most one new card per tick."""

    name = "dev"

    def _select(self, cards: list[Card]) -> list[Card]:
        return cards[:1]


class PollDriver:
    """
    Fires every poller on a fixed interval until stopped.

    Each tick launches the pollers as independent tasks and does not wait
    for the previous tick. The first tick fires immediately.
    """

    def __init__(self, interval: float, pollers: Sequence[CardPoller]) -> None:
        self.interval = interval
        self.pollers = list(pollers)
        self._stop_event = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()
        self._stop_requests = 0

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def tick(self) -> list[asyncio.Task]:
        """Launch one poll of every cycle without waiting for it."""
        launched = []
        for poller in self.pollers:
            task = asyncio.create_task(poller.poll(), name=f"poll-{poller.name}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            launched.append(task)
        return launched

    async def run_once(self) -> None:
        """Run one tick and wait for every cycle to finish."""
        await asyncio.gather(*self.tick())

    async def run(self) -> None:
        """Tick until stop() is called, then wait for in-flight polls."""
        while not self._stop_event.is_set():
            self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), self.interval)
            except asyncio.TimeoutError:
                pass

        if self._tasks:
            logger.info("Waiting for %d in-flight poll(s) to finish", len(self._tasks))
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def stop(self) -> None:
        """
        Stop ticking. In-flight polls are allowed to finish; a second call
        cancels them instead.
        """
        self._stop_requests += 1
        self._stop_event.set()
        if self._stop_requests > 1:
            for task in list(self._tasks):
                task.cancel()
