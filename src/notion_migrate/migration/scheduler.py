"""Window partitioning and bounded-concurrency execution of entry pipelines."""

import asyncio
import math
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Set

from loguru import logger
from pydantic import BaseModel, Field, field_validator

from ..models.entry import EntryStatus
from .pipeline import EntryOutcome, EntryPipeline, PipelineContext

ProgressCallback = Callable[[int, int, EntryOutcome], None]


class BatchWindow(BaseModel):
    """Entries processed together under a concurrency budget."""

    index: int = Field(..., description='Window number, starting at 0')
    entry_ids: List[str] = Field(default_factory=list)
    concurrency_budget: int = Field(..., description='Parallel pipelines allowed')

    @field_validator('concurrency_budget')
    @classmethod
    def validate_budget(cls, v):
        if v <= 0:
            raise ValueError('Concurrency budget must be positive')
        return v


class BatchScheduler:
    """Drives entry pipelines window by window.

    The pause between windows is a coarse pacing layer on top of the rate
    limiter: the two add up, the pause never refills or spends tokens.
    """

    def __init__(
        self,
        context: PipelineContext,
        batch_size: int = 10,
        concurrency: int = 3,
        batch_delay: float = 1.0,
    ):
        """Initialize batch scheduler.

        Args:
            context: Shared pipeline context
            batch_size: Entries per window
            concurrency: Pipelines running in parallel within a window
            batch_delay: Seconds to pause between windows
        """
        if batch_size <= 0 or concurrency <= 0:
            raise ValueError('Batch size and concurrency must be positive')
        if batch_delay < 0:
            raise ValueError('Batch delay must not be negative')

        self.context = context
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.batch_delay = batch_delay
        self.logger = logger.bind(component='BatchScheduler')
        self._active: Set[str] = set()
        self.windows_run = 0

    def select_eligible(
        self,
        entry_ids: Optional[Sequence[str]] = None,
        force: bool = False,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """Pick entries that should run now.

        Args:
            entry_ids: Restrict the selection to these ids, in this order
            force: Include completed and failed entries, and retries not yet due
            limit: Maximum number of entries to return
            now: Reference time for retry due checks

        Returns:
            Eligible entry ids
        """
        now = now or self.context.clock()
        entries = {entry.id: entry for entry in self.context.store.entries()}
        candidates = entry_ids if entry_ids is not None else sorted(entries)

        eligible = []
        seen = set()
        for entry_id in candidates:
            entry = entries.get(entry_id)
            if entry is None or entry_id in seen:
                continue
            seen.add(entry_id)

            if entry.status.is_terminal and not force:
                continue
            if not force and entry.status != EntryStatus.PENDING and not entry.status.is_terminal:
                if not entry.is_due(now):
                    continue
            eligible.append(entry_id)

            if limit is not None and len(eligible) >= limit:
                break

        return eligible

    def plan_windows(self, entry_ids: Sequence[str]) -> List[BatchWindow]:
        """Split entries into windows of at most ``batch_size``."""
        count = math.ceil(len(entry_ids) / self.batch_size)
        return [
            BatchWindow(
                index=i,
                entry_ids=list(entry_ids[i * self.batch_size : (i + 1) * self.batch_size]),
                concurrency_budget=self.concurrency,
            )
            for i in range(count)
        ]

    async def run(
        self,
        entry_ids: Sequence[str],
        progress: Optional[ProgressCallback] = None,
    ) -> List[EntryOutcome]:
        """Run every entry, window by window.

        Args:
            entry_ids: Entries to run, already filtered for eligibility
            progress: Called after each finished entry with
                ``(done, total, outcome)``

        Returns:
            Outcomes of the entries that were started
        """
        windows = self.plan_windows(entry_ids)
        total = len(entry_ids)
        outcomes: List[EntryOutcome] = []

        self.logger.info(
            f'Processing {total} entries in {len(windows)} windows '
            f'(batch size {self.batch_size}, concurrency {self.concurrency})'
        )

        for window in windows:
            if self.context.abort.is_set():
                self.logger.warning(f'Abort requested, skipping window {window.index}')
                break

            window_outcomes = await self._run_window(window)
            self.windows_run += 1
            for outcome in window_outcomes:
                outcomes.append(outcome)
                if progress is not None:
                    progress(len(outcomes), total, outcome)

            completed = sum(1 for o in window_outcomes if o.status == EntryStatus.COMPLETED)
            self.logger.info(
                f'Window {window.index + 1}/{len(windows)} done: '
                f'{completed}/{len(window_outcomes)} completed'
            )

            is_last = window.index == len(windows) - 1
            if not is_last and self.batch_delay > 0 and not self.context.abort.is_set():
                await self.context.sleep(self.batch_delay)

        return outcomes

    async def _run_window(self, window: BatchWindow) -> List[EntryOutcome]:
        semaphore = asyncio.Semaphore(window.concurrency_budget)

        async def process_entry(entry_id: str) -> Optional[EntryOutcome]:
            async with semaphore:
                if self.context.abort.is_set() or entry_id in self._active:
                    return None
                self._active.add(entry_id)
                try:
                    return await EntryPipeline(entry_id, self.context).run()
                finally:
                    self._active.discard(entry_id)

        results = await asyncio.gather(
            *(process_entry(entry_id) for entry_id in window.entry_ids),
            return_exceptions=True,
        )

        outcomes = []
        for entry_id, result in zip(window.entry_ids, results):
            if isinstance(result, BaseException):
                # Pipelines contain their own failures; this is a bug or a
                # cancellation, and must not take the window down with it.
                self.logger.error(f'Pipeline for {entry_id} crashed: {result!r}')
                entry = self.context.store.get_entry(entry_id)
                outcomes.append(
                    EntryOutcome(
                        entry_id=entry_id,
                        status=entry.status if entry else EntryStatus.PENDING,
                        attempts=entry.attempts if entry else 0,
                        error=f'Pipeline crashed: {result}',
                    )
                )
            elif result is not None:
                outcomes.append(result)
        return outcomes
