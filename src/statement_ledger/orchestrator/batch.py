from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from ..domain.models import Chunk, ChunkStatus, LedgerFragment
from ..errors import BatchFailedError
from ..logging import get_logger
from .processor import ChunkProcessor

LOG = get_logger("batch")

DEFAULT_INTER_CHUNK_DELAY = 0.5

ProgressFn = Callable[[int, int, Optional[str], Optional[int]], None]


@dataclass(frozen=True)
class BatchSummary:
    total: int
    completed: int
    failed: int
    cancelled: bool = False


class BatchRunner:
    """Process the selected chunks one after another.

    Chunks never run concurrently. Between two chunks the runner waits
    ``delay_seconds`` to spread requests over the provider quotas; the wait
    ends early on ``cancel()``. ``progress(done, total, model_label,
    key_ordinal)`` fires when a chunk starts, on every dispatch attempt and
    when a chunk finishes.
    """

    def __init__(
        self,
        processor: ChunkProcessor,
        *,
        delay_seconds: float = DEFAULT_INTER_CHUNK_DELAY,
        progress: Optional[ProgressFn] = None,
    ) -> None:
        self.processor = processor
        self.delay_seconds = delay_seconds
        self.progress = progress
        self.generation = 0
        self.running = False
        self._wake: Optional[asyncio.Event] = None

    def cancel(self) -> None:
        """Invalidate the running batch; late results are ignored."""
        self.generation += 1
        self.running = False
        if self._wake is not None:
            self._wake.set()
        LOG.info("Batch cancelled (generation %d)", self.generation)

    def _report(self, done: int, total: int, label: Optional[str] = None, ordinal: Optional[int] = None) -> None:
        if self.progress is None:
            return
        try:
            self.progress(done, total, label, ordinal)
        except Exception as exc:
            LOG.warning("Progress callback raised: %s", exc)

    async def _pause(self) -> None:
        if self.delay_seconds <= 0 or self._wake is None:
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self.delay_seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self, chunks: Sequence[Chunk]) -> BatchSummary:
        selected = [c for c in chunks if c.selected]
        total = len(selected)
        if not total:
            raise BatchFailedError("No part selected for processing")

        generation = self.generation
        self._wake = asyncio.Event()
        self.running = True

        def is_current() -> bool:
            return self.generation == generation

        for chunk in selected:
            chunk.reset()

        done = 0
        succeeded = 0
        cancelled = False
        LOG.info("Batch started: %d part(s), delay %.2fs", total, self.delay_seconds)
        try:
            for position, chunk in enumerate(selected):
                if position > 0:
                    await self._pause()
                if not is_current():
                    cancelled = True
                    break

                last_attempt: List[Tuple[str, int]] = []

                def on_attempt(label: str, ordinal: int) -> None:
                    last_attempt[:] = [(label, ordinal)]
                    self._report(done, total, label, ordinal)

                self._report(done, total)
                fragment: Optional[LedgerFragment] = await self.processor.process(
                    chunk, on_attempt=on_attempt, is_current=is_current
                )
                if not is_current():
                    cancelled = True
                    break

                done += 1
                if fragment is not None:
                    succeeded += 1
                label, ordinal = last_attempt[0] if last_attempt else (None, None)
                self._report(done, total, label, ordinal)
        finally:
            if is_current():
                self.running = False

        failed = sum(1 for c in selected if c.status == ChunkStatus.FAILED)
        summary = BatchSummary(total=total, completed=succeeded, failed=failed, cancelled=cancelled)
        if cancelled:
            LOG.info("Batch stopped after cancellation: %d/%d part(s) done", done, total)
            return summary

        LOG.info("Batch finished: %d completed, %d failed", succeeded, failed)
        if succeeded == 0:
            raise BatchFailedError(f"None of the {total} part(s) could be processed")
        return summary

    async def retry(self, chunk: Chunk) -> Optional[LedgerFragment]:
        """Reset one chunk and run it again through the same path."""
        generation = self.generation
        chunk.reset()
        LOG.info("Retrying part %d", chunk.index)
        return await self.processor.process(chunk, is_current=lambda: self.generation == generation)
