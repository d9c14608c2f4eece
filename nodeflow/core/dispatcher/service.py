# nodeflow/core/dispatcher/service.py
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional

from nodeflow.core.breaker.registry import Clock, utcnow
from nodeflow.core.engine.engine import ExecutionEngine, ExecutionOutcome
from nodeflow.core.logging import get_logger
from nodeflow.core.models.config import DispatcherConfig
from nodeflow.core.models.execution import Execution
from nodeflow.core.store.base import ExecutionStore
from nodeflow.core.types.status import ExecutionStatus

logger = get_logger('dispatcher')


@dataclass
class DispatchReport:
    """What one dispatcher pass did."""

    found: int = 0
    skipped: int = 0
    errors: int = 0
    outcomes: list[ExecutionOutcome] = field(default_factory=list)

    @property
    def dispatched(self) -> int:
        return len(self.outcomes)


class Dispatcher:
    """
    Feeds due executions back into the engine.

    Due means pending, running with a missing or expired lease, retrying
    with next_retry_at reached, or suspended with resume_at reached. An
    execution id is never dispatched twice at once within this process;
    across processes the engine's claim decides who runs it.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        store: ExecutionStore,
        config: Optional[DispatcherConfig] = None,
        clock: Clock = utcnow,
    ):
        self.engine = engine
        self.store = store
        self.config = config or DispatcherConfig()
        self.clock = clock
        self._stop = asyncio.Event()
        self._in_flight: set[str] = set()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        await self.store.initialize()
        self._started = True
        logger.info(
            f'Dispatcher started: poll_interval={self.config.poll_interval_ms}ms, '
            f'batch_size={self.config.batch_size}, '
            f'max_concurrency={self.config.max_concurrency}'
        )

    async def stop(self) -> None:
        self._stop.set()
        logger.info('Dispatcher stopped')

    def request_stop(self) -> None:
        """Request the loop to stop after the current pass."""
        self._stop.set()

    async def run_forever(self) -> None:
        logger.info('Starting dispatcher loop')
        try:
            await self.start()

            while not self._stop.is_set():
                try:
                    report = await self.run_once()
                    if report.found:
                        logger.debug(
                            f'Pass: {report.found} due, {report.dispatched} dispatched, '
                            f'{report.skipped} in flight, {report.errors} error(s)'
                        )
                except Exception as e:
                    logger.error(f'Error in dispatcher loop: {e}', exc_info=True)

                try:
                    await asyncio.wait_for(
                        self._stop.wait(),
                        timeout=self.config.poll_interval_ms / 1000,
                    )
                    break
                except asyncio.TimeoutError:
                    continue
        finally:
            await self.stop()

    async def run_once(self) -> DispatchReport:
        """Dispatch every execution that is due now, then return."""
        due = await self.store.find_due_executions(self.clock(), self.config.batch_size)
        report = DispatchReport(found=len(due))

        batch: list[Execution] = []
        for execution in due:
            if execution.id in self._in_flight:
                report.skipped += 1
                continue
            self._in_flight.add(execution.id)
            batch.append(execution)

        results = await asyncio.gather(*(self._dispatch(e) for e in batch))
        for outcome in results:
            if outcome is None:
                report.errors += 1
            else:
                report.outcomes.append(outcome)
        return report

    async def _dispatch(self, execution: Execution) -> Optional[ExecutionOutcome]:
        try:
            async with self._semaphore:
                if execution.status is ExecutionStatus.SUSPENDED:
                    outcome = await self.engine.resume_due(execution)
                else:
                    outcome = await self.engine.advance(execution)
        except Exception as e:
            logger.error(f'Execution {execution.id}: tick failed: {e}', exc_info=True)
            return None
        finally:
            self._in_flight.discard(execution.id)

        if outcome.aborted:
            logger.debug(f'Execution {execution.id}: tick aborted ({outcome.reason})')
        return outcome
