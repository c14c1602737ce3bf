"""
Scheduler
In-process polling loop that finds due Sequence Runs and hands them to the
Dispatcher.

Every tick (5-15s, or sooner when woken by a new trigger):
    1. read up to SCHEDULER_BATCH_SIZE ACTIVE runs with next_fire_at <= now
    2. dispatch each in its own session, SCHEDULER_CONCURRENCY at a time

Several instances may poll the same table. The Dispatcher's compare-and-swap
claim decides which one sends; the others see CLAIM_LOST.
"""
import asyncio
import logging
import os
import socket
import uuid
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from lead_engine.modules.automation.repositories.sequence_run_repository import SequenceRunRepository
from lead_engine.modules.automation.schemas.automation_schemas import StatusUpdate
from lead_engine.modules.automation.services.dispatcher import Dispatcher
from lead_engine.modules.automation.services.inbound_processor import InboundProcessor
from lead_engine.modules.automation.services.providers.factory import ProviderFactory, provider_factory
from lead_engine.modules.automation.services.rate_limiter import RateLimiter
from lead_engine.shared.core.config import settings
from lead_engine.shared.core.constants import (
    SCHEDULER_MAX_TICK_SECONDS,
    SCHEDULER_MIN_TICK_SECONDS,
    SCHEDULER_SHUTDOWN_TIMEOUT,
)
from lead_engine.shared.core.logging import set_correlation_id
from lead_engine.shared.db.session import get_session_factory
from lead_engine.shared.utils.time_utils import utcnow

logger = logging.getLogger("scheduler")


def build_worker_id() -> str:
    """hostname:pid:random, unique per process."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:6]}"


def clamp_tick(seconds: float) -> float:
    return min(max(seconds, SCHEDULER_MIN_TICK_SECONDS), SCHEDULER_MAX_TICK_SECONDS)


class Scheduler:

    def __init__(
        self,
        rate_limiter: RateLimiter,
        session_factory: Optional[Callable] = None,
        providers: ProviderFactory = provider_factory,
        clock: Callable[[], datetime] = utcnow,
        tick_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        worker_id: Optional[str] = None,
        dispatcher_factory: Optional[Callable] = None
    ):
        self.rate_limiter = rate_limiter
        self.session_factory = session_factory or get_session_factory()
        self.providers = providers
        self.clock = clock
        self.tick_seconds = clamp_tick(tick_seconds or settings.SCHEDULER_TICK_SECONDS)
        self.batch_size = batch_size or settings.SCHEDULER_BATCH_SIZE
        self.concurrency = max(concurrency or settings.SCHEDULER_CONCURRENCY, 1)
        self.worker_id = worker_id or build_worker_id()
        self.dispatcher_factory = dispatcher_factory or self._build_dispatcher

        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._wake = asyncio.Event()
        self.ticks = 0
        self.last_tick_at: Optional[datetime] = None
        self.last_tick_outcomes: Dict[str, int] = {}

    # ============================================
    # LIFECYCLE
    # ============================================

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name=f"scheduler-{self.worker_id}")
        logger.info(f"Scheduler {self.worker_id} started (tick={self.tick_seconds}s, batch={self.batch_size})")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop.set()
        self._wake.set()
        try:
            await asyncio.wait_for(self._task, timeout=SCHEDULER_SHUTDOWN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"Scheduler did not stop within {SCHEDULER_SHUTDOWN_TIMEOUT}s; cancelling")
            self._task.cancel()
        self._task = None
        logger.info(f"Scheduler {self.worker_id} stopped")

    def wake(self) -> None:
        """Run the next tick now (a new run may be due immediately)."""
        self._wake.set()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "worker_id": self.worker_id,
            "tick_seconds": self.tick_seconds,
            "batch_size": self.batch_size,
            "concurrency": self.concurrency,
            "ticks": self.ticks,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_tick_outcomes": self.last_tick_outcomes,
        }

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception as e:
                # Database unavailable etc.; try again next tick
                logger.error(f"Scheduler tick failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    # ============================================
    # ONE TICK
    # ============================================

    async def run_once(self) -> Dict[str, int]:
        """Dispatch every run due now. Returns outcome counts for this tick."""
        tick_id = set_correlation_id(prefix="tick")
        now = self.clock()

        async with self.session_factory() as session:
            due_runs = await SequenceRunRepository(session).find_due_runs(now, self.batch_size)

        self.ticks += 1
        self.last_tick_at = now
        if not due_runs:
            self.last_tick_outcomes = {}
            return {}

        logger.info(f"{len(due_runs)} run(s) due")
        semaphore = asyncio.Semaphore(self.concurrency)

        async def dispatch_one(run: dict) -> str:
            set_correlation_id(f"{tick_id}:run-{run['id']}")
            async with semaphore:
                async with self.session_factory() as session:
                    try:
                        outcome = await self.dispatcher_factory(session).dispatch(run)
                        return outcome.value
                    except Exception as e:
                        logger.error(f"Dispatch of run {run['id']} raised: {e}")
                        return "ERROR"

        results = await asyncio.gather(*(dispatch_one(run) for run in due_runs))
        outcomes = dict(Counter(results))
        self.last_tick_outcomes = outcomes
        logger.info(f"Tick outcomes: {outcomes}")
        return outcomes

    def _build_dispatcher(self, session) -> Dispatcher:
        return Dispatcher(
            db=session,
            rate_limiter=self.rate_limiter,
            providers=self.providers,
            worker_id=self.worker_id,
            clock=self.clock,
            status_echo_handler=self._handle_status_echo
        )

    async def _handle_status_echo(self, update: StatusUpdate) -> None:
        """Mock provider delivery echoes go through the normal status path."""
        async with self.session_factory() as session:
            await InboundProcessor(session, providers=self.providers, clock=self.clock).process_status(update)
