"""Background matching trigger.

Webhook deliveries ask for a matching run without waiting for it. A single
worker task owns all triggered runs, so they never overlap, and requests that
arrive while a run is pending or in flight collapse into one follow-up run.
"""

import asyncio
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from src.config import config
from src.logging_utils import CorrelationIdContext, get_correlation_id, get_logger
from src.models import MatchingResult, round_money, utc_now
from src.pledgematch.matching import MatchingEngine

logger = get_logger(__name__)


class TriggerStats(BaseModel):
    """Counters exposed on the health endpoint."""

    requested: int = 0
    runs: int = 0
    succeeded: int = 0
    failed: int = 0
    retries: int = 0
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_correlation_id: Optional[str] = None


class MatchingTrigger:
    """Single-worker, coalescing runner for post-webhook matching."""

    def __init__(
        self,
        engine: MatchingEngine,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        enabled: Optional[bool] = None,
    ):
        """Initialize the trigger.

        Args:
            engine: Engine to run.
            max_attempts: Attempts per run. Defaults to config.matching_trigger_max_attempts.
            backoff_seconds: Delay before the first retry, doubled on each retry.
                Defaults to config.matching_trigger_backoff_seconds.
            enabled: Start the worker at all. Defaults to config.matching_trigger_enabled.
        """
        self.engine = engine
        self.max_attempts = max(
            1, max_attempts if max_attempts is not None else config.matching_trigger_max_attempts
        )
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else config.matching_trigger_backoff_seconds
        )
        self.enabled = enabled if enabled is not None else config.matching_trigger_enabled
        self.stats = TriggerStats()
        self._pending = asyncio.Event()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the worker task (no-op when disabled or already started)."""
        if not self.enabled:
            logger.info("Matching trigger disabled")
            return
        if self.is_running:
            return
        self._task = asyncio.create_task(self._worker(), name="matching-trigger")
        logger.info("Matching trigger started")

    async def stop(self) -> None:
        """Cancel the worker; a run in flight is rolled back by its transaction."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Matching trigger stopped")

    def request(self, reason: str = "webhook") -> None:
        """Ask for a matching run. Never blocks and never raises."""
        self.stats.requested += 1
        self._pending.set()
        logger.debug(f"Matching run requested ({reason})")

    async def wait_idle(self, poll_interval: float = 0.01) -> None:
        """Wait until no run is pending or in flight."""
        while self.is_running and (self._pending.is_set() or self._running):
            await asyncio.sleep(poll_interval)

    async def _worker(self) -> None:
        while True:
            await self._pending.wait()
            self._pending.clear()
            self._running = True
            try:
                with CorrelationIdContext(prefix="match"):
                    await self.run_once()
            finally:
                self._running = False

    async def run_once(self) -> Optional[MatchingResult]:
        """Run the engine with retries.

        Returns:
            The result of the first successful attempt, or None if every
            attempt failed.
        """
        self.stats.runs += 1
        self.stats.last_run_at = utc_now()
        self.stats.last_correlation_id = get_correlation_id()

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await self.engine.run(dry_run=False)
            except Exception as e:
                self.stats.last_error = f"{type(e).__name__}: {e}"
                if attempt == self.max_attempts:
                    break
                delay = self.backoff_seconds * 2 ** (attempt - 1)
                self.stats.retries += 1
                logger.warning(
                    f"Matching run attempt {attempt}/{self.max_attempts} failed: {e}; "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                continue

            self.stats.succeeded += 1
            self.stats.last_error = None
            logger.info(
                f"Matching completed: processed={result.processed}, matched={result.matched}, "
                f"total=${round_money(result.total_matched_amount)}"
            )
            return result

        self.stats.failed += 1
        logger.error(
            f"Matching run failed after {self.max_attempts} attempts: {self.stats.last_error}"
        )
        return None
