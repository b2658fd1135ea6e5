from datetime import datetime
from typing import Optional
from litestar.types.protocols import Logger
from pydantic import BaseModel

from idlewatch.integrations.cron_runner import CronJobFunc, cron_job
from idlewatch.lifecycle.clock import Clock
from idlewatch.lifecycle.engine import LifecycleEngine, TickResult
from idlewatch.logging_middleware import correlation_scope


class SweepState(BaseModel):
    """State carried between idle sweep executions."""

    ticks: int = 0
    consecutive_failures: int = 0
    last_tick_at: Optional[datetime] = None
    last_result: Optional[TickResult] = None


def create_idle_sweep_job(
    engine: LifecycleEngine,
    clock: Clock,
    logger: Logger,
    alert_after_failed_ticks: int = 5,
) -> CronJobFunc:
    @cron_job("idle-sweep", 1.0)
    async def idle_sweep(job_id: str, schedule: str, input: SweepState) -> SweepState:
        now = clock.now()

        with correlation_scope("tick"):
            logger.info(f"Running idle sweep (job {job_id}, tick {input.ticks + 1})")
            result: Optional[TickResult] = None
            try:
                result = await engine.run_tick(now)
            except Exception as e:
                logger.error(f"Idle sweep aborted: {e}", exc_info=True)

            if result is not None and result.healthy:
                consecutive_failures = 0
            else:
                consecutive_failures = input.consecutive_failures + 1

            # Terminal states are only delayed by failing ticks, never skipped
            if consecutive_failures >= alert_after_failed_ticks:
                logger.error(
                    f"ALERT: idle sweep has had failures on {consecutive_failures} consecutive ticks"
                )

        return SweepState(
            ticks=input.ticks + 1,
            consecutive_failures=consecutive_failures,
            last_tick_at=now,
            last_result=result,
        )

    return idle_sweep
