from datetime import datetime, timedelta, timezone
from pydantic import BaseModel
from typing import (
    Callable,
    Protocol,
    TypeVar,
    cast,
    List,
    Type,
    get_type_hints,
    Awaitable,
    Optional,
)
from aiosqlitepool import SQLiteConnectionPool
from litestar.types.protocols import Logger
import asyncio
import inspect
import cronexpr
import uuid


TBaseModel = TypeVar("TBaseModel", bound=BaseModel)


class CronJobFunc(Protocol):
    async def __call__(
        self, job_id: str, schedule: str, input: TBaseModel
    ) -> Optional[TBaseModel]: ...

    function_id: str
    model_type: Type[BaseModel]


def cron_job(
    name: str, version: float
) -> Callable[
    [Callable[[str, str, TBaseModel], Awaitable[Optional[TBaseModel]]]], CronJobFunc
]:
    def decorator(func: Callable) -> CronJobFunc:
        params = list(inspect.signature(func).parameters.keys())

        if params != ["job_id", "schedule", "input"]:
            raise ValueError(
                f"Function {func.__name__} must have exactly 3 parameters named 'job_id', 'schedule', 'input', got {params}"
            )

        func = cast(CronJobFunc, func)
        func.function_id = f"{name}-v{version}"

        # The input annotation tells the runner how to deserialize stored state
        hints = get_type_hints(func)
        func.model_type = hints["input"]

        return func

    return decorator


class CronRunner:
    """
    Async cron job executor with persistent storage and crash recovery.

    CronRunner provides at-least-once execution of scheduled jobs. A job row is
    claimed by this runner's id while it executes, so one job never overlaps
    with itself: the next execution is only scheduled once the current one
    has finished.

    Job Lifecycle:
        1. Jobs are scheduled with a cron expression and initial input state
        2. Initializer polls DB for due jobs, marks them with runner_id, starts async tasks
        3. Tasks execute concurrently while flowing through the execution queue
        4. Finalizer awaits completion, schedules next execution based on job's return value
        5. Jobs return new state for next execution, or None to cancel themselves

    Error Handling:
        Jobs are expected to handle their own errors and carry retry or alerting
        state in their return value. If a job raises anyway, the failure is
        logged and the job is rescheduled with the input it was given, so a
        periodic job is never silently lost.

    Thread Safety:
        Single CronRunner per process. Multiple runners will conflict due to runner_id
        optimistic locking. Use external coordination for multi-process deployments.
    """

    def __init__(
        self,
        func_pool: List[CronJobFunc],
        period: timedelta,
        db_pool: SQLiteConnectionPool,
        logger: Logger,
        shutdown_timeout: float = 1.0,
    ) -> None:
        self.period = period
        self.shutdown_timeout = shutdown_timeout
        self.db_pool = db_pool
        self.logger = logger
        self.functions = {func.function_id: func for func in func_pool}

        # Distinguishes this runner's claims from those left behind by a crashed one
        self.runner_id = str(uuid.uuid4())

    async def __aenter__(self) -> "CronRunner":
        async with self.db_pool.connection() as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS cronjobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    schedule TEXT NOT NULL,
                    function_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    fire_at TEXT NOT NULL,
                    runner TEXT
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_fire_at
                ON cronjobs(fire_at)
            """)

            await db.commit()  # type: ignore

        # Jobs flow from the initializer to the finalizer via a queue and execute
        # while they're in it
        self.executing_jobs = asyncio.Queue()
        self.job_initializer_task = asyncio.create_task(self._initialize_jobs())
        self.job_finalizer_task = asyncio.create_task(self._finalize_jobs())
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        # Stop the initializer first so nothing new enters the queue
        self.job_initializer_task.cancel()
        try:
            await asyncio.wait_for(self.job_initializer_task, timeout=1.0)
        except asyncio.CancelledError:
            pass

        # QueueShutDown is only raised once the queue has drained, so executing
        # jobs are still finalized
        self.executing_jobs.shutdown()
        try:
            await asyncio.wait_for(self.job_finalizer_task, timeout=self.shutdown_timeout)
        except asyncio.QueueShutDown:
            pass
        except asyncio.TimeoutError:
            self.logger.error(
                f"Jobs still running after {self.shutdown_timeout}s, abandoning them"
            )

        # The db_pool belongs to the caller and stays open

    async def _finalize_jobs(self) -> None:
        """Awaits executing jobs in queue order and writes their next execution back to disk."""
        while True:
            (
                job_id,
                task,
                func,
                schedule,
                fired_at,
                input,
            ) = await self.executing_jobs.get()

            try:
                result: Optional[BaseModel] = await task
            except Exception as e:
                self.logger.error(f"Job {func.function_id} failed: {e}", exc_info=True)
                result = input

            async with self.db_pool.connection() as db:
                await db.execute("DELETE FROM cronjobs WHERE id = ?", (job_id,))
                await db.commit()  # type: ignore

            if result is not None:
                await self.submit(func, result, schedule, fired_at)
            else:
                self.logger.info(f"Job {func.function_id} cancelled itself")

    async def _initialize_jobs(self) -> None:
        """Claims due jobs, starts them as tasks and hands them to the finalizer."""
        while True:
            wait = asyncio.create_task(asyncio.sleep(self.period.total_seconds()))

            now = datetime.now(timezone.utc)
            async with self.db_pool.connection() as db:
                cursor = await db.execute(
                    """
                    SELECT id, schedule, function_id, data, fire_at
                    FROM cronjobs WHERE fire_at <= ? AND (runner IS NULL OR runner != ?)
                    ORDER BY fire_at ASC
                    """,
                    (now.isoformat(), self.runner_id),
                )
                rows = await cursor.fetchall()

                if rows:
                    job_ids: List[str] = [row[0] for row in rows]
                    placeholders = ",".join("?" * len(job_ids))
                    await db.execute(
                        f"UPDATE cronjobs SET runner = ? WHERE id IN ({placeholders})",
                        [self.runner_id] + job_ids,
                    )
                    await db.commit()  # type: ignore

            for row in rows:
                id, schedule, function_id, data, fired_at = row
                func = self.functions.get(function_id)
                if func is None:
                    self.logger.warning(f"No function registered for job {function_id}")
                    continue
                input = func.model_type.model_validate_json(data)

                task = asyncio.create_task(
                    func(job_id=str(id), schedule=schedule, input=input)
                )
                await self.executing_jobs.put(
                    (
                        id,
                        task,
                        func,
                        schedule,
                        datetime.fromisoformat(fired_at),
                        input,
                    )
                )

            await wait

    async def submit(
        self,
        job: CronJobFunc,
        initial_input: BaseModel,
        schedule: str,
        last_fired_at: Optional[datetime] = None,
    ) -> None:
        fire_at = cronexpr.next_fire(schedule, last_fired_at)  # type: ignore

        async with self.db_pool.connection() as db:
            await db.execute(
                "INSERT INTO cronjobs (schedule, function_id, data, fire_at) VALUES (?, ?, ?, ?)",
                (
                    schedule,
                    job.function_id,
                    initial_input.model_dump_json(),
                    fire_at.isoformat(),
                ),
            )
            await db.commit()  # type: ignore

    async def ensure(
        self, job: CronJobFunc, initial_input: BaseModel, schedule: str
    ) -> bool:
        """Submit the job unless a row for it already exists. Returns True if submitted."""
        async with self.db_pool.connection() as db:
            cursor = await db.execute(
                "SELECT 1 FROM cronjobs WHERE function_id = ? LIMIT 1",
                (job.function_id,),
            )
            existing = await cursor.fetchall()

        if existing:
            self.logger.info(f"Job {job.function_id} already scheduled")
            return False

        await self.submit(job, initial_input, schedule)
        self.logger.info(f"Scheduled job {job.function_id} with schedule '{schedule}'")
        return True
