from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator
from litestar import Litestar
from litestar.channels import ChannelsPlugin

from idlewatch.config import settings
from idlewatch.database.manager import create_db_pool
from idlewatch.database.store import SQLiteConversationStore
from idlewatch.integrations.cron_runner import CronRunner
from idlewatch.integrations.events import ChannelsEventSink
from idlewatch.integrations.notifier import create_gateway_client, create_notifier
from idlewatch.jobs.idle_sweep import SweepState, create_idle_sweep_job
from idlewatch.lifecycle.clock import SystemClock
from idlewatch.lifecycle.composer import TemplateComposer
from idlewatch.lifecycle.engine import LifecycleEngine
from idlewatch.lifecycle.policy import IdlePolicy
from idlewatch.lifecycle.service import InteractionService


@asynccontextmanager
async def lifespan(app: Litestar) -> AsyncGenerator[None, None]:
    logger = app.logger
    if logger is None:
        raise RuntimeError("App logger is None")

    db_pool = await create_db_pool(settings.interactions_db, logger)
    store = SQLiteConversationStore(db_pool)

    delivery_timeout = float(settings.notifier.timeout_seconds)
    gateway_client = create_gateway_client(
        settings.notifier.url,
        timeout=delivery_timeout,
        api_key=settings.notifier.get("waha_api_key") or None,
    )
    notifier = create_notifier(gateway_client, settings.notifier, logger)
    events = ChannelsEventSink(app.plugins.get(ChannelsPlugin), logger)

    clock = SystemClock()
    composer = TemplateComposer.from_settings(settings.messages)
    policy = IdlePolicy.from_settings(settings.idle)

    interaction_service = InteractionService(
        store=store,
        notifier=notifier,
        events=events,
        composer=composer,
        clock=clock,
        logger=logger,
        delivery_timeout=delivery_timeout,
    )
    engine = LifecycleEngine(
        store=store,
        service=interaction_service,
        policy=policy,
        composer=composer,
        logger=logger,
        candidate_timeout=float(settings.idle.candidate_timeout_seconds),
        notify_on_close=bool(settings.idle.notify_on_close),
    )

    idle_sweep = create_idle_sweep_job(
        engine,
        clock,
        logger,
        alert_after_failed_ticks=int(settings.idle.alert_after_failed_ticks),
    )
    cron_runner = CronRunner(
        func_pool=[idle_sweep],
        period=timedelta(seconds=float(settings.idle.cron_period_seconds)),
        db_pool=db_pool,
        logger=logger,
        shutdown_timeout=float(settings.idle.candidate_timeout_seconds),
    )

    app.state.db_pool = db_pool
    app.state.store = store
    app.state.interaction_service = interaction_service
    app.state.engine = engine

    try:
        async with cron_runner:
            await cron_runner.ensure(idle_sweep, SweepState(), settings.idle.sweep_schedule)
            yield
    finally:
        await gateway_client.aclose()
        await db_pool.close()
