"""
ARQ Background Worker for NotifyHub.

Runs the dispatch, failover, status and webhook jobs. One worker process per
queue; start with e.g.

    arq notifyhub.worker.WorkerSettings
    arq notifyhub.worker.HighPriorityWorkerSettings
    arq notifyhub.worker.WebhookWorkerSettings
"""
import httpx
from arq.connections import RedisSettings
from arq.worker import func

from notifyhub.components import build_components, create_redis
from notifyhub.config import load_settings
from notifyhub.database import create_engine, create_session_factory
from notifyhub.jobs import (
    DISPATCH_JOB,
    FAILOVER_JOB,
    JOB_TIMEOUT_GRACE_SECONDS,
    STATUS_UPDATE_JOB,
    WEBHOOK_JOB,
    deliver_webhook,
    dispatch_message,
    dispatch_message_with_failover,
    update_delivery_status,
)
from notifyhub.logging_config import configure_logging, get_logger
from notifyhub.queue import QUEUE_DEFAULT, QUEUE_HIGH, QUEUE_LOW, QUEUE_WEBHOOKS
from notifyhub.sentry_config import configure_sentry

settings = load_settings()
logger = get_logger(component="worker")


async def on_startup(ctx: dict):
    """Create this process's connections and components."""
    configure_logging(settings.LOG_LEVEL)
    configure_sentry(settings)

    redis_client = create_redis(settings)
    engine = create_engine(settings)
    http_client = httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT_SECONDS)

    ctx["redis_client"] = redis_client
    ctx["engine"] = engine
    ctx["http_client"] = http_client
    ctx.update(build_components(
        settings,
        redis_client,
        create_session_factory(engine),
        http_client,
        pool=ctx["redis"],
    ))
    logger.info("worker_started", providers=[p.id for p in settings.PROVIDERS])


async def on_shutdown(ctx: dict):
    if "adapters" in ctx:
        await ctx["adapters"].close()
    if "http_client" in ctx:
        await ctx["http_client"].aclose()
    if "redis_client" in ctx:
        await ctx["redis_client"].aclose()
    if "engine" in ctx:
        await ctx["engine"].dispose()
    logger.info("worker_stopped")


# Register functions for ARQ
ARQ_FUNCTIONS = [
    func(dispatch_message, name=DISPATCH_JOB.name,
         timeout=DISPATCH_JOB.timeout_seconds + JOB_TIMEOUT_GRACE_SECONDS, max_tries=DISPATCH_JOB.max_tries),
    func(dispatch_message_with_failover, name=FAILOVER_JOB.name,
         timeout=FAILOVER_JOB.timeout_seconds + JOB_TIMEOUT_GRACE_SECONDS, max_tries=FAILOVER_JOB.max_tries),
    func(update_delivery_status, name=STATUS_UPDATE_JOB.name,
         timeout=STATUS_UPDATE_JOB.timeout_seconds, max_tries=STATUS_UPDATE_JOB.max_tries),
    func(deliver_webhook, name=WEBHOOK_JOB.name,
         timeout=WEBHOOK_JOB.timeout_seconds, max_tries=WEBHOOK_JOB.max_tries),
]


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq notifyhub.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    queue_name = QUEUE_DEFAULT
    functions = ARQ_FUNCTIONS
    on_startup = on_startup
    on_shutdown = on_shutdown
    job_timeout = FAILOVER_JOB.timeout_seconds + JOB_TIMEOUT_GRACE_SECONDS
    max_tries = FAILOVER_JOB.max_tries


class HighPriorityWorkerSettings(WorkerSettings):
    queue_name = QUEUE_HIGH


class LowPriorityWorkerSettings(WorkerSettings):
    queue_name = QUEUE_LOW


class WebhookWorkerSettings(WorkerSettings):
    queue_name = QUEUE_WEBHOOKS
