"""
Job pipeline: dispatch, failover dispatch, delivery status and webhook jobs.

Each job is an arq coroutine `(ctx, ...)`. The worker's on_startup puts the
shared components into ctx (store, orchestrator, selector, throttle, queue,
webhooks), so the jobs hold no module-level state.

Retry policy per job lives in a JobSpec. A failed attempt raises
arq's Retry with the backoff for that try; the last try runs the JobSpec's
on_final_failure hook instead, which is how the terminal `failed` webhook is
emitted exactly once.

The dispatch jobs also enforce their own time budget and catch unexpected
errors, so a timeout or a crash goes through the same retry and final-failure
path instead of leaving the message in `sending`.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from arq import Retry

from notifyhub.exceptions import (
    AllProvidersFailed,
    InvalidChannel,
    JobTimedOut,
    NoProviderAvailable,
    ProviderSendError,
)
from notifyhub.logging_config import get_logger
from notifyhub.metrics import track_failover, track_job_retry, track_message_failed, track_throttle_release
from notifyhub.models.message import DISPATCHABLE_STATUSES, Message, MessageStatus
from notifyhub.queue import (
    JOB_DELIVER_WEBHOOK,
    JOB_DISPATCH,
    JOB_DISPATCH_FAILOVER,
    JOB_STATUS_UPDATE,
    queue_for_priority,
)
from notifyhub.sentry_config import capture_exception
from notifyhub.services.dispatcher import REQUESTED_PROVIDER_KEY, message_country, validate_channel
from notifyhub.services.message_store import utcnow
from notifyhub.services.webhook_service import delivery_duration_seconds

logger = get_logger(component="jobs")

FailureHook = Callable[[dict, Message, Exception, int], Awaitable[None]]

# Providers tried within one failover attempt
FAILOVER_MAX_PROVIDERS = 3

# Extra time arq allows past a job's own budget, for recording the failure
JOB_TIMEOUT_GRACE_SECONDS = 15


@dataclass(frozen=True)
class JobSpec:
    """Timeout, retry budget and backoff for one job type."""
    name: str
    timeout_seconds: int
    max_tries: int
    backoff_schedule: tuple[int, ...]
    on_each_failure: Optional[FailureHook] = None
    on_final_failure: Optional[FailureHook] = None

    def backoff(self, job_try: int) -> int:
        """Delay before the try after `job_try` (1-based)."""
        index = min(max(job_try, 1), len(self.backoff_schedule)) - 1
        return self.backoff_schedule[index]

    def is_final(self, job_try: int) -> bool:
        return job_try >= self.max_tries


# ============================================
# Failure hooks
# ============================================

def _error_text(error: Exception) -> str:
    text = getattr(error, "error", None) or str(error)
    return text or type(error).__name__


async def record_attempt_failure(ctx: dict, message: Message, error: Exception, job_try: int) -> None:
    """Keep the latest error on the row; status stays where it is until the final try."""
    fields = {"error_message": _error_text(error)[:2000]}
    error_kind = getattr(error, "error_kind", None)
    if error_kind:
        fields["error_kind"] = error_kind
    await ctx["store"].update(message.id, **fields)


async def fail_message(ctx: dict, message: Message, error: Exception, job_try: int) -> None:
    """Terminal failure: mark failed and emit the `failed` webhook."""
    await ctx["orchestrator"].fail(message, _error_text(error), attempts=job_try)


DISPATCH_JOB = JobSpec(
    name=JOB_DISPATCH,
    timeout_seconds=120,
    max_tries=3,
    backoff_schedule=(30, 60, 120),
    on_each_failure=record_attempt_failure,
    on_final_failure=fail_message,
)

FAILOVER_JOB = JobSpec(
    name=JOB_DISPATCH_FAILOVER,
    timeout_seconds=180,
    max_tries=5,
    backoff_schedule=(30, 60, 120, 300, 600),
    on_each_failure=record_attempt_failure,
    on_final_failure=fail_message,
)

STATUS_UPDATE_JOB = JobSpec(
    name=JOB_STATUS_UPDATE,
    timeout_seconds=30,
    max_tries=3,
    backoff_schedule=(5, 15, 30),
)

WEBHOOK_JOB = JobSpec(
    name=JOB_DELIVER_WEBHOOK,
    timeout_seconds=60,
    max_tries=5,
    backoff_schedule=(30, 60, 180, 600, 1800),
)


async def handle_failure(spec: JobSpec, ctx: dict, message: Message, error: Exception, final: bool = False) -> dict:
    """
    Run the JobSpec hooks for a failed attempt.

    Raises Retry with the scheduled backoff unless this was the final try
    (or the error is not retryable), in which case on_final_failure runs
    and a result dict is returned.
    """
    job_try = ctx.get("job_try", 1)

    if spec.on_each_failure:
        await spec.on_each_failure(ctx, message, error, job_try)

    if final or spec.is_final(job_try):
        if spec.on_final_failure:
            await spec.on_final_failure(ctx, message, error, job_try)
        return {"status": MessageStatus.FAILED.value, "error": _error_text(error), "attempts": job_try}

    defer = spec.backoff(job_try)
    track_job_retry(spec.name)
    logger.info(
        "job_retry_scheduled",
        job=spec.name,
        message_id=message.id,
        attempt=job_try,
        max_tries=spec.max_tries,
        defer_seconds=defer,
    )
    raise Retry(defer=defer)


async def run_guarded(spec: JobSpec, ctx: dict, message_id: str, attempt: Awaitable[dict]) -> dict:
    """
    Run one dispatch attempt within the job's time budget.

    A timeout or an unexpected error is handed to handle_failure like any
    other failed try. arq's own timeout is JOB_TIMEOUT_GRACE_SECONDS longer,
    which leaves room to record the failure.
    """
    job_try = ctx.get("job_try", 1)
    try:
        return await asyncio.wait_for(attempt, timeout=spec.timeout_seconds)
    except Retry:
        raise
    except asyncio.TimeoutError:
        error = JobTimedOut(spec.name, spec.timeout_seconds)
        logger.error("job_timed_out", job=spec.name, message_id=message_id, attempt=job_try)
    except Exception as e:
        capture_exception(e, message_id=message_id, job=spec.name)
        logger.error("job_unexpected_error", job=spec.name, message_id=message_id, error=str(e), exc_info=True)
        error = e

    try:
        message = await ctx["store"].find(message_id)
    except Exception as e:
        if spec.is_final(job_try):
            raise
        logger.error("job_failure_not_recorded", job=spec.name, message_id=message_id, error=str(e))
        track_job_retry(spec.name)
        raise Retry(defer=spec.backoff(job_try)) from e

    if message is None:
        return {"status": "skipped"}
    return await handle_failure(spec, ctx, message, error)


# ============================================
# Shared attempt steps
# ============================================

async def load_dispatchable(ctx: dict, message_id: str, job: str) -> Optional[Message]:
    """
    Fetch the message and check it may still be sent.

    A message that was cancelled, delivered or already sent is left alone:
    this is where an in-flight job notices a cancellation.
    """
    message = await ctx["store"].find(message_id)
    if message is None:
        logger.warning("dispatch_message_missing", job=job, message_id=message_id)
        return None

    status = MessageStatus(message.status)
    if status not in DISPATCHABLE_STATUSES:
        logger.info("dispatch_skipped", job=job, message_id=message_id, status=status.value)
        return None
    return message


async def begin_attempt(ctx: dict, message: Message) -> bool:
    """
    Move the message to `sending` and count the retry.

    Returns False if the status changed underneath us (e.g. cancelled).
    """
    store = ctx["store"]
    if MessageStatus(message.status) != MessageStatus.SENDING:
        if not await store.transition(message.id, MessageStatus.SENDING):
            return False

    if ctx.get("job_try", 1) > 1:
        message.retry_count = await store.bump_retry_count(message.id)
    return True


async def release(ctx: dict, spec: JobSpec, message: Message, provider: str, delay: int, *args) -> dict:
    """Put a throttled job back on its queue without consuming a try."""
    channel = getattr(message.channel, "value", message.channel)
    job_try = ctx.get("job_try", 1)
    track_throttle_release(provider, channel)
    logger.info(
        "job_released",
        job=spec.name,
        message_id=message.id,
        provider=provider,
        channel=channel,
        delay_seconds=delay,
        attempt=job_try,
    )
    await ctx["queue"].enqueue(
        spec.name,
        message.id,
        *args,
        queue=queue_for_priority(message.priority),
        defer_by=delay,
        job_try=job_try,
    )
    return {"status": "released", "provider": provider, "delay_seconds": delay}


async def complete(ctx: dict, message: Message, result) -> None:
    """Record the provider hand-off and announce it."""
    applied = await ctx["orchestrator"].mark_sent(message, result)
    if applied and message.webhook_url:
        await ctx["queue"].webhook(message.id, "sent", {"provider": result.provider})


# ============================================
# Jobs
# ============================================

async def dispatch_message(ctx: dict, message_id: str, provider: Optional[str] = None) -> dict:
    """
    Single-provider dispatch.

    One provider per try; a failure waits for the next try after the
    backoff. The final failed try marks the message failed.
    """
    return await run_guarded(DISPATCH_JOB, ctx, message_id, _dispatch_once(ctx, message_id, provider))


async def _dispatch_once(ctx: dict, message_id: str, provider: Optional[str]) -> dict:
    spec = DISPATCH_JOB
    job_try = ctx.get("job_try", 1)
    log = logger.bind(job=spec.name, message_id=message_id, attempt=job_try)

    message = await load_dispatchable(ctx, message_id, spec.name)
    if message is None:
        return {"status": "skipped"}

    orchestrator = ctx["orchestrator"]
    try:
        channel = validate_channel(getattr(message.channel, "value", message.channel)).value
        pinned = provider or (message.metadata_json or {}).get(REQUESTED_PROVIDER_KEY)
        chosen = await orchestrator.choose_provider(channel, pinned, country=message_country(message))
    except InvalidChannel as e:
        return await handle_failure(spec, ctx, message, e, final=True)
    except NoProviderAvailable as e:
        return await handle_failure(spec, ctx, message, e)

    decision = await ctx["throttle"].check(chosen, channel)
    if decision.throttled:
        return await release(ctx, spec, message, chosen, decision.delay_seconds, provider)

    if not await begin_attempt(ctx, message):
        log.info("dispatch_skipped", reason="status_changed")
        return {"status": "skipped"}

    log.info("dispatch_attempt", provider=chosen, channel=channel)
    try:
        result = await orchestrator.attempt(message, chosen)
    except ProviderSendError as e:
        return await handle_failure(spec, ctx, message, e)

    await complete(ctx, message, result)
    log.info("message_sent", provider=chosen, external_id=result.provider_message_id)
    return {"status": MessageStatus.SENT.value, "provider": chosen, "external_id": result.provider_message_id}


async def dispatch_message_with_failover(ctx: dict, message_id: str) -> dict:
    """
    Multi-provider dispatch.

    Within one try up to FAILOVER_MAX_PROVIDERS available providers for the
    channel are attempted in rank order until one accepts. Only when all of
    them failed does the try count as failed. A candidate whose adapter
    timeout would overrun the job's budget is not started. Throttled
    providers are skipped; if every candidate was throttled the job is
    released instead.
    """
    return await run_guarded(FAILOVER_JOB, ctx, message_id, _dispatch_with_failover_once(ctx, message_id))


def _adapter_timeout(ctx: dict, provider: str) -> float:
    config = ctx["settings"].provider(provider)
    return config.timeout_seconds if config else 0.0


async def _dispatch_with_failover_once(ctx: dict, message_id: str) -> dict:
    spec = FAILOVER_JOB
    job_try = ctx.get("job_try", 1)
    log = logger.bind(job=spec.name, message_id=message_id, attempt=job_try)
    deadline = time.monotonic() + spec.timeout_seconds

    message = await load_dispatchable(ctx, message_id, spec.name)
    if message is None:
        return {"status": "skipped"}

    selector = ctx["selector"]
    orchestrator = ctx["orchestrator"]
    throttle = ctx["throttle"]

    try:
        channel = validate_channel(getattr(message.channel, "value", message.channel)).value
    except InvalidChannel as e:
        return await handle_failure(spec, ctx, message, e, final=True)

    country = message_country(message)
    pinned = (message.metadata_json or {}).get(REQUESTED_PROVIDER_KEY)
    if pinned and not selector.is_configured(pinned, channel):
        log.warning("pinned_provider_not_configured", provider=pinned, channel=channel)
        pinned = None

    attempted: list[str] = []
    attempts: list[dict] = []
    throttled: dict[str, int] = {}
    started = False

    while len(attempted) < FAILOVER_MAX_PROVIDERS:
        skip = attempted + list(throttled)
        candidates = await selector.candidates(channel, exclude=skip, country=country)
        if pinned and pinned not in skip and pinned not in candidates and await selector.is_available(pinned):
            candidates.append(pinned)
        if not candidates and not skip:
            # Nothing healthy: let the selector pick its fallback
            try:
                candidates = [await selector.select(channel, country=country)]
            except NoProviderAvailable as e:
                return await handle_failure(spec, ctx, message, e)
        if not candidates:
            break

        if pinned in candidates:
            candidates.remove(pinned)
            candidates.insert(0, pinned)
        candidate = candidates[0]

        if attempted and time.monotonic() + _adapter_timeout(ctx, candidate) > deadline:
            log.warning("failover_budget_exhausted", provider=candidate, attempted=attempted)
            break

        decision = await throttle.check(candidate, channel)
        if decision.throttled:
            throttled[candidate] = decision.delay_seconds
            continue

        if not started:
            if not await begin_attempt(ctx, message):
                log.info("dispatch_skipped", reason="status_changed")
                return {"status": "skipped"}
            started = True

        log.info("dispatch_attempt", provider=candidate, channel=channel, attempted=attempted)
        try:
            result = await orchestrator.attempt(message, candidate)
        except ProviderSendError as e:
            attempted.append(candidate)
            attempts.append({"provider": candidate, "error": e.error, "error_kind": e.error_kind})
            log.warning("failover_candidate_failed", provider=candidate, error=e.error)
            continue

        failover_used = bool(attempted)
        providers_tried = attempted + [candidate]
        await ctx["store"].merge_metadata(message.id, {
            "providers_tried": providers_tried,
            "failover_used": failover_used,
            "provider_attempts": attempts,
        })
        if failover_used:
            track_failover(channel)
        await complete(ctx, message, result)
        log.info(
            "message_sent",
            provider=candidate,
            external_id=result.provider_message_id,
            providers_tried=providers_tried,
            failover_used=failover_used,
        )
        return {
            "status": MessageStatus.SENT.value,
            "provider": candidate,
            "external_id": result.provider_message_id,
            "providers_tried": providers_tried,
            "failover_used": failover_used,
        }

    if not attempted and throttled:
        provider, delay = min(throttled.items(), key=lambda item: item[1])
        return await release(ctx, spec, message, provider, delay)

    error = AllProvidersFailed(channel, attempts)
    await ctx["store"].merge_metadata(message.id, {"provider_attempts": attempts})
    log.warning("all_providers_failed", channel=channel, attempted=attempted)
    return await handle_failure(spec, ctx, message, error)


# Provider event -> internal status
PROVIDER_STATUS_MAP = {
    "delivered": MessageStatus.DELIVERED,
    "delivered_to_handset": MessageStatus.DELIVERED,
    "read": MessageStatus.DELIVERED,
    "sent": MessageStatus.SENT,
    "accepted": MessageStatus.SENT,
    "failed": MessageStatus.FAILED,
    "undelivered": MessageStatus.FAILED,
    "undeliverable": MessageStatus.FAILED,
    "bounced": MessageStatus.FAILED,
    "rejected": MessageStatus.FAILED,
    "expired": MessageStatus.FAILED,
    "cancelled": MessageStatus.CANCELLED,
}


def map_provider_status(status: str) -> Optional[MessageStatus]:
    return PROVIDER_STATUS_MAP.get((status or "").strip().lower())


async def update_delivery_status(
    ctx: dict,
    status: str,
    message_id: Optional[str] = None,
    external_id: Optional[str] = None,
    data: Optional[dict] = None,
) -> dict:
    """
    Apply a delivery event reported by a provider.

    Transitions the table does not allow are dropped with a warning and
    never retried.
    """
    store = ctx["store"]
    data = data or {}
    log = logger.bind(job=STATUS_UPDATE_JOB.name, message_id=message_id, external_id=external_id, provider_status=status)

    target = map_provider_status(status)
    if target is None:
        log.warning("unknown_provider_status")
        return {"status": "ignored", "reason": "unknown_status"}

    message = None
    if message_id:
        message = await store.find(message_id)
    if message is None and external_id:
        message = await store.find_by_external_id(external_id)
    if message is None:
        log.warning("status_update_message_missing")
        return {"status": "ignored", "reason": "message_not_found"}

    now = utcnow()
    fields: dict = {}
    if target == MessageStatus.DELIVERED:
        fields["delivered_at"] = now
    elif target == MessageStatus.SENT:
        if message.sent_at is None:
            fields["sent_at"] = now
    elif target == MessageStatus.FAILED:
        fields["failed_at"] = now
        fields["error_message"] = data.get("error") or data.get("error_message") or f"Provider reported: {status}"
    elif target == MessageStatus.CANCELLED:
        fields["cancelled_at"] = now

    if not await store.transition(message.id, target, **fields):
        return {"status": "rejected", "current": getattr(message.status, "value", message.status),
                "target": target.value}

    log.info("delivery_status_updated", message_id=message.id, new_status=target.value)

    if message.webhook_url and target in (MessageStatus.DELIVERED, MessageStatus.FAILED):
        updated = await store.find(message.id)
        if target == MessageStatus.DELIVERED:
            event_data = {"delivery_duration_seconds": delivery_duration_seconds(updated)}
        else:
            track_message_failed(getattr(message.channel, "value", message.channel))
            event_data = {"error": updated.error_message, "retry_count": updated.retry_count}
        await ctx["queue"].webhook(message.id, target.value, event_data)

    return {"status": target.value, "message_id": message.id}


async def deliver_webhook(ctx: dict, message_id: str, event: str, data: Optional[dict] = None) -> dict:
    """
    One webhook delivery attempt; retried on non-2xx or transport errors.

    Exhaustion stamps webhook_failed_at and leaves the message status alone.
    """
    spec = WEBHOOK_JOB
    job_try = ctx.get("job_try", 1)
    deliverer = ctx["webhooks"]

    if await deliverer.deliver(message_id, event, data, attempt=job_try):
        return {"status": "delivered", "attempt": job_try}

    if spec.is_final(job_try):
        await deliverer.mark_exhausted(message_id, event)
        return {"status": "failed", "attempt": job_try}

    defer = spec.backoff(job_try)
    track_job_retry(spec.name)
    logger.info("webhook_retry_scheduled", message_id=message_id, webhook_event=event, attempt=job_try, defer_seconds=defer)
    raise Retry(defer=defer)


JOB_SPECS = {spec.name: spec for spec in (DISPATCH_JOB, FAILOVER_JOB, STATUS_UPDATE_JOB, WEBHOOK_JOB)}
