"""
Job queue handle.

Thin wrapper over an arq pool that knows the job names and the
priority-partitioned queues. One instance per process, created at startup.
"""
import asyncio
from typing import Any, Optional

from arq import ArqRedis
from redis.exceptions import RedisError

from notifyhub.logging_config import get_logger
from notifyhub.models.message import MessagePriority

logger = get_logger(component="queue")

QUEUE_HIGH = "notifyhub:high"
QUEUE_DEFAULT = "notifyhub:default"
QUEUE_LOW = "notifyhub:low"
QUEUE_WEBHOOKS = "notifyhub:webhooks"

JOB_DISPATCH = "dispatch_message"
JOB_DISPATCH_FAILOVER = "dispatch_message_with_failover"
JOB_STATUS_UPDATE = "update_delivery_status"
JOB_DELIVER_WEBHOOK = "deliver_webhook"


def queue_for_priority(priority: MessagePriority | str | None) -> str:
    """Map a message priority to its arq queue."""
    if priority is None:
        return QUEUE_DEFAULT
    priority = MessagePriority(priority)
    if priority in (MessagePriority.HIGH, MessagePriority.URGENT):
        return QUEUE_HIGH
    if priority == MessagePriority.LOW:
        return QUEUE_LOW
    return QUEUE_DEFAULT


class JobQueue:
    """Enqueue dispatch, status and webhook jobs."""

    def __init__(self, pool: ArqRedis):
        self.pool = pool

    async def enqueue(
        self,
        function: str,
        *args: Any,
        queue: str = QUEUE_DEFAULT,
        defer_by: Optional[float] = None,
        job_try: Optional[int] = None,
    ) -> bool:
        """
        Enqueue a job by function name.

        Returns False (after logging) if Redis refused the job.
        """
        try:
            await self.pool.enqueue_job(
                function,
                *args,
                _queue_name=queue,
                _defer_by=defer_by,
                _job_try=job_try,
            )
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.error("enqueue_failed", function=function, queue=queue, error=str(e))
            return False

        logger.info("job_enqueued", function=function, queue=queue, defer_by=defer_by)
        return True

    async def dispatch(self, message_id: str, priority: MessagePriority | str | None = None,
                       failover: bool = True) -> bool:
        function = JOB_DISPATCH_FAILOVER if failover else JOB_DISPATCH
        return await self.enqueue(function, message_id, queue=queue_for_priority(priority))

    async def webhook(self, message_id: str, event: str, data: Optional[dict] = None) -> bool:
        return await self.enqueue(JOB_DELIVER_WEBHOOK, message_id, event, data or {}, queue=QUEUE_WEBHOOKS)

    async def status_update(self, status: str, message_id: Optional[str] = None,
                            external_id: Optional[str] = None, data: Optional[dict] = None) -> bool:
        return await self.enqueue(JOB_STATUS_UPDATE, status, message_id, external_id, data or {}, queue=QUEUE_HIGH)
