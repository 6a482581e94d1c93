"""
Out-of-band delivery of one-time codes to end customers.

QueueDispatcher pushes a job to Redis (LPUSH) or AWS SQS when SQS_QUEUE_URL is
set; the worker drains it through the messaging gateway. DirectDispatcher
calls the gateway inline (memory backend / local runs).
"""
import json
import logging
from typing import Protocol

import redis.asyncio as redis
from pydantic import BaseModel

from flux.config import settings
from flux.messaging import MessagingGateway
from flux.redis_client import claim_once, release
from flux.sqs_client import send_message

logger = logging.getLogger(__name__)

DISPATCH_QUEUE_KEY = "queue:code_dispatch"
DISPATCH_DLQ_KEY = "queue:code_dispatch:dlq"


class DispatchJob(BaseModel):
    delivery_id: str
    order_id: str
    order_code: str
    customer_name: str
    phone: str
    code: str
    attempts: int = 0


class CodeDispatcher(Protocol):
    async def dispatch(self, job: DispatchJob) -> None: ...


def dedupe_key(delivery_id: str) -> str:
    return f"dispatch:{delivery_id}"


class QueueDispatcher:
    def __init__(self, r: redis.Redis):
        self.redis = r

    async def dispatch(self, job: DispatchJob) -> None:
        key = dedupe_key(job.delivery_id)
        if not await claim_once(self.redis, key, settings.dispatch_dedupe_ttl_seconds):
            logger.info("Code for delivery_id=%s already queued, skipping", job.delivery_id)
            return
        try:
            await push_to_queue(self.redis, job)
        except Exception:
            await release(self.redis, key)
            raise


async def push_to_queue(r: redis.Redis, job: DispatchJob) -> None:
    body = job.model_dump()
    if settings.sqs_queue_url:
        await send_message(body)
    else:
        await r.lpush(DISPATCH_QUEUE_KEY, json.dumps(body))


class DirectDispatcher:
    def __init__(self, gateway: MessagingGateway):
        self.gateway = gateway

    async def dispatch(self, job: DispatchJob) -> None:
        await self.gateway.send_delivery_code(job)


async def replay_redis_dlq(r: redis.Redis, limit: int = 100) -> int:
    """Move jobs from the Redis DLQ back to the dispatch queue with attempts reset."""
    replayed = 0
    while replayed < limit:
        raw = await r.rpop(DISPATCH_DLQ_KEY)
        if raw is None:
            break
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Dropping malformed DLQ entry")
            continue
        data["attempts"] = 0
        data.pop("last_error", None)
        data.pop("failed_at", None)
        await r.lpush(DISPATCH_QUEUE_KEY, json.dumps(data))
        replayed += 1
    return replayed
