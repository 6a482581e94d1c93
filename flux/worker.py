"""
Worker: pull code dispatch jobs from Redis or AWS SQS and hand them to the messaging gateway.
- Redis: exponential backoff + manual DLQ. SQS: don't delete on failure; SQS redrive to DLQ after max receives.
- Prometheus /metrics on port 9090 (worker metrics).
- Graceful shutdown on SIGTERM.
Run: python -m flux.worker
"""
import asyncio
import json
import logging
import signal
import sys
import threading
import time

import redis.asyncio as redis
from pydantic import ValidationError

from flux.config import settings
from flux.dispatch import DISPATCH_DLQ_KEY, DISPATCH_QUEUE_KEY, DispatchJob
from flux.messaging import MessagingGateway, build_gateway
from flux.metrics import messages_dlq_total, messages_failed_total, messages_processed_total
from flux.sqs_client import change_message_visibility, delete_message, receive_messages

logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


def parse_job(raw: str) -> DispatchJob | None:
    try:
        return DispatchJob.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning("Invalid dispatch job from queue: %s", e)
        return None


async def process_one_redis(
    r: redis.Redis,
    gateway: MessagingGateway,
    raw: str,
    sem: asyncio.Semaphore,
    sleep=asyncio.sleep,
) -> None:
    job = parse_job(raw)
    if job is None:
        return

    async with sem:
        try:
            await gateway.send_delivery_code(job)
            logger.info("Code delivered for delivery_id=%s", job.delivery_id)
            messages_processed_total.inc()
        except Exception as e:
            messages_failed_total.inc()
            logger.exception("Failed to deliver code for delivery_id=%s (attempt %d): %s",
                             job.delivery_id, job.attempts + 1, e)
            next_attempts = job.attempts + 1
            if next_attempts >= settings.worker_max_retries:
                dlq_message = job.model_dump()
                dlq_message.update(attempts=next_attempts, last_error=str(e), failed_at=time.time())
                await r.lpush(DISPATCH_DLQ_KEY, json.dumps(dlq_message))
                messages_dlq_total.inc()
                logger.warning("Moved delivery_id=%s to DLQ after %d attempts",
                               job.delivery_id, settings.worker_max_retries)
            else:
                backoff_sec = 2 ** job.attempts
                logger.info("Re-queuing delivery_id=%s in %ds (attempt %d/%d)",
                            job.delivery_id, backoff_sec, next_attempts, settings.worker_max_retries)
                await sleep(backoff_sec)
                retry = job.model_copy(update={"attempts": next_attempts})
                await r.lpush(DISPATCH_QUEUE_KEY, retry.model_dump_json())


async def process_one_sqs(
    gateway: MessagingGateway,
    body: str,
    receipt_handle: str,
    receive_count: int,
    sem: asyncio.Semaphore,
) -> None:
    job = parse_job(body)
    if job is None:
        await asyncio.to_thread(delete_message, receipt_handle)
        return

    async with sem:
        try:
            await gateway.send_delivery_code(job)
            logger.info("Code delivered for delivery_id=%s", job.delivery_id)
            messages_processed_total.inc()
            await asyncio.to_thread(delete_message, receipt_handle)
        except Exception as e:
            messages_failed_total.inc()
            logger.exception("Failed to deliver code for delivery_id=%s (receive #%d): %s",
                             job.delivery_id, receive_count, e)
            # Not deleted: reappears after the visibility timeout; SQS redrives to the DLQ after max receives
            backoff = min(2 ** receive_count, 900)
            await asyncio.to_thread(change_message_visibility, receipt_handle, backoff)


async def run_worker_redis(shutdown_event: asyncio.Event, gateway: MessagingGateway) -> None:
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Backend=Redis. Listening on %s (concurrency=%d, max_retries=%d) ...",
        DISPATCH_QUEUE_KEY,
        settings.worker_concurrency,
        settings.worker_max_retries,
    )
    r = redis.from_url(settings.redis_url, decode_responses=True)
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            result = await r.brpop(DISPATCH_QUEUE_KEY, timeout=BRPOP_TIMEOUT)
            if result is None:
                continue
            _key, raw = result
            t = asyncio.create_task(process_one_redis(r, gateway, raw, sem))
            tasks.add(t)
            t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)
        await r.aclose()
        logger.info("Worker stopped.")


async def run_worker_sqs(shutdown_event: asyncio.Event, gateway: MessagingGateway) -> None:
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Backend=SQS. Queue=%s (concurrency=%d) ...",
        settings.sqs_queue_url,
        settings.worker_concurrency,
    )
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            messages = await asyncio.to_thread(receive_messages, 10, 5)
            for msg in messages:
                body = msg.get("Body") or "{}"
                receipt = msg.get("ReceiptHandle") or ""
                attrs = msg.get("Attributes") or {}
                receive_count = int(attrs.get("ApproximateReceiveCount", 1))
                t = asyncio.create_task(process_one_sqs(gateway, body, receipt, receive_count, sem))
                tasks.add(t)
                t.add_done_callback(tasks.discard)
    finally:
        await _drain(tasks)
        logger.info("Worker stopped.")


async def _drain(tasks: set[asyncio.Task]) -> None:
    if not tasks:
        return
    logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
    _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


async def run_worker(shutdown_event: asyncio.Event) -> None:
    gateway = build_gateway()
    try:
        if settings.sqs_queue_url:
            await run_worker_sqs(shutdown_event, gateway)
        else:
            await run_worker_redis(shutdown_event, gateway)
    finally:
        aclose = getattr(gateway, "aclose", None)
        if aclose is not None:
            await aclose()


def main() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stdout,
    )
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
