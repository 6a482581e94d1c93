"""
Code dispatch: queueing with dedupe, worker retries and DLQ, webhook gateway.
"""
import asyncio
import json

import httpx
import pytest

from conftest import FakeGateway
from flux.config import settings
from flux.dispatch import (
    DISPATCH_DLQ_KEY,
    DISPATCH_QUEUE_KEY,
    DispatchJob,
    QueueDispatcher,
    replay_redis_dlq,
)
from flux.messaging import WebhookGateway
from flux.worker import parse_job, process_one_redis


class FakeRedis:
    def __init__(self, fail_push: bool = False):
        self.lists: dict[str, list[str]] = {}
        self.keys: dict[str, str] = {}
        self.fail_push = fail_push

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.keys:
            return None
        self.keys[key] = value
        return True

    async def delete(self, key):
        self.keys.pop(key, None)

    async def lpush(self, key, value):
        if self.fail_push:
            raise ConnectionError("redis down")
        self.lists.setdefault(key, []).insert(0, value)

    async def rpop(self, key):
        items = self.lists.get(key) or []
        return items.pop() if items else None


def _job(**kw) -> DispatchJob:
    data = {"delivery_id": "d1", "order_id": "o1", "order_code": "#A015",
            "customer_name": "Maria", "phone": "64988776655", "code": "123456"}
    data.update(kw)
    return DispatchJob(**data)


async def _no_sleep(_seconds):
    return None


@pytest.fixture(autouse=True)
def redis_backend(monkeypatch):
    monkeypatch.setattr(settings, "sqs_queue_url", None)
    monkeypatch.setattr(settings, "worker_max_retries", 3)


async def test_queue_dispatcher_pushes_once_per_delivery():
    r = FakeRedis()
    dispatcher = QueueDispatcher(r)

    await dispatcher.dispatch(_job())
    await dispatcher.dispatch(_job())

    queued = r.lists[DISPATCH_QUEUE_KEY]
    assert len(queued) == 1
    assert json.loads(queued[0])["code"] == "123456"


async def test_queue_dispatcher_releases_claim_when_push_fails():
    r = FakeRedis(fail_push=True)
    dispatcher = QueueDispatcher(r)

    with pytest.raises(ConnectionError):
        await dispatcher.dispatch(_job())

    assert r.keys == {}


async def test_worker_delivers_job():
    r = FakeRedis()
    gateway = FakeGateway()

    await process_one_redis(r, gateway, _job().model_dump_json(), asyncio.Semaphore(1), sleep=_no_sleep)

    assert [j.delivery_id for j in gateway.codes] == ["d1"]
    assert r.lists == {}


async def test_worker_requeues_with_backoff():
    r = FakeRedis()
    waits = []

    async def record_sleep(seconds):
        waits.append(seconds)

    await process_one_redis(r, FakeGateway(fail=True), _job(attempts=1).model_dump_json(),
                            asyncio.Semaphore(1), sleep=record_sleep)

    assert waits == [2]
    retried = json.loads(r.lists[DISPATCH_QUEUE_KEY][0])
    assert retried["attempts"] == 2


async def test_worker_moves_job_to_dlq_after_max_retries():
    r = FakeRedis()

    await process_one_redis(r, FakeGateway(fail=True), _job(attempts=2).model_dump_json(),
                            asyncio.Semaphore(1), sleep=_no_sleep)

    assert DISPATCH_QUEUE_KEY not in r.lists
    dead = json.loads(r.lists[DISPATCH_DLQ_KEY][0])
    assert dead["attempts"] == 3
    assert dead["last_error"] == "gateway down"


async def test_worker_drops_invalid_job():
    r = FakeRedis()
    gateway = FakeGateway()

    await process_one_redis(r, gateway, "not json", asyncio.Semaphore(1), sleep=_no_sleep)

    assert gateway.codes == []
    assert parse_job('{"delivery_id": "d1"}') is None


async def test_replay_redis_dlq_resets_attempts():
    r = FakeRedis()
    await r.lpush(DISPATCH_DLQ_KEY, json.dumps({**_job().model_dump(), "attempts": 3, "last_error": "boom"}))
    await r.lpush(DISPATCH_DLQ_KEY, "garbage")

    replayed = await replay_redis_dlq(r, limit=10)

    assert replayed == 1
    job = parse_job(r.lists[DISPATCH_QUEUE_KEY][0])
    assert job.attempts == 0
    assert "last_error" not in json.loads(r.lists[DISPATCH_QUEUE_KEY][0])


async def test_webhook_gateway_posts_message():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    gateway = WebhookGateway("https://messaging.test/send", client=client)

    await gateway.send_delivery_code(_job())
    await gateway.aclose()

    assert seen[0]["to"] == "5564988776655"
    assert seen[0]["kind"] == "delivery_code"
    assert "123456" in seen[0]["text"]


async def test_webhook_gateway_raises_on_provider_error():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    gateway = WebhookGateway("https://messaging.test/send", client=client)

    with pytest.raises(httpx.HTTPStatusError):
        await gateway.send_delivery_code(_job())
    await gateway.aclose()
