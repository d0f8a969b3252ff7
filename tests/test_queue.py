"""Tests for :mod:`atendebot.queue`."""

import json
import threading

import redis

from atendebot.conversations.schemas import MessageType
from atendebot.queue import InboundJob, InMemoryJobQueue, RedisJobQueue

from conftest import PHONE, SESSION


class _FakeRedis:
    """Just enough of the list commands for :class:`RedisJobQueue`."""

    def __init__(self, fail_push=False):
        self.lists = {}
        self.fail_push = fail_push
        self.brpop_timeouts = []

    def lpush(self, name, value):
        if self.fail_push:
            raise redis.ConnectionError("down")
        self.lists.setdefault(name, []).insert(0, value)
        return len(self.lists[name])

    def brpop(self, names, timeout=0):
        self.brpop_timeouts.append(timeout)
        for name in names:
            if self.lists.get(name):
                return name, self.lists[name].pop()
        return None

    def llen(self, name):
        return len(self.lists.get(name, []))


def _job(**kwargs):
    values = {"session_id": SESSION, "from_address": f"{PHONE}@c.us", "body": "oi"}
    values.update(kwargs)
    return InboundJob(**values)


def test_redis_queue_is_fifo():
    client = _FakeRedis()
    queue = RedisJobQueue(client, "jobs")
    first = _job(body="primeira")
    second = _job(body="segunda", media_type=MessageType.AUDIO)

    queue.enqueue(first)
    queue.enqueue(second)
    assert queue.size() == 2

    assert queue.dequeue(timeout=0.2) == first
    received = queue.dequeue(timeout=5)
    assert received == second
    assert received.media_type == MessageType.AUDIO
    assert queue.dequeue() is None
    assert client.brpop_timeouts == [1, 5, 1]


def test_redis_queue_dead_letters_malformed_payload():
    client = _FakeRedis()
    queue = RedisJobQueue(client, "jobs")
    client.lpush("jobs", "{not json")

    assert queue.dequeue() is None
    assert client.lists["jobs:dead"] == ["{not json"]


def test_redis_dead_letter_records_error():
    client = _FakeRedis()
    queue = RedisJobQueue(client, "jobs")
    job = _job(attempts=3)

    queue.dead_letter(job, "RuntimeError: boom")

    (raw,) = client.lists["jobs:dead"]
    record = json.loads(raw)
    assert record["job_id"] == job.job_id
    assert record["attempts"] == 3
    assert record["error"] == "RuntimeError: boom"


def test_redis_dead_letter_failure_is_logged(caplog):
    queue = RedisJobQueue(_FakeRedis(fail_push=True), "jobs")

    queue.dead_letter(_job(), "boom")

    assert "Failed to dead-letter job" in caplog.text


def test_in_memory_queue_wakes_waiting_consumer():
    queue = InMemoryJobQueue()
    received = []

    consumer = threading.Thread(target=lambda: received.append(queue.dequeue(timeout=2)))
    consumer.start()
    job = _job()
    queue.enqueue(job)
    consumer.join(timeout=3)

    assert received == [job]
    assert queue.size() == 0


def test_in_memory_queue_times_out_empty():
    queue = InMemoryJobQueue()

    assert queue.dequeue(timeout=0.01) is None

    queue.dead_letter(_job(), "err")
    assert len(queue.dead) == 1
