"""Durable inbound job queue.

Jobs are JSON documents on a Redis list: producers ``LPUSH``, workers
``BRPOP`` so the oldest job is consumed first. Jobs that exhaust their
attempts are pushed to ``{queue}:dead`` for manual inspection.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Deque, List, Optional, Protocol
from uuid import uuid4

import redis
from pydantic import BaseModel, Field, ValidationError

from .conversations.schemas import MessageType

logger = logging.getLogger(__name__)


class InboundJob(BaseModel):
    """One inbound channel message waiting to be processed."""

    job_id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str
    from_address: str
    body: str = ""
    media_type: MessageType = MessageType.TEXT
    media_url: Optional[str] = None
    customer_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int = 0


class JobQueue(Protocol):
    def enqueue(self, job: InboundJob) -> None: ...

    def dequeue(self, timeout: float = 1.0) -> Optional[InboundJob]: ...

    def dead_letter(self, job: InboundJob, error: str) -> None: ...


class RedisJobQueue:
    def __init__(self, client: redis.Redis, name: str = "whatsapp-messages") -> None:
        self._client = client
        self.name = name
        self.dead_letter_name = f"{name}:dead"

    @classmethod
    def from_url(cls, url: str, name: str = "whatsapp-messages") -> "RedisJobQueue":
        return cls(redis.Redis.from_url(url, decode_responses=True), name)

    def enqueue(self, job: InboundJob) -> None:
        self._client.lpush(self.name, job.model_dump_json())
        logger.debug("Enqueued job %s on %s", job.job_id, self.name)

    def dequeue(self, timeout: float = 1.0) -> Optional[InboundJob]:
        item = self._client.brpop([self.name], timeout=max(1, int(timeout)))
        if item is None:
            return None
        _, payload = item
        try:
            return InboundJob.model_validate_json(payload)
        except ValidationError:
            logger.error("Discarding malformed job payload on %s", self.name, exc_info=True)
            self._client.lpush(self.dead_letter_name, payload)
            return None

    def dead_letter(self, job: InboundJob, error: str) -> None:
        record = job.model_dump(mode="json")
        record["error"] = error
        try:
            self._client.lpush(self.dead_letter_name, json.dumps(record))
        except redis.RedisError:
            logger.exception("Failed to dead-letter job %s", job.job_id)

    def size(self) -> int:
        return int(self._client.llen(self.name))


class InMemoryJobQueue:
    def __init__(self) -> None:
        self._items: Deque[InboundJob] = deque()
        self._ready = threading.Condition()
        self.dead: List[tuple[InboundJob, str]] = []

    def enqueue(self, job: InboundJob) -> None:
        with self._ready:
            self._items.append(job)
            self._ready.notify()

    def dequeue(self, timeout: float = 1.0) -> Optional[InboundJob]:
        with self._ready:
            if not self._items:
                self._ready.wait(timeout)
            return self._items.popleft() if self._items else None

    def dead_letter(self, job: InboundJob, error: str) -> None:
        with self._ready:
            self.dead.append((job, error))

    def size(self) -> int:
        with self._ready:
            return len(self._items)
