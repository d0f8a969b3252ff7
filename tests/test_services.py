"""End-to-end wiring: SQL repositories, seeded company and the message worker."""

import json

import redis

from atendebot.conversations.memory import SqlCustomerMemoryRepository
from atendebot.conversations.models import JobStatus
from atendebot.conversations.repository import SqlConversationRepository
from atendebot.conversations.schemas import SenderType
from atendebot.notifications import (
    NEW_CONVERSATION,
    NEW_MESSAGE,
    InMemoryNotifier,
    NullNotifier,
    RedisNotifier,
    notify,
)
from atendebot.queue import InboundJob, InMemoryJobQueue
from atendebot.quota.repository import SqlUsageRepository, month_start
from atendebot.services import build_api_services, build_worker_services
from atendebot.settings import Settings
from atendebot.worker import MessageWorker
from seed import SeedConfig, provision_company

from conftest import PHONE, FakeChannel, FakeOpenAI, completion



def _seed(session_factory):
    config = SeedConfig(db_url="unused", company_name="Loja Demo", session_name="loja-demo", niche="moda")
    return provision_company(session_factory, config)


def test_worker_services_reply_end_to_end(session_factory):
    company_id = _seed(session_factory)
    notifier = InMemoryNotifier()
    channel = FakeChannel()
    client = FakeOpenAI(
        [
            completion("Olá! Sou a Ana, como posso ajudar?", prompt_tokens=120, completion_tokens=30),
            completion("Cliente cumprimentou a loja."),
        ]
    )
    services = build_worker_services(
        Settings(), session_factory=session_factory, notifier=notifier, channel=channel, openai_client=client
    )

    outcome = MessageWorker(services).process(
        InboundJob(job_id="wamid-1", session_id="loja-demo", from_address=f"{PHONE}@c.us", body="Bom dia")
    )

    assert outcome.status == JobStatus.REPLIED
    assert channel.texts == [("loja-demo", PHONE, "Olá! Sou a Ana, como posso ajudar?")]
    messages = SqlConversationRepository(session_factory).list_messages(outcome.conversation_id)
    assert [m.sender for m in messages] == [SenderType.CUSTOMER, SenderType.AI]
    assert messages[0].external_id == "wamid-1"
    assert SqlUsageRepository(session_factory).get_usage(company_id, month_start()) == 150
    assert SqlCustomerMemoryRepository(session_factory).get(company_id, PHONE).summary == "Cliente cumprimentou a loja."
    assert NEW_CONVERSATION in notifier.names()
    assert NEW_MESSAGE in notifier.names()


def test_api_services_use_given_collaborators(session_factory):
    queue = InMemoryJobQueue()
    channel = FakeChannel()

    services = build_api_services(
        Settings(), session_factory=session_factory, queue=queue, notifier=InMemoryNotifier(), channel=channel
    )

    assert services.queue is queue
    assert services.channel is channel
    assert services.companies.get_company("missing") is None


class _FakeRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    def publish(self, channel, message):
        if self.fail:
            raise redis.ConnectionError("down")
        self.published.append((channel, message))
        return 1


def test_redis_notifier_publishes_envelope():
    client = _FakeRedis()

    RedisNotifier(client).emit_to_company("company-1", NEW_MESSAGE, {"conversationId": "c1"})

    (channel, message), = client.published
    assert channel == "company:company-1"
    assert json.loads(message) == {"event": NEW_MESSAGE, "data": {"conversationId": "c1"}}


def test_notifier_failures_never_reach_callers(caplog):
    RedisNotifier(_FakeRedis(fail=True)).emit_to_company("company-1", NEW_MESSAGE, {})

    class _Exploding:
        def emit_to_company(self, company_id, event, payload):
            raise RuntimeError("socket closed")

    notify(_Exploding(), "company-1", NEW_MESSAGE, {})
    notify(None, "company-1", NEW_MESSAGE, {})
    notify(NullNotifier(), "company-1", NEW_MESSAGE, {})

    assert "Failed to publish" in caplog.text
    assert "Notifier failed" in caplog.text
