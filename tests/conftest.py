import json
import pathlib
import sys
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from atendebot.agents.prompts import SystemPromptBuilder
from atendebot.agents.repository import InMemoryAgentRepository
from atendebot.agents.selector import AgentSelector
from atendebot.ai.client import AIInvocationAdapter
from atendebot.ai.functions import ActionExecutor
from atendebot.audit import InMemoryAuditSink
from atendebot.catalog import InMemoryCatalogRepository
from atendebot.channels.base import ChannelAdapter
from atendebot.companies import CompanyBilling, CompanyContext, InMemoryCompanyRepository
from atendebot.conversations.context import ContextAssembler
from atendebot.conversations.memory import CustomerMemoryService, InMemoryCustomerMemoryRepository
from atendebot.conversations.repository import InMemoryConversationRepository
from atendebot.conversations.state import ConversationStateMachine
from atendebot.models import Base
from atendebot.notifications import InMemoryNotifier
from atendebot.orders import InMemoryOrderRepository
from atendebot.queue import InboundJob
from atendebot.quota.cache import UsageCache
from atendebot.quota.repository import InMemoryUsageRepository
from atendebot.quota.tracker import UsageQuotaTracker
from atendebot.retry import RetryPolicy
from atendebot.webhooks import InMemoryWebhookRepository, WebhookDispatcher
from atendebot.worker import MessageWorker, WorkerServices

COMPANY_ID = "company-1"
SESSION = "loja-demo"
PHONE = "5511999991234"


# ---------------------------------------------------------------------------
# OpenAI fakes


def completion(content=None, tool_calls=None, prompt_tokens=100, completion_tokens=20):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message)],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def tool_call(name, arguments, call_id="call_1"):
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return SimpleNamespace(id=call_id, type="function", function=SimpleNamespace(name=name, arguments=raw))


class FakeCompletions:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if not self.responses:
            raise AssertionError("unexpected chat completion call")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeSpeech:
    def __init__(self, content: bytes | None):
        self.content = content
        self.calls: list[dict[str, Any]] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        return SimpleNamespace(content=self.content)


class FakeOpenAI:
    def __init__(self, responses=(), speech: bytes | None = b"audio-bytes"):
        self.chat = SimpleNamespace(completions=FakeCompletions(responses))
        self.audio = SimpleNamespace(speech=FakeSpeech(speech))

    @property
    def calls(self):
        return self.chat.completions.calls


# ---------------------------------------------------------------------------
# Channel fake


class FakeChannel(ChannelAdapter):
    channel_name = "fake"

    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.texts: list[tuple[str, str, str]] = []
        self.audios: list[tuple[str, str, str]] = []
        self.files: list[tuple[str, str, str, str]] = []

    def send_text(self, session, phone, text):
        self.texts.append((session, phone, text))
        return self.deliver

    def send_audio(self, session, phone, audio_base64):
        self.audios.append((session, phone, audio_base64))
        return self.deliver

    def send_file(self, session, phone, url, file_name):
        self.files.append((session, phone, url, file_name))
        return self.deliver

    def parse_incoming(self, payload):
        if "job" not in payload:
            return None
        return InboundJob(**payload["job"])


# ---------------------------------------------------------------------------
# HTTP fake for outbound webhooks


class FakeHttpSession:
    """Stand-in for ``requests.Session``; ``outcomes`` are status codes or exceptions, last one repeats."""

    def __init__(self, outcomes=(200,)):
        self.outcomes = list(outcomes) or [200]
        self.posts: list[dict[str, Any]] = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.posts.append({"url": url, "data": data, "headers": dict(headers or {}), "timeout": timeout})
        item = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(item, Exception):
            raise item
        return SimpleNamespace(status_code=item, ok=200 <= item < 400, text="" if item < 400 else "error")

    def payloads(self):
        return [json.loads(post["data"]) for post in self.posts]


# ---------------------------------------------------------------------------
# Pipeline


@dataclass
class Pipeline:
    company: CompanyContext
    companies: InMemoryCompanyRepository
    conversations: InMemoryConversationRepository
    agents: InMemoryAgentRepository
    catalog: InMemoryCatalogRepository
    orders: InMemoryOrderRepository
    usage: InMemoryUsageRepository
    quota: UsageQuotaTracker
    memory_repo: InMemoryCustomerMemoryRepository
    audit_sink: InMemoryAuditSink
    notifier: InMemoryNotifier
    channel: FakeChannel
    openai: FakeOpenAI
    state_machine: ConversationStateMachine
    webhooks: InMemoryWebhookRepository
    webhook_http: FakeHttpSession
    worker: MessageWorker
    jobs: list[InboundJob] = field(default_factory=list)

    def job(self, body: str = "oi", **kwargs) -> InboundJob:
        values = {"session_id": self.company.session_name, "from_address": f"{PHONE}@c.us", "body": body}
        values.update(kwargs)
        job = InboundJob(**values)
        self.jobs.append(job)
        return job


def active_trial(company_id: str = COMPANY_ID, **overrides) -> CompanyBilling:
    values = {
        "company_id": company_id,
        "trial_ends_at": datetime.now(timezone.utc) + timedelta(days=5),
    }
    values.update(overrides)
    return CompanyBilling(**values)


@pytest.fixture
def company() -> CompanyContext:
    return CompanyContext(
        id=COMPANY_ID,
        name="Loja Demo",
        session_name=SESSION,
        niche="moda feminina",
        description="Roupas femininas",
    )


@pytest.fixture
def make_pipeline(company):
    def _make(responses=(), *, billing: CompanyBilling | None = None, ai_enabled: bool = True, deliver: bool = True):
        context = company if ai_enabled else replace(company, ai_enabled=False)
        companies = InMemoryCompanyRepository()
        companies.add_company(context, billing or active_trial())
        conversations = InMemoryConversationRepository()
        agents = InMemoryAgentRepository()
        catalog = InMemoryCatalogRepository()
        orders = InMemoryOrderRepository()
        usage = InMemoryUsageRepository()
        memory_repo = InMemoryCustomerMemoryRepository()
        audit_sink = InMemoryAuditSink()
        notifier = InMemoryNotifier()
        channel = FakeChannel(deliver=deliver)
        client = FakeOpenAI(responses)
        webhooks = InMemoryWebhookRepository()
        webhook_http = FakeHttpSession()

        memory = CustomerMemoryService(memory_repo)
        executor = ActionExecutor(catalog, orders, memory, agents, audit_sink)
        ai = AIInvocationAdapter(
            client,
            executor,
            retry=RetryPolicy(max_attempts=2, backoff=(0,), sleep=lambda _: None),
        )
        quota = UsageQuotaTracker(companies, usage, UsageCache(ttl_seconds=60))
        state_machine = ConversationStateMachine(conversations, audit_sink, notifier)
        services = WorkerServices(
            companies=companies,
            conversations=conversations,
            agents=agents,
            selector=AgentSelector(agents),
            state_machine=state_machine,
            context=ContextAssembler(conversations),
            quota=quota,
            ai=ai,
            channel=channel,
            orders=orders,
            memory=memory,
            prompts=SystemPromptBuilder(),
            notifier=notifier,
            audit_sink=audit_sink,
            webhooks=WebhookDispatcher(webhooks, session=webhook_http, sleep=lambda _: None),
        )
        return Pipeline(
            company=context,
            companies=companies,
            conversations=conversations,
            agents=agents,
            catalog=catalog,
            orders=orders,
            usage=usage,
            quota=quota,
            memory_repo=memory_repo,
            audit_sink=audit_sink,
            notifier=notifier,
            channel=channel,
            openai=client,
            state_machine=state_machine,
            webhooks=webhooks,
            webhook_http=webhook_http,
            worker=MessageWorker(services),
        )

    return _make


# ---------------------------------------------------------------------------
# SQLite


@pytest.fixture
def session_factory(tmp_path) -> sessionmaker[Session]:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'atendebot.db'}", future=True)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    yield factory
    Base.metadata.drop_all(engine)
    engine.dispose()
