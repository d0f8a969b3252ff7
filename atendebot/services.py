"""Wire the SQL-backed repositories and external clients into the worker and the API."""

from __future__ import annotations

import requests
from openai import OpenAI
from sqlalchemy.orm import Session, sessionmaker

from .agents.prompts import SystemPromptBuilder
from .agents.repository import SqlAgentRepository
from .agents.selector import AgentSelector
from .ai.client import build_ai_adapter
from .ai.functions import ActionExecutor
from .audit import SqlAuditSink
from .catalog import SqlCatalogRepository
from .channels import get_adapter
from .channels.base import ChannelAdapter
from .companies import SqlCompanyRepository
from .conversations.context import ContextAssembler
from .conversations.memory import CustomerMemoryService, SqlCustomerMemoryRepository
from .conversations.repository import SqlConversationRepository
from .conversations.state import ConversationStateMachine
from .models.session import get_sessionmaker
from .notifications import Notifier, RedisNotifier
from .orders import SqlOrderRepository
from .queue import JobQueue, RedisJobQueue
from .quota.cache import UsageCache
from .quota.repository import SqlUsageRepository
from .quota.tracker import UsageQuotaTracker
from .retry import RetryPolicy
from .routers.deps import ApiServices
from .settings import Settings
from .webhooks import SqlWebhookRepository, WebhookDispatcher
from .worker import WorkerServices


def build_channel(settings: Settings, name: str = "whatsapp") -> ChannelAdapter:
    return get_adapter(name)(
        settings.wppconnect_url,
        settings.wppconnect_secret,
        timeout=settings.channel_timeout,
        retry=RetryPolicy(max_attempts=settings.send_max_attempts, backoff=settings.send_backoff_seconds),
    )


def build_worker_services(
    settings: Settings,
    *,
    session_factory: sessionmaker[Session] | None = None,
    notifier: Notifier | None = None,
    channel: ChannelAdapter | None = None,
    openai_client: OpenAI | None = None,
    webhook_session: requests.Session | None = None,
) -> WorkerServices:
    """Build every collaborator the worker needs from ``settings``.

    Explicit arguments replace the corresponding default (database, Redis
    notifier, WPPConnect channel, OpenAI client, webhook HTTP session).
    """

    factory = session_factory or get_sessionmaker(settings.database_url, pool_pre_ping=True)
    audit_sink = SqlAuditSink(factory)
    notifier = notifier if notifier is not None else RedisNotifier.from_url(settings.redis_url)
    companies = SqlCompanyRepository(factory)
    conversations = SqlConversationRepository(factory)
    agents = SqlAgentRepository(factory)
    orders = SqlOrderRepository(factory)

    # The summariser is resolved lazily because the adapter needs the executor first.
    memory = CustomerMemoryService(
        SqlCustomerMemoryRepository(factory), summarizer=lambda turns: ai.summarize_conversation(turns)
    )
    executor = ActionExecutor(SqlCatalogRepository(factory), orders, memory, agents, audit_sink)
    ai = build_ai_adapter(settings, executor, client=openai_client)

    return WorkerServices(
        companies=companies,
        conversations=conversations,
        agents=agents,
        selector=AgentSelector(agents),
        state_machine=ConversationStateMachine(conversations, audit_sink, notifier),
        context=ContextAssembler(
            conversations,
            ai.summarize_conversation,
            history_threshold=settings.history_threshold,
            recent_window=settings.recent_window,
        ),
        quota=UsageQuotaTracker(
            companies,
            SqlUsageRepository(factory),
            UsageCache(ttl_seconds=settings.usage_cache_ttl),
            trial_token_limit=settings.trial_token_limit,
        ),
        ai=ai,
        channel=channel or build_channel(settings),
        orders=orders,
        memory=memory,
        prompts=SystemPromptBuilder(),
        notifier=notifier,
        audit_sink=audit_sink,
        webhooks=WebhookDispatcher(SqlWebhookRepository(factory), session=webhook_session),
    )


def build_api_services(
    settings: Settings,
    *,
    session_factory: sessionmaker[Session] | None = None,
    queue: JobQueue | None = None,
    notifier: Notifier | None = None,
    channel: ChannelAdapter | None = None,
) -> ApiServices:
    factory = session_factory or get_sessionmaker(settings.database_url, pool_pre_ping=True)
    audit_sink = SqlAuditSink(factory)
    notifier = notifier if notifier is not None else RedisNotifier.from_url(settings.redis_url)
    companies = SqlCompanyRepository(factory)
    conversations = SqlConversationRepository(factory)
    return ApiServices(
        companies=companies,
        conversations=conversations,
        state_machine=ConversationStateMachine(conversations, audit_sink, notifier),
        queue=queue or RedisJobQueue.from_url(settings.redis_url, settings.queue_name),
        channel=channel or build_channel(settings),
        quota=UsageQuotaTracker(
            companies,
            SqlUsageRepository(factory),
            UsageCache(ttl_seconds=settings.usage_cache_ttl),
            trial_token_limit=settings.trial_token_limit,
        ),
        notifier=notifier,
        audit_sink=audit_sink,
    )
