"""Inbound message worker.

``MessageWorker.process`` runs one inbound job through the whole pipeline:
conversation bookkeeping, persona routing, the payment-proof shortcut, the AI
gate, the monthly quota, context assembly, the model call and the outbound
reply. ``WorkerRunner`` feeds it from the queue with a bounded thread pool,
retries failed jobs with backoff and dead-letters the ones that keep failing.
"""

from __future__ import annotations

import base64
import logging
import threading
from collections import deque
from concurrent.futures import Executor, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Iterator, Optional, Sequence

from . import audit as audit_actions
from .agents.knowledge import build_knowledge_block
from .agents.prompts import SystemPromptBuilder
from .agents.repository import AgentRepository
from .agents.schemas import AgentPersona
from .agents.selector import AgentSelector
from .ai.client import AIInvocationAdapter
from .ai.functions import FunctionContext, available_functions
from .app_logging import mask_phone
from .audit import AuditEvent, AuditSink, audit
from .channels.base import ChannelAdapter, normalize_phone
from .companies import CompanyContext, CompanyRepository, UnknownSessionError
from .conversations.context import ContextAssembler, detect_farewell_type, format_context_for_prompt
from .conversations.memory import CustomerMemoryService
from .conversations.models import ChatTurn, JobOutcome, JobStatus
from .conversations.repository import ConversationRepository
from .conversations.schemas import Conversation, ConversationStatus, Message, MessageType, SenderType
from .conversations.state import ConversationStateMachine, InvalidTransitionError, can_send, initial_status
from .nlp import detect_language
from .notifications import CONVERSATION_UPDATED, NEW_CONVERSATION, NEW_MESSAGE, Notifier, notify
from .orders import OrderRepository, payment_proof_message
from .queue import InboundJob, JobQueue
from .quota.tracker import UsageQuotaTracker
from .webhooks import WebhookDispatcher, WebhookEvent, dispatch_webhook

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Deixa eu verificar aqui e já te retorno!"
REPLY_KEY_SUFFIX = ":reply"
DEFAULT_VOICE = "nova"



def reply_key(job_id: str) -> str:
    """External id of the AI reply recorded for inbound job ``job_id``."""
    return f"{job_id}{REPLY_KEY_SUFFIX}"


@dataclass
class WorkerServices:
    companies: CompanyRepository
    conversations: ConversationRepository
    agents: AgentRepository
    selector: AgentSelector
    state_machine: ConversationStateMachine
    context: ContextAssembler
    quota: UsageQuotaTracker
    ai: AIInvocationAdapter
    channel: ChannelAdapter
    orders: OrderRepository
    memory: CustomerMemoryService
    prompts: SystemPromptBuilder
    notifier: Notifier | None = None
    audit_sink: AuditSink | None = None
    webhooks: WebhookDispatcher | None = None


class MessageWorker:
    def __init__(self, services: WorkerServices, *, background: Executor | None = None) -> None:
        self.services = services
        self._background = background

    # -- helpers -----------------------------------------------------------

    def _resolve_company(self, session_id: str) -> CompanyContext:
        company = self.services.companies.get_by_session(session_id)
        if company is None:
            raise UnknownSessionError(f"No company owns session {session_id!r}")
        return company

    def _in_background(self, fn: Callable[[], object]) -> None:
        if self._background is None:
            fn()
            return
        try:
            self._background.submit(fn)
        except RuntimeError:
            # Executor already shut down; run inline rather than lose the update.
            fn()

    def _open_conversation(self, company: CompanyContext, phone: str, job: InboundJob) -> tuple[Conversation, bool]:
        services = self.services
        conversation, created = services.conversations.get_or_create(
            company.id,
            phone,
            status=initial_status(company),
            customer_name=job.customer_name,
        )
        if created:
            notify(
                services.notifier,
                company.id,
                NEW_CONVERSATION,
                {"conversationId": conversation.id, "customerPhone": phone, "status": conversation.status.value},
            )
            payload = {
                "conversationId": conversation.id,
                "customerPhone": phone,
                "customerName": job.customer_name,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            self._in_background(
                lambda: dispatch_webhook(services.webhooks, company.id, WebhookEvent.NEW_CONVERSATION, payload)
            )
        elif conversation.status == ConversationStatus.CLOSED:
            try:
                conversation = services.state_machine.reopen(conversation.id, company)
            except InvalidTransitionError:
                # Reopened concurrently by an operator or another job.
                conversation = services.conversations.get_conversation(conversation.id) or conversation
        return conversation, created

    def _record_reply(
        self, company: CompanyContext, conversation_id: str, content: str, external_id: str | None = None
    ) -> Message:
        message = self.services.conversations.add_message(
            Message(
                conversation_id=conversation_id,
                sender=SenderType.AI,
                content=content,
                is_read=True,
                external_id=external_id,
            )
        )
        notify(
            self.services.notifier,
            company.id,
            NEW_MESSAGE,
            {"conversationId": conversation_id, "messageId": message.id, "sender": SenderType.AI.value},
        )
        return message

    def _resolve_persona(self, company: CompanyContext, conversation: Conversation, text: str) -> Optional[AgentPersona]:
        services = self.services
        if conversation.agent_id is not None:
            persona = services.agents.get_agent(conversation.agent_id)
            if persona is None:
                logger.warning("Bound agent %s of conversation %s is gone", conversation.agent_id, conversation.id)
            return persona
        selection = services.selector.select_best_agent(company.id, text)
        if selection.agent is None:
            return None
        bound = services.conversations.bind_agent(conversation.id, selection.agent.id)
        if bound.agent_id != selection.agent.id and bound.agent_id is not None:
            # Another job bound an agent first; that binding wins.
            return services.agents.get_agent(bound.agent_id)
        return selection.agent

    def _handle_payment_proof(
        self, company: CompanyContext, conversation: Conversation, phone: str, job: InboundJob
    ) -> Optional[JobOutcome]:
        services = self.services
        if job.media_type != MessageType.IMAGE or not job.media_url:
            return None
        order = services.orders.find_pending(conversation.id)
        if order is None:
            return None
        updated = services.orders.attach_payment_proof(order.id, job.media_url)
        if updated is None:
            return None
        logger.info("Payment proof attached to order %s", updated.id)
        audit(
            services.audit_sink,
            AuditEvent(
                action=audit_actions.PAYMENT_PROOF_RECEIVED,
                entity="Order",
                entity_id=updated.id,
                company_id=company.id,
                details={"conversationId": conversation.id},
            ),
        )
        notify(
            services.notifier,
            company.id,
            CONVERSATION_UPDATED,
            {"conversationId": conversation.id, "orderId": updated.id, "orderStatus": updated.status.value},
        )
        if company.ai_enabled and can_send(conversation.status, SenderType.AI):
            confirmation = payment_proof_message(updated)
            if services.channel.send_text(company.session_name, phone, confirmation):
                self._record_reply(company, conversation.id, confirmation)
        return JobOutcome(JobStatus.PAYMENT_PROOF, conversation.id, detail=updated.id)

    def _dispatch(self, company: CompanyContext, persona: AgentPersona, phone: str, reply: str, file_to_send) -> bool:
        channel = self.services.channel
        session = company.session_name
        delivered = False
        if reply:
            if persona.voice_enabled:
                audio = self.services.ai.generate_speech(reply, persona.voice or DEFAULT_VOICE)
                if audio:
                    delivered = channel.send_audio(session, phone, base64.b64encode(audio).decode("ascii"))
                if not delivered:
                    logger.info("Voice reply unavailable for %s; sending text", mask_phone(phone))
            if not delivered:
                delivered = channel.send_text(session, phone, reply)
        if file_to_send is not None:
            if channel.send_file(session, phone, file_to_send.url, file_to_send.file_name):
                delivered = True
            else:
                logger.warning("Could not send %s to %s", file_to_send.file_name, mask_phone(phone))
        return delivered

    # -- pipeline ----------------------------------------------------------

    def process(self, job: InboundJob) -> JobOutcome:
        services = self.services
        try:
            company = self._resolve_company(job.session_id)
        except UnknownSessionError:
            logger.warning("Dropping job %s for unknown session %s", job.job_id, job.session_id)
            return JobOutcome(JobStatus.SKIPPED, detail="unknown_session")
        phone = normalize_phone(job.from_address)
        if not phone:
            return JobOutcome(JobStatus.SKIPPED, detail="no_sender")

        existing = services.conversations.get_message_by_external_id(job.job_id)
        if existing is not None and job.attempts == 0:
            logger.info("Job %s already ingested", job.job_id)
            return JobOutcome(JobStatus.DUPLICATE, existing.conversation_id)
        if existing is not None and services.conversations.get_message_by_external_id(reply_key(job.job_id)):
            # A previous attempt already answered this message; only its bookkeeping failed.
            logger.info("Job %s was already answered; not calling the model again", job.job_id)
            return JobOutcome(JobStatus.DUPLICATE, existing.conversation_id, detail="already_answered")

        conversation, created = self._open_conversation(company, phone, job)
        inbound = existing or services.conversations.add_message(
            Message(
                conversation_id=conversation.id,
                sender=SenderType.CUSTOMER,
                type=job.media_type,
                content=job.body,
                media_url=job.media_url,
                external_id=job.job_id,
            )
        )
        if existing is None:
            received_at = datetime.now(timezone.utc)
            services.conversations.touch_inbound(conversation.id, received_at)
            received = {
                "conversationId": conversation.id,
                "messageId": inbound.id,
                "customerPhone": phone,
                "content": job.body or "[Mídia]",
                "type": job.media_type.value,
                "timestamp": received_at.isoformat(),
            }
            self._in_background(
                lambda: dispatch_webhook(services.webhooks, company.id, WebhookEvent.MESSAGE_RECEIVED, received)
            )
        notify(
            services.notifier,
            company.id,
            NEW_MESSAGE,
            {
                "conversationId": conversation.id,
                "messageId": inbound.id,
                "sender": SenderType.CUSTOMER.value,
                "type": job.media_type.value,
            },
        )
        logger.info(
            "Message from %s on conversation %s (%s)", mask_phone(phone), conversation.id, conversation.status.value
        )

        persona = self._resolve_persona(company, conversation, job.body)

        proof = self._handle_payment_proof(company, conversation, phone, job)
        if proof is not None:
            return proof

        skip_reason = self._gate(company, conversation, persona, job)
        if skip_reason is not None:
            logger.debug("Conversation %s left for human attention: %s", conversation.id, skip_reason)
            return JobOutcome(JobStatus.SKIPPED, conversation.id, detail=skip_reason)
        status = services.quota.check_token_limit(company.id)
        if status.is_limit_reached:
            logger.warning("Token limit reached for company %s", company.id)
            message = services.quota.get_limit_reached_message()
            if services.channel.send_text(company.session_name, phone, message):
                self._record_reply(company, conversation.id, message)
            return JobOutcome(JobStatus.QUOTA_EXCEEDED, conversation.id, detail=status.upgrade_message)

        return self._reply(company, conversation, persona, phone, job, created)

    def _gate(
        self,
        company: CompanyContext,
        conversation: Conversation,
        persona: AgentPersona | None,
        job: InboundJob,
    ) -> str | None:
        if conversation.status != ConversationStatus.AI_HANDLING:
            return f"status_{conversation.status.value.lower()}"
        if not company.ai_enabled:
            return "ai_disabled"
        if persona is None:
            return "no_agent"
        if job.media_type != MessageType.TEXT or not job.body.strip():
            return "not_text"
        return None

    def _reply(
        self,
        company: CompanyContext,
        conversation: Conversation,
        persona: AgentPersona,
        phone: str,
        job: InboundJob,
        created: bool,
    ) -> JobOutcome:
        services = self.services
        context = services.context.prepare_conversation_context(conversation.id)
        farewell = detect_farewell_type(job.body)
        functions = available_functions(persona)
        prompt = services.prompts.build(
            company,
            persona,
            context_block=format_context_for_prompt(context),
            memory_block=services.memory.prompt_block(company.id, phone),
            knowledge_block=build_knowledge_block(job.body, services.agents.list_training_data(persona.id)),
            customer_name=conversation.customer_name or job.customer_name,
            farewell_type=farewell.value if farewell else None,
            language=detect_language(job.body),
            available_functions=functions,
        )
        result = services.ai.generate_ai_response_with_functions(
            prompt,
            context.recent_messages,
            functions,
            FunctionContext(
                company_id=company.id,
                conversation_id=conversation.id,
                agent_id=persona.id,
                customer_phone=phone,
                turn_id=job.job_id,
            ),
        )
        registration = services.quota.register_token_usage(
            company.id, result.input_tokens, result.output_tokens, turn_id=job.job_id
        )
        if registration.warning:
            logger.warning("Company %s: %s", company.id, registration.warning)

        current = services.conversations.get_conversation(conversation.id) or conversation
        if not can_send(current.status, SenderType.AI):
            logger.info("Conversation %s changed to %s during the AI turn", conversation.id, current.status.value)
            return JobOutcome(JobStatus.SKIPPED, conversation.id, detail="taken_over")

        if result.was_transferred:
            try:
                services.state_machine.transfer_to_human(conversation.id, company, reason="function_call")
            except InvalidTransitionError as exc:
                logger.warning("Transfer of conversation %s not applied: %s", conversation.id, exc)

        reply = result.response or (FALLBACK_REPLY if result.file_to_send is None else "")
        if reply:
            self._record_reply(company, conversation.id, reply, external_id=reply_key(job.job_id))
        delivered = self._dispatch(company, persona, phone, reply, result.file_to_send)

        turns = [ChatTurn(role="user", content=job.body)]
        if reply:
            turns.append(ChatTurn(role="assistant", content=reply))
        self._in_background(
            lambda: services.memory.update_after_reply(company.id, phone, turns, new_conversation=created)
        )

        extras = {
            "agent_id": persona.id,
            "functions_called": list(result.functions_called),
            "input_tokens": result.input_tokens,
            "output_tokens": result.output_tokens,
            "transferred": result.was_transferred,
        }
        if not delivered:
            logger.error("Reply for conversation %s could not be delivered", conversation.id)
            return JobOutcome(JobStatus.FAILED, conversation.id, detail="delivery_failed", extras=extras)
        return JobOutcome(JobStatus.REPLIED, conversation.id, extras=extras)


class ConversationLocks:
    """One lock per conversation key, released when no job holds it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                lock, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def _schedule_with_timer(delay: float, fn: Callable[[], None]) -> None:
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    timer.start()


class WorkerRunner:
    """Consume the queue with ``concurrency`` threads until :meth:`stop` is called.

    Jobs for the same customer are serialised so a conversation never has two
    AI turns in flight. A job that raises is re-enqueued after
    ``backoff[attempt]`` seconds until ``max_attempts`` is reached, then sent
    to the dead-letter list.
    """

    def __init__(
        self,
        queue: JobQueue,
        worker: MessageWorker,
        *,
        concurrency: int = 5,
        max_attempts: int = 3,
        backoff: Sequence[float] = (2.0, 4.0, 8.0),
        schedule: Callable[[float, Callable[[], None]], None] = _schedule_with_timer,
    ) -> None:
        self.queue = queue
        self.worker = worker
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.backoff = tuple(backoff) or (0.0,)
        self._schedule = schedule
        self._locks = ConversationLocks()
        self._stop = threading.Event()
        self._slots = threading.BoundedSemaphore(self.concurrency)
        self.outcomes: Deque[JobOutcome] = deque(maxlen=100)

    @staticmethod
    def lock_key(job: InboundJob) -> str:
        return f"{job.session_id}:{normalize_phone(job.from_address)}"

    def handle(self, job: InboundJob) -> Optional[JobOutcome]:
        """Process ``job`` under its conversation lock; failures are retried or dead-lettered."""

        with self._locks.hold(self.lock_key(job)):
            try:
                outcome = self.worker.process(job)
            except Exception as exc:
                self._retry_or_dead_letter(job, exc)
                return None
        logger.info("Job %s finished: %s", job.job_id, outcome.status.value)
        self.outcomes.append(outcome)
        return outcome

    def _retry_or_dead_letter(self, job: InboundJob, exc: Exception) -> None:
        attempt = job.attempts + 1
        if attempt >= self.max_attempts:
            logger.error("Job %s failed %d times; dead-lettering", job.job_id, attempt, exc_info=exc)
            self.queue.dead_letter(job, f"{type(exc).__name__}: {exc}")
            return
        delay = self.backoff[min(job.attempts, len(self.backoff) - 1)]
        logger.warning(
            "Job %s failed (attempt %d/%d): %s; retrying in %.1fs", job.job_id, attempt, self.max_attempts, exc, delay
        )
        retry = job.model_copy(update={"attempts": attempt})
        self._schedule(delay, lambda: self.queue.enqueue(retry))

    def process_one(self, timeout: float = 1.0) -> Optional[JobOutcome]:
        job = self.queue.dequeue(timeout=timeout)
        if job is None:
            return None
        return self.handle(job)

    def _run_slot(self, job: InboundJob) -> None:
        try:
            self.handle(job)
        finally:
            self._slots.release()

    def run(self) -> None:
        logger.info("Worker started with concurrency %d", self.concurrency)
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="atendebot-worker") as pool:
            while not self._stop.is_set():
                if not self._slots.acquire(timeout=1.0):
                    continue
                try:
                    job = self.queue.dequeue(timeout=1.0)
                except Exception:
                    self._slots.release()
                    logger.exception("Queue read failed")
                    self._stop.wait(1.0)
                    continue
                if job is None:
                    self._slots.release()
                    continue
                pool.submit(self._run_slot, job)
        logger.info("Worker stopped")

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()
