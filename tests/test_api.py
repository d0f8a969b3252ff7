"""HTTP endpoints served by :func:`atendebot.main.create_app`."""

from dataclasses import dataclass

import pytest
from fastapi.testclient import TestClient

from atendebot import audit as audit_actions
from atendebot.__version__ import __version__
from atendebot.audit import InMemoryAuditSink
from atendebot.companies import CompanyContext, InMemoryCompanyRepository
from atendebot.conversations.repository import InMemoryConversationRepository
from atendebot.conversations.schemas import ConversationStatus, Message, SenderType
from atendebot.conversations.state import ConversationStateMachine
from atendebot.main import create_app, get_client_ip
from atendebot.notifications import NEW_MESSAGE, InMemoryNotifier
from atendebot.queue import InMemoryJobQueue
from atendebot.quota.repository import InMemoryUsageRepository
from atendebot.quota.tracker import UsageQuotaTracker
from atendebot.routers.deps import ApiServices

from conftest import COMPANY_ID, PHONE, SESSION, FakeChannel, active_trial


@dataclass
class Api:
    client: TestClient
    services: ApiServices
    conversations: InMemoryConversationRepository
    queue: InMemoryJobQueue
    channel: FakeChannel
    audit_sink: InMemoryAuditSink
    notifier: InMemoryNotifier

    def open_conversation(self, status=ConversationStatus.AI_HANDLING):
        conversation, _ = self.conversations.get_or_create(COMPANY_ID, PHONE, status=status)
        return conversation


def _services(company, deliver=True):
    companies = InMemoryCompanyRepository()
    companies.add_company(company, active_trial())
    conversations = InMemoryConversationRepository()
    audit_sink = InMemoryAuditSink()
    notifier = InMemoryNotifier()
    return ApiServices(
        companies=companies,
        conversations=conversations,
        state_machine=ConversationStateMachine(conversations, audit_sink, notifier),
        queue=InMemoryJobQueue(),
        channel=FakeChannel(deliver=deliver),
        quota=UsageQuotaTracker(companies, InMemoryUsageRepository()),
        notifier=notifier,
        audit_sink=audit_sink,
    )


@pytest.fixture(scope="module")
def app(tmp_path_factory):
    # Metrics register on the global Prometheus registry, so the app is built once.
    with pytest.MonkeyPatch.context() as mp:
        mp.setenv("LOG_DIR", str(tmp_path_factory.mktemp("logs")))
        mp.setenv("API_RATE_LIMIT", "10000/minute")
        mp.delenv("DASHBOARD_ORIGINS", raising=False)
        yield create_app(services=_services(CompanyContext(id=COMPANY_ID, name="Loja Demo", session_name=SESSION)))


@pytest.fixture
def make_api(app, company):
    def _make(deliver=True):
        services = _services(company, deliver=deliver)
        app.state.services = services
        return Api(
            client=TestClient(app),
            services=services,
            conversations=services.conversations,
            queue=services.queue,
            channel=services.channel,
            audit_sink=services.audit_sink,
            notifier=services.notifier,
        )

    return _make


@pytest.fixture
def api(make_api):
    return make_api()


class TestMeta:
    def test_health(self, api):
        assert api.client.get("/api/health").json() == {"status": "ok"}

    def test_version(self, api):
        data = api.client.get("/api/version").json()
        assert data["version"] == __version__
        assert set(data) == {"version", "build_date", "commit_sha"}

    def test_request_id_is_echoed(self, api):
        response = api.client.get("/api/conversations/missing", headers={"X-Request-Id": "req-1"})
        assert response.headers["X-Request-Id"] == "req-1"

    def test_client_ip_prefers_forwarded_header(self):
        class _Request:
            headers = {"X-Forwarded-For": "203.0.113.9, 10.0.0.1"}
            client = None

        assert get_client_ip(_Request()) == "203.0.113.9"


class TestWebhook:
    def test_invalid_json(self, api):
        response = api.client.post(
            "/api/whatsapp/webhook", content=b"{not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400

    def test_non_object_payload(self, api):
        assert api.client.post("/api/whatsapp/webhook", json=[1, 2]).status_code == 400

    def test_ignored_payload(self, api):
        response = api.client.post("/api/whatsapp/webhook", json={"event": "onack"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "queued": False}
        assert api.queue.size() == 0

    def test_message_is_queued(self, api):
        job = {"job_id": "wamid-1", "session_id": SESSION, "from_address": f"{PHONE}@c.us", "body": "oi"}

        response = api.client.post("/api/whatsapp/webhook", json={"job": job})

        assert response.json() == {"success": True, "queued": True, "jobId": "wamid-1"}
        queued = api.queue.dequeue(timeout=0.01)
        assert queued.body == "oi"

    def test_queue_failure_is_503(self, api, monkeypatch):
        def _down(job):
            raise ConnectionError("redis down")

        monkeypatch.setattr(api.queue, "enqueue", _down)
        job = {"session_id": SESSION, "from_address": PHONE, "body": "oi"}

        assert api.client.post("/api/whatsapp/webhook", json={"job": job}).status_code == 503


class TestConversations:
    def test_list_unknown_company(self, api):
        assert api.client.get("/api/companies/nope/conversations").status_code == 404

    def test_list_with_status_filter(self, api):
        conversation = api.open_conversation()
        api.conversations.get_or_create(COMPANY_ID, "5511888887777", status=ConversationStatus.CLOSED)

        data = api.client.get(f"/api/companies/{COMPANY_ID}/conversations", params={"status": "AI_HANDLING"}).json()

        assert data["total"] == 1
        assert data["items"][0]["id"] == conversation.id

    def test_list_rejects_bad_limit(self, api):
        response = api.client.get(f"/api/companies/{COMPANY_ID}/conversations", params={"limit": 0})
        assert response.status_code == 400

    def test_get_conversation(self, api):
        conversation = api.open_conversation()

        assert api.client.get(f"/api/conversations/{conversation.id}").json()["status"] == "AI_HANDLING"
        assert api.client.get("/api/conversations/missing").status_code == 404

    def test_list_messages_marks_read(self, api):
        conversation = api.open_conversation()
        api.conversations.add_message(
            Message(conversation_id=conversation.id, sender=SenderType.CUSTOMER, content="oi")
        )
        api.conversations.touch_inbound(conversation.id, conversation.created_at)

        messages = api.client.get(f"/api/conversations/{conversation.id}/messages").json()

        assert [m["content"] for m in messages] == ["oi"]
        assert api.conversations.get_conversation(conversation.id).unread_count == 0


class TestTransitions:
    def test_take_over_records_operator(self, api):
        conversation = api.open_conversation()

        response = api.client.post(
            f"/api/conversations/{conversation.id}/take-over", headers={"X-User-Email": "op@loja.test"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["action"] == "take_over"
        assert body["conversation"]["status"] == "HUMAN_HANDLING"
        assert api.audit_sink.events[-1].user_email == "op@loja.test"

    def test_take_over_twice_conflicts(self, api):
        conversation = api.open_conversation()
        api.client.post(f"/api/conversations/{conversation.id}/take-over")

        assert api.client.post(f"/api/conversations/{conversation.id}/take-over").status_code == 409

    def test_return_close_reopen(self, api):
        conversation = api.open_conversation(ConversationStatus.HUMAN_HANDLING)
        base = f"/api/conversations/{conversation.id}"

        assert api.client.post(f"{base}/return-ai").json()["conversation"]["status"] == "AI_HANDLING"
        assert api.client.post(f"{base}/close").json()["conversation"]["status"] == "CLOSED"
        assert api.client.post(f"{base}/close").status_code == 409
        assert api.client.post(f"{base}/reopen").json()["conversation"]["status"] == "AI_HANDLING"
        assert api.audit_sink.actions() == [
            audit_actions.CONVERSATION_RETURNED_TO_AI,
            audit_actions.CONVERSATION_CLOSED,
            audit_actions.CONVERSATION_REOPENED,
        ]

    def test_unknown_conversation(self, api):
        assert api.client.post("/api/conversations/missing/close").status_code == 404


class TestOperatorMessages:
    def test_rejected_while_ai_handles(self, api):
        conversation = api.open_conversation()

        response = api.client.post(f"/api/conversations/{conversation.id}/messages", json={"content": "Oi"})

        assert response.status_code == 409
        assert api.channel.texts == []

    def test_sent_while_human_handles(self, api):
        conversation = api.open_conversation(ConversationStatus.HUMAN_HANDLING)

        response = api.client.post(
            f"/api/conversations/{conversation.id}/messages", json={"content": "Oi, sou a Carla!"}
        )

        assert response.status_code == 201
        assert response.json()["sender"] == "HUMAN"
        assert api.channel.texts == [(SESSION, PHONE, "Oi, sou a Carla!")]
        assert [m.sender for m in api.conversations.list_messages(conversation.id)] == [SenderType.HUMAN]
        assert api.notifier.names() == [NEW_MESSAGE]

    def test_undeliverable_is_502(self, make_api):
        api = make_api(deliver=False)
        conversation = api.open_conversation(ConversationStatus.OPEN)

        response = api.client.post(f"/api/conversations/{conversation.id}/messages", json={"content": "Oi"})

        assert response.status_code == 502
        assert api.conversations.list_messages(conversation.id) == []

    def test_empty_content_is_rejected(self, api):
        conversation = api.open_conversation(ConversationStatus.HUMAN_HANDLING)

        response = api.client.post(f"/api/conversations/{conversation.id}/messages", json={"content": ""})

        assert response.status_code == 422


class TestUsage:
    def test_company_usage(self, api):
        data = api.client.get(f"/api/companies/{COMPANY_ID}/token-usage").json()

        assert data["monthly_limit"] == 75_000
        assert data["is_limit_reached"] is False

    def test_update_limit(self, api):
        response = api.client.put(
            f"/api/companies/{COMPANY_ID}/token-limit",
            json={"monthly_token_limit": 1_000},
            headers={"X-User-Email": "admin@loja.test"},
        )

        assert response.status_code == 200
        assert response.json()["monthly_limit"] == 1_000
        event = api.audit_sink.events[-1]
        assert event.action == audit_actions.TOKEN_LIMIT_UPDATED
        assert event.details == {"monthlyTokenLimit": 1_000}

    def test_negative_limit_is_rejected(self, api):
        response = api.client.put(f"/api/companies/{COMPANY_ID}/token-limit", json={"monthly_token_limit": -5})
        assert response.status_code == 422

    def test_unknown_company(self, api):
        assert api.client.get("/api/companies/nope/token-usage").status_code == 404

    def test_admin_overview(self, api):
        data = api.client.get("/api/admin/token-usage").json()

        assert [row["company_id"] for row in data] == [COMPANY_ID]
