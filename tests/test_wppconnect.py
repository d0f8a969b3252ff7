"""Tests for the WPPConnect adapter using a fake ``requests`` session."""

import base64
from datetime import datetime, timedelta, timezone

import pytest
import requests

from atendebot.channels import WPPConnectAdapter, get_adapter, normalize_phone
from atendebot.channels.wppconnect import chat_id
from atendebot.conversations.schemas import MessageType
from atendebot.retry import RetryPolicy

from conftest import PHONE, SESSION

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
BASE_URL = "http://wpp.test:21465"


class _Response:
    def __init__(self, status_code=200, data=None, content=b""):
        self.status_code = status_code
        self._data = data
        self.content = content

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


OK = {"status": "success", "response": []}
TOKEN = {"status": "success", "token": "tok-1"}


class _Session:
    """Answers POSTs by the last path segment, consuming scripted responses in order."""

    def __init__(self, **routes):
        self.routes = {name.replace("_", "-"): list(items) for name, items in routes.items()}
        self.posts = []
        self.gets = []

    def _next(self, key):
        items = self.routes.get(key)
        if not items:
            raise AssertionError(f"unexpected call to {key}")
        item = items.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append({"url": url, "json": json, "headers": headers})
        return self._next(url.rsplit("/", 1)[-1])

    def get(self, url, timeout=None):
        self.gets.append(url)
        return self._next("download")


def _adapter(session, *, attempts=2):
    sleeps = []
    adapter = WPPConnectAdapter(
        BASE_URL,
        "s3cr3t",
        retry=RetryPolicy(max_attempts=attempts, backoff=(2.0,), sleep=sleeps.append),
        session=session,
        clock=lambda: NOW,
    )
    return adapter, sleeps


def test_registry_and_phone_helpers():
    assert get_adapter("WhatsApp") is WPPConnectAdapter
    with pytest.raises(KeyError):
        get_adapter("telegram")
    assert normalize_phone("55 (11) 99999-1234@c.us") == PHONE
    assert normalize_phone(None) == ""
    assert chat_id(PHONE) == f"{PHONE}@c.us"
    assert chat_id("123@lid") == "123@lid"


def test_send_text_generates_and_caches_token():
    session = _Session(generate_token=[_Response(data=TOKEN)], send_message=[_Response(data=OK), _Response(data=OK)])
    adapter, _ = _adapter(session)

    assert adapter.send_text(SESSION, PHONE, "Olá!") is True
    assert adapter.send_text(SESSION, PHONE, "Tudo bem?") is True

    token_call, first, second = session.posts
    assert token_call["url"] == f"{BASE_URL}/api/{SESSION}/s3cr3t/generate-token"
    assert first["url"] == f"{BASE_URL}/api/{SESSION}/send-message"
    assert first["headers"]["Authorization"] == "Bearer tok-1"
    assert first["json"] == {"phone": f"{PHONE}@c.us", "message": "Olá!", "isGroup": False}
    assert second["json"]["message"] == "Tudo bem?"


def test_unauthorized_refreshes_token_and_retries():
    session = _Session(
        generate_token=[_Response(data=TOKEN), _Response(data={"status": "success", "token": "tok-2"})],
        send_message=[_Response(status_code=401), _Response(data=OK)],
    )
    adapter, sleeps = _adapter(session)

    assert adapter.send_text(SESSION, PHONE, "Olá!") is True

    assert sleeps == [2.0]
    assert session.posts[-1]["headers"]["Authorization"] == "Bearer tok-2"


def test_send_text_falls_back_to_send_text_endpoint():
    session = _Session(
        generate_token=[_Response(data=TOKEN)],
        send_message=[_Response(status_code=400, data={"status": "error", "message": "bad"})],
        send_text=[_Response(data=OK)],
    )
    adapter, sleeps = _adapter(session)

    assert adapter.send_text(SESSION, PHONE, "Olá!") is True

    assert session.posts[-1]["url"].endswith("/send-text")
    assert sleeps == []


def test_connection_errors_are_retried_then_reported():
    session = _Session(
        generate_token=[_Response(data=TOKEN)],
        send_message=[requests.ConnectionError("refused"), requests.ConnectionError("refused")],
    )
    adapter, sleeps = _adapter(session)

    assert adapter.send_text(SESSION, PHONE, "Olá!") is False
    assert sleeps == [2.0]


def test_missing_token_is_a_delivery_failure():
    session = _Session(generate_token=[_Response(data={"status": "error"}), _Response(status_code=500)])
    adapter, _ = _adapter(session)

    assert adapter.send_audio(SESSION, PHONE, "QUJD") is False
    assert all(post["url"].endswith("generate-token") for post in session.posts)


def test_send_audio():
    session = _Session(generate_token=[_Response(data=TOKEN)], send_voice_base64=[_Response(data=OK)])
    adapter, _ = _adapter(session)

    assert adapter.send_audio(SESSION, PHONE, "QUJD") is True
    assert session.posts[-1]["json"] == {"phone": f"{PHONE}@c.us", "base64": "QUJD"}


def test_send_file_downloads_and_encodes():
    session = _Session(
        download=[_Response(content=b"%PDF-1.4")],
        generate_token=[_Response(data=TOKEN)],
        send_file_base64=[_Response(data=OK)],
    )
    adapter, _ = _adapter(session)

    assert adapter.send_file(SESSION, PHONE, "https://cdn.loja.test/catalogo.pdf", "catalogo.pdf") is True

    body = session.posts[-1]["json"]
    assert session.gets == ["https://cdn.loja.test/catalogo.pdf"]
    assert body["phone"] == [PHONE]
    assert body["filename"] == "catalogo.pdf"
    assert body["isLid"] is False
    expected = base64.b64encode(b"%PDF-1.4").decode("ascii")
    assert body["base64"] == f"data:application/pdf;base64,{expected}"


def test_send_file_download_failure():
    session = _Session(download=[_Response(status_code=404)])
    adapter, _ = _adapter(session)

    assert adapter.send_file(SESSION, PHONE, "https://cdn.loja.test/x.jpg", "x.jpg") is False
    assert session.posts == []


# ---------------------------------------------------------------------------
# Webhook parsing


def _payload(**data):
    message = {
        "id": "true_5511999991234@c.us_ABC123",
        "from": f"{PHONE}@c.us",
        "body": "Oi, tudo bem?",
        "type": "chat",
        "timestamp": int((NOW - timedelta(seconds=10)).timestamp()),
        "sender": {"id": f"{PHONE}@c.us", "pushname": "Maria"},
    }
    message.update(data)
    return {"event": "onmessage", "session": SESSION, "data": message}


def test_parse_text_message():
    adapter, _ = _adapter(_Session())

    job = adapter.parse_incoming(_payload())

    assert job.job_id == "true_5511999991234@c.us_ABC123"
    assert job.session_id == SESSION
    assert job.from_address == f"{PHONE}@c.us"
    assert job.body == "Oi, tudo bem?"
    assert job.media_type == MessageType.TEXT
    assert job.customer_name == "Maria"
    assert job.timestamp == NOW - timedelta(seconds=10)


def test_parse_serialized_id_and_media():
    adapter, _ = _adapter(_Session())

    job = adapter.parse_incoming(
        _payload(
            id={"_serialized": "wamid-77"},
            type="image",
            body="/9j/4AAQSkZJRgABAQ",
            caption="comprovante",
            mediaUrl="https://mmg.test/img",
        )
    )

    assert job.job_id == "wamid-77"
    assert job.media_type == MessageType.IMAGE
    assert job.body == "comprovante"
    assert job.media_url == "https://mmg.test/img"


@pytest.mark.parametrize(
    "override",
    [
        {"from": "120363@g.us"},
        {"from": "status@broadcast"},
        {"from": "1203@newsletter"},
        {"isGroupMsg": True},
        {"fromMe": True},
        {"type": "e2e_notification"},
        {"subtype": "revoked"},
        {"timestamp": int((NOW - timedelta(seconds=181)).timestamp())},
    ],
)
def test_parse_ignores_unwanted_messages(override):
    adapter, _ = _adapter(_Session())

    assert adapter.parse_incoming(_payload(**override)) is None


def test_parse_ignores_non_message_events():
    adapter, _ = _adapter(_Session())
    payload = _payload()
    payload["event"] = "onack"

    assert adapter.parse_incoming(payload) is None
    assert adapter.parse_incoming({"event": "onmessage", "data": {"from": PHONE}}) is None


def test_parse_without_timestamp_uses_clock():
    adapter, _ = _adapter(_Session())

    job = adapter.parse_incoming(_payload(timestamp=None))

    assert job.timestamp == NOW
