"""WhatsApp channel adapter backed by a WPPConnect server."""

from __future__ import annotations

import base64
import logging
import mimetypes
import threading
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import requests

from ..conversations.schemas import MessageType
from ..queue import InboundJob
from ..retry import Attempt, RetryPolicy
from .base import ChannelAdapter, normalize_phone

logger = logging.getLogger(__name__)

MAX_MESSAGE_AGE_SECONDS = 180

_IGNORED_ADDRESS_MARKERS = ("@broadcast", "@newsletter", "@channel", "@g.us")
_SYSTEM_SUBTYPES = {"notification", "call_log", "e2e_notification", "gp2", "ciphertext", "revoked"}


def chat_id(phone: str) -> str:
    if "@" in phone:
        return phone
    return f"{normalize_phone(phone)}@c.us"


class WPPConnectAdapter(ChannelAdapter):
    channel_name = "whatsapp"

    def __init__(
        self,
        base_url: str,
        secret: str,
        *,
        timeout: float = 15.0,
        retry: RetryPolicy | None = None,
        session: requests.Session | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._secret = secret
        self._timeout = timeout
        self._retry = retry or RetryPolicy()
        self._http = session or requests.Session()
        self._clock = clock
        self._tokens: Dict[str, str] = {}
        self._lock = threading.Lock()

    # -- transport ---------------------------------------------------------

    def _post(self, path: str, body: Mapping[str, Any] | None = None, token: str | None = None) -> requests.Response:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return self._http.post(f"{self.base_url}{path}", json=body, headers=headers, timeout=self._timeout)

    def generate_token(self, session: str) -> Optional[str]:
        try:
            response = self._post(f"/api/{session}/{self._secret}/generate-token")
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Token generation failed for session %s: %s", session, exc)
            return None
        token = data.get("token") if isinstance(data, dict) and data.get("status") == "success" else None
        if token:
            with self._lock:
                self._tokens[session] = token
        return token

    def _token(self, session: str) -> Optional[str]:
        with self._lock:
            cached = self._tokens.get(session)
        return cached or self.generate_token(session)

    def _forget_token(self, session: str) -> None:
        with self._lock:
            self._tokens.pop(session, None)

    def _attempt(self, session: str, path: str, body: Mapping[str, Any]) -> Attempt[dict]:
        token = self._token(session)
        if not token:
            return Attempt.failure("no token for session", retryable=True)
        try:
            response = self._post(f"/api/{session}/{path}", body, token)
        except (requests.Timeout, requests.ConnectionError) as exc:
            return Attempt.failure(f"{type(exc).__name__}: {exc}", retryable=True)
        except requests.RequestException as exc:
            return Attempt.failure(str(exc), retryable=False)
        if response.status_code == 401:
            self._forget_token(session)
            return Attempt.failure("unauthorized", retryable=True)
        if response.status_code >= 500:
            return Attempt.failure(f"HTTP {response.status_code}", retryable=True)
        try:
            data = response.json()
        except ValueError:
            return Attempt.failure(f"HTTP {response.status_code}: invalid JSON", retryable=False)
        if isinstance(data, dict) and data.get("status") == "success":
            return Attempt.success(data)
        return Attempt.failure(f"HTTP {response.status_code}: {data!r}", retryable=False)

    def _send(self, session: str, path: str, body: Mapping[str, Any], label: str) -> bool:
        return self._retry.run(lambda: self._attempt(session, path, body), label=label).ok

    # -- outbound ----------------------------------------------------------

    def send_text(self, session: str, phone: str, text: str) -> bool:
        target = chat_id(phone)

        def attempt() -> Attempt[dict]:
            result = self._attempt(session, "send-message", {"phone": target, "message": text, "isGroup": False})
            if result.ok or result.retryable:
                return result
            return self._attempt(session, "send-text", {"phone": target, "message": text})

        return self._retry.run(attempt, label=f"send-message {session}").ok

    def send_audio(self, session: str, phone: str, audio_base64: str) -> bool:
        return self._send(
            session,
            "send-voice-base64",
            {"phone": chat_id(phone), "base64": audio_base64},
            f"send-voice {session}",
        )

    def send_file(self, session: str, phone: str, url: str, file_name: str) -> bool:
        try:
            download = self._http.get(url, timeout=self._timeout)
            download.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Could not download %s for sending: %s", file_name, exc)
            return False
        mime_type = mimetypes.guess_type(file_name)[0] or "application/octet-stream"
        encoded = base64.b64encode(download.content).decode("ascii")
        address = chat_id(phone)
        return self._send(
            session,
            "send-file-base64",
            {
                "phone": [address.replace("@lid", "").replace("@c.us", "")],
                "base64": f"data:{mime_type};base64,{encoded}",
                "filename": file_name,
                "caption": "",
                "isGroup": False,
                "isLid": "@lid" in address,
            },
            f"send-file {session}",
        )

    # -- inbound -----------------------------------------------------------

    def parse_incoming(self, payload: Mapping[str, Any]) -> Optional[InboundJob]:
        event = str(payload.get("event") or payload.get("type") or "")
        if "message" not in event.lower():
            return None
        session = payload.get("session")
        data = payload.get("data") or payload
        if not isinstance(data, Mapping) or not session:
            return None

        sender = data.get("sender") or {}
        address = data.get("from") or data.get("chatId") or sender.get("id")
        if not address or data.get("isGroupMsg") or data.get("isGroup"):
            return None
        if any(marker in address for marker in _IGNORED_ADDRESS_MARKERS):
            return None
        if data.get("fromMe") or data.get("self"):
            return None
        subtype = str(data.get("subtype") or data.get("type") or "").lower()
        if subtype in _SYSTEM_SUBTYPES:
            return None

        timestamp = self._timestamp(data.get("timestamp") or data.get("t"))
        if timestamp is not None and (self._clock() - timestamp).total_seconds() > MAX_MESSAGE_AGE_SECONDS:
            logger.debug("Skipping stale message from session %s", session)
            return None

        media_type = MessageType.parse(data.get("type"))
        body = data.get("body") or data.get("content") or data.get("text") or ""
        media_url = data.get("mediaUrl") or data.get("deprecatedMms3Url")
        if media_type != MessageType.TEXT and isinstance(body, str) and body.startswith("/9j/"):
            # Inline base64 thumbnails are not message text.
            body = data.get("caption") or ""

        job = InboundJob(
            session_id=str(session),
            from_address=str(address),
            body=str(body),
            media_type=media_type,
            media_url=media_url,
            customer_name=sender.get("pushname") or sender.get("name") or data.get("notifyName"),
            timestamp=timestamp or self._clock(),
        )
        external_id = data.get("id")
        if isinstance(external_id, Mapping):
            external_id = external_id.get("_serialized") or external_id.get("id")
        if external_id:
            job.job_id = str(external_id)
        return job

    @staticmethod
    def _timestamp(value: Any) -> Optional[datetime]:
        if value in (None, ""):
            return None
        try:
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return None
