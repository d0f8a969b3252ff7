"""Base abstractions for chat channel adapters."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, Optional

from ..queue import InboundJob

_ADDRESS_SUFFIXES = ("@c.us", "@s.whatsapp.net", "@lid")


def normalize_phone(address: str | None) -> str:
    """Strip channel suffixes and any non-digit characters from ``address``."""

    value = address or ""
    for suffix in _ADDRESS_SUFFIXES:
        value = value.replace(suffix, "")
    return re.sub(r"\D", "", value)


class ChannelAdapter(ABC):
    """Abstract base class encapsulating channel-specific behaviour.

    Send operations report delivery as a boolean; transport errors are handled
    (and retried) inside the adapter and never raised to the worker.
    """

    #: Lowercase channel identifier used in routes and configuration.
    channel_name: str

    @abstractmethod
    def send_text(self, session: str, phone: str, text: str) -> bool:
        """Deliver a text message."""

    @abstractmethod
    def send_audio(self, session: str, phone: str, audio_base64: str) -> bool:
        """Deliver a voice note encoded as base64."""

    @abstractmethod
    def send_file(self, session: str, phone: str, url: str, file_name: str) -> bool:
        """Download ``url`` and deliver it as an attachment named ``file_name``."""

    @abstractmethod
    def parse_incoming(self, payload: Mapping[str, Any]) -> Optional[InboundJob]:
        """Convert a webhook payload into a job, or ``None`` when it must be ignored."""
