"""WhatsApp customer-service pipeline: inbound queue, AI routing and hand-off."""

from .__version__ import __version__

__all__ = ["__version__"]
