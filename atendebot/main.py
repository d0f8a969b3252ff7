"""FastAPI application wiring for atendebot.

The HTTP side of the pipeline is deliberately thin:

- the WhatsApp webhook validates the channel payload and enqueues a job; the
  worker (``run_worker.py``) does everything else;
- operator endpoints drive the conversation state machine (take over, return
  to AI, close, reopen) and send human replies;
- usage endpoints expose the monthly token quota.

Logging, Prometheus metrics and rate limiting are configured here.
"""

import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .routers import conversations, usage, webhooks
from .routers.deps import ApiServices
from .settings import Settings

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Extract a best-effort client IP for rate limiting.

    Prefer ``X-Forwarded-For`` (first hop) if present, otherwise use the
    socket peer address.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def create_app(services: ApiServices | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the API; ``services`` defaults to the SQL/Redis/WPPConnect wiring."""

    load_dotenv()
    if services is None:
        from .services import build_api_services

        services = build_api_services(settings or Settings.from_env())

    limiter = Limiter(
        key_func=get_client_ip,
        default_limits=[os.getenv("API_RATE_LIMIT", "300/minute")],
    )

    app = FastAPI(title="atendebot", version=__version__)
    init_logging(app)
    app.state.services = services
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
    # Optional CORS for the operator dashboard
    dashboard_origins = os.getenv("DASHBOARD_ORIGINS")
    if dashboard_origins:
        origins = [o.strip() for o in dashboard_origins.split(",") if o.strip()]
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.include_router(webhooks.router)
    app.include_router(conversations.router)
    app.include_router(usage.router)

    # Expose Prometheus metrics
    Instrumentator().instrument(app).expose(app, include_in_schema=False, endpoint="/api/metrics")

    @app.get("/api/health")
    def health() -> dict:
        """Liveness probe used by container orchestrators."""
        return {"status": "ok"}

    @app.get("/api/version")
    def version() -> dict:
        return {
            "version": __version__,
            "build_date": __build_date__,
            "commit_sha": __commit_sha__,
        }

    logger.info("atendebot API %s ready", __version__)
    return app
