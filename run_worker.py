"""Run the inbound message worker.

Consumes jobs from the Redis queue until SIGINT/SIGTERM, then drains the
in-flight jobs and exits.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from concurrent.futures import ThreadPoolExecutor

from dotenv import load_dotenv

from atendebot.app_logging import init_logging
from atendebot.models.session import create_schema, get_engine, get_sessionmaker
from atendebot.queue import RedisJobQueue
from atendebot.services import build_worker_services
from atendebot.settings import Settings
from atendebot.worker import MessageWorker, WorkerRunner

logger = logging.getLogger("atendebot.run_worker")


def main(argv: list[str] | None = None) -> int:
    """Parse CLI arguments and run the worker until signalled to stop."""

    load_dotenv()
    settings = Settings.from_env()
    parser = argparse.ArgumentParser(description="Process inbound WhatsApp messages")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=settings.worker_concurrency,
        help="Number of jobs processed in parallel",
    )
    parser.add_argument(
        "--queue",
        default=settings.queue_name,
        help="Redis list to consume",
    )
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="Create missing tables before starting (development only)",
    )
    args = parser.parse_args(argv)

    init_logging()
    engine = get_engine(settings.database_url, pool_pre_ping=True)
    if args.create_schema:
        create_schema(engine)
    services = build_worker_services(settings, session_factory=get_sessionmaker(engine=engine))

    with ThreadPoolExecutor(max_workers=2, thread_name_prefix="atendebot-memory") as background:
        runner = WorkerRunner(
            RedisJobQueue.from_url(settings.redis_url, args.queue),
            MessageWorker(services, background=background),
            concurrency=args.concurrency,
            max_attempts=settings.job_max_attempts,
            backoff=settings.job_backoff_seconds,
        )

        def _shutdown(signum, _frame) -> None:
            logger.info("Received signal %s; stopping after in-flight jobs", signum)
            runner.stop()

        signal.signal(signal.SIGINT, _shutdown)
        signal.signal(signal.SIGTERM, _shutdown)
        runner.run()
    engine.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(main())
