"""RQ Worker entrypoint.

Run with: python -m readermesh.worker
"""

import structlog
from redis import Redis
from rq import Queue, Worker

from readermesh.config import settings
from readermesh.logging_config import configure_logging

logger = structlog.get_logger(__name__)


def main() -> None:
    """Start the RQ worker listening on the job tick queue."""
    configure_logging(settings)
    redis_conn = Redis.from_url(settings.redis_url)
    queues = [Queue(settings.rq_queue_name, connection=redis_conn)]

    logger.info("worker_starting", queue=settings.rq_queue_name, redis_url=settings.redis_url)

    worker = Worker(queues, connection=redis_conn)
    worker.work(with_scheduler=False)


if __name__ == "__main__":
    main()
