"""Schedule worker ticks: RQ when Redis is available, a daemon thread otherwise."""

from __future__ import annotations

import threading
from typing import Optional

import structlog
from redis import Redis
from rq import Queue

from readermesh.config import Settings, settings as default_settings
from readermesh.services.providers import ProviderFactory
from readermesh.storage.status_store import RedisStatusStore, StatusStore
from readermesh.workers.tasks import drain

logger = structlog.get_logger(__name__)

TICK_TASK = "readermesh.workers.tasks.run_next_job"


class Dispatcher:
    """Hands one "run the next job" tick to a worker per submitted job.

    A tick does not carry a job id: whichever worker runs it claims the best
    queued job at that moment, so priority order is decided at claim time.
    """

    def __init__(
        self,
        store: StatusStore,
        settings: Settings = default_settings,
        rq_queue: Optional[Queue] = None,
        factory: Optional[ProviderFactory] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.rq_queue = rq_queue
        self.factory = factory
        self.last_thread: Optional[threading.Thread] = None

    @classmethod
    def for_store(cls, store: StatusStore, settings: Settings = default_settings) -> "Dispatcher":
        rq_queue = None
        if isinstance(store, RedisStatusStore):
            rq_queue = Queue(settings.rq_queue_name, connection=Redis.from_url(settings.redis_url))
        return cls(store, settings, rq_queue=rq_queue)

    def dispatch(self) -> str:
        """Schedule one tick. Returns ``"rq"`` or ``"thread"``."""
        if self.rq_queue is not None:
            try:
                self.rq_queue.enqueue(TICK_TASK, job_timeout="10m")
                logger.info("tick_enqueued", queue=self.rq_queue.name)
                return "rq"
            except Exception as exc:
                logger.warning(
                    "rq_unavailable",
                    error=str(exc),
                    msg="Running in-process (dev mode)",
                )

        thread = threading.Thread(
            target=drain,
            kwargs={"store": self.store, "settings": self.settings, "factory": self.factory},
            daemon=True,
        )
        thread.start()
        self.last_thread = thread
        return "thread"
