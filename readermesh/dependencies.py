"""FastAPI dependency providers backed by ``app.state``."""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from readermesh.config import Settings
from readermesh.services.providers import ProviderFactory
from readermesh.storage.job_queue import JobQueue
from readermesh.storage.status_store import StatusStore
from readermesh.workers.dispatch import Dispatcher

ANONYMOUS_CLIENT = "anonymous"


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> StatusStore:
    return request.app.state.store


def get_queue(request: Request) -> JobQueue:
    return JobQueue(request.app.state.store)


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def get_provider_factory(request: Request) -> Optional[ProviderFactory]:
    return getattr(request.app.state, "provider_factory", None)


def get_client_id(request: Request) -> str:
    """``X-Client-Id`` header, then the ``visitorId`` cookie."""
    return (
        request.headers.get("x-client-id")
        or request.cookies.get("visitorId")
        or ANONYMOUS_CLIENT
    )
