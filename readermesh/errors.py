"""Exception taxonomy shared by the router, adapter, worker and clients."""

from __future__ import annotations

from typing import Optional


class ReaderMeshError(Exception):
    """Base exception for all application errors."""

    pass


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------

class ProviderError(ReaderMeshError):
    """A provider call failed. The worker only ever looks at ``kind``."""

    kind = "ProviderError"
    fallback_eligible = True

    def __init__(self, message: str, provider: Optional[str] = None) -> None:
        self.provider = provider
        self.message = message
        prefix = f"{provider}: " if provider else ""
        super().__init__(f"{prefix}{message}")


class MissingCredentials(ProviderError):
    """No API key configured for the provider (or the key was rejected)."""

    kind = "MissingCredentials"


class RateLimited(ProviderError):
    kind = "RateLimited"


class ProviderTimeout(ProviderError):
    kind = "Timeout"


class UpstreamError(ProviderError):
    """Connection failure or a non-success HTTP status from the provider."""

    kind = "UpstreamError"

    def __init__(
        self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None
    ) -> None:
        self.status_code = status_code
        super().__init__(message, provider)


class MalformedResponse(ProviderError):
    """The provider answered but the content is unusable.

    ``partial_text`` and ``model`` are filled in by the fallback walk with
    whatever the provider streamed before the bad chunk.
    """

    kind = "MalformedResponse"
    fallback_eligible = False
    partial_text = ""
    model: Optional[str] = None


class ProviderUnavailable(ReaderMeshError):
    """Every provider in the fallback chain lacks credentials or failed."""

    def __init__(self, message: str, missing: Optional[list[str]] = None) -> None:
        self.missing = missing or []
        super().__init__(message)


# ---------------------------------------------------------------------------
# Job errors
# ---------------------------------------------------------------------------

class JobNotFound(ReaderMeshError):
    """Unknown or expired job id."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobTimedOut(ReaderMeshError):
    """The client-side poll budget ran out before the job finished."""

    def __init__(self, job_id: str, attempts: int) -> None:
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(f"Job {job_id} did not finish after {attempts} polls")


class JobFailed(ReaderMeshError):
    """The server reported the job as failed."""

    def __init__(self, job_id: str, message: str) -> None:
        self.job_id = job_id
        super().__init__(message)


class InvalidTransition(ReaderMeshError, ValueError):
    """A status write would move a job backwards."""

    def __init__(self, job_id: str, current: str, requested: str) -> None:
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(f"Job {job_id}: cannot move from {current} to {requested}")
