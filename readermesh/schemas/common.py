"""Shared schema types used across the application."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class JobType(str, enum.Enum):
    EXPLAIN = "explain"
    SUMMARIZE = "summarize"
    SUMMARIZE_BATCH = "summarize-batch"


class JobState(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class Provider(str, enum.Enum):
    GROQ = "groq"
    SILICONFLOW = "siliconflow"
    GITHUB = "github"
    GEMINI = "gemini"
    HUGGINGFACE = "huggingface"


class TaskType(str, enum.Enum):
    SIMPLE = "simple"
    COMPLEX_REASONING = "complex_reasoning"
    LONG_CONTEXT = "long_context"
    VISION = "vision"


# Higher value dequeues first
JOB_PRIORITIES: dict[JobType, int] = {
    JobType.EXPLAIN: 10,
    JobType.SUMMARIZE_BATCH: 5,
    JobType.SUMMARIZE: 1,
}

# Allowed forward moves; anything else is rejected by the status store
JOB_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.QUEUED: frozenset({JobState.PROCESSING}),
    JobState.PROCESSING: frozenset({JobState.COMPLETED, JobState.FAILED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
}


class CamelModel(BaseModel):
    """Base model serialised with camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------

class ChatMessage(CamelModel):
    role: Literal["system", "user", "assistant"]
    content: str


class PageInput(CamelModel):
    """One page handed to the summariser."""
    page_number: int = Field(..., ge=1, description="1-based page number")
    page_text: str = Field(..., description="Extracted text of the page")


class ExplainPayload(CamelModel):
    term: str = Field(..., min_length=1, description="Term to explain")
    context: Optional[str] = Field(None, description="Passage the term appears in")
    task_type: TaskType = Field(TaskType.SIMPLE)
    history: list[ChatMessage] = Field(default_factory=list)


class SummarizePayload(PageInput):
    pass


class SummarizeBatchPayload(CamelModel):
    pages: list[PageInput] = Field(..., min_length=1)


PAYLOAD_TYPES: dict[JobType, type[CamelModel]] = {
    JobType.EXPLAIN: ExplainPayload,
    JobType.SUMMARIZE: SummarizePayload,
    JobType.SUMMARIZE_BATCH: SummarizeBatchPayload,
}

JobPayload = Union[ExplainPayload, SummarizePayload, SummarizeBatchPayload]


# ---------------------------------------------------------------------------
# Data Models
# ---------------------------------------------------------------------------

class Job(CamelModel):
    """A unit of requested work. Never modified after creation."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    job_id: str = Field(..., description="Opaque unique job id")
    type: JobType
    client_id: str = Field("anonymous")
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int
    created_at: datetime

    def typed_payload(self) -> JobPayload:
        """Validate the stored payload into the model for this job type."""
        return PAYLOAD_TYPES[self.type].model_validate(self.payload)


class JobResult(CamelModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None


class JobStatus(CamelModel):
    """Mutable status record for one job, written only by its worker."""

    job_id: str
    status: JobState
    position: Optional[int] = Field(None, description="0-based position among queued jobs")
    progress: Optional[Union[int, str]] = Field(
        None, description="Percentage 0-100 or the partial streamed content"
    )
    result: Optional[JobResult] = None
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ModelSelection(CamelModel):
    """Provider and model picked for one request."""
    provider: Provider
    model_id: str
    base_url: Optional[str] = None
    reason: str
