"""Schemas for job submission and management endpoints."""

from __future__ import annotations

from typing import Optional

from pydantic import Field

from readermesh.schemas.common import CamelModel, JobState, JobType, Provider


class JobAccepted(CamelModel):
    """Response for a queued submission (202 Accepted)."""
    job_id: str = Field(..., description="Job id")
    type: JobType
    status: JobState = JobState.QUEUED
    priority: int
    status_url: str = Field(..., description="Poll this URL for the JobStatus")
    stream_url: str = Field(..., description="Server-sent event stream for this job")


class ProviderInfo(CamelModel):
    provider: Provider
    model_id: str
    base_url: Optional[str] = None
    configured: bool
    missing: list[str] = Field(default_factory=list, description="Environment variables to set")


class ProvidersResponse(CamelModel):
    providers: list[ProviderInfo]
    fallback_order: list[Provider]


class ReclaimResponse(CamelModel):
    reclaimed: list[str] = Field(default_factory=list)
    timeout_seconds: int
