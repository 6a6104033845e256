"""Router: GET /v1/providers - routing table and credential status."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from readermesh.config import Settings
from readermesh.dependencies import get_settings
from readermesh.schemas.jobs import ProviderInfo, ProvidersResponse
from readermesh.services.model_router import (
    FALLBACK_PRIORITY,
    check_credentials,
    provider_selection,
)

router = APIRouter(prefix="/v1", tags=["providers"])


@router.get("/providers", response_model=ProvidersResponse)
async def list_providers(settings: Settings = Depends(get_settings)):
    """List every provider with its model, endpoint, and whether a key is configured."""
    providers = []
    for provider in FALLBACK_PRIORITY:
        selection = provider_selection(provider, "configured", settings)
        check = check_credentials(provider, settings)
        providers.append(
            ProviderInfo(
                provider=provider,
                model_id=selection.model_id,
                base_url=selection.base_url,
                configured=check.available,
                missing=check.missing,
            )
        )
    return ProvidersResponse(providers=providers, fallback_order=list(FALLBACK_PRIORITY))
