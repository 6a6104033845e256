"""Walk a provider chain until one provider produces a completion."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

from readermesh.config import Settings, settings as default_settings
from readermesh.errors import MalformedResponse, ProviderError, ProviderUnavailable
from readermesh.schemas.common import ModelSelection
from readermesh.services.providers import ProviderFactory, ProviderRequest, invoke

logger = structlog.get_logger(__name__)


@dataclass
class Completion:
    selection: ModelSelection
    text: str
    failures: list[ProviderError] = field(default_factory=list)


def _exhausted(failures: list[ProviderError]) -> ProviderUnavailable:
    detail = "; ".join(f"{e.kind} ({e})" for e in failures) or "no providers attempted"
    return ProviderUnavailable(f"All providers failed: {detail}")


def complete_with_fallback(
    chain: list[ModelSelection],
    request: ProviderRequest,
    *,
    on_text: Optional[Callable[[str], None]] = None,
    factory: Optional[ProviderFactory] = None,
    settings: Settings = default_settings,
) -> Completion:
    """Collect a full completion, moving down ``chain`` on fallback-eligible errors.

    ``on_text`` receives the accumulated text after every delta. When a
    provider fails part way, the next provider starts from empty text.

    Raises:
        MalformedResponse: straight away; it is not fallback-eligible. The
            text collected so far rides along as ``partial_text``.
        ProviderUnavailable: once every provider in ``chain`` has failed.
    """
    failures: list[ProviderError] = []
    for selection in chain:
        text = ""
        try:
            for delta in invoke(selection, request, factory=factory, settings=settings):
                text += delta
                if on_text is not None:
                    on_text(text)
            return Completion(selection=selection, text=text, failures=failures)
        except MalformedResponse as exc:
            exc.partial_text = text
            exc.model = selection.model_id
            raise
        except ProviderError as exc:
            if not exc.fallback_eligible:
                raise
            failures.append(exc)
            logger.warning(
                "provider_failed_trying_next",
                provider=selection.provider.value,
                kind=exc.kind,
                error=str(exc),
            )
    raise _exhausted(failures)


def stream_with_fallback(
    chain: list[ModelSelection],
    request: ProviderRequest,
    *,
    factory: Optional[ProviderFactory] = None,
    settings: Settings = default_settings,
) -> Iterator[tuple[ModelSelection, str]]:
    """Yield ``(selection, delta)`` pairs from the first provider that answers.

    Fallback only happens before the first delta has been yielded; after
    that the caller has already forwarded text and the error propagates.
    """
    failures: list[ProviderError] = []
    for selection in chain:
        emitted = False
        try:
            for delta in invoke(selection, request, factory=factory, settings=settings):
                emitted = True
                yield selection, delta
            return
        except ProviderError as exc:
            if emitted or not exc.fallback_eligible:
                raise
            failures.append(exc)
            logger.warning(
                "provider_failed_trying_next",
                provider=selection.provider.value,
                kind=exc.kind,
                error=str(exc),
            )
    raise _exhausted(failures)
