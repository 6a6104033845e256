"""Token-budgeted page batching and batch-result parsing.

Shared by the worker (parsing model output for ``summarize-batch`` jobs) and
the client-side ``BatchAssembler`` (sizing batches and distributing results).
"""

from __future__ import annotations

import json
import math
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable

from readermesh.errors import MalformedResponse
from readermesh.schemas.common import PageInput

CHARS_PER_TOKEN = 4
MIN_PAGE_CHARS = 10

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?```\s*$", re.DOTALL)


def estimate_tokens(text: str) -> int:
    """chars/4 heuristic, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def has_text(text: str | None) -> bool:
    """True when the page has at least ``MIN_PAGE_CHARS`` non-whitespace characters."""
    if not text:
        return False
    return len("".join(text.split())) >= MIN_PAGE_CHARS


@dataclass
class Batch:
    pages: list[PageInput] = field(default_factory=list)
    estimated_tokens: int = 0

    def __len__(self) -> int:
        return len(self.pages)

    @property
    def page_numbers(self) -> list[int]:
        return [p.page_number for p in self.pages]

    def add(self, page: PageInput, tokens: int) -> None:
        self.pages.append(page)
        self.estimated_tokens += tokens


def take_batch(pending: deque[PageInput], max_pages: int, max_tokens: int) -> Batch:
    """Pop the next batch off the front of ``pending``.

    Stops at ``max_pages`` or before the page that would push the estimate past
    ``max_tokens``; that page stays at the front for the next batch. A single
    page over the budget is still taken on its own so the queue always drains.
    """
    batch = Batch()
    while pending and len(batch) < max_pages:
        candidate = pending[0]
        tokens = estimate_tokens(candidate.page_text)
        if batch.pages and batch.estimated_tokens + tokens > max_tokens:
            break
        pending.popleft()
        batch.add(candidate, tokens)
    return batch


def plan_batches(pages: Iterable[PageInput], max_pages: int, max_tokens: int) -> list[Batch]:
    """Split ``pages`` into the batches ``take_batch`` would produce, in order."""
    pending = deque(pages)
    batches = []
    while pending:
        batches.append(take_batch(pending, max_pages, max_tokens))
    return batches


# ---------------------------------------------------------------------------
# Result parsing
# ---------------------------------------------------------------------------

def strip_code_fence(text: str) -> str:
    text = text.strip()
    match = _FENCE_RE.match(text)
    return match.group(1).strip() if match else text


def parse_batch_summaries(raw: str) -> dict[str, str]:
    """Parse model output into ``{page_number: summary}`` with string keys.

    Raises:
        MalformedResponse: if the text is not a JSON object after fence stripping.
    """
    try:
        parsed = json.loads(strip_code_fence(raw))
    except (TypeError, ValueError) as exc:
        raise MalformedResponse(f"batch summary is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise MalformedResponse("batch summary is not a JSON object")
    return {str(k): v if isinstance(v, str) else json.dumps(v) for k, v in parsed.items()}


def summaries_for(data: Any, page_numbers: list[int]) -> tuple[dict[int, str], list[int]]:
    """Distribute a batch result over its pages.

    ``data`` is either a mapping keyed by page number (str or int keys) or a
    raw text blob. A blob that cannot be parsed is assigned whole to the first
    page; the other pages are returned as unresolved.

    Returns:
        (resolved summaries by page number, unresolved page numbers)
    """
    if isinstance(data, str):
        try:
            data = parse_batch_summaries(data)
        except MalformedResponse:
            text = data.strip()
            if page_numbers and text:
                return {page_numbers[0]: text}, list(page_numbers[1:])
            return {}, list(page_numbers)

    if not isinstance(data, dict):
        return {}, list(page_numbers)

    resolved: dict[int, str] = {}
    for number in page_numbers:
        summary = data.get(str(number), data.get(number))
        if isinstance(summary, str) and summary:
            resolved[number] = summary
    unresolved = [n for n in page_numbers if n not in resolved]
    return resolved, unresolved
