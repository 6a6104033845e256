"""Prompt templates for the explain and summarize job types."""

from __future__ import annotations

from readermesh.schemas.common import ExplainPayload, PageInput

COMPRESSED_SYSTEM_PROMPT = (
    "Study assistant. Be concise. Use bullet points. Omit polite filler. Max 100 words."
)

EXPLAIN_SYSTEM_PROMPT = COMPRESSED_SYSTEM_PROMPT + " Focus on the meaning in the given context."
EXPLAIN_MAX_TOKENS = 50

SUMMARIZE_SYSTEM_PROMPT = (
    "Study assistant. Summarize reading material for a learner with attention difficulties. "
    "Be concise. Use short bullet points. Omit polite filler."
)
SUMMARIZE_MAX_TOKENS = 300

BATCH_SYSTEM_PROMPT = (
    SUMMARIZE_SYSTEM_PROMPT
    + " Reply with a single JSON object and nothing else."
)
# Output budget per page in a batch, capped below
BATCH_TOKENS_PER_PAGE = 150
BATCH_MAX_TOKENS = 4000

NO_TEXT_SUMMARY = "No text content available for this page."


def explain_prompt(payload: ExplainPayload) -> str:
    if payload.context and payload.context.strip():
        return (
            f'Explain the term "{payload.term}" in the context of this passage:\n\n'
            f'"{payload.context}"\n\n'
            "Provide a simple explanation that relates to how the term is used in this "
            "specific context. Use an analogy if helpful."
        )
    return f'Explain the term "{payload.term}" in simple terms using an analogy.'


def summarize_prompt(page: PageInput) -> str:
    return f"Summarize page {page.page_number} of a document:\n\n{page.page_text}"


def batch_prompt(pages: list[PageInput]) -> str:
    numbers = ", ".join(f'"{p.page_number}"' for p in pages)
    sections = "\n\n".join(f"--- PAGE {p.page_number} ---\n{p.page_text}" for p in pages)
    return (
        "Summarize each of the following pages separately.\n"
        f"Return a JSON object whose keys are the page numbers ({numbers}) and whose values "
        "are the summary of that page as a string.\n\n"
        f"{sections}"
    )


def batch_max_tokens(page_count: int) -> int:
    return min(BATCH_MAX_TOKENS, BATCH_TOKENS_PER_PAGE * max(page_count, 1))
