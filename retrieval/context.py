"""
Context assembly: bound the evidence handed to the generation step.
"""
from typing import Iterable

from retrieval.models import Evidence, source_basename

DOC_BLOCK_TEMPLATE = '<<<DOC #{n} source="{source}" score={score}>>>\n{text}\n<<<END DOC>>>'


def assemble_context(evidence: Iterable[Evidence], max_chars: int) -> list[Evidence]:
    """
    Keep evidence, in ranking order, while the total text length fits max_chars.

    Stops at the first item that would overflow (no skipping ahead, so the
    context is always a prefix of the ranking). Items with empty or
    non-string text are skipped and do not count against the budget.
    """
    total = 0
    kept: list[Evidence] = []

    for item in evidence:
        text = item.text
        if not isinstance(text, str) or not text:
            continue
        if total + len(text) > max_chars:
            break
        kept.append(item)
        total += len(text)

    return kept


def context_sources(items: Iterable[Evidence]) -> list[str]:
    """Unique source basenames of the assembled context, first-seen order."""
    seen = set()
    sources: list[str] = []
    for item in items:
        name = source_basename(item.source)
        if name and name not in seen:
            seen.add(name)
            sources.append(name)
    return sources


def format_context_blocks(items: Iterable[Evidence]) -> str:
    """Render assembled evidence as delimited blocks for the prompt."""
    blocks = []
    for n, item in enumerate(items, start=1):
        score = f"{item.score:.3f}" if isinstance(item.score, (int, float)) else "n/a"
        blocks.append(
            DOC_BLOCK_TEMPLATE.format(
                n=n,
                source=source_basename(item.source),
                score=score,
                text=item.text,
            )
        )
    return "\n\n".join(blocks)
