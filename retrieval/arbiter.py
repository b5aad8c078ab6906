"""
Citation arbiter.

Checks that a draft answer only cites sources that were actually supplied as
evidence. Three modes:

- off:   the draft passes through unchanged
- rules: the draft must end with a "Sources: a.md, b.md" line whose every
         entry is one of the supplied sources, otherwise it is replaced by a
         fixed fallback message
- llm:   a second "referee" generation pass rewrites the draft; if that call
         fails for any reason the original draft is returned

The arbiter never raises: a rejected citation is a policy outcome reported
through ArbitrationResult.accepted.
"""
import asyncio
import re
from typing import Iterable

import sentry_sdk

from rag_api.logging_config import get_logger
from retrieval.models import ArbitrationResult, Evidence, source_basename
from retrieval.providers import GenerationProvider

logger = get_logger(__name__)

ARBITER_MODES = ("off", "rules", "llm")
PARTIAL_POLICIES = ("reject", "strip")

FALLBACK_MESSAGE = (
    "I could not find sufficiently grounded information in the knowledge base "
    "to answer precisely."
)

# "Sources: a.md, b.md" with optional markdown decoration ("**Sources:**", "> Sources:")
SOURCES_LINE = re.compile(r"^[\s>*_\-]*sources[\s*_]*:(?P<rest>.*)$", re.IGNORECASE)

REFEREE_PROMPT = """SYSTEM:
You are a referee. Check that the proposed answer relies ONLY on the excerpts
below. If needed, rewrite it so that it is strictly limited to information in
the context, and end with 'Sources: <files>'.

CONTEXT:
{context}

QUESTION:
{question}

PROPOSED ANSWER:
{draft}

INSTRUCTIONS:
- Remove any statement that is not present in the CONTEXT.
- End with exactly one line 'Sources: <files>' listing only the files used (bare file names)."""


def normalize_source(name) -> str:
    """Bare, case-folded file name used for membership checks."""
    cleaned = str(name or "").strip().strip("`'\"*_[]()<>").strip()
    return source_basename(cleaned).casefold()


def find_sources_line(draft: str) -> tuple[int, str] | None:
    """
    Locate the terminal "Sources:" line.

    Returns (line_number, text after the marker), or None when the last
    non-empty line of the draft is not a Sources line.
    """
    lines = (draft or "").splitlines()
    for i in range(len(lines) - 1, -1, -1):
        if not lines[i].strip():
            continue
        match = SOURCES_LINE.match(lines[i])
        if match:
            return i, match.group("rest")
        return None
    return None


def parse_sources_line(draft: str) -> list[str]:
    """Cited file names (basenames, original case) from the terminal Sources line."""
    found = find_sources_line(draft)
    if found is None:
        return []
    _, rest = found
    cited = []
    for part in re.split(r"[;,]", rest):
        name = source_basename(part.strip().strip("`'\"*_[]()<>").strip())
        if name:
            cited.append(name)
    return cited


def _replace_sources_line(draft: str, names: list[str]) -> str:
    found = find_sources_line(draft)
    lines = draft.splitlines()
    if found is None:
        return draft
    line_no, _ = found
    lines[line_no] = "Sources: " + ", ".join(names)
    return "\n".join(lines)


class CitationArbiter:
    """Validates (or regenerates) drafts against the supplied evidence."""

    def __init__(
        self,
        mode: str = "rules",
        generator: GenerationProvider | None = None,
        partial_policy: str = "reject",
        fallback_message: str = FALLBACK_MESSAGE,
    ):
        mode = (mode or "rules").lower()
        if mode not in ARBITER_MODES:
            raise ValueError(f"Unknown arbiter mode: {mode}. Expected one of {ARBITER_MODES}")
        if partial_policy not in PARTIAL_POLICIES:
            raise ValueError(f"Unknown partial policy: {partial_policy}")
        if mode == "llm" and generator is None:
            raise ValueError("llm arbiter mode requires a generation provider")
        self.mode = mode
        self.generator = generator
        self.partial_policy = partial_policy
        self.fallback_message = fallback_message

    async def arbitrate(
        self,
        draft: str,
        allowed_sources: Iterable[str],
        question: str = "",
        context: list[Evidence] | None = None,
        timeout: float | None = None,
    ) -> ArbitrationResult:
        if self.mode == "off":
            return ArbitrationResult(final_text=draft, accepted=True, mode="off", reason="off")
        if self.mode == "rules":
            return self.check_rules(draft, allowed_sources)
        return await self._referee(draft, question, context or [], timeout)

    def check_rules(self, draft: str, allowed_sources: Iterable[str]) -> ArbitrationResult:
        """Rules mode: every cited source must be among allowed_sources."""
        if find_sources_line(draft) is None:
            return self._reject([], [], "missing_sources_line")

        cited = parse_sources_line(draft)
        if not cited:
            # No citation at all is rejected even for an otherwise harmless answer
            return self._reject([], [], "no_citations")

        allowed = {normalize_source(s) for s in allowed_sources}
        good = [c for c in cited if normalize_source(c) in allowed]
        bad = [c for c in cited if normalize_source(c) not in allowed]

        if not bad:
            return ArbitrationResult(final_text=draft, accepted=True, mode="rules", cited=cited, reason="ok")

        if self.partial_policy == "strip" and good:
            logger.info(f"arbiter strip | kept={good} | stripped={bad}")
            return ArbitrationResult(
                final_text=_replace_sources_line(draft, good),
                accepted=True,
                mode="rules",
                cited=good,
                rejected=bad,
                reason="stripped_unknown_sources",
            )

        return self._reject(cited, bad, "unknown_sources")

    def _reject(self, cited: list[str], bad: list[str], reason: str) -> ArbitrationResult:
        logger.info(f"arbiter rejected | reason={reason} | cited={cited} | unknown={bad}")
        return ArbitrationResult(
            final_text=self.fallback_message,
            accepted=False,
            mode="rules",
            cited=cited,
            rejected=bad,
            reason=reason,
        )

    async def _referee(
        self,
        draft: str,
        question: str,
        context: list[Evidence],
        timeout: float | None,
    ) -> ArbitrationResult:
        context_str = "\n\n---\n\n".join(
            f"#{i} [{source_basename(c.source)}]\n{c.text}" for i, c in enumerate(context, start=1)
        )
        prompt = REFEREE_PROMPT.format(context=context_str, question=question, draft=draft)

        try:
            text = await asyncio.wait_for(self.generator.generate(prompt), timeout=timeout)
        except Exception as e:
            # Referee failures never reach the caller: keep the draft
            logger.warning(f"arbiter referee failed | err={type(e).__name__}: {e} | fallback=draft")
            sentry_sdk.capture_exception(e)
            return ArbitrationResult(final_text=draft, accepted=True, mode="llm", reason="referee_failed")

        if not text or not text.strip():
            return ArbitrationResult(final_text=draft, accepted=True, mode="llm", reason="referee_empty")

        return ArbitrationResult(
            final_text=text,
            accepted=True,
            mode="llm",
            cited=parse_sources_line(text),
            reason="refereed",
        )
