"""
Citation arbiter: off / rules / llm modes.
"""
import asyncio

import pytest

from conftest import FakeGenerator
from retrieval.arbiter import FALLBACK_MESSAGE, CitationArbiter, parse_sources_line
from retrieval.errors import GenerationError
from retrieval.models import Evidence

ALLOWED = ["a.md", "b.md"]


def arbitrate(arbiter, draft, allowed=ALLOWED, **kwargs):
    return asyncio.run(arbiter.arbitrate(draft, allowed, **kwargs))


def test_off_passes_draft_through():
    result = arbitrate(CitationArbiter(mode="off"), "Anything, no sources.")
    assert result.final_text == "Anything, no sources."
    assert result.accepted


def test_rules_missing_sources_line_rejected():
    result = arbitrate(CitationArbiter(), "Restart bind9 with systemctl.")
    assert result.final_text == FALLBACK_MESSAGE
    assert not result.accepted
    assert result.reason == "missing_sources_line"


def test_rules_unknown_source_rejected():
    """Allowed {a.md, b.md}, draft cites c.md: the fallback is returned."""
    result = arbitrate(CitationArbiter(), "Restart bind9.\nSources: a.md, c.md")
    assert result.final_text == FALLBACK_MESSAGE
    assert not result.accepted
    assert result.rejected == ["c.md"]


def test_rules_only_allowed_sources_pass_unchanged():
    draft = "Restart bind9.\n\nSources: a.md; b.md\n"
    result = arbitrate(CitationArbiter(), draft)
    assert result.final_text == draft
    assert result.accepted
    assert result.cited == ["a.md", "b.md"]


def test_rules_zero_citations_rejected():
    result = arbitrate(CitationArbiter(), "Nothing harmful here.\nSources: ")
    assert result.final_text == FALLBACK_MESSAGE
    assert result.reason == "no_citations"


def test_rules_normalizes_case_and_paths():
    result = arbitrate(CitationArbiter(), "Answer.\nSources: docs/A.MD, `kb\\b.md`")
    assert result.accepted


def test_rules_markdown_sources_marker():
    result = arbitrate(CitationArbiter(), "Answer.\n**Sources:** a.md")
    assert result.accepted


def test_rules_sources_line_must_be_terminal():
    result = arbitrate(CitationArbiter(), "Sources: a.md\nAnd then more text.")
    assert not result.accepted


def test_rules_strip_policy_keeps_allowed_citations():
    arbiter = CitationArbiter(partial_policy="strip")
    result = arbitrate(arbiter, "Restart bind9.\nSources: a.md, c.md")

    assert result.accepted
    assert result.final_text == "Restart bind9.\nSources: a.md"
    assert result.rejected == ["c.md"]


def test_rules_strip_policy_still_rejects_when_nothing_allowed():
    arbiter = CitationArbiter(partial_policy="strip")
    result = arbitrate(arbiter, "Restart bind9.\nSources: z.md")
    assert not result.accepted
    assert result.final_text == FALLBACK_MESSAGE


def test_parse_sources_line():
    assert parse_sources_line("x\nSources: /a/b/one.md ; two.txt,three.log") == ["one.md", "two.txt", "three.log"]
    assert parse_sources_line("no marker") == []


def test_llm_mode_returns_referee_text():
    referee = FakeGenerator(reply="Refined.\nSources: a.md")
    arbiter = CitationArbiter(mode="llm", generator=referee)
    context = [Evidence(source="a.md", score=0.9, preview="", text="Restart bind9.")]

    result = arbitrate(arbiter, "Draft.\nSources: a.md, c.md", question="How?", context=context)

    assert result.final_text == "Refined.\nSources: a.md"
    assert result.cited == ["a.md"]
    assert "#1 [a.md]\nRestart bind9." in referee.prompts[0]


def test_llm_mode_failure_keeps_draft():
    arbiter = CitationArbiter(mode="llm", generator=FakeGenerator(error=GenerationError("down")))
    result = arbitrate(arbiter, "Draft.\nSources: a.md")
    assert result.final_text == "Draft.\nSources: a.md"
    assert result.reason == "referee_failed"


def test_llm_mode_timeout_keeps_draft():
    arbiter = CitationArbiter(mode="llm", generator=FakeGenerator(reply="late", delay=1.0))
    result = arbitrate(arbiter, "Draft.", timeout=0.01)
    assert result.final_text == "Draft."


def test_llm_mode_requires_generator():
    with pytest.raises(ValueError):
        CitationArbiter(mode="llm")


def test_unknown_mode():
    with pytest.raises(ValueError):
        CitationArbiter(mode="strict")
