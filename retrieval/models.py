"""
Data types shared by the retrieval core.
"""
import re
from dataclasses import dataclass, field


def source_basename(source) -> str:
    """Reduce a source path to its bare file name (handles / and \\ separators)."""
    text = str(source or "").strip()
    return re.split(r"[\\/]", text)[-1].strip()


@dataclass(frozen=True)
class IndexedDocument:
    """A chunk of a knowledge-base file. Immutable once indexed."""
    text: str
    metadata: dict = field(default_factory=dict)

    @property
    def source(self) -> str:
        return str(self.metadata.get("source") or "source")


@dataclass(frozen=True)
class ScoredCandidate:
    """Position of a document in the index with its merged relevance score."""
    doc_index: int
    score: float


@dataclass
class SearchRequest:
    """
    Parameters of one search.

    query_variants are reformulations of the same question; the first one is
    the primary variant used as the MMR relevance reference.
    """
    query_variants: list[str]
    top_k: int = 3
    min_score: float | None = None
    use_mmr: bool = True
    preview_length: int = 220
    mmr_lambda: float = 0.7


@dataclass
class Evidence:
    """A passage returned to the caller. source is always a basename."""
    source: str
    score: float
    preview: str
    text: str
    metadata: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "score": self.score,
            "preview": self.preview,
            "text": self.text,
            "metadata": self.metadata,
        }


@dataclass
class ArbitrationResult:
    """Outcome of citation arbitration. accepted=False means the draft was replaced."""
    final_text: str
    accepted: bool
    mode: str = "rules"
    cited: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    reason: str = ""
