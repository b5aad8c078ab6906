"""
Base class for search backends.

The RAG pipeline only talks to this interface. The concrete backend is
chosen once at process start (see build_search_backend), never per call.
"""
from abc import ABC, abstractmethod

from retrieval.models import Evidence, SearchRequest, source_basename


def make_preview(text: str, length: int) -> str:
    """Whitespace-collapsed prefix of text, at least 20 characters long."""
    collapsed = " ".join(str(text or "").split())
    return collapsed[:max(20, int(length))]


def to_evidence(text: str, score: float, metadata: dict, preview_length: int) -> Evidence:
    """Build an Evidence item; the source is always reduced to a basename."""
    metadata = dict(metadata or {})
    return Evidence(
        source=source_basename(metadata.get("source") or "source"),
        score=float(score),
        preview=make_preview(text, preview_length),
        text=text,
        metadata=metadata,
    )


def apply_min_score(items: list[Evidence], min_score: float | None) -> list[Evidence]:
    """Inclusive threshold; None disables filtering."""
    if min_score is None:
        return items
    return [e for e in items if e.score >= min_score]


class SearchBackend(ABC):
    """
    Abstract base class for evidence search backends.

    Implementations must provide:
    - name: identifier reported in stats and logs
    - ensure_ready(): smoke test used at startup and by /kb/ready
    - reload(): force a fresh load, return refreshed stats
    - stats(): read-only metadata
    - search(): ranked evidence for a SearchRequest
    """

    name: str = "base"

    @abstractmethod
    def ensure_ready(self) -> dict:
        """Check the backend can serve searches. Raises a RetrievalError if not."""
        pass

    @abstractmethod
    def reload(self) -> dict:
        pass

    @abstractmethod
    def stats(self) -> dict:
        pass

    @abstractmethod
    async def search(self, request: SearchRequest) -> list[Evidence]:
        """
        Rank evidence for the request's query variants.

        Returns at most request.top_k items, best first, all scoring at
        least request.min_score when one is set.
        """
        pass
