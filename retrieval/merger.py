"""
Multi-query score merging.

Each reformulation of the question is scored against the whole index; a
document keeps its best score across variants (max, not mean) so a strong
match on any phrasing is not diluted by phrasings that missed.
"""
import numpy as np

from retrieval.models import ScoredCandidate
from retrieval.scoring import score_all


def dedupe_variants(variants) -> list[str]:
    """Trim, drop empties and duplicates, keep first-appearance order."""
    seen = set()
    out: list[str] = []
    for v in variants or []:
        text = str(v or "").strip()
        if text and text not in seen:
            seen.add(text)
            out.append(text)
    return out


def merge_max(query_vectors, matrix: np.ndarray) -> list[ScoredCandidate]:
    """
    Rank every indexed document by its best score across query variants.

    Sorted by descending score; ties keep document order (stable sort).
    """
    if not len(query_vectors) or matrix.shape[0] == 0:
        return []

    per_variant = np.vstack([score_all(q, matrix) for q in query_vectors])
    merged = per_variant.max(axis=0)

    order = np.argsort(-merged, kind="stable")
    return [ScoredCandidate(doc_index=int(i), score=float(merged[i])) for i in order]
