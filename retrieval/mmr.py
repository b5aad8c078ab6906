"""
Maximal Marginal Relevance (MMR) diversification.

Greedily picks results that are relevant to the query but not redundant with
what was already picked:

    mmr = lambda * relevance - (1 - lambda) * max_similarity_to_selected

lambda=1 is pure relevance, lambda=0 pure diversity.
"""
from retrieval.models import ScoredCandidate
from retrieval.scoring import cosine

DEFAULT_LAMBDA = 0.7


def candidate_pool_size(k: int) -> int:
    """Only the head of the ranking is considered, which bounds the cost."""
    return max(3 * k, 20)


def mmr_select(
    query_vector,
    ranked: list[ScoredCandidate],
    vectors,
    k: int,
    lambda_: float = DEFAULT_LAMBDA,
) -> list[ScoredCandidate]:
    """
    Select min(k, pool size) diverse candidates from ranked.

    Args:
        query_vector: Primary query variant; relevance is cosine to it.
        ranked: Merged ranking, best first.
        vectors: Index vectors addressed by ScoredCandidate.doc_index.
        k: Number of results wanted.
        lambda_: Relevance/diversity trade-off in [0, 1].

    Returns:
        Selected candidates in pick order, each with its original merged score.
    """
    if k <= 0 or not ranked:
        return []

    pool = list(ranked[:candidate_pool_size(k)])
    target = min(k, len(pool))

    relevance = {c.doc_index: cosine(query_vector, vectors[c.doc_index]) for c in pool}
    # Max similarity of each remaining candidate to the selected set, updated per pick
    redundancy = {c.doc_index: 0.0 for c in pool}

    selected: list[ScoredCandidate] = []
    while len(selected) < target:
        best: ScoredCandidate | None = None
        best_value = 0.0

        for cand in pool:
            rel = relevance[cand.doc_index]
            if not selected:
                # No diversity term yet: the first pick is the most relevant
                # candidate whatever lambda is
                value = rel
            else:
                value = lambda_ * rel - (1.0 - lambda_) * redundancy[cand.doc_index]
            if best is None or value > best_value:
                best = cand
                best_value = value

        pool.remove(best)
        selected.append(best)

        for cand in pool:
            sim = cosine(vectors[cand.doc_index], vectors[best.doc_index])
            if sim > redundancy[cand.doc_index]:
                redundancy[cand.doc_index] = sim

    return selected
