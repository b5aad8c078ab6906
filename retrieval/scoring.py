"""
Cosine similarity scoring.

cosine() is the reference definition used everywhere (MMR, tests);
score_all() applies the same formula to every row of the index matrix in one
vectorised pass, which is the exhaustive scan the local backend relies on.
"""
import numpy as np


def cosine(a, b) -> float:
    """
    Cosine similarity between two vectors.

    Uses the shorter of the two lengths, and a denominator of 1 when either
    norm is zero (so a zero vector scores 0 instead of NaN).
    """
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    n = min(va.shape[0], vb.shape[0])
    va = va[:n]
    vb = vb[:n]

    denom = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if denom == 0.0:
        denom = 1.0
    return float(np.dot(va, vb)) / denom


def score_all(query, matrix: np.ndarray) -> np.ndarray:
    """
    Cosine similarity of one query vector against every row of matrix.

    Returns a float64 array of shape (rows,).
    """
    q = np.asarray(query, dtype=np.float64).ravel()
    m = np.asarray(matrix, dtype=np.float64)
    if m.ndim != 2 or m.shape[0] == 0:
        return np.zeros(0, dtype=np.float64)

    n = min(q.shape[0], m.shape[1])
    q = q[:n]
    m = m[:, :n]

    dots = m @ q
    denoms = np.linalg.norm(m, axis=1) * float(np.linalg.norm(q))
    denoms[denoms == 0.0] = 1.0
    return dots / denoms
