"""
Cheap query reformulations (no LLM call).

Variant 1 is the question itself, variant 2 drops simple stopwords,
variant 3 applies a small table of domain synonyms.
"""
import re

# English and French, the two languages of the knowledge base
STOPWORDS = re.compile(
    r"\b(the|a|an|of|in|on|for|with|and|or|to|at|is|are"
    r"|le|la|les|un|une|des|de|du|dans|sur|pour|avec|et|ou|à|au|aux|en)\b",
    re.IGNORECASE,
)

SYNONYMS = [
    (re.compile(r"\brelaunch\b", re.IGNORECASE), "restart"),
    (re.compile(r"\breboot\b", re.IGNORECASE), "restart"),
    (re.compile(r"\bservice\b", re.IGNORECASE), "daemon"),
    (re.compile(r"\bconf(ig)?\b", re.IGNORECASE), "configuration"),
]

MAX_VARIANTS = 3


def make_variants(question: str, n: int) -> list[str]:
    """
    Return up to n (clamped to 1..3) distinct, non-empty reformulations.

    The original question always comes first.
    """
    n = max(1, min(MAX_VARIANTS, int(n)))
    q = str(question or "").strip()
    out = [q]

    if n >= 2:
        out.append(re.sub(r"\s+", " ", STOPWORDS.sub(" ", q)).strip())

    if n >= 3:
        v = q
        for pattern, replacement in SYNONYMS:
            v = pattern.sub(replacement, v)
        out.append(v.strip())

    seen = set()
    variants = []
    for v in out:
        if v and v not in seen:
            seen.add(v)
            variants.append(v)
    return variants[:n]
