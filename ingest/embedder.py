"""
Embedding utilities for the index builder.
Uses OpenAI's embedding API with batching and backoff on rate limits.
"""
import time

from openai import OpenAI, RateLimitError

from rag_api.config import settings
from rag_api.logging_config import get_logger

logger = get_logger(__name__)

MAX_RETRIES = 3


def get_embeddings(
    texts: list[str],
    batch_size: int = 128,
    model: str | None = None,
    client: OpenAI | None = None,
    sleep=time.sleep,
) -> tuple[list[list[float]], int]:
    """
    Generate embeddings for a list of texts using OpenAI's API.

    Args:
        texts: List of text strings to embed.
        batch_size: Number of texts to embed per API call.
        model: Embedding model (default: OPENAI_EMBEDDING_MODEL).
        client: OpenAI client (default: built from OPENAI_API_KEY).

    Returns:
        Tuple of (embeddings list, embedding dimension).
    """
    if not texts:
        return [], 0

    model = model or settings.embedding_model
    client = client or OpenAI(api_key=settings.openai_api_key)
    all_embeddings: list[list[float]] = []
    dimension = 0

    for i in range(0, len(texts), batch_size):
        batch = texts[i:i + batch_size]
        retries = 0

        while True:
            try:
                response = client.embeddings.create(model=model, input=batch)
                break
            except RateLimitError:
                retries += 1
                if retries >= MAX_RETRIES:
                    raise
                wait_time = 2 ** retries  # Exponential backoff: 2, 4 seconds
                logger.warning(f"embed rate limited | batch={i // batch_size} | wait={wait_time}s")
                sleep(wait_time)

        batch_embeddings = [list(item.embedding) for item in response.data]
        all_embeddings.extend(batch_embeddings)
        if dimension == 0 and batch_embeddings:
            dimension = len(batch_embeddings[0])

    return all_embeddings, dimension
