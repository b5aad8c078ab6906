"""
Error taxonomy for the retrieval core.

Every error carries a stable ``kind`` so callers can tell apart
"try again later" (rate limit) from "fix configuration" (index missing)
without string matching. A citation rejection is NOT an error: the arbiter
reports it through ``ArbitrationResult.accepted``.
"""
from enum import Enum


class ErrorKind(str, Enum):
    """Stable error identifiers exposed to clients."""
    INDEX_NOT_FOUND = "index_not_found"
    INDEX_INVALID = "index_invalid"
    EMBED_DIM_MISMATCH = "embed_dim_mismatch"
    EMBEDDING_PROVIDER_ERROR = "embedding_provider_error"
    GENERATION_TIMEOUT = "generation_timeout"
    RATE_LIMITED = "rate_limited"
    GENERATION_ERROR = "generation_error"


class RetrievalError(Exception):
    """Base class for all expected failures of the retrieval pipeline."""
    kind: ErrorKind = ErrorKind.GENERATION_ERROR
    retryable: bool = False

    def details(self) -> dict:
        """Structured, client-safe details for the error payload."""
        return {}


class IndexNotFound(RetrievalError):
    """The persisted index artifact does not exist."""
    kind = ErrorKind.INDEX_NOT_FOUND

    def __init__(self, path: str):
        super().__init__(f"Vector index not found at {path}")
        self.path = path

    def details(self) -> dict:
        return {"hint": "Build the index with `python -m ingest.ingest_cli` then reload."}


class IndexInvalid(RetrievalError):
    """The artifact exists but violates the docs/vectors/dim invariants."""
    kind = ErrorKind.INDEX_INVALID

    def __init__(self, path: str, reason: str):
        super().__init__(f"Vector index at {path} is invalid: {reason}")
        self.path = path
        self.reason = reason

    def details(self) -> dict:
        return {"reason": self.reason}


class EmbedDimMismatch(RetrievalError):
    """Query embedding dimensionality differs from the index (model/index skew)."""
    kind = ErrorKind.EMBED_DIM_MISMATCH

    def __init__(self, index_dim: int, query_dim: int, index_model: str):
        super().__init__(
            f"Query embedding has dim={query_dim} but index '{index_model}' has dim={index_dim}"
        )
        self.index_dim = index_dim
        self.query_dim = query_dim
        self.index_model = index_model

    def details(self) -> dict:
        return {
            "index_dim": self.index_dim,
            "query_dim": self.query_dim,
            "index_model": self.index_model,
        }


class EmbeddingProviderError(RetrievalError):
    """The embedding provider failed on a cache miss. Not retried here."""
    kind = ErrorKind.EMBEDDING_PROVIDER_ERROR


class GenerationError(RetrievalError):
    """Generic failure of the text-generation provider."""
    kind = ErrorKind.GENERATION_ERROR


class GenerationTimeout(GenerationError):
    """The end-to-end deadline elapsed while waiting on generation."""
    kind = ErrorKind.GENERATION_TIMEOUT
    retryable = True


class RateLimited(GenerationError):
    """The generation provider reported quota exhaustion."""
    kind = ErrorKind.RATE_LIMITED
    retryable = True

    def __init__(self, message: str = "Rate limit / quota exceeded", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after

    def details(self) -> dict:
        return {"retry_after_sec": self.retry_after}
