"""
Embedding Service for Legal Retrieval

Converts fragment texts and queries into fixed-dimension vectors through a
hosted embedding API, with batching, caching, classified retries, and an
opt-in degraded fallback.

Architecture:
    BaseEmbeddingService  -- shared batching, caching, retries, HTTP error mapping
        OpenAIEmbeddingService   -- OpenAI-compatible /embeddings (default, 1536d)
        CohereEmbeddingService   -- Cohere embed-multilingual-v3.0 (1024d)
        VoyageEmbeddingService   -- Voyage AI voyage-multilingual-2 (1024d)
        HashEmbeddingService     -- deterministic synthetic vectors, always degraded

Provider errors never leave this module raw: every failure is an
EmbeddingError with a provider-neutral category, and response bodies are
only written to the log.
"""

import os
import json
import time
import hashlib
import logging
from typing import Optional
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import requests

from .errors import DataIntegrityError, EmbeddingError, ErrorCategory
from .retry import RetryPolicy, is_transient_embedding_error, retry_with_backoff

logger = logging.getLogger(__name__)

# Caller-facing messages per category; provider payloads stay in the log
_ERROR_MESSAGES = {
    ErrorCategory.AUTH: "Embedding provider rejected the configured credentials",
    ErrorCategory.RATE_LIMIT: "Embedding provider rate limit exceeded",
    ErrorCategory.TRANSIENT_SERVER: "Embedding provider is temporarily unavailable",
    ErrorCategory.TIMEOUT: "Embedding request timed out",
    ErrorCategory.CONNECTION: "Could not reach the embedding provider",
    ErrorCategory.INVALID_REQUEST: "Embedding provider rejected the request as malformed",
    ErrorCategory.UNKNOWN: "Embedding request failed",
}


@dataclass
class EmbeddingConfig:
    """Configuration for embedding service."""
    provider: str = "openai"  # "openai", "cohere", "voyage" or "hash"
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 100
    max_tokens_per_batch: int = 100000
    chars_per_token: float = 4.0
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    request_timeout: float = 60.0
    # Retry on rate limits, 5xx and network errors
    max_retries: int = 5
    retry_base_delay: float = 2.0
    retry_max_delay: float = 10.0
    batch_pause: float = 0.1  # Between batches, to stay under rate limits
    # Replace failed document batches with hash vectors flagged as degraded
    fallback_to_hash: bool = False
    cache_dir: Optional[str] = None
    use_cache: bool = True


@dataclass
class EmbeddingResult:
    """Vectors for a batch of texts plus the positions that are synthetic."""
    vectors: list[list[float]]
    degraded_indices: list[int] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_indices)

    def is_degraded(self, index: int) -> bool:
        return index in self.degraded_indices


def classify_status(status_code: int) -> ErrorCategory:
    """Map an HTTP status from any provider onto an error category."""
    if status_code in (401, 403):
        return ErrorCategory.AUTH
    if status_code == 429:
        return ErrorCategory.RATE_LIMIT
    if status_code == 408:
        return ErrorCategory.TIMEOUT
    if status_code >= 500:
        return ErrorCategory.TRANSIENT_SERVER
    if status_code in (400, 404, 413, 422):
        return ErrorCategory.INVALID_REQUEST
    return ErrorCategory.UNKNOWN


def hash_embedding(text: str, dimensions: int) -> list[float]:
    """
    Deterministic unit vector seeded from the SHA-256 of ``text``.

    Carries no semantics beyond exact-text identity; only useful to keep a
    pipeline moving when no provider is reachable.
    """
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    rng = np.random.default_rng(int.from_bytes(digest[:8], "big"))
    vector = rng.standard_normal(dimensions)
    norm = np.linalg.norm(vector)
    if norm:
        vector = vector / norm
    return vector.tolist()


class BaseEmbeddingService:
    """
    Base class for HTTP embedding providers.

    Provides shared functionality:
    - Batched embedding with progress logging and inter-batch pauses
    - Memory and file-based caching
    - Classified retries with exponential backoff
    - HTTP status to ErrorCategory mapping

    Subclasses implement:
    - _endpoint(): URL of the embeddings endpoint
    - _build_payload(texts, input_type): JSON request body
    - _parse_response(data): list of vectors in input order
    """

    _provider_name: str = "Base"
    _api_key_env_vars: tuple = ()
    _doc_input_type: str = "document"
    _query_input_type: str = "query"

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        """
        Initialize embedding service.

        Args:
            config: Optional configuration. Uses defaults if not provided.
        """
        self.config = config or EmbeddingConfig()
        self._client: Optional[requests.Session] = None
        self._cache = {}
        self._sleep = time.sleep

        if self.config.cache_dir:
            self._cache_path = Path(self.config.cache_dir)
            self._cache_path.mkdir(parents=True, exist_ok=True)
        else:
            self._cache_path = None

        self._init_client()

    def _init_client(self):
        """Create an authenticated HTTP session if an API key is available."""
        api_key = self.config.api_key
        if not api_key:
            for name in self._api_key_env_vars:
                api_key = os.getenv(name)
                if api_key:
                    break

        if not api_key:
            logger.warning(
                f"{self._provider_name} API key not set "
                f"({' / '.join(self._api_key_env_vars)}). Embedding calls will fail."
            )
            self._client = None
            return

        session = requests.Session()
        session.headers.update({
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        })
        self._client = session
        logger.info(f"{self._provider_name} embedding client initialized ({self.config.model})")

    def is_available(self) -> bool:
        return self._client is not None

    def _require_client(self) -> None:
        if not self.is_available():
            raise EmbeddingError(
                f"{self._provider_name} embedding provider is not configured",
                ErrorCategory.AUTH,
            )

    # -------------------------------------------------------------------------
    # Provider hooks
    # -------------------------------------------------------------------------

    def _endpoint(self) -> str:
        raise NotImplementedError("Subclasses must implement _endpoint()")

    def _build_payload(self, texts: list[str], input_type: str) -> dict:
        raise NotImplementedError("Subclasses must implement _build_payload()")

    def _parse_response(self, data: dict) -> list[list[float]]:
        raise NotImplementedError("Subclasses must implement _parse_response()")

    # -------------------------------------------------------------------------
    # Batching
    # -------------------------------------------------------------------------

    def _create_batches(self, texts: list[str], batch_size: Optional[int] = None) -> list[list[str]]:
        """Split texts into batches respecting both item count and token limits."""
        batch_size = min(batch_size or self.config.batch_size, self.config.batch_size)
        batches = []
        current_batch = []
        current_tokens = 0
        cpt = self.config.chars_per_token

        for text in texts:
            est_tokens = len(text) / cpt
            if current_batch and (
                len(current_batch) >= batch_size
                or current_tokens + est_tokens > self.config.max_tokens_per_batch
            ):
                batches.append(current_batch)
                current_batch = []
                current_tokens = 0
            current_batch.append(text)
            current_tokens += est_tokens

        if current_batch:
            batches.append(current_batch)

        return batches

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for fragment texts.

        Args:
            texts: List of text strings to embed

        Returns:
            List of embedding vectors, one per input
        """
        return self.embed_documents_detailed(texts).vectors

    def embed_documents_detailed(
        self,
        texts: list[str],
        batch_size: Optional[int] = None,
    ) -> EmbeddingResult:
        """
        Embed fragment texts and report which vectors are synthetic.

        Args:
            texts: Texts to embed.
            batch_size: Optional smaller batch size for this call.

        Returns:
            EmbeddingResult with one vector per input. ``degraded_indices`` is
            only non-empty when ``fallback_to_hash`` is enabled and a batch
            failed after its retries.
        """
        if not texts:
            return EmbeddingResult(vectors=[])

        if not self.config.fallback_to_hash:
            self._require_client()

        batches = self._create_batches(texts, batch_size)
        logger.info(
            f"Embedding {len(texts)} texts in {len(batches)} batches"
            f" with {self._provider_name}"
        )

        vectors: list[list[float]] = []
        degraded: list[int] = []
        for batch_idx, batch in enumerate(batches):
            if batch_idx > 0 and self.config.batch_pause > 0:
                self._sleep(self.config.batch_pause)

            try:
                self._require_client()
                batch_vectors = self._embed_batch(batch, input_type=self._doc_input_type)
            except EmbeddingError as e:
                if not self.config.fallback_to_hash or e.category == ErrorCategory.INVALID_REQUEST:
                    raise
                logger.warning(
                    f"{self._provider_name} unavailable ({e.category.value}); "
                    f"using degraded hash vectors for {len(batch)} texts"
                )
                start = len(vectors)
                degraded.extend(range(start, start + len(batch)))
                batch_vectors = [hash_embedding(t, self.config.dimensions) for t in batch]

            vectors.extend(batch_vectors)

            if (batch_idx + 1) % 10 == 0:
                logger.info(f"Processed batch {batch_idx + 1}/{len(batches)}")

        return EmbeddingResult(vectors=vectors, degraded_indices=degraded)

    def embed_query(self, query: str) -> list[float]:
        """
        Generate embedding for a search query.

        Never falls back to synthetic vectors: a query that cannot be
        embedded cannot be meaningfully ranked.

        Args:
            query: Search query string

        Returns:
            Embedding vector
        """
        self._require_client()

        cache_key = self._get_cache_key(query, self._query_input_type)
        cached = self._get_cached(cache_key)
        if cached is not None:
            return cached

        result = self._embed_batch([query], input_type=self._query_input_type)
        return result[0]

    def _embed_batch(self, texts: list[str], input_type: str = "document") -> list[list[float]]:
        """Embed a batch of texts, serving what we can from cache."""
        results = []
        uncached_texts = []
        uncached_indices = []

        for i, text in enumerate(texts):
            cache_key = self._get_cache_key(text, input_type)
            cached = self._get_cached(cache_key)
            if cached is not None:
                results.append((i, cached))
            else:
                uncached_texts.append(text)
                uncached_indices.append(i)

        if uncached_texts:
            policy = RetryPolicy(
                max_attempts=self.config.max_retries,
                base_delay=self.config.retry_base_delay,
                max_delay=self.config.retry_max_delay,
            )
            embeddings = retry_with_backoff(
                lambda: self._request_embeddings(uncached_texts, input_type),
                is_retryable=is_transient_embedding_error,
                policy=policy,
                label=f"{self._provider_name} embeddings",
                sleep=self._sleep,
            )
            self._check_shape(embeddings, len(uncached_texts))

            for idx, embedding in zip(uncached_indices, embeddings):
                cache_key = self._get_cache_key(texts[idx], input_type)
                self._set_cached(cache_key, embedding)
                results.append((idx, embedding))

        results.sort(key=lambda x: x[0])
        return [emb for _, emb in results]

    def _check_shape(self, embeddings: list[list[float]], expected: int) -> None:
        if len(embeddings) != expected:
            raise DataIntegrityError(
                f"{self._provider_name} returned {len(embeddings)} embeddings for {expected} texts"
            )
        for embedding in embeddings:
            if len(embedding) != self.config.dimensions:
                raise DataIntegrityError(
                    f"{self._provider_name} returned a {len(embedding)}-dimensional vector, "
                    f"expected {self.config.dimensions}"
                )

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------

    def _request_embeddings(self, texts: list[str], input_type: str) -> list[list[float]]:
        """One POST to the provider, with failures mapped to EmbeddingError."""
        payload = self._build_payload(texts, input_type)
        try:
            response = self._client.post(
                self._endpoint(),
                json=payload,
                timeout=self.config.request_timeout,
            )
        except requests.Timeout as e:
            logger.error(f"{self._provider_name} request timed out: {e}")
            raise EmbeddingError(_ERROR_MESSAGES[ErrorCategory.TIMEOUT], ErrorCategory.TIMEOUT)
        except requests.ConnectionError as e:
            logger.error(f"{self._provider_name} connection failed: {e}")
            raise EmbeddingError(_ERROR_MESSAGES[ErrorCategory.CONNECTION], ErrorCategory.CONNECTION)
        except requests.RequestException as e:
            # Broken transfers, bad encodings, redirect loops
            logger.error(f"{self._provider_name} request failed: {type(e).__name__}: {e}")
            raise EmbeddingError(_ERROR_MESSAGES[ErrorCategory.CONNECTION], ErrorCategory.CONNECTION)

        if response.status_code >= 400:
            category = classify_status(response.status_code)
            logger.error(
                f"{self._provider_name} embedding failed with HTTP {response.status_code}: "
                f"{response.text[:500]}"
            )
            raise EmbeddingError(
                _ERROR_MESSAGES[category], category, status_code=response.status_code,
            )

        try:
            return self._parse_response(response.json())
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"{self._provider_name} returned an unreadable response: {e}")
            raise EmbeddingError(_ERROR_MESSAGES[ErrorCategory.UNKNOWN], ErrorCategory.UNKNOWN)

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    def _get_cache_key(self, text: str, input_type: str) -> str:
        """Generate cache key for text."""
        content = f"{self.config.model}:{input_type}:{text}"
        return hashlib.sha256(content.encode()).hexdigest()[:32]

    def _get_cached(self, key: str) -> Optional[list[float]]:
        """Get cached embedding."""
        if not self.config.use_cache:
            return None

        if key in self._cache:
            return self._cache[key]

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            if cache_file.exists():
                try:
                    with open(cache_file) as f:
                        embedding = json.load(f)
                        self._cache[key] = embedding
                        return embedding
                except (OSError, ValueError) as e:
                    logger.debug(f"Failed to read embedding cache file {cache_file}: {e}")

        return None

    def _set_cached(self, key: str, embedding: list[float]) -> None:
        """Cache an embedding."""
        if not self.config.use_cache:
            return

        self._cache[key] = embedding

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            try:
                with open(cache_file, "w") as f:
                    json.dump(embedding, f)
            except OSError as e:
                logger.warning(f"Failed to cache embedding: {e}")

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self.config.dimensions


class OpenAIEmbeddingService(BaseEmbeddingService):
    """
    OpenAI-compatible embeddings endpoint.

    Works against api.openai.com or any gateway exposing the same
    ``POST /embeddings`` contract (OPENAI_BASE_URL).
    """

    _provider_name = "OpenAI"
    _api_key_env_vars = ("EMBEDDING_API_KEY", "OPENAI_API_KEY")

    def _endpoint(self) -> str:
        base_url = (
            self.config.base_url
            or os.getenv("OPENAI_BASE_URL")
            or "https://api.openai.com/v1"
        )
        return f"{base_url.rstrip('/')}/embeddings"

    def _build_payload(self, texts: list[str], input_type: str) -> dict:
        payload = {"model": self.config.model, "input": texts}
        # Only the v3 models accept a reduced output dimension
        if self.config.model.startswith("text-embedding-3"):
            payload["dimensions"] = self.config.dimensions
        return payload

    def _parse_response(self, data: dict) -> list[list[float]]:
        items = sorted(data["data"], key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in items]


class CohereEmbeddingService(BaseEmbeddingService):
    """
    Cohere embed-v3 over its REST API.

    Uses distinct input types for documents and queries.
    """

    _provider_name = "Cohere"
    _api_key_env_vars = ("COHERE_API_KEY",)
    _doc_input_type = "search_document"
    _query_input_type = "search_query"

    def _endpoint(self) -> str:
        return self.config.base_url or "https://api.cohere.ai/v1/embed"

    def _build_payload(self, texts: list[str], input_type: str) -> dict:
        return {
            "model": self.config.model,
            "texts": texts,
            "input_type": input_type,
            "truncate": "END",
        }

    def _parse_response(self, data: dict) -> list[list[float]]:
        embeddings = data["embeddings"]
        # Typed responses nest vectors per embedding type
        if isinstance(embeddings, dict):
            embeddings = embeddings["float"]
        return embeddings


class VoyageEmbeddingService(BaseEmbeddingService):
    """Voyage AI embeddings over its REST API."""

    _provider_name = "Voyage"
    _api_key_env_vars = ("VOYAGE_API_KEY",)
    _doc_input_type = "document"
    _query_input_type = "query"

    def _endpoint(self) -> str:
        return self.config.base_url or "https://api.voyageai.com/v1/embeddings"

    def _build_payload(self, texts: list[str], input_type: str) -> dict:
        return {
            "model": self.config.model,
            "input": texts,
            "input_type": input_type,
        }

    def _parse_response(self, data: dict) -> list[list[float]]:
        items = sorted(data["data"], key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in items]


class HashEmbeddingService(BaseEmbeddingService):
    """
    Synthetic provider for degraded operation and offline development.

    Every vector it produces is reported as degraded.
    """

    _provider_name = "Hash"

    def _init_client(self):
        logger.warning("Using hash embeddings: vectors carry no semantic similarity")

    def is_available(self) -> bool:
        return True

    def _request_embeddings(self, texts: list[str], input_type: str) -> list[list[float]]:
        return [hash_embedding(t, self.config.dimensions) for t in texts]

    def embed_documents_detailed(
        self,
        texts: list[str],
        batch_size: Optional[int] = None,
    ) -> EmbeddingResult:
        vectors = [hash_embedding(t, self.config.dimensions) for t in texts]
        return EmbeddingResult(vectors=vectors, degraded_indices=list(range(len(vectors))))


_PROVIDER_DEFAULTS = {
    "openai": (OpenAIEmbeddingService, "text-embedding-3-small", 1536, 100),
    "cohere": (CohereEmbeddingService, "embed-multilingual-v3.0", 1024, 96),
    "voyage": (VoyageEmbeddingService, "voyage-multilingual-2", 1024, 128),
    "hash": (HashEmbeddingService, "sha256", 1536, 100),
}


def get_embedding_service(
    provider: Optional[str] = None,
    config: Optional[EmbeddingConfig] = None,
) -> BaseEmbeddingService:
    """
    Factory function to get the configured embedding service.

    Args:
        provider: "openai", "cohere", "voyage" or "hash". Defaults to
            EMBEDDING_PROVIDER, then "openai".
        config: Full configuration; when given, provider defaults are skipped.

    Returns:
        Configured embedding service
    """
    prov = (provider or (config.provider if config else None)
            or os.getenv("EMBEDDING_PROVIDER", "openai")).strip().lower()
    if prov not in _PROVIDER_DEFAULTS:
        raise ValueError(
            f"Unknown embedding provider {prov!r}; "
            f"expected one of {sorted(_PROVIDER_DEFAULTS)}"
        )

    service_cls, model, dimensions, batch_size = _PROVIDER_DEFAULTS[prov]
    if config is None:
        config = EmbeddingConfig(
            provider=prov,
            model=os.getenv("EMBEDDING_MODEL") or model,
            dimensions=int(os.getenv("EMBEDDING_DIMENSIONS") or dimensions),
            batch_size=batch_size,
            fallback_to_hash=os.getenv("EMBEDDING_HASH_FALLBACK", "").lower() in ("1", "true", "yes"),
        )
    return service_cls(config)


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    service = get_embedding_service()
    print(f"Using embedding provider: {service.config.provider} ({service.config.model})")

    if len(sys.argv) > 1:
        query = " ".join(sys.argv[1:])
    else:
        query = "suspensión del acto reclamado en el juicio de amparo"

    print(f"Query: {query}")
    embedding = service.embed_query(query)
    print(f"Embedding dimensions: {len(embedding)}")
    print(f"First 10 values: {embedding[:10]}")
