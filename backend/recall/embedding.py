"""
Embedding providers for the semantic index.

Provides:
- HashEmbeddingProvider: deterministic signed feature hashing, no network
- RemoteEmbeddingProvider: OpenAI-compatible ``/embeddings`` endpoint via httpx

Both expose ``async embed(texts) -> List[List[float]]``, one vector per input
in input order, plus ``model_name`` and ``dimension``.
"""

import hashlib
import logging
import math
import re
from typing import Any, Dict, List, Optional, Protocol

import httpx

from recall.config import EngineSettings
from recall.errors import EmbeddingError

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    """Interface of an embedding backend."""

    model_name: str

    async def embed(self, texts: List[str]) -> List[List[float]]:
        ...


def _normalize_text(content: str) -> str:
    return re.sub(r"\s+", " ", (content or "").strip().lower())


class HashEmbeddingProvider:
    """
    Bag-of-tokens hashing embedder.

    Texts sharing tokens land close together, which is enough for offline use
    and for tests. Each token touches four signed buckets.
    """

    def __init__(self, dimension: int = 64, model_name: str = "hash-v1"):
        self.dimension = max(16, int(dimension))
        self.model_name = model_name

    def embed_one(self, content: str) -> List[float]:
        vector = [0.0] * self.dimension

        normalized = _normalize_text(content)
        tokens = re.findall(r"[a-z0-9_]+", normalized)
        if not tokens and normalized:
            tokens = list(normalized)

        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            for i in range(0, 8, 2):
                idx = digest[i] % self.dimension
                sign = -1.0 if (digest[i + 1] & 1) else 1.0
                weight = 1.0 + (digest[(i + 2) % len(digest)] / 255.0)
                vector[idx] += sign * weight

        norm = math.sqrt(sum(v * v for v in vector))
        if norm <= 0:
            return [0.0] * self.dimension
        return [v / norm for v in vector]

    async def embed(self, texts: List[str]) -> List[List[float]]:
        return [self.embed_one(text) for text in texts]


class RemoteEmbeddingProvider:
    """Embedding backend calling an OpenAI-compatible HTTP API."""

    def __init__(
        self,
        api_base: str,
        model_name: str,
        api_key: str = "",
        timeout_sec: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base = self._normalize_api_base(api_base)
        self.model_name = model_name
        self._api_key = api_key
        self._timeout_sec = max(1.0, float(timeout_sec))
        self._transport = transport

    @staticmethod
    def _normalize_api_base(base: str) -> str:
        normalized = (base or "").strip().rstrip("/")
        if normalized.lower().endswith("/embeddings"):
            return normalized[: -len("/embeddings")]
        return normalized

    @staticmethod
    def _extract_vectors(payload: Any) -> Optional[List[Any]]:
        if isinstance(payload, list):
            return payload
        if not isinstance(payload, dict):
            return None

        data = payload.get("data")
        if isinstance(data, list) and data:
            return [
                item.get("embedding") if isinstance(item, dict) else item
                for item in data
            ]

        embeddings = payload.get("embeddings")
        if isinstance(embeddings, list) and embeddings:
            return embeddings

        embedding = payload.get("embedding")
        if isinstance(embedding, list) and embedding:
            return [embedding]

        result = payload.get("result")
        if isinstance(result, dict):
            return RemoteEmbeddingProvider._extract_vectors(result)
        return None

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not self.api_base:
            raise EmbeddingError("embedding API base URL is not configured")
        if not self.model_name:
            raise EmbeddingError("embedding model is not configured")

        url = f"{self.api_base}/embeddings"
        payload = {"model": self.model_name, "input": list(texts)}
        try:
            timeout = httpx.Timeout(self._timeout_sec)
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=self._headers())
                response.raise_for_status()
                parsed = response.json()
        except httpx.TimeoutException as exc:
            raise EmbeddingError(f"embedding request timed out after {self._timeout_sec}s") from exc
        except httpx.HTTPStatusError as exc:
            raise EmbeddingError(
                f"embedding request failed with HTTP {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise EmbeddingError(f"embedding request failed: {exc}") from exc
        except ValueError as exc:
            raise EmbeddingError("embedding response is not valid JSON") from exc

        raw_vectors = self._extract_vectors(parsed)
        if raw_vectors is None or len(raw_vectors) != len(texts):
            raise EmbeddingError(
                f"embedding response has unexpected shape (expected {len(texts)} vectors)"
            )

        vectors: List[List[float]] = []
        for raw in raw_vectors:
            if not isinstance(raw, list) or not raw:
                raise EmbeddingError("embedding response contains an empty or non-list vector")
            try:
                vectors.append([float(v) for v in raw])
            except (TypeError, ValueError) as exc:
                raise EmbeddingError("embedding response contains non-numeric values") from exc

        dimensions = {len(v) for v in vectors}
        if len(dimensions) > 1:
            raise EmbeddingError("embedding response vectors differ in length")
        return vectors


def create_embedding_provider(settings: EngineSettings) -> EmbeddingProvider:
    """Build the provider selected by ``RETRIEVAL_EMBEDDING_BACKEND``."""
    if settings.embedding_backend == "hash":
        return HashEmbeddingProvider(
            dimension=settings.embedding_dim,
            model_name=settings.embedding_model or "hash-v1",
        )
    logger.info(
        "Using remote embedding backend %s (model=%s)",
        settings.embedding_backend,
        settings.embedding_model,
    )
    return RemoteEmbeddingProvider(
        api_base=settings.embedding_api_base,
        model_name=settings.embedding_model,
        api_key=settings.embedding_api_key,
        timeout_sec=settings.remote_timeout_sec,
    )
