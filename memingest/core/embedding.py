"""
Embedding service clients.

Both clients are synchronous httpx wrappers that either return a vector of
the configured dimensionality or raise EmbeddingError. There is no silent
zero-vector fallback: a failed embedding is a per-item failure that belongs
in the retry queue.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Protocol

import httpx

from memingest.core.config import EmbeddingConfig
from memingest.core.errors import EmbeddingError

logger = logging.getLogger("Memingest.Embedding")


class Embedder(Protocol):
    dimensions: int

    def embed(self, text: str) -> List[float]:
        ...


class _HttpEmbedder(ABC):
    provider = "http"

    def __init__(
        self,
        model: str,
        dimensions: int,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.model = model
        self.dimensions = dimensions
        self.timeout = timeout_seconds
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def _post(self, url: str, payload: dict, headers: Optional[dict] = None) -> dict:
        try:
            response = self._get_client().post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise EmbeddingError(f"Embedding request timed out: {e}", provider=self.provider) from e
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Embedding request failed: {e}", provider=self.provider) from e
        if response.status_code != 200:
            raise EmbeddingError(
                f"Embedding service error: {response.text[:200]}",
                provider=self.provider,
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise EmbeddingError("Embedding service returned invalid JSON", provider=self.provider) from e

    def _validate(self, vector) -> List[float]:
        if not isinstance(vector, list) or not vector:
            raise EmbeddingError("Embedding response has no vector", provider=self.provider)
        if len(vector) != self.dimensions:
            raise EmbeddingError(
                f"Expected {self.dimensions}-dim embedding, got {len(vector)}",
                provider=self.provider,
            )
        return [float(v) for v in vector]

    def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed empty text", provider=self.provider)
        return self._validate(self._request(text))

    @abstractmethod
    def _request(self, text: str):
        """POST one text and return the provider's raw vector."""

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
        self._client = None


class OllamaEmbedder(_HttpEmbedder):
    """Ollama /api/embeddings client."""

    provider = "ollama"

    def __init__(self, base_url: str = "http://localhost:11434", model: str = "nomic-embed-text",
                 dimensions: int = 768, timeout_seconds: float = 30.0,
                 client: Optional[httpx.Client] = None):
        super().__init__(model, dimensions, timeout_seconds, client)
        self.base_url = base_url.rstrip("/")

    def _request(self, text: str):
        body = self._post(
            f"{self.base_url}/api/embeddings",
            {"model": self.model, "prompt": text},
        )
        return body.get("embedding") if isinstance(body, dict) else None


class OpenAIEmbedder(_HttpEmbedder):
    """OpenAI-compatible /embeddings client."""

    provider = "openai"

    def __init__(self, base_url: str = "https://api.openai.com/v1", model: str = "text-embedding-3-small",
                 dimensions: int = 1536, api_key: Optional[str] = None,
                 timeout_seconds: float = 30.0, client: Optional[httpx.Client] = None):
        super().__init__(model, dimensions, timeout_seconds, client)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    def _request(self, text: str):
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        body = self._post(
            f"{self.base_url}/embeddings",
            {"model": self.model, "input": text, "dimensions": self.dimensions},
            headers=headers,
        )
        try:
            return body["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError):
            return None


def build_embedder(config: EmbeddingConfig, client: Optional[httpx.Client] = None) -> _HttpEmbedder:
    """Construct the embedder named by ``config.provider``."""
    if config.provider == "openai":
        logger.info("Using OpenAI-compatible embeddings: %s (%d dims)", config.model, config.dimensions)
        return OpenAIEmbedder(
            base_url=config.openai_url,
            model=config.model,
            dimensions=config.dimensions,
            api_key=config.api_key,
            timeout_seconds=config.timeout_seconds,
            client=client,
        )
    logger.info("Using Ollama embeddings: %s (%d dims)", config.model, config.dimensions)
    return OllamaEmbedder(
        base_url=config.ollama_url,
        model=config.model,
        dimensions=config.dimensions,
        timeout_seconds=config.timeout_seconds,
        client=client,
    )
