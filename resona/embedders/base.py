"""
Base class for all embedding backends.

Each backend wraps one provider (a local model or a remote API) behind the
same batch interface. Backends are synchronous; the pipeline runs them in a
thread executor under a deadline.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Union

import numpy as np
import requests

from ..errors import BackendError, ConfigurationError
from ..models import UNSUPPORTED, Unsupported


logger = logging.getLogger(__name__)


# Known model dimensions per provider
OLLAMA_MODEL_DIMENSIONS: Dict[str, int] = {
    "nomic-embed-text": 768,
    "mxbai-embed-large": 1024,
    "all-minilm": 384,
    "bge-m3": 1024,
    "snowflake-arctic-embed": 1024,
}

OPENAI_MODEL_DIMENSIONS: Dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

VOYAGE_MODEL_DIMENSIONS: Dict[str, int] = {
    "voyage-3-large": 1024,
    "voyage-3": 1024,
    "voyage-3-lite": 512,
    "voyage-code-3": 1024,
}

LOCAL_MODEL_DIMENSIONS: Dict[str, int] = {
    "all-MiniLM-L6-v2": 384,
    "all-MiniLM-L12-v2": 384,
    "BAAI/bge-small-en-v1.5": 384,
    "BAAI/bge-base-en-v1.5": 768,
    "BAAI/bge-large-en-v1.5": 1024,
    "nomic-ai/nomic-embed-text-v1.5": 768,
}

MODEL_DIMENSIONS: Dict[str, Dict[str, int]] = {
    "ollama": OLLAMA_MODEL_DIMENSIONS,
    "openai": OPENAI_MODEL_DIMENSIONS,
    "voyage": VOYAGE_MODEL_DIMENSIONS,
    "local": LOCAL_MODEL_DIMENSIONS,
}


def get_model_dimensions(provider: str, model: str) -> Optional[int]:
    """Dimensions of a known model, None if unknown."""
    return MODEL_DIMENSIONS.get(provider, {}).get(model)


def resolve_dimensions(provider: str, model: str, dimensions: Optional[int]) -> int:
    """
    Explicit dimensions win; otherwise the model must be known.

    Raises:
        ConfigurationError: unknown model without explicit dimensions
    """
    if dimensions is not None:
        if dimensions <= 0:
            raise ConfigurationError(f"dimensions must be positive, got {dimensions}")
        return dimensions
    known = get_model_dimensions(provider, model)
    if known is None:
        raise ConfigurationError(
            f'Unknown {provider} model "{model}". Please provide explicit dimensions.'
        )
    return known


class EmbeddingBackend(ABC):
    """
    Base class for all embedding backends.

    To add a new provider:
    1. Create a class extending EmbeddingBackend
    2. Set name, model, dimensions, max_batch_size and supports_async
    3. Implement embed(); override health_check() if the provider has one
    4. Register it in embedders.create_backend()
    """

    name: str
    model: str
    dimensions: int
    max_batch_size: int = 32
    supports_async: bool = False
    max_chars: Optional[int] = None     # Longer texts are truncated before embedding

    @abstractmethod
    def embed(self, texts: List[str]) -> List[np.ndarray]:
        """
        Embed multiple texts in one provider call.

        Args:
            texts: Strings to embed (at most max_batch_size)

        Returns:
            One float32 vector per input text, in input order
        """
        pass

    def embed_single(self, text: str) -> np.ndarray:
        """Embed a single text."""
        return self.embed([text])[0]

    def health_check(self) -> Union[bool, Unsupported]:
        """True if the provider is ready; UNSUPPORTED if it cannot tell."""
        return UNSUPPORTED

    def close(self) -> None:
        """Release clients or models held by the backend."""

    def _prepare(self, texts: List[str]) -> List[str]:
        if self.max_chars is None:
            return list(texts)
        return [t[:self.max_chars] for t in texts]

    def _to_vectors(self, embeddings: List[List[float]], expected: int) -> List[np.ndarray]:
        if len(embeddings) != expected:
            raise BackendError(
                f"{self.name} returned {len(embeddings)} embeddings for {expected} texts"
            )
        return [np.asarray(e, dtype=np.float32) for e in embeddings]

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r}, dimensions={self.dimensions})"


class HTTPBackend(EmbeddingBackend):
    """Shared plumbing for backends reached over HTTP with requests."""

    health_timeout: float = 5.0

    def __init__(self, endpoint: str, api_key: Optional[str] = None, timeout: float = 60.0):
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._session = requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _post(self, path: str, body: dict, timeout: Optional[float] = None) -> dict:
        response = self._session.post(
            f"{self.endpoint}{path}",
            json=body,
            headers=self._headers(),
            timeout=timeout or self.timeout,
        )
        if not response.ok:
            raise BackendError(f"{self.name} embed failed: {response.status_code} {response.text}")
        return response.json()

    def _get_ok(self, path: str) -> bool:
        try:
            response = self._session.get(
                f"{self.endpoint}{path}",
                headers=self._headers(),
                timeout=self.health_timeout,
            )
            return response.ok
        except requests.RequestException as e:
            logger.debug(f"{self.name} health check failed: {e}")
            return False

    def close(self) -> None:
        self._session.close()
