"""
Ollama backend - Local embedding through an Ollama server.

Requires Ollama running (default: http://localhost:11434).
"""

from typing import List, Optional

import numpy as np

from ..errors import BackendError
from .base import HTTPBackend, resolve_dimensions


DEFAULT_ENDPOINT = "http://localhost:11434"


class OllamaBackend(HTTPBackend):
    """
    Ollama embedding backend.

    Supports models like nomic-embed-text (768), mxbai-embed-large (1024),
    all-minilm (384) and bge-m3 (1024). /api/embed accepts batch input.
    """

    name = "ollama"
    max_batch_size = 10
    supports_async = False

    def __init__(
        self,
        model: str,
        endpoint: Optional[str] = None,
        dimensions: Optional[int] = None,
        timeout: float = 60.0,
        max_chars: Optional[int] = None,
    ):
        self.model = model
        self.dimensions = resolve_dimensions(self.name, model, dimensions)
        self.max_chars = max_chars
        super().__init__(endpoint or DEFAULT_ENDPOINT, timeout=timeout)

    def embed(self, texts: List[str]) -> List[np.ndarray]:
        if not texts:
            return []

        data = self._post("/api/embed", {"model": self.model, "input": self._prepare(texts)})

        embeddings = data.get("embeddings")
        if not embeddings:
            raise BackendError("Ollama returned empty embeddings")

        return self._to_vectors(embeddings, len(texts))

    def health_check(self) -> bool:
        return self._get_ok("/api/tags")
