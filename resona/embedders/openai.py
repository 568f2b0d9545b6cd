"""
OpenAI backend - Cloud embedding through the OpenAI embeddings API.

Requires an API key. A custom endpoint works for Azure OpenAI or proxies.
"""

from typing import List, Optional

import numpy as np

from ..errors import BackendError
from .base import HTTPBackend, resolve_dimensions


DEFAULT_MODEL = "text-embedding-3-small"
DEFAULT_ENDPOINT = "https://api.openai.com/v1"


class OpenAIBackend(HTTPBackend):
    """
    OpenAI embedding backend.

    Models: text-embedding-3-small (1536, reducible), text-embedding-3-large
    (3072, reducible), text-embedding-ada-002 (1536). Explicit dimensions are
    sent to the API so third-generation models return reduced vectors.
    """

    name = "openai"
    max_batch_size = 2048
    supports_async = True

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        dimensions: Optional[int] = None,
        endpoint: Optional[str] = None,
        timeout: float = 60.0,
        max_chars: Optional[int] = None,
    ):
        self.model = model
        self.dimensions = resolve_dimensions(self.name, model, dimensions)
        self._custom_dimensions = dimensions
        self.max_chars = max_chars
        super().__init__(endpoint or DEFAULT_ENDPOINT, api_key=api_key, timeout=timeout)

    def embed(self, texts: List[str]) -> List[np.ndarray]:
        if not texts:
            return []

        body = {"model": self.model, "input": self._prepare(texts)}
        if self._custom_dimensions is not None:
            body["dimensions"] = self._custom_dimensions

        data = self._post("/embeddings", body)

        items = data.get("data")
        if not items:
            raise BackendError("OpenAI returned empty embeddings")

        # Sort by index to ensure input order
        ordered = sorted(items, key=lambda item: item["index"])
        return self._to_vectors([item["embedding"] for item in ordered], len(texts))

    def health_check(self) -> bool:
        return self._get_ok("/models")
