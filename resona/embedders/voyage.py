"""
Voyage backend - Retrieval-tuned embedding through the Voyage AI API.
"""

import logging
from typing import List, Optional

import numpy as np
import requests

from ..errors import BackendError, ConfigurationError
from .base import HTTPBackend, resolve_dimensions


logger = logging.getLogger(__name__)

DEFAULT_MODEL = "voyage-3"
DEFAULT_ENDPOINT = "https://api.voyageai.com/v1"
INPUT_TYPES = {"query", "document"}


class VoyageBackend(HTTPBackend):
    """
    Voyage AI embedding backend.

    Models: voyage-3 (1024), voyage-3-large (1024), voyage-3-lite (512),
    voyage-code-3 (1024). input_type distinguishes queries from documents.
    """

    name = "voyage"
    max_batch_size = 128
    supports_async = True

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        dimensions: Optional[int] = None,
        input_type: Optional[str] = None,
        endpoint: Optional[str] = None,
        timeout: float = 60.0,
        max_chars: Optional[int] = None,
    ):
        if input_type is not None and input_type not in INPUT_TYPES:
            raise ConfigurationError(f"input_type must be one of {sorted(INPUT_TYPES)}, got {input_type!r}")
        self.model = model
        self.dimensions = resolve_dimensions(self.name, model, dimensions)
        self.input_type = input_type
        self.max_chars = max_chars
        super().__init__(endpoint or DEFAULT_ENDPOINT, api_key=api_key, timeout=timeout)

    def _body(self, texts: List[str]) -> dict:
        body = {"model": self.model, "input": texts}
        if self.input_type:
            body["input_type"] = self.input_type
        return body

    def embed(self, texts: List[str]) -> List[np.ndarray]:
        if not texts:
            return []

        data = self._post("/embeddings", self._body(self._prepare(texts)))

        items = data.get("data")
        if not items:
            raise BackendError("Voyage returned empty embeddings")

        ordered = sorted(items, key=lambda item: item["index"])
        return self._to_vectors([item["embedding"] for item in ordered], len(texts))

    def health_check(self) -> bool:
        # No dedicated health endpoint; a minimal embedding request instead
        try:
            self._post("/embeddings", self._body(["health check"]), timeout=self.health_timeout)
            return True
        except (BackendError, requests.RequestException) as e:
            logger.debug(f"Voyage health check failed: {e}")
            return False
