"""
Local backend - In-process embedding with sentence-transformers.

Uses ONNX Runtime when enabled and installed (1.5-2x faster than PyTorch),
otherwise PyTorch on the best available device. The model loads lazily on
the first embed call.
"""

import logging
from typing import List, Optional

import numpy as np

from .base import EmbeddingBackend, resolve_dimensions


logger = logging.getLogger(__name__)

DEFAULT_MODEL = "all-MiniLM-L6-v2"


class SentenceTransformerBackend(EmbeddingBackend):
    """
    sentence-transformers embedding backend.

    Features:
    - Lazy model loading
    - ONNX Runtime backend when use_onnx is set
    - Half precision on GPU / Apple Silicon
    - Normalized embeddings (cosine distance = 1 - dot product)
    """

    name = "local"
    max_batch_size = 32
    supports_async = False

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        dimensions: Optional[int] = None,
        use_onnx: bool = False,
        max_chars: Optional[int] = None,
    ):
        self.model = model
        self.use_onnx = use_onnx
        self.max_chars = max_chars
        self._model = None
        self._onnx_loaded = False
        self.dimensions = resolve_dimensions(self.name, model, dimensions)

    def _get_model(self):
        """Lazy-load the embedding model with ONNX support if enabled."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            import torch

            # Determine device
            device = "cpu"
            if torch.backends.mps.is_available():
                device = "mps"
            elif torch.cuda.is_available():
                device = "cuda"

            backend = None
            if self.use_onnx:
                try:
                    import onnxruntime  # noqa: F401
                    backend = "onnx"
                except ImportError:
                    logger.warning(
                        "onnxruntime not installed. Using PyTorch. "
                        "Install with: pip install onnxruntime"
                    )

            if backend == "onnx":
                self._model = SentenceTransformer(self.model, device=device, backend="onnx")
                self._onnx_loaded = True
            else:
                self._model = SentenceTransformer(self.model, device=device)
                if device in ("cuda", "mps"):
                    self._model.half()

            loaded_dim = self._model.get_sentence_embedding_dimension()
            if loaded_dim != self.dimensions:
                logger.warning(
                    f"{self.model} produces {loaded_dim}-dim vectors, configured for {self.dimensions}"
                )

            backend_name = "ONNX" if self._onnx_loaded else "PyTorch"
            logger.info(f"Loaded {backend_name} model {self.model} (dim={loaded_dim}) on {device}")
        return self._model

    def embed(self, texts: List[str]) -> List[np.ndarray]:
        if not texts:
            return []

        model = self._get_model()
        embeddings = model.encode(
            self._prepare(texts),
            batch_size=self.max_batch_size,
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
        return [np.asarray(e, dtype=np.float32) for e in embeddings]

    def health_check(self) -> bool:
        try:
            self._get_model()
            return True
        except Exception as e:
            logger.warning(f"Local model {self.model} failed to load: {e}")
            return False
