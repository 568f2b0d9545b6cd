"""
Embedding backends.

Providers:
- ollama:  Local Ollama server (default)
- openai:  OpenAI embeddings API
- voyage:  Voyage AI embeddings API
- local:   In-process sentence-transformers model
"""

from ..config import get_config, ResonaConfig
from ..errors import ConfigurationError
from .base import (
    EmbeddingBackend,
    HTTPBackend,
    MODEL_DIMENSIONS,
    get_model_dimensions,
    resolve_dimensions,
)
from .local import SentenceTransformerBackend
from .ollama import OllamaBackend
from .openai import OpenAIBackend
from .voyage import VoyageBackend


PROVIDERS = ("ollama", "openai", "voyage", "local")


def create_backend(config: ResonaConfig | None = None) -> EmbeddingBackend:
    """
    Create the embedding backend selected by the configuration.

    Raises:
        ConfigurationError: unknown provider, missing API key, or unknown
            model without explicit dimensions
    """
    config = config or get_config()
    provider = config.provider

    if provider == "ollama":
        return OllamaBackend(
            model=config.model,
            endpoint=config.endpoint,
            dimensions=config.dimensions,
            timeout=config.request_timeout,
        )

    if provider in ("openai", "voyage"):
        if not config.api_key:
            raise ConfigurationError(f"{provider} requires an API key (RESONA_API_KEY)")
        backend_cls = OpenAIBackend if provider == "openai" else VoyageBackend
        return backend_cls(
            api_key=config.api_key,
            model=config.model,
            dimensions=config.dimensions,
            endpoint=config.endpoint,
            timeout=config.request_timeout,
        )

    if provider == "local":
        return SentenceTransformerBackend(
            model=config.model,
            dimensions=config.dimensions,
            use_onnx=config.use_onnx,
        )

    raise ConfigurationError(f"Unknown provider {provider!r}; expected one of {', '.join(PROVIDERS)}")


__all__ = [
    "EmbeddingBackend",
    "HTTPBackend",
    "MODEL_DIMENSIONS",
    "OllamaBackend",
    "OpenAIBackend",
    "PROVIDERS",
    "SentenceTransformerBackend",
    "VoyageBackend",
    "create_backend",
    "get_model_dimensions",
    "resolve_dimensions",
]
