"""External provider adapters: embeddings and categorization."""

from .categorizer import Categorizer, LLMCategorizer, NullCategorizer, build_categorizer
from .embeddings import Embedder, HashEmbedder, OllamaEmbedder, OpenRouterEmbedder, build_embedder
from .openrouter import OpenRouterClient, OpenRouterError

__all__ = [
    "Categorizer",
    "LLMCategorizer",
    "NullCategorizer",
    "build_categorizer",
    "Embedder",
    "HashEmbedder",
    "OllamaEmbedder",
    "OpenRouterEmbedder",
    "build_embedder",
    "OpenRouterClient",
    "OpenRouterError",
]
