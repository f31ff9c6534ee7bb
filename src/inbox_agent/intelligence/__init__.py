"""Reply generation services."""

from .drafter import DraftingError, DraftResult, ReplyDrafter
from .llm import LLMClient, LLMError, OllamaClient, build_llm_client

__all__ = [
    "DraftResult",
    "DraftingError",
    "LLMClient",
    "LLMError",
    "OllamaClient",
    "ReplyDrafter",
    "build_llm_client",
]
