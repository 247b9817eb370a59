from .base import BaseProvider, LLMProviderError
from .openrouter import OpenRouterProvider

__all__ = ["BaseProvider", "LLMProviderError", "OpenRouterProvider"]
