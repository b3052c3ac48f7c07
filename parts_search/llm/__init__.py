from .client import OpenAICompatibleClient

__all__ = ["OpenAICompatibleClient"]
