"""Language model adapters."""

from .client import ChatOpenAILanguageModel, LanguageModel

__all__ = ["ChatOpenAILanguageModel", "LanguageModel"]
