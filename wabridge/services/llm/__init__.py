from wabridge.services.llm.base import LLMProvider, LLMResponse
from wabridge.services.llm.openai_provider import OpenAIProvider

__all__ = ["LLMProvider", "LLMResponse", "OpenAIProvider"]
