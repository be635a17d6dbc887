from leadflow.services.llm.base import ChatMessage, LLMProvider, LLMResponse
from leadflow.services.llm.openai_provider import OpenAIProvider

__all__ = ["ChatMessage", "LLMProvider", "LLMResponse", "OpenAIProvider"]
