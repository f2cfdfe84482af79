from app.services.llm.base import LLMError, LLMProvider, LLMResponse
from app.services.llm.openai_provider import OpenAIProvider, build_media_part

__all__ = ["LLMError", "LLMProvider", "LLMResponse", "OpenAIProvider", "build_media_part"]
