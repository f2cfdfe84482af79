import base64
from typing import List, Optional

import httpx

from app.logging_config import get_logger
from app.services.llm.base import LLMError, LLMProvider, LLMResponse

logger = get_logger("llm.openai")

PDF_MIME = "application/pdf"


def build_media_part(media_bytes: bytes, mime_type: str, *, file_name: Optional[str] = None) -> dict:
    """Build an inline chat-completions content part for an image or a PDF."""
    encoded = base64.b64encode(media_bytes).decode("ascii")
    data_url = f"data:{mime_type};base64,{encoded}"
    if mime_type == PDF_MIME:
        return {
            "type": "file",
            "file": {"filename": file_name or "comprovante.pdf", "file_data": data_url},
        }
    return {"type": "image_url", "image_url": {"url": data_url, "detail": "high"}}


class OpenAIProvider(LLMProvider):
    """OpenAI API provider."""

    def __init__(self, api_key: str, default_model: str = "gpt-4o-mini", base_url: str = "https://api.openai.com/v1"):
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = f"{base_url.rstrip('/')}/chat/completions"

    def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: int = 400,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Generate response from OpenAI."""

        model = model or self.default_model

        timeout = timeout_seconds if timeout_seconds is not None else 60.0
        with httpx.Client(timeout=timeout) as client:
            payload = {
                "model": model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
            logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

            response = client.post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )

            logger.debug(f"OpenAI response status: {response.status_code}")

            if response.status_code != 200:
                logger.error(f"OpenAI error: {response.text[:500]}")
                raise LLMError(
                    f"OpenAI API error: {response.status_code} - {response.text[:200]}",
                    status_code=response.status_code,
                )

            try:
                data = response.json()
            except ValueError as exc:
                logger.error(f"OpenAI non-JSON body: {response.text[:500]}")
                raise LLMError("OpenAI returned non-JSON body", status_code=response.status_code) from exc

            content = ""
            if data.get("choices") and len(data["choices"]) > 0:
                message = data["choices"][0].get("message", {})
                content = message.get("content") or ""
            logger.debug(f"OpenAI content: {content[:100] if content else 'EMPTY'}")

            return LLMResponse(
                content=content,
                model=data.get("model", model),
                usage=data.get("usage"),
            )
