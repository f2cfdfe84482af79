import json
import time
from typing import Optional

import httpx

from app.config import settings
from app.logging_config import get_logger
from app.services.llm import LLMError, LLMProvider, OpenAIProvider, build_media_part
from app.services.pipeline_types import MEDIA_DOCUMENT, ClassificationResult, PipelineConfig
from app.services.result import Result
from app.services.value_extraction import ValueContext, extract_value

logger = get_logger("proof_classifier")

PDF_MIME = "application/pdf"
CLASSIFIER_MAX_TOKENS = 400

SYSTEM_PROMPT = (
    "Você é um analista financeiro que verifica comprovantes de pagamento PIX enviados "
    "por clientes no WhatsApp.\n"
    "Analise a imagem ou documento e responda APENAS com um objeto JSON no formato:\n"
    "{\n"
    '  "is_pix_payment": true ou false,\n'
    '  "confidence": número de 0 a 100,\n'
    '  "amount": valor numérico da transação em reais ou null,\n'
    '  "amount_text": valor exatamente como aparece no comprovante (ex: "R$ 1.234,56") ou null,\n'
    '  "recipient_name": nome do recebedor/favorecido ou null,\n'
    '  "recipient_tax_id": CPF ou CNPJ do recebedor (pode estar mascarado) ou null,\n'
    '  "reason": breve explicação\n'
    "}\n"
    "Considere comprovante PIX apenas transferências concluídas (não agendamentos, "
    "não boletos, não QR codes sem pagamento). Não invente valores."
)

# Global LLM provider instance
_llm_provider = None


def get_llm_provider() -> OpenAIProvider:
    """Get or create LLM provider instance."""
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = OpenAIProvider(
            api_key=settings.openai_api_key or "",
            default_model=settings.image_model,
            base_url=settings.openai_base_url,
        )
    return _llm_provider


def select_model(mime_type: str) -> str:
    """PDFs need the document-capable model; images go to the fast vision model."""
    if mime_type == PDF_MIME:
        return settings.document_model
    return settings.image_model


def extract_json_object(text: str) -> Optional[dict]:
    """Return the first well-formed JSON object in ``text``, tolerating prose around it."""
    if not text:
        return None
    try:
        payload = json.loads(text)
        if isinstance(payload, dict):
            return payload
    except ValueError:
        pass

    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            payload, _ = decoder.raw_decode(text, index)
        except ValueError:
            index = text.find("{", index + 1)
            continue
        if isinstance(payload, dict):
            return payload
        index = text.find("{", index + 1)
    return None


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "sim", "yes", "1"}
    if isinstance(value, (int, float)):
        return value != 0
    return False


def _parse_confidence(value) -> int:
    if isinstance(value, bool):
        return 0
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0
    # Some models answer on a 0..1 scale; only a fractional value is read that way
    if 0 < parsed < 1:
        parsed *= 100
    return max(0, min(100, int(round(parsed))))


def _optional_text(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_classification(content: str, model: str) -> ClassificationResult:
    """Turn raw model output into a ClassificationResult. Never raises."""
    payload = extract_json_object(content)
    if payload is None:
        return ClassificationResult(
            is_payment_proof=False,
            confidence=0,
            reason="Model output did not contain a JSON object",
            model=model,
            raw_output=content,
        )
    if "is_pix_payment" not in payload and "is_payment_proof" not in payload:
        return ClassificationResult(
            is_payment_proof=False,
            confidence=0,
            reason="Model output missing is_pix_payment field",
            model=model,
            raw_output=content,
        )

    is_proof = _parse_bool(payload.get("is_pix_payment", payload.get("is_payment_proof")))
    return ClassificationResult(
        is_payment_proof=is_proof,
        confidence=_parse_confidence(payload.get("confidence")),
        amount_raw_text=_optional_text(payload.get("amount_text")),
        recipient_name=_optional_text(payload.get("recipient_name")),
        recipient_tax_id=_optional_text(payload.get("recipient_tax_id")),
        reason=_optional_text(payload.get("reason")),
        model=model,
        raw_output=content,
    )


def classify_media(
    media_bytes: bytes,
    mime_type: str,
    media_kind: str,
    config: PipelineConfig,
    *,
    file_name: Optional[str] = None,
    llm: Optional[LLMProvider] = None,
    timeout_seconds: Optional[float] = None,
) -> Result[ClassificationResult]:
    """Classify an attachment as PIX payment proof and extract its amount.

    Returns ``Result.skip`` with code ``filtered`` when the tenant disabled
    this media kind, ``Result.failure`` when the model call itself failed,
    and otherwise a ClassificationResult (malformed output included).
    """
    if not config.accepts(media_kind):
        return Result.skip(f"{media_kind} attachments disabled for this tenant", code="filtered")
    if media_kind == MEDIA_DOCUMENT and mime_type != PDF_MIME:
        return Result.skip(f"Unsupported document type {mime_type}", code="filtered")

    llm = llm or get_llm_provider()
    model = select_model(mime_type)
    timeout = timeout_seconds if timeout_seconds is not None else settings.model_timeout_seconds
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": [
                build_media_part(media_bytes, mime_type, file_name=file_name),
                {"type": "text", "text": "Este arquivo é um comprovante de pagamento PIX?"},
            ],
        },
    ]

    started = time.monotonic()
    try:
        response = llm.generate(
            messages,
            model=model,
            temperature=0.0,
            max_tokens=CLASSIFIER_MAX_TOKENS,
            timeout_seconds=timeout,
        )
    except httpx.TimeoutException as exc:
        logger.warning(
            "Classifier timeout",
            extra={"context": {"model": model, "timeout_seconds": timeout, "error": str(exc)}},
        )
        return Result.failure(f"Classifier timed out after {timeout}s", code="timeout")
    except (LLMError, httpx.HTTPError) as exc:
        logger.error("Classifier call failed", extra={"context": {"model": model, "error": str(exc)}})
        return Result.failure(f"Classifier call failed: {exc}", code="model_error")

    content = (response.content or "").strip()
    classification = parse_classification(content, response.model or model)
    logger.info(
        "Classifier verdict",
        extra={
            "context": {
                "model": classification.model,
                "is_payment_proof": classification.is_payment_proof,
                "confidence": classification.confidence,
                "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
            }
        },
    )

    if classification.is_payment_proof:
        amount, source = extract_value(
            ValueContext(
                payload=extract_json_object(content),
                raw_output=content,
                media_bytes=media_bytes,
                mime_type=mime_type,
                llm=llm,
                secondary_model=settings.value_extraction_model,
                timeout_seconds=timeout,
            )
        )
        classification.amount = amount
        classification.value_source = source

    return Result.success(classification)
