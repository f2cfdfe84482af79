import json
from decimal import Decimal
from unittest.mock import MagicMock, Mock, patch
from uuid import uuid4

import httpx
import pytest

from app.config import settings
from app.services.llm import LLMError, LLMResponse, OpenAIProvider
from app.services.pipeline_types import MEDIA_DOCUMENT, MEDIA_IMAGE, PipelineConfig
from app.services.proof_classifier import (
    classify_media,
    extract_json_object,
    parse_classification,
    select_model,
)


def _config(**overrides) -> PipelineConfig:
    return PipelineConfig(tenant_id=uuid4(), instance_id=uuid4(), **overrides)


def _llm_returning(content: str, model: str = "gpt-4o-mini") -> Mock:
    llm = Mock()
    llm.generate.return_value = LLMResponse(content=content, model=model)
    return llm


PROOF_JSON = json.dumps(
    {
        "is_pix_payment": True,
        "confidence": 93,
        "amount": 150.0,
        "amount_text": "R$ 150,00",
        "recipient_name": "Loja da Maria LTDA",
        "recipient_tax_id": "12.345.678/0001-90",
        "reason": "Comprovante PIX do Nubank",
    }
)


class TestExtractJsonObject:
    def test_plain_json(self):
        assert extract_json_object('{"is_pix_payment": false}') == {"is_pix_payment": False}

    def test_json_embedded_in_prose(self):
        text = 'Claro! Segue a análise:\n{"is_pix_payment": true, "confidence": 88}\nQualquer dúvida avise.'
        assert extract_json_object(text) == {"is_pix_payment": True, "confidence": 88}

    def test_skips_malformed_braces_before_object(self):
        text = 'Formato {sem json} e depois {"confidence": 10}'
        assert extract_json_object(text) == {"confidence": 10}

    def test_no_object(self):
        assert extract_json_object("não consegui analisar") is None
        assert extract_json_object("") is None


class TestParseClassification:
    def test_non_json_output_is_not_a_proof(self):
        result = parse_classification("Desculpe, não posso ajudar.", "gpt-4o-mini")
        assert result.is_payment_proof is False
        assert result.confidence == 0
        assert "JSON" in result.reason

    def test_missing_verdict_field_is_not_a_proof(self):
        result = parse_classification('{"confidence": 99}', "gpt-4o-mini")
        assert result.is_payment_proof is False
        assert "is_pix_payment" in result.reason

    def test_confidence_clamped_and_coerced(self):
        result = parse_classification('{"is_pix_payment": "true", "confidence": "140"}', "m")
        assert result.is_payment_proof is True
        assert result.confidence == 100

    def test_fractional_confidence_scaled(self):
        result = parse_classification('{"is_pix_payment": true, "confidence": 0.85}', "m")
        assert result.confidence == 85

    def test_fractional_confidence_as_text_scaled(self):
        result = parse_classification('{"is_pix_payment": true, "confidence": "0.95"}', "m")
        assert result.confidence == 95

    def test_confidence_of_one_is_on_percent_scale(self):
        result = parse_classification('{"is_pix_payment": true, "confidence": 1.0}', "m")
        assert result.confidence == 1

    def test_actionable_threshold(self):
        result = parse_classification('{"is_pix_payment": true, "confidence": 69}', "m")
        assert result.is_actionable(70) is False
        assert result.is_actionable(60) is True


class TestSelectModel:
    def test_pdf_uses_document_model(self):
        assert select_model("application/pdf") == settings.document_model

    def test_image_uses_vision_model(self):
        assert select_model("image/jpeg") == settings.image_model


class TestClassifyMedia:
    def test_image_proof_with_amount(self):
        llm = _llm_returning(PROOF_JSON)

        result = classify_media(b"\xff\xd8jpeg", "image/jpeg", MEDIA_IMAGE, _config(), llm=llm)

        assert result.ok is True
        classification = result.value
        assert classification.is_payment_proof is True
        assert classification.confidence == 93
        assert classification.amount == Decimal("150.00")
        assert classification.value_source == "structured_amount"
        assert classification.recipient_name == "Loja da Maria LTDA"
        llm.generate.assert_called_once()

        kwargs = llm.generate.call_args[1]
        assert kwargs["model"] == settings.image_model
        user_content = llm.generate.call_args[0][0][1]["content"]
        assert user_content[0]["type"] == "image_url"
        assert user_content[0]["image_url"]["url"].startswith("data:image/jpeg;base64,")

    def test_pdf_goes_to_document_model_as_file_part(self):
        llm = _llm_returning(PROOF_JSON, model="gpt-4o")

        result = classify_media(
            b"%PDF-1.4", "application/pdf", MEDIA_DOCUMENT, _config(), file_name="comprovante.pdf", llm=llm
        )

        assert result.ok is True
        assert llm.generate.call_args[1]["model"] == settings.document_model
        part = llm.generate.call_args[0][0][1]["content"][0]
        assert part["type"] == "file"
        assert part["file"]["filename"] == "comprovante.pdf"

    def test_disabled_media_kind_is_filtered(self):
        llm = Mock()

        result = classify_media(b"img", "image/png", MEDIA_IMAGE, _config(accept_images=False), llm=llm)

        assert result.skipped is True
        assert result.error_code == "filtered"
        llm.generate.assert_not_called()

    def test_malformed_output_is_success_with_negative_verdict(self):
        llm = _llm_returning("não sei dizer")

        result = classify_media(b"img", "image/png", MEDIA_IMAGE, _config(), llm=llm)

        assert result.ok is True
        assert result.value.is_payment_proof is False
        assert result.value.amount is None

    def test_not_a_proof_skips_value_extraction(self):
        llm = _llm_returning('{"is_pix_payment": false, "confidence": 97, "reason": "foto de produto"}')

        result = classify_media(b"img", "image/png", MEDIA_IMAGE, _config(), llm=llm)

        assert result.value.is_payment_proof is False
        assert result.value.value_source is None
        llm.generate.assert_called_once()

    def test_model_error_is_failure(self):
        llm = Mock()
        llm.generate.side_effect = LLMError("OpenAI API error: 429", status_code=429)

        result = classify_media(b"img", "image/png", MEDIA_IMAGE, _config(), llm=llm)

        assert result.ok is False
        assert result.error_code == "model_error"

    def test_timeout_is_failure_with_timeout_code(self):
        llm = Mock()
        llm.generate.side_effect = httpx.ReadTimeout("timed out")

        result = classify_media(b"img", "image/png", MEDIA_IMAGE, _config(), llm=llm)

        assert result.ok is False
        assert result.error_code == "timeout"

    @patch("app.services.llm.openai_provider.httpx.Client")
    def test_non_json_gateway_body_is_model_error(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_client.post.return_value = Mock(
            status_code=200,
            text="<html>502 Bad Gateway</html>",
            json=Mock(side_effect=ValueError("Expecting value: line 1 column 1 (char 0)")),
        )
        llm = OpenAIProvider(api_key="sk-test")

        with pytest.raises(LLMError, match="non-JSON"):
            llm.generate([{"role": "user", "content": "oi"}])

        result = classify_media(b"img", "image/png", MEDIA_IMAGE, _config(), llm=llm)

        assert result.ok is False
        assert result.error_code == "model_error"
