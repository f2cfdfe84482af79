from types import SimpleNamespace
from unittest.mock import Mock
from uuid import uuid4

from app.services.pipeline_types import FRAUD_MISMATCH, FRAUD_PASSED, FRAUD_SKIPPED, ClassificationResult
from app.services.recipient_verifier import (
    check_recipient,
    names_match,
    tax_ids_match,
    verify_recipient,
)


def _recipient(name=None, tax_id=None):
    return SimpleNamespace(name=name, tax_id=tax_id)


def _proof(name=None, tax_id=None):
    return ClassificationResult(
        is_payment_proof=True, confidence=90, recipient_name=name, recipient_tax_id=tax_id
    )


class TestNamesMatch:
    def test_substring_either_direction(self):
        assert names_match("Maria Silva", "Maria Silva Comércio LTDA")
        assert names_match("MARIA SILVA COMERCIO LTDA", "Maria Silva")

    def test_accent_and_case_insensitive(self):
        assert names_match("JOSÉ ARAÚJO", "jose araujo")

    def test_token_longer_than_two_chars(self):
        assert names_match("M Silva", "Maria Silva")

    def test_short_tokens_do_not_match(self):
        assert not names_match("de da", "Maria de Souza da Costa Ltda X")

    def test_empty_never_matches(self):
        assert not names_match(None, "Maria")
        assert not names_match("Maria", "")


class TestTaxIdsMatch:
    def test_formatted_vs_digits(self):
        assert tax_ids_match("123.456.789-00", "12345678900")

    def test_masked_cpf_visible_digits(self):
        assert tax_ids_match("***.456.789-**", "123.456.789-00")

    def test_too_few_visible_digits(self):
        assert not tax_ids_match("***.***.789-**", "123.456.789-00")

    def test_short_registered_id_never_matches(self):
        assert not tax_ids_match("123.456.789-00", "***.***.*12-**")
        assert not tax_ids_match("12.345.678/0001-90", "0001")

    def test_different_ids(self):
        assert not tax_ids_match("98.765.432/0001-10", "12.345.678/0001-90")


class TestVerifyRecipient:
    def test_empty_registry_is_skipped(self):
        assert verify_recipient(_proof(name="Qualquer"), []) == FRAUD_SKIPPED

    def test_passes_on_name(self):
        registry = [_recipient(name="Outro"), _recipient(name="Loja da Maria")]
        assert verify_recipient(_proof(name="LOJA DA MARIA LTDA"), registry) == FRAUD_PASSED

    def test_passes_on_tax_id(self):
        registry = [_recipient(name="Empresa X", tax_id="12.345.678/0001-90")]
        assert verify_recipient(_proof(name="Fulano", tax_id="12345678000190"), registry) == FRAUD_PASSED

    def test_mismatch(self):
        registry = [_recipient(name="Loja da Maria", tax_id="12.345.678/0001-90")]
        assert verify_recipient(_proof(name="Golpista", tax_id="999.888.777-66"), registry) == FRAUD_MISMATCH

    def test_mismatch_when_proof_has_no_recipient(self):
        registry = [_recipient(name="Loja da Maria")]
        assert verify_recipient(_proof(), registry) == FRAUD_MISMATCH


class TestCheckRecipient:
    def test_loads_tenant_registry(self):
        db = Mock()
        db.query.return_value.filter.return_value.all.return_value = [_recipient(name="Loja da Maria")]

        verdict = check_recipient(db, uuid4(), _proof(name="Pagamento para Loja da Maria"))

        assert verdict == FRAUD_PASSED
        db.query.assert_called_once()
