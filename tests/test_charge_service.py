from decimal import Decimal
from unittest.mock import Mock
from uuid import uuid4

import httpx

from app.services.charge_service import send_charge
from app.services.gateway_service import GatewayError, PayeeDetails
from app.services.pipeline_types import PipelineConfig


def _config(**overrides) -> PipelineConfig:
    values = {
        "tenant_id": uuid4(),
        "instance_id": uuid4(),
        "charge_enabled": True,
        "charge_amount": Decimal("97.00"),
        "charge_pix_key": "loja@exemplo.com",
        "charge_pix_key_type": "email",
        "charge_payee_name": "Loja Exemplo",
        "charge_message": "Segue o PIX",
    }
    values.update(overrides)
    return PipelineConfig(**values)


class TestSendCharge:
    def test_disabled(self):
        gateway = Mock()

        result = send_charge(gateway, _config(charge_enabled=False), "5511999990000")

        assert result.skipped is True
        assert result.status == "skipped:disabled"
        gateway.request_payment.assert_not_called()

    def test_missing_pix_key_is_skipped_with_reason(self):
        gateway = Mock()

        result = send_charge(gateway, _config(charge_pix_key=None), "5511999990000")

        assert result.skipped is True
        assert result.error_code == "config_incomplete"
        assert "PIX key" in result.error
        gateway.request_payment.assert_not_called()

    def test_missing_amount_is_skipped(self):
        result = send_charge(Mock(), _config(charge_amount=None), "5511999990000")

        assert result.status == "skipped:config_incomplete"

    def test_sends_payment_request(self):
        gateway = Mock()

        result = send_charge(gateway, _config(), "5511999990000")

        assert result.ok is True
        assert result.value == Decimal("97.00")
        gateway.request_payment.assert_called_once_with(
            "5511999990000",
            Decimal("97.00"),
            PayeeDetails(pix_key="loja@exemplo.com", pix_key_type="email", name="Loja Exemplo"),
            text="Segue o PIX",
        )

    def test_gateway_failure(self):
        gateway = Mock()
        gateway.request_payment.side_effect = GatewayError("Gateway POST /send/request-payment failed: 502")

        result = send_charge(gateway, _config(), "5511999990000")

        assert result.status == "failed:http_error"

    def test_timeout(self):
        gateway = Mock()
        gateway.request_payment.side_effect = httpx.ConnectTimeout("timed out")

        result = send_charge(gateway, _config(), "5511999990000")

        assert result.status == "failed:timeout"
