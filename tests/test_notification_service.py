import random
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from uuid import uuid4

from app.services.notification_service import (
    DEFAULT_SALE_TEMPLATES,
    REDACTED_VALUE,
    enqueue_sale_notification,
    format_brl,
    pick_template,
    render_template,
)
from app.services.pipeline_types import PipelineConfig


def _config(**overrides) -> PipelineConfig:
    values = {"tenant_id": uuid4(), "instance_id": uuid4()}
    values.update(overrides)
    return PipelineConfig(**values)


def _db(templates=None, rowcount=1):
    db = MagicMock()
    db.query.return_value.filter.return_value.all.return_value = templates or []
    db.execute.return_value.rowcount = rowcount
    return db


class TestFormatting:
    def test_format_brl(self):
        assert format_brl(Decimal("1234.5")) == "R$ 1.234,50"
        assert format_brl(Decimal("97")) == "R$ 97,00"
        assert format_brl(None) == "R$ 0,00"

    def test_render_template(self):
        message = render_template(
            "Venda de {value} para {name} ({phone})", value=Decimal("50"), phone="5511999990000", name="Ana", redact=False
        )

        assert message == "Venda de R$ 50,00 para Ana (5511999990000)"

    def test_render_template_redacted(self):
        message = render_template("Pix: {value}", value=Decimal("50"), phone="55", name=None, redact=True)

        assert message == f"Pix: {REDACTED_VALUE}"

    def test_name_falls_back_to_phone(self):
        assert render_template("{name}", value=None, phone="5511", name=None, redact=False) == "5511"


class TestPickTemplate:
    def test_uses_tenant_templates(self):
        templates = [SimpleNamespace(body="Só esta: {value}")]

        assert pick_template(templates, random.Random(1)) == "Só esta: {value}"

    def test_falls_back_to_defaults(self):
        assert pick_template([SimpleNamespace(body="")], random.Random(1)) in DEFAULT_SALE_TEMPLATES


class TestEnqueueSaleNotification:
    @patch("app.services.notification_service.settings", SimpleNamespace(push_queue_enabled=True))
    def test_inserts_once(self):
        db = _db(rowcount=1)

        result = enqueue_sale_notification(
            db, _config(), phone="5511999990000", name="Ana", value=Decimal("10"), run_id=uuid4()
        )

        assert result.ok is True
        assert result.value is True
        db.begin_nested.assert_called_once()
        db.execute.assert_called_once()
        db.commit.assert_called_once()

    @patch("app.services.notification_service.settings", SimpleNamespace(push_queue_enabled=True))
    def test_duplicate_is_not_an_error(self):
        db = _db(rowcount=0)

        result = enqueue_sale_notification(
            db, _config(), phone="5511999990000", name=None, value=None, run_id=uuid4()
        )

        assert result.ok is True
        assert result.value is False

    @patch("app.services.notification_service.settings", SimpleNamespace(push_queue_enabled=False))
    def test_queue_disabled(self):
        db = _db()

        result = enqueue_sale_notification(db, _config(), phone="55", name=None, value=None, run_id=uuid4())

        assert result.status == "skipped:disabled"
        db.execute.assert_not_called()

    @patch("app.services.notification_service.settings", SimpleNamespace(push_queue_enabled=True))
    def test_tenant_disabled(self):
        db = _db()

        result = enqueue_sale_notification(
            db, _config(notifications_enabled=False), phone="55", name=None, value=None, run_id=uuid4()
        )

        assert result.skipped is True
        db.execute.assert_not_called()
