from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock
from uuid import uuid4

from app.services.automation_service import (
    DEFAULT_START_NODE,
    flow_applies_to_instance,
    pause_other_sessions,
    pick_start_node_id,
    trigger_sale_flows,
)
from app.services.pipeline_types import PipelineConfig


def _flow(**fields):
    values = {
        "id": uuid4(),
        "nodes": [{"id": "n-start", "type": "start"}],
        "assigned_instances": [],
        "pause_other_flows": False,
        "priority": 0,
    }
    values.update(fields)
    return SimpleNamespace(**values)


def _contact():
    return SimpleNamespace(id=uuid4(), tenant_id=uuid4(), instance_id=uuid4(), name="Ana", phone="5511999990000")


class TestStartNode:
    def test_finds_start_node(self):
        nodes = [{"id": "a", "type": "message"}, {"id": "b", "type": "Start"}]

        assert pick_start_node_id(nodes) == "b"

    def test_default_when_missing(self):
        assert pick_start_node_id([{"id": "a", "type": "message"}]) == DEFAULT_START_NODE
        assert pick_start_node_id(None) == DEFAULT_START_NODE


class TestInstanceFilter:
    def test_unassigned_flow_applies_everywhere(self):
        assert flow_applies_to_instance(_flow(), uuid4())

    def test_assigned_flow(self):
        instance_id = uuid4()
        flow = _flow(assigned_instances=[str(instance_id)])

        assert flow_applies_to_instance(flow, instance_id)
        assert not flow_applies_to_instance(flow, uuid4())


class TestPauseOtherSessions:
    def test_pauses_and_cancels_delays(self):
        db = MagicMock()
        sessions = [SimpleNamespace(id=uuid4(), status="active", last_interaction=None) for _ in range(2)]
        db.query.return_value.filter.return_value.all.return_value = sessions
        now = datetime.now(timezone.utc)

        paused = pause_other_sessions(db, tenant_id=uuid4(), contact_id=uuid4(), keep_flow_id=uuid4(), now=now)

        assert paused == 2
        assert all(session.status == "paused" for session in sessions)
        assert all(session.last_interaction == now for session in sessions)
        assert db.query.return_value.filter.return_value.update.call_count == 2


class TestTriggerSaleFlows:
    def test_no_contact(self):
        db = MagicMock()

        result = trigger_sale_flows(db, PipelineConfig(tenant_id=uuid4(), instance_id=uuid4()), None)

        assert result.status == "skipped:no_contact"
        db.query.assert_not_called()

    def test_no_flows_for_instance(self):
        db = MagicMock()
        db.query.return_value.filter.return_value.order_by.return_value.all.return_value = [
            _flow(assigned_instances=[str(uuid4())])
        ]

        result = trigger_sale_flows(db, PipelineConfig(tenant_id=uuid4(), instance_id=uuid4()), _contact())

        assert result.status == "skipped:no_flows"
        db.execute.assert_not_called()

    def test_starts_each_applicable_flow(self):
        db = MagicMock()
        db.query.return_value.filter.return_value.order_by.return_value.all.return_value = [_flow(), _flow()]

        result = trigger_sale_flows(db, PipelineConfig(tenant_id=uuid4(), instance_id=uuid4()), _contact())

        assert result.ok is True
        assert result.value == 2
        assert db.execute.call_count == 2
        db.begin_nested.assert_called_once()
        db.commit.assert_called_once()

    def test_pause_other_flows_from_config(self):
        db = MagicMock()
        db.query.return_value.filter.return_value.order_by.return_value.all.return_value = [_flow()]
        db.query.return_value.filter.return_value.all.return_value = []
        config = PipelineConfig(tenant_id=uuid4(), instance_id=uuid4(), pause_other_flows=True)

        result = trigger_sale_flows(db, config, _contact())

        assert result.value == 1
        # flow query + session lookup
        assert db.query.call_count == 2
