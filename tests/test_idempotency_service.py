from unittest.mock import Mock
from uuid import uuid4

from app.services.idempotency_service import claim_paid_contact, release_paid_contact, was_already_labeled


def _ids():
    return {"tenant_id": uuid4(), "instance_id": uuid4(), "phone": "5511999990000"}


class TestAlreadyLabeled:
    def test_previous_labeled_run(self):
        db = Mock()
        db.query.return_value.filter.return_value.first.return_value = (uuid4(),)

        assert was_already_labeled(db, **_ids()) is True

    def test_no_previous_run(self):
        db = Mock()
        db.query.return_value.filter.return_value.first.return_value = None

        assert was_already_labeled(db, **_ids()) is False


class TestClaim:
    def test_first_claim_wins(self):
        db = Mock()
        db.execute.return_value.rowcount = 1

        assert claim_paid_contact(db, run_id=uuid4(), **_ids()) is True
        db.commit.assert_called_once()

    def test_concurrent_claim_loses(self):
        db = Mock()
        db.execute.return_value.rowcount = 0

        assert claim_paid_contact(db, run_id=uuid4(), **_ids()) is False

    def test_release_only_own_claim(self):
        db = Mock()
        db.query.return_value.filter.return_value.delete.return_value = 1

        assert release_paid_contact(db, run_id=uuid4(), **_ids()) is True
        db.query.return_value.filter.return_value.delete.assert_called_once_with(synchronize_session=False)
        db.commit.assert_called_once()
