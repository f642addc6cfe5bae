"""
Transaction helper tests.

Verifies:
- A store failure mid-operation surfaces as StorageError and leaves no trace
- Retryable conflicts (OperationalError, StaleDataError) are retried
- Non-retryable store errors are not retried
"""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from stagetrack.models import AuditLog, Order, OrderItem
from stagetrack.services import audit_service, concurrency, lock_service, order_service
from stagetrack.validation import StorageError


@pytest.fixture
def no_backoff(monkeypatch):
    monkeypatch.setattr(concurrency.time, "sleep", lambda seconds: None)


def _disk_error():
    return OperationalError("INSERT INTO audit_logs", {}, Exception("disk I/O error"))


class TestStorageFailure:

    def test_lock_rolled_back_when_audit_write_fails(self, db_session, order_with_items, agent, monkeypatch, no_backoff):
        order_id = order_with_items.id
        calls = []

        def failing_record(**kwargs):
            calls.append(kwargs["action"])
            raise _disk_error()

        monkeypatch.setattr(audit_service, "record", failing_record)
        with pytest.raises(StorageError):
            lock_service.lock_order(order_id, agent)
        monkeypatch.undo()

        assert calls == ["LOCKED", "LOCKED", "LOCKED"]
        db_session.expire_all()
        order = db_session.get(Order, order_id)
        assert order.is_locked is False
        assert order.locked_at is None
        assert db_session.query(AuditLog).filter_by(action="LOCKED").count() == 0

    def test_measurements_rolled_back_on_integrity_error(self, db_session, order_with_items, agent, monkeypatch, no_backoff):
        order_id = order_with_items.id
        item_id = order_with_items.items[0].id

        def failing_record(**kwargs):
            raise IntegrityError("INSERT INTO audit_logs", {}, Exception("constraint failed"))

        monkeypatch.setattr(audit_service, "record", failing_record)
        with pytest.raises(StorageError) as exc:
            order_service.update_measurements(order_id, item_id, {"height": 90}, agent)
        monkeypatch.undo()

        assert exc.value.to_dict()["error"] == "storage"
        db_session.expire_all()
        assert db_session.get(OrderItem, item_id).height is None
        assert db_session.get(OrderItem, item_id).measured_at is None


class TestRetry:

    def test_stale_data_is_retried_once(self, db_session, order_with_items, agent, monkeypatch, no_backoff):
        order_id = order_with_items.id
        real_record = audit_service.record
        attempts = []

        def flaky_record(**kwargs):
            attempts.append(kwargs["action"])
            if len(attempts) == 1:
                raise StaleDataError("UPDATE statement on table 'orders' expected to update 1 row(s); 0 were matched.")
            return real_record(**kwargs)

        monkeypatch.setattr(audit_service, "record", flaky_record)
        order = lock_service.lock_order(order_id, agent)
        monkeypatch.undo()

        assert order.is_locked is True
        assert attempts == ["LOCKED", "LOCKED"]
        assert db_session.query(AuditLog).filter_by(action="LOCKED", entity_id=order_id).count() == 1

    def test_run_with_retry_returns_after_conflicts(self, db_session, no_backoff):
        calls = []

        def op():
            calls.append(1)
            if len(calls) < 3:
                raise _disk_error()
            return "saved"

        assert concurrency.run_with_retry(op) == "saved"
        assert len(calls) == 3

    def test_run_with_retry_gives_up(self, db_session, no_backoff):
        calls = []

        def op():
            calls.append(1)
            raise _disk_error()

        with pytest.raises(OperationalError):
            concurrency.run_with_retry(op, attempts=2)
        assert len(calls) == 2

    def test_other_errors_are_not_retried(self, db_session, no_backoff):
        calls = []

        def op():
            calls.append(1)
            raise IntegrityError("INSERT", {}, Exception("duplicate"))

        with pytest.raises(StorageError):
            concurrency.run_atomic(op)
        assert len(calls) == 1
