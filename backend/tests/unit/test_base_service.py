"""BaseService transaction and measurement behaviour."""

from __future__ import annotations

from unittest.mock import Mock, patch

import pytest
from sqlalchemy.exc import OperationalError

from mentorbook.core.exceptions import ServiceException, TimeConflictException
from mentorbook.monitoring.prometheus_metrics import REGISTRY
from mentorbook.services.base import BaseService


class _Service(BaseService):
    @BaseService.measure_operation("work")
    def work(self, fail: bool = False) -> str:
        if fail:
            raise ValueError("nope")
        return "done"


def test_transaction_commits_on_success():
    db = Mock()
    with _Service(db).transaction():
        pass
    db.commit.assert_called_once()
    db.rollback.assert_not_called()


def test_domain_errors_roll_back_and_propagate_unchanged():
    db = Mock()
    with pytest.raises(TimeConflictException):
        with _Service(db).transaction():
            raise TimeConflictException()
    db.rollback.assert_called_once()
    db.commit.assert_not_called()


def test_database_errors_are_wrapped():
    db = Mock()
    with pytest.raises(ServiceException) as exc_info:
        with _Service(db).transaction():
            raise OperationalError("stmt", params=None, orig=Exception("gone"))
    assert isinstance(exc_info.value.__cause__, OperationalError)
    db.rollback.assert_called_once()


def test_optional_transaction_defers_to_caller():
    db = Mock()
    with _Service(db).optional_transaction(False) as session:
        assert session is db
    db.commit.assert_not_called()


def _operations(status: str) -> float:
    return (
        REGISTRY.get_sample_value(
            "mentorbook_service_operations_total",
            {"service": "_Service", "operation": "work", "status": status},
        )
        or 0.0
    )


def test_measure_operation_counts_success_and_failure():
    service = _Service(Mock())
    successes, failures = _operations("success"), _operations("error")

    assert service.work() == "done"
    with pytest.raises(ValueError):
        service.work(fail=True)

    assert _operations("success") == successes + 1
    assert _operations("error") == failures + 1
    assert (
        REGISTRY.get_sample_value(
            "mentorbook_errors_total",
            {"service": "_Service", "operation": "work", "error_type": "ValueError"},
        )
        >= 1
    )


def test_slow_operations_are_logged():
    service = _Service(Mock())
    with patch("mentorbook.services.base.time.perf_counter", side_effect=[0.0, 2.0]):
        with patch.object(service.logger, "warning") as mock_warning:
            assert service.work() == "done"
    mock_warning.assert_called_once()
