"""
Test the Celery detection tasks (executed eagerly, without a broker).
"""
import sys
import os
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from subradar.exceptions import TransactionSourceError
from subradar.services.detection_service import DetectionRunSummary
from subradar.services.subscription_generator import ReconcileFailure
from tasks.detection_tasks import (
    detect_subscriptions_for_all_users,
    detect_subscriptions_for_user,
)


def test_user_task_returns_summary_payload():
    summary = DetectionRunSummary(
        user_id="user-1",
        months_back=12,
        detected_count=2,
        created_count=1,
        updated_count=1,
        total_monthly_spend=Decimal("26.98"),
        failures=[ReconcileFailure(merchant="gym", error_code="PERSISTENCE_FAILED", message="Subscription could not be saved")],
        failed_count=1,
    )

    with patch("tasks.detection_tasks.SessionLocal") as session_local, \
            patch("tasks.detection_tasks.SubscriptionDetectionService") as service_cls:
        service_cls.return_value.detect_and_apply.return_value = summary
        result = detect_subscriptions_for_user("user-1", months_back=12)

    service_cls.assert_called_once_with(session_local.return_value, "user-1")
    service_cls.return_value.detect_and_apply.assert_called_once_with(months_back=12)
    session_local.return_value.close.assert_called_once()

    assert result["created_count"] == 1
    assert result["updated_count"] == 1
    assert result["total_monthly_spend"] == "26.98"
    assert result["failures"] == [
        {"merchant": "gym", "error_code": "PERSISTENCE_FAILED", "message": "Subscription could not be saved"}
    ]
    print("✓ Per-user task payload")


def test_user_task_surfaces_source_errors():
    with patch("tasks.detection_tasks.SessionLocal") as session_local, \
            patch("tasks.detection_tasks.SubscriptionDetectionService") as service_cls:
        service_cls.return_value.detect_and_apply.side_effect = TransactionSourceError()
        with pytest.raises(TransactionSourceError):
            detect_subscriptions_for_user("user-1")

    session_local.return_value.close.assert_called_once()
    print("✓ Source errors re-raised for retry")


def test_user_task_reraises_unexpected_errors():
    with patch("tasks.detection_tasks.SessionLocal") as session_local, \
            patch("tasks.detection_tasks.SubscriptionDetectionService") as service_cls:
        service_cls.return_value.detect_and_apply.side_effect = RuntimeError("boom")
        with pytest.raises(RuntimeError):
            detect_subscriptions_for_user("user-1")

    session_local.return_value.close.assert_called_once()
    print("✓ Unexpected errors re-raised")


def test_all_users_task_fans_out():
    session = MagicMock()
    session.query.return_value.order_by.return_value.all.return_value = [("user-a",), ("user-b",)]

    with patch("tasks.detection_tasks.SessionLocal", return_value=session), \
            patch.object(detect_subscriptions_for_user, "delay") as delay:
        result = detect_subscriptions_for_all_users(months_back=6)

    assert result == {"queued": 2}
    assert [c.args for c in delay.call_args_list] == [("user-a",), ("user-b",)]
    assert all(c.kwargs == {"months_back": 6} for c in delay.call_args_list)
    session.close.assert_called_once()
    print("✓ One task queued per user")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
