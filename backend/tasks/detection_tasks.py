"""Celery tasks for scheduled subscription detection."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Optional

from celery_app import celery_app
from subradar.database import SessionLocal
from subradar.exceptions import SubscriptionDetectionError
from subradar.models import User
from subradar.services.detection_service import SubscriptionDetectionService

logger = logging.getLogger(__name__)


def _summary_payload(summary) -> dict:
    return {
        "user_id": summary.user_id,
        "months_back": summary.months_back,
        "detected_count": summary.detected_count,
        "created_count": summary.created_count,
        "updated_count": summary.updated_count,
        "failed_count": summary.failed_count,
        "linked_count": summary.linked_count,
        "enriched_count": summary.enriched_count,
        "total_monthly_spend": str(summary.total_monthly_spend),
        "failures": [asdict(f) for f in summary.failures],
    }


@celery_app.task(bind=True, max_retries=2, name="tasks.detection_tasks.detect_subscriptions_for_user")
def detect_subscriptions_for_user(self, user_id: str, months_back: Optional[int] = None) -> dict:
    """Detect and reconcile subscriptions for one user."""
    session = SessionLocal()
    try:
        service = SubscriptionDetectionService(session, user_id)
        summary = service.detect_and_apply(months_back=months_back)
        logger.info(
            "[DETECTION_TASK] Completed run for user=%s detected=%s created=%s updated=%s failed=%s",
            user_id,
            summary.detected_count,
            summary.created_count,
            summary.updated_count,
            summary.failed_count,
        )
        return _summary_payload(summary)
    except SubscriptionDetectionError as exc:
        logger.error("[DETECTION_TASK] Source unavailable for user=%s: %s", user_id, exc.error_code)
        raise self.retry(exc=exc, countdown=300)
    except Exception as exc:  # noqa: BLE001
        logger.exception("[DETECTION_TASK] Failed detection for user=%s: %s", user_id, exc)
        raise
    finally:
        session.close()


@celery_app.task(bind=True, name="tasks.detection_tasks.detect_subscriptions_for_all_users")
def detect_subscriptions_for_all_users(self, months_back: Optional[int] = None) -> dict:
    """Queue one detection task per user."""
    session = SessionLocal()
    try:
        user_ids = [row[0] for row in session.query(User.id).order_by(User.id.asc()).all()]
    except Exception as exc:  # noqa: BLE001
        logger.exception("[DETECTION_TASK] Could not list users: %s", exc)
        raise
    finally:
        session.close()

    for user_id in user_ids:
        detect_subscriptions_for_user.delay(user_id, months_back=months_back)

    logger.info("[DETECTION_TASK] Queued detection for %s user(s)", len(user_ids))
    return {"queued": len(user_ids)}
