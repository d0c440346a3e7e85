"""
Subscription detection routes.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import Optional

from subradar.database import get_db
from subradar.models import User
from subradar.schemas import (
    CandidateTraceResponse,
    DetectedSubscriptionResponse,
    DetectionRunResponse,
    DetectionTraceResponse,
    DryRunResponse,
    KnownMerchantRef,
    RecurringPatternResponse,
    ReconcileFailureResponse,
    RejectedMerchantResponse,
)
from subradar.services.detection_service import (
    DetectionReport,
    DetectionRunSummary,
    MAX_MONTHS_BACK,
    MIN_MONTHS_BACK,
    SubscriptionDetectionService,
)
from subradar.services.recurring_detector import RecurringPattern

router = APIRouter()


def _require_user(db: Session, user_id: str) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _serialize_summary(summary: DetectionRunSummary) -> DetectionRunResponse:
    message = (
        f"Detected {summary.detected_count} recurring charge(s): "
        f"{summary.created_count} new, {summary.updated_count} updated."
    )
    if summary.failed_count:
        message += f" {summary.failed_count} could not be saved."

    return DetectionRunResponse(
        user_id=summary.user_id,
        months_back=summary.months_back,
        detected_count=summary.detected_count,
        created_count=summary.created_count,
        updated_count=summary.updated_count,
        failed_count=summary.failed_count,
        linked_count=summary.linked_count,
        enriched_count=summary.enriched_count,
        total_monthly_spend=summary.total_monthly_spend,
        most_expensive=(
            DetectedSubscriptionResponse.model_validate(summary.most_expensive)
            if summary.most_expensive else None
        ),
        subscriptions=[DetectedSubscriptionResponse.model_validate(s) for s in summary.subscriptions],
        failures=[ReconcileFailureResponse.model_validate(f) for f in summary.failures],
        message=message,
    )


def _serialize_pattern(pattern: RecurringPattern) -> RecurringPatternResponse:
    return RecurringPatternResponse(
        merchant_key=pattern.merchant_key,
        merchant=pattern.merchant,
        display_name=pattern.display_name,
        amount=pattern.amount,
        currency=pattern.currency,
        interval=pattern.interval,
        next_billing_date=pattern.next_billing_date,
        confidence=pattern.confidence,
        category=pattern.category,
        known_merchant=(
            KnownMerchantRef.model_validate(pattern.known_merchant)
            if pattern.known_merchant else None
        ),
        occurrences=pattern.occurrences,
        average_interval=pattern.average_interval,
        amount_variance=pattern.amount_variance,
        first_transaction_date=pattern.first_transaction_date,
        last_transaction_date=pattern.last_transaction_date,
        transaction_count=len(pattern.transaction_ids),
    )


def _serialize_report(report: DetectionReport) -> DryRunResponse:
    trace = report.trace
    return DryRunResponse(
        user_id=report.user_id,
        months_back=report.months_back,
        country_code=report.country_code,
        patterns=[_serialize_pattern(p) for p in report.patterns],
        trace=DetectionTraceResponse(
            total_transactions=trace.total_transactions,
            expense_transactions=trace.expense_transactions,
            skipped_records=trace.skipped_records,
            unique_merchants=trace.unique_merchants,
            unique_normalized_merchants=trace.unique_normalized_merchants,
            candidates=[CandidateTraceResponse.model_validate(c) for c in trace.candidates],
            rejected=[
                RejectedMerchantResponse(merchant=r.merchant, reason=r.reason.value, detail=r.detail)
                for r in trace.rejected
            ],
        ),
    )


@router.post("/{user_id}/subscriptions/detect", response_model=DetectionRunResponse)
def detect_subscriptions(
    user_id: str,
    months_back: Optional[int] = Query(None, ge=MIN_MONTHS_BACK, le=MAX_MONTHS_BACK),
    db: Session = Depends(get_db),
):
    """
    Detect recurring charges in the user's history and create/update subscriptions.

    Args:
        user_id: Owner of the transactions
        months_back: Lookback window in months (1-60, default 24)
    """
    _require_user(db, user_id)
    summary = SubscriptionDetectionService(db, user_id).detect_and_apply(months_back=months_back)
    return _serialize_summary(summary)


@router.post("/{user_id}/subscriptions/detect/dry-run", response_model=DryRunResponse)
def detect_subscriptions_dry_run(
    user_id: str,
    months_back: Optional[int] = Query(None, ge=MIN_MONTHS_BACK, le=MAX_MONTHS_BACK),
    db: Session = Depends(get_db),
):
    """Explain what detection would find, without writing anything."""
    _require_user(db, user_id)
    report = SubscriptionDetectionService(db, user_id).dry_run(months_back=months_back)
    return _serialize_report(report)
