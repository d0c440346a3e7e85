"""
Per-user subscription detection runs.

Two entry points share the same detector code path:
- detect_and_apply(): enrich, detect, reconcile and report counts
- dry_run(): detect with a diagnostic trace, no writes

Usage:
    service = SubscriptionDetectionService(db, user_id)
    summary = service.detect_and_apply(months_back=24)
    report = service.dry_run(months_back=12)
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from subradar.config import DetectionSettings, get_detection_settings
from subradar.exceptions import CatalogUnavailableError, TransactionSourceError
from subradar.models import Account, Transaction
from subradar.services.merchant_catalog import KnownMerchantCatalog
from subradar.services.merchant_matcher import MerchantMatcher
from subradar.services.recurring_detector import (
    DetectionTrace,
    RecurringDetector,
    RecurringPattern,
)
from subradar.services.subscription_generator import (
    GeneratedSubscription,
    ReconcileFailure,
    SubscriptionGenerator,
)
from subradar.services.subscription_store import SubscriptionStore
from subradar.services.transaction_enrichment import TransactionEnrichmentService

logger = logging.getLogger(__name__)

MIN_MONTHS_BACK = 1
MAX_MONTHS_BACK = 60

# Multipliers converting one charge into a monthly cost
MONTHLY_COST_FACTORS: Dict[str, Decimal] = {
    "weekly": Decimal(52) / Decimal(12),
    "bi-weekly": Decimal(26) / Decimal(12),
    "monthly": Decimal(1),
    "quarterly": Decimal(1) / Decimal(3),
    "yearly": Decimal(1) / Decimal(12),
}

_CENTS = Decimal("0.01")


def monthly_cost(amount: Decimal, interval: str) -> Decimal:
    factor = MONTHLY_COST_FACTORS.get(interval, Decimal(1))
    return (Decimal(str(amount)) * factor).quantize(_CENTS, rounding=ROUND_HALF_UP)


@dataclass
class DetectionRunSummary:
    """Caller-facing result of a production detection run."""
    user_id: str
    months_back: int
    detected_count: int = 0
    created_count: int = 0
    updated_count: int = 0
    failed_count: int = 0
    linked_count: int = 0
    enriched_count: int = 0
    total_monthly_spend: Decimal = Decimal("0.00")
    most_expensive: Optional[GeneratedSubscription] = None
    subscriptions: List[GeneratedSubscription] = field(default_factory=list)
    failures: List[ReconcileFailure] = field(default_factory=list)


@dataclass
class DetectionReport:
    """Result of a dry run: patterns plus the diagnostic trace."""
    user_id: str
    months_back: int
    country_code: Optional[str]
    patterns: List[RecurringPattern]
    trace: DetectionTrace


class SubscriptionDetectionService:
    """
    Orchestrates detection and reconciliation for one user.

    Only unreachable sources fail a run: TransactionSourceError when the
    user's transactions cannot be loaded, CatalogUnavailableError when the
    known-merchant catalog cannot be loaded.
    """

    def __init__(self, db: Session, user_id: str, settings: Optional[DetectionSettings] = None):
        self.db = db
        self.user_id = user_id
        self.settings = settings or get_detection_settings()

    def _months_back(self, months_back: Optional[int]) -> int:
        value = self.settings.default_months_back if months_back is None else int(months_back)
        if value < MIN_MONTHS_BACK or value > MAX_MONTHS_BACK:
            raise ValueError(f"months_back must be between {MIN_MONTHS_BACK} and {MAX_MONTHS_BACK}")
        return value

    def _build_matcher(self, track_popularity: bool) -> MerchantMatcher:
        catalog = KnownMerchantCatalog(self.db)
        try:
            catalog.list_active()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception(f"[DETECTION_SERVICE] Known-merchant catalog unavailable: {exc}")
            raise CatalogUnavailableError(details={"user_id": self.user_id}) from exc
        return MerchantMatcher(catalog, settings=self.settings, track_popularity=track_popularity)

    def _resolve_country(self) -> Optional[str]:
        account = (
            self.db.query(Account)
            .filter(Account.user_id == self.user_id)
            .order_by(Account.created_at.asc())
            .first()
        )
        return account.country if account and account.country else None

    def _load_transactions(self, months_back: int) -> List[Transaction]:
        start_date = date.today() - relativedelta(months=months_back)
        return (
            self.db.query(Transaction)
            .filter(
                Transaction.user_id == self.user_id,
                Transaction.booked_at >= start_date,
            )
            .order_by(Transaction.booked_at.asc(), Transaction.id.asc())
            .all()
        )

    def _load_inputs(self, months_back: int):
        try:
            transactions = self._load_transactions(months_back)
            country_code = self._resolve_country()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception(f"[DETECTION_SERVICE] Could not load transactions for user {self.user_id}: {exc}")
            raise TransactionSourceError(details={"user_id": self.user_id}) from exc
        return transactions, country_code

    def _enrich(self, matcher: MerchantMatcher) -> int:
        try:
            return TransactionEnrichmentService(self.db, self.user_id, matcher).backfill_normalized_merchants()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception(f"[DETECTION_SERVICE] Transaction enrichment failed for user {self.user_id}: {exc}")
            raise TransactionSourceError(details={"user_id": self.user_id, "stage": "enrichment"}) from exc

    def detect_and_apply(self, months_back: Optional[int] = None) -> DetectionRunSummary:
        """
        Detect recurring charges and reconcile them into subscriptions.

        Returns:
            DetectionRunSummary with detected/created/updated/failed/linked
            counts and monthly spend figures
        """
        months_back = self._months_back(months_back)
        logger.info(
            f"[DETECTION_SERVICE] Starting detection run for user {self.user_id} "
            f"(months_back={months_back})"
        )

        matcher = self._build_matcher(track_popularity=True)
        enriched = self._enrich(matcher)
        transactions, country_code = self._load_inputs(months_back)

        detector = RecurringDetector(matcher=matcher, settings=self.settings)
        patterns = detector.detect(transactions, self.user_id, country_code=country_code)

        generator = SubscriptionGenerator(SubscriptionStore(self.db), settings=self.settings)
        result = generator.reconcile(self.user_id, patterns)

        summary = DetectionRunSummary(
            user_id=self.user_id,
            months_back=months_back,
            detected_count=len(patterns),
            created_count=result.created_count,
            updated_count=result.updated_count,
            failed_count=len(result.failures),
            linked_count=result.linked_count,
            enriched_count=enriched,
            subscriptions=result.subscriptions,
            failures=result.failures,
        )

        total = Decimal("0.00")
        most_expensive_cost = None
        for subscription in result.subscriptions:
            cost = monthly_cost(subscription.amount, subscription.interval)
            total += cost
            if most_expensive_cost is None or cost > most_expensive_cost:
                most_expensive_cost = cost
                summary.most_expensive = subscription
        summary.total_monthly_spend = total.quantize(_CENTS)

        logger.info(
            f"[DETECTION_SERVICE] User {self.user_id}: detected {summary.detected_count}, "
            f"created {summary.created_count}, updated {summary.updated_count}, "
            f"failed {summary.failed_count}, linked {summary.linked_count}"
        )
        return summary

    def dry_run(self, months_back: Optional[int] = None) -> DetectionReport:
        """Run detection with a diagnostic trace and without writing anything."""
        months_back = self._months_back(months_back)
        matcher = self._build_matcher(track_popularity=False)
        transactions, country_code = self._load_inputs(months_back)

        trace = DetectionTrace()
        detector = RecurringDetector(matcher=matcher, settings=self.settings)
        patterns = detector.detect(transactions, self.user_id, country_code=country_code, trace=trace)

        logger.info(
            f"[DETECTION_SERVICE] Dry run for user {self.user_id}: {len(patterns)} candidates, "
            f"{len(trace.rejected)} rejected"
        )
        return DetectionReport(
            user_id=self.user_id,
            months_back=months_back,
            country_code=country_code,
            patterns=patterns,
            trace=trace,
        )
