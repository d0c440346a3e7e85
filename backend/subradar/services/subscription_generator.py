"""
Turns detected recurring patterns into subscription records.

Reconciliation is idempotent: re-running it with the same patterns updates the
same rows, and at most one active or paused subscription exists per
(user, merchant). A pattern matched to the known-merchant catalog is stored
under the catalog name, so different raw keys for the same merchant share
one row. Each pattern is committed on its own so that one failure
does not undo the rest of the batch.

Usage:
    generator = SubscriptionGenerator(SubscriptionStore(db))
    result = generator.reconcile(user_id, patterns)
    # result.created_count, result.updated_count, result.failures
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Protocol, Sequence
from uuid import UUID

from subradar.config import DetectionSettings, get_detection_settings
from subradar.models import (
    Subscription,
    SUBSCRIPTION_STATUS_ACTIVE,
    SUBSCRIPTION_STATUS_PAUSED,
)
from subradar.services.recurring_detector import RecurringPattern

logger = logging.getLogger(__name__)

RECONCILE_STATUSES = (SUBSCRIPTION_STATUS_ACTIVE, SUBSCRIPTION_STATUS_PAUSED)


class SubscriptionWriter(Protocol):
    def find_existing(
        self, user_id, merchant_names, statuses, account_id=None, display_names=()
    ) -> Optional[Subscription]:
        ...

    def save(self, subscription: Subscription) -> Subscription:
        ...

    def link_transactions(self, subscription: Subscription, transaction_ids) -> int:
        ...

    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...


@dataclass
class GeneratedSubscription:
    """Outcome of reconciling one pattern."""
    subscription_id: UUID
    name: str
    merchant: str
    amount: Decimal
    currency: str
    interval: str
    status: str
    confidence: float
    category: Optional[str]
    is_auto_detected: bool
    created: bool
    linked_transactions: int = 0


@dataclass
class ReconcileFailure:
    merchant: str
    error_code: str
    message: str


@dataclass
class ReconcileResult:
    subscriptions: List[GeneratedSubscription] = field(default_factory=list)
    failures: List[ReconcileFailure] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return sum(1 for s in self.subscriptions if s.created)

    @property
    def updated_count(self) -> int:
        return sum(1 for s in self.subscriptions if not s.created)

    @property
    def linked_count(self) -> int:
        return sum(s.linked_transactions for s in self.subscriptions)


def merchant_variants(pattern: RecurringPattern) -> List[str]:
    """Names under which an existing subscription for this pattern may be stored."""
    variants = [pattern.merchant_key, pattern.merchant]
    if pattern.known_merchant:
        variants.extend([pattern.known_merchant.name, pattern.known_merchant.display_name])
    seen = set()
    result = []
    for variant in variants:
        if variant and variant.lower() not in seen:
            seen.add(variant.lower())
            result.append(variant)
    return result


def stored_merchant(pattern: RecurringPattern) -> str:
    """Merchant value written to the subscription: the catalog name when matched, else the key."""
    if pattern.known_merchant and pattern.known_merchant.name:
        return pattern.known_merchant.name
    return pattern.merchant_key


def _merged_transaction_ids(existing: Optional[Sequence], incoming: Sequence) -> List[str]:
    return sorted({str(t) for t in (existing or [])} | {str(t) for t in incoming})


class SubscriptionGenerator:
    """
    Creates or refreshes subscriptions from detected patterns.

    Only ever creates into 'active' or promotes 'paused' to 'active';
    cancellation happens elsewhere.
    """

    def __init__(self, store: SubscriptionWriter, settings: Optional[DetectionSettings] = None):
        self.store = store
        self.settings = settings or get_detection_settings()

    def _apply_pattern(self, subscription: Subscription, pattern: RecurringPattern) -> None:
        subscription.name = pattern.display_name
        subscription.merchant = stored_merchant(pattern)
        subscription.amount = pattern.amount
        subscription.currency = pattern.currency
        subscription.interval = pattern.interval
        subscription.renewal_date = pattern.next_billing_date
        subscription.last_payment_date = pattern.last_transaction_date
        subscription.category = pattern.category
        subscription.confidence_score = pattern.confidence
        subscription.transaction_ids = _merged_transaction_ids(
            subscription.transaction_ids, pattern.transaction_ids
        )
        if subscription.account_id is None and pattern.account_id is not None:
            subscription.account_id = pattern.account_id

    def _reconcile_pattern(self, user_id: str, pattern: RecurringPattern) -> GeneratedSubscription:
        existing = self.store.find_existing(
            user_id,
            merchant_variants(pattern),
            RECONCILE_STATUSES,
            account_id=pattern.account_id,
            display_names=[pattern.known_merchant.display_name] if pattern.known_merchant else (),
        )

        if existing:
            created = False
            subscription = existing
            self._apply_pattern(subscription, pattern)
            if subscription.status == SUBSCRIPTION_STATUS_PAUSED:
                logger.info(
                    f"[SUBSCRIPTION_GENERATOR] Reactivating paused subscription {subscription.id} "
                    f"({pattern.merchant_key})"
                )
                subscription.status = SUBSCRIPTION_STATUS_ACTIVE
        else:
            created = True
            subscription = Subscription(
                user_id=user_id,
                status=SUBSCRIPTION_STATUS_ACTIVE,
                is_auto_detected=True,
                transaction_ids=[],
            )
            self._apply_pattern(subscription, pattern)

        self.store.save(subscription)
        linked = self.store.link_transactions(subscription, pattern.transaction_ids)

        return GeneratedSubscription(
            subscription_id=subscription.id,
            name=subscription.name,
            merchant=subscription.merchant,
            amount=subscription.amount,
            currency=subscription.currency,
            interval=subscription.interval,
            status=subscription.status,
            confidence=subscription.confidence_score,
            category=subscription.category,
            is_auto_detected=bool(subscription.is_auto_detected),
            created=created,
            linked_transactions=linked,
        )

    def reconcile(self, user_id: str, patterns: Sequence[RecurringPattern]) -> ReconcileResult:
        """
        Create or update one subscription per pattern.

        A pattern that fails to persist is rolled back, logged and reported
        in result.failures; the remaining patterns still go through.
        """
        result = ReconcileResult()

        for pattern in patterns:
            try:
                outcome = self._reconcile_pattern(user_id, pattern)
                self.store.commit()
            except Exception as exc:
                self.store.rollback()
                logger.exception(
                    f"[SUBSCRIPTION_GENERATOR] Failed to reconcile '{pattern.merchant_key}' "
                    f"for user {user_id}: {exc}"
                )
                result.failures.append(
                    ReconcileFailure(
                        merchant=pattern.merchant_key,
                        error_code="PERSISTENCE_FAILED",
                        message="Subscription could not be saved",
                    )
                )
                continue

            result.subscriptions.append(outcome)
            logger.debug(
                f"[SUBSCRIPTION_GENERATOR] {'Created' if outcome.created else 'Updated'} "
                f"subscription {outcome.subscription_id} for '{pattern.merchant_key}'"
            )

        logger.info(
            f"[SUBSCRIPTION_GENERATOR] User {user_id}: {result.created_count} new, "
            f"{result.updated_count} updated, {len(result.failures)} failed"
        )
        return result
