"""
Stores normalized merchant names (and catalog categories) on synced transactions.

Runs before detection so that grouping keys are computed once per transaction
instead of on every detection run.
"""
import logging
from typing import Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from subradar.models import Account, Transaction
from subradar.services.merchant_matcher import MerchantMatcher
from subradar.services.merchant_normalizer import normalize_merchant

logger = logging.getLogger(__name__)


class TransactionEnrichmentService:
    """
    Backfills Transaction.normalized_merchant for one user.

    Usage:
        enricher = TransactionEnrichmentService(db, user_id, matcher)
        updated = enricher.backfill_normalized_merchants()
    """

    def __init__(self, db: Session, user_id: str, matcher: Optional[MerchantMatcher] = None):
        self.db = db
        self.user_id = user_id
        self.matcher = matcher

    def _account_countries(self) -> Dict[UUID, Optional[str]]:
        accounts = self.db.query(Account).filter(Account.user_id == self.user_id).all()
        return {account.id: account.country for account in accounts}

    def _resolve_category(self, txn: Transaction, normalized: str, country: Optional[str]) -> Optional[str]:
        if self.matcher is None:
            return None
        amount = abs(float(txn.amount)) if txn.amount is not None else None
        match = self.matcher.match(
            normalized,
            amount=amount,
            country_code=country,
            currency_code=txn.currency,
        )
        return match.category if match else None

    def backfill_normalized_merchants(self) -> int:
        """
        Normalize every transaction that has a merchant but no normalized value.

        Returns:
            Number of transactions updated
        """
        transactions = self.db.query(Transaction).filter(
            Transaction.user_id == self.user_id,
            Transaction.merchant.isnot(None),
            Transaction.normalized_merchant.is_(None),
        ).all()

        if not transactions:
            return 0

        countries = self._account_countries()
        updated = 0

        for txn in transactions:
            try:
                normalized = normalize_merchant(txn.merchant)
                if not normalized:
                    continue
                txn.normalized_merchant = normalized
                if not txn.category:
                    category = self._resolve_category(txn, normalized, countries.get(txn.account_id))
                    if category:
                        txn.category = category
                updated += 1
            except Exception as exc:
                logger.warning(
                    f"[TRANSACTION_ENRICHMENT] Could not enrich transaction {txn.id}: {exc}"
                )

        if updated:
            self.db.commit()

        logger.info(
            f"[TRANSACTION_ENRICHMENT] Normalized {updated}/{len(transactions)} transactions "
            f"for user {self.user_id}"
        )
        return updated
