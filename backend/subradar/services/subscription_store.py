"""
Subscription persistence used by the subscription generator.
"""
import logging
from typing import Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from subradar.models import Subscription, Transaction

logger = logging.getLogger(__name__)


def _to_uuid(value) -> Optional[UUID]:
    if value is None:
        return None
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


class SubscriptionStore:
    """
    SQLAlchemy-backed subscription reads and writes for one session.

    Usage:
        store = SubscriptionStore(db)
        existing = store.find_existing(user_id, ["netflix", "Netflix"], ["active", "paused"])
    """

    def __init__(self, db: Session):
        self.db = db

    def find_existing(
        self,
        user_id: str,
        merchant_names: Iterable[Optional[str]],
        statuses: Sequence[str],
        account_id: Optional[UUID] = None,
        display_names: Iterable[Optional[str]] = (),
    ) -> Optional[Subscription]:
        """
        Find a subscription whose merchant matches any of the given names
        (case-insensitive), or whose name matches one of display_names,
        with one of the given statuses.

        With an account_id, a subscription on that account (or on no account)
        is preferred; otherwise the oldest candidate is returned.
        """
        names = sorted({n.strip().lower() for n in merchant_names if n and n.strip()})
        labels = sorted({n.strip().lower() for n in display_names if n and n.strip()})
        if not names and not labels:
            return None

        identity = func.lower(Subscription.merchant).in_(names)
        if labels:
            identity = or_(identity, func.lower(Subscription.name).in_(labels))

        candidates: List[Subscription] = (
            self.db.query(Subscription)
            .filter(
                Subscription.user_id == user_id,
                Subscription.status.in_(list(statuses)),
                identity,
            )
            .order_by(Subscription.created_at.asc(), Subscription.id.asc())
            .all()
        )
        if not candidates:
            return None

        account_uuid = _to_uuid(account_id)
        if account_uuid is not None:
            for candidate in candidates:
                if candidate.account_id is None or candidate.account_id == account_uuid:
                    return candidate

        return candidates[0]

    def save(self, subscription: Subscription) -> Subscription:
        self.db.add(subscription)
        self.db.flush()
        return subscription

    def link_transactions(self, subscription: Subscription, transaction_ids: Iterable) -> int:
        """
        Point the given transactions at a subscription.

        Transactions already linked to a different subscription are left alone.

        Returns:
            Number of newly linked transactions
        """
        ids = [u for u in (_to_uuid(t) for t in transaction_ids) if u is not None]
        if not ids:
            return 0

        transactions = self.db.query(Transaction).filter(
            Transaction.user_id == subscription.user_id,
            Transaction.id.in_(ids),
        ).all()

        linked = 0
        for txn in transactions:
            if txn.subscription_id == subscription.id:
                continue
            if txn.subscription_id is not None:
                logger.debug(
                    f"[SUBSCRIPTION_STORE] Transaction {txn.id} already linked to "
                    f"{txn.subscription_id}, not relinking"
                )
                continue
            txn.subscription_id = subscription.id
            linked += 1

        self.db.flush()
        return linked

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()
