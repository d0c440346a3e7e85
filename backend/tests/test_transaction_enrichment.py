"""
Test normalized-merchant backfill on stored transactions.
"""
import sys
import os
from datetime import date

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from subradar.services.merchant_catalog import (
    DEFAULT_KNOWN_MERCHANTS,
    KnownMerchantCatalog,
    upsert_known_merchants,
)
from subradar.services.merchant_matcher import MerchantMatcher
from subradar.services.transaction_enrichment import TransactionEnrichmentService


@pytest.fixture
def matcher(db_session):
    upsert_known_merchants(db_session, DEFAULT_KNOWN_MERCHANTS)
    return MerchantMatcher(KnownMerchantCatalog(db_session), track_popularity=False)


def test_backfill_sets_normalized_merchant_and_category(db_session, user, add_transaction, matcher):
    netflix = add_transaction("PAYPAL *NETFLIX.COM", "-15.49", date(2024, 3, 5))
    deli = add_transaction("CORNER DELI #42", "-8.20", date(2024, 3, 6))

    updated = TransactionEnrichmentService(db_session, user.id, matcher).backfill_normalized_merchants()

    assert updated == 2
    db_session.refresh(netflix)
    db_session.refresh(deli)
    assert netflix.normalized_merchant == "netflix.com"
    assert netflix.category == "Streaming"
    assert deli.normalized_merchant == "corner deli"
    assert deli.category is None
    print("✓ Normalized merchants backfilled")


def test_backfill_leaves_existing_values_alone(db_session, user, add_transaction, matcher):
    preset = add_transaction("NETFLIX.COM", "-15.49", date(2024, 3, 5), commit=False)
    preset.normalized_merchant = "my netflix"
    categorized = add_transaction("SPOTIFY USA", "-11.99", date(2024, 3, 7), commit=False)
    categorized.category = "Entertainment"
    db_session.commit()

    updated = TransactionEnrichmentService(db_session, user.id, matcher).backfill_normalized_merchants()

    assert updated == 1
    db_session.refresh(preset)
    db_session.refresh(categorized)
    assert preset.normalized_merchant == "my netflix"
    assert categorized.normalized_merchant == "spotify usa"
    assert categorized.category == "Entertainment"
    print("✓ Existing values untouched")


def test_backfill_without_matcher(db_session, user, add_transaction):
    txn = add_transaction("SQ *STARBUCKS STORE 12345", "-5.45", date(2024, 3, 5))

    updated = TransactionEnrichmentService(db_session, user.id).backfill_normalized_merchants()

    assert updated == 1
    db_session.refresh(txn)
    assert txn.normalized_merchant == "starbucks"
    assert txn.category is None
    assert TransactionEnrichmentService(db_session, user.id).backfill_normalized_merchants() == 0
    print("✓ Backfill without catalog")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
