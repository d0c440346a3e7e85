"""
Test recurring pattern detection.
"""
import sys
import os
from datetime import date, timedelta
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import Mock, patch
from uuid import uuid4

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from subradar.config import ConfidenceFloorRule, DetectionSettings
from subradar.services.merchant_catalog import CatalogEntry, StaticMerchantCatalog
from subradar.services.merchant_matcher import MerchantMatcher
from subradar.services.recurring_detector import (
    DetectionTrace,
    RecurringDetector,
    RejectionReason,
    _Charge,
    amount_statistics,
    apply_confidence_floor,
    classify_interval,
    exclusion_rule_for,
    month_buckets,
)


def _txn(merchant, amount, booked_at, currency="USD", account_id=None, normalized=None):
    return SimpleNamespace(
        id=uuid4(),
        account_id=account_id,
        amount=Decimal(str(amount)),
        currency=currency,
        booked_at=booked_at,
        merchant=merchant,
        normalized_merchant=normalized,
    )


def _series(merchant, amounts, start, gaps, **kwargs):
    dates = [start]
    for gap in gaps:
        dates.append(dates[-1] + timedelta(days=gap))
    return [_txn(merchant, amount, d, **kwargs) for amount, d in zip(amounts, dates)]


@pytest.fixture
def settings():
    return DetectionSettings()


@pytest.fixture
def detector(settings):
    return RecurringDetector(settings=settings)


def test_starbucks_monthly_pattern(detector):
    transactions = _series(
        "SQ *STARBUCKS STORE 12345",
        ["-5.45", "-5.50", "-5.40"],
        date(2024, 1, 10),
        [30, 31],
    )

    patterns = detector.detect(transactions, "user-1")

    assert len(patterns) == 1
    pattern = patterns[0]
    assert pattern.merchant_key == "starbucks"
    assert pattern.merchant == "SQ *STARBUCKS STORE 12345"
    assert pattern.interval == "monthly"
    assert pattern.amount == Decimal("5.45")
    assert pattern.confidence >= 0.5
    assert pattern.confidence == pytest.approx(0.8)
    assert pattern.occurrences == 3
    assert pattern.average_interval == 30.5
    assert pattern.currency == "USD"
    assert pattern.category == "Other"
    assert pattern.first_transaction_date == date(2024, 1, 10)
    assert pattern.last_transaction_date == date(2024, 3, 11)
    assert pattern.next_billing_date == date(2024, 4, 11)
    assert set(pattern.transaction_ids) == {t.id for t in transactions}
    print("✓ Starbucks monthly pattern detected")


def test_interval_classification_boundaries(settings):
    assert classify_interval([30, 31, 29], 4, settings).label == "monthly"
    assert classify_interval([7, 7, 8, 7], 4, settings).label == "weekly"
    assert classify_interval([7, 7, 8, 7], 5, settings).label == "weekly"
    # Weekly needs at least 4 occurrences
    assert classify_interval([7, 7], 3, settings) is None
    assert classify_interval([14, 14], 3, settings).label == "bi-weekly"
    assert classify_interval([91, 89], 3, settings).label == "quarterly"
    assert classify_interval([365], 2, settings).label == "yearly"
    assert classify_interval([50, 52], 3, settings) is None
    assert classify_interval([], 1, settings) is None
    # Mean 10 lands in the weekly band but scores below zero
    assert classify_interval([5, 15, 5, 15], 5, settings) is None
    print("✓ Interval classification")


def test_interval_confidence_blends_closeness_and_consistency(settings):
    perfect = classify_interval([30, 30], 3, settings)
    assert perfect.confidence == pytest.approx(1.0)

    # Mean 30 sits on the ideal, but neither gap falls inside the band
    mixed = classify_interval([20, 40], 3, settings)
    assert mixed.label == "monthly"
    assert mixed.confidence == pytest.approx(0.6)
    print("✓ Interval confidence")


def test_amount_tolerance_boundary(settings):
    _, _, consistent = amount_statistics([Decimal("10.00"), Decimal("11.50"), Decimal("9.80")], settings)
    assert consistent is True

    average, variance, consistent = amount_statistics([Decimal("10.00"), Decimal("13.00")], settings)
    assert consistent is False
    assert average == Decimal("11.5")
    assert variance == pytest.approx(1.5 / 11.5)
    print("✓ Amount tolerance")


def test_confidence_floor_rules(settings):
    assert apply_confidence_floor(0.55, 0.9, True, settings) == 0.6
    assert apply_confidence_floor(0.82, 0.9, True, settings) == 0.82
    assert apply_confidence_floor(0.40, 0.7, False, settings) == 0.5
    assert apply_confidence_floor(0.30, 0.5, False, settings) == 0.4
    assert apply_confidence_floor(0.45, 0.6, False, settings) == 0.4
    assert apply_confidence_floor(0.69, 1.0, False, settings) == 0.5
    assert apply_confidence_floor(0.20, 0.9, True, settings) is None
    print("✓ Confidence floors")


def test_uneven_amounts_settle_on_interval_floor(detector):
    transactions = _series("GYM CLUB", ["-10.00", "-13.00", "-10.00", "-13.00"], date(2024, 1, 10), [30, 30, 30])

    patterns = detector.detect(transactions, "user-1")

    assert len(patterns) == 1
    assert patterns[0].interval == "monthly"
    # Raw score 0.69 with inconsistent amounts is set to the 0.5 floor
    assert patterns[0].confidence == 0.5
    print("✓ Inconsistent amounts capped at the interval floor")


def test_excluded_merchants_never_detected(detector):
    start = date(2024, 1, 15)
    transactions = (
        _series("INTEREST PAYMENT", ["-1.00"] * 6, start, [31, 29, 31, 30, 31])
        + _series("CHASE CREDIT CARD PAYMENT", ["-250.00"] * 6, start, [31, 29, 31, 30, 31])
        + _series("Monthly Service Fee", ["-12.00"] * 6, start, [31, 29, 31, 30, 31])
    )
    trace = DetectionTrace()

    patterns = detector.detect(transactions, "user-1", trace=trace)

    assert patterns == []
    reasons = {r.merchant: r.reason for r in trace.rejected}
    assert reasons["interest payment"] == RejectionReason.EXCLUDED
    assert reasons["chase credit card payment"] == RejectionReason.EXCLUDED
    assert reasons["monthly service fee"] == RejectionReason.EXCLUDED
    print("✓ Exclusion filter")


def test_exclusion_rules_are_word_anchored():
    assert exclusion_rule_for("ATM WITHDRAWAL 123") == "atm"
    assert exclusion_rule_for("Online Transfer to Savings") == "transfer"
    assert exclusion_rule_for("coffee corner") is None
    assert exclusion_rule_for("batman comics") is None
    assert exclusion_rule_for(None, "bank interest") == "interest"
    print("✓ Exclusion rules")


def test_same_month_purchases_count_once(detector):
    transactions = [
        _txn("Corner Deli", "-8.00", date(2024, 5, 3)),
        _txn("Corner Deli", "-9.00", date(2024, 5, 24)),
    ]
    trace = DetectionTrace()

    assert detector.detect(transactions, "user-1", trace=trace) == []
    assert trace.rejection_for("corner deli").reason == RejectionReason.INSUFFICIENT_MONTHS
    print("✓ Same-month purchases bucketed")


def test_month_bucket_uses_median_charge():
    charges = [
        _Charge(id=1, account_id=None, amount=Decimal("5.00"), currency="USD", booked_on=date(2024, 1, 2), merchant="x"),
        _Charge(id=2, account_id=None, amount=Decimal("50.00"), currency="USD", booked_on=date(2024, 1, 9), merchant="x"),
        _Charge(id=3, account_id=None, amount=Decimal("6.00"), currency="USD", booked_on=date(2024, 1, 20), merchant="x"),
        _Charge(id=4, account_id=None, amount=Decimal("5.50"), currency="USD", booked_on=date(2024, 2, 2), merchant="x"),
    ]

    buckets = month_buckets(charges)

    assert [b.id for b in buckets] == [3, 4]
    print("✓ Bucket representative is the median charge")


def test_rejection_reasons_in_trace(detector):
    transactions = (
        [_txn("One Off Store", "-40.00", date(2024, 2, 1))]
        + [
            _txn("Random Market", "-20.00", date(2024, 1, 5)),
            _txn("Random Market", "-22.00", date(2024, 3, 20)),
            _txn("Random Market", "-21.00", date(2024, 4, 2)),
        ]
    )
    trace = DetectionTrace()

    assert detector.detect(transactions, "user-1", trace=trace) == []
    assert trace.rejection_for("one off store").reason == RejectionReason.INSUFFICIENT_OCCURRENCES
    assert trace.rejection_for("random market").reason == RejectionReason.NO_INTERVAL_MATCH
    assert trace.total_transactions == 4
    assert trace.expense_transactions == 4
    assert trace.unique_merchants == 2
    assert trace.unique_normalized_merchants == 2
    print("✓ Rejection reasons traced")


def test_confidence_below_floor_is_rejected():
    strict = DetectionSettings(confidence_floor_rules=[ConfidenceFloorRule(min_score=0.99, floor=0.99)])
    detector = RecurringDetector(settings=strict)
    transactions = _series("Gym Membership", ["-30.00"] * 3, date(2024, 1, 10), [30, 31])
    trace = DetectionTrace()

    assert detector.detect(transactions, "user-1", trace=trace) == []
    assert trace.rejection_for("gym membership").reason == RejectionReason.CONFIDENCE_BELOW_FLOOR
    print("✓ Low confidence rejected")


def test_records_skipped_without_aborting(detector):
    good = _series("Hulu", ["-7.99"] * 3, date(2024, 1, 10), [30, 31])
    transactions = good + [
        _txn("Hulu", "-7.99", date(2024, 4, 10), currency=None),
        _txn(None, "-3.00", date(2024, 1, 10)),
        _txn("Payroll", "2500.00", date(2024, 1, 31)),
    ]
    trace = DetectionTrace()

    patterns = detector.detect(transactions, "user-1", trace=trace)

    assert [p.merchant_key for p in patterns] == ["hulu"]
    assert len(patterns[0].transaction_ids) == 3
    assert trace.skipped_records == 2
    assert trace.expense_transactions == 5
    print("✓ Bad records skipped")


def test_known_merchant_enrichment(settings):
    catalog = StaticMerchantCatalog([
        CatalogEntry(
            id=uuid4(),
            name="netflix",
            display_name="Netflix",
            category="Entertainment",
            keywords=["netflix"],
            countries=["US"],
            currencies=["USD"],
            typical_amounts={"USD": 15.49},
        )
    ])
    detector = RecurringDetector(matcher=MerchantMatcher(catalog, settings=settings), settings=settings)
    transactions = _series("PAYPAL *NETFLIX", ["-15.49"] * 3, date(2024, 1, 10), [30, 31])

    patterns = detector.detect(transactions, "user-1", country_code="US")

    assert len(patterns) == 1
    assert patterns[0].known_merchant.name == "netflix"
    assert patterns[0].display_name == "Netflix"
    assert patterns[0].category == "Entertainment"
    # Known-merchant bonus on top of 0.80
    assert patterns[0].confidence == pytest.approx(0.9)
    print("✓ Known merchant enrichment")


def test_matcher_failure_falls_back_to_category_guess(settings):
    matcher = Mock()
    matcher.match.side_effect = RuntimeError("catalog lookup failed")
    detector = RecurringDetector(matcher=matcher, settings=settings)
    transactions = _series("NETFLIX.COM", ["-15.49"] * 3, date(2024, 1, 10), [30, 31])

    patterns = detector.detect(transactions, "user-1")

    assert len(patterns) == 1
    assert patterns[0].known_merchant is None
    assert patterns[0].category == "Streaming"
    print("✓ Matcher failure tolerated")


def test_group_failure_does_not_abort_run(detector):
    transactions = _series("Hulu", ["-7.99"] * 3, date(2024, 1, 10), [30, 31])
    trace = DetectionTrace()

    with patch(
        "subradar.services.recurring_detector.classify_interval",
        side_effect=RuntimeError("boom"),
    ):
        patterns = detector.detect(transactions, "user-1", trace=trace)

    assert patterns == []
    assert trace.rejection_for("hulu").reason == RejectionReason.PROCESSING_ERROR
    print("✓ Group failure isolated")


def test_patterns_sorted_by_confidence_and_account_scoped(detector):
    account_id = uuid4()
    steady = _series("Spotify", ["-11.99"] * 4, date(2024, 1, 10), [30, 31, 30], account_id=account_id)
    uneven = _series("City Parking", ["-20.00", "-27.00", "-21.00"], date(2024, 1, 12), [30, 31])
    uneven[1].account_id = uuid4()

    patterns = detector.detect(steady + uneven, "user-1")

    assert [p.merchant_key for p in patterns] == ["spotify", "city parking"]
    assert patterns[0].confidence >= patterns[1].confidence
    assert patterns[0].account_id == account_id
    assert patterns[1].account_id is None
    print("✓ Ordering and account scoping")


def test_precomputed_normalized_merchant_is_used(detector):
    transactions = _series("NFLX DIGITAL", ["-15.49"] * 2, date(2024, 1, 10), [31], normalized="netflix")

    patterns = detector.detect(transactions, "user-1")

    assert [p.merchant_key for p in patterns] == ["netflix"]
    print("✓ Stored normalized merchant used")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
