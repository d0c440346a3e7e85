"""
Recurring charge detection over a user's transaction history.

Core approach: group expense transactions by normalized merchant, collapse
each merchant's charges into one occurrence per calendar month, infer the
billing interval from the gaps between occurrences and score the candidate on
interval regularity, amount stability, catalog match and history length.

Usage:
    detector = RecurringDetector(matcher=MerchantMatcher(KnownMerchantCatalog(db)))
    patterns = detector.detect(transactions, user_id, country_code="US")

    trace = DetectionTrace()
    detector.detect(transactions, user_id, trace=trace)
    # trace.rejected -> [RejectedMerchant("coffee shop", "no_interval_match", ...)]
"""
import re
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Pattern, Tuple
from uuid import UUID

from dateutil.relativedelta import relativedelta

from subradar.config import DetectionSettings, get_detection_settings
from subradar.services.merchant_matcher import MerchantMatch, MerchantMatcher
from subradar.services.merchant_normalizer import normalize_merchant

logger = logging.getLogger(__name__)


# Charges that repeat on a schedule but are never subscriptions.
# Checked in order against the raw and the normalized merchant string.
EXCLUSION_RULES: List[Tuple[str, Pattern[str]]] = [
    ("interest", re.compile(r'\binterest\b', re.IGNORECASE)),
    ("card_payment", re.compile(r'\b(?:credit\s+)?card\s+payment\b', re.IGNORECASE)),
    ("payment_to", re.compile(r'\bpayment\s+to\b', re.IGNORECASE)),
    ("payment_dash", re.compile(r'\bpayment\s+-', re.IGNORECASE)),
    ("autopay", re.compile(r'\bauto\s*pay\b', re.IGNORECASE)),
    ("bill_pay", re.compile(r'\bbill\s*pay\b', re.IGNORECASE)),
    ("transfer", re.compile(r'\btransfers?\b', re.IGNORECASE)),
    ("fee", re.compile(r'\bfees?\b', re.IGNORECASE)),
    ("overdraft", re.compile(r'\boverdraft\b', re.IGNORECASE)),
    ("atm", re.compile(r'\batm\b', re.IGNORECASE)),
    ("withdrawal", re.compile(r'\bwithdrawals?\b', re.IGNORECASE)),
]

INTERVAL_STEPS: Dict[str, relativedelta] = {
    "weekly": relativedelta(days=7),
    "bi-weekly": relativedelta(days=14),
    "monthly": relativedelta(months=1),
    "quarterly": relativedelta(months=3),
    "yearly": relativedelta(years=1),
}

_CENTS = Decimal("0.01")


class RejectionReason(str, Enum):
    EXCLUDED = "excluded"
    INSUFFICIENT_OCCURRENCES = "insufficient_occurrences"
    INSUFFICIENT_MONTHS = "insufficient_months"
    NO_INTERVAL_MATCH = "no_interval_match"
    CONFIDENCE_BELOW_FLOOR = "confidence_below_floor"
    PROCESSING_ERROR = "processing_error"


@dataclass
class IntervalMatch:
    """Best interval band for a series of gaps."""
    label: str
    confidence: float
    average_interval: float


@dataclass
class RecurringPattern:
    """A detected recurring charge. Built fresh on every run, never persisted."""
    merchant_key: str
    merchant: str
    amount: Decimal
    currency: str
    interval: str
    next_billing_date: date
    confidence: float
    transaction_ids: List[Any] = field(default_factory=list)
    first_transaction_date: Optional[date] = None
    last_transaction_date: Optional[date] = None
    occurrences: int = 0  # month buckets
    average_interval: float = 0.0
    amount_variance: float = 0.0  # mean relative deviation, 0.12 = 12%
    category: Optional[str] = None
    known_merchant: Optional[MerchantMatch] = None
    account_id: Optional[UUID] = None

    @property
    def display_name(self) -> str:
        if self.known_merchant:
            return self.known_merchant.display_name
        return self.merchant_key


@dataclass
class CandidateTrace:
    merchant: str
    occurrences: int
    interval: str
    average_interval: float
    amount: Decimal
    confidence: float


@dataclass
class RejectedMerchant:
    merchant: str
    reason: RejectionReason
    detail: str


@dataclass
class DetectionTrace:
    """
    Diagnostics collected while detect() runs.

    Filled by the same code path as production detection; pass one in to
    see why each merchant was or was not accepted.
    """
    total_transactions: int = 0
    expense_transactions: int = 0
    skipped_records: int = 0
    unique_merchants: int = 0
    unique_normalized_merchants: int = 0
    candidates: List[CandidateTrace] = field(default_factory=list)
    rejected: List[RejectedMerchant] = field(default_factory=list)

    def reject(self, merchant: str, reason: RejectionReason, detail: str) -> None:
        self.rejected.append(RejectedMerchant(merchant=merchant, reason=reason, detail=detail))

    def rejection_for(self, merchant: str) -> Optional[RejectedMerchant]:
        for rejected in self.rejected:
            if rejected.merchant == merchant:
                return rejected
        return None


@dataclass
class _Charge:
    id: Any
    account_id: Optional[UUID]
    amount: Decimal  # absolute value
    currency: str
    booked_on: date
    merchant: str


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raise ValueError(f"Unsupported booking date: {value!r}")


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def exclusion_rule_for(*texts: Optional[str]) -> Optional[str]:
    """Name of the first exclusion rule matching any of the given strings."""
    for name, pattern in EXCLUSION_RULES:
        for text in texts:
            if text and pattern.search(text):
                return name
    return None


def month_buckets(charges: Iterable[_Charge]) -> List[_Charge]:
    """
    One representative charge per calendar month, in date order.

    The representative is the upper-middle element of the bucket sorted by
    amount, i.e. the charge closest to the bucket's median amount.
    """
    buckets: Dict[Tuple[int, int], List[_Charge]] = defaultdict(list)
    for charge in charges:
        buckets[(charge.booked_on.year, charge.booked_on.month)].append(charge)

    representatives = []
    for bucket in buckets.values():
        ordered = sorted(bucket, key=lambda c: (c.amount, c.booked_on, str(c.id)))
        representatives.append(ordered[len(ordered) // 2])

    return sorted(representatives, key=lambda c: c.booked_on)


def day_gaps(dates: List[date]) -> List[int]:
    return [(later - earlier).days for earlier, later in zip(dates, dates[1:])]


def classify_interval(
    gaps: List[float],
    occurrences: int,
    settings: Optional[DetectionSettings] = None,
) -> Optional[IntervalMatch]:
    """
    Pick the interval band that best explains a series of day gaps.

    A band qualifies when the mean gap lies inside it and there are enough
    occurrences for it. Score = closeness of the mean to the band's ideal
    (normalized by half the band width) blended with the share of individual
    gaps inside the band.

    Examples:
        classify_interval([30, 31, 29], 4).label  # "monthly"
        classify_interval([7, 7], 3)              # None, weekly needs 4
    """
    settings = settings or get_detection_settings()
    if not gaps:
        return None

    average = sum(gaps) / len(gaps)
    best: Optional[IntervalMatch] = None

    for band in settings.interval_bands:
        if occurrences < band.min_occurrences:
            continue
        if not band.contains(average):
            continue

        closeness = 1 - abs(average - band.ideal_days) / band.half_width
        inside = sum(1 for gap in gaps if band.contains(gap)) / len(gaps)
        score = (
            closeness * settings.interval_closeness_weight
            + inside * settings.interval_consistency_weight
        )

        # a band only qualifies with a positive score
        if score > (best.confidence if best else 0):
            best = IntervalMatch(label=band.label, confidence=score, average_interval=average)

    return best


def amount_statistics(
    amounts: List[Decimal],
    settings: Optional[DetectionSettings] = None,
) -> Tuple[Decimal, float, bool]:
    """
    Returns:
        (mean absolute amount, mean relative deviation, consistent)

    Consistent means no amount is more than the amount tolerance above the
    smallest one, so [10.00, 13.00] (30% apart) is not consistent even though
    both sit within 15% of their mean. This is stricter than a
    deviation-from-mean test; the mean deviation is still returned and drives
    the partial-consistency bonus.
    """
    settings = settings or get_detection_settings()
    values = [abs(_as_decimal(a)) for a in amounts]
    if not values:
        return Decimal("0"), 0.0, True

    average = sum(values) / len(values)
    if len(values) < 2 or average == 0:
        return average, 0.0, True

    deviations = [float(abs(v - average) / average) for v in values]
    variance = sum(deviations) / len(deviations)

    smallest = min(values)
    if smallest == 0:
        consistent = False
    else:
        consistent = float((max(values) - smallest) / smallest) <= settings.amount_tolerance
    return average, variance, consistent


def apply_confidence_floor(
    score: float,
    interval_confidence: float,
    amount_consistent: bool,
    settings: Optional[DetectionSettings] = None,
) -> Optional[float]:
    """
    Re-map a raw score through the ordered floor rules; None means discard.

    A matching rule raises the score to its floor, or sets it to exactly the
    floor when the rule is exact.
    """
    settings = settings or get_detection_settings()
    for rule in settings.confidence_floor_rules:
        if score < rule.min_score:
            continue
        if rule.requires_consistent_amount and not amount_consistent:
            continue
        if (
            rule.min_interval_confidence is not None
            and interval_confidence <= rule.min_interval_confidence
        ):
            continue
        return rule.floor if rule.exact else max(rule.floor, score)
    return None


def next_billing_date(last: date, interval: str) -> date:
    return last + INTERVAL_STEPS[interval]


def guess_category(merchant_key: str, settings: Optional[DetectionSettings] = None) -> str:
    settings = settings or get_detection_settings()
    lowered = merchant_key.lower()
    for category, keywords in settings.category_hints.items():
        if any(keyword in lowered for keyword in keywords):
            return category
    return settings.default_category


class RecurringDetector:
    """
    Detects recurring charges in a transaction snapshot.

    Known-merchant enrichment is optional: without a matcher, or when the
    matcher fails, patterns fall back to a keyword category guess.
    """

    def __init__(
        self,
        matcher: Optional[MerchantMatcher] = None,
        settings: Optional[DetectionSettings] = None,
    ):
        self.matcher = matcher
        self.settings = settings or get_detection_settings()

    def _group_charges(
        self,
        transactions: List[Any],
        trace: DetectionTrace,
    ) -> Dict[str, List[_Charge]]:
        groups: Dict[str, List[_Charge]] = defaultdict(list)
        excluded: Dict[str, str] = {}
        raw_merchants = set()
        normalized_merchants = set()

        for txn in transactions:
            try:
                amount = _as_decimal(txn.amount)
            except (ArithmeticError, TypeError, ValueError):
                trace.skipped_records += 1
                logger.warning(f"[SUBSCRIPTION_DETECTOR] Skipping transaction {txn.id}: invalid amount")
                continue

            if amount >= 0:
                continue
            trace.expense_transactions += 1

            raw = txn.merchant or None
            if not raw and not txn.normalized_merchant:
                trace.skipped_records += 1
                continue
            if not txn.currency:
                trace.skipped_records += 1
                logger.warning(f"[SUBSCRIPTION_DETECTOR] Skipping transaction {txn.id}: missing currency")
                continue

            try:
                key = txn.normalized_merchant or normalize_merchant(raw)
                booked_on = _as_date(txn.booked_at)
            except Exception as exc:
                trace.skipped_records += 1
                logger.warning(f"[SUBSCRIPTION_DETECTOR] Skipping transaction {txn.id}: {exc}")
                continue

            if not key or len(key) < 2:
                trace.skipped_records += 1
                continue

            raw_merchants.add(raw or key)
            normalized_merchants.add(key)

            rule = exclusion_rule_for(raw, key)
            if rule:
                if key not in excluded:
                    excluded[key] = rule
                    logger.debug(f"[SUBSCRIPTION_DETECTOR] Excluding '{key}' (rule: {rule})")
                continue

            groups[key].append(
                _Charge(
                    id=txn.id,
                    account_id=getattr(txn, "account_id", None),
                    amount=abs(amount),
                    currency=txn.currency.upper(),
                    booked_on=booked_on,
                    merchant=raw or key,
                )
            )

        for key, rule in excluded.items():
            if key not in groups:
                trace.reject(key, RejectionReason.EXCLUDED, f"Matches non-subscription rule '{rule}'")

        trace.unique_merchants = len(raw_merchants)
        trace.unique_normalized_merchants = len(normalized_merchants)
        return groups

    def _match_known_merchant(
        self,
        merchant_key: str,
        amount: Decimal,
        country_code: Optional[str],
        currency: str,
    ) -> Optional[MerchantMatch]:
        if self.matcher is None:
            return None
        try:
            return self.matcher.match(
                merchant_key,
                amount=float(amount),
                country_code=country_code,
                currency_code=currency,
            )
        except Exception as exc:
            logger.warning(
                f"[SUBSCRIPTION_DETECTOR] Merchant lookup failed for '{merchant_key}', continuing without match: {exc}"
            )
            return None

    def _analyze_group(
        self,
        merchant_key: str,
        charges: List[_Charge],
        country_code: Optional[str],
        trace: DetectionTrace,
    ) -> Optional[RecurringPattern]:
        if len(charges) < self.settings.min_transactions:
            trace.reject(
                merchant_key,
                RejectionReason.INSUFFICIENT_OCCURRENCES,
                f"{len(charges)} transaction(s), need {self.settings.min_transactions}",
            )
            return None

        buckets = month_buckets(charges)
        if len(buckets) < self.settings.min_transactions:
            trace.reject(
                merchant_key,
                RejectionReason.INSUFFICIENT_MONTHS,
                f"{len(buckets)} distinct month(s), need {self.settings.min_transactions}",
            )
            return None

        gaps = day_gaps([b.booked_on for b in buckets])
        interval = classify_interval(gaps, len(buckets), self.settings)
        if interval is None:
            trace.reject(
                merchant_key,
                RejectionReason.NO_INTERVAL_MATCH,
                f"No interval band fits gaps {gaps}",
            )
            return None

        average, variance, consistent = amount_statistics([b.amount for b in buckets], self.settings)
        currency = Counter(c.currency for c in charges).most_common(1)[0][0]

        known = self._match_known_merchant(merchant_key, average, country_code, currency)
        category = known.category if known else guess_category(merchant_key, self.settings)

        score = interval.confidence * self.settings.interval_score_weight
        if consistent:
            score += self.settings.consistent_amount_bonus
        elif variance < self.settings.partial_amount_variance:
            score += self.settings.partial_amount_bonus
        if known:
            score += self.settings.known_merchant_bonus
        score += min(
            self.settings.occurrence_bonus_cap,
            self.settings.occurrence_bonus_step * (len(buckets) - self.settings.min_transactions),
        )
        score = min(1.0, score)

        confidence = apply_confidence_floor(score, interval.confidence, consistent, self.settings)
        if confidence is None:
            trace.reject(
                merchant_key,
                RejectionReason.CONFIDENCE_BELOW_FLOOR,
                f"Confidence {score:.2f} below minimum",
            )
            return None

        ordered = sorted(charges, key=lambda c: (c.booked_on, str(c.id)))
        accounts = {c.account_id for c in charges}
        amount = average.quantize(_CENTS, rounding=ROUND_HALF_UP)

        pattern = RecurringPattern(
            merchant_key=merchant_key,
            merchant=ordered[0].merchant,
            amount=amount,
            currency=currency,
            interval=interval.label,
            next_billing_date=next_billing_date(buckets[-1].booked_on, interval.label),
            confidence=round(confidence, 2),
            transaction_ids=[c.id for c in ordered],
            first_transaction_date=ordered[0].booked_on,
            last_transaction_date=ordered[-1].booked_on,
            occurrences=len(buckets),
            average_interval=round(interval.average_interval, 1),
            amount_variance=round(variance, 4),
            category=category,
            known_merchant=known,
            account_id=accounts.pop() if len(accounts) == 1 else None,
        )

        logger.debug(
            f"[SUBSCRIPTION_DETECTOR] Candidate '{merchant_key}': {pattern.interval} "
            f"({pattern.average_interval} days), {pattern.amount} {currency}, "
            f"confidence {pattern.confidence}"
        )
        trace.candidates.append(
            CandidateTrace(
                merchant=merchant_key,
                occurrences=pattern.occurrences,
                interval=pattern.interval,
                average_interval=pattern.average_interval,
                amount=pattern.amount,
                confidence=pattern.confidence,
            )
        )
        return pattern

    def detect(
        self,
        transactions: Iterable[Any],
        user_id: Optional[str] = None,
        country_code: Optional[str] = None,
        trace: Optional[DetectionTrace] = None,
    ) -> List[RecurringPattern]:
        """
        Find recurring charges in a transaction snapshot.

        Args:
            transactions: Objects exposing id, account_id, amount, currency,
                booked_at, merchant and normalized_merchant
            user_id: Owner, used for logging only
            country_code: ISO country for catalog matching
            trace: Optional DetectionTrace to fill with diagnostics

        Returns:
            Patterns sorted by confidence (highest first)
        """
        trace = trace if trace is not None else DetectionTrace()
        transactions = list(transactions)
        trace.total_transactions = len(transactions)

        logger.info(
            f"[SUBSCRIPTION_DETECTOR] Starting detection for user {user_id} "
            f"({len(transactions)} transactions)"
        )

        groups = self._group_charges(transactions, trace)

        patterns: List[RecurringPattern] = []
        for merchant_key, charges in groups.items():
            try:
                pattern = self._analyze_group(merchant_key, charges, country_code, trace)
            except Exception:
                logger.exception(f"[SUBSCRIPTION_DETECTOR] Failed to analyze merchant '{merchant_key}'")
                trace.reject(
                    merchant_key,
                    RejectionReason.PROCESSING_ERROR,
                    "Merchant could not be analyzed",
                )
                continue
            if pattern:
                patterns.append(pattern)

        patterns.sort(key=lambda p: (-p.confidence, -p.occurrences, p.merchant_key))

        logger.info(
            f"[SUBSCRIPTION_DETECTOR] Found {len(patterns)} recurring patterns for user {user_id} "
            f"({len(trace.rejected)} merchants rejected, {trace.skipped_records} records skipped)"
        )
        return patterns
