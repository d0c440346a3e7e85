"""
Resolves normalized merchant names against the known-merchant catalog.

Scoring combines keyword similarity (exact, containment, Levenshtein),
typical-amount proximity and country support.
"""
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional, Protocol, Tuple
from uuid import UUID

from rapidfuzz.distance import Levenshtein

from subradar.config import DetectionSettings, get_detection_settings
from subradar.services.merchant_catalog import CatalogEntry
from subradar.services.merchant_normalizer import normalize_merchant

logger = logging.getLogger(__name__)


class MerchantCatalog(Protocol):
    def list_active(self) -> List[CatalogEntry]:
        ...

    def increment_match_count(self, merchant_id: Optional[UUID]) -> bool:
        ...


@dataclass
class MerchantMatch:
    """
    A catalog entry accepted as a match for a merchant name.

    Attributes:
        merchant_id: KnownMerchant id
        name: Canonical catalog name
        display_name: Human-readable name
        category: Catalog category
        confidence: 0.0-1.0, rounded to 2 decimals
        matched_keyword: Catalog keyword that produced the keyword score
        amount_match: Amount within tolerance of the typical amount
        country_match: Country supplied and explicitly supported by the entry
    """
    merchant_id: Optional[UUID]
    name: str
    display_name: str
    category: str
    confidence: float
    matched_keyword: Optional[str] = None
    amount_match: bool = False
    country_match: bool = False


@lru_cache(maxsize=2048)
def _normalized_keyword(keyword: str) -> str:
    return normalize_merchant(keyword)


def keyword_similarity(name: str, keyword: str) -> float:
    """1 - levenshtein(name, keyword) / max(len)."""
    if not name and not keyword:
        return 1.0
    return Levenshtein.normalized_similarity(name, keyword)


class MerchantMatcher:
    """
    Scores catalog entries against a normalized merchant name.

    Usage:
        matcher = MerchantMatcher(KnownMerchantCatalog(db))
        match = matcher.match("netflix", amount=15.49, country_code="US", currency_code="USD")
        candidates = matcher.match_many("disney", limit=3)

    Popularity tracking increments the catalog counter of single-match hits;
    disable it for read-only runs.
    """

    def __init__(
        self,
        catalog: MerchantCatalog,
        settings: Optional[DetectionSettings] = None,
        track_popularity: bool = True,
    ):
        self.catalog = catalog
        self.settings = settings or get_detection_settings()
        self.track_popularity = track_popularity

    def _keyword_score(self, name: str, entry: CatalogEntry) -> Tuple[float, Optional[str]]:
        """Best (score, keyword) for an entry; (0.0, None) when nothing qualifies."""
        best_score = 0.0
        best_keyword: Optional[str] = None

        for keyword in entry.keywords:
            normalized_keyword = _normalized_keyword(keyword)
            if not normalized_keyword:
                continue

            if name == normalized_keyword:
                return self.settings.exact_keyword_score, keyword

            if name in normalized_keyword or normalized_keyword in name:
                return self.settings.contains_keyword_score, keyword

            similarity = keyword_similarity(name, normalized_keyword)
            if similarity > self.settings.fuzzy_keyword_threshold and similarity > best_score:
                best_score = similarity
                best_keyword = keyword

        return best_score, best_keyword

    def _typical_amount(self, entry: CatalogEntry, currency_code: Optional[str]) -> Optional[float]:
        if not entry.typical_amounts:
            return None
        lookup = [currency_code or self.settings.default_currency] + list(self.settings.fallback_currencies)
        for code in lookup:
            value = entry.typical_amounts.get(code.upper())
            if value:
                return value
        return None

    def _score_entry(
        self,
        name: str,
        entry: CatalogEntry,
        amount: Optional[float],
        country_code: Optional[str],
        currency_code: Optional[str],
    ) -> Optional[MerchantMatch]:
        # An empty country/currency list means the entry is not region-restricted
        if country_code and entry.countries and country_code not in entry.countries:
            return None
        if currency_code and entry.currencies and currency_code not in entry.currencies:
            return None

        keyword_score, matched_keyword = self._keyword_score(name, entry)
        if keyword_score <= 0:
            return None

        confidence = keyword_score
        amount_match = False

        if amount:
            typical = self._typical_amount(entry, currency_code)
            if typical:
                difference = abs(abs(amount) - typical) / typical
                if difference <= self.settings.amount_match_tolerance:
                    amount_match = True
                    confidence += self.settings.amount_match_bonus
                elif difference > self.settings.amount_mismatch_ratio:
                    confidence *= self.settings.amount_mismatch_penalty

        country_match = bool(country_code and country_code in entry.countries)
        if country_match:
            confidence += self.settings.country_match_bonus

        confidence = max(0.0, min(1.0, confidence))

        return MerchantMatch(
            merchant_id=entry.id,
            name=entry.name,
            display_name=entry.display_name,
            category=entry.category,
            confidence=round(confidence, 2),
            matched_keyword=matched_keyword,
            amount_match=amount_match,
            country_match=country_match,
        )

    def _candidates(
        self,
        normalized_name: Optional[str],
        amount: Optional[float],
        country_code: Optional[str],
        currency_code: Optional[str],
    ) -> List[MerchantMatch]:
        name = (normalized_name or "").strip()
        if len(name) < 2:
            return []

        entries = self.catalog.list_active()
        if not entries:
            return []

        country = country_code.upper() if country_code else None
        currency = currency_code.upper() if currency_code else None
        amount_value = float(amount) if amount is not None else None

        candidates: List[MerchantMatch] = []
        for entry in entries:
            candidate = self._score_entry(name, entry, amount_value, country, currency)
            if candidate:
                candidates.append(candidate)
        return candidates

    def match(
        self,
        normalized_name: Optional[str],
        amount: Optional[float] = None,
        country_code: Optional[str] = None,
        currency_code: Optional[str] = None,
    ) -> Optional[MerchantMatch]:
        """
        Best catalog match with confidence at or above the single-match floor.

        Returns:
            MerchantMatch or None
        """
        candidates = [
            c for c in self._candidates(normalized_name, amount, country_code, currency_code)
            if c.confidence >= self.settings.single_match_floor
        ]
        if not candidates:
            return None

        # First entry wins ties, catalog order is by name
        best = candidates[0]
        for candidate in candidates[1:]:
            if candidate.confidence > best.confidence:
                best = candidate

        logger.debug(
            f"[MERCHANT_MATCHER] '{normalized_name}' -> {best.name} "
            f"({best.confidence:.2f}, keyword={best.matched_keyword!r})"
        )

        if self.track_popularity:
            try:
                self.catalog.increment_match_count(best.merchant_id)
            except Exception as exc:
                logger.warning(
                    f"[MERCHANT_MATCHER] Could not update popularity for {best.name}: {exc}"
                )

        return best

    def match_many(
        self,
        normalized_name: Optional[str],
        amount: Optional[float] = None,
        country_code: Optional[str] = None,
        currency_code: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[MerchantMatch]:
        """Candidates at or above the multi-match floor, best first."""
        limit = self.settings.multi_match_limit if limit is None else limit
        candidates = [
            c for c in self._candidates(normalized_name, amount, country_code, currency_code)
            if c.confidence >= self.settings.multi_match_floor
        ]
        candidates.sort(key=lambda c: c.confidence, reverse=True)
        return candidates[:limit]
