"""
Tunable thresholds for merchant matching and recurring-charge detection.

Every component takes an explicit DetectionSettings instance; values can be
overridden through SUBSCRIPTION_DETECTION_* environment variables (complex
fields as JSON).
"""
from functools import lru_cache
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class IntervalBand(BaseModel):
    """Accepted day-gap range for one billing cycle."""
    label: str
    min_days: float
    max_days: float
    ideal_days: float
    min_occurrences: int = 2

    @property
    def half_width(self) -> float:
        return (self.max_days - self.min_days) / 2

    def contains(self, days: float) -> bool:
        return self.min_days <= days <= self.max_days


class ConfidenceFloorRule(BaseModel):
    """
    Re-mapping applied to a raw confidence score.
    Rules are evaluated in order; the first one that applies wins.
    """
    min_score: float
    floor: float
    requires_consistent_amount: bool = False
    min_interval_confidence: Optional[float] = None  # exclusive
    exact: bool = False  # replace the score with floor instead of raising it


def _default_interval_bands() -> List[IntervalBand]:
    return [
        IntervalBand(label="weekly", min_days=6, max_days=10, ideal_days=7, min_occurrences=4),
        IntervalBand(label="bi-weekly", min_days=13, max_days=15, ideal_days=14),
        IntervalBand(label="monthly", min_days=22, max_days=38, ideal_days=30),
        IntervalBand(label="quarterly", min_days=85, max_days=95, ideal_days=90),
        IntervalBand(label="yearly", min_days=350, max_days=380, ideal_days=365),
    ]


def _default_floor_rules() -> List[ConfidenceFloorRule]:
    return [
        ConfidenceFloorRule(min_score=0.5, floor=0.6, requires_consistent_amount=True),
        ConfidenceFloorRule(min_score=0.35, floor=0.5, min_interval_confidence=0.6, exact=True),
        ConfidenceFloorRule(min_score=0.25, floor=0.4, exact=True),
    ]


def _default_category_hints() -> Dict[str, List[str]]:
    return {
        "Streaming": ["netflix", "spotify", "disney"],
        "Software": ["adobe", "notion", "microsoft"],
    }


class DetectionSettings(BaseSettings):
    """Thresholds shared by the matcher, detector and generator."""

    model_config = SettingsConfigDict(
        env_prefix="SUBSCRIPTION_DETECTION_",
        env_file=".env",
        extra="ignore",
    )

    # Detector
    min_transactions: int = 2
    amount_tolerance: float = 0.20
    partial_amount_variance: float = 0.30
    interval_bands: List[IntervalBand] = Field(default_factory=_default_interval_bands)
    interval_closeness_weight: float = 0.6
    interval_consistency_weight: float = 0.4
    interval_score_weight: float = 0.5
    consistent_amount_bonus: float = 0.3
    partial_amount_bonus: float = 0.15
    known_merchant_bonus: float = 0.1
    occurrence_bonus_step: float = 0.02
    occurrence_bonus_cap: float = 0.1
    confidence_floor_rules: List[ConfidenceFloorRule] = Field(default_factory=_default_floor_rules)
    category_hints: Dict[str, List[str]] = Field(default_factory=_default_category_hints)
    default_category: str = "Other"
    default_months_back: int = 24

    # Matcher
    exact_keyword_score: float = 1.0
    contains_keyword_score: float = 0.8
    fuzzy_keyword_threshold: float = 0.7
    amount_match_tolerance: float = 0.15
    amount_match_bonus: float = 0.15
    amount_mismatch_ratio: float = 0.5
    amount_mismatch_penalty: float = 0.7
    country_match_bonus: float = 0.05
    single_match_floor: float = 0.6
    multi_match_floor: float = 0.5
    multi_match_limit: int = 5
    default_currency: str = "USD"
    fallback_currencies: List[str] = Field(default_factory=lambda: ["USD", "GBP"])

    def band(self, label: str) -> Optional[IntervalBand]:
        for band in self.interval_bands:
            if band.label == label:
                return band
        return None


@lru_cache
def get_detection_settings() -> DetectionSettings:
    """Process-wide settings loaded from the environment."""
    return DetectionSettings()
