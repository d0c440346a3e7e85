from pydantic import BaseModel, ConfigDict, Field
from datetime import date
from decimal import Decimal
from typing import Optional, List
from uuid import UUID


# Known Merchant Schemas
class KnownMerchantRef(BaseModel):
    merchant_id: Optional[UUID] = None
    name: str
    display_name: str
    category: str
    confidence: float

    model_config = ConfigDict(from_attributes=True)


# Subscription Detection Schemas
class DetectedSubscriptionResponse(BaseModel):
    id: UUID = Field(validation_alias="subscription_id")
    name: str
    merchant: str
    amount: Decimal
    currency: str
    interval: str
    status: str
    confidence_score: float = Field(validation_alias="confidence")
    category: Optional[str] = None
    is_auto_detected: bool
    was_created: bool = Field(validation_alias="created")
    linked_transactions: int = 0

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class ReconcileFailureResponse(BaseModel):
    merchant: str
    error_code: str
    message: str

    model_config = ConfigDict(from_attributes=True)


class DetectionRunResponse(BaseModel):
    user_id: str
    months_back: int
    detected_count: int
    created_count: int
    updated_count: int
    failed_count: int
    linked_count: int
    enriched_count: int
    total_monthly_spend: Decimal
    most_expensive: Optional[DetectedSubscriptionResponse] = None
    subscriptions: List[DetectedSubscriptionResponse] = []
    failures: List[ReconcileFailureResponse] = []
    message: str = ""

    model_config = ConfigDict(from_attributes=True)


# Dry Run Schemas
class RecurringPatternResponse(BaseModel):
    merchant_key: str
    merchant: str
    display_name: str
    amount: Decimal
    currency: str
    interval: str
    next_billing_date: date
    confidence: float
    category: Optional[str] = None
    known_merchant: Optional[KnownMerchantRef] = None
    occurrences: int
    average_interval: float
    amount_variance: float
    first_transaction_date: Optional[date] = None
    last_transaction_date: Optional[date] = None
    transaction_count: int

    model_config = ConfigDict(from_attributes=True)


class CandidateTraceResponse(BaseModel):
    merchant: str
    occurrences: int
    interval: str
    average_interval: float
    amount: Decimal
    confidence: float

    model_config = ConfigDict(from_attributes=True)


class RejectedMerchantResponse(BaseModel):
    merchant: str
    reason: str
    detail: str

    model_config = ConfigDict(from_attributes=True)


class DetectionTraceResponse(BaseModel):
    total_transactions: int
    expense_transactions: int
    skipped_records: int
    unique_merchants: int
    unique_normalized_merchants: int
    candidates: List[CandidateTraceResponse] = []
    rejected: List[RejectedMerchantResponse] = []

    model_config = ConfigDict(from_attributes=True)


class DryRunResponse(BaseModel):
    user_id: str
    months_back: int
    country_code: Optional[str] = None
    patterns: List[RecurringPatternResponse]
    trace: DetectionTraceResponse


class ErrorResponse(BaseModel):
    error_code: str
    message: str
