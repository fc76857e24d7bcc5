from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class LoanProductStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class TermUnit(str, Enum):
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    QUARTERS = "quarters"
    YEARS = "years"


class RatePeriod(str, Enum):
    PER_DAY = "per_day"
    PER_MONTH = "per_month"
    PER_QUARTER = "per_quarter"
    PER_YEAR = "per_year"


class RepaymentFrequency(str, Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class AmortizationMethod(str, Enum):
    FLAT = "flat"
    REDUCING_BALANCE = "reducing_balance"


class InterestCollectionMethod(str, Enum):
    INSTALLMENTS = "installments"
    DEDUCTED = "deducted"
    CAPITALIZED = "capitalized"


class InterestRecognitionCriteria(str, Enum):
    ON_DISBURSEMENT = "on_disbursement"
    WHEN_ACCRUED = "when_accrued"


class GracePeriodUnit(str, Enum):
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    YEARS = "years"


class FeeCalculationMethod(str, Enum):
    FLAT = "flat"
    PERCENTAGE = "percentage"


class FeeCollectionRule(str, Enum):
    UPFRONT = "upfront"
    END_OF_TERM = "end_of_term"


class FeeCalculationBasis(str, Enum):
    PRINCIPAL = "principal"
    TOTAL_DISBURSED = "total_disbursed"


class LoanProductFeeInput(BaseModel):
    """Link an existing fee by id, or describe a new one to create inline."""

    model_config = ConfigDict(use_enum_values=True)

    loan_fee_id: UUID | None = None
    fee_name: str | None = Field(default=None, min_length=1, max_length=255)
    calculation_method: FeeCalculationMethod | None = None
    rate: Decimal | None = Field(default=None, ge=0)
    collection_rule: FeeCollectionRule | None = None
    allocation_method: str | None = Field(default=None, min_length=1, max_length=100)
    calculation_basis: FeeCalculationBasis | None = None

    @model_validator(mode="after")
    def _check_reference(self) -> "LoanProductFeeInput":
        if self.loan_fee_id is not None:
            return self
        if not self.fee_name:
            raise ValueError("fee must have either loan_fee_id or fee_name")
        missing = [
            name
            for name in ("calculation_method", "rate", "collection_rule", "allocation_method", "calculation_basis")
            if getattr(self, name) is None
        ]
        if missing:
            raise ValueError(f"new fee is missing: {', '.join(missing)}")
        return self


class LoanFeeDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    calculation_method: FeeCalculationMethod
    rate: Decimal
    collection_rule: FeeCollectionRule
    allocation_method: str
    calculation_basis: FeeCalculationBasis


CRITICAL_PRODUCT_FIELDS = (
    "min_amount",
    "max_amount",
    "min_term",
    "max_term",
    "interest_rate",
    "rate_period",
    "amortization_method",
    "repayment_frequency",
    "interest_collection_method",
    "interest_recognition_criteria",
)


class LoanProductCreate(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    organization_id: UUID
    name: str = Field(min_length=1, max_length=150)
    description: str | None = None
    currency: str = Field(min_length=3, max_length=10)
    min_amount: Decimal = Field(gt=0)
    max_amount: Decimal = Field(gt=0)
    min_term: int = Field(ge=1)
    max_term: int = Field(ge=1)
    term_unit: TermUnit
    interest_rate: Decimal = Field(ge=0)
    rate_period: RatePeriod
    amortization_method: AmortizationMethod
    repayment_frequency: RepaymentFrequency
    interest_collection_method: InterestCollectionMethod
    interest_recognition_criteria: InterestRecognitionCriteria
    grace_period: int | None = Field(default=None, ge=0)
    grace_period_unit: GracePeriodUnit | None = None
    max_grace_period: int | None = Field(default=None, ge=0)
    eligibility_criteria: str | None = None
    fees: list[LoanProductFeeInput] = Field(default_factory=list)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode="after")
    def _check_ranges(self) -> "LoanProductCreate":
        if self.min_amount > self.max_amount:
            raise ValueError("min_amount cannot exceed max_amount")
        if self.min_term > self.max_term:
            raise ValueError("min_term cannot exceed max_term")
        return self


class LoanProductUpdate(BaseModel):
    """Partial edit; only fields that are set are applied."""

    model_config = ConfigDict(use_enum_values=True)

    name: str | None = Field(default=None, min_length=1, max_length=150)
    description: str | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=10)
    min_amount: Decimal | None = Field(default=None, gt=0)
    max_amount: Decimal | None = Field(default=None, gt=0)
    min_term: int | None = Field(default=None, ge=1)
    max_term: int | None = Field(default=None, ge=1)
    term_unit: TermUnit | None = None
    interest_rate: Decimal | None = Field(default=None, ge=0)
    rate_period: RatePeriod | None = None
    amortization_method: AmortizationMethod | None = None
    repayment_frequency: RepaymentFrequency | None = None
    interest_collection_method: InterestCollectionMethod | None = None
    interest_recognition_criteria: InterestRecognitionCriteria | None = None
    grace_period: int | None = Field(default=None, ge=0)
    grace_period_unit: GracePeriodUnit | None = None
    max_grace_period: int | None = Field(default=None, ge=0)
    eligibility_criteria: str | None = None
    fees: list[LoanProductFeeInput] | None = None


class LoanProductStatusChange(BaseModel):
    status: LoanProductStatus
    change_reason: str = Field(min_length=1, max_length=2000)
    approved_by: UUID

    @field_validator("change_reason")
    @classmethod
    def _strip_reason(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("change_reason is required")
        return cleaned


class LoanProductDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    name: str
    description: str | None = None
    currency: str
    min_amount: Decimal
    max_amount: Decimal
    min_term: int
    max_term: int
    term_unit: TermUnit
    interest_rate: Decimal
    rate_period: RatePeriod
    amortization_method: AmortizationMethod
    repayment_frequency: RepaymentFrequency
    interest_collection_method: InterestCollectionMethod
    interest_recognition_criteria: InterestRecognitionCriteria
    grace_period: int | None = None
    grace_period_unit: GracePeriodUnit | None = None
    max_grace_period: int | None = None
    eligibility_criteria: str | None = None
    fees: list[LoanFeeDTO] = Field(default_factory=list)
    status: LoanProductStatus
    is_active: bool
    version: int
    change_reason: str | None = None
    approved_by: UUID | None = None
    approved_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class LoanProductListResponse(BaseModel):
    items: list[LoanProductDTO]
    total: int
