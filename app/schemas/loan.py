from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LoanApplicationStatus(str, Enum):
    KYC_KYB_VERIFICATION = "kyc_kyb_verification"
    ELIGIBILITY_CHECK = "eligibility_check"
    CREDIT_ANALYSIS = "credit_analysis"
    HEAD_OF_CREDIT_REVIEW = "head_of_credit_review"
    INTERNAL_APPROVAL_CEO = "internal_approval_ceo"
    COMMITTEE_DECISION = "committee_decision"
    SME_OFFER_APPROVAL = "sme_offer_approval"
    DOCUMENT_GENERATION = "document_generation"
    SIGNING_EXECUTION = "signing_execution"
    AWAITING_DISBURSEMENT = "awaiting_disbursement"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISBURSED = "disbursed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {
        LoanApplicationStatus.REJECTED,
        LoanApplicationStatus.CANCELLED,
        LoanApplicationStatus.DISBURSED,
    }
)


class PublicLoanApplicationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISBURSED = "disbursed"
    CANCELLED = "cancelled"


class ContractStatus(str, Enum):
    CONTRACT_UPLOADED = "contract_uploaded"
    CONTRACT_SENT_FOR_SIGNING = "contract_sent_for_signing"
    CONTRACT_IN_SIGNING = "contract_in_signing"
    CONTRACT_PARTIALLY_SIGNED = "contract_partially_signed"
    CONTRACT_FULLY_SIGNED = "contract_fully_signed"
    CONTRACT_VOIDED = "contract_voided"
    CONTRACT_EXPIRED = "contract_expired"


CLOSED_CONTRACT_STATUSES = frozenset(
    {
        ContractStatus.CONTRACT_FULLY_SIGNED,
        ContractStatus.CONTRACT_VOIDED,
        ContractStatus.CONTRACT_EXPIRED,
    }
)


class LoanApplicationVersionStatus(str, Enum):
    ORIGINAL = "original"
    COUNTER_OFFER = "counter_offer"


class ReturnType(str, Enum):
    INTEREST_BASED = "interest_based"
    REVENUE_SHARING = "revenue_sharing"


class RepaymentStructure(str, Enum):
    PRINCIPAL_AND_INTEREST = "principal_and_interest"
    BULLET_REPAYMENT = "bullet_repayment"


class RepaymentCycle(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BI_WEEKLY = "bi_weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class LoanDocumentType(str, Enum):
    CONTRACT = "contract"
    TERM_SHEET = "term_sheet"
    OFFER_LETTER = "offer_letter"
    ELIGIBILITY_ASSESSMENT_SUPPORT = "eligibility_assessment_support"
    CREDIT_ANALYSIS_REPORT = "credit_analysis_report"
    HEAD_OF_CREDIT_REVIEW_SUPPORT = "head_of_credit_review_support"
    INTERNAL_APPROVAL_CEO_SUPPORT = "internal_approval_ceo_support"


class SignatoryCategory(str, Enum):
    COMPANY = "company"
    CLIENT = "client"


# --- Requests -------------------------------------------------------------


class CustomFee(BaseModel):
    name: str = Field(min_length=1, max_length=150)
    amount: Decimal = Field(ge=0)
    calculation_method: str | None = Field(default=None, max_length=50)


class LoanTermsInput(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    funding_amount: Decimal = Field(gt=0)
    repayment_period: int = Field(ge=1)
    return_type: ReturnType = ReturnType.INTEREST_BASED
    interest_rate: Decimal = Field(ge=0)
    repayment_structure: RepaymentStructure = RepaymentStructure.PRINCIPAL_AND_INTEREST
    repayment_cycle: RepaymentCycle = RepaymentCycle.MONTHLY
    grace_period: int | None = Field(default=None, ge=0)
    first_payment_date: datetime | None = None
    custom_fees: list[CustomFee] = Field(default_factory=list)


class LoanApplicationCreate(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    business_id: UUID
    entrepreneur_id: UUID
    loan_product_id: UUID
    funding_amount: Decimal = Field(gt=0)
    funding_currency: str = Field(min_length=3, max_length=10)
    converted_amount: Decimal | None = Field(default=None, gt=0)
    converted_currency: str | None = Field(default=None, min_length=3, max_length=10)
    exchange_rate: Decimal | None = Field(default=None, gt=0)
    repayment_period: int = Field(ge=1)
    intended_use_of_funds: str = Field(min_length=1, max_length=100)
    interest_rate: Decimal = Field(ge=0)
    loan_source: str | None = Field(default=None, max_length=100)
    repayment_structure: RepaymentStructure = RepaymentStructure.PRINCIPAL_AND_INTEREST
    repayment_cycle: RepaymentCycle = RepaymentCycle.MONTHLY
    grace_period: int | None = Field(default=None, ge=0)
    first_payment_date: datetime | None = None

    @field_validator("funding_currency", "converted_currency")
    @classmethod
    def _upper_currency(cls, value: str | None) -> str | None:
        return value.strip().upper() if value else value


class SupportingDocumentInput(BaseModel):
    doc_url: str = Field(min_length=1)
    doc_name: str | None = Field(default=None, max_length=255)
    notes: str | None = None


class NextApproverInput(BaseModel):
    next_approver_email: str = Field(min_length=3, max_length=255)
    next_approver_name: str | None = Field(default=None, max_length=255)


class TransitionPayload(BaseModel):
    """Stage specific inputs that accompany a transition request."""

    comment: str | None = None
    term_sheet_url: str | None = None
    reason: str | None = None
    accepted_version_id: UUID | None = None
    expected_active_version_id: UUID | None = None
    supporting_documents: list[SupportingDocumentInput] = Field(default_factory=list)
    next_approver: NextApproverInput | None = None

    @field_validator("comment", "term_sheet_url", "reason")
    @classmethod
    def _strip_blank(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class LoanApplicationTransitionRequest(TransitionPayload):
    status: LoanApplicationStatus


class LoanApplicationCancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class CounterOfferCreate(LoanTermsInput):
    pass


class VersionActivateRequest(BaseModel):
    expected_active_version_id: UUID | None = None


class SignatoryInput(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    category: SignatoryCategory
    full_name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255)
    role_title: str | None = Field(default=None, max_length=255)
    signing_order: int | None = Field(default=None, ge=1)


class ContractRegisterRequest(BaseModel):
    doc_url: str = Field(min_length=1)
    doc_name: str | None = Field(default=None, max_length=255)
    company_signs_first: bool = False
    signatories: list[SignatoryInput] = Field(min_length=1)


class SignatureEventRequest(BaseModel):
    signed_at: datetime | None = None


class ContractCloseRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


# --- Responses ------------------------------------------------------------


class LoanApplicationVersionDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    loan_application_id: UUID
    status: LoanApplicationVersionStatus
    funding_amount: Decimal
    repayment_period: int
    return_type: ReturnType
    interest_rate: Decimal
    repayment_structure: RepaymentStructure
    repayment_cycle: RepaymentCycle
    grace_period: int | None = None
    first_payment_date: datetime | None = None
    custom_fees: list[dict[str, Any]] = Field(default_factory=list)
    created_by: UUID
    created_at: datetime | None = None


class LoanApplicationVersionListResponse(BaseModel):
    items: list[LoanApplicationVersionDTO]
    active_version_id: UUID | None = None
    total: int


class LoanApplicationDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    loan_id: str
    business_id: UUID
    entrepreneur_id: UUID
    loan_product_id: UUID
    loan_product_version: int
    funding_amount: Decimal
    funding_currency: str
    converted_amount: Decimal | None = None
    converted_currency: str | None = None
    exchange_rate: Decimal | None = None
    repayment_period: int
    intended_use_of_funds: str
    interest_rate: Decimal
    loan_source: str | None = None
    status: LoanApplicationStatus
    contract_status: ContractStatus | None = None
    active_version_id: UUID | None = None
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    disbursed_at: datetime | None = None
    cancelled_at: datetime | None = None
    rejection_reason: str | None = None
    eligibility_assessment_comment: str | None = None
    eligibility_assessment_completed_at: datetime | None = None
    credit_assessment_comment: str | None = None
    credit_assessment_completed_at: datetime | None = None
    head_of_credit_review_comment: str | None = None
    head_of_credit_review_completed_at: datetime | None = None
    internal_approval_ceo_comment: str | None = None
    internal_approval_ceo_completed_at: datetime | None = None
    term_sheet_url: str | None = None
    term_sheet_uploaded_at: datetime | None = None
    created_by: UUID
    last_updated_by: UUID | None = None
    last_updated_at: datetime | None = None
    created_at: datetime | None = None


class LoanApplicationSelfDTO(BaseModel):
    """Entrepreneur facing view: internal review stages are masked."""

    id: UUID
    loan_id: str
    business_id: UUID
    loan_product_id: UUID
    funding_amount: Decimal
    funding_currency: str
    repayment_period: int
    interest_rate: Decimal
    status: PublicLoanApplicationStatus
    active_version_id: UUID | None = None
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    disbursed_at: datetime | None = None
    cancelled_at: datetime | None = None
    rejection_reason: str | None = None


class LoanApplicationListResponse(BaseModel):
    items: list[LoanApplicationDTO]
    total: int


class LoanApplicationSelfListResponse(BaseModel):
    items: list[LoanApplicationSelfDTO]
    total: int


class ContractSignatoryDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contract_document_id: UUID
    category: SignatoryCategory
    full_name: str
    email: str
    role_title: str | None = None
    signing_order: int | None = None
    has_signed: bool
    signed_at: datetime | None = None


class ContractStatusResponse(BaseModel):
    loan_application_id: UUID
    contract_status: ContractStatus | None = None
    application_status: LoanApplicationStatus
    signatories: list[ContractSignatoryDTO] = Field(default_factory=list)
