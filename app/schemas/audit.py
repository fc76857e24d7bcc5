from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class AuditEventType(str, Enum):
    SUBMITTED = "submitted"
    CANCELLED = "cancelled"
    REVIEW_IN_PROGRESS = "review_in_progress"
    REJECTED = "rejected"
    APPROVED = "approved"
    AWAITING_DISBURSEMENT = "awaiting_disbursement"
    DISBURSED = "disbursed"
    STATUS_CHANGED = "status_changed"
    DELETED = "deleted"
    DOCUMENT_VERIFIED_APPROVED = "document_verified_approved"
    DOCUMENT_VERIFIED_REJECTED = "document_verified_rejected"
    KYC_KYB_COMPLETED = "kyc_kyb_completed"
    ELIGIBILITY_ASSESSMENT_COMPLETED = "eligibility_assessment_completed"
    CREDIT_ASSESSMENT_COMPLETED = "credit_assessment_completed"
    HEAD_OF_CREDIT_REVIEW_COMPLETED = "head_of_credit_review_completed"
    INTERNAL_APPROVAL_CEO_COMPLETED = "internal_approval_ceo_completed"
    COMMITTEE_DECISION_COMPLETED = "committee_decision_completed"
    COUNTER_OFFER_PROPOSED = "counter_offer_proposed"
    VERSION_ACTIVATED = "version_activated"
    CONTRACT_UPLOADED = "contract_uploaded"
    CONTRACT_SENT_FOR_SIGNING = "contract_sent_for_signing"
    CONTRACT_SIGNER_OPENED = "contract_signer_opened"
    CONTRACT_SIGNED_BY_SIGNER = "contract_signed_by_signer"
    CONTRACT_FULLY_SIGNED = "contract_fully_signed"
    CONTRACT_VOIDED = "contract_voided"
    CONTRACT_EXPIRED = "contract_expired"


class PublicTimelineEventType(str, Enum):
    SUBMITTED = "submitted"
    CANCELLED = "cancelled"
    REVIEW_IN_PROGRESS = "review_in_progress"
    REJECTED = "rejected"
    APPROVED = "approved"
    AWAITING_DISBURSEMENT = "awaiting_disbursement"
    DISBURSED = "disbursed"


class AuditEventDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    loan_application_id: UUID
    sequence: int
    performed_by_id: UUID | None = None
    event_type: AuditEventType
    title: str
    description: str | None = None
    status: str
    previous_status: str | None = None
    new_status: str | None = None
    details: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime


class AuditEventListResponse(BaseModel):
    items: list[AuditEventDTO]
    total: int


class TimelineEntryDTO(BaseModel):
    sequence: int
    event_type: PublicTimelineEventType
    title: str
    description: str | None = None
    created_at: datetime


class TimelineResponse(BaseModel):
    items: list[TimelineEntryDTO]
    total: int
