from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class DocumentKind(str, Enum):
    PERSONAL = "personal"
    BUSINESS = "business"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class VerificationOutcome(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class DocumentRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: DocumentKind
    document_id: UUID


class BusinessDocumentUpsert(BaseModel):
    doc_type: str = Field(min_length=1, max_length=100)
    doc_url: str = Field(min_length=1)
    doc_year: int | None = Field(default=None, ge=1900, le=2100)
    doc_bank_name: str | None = Field(default=None, max_length=255)
    is_password_protected: bool = False

    @field_validator("doc_type", "doc_bank_name")
    @classmethod
    def _strip(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @model_validator(mode="after")
    def _require_key_parts(self) -> "BusinessDocumentUpsert":
        if self.doc_type == "audited_financial_statements" and self.doc_year is None:
            raise ValueError("doc_year is required for audited_financial_statements")
        if self.doc_type == "annual_bank_statement" and (
            self.doc_year is None or self.doc_bank_name is None
        ):
            raise ValueError("doc_year and doc_bank_name are required for annual_bank_statement")
        return self


class PersonalDocumentUpsert(BaseModel):
    doc_type: str = Field(min_length=1, max_length=100)
    doc_url: str = Field(min_length=1)


class DocumentVerificationRequest(BaseModel):
    document_type: DocumentKind
    document_id: UUID
    outcome: VerificationOutcome
    rejection_reason: str | None = Field(default=None, max_length=2000)
    notes: str | None = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def _reason_for_rejection(self) -> "DocumentVerificationRequest":
        if self.outcome == VerificationOutcome.REJECTED and not (
            self.rejection_reason and self.rejection_reason.strip()
        ):
            raise ValueError("rejection_reason is required when rejecting a document")
        return self


class BusinessDocumentDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    business_id: UUID
    doc_type: str
    doc_url: str
    doc_year: int | None = None
    doc_bank_name: str | None = None
    is_password_protected: bool
    is_verified: bool
    verified_for_loan_application_id: UUID | None = None
    locked_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PersonalDocumentDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    doc_type: str
    doc_url: str
    is_verified: bool
    verified_for_loan_application_id: UUID | None = None
    locked_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DocumentVerificationDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    loan_application_id: UUID
    document_type: DocumentKind
    document_id: UUID
    verification_status: VerificationStatus
    verified_by: UUID | None = None
    verified_at: datetime | None = None
    rejection_reason: str | None = None
    notes: str | None = None


class DocumentVerificationListResponse(BaseModel):
    items: list[DocumentVerificationDTO]
    total: int


class GateResultDTO(BaseModel):
    passed: bool
    outstanding: list[DocumentRef] = Field(default_factory=list)


class DocumentReplaceRequest(BaseModel):
    doc_url: str = Field(min_length=1)


class BusinessDocumentListResponse(BaseModel):
    items: list[BusinessDocumentDTO]
    total: int


class PersonalDocumentListResponse(BaseModel):
    items: list[PersonalDocumentDTO]
    total: int
