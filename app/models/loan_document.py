import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, String, Text, func
from sqlalchemy.types import Uuid

from app.db.base import Base
from app.models.types import utcnow

DOCUMENT_TYPES = (
    "contract",
    "term_sheet",
    "offer_letter",
    "eligibility_assessment_support",
    "credit_analysis_report",
    "head_of_credit_review_support",
    "internal_approval_ceo_support",
)


class LoanDocument(Base):
    __tablename__ = "loan_documents"
    __table_args__ = (
        CheckConstraint(
            "document_type IN ("
            + ", ".join(f"'{value}'" for value in DOCUMENT_TYPES)
            + ")",
            name="ck_loan_documents_type",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_application_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("loan_applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    document_type = Column(String(50), nullable=False)
    doc_url = Column(Text, nullable=False)
    doc_name = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    company_signs_first = Column(Boolean, nullable=False, default=False, server_default="false")
    uploaded_by = Column(Uuid(as_uuid=True), nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
