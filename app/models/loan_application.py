import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.types import Uuid

from app.db.base import Base
from app.models.types import utcnow

APPLICATION_STATUSES = (
    "kyc_kyb_verification",
    "eligibility_check",
    "credit_analysis",
    "head_of_credit_review",
    "internal_approval_ceo",
    "committee_decision",
    "sme_offer_approval",
    "document_generation",
    "signing_execution",
    "awaiting_disbursement",
    "approved",
    "rejected",
    "disbursed",
    "cancelled",
)

CONTRACT_STATUSES = (
    "contract_uploaded",
    "contract_sent_for_signing",
    "contract_in_signing",
    "contract_partially_signed",
    "contract_fully_signed",
    "contract_voided",
    "contract_expired",
)


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    joined = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({joined})"


class LoanApplication(Base):
    __tablename__ = "loan_applications"
    __table_args__ = (
        CheckConstraint("funding_amount > 0", name="ck_loan_app_funding_positive"),
        CheckConstraint("repayment_period >= 1", name="ck_loan_app_period_positive"),
        CheckConstraint("interest_rate >= 0", name="ck_loan_app_rate_nonneg"),
        CheckConstraint(_in_clause("status", APPLICATION_STATUSES), name="ck_loan_app_status"),
        CheckConstraint(
            "contract_status IS NULL OR " + _in_clause("contract_status", CONTRACT_STATUSES),
            name="ck_loan_app_contract_status",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_id = Column(String(20), nullable=False, unique=True, index=True)
    business_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("business_profiles.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    entrepreneur_id = Column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    loan_product_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("loan_products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    loan_product_version = Column(Integer, nullable=False, default=1)
    funding_amount = Column(Numeric(15, 2), nullable=False)
    funding_currency = Column(String(10), nullable=False)
    converted_amount = Column(Numeric(15, 2), nullable=True)
    converted_currency = Column(String(10), nullable=True)
    exchange_rate = Column(Numeric(15, 6), nullable=True)
    repayment_period = Column(Integer, nullable=False)
    intended_use_of_funds = Column(String(100), nullable=False)
    interest_rate = Column(Numeric(7, 4), nullable=False)
    loan_source = Column(String(100), nullable=True)
    status = Column(String(40), nullable=False, default="kyc_kyb_verification", index=True)
    contract_status = Column(String(40), nullable=True)
    # Points at loan_application_versions.id; no FK to avoid a cycle with the versions table.
    active_version_id = Column(Uuid(as_uuid=True), nullable=True)

    submitted_at = Column(DateTime(timezone=True), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    disbursed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    eligibility_assessment_comment = Column(Text, nullable=True)
    eligibility_assessment_completed_at = Column(DateTime(timezone=True), nullable=True)
    eligibility_assessment_completed_by = Column(Uuid(as_uuid=True), nullable=True)
    credit_assessment_comment = Column(Text, nullable=True)
    credit_assessment_completed_at = Column(DateTime(timezone=True), nullable=True)
    credit_assessment_completed_by = Column(Uuid(as_uuid=True), nullable=True)
    head_of_credit_review_comment = Column(Text, nullable=True)
    head_of_credit_review_completed_at = Column(DateTime(timezone=True), nullable=True)
    head_of_credit_review_completed_by = Column(Uuid(as_uuid=True), nullable=True)
    internal_approval_ceo_comment = Column(Text, nullable=True)
    internal_approval_ceo_completed_at = Column(DateTime(timezone=True), nullable=True)
    internal_approval_ceo_completed_by = Column(Uuid(as_uuid=True), nullable=True)
    term_sheet_url = Column(Text, nullable=True)
    term_sheet_uploaded_at = Column(DateTime(timezone=True), nullable=True)
    term_sheet_uploaded_by = Column(Uuid(as_uuid=True), nullable=True)

    created_by = Column(Uuid(as_uuid=True), nullable=False)
    last_updated_by = Column(Uuid(as_uuid=True), nullable=True)
    last_updated_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    row_version = Column(Integer, nullable=False, default=1)
    created_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    __mapper_args__ = {"version_id_col": row_version}

    def touch(self, user_id: uuid.UUID | None) -> None:
        """Stamp the editor so the versioned UPDATE guards the change."""
        if user_id is not None:
            self.last_updated_by = user_id
        self.last_updated_at = utcnow()
