import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.types import Uuid

from app.db.base import Base
from app.models.types import JSONVariant, utcnow


class LoanApplicationVersion(Base):
    """Immutable snapshot of negotiated loan terms."""

    __tablename__ = "loan_application_versions"
    __table_args__ = (
        CheckConstraint(
            "status IN ('original', 'counter_offer')",
            name="ck_loan_app_versions_status",
        ),
        CheckConstraint(
            "return_type IN ('interest_based', 'revenue_sharing')",
            name="ck_loan_app_versions_return_type",
        ),
        CheckConstraint(
            "repayment_structure IN ('principal_and_interest', 'bullet_repayment')",
            name="ck_loan_app_versions_repayment_structure",
        ),
        CheckConstraint(
            "repayment_cycle IN ('daily', 'weekly', 'bi_weekly', 'monthly', 'quarterly')",
            name="ck_loan_app_versions_repayment_cycle",
        ),
        CheckConstraint("funding_amount > 0", name="ck_loan_app_versions_funding_positive"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_application_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("loan_applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status = Column(String(20), nullable=False, default="original")
    funding_amount = Column(Numeric(15, 2), nullable=False)
    repayment_period = Column(Integer, nullable=False)
    return_type = Column(String(30), nullable=False, default="interest_based")
    interest_rate = Column(Numeric(7, 4), nullable=False)
    repayment_structure = Column(String(30), nullable=False)
    repayment_cycle = Column(String(20), nullable=False)
    grace_period = Column(Integer, nullable=True)
    first_payment_date = Column(DateTime(timezone=True), nullable=True)
    custom_fees = Column(JSONVariant, nullable=False, default=list)
    created_by = Column(Uuid(as_uuid=True), nullable=False)
    created_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
