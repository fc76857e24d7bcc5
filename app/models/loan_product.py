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
from sqlalchemy.orm import relationship
from sqlalchemy.types import Uuid

from app.db.base import Base
from app.models.loan_fee import LoanFee, loan_product_fees
from app.models.types import utcnow


class LoanProduct(Base):
    __tablename__ = "loan_products"
    __table_args__ = (
        CheckConstraint("min_amount > 0", name="ck_loan_products_min_amount_positive"),
        CheckConstraint("max_amount >= min_amount", name="ck_loan_products_amount_range"),
        CheckConstraint("min_term >= 1", name="ck_loan_products_min_term_positive"),
        CheckConstraint("max_term >= min_term", name="ck_loan_products_term_range"),
        CheckConstraint("interest_rate >= 0", name="ck_loan_products_rate_nonneg"),
        CheckConstraint("version >= 1", name="ck_loan_products_version_positive"),
        CheckConstraint(
            "status IN ('draft', 'active', 'archived')",
            name="ck_loan_products_status",
        ),
        CheckConstraint(
            "term_unit IN ('days', 'weeks', 'months', 'quarters', 'years')",
            name="ck_loan_products_term_unit",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(150), nullable=False)
    description = Column(Text, nullable=True)
    currency = Column(String(10), nullable=False)
    min_amount = Column(Numeric(15, 2), nullable=False)
    max_amount = Column(Numeric(15, 2), nullable=False)
    min_term = Column(Integer, nullable=False)
    max_term = Column(Integer, nullable=False)
    term_unit = Column(String(20), nullable=False)
    interest_rate = Column(Numeric(7, 4), nullable=False)
    rate_period = Column(String(20), nullable=False)
    amortization_method = Column(String(30), nullable=False)
    repayment_frequency = Column(String(20), nullable=False)
    interest_collection_method = Column(String(30), nullable=False)
    interest_recognition_criteria = Column(String(30), nullable=False)
    grace_period = Column(Integer, nullable=True)
    grace_period_unit = Column(String(20), nullable=True)
    max_grace_period = Column(Integer, nullable=True)
    eligibility_criteria = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="draft", index=True)
    version = Column(Integer, nullable=False, default=1)
    change_reason = Column(Text, nullable=True)
    approved_by = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
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

    fees = relationship(
        LoanFee,
        secondary=loan_product_fees,
        lazy="selectin",
        order_by=LoanFee.name,
    )

    @property
    def is_active(self) -> bool:
        return self.status == "active"
