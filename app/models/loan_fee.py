import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    func,
)
from sqlalchemy.types import Uuid

from app.db.base import Base
from app.models.types import utcnow

# Products and fees are many-to-many; a fee is linked to a product at most once.
loan_product_fees = Table(
    "loan_products_loan_fees",
    Base.metadata,
    Column(
        "loan_product_id",
        Uuid(as_uuid=True),
        ForeignKey("loan_products.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "loan_fee_id",
        Uuid(as_uuid=True),
        ForeignKey("loan_fees.id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    ),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()),
)


class LoanFee(Base):
    __tablename__ = "loan_fees"
    __table_args__ = (
        UniqueConstraint("name", name="uq_loan_fees_name"),
        CheckConstraint("rate >= 0", name="ck_loan_fees_rate_nonneg"),
        CheckConstraint("calculation_method IN ('flat', 'percentage')", name="ck_loan_fees_calculation_method"),
        CheckConstraint("collection_rule IN ('upfront', 'end_of_term')", name="ck_loan_fees_collection_rule"),
        CheckConstraint(
            "calculation_basis IN ('principal', 'total_disbursed')",
            name="ck_loan_fees_calculation_basis",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    calculation_method = Column(String(20), nullable=False)
    rate = Column(Numeric(15, 4), nullable=False)
    collection_rule = Column(String(20), nullable=False)
    allocation_method = Column(String(100), nullable=False)
    calculation_basis = Column(String(20), nullable=False)
    is_archived = Column(Boolean, nullable=False, default=False)
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
