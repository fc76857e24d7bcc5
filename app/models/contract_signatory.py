import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    func,
)
from sqlalchemy.types import Uuid

from app.db.base import Base
from app.models.types import utcnow


class ContractSignatory(Base):
    __tablename__ = "contract_signatories"
    __table_args__ = (
        CheckConstraint(
            "category IN ('company', 'client')",
            name="ck_contract_signatories_category",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_application_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("loan_applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    contract_document_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("loan_documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    category = Column(String(20), nullable=False)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    role_title = Column(String(255), nullable=True)
    signing_order = Column(Integer, nullable=True)
    has_signed = Column(Boolean, nullable=False, default=False, server_default="false")
    signed_at = Column(DateTime(timezone=True), nullable=True)
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
