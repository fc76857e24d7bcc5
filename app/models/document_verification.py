import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.types import Uuid

from app.db.base import Base
from app.models.types import utcnow


class DocumentVerification(Base):
    __tablename__ = "document_verifications"
    __table_args__ = (
        UniqueConstraint(
            "loan_application_id",
            "document_type",
            "document_id",
            name="uq_document_verifications_app_doc",
        ),
        CheckConstraint(
            "document_type IN ('personal', 'business')",
            name="ck_document_verifications_type",
        ),
        CheckConstraint(
            "verification_status IN ('pending', 'approved', 'rejected')",
            name="ck_document_verifications_status",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_application_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("loan_applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    document_type = Column(String(20), nullable=False)
    document_id = Column(Uuid(as_uuid=True), nullable=False)
    verification_status = Column(String(20), nullable=False, default="pending")
    verified_by = Column(Uuid(as_uuid=True), nullable=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
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
