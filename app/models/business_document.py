import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.types import Uuid

from app.db.base import Base
from app.models.types import utcnow


class BusinessDocument(Base):
    """Business document keyed by (business, type, year, bank); year and bank are optional."""

    __tablename__ = "business_documents"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("business_profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    doc_type = Column(String(100), nullable=False)
    doc_url = Column(Text, nullable=False)
    doc_year = Column(Integer, nullable=True)
    doc_bank_name = Column(String(255), nullable=True)
    is_password_protected = Column(Boolean, nullable=False, default=False, server_default="false")
    is_verified = Column(Boolean, nullable=False, default=False, server_default="false")
    verified_for_loan_application_id = Column(Uuid(as_uuid=True), nullable=True)
    locked_at = Column(DateTime(timezone=True), nullable=True)
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

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None


# NULL year/bank must still collide, so the natural key is indexed through coalesce.
Index(
    "uq_business_documents_natural_key_live",
    BusinessDocument.business_id,
    BusinessDocument.doc_type,
    func.coalesce(BusinessDocument.doc_year, -1),
    func.coalesce(BusinessDocument.doc_bank_name, ""),
    unique=True,
    postgresql_where=text("deleted_at IS NULL"),
    sqlite_where=text("deleted_at IS NULL"),
)
