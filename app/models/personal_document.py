import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String, Text, func, text
from sqlalchemy.types import Uuid

from app.db.base import Base
from app.models.types import utcnow


class PersonalDocument(Base):
    __tablename__ = "personal_documents"
    __table_args__ = (
        Index(
            "uq_personal_documents_user_type_live",
            "user_id",
            "doc_type",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    doc_type = Column(String(100), nullable=False)
    doc_url = Column(Text, nullable=False)
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
