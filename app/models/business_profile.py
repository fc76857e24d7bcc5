import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, func
from sqlalchemy.types import Uuid

from app.db.base import Base
from app.models.types import utcnow


class BusinessProfile(Base):
    __tablename__ = "business_profiles"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entrepreneur_id = Column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(255), nullable=False)
    registration_number = Column(String(100), nullable=True)
    country = Column(String(2), nullable=True)
    sector = Column(String(100), nullable=True)
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
