import uuid

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.types import Uuid

from app.db.base import Base
from app.models.types import JSONVariant, utcnow


class LoanApplicationAuditEvent(Base):
    __tablename__ = "loan_application_audit_events"
    __table_args__ = (
        UniqueConstraint(
            "loan_application_id",
            "sequence",
            name="uq_loan_app_audit_events_sequence",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_application_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("loan_applications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence = Column(Integer, nullable=False)
    performed_by_id = Column(Uuid(as_uuid=True), nullable=True)
    event_type = Column(String(60), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(40), nullable=False)
    previous_status = Column(String(40), nullable=True)
    new_status = Column(String(40), nullable=True)
    details = Column(JSONVariant, nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
