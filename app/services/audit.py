from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable
from uuid import UUID

from fastapi.encoders import jsonable_encoder
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.actor import Actor
from app.core.logging import get_audit_logger
from app.models.loan_application_audit_event import LoanApplicationAuditEvent
from app.schemas.audit import AuditEventType, PublicTimelineEventType, TimelineEntryDTO

audit_logger = get_audit_logger()

EVENT_TITLES: dict[AuditEventType, str] = {
    AuditEventType.SUBMITTED: "Loan submitted successfully",
    AuditEventType.CANCELLED: "Loan application cancelled",
    AuditEventType.REJECTED: "Loan application rejected",
    AuditEventType.APPROVED: "Loan application approved",
    AuditEventType.AWAITING_DISBURSEMENT: "Awaiting disbursement",
    AuditEventType.DISBURSED: "Loan disbursed",
    AuditEventType.DELETED: "Loan application deleted",
    AuditEventType.DOCUMENT_VERIFIED_APPROVED: "Document verified and approved",
    AuditEventType.DOCUMENT_VERIFIED_REJECTED: "Document verification rejected",
    AuditEventType.KYC_KYB_COMPLETED: "KYC/KYB verification completed",
    AuditEventType.ELIGIBILITY_ASSESSMENT_COMPLETED: "Eligibility assessment completed",
    AuditEventType.CREDIT_ASSESSMENT_COMPLETED: "Credit assessment completed",
    AuditEventType.HEAD_OF_CREDIT_REVIEW_COMPLETED: "Head of credit review completed",
    AuditEventType.INTERNAL_APPROVAL_CEO_COMPLETED: "Internal approval CEO completed",
    AuditEventType.COMMITTEE_DECISION_COMPLETED: "Committee decision completed",
    AuditEventType.COUNTER_OFFER_PROPOSED: "Counter-offer proposed",
    AuditEventType.VERSION_ACTIVATED: "Loan terms version activated",
    AuditEventType.CONTRACT_UPLOADED: "Contract uploaded",
    AuditEventType.CONTRACT_SENT_FOR_SIGNING: "Contract sent for signing",
    AuditEventType.CONTRACT_SIGNER_OPENED: "Contract opened by signer",
    AuditEventType.CONTRACT_SIGNED_BY_SIGNER: "Contract signed by signer",
    AuditEventType.CONTRACT_FULLY_SIGNED: "Contract fully signed",
    AuditEventType.CONTRACT_VOIDED: "Contract voided",
    AuditEventType.CONTRACT_EXPIRED: "Contract expired",
}

REVIEW_STAGE_TITLES = {
    "kyc_kyb_verification": "KYC/KYB verification in progress",
    "eligibility_check": "Eligibility check in progress",
    "credit_analysis": "Credit analysis in progress",
    "head_of_credit_review": "Head of credit review in progress",
    "internal_approval_ceo": "Internal approval (CEO) in progress",
    "committee_decision": "Committee decision in progress",
    "sme_offer_approval": "SME offer approval in progress",
    "document_generation": "Document generation in progress",
    "signing_execution": "Signing and execution in progress",
}

STATUS_EVENT_TYPES: dict[str, AuditEventType] = {
    **{stage: AuditEventType.REVIEW_IN_PROGRESS for stage in REVIEW_STAGE_TITLES},
    "awaiting_disbursement": AuditEventType.AWAITING_DISBURSEMENT,
    "approved": AuditEventType.APPROVED,
    "rejected": AuditEventType.REJECTED,
    "disbursed": AuditEventType.DISBURSED,
    "cancelled": AuditEventType.CANCELLED,
}

# Internal workflow events entrepreneurs never see on their timeline.
HIDDEN_EVENT_TYPES = frozenset(
    {
        AuditEventType.DOCUMENT_VERIFIED_APPROVED,
        AuditEventType.DOCUMENT_VERIFIED_REJECTED,
        AuditEventType.KYC_KYB_COMPLETED,
        AuditEventType.ELIGIBILITY_ASSESSMENT_COMPLETED,
        AuditEventType.CREDIT_ASSESSMENT_COMPLETED,
        AuditEventType.HEAD_OF_CREDIT_REVIEW_COMPLETED,
        AuditEventType.INTERNAL_APPROVAL_CEO_COMPLETED,
        AuditEventType.COMMITTEE_DECISION_COMPLETED,
        AuditEventType.COUNTER_OFFER_PROPOSED,
        AuditEventType.VERSION_ACTIVATED,
        AuditEventType.STATUS_CHANGED,
        AuditEventType.DELETED,
    }
)

_PUBLIC_CONTRACT_EVENTS = {
    AuditEventType.CONTRACT_FULLY_SIGNED: PublicTimelineEventType.AWAITING_DISBURSEMENT,
    AuditEventType.CONTRACT_UPLOADED: PublicTimelineEventType.REVIEW_IN_PROGRESS,
    AuditEventType.CONTRACT_SENT_FOR_SIGNING: PublicTimelineEventType.REVIEW_IN_PROGRESS,
    AuditEventType.CONTRACT_SIGNER_OPENED: PublicTimelineEventType.REVIEW_IN_PROGRESS,
    AuditEventType.CONTRACT_SIGNED_BY_SIGNER: PublicTimelineEventType.REVIEW_IN_PROGRESS,
    AuditEventType.CONTRACT_VOIDED: PublicTimelineEventType.REVIEW_IN_PROGRESS,
    AuditEventType.CONTRACT_EXPIRED: PublicTimelineEventType.REVIEW_IN_PROGRESS,
}


def serialize_for_audit(value: Any) -> Any:
    return jsonable_encoder(
        value,
        custom_encoder={
            Decimal: lambda v: str(v),
            datetime: lambda v: v.isoformat(),
            date: lambda v: v.isoformat(),
            UUID: lambda v: str(v),
            Enum: lambda v: v.value,
        },
    )


def model_snapshot(model: Any, *, exclude: Iterable[str] | None = None) -> dict[str, Any]:
    if model is None:
        return {}
    excluded = set(exclude or [])
    data: dict[str, Any] = {}
    for column in model.__table__.columns:
        name = column.key
        if name in excluded:
            continue
        data[name] = getattr(model, name)
    return serialize_for_audit(data)


def diff_values(old: Any, new: Any, prefix: str = "") -> dict[str, dict[str, Any]]:
    changes: dict[str, dict[str, Any]] = {}
    if isinstance(old, dict) and isinstance(new, dict):
        keys = set(old.keys()) | set(new.keys())
        for key in sorted(keys, key=str):
            path = f"{prefix}.{key}" if prefix else str(key)
            changes.update(diff_values(old.get(key), new.get(key), path))
        return changes
    if old != new:
        changes[prefix or "value"] = {"from": old, "to": new}
    return changes


def build_summary(action: str, changes: dict[str, dict[str, Any]] | None) -> str:
    if not changes:
        return action
    keys = list(changes.keys())
    snippet = ", ".join(keys[:3])
    suffix = "..." if len(keys) > 3 else ""
    return f"{action}: {snippet}{suffix}"


def event_type_for_status(status: str) -> AuditEventType:
    return STATUS_EVENT_TYPES.get(status, AuditEventType.STATUS_CHANGED)


def event_title(event_type: AuditEventType, status: str | None = None) -> str:
    if event_type == AuditEventType.REVIEW_IN_PROGRESS:
        return REVIEW_STAGE_TITLES.get(status or "", "Review in progress")
    if event_type == AuditEventType.STATUS_CHANGED:
        if not status:
            return "Status changed"
        return f"Status changed to {status.replace('_', ' ')}"
    return EVENT_TITLES[event_type]


def public_event_type(event_type: AuditEventType) -> PublicTimelineEventType | None:
    if event_type in HIDDEN_EVENT_TYPES:
        return None
    if event_type in _PUBLIC_CONTRACT_EVENTS:
        return _PUBLIC_CONTRACT_EVENTS[event_type]
    try:
        return PublicTimelineEventType(event_type.value)
    except ValueError:
        return None


async def next_sequence(db: AsyncSession, application_id: UUID) -> int:
    stmt = select(func.max(LoanApplicationAuditEvent.sequence)).where(
        LoanApplicationAuditEvent.loan_application_id == application_id
    )
    current = (await db.execute(stmt)).scalar_one_or_none()
    return (current or 0) + 1


async def append_event(
    db: AsyncSession,
    *,
    application_id: UUID,
    event_type: AuditEventType,
    status: str,
    actor: Actor | None = None,
    previous_status: str | None = None,
    new_status: str | None = None,
    title: str | None = None,
    description: str | None = None,
    details: dict[str, Any] | None = None,
) -> LoanApplicationAuditEvent:
    """Append one audit event inside the caller's transaction.

    The event is flushed so later appends in the same transaction see its
    sequence number. Nothing is committed here.
    """
    sequence = await next_sequence(db, application_id)
    cleaned = {k: v for k, v in (details or {}).items() if v is not None}
    event = LoanApplicationAuditEvent(
        loan_application_id=application_id,
        sequence=sequence,
        performed_by_id=actor.user_id if actor else None,
        event_type=event_type.value,
        title=title or event_title(event_type, new_status or status),
        description=description,
        status=status,
        previous_status=previous_status,
        new_status=new_status,
        details=serialize_for_audit(cleaned) if cleaned else None,
        ip_address=actor.request.ip_address if actor else None,
        user_agent=actor.request.user_agent if actor else None,
    )
    db.add(event)
    await db.flush()
    audit_logger.info(
        "loan application audit event appended",
        extra={
            "application_id": str(application_id),
            "event_type": event_type.value,
            "sequence": sequence,
            "previous_status": previous_status,
            "new_status": new_status,
        },
    )
    return event


async def read_events(
    db: AsyncSession,
    application_id: UUID,
    *,
    event_types: Iterable[AuditEventType | str] | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
) -> list[LoanApplicationAuditEvent]:
    stmt = select(LoanApplicationAuditEvent).where(
        LoanApplicationAuditEvent.loan_application_id == application_id
    )
    if event_types:
        values = [
            item.value if isinstance(item, AuditEventType) else str(item) for item in event_types
        ]
        stmt = stmt.where(LoanApplicationAuditEvent.event_type.in_(values))
    if created_from is not None:
        stmt = stmt.where(LoanApplicationAuditEvent.created_at >= created_from)
    if created_to is not None:
        stmt = stmt.where(LoanApplicationAuditEvent.created_at <= created_to)
    stmt = stmt.order_by(LoanApplicationAuditEvent.sequence.asc())
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def public_timeline(db: AsyncSession, application_id: UUID) -> list[TimelineEntryDTO]:
    entries: list[TimelineEntryDTO] = []
    for event in await read_events(db, application_id):
        mapped = public_event_type(AuditEventType(event.event_type))
        if mapped is None:
            continue
        if mapped == PublicTimelineEventType.REVIEW_IN_PROGRESS:
            title = "Under review"
        else:
            title = EVENT_TITLES[AuditEventType(mapped.value)]
        entries.append(
            TimelineEntryDTO(
                sequence=event.sequence,
                event_type=mapped,
                title=title,
                description=None,
                created_at=event.created_at,
            )
        )
    return entries
