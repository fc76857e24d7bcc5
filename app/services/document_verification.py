"""Per-application verification of the entrepreneur's personal and business documents.

A stage that requires documents fails closed: every expected reference needs an
``approved`` verification row for the application. Approving a document locks
the source record so it can no longer be edited in place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.actor import Actor
from app.core.exceptions import Forbidden, NotFound, PreconditionFailed, ValidationError
from app.db.queries import not_deleted
from app.models.business_document import BusinessDocument
from app.models.document_verification import DocumentVerification
from app.models.loan_application import LoanApplication
from app.models.personal_document import PersonalDocument
from app.models.types import utcnow
from app.schemas.audit import AuditEventType
from app.schemas.documents import DocumentKind, DocumentRef, VerificationOutcome, VerificationStatus
from app.schemas.loan import LoanApplicationStatus
from app.services import audit

# Stages whose exit requires every live document of the applicant to be approved.
DOCUMENT_GATED_STAGES = frozenset({LoanApplicationStatus.ELIGIBILITY_CHECK})

# Stages during which staff may record verification outcomes.
VERIFICATION_STAGES = frozenset(
    {LoanApplicationStatus.KYC_KYB_VERIFICATION, LoanApplicationStatus.ELIGIBILITY_CHECK}
)


@dataclass
class GateResult:
    outstanding: list[DocumentRef] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.outstanding


async def _live_personal_documents(db: AsyncSession, user_id: UUID) -> list[PersonalDocument]:
    stmt = (
        select(PersonalDocument)
        .where(PersonalDocument.user_id == user_id, not_deleted(PersonalDocument))
        .order_by(PersonalDocument.created_at.asc(), PersonalDocument.id.asc())
    )
    return list((await db.execute(stmt)).scalars().all())


async def _live_business_documents(db: AsyncSession, business_id: UUID) -> list[BusinessDocument]:
    stmt = (
        select(BusinessDocument)
        .where(BusinessDocument.business_id == business_id, not_deleted(BusinessDocument))
        .order_by(BusinessDocument.created_at.asc(), BusinessDocument.id.asc())
    )
    return list((await db.execute(stmt)).scalars().all())


async def expected_refs(db: AsyncSession, application: LoanApplication) -> list[DocumentRef]:
    personal = await _live_personal_documents(db, application.entrepreneur_id)
    business = await _live_business_documents(db, application.business_id)
    refs = [DocumentRef(kind=DocumentKind.PERSONAL, document_id=doc.id) for doc in personal]
    refs.extend(DocumentRef(kind=DocumentKind.BUSINESS, document_id=doc.id) for doc in business)
    return refs


async def list_verifications(
    db: AsyncSession, application_id: UUID
) -> list[DocumentVerification]:
    stmt = (
        select(DocumentVerification)
        .where(DocumentVerification.loan_application_id == application_id)
        .order_by(DocumentVerification.created_at.asc(), DocumentVerification.id.asc())
    )
    return list((await db.execute(stmt)).scalars().all())


async def require_verified(
    db: AsyncSession, application_id: UUID, refs: list[DocumentRef]
) -> GateResult:
    if not refs:
        return GateResult()
    approved = {
        (row.document_type, row.document_id)
        for row in await list_verifications(db, application_id)
        if row.verification_status == VerificationStatus.APPROVED.value
    }
    outstanding = [ref for ref in refs if (ref.kind.value, ref.document_id) not in approved]
    return GateResult(outstanding=outstanding)


async def check_stage(
    db: AsyncSession, application: LoanApplication, stage: LoanApplicationStatus | str
) -> GateResult:
    if LoanApplicationStatus(stage) not in DOCUMENT_GATED_STAGES:
        return GateResult()
    refs = await expected_refs(db, application)
    return await require_verified(db, application.id, refs)


async def seed_pending_verifications(db: AsyncSession, application: LoanApplication) -> int:
    """Create a pending row for each live document not yet tracked for the application."""
    existing = {
        (row.document_type, row.document_id)
        for row in await list_verifications(db, application.id)
    }
    created = 0
    for ref in await expected_refs(db, application):
        if (ref.kind.value, ref.document_id) in existing:
            continue
        db.add(
            DocumentVerification(
                loan_application_id=application.id,
                document_type=ref.kind.value,
                document_id=ref.document_id,
                verification_status=VerificationStatus.PENDING.value,
            )
        )
        created += 1
    if created:
        await db.flush()
    return created


async def _load_source_document(
    db: AsyncSession, application: LoanApplication, ref: DocumentRef
) -> PersonalDocument | BusinessDocument:
    if ref.kind == DocumentKind.PERSONAL:
        stmt = select(PersonalDocument).where(
            PersonalDocument.id == ref.document_id,
            PersonalDocument.user_id == application.entrepreneur_id,
            not_deleted(PersonalDocument),
        )
    else:
        stmt = select(BusinessDocument).where(
            BusinessDocument.id == ref.document_id,
            BusinessDocument.business_id == application.business_id,
            not_deleted(BusinessDocument),
        )
    document = (await db.execute(stmt)).scalar_one_or_none()
    if document is None:
        raise NotFound(
            f"{ref.kind.value.capitalize()} document not found for this application",
            details={"document_id": str(ref.document_id), "application_id": str(application.id)},
        )
    return document


async def record_verification(
    db: AsyncSession,
    application: LoanApplication,
    ref: DocumentRef,
    outcome: VerificationOutcome,
    verifier: Actor,
    *,
    rejection_reason: str | None = None,
    notes: str | None = None,
) -> DocumentVerification:
    """Upsert the single verification row for (application, kind, document).

    Runs inside the caller's transaction and appends one audit event.
    """
    if not verifier.is_staff:
        raise Forbidden("Only staff may verify documents")
    status = LoanApplicationStatus(application.status)
    if status not in VERIFICATION_STAGES:
        raise PreconditionFailed(
            "Documents can only be verified during KYC/KYB verification or eligibility check",
            details={"application_id": str(application.id), "current_status": status.value},
        )
    reason = (rejection_reason or "").strip() or None
    if outcome == VerificationOutcome.REJECTED and reason is None:
        raise ValidationError(
            "rejection_reason is required when rejecting a document",
            details={"document_id": str(ref.document_id)},
        )

    document = await _load_source_document(db, application, ref)
    if document.is_verified and document.verified_for_loan_application_id not in (
        None,
        application.id,
    ):
        raise PreconditionFailed(
            "This document has already been verified for another loan application",
            code="document_already_verified",
            details={
                "document_id": str(document.id),
                "verified_for_loan_application_id": str(document.verified_for_loan_application_id),
            },
        )

    now = utcnow()
    stmt = select(DocumentVerification).where(
        DocumentVerification.loan_application_id == application.id,
        DocumentVerification.document_type == ref.kind.value,
        DocumentVerification.document_id == ref.document_id,
    )
    verification = (await db.execute(stmt)).scalar_one_or_none()
    if verification is None:
        verification = DocumentVerification(
            loan_application_id=application.id,
            document_type=ref.kind.value,
            document_id=ref.document_id,
        )
        db.add(verification)
    verification.verification_status = outcome.value
    verification.verified_by = verifier.user_id
    verification.verified_at = now
    verification.rejection_reason = reason if outcome == VerificationOutcome.REJECTED else None
    verification.notes = notes

    if outcome == VerificationOutcome.APPROVED:
        document.is_verified = True
        document.verified_for_loan_application_id = application.id
        document.locked_at = now

    application.touch(verifier.user_id)
    await db.flush()

    event_type = (
        AuditEventType.DOCUMENT_VERIFIED_APPROVED
        if outcome == VerificationOutcome.APPROVED
        else AuditEventType.DOCUMENT_VERIFIED_REJECTED
    )
    description = f"{ref.kind.value.capitalize()} document {document.doc_type} {outcome.value}"
    if reason and outcome == VerificationOutcome.REJECTED:
        description = f"{description}: {reason}"
    await audit.append_event(
        db,
        application_id=application.id,
        event_type=event_type,
        status=application.status,
        actor=verifier,
        description=description,
        details={
            "document_type": ref.kind.value,
            "document_id": str(ref.document_id),
            "doc_type": document.doc_type,
            "rejection_reason": reason,
        },
    )
    return verification
