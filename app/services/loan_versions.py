from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.actor import Actor
from app.core.exceptions import ConflictingVersion, Forbidden, InvalidTransition, NotFound
from app.core.permissions import Role
from app.models.loan_application import LoanApplication
from app.models.loan_application_version import LoanApplicationVersion
from app.schemas.audit import AuditEventType
from app.schemas.loan import (
    LoanApplicationStatus,
    LoanApplicationVersionStatus,
    LoanTermsInput,
    TERMINAL_STATUSES,
)
from app.services import audit

# Once contract drafting has begun the negotiated terms are frozen.
COUNTER_OFFER_STAGES = frozenset(
    {
        LoanApplicationStatus.KYC_KYB_VERIFICATION,
        LoanApplicationStatus.ELIGIBILITY_CHECK,
        LoanApplicationStatus.CREDIT_ANALYSIS,
        LoanApplicationStatus.HEAD_OF_CREDIT_REVIEW,
        LoanApplicationStatus.INTERNAL_APPROVAL_CEO,
        LoanApplicationStatus.COMMITTEE_DECISION,
        LoanApplicationStatus.SME_OFFER_APPROVAL,
    }
)

_UNSET: Any = object()


def _terms_payload(terms: LoanTermsInput) -> dict[str, Any]:
    data = terms.model_dump()
    data["custom_fees"] = audit.serialize_for_audit(data.get("custom_fees") or [])
    return data


def apply_headline_terms(application: LoanApplication, version: LoanApplicationVersion) -> None:
    """The application row mirrors the headline terms of its active version."""
    application.funding_amount = version.funding_amount
    application.interest_rate = version.interest_rate
    application.repayment_period = version.repayment_period


async def list_versions(db: AsyncSession, application_id: UUID) -> list[LoanApplicationVersion]:
    stmt = (
        select(LoanApplicationVersion)
        .where(LoanApplicationVersion.loan_application_id == application_id)
        .order_by(LoanApplicationVersion.created_at.asc(), LoanApplicationVersion.id.asc())
    )
    return list((await db.execute(stmt)).scalars().all())


async def get_version(
    db: AsyncSession, application_id: UUID, version_id: UUID
) -> LoanApplicationVersion:
    version = await db.get(LoanApplicationVersion, version_id)
    if version is None or version.loan_application_id != application_id:
        raise NotFound(
            "Loan application version not found",
            details={"application_id": str(application_id), "version_id": str(version_id)},
        )
    return version


async def get_active_version(
    db: AsyncSession, application: LoanApplication
) -> LoanApplicationVersion | None:
    if application.active_version_id is None:
        return None
    return await get_version(db, application.id, application.active_version_id)


async def create_original_version(
    db: AsyncSession, application: LoanApplication, terms: LoanTermsInput, actor: Actor
) -> LoanApplicationVersion:
    """Freeze the submitted terms and point the application at them."""
    version = LoanApplicationVersion(
        loan_application_id=application.id,
        status=LoanApplicationVersionStatus.ORIGINAL.value,
        created_by=actor.user_id,
        **_terms_payload(terms),
    )
    db.add(version)
    await db.flush()
    application.active_version_id = version.id
    return version


async def create_counter_offer(
    db: AsyncSession, application: LoanApplication, terms: LoanTermsInput, actor: Actor
) -> LoanApplicationVersion:
    """Record an alternative set of terms. The active pointer is left untouched."""
    if not actor.at_least(Role.MEMBER):
        raise Forbidden("Only staff may propose counter-offers")
    status = LoanApplicationStatus(application.status)
    if status in TERMINAL_STATUSES or status not in COUNTER_OFFER_STAGES:
        raise InvalidTransition(
            "Counter-offers are not accepted at this stage",
            code="counter_offer_not_allowed",
            details={"application_id": str(application.id), "current_status": status.value},
        )

    version = LoanApplicationVersion(
        loan_application_id=application.id,
        status=LoanApplicationVersionStatus.COUNTER_OFFER.value,
        created_by=actor.user_id,
        **_terms_payload(terms),
    )
    db.add(version)
    application.touch(actor.user_id)
    await db.flush()
    await audit.append_event(
        db,
        application_id=application.id,
        event_type=AuditEventType.COUNTER_OFFER_PROPOSED,
        status=application.status,
        actor=actor,
        description=f"Counter-offer proposed: {terms.funding_amount} over {terms.repayment_period}",
        details={
            "version_id": str(version.id),
            "funding_amount": terms.funding_amount,
            "interest_rate": terms.interest_rate,
            "repayment_period": terms.repayment_period,
        },
    )
    return version


async def activate(
    db: AsyncSession,
    application: LoanApplication,
    version_id: UUID,
    actor: Actor,
    *,
    expected_active_version_id: UUID | None = _UNSET,
    record_audit: bool = True,
) -> LoanApplicationVersion:
    """Move the active pointer to ``version_id``.

    The write is conditional twice over: the caller's expected pointer must
    match what is loaded, and the UPDATE is guarded by ``row_version`` so a
    concurrent commit surfaces as StaleDataError at flush.
    """
    if not actor.at_least(Role.MEMBER):
        raise Forbidden("Only staff may activate loan terms")
    version = await get_version(db, application.id, version_id)
    status = LoanApplicationStatus(application.status)
    if status in TERMINAL_STATUSES:
        raise InvalidTransition(
            "Cannot change terms of a closed application",
            details={"application_id": str(application.id), "current_status": status.value},
        )

    current = application.active_version_id
    if expected_active_version_id is not _UNSET and expected_active_version_id != current:
        raise ConflictingVersion(
            "Active version changed since it was read",
            details={
                "application_id": str(application.id),
                "expected_active_version_id": str(expected_active_version_id)
                if expected_active_version_id
                else None,
                "current_active_version_id": str(current) if current else None,
                "requested_version_id": str(version_id),
            },
        )
    if current == version.id:
        return version

    application.active_version_id = version.id
    apply_headline_terms(application, version)
    application.touch(actor.user_id)
    await db.flush()
    if record_audit:
        await audit.append_event(
            db,
            application_id=application.id,
            event_type=AuditEventType.VERSION_ACTIVATED,
            status=application.status,
            actor=actor,
            details={
                "previous_version_id": str(current) if current else None,
                "version_id": str(version.id),
                "version_status": version.status,
            },
        )
    return version
