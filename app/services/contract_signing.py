from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.actor import Actor
from app.core.exceptions import Forbidden, InvalidTransition, NotFound, PreconditionFailed
from app.core.permissions import Role
from app.db.queries import not_deleted
from app.models.contract_signatory import ContractSignatory
from app.models.loan_application import LoanApplication
from app.models.loan_document import LoanDocument
from app.models.types import utcnow
from app.schemas.audit import AuditEventType
from app.schemas.loan import (
    CLOSED_CONTRACT_STATUSES,
    ContractRegisterRequest,
    ContractStatus,
    LoanApplicationStatus,
    LoanDocumentType,
    SignatoryCategory,
)
from app.services import audit

SIGNABLE_STATUSES = frozenset(
    {
        ContractStatus.CONTRACT_SENT_FOR_SIGNING,
        ContractStatus.CONTRACT_IN_SIGNING,
        ContractStatus.CONTRACT_PARTIALLY_SIGNED,
    }
)

# A contract may be re-registered after it was voided or expired.
REGISTRABLE_STATUSES = frozenset(
    {
        None,
        ContractStatus.CONTRACT_UPLOADED,
        ContractStatus.CONTRACT_VOIDED,
        ContractStatus.CONTRACT_EXPIRED,
    }
)


@dataclass
class SignatureOutcome:
    signatory: ContractSignatory
    contract_status: ContractStatus
    changed: bool

    @property
    def fully_signed(self) -> bool:
        return self.contract_status == ContractStatus.CONTRACT_FULLY_SIGNED


def _current_contract_status(application: LoanApplication) -> ContractStatus | None:
    return ContractStatus(application.contract_status) if application.contract_status else None


def _require_signing_stage(application: LoanApplication) -> None:
    if application.status != LoanApplicationStatus.SIGNING_EXECUTION.value:
        raise InvalidTransition(
            "Contract operations require the application to be in signing_execution",
            details={"application_id": str(application.id), "current_status": application.status},
        )


def _require_staff(actor: Actor) -> None:
    if not actor.at_least(Role.MEMBER):
        raise Forbidden("Only staff may manage contracts")


def _set_contract_status(
    application: LoanApplication, status: ContractStatus, actor: Actor | None
) -> None:
    application.contract_status = status.value
    application.touch(actor.user_id if actor else None)


async def current_contract(db: AsyncSession, application_id: UUID) -> LoanDocument | None:
    stmt = (
        select(LoanDocument)
        .where(
            LoanDocument.loan_application_id == application_id,
            LoanDocument.document_type == LoanDocumentType.CONTRACT.value,
            not_deleted(LoanDocument),
        )
        .order_by(LoanDocument.created_at.desc(), LoanDocument.id.desc())
        .limit(1)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def list_signatories(
    db: AsyncSession, application_id: UUID, contract_document_id: UUID | None = None
) -> list[ContractSignatory]:
    if contract_document_id is None:
        contract = await current_contract(db, application_id)
        if contract is None:
            return []
        contract_document_id = contract.id
    stmt = (
        select(ContractSignatory)
        .where(
            ContractSignatory.loan_application_id == application_id,
            ContractSignatory.contract_document_id == contract_document_id,
        )
        .order_by(
            ContractSignatory.signing_order.asc().nulls_last(),
            ContractSignatory.created_at.asc(),
            ContractSignatory.id.asc(),
        )
    )
    return list((await db.execute(stmt)).scalars().all())


def initialise(application: LoanApplication) -> None:
    """Called when the application reaches signing_execution."""
    application.contract_status = ContractStatus.CONTRACT_UPLOADED.value


async def register_contract(
    db: AsyncSession,
    application: LoanApplication,
    payload: ContractRegisterRequest,
    actor: Actor,
) -> LoanDocument:
    _require_staff(actor)
    _require_signing_stage(application)
    current = _current_contract_status(application)
    if current not in REGISTRABLE_STATUSES:
        raise InvalidTransition(
            "A contract is already out for signing",
            details={"application_id": str(application.id), "contract_status": current.value},
        )
    categories = {SignatoryCategory(item.category) for item in payload.signatories}
    if categories != {SignatoryCategory.COMPANY, SignatoryCategory.CLIENT}:
        raise PreconditionFailed(
            "Both company and client signatories must have at least one entry",
            code="invalid_signatories",
            details={"categories": sorted(item.value for item in categories)},
        )

    previous = await current_contract(db, application.id)
    if previous is not None:
        previous.deleted_at = utcnow()

    contract = LoanDocument(
        loan_application_id=application.id,
        document_type=LoanDocumentType.CONTRACT.value,
        doc_url=payload.doc_url,
        doc_name=payload.doc_name,
        company_signs_first=payload.company_signs_first,
        uploaded_by=actor.user_id,
    )
    db.add(contract)
    await db.flush()
    for item in payload.signatories:
        db.add(
            ContractSignatory(
                loan_application_id=application.id,
                contract_document_id=contract.id,
                category=SignatoryCategory(item.category).value,
                full_name=item.full_name,
                email=item.email,
                role_title=item.role_title,
                signing_order=item.signing_order,
                has_signed=False,
            )
        )
    _set_contract_status(application, ContractStatus.CONTRACT_UPLOADED, actor)
    await db.flush()
    await audit.append_event(
        db,
        application_id=application.id,
        event_type=AuditEventType.CONTRACT_UPLOADED,
        status=application.status,
        actor=actor,
        details={
            "contract_document_id": str(contract.id),
            "signatories": len(payload.signatories),
            "company_signs_first": payload.company_signs_first,
            "replaces_contract_document_id": str(previous.id) if previous else None,
        },
    )
    return contract


async def mark_sent(db: AsyncSession, application: LoanApplication, actor: Actor) -> ContractStatus:
    _require_staff(actor)
    _require_signing_stage(application)
    current = _current_contract_status(application)
    if current != ContractStatus.CONTRACT_UPLOADED:
        raise InvalidTransition(
            "Only an uploaded contract can be sent for signing",
            details={"contract_status": current.value if current else None},
        )
    if not await list_signatories(db, application.id):
        raise PreconditionFailed(
            "Register the contract and its signatories before sending it",
            code="contract_not_registered",
            details={"application_id": str(application.id)},
        )
    _set_contract_status(application, ContractStatus.CONTRACT_SENT_FOR_SIGNING, actor)
    await db.flush()
    await audit.append_event(
        db,
        application_id=application.id,
        event_type=AuditEventType.CONTRACT_SENT_FOR_SIGNING,
        status=application.status,
        actor=actor,
    )
    return ContractStatus.CONTRACT_SENT_FOR_SIGNING


async def _get_signatory(
    db: AsyncSession, application: LoanApplication, signatory_id: UUID
) -> ContractSignatory:
    contract = await current_contract(db, application.id)
    signatory = await db.get(ContractSignatory, signatory_id)
    if (
        signatory is None
        or contract is None
        or signatory.loan_application_id != application.id
        or signatory.contract_document_id != contract.id
    ):
        raise NotFound(
            "Signatory not found for the current contract",
            details={"application_id": str(application.id), "signatory_id": str(signatory_id)},
        )
    return signatory


async def mark_opened(
    db: AsyncSession, application: LoanApplication, signatory_id: UUID, actor: Actor | None
) -> ContractStatus:
    _require_signing_stage(application)
    current = _current_contract_status(application)
    if current not in SIGNABLE_STATUSES:
        raise InvalidTransition(
            "Contract is not out for signing",
            details={"contract_status": current.value if current else None},
        )
    signatory = await _get_signatory(db, application, signatory_id)
    if current == ContractStatus.CONTRACT_SENT_FOR_SIGNING:
        _set_contract_status(application, ContractStatus.CONTRACT_IN_SIGNING, actor)
        current = ContractStatus.CONTRACT_IN_SIGNING
    else:
        application.touch(actor.user_id if actor else None)
    await db.flush()
    await audit.append_event(
        db,
        application_id=application.id,
        event_type=AuditEventType.CONTRACT_SIGNER_OPENED,
        status=application.status,
        actor=actor,
        description=f"Contract opened by {signatory.full_name}",
        details={"signatory_id": str(signatory.id), "category": signatory.category},
    )
    return current


async def advance(
    db: AsyncSession,
    application: LoanApplication,
    signatory_id: UUID,
    signed_at: datetime | None,
    actor: Actor | None,
) -> SignatureOutcome:
    """Mark one signatory as signed and recompute the aggregate contract status.

    Re-signing is a no-op. The caller owns the audit event and, when the
    contract becomes fully signed, the application transition.
    """
    _require_signing_stage(application)
    current = _current_contract_status(application)
    signatory = await _get_signatory(db, application, signatory_id)
    if signatory.has_signed:
        return SignatureOutcome(signatory=signatory, contract_status=current, changed=False)
    if current not in SIGNABLE_STATUSES:
        raise InvalidTransition(
            "Contract is not out for signing",
            details={"contract_status": current.value if current else None},
        )

    signatories = await list_signatories(db, application.id, signatory.contract_document_id)
    contract = await db.get(LoanDocument, signatory.contract_document_id)
    if (
        contract is not None
        and contract.company_signs_first
        and signatory.category == SignatoryCategory.CLIENT.value
    ):
        pending_company = [
            item.id
            for item in signatories
            if item.category == SignatoryCategory.COMPANY.value and not item.has_signed
        ]
        if pending_company:
            raise PreconditionFailed(
                "Company signatories must sign before client signatories",
                code="company_signatures_pending",
                details={"pending_company_signatories": [str(item) for item in pending_company]},
            )

    signatory.has_signed = True
    signatory.signed_at = signed_at or utcnow()
    if all(item.has_signed for item in signatories):
        new_status = ContractStatus.CONTRACT_FULLY_SIGNED
    else:
        new_status = ContractStatus.CONTRACT_PARTIALLY_SIGNED
    _set_contract_status(application, new_status, actor)
    await db.flush()
    return SignatureOutcome(signatory=signatory, contract_status=new_status, changed=True)


async def close_contract(
    db: AsyncSession,
    application: LoanApplication,
    new_status: ContractStatus,
    actor: Actor | None,
    *,
    reason: str | None = None,
) -> ContractStatus:
    """Void or expire a contract that has not been fully signed."""
    if new_status not in (ContractStatus.CONTRACT_VOIDED, ContractStatus.CONTRACT_EXPIRED):
        raise InvalidTransition("Contracts can only be voided or expired", details={"requested": new_status.value})
    if new_status == ContractStatus.CONTRACT_VOIDED and actor is not None:
        _require_staff(actor)
    _require_signing_stage(application)
    current = _current_contract_status(application)
    if current is None or current in CLOSED_CONTRACT_STATUSES:
        raise InvalidTransition(
            "Contract is already closed",
            details={"contract_status": current.value if current else None},
        )
    _set_contract_status(application, new_status, actor)
    await db.flush()
    event_type = (
        AuditEventType.CONTRACT_VOIDED
        if new_status == ContractStatus.CONTRACT_VOIDED
        else AuditEventType.CONTRACT_EXPIRED
    )
    await audit.append_event(
        db,
        application_id=application.id,
        event_type=event_type,
        status=application.status,
        actor=actor,
        description=reason,
        details={"previous_contract_status": current.value},
    )
    return new_status
