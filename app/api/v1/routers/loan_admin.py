from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import deps
from app.core.actor import Actor
from app.schemas.audit import AuditEventDTO, AuditEventListResponse, AuditEventType
from app.schemas.documents import (
    DocumentRef,
    DocumentVerificationDTO,
    DocumentVerificationListResponse,
    DocumentVerificationRequest,
    GateResultDTO,
)
from app.schemas.loan import (
    CounterOfferCreate,
    LoanApplicationDTO,
    LoanApplicationListResponse,
    LoanApplicationStatus,
    LoanApplicationTransitionRequest,
    LoanApplicationVersionDTO,
    LoanApplicationVersionListResponse,
    TransitionPayload,
    VersionActivateRequest,
)
from app.services import audit, document_verification, loan_applications, loan_versions
from app.services.cache import ApplicationCache
from app.services.loan_workflow import ApplicationStateMachine

router = APIRouter(
    prefix="/admin/loan-applications",
    tags=["loan-admin"],
    dependencies=[Depends(deps.require_staff)],
)


@router.get("", response_model=LoanApplicationListResponse, summary="List loan applications")
async def list_loan_applications(
    status_filter: list[LoanApplicationStatus] | None = Query(default=None, alias="status"),
    business_id: UUID | None = Query(default=None),
    loan_product_id: UUID | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
) -> LoanApplicationListResponse:
    items, total = await loan_applications.list_applications(
        db,
        actor,
        statuses=status_filter,
        business_id=business_id,
        loan_product_id=loan_product_id,
        offset=offset,
        limit=limit,
    )
    return LoanApplicationListResponse(
        items=[LoanApplicationDTO.model_validate(item) for item in items], total=total
    )


@router.get("/{application_id}", response_model=LoanApplicationDTO)
async def get_loan_application(
    application_id: UUID,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
    cache: ApplicationCache = Depends(deps.get_application_cache),
) -> LoanApplicationDTO:
    return await loan_applications.get_application(db, cache, application_id, actor)


@router.post("/{application_id}/transitions", response_model=LoanApplicationDTO)
async def transition_loan_application(
    application_id: UUID,
    payload: LoanApplicationTransitionRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> LoanApplicationDTO:
    stage_input = TransitionPayload.model_validate(
        payload.model_dump(exclude={"status"}, exclude_unset=True)
    )
    application = await machine.transition(db, application_id, payload.status, actor, stage_input)
    return LoanApplicationDTO.model_validate(application)


@router.delete("/{application_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_loan_application(
    application_id: UUID,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> None:
    await machine.mutate(
        db,
        application_id,
        actor,
        "loan_application.delete",
        lambda application: loan_applications.soft_delete_application(db, application, actor),
    )


@router.get("/{application_id}/versions", response_model=LoanApplicationVersionListResponse)
async def list_loan_versions(
    application_id: UUID,
    db: AsyncSession = Depends(deps.get_db_session),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> LoanApplicationVersionListResponse:
    application = await machine.load(db, application_id)
    versions = await loan_versions.list_versions(db, application.id)
    return LoanApplicationVersionListResponse(
        items=[LoanApplicationVersionDTO.model_validate(item) for item in versions],
        active_version_id=application.active_version_id,
        total=len(versions),
    )


@router.post(
    "/{application_id}/counter-offers",
    response_model=LoanApplicationVersionDTO,
    status_code=status.HTTP_201_CREATED,
)
async def create_counter_offer(
    application_id: UUID,
    payload: CounterOfferCreate,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> LoanApplicationVersionDTO:
    version = await machine.mutate(
        db,
        application_id,
        actor,
        "loan_application.counter_offer",
        lambda application: loan_versions.create_counter_offer(db, application, payload, actor),
    )
    return LoanApplicationVersionDTO.model_validate(version)


@router.post(
    "/{application_id}/versions/{version_id}/activate",
    response_model=LoanApplicationVersionDTO,
)
async def activate_loan_version(
    application_id: UUID,
    version_id: UUID,
    payload: VersionActivateRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> LoanApplicationVersionDTO:
    kwargs = {}
    if "expected_active_version_id" in payload.model_fields_set:
        kwargs["expected_active_version_id"] = payload.expected_active_version_id
    version = await machine.mutate(
        db,
        application_id,
        actor,
        "loan_application.activate_version",
        lambda application: loan_versions.activate(db, application, version_id, actor, **kwargs),
    )
    return LoanApplicationVersionDTO.model_validate(version)


@router.get("/{application_id}/audit-events", response_model=AuditEventListResponse)
async def list_audit_events(
    application_id: UUID,
    event_type: list[AuditEventType] | None = Query(default=None),
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    db: AsyncSession = Depends(deps.get_db_session),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> AuditEventListResponse:
    application = await machine.load(db, application_id)
    events = await audit.read_events(
        db,
        application.id,
        event_types=event_type,
        created_from=created_from,
        created_to=created_to,
    )
    return AuditEventListResponse(
        items=[AuditEventDTO.model_validate(item) for item in events], total=len(events)
    )


@router.get(
    "/{application_id}/document-verifications",
    response_model=DocumentVerificationListResponse,
)
async def list_document_verifications(
    application_id: UUID,
    db: AsyncSession = Depends(deps.get_db_session),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> DocumentVerificationListResponse:
    application = await machine.load(db, application_id)
    rows = await document_verification.list_verifications(db, application.id)
    return DocumentVerificationListResponse(
        items=[DocumentVerificationDTO.model_validate(row) for row in rows], total=len(rows)
    )


@router.post(
    "/{application_id}/document-verifications",
    response_model=DocumentVerificationDTO,
)
async def verify_document(
    application_id: UUID,
    payload: DocumentVerificationRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> DocumentVerificationDTO:
    ref = DocumentRef(kind=payload.document_type, document_id=payload.document_id)
    verification = await machine.mutate(
        db,
        application_id,
        actor,
        "loan_application.verify_document",
        lambda application: document_verification.record_verification(
            db,
            application,
            ref,
            payload.outcome,
            actor,
            rejection_reason=payload.rejection_reason,
            notes=payload.notes,
        ),
    )
    return DocumentVerificationDTO.model_validate(verification)


@router.get("/{application_id}/document-gate", response_model=GateResultDTO)
async def check_document_gate(
    application_id: UUID,
    stage: LoanApplicationStatus | None = Query(default=None),
    db: AsyncSession = Depends(deps.get_db_session),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> GateResultDTO:
    application = await machine.load(db, application_id)
    result = await document_verification.check_stage(db, application, stage or application.status)
    return GateResultDTO(passed=result.passed, outstanding=result.outstanding)
