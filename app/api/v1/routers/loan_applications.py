from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import deps
from app.core.actor import Actor
from app.core.limiter import limiter
from app.core.settings import settings
from app.db.transaction import unit_of_work
from app.schemas.audit import TimelineResponse
from app.schemas.loan import (
    LoanApplicationCancelRequest,
    LoanApplicationCreate,
    LoanApplicationSelfDTO,
    LoanApplicationSelfListResponse,
    LoanApplicationVersionDTO,
    LoanApplicationVersionListResponse,
)
from app.services import audit, loan_applications, loan_versions
from app.services.cache import ApplicationCache
from app.services.loan_workflow import ApplicationStateMachine

router = APIRouter(prefix="/me/loan-applications", tags=["loan-applications"])


@router.post(
    "",
    response_model=LoanApplicationSelfDTO,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a loan application",
)
@limiter.limit(lambda: f"{settings.rate_limit_per_minute}/minute")
async def create_loan_application(
    request: Request,
    payload: LoanApplicationCreate,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
) -> LoanApplicationSelfDTO:
    async with unit_of_work(db, "loan_application.create", actor=actor.user_id):
        application = await loan_applications.create_application(db, actor, payload)
    return loan_applications.to_self_dto(application)


@router.get("", response_model=LoanApplicationSelfListResponse, summary="List my loan applications")
async def list_my_loan_applications(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
) -> LoanApplicationSelfListResponse:
    items, total = await loan_applications.list_applications(db, actor, offset=offset, limit=limit)
    return LoanApplicationSelfListResponse(
        items=[loan_applications.to_self_dto(item) for item in items], total=total
    )


@router.get("/{application_id}", response_model=LoanApplicationSelfDTO)
async def get_my_loan_application(
    application_id: UUID,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
    cache: ApplicationCache = Depends(deps.get_application_cache),
) -> LoanApplicationSelfDTO:
    dto = await loan_applications.get_application(db, cache, application_id, actor)
    return loan_applications.to_self_dto(dto)


@router.post("/{application_id}/cancel", response_model=LoanApplicationSelfDTO)
async def cancel_my_loan_application(
    application_id: UUID,
    payload: LoanApplicationCancelRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> LoanApplicationSelfDTO:
    application = await machine.cancel(db, application_id, actor, payload.reason)
    return loan_applications.to_self_dto(application)


@router.get("/{application_id}/timeline", response_model=TimelineResponse)
async def get_my_loan_timeline(
    application_id: UUID,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> TimelineResponse:
    application = await machine.load(db, application_id, actor)
    items = await audit.public_timeline(db, application.id)
    return TimelineResponse(items=items, total=len(items))


@router.get("/{application_id}/versions", response_model=LoanApplicationVersionListResponse)
async def list_my_loan_versions(
    application_id: UUID,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> LoanApplicationVersionListResponse:
    application = await machine.load(db, application_id, actor)
    versions = await loan_versions.list_versions(db, application.id)
    return LoanApplicationVersionListResponse(
        items=[LoanApplicationVersionDTO.model_validate(item) for item in versions],
        active_version_id=application.active_version_id,
        total=len(versions),
    )
