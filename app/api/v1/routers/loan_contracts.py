from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import deps
from app.core.actor import Actor
from app.schemas.loan import (
    ContractCloseRequest,
    ContractRegisterRequest,
    ContractSignatoryDTO,
    ContractStatus,
    ContractStatusResponse,
    SignatureEventRequest,
)
from app.services import contract_signing
from app.services.loan_workflow import ApplicationStateMachine

router = APIRouter(
    prefix="/admin/loan-applications/{application_id}/contract",
    tags=["loan-contracts"],
    dependencies=[Depends(deps.require_staff)],
)


async def _contract_status(
    db: AsyncSession, machine: ApplicationStateMachine, application_id: UUID
) -> ContractStatusResponse:
    application = await machine.load(db, application_id)
    signatories = await contract_signing.list_signatories(db, application.id)
    return ContractStatusResponse(
        loan_application_id=application.id,
        contract_status=application.contract_status,
        application_status=application.status,
        signatories=[ContractSignatoryDTO.model_validate(item) for item in signatories],
    )


@router.get("", response_model=ContractStatusResponse, summary="Contract and signatory status")
async def get_contract(
    application_id: UUID,
    db: AsyncSession = Depends(deps.get_db_session),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> ContractStatusResponse:
    return await _contract_status(db, machine, application_id)


@router.post("", response_model=ContractStatusResponse, status_code=status.HTTP_201_CREATED)
async def register_contract(
    application_id: UUID,
    payload: ContractRegisterRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> ContractStatusResponse:
    await machine.mutate(
        db,
        application_id,
        actor,
        "contract.register",
        lambda application: contract_signing.register_contract(db, application, payload, actor),
    )
    return await _contract_status(db, machine, application_id)


@router.post("/send", response_model=ContractStatusResponse)
async def send_contract(
    application_id: UUID,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> ContractStatusResponse:
    await machine.mutate(
        db,
        application_id,
        actor,
        "contract.send",
        lambda application: contract_signing.mark_sent(db, application, actor),
    )
    return await _contract_status(db, machine, application_id)


@router.post("/signatories/{signatory_id}/opened", response_model=ContractStatusResponse)
async def contract_opened(
    application_id: UUID,
    signatory_id: UUID,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> ContractStatusResponse:
    await machine.mutate(
        db,
        application_id,
        actor,
        "contract.opened",
        lambda application: contract_signing.mark_opened(db, application, signatory_id, actor),
    )
    return await _contract_status(db, machine, application_id)


@router.post("/signatories/{signatory_id}/signed", response_model=ContractStatusResponse)
async def contract_signed(
    application_id: UUID,
    signatory_id: UUID,
    payload: SignatureEventRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> ContractStatusResponse:
    await machine.record_signature(db, application_id, signatory_id, actor, payload.signed_at)
    return await _contract_status(db, machine, application_id)


@router.post("/void", response_model=ContractStatusResponse)
async def void_contract(
    application_id: UUID,
    payload: ContractCloseRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> ContractStatusResponse:
    await machine.mutate(
        db,
        application_id,
        actor,
        "contract.void",
        lambda application: contract_signing.close_contract(
            db, application, ContractStatus.CONTRACT_VOIDED, actor, reason=payload.reason
        ),
    )
    return await _contract_status(db, machine, application_id)


@router.post("/expire", response_model=ContractStatusResponse)
async def expire_contract(
    application_id: UUID,
    payload: ContractCloseRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
    machine: ApplicationStateMachine = Depends(deps.get_state_machine),
) -> ContractStatusResponse:
    await machine.mutate(
        db,
        application_id,
        actor,
        "contract.expire",
        lambda application: contract_signing.close_contract(
            db, application, ContractStatus.CONTRACT_EXPIRED, actor, reason=payload.reason
        ),
    )
    return await _contract_status(db, machine, application_id)
