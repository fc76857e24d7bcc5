from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import deps
from app.core.actor import Actor
from app.db.transaction import unit_of_work
from app.schemas.loan_products import (
    LoanProductCreate,
    LoanProductDTO,
    LoanProductListResponse,
    LoanProductStatus,
    LoanProductStatusChange,
    LoanProductUpdate,
)
from app.services import loan_products

router = APIRouter(prefix="/loan-products", tags=["loan-products"])


@router.get("", response_model=LoanProductListResponse, summary="List loan products")
async def list_loan_products(
    organization_id: UUID | None = Query(default=None),
    status_filter: LoanProductStatus | None = Query(default=None, alias="status"),
    include_archived: bool = Query(default=False),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
) -> LoanProductListResponse:
    # Entrepreneurs only ever see what they can apply for.
    if not actor.is_staff:
        status_filter = LoanProductStatus.ACTIVE
        include_archived = False
    items, total = await loan_products.list_products(
        db,
        organization_id=organization_id,
        status=status_filter,
        include_archived=include_archived,
        offset=offset,
        limit=limit,
    )
    return LoanProductListResponse(
        items=[LoanProductDTO.model_validate(item) for item in items], total=total
    )


@router.get("/{product_id}", response_model=LoanProductDTO)
async def get_loan_product(
    product_id: UUID,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
) -> LoanProductDTO:
    product = await loan_products.get_product(db, product_id, include_deleted=actor.is_staff)
    return LoanProductDTO.model_validate(product)


@router.post("", response_model=LoanProductDTO, status_code=status.HTTP_201_CREATED)
async def create_loan_product(
    payload: LoanProductCreate,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.require_admin),
) -> LoanProductDTO:
    async with unit_of_work(db, "loan_product.create"):
        product = await loan_products.create_product(db, actor, payload)
    return LoanProductDTO.model_validate(product)


@router.patch("/{product_id}", response_model=LoanProductDTO)
async def update_loan_product(
    product_id: UUID,
    payload: LoanProductUpdate,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.require_admin),
) -> LoanProductDTO:
    async with unit_of_work(db, "loan_product.edit", product_id=product_id):
        product = await loan_products.apply_edit(db, actor, product_id, payload)
    return LoanProductDTO.model_validate(product)


@router.post("/{product_id}/status", response_model=LoanProductDTO)
async def change_loan_product_status(
    product_id: UUID,
    payload: LoanProductStatusChange,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.require_admin),
) -> LoanProductDTO:
    async with unit_of_work(db, "loan_product.status", product_id=product_id, requested=payload.status.value):
        product = await loan_products.transition_status(
            db,
            actor,
            product_id,
            payload.status,
            reason=payload.change_reason,
            approver_id=payload.approved_by,
        )
    return LoanProductDTO.model_validate(product)


@router.delete("/{product_id}", response_model=LoanProductDTO)
async def archive_loan_product(
    product_id: UUID,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.require_admin),
) -> LoanProductDTO:
    async with unit_of_work(db, "loan_product.archive", product_id=product_id):
        product = await loan_products.archive_product(db, actor, product_id)
    return LoanProductDTO.model_validate(product)
