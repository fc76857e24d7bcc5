from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.actor import Actor
from app.core.exceptions import Forbidden, InvalidTransition, NotFound, ValidationError
from app.core.logging import get_audit_logger
from app.core.permissions import Role
from app.db.queries import not_deleted
from app.models.loan_fee import LoanFee
from app.models.loan_product import LoanProduct
from app.models.organization import Organization
from app.models.types import utcnow
from app.models.user import User
from app.schemas.loan_products import (
    CRITICAL_PRODUCT_FIELDS,
    LoanProductCreate,
    LoanProductFeeInput,
    LoanProductStatus,
    LoanProductUpdate,
)
from app.services.audit import build_summary, diff_values, model_snapshot

logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()

# Nothing returns to draft once a product has been approved.
PRODUCT_TRANSITIONS: dict[LoanProductStatus, frozenset[LoanProductStatus]] = {
    LoanProductStatus.DRAFT: frozenset({LoanProductStatus.ACTIVE}),
    LoanProductStatus.ACTIVE: frozenset({LoanProductStatus.ARCHIVED}),
    LoanProductStatus.ARCHIVED: frozenset({LoanProductStatus.ACTIVE}),
}


def _require_admin(actor: Actor) -> None:
    if not actor.at_least(Role.ADMIN):
        raise Forbidden("Admin role required to manage loan products")


def _log_product_change(action: str, product: LoanProduct, before: dict[str, Any], actor: Actor) -> None:
    changes = diff_values(before, model_snapshot(product))
    audit_logger.info(
        "%s product=%s actor=%s",
        build_summary(action, changes),
        product.id,
        actor.user_id,
    )


async def get_product(
    db: AsyncSession, product_id: UUID, *, include_deleted: bool = True
) -> LoanProduct:
    """Archived products stay readable; they are historical records."""
    stmt = select(LoanProduct).where(LoanProduct.id == product_id)
    if not include_deleted:
        stmt = stmt.where(not_deleted(LoanProduct))
    product = (await db.execute(stmt)).scalar_one_or_none()
    if product is None:
        raise NotFound("Loan product not found", details={"product_id": str(product_id)})
    return product


async def list_products(
    db: AsyncSession,
    *,
    organization_id: UUID | None = None,
    status: LoanProductStatus | None = None,
    include_archived: bool = False,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[LoanProduct], int]:
    filters = []
    if organization_id is not None:
        filters.append(LoanProduct.organization_id == organization_id)
    if status is not None:
        filters.append(LoanProduct.status == status.value)
    elif not include_archived:
        filters.append(LoanProduct.status != LoanProductStatus.ARCHIVED.value)
    total = (
        await db.execute(select(func.count()).select_from(LoanProduct).where(*filters))
    ).scalar_one()
    stmt = (
        select(LoanProduct)
        .where(*filters)
        .order_by(LoanProduct.created_at.desc(), LoanProduct.id.asc())
        .offset(offset)
        .limit(limit)
    )
    return list((await db.execute(stmt)).scalars().all()), total


async def resolve_fees(db: AsyncSession, entries: list[LoanProductFeeInput]) -> list[LoanFee]:
    """Look up linked fees and create inline ones, in the caller's transaction."""
    fees: list[LoanFee] = []
    for entry in entries:
        if entry.loan_fee_id is not None:
            fee = await db.get(LoanFee, entry.loan_fee_id)
            if fee is None or fee.deleted_at is not None or fee.is_archived:
                raise ValidationError(
                    "Loan fee not found or archived",
                    code="invalid_fee",
                    details={"loan_fee_id": str(entry.loan_fee_id)},
                )
        else:
            taken = (
                await db.execute(select(LoanFee.id).where(LoanFee.name == entry.fee_name))
            ).scalar_one_or_none()
            if taken is not None:
                raise ValidationError(
                    "A loan fee with this name already exists",
                    code="fee_name_taken",
                    details={"fee_name": entry.fee_name, "loan_fee_id": str(taken)},
                )
            fee = LoanFee(
                name=entry.fee_name,
                calculation_method=entry.calculation_method,
                rate=entry.rate,
                collection_rule=entry.collection_rule,
                allocation_method=entry.allocation_method,
                calculation_basis=entry.calculation_basis,
            )
            db.add(fee)
            await db.flush()
        if fee not in fees:
            fees.append(fee)
    return fees


async def create_product(db: AsyncSession, actor: Actor, payload: LoanProductCreate) -> LoanProduct:
    _require_admin(actor)
    organization = await db.get(Organization, payload.organization_id)
    if organization is None:
        raise ValidationError(
            "Organization not found",
            code="invalid_organization",
            details={"organization_id": str(payload.organization_id)},
        )
    fees = await resolve_fees(db, payload.fees)
    product = LoanProduct(
        **payload.model_dump(exclude={"fees"}),
        fees=fees,
        status=LoanProductStatus.DRAFT.value,
        version=1,
        created_by=actor.user_id,
    )
    db.add(product)
    await db.flush()
    audit_logger.info("loan product created product=%s actor=%s", product.id, actor.user_id)
    return product


def _validate_ranges(product: LoanProduct, updates: dict[str, Any]) -> None:
    min_amount = updates.get("min_amount", product.min_amount)
    max_amount = updates.get("max_amount", product.max_amount)
    if min_amount > max_amount:
        raise ValidationError(
            "min_amount cannot exceed max_amount",
            code="invalid_amount_range",
            details={"min_amount": str(min_amount), "max_amount": str(max_amount)},
        )
    min_term = updates.get("min_term", product.min_term)
    max_term = updates.get("max_term", product.max_term)
    if min_term > max_term:
        raise ValidationError(
            "min_term cannot exceed max_term",
            code="invalid_term_range",
            details={"min_term": min_term, "max_term": max_term},
        )


def changed_critical_fields(product: LoanProduct, updates: dict[str, Any]) -> list[str]:
    return [
        name
        for name in CRITICAL_PRODUCT_FIELDS
        if name in updates and updates[name] != getattr(product, name)
    ]


async def apply_edit(
    db: AsyncSession, actor: Actor, product_id: UUID, patch: LoanProductUpdate
) -> LoanProduct:
    """Edit a product; critical changes on an active product bump its version."""
    _require_admin(actor)
    product = await get_product(db, product_id)
    status = LoanProductStatus(product.status)
    if status == LoanProductStatus.ARCHIVED:
        raise InvalidTransition(
            "Cannot edit archived products; they are read-only historical records",
            code="product_archived",
            details={"product_id": str(product.id), "current_status": status.value},
        )

    updates = patch.model_dump(exclude_unset=True)
    fee_entries = updates.pop("fees", None)
    if "currency" in updates and updates["currency"]:
        updates["currency"] = updates["currency"].strip().upper()
    _validate_ranges(product, updates)

    critical = changed_critical_fields(product, updates)
    before = model_snapshot(product)
    for name, value in updates.items():
        setattr(product, name, value)
    if fee_entries is not None:
        product.fees = await resolve_fees(db, patch.fees or [])
    if status == LoanProductStatus.ACTIVE and critical:
        product.version = product.version + 1
        logger.info(
            "Critical field change on active product %s fields=%s new_version=%s",
            product.id,
            critical,
            product.version,
        )
    await db.flush()
    _log_product_change("loan product edited", product, before, actor)
    return product


async def transition_status(
    db: AsyncSession,
    actor: Actor,
    product_id: UUID,
    new_status: LoanProductStatus,
    *,
    reason: str | None,
    approver_id: UUID | None,
) -> LoanProduct:
    _require_admin(actor)
    if not reason or not reason.strip():
        raise ValidationError("Change reason is required for status updates", code="missing_reason")
    if approver_id is None:
        raise ValidationError("Approver is required for status updates", code="missing_approver")
    approver = await db.get(User, approver_id)
    if approver is None:
        raise ValidationError(
            "Approver not found", code="invalid_approver", details={"approved_by": str(approver_id)}
        )

    product = await get_product(db, product_id)
    current = LoanProductStatus(product.status)
    allowed = PRODUCT_TRANSITIONS.get(current, frozenset())
    if new_status not in allowed:
        raise InvalidTransition(
            f"Cannot change product status from {current.value} to {new_status.value}",
            details={
                "product_id": str(product.id),
                "current_status": current.value,
                "requested_status": new_status.value,
                "allowed": sorted(item.value for item in allowed),
            },
        )

    before = model_snapshot(product)
    product.status = new_status.value
    product.change_reason = reason.strip()
    product.approved_by = approver_id
    product.approved_at = utcnow()
    if current == LoanProductStatus.DRAFT and new_status == LoanProductStatus.ACTIVE:
        product.version = product.version + 1
    if new_status == LoanProductStatus.ACTIVE:
        product.deleted_at = None
    await db.flush()
    _log_product_change("loan product status changed", product, before, actor)
    return product


async def archive_product(
    db: AsyncSession, actor: Actor, product_id: UUID, *, reason: str | None = None
) -> LoanProduct:
    """Soft delete: the product is archived and tombstoned, never removed."""
    _require_admin(actor)
    product = await get_product(db, product_id)
    if product.status == LoanProductStatus.ARCHIVED.value and product.deleted_at is not None:
        return product
    before = model_snapshot(product)
    now = utcnow()
    product.status = LoanProductStatus.ARCHIVED.value
    product.deleted_at = now
    if reason:
        product.change_reason = reason.strip()
    await db.flush()
    _log_product_change("loan product archived", product, before, actor)
    return product
