from __future__ import annotations

import logging
import secrets
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.actor import Actor
from app.core.exceptions import Forbidden, InternalError, NotFound, ValidationError
from app.core.settings import settings
from app.db.queries import not_deleted
from app.models.business_profile import BusinessProfile
from app.models.loan_application import LoanApplication
from app.models.loan_product import LoanProduct
from app.models.types import utcnow
from app.models.user import User
from app.schemas.audit import AuditEventType
from app.schemas.loan import (
    LoanApplicationCreate,
    LoanApplicationDTO,
    LoanApplicationSelfDTO,
    LoanApplicationStatus,
    LoanTermsInput,
    PublicLoanApplicationStatus,
)
from app.schemas.loan_products import LoanProductStatus
from app.services import audit, document_verification, loan_versions
from app.services.cache import ApplicationCache, application_key

logger = logging.getLogger(__name__)

PUBLIC_STATUS_MAP: dict[LoanApplicationStatus, PublicLoanApplicationStatus] = {
    LoanApplicationStatus.APPROVED: PublicLoanApplicationStatus.APPROVED,
    LoanApplicationStatus.AWAITING_DISBURSEMENT: PublicLoanApplicationStatus.APPROVED,
    LoanApplicationStatus.REJECTED: PublicLoanApplicationStatus.REJECTED,
    LoanApplicationStatus.DISBURSED: PublicLoanApplicationStatus.DISBURSED,
    LoanApplicationStatus.CANCELLED: PublicLoanApplicationStatus.CANCELLED,
}


def public_status(status: LoanApplicationStatus | str) -> PublicLoanApplicationStatus:
    """Entrepreneurs never see the internal review stages."""
    return PUBLIC_STATUS_MAP.get(LoanApplicationStatus(status), PublicLoanApplicationStatus.PENDING)


def to_self_dto(application: LoanApplication | LoanApplicationDTO) -> LoanApplicationSelfDTO:
    return LoanApplicationSelfDTO(
        id=application.id,
        loan_id=application.loan_id,
        business_id=application.business_id,
        loan_product_id=application.loan_product_id,
        funding_amount=application.funding_amount,
        funding_currency=application.funding_currency,
        repayment_period=application.repayment_period,
        interest_rate=application.interest_rate,
        status=public_status(application.status),
        active_version_id=application.active_version_id,
        submitted_at=application.submitted_at,
        approved_at=application.approved_at,
        rejected_at=application.rejected_at,
        disbursed_at=application.disbursed_at,
        cancelled_at=application.cancelled_at,
        rejection_reason=application.rejection_reason,
    )


async def generate_loan_id(db: AsyncSession) -> str:
    for _ in range(settings.loan_id_max_attempts):
        candidate = f"{settings.loan_id_prefix}-{secrets.randbelow(100000):05d}"
        stmt = select(func.count()).select_from(LoanApplication).where(LoanApplication.loan_id == candidate)
        if (await db.execute(stmt)).scalar_one() == 0:
            return candidate
    raise InternalError(
        "Could not allocate a unique loan id",
        details={"attempts": settings.loan_id_max_attempts},
    )


async def _load_active_product(db: AsyncSession, product_id: UUID) -> LoanProduct:
    stmt = select(LoanProduct).where(LoanProduct.id == product_id, not_deleted(LoanProduct))
    product = (await db.execute(stmt)).scalar_one_or_none()
    if product is None:
        raise NotFound("Loan product not found", details={"loan_product_id": str(product_id)})
    if product.status != LoanProductStatus.ACTIVE.value:
        raise ValidationError(
            "Loan product is not accepting applications",
            code="product_not_active",
            details={"loan_product_id": str(product.id), "status": product.status},
        )
    return product


def _check_product_bounds(product: LoanProduct, payload: LoanApplicationCreate) -> None:
    if not product.min_amount <= payload.funding_amount <= product.max_amount:
        raise ValidationError(
            "Funding amount is outside the product limits",
            code="amount_out_of_range",
            details={
                "funding_amount": str(payload.funding_amount),
                "min_amount": str(product.min_amount),
                "max_amount": str(product.max_amount),
            },
        )
    if not product.min_term <= payload.repayment_period <= product.max_term:
        raise ValidationError(
            "Repayment period is outside the product limits",
            code="term_out_of_range",
            details={
                "repayment_period": payload.repayment_period,
                "min_term": product.min_term,
                "max_term": product.max_term,
                "term_unit": product.term_unit,
            },
        )


async def create_application(
    db: AsyncSession, actor: Actor, payload: LoanApplicationCreate
) -> LoanApplication:
    """Submit a new application in kyc_kyb_verification. Runs in the caller's transaction."""
    if not actor.is_staff and actor.user_id != payload.entrepreneur_id:
        raise Forbidden("Entrepreneurs can only apply on their own behalf")
    entrepreneur = await db.get(User, payload.entrepreneur_id)
    if entrepreneur is None or not entrepreneur.is_active:
        raise NotFound("Entrepreneur not found", details={"entrepreneur_id": str(payload.entrepreneur_id)})
    stmt = select(BusinessProfile).where(
        BusinessProfile.id == payload.business_id, not_deleted(BusinessProfile)
    )
    business = (await db.execute(stmt)).scalar_one_or_none()
    if business is None:
        raise NotFound("Business not found", details={"business_id": str(payload.business_id)})
    if business.entrepreneur_id != entrepreneur.id:
        raise Forbidden(
            "Business does not belong to this entrepreneur",
            details={"business_id": str(business.id), "entrepreneur_id": str(entrepreneur.id)},
        )
    product = await _load_active_product(db, payload.loan_product_id)
    _check_product_bounds(product, payload)

    now = utcnow()
    application = LoanApplication(
        loan_id=await generate_loan_id(db),
        business_id=business.id,
        entrepreneur_id=entrepreneur.id,
        loan_product_id=product.id,
        loan_product_version=product.version,
        funding_amount=payload.funding_amount,
        funding_currency=payload.funding_currency,
        converted_amount=payload.converted_amount,
        converted_currency=payload.converted_currency,
        exchange_rate=payload.exchange_rate,
        repayment_period=payload.repayment_period,
        intended_use_of_funds=payload.intended_use_of_funds,
        interest_rate=payload.interest_rate,
        loan_source=payload.loan_source,
        status=LoanApplicationStatus.KYC_KYB_VERIFICATION.value,
        submitted_at=now,
        created_by=actor.user_id,
        last_updated_by=actor.user_id,
        last_updated_at=now,
    )
    db.add(application)
    await db.flush()

    terms = LoanTermsInput(
        funding_amount=payload.funding_amount,
        repayment_period=payload.repayment_period,
        interest_rate=payload.interest_rate,
        repayment_structure=payload.repayment_structure,
        repayment_cycle=payload.repayment_cycle,
        grace_period=payload.grace_period,
        first_payment_date=payload.first_payment_date,
    )
    version = await loan_versions.create_original_version(db, application, terms, actor)
    await db.flush()
    seeded = await document_verification.seed_pending_verifications(db, application)
    await audit.append_event(
        db,
        application_id=application.id,
        event_type=AuditEventType.SUBMITTED,
        status=application.status,
        actor=actor,
        new_status=application.status,
        details={
            "loan_id": application.loan_id,
            "loan_product_id": str(product.id),
            "loan_product_version": product.version,
            "original_version_id": str(version.id),
            "pending_verifications": seeded,
        },
    )
    logger.info("Loan application %s submitted by %s", application.loan_id, actor.user_id)
    return application


async def get_application(
    db: AsyncSession, cache: ApplicationCache, application_id: UUID, actor: Actor
) -> LoanApplicationDTO:
    """Read-through: a cached view is served if present, otherwise loaded and cached."""
    key = application_key(application_id)
    cached = await cache.get(key)
    if cached is not None:
        dto = LoanApplicationDTO.model_validate(cached)
    else:
        stmt = select(LoanApplication).where(
            LoanApplication.id == application_id, not_deleted(LoanApplication)
        )
        application = (await db.execute(stmt)).scalar_one_or_none()
        if application is None:
            raise NotFound("Loan application not found", details={"application_id": str(application_id)})
        dto = LoanApplicationDTO.model_validate(application)
        await cache.set(key, dto.model_dump(mode="json"))
    if not actor.is_staff and dto.entrepreneur_id != actor.user_id:
        raise Forbidden(
            "You can only access your own loan applications",
            details={"application_id": str(application_id)},
        )
    return dto


async def list_applications(
    db: AsyncSession,
    actor: Actor,
    *,
    statuses: list[LoanApplicationStatus] | None = None,
    business_id: UUID | None = None,
    loan_product_id: UUID | None = None,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[LoanApplication], int]:
    filters = [not_deleted(LoanApplication)]
    if not actor.is_staff:
        filters.append(LoanApplication.entrepreneur_id == actor.user_id)
    if statuses:
        filters.append(LoanApplication.status.in_([item.value for item in statuses]))
    if business_id is not None:
        filters.append(LoanApplication.business_id == business_id)
    if loan_product_id is not None:
        filters.append(LoanApplication.loan_product_id == loan_product_id)
    total = (
        await db.execute(select(func.count()).select_from(LoanApplication).where(*filters))
    ).scalar_one()
    stmt = (
        select(LoanApplication)
        .where(*filters)
        .order_by(LoanApplication.created_at.desc(), LoanApplication.id.asc())
        .offset(offset)
        .limit(limit)
    )
    return list((await db.execute(stmt)).scalars().all()), total


async def soft_delete_application(
    db: AsyncSession, application: LoanApplication, actor: Actor
) -> LoanApplication:
    if not actor.is_staff:
        raise Forbidden("Only staff may delete loan applications")
    now = utcnow()
    application.deleted_at = now
    application.last_updated_by = actor.user_id
    application.last_updated_at = now
    await db.flush()
    await audit.append_event(
        db,
        application_id=application.id,
        event_type=AuditEventType.DELETED,
        status=application.status,
        actor=actor,
        details={"loan_id": application.loan_id},
    )
    return application
