from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.actor import Actor
from app.core.exceptions import ConflictingVersion, DocumentLocked, Forbidden, NotFound
from app.db.queries import not_deleted
from app.models.business_document import BusinessDocument
from app.models.business_profile import BusinessProfile
from app.models.personal_document import PersonalDocument
from app.models.types import utcnow
from app.models.user import User
from app.schemas.documents import BusinessDocumentUpsert, PersonalDocumentUpsert

logger = logging.getLogger(__name__)


async def get_business_or_404(db: AsyncSession, business_id: UUID) -> BusinessProfile:
    stmt = select(BusinessProfile).where(
        BusinessProfile.id == business_id, not_deleted(BusinessProfile)
    )
    business = (await db.execute(stmt)).scalar_one_or_none()
    if business is None:
        raise NotFound("Business not found", details={"business_id": str(business_id)})
    return business


def ensure_business_access(actor: Actor, business: BusinessProfile) -> None:
    if actor.is_staff or business.entrepreneur_id == actor.user_id:
        return
    raise Forbidden(
        "Not allowed to manage documents for this business",
        details={"business_id": str(business.id)},
    )


def ensure_user_access(actor: Actor, user_id: UUID) -> None:
    if actor.is_staff or actor.user_id == user_id:
        return
    raise Forbidden(
        "Not allowed to manage documents for this user", details={"user_id": str(user_id)}
    )


async def find_business_document(
    db: AsyncSession,
    business_id: UUID,
    doc_type: str,
    doc_year: int | None,
    doc_bank_name: str | None,
) -> BusinessDocument | None:
    """Resolve a live business document by its natural key; NULL parts match NULL."""
    stmt = select(BusinessDocument).where(
        BusinessDocument.business_id == business_id,
        BusinessDocument.doc_type == doc_type,
        func.coalesce(BusinessDocument.doc_year, -1) == (doc_year if doc_year is not None else -1),
        func.coalesce(BusinessDocument.doc_bank_name, "") == (doc_bank_name or ""),
        not_deleted(BusinessDocument),
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def find_personal_document(
    db: AsyncSession, user_id: UUID, doc_type: str
) -> PersonalDocument | None:
    stmt = select(PersonalDocument).where(
        PersonalDocument.user_id == user_id,
        PersonalDocument.doc_type == doc_type,
        not_deleted(PersonalDocument),
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def _flush_document(db: AsyncSession, kind: str, key: dict) -> None:
    try:
        await db.flush()
    except IntegrityError as exc:
        raise ConflictingVersion(
            f"A {kind} document with the same key was written concurrently",
            details=key,
        ) from exc


async def upsert_business_document(
    db: AsyncSession,
    actor: Actor,
    business_id: UUID,
    payload: BusinessDocumentUpsert,
) -> BusinessDocument:
    business = await get_business_or_404(db, business_id)
    ensure_business_access(actor, business)

    key = {
        "business_id": str(business_id),
        "doc_type": payload.doc_type,
        "doc_year": payload.doc_year,
        "doc_bank_name": payload.doc_bank_name,
    }
    document = await find_business_document(
        db, business_id, payload.doc_type, payload.doc_year, payload.doc_bank_name
    )
    if document is not None:
        if document.is_locked:
            raise DocumentLocked(
                f"Document of type '{payload.doc_type}' is verified and locked; upload a replacement",
                details={"document_id": str(document.id), **key},
            )
        document.doc_url = payload.doc_url
        document.is_password_protected = payload.is_password_protected
    else:
        document = BusinessDocument(
            business_id=business_id,
            doc_type=payload.doc_type,
            doc_url=payload.doc_url,
            doc_year=payload.doc_year,
            doc_bank_name=payload.doc_bank_name,
            is_password_protected=payload.is_password_protected,
        )
        db.add(document)
    await _flush_document(db, "business", key)
    return document


async def upsert_personal_document(
    db: AsyncSession,
    actor: Actor,
    user_id: UUID,
    payload: PersonalDocumentUpsert,
) -> PersonalDocument:
    ensure_user_access(actor, user_id)
    owner = await db.get(User, user_id)
    if owner is None:
        raise NotFound("User not found", details={"user_id": str(user_id)})

    key = {"user_id": str(user_id), "doc_type": payload.doc_type}
    document = await find_personal_document(db, user_id, payload.doc_type)
    if document is not None:
        if document.is_locked:
            raise DocumentLocked(
                f"Document of type '{payload.doc_type}' is verified and locked; upload a replacement",
                details={"document_id": str(document.id), **key},
            )
        document.doc_url = payload.doc_url
    else:
        document = PersonalDocument(user_id=user_id, doc_type=payload.doc_type, doc_url=payload.doc_url)
        db.add(document)
    await _flush_document(db, "personal", key)
    return document


async def replace_business_document(
    db: AsyncSession, actor: Actor, document_id: UUID, doc_url: str
) -> BusinessDocument:
    """Tombstone a (possibly locked) document and create a fresh one under the same key."""
    stmt = select(BusinessDocument).where(
        BusinessDocument.id == document_id, not_deleted(BusinessDocument)
    )
    current = (await db.execute(stmt)).scalar_one_or_none()
    if current is None:
        raise NotFound("Business document not found", details={"document_id": str(document_id)})
    business = await get_business_or_404(db, current.business_id)
    ensure_business_access(actor, business)

    current.deleted_at = utcnow()
    await db.flush()
    replacement = BusinessDocument(
        business_id=current.business_id,
        doc_type=current.doc_type,
        doc_url=doc_url,
        doc_year=current.doc_year,
        doc_bank_name=current.doc_bank_name,
        is_password_protected=current.is_password_protected,
    )
    db.add(replacement)
    await _flush_document(db, "business", {"replaces": str(document_id)})
    logger.info(
        "Business document replaced old=%s new=%s", document_id, replacement.id
    )
    return replacement


async def replace_personal_document(
    db: AsyncSession, actor: Actor, document_id: UUID, doc_url: str
) -> PersonalDocument:
    stmt = select(PersonalDocument).where(
        PersonalDocument.id == document_id, not_deleted(PersonalDocument)
    )
    current = (await db.execute(stmt)).scalar_one_or_none()
    if current is None:
        raise NotFound("Personal document not found", details={"document_id": str(document_id)})
    ensure_user_access(actor, current.user_id)

    current.deleted_at = utcnow()
    await db.flush()
    replacement = PersonalDocument(
        user_id=current.user_id, doc_type=current.doc_type, doc_url=doc_url
    )
    db.add(replacement)
    await _flush_document(db, "personal", {"replaces": str(document_id)})
    logger.info("Personal document replaced old=%s new=%s", document_id, replacement.id)
    return replacement


async def list_business_documents(db: AsyncSession, business_id: UUID) -> list[BusinessDocument]:
    stmt = (
        select(BusinessDocument)
        .where(BusinessDocument.business_id == business_id, not_deleted(BusinessDocument))
        .order_by(BusinessDocument.created_at.asc(), BusinessDocument.id.asc())
    )
    return list((await db.execute(stmt)).scalars().all())


async def list_personal_documents(db: AsyncSession, user_id: UUID) -> list[PersonalDocument]:
    stmt = (
        select(PersonalDocument)
        .where(PersonalDocument.user_id == user_id, not_deleted(PersonalDocument))
        .order_by(PersonalDocument.created_at.asc(), PersonalDocument.id.asc())
    )
    return list((await db.execute(stmt)).scalars().all())
