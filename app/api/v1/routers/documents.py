from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import deps
from app.core.actor import Actor
from app.db.transaction import unit_of_work
from app.schemas.documents import (
    BusinessDocumentDTO,
    BusinessDocumentListResponse,
    BusinessDocumentUpsert,
    DocumentReplaceRequest,
    PersonalDocumentDTO,
    PersonalDocumentListResponse,
    PersonalDocumentUpsert,
)
from app.services import documents

router = APIRouter(tags=["documents"])


@router.get("/businesses/{business_id}/documents", response_model=BusinessDocumentListResponse)
async def list_business_documents(
    business_id: UUID,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
) -> BusinessDocumentListResponse:
    business = await documents.get_business_or_404(db, business_id)
    documents.ensure_business_access(actor, business)
    items = await documents.list_business_documents(db, business.id)
    return BusinessDocumentListResponse(
        items=[BusinessDocumentDTO.model_validate(item) for item in items], total=len(items)
    )


@router.put("/businesses/{business_id}/documents", response_model=BusinessDocumentDTO)
async def upsert_business_document(
    business_id: UUID,
    payload: BusinessDocumentUpsert,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
) -> BusinessDocumentDTO:
    async with unit_of_work(db, "business_document.upsert", business_id=business_id):
        document = await documents.upsert_business_document(db, actor, business_id, payload)
    return BusinessDocumentDTO.model_validate(document)


@router.post(
    "/business-documents/{document_id}/replace",
    response_model=BusinessDocumentDTO,
    status_code=status.HTTP_201_CREATED,
)
async def replace_business_document(
    document_id: UUID,
    payload: DocumentReplaceRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
) -> BusinessDocumentDTO:
    async with unit_of_work(db, "business_document.replace", document_id=document_id):
        document = await documents.replace_business_document(db, actor, document_id, payload.doc_url)
    return BusinessDocumentDTO.model_validate(document)


@router.get("/users/{user_id}/documents", response_model=PersonalDocumentListResponse)
async def list_personal_documents(
    user_id: UUID,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
) -> PersonalDocumentListResponse:
    documents.ensure_user_access(actor, user_id)
    items = await documents.list_personal_documents(db, user_id)
    return PersonalDocumentListResponse(
        items=[PersonalDocumentDTO.model_validate(item) for item in items], total=len(items)
    )


@router.put("/users/{user_id}/documents", response_model=PersonalDocumentDTO)
async def upsert_personal_document(
    user_id: UUID,
    payload: PersonalDocumentUpsert,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
) -> PersonalDocumentDTO:
    async with unit_of_work(db, "personal_document.upsert", user_id=user_id):
        document = await documents.upsert_personal_document(db, actor, user_id, payload)
    return PersonalDocumentDTO.model_validate(document)


@router.post(
    "/personal-documents/{document_id}/replace",
    response_model=PersonalDocumentDTO,
    status_code=status.HTTP_201_CREATED,
)
async def replace_personal_document(
    document_id: UUID,
    payload: DocumentReplaceRequest,
    db: AsyncSession = Depends(deps.get_db_session),
    actor: Actor = Depends(deps.get_actor),
) -> PersonalDocumentDTO:
    async with unit_of_work(db, "personal_document.replace", document_id=document_id):
        document = await documents.replace_personal_document(db, actor, document_id, payload.doc_url)
    return PersonalDocumentDTO.model_validate(document)
