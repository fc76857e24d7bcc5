from fastapi import APIRouter

from app.api.v1.routers import (
    documents,
    health,
    loan_admin,
    loan_applications,
    loan_contracts,
    loan_products,
)

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(loan_products.router)
api_router.include_router(documents.router)
api_router.include_router(loan_applications.router)
api_router.include_router(loan_admin.router)
api_router.include_router(loan_contracts.router)

__all__ = ["api_router"]
