from app.models.business_document import BusinessDocument
from app.models.business_profile import BusinessProfile
from app.models.contract_signatory import ContractSignatory
from app.models.document_verification import DocumentVerification
from app.models.loan_application import LoanApplication
from app.models.loan_application_audit_event import LoanApplicationAuditEvent
from app.models.loan_application_version import LoanApplicationVersion
from app.models.loan_document import LoanDocument
from app.models.loan_fee import LoanFee
from app.models.loan_product import LoanProduct
from app.models.organization import Organization
from app.models.personal_document import PersonalDocument
from app.models.user import User

__all__ = [
    "BusinessDocument",
    "BusinessProfile",
    "ContractSignatory",
    "DocumentVerification",
    "LoanApplication",
    "LoanApplicationAuditEvent",
    "LoanApplicationVersion",
    "LoanDocument",
    "LoanFee",
    "LoanProduct",
    "Organization",
    "PersonalDocument",
    "User",
]
