"""lending core schema

Revision ID: 0001_lending_core
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "0001_lending_core"
down_revision = None
branch_labels = None
depends_on = None

APPLICATION_STATUSES = (
    "kyc_kyb_verification",
    "eligibility_check",
    "credit_analysis",
    "head_of_credit_review",
    "internal_approval_ceo",
    "committee_decision",
    "sme_offer_approval",
    "document_generation",
    "signing_execution",
    "awaiting_disbursement",
    "approved",
    "rejected",
    "disbursed",
    "cancelled",
)

CONTRACT_STATUSES = (
    "contract_uploaded",
    "contract_sent_for_signing",
    "contract_in_signing",
    "contract_partially_signed",
    "contract_fully_signed",
    "contract_voided",
    "contract_expired",
)

DOCUMENT_TYPES = (
    "contract",
    "term_sheet",
    "offer_letter",
    "eligibility_assessment_support",
    "credit_analysis_report",
    "head_of_credit_review_support",
    "internal_approval_ceo_support",
)


def _in(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN (" + ", ".join(f"'{value}'" for value in values) + ")"


def _timestamps(updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
    ]
    if updated:
        columns.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
        )
    return columns


def upgrade() -> None:
    uuid = postgresql.UUID(as_uuid=True)
    jsonb = postgresql.JSONB(astext_type=sa.Text())

    op.create_table(
        "organizations",
        sa.Column("id", uuid, primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False, unique=True),
        sa.Column("status", sa.String(length=50), nullable=False, server_default="active"),
        *_timestamps(),
    )

    op.create_table(
        "users",
        sa.Column("id", uuid, primary_key=True, nullable=False),
        sa.Column("external_subject_id", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("role", sa.String(length=30), nullable=False, server_default="entrepreneur"),
        sa.Column("organization_id", uuid, nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="SET NULL"),
        sa.CheckConstraint(
            "role IN ('entrepreneur', 'member', 'admin', 'super_admin')", name="ck_users_role"
        ),
    )
    op.create_index("ix_users_external_subject_id", "users", ["external_subject_id"], unique=True)
    op.create_index("ix_users_email", "users", ["email"])
    op.create_index("ix_users_organization_id", "users", ["organization_id"])

    op.create_table(
        "business_profiles",
        sa.Column("id", uuid, primary_key=True, nullable=False),
        sa.Column("entrepreneur_id", uuid, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("registration_number", sa.String(length=100), nullable=True),
        sa.Column("country", sa.String(length=2), nullable=True),
        sa.Column("sector", sa.String(length=100), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["entrepreneur_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_business_profiles_entrepreneur_id", "business_profiles", ["entrepreneur_id"])

    op.create_table(
        "personal_documents",
        sa.Column("id", uuid, primary_key=True, nullable=False),
        sa.Column("user_id", uuid, nullable=False),
        sa.Column("doc_type", sa.String(length=100), nullable=False),
        sa.Column("doc_url", sa.Text(), nullable=False),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("verified_for_loan_application_id", uuid, nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_personal_documents_user_id", "personal_documents", ["user_id"])
    op.create_index(
        "uq_personal_documents_user_type_live",
        "personal_documents",
        ["user_id", "doc_type"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL"),
    )

    op.create_table(
        "business_documents",
        sa.Column("id", uuid, primary_key=True, nullable=False),
        sa.Column("business_id", uuid, nullable=False),
        sa.Column("doc_type", sa.String(length=100), nullable=False),
        sa.Column("doc_url", sa.Text(), nullable=False),
        sa.Column("doc_year", sa.Integer(), nullable=True),
        sa.Column("doc_bank_name", sa.String(length=255), nullable=True),
        sa.Column("is_password_protected", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("verified_for_loan_application_id", uuid, nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["business_id"], ["business_profiles.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_business_documents_business_id", "business_documents", ["business_id"])
    op.create_index(
        "uq_business_documents_natural_key_live",
        "business_documents",
        [
            "business_id",
            "doc_type",
            sa.text("coalesce(doc_year, -1)"),
            sa.text("coalesce(doc_bank_name, '')"),
        ],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL"),
    )

    op.create_table(
        "loan_products",
        sa.Column("id", uuid, primary_key=True, nullable=False),
        sa.Column("organization_id", uuid, nullable=False),
        sa.Column("name", sa.String(length=150), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("currency", sa.String(length=10), nullable=False),
        sa.Column("min_amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("max_amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("min_term", sa.Integer(), nullable=False),
        sa.Column("max_term", sa.Integer(), nullable=False),
        sa.Column("term_unit", sa.String(length=20), nullable=False),
        sa.Column("interest_rate", sa.Numeric(7, 4), nullable=False),
        sa.Column("rate_period", sa.String(length=20), nullable=False),
        sa.Column("amortization_method", sa.String(length=30), nullable=False),
        sa.Column("repayment_frequency", sa.String(length=20), nullable=False),
        sa.Column("interest_collection_method", sa.String(length=30), nullable=False),
        sa.Column("interest_recognition_criteria", sa.String(length=30), nullable=False),
        sa.Column("grace_period", sa.Integer(), nullable=True),
        sa.Column("grace_period_unit", sa.String(length=20), nullable=True),
        sa.Column("max_grace_period", sa.Integer(), nullable=True),
        sa.Column("eligibility_criteria", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("change_reason", sa.Text(), nullable=True),
        sa.Column("approved_by", uuid, nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", uuid, nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["approved_by"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
        sa.CheckConstraint("min_amount > 0", name="ck_loan_products_min_amount_positive"),
        sa.CheckConstraint("max_amount >= min_amount", name="ck_loan_products_amount_range"),
        sa.CheckConstraint("min_term >= 1", name="ck_loan_products_min_term_positive"),
        sa.CheckConstraint("max_term >= min_term", name="ck_loan_products_term_range"),
        sa.CheckConstraint("interest_rate >= 0", name="ck_loan_products_rate_nonneg"),
        sa.CheckConstraint("version >= 1", name="ck_loan_products_version_positive"),
        sa.CheckConstraint("status IN ('draft', 'active', 'archived')", name="ck_loan_products_status"),
        sa.CheckConstraint(
            "term_unit IN ('days', 'weeks', 'months', 'quarters', 'years')",
            name="ck_loan_products_term_unit",
        ),
    )
    op.create_index("ix_loan_products_organization_id", "loan_products", ["organization_id"])
    op.create_index("ix_loan_products_status", "loan_products", ["status"])

    op.create_table(
        "loan_fees",
        sa.Column("id", uuid, primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("calculation_method", sa.String(length=20), nullable=False),
        sa.Column("rate", sa.Numeric(15, 4), nullable=False),
        sa.Column("collection_rule", sa.String(length=20), nullable=False),
        sa.Column("allocation_method", sa.String(length=100), nullable=False),
        sa.Column("calculation_basis", sa.String(length=20), nullable=False),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("name", name="uq_loan_fees_name"),
        sa.CheckConstraint("rate >= 0", name="ck_loan_fees_rate_nonneg"),
        sa.CheckConstraint(
            "calculation_method IN ('flat', 'percentage')", name="ck_loan_fees_calculation_method"
        ),
        sa.CheckConstraint(
            "collection_rule IN ('upfront', 'end_of_term')", name="ck_loan_fees_collection_rule"
        ),
        sa.CheckConstraint(
            "calculation_basis IN ('principal', 'total_disbursed')",
            name="ck_loan_fees_calculation_basis",
        ),
    )

    op.create_table(
        "loan_products_loan_fees",
        sa.Column("loan_product_id", uuid, primary_key=True, nullable=False),
        sa.Column("loan_fee_id", uuid, primary_key=True, nullable=False),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["loan_product_id"], ["loan_products.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["loan_fee_id"], ["loan_fees.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_loan_products_loan_fees_loan_fee_id", "loan_products_loan_fees", ["loan_fee_id"]
    )

    op.create_table(
        "loan_applications",
        sa.Column("id", uuid, primary_key=True, nullable=False),
        sa.Column("loan_id", sa.String(length=20), nullable=False),
        sa.Column("business_id", uuid, nullable=False),
        sa.Column("entrepreneur_id", uuid, nullable=False),
        sa.Column("loan_product_id", uuid, nullable=False),
        sa.Column("loan_product_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("funding_amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("funding_currency", sa.String(length=10), nullable=False),
        sa.Column("converted_amount", sa.Numeric(15, 2), nullable=True),
        sa.Column("converted_currency", sa.String(length=10), nullable=True),
        sa.Column("exchange_rate", sa.Numeric(15, 6), nullable=True),
        sa.Column("repayment_period", sa.Integer(), nullable=False),
        sa.Column("intended_use_of_funds", sa.String(length=100), nullable=False),
        sa.Column("interest_rate", sa.Numeric(7, 4), nullable=False),
        sa.Column("loan_source", sa.String(length=100), nullable=True),
        sa.Column("status", sa.String(length=40), nullable=False, server_default="kyc_kyb_verification"),
        sa.Column("contract_status", sa.String(length=40), nullable=True),
        sa.Column("active_version_id", uuid, nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disbursed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("eligibility_assessment_comment", sa.Text(), nullable=True),
        sa.Column("eligibility_assessment_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("eligibility_assessment_completed_by", uuid, nullable=True),
        sa.Column("credit_assessment_comment", sa.Text(), nullable=True),
        sa.Column("credit_assessment_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("credit_assessment_completed_by", uuid, nullable=True),
        sa.Column("head_of_credit_review_comment", sa.Text(), nullable=True),
        sa.Column("head_of_credit_review_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("head_of_credit_review_completed_by", uuid, nullable=True),
        sa.Column("internal_approval_ceo_comment", sa.Text(), nullable=True),
        sa.Column("internal_approval_ceo_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("internal_approval_ceo_completed_by", uuid, nullable=True),
        sa.Column("term_sheet_url", sa.Text(), nullable=True),
        sa.Column("term_sheet_uploaded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("term_sheet_uploaded_by", uuid, nullable=True),
        sa.Column("created_by", uuid, nullable=False),
        sa.Column("last_updated_by", uuid, nullable=True),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        *_timestamps(),
        sa.ForeignKeyConstraint(["business_id"], ["business_profiles.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["entrepreneur_id"], ["users.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["loan_product_id"], ["loan_products.id"], ondelete="RESTRICT"),
        sa.CheckConstraint("funding_amount > 0", name="ck_loan_app_funding_positive"),
        sa.CheckConstraint("repayment_period >= 1", name="ck_loan_app_period_positive"),
        sa.CheckConstraint("interest_rate >= 0", name="ck_loan_app_rate_nonneg"),
        sa.CheckConstraint(_in("status", APPLICATION_STATUSES), name="ck_loan_app_status"),
        sa.CheckConstraint(
            "contract_status IS NULL OR " + _in("contract_status", CONTRACT_STATUSES),
            name="ck_loan_app_contract_status",
        ),
    )
    op.create_index("ix_loan_applications_loan_id", "loan_applications", ["loan_id"], unique=True)
    op.create_index("ix_loan_applications_business_id", "loan_applications", ["business_id"])
    op.create_index("ix_loan_applications_entrepreneur_id", "loan_applications", ["entrepreneur_id"])
    op.create_index("ix_loan_applications_loan_product_id", "loan_applications", ["loan_product_id"])
    op.create_index("ix_loan_applications_status", "loan_applications", ["status"])

    op.create_table(
        "loan_application_versions",
        sa.Column("id", uuid, primary_key=True, nullable=False),
        sa.Column("loan_application_id", uuid, nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="original"),
        sa.Column("funding_amount", sa.Numeric(15, 2), nullable=False),
        sa.Column("repayment_period", sa.Integer(), nullable=False),
        sa.Column("return_type", sa.String(length=30), nullable=False, server_default="interest_based"),
        sa.Column("interest_rate", sa.Numeric(7, 4), nullable=False),
        sa.Column("repayment_structure", sa.String(length=30), nullable=False),
        sa.Column("repayment_cycle", sa.String(length=20), nullable=False),
        sa.Column("grace_period", sa.Integer(), nullable=True),
        sa.Column("first_payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("custom_fees", jsonb, nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("created_by", uuid, nullable=False),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["loan_application_id"], ["loan_applications.id"], ondelete="CASCADE"),
        sa.CheckConstraint("status IN ('original', 'counter_offer')", name="ck_loan_app_versions_status"),
        sa.CheckConstraint(
            "return_type IN ('interest_based', 'revenue_sharing')",
            name="ck_loan_app_versions_return_type",
        ),
        sa.CheckConstraint(
            "repayment_structure IN ('principal_and_interest', 'bullet_repayment')",
            name="ck_loan_app_versions_repayment_structure",
        ),
        sa.CheckConstraint(
            "repayment_cycle IN ('daily', 'weekly', 'bi_weekly', 'monthly', 'quarterly')",
            name="ck_loan_app_versions_repayment_cycle",
        ),
        sa.CheckConstraint("funding_amount > 0", name="ck_loan_app_versions_funding_positive"),
    )
    op.create_index(
        "ix_loan_application_versions_loan_application_id",
        "loan_application_versions",
        ["loan_application_id"],
    )

    op.create_table(
        "loan_application_audit_events",
        sa.Column("id", uuid, primary_key=True, nullable=False),
        sa.Column("loan_application_id", uuid, nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("performed_by_id", uuid, nullable=True),
        sa.Column("event_type", sa.String(length=60), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=40), nullable=False),
        sa.Column("previous_status", sa.String(length=40), nullable=True),
        sa.Column("new_status", sa.String(length=40), nullable=True),
        sa.Column("details", jsonb, nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["loan_application_id"], ["loan_applications.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("loan_application_id", "sequence", name="uq_loan_app_audit_events_sequence"),
    )
    op.create_index(
        "ix_loan_application_audit_events_loan_application_id",
        "loan_application_audit_events",
        ["loan_application_id"],
    )
    op.create_index(
        "ix_loan_application_audit_events_event_type",
        "loan_application_audit_events",
        ["event_type"],
    )

    op.create_table(
        "document_verifications",
        sa.Column("id", uuid, primary_key=True, nullable=False),
        sa.Column("loan_application_id", uuid, nullable=False),
        sa.Column("document_type", sa.String(length=20), nullable=False),
        sa.Column("document_id", uuid, nullable=False),
        sa.Column("verification_status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("verified_by", uuid, nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["loan_application_id"], ["loan_applications.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "loan_application_id", "document_type", "document_id", name="uq_document_verifications_app_doc"
        ),
        sa.CheckConstraint("document_type IN ('personal', 'business')", name="ck_document_verifications_type"),
        sa.CheckConstraint(
            "verification_status IN ('pending', 'approved', 'rejected')",
            name="ck_document_verifications_status",
        ),
    )
    op.create_index(
        "ix_document_verifications_loan_application_id",
        "document_verifications",
        ["loan_application_id"],
    )

    op.create_table(
        "loan_documents",
        sa.Column("id", uuid, primary_key=True, nullable=False),
        sa.Column("loan_application_id", uuid, nullable=False),
        sa.Column("document_type", sa.String(length=50), nullable=False),
        sa.Column("doc_url", sa.Text(), nullable=False),
        sa.Column("doc_name", sa.String(length=255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("company_signs_first", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("uploaded_by", uuid, nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
        sa.ForeignKeyConstraint(["loan_application_id"], ["loan_applications.id"], ondelete="CASCADE"),
        sa.CheckConstraint(_in("document_type", DOCUMENT_TYPES), name="ck_loan_documents_type"),
    )
    op.create_index("ix_loan_documents_loan_application_id", "loan_documents", ["loan_application_id"])

    op.create_table(
        "contract_signatories",
        sa.Column("id", uuid, primary_key=True, nullable=False),
        sa.Column("loan_application_id", uuid, nullable=False),
        sa.Column("contract_document_id", uuid, nullable=False),
        sa.Column("category", sa.String(length=20), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("role_title", sa.String(length=255), nullable=True),
        sa.Column("signing_order", sa.Integer(), nullable=True),
        sa.Column("has_signed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["loan_application_id"], ["loan_applications.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["contract_document_id"], ["loan_documents.id"], ondelete="CASCADE"),
        sa.CheckConstraint("category IN ('company', 'client')", name="ck_contract_signatories_category"),
    )
    op.create_index(
        "ix_contract_signatories_loan_application_id", "contract_signatories", ["loan_application_id"]
    )
    op.create_index(
        "ix_contract_signatories_contract_document_id", "contract_signatories", ["contract_document_id"]
    )


def downgrade() -> None:
    op.drop_table("contract_signatories")
    op.drop_table("loan_documents")
    op.drop_table("document_verifications")
    op.drop_table("loan_application_audit_events")
    op.drop_table("loan_application_versions")
    op.drop_table("loan_applications")
    op.drop_table("loan_products_loan_fees")
    op.drop_table("loan_fees")
    op.drop_table("loan_products")
    op.drop_index("uq_business_documents_natural_key_live", table_name="business_documents")
    op.drop_table("business_documents")
    op.drop_index("uq_personal_documents_user_type_live", table_name="personal_documents")
    op.drop_table("personal_documents")
    op.drop_table("business_profiles")
    op.drop_table("users")
    op.drop_table("organizations")
