from __future__ import annotations

import pytest
from sqlalchemy import select

from conftest import TERM_SHEET_URL, add_personal_document, reload
from app.core.exceptions import Forbidden, InvalidTransition, NotFound, PreconditionFailed
from app.core.permissions import Role
from app.models import LoanApplication, LoanDocument
from app.schemas.audit import AuditEventType
from app.schemas.documents import DocumentKind, DocumentRef, VerificationOutcome
from app.schemas.loan import (
    ContractStatus,
    LoanApplicationStatus,
    NextApproverInput,
    TransitionPayload,
)
from app.services import audit, document_verification, loan_applications
from app.services.loan_workflow import TRANSITIONS, ApplicationStateMachine, allowed_transitions

S = LoanApplicationStatus


async def _event_types(db, application_id) -> list[str]:
    return [event.event_type for event in await audit.read_events(db, application_id)]


def test_terminal_statuses_have_no_exits() -> None:
    for status in (S.REJECTED, S.CANCELLED, S.DISBURSED):
        assert allowed_transitions(status) == {}


def test_every_open_stage_can_be_rejected_or_cancelled() -> None:
    for status, edges in TRANSITIONS.items():
        if not edges:
            continue
        assert S.REJECTED in edges, status
        assert S.CANCELLED in edges, status


def test_entrepreneurs_may_only_cancel_before_document_generation() -> None:
    assert allowed_transitions(S.SME_OFFER_APPROVAL)[S.CANCELLED] == Role.ENTREPRENEUR
    assert allowed_transitions(S.DOCUMENT_GENERATION)[S.CANCELLED] == Role.MEMBER
    assert allowed_transitions(S.AWAITING_DISBURSEMENT)[S.CANCELLED] == Role.MEMBER


async def test_submission_starts_at_kyc_with_original_terms(db, submit) -> None:
    application = await submit()

    assert application.status == S.KYC_KYB_VERIFICATION.value
    assert application.loan_id.startswith("LN-")
    assert len(application.loan_id) == 8
    assert application.submitted_at is not None
    assert application.active_version_id is not None
    assert application.loan_product_version == 2
    assert application.funding_currency == "KES"

    events = await audit.read_events(db, application.id)
    assert [event.sequence for event in events] == [1]
    assert events[0].event_type == AuditEventType.SUBMITTED.value
    assert events[0].new_status == S.KYC_KYB_VERIFICATION.value


async def test_forward_path_records_one_event_per_transition(db, submit, drive) -> None:
    application = await submit()

    application = await drive(application.id, S.SIGNING_EXECUTION.value)

    assert application.contract_status == ContractStatus.CONTRACT_UPLOADED.value
    assert application.eligibility_assessment_comment == "Eligible for the product"
    assert application.credit_assessment_comment == "Cash flow supports the facility"
    assert application.credit_assessment_completed_at is not None
    assert application.internal_approval_ceo_comment == "Approved internally"
    assert application.term_sheet_url == TERM_SHEET_URL
    assert await _event_types(db, application.id) == [
        AuditEventType.SUBMITTED.value,
        AuditEventType.KYC_KYB_COMPLETED.value,
        AuditEventType.ELIGIBILITY_ASSESSMENT_COMPLETED.value,
        AuditEventType.CREDIT_ASSESSMENT_COMPLETED.value,
        AuditEventType.HEAD_OF_CREDIT_REVIEW_COMPLETED.value,
        AuditEventType.INTERNAL_APPROVAL_CEO_COMPLETED.value,
        AuditEventType.COMMITTEE_DECISION_COMPLETED.value,
        AuditEventType.REVIEW_IN_PROGRESS.value,
        AuditEventType.REVIEW_IN_PROGRESS.value,
    ]
    events = await audit.read_events(db, application.id)
    assert [event.sequence for event in events] == list(range(1, 10))
    assert events[-1].previous_status == S.DOCUMENT_GENERATION.value
    assert events[-1].new_status == S.SIGNING_EXECUTION.value


async def test_skipping_a_stage_is_rejected_without_side_effects(db, submit, machine, actors) -> None:
    application = await submit()
    application_id = application.id

    with pytest.raises(InvalidTransition) as excinfo:
        await machine.transition(db, application_id, S.CREDIT_ANALYSIS, actors["admin"])

    assert excinfo.value.details["current_status"] == S.KYC_KYB_VERIFICATION.value
    assert S.ELIGIBILITY_CHECK.value in excinfo.value.details["allowed"]
    reloaded = await reload(db, LoanApplication, application_id)
    assert reloaded.status == S.KYC_KYB_VERIFICATION.value
    assert await _event_types(db, application_id) == [AuditEventType.SUBMITTED.value]


async def test_edges_enforce_minimum_role(db, submit, drive, machine, actors) -> None:
    application = await submit()
    await drive(application.id, S.HEAD_OF_CREDIT_REVIEW.value)

    with pytest.raises(Forbidden) as excinfo:
        await machine.transition(
            db,
            application.id,
            S.INTERNAL_APPROVAL_CEO,
            actors["member"],
            TransitionPayload(comment="Looks good"),
        )
    assert excinfo.value.details["required_role"] == Role.ADMIN.value


async def test_entrepreneur_cannot_advance_review_stages(db, submit, machine, actors) -> None:
    application = await submit()

    with pytest.raises(Forbidden):
        await machine.transition(db, application.id, S.ELIGIBILITY_CHECK, actors["entrepreneur"])


async def test_review_stages_require_a_comment(db, submit, drive, machine, actors) -> None:
    application = await submit()
    await drive(application.id, S.CREDIT_ANALYSIS.value)

    with pytest.raises(PreconditionFailed) as excinfo:
        await machine.transition(
            db, application.id, S.HEAD_OF_CREDIT_REVIEW, actors["member"], TransitionPayload(comment="   ")
        )
    assert excinfo.value.code == "comment_required"


async def test_committee_exit_requires_and_records_the_term_sheet(db, submit, drive, machine, actors) -> None:
    application = await submit()
    application_id = application.id
    await drive(application_id, S.COMMITTEE_DECISION.value)

    with pytest.raises(PreconditionFailed) as excinfo:
        await machine.transition(db, application_id, S.SME_OFFER_APPROVAL, actors["admin"])
    assert excinfo.value.code == "term_sheet_url_required"

    application = await machine.transition(
        db,
        application_id,
        S.SME_OFFER_APPROVAL,
        actors["admin"],
        TransitionPayload(term_sheet_url=TERM_SHEET_URL),
    )
    assert application.term_sheet_uploaded_by == actors["admin"].user_id
    documents = (
        await db.execute(select(LoanDocument).where(LoanDocument.loan_application_id == application_id))
    ).scalars().all()
    assert [document.document_type for document in documents] == ["term_sheet"]


async def test_supporting_documents_are_attached_to_the_stage(db, submit, drive, machine, actors) -> None:
    application = await submit()
    await drive(application.id, S.CREDIT_ANALYSIS.value)

    await machine.transition(
        db,
        application.id,
        S.HEAD_OF_CREDIT_REVIEW,
        actors["member"],
        TransitionPayload.model_validate(
            {
                "comment": "Strong collateral",
                "supporting_documents": [{"doc_url": "https://files.example.com/credit-report.pdf"}],
            }
        ),
    )

    documents = (
        await db.execute(select(LoanDocument).where(LoanDocument.loan_application_id == application.id))
    ).scalars().all()
    assert [document.document_type for document in documents] == ["credit_analysis_report"]
    events = await audit.read_events(db, application.id)
    assert events[-1].details["supporting_documents"] == 1


async def test_rejection_requires_reason_and_is_terminal(db, submit, machine, actors) -> None:
    application = await submit()
    application_id = application.id

    with pytest.raises(PreconditionFailed) as excinfo:
        await machine.transition(db, application_id, S.REJECTED, actors["member"])
    assert excinfo.value.code == "reason_required"

    application = await machine.transition(
        db, application_id, S.REJECTED, actors["member"], TransitionPayload(reason="Incomplete KYC")
    )
    assert application.rejection_reason == "Incomplete KYC"
    assert application.rejected_at is not None

    with pytest.raises(InvalidTransition):
        await machine.transition(db, application_id, S.ELIGIBILITY_CHECK, actors["super_admin"])
    assert (await _event_types(db, application_id))[-1] == AuditEventType.REJECTED.value


async def test_entrepreneur_can_cancel_own_application(db, submit, machine, actors) -> None:
    application = await submit()

    application = await machine.cancel(db, application.id, actors["entrepreneur"], "Found other financing")

    assert application.status == S.CANCELLED.value
    assert application.cancelled_at is not None
    events = await audit.read_events(db, application.id)
    assert events[-1].event_type == AuditEventType.CANCELLED.value
    assert events[-1].description == "Found other financing"


async def test_entrepreneur_cannot_touch_someone_elses_application(db, submit, machine, actors) -> None:
    application = await submit()

    with pytest.raises(Forbidden):
        await machine.cancel(db, application.id, actors["other_entrepreneur"])


async def test_entrepreneur_cannot_cancel_once_documents_are_generated(db, submit, drive, machine, actors) -> None:
    application = await submit()
    await drive(application.id, S.DOCUMENT_GENERATION.value)

    with pytest.raises(Forbidden):
        await machine.cancel(db, application.id, actors["entrepreneur"])


async def test_eligibility_exit_waits_for_document_verification(db, world, submit, drive, machine, actors) -> None:
    document = await add_personal_document(db, world["entrepreneur"])
    document_id = document.id
    await db.commit()
    application = await submit()
    application_id = application.id
    await drive(application_id, S.ELIGIBILITY_CHECK.value)

    with pytest.raises(PreconditionFailed) as excinfo:
        await machine.transition(db, application_id, S.CREDIT_ANALYSIS, actors["member"])
    assert excinfo.value.code == "documents_not_verified"
    assert excinfo.value.details["outstanding"] == [
        {"document_type": "personal", "document_id": str(document_id)}
    ]

    await machine.mutate(
        db,
        application_id,
        actors["member"],
        "loan_application.verify_document",
        lambda loaded: document_verification.record_verification(
            db,
            loaded,
            DocumentRef(kind=DocumentKind.PERSONAL, document_id=document_id),
            VerificationOutcome.APPROVED,
            actors["member"],
        ),
    )
    application = await machine.transition(db, application_id, S.CREDIT_ANALYSIS, actors["member"])
    assert application.status == S.CREDIT_ANALYSIS.value


async def test_signing_exit_requires_a_fully_signed_contract(db, submit, drive, machine, actors) -> None:
    application = await submit()
    await drive(application.id, S.SIGNING_EXECUTION.value)

    with pytest.raises(PreconditionFailed) as excinfo:
        await machine.transition(db, application.id, S.AWAITING_DISBURSEMENT, actors["admin"])
    assert excinfo.value.code == "contract_not_fully_signed"


async def test_outcome_timestamps_are_written_once(db, submit, drive, send_contract, machine, actors) -> None:
    application = await submit()
    await drive(application.id, S.SIGNING_EXECUTION.value)
    for signatory in await send_contract(application.id):
        await machine.record_signature(db, application.id, signatory.id, actors["member"])

    application = await machine.transition(db, application.id, S.APPROVED, actors["admin"])
    approved_at = application.approved_at
    assert approved_at is not None

    application = await machine.transition(db, application.id, S.DISBURSED, actors["admin"])
    assert application.approved_at == approved_at
    assert application.disbursed_at is not None
    assert allowed_transitions(application.status) == {}


async def test_commit_invalidates_cache_and_notifies(db, world, submit, machine, actors, cache, notifier) -> None:
    application = await submit()

    await machine.transition(
        db,
        application.id,
        S.ELIGIBILITY_CHECK,
        actors["member"],
        TransitionPayload(
            next_approver=NextApproverInput(next_approver_email="analyst@acme.example", next_approver_name="Ann")
        ),
    )
    assert cache.invalidated == [str(application.id)]
    assert notifier.templates() == ["loan_stage_review"]
    assert notifier.sent[0].recipient == "analyst@acme.example"
    assert notifier.sent[0].fields["review_url"].endswith(f"/loan-applications/{application.id}")

    await machine.transition(
        db, application.id, S.REJECTED, actors["member"], TransitionPayload(reason="Outside risk appetite")
    )
    assert notifier.templates()[-1] == "loan_application_rejected"
    assert notifier.sent[-1].recipient == world["entrepreneur"].email


async def test_failed_transition_does_not_notify(db, submit, machine, actors, cache, notifier) -> None:
    application = await submit()

    with pytest.raises(InvalidTransition):
        await machine.transition(db, application.id, S.DISBURSED, actors["admin"])

    assert cache.invalidated == []
    assert notifier.sent == []


class _UnreachableNotifier:
    def __init__(self) -> None:
        self.attempts = 0

    async def send(self, notification) -> None:
        self.attempts += 1
        raise RuntimeError("notification backend unavailable")


async def test_notification_failure_does_not_fail_committed_transition(db, submit, cache, actors) -> None:
    application = await submit()
    application_id = application.id
    notifier = _UnreachableNotifier()
    machine = ApplicationStateMachine(cache=cache, notifier=notifier)

    cancelled = await machine.cancel(db, application_id, actors["entrepreneur"], reason="Found other funding")

    assert cancelled.status == S.CANCELLED.value
    assert notifier.attempts == 1
    assert cache.invalidated == [str(application_id)]
    application = await reload(db, LoanApplication, application_id)
    assert application.status == S.CANCELLED.value


async def test_deleted_applications_are_not_found(db, submit, machine, actors) -> None:
    application = await submit()
    application_id = application.id
    await machine.mutate(
        db,
        application_id,
        actors["admin"],
        "loan_application.delete",
        lambda loaded: loan_applications.soft_delete_application(db, loaded, actors["admin"]),
    )

    with pytest.raises(NotFound):
        await machine.load(db, application_id)
    assert (await _event_types(db, application_id))[-1] == AuditEventType.DELETED.value
