from __future__ import annotations

from decimal import Decimal
from uuid import UUID

import pytest

from conftest import add_personal_document
from app.core.actor import Actor, RequestMeta
from app.core.exceptions import ConflictingVersion
from app.core.permissions import Role
from app.db.transaction import unit_of_work
from app.models import LoanApplicationAuditEvent
from app.schemas.audit import AuditEventType, PublicTimelineEventType
from app.schemas.documents import DocumentKind, DocumentRef, VerificationOutcome
from app.schemas.loan import LoanApplicationStatus, TransitionPayload
from app.services import audit, document_verification


def test_diff_values_reports_nested_paths() -> None:
    before = {"name": "Working Capital", "limits": {"min": 10, "max": 100}}
    after = {"name": "Working Capital", "limits": {"min": 10, "max": 250}, "currency": "KES"}

    changes = audit.diff_values(before, after)

    assert changes == {
        "currency": {"from": None, "to": "KES"},
        "limits.max": {"from": 100, "to": 250},
    }


def test_build_summary_truncates_long_change_lists() -> None:
    changes = {name: {"from": 1, "to": 2} for name in ("a", "b", "c", "d")}

    assert audit.build_summary("edited", {}) == "edited"
    assert audit.build_summary("edited", changes) == "edited: a, b, c..."


def test_serialize_for_audit_handles_domain_values() -> None:
    value = {"amount": Decimal("10.50"), "id": UUID("12345678-1234-5678-1234-567812345678"), "stage": Role.ADMIN}

    assert audit.serialize_for_audit(value) == {
        "amount": "10.50",
        "id": "12345678-1234-5678-1234-567812345678",
        "stage": "admin",
    }


def test_event_titles() -> None:
    assert audit.event_title(AuditEventType.REVIEW_IN_PROGRESS, "credit_analysis") == "Credit analysis in progress"
    assert audit.event_title(AuditEventType.STATUS_CHANGED, "on_hold") == "Status changed to on hold"
    assert audit.event_title(AuditEventType.SUBMITTED) == "Loan submitted successfully"
    assert audit.event_type_for_status("signing_execution") == AuditEventType.REVIEW_IN_PROGRESS
    assert audit.event_type_for_status("disbursed") == AuditEventType.DISBURSED


def test_internal_events_are_hidden_from_entrepreneurs() -> None:
    assert audit.public_event_type(AuditEventType.CREDIT_ASSESSMENT_COMPLETED) is None
    assert audit.public_event_type(AuditEventType.DOCUMENT_VERIFIED_APPROVED) is None
    assert audit.public_event_type(AuditEventType.CONTRACT_SIGNED_BY_SIGNER) == PublicTimelineEventType.REVIEW_IN_PROGRESS
    assert audit.public_event_type(AuditEventType.CONTRACT_FULLY_SIGNED) == PublicTimelineEventType.AWAITING_DISBURSEMENT
    assert audit.public_event_type(AuditEventType.SUBMITTED) == PublicTimelineEventType.SUBMITTED


async def test_append_event_numbers_and_attributes(db, submit, actors) -> None:
    application = await submit()
    actor = Actor(
        user_id=actors["member"].user_id,
        role=Role.MEMBER,
        request=RequestMeta(ip_address="10.0.0.7", user_agent="pytest"),
    )

    event = await audit.append_event(
        db,
        application_id=application.id,
        event_type=AuditEventType.STATUS_CHANGED,
        status=application.status,
        actor=actor,
        details={"note": "manual", "skipped": None},
    )

    assert event.sequence == 2
    assert event.performed_by_id == actor.user_id
    assert event.ip_address == "10.0.0.7"
    assert event.user_agent == "pytest"
    assert event.details == {"note": "manual"}
    assert event.title == "Status changed to kyc kyb verification"


async def test_read_events_filters_by_type(db, submit, drive) -> None:
    application = await submit()
    await drive(application.id, LoanApplicationStatus.CREDIT_ANALYSIS.value)

    events = await audit.read_events(
        db,
        application.id,
        event_types=[AuditEventType.SUBMITTED, "eligibility_assessment_completed"],
    )

    assert [event.event_type for event in events] == ["submitted", "eligibility_assessment_completed"]


async def test_public_timeline_collapses_review_stages(
    db, world, submit, drive, machine, actors, send_contract
) -> None:
    document = await add_personal_document(db, world["entrepreneur"])
    await db.commit()
    ref = DocumentRef(kind=DocumentKind.PERSONAL, document_id=document.id)
    application = await submit()
    application_id = application.id
    await machine.mutate(
        db,
        application_id,
        actors["member"],
        "document.verify",
        lambda loaded: document_verification.record_verification(
            db, loaded, ref, VerificationOutcome.APPROVED, actors["member"]
        ),
    )
    await drive(application_id, LoanApplicationStatus.SIGNING_EXECUTION.value)
    await send_contract(application_id)
    await machine.transition(
        db,
        application_id,
        LoanApplicationStatus.REJECTED,
        actors["admin"],
        TransitionPayload(reason="Guarantor withdrew"),
    )

    timeline = await audit.public_timeline(db, application_id)

    # Stage completions, verifications and the contract upload steps stay internal or collapse.
    assert [entry.event_type for entry in timeline] == [
        PublicTimelineEventType.SUBMITTED,
        PublicTimelineEventType.REVIEW_IN_PROGRESS,
        PublicTimelineEventType.REVIEW_IN_PROGRESS,
        PublicTimelineEventType.REVIEW_IN_PROGRESS,
        PublicTimelineEventType.REVIEW_IN_PROGRESS,
        PublicTimelineEventType.REJECTED,
    ]
    assert {entry.title for entry in timeline[1:-1]} == {"Under review"}
    assert timeline[0].title == "Loan submitted successfully"
    assert timeline[-1].title == "Loan application rejected"
    assert all(entry.description is None for entry in timeline)
    sequences = [entry.sequence for entry in timeline]
    assert sequences == sorted(sequences)


async def test_duplicate_sequence_surfaces_as_conflict(db, submit) -> None:
    application = await submit()
    application_id = application.id

    with pytest.raises(ConflictingVersion):
        async with unit_of_work(db, "audit.append", application_id=application_id):
            db.add(
                LoanApplicationAuditEvent(
                    loan_application_id=application_id,
                    sequence=1,
                    event_type=AuditEventType.STATUS_CHANGED.value,
                    title="Status changed",
                    status=LoanApplicationStatus.KYC_KYB_VERIFICATION.value,
                )
            )
            await db.flush()

    events = await audit.read_events(db, application_id)
    assert [event.sequence for event in events] == [1]
