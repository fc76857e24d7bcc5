from __future__ import annotations

import pytest

from conftest import add_business_document, add_personal_document, reload
from app.core.exceptions import ConflictingVersion, Forbidden, NotFound, PreconditionFailed, ValidationError
from app.db.transaction import unit_of_work
from app.models import LoanApplication, PersonalDocument
from app.schemas.audit import AuditEventType
from app.schemas.documents import DocumentKind, DocumentRef, VerificationOutcome
from app.schemas.loan import LoanApplicationStatus
from app.services import audit, document_verification


async def _verify(db, machine, actor, application_id, ref, outcome, **kwargs):
    return await machine.mutate(
        db,
        application_id,
        actor,
        "document.verify",
        lambda application: document_verification.record_verification(
            db, application, ref, outcome, actor, **kwargs
        ),
    )


@pytest.fixture
async def documents(db, world):
    passport = await add_personal_document(db, world["entrepreneur"], "passport")
    certificate = await add_business_document(db, world["business"])
    await db.commit()
    return {
        "passport": DocumentRef(kind=DocumentKind.PERSONAL, document_id=passport.id),
        "certificate": DocumentRef(kind=DocumentKind.BUSINESS, document_id=certificate.id),
    }


async def test_submission_seeds_pending_rows(db, documents, submit) -> None:
    application = await submit()

    rows = await document_verification.list_verifications(db, application.id)

    assert {(row.document_type, row.document_id) for row in rows} == {
        ("personal", documents["passport"].document_id),
        ("business", documents["certificate"].document_id),
    }
    assert {row.verification_status for row in rows} == {"pending"}
    assert await document_verification.seed_pending_verifications(db, application) == 0


async def test_seeding_picks_up_late_uploads(db, world, documents, submit) -> None:
    application = await submit()
    await add_business_document(db, world["business"], "kra_pin_certificate")

    assert await document_verification.seed_pending_verifications(db, application) == 1


async def test_approval_locks_source_document(db, documents, submit, machine, actors) -> None:
    application = await submit()
    ref = documents["passport"]

    row = await _verify(db, machine, actors["member"], application.id, ref, VerificationOutcome.APPROVED)

    assert row.verification_status == "approved"
    assert row.verified_by == actors["member"].user_id
    passport = await reload(db, PersonalDocument, ref.document_id)
    assert passport.is_verified
    assert passport.is_locked
    assert passport.verified_for_loan_application_id == application.id
    rows = await document_verification.list_verifications(db, application.id)
    assert len(rows) == 2
    event = (await audit.read_events(db, application.id))[-1]
    assert event.event_type == AuditEventType.DOCUMENT_VERIFIED_APPROVED.value
    assert event.details["doc_type"] == "passport"


async def test_rejection_needs_reason(db, documents, submit, machine, actors) -> None:
    application = await submit()
    application_id = application.id
    ref = documents["certificate"]

    with pytest.raises(ValidationError):
        await _verify(db, machine, actors["member"], application_id, ref, VerificationOutcome.REJECTED, rejection_reason="  ")

    row = await _verify(
        db,
        machine,
        actors["member"],
        application_id,
        ref,
        VerificationOutcome.REJECTED,
        rejection_reason="Certificate is illegible",
    )
    assert row.rejection_reason == "Certificate is illegible"
    event = (await audit.read_events(db, application_id))[-1]
    assert event.event_type == AuditEventType.DOCUMENT_VERIFIED_REJECTED.value
    assert event.description.endswith("Certificate is illegible")


async def test_entrepreneur_cannot_verify(db, documents, submit, machine, actors) -> None:
    application = await submit()

    with pytest.raises(Forbidden):
        await _verify(
            db, machine, actors["entrepreneur"], application.id, documents["passport"], VerificationOutcome.APPROVED
        )


async def test_document_verified_once_across_applications(db, documents, submit, machine, actors) -> None:
    first = await submit()
    second = await submit()
    second_id = second.id
    ref = documents["passport"]
    await _verify(db, machine, actors["member"], first.id, ref, VerificationOutcome.APPROVED)

    with pytest.raises(PreconditionFailed) as excinfo:
        await _verify(db, machine, actors["member"], second_id, ref, VerificationOutcome.APPROVED)

    assert excinfo.value.code == "document_already_verified"
    assert excinfo.value.status_code == 412


async def test_foreign_document_is_not_found(db, world, submit, machine, actors) -> None:
    stranger_document = await add_personal_document(db, world["other_entrepreneur"])
    await db.commit()
    application = await submit()
    ref = DocumentRef(kind=DocumentKind.PERSONAL, document_id=stranger_document.id)

    with pytest.raises(NotFound):
        await _verify(db, machine, actors["member"], application.id, ref, VerificationOutcome.APPROVED)


async def test_verification_limited_to_early_stages(db, documents, submit, drive, machine, actors) -> None:
    application = await submit()
    application_id = application.id
    for ref in documents.values():
        await _verify(db, machine, actors["member"], application_id, ref, VerificationOutcome.APPROVED)
    await drive(application_id, LoanApplicationStatus.CREDIT_ANALYSIS.value)

    with pytest.raises(PreconditionFailed) as excinfo:
        await _verify(
            db, machine, actors["member"], application_id, documents["passport"], VerificationOutcome.APPROVED
        )

    assert excinfo.value.code == "precondition_failed"


async def test_gate_lists_outstanding_documents(db, documents, submit, machine, actors) -> None:
    application = await submit()
    await _verify(db, machine, actors["member"], application.id, documents["passport"], VerificationOutcome.APPROVED)

    gate = await document_verification.check_stage(db, application, LoanApplicationStatus.ELIGIBILITY_CHECK)

    assert not gate.passed
    assert gate.outstanding == [documents["certificate"]]


async def test_rejected_document_keeps_gate_closed(db, documents, submit, machine, actors) -> None:
    application = await submit()
    application_id = application.id
    await _verify(db, machine, actors["member"], application_id, documents["passport"], VerificationOutcome.APPROVED)
    await _verify(
        db,
        machine,
        actors["member"],
        application_id,
        documents["certificate"],
        VerificationOutcome.REJECTED,
        rejection_reason="Expired",
    )
    application = await machine.load(db, application_id, actors["member"])

    gate = await document_verification.check_stage(db, application, LoanApplicationStatus.ELIGIBILITY_CHECK)

    assert [ref.document_id for ref in gate.outstanding] == [documents["certificate"].document_id]


async def test_ungated_stage_always_passes(db, documents, submit) -> None:
    application = await submit()

    gate = await document_verification.check_stage(db, application, LoanApplicationStatus.CREDIT_ANALYSIS)

    assert gate.passed


async def test_gate_passes_without_documents(db, submit) -> None:
    application = await submit()

    gate = await document_verification.check_stage(db, application, LoanApplicationStatus.ELIGIBILITY_CHECK)

    assert gate.passed


async def test_concurrent_verifications_conflict_instead_of_failing(
    session_factory, documents, submit, actors
) -> None:
    application = await submit()
    application_id = application.id

    async with session_factory() as first, session_factory() as second:
        mine = await first.get(LoanApplication, application_id)
        theirs = await second.get(LoanApplication, application_id)

        async with unit_of_work(first, "document.verify"):
            await document_verification.record_verification(
                first, mine, documents["passport"], VerificationOutcome.APPROVED, actors["member"]
            )
        with pytest.raises(ConflictingVersion):
            async with unit_of_work(second, "document.verify"):
                await document_verification.record_verification(
                    second, theirs, documents["certificate"], VerificationOutcome.APPROVED, actors["admin"]
                )

    async with session_factory() as fresh:
        rows = {
            row.document_id: row.verification_status
            for row in await document_verification.list_verifications(fresh, application_id)
        }
    assert rows[documents["passport"].document_id] == "approved"
    assert rows[documents["certificate"].document_id] == "pending"
