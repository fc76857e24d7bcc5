from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import FakeApplicationCache, reload
from app.core.exceptions import ConflictingVersion, Forbidden, InvalidTransition, NotFound
from app.db.transaction import unit_of_work
from app.models import LoanApplication
from app.schemas.audit import AuditEventType
from app.schemas.loan import LoanApplicationStatus, LoanTermsInput, TransitionPayload
from app.services import audit, loan_applications, loan_versions


def _counter_terms() -> LoanTermsInput:
    return LoanTermsInput(
        funding_amount=Decimal("180000.00"),
        repayment_period=9,
        interest_rate=Decimal("16.0"),
    )


async def _propose(db, machine, actor, application_id):
    return await machine.mutate(
        db,
        application_id,
        actor,
        "loan_application.counter_offer",
        lambda application: loan_versions.create_counter_offer(db, application, _counter_terms(), actor),
    )


async def _activate(db, machine, actor, application_id, version_id, **kwargs):
    return await machine.mutate(
        db,
        application_id,
        actor,
        "loan_application.version_activate",
        lambda application: loan_versions.activate(db, application, version_id, actor, **kwargs),
    )


async def test_submission_creates_active_original_version(db, submit) -> None:
    application = await submit()

    versions = await loan_versions.list_versions(db, application.id)

    assert len(versions) == 1
    assert versions[0].status == "original"
    assert versions[0].funding_amount == Decimal("250000.00")
    assert application.active_version_id == versions[0].id


async def test_counter_offer_leaves_active_pointer_alone(db, submit, machine, actors) -> None:
    application = await submit()
    original_id = application.active_version_id

    offer = await _propose(db, machine, actors["member"], application.id)

    application = await reload(db, LoanApplication, application.id)
    assert application.active_version_id == original_id
    assert offer.status == "counter_offer"
    assert offer.repayment_period == 9
    events = await audit.read_events(db, application.id)
    assert events[-1].event_type == AuditEventType.COUNTER_OFFER_PROPOSED.value
    assert events[-1].details["version_id"] == str(offer.id)


async def test_entrepreneur_cannot_propose_counter_offer(db, submit, machine, actors) -> None:
    application = await submit()

    with pytest.raises(Forbidden):
        await _propose(db, machine, actors["entrepreneur"], application.id)


async def test_activation_moves_pointer_and_audits(db, submit, machine, actors) -> None:
    application = await submit()
    original_id = application.active_version_id
    offer = await _propose(db, machine, actors["member"], application.id)

    await _activate(db, machine, actors["member"], application.id, offer.id)

    application = await reload(db, LoanApplication, application.id)
    assert application.active_version_id == offer.id
    event = (await audit.read_events(db, application.id))[-1]
    assert event.event_type == AuditEventType.VERSION_ACTIVATED.value
    assert event.details["previous_version_id"] == str(original_id)
    assert event.details["version_status"] == "counter_offer"


async def test_activation_updates_headline_terms(db, submit, machine, actors) -> None:
    application = await submit()
    application_id = application.id
    offer = await _propose(db, machine, actors["member"], application_id)

    await _activate(db, machine, actors["member"], application_id, offer.id)

    dto = await loan_applications.get_application(
        db, FakeApplicationCache(), application_id, actors["entrepreneur"]
    )
    assert dto.funding_amount == Decimal("180000.00")
    assert dto.interest_rate == Decimal("16.0")
    assert dto.repayment_period == 9
    view = loan_applications.to_self_dto(dto)
    assert view.active_version_id == offer.id
    assert view.funding_amount == Decimal("180000.00")


async def test_concurrent_activation_has_one_winner(db, session_factory, submit, machine, actors) -> None:
    application = await submit()
    application_id = application.id
    original_id = application.active_version_id
    first_offer = await _propose(db, machine, actors["member"], application_id)
    second_offer = await _propose(db, machine, actors["admin"], application_id)

    async with session_factory() as first, session_factory() as second:
        mine = await first.get(LoanApplication, application_id)
        theirs = await second.get(LoanApplication, application_id)

        async with unit_of_work(first, "loan_application.version_activate"):
            await loan_versions.activate(
                first, mine, first_offer.id, actors["member"], expected_active_version_id=original_id
            )
        with pytest.raises(ConflictingVersion):
            async with unit_of_work(second, "loan_application.version_activate"):
                await loan_versions.activate(
                    second, theirs, second_offer.id, actors["admin"], expected_active_version_id=original_id
                )

    application = await reload(db, LoanApplication, application_id)
    assert application.active_version_id == first_offer.id
    assert application.funding_amount == first_offer.funding_amount


async def test_concurrent_counter_offers_conflict_instead_of_failing(
    db, session_factory, submit, actors
) -> None:
    application = await submit()
    application_id = application.id
    before = len(await audit.read_events(db, application_id))

    async with session_factory() as first, session_factory() as second:
        mine = await first.get(LoanApplication, application_id)
        theirs = await second.get(LoanApplication, application_id)

        async with unit_of_work(first, "loan_application.counter_offer"):
            await loan_versions.create_counter_offer(first, mine, _counter_terms(), actors["member"])
        with pytest.raises(ConflictingVersion):
            async with unit_of_work(second, "loan_application.counter_offer"):
                await loan_versions.create_counter_offer(second, theirs, _counter_terms(), actors["admin"])

    events = await audit.read_events(db, application_id)
    assert len(events) == before + 1
    assert len(await loan_versions.list_versions(db, application_id)) == 2


async def test_activating_current_version_changes_nothing(db, submit, machine, actors) -> None:
    application = await submit()
    before = len(await audit.read_events(db, application.id))

    await _activate(db, machine, actors["member"], application.id, application.active_version_id)

    assert len(await audit.read_events(db, application.id)) == before


async def test_stale_expected_pointer_is_rejected(db, submit, machine, actors) -> None:
    application = await submit()
    application_id = application.id
    original_id = application.active_version_id
    first = await _propose(db, machine, actors["member"], application_id)
    second = await _propose(db, machine, actors["admin"], application_id)
    first_id, second_id = first.id, second.id
    await _activate(db, machine, actors["member"], application_id, first_id, expected_active_version_id=original_id)

    with pytest.raises(ConflictingVersion) as excinfo:
        await _activate(
            db, machine, actors["admin"], application_id, second_id, expected_active_version_id=original_id
        )

    assert excinfo.value.code == "concurrent_update"
    application = await reload(db, LoanApplication, application_id)
    assert application.active_version_id == first_id


async def test_unknown_version_is_not_found(db, submit, machine, actors, world) -> None:
    application = await submit()

    with pytest.raises(NotFound):
        await _activate(db, machine, actors["member"], application.id, world["product"].id)


async def test_counter_offers_close_after_offer_acceptance(db, submit, drive, machine, actors) -> None:
    application = await submit()
    application_id = application.id
    await drive(application_id, LoanApplicationStatus.DOCUMENT_GENERATION.value)

    with pytest.raises(InvalidTransition) as excinfo:
        await _propose(db, machine, actors["member"], application_id)

    assert excinfo.value.code == "counter_offer_not_allowed"


async def test_accepting_offer_activates_version_with_one_event(db, submit, drive, machine, actors) -> None:
    application = await submit()
    application_id = application.id
    offer = await _propose(db, machine, actors["member"], application_id)
    offer_id = offer.id
    await drive(application_id, LoanApplicationStatus.SME_OFFER_APPROVAL.value)
    before = len(await audit.read_events(db, application_id))

    application = await machine.transition(
        db,
        application_id,
        LoanApplicationStatus.DOCUMENT_GENERATION,
        actors["member"],
        TransitionPayload(accepted_version_id=offer_id),
    )

    assert application.active_version_id == offer_id
    assert application.funding_amount == Decimal("180000.00")
    assert application.repayment_period == 9
    events = (await audit.read_events(db, application_id))[before:]
    assert len(events) == 1
    assert events[0].new_status == LoanApplicationStatus.DOCUMENT_GENERATION.value
    assert events[0].details["accepted_version_id"] == str(offer_id)
