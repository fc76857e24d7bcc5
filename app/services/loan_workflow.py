"""Loan application lifecycle.

The edge table below is the single source of truth for which stage may follow
which, and which role is needed to move along each edge. Every accepted change
writes exactly one audit event inside the same transaction; cache
invalidation and notifications only run once the transaction has committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.actor import Actor
from app.core.exceptions import Forbidden, InvalidTransition, NotFound, PreconditionFailed
from app.core.permissions import Role
from app.core.settings import settings
from app.db.queries import not_deleted
from app.db.transaction import unit_of_work
from app.models.loan_application import LoanApplication
from app.models.loan_document import LoanDocument
from app.models.types import utcnow
from app.models.user import User
from app.schemas.audit import AuditEventType
from app.schemas.loan import (
    ContractStatus,
    LoanApplicationStatus,
    LoanDocumentType,
    TERMINAL_STATUSES,
    TransitionPayload,
)
from app.services import audit, contract_signing, document_verification, loan_versions
from app.services.cache import ApplicationCache, NullApplicationCache
from app.services.notifications import LoggingDispatcher, Notification, NotificationDispatcher, dispatch_all

logger = logging.getLogger(__name__)

S = LoanApplicationStatus
T = TypeVar("T")

_ENTREPRENEUR_CANCEL_STAGES = (
    S.KYC_KYB_VERIFICATION,
    S.ELIGIBILITY_CHECK,
    S.CREDIT_ANALYSIS,
    S.HEAD_OF_CREDIT_REVIEW,
    S.INTERNAL_APPROVAL_CEO,
    S.COMMITTEE_DECISION,
    S.SME_OFFER_APPROVAL,
)


def _with_side_exits(stage: LoanApplicationStatus, forward: dict[S, Role]) -> dict[S, Role]:
    cancel_role = Role.ENTREPRENEUR if stage in _ENTREPRENEUR_CANCEL_STAGES else Role.MEMBER
    return {**forward, S.REJECTED: Role.MEMBER, S.CANCELLED: cancel_role}


TRANSITIONS: dict[LoanApplicationStatus, dict[LoanApplicationStatus, Role]] = {
    S.KYC_KYB_VERIFICATION: _with_side_exits(S.KYC_KYB_VERIFICATION, {S.ELIGIBILITY_CHECK: Role.MEMBER}),
    S.ELIGIBILITY_CHECK: _with_side_exits(S.ELIGIBILITY_CHECK, {S.CREDIT_ANALYSIS: Role.MEMBER}),
    S.CREDIT_ANALYSIS: _with_side_exits(S.CREDIT_ANALYSIS, {S.HEAD_OF_CREDIT_REVIEW: Role.MEMBER}),
    S.HEAD_OF_CREDIT_REVIEW: _with_side_exits(
        S.HEAD_OF_CREDIT_REVIEW, {S.INTERNAL_APPROVAL_CEO: Role.ADMIN}
    ),
    S.INTERNAL_APPROVAL_CEO: _with_side_exits(
        S.INTERNAL_APPROVAL_CEO, {S.COMMITTEE_DECISION: Role.SUPER_ADMIN}
    ),
    S.COMMITTEE_DECISION: _with_side_exits(S.COMMITTEE_DECISION, {S.SME_OFFER_APPROVAL: Role.ADMIN}),
    S.SME_OFFER_APPROVAL: _with_side_exits(S.SME_OFFER_APPROVAL, {S.DOCUMENT_GENERATION: Role.MEMBER}),
    S.DOCUMENT_GENERATION: _with_side_exits(S.DOCUMENT_GENERATION, {S.SIGNING_EXECUTION: Role.MEMBER}),
    S.SIGNING_EXECUTION: _with_side_exits(S.SIGNING_EXECUTION, {S.AWAITING_DISBURSEMENT: Role.ADMIN}),
    S.AWAITING_DISBURSEMENT: _with_side_exits(
        S.AWAITING_DISBURSEMENT, {S.APPROVED: Role.ADMIN, S.DISBURSED: Role.ADMIN}
    ),
    S.APPROVED: _with_side_exits(S.APPROVED, {S.DISBURSED: Role.ADMIN}),
    S.REJECTED: {},
    S.CANCELLED: {},
    S.DISBURSED: {},
}

SIDE_EXITS = frozenset({S.REJECTED, S.CANCELLED})


@dataclass(frozen=True)
class StageCompletion:
    event_type: AuditEventType
    field_prefix: str | None = None
    comment_required: bool = False
    supporting_document_type: LoanDocumentType | None = None


# What leaving a review stage along its forward edge records.
STAGE_COMPLETIONS: dict[LoanApplicationStatus, StageCompletion] = {
    S.KYC_KYB_VERIFICATION: StageCompletion(AuditEventType.KYC_KYB_COMPLETED),
    S.ELIGIBILITY_CHECK: StageCompletion(
        AuditEventType.ELIGIBILITY_ASSESSMENT_COMPLETED,
        field_prefix="eligibility_assessment",
        supporting_document_type=LoanDocumentType.ELIGIBILITY_ASSESSMENT_SUPPORT,
    ),
    S.CREDIT_ANALYSIS: StageCompletion(
        AuditEventType.CREDIT_ASSESSMENT_COMPLETED,
        field_prefix="credit_assessment",
        comment_required=True,
        supporting_document_type=LoanDocumentType.CREDIT_ANALYSIS_REPORT,
    ),
    S.HEAD_OF_CREDIT_REVIEW: StageCompletion(
        AuditEventType.HEAD_OF_CREDIT_REVIEW_COMPLETED,
        field_prefix="head_of_credit_review",
        comment_required=True,
        supporting_document_type=LoanDocumentType.HEAD_OF_CREDIT_REVIEW_SUPPORT,
    ),
    S.INTERNAL_APPROVAL_CEO: StageCompletion(
        AuditEventType.INTERNAL_APPROVAL_CEO_COMPLETED,
        field_prefix="internal_approval_ceo",
        comment_required=True,
        supporting_document_type=LoanDocumentType.INTERNAL_APPROVAL_CEO_SUPPORT,
    ),
    S.COMMITTEE_DECISION: StageCompletion(AuditEventType.COMMITTEE_DECISION_COMPLETED),
}

# Written once, the first time the application reaches the stage.
TIMELINE_TIMESTAMPS: dict[LoanApplicationStatus, str] = {
    S.APPROVED: "approved_at",
    S.REJECTED: "rejected_at",
    S.DISBURSED: "disbursed_at",
    S.CANCELLED: "cancelled_at",
}

# Entrepreneur facing outcomes that warrant an email.
_ENTREPRENEUR_NOTIFY = frozenset({S.APPROVED, S.REJECTED, S.DISBURSED, S.CANCELLED, S.AWAITING_DISBURSEMENT})


def allowed_transitions(status: LoanApplicationStatus | str) -> dict[LoanApplicationStatus, Role]:
    return TRANSITIONS.get(LoanApplicationStatus(status), {})


def _stamp_once(application: LoanApplication, field_name: str, now: datetime) -> None:
    if getattr(application, field_name) is None:
        setattr(application, field_name, now)


def _required_input(message: str, field_name: str, stage: LoanApplicationStatus) -> PreconditionFailed:
    return PreconditionFailed(
        message,
        code=f"{field_name}_required",
        details={"field": field_name, "current_status": stage.value},
    )


class ApplicationStateMachine:
    def __init__(
        self,
        cache: ApplicationCache | None = None,
        notifier: NotificationDispatcher | None = None,
    ) -> None:
        self.cache = cache or NullApplicationCache()
        self.notifier = notifier or LoggingDispatcher()

    # --- loading -----------------------------------------------------------

    async def load(
        self, db: AsyncSession, application_id: UUID, actor: Actor | None = None
    ) -> LoanApplication:
        stmt = select(LoanApplication).where(
            LoanApplication.id == application_id, not_deleted(LoanApplication)
        )
        application = (await db.execute(stmt)).scalar_one_or_none()
        if application is None:
            raise NotFound("Loan application not found", details={"application_id": str(application_id)})
        if actor is not None and not actor.is_staff and application.entrepreneur_id != actor.user_id:
            raise Forbidden(
                "You can only access your own loan applications",
                details={"application_id": str(application_id)},
            )
        return application

    # --- guards ------------------------------------------------------------

    def _check_edge(
        self,
        application: LoanApplication,
        current: LoanApplicationStatus,
        requested: LoanApplicationStatus,
        actor: Actor,
    ) -> None:
        if current in TERMINAL_STATUSES:
            raise InvalidTransition(
                f"Application is {current.value} and accepts no further transitions",
                details={"current_status": current.value, "requested_status": requested.value},
            )
        edges = allowed_transitions(current)
        if requested not in edges:
            raise InvalidTransition(
                f"Cannot move application from {current.value} to {requested.value}",
                details={
                    "current_status": current.value,
                    "requested_status": requested.value,
                    "allowed": sorted(item.value for item in edges),
                },
            )
        minimum = edges[requested]
        if not actor.at_least(minimum):
            raise Forbidden(
                f"{minimum.value} role required to move to {requested.value}",
                details={"required_role": minimum.value, "role": actor.role.value},
            )
        if not actor.is_staff and application.entrepreneur_id != actor.user_id:
            raise Forbidden("You can only cancel your own loan applications")

    async def _check_inputs(
        self,
        db: AsyncSession,
        application: LoanApplication,
        current: LoanApplicationStatus,
        requested: LoanApplicationStatus,
        payload: TransitionPayload,
    ) -> None:
        if requested == S.REJECTED:
            if not payload.reason:
                raise _required_input("A reason is required to reject an application", "reason", current)
            return
        if requested == S.CANCELLED:
            return

        completion = STAGE_COMPLETIONS.get(current)
        if completion is not None and completion.comment_required and not payload.comment:
            raise _required_input(
                f"A review comment is required to complete {current.value}", "comment", current
            )
        if current == S.COMMITTEE_DECISION and not payload.term_sheet_url:
            raise _required_input(
                "A term sheet is required to complete the committee decision", "term_sheet_url", current
            )
        if current == S.SIGNING_EXECUTION and application.contract_status != ContractStatus.CONTRACT_FULLY_SIGNED.value:
            raise PreconditionFailed(
                "The contract must be fully signed before disbursement",
                code="contract_not_fully_signed",
                details={"contract_status": application.contract_status},
            )

        gate = await document_verification.check_stage(db, application, current)
        if not gate.passed:
            raise PreconditionFailed(
                "All documents must be verified before leaving this stage",
                code="documents_not_verified",
                details={
                    "current_status": current.value,
                    "outstanding": [
                        {"document_type": ref.kind.value, "document_id": str(ref.document_id)}
                        for ref in gate.outstanding
                    ],
                },
            )

    # --- writes ------------------------------------------------------------

    def _record_completion(
        self,
        db: AsyncSession,
        application: LoanApplication,
        current: LoanApplicationStatus,
        actor: Actor,
        payload: TransitionPayload,
        now: datetime,
    ) -> AuditEventType | None:
        completion = STAGE_COMPLETIONS.get(current)
        if completion is None:
            return None
        if completion.field_prefix:
            setattr(application, f"{completion.field_prefix}_comment", payload.comment)
            setattr(application, f"{completion.field_prefix}_completed_at", now)
            setattr(application, f"{completion.field_prefix}_completed_by", actor.user_id)
        if completion.supporting_document_type is not None:
            for item in payload.supporting_documents:
                db.add(
                    LoanDocument(
                        loan_application_id=application.id,
                        document_type=completion.supporting_document_type.value,
                        doc_url=item.doc_url,
                        doc_name=item.doc_name,
                        notes=item.notes,
                        uploaded_by=actor.user_id,
                    )
                )
        if current == S.COMMITTEE_DECISION:
            application.term_sheet_url = payload.term_sheet_url
            application.term_sheet_uploaded_at = now
            application.term_sheet_uploaded_by = actor.user_id
            db.add(
                LoanDocument(
                    loan_application_id=application.id,
                    document_type=LoanDocumentType.TERM_SHEET.value,
                    doc_url=payload.term_sheet_url,
                    doc_name="Term sheet",
                    uploaded_by=actor.user_id,
                )
            )
        return completion.event_type

    async def _write(
        self,
        db: AsyncSession,
        application: LoanApplication,
        requested: LoanApplicationStatus,
        actor: Actor,
        *,
        event_type: AuditEventType,
        description: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        previous = application.status
        now = utcnow()
        application.status = requested.value
        if requested in TIMELINE_TIMESTAMPS:
            _stamp_once(application, TIMELINE_TIMESTAMPS[requested], now)
        if requested == S.SIGNING_EXECUTION:
            contract_signing.initialise(application)
        application.last_updated_by = actor.user_id
        application.last_updated_at = now
        await db.flush()
        await audit.append_event(
            db,
            application_id=application.id,
            event_type=event_type,
            status=requested.value,
            actor=actor,
            previous_status=previous,
            new_status=requested.value,
            description=description,
            details=details,
        )
        logger.info(
            "Loan application %s moved %s -> %s by %s",
            application.loan_id,
            previous,
            requested.value,
            actor.user_id,
        )

    async def apply_transition(
        self,
        db: AsyncSession,
        application: LoanApplication,
        requested: LoanApplicationStatus | str,
        actor: Actor,
        payload: TransitionPayload | None = None,
    ) -> list[Notification]:
        """Validate and write one transition inside the caller's transaction."""
        payload = payload or TransitionPayload()
        requested = LoanApplicationStatus(requested)
        current = LoanApplicationStatus(application.status)
        self._check_edge(application, current, requested, actor)
        await self._check_inputs(db, application, current, requested, payload)

        now = utcnow()
        event_type: AuditEventType | None = None
        details: dict[str, Any] = {}
        description = payload.comment
        if requested == S.REJECTED:
            application.rejection_reason = payload.reason
            description = payload.reason
        elif requested == S.CANCELLED:
            description = payload.reason
        else:
            event_type = self._record_completion(db, application, current, actor, payload, now)
            if current == S.COMMITTEE_DECISION:
                details["term_sheet_url"] = payload.term_sheet_url
            if current == S.SME_OFFER_APPROVAL and payload.accepted_version_id is not None:
                kwargs: dict[str, Any] = {"record_audit": False}
                if "expected_active_version_id" in payload.model_fields_set:
                    kwargs["expected_active_version_id"] = payload.expected_active_version_id
                version = await loan_versions.activate(
                    db, application, payload.accepted_version_id, actor, **kwargs
                )
                details["accepted_version_id"] = str(version.id)
        if payload.supporting_documents and requested not in SIDE_EXITS:
            details["supporting_documents"] = len(payload.supporting_documents)

        await self._write(
            db,
            application,
            requested,
            actor,
            event_type=event_type or audit.event_type_for_status(requested.value),
            description=description,
            details=details or None,
        )
        return await self._notifications_for(db, application, requested, payload)

    async def _notifications_for(
        self,
        db: AsyncSession,
        application: LoanApplication,
        requested: LoanApplicationStatus,
        payload: TransitionPayload,
    ) -> list[Notification]:
        notifications: list[Notification] = []
        fields = {"loan_id": application.loan_id, "status": requested.value}
        if payload.next_approver is not None:
            notifications.append(
                Notification(
                    recipient=payload.next_approver.next_approver_email,
                    template_id="loan_stage_review",
                    fields={
                        **fields,
                        "approver_name": payload.next_approver.next_approver_name or "",
                        "review_url": f"{settings.admin_portal_url}/loan-applications/{application.id}",
                    },
                )
            )
        if requested in _ENTREPRENEUR_NOTIFY:
            entrepreneur = await db.get(User, application.entrepreneur_id)
            if entrepreneur is not None:
                notifications.append(
                    Notification(
                        recipient=entrepreneur.email,
                        template_id=f"loan_application_{requested.value}",
                        fields={
                            **fields,
                            "name": entrepreneur.display_name,
                            "details_url": f"{settings.app_url}/loans/{application.id}",
                        },
                    )
                )
        return notifications

    async def _after_commit(self, application_id: UUID, notifications: list[Notification] | None = None) -> None:
        await self.cache.invalidate_application(application_id)
        if notifications:
            await dispatch_all(self.notifier, notifications)

    # --- committed operations ------------------------------------------------

    async def transition(
        self,
        db: AsyncSession,
        application_id: UUID,
        requested: LoanApplicationStatus | str,
        actor: Actor,
        payload: TransitionPayload | None = None,
    ) -> LoanApplication:
        requested = LoanApplicationStatus(requested)
        async with unit_of_work(
            db, "loan_application.transition", application_id=application_id, requested=requested.value
        ):
            application = await self.load(db, application_id, actor)
            notifications = await self.apply_transition(db, application, requested, actor, payload)
        await self._after_commit(application.id, notifications)
        return application

    async def cancel(
        self, db: AsyncSession, application_id: UUID, actor: Actor, reason: str | None = None
    ) -> LoanApplication:
        return await self.transition(
            db, application_id, S.CANCELLED, actor, TransitionPayload(reason=reason)
        )

    async def mutate(
        self,
        db: AsyncSession,
        application_id: UUID,
        actor: Actor | None,
        operation: str,
        action: Callable[[LoanApplication], Awaitable[T]],
    ) -> T:
        """Run ``action`` against the loaded application as one committed unit."""
        async with unit_of_work(db, operation, application_id=application_id):
            application = await self.load(db, application_id, actor)
            result = await action(application)
        await self._after_commit(application_id)
        return result

    async def record_signature(
        self,
        db: AsyncSession,
        application_id: UUID,
        signatory_id: UUID,
        actor: Actor,
        signed_at: datetime | None = None,
    ) -> contract_signing.SignatureOutcome:
        """Record one signature; the last one moves the application to awaiting_disbursement."""
        if not actor.is_staff:
            raise Forbidden("Only staff may record contract signatures")
        notifications: list[Notification] = []
        async with unit_of_work(
            db, "contract.signature", application_id=application_id, signatory_id=signatory_id
        ):
            application = await self.load(db, application_id, actor)
            outcome = await contract_signing.advance(db, application, signatory_id, signed_at, actor)
            details = {
                "signatory_id": str(outcome.signatory.id),
                "category": outcome.signatory.category,
                "contract_status": outcome.contract_status.value if outcome.contract_status else None,
            }
            if outcome.changed and outcome.fully_signed:
                await self._write(
                    db,
                    application,
                    S.AWAITING_DISBURSEMENT,
                    actor,
                    event_type=AuditEventType.CONTRACT_FULLY_SIGNED,
                    details=details,
                )
                notifications = await self._notifications_for(
                    db, application, S.AWAITING_DISBURSEMENT, TransitionPayload()
                )
            elif outcome.changed:
                await audit.append_event(
                    db,
                    application_id=application.id,
                    event_type=AuditEventType.CONTRACT_SIGNED_BY_SIGNER,
                    status=application.status,
                    actor=actor,
                    description=f"Contract signed by {outcome.signatory.full_name}",
                    details=details,
                )
        if outcome.changed:
            await self._after_commit(application_id, notifications)
        return outcome
