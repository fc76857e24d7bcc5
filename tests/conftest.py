"""Shared fixtures for the lending core test suite.

Provides:
- Environment defaults (must be set before any app import)
- A throwaway sqlite database per test, created from the ORM metadata
- Factories for organizations, users, businesses, documents, products and applications
- In-memory cache and notifier fakes with the same interface as the real ones
- An httpx client bound to the ASGI app with db and actor overrides
"""

from __future__ import annotations

import os

# Environment defaults: Settings is instantiated on import.
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./lending-test.db")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_STORAGE_URI", "memory://")
os.environ.setdefault("APPLICATION_CACHE_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from decimal import Decimal
from typing import Any, AsyncIterator
from uuid import UUID, uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.api import deps
from app.core.actor import Actor
from app.core.permissions import Role
from app.db.base import Base
from app.db.session import get_db
from app.main import app
from app.models import (
    BusinessDocument,
    BusinessProfile,
    LoanApplication,
    LoanProduct,
    Organization,
    PersonalDocument,
    User,
)
from app.schemas.loan import ContractRegisterRequest, LoanApplicationCreate, SignatoryInput, TransitionPayload
from app.services import contract_signing, loan_applications
from app.services.loan_workflow import ApplicationStateMachine
from app.services.notifications import Notification


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeApplicationCache:
    """Dict-backed stand-in for RedisApplicationCache."""

    def __init__(self) -> None:
        self.entries: dict[str, dict[str, Any]] = {}
        self.invalidated: list[str] = []

    async def get(self, key: str) -> dict[str, Any] | None:
        return self.entries.get(key)

    async def set(self, key: str, value: dict[str, Any]) -> None:
        self.entries[key] = value

    async def invalidate_application(self, application_id: UUID | str) -> None:
        self.invalidated.append(str(application_id))
        for key in [key for key in self.entries if str(application_id) in key]:
            del self.entries[key]


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)

    def templates(self) -> list[str]:
        return [item.template_id for item in self.sent]


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'lending.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------


def make_actor(user: User, role: Role | None = None) -> Actor:
    return Actor(
        user_id=user.id,
        role=role or Role(user.role),
        email=user.email,
        display_name=user.display_name,
    )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


async def make_user(db: AsyncSession, *, role: str = "entrepreneur", **overrides: Any) -> User:
    suffix = uuid4().hex[:8]
    defaults: dict[str, Any] = dict(
        external_subject_id=f"idp|{suffix}",
        email=f"{role}-{suffix}@example.com",
        full_name=f"{role.replace('_', ' ').title()} {suffix}",
        role=role,
        is_active=True,
    )
    defaults.update(overrides)
    user = User(**defaults)
    db.add(user)
    await db.flush()
    return user


async def make_product(
    db: AsyncSession, organization: Organization, creator: User, **overrides: Any
) -> LoanProduct:
    defaults: dict[str, Any] = dict(
        organization_id=organization.id,
        name="SME Working Capital",
        currency="KES",
        min_amount=Decimal("10000.00"),
        max_amount=Decimal("5000000.00"),
        min_term=3,
        max_term=36,
        term_unit="months",
        interest_rate=Decimal("14.5000"),
        rate_period="per_year",
        amortization_method="reducing_balance",
        repayment_frequency="monthly",
        interest_collection_method="installments",
        interest_recognition_criteria="when_accrued",
        status="active",
        version=2,
        created_by=creator.id,
        fees=[],
    )
    defaults.update(overrides)
    product = LoanProduct(**defaults)
    db.add(product)
    await db.flush()
    return product


async def add_personal_document(db: AsyncSession, user: User, doc_type: str = "national_id") -> PersonalDocument:
    document = PersonalDocument(user_id=user.id, doc_type=doc_type, doc_url=f"https://files.example.com/{doc_type}.pdf")
    db.add(document)
    await db.flush()
    return document


async def add_business_document(
    db: AsyncSession, business: BusinessProfile, doc_type: str = "certificate_of_incorporation", **overrides: Any
) -> BusinessDocument:
    document = BusinessDocument(
        business_id=business.id,
        doc_type=doc_type,
        doc_url=f"https://files.example.com/{doc_type}.pdf",
        **overrides,
    )
    db.add(document)
    await db.flush()
    return document


@pytest.fixture
async def world(db) -> dict[str, Any]:
    """One organization with an entrepreneur, a business, staff at every rank and an active product."""
    organization = Organization(name="Acme Capital", slug=f"acme-{uuid4().hex[:6]}")
    db.add(organization)
    await db.flush()
    entrepreneur = await make_user(db, role="entrepreneur")
    other_entrepreneur = await make_user(db, role="entrepreneur")
    member = await make_user(db, role="member", organization_id=organization.id)
    admin = await make_user(db, role="admin", organization_id=organization.id)
    super_admin = await make_user(db, role="super_admin", organization_id=organization.id)
    business = BusinessProfile(entrepreneur_id=entrepreneur.id, name="Mama Mboga Ltd", country="KE")
    db.add(business)
    await db.flush()
    product = await make_product(db, organization, admin)
    await db.commit()
    return {
        "organization": organization,
        "entrepreneur": entrepreneur,
        "other_entrepreneur": other_entrepreneur,
        "member": member,
        "admin": admin,
        "super_admin": super_admin,
        "business": business,
        "product": product,
    }


@pytest.fixture
def actors(world) -> dict[str, Actor]:
    return {
        name: make_actor(world[name])
        for name in ("entrepreneur", "other_entrepreneur", "member", "admin", "super_admin")
    }


def application_payload(world: dict[str, Any], **overrides: Any) -> LoanApplicationCreate:
    data: dict[str, Any] = dict(
        business_id=world["business"].id,
        entrepreneur_id=world["entrepreneur"].id,
        loan_product_id=world["product"].id,
        funding_amount=Decimal("250000.00"),
        funding_currency="kes",
        repayment_period=12,
        intended_use_of_funds="inventory",
        interest_rate=Decimal("14.5"),
    )
    data.update(overrides)
    return LoanApplicationCreate(**data)


@pytest.fixture
def submit(db, world, actors):
    async def _submit(**overrides: Any) -> LoanApplication:
        application = await loan_applications.create_application(
            db, actors["entrepreneur"], application_payload(world, **overrides)
        )
        await db.commit()
        return application

    return _submit


@pytest.fixture
def cache() -> FakeApplicationCache:
    return FakeApplicationCache()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def machine(cache, notifier) -> ApplicationStateMachine:
    return ApplicationStateMachine(cache=cache, notifier=notifier)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest.fixture
def api(session_factory, machine, cache):
    """Build an AsyncClient that acts as ``actor``; the app shares the test database."""
    original_state = (app.state.state_machine, app.state.application_cache)

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.state.state_machine = machine
    app.state.application_cache = cache

    def _client(actor: Actor) -> AsyncClient:
        async def _get_actor() -> Actor:
            return actor

        app.dependency_overrides[deps.get_actor] = _get_actor
        return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")

    yield _client

    app.dependency_overrides.clear()
    app.state.state_machine, app.state.application_cache = original_state


# ---------------------------------------------------------------------------
# Workflow helpers
# ---------------------------------------------------------------------------

TERM_SHEET_URL = "https://files.example.com/term-sheet.pdf"

# (target status, acting role, stage inputs) along the forward path from kyc_kyb_verification.
FORWARD_STEPS: list[tuple[str, str, dict[str, Any]]] = [
    ("eligibility_check", "member", {}),
    ("credit_analysis", "member", {"comment": "Eligible for the product"}),
    ("head_of_credit_review", "member", {"comment": "Cash flow supports the facility"}),
    ("internal_approval_ceo", "admin", {"comment": "Recommended for approval"}),
    ("committee_decision", "super_admin", {"comment": "Approved internally"}),
    ("sme_offer_approval", "admin", {"term_sheet_url": TERM_SHEET_URL}),
    ("document_generation", "member", {}),
    ("signing_execution", "member", {}),
]


async def reload(db: AsyncSession, model: Any, object_id: UUID) -> Any:
    stmt = select(model).where(model.id == object_id).execution_options(populate_existing=True)
    return (await db.execute(stmt)).scalar_one()


@pytest.fixture
def drive(db, machine, actors):
    """Walk an application forward until it reaches ``target``."""

    async def _drive(application_id: UUID, target: str) -> LoanApplication:
        application = await reload(db, LoanApplication, application_id)
        targets = [step[0] for step in FORWARD_STEPS]
        start = targets.index(application.status) + 1 if application.status in targets else 0
        for status, actor_name, inputs in FORWARD_STEPS[start:]:
            if application.status == target:
                break
            application = await machine.transition(
                db, application_id, status, actors[actor_name], TransitionPayload(**inputs)
            )
        assert application.status == target
        return application

    return _drive


def contract_request(*, company_signs_first: bool = False) -> ContractRegisterRequest:
    return ContractRegisterRequest(
        doc_url="https://files.example.com/contract.pdf",
        doc_name="Facility agreement",
        company_signs_first=company_signs_first,
        signatories=[
            SignatoryInput(category="company", full_name="Grace Wanjiru", email="grace@acme.example", signing_order=1),
            SignatoryInput(category="client", full_name="Peter Otieno", email="peter@mboga.example", signing_order=2),
        ],
    )


@pytest.fixture
def send_contract(db, machine, actors):
    """Register a two-party contract and send it; returns the signatories in signing order."""

    async def _send(application_id: UUID, *, company_signs_first: bool = False):
        member = actors["member"]
        await machine.mutate(
            db,
            application_id,
            member,
            "contract.register",
            lambda application: contract_signing.register_contract(
                db, application, contract_request(company_signs_first=company_signs_first), member
            ),
        )
        await machine.mutate(
            db,
            application_id,
            member,
            "contract.send",
            lambda application: contract_signing.mark_sent(db, application, member),
        )
        return await contract_signing.list_signatories(db, application_id)

    return _send
