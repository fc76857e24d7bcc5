from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.actor import Actor, RequestMeta
from app.core.context import set_actor_id
from app.core.exceptions import Forbidden, Unauthenticated
from app.core.permissions import Role, parse_role
from app.core.security import subject_from_token
from app.db.session import get_db
from app.models import User
from app.services.cache import ApplicationCache, NullApplicationCache
from app.services.loan_workflow import ApplicationStateMachine

bearer_scheme = HTTPBearer(auto_error=False)


async def get_db_session(db: AsyncSession = Depends(get_db)) -> AsyncSession:
    return db


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db_session),
) -> User:
    if credentials is None or not credentials.credentials:
        raise Unauthenticated("Missing bearer token")
    try:
        subject = subject_from_token(credentials.credentials)
    except ValueError as exc:
        raise Unauthenticated(str(exc)) from exc

    stmt = select(User).where(User.external_subject_id == subject)
    user = (await db.execute(stmt)).scalar_one_or_none()
    if not user:
        raise Unauthenticated("User not found")
    if not user.is_active:
        raise Unauthenticated("Inactive user")
    return user


def _request_meta(request: Request) -> RequestMeta:
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = forwarded.split(",")[0].strip() if forwarded else None
    if not ip_address and request.client:
        ip_address = request.client.host
    return RequestMeta(ip_address=ip_address, user_agent=request.headers.get("user-agent"))


async def get_actor(request: Request, user: User = Depends(get_current_user)) -> Actor:
    set_actor_id(str(user.id))
    return Actor(
        user_id=user.id,
        role=parse_role(user.role),
        email=user.email,
        display_name=user.display_name,
        request=_request_meta(request),
    )


def require_role(minimum: Role):
    async def _require(actor: Actor = Depends(get_actor)) -> Actor:
        if not actor.at_least(minimum):
            raise Forbidden(
                f"{minimum.value} role required",
                details={"required_role": minimum.value, "role": actor.role.value},
            )
        return actor

    return _require


require_staff = require_role(Role.MEMBER)
require_admin = require_role(Role.ADMIN)


def get_state_machine(request: Request) -> ApplicationStateMachine:
    machine = getattr(request.app.state, "state_machine", None)
    if machine is None:
        machine = ApplicationStateMachine()
        request.app.state.state_machine = machine
    return machine


def get_application_cache(request: Request) -> ApplicationCache:
    return getattr(request.app.state, "application_cache", None) or NullApplicationCache()
