import logging

from fastapi import FastAPI
from redis.exceptions import RedisError

from app.core.settings import settings
from app.db.session import engine
from app.services.cache import build_application_cache
from app.services.loan_workflow import ApplicationStateMachine
from app.services.notifications import build_dispatcher
from app.utils.redis_client import get_redis_client

logger = logging.getLogger(__name__)


def bootstrap_capabilities(app: FastAPI) -> None:
    """Create the cache and notifier once and share them through app.state."""
    cache = build_application_cache()
    notifier = build_dispatcher()
    app.state.application_cache = cache
    app.state.notifier = notifier
    app.state.state_machine = ApplicationStateMachine(cache=cache, notifier=notifier)


def register_event_handlers(app: FastAPI) -> None:
    @app.on_event("startup")
    async def on_startup() -> None:
        logger.info("Application startup environment=%s", settings.environment)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        logger.info("Application shutdown")
        if settings.application_cache_enabled:
            try:
                await get_redis_client().aclose()
            except RedisError:
                logger.warning("Redis client did not close cleanly", exc_info=True)
        await engine.dispose()
