from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import ConflictingVersion, InternalError, LendingError

logger = logging.getLogger(__name__)

# Two writers that read the same max(sequence) collide here; the loser retries.
AUDIT_SEQUENCE_CONSTRAINT = "uq_loan_app_audit_events_sequence"


def _is_audit_sequence_race(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return AUDIT_SEQUENCE_CONSTRAINT in message or (
        "loan_application_audit_events.loan_application_id" in message
        and "loan_application_audit_events.sequence" in message
    )


@asynccontextmanager
async def unit_of_work(
    db: AsyncSession, operation: str, **context: Any
) -> AsyncIterator[AsyncSession]:
    """Run a block as one transaction: commit on success, roll back on any failure.

    Optimistic-lock misses surface as ConflictingVersion; other database
    failures are logged and wrapped as InternalError.
    """
    details = {key: str(value) for key, value in context.items() if value is not None}
    try:
        yield db
        await db.commit()
    except LendingError:
        await db.rollback()
        raise
    except StaleDataError as exc:
        await db.rollback()
        raise ConflictingVersion(
            "The record was modified by another request; reload and retry",
            details={"operation": operation, **details},
        ) from exc
    except IntegrityError as exc:
        await db.rollback()
        if not _is_audit_sequence_race(exc):
            logger.exception("Database failure during %s context=%s", operation, details)
            raise InternalError(
                "Unexpected database error",
                details={"operation": operation, **details},
            ) from exc
        logger.warning("Audit sequence collision during %s context=%s", operation, details)
        raise ConflictingVersion(
            "The application was modified by another request; reload and retry",
            details={"operation": operation, **details},
        ) from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Database failure during %s context=%s", operation, details)
        raise InternalError(
            "Unexpected database error",
            details={"operation": operation, **details},
        ) from exc
