from typing import Any

from sqlalchemy import Select, select


def not_deleted(model: Any):
    """Filter clause excluding tombstoned rows of ``model``."""
    return model.deleted_at.is_(None)


def select_live(model: Any) -> Select:
    return select(model).where(not_deleted(model))
