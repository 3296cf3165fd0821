# Overview: Service-layer operations for concurrency; row locking and conflict mapping.

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import Conflict
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for balance and counter rows.

    NOWAIT (default) makes contention surface immediately as an
    OperationalError, which run_guarded maps to Conflict.

    populate_existing() makes the locked read overwrite any stale copy of the
    row already in the identity map.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; there the version_id
    columns on the locked models provide the compare-and-swap.
    """
    nowait = current_app.config.get("LOCK_NOWAIT", True)
    return query.with_for_update(nowait=nowait).populate_existing()


def run_guarded(func, *, entity: str = "record"):
    """
    Execute a DB unit of work, translating lock contention and optimistic
    version mismatches into Conflict.

    Unlike a retry wrapper this never re-runs func: retries are always the
    caller's decision.
    """
    try:
        return func()
    except (OperationalError, StaleDataError) as exc:
        db.session.rollback()
        current_app.logger.warning("Concurrent modification of %s: %s", entity, exc)
        raise Conflict(f"{entity} was modified by another request; retry the operation") from exc
