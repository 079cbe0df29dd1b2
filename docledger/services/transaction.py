"""
Transaction helpers for service operations.

Every public ledger/lane operation is all-or-nothing: it either commits
or rolls back the whole session before returning. Operations that move
the "current" pointer additionally retry their whole read-modify-write
when the database rejects a second current row.

Commit happens only here; service functions never call commit() directly.
"""

import logging

from flask import current_app
from sqlalchemy.exc import IntegrityError

from docledger.core.exceptions import ConflictError
from docledger.models import db

logger = logging.getLogger(__name__)


def run_in_transaction(fn, *args, **kwargs):
    """Run ``fn`` and commit; roll back and re-raise on any error."""
    try:
        result = fn(*args, **kwargs)
        db.session.commit()
        return result
    except Exception:
        db.session.rollback()
        raise


def run_with_conflict_retry(
    fn,
    *,
    resource: str,
    key: str,
    field: str = "is_current",
    max_attempts: int | None = None,
):
    """Run a read-modify-write that a unique index guards, retrying on conflict.

    ``fn`` must re-read everything it needs on each call: after a
    conflict the session is rolled back and every loaded row is stale.

    Args:
        fn: zero-argument callable performing the whole read → modify → write.
        resource: model name for the ConflictError.
        field: the contended column, for the ConflictError.
        key: human-readable key, e.g. "project=1,type=CHARTER".
        max_attempts: override for CURRENT_POINTER_MAX_ATTEMPTS.

    Raises:
        ConflictError: every attempt hit a uniqueness violation.
    """
    if max_attempts is None:
        max_attempts = current_app.config.get("CURRENT_POINTER_MAX_ATTEMPTS", 3)
    max_attempts = max(1, int(max_attempts))

    last_exc = None
    for attempt in range(1, max_attempts + 1):
        try:
            result = fn()
            db.session.commit()
            return result
        except IntegrityError as exc:
            db.session.rollback()
            last_exc = exc
            logger.warning(
                "Uniqueness conflict on %s %s (attempt %d/%d)",
                resource, key, attempt, max_attempts,
            )
        except Exception:
            db.session.rollback()
            raise

    raise ConflictError(
        resource, field, key,
        reason=f"Concurrent update of {resource} {field} for {key}; retry from a fresh read",
    ) from last_exc
