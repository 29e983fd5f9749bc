# Overview: Transaction guard and locking helpers shared by every ledger mutation.

from __future__ import annotations

import time
from contextlib import contextmanager

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import (
    ConcurrentModificationError,
    GroupedIdentifierRequiredError,
    InvariantViolationError,
    LedgerError,
)
from ..models.inventory import INSTANCE_CODE_UNIQUE, SQLITE_INSTANCE_CODE_UNIQUE


def lock_for_update(query):
    """
    Re-read rows from the database with write intent.

    populate_existing() refreshes objects already in the identity map so no
    decision is made on a stale read. SQLite ignores FOR UPDATE; there the
    version_id compare-and-set on UPDATE catches lost races instead.
    """
    return query.populate_existing().with_for_update()


class LedgerScope:
    """Batches touched by one ledger transaction; checked before commit."""

    def __init__(self, operation: str):
        self.operation = operation
        self._batches = {}

    def track(self, batch) -> None:
        self._batches[id(batch)] = batch

    @property
    def batch_ids(self) -> list[int]:
        return sorted(b.id for b in self._batches.values() if b.id is not None)

    def verify(self) -> None:
        for batch in self._batches.values():
            problems = batch.invariant_violations()
            if problems:
                raise InvariantViolationError(batch.id, problems)


@contextmanager
def ledger_transaction(operation: str):
    """
    One atomic unit of ledger work.

    Yields a LedgerScope; the body re-reads and mutates rows and tracks every
    batch it touches. On exit the session is flushed, tracked batches are
    re-checked against the invariants and the transaction commits. Any error
    rolls everything back. Write conflicts and lock timeouts surface as
    ConcurrentModificationError; nothing is retried here.
    """
    scope = LedgerScope(operation)
    try:
        yield scope
        db.session.flush()
        scope.verify()
        db.session.commit()
    except LedgerError:
        db.session.rollback()
        raise
    except (StaleDataError, OperationalError) as exc:
        db.session.rollback()
        current_app.logger.warning(
            "Ledger conflict during %s on batches %s: %s", operation, scope.batch_ids, exc
        )
        raise ConcurrentModificationError(operation, scope.batch_ids, cause=type(exc).__name__) from exc
    except IntegrityError as exc:
        db.session.rollback()
        message = str(exc.orig)
        if INSTANCE_CODE_UNIQUE in message or SQLITE_INSTANCE_CODE_UNIQUE in message:
            raise GroupedIdentifierRequiredError("instance_code already exists") from exc
        raise
    except Exception:
        db.session.rollback()
        raise


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Caller-side retry for operations that failed with a retryable ledger error.

    Each attempt calls func() from scratch, so it must re-read whatever state
    it depends on. Validation and availability errors propagate immediately.
    """
    for attempt in range(attempts):
        try:
            return func()
        except LedgerError as exc:
            if not exc.retryable or attempt >= attempts - 1:
                raise
            current_app.logger.info(
                "Retrying after %s (attempt %d of %d)", exc.kind, attempt + 1, attempts
            )
            time.sleep(backoff_base * (2 ** attempt))
