# Overview: Error taxonomy for the batch ledger and allocation engine.

"""
Ledger errors (authoritative)

Every error raised by the ledger core is a LedgerError subclass carrying a
stable `kind`, a `retryable` flag and structured details. Callers render
`to_dict()`; nothing is reported as a bare string.

- Validation and availability errors are never retried by the core.
- ConcurrentModificationError is the only retryable kind; the caller decides
  whether to fetch fresh state (for example a new proposal) and try again.
- Any error raised inside a ledger transaction rolls the whole transaction back.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterable


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class LedgerError(Exception):
    """Base class for all ledger core errors."""

    kind = "LedgerError"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {
            "error": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }
        payload.update({key: _jsonable(value) for key, value in self.details.items()})
        return payload


class InvalidRequestError(LedgerError):
    """Malformed argument: non-positive quantity, missing reason, same-branch transfer."""

    kind = "InvalidRequest"

    def __init__(self, field: str, reason: str, **details: Any):
        super().__init__(f"{field}: {reason}", field=field, reason=reason, **details)
        self.field = field
        self.reason = reason


class AmbiguousRecipeError(InvalidRequestError):
    kind = "AmbiguousRecipe"

    def __init__(self, virtual_product_id: int, recipe_ids: Iterable[int]):
        recipe_ids = sorted(recipe_ids)
        super().__init__(
            "recipe_id",
            f"product {virtual_product_id} has {len(recipe_ids)} active recipes; pass recipe_id explicitly",
            virtual_product_id=virtual_product_id,
            recipe_ids=recipe_ids,
        )


class InvalidAttributeError(LedgerError):
    """Attribute map does not satisfy the category archetype's rules."""

    kind = "InvalidAttribute"

    def __init__(self, field: str, reason: str, archetype: str | None = None):
        super().__init__(f"{field}: {reason}", field=field, reason=reason, archetype=archetype)
        self.field = field
        self.reason = reason
        self.archetype = archetype


class GroupedIdentifierRequiredError(LedgerError):
    """Grouped batch without an instance code, or with one already in use."""

    kind = "GroupedIdentifierRequired"

    def __init__(self, reason: str, instance_code: str | None = None):
        super().__init__(reason, instance_code=instance_code)
        self.instance_code = instance_code


class InsufficientStockError(LedgerError):
    kind = "InsufficientStock"

    def __init__(
        self,
        *,
        required: Decimal,
        available: Decimal,
        batch_id: int | None = None,
        product_id: int | None = None,
    ):
        shortfall = required - available
        if batch_id is not None:
            message = f"batch {batch_id} has {available} available, {required} required"
        else:
            message = f"only {available} available of {required} required (short {shortfall})"
        super().__init__(
            message,
            required=required,
            available=available,
            shortfall=shortfall,
            batch_id=batch_id,
            product_id=product_id,
        )
        self.required = required
        self.available = available
        self.shortfall = shortfall
        self.batch_id = batch_id


class QuantityExceedsAvailableError(LedgerError):
    kind = "QuantityExceedsAvailable"

    def __init__(self, *, batch_id: int, requested: Decimal, available: Decimal):
        super().__init__(
            f"batch {batch_id}: requested {requested} exceeds remaining {available}",
            batch_id=batch_id,
            requested=requested,
            available=available,
        )
        self.batch_id = batch_id
        self.requested = requested
        self.available = available


class UnsupportedOperationError(LedgerError):
    kind = "UnsupportedOperation"

    def __init__(self, operation: str, reason: str, batch_id: int | None = None):
        super().__init__(f"{operation}: {reason}", operation=operation, reason=reason, batch_id=batch_id)
        self.operation = operation
        self.reason = reason
        self.batch_id = batch_id


class ConcurrentModificationError(LedgerError):
    """Another transaction changed the same rows first. Safe to retry with fresh state."""

    kind = "ConcurrentModification"
    retryable = True

    def __init__(self, operation: str, batch_ids: Iterable[int] = (), cause: str | None = None):
        batch_ids = sorted(set(batch_ids))
        super().__init__(
            f"{operation}: batches {batch_ids} were modified concurrently",
            operation=operation,
            batch_ids=batch_ids,
            cause=cause,
        )
        self.operation = operation
        self.batch_ids = batch_ids


class NotFoundError(LedgerError):
    kind = "NotFound"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class InvariantViolationError(LedgerError):
    """A mutation would leave a batch breaking a ledger invariant; always a rollback."""

    kind = "InvariantViolation"

    def __init__(self, batch_id: int | None, violations: list[str]):
        super().__init__(
            f"batch {batch_id}: {'; '.join(violations)}",
            batch_id=batch_id,
            violations=violations,
        )
        self.batch_id = batch_id
        self.violations = violations
