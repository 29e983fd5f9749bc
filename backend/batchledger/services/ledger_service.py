# Overview: Append-only batch movement log; written inside each mutating transaction.

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func

from ..extensions import db
from ..models import BatchMovement, InventoryBatch
from ..models.inventory import ORIGIN_MOVEMENTS
from ..quantities import quantize
"""
Batch Movement Invariants (authoritative)

- Append-only: rows are never updated. They are deleted only together with a
  never-touched batch (see batch_service.delete_batch).
- Every movement is written in the same DB transaction as the change it records.
- For every batch, sum(quantity_delta) equals remaining_quantity, and the
  newest row's remaining_after/initial_after equal the batch's quantities.
"""


def record_movement(
    batch: InventoryBatch,
    movement_type: str,
    quantity_delta: Decimal,
    *,
    reason: str | None = None,
    actor: str | None = None,
    from_branch_id: int | None = None,
    to_branch_id: int | None = None,
    related_batch_id: int | None = None,
    allocation_ref: str | None = None,
) -> BatchMovement:
    """Append a movement for a batch whose quantities are already updated in the session."""
    if batch.id is None:
        db.session.flush()  # assigns batch.id without committing

    movement = BatchMovement(
        inventory_batch_id=batch.id,
        movement_type=movement_type,
        quantity_delta=quantity_delta,
        remaining_after=batch.remaining_quantity,
        initial_after=batch.initial_quantity,
        from_branch_id=from_branch_id,
        to_branch_id=to_branch_id,
        related_batch_id=related_batch_id,
        allocation_ref=allocation_ref,
        reason=reason,
        actor=actor,
    )
    db.session.add(movement)
    return movement


def list_movements(batch_id: int, *, limit: int = 500) -> list[BatchMovement]:
    return (
        db.session.query(BatchMovement)
        .filter_by(inventory_batch_id=batch_id)
        .order_by(BatchMovement.id.asc())
        .limit(limit)
        .all()
    )


def reconcile_batch(batch: InventoryBatch) -> list[str]:
    """Compare a batch against its movement log. Returns problems, empty when consistent."""
    movements = (
        db.session.query(BatchMovement)
        .filter_by(inventory_batch_id=batch.id)
        .order_by(BatchMovement.id.asc())
        .all()
    )
    if not movements:
        return ["no movements recorded"]

    problems = []
    if movements[0].movement_type not in ORIGIN_MOVEMENTS:
        problems.append(f"first movement is {movements[0].movement_type}")

    total = sum((m.quantity_delta for m in movements), Decimal("0"))
    if total != batch.remaining_quantity:
        problems.append(f"movements sum to {total}, remaining_quantity is {batch.remaining_quantity}")

    last = movements[-1]
    if last.remaining_after != batch.remaining_quantity:
        problems.append("latest movement remaining_after does not match batch")
    if last.initial_after != batch.initial_quantity:
        problems.append("latest movement initial_after does not match batch")
    return problems


def sum_movements(batch_ids: list[int], movement_types: tuple[str, ...]) -> Decimal:
    if not batch_ids:
        return Decimal("0")
    total = (
        db.session.query(func.coalesce(func.sum(BatchMovement.quantity_delta), 0))
        .filter(
            BatchMovement.inventory_batch_id.in_(batch_ids),
            BatchMovement.movement_type.in_(movement_types),
        )
        .scalar()
    )
    return quantize(Decimal(str(total or 0)))
