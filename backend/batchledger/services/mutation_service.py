# Overview: Ledger mutations: commit allocation, adjust, transfer, split and scrap.

"""
Ledger Mutation Service (authoritative)

Every operation here is one ledger_transaction:
1. re-read each affected batch with write intent, in id order
2. validate every row before writing any of them
3. write quantities, status and movement rows
4. re-check batch invariants, then commit

Any error rolls back the whole unit. A lost race on a batch row surfaces as
ConcurrentModificationError; these functions never retry on their own.
"""

from __future__ import annotations

import uuid
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Mapping

from flask import current_app

from ..extensions import db
from ..errors import (
    GroupedIdentifierRequiredError,
    InsufficientStockError,
    InvalidRequestError,
    NotFoundError,
    QuantityExceedsAvailableError,
    UnsupportedOperationError,
)
from ..models import BatchType, Branch, DeductionReceipt, InventoryBatch
from ..models.inventory import (
    BATCH_STATUS_DEPLETED,
    BATCH_STATUS_IN_STOCK,
    BATCH_STATUS_SCRAPPED,
    MOVEMENT_ADJUST_DECREASE,
    MOVEMENT_ADJUST_INCREASE,
    MOVEMENT_ALLOCATE,
    MOVEMENT_SCRAP,
    MOVEMENT_SPLIT_IN,
    MOVEMENT_SPLIT_OUT,
    MOVEMENT_TRANSFER,
    MOVEMENT_TRANSFER_IN,
    MOVEMENT_TRANSFER_OUT,
)
from ..quantities import ZERO, covers, matches, positive_quantity, quantity_tolerance
from ..time_utils import utcnow
from .allocation_service import Proposal
from .batch_service import instance_code_in_use, normalize_instance_code, validated_attribute_data
from .concurrency import ledger_transaction, lock_for_update
from .ledger_service import record_movement
from .recipe_service import get_recipe


ADJUST_INCREASE = "increase"
ADJUST_DECREASE = "decrease"


@dataclass(frozen=True)
class SplitOutput:
    instance_code: str
    quantity: Any
    attribute_overrides: Mapping[str, Any] | None = None
    batch_type_id: int | None = None


def _load_for_update(batch_id: int) -> InventoryBatch | None:
    return lock_for_update(db.session.query(InventoryBatch).filter_by(id=batch_id)).first()


def _require_batch(batch_id: int) -> InventoryBatch:
    batch = _load_for_update(batch_id)
    if batch is None:
        raise NotFoundError("inventory_batch", batch_id)
    return batch


def _require_reason(reason: str | None) -> str:
    reason = (reason or "").strip()
    if not reason:
        raise InvalidRequestError("reason", "a reason is required")
    return reason


def _set_remaining(batch: InventoryBatch, remaining: Decimal) -> None:
    batch.remaining_quantity = remaining
    if batch.status != BATCH_STATUS_SCRAPPED:
        batch.status = BATCH_STATUS_IN_STOCK if remaining > ZERO else BATCH_STATUS_DEPLETED


def commit_allocation(
    proposal: Proposal | Mapping[str, Any],
    *,
    reference: str | None = None,
    actor: str | None = None,
) -> list[DeductionReceipt]:
    """
    Apply a proposal's deductions, all lines or none.

    Each line is re-validated against freshly locked rows: the batch must
    exist, hold the recipe's raw product, be in_stock and still have at least
    the deducted quantity. Lines naming the same batch are merged. The line
    total must equal output_quantity times the stored recipe factor, within
    tolerance; the proposal's own required_quantity is ignored.

    Returns:
        list[DeductionReceipt]: one receipt per batch, sharing allocation_ref

    Raises:
        InsufficientStockError: a batch shrank since the proposal, or the
            lines fall short of the recipe requirement
        InvalidRequestError: recipe mismatch, or lines exceed the requirement
        ConcurrentModificationError: another transaction won the race
    """
    if not isinstance(proposal, Proposal):
        proposal = Proposal.from_dict(proposal)

    deductions: "OrderedDict[int, Decimal]" = OrderedDict()
    for line in proposal.lines:
        qty = positive_quantity(line.quantity_deducted, field="quantity_deducted")
        deductions[line.inventory_batch_id] = deductions.get(line.inventory_batch_id, ZERO) + qty
    if not deductions:
        raise InvalidRequestError("lines", "proposal has no lines")

    recipe = get_recipe(proposal.recipe_id)
    if recipe.virtual_product_id != proposal.virtual_product_id:
        raise InvalidRequestError("virtual_product_id", "proposal does not match the recipe's product")
    if recipe.raw_product_id != proposal.raw_product_id:
        raise InvalidRequestError("raw_product_id", "proposal does not match the recipe's raw product")
    if proposal.output_quantity <= ZERO:
        raise InvalidRequestError("output_quantity", "must be greater than 0")

    # The requirement comes from the stored recipe, never from the payload
    required = proposal.output_quantity * Decimal(str(recipe.conversion_factor))
    tolerance = quantity_tolerance()
    total = sum(deductions.values(), ZERO)
    if not covers(total, required, tolerance):
        raise InsufficientStockError(required=required, available=total)
    if not matches(total, required, tolerance):
        raise InvalidRequestError("lines", f"lines deduct {total}, recipe requires {required}")

    allocation_ref = uuid.uuid4().hex

    with ledger_transaction("commit_allocation") as scope:
        # Lock and validate every row before writing any of them
        locked = []
        for batch_id in sorted(deductions):
            batch = _require_batch(batch_id)
            scope.track(batch)
            locked.append(batch)

        for batch in locked:
            qty = deductions[batch.id]
            if batch.product_id != recipe.raw_product_id:
                raise InvalidRequestError(
                    "inventory_batch_id",
                    f"batch {batch.id} does not hold product {recipe.raw_product_id}",
                )
            available = batch.remaining_quantity if batch.status == BATCH_STATUS_IN_STOCK else ZERO
            if available < qty:
                current_app.logger.warning(
                    "Rejected allocation commit: batch %s has %s, line needs %s",
                    batch.id, available, qty,
                )
                raise InsufficientStockError(
                    required=qty,
                    available=available,
                    batch_id=batch.id,
                    product_id=batch.product_id,
                )

        receipts = []
        for batch in locked:
            qty = deductions[batch.id]
            _set_remaining(batch, batch.remaining_quantity - qty)
            record_movement(
                batch,
                MOVEMENT_ALLOCATE,
                -qty,
                actor=actor,
                reason=reference,
                allocation_ref=allocation_ref,
            )
            receipt = DeductionReceipt(
                allocation_ref=allocation_ref,
                inventory_batch_id=batch.id,
                recipe_id=recipe.id,
                quantity_deducted=qty,
                reference=reference,
                actor=actor,
            )
            db.session.add(receipt)
            receipts.append(receipt)

    current_app.logger.info(
        "Committed allocation %s for product %s: %s from batches %s",
        allocation_ref, proposal.virtual_product_id, total, sorted(deductions),
    )
    return receipts


def adjust_stock(
    batch_id: int,
    direction: str,
    quantity: Any,
    reason: str,
    *,
    actor: str | None = None,
) -> InventoryBatch:
    """
    Correct a batch's quantity against a physical count.

    A decrease may not exceed remaining_quantity. An increase past
    initial_quantity raises initial_quantity to match, and brings a depleted
    batch back in_stock.
    """
    direction = (direction or "").strip().lower()
    if direction not in (ADJUST_INCREASE, ADJUST_DECREASE):
        raise InvalidRequestError("direction", "must be 'increase' or 'decrease'")
    qty = positive_quantity(quantity)
    reason = _require_reason(reason)

    with ledger_transaction("adjust_stock") as scope:
        batch = _require_batch(batch_id)
        scope.track(batch)

        if batch.status == BATCH_STATUS_SCRAPPED:
            raise UnsupportedOperationError("adjust_stock", "batch is scrapped", batch_id=batch.id)

        if direction == ADJUST_DECREASE:
            if qty > batch.remaining_quantity:
                raise QuantityExceedsAvailableError(
                    batch_id=batch.id, requested=qty, available=batch.remaining_quantity
                )
            _set_remaining(batch, batch.remaining_quantity - qty)
            record_movement(batch, MOVEMENT_ADJUST_DECREASE, -qty, reason=reason, actor=actor)
        else:
            new_remaining = batch.remaining_quantity + qty
            if new_remaining > batch.initial_quantity:
                batch.initial_quantity = new_remaining
            _set_remaining(batch, new_remaining)
            record_movement(batch, MOVEMENT_ADJUST_INCREASE, qty, reason=reason, actor=actor)

    current_app.logger.info(
        "Adjusted batch %s %s by %s (%s): remaining=%s",
        batch.id, direction, qty, reason, batch.remaining_quantity,
    )
    return batch


def transfer_stock(
    batch_id: int,
    destination_branch_id: int,
    quantity: Any = None,
    *,
    actor: str | None = None,
):
    """
    Move stock to another branch.

    quantity None or equal to remaining moves the batch itself and returns it.
    A smaller quantity carves a new ungrouped batch at the destination and
    returns (source, new_batch). Grouped batches only move whole.
    """
    destination = db.session.get(Branch, destination_branch_id)
    if destination is None:
        raise NotFoundError("branch", destination_branch_id)
    if not destination.is_active:
        raise InvalidRequestError("destination_branch_id", f"branch {destination_branch_id} is inactive")
    qty = None if quantity is None else positive_quantity(quantity)

    with ledger_transaction("transfer_stock") as scope:
        batch = _require_batch(batch_id)
        scope.track(batch)

        if batch.branch_id == destination.id:
            raise InvalidRequestError("destination_branch_id", "batch is already at this branch")
        if batch.status != BATCH_STATUS_IN_STOCK:
            raise UnsupportedOperationError(
                "transfer_stock", f"batch is {batch.status}", batch_id=batch.id
            )
        category = batch.category
        if category is not None and category.branch_id is not None and category.branch_id != destination.id:
            raise InvalidRequestError(
                "destination_branch_id",
                f"category {category.name!r} is restricted to branch {category.branch_id}",
            )

        if qty is not None and qty > batch.remaining_quantity:
            raise QuantityExceedsAvailableError(
                batch_id=batch.id, requested=qty, available=batch.remaining_quantity
            )

        source_branch_id = batch.branch_id

        if qty is None or qty == batch.remaining_quantity:
            batch.branch_id = destination.id
            record_movement(
                batch,
                MOVEMENT_TRANSFER,
                ZERO,
                actor=actor,
                from_branch_id=source_branch_id,
                to_branch_id=destination.id,
            )
            result = batch
        else:
            if batch.grouped:
                raise UnsupportedOperationError(
                    "transfer_stock",
                    "a grouped batch can only be transferred whole; split it first",
                    batch_id=batch.id,
                )
            attributes = validated_attribute_data(category, batch.attribute_data)
            new_batch = InventoryBatch(
                product_id=batch.product_id,
                branch_id=destination.id,
                category_id=batch.category_id,
                batch_type_id=batch.batch_type_id,
                grouped=False,
                instance_code=None,
                batch_identifier=batch.batch_identifier,
                initial_quantity=qty,
                remaining_quantity=qty,
                status=BATCH_STATUS_IN_STOCK,
                attribute_data=attributes,
                source_batch_id=batch.id,
            )
            db.session.add(new_batch)
            db.session.flush()
            scope.track(new_batch)

            _set_remaining(batch, batch.remaining_quantity - qty)
            record_movement(
                batch,
                MOVEMENT_TRANSFER_OUT,
                -qty,
                actor=actor,
                from_branch_id=source_branch_id,
                to_branch_id=destination.id,
                related_batch_id=new_batch.id,
            )
            record_movement(
                new_batch,
                MOVEMENT_TRANSFER_IN,
                qty,
                actor=actor,
                from_branch_id=source_branch_id,
                to_branch_id=destination.id,
                related_batch_id=batch.id,
            )
            result = (batch, new_batch)

    current_app.logger.info(
        "Transferred batch %s (%s) from branch %s to %s",
        batch_id, "whole" if not isinstance(result, tuple) else qty,
        source_branch_id, destination.id,
    )
    return result


def _coerce_split_output(raw: Any) -> SplitOutput:
    if isinstance(raw, SplitOutput):
        return raw
    if isinstance(raw, Mapping):
        if "instance_code" not in raw or "quantity" not in raw:
            raise InvalidRequestError("outputs", "each output needs instance_code and quantity")
        return SplitOutput(
            instance_code=raw["instance_code"],
            quantity=raw["quantity"],
            attribute_overrides=raw.get("attribute_overrides"),
            batch_type_id=raw.get("batch_type_id"),
        )
    if isinstance(raw, (tuple, list)) and len(raw) == 2:
        return SplitOutput(instance_code=raw[0], quantity=raw[1])
    raise InvalidRequestError("outputs", "each output must be (instance_code, quantity) or a mapping")


def split_batch(
    batch_id: int,
    outputs: Iterable[Any],
    *,
    actor: str | None = None,
) -> list[InventoryBatch]:
    """
    Slit a bulk batch into grouped batches.

    The source must be in_stock, ungrouped and of a splittable batch type.
    Outputs are grouped batches with their own instance codes, inheriting
    product, category, branch and attributes (overrides merged on top).
    The source is decremented by the total and depleted at zero.

    Raises:
        UnsupportedOperationError: grouped source or non-splittable type
        GroupedIdentifierRequiredError: missing or duplicate instance codes
        QuantityExceedsAvailableError: outputs sum past remaining_quantity
    """
    specs = [_coerce_split_output(raw) for raw in outputs]
    if not specs:
        raise InvalidRequestError("outputs", "at least one output is required")

    planned = []
    seen = set()
    for spec in specs:
        code = normalize_instance_code(spec.instance_code)
        if code is None:
            raise GroupedIdentifierRequiredError("every split output needs an instance_code")
        if code in seen:
            raise GroupedIdentifierRequiredError(
                f"instance_code {code!r} appears more than once", instance_code=code
            )
        seen.add(code)
        planned.append((code, positive_quantity(spec.quantity), spec))
    total = sum((qty for _, qty, _ in planned), ZERO)

    with ledger_transaction("split_batch") as scope:
        source = _require_batch(batch_id)
        scope.track(source)

        if source.status != BATCH_STATUS_IN_STOCK:
            raise UnsupportedOperationError("split_batch", f"batch is {source.status}", batch_id=source.id)
        if source.grouped:
            raise UnsupportedOperationError("split_batch", "grouped batches cannot be split", batch_id=source.id)
        if not source.batch_type.can_split:
            raise UnsupportedOperationError(
                "split_batch",
                f"batch type {source.batch_type.name!r} is not splittable",
                batch_id=source.id,
            )
        if total > source.remaining_quantity:
            raise QuantityExceedsAvailableError(
                batch_id=source.id, requested=total, available=source.remaining_quantity
            )

        # Validate every output before creating any
        prepared = []
        for code, qty, spec in planned:
            if instance_code_in_use(code):
                raise GroupedIdentifierRequiredError(f"instance_code {code!r} already exists", instance_code=code)
            batch_type_id = source.batch_type_id
            if spec.batch_type_id is not None:
                batch_type = db.session.get(BatchType, spec.batch_type_id)
                if batch_type is None:
                    raise NotFoundError("batch_type", spec.batch_type_id)
                if not batch_type.is_active:
                    raise InvalidRequestError("batch_type_id", f"batch type {batch_type.name!r} is inactive")
                batch_type_id = batch_type.id
            attributes = dict(source.attribute_data or {})
            attributes.update(spec.attribute_overrides or {})
            prepared.append((code, qty, batch_type_id, validated_attribute_data(source.category, attributes)))

        created = []
        for code, qty, batch_type_id, attributes in prepared:
            new_batch = InventoryBatch(
                product_id=source.product_id,
                branch_id=source.branch_id,
                category_id=source.category_id,
                batch_type_id=batch_type_id,
                grouped=True,
                instance_code=code,
                batch_identifier=code,
                initial_quantity=qty,
                remaining_quantity=qty,
                status=BATCH_STATUS_IN_STOCK,
                attribute_data=attributes,
                source_batch_id=source.id,
            )
            db.session.add(new_batch)
            created.append(new_batch)
        db.session.flush()

        for new_batch in created:
            scope.track(new_batch)
            _set_remaining(source, source.remaining_quantity - new_batch.initial_quantity)
            record_movement(
                source,
                MOVEMENT_SPLIT_OUT,
                -new_batch.initial_quantity,
                actor=actor,
                related_batch_id=new_batch.id,
            )
            record_movement(
                new_batch,
                MOVEMENT_SPLIT_IN,
                new_batch.initial_quantity,
                actor=actor,
                related_batch_id=source.id,
            )

    current_app.logger.info(
        "Split batch %s into %s (total %s); source remaining=%s",
        source.id, [b.instance_code for b in created], total, source.remaining_quantity,
    )
    return created


def scrap_batch(batch_id: int, reason: str, *, actor: str | None = None) -> InventoryBatch:
    """Write a batch off. Scrapped is terminal; remaining_quantity is kept for the record."""
    reason = _require_reason(reason)

    with ledger_transaction("scrap_batch") as scope:
        batch = _require_batch(batch_id)
        scope.track(batch)
        if batch.status == BATCH_STATUS_SCRAPPED:
            raise UnsupportedOperationError("scrap_batch", "batch is already scrapped", batch_id=batch.id)

        batch.status = BATCH_STATUS_SCRAPPED
        batch.scrapped_at = utcnow()
        batch.scrap_reason = reason
        record_movement(batch, MOVEMENT_SCRAP, ZERO, reason=reason, actor=actor)

    current_app.logger.info("Scrapped batch %s: %s", batch.id, reason)
    return batch
