# Overview: Batch ledger store: receive, read, edit and audit inventory batches.

"""
Batch Ledger Store (authoritative)

- Only raw_tracked products own batches.
- Grouped batches carry a globally unique instance_code; batch_identifier
  defaults to it. Ungrouped batches carry no instance_code.
- attribute_data is validated against the category archetype on every write
  (create, update, and the split/transfer paths in mutation_service).
- remaining_quantity is never edited here after creation; quantity changes go
  through mutation_service so each one has a movement row.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping

from flask import current_app

from ..extensions import db
from ..errors import (
    GroupedIdentifierRequiredError,
    InvalidRequestError,
    NotFoundError,
    UnsupportedOperationError,
)
from ..models import (
    BatchMovement,
    Branch,
    Category,
    DeductionReceipt,
    InventoryBatch,
    Product,
)
from ..models.catalog import PRODUCT_TYPE_RAW_TRACKED
from ..models.inventory import (
    BATCH_STATUS_IN_STOCK,
    MOVEMENT_ALLOCATE,
    MOVEMENT_RECEIVE,
)
from ..quantities import ZERO, positive_quantity, quantize
from ..validation import Archetype, coerce_archetype, validate_attributes
from .batch_type_service import resolve_batch_type
from .concurrency import ledger_transaction
from .ledger_service import reconcile_batch, record_movement, sum_movements


def accepts_gauge(category: Category | None) -> bool:
    """Injected per-category gauge setting; defaults to aluminium categories only."""
    lookup = current_app.config.get("GAUGE_LOOKUP")
    if lookup is not None:
        return bool(lookup(category))
    return category is not None and coerce_archetype(category.archetype) is Archetype.ALUMINIUM


def validated_attribute_data(category: Category | None, attribute_data: Mapping[str, Any] | None) -> dict:
    """Validate an attribute map for a category and return the blob to store."""
    archetype = category.archetype if category is not None else Archetype.GENERIC
    struct = validate_attributes(archetype, attribute_data, accepts_gauge=accepts_gauge(category))
    return struct.to_mapping()


def normalize_instance_code(value: Any) -> str | None:
    if value is None:
        return None
    code = str(value).strip()
    return code or None


def instance_code_in_use(code: str, *, exclude_batch_id: int | None = None) -> bool:
    query = db.session.query(InventoryBatch.id).filter(InventoryBatch.instance_code == code)
    if exclude_batch_id is not None:
        query = query.filter(InventoryBatch.id != exclude_batch_id)
    return query.first() is not None


def check_batch_invariants(batch: InventoryBatch) -> list[str]:
    """Row invariants plus agreement with the movement log."""
    problems = list(batch.invariant_violations())
    problems.extend(reconcile_batch(batch))
    return problems


def get_batch(batch_id: int) -> InventoryBatch:
    batch = db.session.get(InventoryBatch, batch_id)
    if batch is None:
        raise NotFoundError("inventory_batch", batch_id)
    return batch


def _get_branch(branch_id: int) -> Branch:
    branch = db.session.get(Branch, branch_id)
    if branch is None:
        raise NotFoundError("branch", branch_id)
    return branch


def _get_category(category_id: int) -> Category:
    category = db.session.get(Category, category_id)
    if category is None:
        raise NotFoundError("category", category_id)
    return category


def create_batch(
    product_id: int,
    branch_id: int,
    initial_quantity: Any,
    *,
    category_id: int | None = None,
    batch_type_id: int | None = None,
    grouped: bool = True,
    instance_code: str | None = None,
    batch_identifier: str | None = None,
    attribute_data: Mapping[str, Any] | None = None,
    actor: str | None = None,
) -> InventoryBatch:
    """
    Receive a new batch of stock.

    Args:
        product_id: raw_tracked product the batch holds
        branch_id: branch where the stock sits
        initial_quantity: received quantity in the product's base unit (> 0)
        category_id: defaults to the product's category
        batch_type_id: defaults to the category's first assigned type, then
            the global default type
        grouped: grouped batches require a unique instance_code

    Returns:
        InventoryBatch: the committed batch, with its RECEIVE movement written

    Raises:
        NotFoundError, InvalidRequestError, InvalidAttributeError,
        GroupedIdentifierRequiredError
    """
    qty = positive_quantity(initial_quantity, field="initial_quantity")

    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("product", product_id)
    if product.product_type != PRODUCT_TYPE_RAW_TRACKED:
        raise InvalidRequestError(
            "product_id",
            f"product {product.sku} is {product.product_type}; only raw_tracked products hold batches",
        )

    branch = _get_branch(branch_id)
    if not branch.is_active:
        raise InvalidRequestError("branch_id", f"branch {branch_id} is inactive")

    if category_id is None:
        category_id = product.category_id
    category = _get_category(category_id) if category_id is not None else None
    if category is not None and category.branch_id is not None and category.branch_id != branch_id:
        raise InvalidRequestError(
            "category_id",
            f"category {category.name!r} is restricted to branch {category.branch_id}",
        )

    batch_type = resolve_batch_type(batch_type_id, category)

    code = normalize_instance_code(instance_code)
    if grouped:
        if code is None:
            raise GroupedIdentifierRequiredError("grouped batches require an instance_code")
        if instance_code_in_use(code):
            raise GroupedIdentifierRequiredError(f"instance_code {code!r} already exists", instance_code=code)
    elif code is not None:
        raise InvalidRequestError("instance_code", "only grouped batches carry an instance_code")

    merged = dict(category.attribute_defaults or {}) if category is not None else {}
    merged.update(attribute_data or {})
    stored_attributes = validated_attribute_data(category, merged)

    identifier = (batch_identifier or "").strip() or code

    with ledger_transaction("create_batch") as scope:
        batch = InventoryBatch(
            product_id=product.id,
            branch_id=branch.id,
            category_id=category.id if category is not None else None,
            batch_type_id=batch_type.id,
            grouped=bool(grouped),
            instance_code=code,
            batch_identifier=identifier,
            initial_quantity=qty,
            remaining_quantity=qty,
            status=BATCH_STATUS_IN_STOCK,
            attribute_data=stored_attributes,
        )
        db.session.add(batch)
        record_movement(batch, MOVEMENT_RECEIVE, qty, actor=actor, to_branch_id=branch.id)
        scope.track(batch)

    current_app.logger.info(
        "Received batch %s (%s) qty=%s product=%s branch=%s",
        batch.id, batch.label, qty, product.id, branch.id,
    )
    return batch


def list_batches(
    *,
    product_id: int | None = None,
    branch_id: int | None = None,
    category_id: int | None = None,
    status: str | None = None,
    grouped: bool | None = None,
    limit: int = 500,
) -> list[InventoryBatch]:
    query = db.session.query(InventoryBatch)
    if product_id is not None:
        query = query.filter(InventoryBatch.product_id == product_id)
    if branch_id is not None:
        query = query.filter(InventoryBatch.branch_id == branch_id)
    if category_id is not None:
        query = query.filter(InventoryBatch.category_id == category_id)
    if status is not None:
        query = query.filter(InventoryBatch.status == status)
    if grouped is not None:
        query = query.filter(InventoryBatch.grouped.is_(bool(grouped)))
    return (
        query.order_by(InventoryBatch.created_at.asc(), InventoryBatch.id.asc())
        .limit(limit)
        .all()
    )


def list_available_batches(product_id: int, branch_id: int | None = None) -> list[InventoryBatch]:
    """In-stock batches with stock left, oldest first. branch_id None means every branch."""
    query = db.session.query(InventoryBatch).filter(
        InventoryBatch.product_id == product_id,
        InventoryBatch.status == BATCH_STATUS_IN_STOCK,
        InventoryBatch.remaining_quantity > 0,
    )
    if branch_id is not None:
        query = query.filter(InventoryBatch.branch_id == branch_id)
    return query.order_by(InventoryBatch.created_at.asc(), InventoryBatch.id.asc()).all()


_UNSET = object()


def update_batch(
    batch_id: int,
    *,
    attribute_data: Any = _UNSET,
    batch_identifier: Any = _UNSET,
    instance_code: Any = _UNSET,
) -> InventoryBatch:
    """
    Edit descriptive fields of a batch.

    attribute_data replaces the stored map and is re-validated against the
    batch's category. Quantities and status are not editable here.
    """
    batch = get_batch(batch_id)

    if attribute_data is not _UNSET:
        new_attributes = validated_attribute_data(batch.category, attribute_data)
    else:
        new_attributes = None

    new_code = _UNSET
    if instance_code is not _UNSET:
        new_code = normalize_instance_code(instance_code)
        if batch.grouped:
            if new_code is None:
                raise GroupedIdentifierRequiredError("grouped batches require an instance_code")
            if instance_code_in_use(new_code, exclude_batch_id=batch.id):
                raise GroupedIdentifierRequiredError(
                    f"instance_code {new_code!r} already exists", instance_code=new_code
                )
        elif new_code is not None:
            raise InvalidRequestError("instance_code", "only grouped batches carry an instance_code")

    with ledger_transaction("update_batch") as scope:
        if new_attributes is not None:
            batch.attribute_data = new_attributes
        if new_code is not _UNSET:
            batch.instance_code = new_code
        if batch_identifier is not _UNSET:
            batch.batch_identifier = (batch_identifier or "").strip() or batch.instance_code
        scope.track(batch)

    return batch


def delete_batch(batch_id: int) -> None:
    """
    Hard-delete a batch that was never touched after receipt.

    Refused once anything was deducted, adjusted, moved, split from it or
    carved out of it.
    """
    with ledger_transaction("delete_batch"):
        batch = get_batch(batch_id)

        receipts = db.session.query(DeductionReceipt.id).filter_by(inventory_batch_id=batch.id).count()
        movements = db.session.query(BatchMovement).filter_by(inventory_batch_id=batch.id).all()
        children = db.session.query(InventoryBatch.id).filter_by(source_batch_id=batch.id).count()
        related = (
            db.session.query(BatchMovement.id)
            .filter(BatchMovement.related_batch_id == batch.id)
            .count()
        )
        untouched = (
            batch.remaining_quantity == batch.initial_quantity
            and batch.status == BATCH_STATUS_IN_STOCK
            and receipts == 0
            and children == 0
            and related == 0
            and len(movements) == 1
        )
        if not untouched:
            raise UnsupportedOperationError(
                "delete_batch",
                "batch has ledger history; scrap or adjust it instead",
                batch_id=batch.id,
            )

        for movement in movements:
            db.session.delete(movement)
        db.session.delete(batch)

    current_app.logger.info("Deleted untouched batch %s", batch_id)


def audit_ledger(product_id: int | None = None, branch_id: int | None = None) -> dict:
    """
    Invariant and conservation report over a set of batches.

    total_allocated is taken from deduction receipts and cross-checked
    against ALLOCATE movements.
    """
    batches = list_batches(product_id=product_id, branch_id=branch_id, limit=1_000_000)
    batch_ids = [b.id for b in batches]

    violations = []
    for batch in batches:
        for problem in check_batch_invariants(batch):
            violations.append({"batch_id": batch.id, "problem": problem})

    total_initial = sum((b.initial_quantity for b in batches), ZERO)
    total_remaining = sum((b.remaining_quantity for b in batches), ZERO)

    if batch_ids:
        allocated = (
            db.session.query(db.func.coalesce(db.func.sum(DeductionReceipt.quantity_deducted), 0))
            .filter(DeductionReceipt.inventory_batch_id.in_(batch_ids))
            .scalar()
        )
        total_allocated = quantize(Decimal(str(allocated or 0)))
    else:
        total_allocated = ZERO

    allocated_by_movements = -sum_movements(batch_ids, (MOVEMENT_ALLOCATE,))
    if allocated_by_movements != total_allocated:
        violations.append({
            "batch_id": None,
            "problem": (
                f"deduction receipts total {total_allocated}, "
                f"ALLOCATE movements total {allocated_by_movements}"
            ),
        })

    return {
        "product_id": product_id,
        "branch_id": branch_id,
        "batch_count": len(batches),
        "total_initial": str(total_initial),
        "total_remaining": str(total_remaining),
        "total_allocated": str(total_allocated),
        "violations": violations,
        "ok": not violations,
    }
