from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from ..time_utils import isoformat_z, utcnow


BATCH_STATUS_IN_STOCK = "in_stock"
BATCH_STATUS_DEPLETED = "depleted"
BATCH_STATUS_SCRAPPED = "scrapped"
BATCH_STATUSES = (BATCH_STATUS_IN_STOCK, BATCH_STATUS_DEPLETED, BATCH_STATUS_SCRAPPED)

MOVEMENT_RECEIVE = "RECEIVE"
MOVEMENT_ALLOCATE = "ALLOCATE"
MOVEMENT_ADJUST_INCREASE = "ADJUST_INCREASE"
MOVEMENT_ADJUST_DECREASE = "ADJUST_DECREASE"
MOVEMENT_TRANSFER = "TRANSFER"
MOVEMENT_TRANSFER_OUT = "TRANSFER_OUT"
MOVEMENT_TRANSFER_IN = "TRANSFER_IN"
MOVEMENT_SPLIT_OUT = "SPLIT_OUT"
MOVEMENT_SPLIT_IN = "SPLIT_IN"
MOVEMENT_SCRAP = "SCRAP"

# Movements that bring a batch into existence
ORIGIN_MOVEMENTS = (MOVEMENT_RECEIVE, MOVEMENT_TRANSFER_IN, MOVEMENT_SPLIT_IN)

# Unique index on instance_code, and how SQLite reports a violation of it
INSTANCE_CODE_UNIQUE = "uq_inventory_batches_instance_code"
SQLITE_INSTANCE_CODE_UNIQUE = "UNIQUE constraint failed: inventory_batches.instance_code"

ZERO = Decimal("0")


def _qty(value) -> str | None:
    return None if value is None else str(value)


class BatchType(db.Model):
    """
    Configurable batch type (Coil, Loose, Pallet, Carton, ...).

    can_split: batches of this type may be slit into grouped batches.
    is_default: used when neither the caller nor the category names a type.
    At most one batch type carries is_default (partial unique index).
    """
    __tablename__ = "batch_types"
    __table_args__ = (
        db.UniqueConstraint("name", name="uq_batch_types_name"),
        db.Index(
            "uq_batch_types_single_default",
            "is_default",
            unique=True,
            sqlite_where=db.text("is_default"),
            postgresql_where=db.text("is_default"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), nullable=False)
    description = db.Column(db.String(255), nullable=True)
    can_split = db.Column(db.Boolean, nullable=False, default=False)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<BatchType id={self.id} name={self.name!r} can_split={self.can_split}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "can_split": self.can_split,
            "is_default": self.is_default,
            "is_active": self.is_active,
        }


class CategoryBatchType(db.Model):
    """Batch types allowed for a category. Assignment order picks the category default."""
    __tablename__ = "category_batch_types"

    category_id = db.Column(db.Integer, db.ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True)
    batch_type_id = db.Column(db.Integer, db.ForeignKey("batch_types.id", ondelete="CASCADE"), primary_key=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class InventoryBatch(db.Model):
    """
    A discrete, quantity-bearing unit of physical stock.

    INVARIANTS (checked in the mutating transaction, and by CHECK constraints):
    1. 0 <= remaining_quantity <= initial_quantity
    2. grouped => instance_code present and globally unique
    3. depleted => remaining_quantity == 0; in_stock => remaining_quantity > 0
    4. attribute_data satisfies the category archetype (services/batch_service.py)

    Quantities are in the product's base unit. Only the mutation service
    writes remaining_quantity. version_id is the optimistic lock: an UPDATE
    that loses a race raises StaleDataError.
    """
    __tablename__ = "inventory_batches"
    __table_args__ = (
        db.UniqueConstraint("instance_code", name=INSTANCE_CODE_UNIQUE),
        db.CheckConstraint("remaining_quantity >= 0", name="remaining_non_negative"),
        db.CheckConstraint("remaining_quantity <= initial_quantity", name="remaining_within_initial"),
        db.CheckConstraint("NOT grouped OR instance_code IS NOT NULL", name="grouped_has_instance_code"),
        db.CheckConstraint(
            "status IN ('in_stock', 'depleted', 'scrapped')",
            name="status_valid",
        ),
        db.CheckConstraint("status != 'depleted' OR remaining_quantity = 0", name="depleted_is_empty"),
        db.CheckConstraint("status != 'in_stock' OR remaining_quantity > 0", name="in_stock_not_empty"),
        db.Index("ix_inventory_batches_availability", "product_id", "branch_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)
    batch_type_id = db.Column(db.Integer, db.ForeignKey("batch_types.id"), nullable=False, index=True)

    grouped = db.Column(db.Boolean, nullable=False, default=True)
    instance_code = db.Column(db.String(100), nullable=True)
    batch_identifier = db.Column(db.String(100), nullable=True)

    initial_quantity = db.Column(db.Numeric(15, 3), nullable=False)
    remaining_quantity = db.Column(db.Numeric(15, 3), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=BATCH_STATUS_IN_STOCK, index=True)

    attribute_data = db.Column(db.JSON, nullable=False, default=dict)

    # Batch this one was carved from by a partial transfer or a split
    source_batch_id = db.Column(db.Integer, db.ForeignKey("inventory_batches.id"), nullable=True, index=True)

    scrapped_at = db.Column(db.DateTime, nullable=True)
    scrap_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    product = db.relationship("Product")
    branch = db.relationship("Branch")
    category = db.relationship("Category")
    batch_type = db.relationship("BatchType")

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<InventoryBatch id={self.id} product_id={self.product_id} branch_id={self.branch_id} "
            f"remaining={self.remaining_quantity}/{self.initial_quantity} status={self.status}>"
        )

    @property
    def label(self) -> str:
        return self.instance_code or self.batch_identifier or f"#{self.id}"

    def invariant_violations(self) -> list[str]:
        """Quantity and identity invariants that do not need the database."""
        problems = []
        remaining = self.remaining_quantity
        initial = self.initial_quantity
        if remaining is None or initial is None:
            return ["quantities must be set"]
        if remaining < ZERO:
            problems.append("remaining_quantity is negative")
        if remaining > initial:
            problems.append("remaining_quantity exceeds initial_quantity")
        if self.grouped and not self.instance_code:
            problems.append("grouped batch has no instance_code")
        if self.status not in BATCH_STATUSES:
            problems.append(f"unknown status {self.status!r}")
        if self.status == BATCH_STATUS_DEPLETED and remaining != ZERO:
            problems.append("depleted batch has remaining quantity")
        if self.status == BATCH_STATUS_IN_STOCK and remaining == ZERO:
            problems.append("in_stock batch has no remaining quantity")
        return problems

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "branch_id": self.branch_id,
            "category_id": self.category_id,
            "batch_type_id": self.batch_type_id,
            "grouped": self.grouped,
            "instance_code": self.instance_code,
            "batch_identifier": self.batch_identifier,
            "initial_quantity": _qty(self.initial_quantity),
            "remaining_quantity": _qty(self.remaining_quantity),
            "status": self.status,
            "attribute_data": dict(self.attribute_data or {}),
            "source_batch_id": self.source_batch_id,
            "scrapped_at": isoformat_z(self.scrapped_at),
            "scrap_reason": self.scrap_reason,
            "version_id": self.version_id,
            "created_at": isoformat_z(self.created_at),
            "updated_at": isoformat_z(self.updated_at),
        }


class DeductionReceipt(db.Model):
    """
    One committed allocation line.

    All receipts written by one commit share allocation_ref. reference is the
    caller's handle for what consumed the material (e.g. a sales item).
    """
    __tablename__ = "deduction_receipts"
    __table_args__ = (
        db.Index("ix_deduction_receipts_batch", "inventory_batch_id"),
        db.CheckConstraint("quantity_deducted > 0", name="quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    allocation_ref = db.Column(db.String(32), nullable=False, index=True)
    inventory_batch_id = db.Column(db.Integer, db.ForeignKey("inventory_batches.id"), nullable=False)
    recipe_id = db.Column(db.Integer, db.ForeignKey("recipes.id"), nullable=False, index=True)
    quantity_deducted = db.Column(db.Numeric(15, 3), nullable=False)
    reference = db.Column(db.String(128), nullable=True, index=True)
    actor = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    inventory_batch = db.relationship("InventoryBatch")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "allocation_ref": self.allocation_ref,
            "inventory_batch_id": self.inventory_batch_id,
            "recipe_id": self.recipe_id,
            "quantity_deducted": _qty(self.quantity_deducted),
            "reference": self.reference,
            "actor": self.actor,
            "created_at": isoformat_z(self.created_at),
        }


class BatchMovement(db.Model):
    """
    Append-only audit of every ledger mutation, written in the same
    transaction as the mutation it records.

    For any batch: sum(quantity_delta) == remaining_quantity, and the latest
    row's remaining_after / initial_after match the batch.
    """
    __tablename__ = "batch_movements"
    __table_args__ = (
        db.Index("ix_batch_movements_batch_occurred", "inventory_batch_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    inventory_batch_id = db.Column(db.Integer, db.ForeignKey("inventory_batches.id"), nullable=False)
    movement_type = db.Column(db.String(32), nullable=False, index=True)

    quantity_delta = db.Column(db.Numeric(15, 3), nullable=False)
    remaining_after = db.Column(db.Numeric(15, 3), nullable=False)
    initial_after = db.Column(db.Numeric(15, 3), nullable=False)

    from_branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True)
    to_branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True)
    related_batch_id = db.Column(db.Integer, db.ForeignKey("inventory_batches.id"), nullable=True)
    allocation_ref = db.Column(db.String(32), nullable=True, index=True)

    reason = db.Column(db.String(255), nullable=True)
    actor = db.Column(db.String(128), nullable=True)

    occurred_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "inventory_batch_id": self.inventory_batch_id,
            "movement_type": self.movement_type,
            "quantity_delta": _qty(self.quantity_delta),
            "remaining_after": _qty(self.remaining_after),
            "initial_after": _qty(self.initial_after),
            "from_branch_id": self.from_branch_id,
            "to_branch_id": self.to_branch_id,
            "related_batch_id": self.related_batch_id,
            "allocation_ref": self.allocation_ref,
            "reason": self.reason,
            "actor": self.actor,
            "occurred_at": isoformat_z(self.occurred_at),
        }
