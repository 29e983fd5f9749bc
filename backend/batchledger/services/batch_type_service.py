# Overview: Batch type configuration: default type, splittability, category assignment.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import InvalidRequestError, NotFoundError, UnsupportedOperationError
from ..models import BatchType, Category, CategoryBatchType, InventoryBatch
from ..models.inventory import BATCH_STATUS_IN_STOCK


DEFAULT_BATCH_TYPES = (
    {"name": "Coil", "description": "Single identifiable coil", "can_split": False},
    {"name": "Loose", "description": "Bulk stock without unit identity", "can_split": True, "is_default": True},
    {"name": "Pallet", "description": "Palletised stock", "can_split": False},
    {"name": "Carton", "description": "Boxed stock", "can_split": False},
)


def get_batch_type(batch_type_id: int) -> BatchType:
    batch_type = db.session.get(BatchType, batch_type_id)
    if batch_type is None:
        raise NotFoundError("batch_type", batch_type_id)
    return batch_type


def get_default_batch_type() -> BatchType | None:
    return (
        db.session.query(BatchType)
        .filter(BatchType.is_default.is_(True), BatchType.is_active.is_(True))
        .first()
    )


def _clear_default() -> None:
    for current in db.session.query(BatchType).filter(BatchType.is_default.is_(True)).all():
        current.is_default = False
    # The single-default index is checked per row; clear before setting
    db.session.flush()


def create_batch_type(
    name: str,
    *,
    description: str | None = None,
    can_split: bool = False,
    is_default: bool = False,
) -> BatchType:
    name = (name or "").strip()
    if not name:
        raise InvalidRequestError("name", "batch type name is required")
    if db.session.query(BatchType).filter_by(name=name).first():
        raise InvalidRequestError("name", f"batch type {name!r} already exists")

    if is_default:
        _clear_default()

    batch_type = BatchType(
        name=name,
        description=(description or "").strip() or None,
        can_split=bool(can_split),
        is_default=bool(is_default),
        is_active=True,
    )
    db.session.add(batch_type)
    db.session.commit()
    return batch_type


def update_batch_type(
    batch_type_id: int,
    *,
    description: str | None = None,
    can_split: bool | None = None,
    is_active: bool | None = None,
) -> BatchType:
    """
    Update a batch type's flags.

    A type still used by in_stock batches cannot be deactivated. Deactivating
    the default type also clears its default flag.
    """
    batch_type = get_batch_type(batch_type_id)

    if description is not None:
        batch_type.description = description.strip() or None
    if can_split is not None:
        batch_type.can_split = bool(can_split)
    if is_active is not None:
        if not is_active and batch_type.is_active:
            in_use = (
                db.session.query(InventoryBatch)
                .filter_by(batch_type_id=batch_type_id, status=BATCH_STATUS_IN_STOCK)
                .count()
            )
            if in_use:
                db.session.rollback()
                raise UnsupportedOperationError(
                    "deactivate_batch_type",
                    f"{in_use} in-stock batch(es) use this batch type",
                )
            batch_type.is_default = False
        batch_type.is_active = bool(is_active)

    db.session.commit()
    return batch_type


def set_default_batch_type(batch_type_id: int) -> BatchType:
    """Make one active batch type the default; the previous default is cleared in the same transaction."""
    batch_type = get_batch_type(batch_type_id)
    if not batch_type.is_active:
        raise InvalidRequestError("batch_type_id", "inactive batch type cannot be the default")

    _clear_default()
    batch_type.is_default = True
    db.session.commit()
    current_app.logger.info("Default batch type is now %s", batch_type.name)
    return batch_type


def assign_batch_type_to_category(category_id: int, batch_type_id: int) -> CategoryBatchType:
    if db.session.get(Category, category_id) is None:
        raise NotFoundError("category", category_id)
    get_batch_type(batch_type_id)

    existing = db.session.get(CategoryBatchType, (category_id, batch_type_id))
    if existing is not None:
        return existing

    assignment = CategoryBatchType(category_id=category_id, batch_type_id=batch_type_id)
    db.session.add(assignment)
    db.session.commit()
    return assignment


def category_batch_types(category_id: int, *, active_only: bool = True) -> list[BatchType]:
    """Batch types assigned to a category, in assignment order."""
    query = (
        db.session.query(BatchType)
        .join(CategoryBatchType, CategoryBatchType.batch_type_id == BatchType.id)
        .filter(CategoryBatchType.category_id == category_id)
    )
    if active_only:
        query = query.filter(BatchType.is_active.is_(True))
    return query.order_by(CategoryBatchType.created_at.asc(), BatchType.id.asc()).all()


def resolve_batch_type(batch_type_id: int | None, category: Category | None) -> BatchType:
    """
    Pick the batch type for a new batch.

    Order: explicit id, then the category's first assigned active type, then
    the global default. The result must be active, and must be assigned to the
    category whenever the category has assignments.
    """
    assigned = category_batch_types(category.id, active_only=False) if category is not None else []

    if batch_type_id is not None:
        batch_type = get_batch_type(batch_type_id)
    else:
        active_assigned = [bt for bt in assigned if bt.is_active]
        batch_type = active_assigned[0] if active_assigned else get_default_batch_type()
        if batch_type is None:
            raise InvalidRequestError(
                "batch_type_id",
                "no batch type given and no category or default batch type is configured",
            )

    if not batch_type.is_active:
        raise InvalidRequestError("batch_type_id", f"batch type {batch_type.name!r} is inactive")
    if assigned and batch_type.id not in {bt.id for bt in assigned}:
        raise InvalidRequestError(
            "batch_type_id",
            f"batch type {batch_type.name!r} is not assigned to category {category.name!r}",
        )
    return batch_type


def seed_batch_types() -> int:
    """Create the standard batch types that are missing. Idempotent."""
    existing = {name for (name,) in db.session.query(BatchType.name).all()}
    has_default = get_default_batch_type() is not None
    created = 0
    for row in DEFAULT_BATCH_TYPES:
        if row["name"] in existing:
            continue
        is_default = bool(row.get("is_default")) and not has_default
        db.session.add(
            BatchType(
                name=row["name"],
                description=row["description"],
                can_split=row["can_split"],
                is_default=is_default,
                is_active=True,
            )
        )
        has_default = has_default or is_default
        created += 1
    db.session.commit()
    return created
