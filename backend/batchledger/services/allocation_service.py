# Overview: Read-only allocation proposals for manufactured products sold through a recipe.

"""
Allocation Proposal Engine (authoritative)

- required_quantity = output_quantity x conversion_factor, kept unrounded.
- Candidates: in_stock batches of the recipe's raw product with stock left,
  at the requested branch (any branch when None), optionally narrowed by an
  exact attribute match.
- Greedy walk in strategy order; every line is quantized to the storage scale.
- If the candidates cannot cover the requirement (within tolerance) the
  engine raises InsufficientStockError. It never returns a partial proposal.
- Proposing writes nothing. commit_allocation in mutation_service re-checks
  every line under lock.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping

from flask import current_app

from ..errors import InsufficientStockError, InvalidRequestError
from ..models import InventoryBatch
from ..quantities import ZERO, covers, quantity_tolerance, quantize, to_decimal
from .batch_service import list_available_batches
from .recipe_service import resolve_recipe


STRATEGY_CREATION_ORDER = "creation_order"
STRATEGY_LARGEST_FIRST = "largest_first"
STRATEGY_SMALLEST_FIRST = "smallest_first"


def _creation_key(batch: InventoryBatch):
    return (batch.created_at, batch.id)


# Every ordering ends on creation order so results are deterministic
STRATEGIES = {
    STRATEGY_CREATION_ORDER: lambda batches: sorted(batches, key=_creation_key),
    STRATEGY_LARGEST_FIRST: lambda batches: sorted(
        batches, key=lambda b: (-b.remaining_quantity, b.created_at, b.id)
    ),
    STRATEGY_SMALLEST_FIRST: lambda batches: sorted(
        batches, key=lambda b: (b.remaining_quantity, b.created_at, b.id)
    ),
}


@dataclass(frozen=True)
class AllocationLine:
    inventory_batch_id: int
    quantity_deducted: Decimal

    def to_dict(self) -> dict:
        return {
            "inventory_batch_id": self.inventory_batch_id,
            "quantity_deducted": str(self.quantity_deducted),
        }


@dataclass(frozen=True)
class Proposal:
    """An uncommitted set of batch deductions covering one sale line."""

    recipe_id: int
    virtual_product_id: int
    raw_product_id: int
    conversion_factor: Decimal
    output_quantity: Decimal
    required_quantity: Decimal
    selected_total: Decimal
    branch_id: int | None
    strategy: str
    lines: tuple = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "recipe_id": self.recipe_id,
            "virtual_product_id": self.virtual_product_id,
            "raw_product_id": self.raw_product_id,
            "conversion_factor": str(self.conversion_factor),
            "output_quantity": str(self.output_quantity),
            "required_quantity": str(self.required_quantity),
            "selected_total": str(self.selected_total),
            "branch_id": self.branch_id,
            "strategy": self.strategy,
            "lines": [line.to_dict() for line in self.lines],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Proposal":
        """Rebuild a proposal sent back by a collaborator (e.g. after user confirmation)."""
        if not isinstance(data, Mapping):
            raise InvalidRequestError("proposal", "must be an object")
        try:
            raw_lines = data["lines"]
            lines = tuple(
                AllocationLine(
                    inventory_batch_id=int(line["inventory_batch_id"]),
                    quantity_deducted=to_decimal(line["quantity_deducted"], field="quantity_deducted"),
                )
                for line in raw_lines
            )
            return cls(
                recipe_id=int(data["recipe_id"]),
                virtual_product_id=int(data["virtual_product_id"]),
                raw_product_id=int(data["raw_product_id"]),
                conversion_factor=to_decimal(data["conversion_factor"], field="conversion_factor"),
                output_quantity=to_decimal(data["output_quantity"], field="output_quantity"),
                required_quantity=to_decimal(data["required_quantity"], field="required_quantity"),
                selected_total=to_decimal(
                    data.get("selected_total", sum((l.quantity_deducted for l in lines), ZERO)),
                    field="selected_total",
                ),
                branch_id=None if data.get("branch_id") is None else int(data["branch_id"]),
                strategy=str(data.get("strategy") or STRATEGY_CREATION_ORDER),
                lines=lines,
            )
        except KeyError as exc:
            raise InvalidRequestError(str(exc.args[0]), "is required") from exc
        except (TypeError, ValueError) as exc:
            raise InvalidRequestError("proposal", f"malformed proposal: {exc}") from exc


def _resolve_strategy(strategy: str | None) -> str:
    name = strategy or current_app.config.get("ALLOCATION_STRATEGY") or STRATEGY_CREATION_ORDER
    if name not in STRATEGIES:
        raise InvalidRequestError("strategy", f"must be one of: {', '.join(sorted(STRATEGIES))}")
    return name


def _same_value(stored: Any, wanted: Any) -> bool:
    numeric = (int, float, Decimal)
    if isinstance(stored, numeric) and isinstance(wanted, numeric) \
            and not isinstance(stored, bool) and not isinstance(wanted, bool):
        return Decimal(str(stored)) == Decimal(str(wanted))
    return stored == wanted


def matches_attributes(batch: InventoryBatch, attribute_filter: Mapping[str, Any] | None) -> bool:
    if not attribute_filter:
        return True
    data = batch.attribute_data or {}
    return all(key in data and _same_value(data[key], value) for key, value in attribute_filter.items())


def propose_allocation(
    virtual_product_id: int,
    output_quantity: Any,
    branch_id: int | None = None,
    recipe_id: int | None = None,
    *,
    strategy: str | None = None,
    attribute_filter: Mapping[str, Any] | None = None,
) -> Proposal:
    """
    Compute which batches to deduct from to produce output_quantity units.

    Returns:
        Proposal: lines summing to required_quantity (within tolerance)

    Raises:
        InvalidRequestError: bad quantity or strategy, ambiguous recipe
        NotFoundError: no usable recipe
        InsufficientStockError: candidates cannot cover the requirement
    """
    output = to_decimal(output_quantity, field="output_quantity")
    if output <= ZERO:
        raise InvalidRequestError("output_quantity", "must be greater than 0")
    strategy_name = _resolve_strategy(strategy)
    recipe = resolve_recipe(virtual_product_id, recipe_id)

    factor = Decimal(str(recipe.conversion_factor))
    required = output * factor
    tolerance = quantity_tolerance()

    candidates = [
        b for b in list_available_batches(recipe.raw_product_id, branch_id)
        if matches_attributes(b, attribute_filter)
    ]

    lines = []
    running = ZERO
    for batch in STRATEGIES[strategy_name](candidates):
        if lines and covers(running, required, tolerance):
            break
        take = quantize(min(batch.remaining_quantity, required - running))
        if take <= ZERO:
            break
        lines.append(AllocationLine(inventory_batch_id=batch.id, quantity_deducted=take))
        running += take

    if not lines and candidates:
        raise InvalidRequestError("output_quantity", "requirement rounds to zero at the storage scale")
    if not lines or not covers(running, required, tolerance):
        current_app.logger.info(
            "Allocation for product %s short: required=%s available=%s branch=%s",
            virtual_product_id, required, running, branch_id,
        )
        raise InsufficientStockError(
            required=required,
            available=running,
            product_id=recipe.raw_product_id,
        )

    return Proposal(
        recipe_id=recipe.id,
        virtual_product_id=virtual_product_id,
        raw_product_id=recipe.raw_product_id,
        conversion_factor=factor,
        output_quantity=output,
        required_quantity=required,
        selected_total=running,
        branch_id=branch_id,
        strategy=strategy_name,
        lines=tuple(lines),
    )
