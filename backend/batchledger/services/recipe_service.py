# Overview: Recipe registration and resolution for manufactured products.

from __future__ import annotations

from decimal import Decimal
from typing import Any

from flask import current_app

from ..extensions import db
from ..errors import AmbiguousRecipeError, InvalidRequestError, NotFoundError
from ..models import Product, Recipe
from ..models.catalog import PRODUCT_TYPE_MANUFACTURED_VIRTUAL, PRODUCT_TYPE_RAW_TRACKED
from ..quantities import to_decimal

# Storage scale of Recipe.conversion_factor, Numeric(15, 4)
FACTOR_PLACES = Decimal("0.0001")


def get_recipe(recipe_id: int) -> Recipe:
    recipe = db.session.get(Recipe, recipe_id)
    if recipe is None:
        raise NotFoundError("recipe", recipe_id)
    return recipe


def create_recipe(
    virtual_product_id: int,
    raw_product_id: int,
    conversion_factor: Any,
    *,
    name: str | None = None,
) -> Recipe:
    """
    Register a recipe: one unit of the virtual product consumes
    conversion_factor units of the raw product.

    Raises:
        NotFoundError: either product is missing
        InvalidRequestError: wrong product types, factor <= 0 or finer than
            four decimals, duplicate pair
    """
    factor = to_decimal(conversion_factor, field="conversion_factor")
    if factor <= 0:
        raise InvalidRequestError("conversion_factor", "must be greater than 0")
    if factor != factor.quantize(FACTOR_PLACES):
        raise InvalidRequestError("conversion_factor", "at most 4 decimal places")

    virtual = db.session.get(Product, virtual_product_id)
    if virtual is None:
        raise NotFoundError("product", virtual_product_id)
    raw = db.session.get(Product, raw_product_id)
    if raw is None:
        raise NotFoundError("product", raw_product_id)

    if virtual.product_type != PRODUCT_TYPE_MANUFACTURED_VIRTUAL:
        raise InvalidRequestError("virtual_product_id", f"product {virtual.sku} is not manufactured_virtual")
    if raw.product_type != PRODUCT_TYPE_RAW_TRACKED:
        raise InvalidRequestError("raw_product_id", f"product {raw.sku} is not raw_tracked")

    existing = (
        db.session.query(Recipe)
        .filter_by(virtual_product_id=virtual.id, raw_product_id=raw.id)
        .first()
    )
    if existing is not None:
        raise InvalidRequestError("raw_product_id", f"recipe {existing.id} already links these products")

    recipe = Recipe(
        name=(name or "").strip() or f"{virtual.name} from {raw.name}",
        virtual_product_id=virtual.id,
        raw_product_id=raw.id,
        conversion_factor=factor,
        is_active=True,
    )
    db.session.add(recipe)
    db.session.commit()
    current_app.logger.info(
        "Created recipe %s: %s x%s -> %s", recipe.id, raw.sku, factor, virtual.sku
    )
    return recipe


def deactivate_recipe(recipe_id: int) -> Recipe:
    recipe = get_recipe(recipe_id)
    recipe.is_active = False
    db.session.commit()
    return recipe


def resolve_recipe(virtual_product_id: int, recipe_id: int | None = None) -> Recipe:
    """
    Pick the recipe a sale of the virtual product consumes through.

    An explicit recipe_id must exist, be active and belong to the product.
    Otherwise the product must have exactly one active recipe.
    """
    if recipe_id is not None:
        recipe = get_recipe(recipe_id)
        if recipe.virtual_product_id != virtual_product_id:
            raise InvalidRequestError(
                "recipe_id",
                f"recipe {recipe_id} does not produce product {virtual_product_id}",
            )
        if not recipe.is_active:
            raise InvalidRequestError("recipe_id", f"recipe {recipe_id} is inactive")
        return recipe

    recipes = (
        db.session.query(Recipe)
        .filter_by(virtual_product_id=virtual_product_id, is_active=True)
        .order_by(Recipe.id.asc())
        .all()
    )
    if not recipes:
        raise NotFoundError("recipe", f"active recipe for product {virtual_product_id}")
    if len(recipes) > 1:
        raise AmbiguousRecipeError(virtual_product_id, [r.id for r in recipes])
    return recipes[0]
