from __future__ import annotations

from ..extensions import db
from ..time_utils import isoformat_z, utcnow


PRODUCT_TYPE_RAW_TRACKED = "raw_tracked"
PRODUCT_TYPE_MANUFACTURED_VIRTUAL = "manufactured_virtual"
PRODUCT_TYPE_STANDARD = "standard"
PRODUCT_TYPES = {PRODUCT_TYPE_RAW_TRACKED, PRODUCT_TYPE_MANUFACTURED_VIRTUAL, PRODUCT_TYPE_STANDARD}


class Branch(db.Model):
    """
    Branch reference data. Managed by the catalog; the ledger only reads it.
    """
    __tablename__ = "branches"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_branches_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(32), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Branch id={self.id} code={self.code!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "is_active": self.is_active,
        }


class Category(db.Model):
    """
    Product category.

    ARCHETYPE: bound once when the category is configured (see
    `flask ledger bind-category`). The attribute validator matches on this
    column, never on the category name.

    attribute_defaults are merged beneath operator-supplied attributes when a
    batch is received into this category.
    """
    __tablename__ = "categories"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    archetype = db.Column(db.String(32), nullable=False, default="GENERIC")

    # Branch-restricted categories only accept batches at that branch
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True, index=True)

    attribute_defaults = db.Column(db.JSON, nullable=False, default=dict)

    branch = db.relationship("Branch")

    def __repr__(self) -> str:
        return f"<Category id={self.id} name={self.name!r} archetype={self.archetype}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "archetype": self.archetype,
            "branch_id": self.branch_id,
            "attribute_defaults": dict(self.attribute_defaults or {}),
        }


class Product(db.Model):
    """
    Product reference data.

    Only raw_tracked products own inventory batches. manufactured_virtual
    products are sold through a Recipe that consumes a raw product.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    base_unit = db.Column(db.String(32), nullable=False, default="unit")
    product_type = db.Column(db.String(32), nullable=False, default=PRODUCT_TYPE_RAW_TRACKED, index=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)

    category = db.relationship("Category")

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} type={self.product_type}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "base_unit": self.base_unit,
            "product_type": self.product_type,
            "category_id": self.category_id,
        }


class Recipe(db.Model):
    """
    Bill of materials for a manufactured product.

    One unit of the virtual product consumes conversion_factor units (in the
    raw product's base unit) of the raw product.
    """
    __tablename__ = "recipes"
    __table_args__ = (
        db.UniqueConstraint("virtual_product_id", "raw_product_id", name="uq_recipes_virtual_raw"),
        db.CheckConstraint("conversion_factor > 0", name="conversion_factor_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    virtual_product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    raw_product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    conversion_factor = db.Column(db.Numeric(15, 4), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    virtual_product = db.relationship("Product", foreign_keys=[virtual_product_id])
    raw_product = db.relationship("Product", foreign_keys=[raw_product_id])

    def __repr__(self) -> str:
        return f"<Recipe id={self.id} virtual={self.virtual_product_id} raw={self.raw_product_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "virtual_product_id": self.virtual_product_id,
            "raw_product_id": self.raw_product_id,
            "conversion_factor": str(self.conversion_factor),
            "is_active": self.is_active,
            "created_at": isoformat_z(self.created_at),
        }
