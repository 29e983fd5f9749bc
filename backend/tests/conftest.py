"""
Pytest fixtures for batch ledger tests.

Provides an in-memory database, a minimal catalog (branches, categories,
products, batch types, recipe) and a batch factory.
"""

from decimal import Decimal

import pytest

from batchledger import create_app
from batchledger.extensions import db
from batchledger.models import BatchType, Branch, Category, Product
from batchledger.models.catalog import PRODUCT_TYPE_MANUFACTURED_VIRTUAL, PRODUCT_TYPE_RAW_TRACKED
from batchledger.services import batch_service, recipe_service


ALUMINIUM_ATTRS = {
    "weight_kg": 50,
    "gauge_mm": 0.45,
    "embossment": "wood",
    "color_code": "RAL9010",
    "coil_number": "C-100",
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        app.config['GAUGE_LOOKUP'] = None
        app.config['ALLOCATION_STRATEGY'] = 'creation_order'

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def branch(db_session):
    branch = Branch(name="Main Yard", code="MAIN", is_active=True)
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def other_branch(db_session):
    branch = Branch(name="North Depot", code="NORTH", is_active=True)
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def loose_type(db_session):
    """Splittable default batch type."""
    batch_type = BatchType(name="Loose", can_split=True, is_default=True, is_active=True)
    db_session.add(batch_type)
    db_session.commit()
    return batch_type


@pytest.fixture(scope='function')
def coil_type(db_session):
    batch_type = BatchType(name="Coil", can_split=False, is_default=False, is_active=True)
    db_session.add(batch_type)
    db_session.commit()
    return batch_type


@pytest.fixture(scope='function')
def generic_category(db_session):
    category = Category(name="Sundries", archetype="GENERIC")
    db_session.add(category)
    db_session.commit()
    return category


@pytest.fixture(scope='function')
def aluminium_category(db_session):
    category = Category(name="Aluminium Coils", archetype="ALUMINIUM")
    db_session.add(category)
    db_session.commit()
    return category


@pytest.fixture(scope='function')
def raw_product(db_session, generic_category):
    product = Product(
        sku="RAW-001",
        name="Roofing Sheet Stock",
        base_unit="m",
        product_type=PRODUCT_TYPE_RAW_TRACKED,
        category_id=generic_category.id,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def aluminium_product(db_session, aluminium_category):
    product = Product(
        sku="ALU-001",
        name="Aluminium Coil 0.45",
        base_unit="kg",
        product_type=PRODUCT_TYPE_RAW_TRACKED,
        category_id=aluminium_category.id,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def virtual_product(db_session):
    product = Product(
        sku="VIRT-001",
        name="Cut Roofing Sheet",
        base_unit="pcs",
        product_type=PRODUCT_TYPE_MANUFACTURED_VIRTUAL,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def recipe(db_session, virtual_product, raw_product):
    """Each cut sheet consumes 2 m of raw stock."""
    return recipe_service.create_recipe(virtual_product.id, raw_product.id, Decimal("2.0"))


@pytest.fixture(scope='function')
def make_batch(db_session, branch, raw_product, loose_type):
    """Factory for ungrouped raw batches at the main branch."""

    def _make(quantity, **overrides):
        kwargs = {
            "grouped": False,
            "attribute_data": {},
        }
        kwargs.update(overrides)
        product_id = kwargs.pop("product_id", raw_product.id)
        branch_id = kwargs.pop("branch_id", branch.id)
        return batch_service.create_batch(product_id, branch_id, quantity, **kwargs)

    return _make
