# backend/batchledger/config.py
from __future__ import annotations
import os
from decimal import Decimal


class Config:
    # SQLite file next to the instance by default; any SQLAlchemy URL works
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///batchledger.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Absolute tolerance for quantity comparisons, in the product's base unit.
    # Applied to comparisons only, never to stored or required quantities.
    QUANTITY_TOLERANCE = Decimal(os.environ.get("QUANTITY_TOLERANCE", "0.001"))

    # creation_order | largest_first | smallest_first
    ALLOCATION_STRATEGY = os.environ.get("ALLOCATION_STRATEGY", "creation_order")

    # Busy timeout for SQLite writers; lock waits beyond it surface as
    # ConcurrentModificationError.
    LEDGER_LOCK_TIMEOUT_SECONDS = float(os.environ.get("LEDGER_LOCK_TIMEOUT_SECONDS", "5"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Optional callable (category) -> bool deciding which categories accept a
    # gauge attribute. None means "aluminium categories only".
    GAUGE_LOOKUP = None
