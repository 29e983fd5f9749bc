# Overview: Flask CLI command group for operating the batch ledger.

# backend/batchledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to "batchledger" (PowerShell: $env:FLASK_APP="batchledger").
# - Use: python -m flask ledger <command> [options]
#
# Setup:
# - python -m flask ledger init-db
#   Create all tables that do not exist yet.
# - python -m flask ledger seed-batch-types
#   Create the standard batch types (Coil, Loose, Pallet, Carton). Idempotent.
# - python -m flask ledger bind-category 3 [--archetype ALUMINIUM]
#   Bind a category to an attribute archetype (derived from its name when omitted).
#
# Allocation:
# - python -m flask ledger propose --product 12 --quantity 10 [--branch 1] [--recipe 4] [--strategy largest_first]
#   Print the proposal JSON without committing anything.
#
# Inspection and correction:
# - python -m flask ledger audit [--product 5] [--branch 1]
#   Invariant and conservation report; exits 1 when violations are found.
# - python -m flask ledger adjust 42 decrease 3.5 --reason "water damage"
#   Adjust a batch quantity (retries on write conflicts).

import json

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .errors import LedgerError, NotFoundError
from .models import Category
from .services import allocation_service, batch_service, batch_type_service, mutation_service
from .services.concurrency import run_with_retry
from .validation import Archetype, archetype_for_category_name, coerce_archetype


def _fail(exc: LedgerError) -> None:
    click.echo(json.dumps(exc.to_dict(), indent=2), err=True)
    raise SystemExit(1)


@click.group('ledger')
def ledger_group():
    """Batch ledger setup, allocation and audit commands."""


@ledger_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables."""
    db.create_all()
    click.echo("PASS Tables created")


@ledger_group.command('seed-batch-types')
@with_appcontext
def seed_batch_types_cli():
    created = batch_type_service.seed_batch_types()
    default = batch_type_service.get_default_batch_type()
    click.echo(f"PASS Created {created} batch type(s); default is {default.name if default else 'none'}")


@ledger_group.command('bind-category')
@click.argument('category_id', type=int)
@click.option(
    '--archetype',
    type=click.Choice([a.value for a in Archetype], case_sensitive=False),
    help='Archetype to bind; derived from the category name when omitted',
)
@with_appcontext
def bind_category(category_id, archetype):
    """Bind a category to the archetype its batch attributes are validated against."""
    category = db.session.get(Category, category_id)
    if category is None:
        _fail(NotFoundError("category", category_id))

    chosen = coerce_archetype(archetype) if archetype else archetype_for_category_name(category.name)
    previous = category.archetype
    category.archetype = chosen.value
    db.session.commit()
    current_app.logger.info("Category %s bound to %s (was %s)", category.id, chosen.value, previous)
    click.echo(f"PASS Category {category.id} ({category.name}) -> {chosen.value}")


@ledger_group.command('propose')
@click.option('--product', 'product_id', type=int, required=True, help='Manufactured product ID')
@click.option('--quantity', required=True, help='Output quantity of the manufactured product')
@click.option('--branch', 'branch_id', type=int, help='Branch ID (any branch when omitted)')
@click.option('--recipe', 'recipe_id', type=int, help='Pin a specific recipe')
@click.option('--strategy', type=click.Choice(sorted(allocation_service.STRATEGIES)), help='Batch ordering')
@with_appcontext
def propose(product_id, quantity, branch_id, recipe_id, strategy):
    """Show which batches a sale would consume. Nothing is committed."""
    try:
        proposal = allocation_service.propose_allocation(
            product_id, quantity, branch_id, recipe_id, strategy=strategy
        )
    except LedgerError as exc:
        _fail(exc)
    click.echo(json.dumps(proposal.to_dict(), indent=2))


@ledger_group.command('audit')
@click.option('--product', 'product_id', type=int, help='Limit to one raw product')
@click.option('--branch', 'branch_id', type=int, help='Limit to one branch')
@with_appcontext
def audit(product_id, branch_id):
    """Check batch invariants and movement-log conservation."""
    report = batch_service.audit_ledger(product_id=product_id, branch_id=branch_id)
    click.echo(json.dumps(report, indent=2))
    if not report["ok"]:
        current_app.logger.warning("Ledger audit found %d violation(s)", len(report["violations"]))
        raise SystemExit(1)


@ledger_group.command('adjust')
@click.argument('batch_id', type=int)
@click.argument('direction', type=click.Choice([mutation_service.ADJUST_INCREASE, mutation_service.ADJUST_DECREASE]))
@click.argument('quantity')
@click.option('--reason', required=True, help='Why the count changed')
@click.option('--actor', default='cli', show_default=True, help='Recorded on the movement row')
@with_appcontext
def adjust(batch_id, direction, quantity, reason, actor):
    """Adjust a batch's quantity against a physical count."""
    try:
        batch = run_with_retry(
            lambda: mutation_service.adjust_stock(batch_id, direction, quantity, reason, actor=actor)
        )
    except LedgerError as exc:
        current_app.logger.exception("Adjustment of batch %s failed", batch_id)
        _fail(exc)
    click.echo(json.dumps(batch.to_dict(), indent=2))


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(ledger_group)
