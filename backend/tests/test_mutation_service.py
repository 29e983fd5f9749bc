from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from batchledger.errors import (
    ConcurrentModificationError,
    GroupedIdentifierRequiredError,
    InsufficientStockError,
    InvalidAttributeError,
    InvalidRequestError,
    NotFoundError,
    QuantityExceedsAvailableError,
    UnsupportedOperationError,
)
from batchledger.models import BatchMovement, Branch, DeductionReceipt, InventoryBatch
from batchledger.models.inventory import (
    BATCH_STATUS_DEPLETED,
    BATCH_STATUS_IN_STOCK,
    BATCH_STATUS_SCRAPPED,
    MOVEMENT_SPLIT_IN,
    MOVEMENT_SPLIT_OUT,
    MOVEMENT_TRANSFER,
    MOVEMENT_TRANSFER_IN,
    MOVEMENT_TRANSFER_OUT,
)
from batchledger.services import batch_service, mutation_service
from batchledger.services.allocation_service import propose_allocation
from batchledger.services.concurrency import ledger_transaction, run_with_retry
from batchledger.services.ledger_service import list_movements, reconcile_batch
from batchledger.services.mutation_service import SplitOutput


def _fresh(db_session, batch_id):
    db_session.expire_all()
    return db_session.get(InventoryBatch, batch_id)


# Allocation commits

def test_commit_allocation_deducts_and_depletes(db_session, make_batch, recipe, virtual_product):
    batch1 = make_batch(15)
    batch2 = make_batch(10)
    proposal = propose_allocation(virtual_product.id, 10)

    receipts = mutation_service.commit_allocation(proposal, reference="SALE-7", actor="cashier")

    assert len(receipts) == 2
    assert len({r.allocation_ref for r in receipts}) == 1
    assert sum(r.quantity_deducted for r in receipts) == Decimal("20")
    assert all(r.recipe_id == recipe.id and r.reference == "SALE-7" for r in receipts)

    first = _fresh(db_session, batch1.id)
    second = _fresh(db_session, batch2.id)
    assert first.remaining_quantity == Decimal("0")
    assert first.status == BATCH_STATUS_DEPLETED
    assert second.remaining_quantity == Decimal("5")
    assert second.status == BATCH_STATUS_IN_STOCK
    assert reconcile_batch(first) == []
    assert reconcile_batch(second) == []


def test_commit_accepts_proposal_dict(db_session, make_batch, recipe, virtual_product):
    batch = make_batch(30)
    payload = propose_allocation(virtual_product.id, 10).to_dict()

    mutation_service.commit_allocation(payload)

    assert _fresh(db_session, batch.id).remaining_quantity == Decimal("10")


def test_commit_rejects_stale_proposal(db_session, make_batch, recipe, virtual_product):
    batch1 = make_batch(15)
    batch2 = make_batch(10)
    proposal = propose_allocation(virtual_product.id, 10)

    # batch1 shrinks to 5 between proposal and commit
    mutation_service.adjust_stock(batch1.id, "decrease", 10, "damaged in yard")

    with pytest.raises(InsufficientStockError) as excinfo:
        mutation_service.commit_allocation(proposal)
    assert excinfo.value.batch_id == batch1.id

    assert _fresh(db_session, batch1.id).remaining_quantity == Decimal("5")
    assert _fresh(db_session, batch2.id).remaining_quantity == Decimal("10")
    assert db_session.query(DeductionReceipt).count() == 0


def test_commit_rejects_scrapped_batch(db_session, make_batch, recipe, virtual_product):
    batch = make_batch(30)
    proposal = propose_allocation(virtual_product.id, 10)
    mutation_service.scrap_batch(batch.id, "rusted")

    with pytest.raises(InsufficientStockError):
        mutation_service.commit_allocation(proposal)


def test_commit_rolls_back_on_conflict_while_locking(db_session, make_batch, recipe, virtual_product, monkeypatch):
    batches = [make_batch(5), make_batch(5), make_batch(10)]
    proposal = propose_allocation(virtual_product.id, 10)
    assert len(proposal.lines) == 3

    real_load = mutation_service._load_for_update
    calls = []

    def conflicting_load(batch_id):
        calls.append(batch_id)
        if len(calls) == 2:
            raise StaleDataError("row version changed")
        return real_load(batch_id)

    monkeypatch.setattr(mutation_service, "_load_for_update", conflicting_load)

    with pytest.raises(ConcurrentModificationError) as excinfo:
        mutation_service.commit_allocation(proposal)
    assert excinfo.value.retryable is True

    for batch in batches:
        assert _fresh(db_session, batch.id).remaining_quantity == batch.initial_quantity
    assert db_session.query(DeductionReceipt).count() == 0


def test_commit_rolls_back_writes_already_made(db_session, make_batch, recipe, virtual_product, monkeypatch):
    batches = [make_batch(5), make_batch(5), make_batch(10)]
    proposal = propose_allocation(virtual_product.id, 10)

    real_record = mutation_service.record_movement
    calls = []

    def conflicting_record(*args, **kwargs):
        calls.append(args[0].id)
        if len(calls) == 2:
            raise StaleDataError("row version changed")
        return real_record(*args, **kwargs)

    monkeypatch.setattr(mutation_service, "record_movement", conflicting_record)

    with pytest.raises(ConcurrentModificationError):
        mutation_service.commit_allocation(proposal)

    first = _fresh(db_session, batches[0].id)
    assert first.remaining_quantity == Decimal("5")
    assert first.status == BATCH_STATUS_IN_STOCK
    assert len(list_movements(first.id)) == 1


def test_commit_rejects_empty_and_short_proposals(make_batch, recipe, virtual_product):
    make_batch(30)
    proposal = propose_allocation(virtual_product.id, 10).to_dict()

    with pytest.raises(InvalidRequestError):
        mutation_service.commit_allocation(dict(proposal, lines=[]))

    short = dict(proposal, lines=[dict(proposal["lines"][0], quantity_deducted="12")])
    with pytest.raises(InsufficientStockError):
        mutation_service.commit_allocation(short)


def test_commit_rejects_batch_of_other_product(db_session, make_batch, recipe, virtual_product, aluminium_product, branch):
    make_batch(30)
    foreign = batch_service.create_batch(
        aluminium_product.id, branch.id, 50, grouped=False,
        attribute_data={"weight_kg": 50, "gauge_mm": 0.45, "embossment": "plain",
                        "color_code": "RAL9010", "coil_number": "C-9"},
    )
    proposal = propose_allocation(virtual_product.id, 10).to_dict()
    proposal["lines"] = [{"inventory_batch_id": foreign.id, "quantity_deducted": "20"}]

    with pytest.raises(InvalidRequestError):
        mutation_service.commit_allocation(proposal)


def test_commit_recomputes_requirement_from_recipe(db_session, make_batch, recipe, virtual_product):
    batch = make_batch(30)
    proposal = propose_allocation(virtual_product.id, 10).to_dict()
    # 10 units at factor 2 need 20, whatever the payload claims
    proposal["required_quantity"] = "0.001"
    proposal["lines"] = [{"inventory_batch_id": batch.id, "quantity_deducted": "0.001"}]

    with pytest.raises(InsufficientStockError) as excinfo:
        mutation_service.commit_allocation(proposal)
    assert excinfo.value.required == Decimal("20")

    assert _fresh(db_session, batch.id).remaining_quantity == Decimal("30")
    assert db_session.query(DeductionReceipt).count() == 0


def test_commit_rejects_over_deduction(db_session, make_batch, recipe, virtual_product):
    batch = make_batch(30)
    proposal = propose_allocation(virtual_product.id, 10).to_dict()
    proposal["lines"] = [{"inventory_batch_id": batch.id, "quantity_deducted": "30"}]

    with pytest.raises(InvalidRequestError) as excinfo:
        mutation_service.commit_allocation(proposal)
    assert excinfo.value.field == "lines"

    fresh = _fresh(db_session, batch.id)
    assert fresh.remaining_quantity == Decimal("30")
    assert fresh.status == BATCH_STATUS_IN_STOCK
    assert db_session.query(DeductionReceipt).count() == 0


def test_commit_rejects_proposal_for_other_product(db_session, make_batch, recipe, virtual_product, raw_product):
    batch = make_batch(30)
    proposal = propose_allocation(virtual_product.id, 10).to_dict()
    proposal["virtual_product_id"] = raw_product.id

    with pytest.raises(InvalidRequestError) as excinfo:
        mutation_service.commit_allocation(proposal)
    assert excinfo.value.field == "virtual_product_id"
    assert _fresh(db_session, batch.id).remaining_quantity == Decimal("30")


def test_conservation_across_operations(db_session, make_batch, recipe, virtual_product, other_branch):
    batches = [make_batch(15), make_batch(25), make_batch(40)]
    for quantity in (3, 7, 5):
        mutation_service.commit_allocation(propose_allocation(virtual_product.id, quantity))
    mutation_service.adjust_stock(batches[2].id, "decrease", 4, "offcut")
    mutation_service.transfer_stock(batches[2].id, other_branch.id, 6)

    report = batch_service.audit_ledger()
    assert report["ok"] is True
    deducted = sum(
        (r.quantity_deducted for r in db_session.query(DeductionReceipt).all()), Decimal("0")
    )
    assert deducted == Decimal("30")
    assert Decimal(report["total_allocated"]) == deducted
    # The transfer moves stock between batches without changing the total
    assert Decimal(report["total_remaining"]) == Decimal("80") - deducted - 4


# Adjustments

def test_adjust_decrease_beyond_remaining(db_session, make_batch):
    batch = make_batch(10)
    mutation_service.adjust_stock(batch.id, "decrease", 7, "count")

    with pytest.raises(QuantityExceedsAvailableError) as excinfo:
        mutation_service.adjust_stock(batch.id, "decrease", 5, "damage")
    assert excinfo.value.available == Decimal("3")
    assert excinfo.value.requested == Decimal("5")

    unchanged = _fresh(db_session, batch.id)
    assert unchanged.remaining_quantity == Decimal("3")
    assert len(list_movements(batch.id)) == 2


def test_adjust_increase_expands_initial_and_restocks(db_session, make_batch):
    batch = make_batch(10)
    mutation_service.adjust_stock(batch.id, "decrease", 10, "count")
    assert _fresh(db_session, batch.id).status == BATCH_STATUS_DEPLETED

    adjusted = mutation_service.adjust_stock(batch.id, "increase", 12, "found on rack", actor="auditor")

    assert adjusted.remaining_quantity == Decimal("12")
    assert adjusted.initial_quantity == Decimal("12")
    assert adjusted.status == BATCH_STATUS_IN_STOCK
    assert reconcile_batch(adjusted) == []


@pytest.mark.parametrize("direction,quantity,reason", [
    ("sideways", 1, "count"),
    ("increase", 0, "count"),
    ("increase", 1, ""),
    ("decrease", 1, "   "),
])
def test_adjust_rejects_bad_arguments(make_batch, direction, quantity, reason):
    batch = make_batch(10)
    with pytest.raises(InvalidRequestError):
        mutation_service.adjust_stock(batch.id, direction, quantity, reason)


def test_adjust_missing_batch(db_session):
    with pytest.raises(NotFoundError):
        mutation_service.adjust_stock(424242, "increase", 1, "count")


# Transfers

def test_whole_transfer_moves_batch_in_place(db_session, make_batch, other_branch):
    batch = make_batch(10)
    origin = batch.branch_id

    moved = mutation_service.transfer_stock(batch.id, other_branch.id)

    assert moved.id == batch.id
    assert moved.branch_id == other_branch.id
    assert moved.remaining_quantity == Decimal("10")
    last = list_movements(batch.id)[-1]
    assert last.movement_type == MOVEMENT_TRANSFER
    assert (last.from_branch_id, last.to_branch_id) == (origin, other_branch.id)


def test_transfer_of_full_remaining_is_whole(make_batch, other_branch):
    batch = make_batch(10, grouped=True, instance_code="COIL-T")
    moved = mutation_service.transfer_stock(batch.id, other_branch.id, "10")
    assert moved.branch_id == other_branch.id


def test_partial_transfer_creates_destination_batch(db_session, make_batch, other_branch):
    batch = make_batch(10, batch_identifier="LOT-A", attribute_data={"shelf": "B2"})

    source, created = mutation_service.transfer_stock(batch.id, other_branch.id, 4, actor="driver")

    assert source.remaining_quantity == Decimal("6")
    assert created.branch_id == other_branch.id
    assert created.initial_quantity == Decimal("4")
    assert created.remaining_quantity == Decimal("4")
    assert created.source_batch_id == source.id
    assert created.batch_identifier == "LOT-A"
    assert created.attribute_data == {"shelf": "B2"}
    assert created.batch_type_id == source.batch_type_id
    assert created.grouped is False

    assert list_movements(source.id)[-1].movement_type == MOVEMENT_TRANSFER_OUT
    assert [m.movement_type for m in list_movements(created.id)] == [MOVEMENT_TRANSFER_IN]
    assert reconcile_batch(source) == []
    assert reconcile_batch(created) == []


def test_partial_transfer_of_grouped_batch_rejected(db_session, make_batch, other_branch):
    batch = make_batch(10, grouped=True, instance_code="COIL-G")
    with pytest.raises(UnsupportedOperationError):
        mutation_service.transfer_stock(batch.id, other_branch.id, 4)
    assert _fresh(db_session, batch.id).branch_id != other_branch.id


def test_transfer_validation(db_session, make_batch, branch, other_branch):
    batch = make_batch(10)

    with pytest.raises(InvalidRequestError):
        mutation_service.transfer_stock(batch.id, branch.id)
    with pytest.raises(NotFoundError):
        mutation_service.transfer_stock(batch.id, 99999)
    with pytest.raises(QuantityExceedsAvailableError):
        mutation_service.transfer_stock(batch.id, other_branch.id, 11)

    closed = Branch(name="Closed", code="CLOSED", is_active=False)
    db_session.add(closed)
    db_session.commit()
    with pytest.raises(InvalidRequestError):
        mutation_service.transfer_stock(batch.id, closed.id)


# Splits

def test_split_loose_batch_into_coils(db_session, make_batch):
    source = make_batch(100)

    outputs = mutation_service.split_batch(source.id, [("COIL-1", 40), ("COIL-2", 60)], actor="slitter")

    assert [b.instance_code for b in outputs] == ["COIL-1", "COIL-2"]
    assert [b.initial_quantity for b in outputs] == [Decimal("40"), Decimal("60")]
    assert [b.remaining_quantity for b in outputs] == [Decimal("40"), Decimal("60")]
    assert all(b.grouped and b.source_batch_id == source.id for b in outputs)

    drained = _fresh(db_session, source.id)
    assert drained.remaining_quantity == Decimal("0")
    assert drained.status == BATCH_STATUS_DEPLETED

    assert [m.movement_type for m in list_movements(source.id)][1:] == [MOVEMENT_SPLIT_OUT, MOVEMENT_SPLIT_OUT]
    for output in outputs:
        assert [m.movement_type for m in list_movements(output.id)] == [MOVEMENT_SPLIT_IN]
        assert reconcile_batch(output) == []
    assert reconcile_batch(drained) == []


def test_partial_split_keeps_source_in_stock(db_session, make_batch):
    source = make_batch(100, attribute_data={"color_code": "RAL9010"})

    outputs = mutation_service.split_batch(
        source.id,
        [
            SplitOutput("COIL-A", "30.5", attribute_overrides={"coil_number": "A"}),
            {"instance_code": "COIL-B", "quantity": 20},
        ],
    )

    assert outputs[0].attribute_data == {"color_code": "RAL9010", "coil_number": "A"}
    assert outputs[1].attribute_data == {"color_code": "RAL9010"}
    remaining = _fresh(db_session, source.id)
    assert remaining.remaining_quantity == Decimal("49.5")
    assert remaining.status == BATCH_STATUS_IN_STOCK


def test_split_exceeding_remaining(db_session, make_batch):
    source = make_batch(100)
    with pytest.raises(QuantityExceedsAvailableError):
        mutation_service.split_batch(source.id, [("COIL-1", 60), ("COIL-2", 40.001)])
    assert _fresh(db_session, source.id).remaining_quantity == Decimal("100")
    assert db_session.query(InventoryBatch).count() == 1


def test_split_instance_codes_must_be_unique(db_session, make_batch):
    make_batch(1, grouped=True, instance_code="COIL-9")
    source = make_batch(100)

    with pytest.raises(GroupedIdentifierRequiredError):
        mutation_service.split_batch(source.id, [("COIL-1", 10), ("COIL-1", 10)])
    with pytest.raises(GroupedIdentifierRequiredError):
        mutation_service.split_batch(source.id, [("COIL-1", 10), ("COIL-9", 10)])
    with pytest.raises(GroupedIdentifierRequiredError):
        mutation_service.split_batch(source.id, [("", 10)])

    assert _fresh(db_session, source.id).remaining_quantity == Decimal("100")
    assert db_session.query(InventoryBatch).count() == 2


def test_split_requires_splittable_ungrouped_source(make_batch, coil_type):
    grouped = make_batch(50, grouped=True, instance_code="COIL-X")
    with pytest.raises(UnsupportedOperationError):
        mutation_service.split_batch(grouped.id, [("COIL-Y", 10)])

    rigid = make_batch(50, batch_type_id=coil_type.id)
    with pytest.raises(UnsupportedOperationError):
        mutation_service.split_batch(rigid.id, [("COIL-Z", 10)])


def test_split_revalidates_attributes(db_session, branch, aluminium_product, loose_type):
    source = batch_service.create_batch(
        aluminium_product.id, branch.id, 200, grouped=False,
        attribute_data={"weight_kg": 200, "gauge_mm": 0.45, "embossment": "wood",
                        "color_code": "RAL9010", "coil_number": "BULK"},
    )
    with pytest.raises(InvalidAttributeError):
        mutation_service.split_batch(
            source.id, [SplitOutput("COIL-1", 50, attribute_overrides={"gauge_mm": 2})]
        )
    assert _fresh(db_session, source.id).remaining_quantity == Decimal("200")


# Scrap

def test_scrap_is_terminal(db_session, make_batch, other_branch):
    batch = make_batch(10)

    scrapped = mutation_service.scrap_batch(batch.id, "flood damage")
    assert scrapped.status == BATCH_STATUS_SCRAPPED
    assert scrapped.remaining_quantity == Decimal("10")
    assert scrapped.scrapped_at is not None

    with pytest.raises(UnsupportedOperationError):
        mutation_service.adjust_stock(batch.id, "increase", 1, "count")
    with pytest.raises(UnsupportedOperationError):
        mutation_service.transfer_stock(batch.id, other_branch.id)
    with pytest.raises(UnsupportedOperationError):
        mutation_service.split_batch(batch.id, [("COIL-1", 1)])
    with pytest.raises(UnsupportedOperationError):
        mutation_service.scrap_batch(batch.id, "again")
    assert reconcile_batch(_fresh(db_session, batch.id)) == []


def test_scrap_requires_reason(make_batch):
    batch = make_batch(10)
    with pytest.raises(InvalidRequestError):
        mutation_service.scrap_batch(batch.id, " ")


# Retry helper

def test_run_with_retry_retries_only_retryable(app):
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConcurrentModificationError("commit_allocation", [1])
        return "done"

    assert run_with_retry(flaky, backoff_base=0) == "done"
    assert len(attempts) == 3

    def invalid():
        attempts.append(1)
        raise InvalidRequestError("quantity", "must be greater than 0")

    attempts.clear()
    with pytest.raises(InvalidRequestError):
        run_with_retry(invalid, backoff_base=0)
    assert len(attempts) == 1


@pytest.mark.parametrize("message, mapped", [
    ("UNIQUE constraint failed: inventory_batches.instance_code", True),
    ('duplicate key value violates unique constraint "uq_inventory_batches_instance_code"', True),
    ("CHECK constraint failed: ck_inventory_batches_grouped_has_instance_code", False),
])
def test_integrity_errors_map_only_instance_code_uniqueness(db_session, message, mapped):
    def run():
        with ledger_transaction("create_batch"):
            raise IntegrityError("INSERT INTO inventory_batches", {}, Exception(message))

    expected = GroupedIdentifierRequiredError if mapped else IntegrityError
    with pytest.raises(expected):
        run()


def test_movement_rows_carry_actor(db_session, make_batch):
    batch = make_batch(10)
    mutation_service.adjust_stock(batch.id, "decrease", 1, "sample", actor="qa")
    movement = db_session.query(BatchMovement).filter_by(inventory_batch_id=batch.id).order_by(BatchMovement.id.desc()).first()
    assert movement.actor == "qa"
    assert movement.reason == "sample"
    assert movement.quantity_delta == Decimal("-1")
