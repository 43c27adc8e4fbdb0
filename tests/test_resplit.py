from decimal import Decimal

import pytest

from billo import models
from billo.errors import StateConflict
from billo.resplit import ResplitDecision, can_resplit, classify_settlements, ensure_resplit_allowed


@pytest.mark.parametrize("statuses, decision", [
    ([], ResplitDecision.PROCEED),
    (["pending", "pending"], ResplitDecision.CONFIRM),
    (["cancelled"], ResplitDecision.CONFIRM),
    (["pending", "cancelled"], ResplitDecision.CONFIRM),
    (["pending", "completed"], ResplitDecision.BLOCKED),
    (["completed"], ResplitDecision.BLOCKED),
])
def test_decision(statuses, decision):
    assert classify_settlements(statuses).decision == decision


def test_counts():
    status = classify_settlements(["pending", "completed", "cancelled", "pending"])

    assert status.has_settlements
    assert status.has_completed_settlements
    assert status.has_pending_settlements
    assert (status.settlement_count, status.completed_count, status.pending_count) == (4, 1, 2)


def test_proceed_needs_no_confirmation():
    ensure_resplit_allowed(classify_settlements([]), confirmed=False)


def test_pending_settlements_need_confirmation():
    status = classify_settlements(["pending"])
    with pytest.raises(StateConflict, match="Confirm"):
        ensure_resplit_allowed(status, confirmed=False)
    ensure_resplit_allowed(status, confirmed=True)


def test_completed_settlements_block_even_when_confirmed():
    with pytest.raises(StateConflict, match="completed settlements"):
        ensure_resplit_allowed(classify_settlements(["completed", "pending"]), confirmed=True)


def test_can_resplit_reads_receipt_settlements(db, seed):
    assert can_resplit(db, seed.receipt.id).decision == ResplitDecision.PROCEED

    db.add(models.Settlement(
        receipt_id=seed.receipt.id, from_user_id=seed.bob.id, to_user_id=seed.alice.id,
        amount=Decimal("5.00"), status="completed",
    ))
    db.commit()

    status = can_resplit(db, seed.receipt.id)
    assert status.has_completed_settlements is True
    assert status.decision == ResplitDecision.BLOCKED
