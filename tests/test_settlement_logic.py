from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from billo import models
from billo.errors import NotFound, PersistenceFailed, ValidationFailed
from billo.settlement_logic import (
    build_notice,
    calculate_settlements,
    create_manual_settlement,
    get_balance_summary,
    get_group_balances,
    get_group_for_member,
    get_receipt_settlements,
    get_settlement_for_party,
    list_settlements,
)
from billo.split_logic import PersonTotal


def person(user_id, total):
    return PersonTotal(user_id=user_id, name=user_id, email=f"{user_id}@example.com", subtotal=total, total=total)


def rows_of(db, receipt_id):
    db.expire_all()
    return sorted((s.from_user_id, s.to_user_id, s.amount, s.status) for s in get_receipt_settlements(db, receipt_id))


@pytest.fixture
def totals(seed):
    return [
        person(seed.bob.id, Decimal("22")),
        person(seed.carol.id, Decimal("21.996")),
        person(seed.alice.id, Decimal("11")),
    ]


def test_owner_never_owes_themselves(db, seed, totals):
    created = calculate_settlements(db, seed.receipt.id, seed.alice.id, totals, seed.group.id)

    assert len(created) == 2
    assert all(s.from_user_id != seed.alice.id for s in created)
    assert all(s.to_user_id == seed.alice.id for s in created)
    assert rows_of(db, seed.receipt.id) == [
        (seed.bob.id, seed.alice.id, Decimal("22.00"), "pending"),
        (seed.carol.id, seed.alice.id, Decimal("22.00"), "pending"),
    ]


def test_generated_rows_carry_receipt_group_and_currency(db, seed, totals):
    created = calculate_settlements(db, seed.receipt.id, seed.alice.id, totals, seed.group.id)

    for settlement in created:
        assert settlement.receipt_id == seed.receipt.id
        assert settlement.group_id == seed.group.id
        assert settlement.currency == "USD"
        assert settlement.settled_at is None


def test_regeneration_is_idempotent(db, seed, totals):
    calculate_settlements(db, seed.receipt.id, seed.alice.id, totals, seed.group.id)
    first = rows_of(db, seed.receipt.id)
    calculate_settlements(db, seed.receipt.id, seed.alice.id, totals, seed.group.id)

    assert rows_of(db, seed.receipt.id) == first


def test_regeneration_replaces_the_whole_batch(db, seed, totals):
    calculate_settlements(db, seed.receipt.id, seed.alice.id, totals, seed.group.id)
    calculate_settlements(db, seed.receipt.id, seed.alice.id, [person(seed.bob.id, Decimal("40"))], seed.group.id)

    assert rows_of(db, seed.receipt.id) == [(seed.bob.id, seed.alice.id, Decimal("40.00"), "pending")]


def test_owner_only_split_leaves_no_settlements(db, seed, totals):
    calculate_settlements(db, seed.receipt.id, seed.alice.id, totals, seed.group.id)
    created = calculate_settlements(
        db, seed.receipt.id, seed.alice.id, [person(seed.alice.id, Decimal("55"))], seed.group.id
    )

    assert created == []
    assert rows_of(db, seed.receipt.id) == []


def test_failed_generation_keeps_previous_rows(db, seed, totals, monkeypatch):
    calculate_settlements(db, seed.receipt.id, seed.alice.id, totals, seed.group.id)
    before = rows_of(db, seed.receipt.id)

    def broken_commit():
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(db, "commit", broken_commit)
    with pytest.raises(PersistenceFailed):
        calculate_settlements(db, seed.receipt.id, seed.alice.id, [person(seed.bob.id, Decimal("1"))], seed.group.id)
    monkeypatch.undo()

    assert rows_of(db, seed.receipt.id) == before


def test_only_parties_can_fetch_a_settlement(db, seed, totals):
    created = calculate_settlements(db, seed.receipt.id, seed.alice.id, totals, seed.group.id)
    settlement_id = created[0].id

    assert get_settlement_for_party(db, settlement_id, seed.alice.id).id == settlement_id
    assert get_settlement_for_party(db, settlement_id, seed.bob.id).id == settlement_id
    with pytest.raises(NotFound):
        get_settlement_for_party(db, settlement_id, seed.dave.id)
    with pytest.raises(NotFound):
        get_settlement_for_party(db, 9999, seed.alice.id)


def test_list_settlements_by_direction(db, seed, totals):
    calculate_settlements(db, seed.receipt.id, seed.alice.id, totals, seed.group.id)

    assert len(list_settlements(db, seed.alice.id)) == 2
    assert len(list_settlements(db, seed.alice.id, direction="owed")) == 2
    assert list_settlements(db, seed.alice.id, direction="owing") == []
    assert len(list_settlements(db, seed.bob.id, direction="owing")) == 1
    assert list_settlements(db, seed.bob.id, status="completed") == []
    assert list_settlements(db, seed.dave.id) == []


def test_manual_settlement_validation(db, seed):
    with pytest.raises(ValidationFailed):
        create_manual_settlement(db, seed.alice.id, seed.alice.id, seed.alice.id, Decimal("1.00"), "USD")
    with pytest.raises(ValidationFailed):
        create_manual_settlement(db, seed.dave.id, seed.bob.id, seed.alice.id, Decimal("1.00"), "USD")
    with pytest.raises(ValidationFailed):
        create_manual_settlement(db, seed.alice.id, "user_ghost", seed.alice.id, Decimal("1.00"), "USD")

    settlement = create_manual_settlement(
        db, seed.alice.id, seed.dave.id, seed.alice.id, Decimal("12.50"), "EUR", notes="taxi"
    )
    assert settlement.id is not None
    assert settlement.status == "pending"
    assert settlement.currency == "EUR"


def test_group_balances(db, seed, totals):
    calculate_settlements(db, seed.receipt.id, seed.alice.id, totals, seed.group.id)
    balances = get_group_balances(db, seed.group.id)

    assert [b.user_id for b in balances] == [seed.bob.id, seed.carol.id, seed.alice.id]
    alice = balances[-1]
    assert alice.total_owed_to == Decimal("44.00")
    assert alice.net_balance == Decimal("-44.00")
    assert balances[0].total_owed == Decimal("22.00")


def test_group_access_for_members_only(db, seed):
    assert get_group_for_member(db, seed.group.id, seed.bob.id).id == seed.group.id
    with pytest.raises(NotFound):
        get_group_for_member(db, seed.group.id, seed.dave.id)


def test_balance_summary(db, seed, totals):
    created = calculate_settlements(db, seed.receipt.id, seed.alice.id, totals, seed.group.id)
    created[0].status = "completed"
    db.commit()

    alice = get_balance_summary(db, seed.alice.id)
    assert alice.total_owed_to_you == Decimal("22.00")
    assert alice.total_you_owe == 0
    assert alice.net_balance == Decimal("-22.00")
    assert alice.pending_owed_to_you_count == 1
    assert alice.completed_count == 1

    carol = get_balance_summary(db, seed.carol.id)
    assert carol.total_you_owe == Decimal("22.00")
    assert carol.pending_you_owe_count == 1


def test_build_notice_snapshots_parties(db, seed, totals):
    seed.carol.email_settlements = False
    db.commit()
    created = calculate_settlements(db, seed.receipt.id, seed.alice.id, totals, seed.group.id)
    notice = build_notice(next(s for s in created if s.from_user_id == seed.carol.id))

    assert notice.amount == "22.00"
    assert notice.merchant_name == "Luigi's"
    assert notice.group_name == "Trip"
    assert notice.debtor.name == "Unknown"
    assert notice.debtor.wants_settlement_emails is False
    assert notice.creditor.email == "alice@example.com"


def test_manual_settlement_on_a_receipt_belongs_to_its_owner(db, seed):
    with pytest.raises(NotFound):
        create_manual_settlement(
            db, seed.dave.id, seed.bob.id, seed.dave.id, Decimal("10.00"), "USD", receipt_id=seed.receipt.id
        )
    with pytest.raises(ValidationFailed, match="owed to its owner"):
        create_manual_settlement(
            db, seed.alice.id, seed.alice.id, seed.bob.id, Decimal("10.00"), "USD", receipt_id=seed.receipt.id
        )
    with pytest.raises(NotFound):
        create_manual_settlement(
            db, seed.dave.id, seed.dave.id, seed.bob.id, Decimal("3.00"), "USD", group_id=seed.group.id
        )

    assert get_receipt_settlements(db, seed.receipt.id) == []
    assert get_group_balances(db, seed.group.id) == []
