# src/billo/settlement_logic.py
"""
Settlement generation and ledger queries.

Debts are star shaped: for a receipt, every participant who owes something
owes it to the receipt's owner. ``calculate_settlements`` is the only code
that writes settlement amounts derived from an item split.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from loguru import logger
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .errors import NotFound, PersistenceFailed, ValidationFailed
from .models import Group, GroupMember, Receipt, Settlement, SettlementStatus, User
from .notifications import Party, SettlementNotice
from .split_logic import ZERO, PersonTotal, to_cents

DIRECTIONS = ("owed", "owing")


@dataclass
class GroupBalance:
    user_id: str
    name: Optional[str]
    email: str
    image_url: Optional[str]
    total_owed: Decimal = ZERO  # this member owes others
    total_owed_to: Decimal = ZERO  # others owe this member
    net_balance: Decimal = ZERO  # positive = owes, negative = is owed


@dataclass
class BalanceSummary:
    total_you_owe: Decimal
    total_owed_to_you: Decimal
    net_balance: Decimal
    pending_you_owe_count: int
    pending_owed_to_you_count: int
    completed_count: int


def calculate_settlements(
    db: Session,
    receipt_id: str,
    owner_id: str,
    person_totals: List[PersonTotal],
    group_id: Optional[str],
    currency: str = config.DEFAULT_CURRENCY,
) -> List[Settlement]:
    """
    Replace the receipt's settlements with one pending debt per participant.

    Old rows are deleted and the new ones inserted in a single transaction, so
    a failure leaves the previous ledger untouched.
    """
    try:
        records = stage_settlements(db, receipt_id, owner_id, person_totals, group_id, currency)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Settlement generation for receipt {receipt_id} rolled back")
        raise PersistenceFailed("Failed to save settlements")

    logger.info(f"Generated {len(records)} settlement(s) for receipt {receipt_id} owed to {owner_id}")
    return records


def stage_settlements(
    db: Session,
    receipt_id: str,
    owner_id: str,
    person_totals: List[PersonTotal],
    group_id: Optional[str],
    currency: str = config.DEFAULT_CURRENCY,
) -> List[Settlement]:
    """Delete the old batch and add the new one to the session without committing.

    The owner never owes themselves and zero totals produce no row.
    """
    records = [
        Settlement(
            receipt_id=receipt_id,
            group_id=group_id,
            from_user_id=person.user_id,
            to_user_id=owner_id,
            amount=to_cents(person.total),
            currency=currency,
            status=SettlementStatus.PENDING.value,
        )
        for person in person_totals
        if person.user_id != owner_id and person.total > 0
    ]
    db.execute(delete(Settlement).where(Settlement.receipt_id == receipt_id))
    db.add_all(records)
    return records


def get_receipt_settlements(db: Session, receipt_id: str) -> List[Settlement]:
    return list(db.scalars(select(Settlement).where(Settlement.receipt_id == receipt_id).order_by(Settlement.id)))


def get_settlement_for_party(db: Session, settlement_id: int, user_id: str) -> Settlement:
    """Fetch a settlement the caller is a party to. Anyone else gets NotFound."""
    settlement = db.scalars(
        select(Settlement).where(
            Settlement.id == settlement_id,
            or_(Settlement.from_user_id == user_id, Settlement.to_user_id == user_id),
        )
    ).first()
    if settlement is None:
        raise NotFound("Settlement not found or access denied")
    return settlement


def list_settlements(
    db: Session,
    user_id: str,
    group_id: Optional[str] = None,
    status: Optional[str] = None,
    direction: Optional[str] = None,
) -> List[Settlement]:
    """Settlements involving the caller, newest first. ``owed``: caller is the creditor."""
    query = select(Settlement)
    if direction == "owed":
        query = query.where(Settlement.to_user_id == user_id)
    elif direction == "owing":
        query = query.where(Settlement.from_user_id == user_id)
    else:
        query = query.where(or_(Settlement.from_user_id == user_id, Settlement.to_user_id == user_id))

    if group_id:
        query = query.where(Settlement.group_id == group_id)
    if status:
        query = query.where(Settlement.status == status)

    return list(db.scalars(query.order_by(Settlement.created_at.desc(), Settlement.id.desc())))


def create_manual_settlement(
    db: Session,
    caller_id: str,
    from_user_id: str,
    to_user_id: str,
    amount: Decimal,
    currency: str,
    receipt_id: Optional[str] = None,
    group_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> Settlement:
    if from_user_id == to_user_id:
        raise ValidationFailed("A settlement needs two different users")
    if caller_id not in (from_user_id, to_user_id):
        raise ValidationFailed("You can only record settlements you are part of")
    if db.get(User, from_user_id) is None or db.get(User, to_user_id) is None:
        raise ValidationFailed("Invalid user IDs")
    if receipt_id:
        # Receipt debts are always owed to the receipt's owner, who records them
        receipt = db.get(Receipt, receipt_id)
        if receipt is None or receipt.user_id != caller_id:
            raise NotFound("Receipt not found")
        if to_user_id != receipt.user_id:
            raise ValidationFailed("Settlements on a receipt must be owed to its owner")
    if group_id:
        get_group_for_member(db, group_id, caller_id)

    settlement = Settlement(
        receipt_id=receipt_id,
        group_id=group_id,
        from_user_id=from_user_id,
        to_user_id=to_user_id,
        amount=amount,
        currency=currency,
        notes=notes or None,
        status=SettlementStatus.PENDING.value,
    )
    try:
        db.add(settlement)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Manual settlement insert rolled back")
        raise PersistenceFailed("Failed to create settlement")

    logger.info(f"Manual settlement {settlement.id}: {from_user_id} -> {to_user_id} {amount} {currency}")
    return settlement


def get_group_for_member(db: Session, group_id: str, user_id: str) -> Group:
    group = db.get(Group, group_id)
    if group is None:
        raise NotFound("Group not found")
    membership = db.scalars(
        select(GroupMember).where(GroupMember.group_id == group_id, GroupMember.user_id == user_id)
    ).first()
    if group.created_by != user_id and membership is None:
        raise NotFound("Group not found")
    return group


def get_group_balances(db: Session, group_id: str) -> List[GroupBalance]:
    """Net position of every member across the group's pending settlements, biggest debtor first."""
    pending = db.scalars(
        select(Settlement).where(
            Settlement.group_id == group_id,
            Settlement.status == SettlementStatus.PENDING.value,
        ).order_by(Settlement.id)
    )

    balances: dict = {}

    def _entry(user: User) -> GroupBalance:
        if user.id not in balances:
            balances[user.id] = GroupBalance(
                user_id=user.id, name=user.name, email=user.email, image_url=user.image_url
            )
        return balances[user.id]

    for settlement in pending:
        debtor = _entry(settlement.from_user)
        debtor.total_owed += settlement.amount
        debtor.net_balance += settlement.amount

        creditor = _entry(settlement.to_user)
        creditor.total_owed_to += settlement.amount
        creditor.net_balance -= settlement.amount

    return sorted(balances.values(), key=lambda b: b.net_balance, reverse=True)


def get_balance_summary(db: Session, user_id: str) -> BalanceSummary:
    pending = SettlementStatus.PENDING.value
    you_owe = list(db.scalars(
        select(Settlement.amount).where(Settlement.from_user_id == user_id, Settlement.status == pending)
    ))
    owed_to_you = list(db.scalars(
        select(Settlement.amount).where(Settlement.to_user_id == user_id, Settlement.status == pending)
    ))
    completed = list(db.scalars(
        select(Settlement.id).where(
            Settlement.status == SettlementStatus.COMPLETED.value,
            or_(Settlement.from_user_id == user_id, Settlement.to_user_id == user_id),
        )
    ))

    total_you_owe = sum(you_owe, ZERO)
    total_owed_to_you = sum(owed_to_you, ZERO)
    return BalanceSummary(
        total_you_owe=total_you_owe,
        total_owed_to_you=total_owed_to_you,
        net_balance=total_you_owe - total_owed_to_you,
        pending_you_owe_count=len(you_owe),
        pending_owed_to_you_count=len(owed_to_you),
        completed_count=len(completed),
    )


def _party(user: User) -> Party:
    return Party(
        user_id=user.id,
        name=user.name or "Unknown",
        email=user.email,
        wants_settlement_emails=user.email_settlements,
        wants_payment_emails=user.email_payments,
    )


def build_notice(settlement: Settlement) -> SettlementNotice:
    """Snapshot everything an email needs while the session is still open."""
    return SettlementNotice(
        settlement_id=settlement.id,
        debtor=_party(settlement.from_user),
        creditor=_party(settlement.to_user),
        amount=str(to_cents(settlement.amount)),
        currency=settlement.currency,
        merchant_name=(settlement.receipt.merchant_name if settlement.receipt else None) or "Unknown",
        group_name=settlement.group.name if settlement.group else None,
        settled_at=settlement.settled_at.date().isoformat() if settlement.settled_at else None,
    )
