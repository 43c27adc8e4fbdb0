# src/billo/assignments.py
"""
Saving item assignments for a receipt and regenerating its settlements.

The flow for a (re)split is: check the rows against the receipt, apply the
re-split guard, then replace the assignment rows, mark the receipt completed
and rebuild the settlement batch in one transaction.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Tuple

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import NotFound, PersistenceFailed, ValidationFailed
from .models import GroupMember, ItemAssignment, Receipt, ReceiptStatus, Settlement, User, utcnow
from .resplit import ResplitStatus, can_resplit, ensure_resplit_allowed
from .settlement_logic import get_group_for_member, stage_settlements
from .split_logic import (
    ZERO,
    Member,
    SplitType,
    assignments_from_rows,
    calculate_person_totals,
    validate_assignments,
)


@dataclass
class AssignmentRow:
    receipt_item_id: str
    user_id: str
    split_type: SplitType = SplitType.FULL
    split_value: Optional[Decimal] = None
    calculated_amount: Decimal = ZERO


@dataclass
class SplitOutcome:
    count: int
    resplit_status: ResplitStatus
    settlements: List[Settlement] = field(default_factory=list)


def get_owned_receipt(db: Session, receipt_id: str, user_id: str) -> Receipt:
    receipt = db.get(Receipt, receipt_id)
    if receipt is None or receipt.user_id != user_id:
        raise NotFound("Receipt not found")
    return receipt


def load_group_members(db: Session, group_id: str) -> List[Member]:
    rows = db.scalars(select(GroupMember).where(GroupMember.group_id == group_id).order_by(GroupMember.id))
    return [
        Member(
            user_id=row.user_id,
            name=row.user.name,
            email=row.user.email,
            image_url=row.user.image_url,
            role=row.role,
        )
        for row in rows
    ]


def _members_for(db: Session, user_ids: List[str], group_id: Optional[str]) -> List[Member]:
    if group_id:
        members = load_group_members(db, group_id)
        outsiders = sorted(set(user_ids) - {m.user_id for m in members})
        if outsiders:
            raise ValidationFailed("Assigned users must be members of the group", details=outsiders)
        return members

    # No group: the people on the split are the only participants
    users = {u.id: u for u in db.scalars(select(User).where(User.id.in_(user_ids)))}
    missing = sorted(set(user_ids) - set(users))
    if missing:
        raise ValidationFailed("Invalid user IDs", details=missing)
    return [
        Member(user_id=u.id, name=u.name, email=u.email, image_url=u.image_url)
        for u in (users[user_id] for user_id in dict.fromkeys(user_ids))
    ]


def stage_assignments(db: Session, receipt: Receipt, rows: List[AssignmentRow], group_id: Optional[str]) -> int:
    """Replace every assignment on the receipt's items and mark it completed. Committing is up to the caller."""
    item_ids = [item.id for item in receipt.items]
    if item_ids:
        db.execute(delete(ItemAssignment).where(ItemAssignment.receipt_item_id.in_(item_ids)))
    db.add_all([
        ItemAssignment(
            receipt_item_id=row.receipt_item_id,
            user_id=row.user_id,
            split_type=SplitType(row.split_type).value,
            split_value=row.split_value,
            calculated_amount=row.calculated_amount,
        )
        for row in rows
    ])
    receipt.status = ReceiptStatus.COMPLETED.value
    receipt.group_id = group_id
    receipt.updated_at = utcnow()
    return len(rows)


def split_receipt(
    db: Session,
    receipt: Receipt,
    rows: List[AssignmentRow],
    group_id: Optional[str] = None,
    confirm_resplit: bool = False,
) -> SplitOutcome:
    items = list(receipt.items)
    item_ids = {item.id for item in items}

    invalid = [row.receipt_item_id for row in rows if row.receipt_item_id not in item_ids]
    if invalid:
        raise ValidationFailed(
            "Invalid items",
            details=f"Items {', '.join(invalid)} do not belong to this receipt",
        )

    assignment = assignments_from_rows(rows)
    validation = validate_assignments(items, assignment)
    if not validation.valid:
        raise ValidationFailed("Every item needs at least one person assigned", details=validation.errors)

    group_id = group_id or receipt.group_id
    if group_id:
        get_group_for_member(db, group_id, receipt.user_id)
    members = _members_for(db, [row.user_id for row in rows], group_id)

    resplit_status = can_resplit(db, receipt.id)
    ensure_resplit_allowed(resplit_status, confirm_resplit)

    person_totals = calculate_person_totals(items, assignment, members, receipt.tax)
    # Assignments, receipt status and the settlement batch land together or not at all
    try:
        count = stage_assignments(db, receipt, rows, group_id)
        settlements = stage_settlements(db, receipt.id, receipt.user_id, person_totals, group_id)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Saving assignments for receipt {receipt.id} rolled back")
        raise PersistenceFailed("Failed to save assignments")

    logger.info(f"Saved {count} assignment(s) and {len(settlements)} settlement(s) for receipt {receipt.id}")
    return SplitOutcome(count=count, resplit_status=resplit_status, settlements=settlements)


def get_assignments(db: Session, receipt_id: str, user_id: str) -> Tuple[List[ItemAssignment], bool]:
    """
    Owners see every assignment; group members and assignees see only their own.
    Anyone else is told the receipt does not exist.
    """
    receipt = db.get(Receipt, receipt_id)
    if receipt is None:
        raise NotFound("Receipt not found")

    item_ids = [item.id for item in receipt.items]
    is_owner = receipt.user_id == user_id
    has_access = is_owner

    if not has_access and receipt.group_id:
        has_access = db.scalars(
            select(GroupMember.id).where(GroupMember.group_id == receipt.group_id, GroupMember.user_id == user_id)
        ).first() is not None

    if not has_access and item_ids:
        has_access = db.scalars(
            select(ItemAssignment.id).where(
                ItemAssignment.user_id == user_id, ItemAssignment.receipt_item_id.in_(item_ids)
            )
        ).first() is not None

    if not has_access:
        raise NotFound("Receipt not found")
    if not item_ids:
        return [], is_owner

    query = select(ItemAssignment).where(ItemAssignment.receipt_item_id.in_(item_ids))
    if not is_owner:
        query = query.where(ItemAssignment.user_id == user_id)
    return list(db.scalars(query.order_by(ItemAssignment.created_at, ItemAssignment.id))), is_owner


def clear_assignments(db: Session, receipt_id: str, user_id: str) -> int:
    """Remove the receipt's assignments. Settlements are left as they are."""
    receipt = get_owned_receipt(db, receipt_id, user_id)
    item_ids = [item.id for item in receipt.items]
    if not item_ids:
        return 0
    try:
        result = db.execute(delete(ItemAssignment).where(ItemAssignment.receipt_item_id.in_(item_ids)))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Clearing assignments for receipt {receipt_id} rolled back")
        raise PersistenceFailed("Failed to delete assignments")
    logger.info(f"Cleared {result.rowcount} assignment(s) for receipt {receipt_id}")
    return result.rowcount
