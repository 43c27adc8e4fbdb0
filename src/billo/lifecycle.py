# src/billo/lifecycle.py
"""
Settlement status transitions.

    pending   -> pending | completed | cancelled
    completed -> completed | pending | cancelled
    cancelled -> cancelled | pending

A cancelled debt has to be reopened (back to pending) before it can be
marked paid. ``settled_at`` is set only while a settlement is completed, and
is stamped once: repeating ``completed`` keeps the original timestamp and
does not send a second confirmation.
"""
import enum
from datetime import datetime
from typing import Optional, Tuple

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import PersistenceFailed, StateConflict
from .models import Settlement, SettlementStatus, utcnow
from .notifications import EmailSender, SettlementNotice, send_payment_confirmation, send_payment_unmarked
from .settlement_logic import get_settlement_for_party

PENDING = SettlementStatus.PENDING
COMPLETED = SettlementStatus.COMPLETED
CANCELLED = SettlementStatus.CANCELLED

ALLOWED_TRANSITIONS = {
    PENDING: {PENDING, COMPLETED, CANCELLED},
    COMPLETED: {COMPLETED, PENDING, CANCELLED},
    CANCELLED: {CANCELLED, PENDING},
}

_UNSET = object()


class TransitionEffect(str, enum.Enum):
    UNCHANGED = "unchanged"
    MARKED_PAID = "marked_paid"
    UNMARKED = "unmarked"
    CANCELLED = "cancelled"
    REOPENED = "reopened"


def plan_transition(current: SettlementStatus, target: SettlementStatus) -> TransitionEffect:
    current, target = SettlementStatus(current), SettlementStatus(target)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise StateConflict(f"Cannot change a {current.value} settlement to {target.value}")
    if current == target:
        return TransitionEffect.UNCHANGED
    if target == COMPLETED:
        return TransitionEffect.MARKED_PAID
    if target == CANCELLED:
        return TransitionEffect.CANCELLED
    if current == COMPLETED:
        return TransitionEffect.UNMARKED
    return TransitionEffect.REOPENED


def apply_status_change(
    settlement: Settlement,
    target: SettlementStatus,
    notes=_UNSET,
    now: Optional[datetime] = None,
) -> TransitionEffect:
    """Mutate ``settlement`` in place; persisting is up to the caller."""
    now = now or utcnow()
    effect = plan_transition(settlement.status, target)

    if target == COMPLETED:
        if effect == TransitionEffect.MARKED_PAID:
            settlement.settled_at = now
    else:
        settlement.settled_at = None

    settlement.status = SettlementStatus(target).value
    if notes is not _UNSET:
        settlement.notes = notes or None
    settlement.updated_at = now
    return effect


def update_settlement_status(
    db: Session,
    settlement_id: int,
    user_id: str,
    target: SettlementStatus,
    notes=_UNSET,
) -> Tuple[Settlement, TransitionEffect]:
    settlement = get_settlement_for_party(db, settlement_id, user_id)
    previous = settlement.status
    effect = apply_status_change(settlement, target, notes)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Status update of settlement {settlement_id} rolled back")
        raise PersistenceFailed("Failed to update settlement")

    logger.info(f"Settlement {settlement_id}: {previous} -> {settlement.status} ({effect.value}) by {user_id}")
    return settlement, effect


def delete_settlement(db: Session, settlement_id: int, user_id: str) -> None:
    """Only pending settlements may be removed; paid history is kept."""
    settlement = get_settlement_for_party(db, settlement_id, user_id)
    if settlement.status != PENDING.value:
        raise StateConflict("Only pending settlements can be deleted")
    try:
        db.delete(settlement)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception(f"Deleting settlement {settlement_id} rolled back")
        raise PersistenceFailed("Failed to delete settlement")
    logger.info(f"Settlement {settlement_id} deleted by {user_id}")


def notify_transition(sender: EmailSender, effect: TransitionEffect, notice: SettlementNotice) -> None:
    """Emails for a committed transition. Cancelling and reopening send nothing."""
    if effect == TransitionEffect.MARKED_PAID:
        send_payment_confirmation(sender, notice)
    elif effect == TransitionEffect.UNMARKED:
        send_payment_unmarked(sender, notice)
