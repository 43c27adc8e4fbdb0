# src/billo/resplit.py
"""Decides whether a receipt's item split may be redone given its settlements."""
import enum
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import StateConflict
from .models import Settlement, SettlementStatus


class ResplitDecision(str, enum.Enum):
    PROCEED = "proceed"  # nothing to replace
    CONFIRM = "confirm"  # pending debts would be destroyed and recreated
    BLOCKED = "blocked"  # a paid debt would change underneath its payment


@dataclass
class ResplitStatus:
    has_settlements: bool
    has_completed_settlements: bool
    has_pending_settlements: bool
    settlement_count: int = 0
    completed_count: int = 0
    pending_count: int = 0

    @property
    def decision(self) -> ResplitDecision:
        if not self.has_settlements:
            return ResplitDecision.PROCEED
        if self.has_completed_settlements:
            return ResplitDecision.BLOCKED
        return ResplitDecision.CONFIRM


def classify_settlements(statuses: Iterable[str]) -> ResplitStatus:
    statuses = [SettlementStatus(s) for s in statuses]
    completed = sum(1 for s in statuses if s == SettlementStatus.COMPLETED)
    pending = sum(1 for s in statuses if s == SettlementStatus.PENDING)
    return ResplitStatus(
        has_settlements=bool(statuses),
        has_completed_settlements=completed > 0,
        has_pending_settlements=pending > 0,
        settlement_count=len(statuses),
        completed_count=completed,
        pending_count=pending,
    )


def can_resplit(db: Session, receipt_id: str) -> ResplitStatus:
    statuses = db.scalars(select(Settlement.status).where(Settlement.receipt_id == receipt_id))
    return classify_settlements(statuses)


def ensure_resplit_allowed(status: ResplitStatus, confirmed: bool) -> None:
    decision = status.decision
    if decision == ResplitDecision.BLOCKED:
        raise StateConflict(
            "This receipt has completed settlements. Mark them as unpaid or cancel them before splitting again.",
            details={"completedCount": status.completed_count},
        )
    if decision == ResplitDecision.CONFIRM and not confirmed:
        raise StateConflict(
            "Splitting again replaces the existing pending settlements. Confirm to continue.",
            details={"pendingCount": status.pending_count},
        )
