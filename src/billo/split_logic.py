# src/billo/split_logic.py
import enum
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Set

from .errors import ValidationFailed

# item id -> user ids sharing that item. Built per request, never module state.
Assignment = Dict[str, Set[str]]

CENTS = Decimal("0.01")
ZERO = Decimal("0")


class SplitType(str, enum.Enum):
    FULL = "full"  # even division among the item's assignees
    PERCENTAGE = "percentage"  # reserved by the schema, not computed
    AMOUNT = "amount"  # reserved by the schema, not computed


@dataclass
class Member:
    user_id: str
    email: str
    name: Optional[str] = None
    image_url: Optional[str] = None
    role: str = "member"


@dataclass
class PersonTotal:
    user_id: str
    name: str
    email: str
    image_url: Optional[str] = None
    subtotal: Decimal = ZERO
    tax_share: Decimal = ZERO
    total: Decimal = ZERO


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def clean_number_string(num_str: str) -> str:
    """Clean number string by removing non-numeric characters (except . and -) and spaces."""
    if not isinstance(num_str, str): return ""
    num_str = num_str.replace(" ", "").replace(",", "")
    return re.sub(r'[^\d.\-]', '', num_str)


def parse_money(value: Any) -> Optional[Decimal]:
    """Convert a money string/number to Decimal. Blank or unparsable input gives None."""
    if value is None or isinstance(value, bool): return None
    if isinstance(value, Decimal): return value
    if isinstance(value, int): return Decimal(value)
    if isinstance(value, float): return Decimal(str(value))
    if not isinstance(value, str): return None
    stripped = value.strip()
    if not stripped or stripped.lower() == "null": return None
    cleaned = clean_number_string(stripped)
    try:
        return Decimal(cleaned) if cleaned else None
    except InvalidOperation:
        return None


def to_cents(value: Decimal) -> Decimal:
    """Round to two decimals, half up."""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def _item_total(item) -> Decimal:
    return parse_money(item.total_price) or ZERO


def _display_name(member: Member) -> str:
    return member.name or member.email.split("@")[0]


def calculate_person_totals(
    items: Iterable,
    assignments: Assignment,
    members: Iterable[Member],
    tax: Any = None,
) -> List[PersonTotal]:
    """
    Work out how much each member owes for a receipt.

    Every assigned item is divided evenly among its assignees. Tax is spread
    in proportion to each member's share of the subtotal of *assigned* items;
    unassigned items add nothing to anyone and are left out of that
    denominator. Shares are not rounded here and no remainder is
    redistributed, so rounded totals may differ from the receipt by a cent.

    Members whose total is zero are dropped. The result is sorted by total,
    highest first; ties keep member order.
    """
    totals: Dict[str, PersonTotal] = {}
    for member in members:
        totals[member.user_id] = PersonTotal(
            user_id=member.user_id,
            name=_display_name(member),
            email=member.email,
            image_url=member.image_url,
        )

    grand_subtotal = ZERO
    for item in items:
        assigned_users = assignments.get(str(item.id))
        if not assigned_users:
            continue

        item_total = _item_total(item)
        share_per_person = item_total / len(assigned_users)
        for user_id in assigned_users:
            person_total = totals.get(user_id)
            if person_total is not None:
                person_total.subtotal += share_per_person

        grand_subtotal += item_total

    tax_amount = parse_money(tax) or ZERO
    for person_total in totals.values():
        if grand_subtotal > 0:
            person_total.tax_share = tax_amount * (person_total.subtotal / grand_subtotal)
        person_total.total = person_total.subtotal + person_total.tax_share

    owing = [p for p in totals.values() if p.total > 0]
    return sorted(owing, key=lambda p: p.total, reverse=True)


def calculate_even_split(items: Iterable, member_ids: Iterable[str]) -> Assignment:
    """Assign every item to every member."""
    member_ids = list(member_ids)
    return {str(item.id): set(member_ids) for item in items}


def validate_assignments(items: Iterable, assignments: Assignment) -> ValidationResult:
    """Every item must have at least one person assigned before saving."""
    errors = []
    for item in items:
        if not assignments.get(str(item.id)):
            label = getattr(item, "name", None) or f"ID {item.id}"
            errors.append(f"Item {label} has no people assigned")
    return ValidationResult(valid=not errors, errors=errors)


def format_assignments_for_api(assignments: Assignment, items: Iterable) -> List[Dict[str, Any]]:
    """Flatten an assignment into the rows POST /receipts/{id}/assignments expects."""
    items_by_id = {str(item.id): item for item in items}
    payload = []
    for item_id, user_ids in assignments.items():
        item = items_by_id.get(item_id)
        if item is None or not user_ids:
            continue
        share_per_person = _item_total(item) / len(user_ids)
        for user_id in sorted(user_ids):
            payload.append({
                "receiptItemId": item_id,
                "userId": user_id,
                "splitType": SplitType.FULL.value,
                "splitValue": None,
                "calculatedAmount": str(to_cents(share_per_person)),
            })
    return payload


def assignments_from_rows(rows: Iterable) -> Assignment:
    """
    Rebuild the in-memory assignment from posted or stored rows.

    Rows need ``receipt_item_id``, ``user_id`` and ``split_type``. Only the
    ``full`` split type is computed; anything else is refused instead of
    being silently treated as an even split.
    """
    assignment: Assignment = {}
    for row in rows:
        split_type = getattr(row.split_type, "value", row.split_type)
        if split_type != SplitType.FULL.value:
            raise ValidationFailed(
                f"Split type '{split_type}' is not supported",
                details={"receiptItemId": str(row.receipt_item_id), "userId": row.user_id},
            )
        assignment.setdefault(str(row.receipt_item_id), set()).add(row.user_id)
    return assignment
