# src/billo/schemas.py
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import SettlementStatus
from .resplit import ResplitDecision
from .split_logic import SplitType

AMOUNT_PATTERN = r"^\d+\.\d{2}$"


class CamelModel(BaseModel):
    # JSON field names stay camelCase for existing web and mobile clients
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# --- Requests ---

class AssignmentIn(CamelModel):
    receipt_item_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    split_type: SplitType = SplitType.FULL
    split_value: Optional[str] = None
    calculated_amount: str = Field(pattern=AMOUNT_PATTERN)


class CreateAssignmentsRequest(CamelModel):
    assignments: List[AssignmentIn] = Field(min_length=1)
    group_id: Optional[str] = None
    confirm_resplit: bool = False


class CreateSettlementRequest(CamelModel):
    receipt_id: Optional[str] = None
    group_id: Optional[str] = None
    from_user_id: str = Field(min_length=1)
    to_user_id: str = Field(min_length=1)
    amount: str = Field(pattern=AMOUNT_PATTERN, description="Amount with 2 decimal places")
    currency: str = "USD"
    notes: Optional[str] = None


class UpdateSettlementRequest(CamelModel):
    status: SettlementStatus
    notes: Optional[str] = None


# --- Responses ---

class UserSummary(CamelModel):
    id: str
    name: Optional[str] = None
    email: str
    image_url: Optional[str] = None


class ReceiptSummary(CamelModel):
    id: str
    merchant_name: Optional[str] = None
    purchase_date: Optional[datetime] = None
    total_amount: Optional[Decimal] = None


class GroupSummary(CamelModel):
    id: str
    name: str
    emoji: Optional[str] = None


class ItemSummary(CamelModel):
    id: str
    name: str
    total_price: Decimal


class SettlementOut(CamelModel):
    id: int
    receipt_id: Optional[str] = None
    group_id: Optional[str] = None
    from_user_id: str
    to_user_id: str
    amount: Decimal
    currency: str
    status: SettlementStatus
    settled_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    from_user: UserSummary
    to_user: UserSummary
    receipt: Optional[ReceiptSummary] = None
    group: Optional[GroupSummary] = None


class SettlementResponse(CamelModel):
    settlement: SettlementOut


class SettlementListResponse(CamelModel):
    settlements: List[SettlementOut]


class AssignmentOut(CamelModel):
    id: str
    receipt_item_id: str
    user_id: str
    split_type: SplitType
    split_value: Optional[Decimal] = None
    calculated_amount: Decimal
    user: UserSummary
    item: ItemSummary


class AssignmentListResponse(CamelModel):
    assignments: List[AssignmentOut]
    is_owner: bool


class CreateAssignmentsResponse(CamelModel):
    success: bool
    count: int
    settlement_count: int = 0


class ReceiptSettlementStatusResponse(CamelModel):
    has_settlements: bool
    has_completed_settlements: bool
    has_pending_settlements: bool
    settlement_count: int
    completed_count: int
    pending_count: int
    decision: ResplitDecision


class GroupBalanceOut(CamelModel):
    user_id: str
    name: Optional[str] = None
    email: str
    image_url: Optional[str] = None
    total_owed: Decimal
    total_owed_to: Decimal
    net_balance: Decimal


class GroupBalancesResponse(CamelModel):
    balances: List[GroupBalanceOut]


class BalanceSummaryResponse(CamelModel):
    total_you_owe: Decimal
    total_owed_to_you: Decimal
    net_balance: Decimal
    pending_you_owe_count: int
    pending_owed_to_you_count: int
    completed_count: int


class SuccessResponse(CamelModel):
    success: bool


class ErrorResponse(BaseModel):
    error: str
    details: Optional[Any] = None
