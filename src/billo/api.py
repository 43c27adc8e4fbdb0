# src/billo/api.py
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer  # Import for Bearer token
from loguru import logger
from sqlalchemy.orm import Session

from . import assignments as assignment_service
from . import config, lifecycle, settlement_logic
from .database import get_db, init_db
from .errors import BilloError
from .logging_setup import configure_logging
from .models import SettlementStatus
from .notifications import EmailSender, get_email_sender, send_settlement_emails
from .resplit import can_resplit
from .schemas import (
    AssignmentListResponse,
    AssignmentOut,
    BalanceSummaryResponse,
    CreateAssignmentsRequest,
    CreateAssignmentsResponse,
    CreateSettlementRequest,
    GroupBalanceOut,
    GroupBalancesResponse,
    ReceiptSettlementStatusResponse,
    SettlementListResponse,
    SettlementOut,
    SettlementResponse,
    SuccessResponse,
    UpdateSettlementRequest,
)
from .split_logic import parse_money

configure_logging()

# --- API Key Authentication Configuration ---
security_scheme = HTTPBearer(auto_error=False)


async def get_api_key(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme)):
    # Expecting a Bearer token that matches the API_KEY
    if (
        not config.API_KEY
        or credentials is None
        or credentials.scheme != "Bearer"
        or credentials.credentials != config.API_KEY
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API Key",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials


async def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None),
    api_key: str = Depends(get_api_key),
) -> str:
    # The auth gateway resolves the session and forwards the caller's id
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return x_user_id


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if not config.API_KEY:
        logger.warning("API_KEY is not set; every protected request will be rejected.")
    init_db()
    yield


# --- FastAPI App Instance ---
app = FastAPI(
    title="Billo API",
    description="Item assignment, bill splitting and settlement tracking for shared receipts.",
    version="1.0.0",
    lifespan=lifespan,
)

# --- CORS Configuration ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BilloError)
async def billo_error_handler(request: Request, exc: BilloError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    body = {"error": exc.message}
    if exc.details is not None:
        body["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(HTTPException)
async def http_error_handler(_request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


def _settlement_out(settlement) -> SettlementOut:
    return SettlementOut.model_validate(settlement)


def _check_receipt_id(receipt_id: str) -> str:
    try:
        uuid.UUID(receipt_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid receipt ID")
    return receipt_id


def _parse_settlement_id(settlement_id: str) -> int:
    try:
        return int(settlement_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid settlement ID")


# --- Receipt assignment endpoints ---

@app.post("/receipts/{receipt_id}/assignments", response_model=CreateAssignmentsResponse)
def create_assignments(
    receipt_id: str,
    request: CreateAssignmentsRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    sender: EmailSender = Depends(get_email_sender),
):
    receipt = assignment_service.get_owned_receipt(db, _check_receipt_id(receipt_id), user_id)
    rows = [
        assignment_service.AssignmentRow(
            receipt_item_id=a.receipt_item_id,
            user_id=a.user_id,
            split_type=a.split_type,
            split_value=parse_money(a.split_value),
            calculated_amount=parse_money(a.calculated_amount),
        )
        for a in request.assignments
    ]
    outcome = assignment_service.split_receipt(
        db, receipt, rows, group_id=request.group_id, confirm_resplit=request.confirm_resplit
    )

    notices = [settlement_logic.build_notice(s) for s in outcome.settlements]
    if notices:
        background_tasks.add_task(send_settlement_emails, sender, notices)

    return CreateAssignmentsResponse(success=True, count=outcome.count, settlement_count=len(outcome.settlements))


@app.get("/receipts/{receipt_id}/assignments", response_model=AssignmentListResponse)
def list_assignments(
    receipt_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    rows, is_owner = assignment_service.get_assignments(db, _check_receipt_id(receipt_id), user_id)
    return AssignmentListResponse(
        assignments=[AssignmentOut.model_validate(row) for row in rows],
        is_owner=is_owner,
    )


@app.delete("/receipts/{receipt_id}/assignments", response_model=SuccessResponse)
def delete_assignments(
    receipt_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    assignment_service.clear_assignments(db, _check_receipt_id(receipt_id), user_id)
    return SuccessResponse(success=True)


@app.get("/receipts/{receipt_id}/settlements", response_model=ReceiptSettlementStatusResponse)
def receipt_settlement_status(
    receipt_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    assignment_service.get_owned_receipt(db, _check_receipt_id(receipt_id), user_id)
    resplit_status = can_resplit(db, receipt_id)
    return ReceiptSettlementStatusResponse(
        has_settlements=resplit_status.has_settlements,
        has_completed_settlements=resplit_status.has_completed_settlements,
        has_pending_settlements=resplit_status.has_pending_settlements,
        settlement_count=resplit_status.settlement_count,
        completed_count=resplit_status.completed_count,
        pending_count=resplit_status.pending_count,
        decision=resplit_status.decision,
    )


# --- Settlement endpoints ---

@app.post("/settlements", response_model=SettlementResponse, status_code=201)
def create_settlement(
    request: CreateSettlementRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    settlement = settlement_logic.create_manual_settlement(
        db,
        caller_id=user_id,
        from_user_id=request.from_user_id,
        to_user_id=request.to_user_id,
        amount=parse_money(request.amount),
        currency=request.currency,
        receipt_id=request.receipt_id,
        group_id=request.group_id,
        notes=request.notes,
    )
    return SettlementResponse(settlement=_settlement_out(settlement))


@app.get("/settlements", response_model=SettlementListResponse)
def list_settlements(
    group_id: Optional[str] = Query(default=None, alias="groupId"),
    status_param: Optional[str] = Query(default=None, alias="status"),
    direction: Optional[str] = None,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    # Unknown filter values are ignored rather than rejected
    status_filter = status_param if status_param in {s.value for s in SettlementStatus} else None
    direction_filter = direction if direction in settlement_logic.DIRECTIONS else None
    group_filter = group_id if group_id and group_id != "null" else None

    settlements = settlement_logic.list_settlements(
        db, user_id, group_id=group_filter, status=status_filter, direction=direction_filter
    )
    return SettlementListResponse(settlements=[_settlement_out(s) for s in settlements])


@app.get("/settlements/summary", response_model=BalanceSummaryResponse)
def balance_summary(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    summary = settlement_logic.get_balance_summary(db, user_id)
    return BalanceSummaryResponse.model_validate(summary)


@app.get("/settlements/{settlement_id}", response_model=SettlementResponse)
def get_settlement(
    settlement_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    settlement = settlement_logic.get_settlement_for_party(db, _parse_settlement_id(settlement_id), user_id)
    return SettlementResponse(settlement=_settlement_out(settlement))


@app.patch("/settlements/{settlement_id}", response_model=SettlementResponse)
def update_settlement(
    settlement_id: str,
    request: UpdateSettlementRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    sender: EmailSender = Depends(get_email_sender),
):
    kwargs = {"notes": request.notes} if "notes" in request.model_fields_set else {}
    settlement, effect = lifecycle.update_settlement_status(
        db, _parse_settlement_id(settlement_id), user_id, request.status, **kwargs
    )
    background_tasks.add_task(
        lifecycle.notify_transition, sender, effect, settlement_logic.build_notice(settlement)
    )
    return SettlementResponse(settlement=_settlement_out(settlement))


@app.delete("/settlements/{settlement_id}", response_model=SuccessResponse)
def delete_settlement(
    settlement_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    lifecycle.delete_settlement(db, _parse_settlement_id(settlement_id), user_id)
    return SuccessResponse(success=True)


# --- Group balances ---

@app.get("/groups/{group_id}/balances", response_model=GroupBalancesResponse)
def group_balances(
    group_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    settlement_logic.get_group_for_member(db, group_id, user_id)
    balances = settlement_logic.get_group_balances(db, group_id)
    return GroupBalancesResponse(balances=[GroupBalanceOut.model_validate(b) for b in balances])


# Add a root endpoint for health check or basic info
@app.get("/")
async def read_root():
    return {"message": "Billo API is running"}


