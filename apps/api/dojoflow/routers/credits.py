"""Credits router - AI credit balance, charges, usage history and top-ups."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from dojoflow.core.deps import get_db, get_org_id
from dojoflow.core.rate_limit import limiter
from dojoflow.db.enums import CreditTaskType, CreditTransactionType
from dojoflow.schemas.credits import (
    BalanceCheckRequest,
    BalanceCheckResponse,
    CreditBalanceRead,
    CreditCostRead,
    CreditTransactionRead,
    DeductRequest,
    DeductResponse,
    ReconciliationRead,
    TopUpRequest,
    TopUpResponse,
)
from dojoflow.services import credit_costs, credit_service

router = APIRouter(prefix="/credits", tags=["Credits"])


@router.get("/balance", response_model=CreditBalanceRead)
def get_balance(
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """Current balance with the warning level for the low-credit banner."""
    return credit_service.get_balance_status(db, org_id)


@router.get(
    "/transactions",
    response_model=list[CreditTransactionRead],
    response_model_by_alias=True,
)
def list_transactions(
    tx_type: CreditTransactionType | None = None,
    limit: int = 50,
    offset: int = 0,
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """Credit usage history, newest first."""
    return credit_service.list_transactions(
        db,
        org_id,
        limit=min(max(limit, 1), 200),
        offset=max(offset, 0),
        tx_type=tx_type,
    )


@router.get("/costs", response_model=list[CreditCostRead])
def list_costs():
    """Public price list per AI task type."""
    return [
        CreditCostRead(task_type=task, description=credit_costs.describe_cost(task))
        for task in CreditTaskType
        if task != CreditTaskType.OTHER
    ]


@router.post("/top-up", response_model=TopUpResponse)
@limiter.limit("10/minute")
def top_up(
    request: Request,  # Required by limiter
    body: TopUpRequest,
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """Record a purchased credit pack (called after payment succeeds)."""
    balance = credit_service.purchase_top_up(
        db, org_id, body.amount, payment_reference=body.payment_reference
    )
    return TopUpResponse(balance=balance)


@router.post("/check", response_model=BalanceCheckResponse)
def check_balance(
    body: BalanceCheckRequest,
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """Pre-flight check before an AI task. Never changes the balance."""
    if body.required_credits is not None:
        required = body.required_credits
    else:
        required = credit_costs.cost_for_task(
            body.task_type,
            call_duration_seconds=body.call_duration_seconds,
            step_count=body.step_count,
        )
    check = credit_service.check_sufficient_balance(db, org_id, required)
    return BalanceCheckResponse(
        sufficient=check.sufficient,
        current_balance=check.current_balance,
        required_credits=required,
        remaining_after=check.current_balance - required,
        message=check.message,
        task_type=body.task_type,
    )


@router.post("/deduct", response_model=DeductResponse)
def deduct(
    body: DeductRequest,
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """
    Charge one AI task (chat reply, data analysis, ...) at its list price.

    Responds 402 with the required and available amounts when the balance
    is too low; nothing is charged in that case.
    """
    amount = credit_costs.cost_for_task(
        body.task_type,
        call_duration_seconds=body.call_duration_seconds,
        step_count=body.step_count,
    )
    if amount <= 0:
        raise HTTPException(status_code=422, detail=f"No list price for {body.task_type.value}")

    result = credit_service.deduct(
        db,
        org_id,
        amount,
        body.task_type,
        body.description,
        related_id=body.related_id,
        metadata=body.metadata,
    )
    return DeductResponse(
        success=result.success,
        new_balance=result.new_balance,
        transaction_id=result.transaction_id,
        amount_deducted=amount,
    )


@router.get("/reconcile", response_model=ReconciliationRead)
def reconcile(
    org_id: UUID = Depends(get_org_id),
    db: Session = Depends(get_db),
):
    """Replay the ledger and compare it with the cached balance."""
    try:
        report = credit_service.reconcile_balance(db, org_id)
    except credit_service.CreditBalanceNotFoundError:
        raise HTTPException(status_code=404, detail="No credit balance for organization")
    return ReconciliationRead(
        organization_id=report.organization_id,
        cached_balance=report.cached_balance,
        ledger_balance=report.ledger_balance,
        transaction_count=report.transaction_count,
        counters_match=report.counters_match,
        is_consistent=report.is_consistent,
    )
