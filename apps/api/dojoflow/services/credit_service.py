"""Credit ledger service.

Owns the per-organization AI credit balance. Every mutation is a single
conditional UPDATE on the balance row plus one appended CreditTransaction,
committed together, so concurrent writers can never drive the balance
negative or leave a balance change without its ledger entry.
"""

from __future__ import annotations

import calendar
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import case, false, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from dojoflow.core.config import settings
from dojoflow.core.structured_logging import build_log_context
from dojoflow.db.enums import CreditTaskType, CreditTransactionType, CreditWarningLevel
from dojoflow.db.models import CreditTransaction, OrganizationCreditBalance
from dojoflow.db.types import utcnow

logger = logging.getLogger(__name__)

_balances = OrganizationCreditBalance.__table__


class CreditLedgerError(Exception):
    """Base error for ledger operations."""


class InsufficientCreditsError(CreditLedgerError):
    """Balance cannot cover the requested deduction. Nothing was charged."""

    def __init__(self, organization_id: UUID, required: int, available: int) -> None:
        self.organization_id = organization_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits. Required: {required}, Available: {available}"
        )


class LedgerUnavailableError(CreditLedgerError):
    """Storage failure. The operation was rolled back and nothing was charged."""


class CreditBalanceNotFoundError(CreditLedgerError):
    """Organization has no credit balance row."""


@dataclass(frozen=True)
class CreditBalanceSnapshot:
    balance: int
    period_allowance: int
    period_used: int
    next_reset_at: datetime | None


@dataclass(frozen=True)
class DeductionResult:
    success: bool
    new_balance: int
    transaction_id: UUID


@dataclass(frozen=True)
class BalanceCheck:
    sufficient: bool
    current_balance: int
    message: str | None = None


@dataclass(frozen=True)
class CreditBalanceStatus:
    balance: int
    monthly_allocation: int
    period_used: int
    percent_remaining: float
    warning_level: CreditWarningLevel
    next_reset_at: datetime | None


@dataclass(frozen=True)
class ReconciliationReport:
    organization_id: UUID
    cached_balance: int
    ledger_balance: int
    transaction_count: int
    counters_match: bool

    @property
    def is_consistent(self) -> bool:
        return self.cached_balance == self.ledger_balance and self.counters_match


# =============================================================================
# Helpers
# =============================================================================


def add_months(value: datetime, months: int = 1) -> datetime:
    """Shift a datetime by whole months, clamping the day to the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _load_balance_row(
    db: Session, org_id: UUID, *, for_update: bool = False
) -> OrganizationCreditBalance | None:
    stmt = (
        select(OrganizationCreditBalance)
        .where(OrganizationCreditBalance.organization_id == org_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    return db.execute(stmt).scalar_one_or_none()


def _append_transaction(
    db: Session,
    *,
    org_id: UUID,
    tx_type: CreditTransactionType,
    amount: int,
    balance_after: int,
    description: str,
    task_type: CreditTaskType | str | None = None,
    related_entity_id: str | None = None,
    related_transaction_id: UUID | None = None,
    user_id: UUID | None = None,
    metadata: dict | None = None,
) -> CreditTransaction:
    transaction = CreditTransaction(
        id=uuid.uuid4(),
        organization_id=org_id,
        type=tx_type.value,
        amount=amount,
        balance_after=balance_after,
        task_type=CreditTaskType(task_type).value if task_type else None,
        description=description,
        extra_metadata=metadata,
        related_entity_id=related_entity_id,
        related_transaction_id=related_transaction_id,
        user_id=user_id,
        created_at=utcnow(),
    )
    db.add(transaction)
    db.flush()
    return transaction


def _credit(
    db: Session,
    org_id: UUID,
    amount: int,
    *,
    tx_type: CreditTransactionType,
    description: str,
    user_id: UUID | None = None,
    metadata: dict | None = None,
    related_transaction_id: UUID | None = None,
) -> tuple[int, CreditTransaction]:
    """Add credits and log the entry. Caller commits."""
    values: dict = {
        "balance": _balances.c.balance + amount,
        "updated_at": utcnow(),
        # Topping back up past the threshold re-arms the low-credit alert
        "low_credit_alert_sent": case(
            (_balances.c.balance + amount >= _balances.c.low_credit_threshold, false()),
            else_=_balances.c.low_credit_alert_sent,
        ),
    }
    if tx_type == CreditTransactionType.PURCHASE:
        values["total_purchased"] = _balances.c.total_purchased + amount
    elif tx_type in (CreditTransactionType.ALLOCATION, CreditTransactionType.BONUS):
        values["total_allocated"] = _balances.c.total_allocated + amount
    elif tx_type == CreditTransactionType.REFUND:
        values["total_used"] = _balances.c.total_used - amount
        values["period_used"] = case(
            (_balances.c.period_used >= amount, _balances.c.period_used - amount),
            else_=0,
        )

    new_balance = db.execute(
        update(_balances)
        .where(_balances.c.organization_id == org_id)
        .values(**values)
        .returning(_balances.c.balance)
    ).scalar_one_or_none()
    if new_balance is None:
        raise CreditBalanceNotFoundError(f"No credit balance for organization {org_id}")

    transaction = _append_transaction(
        db,
        org_id=org_id,
        tx_type=tx_type,
        amount=amount,
        balance_after=new_balance,
        description=description,
        related_transaction_id=related_transaction_id,
        user_id=user_id,
        metadata=metadata,
    )
    return new_balance, transaction


def _require_positive(amount: int) -> None:
    if amount <= 0:
        raise ValueError("Credit amount must be a positive integer")


# =============================================================================
# Provisioning
# =============================================================================


def provision_balance(
    db: Session,
    org_id: UUID,
    period_allowance: int | None = None,
    low_credit_threshold: int | None = None,
    now: datetime | None = None,
) -> OrganizationCreditBalance:
    """
    Create the balance row for an organization and grant its first allowance.

    Idempotent: returns the existing row if one is already there (including
    when a concurrent provisioner wins the insert race).
    """
    try:
        existing = _load_balance_row(db, org_id)
    except SQLAlchemyError as exc:
        db.rollback()
        raise LedgerUnavailableError(str(exc)) from exc
    if existing:
        return existing

    now = now or utcnow()
    allowance = (
        settings.CREDIT_DEFAULT_PERIOD_ALLOWANCE if period_allowance is None else period_allowance
    )
    threshold = (
        settings.CREDIT_DEFAULT_LOW_THRESHOLD
        if low_credit_threshold is None
        else low_credit_threshold
    )

    try:
        db.add(
            OrganizationCreditBalance(
                organization_id=org_id,
                balance=0,
                period_allowance=allowance,
                period_used=0,
                total_purchased=0,
                total_allocated=0,
                total_used=0,
                low_credit_threshold=threshold,
                low_credit_alert_sent=False,
                last_reset_at=now,
                next_reset_at=add_months(now),
            )
        )
        db.flush()
        if allowance > 0:
            _credit(
                db,
                org_id,
                allowance,
                tx_type=CreditTransactionType.ALLOCATION,
                description="Initial plan allowance",
            )
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _load_balance_row(db, org_id)
        if existing:
            return existing
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        raise LedgerUnavailableError(str(exc)) from exc

    logger.info(
        "Provisioned credit balance with allowance %s",
        allowance,
        extra=build_log_context(org_id=str(org_id)),
    )
    return _load_balance_row(db, org_id)


# =============================================================================
# Reads
# =============================================================================


def get_balance(db: Session, org_id: UUID) -> CreditBalanceSnapshot:
    """Read-only balance snapshot. Zeros when the organization is not provisioned."""
    try:
        row = _load_balance_row(db, org_id)
    except SQLAlchemyError as exc:
        raise LedgerUnavailableError(str(exc)) from exc

    if not row:
        return CreditBalanceSnapshot(
            balance=0, period_allowance=0, period_used=0, next_reset_at=None
        )
    return CreditBalanceSnapshot(
        balance=row.balance,
        period_allowance=row.period_allowance,
        period_used=row.period_used,
        next_reset_at=row.next_reset_at,
    )


def check_sufficient_balance(db: Session, org_id: UUID, required: int) -> BalanceCheck:
    """Non-mutating pre-check with a low-balance warning message."""
    try:
        row = _load_balance_row(db, org_id)
    except SQLAlchemyError as exc:
        raise LedgerUnavailableError(str(exc)) from exc
    if not row:
        return BalanceCheck(
            sufficient=False,
            current_balance=0,
            message="No credit balance found. Please contact support.",
        )

    if row.balance < required:
        return BalanceCheck(
            sufficient=False,
            current_balance=row.balance,
            message=(
                f"Insufficient credits. Required: {required}, Available: {row.balance}. "
                "Please top up your credits."
            ),
        )

    remaining = row.balance - required
    if remaining < row.low_credit_threshold:
        return BalanceCheck(
            sufficient=True,
            current_balance=row.balance,
            message=(
                f"Warning: Low credit balance. {remaining} credits remaining after this operation."
            ),
        )
    return BalanceCheck(sufficient=True, current_balance=row.balance)


def get_warning_level(balance: int, period_allowance: int) -> tuple[float, CreditWarningLevel]:
    """Percent remaining of the monthly allocation and the banner level for it."""
    if period_allowance > 0:
        percent = round(balance * 100 / period_allowance, 1)
    else:
        percent = 100.0 if balance > 0 else 0.0

    if balance <= 0:
        return percent, CreditWarningLevel.BLOCKING
    if percent < settings.CREDIT_CRITICAL_PERCENT:
        return percent, CreditWarningLevel.CRITICAL
    if percent < settings.CREDIT_WARNING_PERCENT:
        return percent, CreditWarningLevel.WARNING
    return percent, CreditWarningLevel.NONE


def get_balance_status(db: Session, org_id: UUID) -> CreditBalanceStatus:
    """Balance payload for the low-credit banner."""
    snapshot = get_balance(db, org_id)
    percent, level = get_warning_level(snapshot.balance, snapshot.period_allowance)
    return CreditBalanceStatus(
        balance=snapshot.balance,
        monthly_allocation=snapshot.period_allowance,
        period_used=snapshot.period_used,
        percent_remaining=percent,
        warning_level=level,
        next_reset_at=snapshot.next_reset_at,
    )


def list_transactions(
    db: Session,
    org_id: UUID,
    limit: int = 50,
    offset: int = 0,
    tx_type: CreditTransactionType | None = None,
) -> list[CreditTransaction]:
    """Transactions for an organization, newest first."""
    stmt = select(CreditTransaction).where(CreditTransaction.organization_id == org_id)
    if tx_type:
        stmt = stmt.where(CreditTransaction.type == tx_type.value)
    stmt = (
        stmt.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id)
        .limit(limit)
        .offset(offset)
    )
    return list(db.execute(stmt).scalars())


# =============================================================================
# Mutations
# =============================================================================


def deduct(
    db: Session,
    org_id: UUID,
    amount: int,
    task_type: CreditTaskType | str,
    description: str,
    related_id: str | None = None,
    user_id: UUID | None = None,
    metadata: dict | None = None,
) -> DeductionResult:
    """
    Atomically deduct credits.

    The balance is decremented only if it still covers ``amount``; the check
    and the write are one statement, so two concurrent deductions can never
    both succeed against a balance that covers only one of them.

    Raises:
        InsufficientCreditsError: balance too low, nothing written.
        LedgerUnavailableError: storage failure, nothing written.
    """
    _require_positive(amount)

    try:
        if _load_balance_row(db, org_id) is None:
            provision_balance(db, org_id)

        new_balance = db.execute(
            update(_balances)
            .where(
                _balances.c.organization_id == org_id,
                _balances.c.balance >= amount,
            )
            .values(
                balance=_balances.c.balance - amount,
                period_used=_balances.c.period_used + amount,
                total_used=_balances.c.total_used + amount,
                updated_at=utcnow(),
            )
            .returning(_balances.c.balance)
        ).scalar_one_or_none()

        if new_balance is None:
            available = (
                db.execute(
                    select(_balances.c.balance).where(_balances.c.organization_id == org_id)
                ).scalar_one_or_none()
                or 0
            )
            db.rollback()
            logger.warning(
                "Insufficient credits: required=%s available=%s",
                amount,
                available,
                extra=build_log_context(org_id=str(org_id), task_type=str(task_type)),
            )
            raise InsufficientCreditsError(org_id, amount, available)

        transaction = _append_transaction(
            db,
            org_id=org_id,
            tx_type=CreditTransactionType.DEDUCTION,
            amount=-amount,
            balance_after=new_balance,
            description=description,
            task_type=task_type,
            related_entity_id=related_id,
            user_id=user_id,
            metadata=metadata,
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise LedgerUnavailableError(str(exc)) from exc

    logger.info(
        "Deducted %s credits, balance now %s",
        amount,
        new_balance,
        extra=build_log_context(org_id=str(org_id), task_type=str(task_type)),
    )
    return DeductionResult(success=True, new_balance=new_balance, transaction_id=transaction.id)


def refund(
    db: Session,
    org_id: UUID,
    amount: int,
    related_transaction_id: UUID | None,
    reason: str,
) -> int:
    """
    Return credits for work that did not happen.

    Never checks the balance. Reverses the usage counters so the ledger
    invariant holds. Returns the new balance.
    """
    _require_positive(amount)
    try:
        new_balance, _ = _credit(
            db,
            org_id,
            amount,
            tx_type=CreditTransactionType.REFUND,
            description=reason,
            related_transaction_id=related_transaction_id,
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise LedgerUnavailableError(str(exc)) from exc

    logger.info(
        "Refunded %s credits, balance now %s",
        amount,
        new_balance,
        extra=build_log_context(org_id=str(org_id)),
    )
    return new_balance


def _additive(
    db: Session,
    org_id: UUID,
    amount: int,
    tx_type: CreditTransactionType,
    description: str,
    user_id: UUID | None = None,
    metadata: dict | None = None,
) -> int:
    _require_positive(amount)
    try:
        if _load_balance_row(db, org_id) is None:
            provision_balance(db, org_id, period_allowance=0)
        new_balance, _ = _credit(
            db,
            org_id,
            amount,
            tx_type=tx_type,
            description=description,
            user_id=user_id,
            metadata=metadata,
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise LedgerUnavailableError(str(exc)) from exc
    return new_balance


def allocate(db: Session, org_id: UUID, amount: int, reason: str) -> int:
    """Grant plan credits (billing cycle, plan upgrade)."""
    return _additive(db, org_id, amount, CreditTransactionType.ALLOCATION, reason)


def purchase_top_up(
    db: Session,
    org_id: UUID,
    amount: int,
    user_id: UUID | None = None,
    payment_reference: str | None = None,
) -> int:
    """Record a paid top-up."""
    metadata = {"payment_reference": payment_reference} if payment_reference else None
    return _additive(
        db,
        org_id,
        amount,
        CreditTransactionType.PURCHASE,
        f"Purchased {amount} credits",
        user_id=user_id,
        metadata=metadata,
    )


def grant_bonus(db: Session, org_id: UUID, amount: int, reason: str) -> int:
    """Promotional or goodwill credits."""
    return _additive(db, org_id, amount, CreditTransactionType.BONUS, reason)


# =============================================================================
# Period reset
# =============================================================================

MAX_RESET_RETRIES = 3


def reset_period(db: Session, org_id: UUID, now: datetime | None = None) -> CreditBalanceSnapshot:
    """
    Start a new billing period.

    Rollover policy: unused credits roll over and the allowance is added on
    top, but the balance is never topped up past
    ``period_allowance * CREDIT_ROLLOVER_CAP_MULTIPLIER``. Paid top-ups above
    the cap are kept; they just receive no further allocation.
    period_used goes back to 0 and next_reset_at moves forward a month.
    """
    now = now or utcnow()

    for _ in range(MAX_RESET_RETRIES):
        try:
            row = _load_balance_row(db, org_id, for_update=True)
            if not row:
                raise CreditBalanceNotFoundError(f"No credit balance for organization {org_id}")

            observed_balance = row.balance
            cap = row.period_allowance * settings.CREDIT_ROLLOVER_CAP_MULTIPLIER
            grant = max(0, min(row.period_allowance, cap - observed_balance))

            next_reset_at = row.next_reset_at or now
            while next_reset_at <= now:
                next_reset_at = add_months(next_reset_at)

            # Only applies if no deduction slipped in since we read the row
            values: dict = {
                "balance": _balances.c.balance + grant,
                "total_allocated": _balances.c.total_allocated + grant,
                "period_used": 0,
                "last_reset_at": now,
                "next_reset_at": next_reset_at,
                "updated_at": now,
            }
            if grant and observed_balance + grant >= row.low_credit_threshold:
                values["low_credit_alert_sent"] = False

            new_balance = db.execute(
                update(_balances)
                .where(
                    _balances.c.organization_id == org_id,
                    _balances.c.balance == observed_balance,
                )
                .values(**values)
                .returning(_balances.c.balance)
            ).scalar_one_or_none()

            if new_balance is None:
                db.rollback()
                continue

            if grant:
                _append_transaction(
                    db,
                    org_id=org_id,
                    tx_type=CreditTransactionType.ALLOCATION,
                    amount=grant,
                    balance_after=new_balance,
                    description="Monthly credit allowance",
                    metadata={"period_start": now.isoformat()},
                )
            db.commit()
            logger.info(
                "Credit period reset: granted %s, balance %s -> %s",
                grant,
                observed_balance,
                new_balance,
                extra=build_log_context(org_id=str(org_id), job="credit_reset"),
            )
            return get_balance(db, org_id)
        except SQLAlchemyError as exc:
            db.rollback()
            raise LedgerUnavailableError(str(exc)) from exc

    raise LedgerUnavailableError(
        f"Credit reset for organization {org_id} kept racing with concurrent writes"
    )


def reset_due_periods(db: Session, now: datetime | None = None) -> int:
    """Reset every balance whose period has ended. Returns the number reset."""
    now = now or utcnow()
    org_ids = list(
        db.execute(
            select(OrganizationCreditBalance.organization_id).where(
                OrganizationCreditBalance.next_reset_at <= now
            )
        ).scalars()
    )

    reset_count = 0
    for org_id in org_ids:
        try:
            reset_period(db, org_id, now=now)
            reset_count += 1
        except CreditLedgerError as e:
            logger.error("Credit reset failed for org %s: %s", org_id, e)

    if org_ids:
        logger.info("Credit reset sweep finished: %s/%s reset", reset_count, len(org_ids))
    return reset_count


# =============================================================================
# Audit
# =============================================================================


def reconcile_balance(db: Session, org_id: UUID) -> ReconciliationReport:
    """Replay the transaction log and compare it with the cached balance row."""
    row = _load_balance_row(db, org_id)
    if not row:
        raise CreditBalanceNotFoundError(f"No credit balance for organization {org_id}")

    totals = {
        tx_type: int(total or 0)
        for tx_type, total in db.execute(
            select(CreditTransaction.type, func.sum(CreditTransaction.amount))
            .where(CreditTransaction.organization_id == org_id)
            .group_by(CreditTransaction.type)
        ).all()
    }
    transaction_count = db.execute(
        select(func.count(CreditTransaction.id)).where(
            CreditTransaction.organization_id == org_id
        )
    ).scalar_one()

    purchased = totals.get(CreditTransactionType.PURCHASE.value, 0)
    allocated = totals.get(CreditTransactionType.ALLOCATION.value, 0) + totals.get(
        CreditTransactionType.BONUS.value, 0
    )
    used = -totals.get(CreditTransactionType.DEDUCTION.value, 0) - totals.get(
        CreditTransactionType.REFUND.value, 0
    )

    counters_match = (
        row.total_purchased == purchased
        and row.total_allocated == allocated
        and row.total_used == used
        and row.balance == row.total_purchased + row.total_allocated - row.total_used
    )
    report = ReconciliationReport(
        organization_id=org_id,
        cached_balance=row.balance,
        ledger_balance=sum(totals.values()),
        transaction_count=transaction_count,
        counters_match=counters_match,
    )
    if not report.is_consistent:
        logger.error(
            "Credit ledger mismatch: cached=%s ledger=%s",
            report.cached_balance,
            report.ledger_balance,
            extra=build_log_context(org_id=str(org_id)),
        )
    return report
