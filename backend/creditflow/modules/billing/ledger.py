"""Credit ledger.

Sole writer of ``credit_balances`` and ``credit_transactions``. Each
allocation or deduction is one database transaction: a conditional
UPDATE ... RETURNING on the member's balance row, the ledger entry
insert and the commit. The row lock taken by the UPDATE serializes
writers for the same member; different members never contend.

Write conflicts (a concurrent first allocation, lock timeouts,
serialization failures) are rolled back and retried a bounded number
of times before ``LedgerUnavailable`` is raised.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar, Union

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.core.config import settings
from creditflow.core.logging import log_error, log_info, log_warning
from creditflow.core.metrics import (
    LEDGER_CREDITS_TOTAL,
    LEDGER_OPERATION_DURATION_SECONDS,
    LEDGER_OPERATIONS_TOTAL,
    LEDGER_RETRIES_TOTAL,
)
from creditflow.core.tracing import create_span
from creditflow.modules.billing.exceptions import (
    InsufficientCredits,
    InvalidCreditAmount,
    LedgerUnavailable,
)
from creditflow.modules.billing.models import (
    ALLOCATION_TYPES,
    CreditTransaction,
    Plan,
    TransactionType,
)
from creditflow.modules.billing.repository import BalanceRow, CreditLedgerRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class LedgerResult:
    """Outcome of a successful ledger mutation."""
    new_balance: int
    transaction_id: uuid.UUID
    sequence: int


@dataclass
class BalanceSnapshot:
    """Read-only view of a member's balance. Zeroed when no row exists."""
    member_id: uuid.UUID
    balance: int = 0
    lifetime_earned: int = 0
    lifetime_spent: int = 0
    last_reset_at: Optional[datetime] = None


@dataclass
class MonthlyAllocation:
    """Breakdown of a monthly grant."""
    monthly_credits: int
    rollover_amount: int

    @property
    def total(self) -> int:
        return self.monthly_credits + self.rollover_amount


@dataclass
class ReconciliationReport:
    member_id: uuid.UUID
    balance: int
    lifetime_earned: int
    lifetime_spent: int
    transaction_sum: int
    transaction_count: int

    @property
    def is_consistent(self) -> bool:
        return (
            self.balance == self.transaction_sum
            and self.balance == self.lifetime_earned - self.lifetime_spent
            and self.balance >= 0
        )


# ==================== Pure Functions ====================


def calculate_monthly_allocation(
    monthly_credits: int,
    rollover_enabled: bool,
    max_rollover_credits: Optional[int],
    current_balance: int,
) -> MonthlyAllocation:
    """Compute the monthly grant including the rollover bonus.

    The rollover bonus is ``min(current_balance, cap)`` where the cap
    defaults to the monthly grant. It is added on top of the existing
    balance, which is left untouched.
    """
    rollover_amount = 0
    if rollover_enabled and current_balance > 0:
        cap = max_rollover_credits if max_rollover_credits is not None else monthly_credits
        rollover_amount = max(0, min(current_balance, cap))
    return MonthlyAllocation(monthly_credits=monthly_credits, rollover_amount=rollover_amount)


def validate_amount(amount: int) -> None:
    """Raise InvalidCreditAmount unless ``amount`` is a positive integer."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidCreditAmount(f"Credit amount must be an integer, got {amount!r}")
    if amount <= 0:
        raise InvalidCreditAmount(f"Credit amount must be positive, got {amount}")


# ==================== Ledger Service ====================


class CreditLedger:
    """Atomic credit allocation and deduction for members."""

    def __init__(
        self,
        session: AsyncSession,
        max_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
    ):
        self.session = session
        self.repository = CreditLedgerRepository(session)
        self.max_retries = max_retries if max_retries is not None else settings.LEDGER_MAX_RETRIES
        self.retry_backoff = (
            retry_backoff if retry_backoff is not None else settings.LEDGER_RETRY_BACKOFF_SECONDS
        )

    async def allocate(
        self,
        member_id: uuid.UUID,
        amount: int,
        type: Union[TransactionType, str],
        description: str,
        subscription_id: Optional[uuid.UUID] = None,
        chat_id: Optional[str] = None,
        usage_record_id: Optional[uuid.UUID] = None,
        metadata: Optional[dict] = None,
    ) -> LedgerResult:
        """Grant credits to a member, creating the balance row on first use.

        Raises:
            InvalidCreditAmount: Non-positive amount or a deduction type
            LedgerUnavailable: Write conflicts persisted past all retries
        """
        transaction_type = self._allocation_type(type)
        try:
            validate_amount(amount)
        except InvalidCreditAmount:
            LEDGER_OPERATIONS_TOTAL.labels(operation="allocate", outcome="invalid").inc()
            raise

        async def apply() -> LedgerResult:
            reset = transaction_type == TransactionType.MONTHLY_ALLOCATION
            row = await self.repository.credit(member_id, amount, reset=reset)
            if row is None:
                row = await self.repository.create_balance(member_id, amount, reset=reset)
            return await self._append(
                member_id, row, amount, transaction_type, description,
                subscription_id, chat_id, usage_record_id, metadata,
            )

        with create_span("ledger.allocate", attributes={"member_id": str(member_id), "amount": amount}):
            result = await self._run("allocate", apply)

        LEDGER_CREDITS_TOTAL.labels(direction="credit").inc(amount)
        log_info(
            logger,
            "Credits allocated",
            member_id=str(member_id),
            amount=amount,
            transaction_type=transaction_type.value,
            balance_after=result.new_balance,
        )
        return result

    async def deduct(
        self,
        member_id: uuid.UUID,
        amount: int,
        description: str,
        subscription_id: Optional[uuid.UUID] = None,
        chat_id: Optional[str] = None,
        usage_record_id: Optional[uuid.UUID] = None,
        metadata: Optional[dict] = None,
    ) -> LedgerResult:
        """Consume credits. Nothing is written unless the balance covers ``amount``.

        A refused deduction leaves objects loaded in the session usable.
        Any other failure rolls the session back and expires them.

        Raises:
            InvalidCreditAmount: Non-positive amount
            InsufficientCredits: No balance row, or balance below amount
            LedgerUnavailable: Write conflicts persisted past all retries
        """
        try:
            validate_amount(amount)
        except InvalidCreditAmount:
            LEDGER_OPERATIONS_TOTAL.labels(operation="deduct", outcome="invalid").inc()
            raise

        async def apply() -> LedgerResult:
            row = await self.repository.debit(member_id, amount)
            if row is None:
                current = await self.repository.get_balance(member_id)
                raise InsufficientCredits(
                    required=amount,
                    available=current.balance if current else 0,
                )
            return await self._append(
                member_id, row, -amount, TransactionType.USAGE_DEDUCTION, description,
                subscription_id, chat_id, usage_record_id, metadata,
            )

        with create_span("ledger.deduct", attributes={"member_id": str(member_id), "amount": amount}):
            try:
                result = await self._run("deduct", apply)
            except InsufficientCredits as e:
                log_warning(
                    logger,
                    "Credit deduction rejected",
                    member_id=str(member_id),
                    amount=amount,
                    available=e.available,
                )
                raise

        LEDGER_CREDITS_TOTAL.labels(direction="debit").inc(amount)
        log_info(
            logger,
            "Credits deducted",
            member_id=str(member_id),
            amount=amount,
            balance_after=result.new_balance,
        )
        return result

    async def get_balance(self, member_id: uuid.UUID) -> BalanceSnapshot:
        """Current balance. Never creates a row."""
        balance = await self.repository.get_balance(member_id)
        if balance is None:
            return BalanceSnapshot(member_id=member_id)
        return BalanceSnapshot(
            member_id=member_id,
            balance=balance.balance,
            lifetime_earned=balance.lifetime_earned,
            lifetime_spent=balance.lifetime_spent,
            last_reset_at=balance.last_reset_at,
        )

    async def list_transactions(
        self, member_id: uuid.UUID, limit: Optional[int] = None
    ) -> list[CreditTransaction]:
        """Ledger entries, most recent first."""
        if limit is None:
            limit = settings.DEFAULT_TRANSACTION_LIMIT
        return await self.repository.list_transactions(member_id, max(limit, 0))

    async def allocate_monthly_credits(
        self,
        member_id: uuid.UUID,
        plan: Plan,
        subscription_id: Optional[uuid.UUID] = None,
    ) -> Optional[LedgerResult]:
        """Grant the plan's monthly credits plus any rollover bonus.

        Returns None when the plan grants nothing this period.
        """
        current = await self.get_balance(member_id)
        allocation = calculate_monthly_allocation(
            monthly_credits=plan.monthly_credits,
            rollover_enabled=plan.rollover_credits,
            max_rollover_credits=plan.max_rollover_credits,
            current_balance=current.balance,
        )
        if allocation.total <= 0:
            log_info(
                logger,
                "No monthly credits to allocate",
                member_id=str(member_id),
                plan_id=str(plan.id),
            )
            return None

        return await self.allocate(
            member_id,
            allocation.total,
            TransactionType.MONTHLY_ALLOCATION,
            f"Monthly credit allocation for {plan.display_name} plan",
            subscription_id=subscription_id,
            metadata={
                "planId": str(plan.id),
                "monthlyCredits": allocation.monthly_credits,
                "rolloverAmount": allocation.rollover_amount,
            },
        )

    async def reconcile(self, member_id: uuid.UUID) -> ReconciliationReport:
        """Compare the balance row with the sum of the member's ledger entries."""
        snapshot = await self.get_balance(member_id)
        total, count = await self.repository.sum_transactions(member_id)
        report = ReconciliationReport(
            member_id=member_id,
            balance=snapshot.balance,
            lifetime_earned=snapshot.lifetime_earned,
            lifetime_spent=snapshot.lifetime_spent,
            transaction_sum=total,
            transaction_count=count,
        )
        if not report.is_consistent:
            log_error(
                logger,
                "Ledger reconciliation mismatch",
                member_id=str(member_id),
                balance=report.balance,
                transaction_sum=report.transaction_sum,
            )
        return report

    # ==================== Internals ====================

    @staticmethod
    def _allocation_type(value: Union[TransactionType, str]) -> TransactionType:
        try:
            transaction_type = TransactionType(value)
        except ValueError:
            raise InvalidCreditAmount(f"Unknown transaction type: {value!r}")
        if transaction_type not in ALLOCATION_TYPES:
            raise InvalidCreditAmount(f"{transaction_type.value} is not an allocation type")
        return transaction_type

    async def _append(
        self,
        member_id: uuid.UUID,
        row: BalanceRow,
        signed_amount: int,
        transaction_type: TransactionType,
        description: str,
        subscription_id: Optional[uuid.UUID],
        chat_id: Optional[str],
        usage_record_id: Optional[uuid.UUID],
        metadata: Optional[dict],
    ) -> LedgerResult:
        transaction = await self.repository.add_transaction(
            member_id=member_id,
            sequence=row.version,
            amount=signed_amount,
            balance_after=row.balance,
            type=transaction_type.value,
            description=description,
            subscription_id=subscription_id,
            chat_id=chat_id,
            usage_record_id=usage_record_id,
            transaction_metadata=metadata,
        )
        return LedgerResult(
            new_balance=row.balance,
            transaction_id=transaction.id,
            sequence=row.version,
        )

    async def _run(self, operation: str, apply: Callable[[], Awaitable[T]]) -> T:
        """Run ``apply`` in its own transaction, retrying write conflicts."""
        started = time.perf_counter()
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                result = await apply()
                await self.session.commit()
            except (IntegrityError, OperationalError) as e:
                await self.session.rollback()
                last_error = e
                LEDGER_RETRIES_TOTAL.labels(operation=operation).inc()
                log_warning(
                    logger,
                    "Ledger write conflict, retrying",
                    operation=operation,
                    attempt=attempt,
                    error=str(e.orig) if e.orig is not None else str(e),
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_backoff * (2 ** (attempt - 1)))
                continue
            except InsufficientCredits:
                # The guarded UPDATE matched no row, so there is nothing to
                # undo. Committing ends the transaction without expiring
                # rows the caller still holds.
                await self.session.commit()
                LEDGER_OPERATIONS_TOTAL.labels(operation=operation, outcome="insufficient").inc()
                raise
            except Exception:
                await self.session.rollback()
                LEDGER_OPERATIONS_TOTAL.labels(operation=operation, outcome="error").inc()
                raise

            LEDGER_OPERATIONS_TOTAL.labels(operation=operation, outcome="success").inc()
            LEDGER_OPERATION_DURATION_SECONDS.labels(operation=operation).observe(
                time.perf_counter() - started
            )
            return result

        LEDGER_OPERATIONS_TOTAL.labels(operation=operation, outcome="unavailable").inc()
        log_error(
            logger,
            "Ledger write failed after retries",
            exception=last_error,
            operation=operation,
            attempts=self.max_retries,
        )
        raise LedgerUnavailable(operation, self.max_retries, last_error)
