"""Repository for billing database operations.

Plan, subscription, usage and payment repositories commit their own
writes. ``CreditLedgerRepository`` never commits: the ledger service
owns the transaction so the balance update and the ledger entry land
atomically.
"""

import uuid
from datetime import datetime
from typing import Any, NamedTuple, Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.modules.billing.models import (
    CreditBalance,
    CreditTransaction,
    Payment,
    Plan,
    Subscription,
    SubscriptionStatus,
    UsageRecord,
    utc_now,
)


class PlanRepository:
    """Repository for plan operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_all(self, include_inactive: bool = False) -> list[Plan]:
        """Get plans ordered by sort_order."""
        query = select(Plan).order_by(Plan.sort_order, Plan.name)
        if not include_inactive:
            query = query.where(Plan.is_active.is_(True))
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_by_id(self, plan_id: uuid.UUID) -> Optional[Plan]:
        result = await self.session.execute(
            select(Plan).where(Plan.id == plan_id)
        )
        return result.scalar_one_or_none()

    async def get_by_name(self, name: str) -> Optional[Plan]:
        result = await self.session.execute(
            select(Plan).where(Plan.name == name)
        )
        return result.scalar_one_or_none()

    async def create(self, **kwargs) -> Plan:
        plan = Plan(**kwargs)
        self.session.add(plan)
        await self.session.commit()
        await self.session.refresh(plan)
        return plan

    async def update(self, plan_id: uuid.UUID, **kwargs) -> Optional[Plan]:
        """Update a plan in place. Unknown keys are ignored."""
        plan = await self.get_by_id(plan_id)
        if not plan:
            return None
        for key, value in kwargs.items():
            if hasattr(plan, key):
                setattr(plan, key, value)
        await self.session.commit()
        await self.session.refresh(plan)
        return plan


class SubscriptionRepository:
    """Repository for subscription operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def replace_active_subscription(self, member_id: uuid.UUID, **fields) -> tuple[Subscription, list[uuid.UUID]]:
        """Cancel the member's active subscriptions and insert a new one.

        Both happen in one commit so no reader sees two active rows.

        Returns:
            The new subscription and the ids of the subscriptions cancelled
        """
        now = utc_now()
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.member_id == member_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
        )
        cancelled_ids = []
        for existing in result.scalars().all():
            existing.status = SubscriptionStatus.CANCELLED.value
            existing.cancelled_at = now
            cancelled_ids.append(existing.id)

        subscription = Subscription(member_id=member_id, **fields)
        self.session.add(subscription)
        await self.session.commit()
        await self.session.refresh(subscription)
        return subscription, cancelled_ids

    async def get_by_id(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_active_by_member(self, member_id: uuid.UUID) -> Optional[Subscription]:
        """Get the member's active subscription, newest first if several slipped in."""
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.member_id == member_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_by_member(self, member_id: uuid.UUID) -> list[Subscription]:
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.member_id == member_id)
            .order_by(Subscription.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_by_stripe_subscription_id(
        self, stripe_subscription_id: Optional[str]
    ) -> Optional[Subscription]:
        if not stripe_subscription_id:
            return None
        result = await self.session.execute(
            select(Subscription).where(
                Subscription.stripe_subscription_id == stripe_subscription_id
            )
        )
        return result.scalars().first()

    async def get_by_stripe_customer_id(self, stripe_customer_id: Optional[str]) -> Optional[Subscription]:
        """Get the most recent subscription carrying a Stripe customer id."""
        if not stripe_customer_id:
            return None
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.stripe_customer_id == stripe_customer_id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def update_subscription(
        self, subscription_id: uuid.UUID, **kwargs
    ) -> Optional[Subscription]:
        subscription = await self.get_by_id(subscription_id)
        if not subscription:
            return None
        for key, value in kwargs.items():
            if hasattr(subscription, key):
                setattr(subscription, key, value)
        await self.session.commit()
        await self.session.refresh(subscription)
        return subscription

    async def get_due_for_renewal(self, now: datetime, limit: int = 500) -> list[Subscription]:
        """Active subscriptions whose current period has ended."""
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.current_period_end <= now,
            )
            .order_by(Subscription.current_period_end)
            .limit(limit)
        )
        return list(result.scalars().all())


class BalanceRow(NamedTuple):
    balance: int
    version: int


class CreditLedgerRepository:
    """Row-level operations on credit balances and transactions.

    Balance updates are single conditional UPDATE ... RETURNING
    statements, so the read and the write of a balance never happen in
    two steps from application code.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_balance(self, member_id: uuid.UUID) -> Optional[CreditBalance]:
        result = await self.session.execute(
            select(CreditBalance)
            .where(CreditBalance.member_id == member_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def credit(
        self, member_id: uuid.UUID, amount: int, reset: bool = False
    ) -> Optional[BalanceRow]:
        """Add ``amount`` to an existing balance row.

        Returns None when the member has no balance row yet.
        """
        now = utc_now()
        values: dict[str, Any] = {
            "balance": CreditBalance.balance + amount,
            "lifetime_earned": CreditBalance.lifetime_earned + amount,
            "version": CreditBalance.version + 1,
            "updated_at": now,
        }
        if reset:
            values["last_reset_at"] = now
        result = await self.session.execute(
            update(CreditBalance)
            .where(CreditBalance.member_id == member_id)
            .values(**values)
            .returning(CreditBalance.balance, CreditBalance.version)
            .execution_options(synchronize_session=False)
        )
        row = result.one_or_none()
        return BalanceRow(row.balance, row.version) if row else None

    async def create_balance(
        self, member_id: uuid.UUID, amount: int, reset: bool = False
    ) -> BalanceRow:
        """Insert the first balance row for a member.

        Raises IntegrityError on flush when a concurrent writer created
        the row first.
        """
        now = utc_now()
        balance = CreditBalance(
            member_id=member_id,
            balance=amount,
            lifetime_earned=amount,
            lifetime_spent=0,
            version=1,
            last_reset_at=now if reset else None,
            updated_at=now,
        )
        self.session.add(balance)
        await self.session.flush()
        return BalanceRow(balance.balance, balance.version)

    async def debit(self, member_id: uuid.UUID, amount: int) -> Optional[BalanceRow]:
        """Subtract ``amount`` if and only if the balance covers it.

        Returns None when the row is missing or the balance is short;
        nothing is written in that case.
        """
        result = await self.session.execute(
            update(CreditBalance)
            .where(
                CreditBalance.member_id == member_id,
                CreditBalance.balance >= amount,
            )
            .values(
                balance=CreditBalance.balance - amount,
                lifetime_spent=CreditBalance.lifetime_spent + amount,
                version=CreditBalance.version + 1,
                updated_at=utc_now(),
            )
            .returning(CreditBalance.balance, CreditBalance.version)
            .execution_options(synchronize_session=False)
        )
        row = result.one_or_none()
        return BalanceRow(row.balance, row.version) if row else None

    async def add_transaction(self, **fields) -> CreditTransaction:
        transaction = CreditTransaction(**fields)
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def list_transactions(
        self, member_id: uuid.UUID, limit: int
    ) -> list[CreditTransaction]:
        """Most recent first, in commit order."""
        result = await self.session.execute(
            select(CreditTransaction)
            .where(CreditTransaction.member_id == member_id)
            .order_by(CreditTransaction.sequence.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def sum_transactions(self, member_id: uuid.UUID) -> tuple[int, int]:
        """Return (sum of amounts, number of entries) for a member."""
        result = await self.session.execute(
            select(
                func.coalesce(func.sum(CreditTransaction.amount), 0),
                func.count(CreditTransaction.id),
            ).where(CreditTransaction.member_id == member_id)
        )
        total, count = result.one()
        return int(total), int(count)


class UsageRepository:
    """Repository for usage records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_record(self, **fields) -> UsageRecord:
        record = UsageRecord(**fields)
        self.session.add(record)
        await self.session.commit()
        await self.session.refresh(record)
        return record

    async def get_by_id(self, record_id: uuid.UUID) -> Optional[UsageRecord]:
        result = await self.session.execute(
            select(UsageRecord).where(UsageRecord.id == record_id)
        )
        return result.scalar_one_or_none()

    async def merge_metadata(self, record_id: uuid.UUID, patch: dict) -> Optional[UsageRecord]:
        """Merge keys into a record's metadata. Assigns a new dict so the change is tracked."""
        record = await self.get_by_id(record_id)
        if not record:
            return None
        record.usage_metadata = {**(record.usage_metadata or {}), **patch}
        await self.session.commit()
        await self.session.refresh(record)
        return record

    async def get_records(
        self,
        member_id: uuid.UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[UsageRecord]:
        query = select(UsageRecord).where(UsageRecord.member_id == member_id)
        if start is not None:
            query = query.where(UsageRecord.created_at >= start)
        if end is not None:
            query = query.where(UsageRecord.created_at <= end)
        query = query.order_by(UsageRecord.created_at.desc())
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())


class PaymentRepository:
    """Repository for payment records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_payment(self, **fields) -> Payment:
        payment = Payment(**fields)
        self.session.add(payment)
        await self.session.commit()
        await self.session.refresh(payment)
        return payment

    async def get_by_stripe_invoice_id(self, stripe_invoice_id: Optional[str]) -> Optional[Payment]:
        if not stripe_invoice_id:
            return None
        result = await self.session.execute(
            select(Payment).where(Payment.stripe_invoice_id == stripe_invoice_id)
        )
        return result.scalar_one_or_none()

    async def get_member_payments(self, member_id: uuid.UUID, limit: int = 50) -> list[Payment]:
        result = await self.session.execute(
            select(Payment)
            .where(Payment.member_id == member_id)
            .order_by(Payment.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
