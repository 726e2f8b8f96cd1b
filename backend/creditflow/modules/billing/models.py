"""Billing models for plans, subscriptions and the credit ledger.

CreditBalance and CreditTransaction are written exclusively by
``creditflow.modules.billing.ledger.CreditLedger``.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from creditflow.core.database import Base
from creditflow.modules.billing.limits import FeatureLimit, FeatureLimitType, UNLIMITED


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from backends that drop the offset."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class TransactionType(str, Enum):
    """Ledger entry kinds. Every type except USAGE_DEDUCTION is an allocation."""
    PURCHASE = "purchase"
    MONTHLY_ALLOCATION = "monthly_allocation"
    BONUS = "bonus"
    REFUND = "refund"
    USAGE_DEDUCTION = "usage_deduction"
    ROLLOVER = "rollover"


ALLOCATION_TYPES = frozenset(t for t in TransactionType if t != TransactionType.USAGE_DEDUCTION)


class UsageResourceType(str, Enum):
    """Types of metered resources."""
    LLM_TOKENS = "llm_tokens"
    API_CALL = "api_call"
    STORAGE = "storage"
    DEPLOYMENT = "deployment"
    DATA_SOURCE_QUERY = "data_source_query"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class Plan(Base):
    """Subscription plan catalog entry.

    Never deleted; retired plans are soft-deactivated through ``is_active``.
    """

    __tablename__ = "plans"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Plan identification
    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True, index=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Pricing (in cents)
    monthly_price: Mapped[int] = mapped_column(Integer, default=0)
    yearly_price: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="usd")

    # Stripe integration
    stripe_price_id_monthly: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_price_id_yearly: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Credits
    monthly_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rollover_credits: Mapped[bool] = mapped_column(Boolean, default=False)
    max_rollover_credits: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Feature limits (NULL means unlimited)
    max_projects: Mapped[FeatureLimit] = mapped_column(FeatureLimitType, nullable=True, default=UNLIMITED)
    max_api_integrations: Mapped[FeatureLimit] = mapped_column(FeatureLimitType, nullable=True, default=UNLIMITED)
    max_team_members: Mapped[FeatureLimit] = mapped_column(FeatureLimitType, nullable=True, default=UNLIMITED)
    max_deployments: Mapped[FeatureLimit] = mapped_column(FeatureLimitType, nullable=True, default=UNLIMITED)

    features: Mapped[list] = mapped_column(JSON, default=list)
    api_rate_limit: Mapped[int] = mapped_column(Integer, default=60)  # requests per minute

    # Status
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, name={self.name}, credits={self.monthly_credits})>"


class Subscription(Base):
    """A member's subscription to a plan.

    At most one row per member is ``active`` at a time; creating a new
    subscription cancels the previous one instead of deleting it.
    """

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    member_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    plan_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("plans.id"), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=SubscriptionStatus.ACTIVE.value, nullable=False, index=True
    )
    billing_period: Mapped[str] = mapped_column(
        String(20), default=BillingPeriod.MONTHLY.value, nullable=False
    )

    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Stripe integration
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    # Trial window
    trial_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )

    __table_args__ = (
        Index("ix_subscriptions_member_status", "member_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, member={self.member_id}, status={self.status})>"


class CreditBalance(Base):
    """Authoritative per-member credit balance.

    Invariants: ``balance == lifetime_earned - lifetime_spent`` and
    ``balance >= 0``. ``version`` increments on every mutation and is
    copied to the matching CreditTransaction as its sequence number.
    """

    __tablename__ = "credit_balances"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    member_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True, index=True)

    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifetime_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifetime_spent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_reset_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_balances_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<CreditBalance(member={self.member_id}, balance={self.balance})>"


class CreditTransaction(Base):
    """Append-only ledger entry. Positive amounts credit, negative debit."""

    __tablename__ = "credit_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    member_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False)

    # Originating references
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    chat_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    usage_record_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    transaction_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("member_id", "sequence", name="uq_credit_transactions_member_sequence"),
    )

    def __repr__(self) -> str:
        return f"<CreditTransaction(member={self.member_id}, seq={self.sequence}, amount={self.amount})>"


class UsageRecord(Base):
    """One metered action.

    Written before the ledger deduction is attempted and never deleted;
    failed deductions are marked with ``creditDeductionFailed`` in
    ``usage_metadata``.
    """

    __tablename__ = "usage_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    member_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    chat_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    resource_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    credit_cost: Mapped[int] = mapped_column(Integer, nullable=False)

    # LLM token breakdown
    model_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    prompt_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    completion_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cached_prompt_tokens: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    api_integration_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    usage_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_usage_records_member_created", "member_id", "created_at"),
    )

    @property
    def deduction_failed(self) -> bool:
        return bool((self.usage_metadata or {}).get("creditDeductionFailed"))

    def __repr__(self) -> str:
        return f"<UsageRecord(id={self.id}, type={self.resource_type}, cost={self.credit_cost})>"


class Payment(Base):
    """Payment recorded from a payment provider invoice event."""

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    member_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # in cents
    currency: Mapped[str] = mapped_column(String(3), default="usd")
    status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(50), default="card")

    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_charge_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    stripe_invoice_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)

    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, member={self.member_id}, amount={self.amount})>"
