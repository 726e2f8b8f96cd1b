"""Pydantic schemas for the billing API."""

import uuid
from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from creditflow.modules.billing.limits import Bounded, Unlimited
from creditflow.modules.billing.models import (
    BillingPeriod,
    SubscriptionStatus,
    TransactionType,
    UsageResourceType,
)

LimitValue = Union[int, Literal["unlimited"]]


def _limit_to_value(value: Any) -> Any:
    if isinstance(value, (Bounded, Unlimited)):
        return value.to_value()
    if value is None:
        return "unlimited"
    return value


# ==================== Plan Schemas ====================

class PlanBase(BaseModel):
    """Fields shared by plan create and response schemas."""
    display_name: str = Field(..., max_length=100)
    description: Optional[str] = None
    monthly_price: int = Field(0, ge=0, description="Monthly price in cents")
    yearly_price: int = Field(0, ge=0, description="Yearly price in cents")
    currency: str = Field("usd", min_length=3, max_length=3)
    stripe_price_id_monthly: Optional[str] = None
    stripe_price_id_yearly: Optional[str] = None
    monthly_credits: int = Field(..., ge=0, description="Credits granted each period")
    rollover_credits: bool = Field(False, description="Carry unused credits into the next period")
    max_rollover_credits: Optional[int] = Field(None, ge=0, description="Rollover cap, defaults to monthly_credits")
    max_projects: LimitValue = Field("unlimited", description="Integer cap or 'unlimited'")
    max_api_integrations: LimitValue = Field("unlimited", description="Integer cap or 'unlimited'")
    max_team_members: LimitValue = Field("unlimited", description="Integer cap or 'unlimited'")
    max_deployments: LimitValue = Field("unlimited", description="Integer cap or 'unlimited'")
    features: list[str] = Field(default_factory=list)
    api_rate_limit: int = Field(60, ge=0, description="Requests per minute")
    sort_order: int = 0

    @field_validator(
        "max_projects", "max_api_integrations", "max_team_members", "max_deployments",
        mode="before",
    )
    @classmethod
    def convert_limit(cls, v: Any) -> Any:
        return _limit_to_value(v)


class PlanCreate(PlanBase):
    """Schema for creating a plan."""
    name: str = Field(..., min_length=1, max_length=50, description="Unique plan slug")
    is_active: bool = True


class PlanUpdate(BaseModel):
    """Partial plan update. Only provided fields change."""
    display_name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = None
    monthly_price: Optional[int] = Field(None, ge=0)
    yearly_price: Optional[int] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    stripe_price_id_monthly: Optional[str] = None
    stripe_price_id_yearly: Optional[str] = None
    monthly_credits: Optional[int] = Field(None, ge=0)
    rollover_credits: Optional[bool] = None
    max_rollover_credits: Optional[int] = Field(None, ge=0)
    max_projects: Optional[LimitValue] = None
    max_api_integrations: Optional[LimitValue] = None
    max_team_members: Optional[LimitValue] = None
    max_deployments: Optional[LimitValue] = None
    features: Optional[list[str]] = None
    api_rate_limit: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


class PlanResponse(PlanBase):
    """Response schema for a plan."""
    id: uuid.UUID
    name: str
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ==================== Subscription Schemas ====================

class SubscriptionCreate(BaseModel):
    """Schema for creating a subscription."""
    member_id: uuid.UUID
    plan_id: uuid.UUID
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    trial_days: Optional[int] = Field(None, ge=1, le=365)
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None


class SubscriptionStatusUpdate(BaseModel):
    status: SubscriptionStatus
    cancel_at_period_end: Optional[bool] = None


class SubscriptionCancelRequest(BaseModel):
    immediate: bool = Field(False, description="Cancel now instead of at period end")


class SubscriptionResponse(BaseModel):
    """Response schema for a subscription."""
    id: uuid.UUID
    member_id: uuid.UUID
    plan_id: uuid.UUID
    status: SubscriptionStatus
    billing_period: BillingPeriod
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    cancelled_at: Optional[datetime] = None
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ==================== Credit Schemas ====================

class CreditBalanceResponse(BaseModel):
    """Member credit balance. Zeroed when the member has none."""
    member_id: uuid.UUID
    balance: int
    lifetime_earned: int
    lifetime_spent: int
    last_reset_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CreditTransactionResponse(BaseModel):
    id: uuid.UUID
    member_id: uuid.UUID
    sequence: int
    amount: int
    balance_after: int
    type: TransactionType
    description: str
    subscription_id: Optional[uuid.UUID] = None
    chat_id: Optional[str] = None
    usage_record_id: Optional[uuid.UUID] = None
    metadata: Optional[dict] = Field(None, validation_alias="transaction_metadata")
    created_at: datetime

    class Config:
        from_attributes = True


class CreditTransactionListResponse(BaseModel):
    transactions: list[CreditTransactionResponse]
    total: int


class CreditAllocationRequest(BaseModel):
    member_id: uuid.UUID
    amount: int = Field(..., gt=0)
    type: TransactionType = TransactionType.BONUS
    description: str = Field(..., min_length=1, max_length=500)
    subscription_id: Optional[uuid.UUID] = None
    metadata: Optional[dict[str, Any]] = None

    @field_validator("type")
    @classmethod
    def reject_deduction_type(cls, v: TransactionType) -> TransactionType:
        if v == TransactionType.USAGE_DEDUCTION:
            raise ValueError("usage_deduction is not an allocation type")
        return v


class CreditDeductionRequest(BaseModel):
    member_id: uuid.UUID
    amount: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)
    chat_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class LedgerResultResponse(BaseModel):
    new_balance: int
    transaction_id: uuid.UUID

    class Config:
        from_attributes = True


# ==================== Usage Schemas ====================

class UsageRecordRequest(BaseModel):
    """Schema for recording one metered action."""
    member_id: uuid.UUID
    resource_type: UsageResourceType
    quantity: int = Field(..., ge=0)
    credit_cost: int = Field(..., gt=0)
    chat_id: Optional[str] = None
    model_id: Optional[str] = None
    prompt_tokens: Optional[int] = Field(None, ge=0)
    completion_tokens: Optional[int] = Field(None, ge=0)
    cached_prompt_tokens: Optional[int] = Field(None, ge=0)
    api_integration_id: Optional[uuid.UUID] = None
    metadata: Optional[dict[str, Any]] = None

    class Config:
        protected_namespaces = ()


class UsageRecordResponse(BaseModel):
    usage_record_id: uuid.UUID
    new_balance: int

    class Config:
        from_attributes = True


class ResourceUsageStats(BaseModel):
    resource_type: UsageResourceType
    count: int
    total_quantity: int
    total_credit_cost: int


class UsageStatsResponse(BaseModel):
    """Aggregated usage for a member over a time window."""
    member_id: uuid.UUID
    start: datetime
    end: datetime
    by_resource_type: list[ResourceUsageStats]
    total_credits_spent: int
    total_records: int


class ReconciliationResponse(BaseModel):
    """Balance row compared with the sum of ledger entries."""
    member_id: uuid.UUID
    balance: int
    lifetime_earned: int
    lifetime_spent: int
    transaction_sum: int
    transaction_count: int
    is_consistent: bool

    class Config:
        from_attributes = True


# ==================== Payment Schemas ====================

class PaymentResponse(BaseModel):
    id: uuid.UUID
    member_id: uuid.UUID
    subscription_id: Optional[uuid.UUID] = None
    amount: int
    currency: str
    status: str
    payment_method: str
    stripe_invoice_id: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


# ==================== Webhook Schemas ====================

class WebhookResponse(BaseModel):
    received: bool = True
    event_type: str
    handled: bool
