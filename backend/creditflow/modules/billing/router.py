"""API Router for the billing module.

Plans, subscriptions, the credit ledger, usage metering and the Stripe
webhook endpoint.
"""

import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.core.database import get_session
from creditflow.modules.billing.exceptions import (
    InsufficientCredits,
    InvalidCreditAmount,
    LedgerUnavailable,
    PlanAlreadyExists,
    PlanNotFound,
    SubscriptionNotFound,
)
from creditflow.modules.billing.ledger import CreditLedger
from creditflow.modules.billing.metering import UsageRecorder
from creditflow.modules.billing.repository import PaymentRepository
from creditflow.modules.billing.schemas import (
    CreditAllocationRequest,
    CreditBalanceResponse,
    CreditDeductionRequest,
    CreditTransactionListResponse,
    CreditTransactionResponse,
    LedgerResultResponse,
    PaymentResponse,
    PlanCreate,
    PlanResponse,
    PlanUpdate,
    ReconciliationResponse,
    ResourceUsageStats,
    SubscriptionCancelRequest,
    SubscriptionCreate,
    SubscriptionResponse,
    SubscriptionStatusUpdate,
    UsageRecordRequest,
    UsageRecordResponse,
    UsageStatsResponse,
    WebhookResponse,
)
from creditflow.modules.billing.service import PlanCatalog, SubscriptionService
from creditflow.modules.billing.stripe_client import construct_webhook_event
from creditflow.modules.billing.webhooks import PaymentEventTranslator

router = APIRouter(prefix="/billing", tags=["billing"])


def _insufficient_credits(e: InsufficientCredits) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={"message": str(e), "required": e.required, "available": e.available},
    )


def _ledger_unavailable(e: LedgerUnavailable) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


# ==================== Plans ====================

@router.get("/plans", response_model=list[PlanResponse])
async def list_plans(
    include_inactive: bool = False,
    session: AsyncSession = Depends(get_session),
):
    """List plans ordered by sort order."""
    return await PlanCatalog(session).list_plans(include_inactive=include_inactive)


@router.post("/plans/defaults", response_model=list[PlanResponse])
async def install_default_plans(
    session: AsyncSession = Depends(get_session),
):
    """Install the default catalogue. Existing plan names are left alone."""
    return await PlanCatalog(session).ensure_default_plans()


@router.get("/plans/{plan_id}", response_model=PlanResponse)
async def get_plan(
    plan_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    try:
        return await PlanCatalog(session).get_plan(plan_id)
    except PlanNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/plans", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(
    data: PlanCreate,
    session: AsyncSession = Depends(get_session),
):
    try:
        return await PlanCatalog(session).create_plan(data)
    except PlanAlreadyExists as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.patch("/plans/{plan_id}", response_model=PlanResponse)
async def update_plan(
    plan_id: uuid.UUID,
    data: PlanUpdate,
    session: AsyncSession = Depends(get_session),
):
    try:
        return await PlanCatalog(session).update_plan(plan_id, data)
    except PlanNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.delete("/plans/{plan_id}", response_model=PlanResponse)
async def deactivate_plan(
    plan_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    """Soft-deactivate a plan. Plans are never deleted."""
    try:
        return await PlanCatalog(session).deactivate_plan(plan_id)
    except PlanNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


# ==================== Subscriptions ====================

@router.post("/subscriptions", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    data: SubscriptionCreate,
    session: AsyncSession = Depends(get_session),
):
    """Subscribe a member to a plan, replacing any active subscription.

    The initial credit grant is queued and lands shortly after.
    """
    service = SubscriptionService(session)
    try:
        return await service.create(
            member_id=data.member_id,
            plan_id=data.plan_id,
            billing_period=data.billing_period,
            trial_days=data.trial_days,
            stripe_subscription_id=data.stripe_subscription_id,
            stripe_customer_id=data.stripe_customer_id,
        )
    except PlanNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/subscriptions", response_model=list[SubscriptionResponse])
async def list_subscriptions(
    member_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    """All of a member's subscriptions, newest first."""
    return await SubscriptionService(session).list_subscriptions(member_id)


@router.get("/subscriptions/active", response_model=Optional[SubscriptionResponse])
async def get_active_subscription(
    member_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    """The member's active subscription, or null."""
    return await SubscriptionService(session).get_active_subscription(member_id)


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    try:
        return await SubscriptionService(session).get(subscription_id)
    except SubscriptionNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.patch("/subscriptions/{subscription_id}/status", response_model=SubscriptionResponse)
async def update_subscription_status(
    subscription_id: uuid.UUID,
    data: SubscriptionStatusUpdate,
    session: AsyncSession = Depends(get_session),
):
    try:
        return await SubscriptionService(session).update_status(
            subscription_id, data.status, cancel_at_period_end=data.cancel_at_period_end
        )
    except SubscriptionNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: uuid.UUID,
    data: Optional[SubscriptionCancelRequest] = None,
    session: AsyncSession = Depends(get_session),
):
    """Cancel at period end, or immediately when requested."""
    immediate = data.immediate if data else False
    try:
        return await SubscriptionService(session).cancel(subscription_id, immediate=immediate)
    except SubscriptionNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


# ==================== Credits ====================

@router.get("/credits/{member_id}", response_model=CreditBalanceResponse)
async def get_credit_balance(
    member_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    return await CreditLedger(session).get_balance(member_id)


@router.get("/credits/{member_id}/transactions", response_model=CreditTransactionListResponse)
async def list_credit_transactions(
    member_id: uuid.UUID,
    limit: Optional[int] = Query(None, ge=0, le=500),
    session: AsyncSession = Depends(get_session),
):
    """Ledger entries, most recent first."""
    transactions = await CreditLedger(session).list_transactions(member_id, limit=limit)
    return CreditTransactionListResponse(
        transactions=[CreditTransactionResponse.model_validate(t) for t in transactions],
        total=len(transactions),
    )


@router.get("/credits/{member_id}/reconcile", response_model=ReconciliationResponse)
async def reconcile_credits(
    member_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    """Check the balance row against the ledger entries."""
    return await CreditLedger(session).reconcile(member_id)


@router.post("/credits/allocate", response_model=LedgerResultResponse)
async def allocate_credits(
    data: CreditAllocationRequest,
    session: AsyncSession = Depends(get_session),
):
    try:
        return await CreditLedger(session).allocate(
            data.member_id,
            data.amount,
            data.type,
            data.description,
            subscription_id=data.subscription_id,
            metadata=data.metadata,
        )
    except InvalidCreditAmount as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except LedgerUnavailable as e:
        raise _ledger_unavailable(e)


@router.post("/credits/deduct", response_model=LedgerResultResponse)
async def deduct_credits(
    data: CreditDeductionRequest,
    session: AsyncSession = Depends(get_session),
):
    try:
        return await CreditLedger(session).deduct(
            data.member_id,
            data.amount,
            data.description,
            chat_id=data.chat_id,
            metadata=data.metadata,
        )
    except InsufficientCredits as e:
        raise _insufficient_credits(e)
    except InvalidCreditAmount as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except LedgerUnavailable as e:
        raise _ledger_unavailable(e)


# ==================== Usage ====================

@router.post("/usage", response_model=UsageRecordResponse, status_code=status.HTTP_201_CREATED)
async def record_usage(
    data: UsageRecordRequest,
    session: AsyncSession = Depends(get_session),
):
    """Record a metered action and charge it.

    The usage record is kept even when the charge is refused.
    """
    try:
        return await UsageRecorder(session).record_usage(
            member_id=data.member_id,
            resource_type=data.resource_type,
            quantity=data.quantity,
            credit_cost=data.credit_cost,
            chat_id=data.chat_id,
            model_id=data.model_id,
            prompt_tokens=data.prompt_tokens,
            completion_tokens=data.completion_tokens,
            cached_prompt_tokens=data.cached_prompt_tokens,
            api_integration_id=data.api_integration_id,
            metadata=data.metadata,
        )
    except InsufficientCredits as e:
        raise _insufficient_credits(e)
    except InvalidCreditAmount as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except LedgerUnavailable as e:
        raise _ledger_unavailable(e)


@router.get("/usage/{member_id}/stats", response_model=UsageStatsResponse)
async def get_usage_stats(
    member_id: uuid.UUID,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    session: AsyncSession = Depends(get_session),
):
    """Usage grouped by resource type, defaulting to the last 30 days."""
    stats = await UsageRecorder(session).get_usage_stats(member_id, start=start, end=end)
    return UsageStatsResponse(
        member_id=stats.member_id,
        start=stats.start,
        end=stats.end,
        by_resource_type=[
            ResourceUsageStats(
                resource_type=u.resource_type,
                count=u.count,
                total_quantity=u.total_quantity,
                total_credit_cost=u.total_credit_cost,
            )
            for u in stats.by_resource_type
        ],
        total_credits_spent=stats.total_credits_spent,
        total_records=stats.total_records,
    )


# ==================== Payments ====================

@router.get("/payments/{member_id}", response_model=list[PaymentResponse])
async def list_payments(
    member_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
):
    return await PaymentRepository(session).get_member_payments(member_id, limit=limit)


@router.post("/webhooks/stripe", response_model=WebhookResponse)
async def handle_stripe_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    """Receive Stripe webhook events."""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        event = construct_webhook_event(payload, sig_header)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    result = await PaymentEventTranslator(session).handle_stripe_webhook(event)
    return WebhookResponse(event_type=result.event_type, handled=result.handled)
