"""Celery tasks for the billing module.

Credit grants run here so subscription creation never waits on the
ledger.
"""

import asyncio
import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.core.celery_app import celery_app
from creditflow.core.database import engine, session_scope
from creditflow.core.logging import log_info, log_warning
from creditflow.modules.billing.exceptions import LedgerUnavailable
from creditflow.modules.billing.ledger import CreditLedger, LedgerResult
from creditflow.modules.billing.models import SubscriptionStatus
from creditflow.modules.billing.repository import PlanRepository, SubscriptionRepository
from creditflow.modules.billing.service import RenewalSummary, SubscriptionService

logger = logging.getLogger(__name__)

GRANTABLE_STATUSES = {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value}


async def allocate_for_subscription(
    session: AsyncSession, member_id: uuid.UUID, subscription_id: uuid.UUID
) -> Optional[LedgerResult]:
    """Grant a subscription's monthly credits.

    Skipped when the subscription was cancelled or replaced before the
    worker picked the job up.
    """
    subscription = await SubscriptionRepository(session).get_by_id(subscription_id)
    if not subscription or subscription.status not in GRANTABLE_STATUSES:
        log_warning(
            logger,
            "Skipping credit allocation for inactive subscription",
            member_id=str(member_id),
            subscription_id=str(subscription_id),
        )
        return None

    plan = await PlanRepository(session).get_by_id(subscription.plan_id)
    if not plan:
        log_warning(
            logger,
            "Skipping credit allocation, plan missing",
            subscription_id=str(subscription_id),
            plan_id=str(subscription.plan_id),
        )
        return None

    return await CreditLedger(session).allocate_monthly_credits(
        member_id, plan, subscription_id=subscription.id
    )


async def _allocate_monthly_credits(member_id: str, subscription_id: str) -> Optional[int]:
    try:
        async with session_scope() as session:
            result = await allocate_for_subscription(
                session, uuid.UUID(member_id), uuid.UUID(subscription_id)
            )
            return result.new_balance if result else None
    finally:
        # Pooled connections are bound to this task's event loop
        await engine.dispose()


async def _renew_due_subscriptions() -> RenewalSummary:
    try:
        async with session_scope() as session:
            return await SubscriptionService(session).renew_due_subscriptions()
    finally:
        await engine.dispose()


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    name="billing.allocate_monthly_credits",
)
def allocate_monthly_credits_task(self, member_id: str, subscription_id: str):
    """Grant the monthly credit allocation for a subscription.

    Args:
        member_id: Member UUID string
        subscription_id: Subscription UUID string
    """
    try:
        new_balance = asyncio.run(_allocate_monthly_credits(member_id, subscription_id))
    except LedgerUnavailable as e:
        raise self.retry(exc=e)

    log_info(
        logger,
        "Monthly credits allocated",
        member_id=member_id,
        subscription_id=subscription_id,
        new_balance=new_balance,
    )
    return {"member_id": member_id, "new_balance": new_balance}


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    name="billing.renew_due_subscriptions",
)
def renew_due_subscriptions_task(self):
    """Close ended billing periods and grant the next period's credits.

    Scheduled by Celery beat.
    """
    try:
        summary = asyncio.run(_renew_due_subscriptions())
    except LedgerUnavailable as e:
        raise self.retry(exc=e)

    return {
        "renewed": len(summary.renewed),
        "cancelled": len(summary.cancelled),
        "failed": len(summary.failed),
    }
