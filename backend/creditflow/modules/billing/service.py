"""Plan catalog and subscription lifecycle.

The subscription manager never touches balances directly: initial and
per-period grants go through ``CreditLedger.allocate_monthly_credits``.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.core.config import settings
from creditflow.core.logging import log_error, log_info
from creditflow.modules.billing.exceptions import (
    BillingError,
    PlanAlreadyExists,
    PlanNotFound,
    SubscriptionNotFound,
)
from creditflow.modules.billing.ledger import CreditLedger
from creditflow.modules.billing.limits import parse_feature_limit
from creditflow.modules.billing.models import (
    BillingPeriod,
    Plan,
    Subscription,
    SubscriptionStatus,
    ensure_utc,
    utc_now,
)
from creditflow.modules.billing.repository import PlanRepository, SubscriptionRepository
from creditflow.modules.billing.schemas import PlanCreate, PlanUpdate

logger = logging.getLogger(__name__)

LIMIT_FIELDS = ("max_projects", "max_api_integrations", "max_team_members", "max_deployments")

# Default catalogue, installed by PlanCatalog.ensure_default_plans
DEFAULT_PLANS: list[dict] = [
    {
        "name": "free",
        "display_name": "Free",
        "description": "Perfect for trying out the platform and building simple apps",
        "monthly_price": 0,
        "yearly_price": 0,
        "monthly_credits": 1000,
        "rollover_credits": False,
        "max_projects": 3,
        "max_api_integrations": 2,
        "max_team_members": 1,
        "max_deployments": 5,
        "features": [
            "1,000 credits/month",
            "3 projects",
            "2 API integrations",
            "Community support",
            "Basic analytics",
        ],
        "api_rate_limit": 60,
        "sort_order": 1,
    },
    {
        "name": "starter",
        "display_name": "Starter",
        "description": "Great for indie developers and small projects",
        "monthly_price": 2900,
        "yearly_price": 29000,
        "monthly_credits": 10000,
        "rollover_credits": True,
        "max_rollover_credits": 5000,
        "max_projects": 10,
        "max_api_integrations": 10,
        "max_team_members": 3,
        "max_deployments": 50,
        "features": [
            "10,000 credits/month",
            "Rollover up to 5,000 credits",
            "10 projects",
            "10 API integrations",
            "3 team members",
            "Email support",
        ],
        "api_rate_limit": 300,
        "sort_order": 2,
    },
    {
        "name": "pro",
        "display_name": "Pro",
        "description": "For professional developers and growing teams",
        "monthly_price": 9900,
        "yearly_price": 99000,
        "monthly_credits": 50000,
        "rollover_credits": True,
        "max_rollover_credits": 25000,
        "max_projects": 50,
        "max_api_integrations": 50,
        "max_team_members": 10,
        "max_deployments": "unlimited",
        "features": [
            "50,000 credits/month",
            "Rollover up to 25,000 credits",
            "50 projects",
            "50 API integrations",
            "10 team members",
            "Unlimited deployments",
            "Priority support",
        ],
        "api_rate_limit": 1000,
        "sort_order": 3,
    },
    {
        "name": "enterprise",
        "display_name": "Enterprise",
        "description": "For large organizations with advanced needs",
        "monthly_price": 49900,
        "yearly_price": 499000,
        "monthly_credits": 250000,
        "rollover_credits": True,
        "max_rollover_credits": 125000,
        "max_projects": "unlimited",
        "max_api_integrations": "unlimited",
        "max_team_members": "unlimited",
        "max_deployments": "unlimited",
        "features": [
            "250,000 credits/month",
            "Rollover up to 125,000 credits",
            "Unlimited projects",
            "Unlimited API integrations",
            "Unlimited team members",
            "Dedicated support",
        ],
        "api_rate_limit": 5000,
        "sort_order": 4,
    },
]


def _parse_limits(values: dict) -> dict:
    for name in LIMIT_FIELDS:
        if name in values:
            values[name] = parse_feature_limit(values[name])
    return values


# ==================== Pure Functions ====================


def period_length(billing_period: BillingPeriod) -> timedelta:
    """Length of one billing period."""
    if BillingPeriod(billing_period) == BillingPeriod.YEARLY:
        return timedelta(days=settings.YEARLY_PERIOD_DAYS)
    return timedelta(days=settings.MONTHLY_PERIOD_DAYS)


def next_period(
    period_end: datetime, billing_period: BillingPeriod, now: datetime
) -> tuple[datetime, datetime]:
    """Roll a period forward until it contains ``now``.

    Periods missed while the renewal job was down are skipped rather
    than granted one by one.
    """
    length = period_length(billing_period)
    now = ensure_utc(now)
    start = ensure_utc(period_end)
    end = start + length
    while end <= now:
        start = end
        end = start + length
    return start, end


def initial_status(trial_days: Optional[int]) -> SubscriptionStatus:
    return SubscriptionStatus.TRIALING if trial_days else SubscriptionStatus.ACTIVE


# ==================== Plan Catalog ====================


class PlanCatalog:
    """Admin-managed plan definitions. Read-mostly."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.plan_repo = PlanRepository(session)

    async def list_plans(self, include_inactive: bool = False) -> list[Plan]:
        return await self.plan_repo.get_all(include_inactive=include_inactive)

    async def get_plan(self, plan_id: uuid.UUID) -> Plan:
        plan = await self.plan_repo.get_by_id(plan_id)
        if not plan:
            raise PlanNotFound(plan_id)
        return plan

    async def get_plan_by_name(self, name: str) -> Plan:
        plan = await self.plan_repo.get_by_name(name)
        if not plan:
            raise PlanNotFound(name)
        return plan

    async def create_plan(self, data: PlanCreate) -> Plan:
        """Create a plan.

        Raises:
            PlanAlreadyExists: If the plan name is taken
        """
        if await self.plan_repo.get_by_name(data.name):
            raise PlanAlreadyExists(data.name)
        plan = await self.plan_repo.create(**_parse_limits(data.model_dump()))
        log_info(logger, "Plan created", plan_id=str(plan.id), plan_name=plan.name)
        return plan

    async def update_plan(self, plan_id: uuid.UUID, data: PlanUpdate) -> Plan:
        values = _parse_limits(data.model_dump(exclude_unset=True))
        plan = await self.plan_repo.update(plan_id, **values)
        if not plan:
            raise PlanNotFound(plan_id)
        log_info(logger, "Plan updated", plan_id=str(plan_id), fields=sorted(values))
        return plan

    async def deactivate_plan(self, plan_id: uuid.UUID) -> Plan:
        """Soft-delete a plan. Existing subscriptions keep referencing it."""
        plan = await self.plan_repo.update(plan_id, is_active=False)
        if not plan:
            raise PlanNotFound(plan_id)
        log_info(logger, "Plan deactivated", plan_id=str(plan_id))
        return plan

    async def ensure_default_plans(self) -> list[Plan]:
        """Install the default catalogue entries that are missing.

        Returns:
            The plans that were created
        """
        created = []
        for definition in DEFAULT_PLANS:
            if await self.plan_repo.get_by_name(definition["name"]):
                continue
            created.append(await self.plan_repo.create(**_parse_limits(dict(definition))))
        if created:
            log_info(logger, "Default plans installed", plan_names=[p.name for p in created])
        return created


# ==================== Subscription Manager ====================

AllocationScheduler = Callable[[uuid.UUID, uuid.UUID], Awaitable[None]]


async def enqueue_initial_allocation(member_id: uuid.UUID, subscription_id: uuid.UUID) -> None:
    """Hand the initial credit grant to the Celery worker."""
    from creditflow.modules.billing.tasks import allocate_monthly_credits_task

    allocate_monthly_credits_task.delay(str(member_id), str(subscription_id))


@dataclass
class RenewalSummary:
    renewed: list[uuid.UUID] = field(default_factory=list)
    cancelled: list[uuid.UUID] = field(default_factory=list)
    failed: list[uuid.UUID] = field(default_factory=list)


class SubscriptionService:
    """Owns subscription state transitions.

    Status changes are direct patches; the state machine's guards
    (one active subscription per member, cancelled is terminal for a
    record) are kept by ``create`` and ``cancel``.
    """

    def __init__(
        self,
        session: AsyncSession,
        allocation_scheduler: Optional[AllocationScheduler] = None,
    ):
        self.session = session
        self.plan_repo = PlanRepository(session)
        self.subscription_repo = SubscriptionRepository(session)
        self.allocation_scheduler = allocation_scheduler or enqueue_initial_allocation

    async def create(
        self,
        member_id: uuid.UUID,
        plan_id: uuid.UUID,
        billing_period: BillingPeriod = BillingPeriod.MONTHLY,
        trial_days: Optional[int] = None,
        stripe_subscription_id: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
    ) -> Subscription:
        """Subscribe a member to a plan.

        Any active subscription the member already has is cancelled in
        the same commit. The initial credit grant is scheduled, not
        awaited.

        Raises:
            PlanNotFound: If plan_id does not exist
        """
        plan = await self.plan_repo.get_by_id(plan_id)
        if not plan:
            raise PlanNotFound(plan_id)

        billing_period = BillingPeriod(billing_period)
        now = utc_now()
        status = initial_status(trial_days)

        subscription, cancelled_ids = await self.subscription_repo.replace_active_subscription(
            member_id,
            plan_id=plan.id,
            status=status.value,
            billing_period=billing_period.value,
            current_period_start=now,
            current_period_end=now + period_length(billing_period),
            cancel_at_period_end=False,
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=stripe_customer_id,
            trial_start=now if trial_days else None,
            trial_end=now + timedelta(days=trial_days) if trial_days else None,
        )

        log_info(
            logger,
            "Subscription created",
            member_id=str(member_id),
            subscription_id=str(subscription.id),
            plan_id=str(plan.id),
            subscription_status=status.value,
            replaced=[str(i) for i in cancelled_ids],
        )

        try:
            await self.allocation_scheduler(member_id, subscription.id)
        except Exception as e:
            # The subscription is already committed; the grant can be
            # re-issued through the allocate endpoint.
            log_error(
                logger,
                "Failed to schedule initial credit allocation",
                exception=e,
                member_id=str(member_id),
                subscription_id=str(subscription.id),
            )

        return subscription

    async def get(self, subscription_id: uuid.UUID) -> Subscription:
        subscription = await self.subscription_repo.get_by_id(subscription_id)
        if not subscription:
            raise SubscriptionNotFound(subscription_id)
        return subscription

    async def get_active_subscription(self, member_id: uuid.UUID) -> Optional[Subscription]:
        return await self.subscription_repo.get_active_by_member(member_id)

    async def list_subscriptions(self, member_id: uuid.UUID) -> list[Subscription]:
        return await self.subscription_repo.get_by_member(member_id)

    async def update_status(
        self,
        subscription_id: uuid.UUID,
        status: SubscriptionStatus,
        cancel_at_period_end: Optional[bool] = None,
    ) -> Subscription:
        """Patch status. A missing cancel flag resets it to False.

        Raises:
            SubscriptionNotFound: If the subscription does not exist
        """
        status = SubscriptionStatus(status)
        values = {
            "status": status.value,
            "cancel_at_period_end": bool(cancel_at_period_end),
        }
        if status == SubscriptionStatus.CANCELLED:
            values["cancelled_at"] = utc_now()

        subscription = await self.subscription_repo.update_subscription(subscription_id, **values)
        if not subscription:
            raise SubscriptionNotFound(subscription_id)

        log_info(
            logger,
            "Subscription status updated",
            subscription_id=str(subscription_id),
            subscription_status=status.value,
            cancel_at_period_end=values["cancel_at_period_end"],
        )
        return subscription

    async def cancel(self, subscription_id: uuid.UUID, immediate: bool = False) -> Subscription:
        """Cancel now, or flag for cancellation at period end.

        Deferred cancellation leaves status and credit access untouched
        until the renewal job closes the period.

        Raises:
            SubscriptionNotFound: If the subscription does not exist
        """
        subscription = await self.get(subscription_id)

        if immediate:
            values = {
                "status": SubscriptionStatus.CANCELLED.value,
                "cancelled_at": utc_now(),
            }
        else:
            values = {"cancel_at_period_end": True}

        subscription = await self.subscription_repo.update_subscription(subscription.id, **values)
        log_info(
            logger,
            "Subscription cancelled" if immediate else "Subscription set to cancel at period end",
            subscription_id=str(subscription_id),
        )
        return subscription

    async def renew_due_subscriptions(
        self,
        now: Optional[datetime] = None,
        ledger: Optional[CreditLedger] = None,
    ) -> RenewalSummary:
        """Close ended periods of active subscriptions.

        Subscriptions flagged ``cancel_at_period_end`` are cancelled;
        the others move to their next period and receive the monthly
        grant. The period is advanced before the grant so a crash can
        only miss a grant, never issue it twice.
        """
        now = now or utc_now()
        ledger = ledger or CreditLedger(self.session)
        summary = RenewalSummary()

        due = await self.subscription_repo.get_due_for_renewal(now)
        # A failed grant rolls the session back and expires loaded rows
        for subscription_id in [s.id for s in due]:
            subscription = await self.subscription_repo.get_by_id(subscription_id)
            member_id = subscription.member_id
            if subscription.cancel_at_period_end:
                await self.subscription_repo.update_subscription(
                    subscription_id,
                    status=SubscriptionStatus.CANCELLED.value,
                    cancelled_at=now,
                )
                summary.cancelled.append(subscription_id)
                continue

            plan = await self.plan_repo.get_by_id(subscription.plan_id)
            if not plan:
                log_error(
                    logger,
                    "Subscription references a missing plan",
                    subscription_id=str(subscription_id),
                    plan_id=str(subscription.plan_id),
                )
                summary.failed.append(subscription_id)
                continue

            start, end = next_period(
                subscription.current_period_end, BillingPeriod(subscription.billing_period), now
            )
            await self.subscription_repo.update_subscription(
                subscription_id,
                current_period_start=start,
                current_period_end=end,
            )

            try:
                await ledger.allocate_monthly_credits(
                    member_id, plan, subscription_id=subscription_id
                )
            except BillingError as e:
                log_error(
                    logger,
                    "Monthly allocation failed during renewal",
                    exception=e,
                    member_id=str(member_id),
                    subscription_id=str(subscription_id),
                )
                summary.failed.append(subscription_id)
                continue

            summary.renewed.append(subscription_id)

        log_info(
            logger,
            "Subscription renewal run finished",
            renewed=len(summary.renewed),
            cancelled=len(summary.cancelled),
            failed=len(summary.failed),
        )
        return summary
