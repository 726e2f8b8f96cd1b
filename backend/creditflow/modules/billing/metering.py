"""Usage metering.

Turns a unit of consumption into a usage record and a ledger
deduction. The record is committed before the deduction is attempted
and is never removed; when the deduction fails the record is annotated
with ``creditDeductionFailed`` and the error is re-raised.
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.core.config import settings
from creditflow.core.logging import log_warning
from creditflow.core.metrics import USAGE_RECORDS_TOTAL
from creditflow.modules.billing.ledger import CreditLedger
from creditflow.modules.billing.models import UsageRecord, UsageResourceType, utc_now
from creditflow.modules.billing.repository import UsageRepository

logger = logging.getLogger(__name__)

# Integration query pricing: base cost plus one credit per started 100ms
QUERY_BASE_COST = 1
QUERY_MS_PER_CREDIT = 100


@dataclass
class UsageResult:
    usage_record_id: uuid.UUID
    new_balance: int


@dataclass
class ResourceUsage:
    """Aggregated usage for one resource type."""
    resource_type: str
    count: int = 0
    total_quantity: int = 0
    total_credit_cost: int = 0


@dataclass
class UsageStats:
    member_id: uuid.UUID
    start: datetime
    end: datetime
    by_resource_type: list[ResourceUsage] = field(default_factory=list)
    total_credits_spent: int = 0
    total_records: int = 0


# ==================== Pure Functions ====================


def integration_query_cost(execution_ms: float) -> int:
    """Credit cost of a data source query: ``ceil(ms / 100) + 1``."""
    if execution_ms < 0:
        raise ValueError("Execution time cannot be negative")
    return math.ceil(execution_ms / QUERY_MS_PER_CREDIT) + QUERY_BASE_COST


def aggregate_usage(records: list[UsageRecord]) -> tuple[list[ResourceUsage], int]:
    """Group records by resource type.

    Records whose deduction failed count towards the totals per type but
    not towards credits spent, since nothing was charged for them.

    Returns:
        Per-type aggregates and the total credits actually charged
    """
    by_type: dict[str, ResourceUsage] = {}
    spent = 0
    for record in records:
        usage = by_type.setdefault(record.resource_type, ResourceUsage(record.resource_type))
        usage.count += 1
        usage.total_quantity += record.quantity
        usage.total_credit_cost += record.credit_cost
        if not record.deduction_failed:
            spent += record.credit_cost
    return sorted(by_type.values(), key=lambda u: u.resource_type), spent


# ==================== Usage Recorder ====================


class UsageRecorder:
    """Records metered actions and charges them to the member's ledger."""

    def __init__(self, session: AsyncSession, ledger: Optional[CreditLedger] = None):
        self.session = session
        self.usage_repo = UsageRepository(session)
        self.ledger = ledger or CreditLedger(session)

    async def record_usage(
        self,
        member_id: uuid.UUID,
        resource_type: UsageResourceType,
        quantity: int,
        credit_cost: int,
        chat_id: Optional[str] = None,
        model_id: Optional[str] = None,
        prompt_tokens: Optional[int] = None,
        completion_tokens: Optional[int] = None,
        cached_prompt_tokens: Optional[int] = None,
        api_integration_id: Optional[uuid.UUID] = None,
        metadata: Optional[dict] = None,
    ) -> UsageResult:
        """Record one metered action and deduct its cost.

        Raises:
            InsufficientCredits: The balance does not cover credit_cost
            BillingError: Any other ledger failure
        """
        resource_type = UsageResourceType(resource_type)

        record = await self.usage_repo.create_record(
            member_id=member_id,
            chat_id=chat_id,
            resource_type=resource_type.value,
            quantity=quantity,
            credit_cost=credit_cost,
            model_id=model_id,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cached_prompt_tokens=cached_prompt_tokens,
            api_integration_id=api_integration_id,
            usage_metadata=metadata,
        )
        # Ledger errors other than a refusal roll the session back and expire ORM state
        record_id = record.id

        try:
            result = await self.ledger.deduct(
                member_id,
                credit_cost,
                f"{resource_type.value} usage",
                chat_id=chat_id,
                usage_record_id=record_id,
                metadata={"resourceType": resource_type.value, "quantity": quantity},
            )
        except Exception as e:
            await self.usage_repo.merge_metadata(
                record_id,
                {"creditDeductionFailed": True, "error": str(e)},
            )
            USAGE_RECORDS_TOTAL.labels(resource_type=resource_type.value, outcome="failed").inc()
            log_warning(
                logger,
                "Usage recorded without deduction",
                member_id=str(member_id),
                usage_record_id=str(record_id),
                resource_type=resource_type.value,
                credit_cost=credit_cost,
                error=str(e),
            )
            raise

        USAGE_RECORDS_TOTAL.labels(resource_type=resource_type.value, outcome="charged").inc()
        return UsageResult(usage_record_id=record_id, new_balance=result.new_balance)

    async def list_usage(
        self, member_id: uuid.UUID, limit: int = 100
    ) -> list[UsageRecord]:
        return await self.usage_repo.get_records(member_id, limit=limit)

    async def get_usage_stats(
        self,
        member_id: uuid.UUID,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> UsageStats:
        """Usage per resource type, defaulting to the last 30 days."""
        end = end or utc_now()
        start = start or end - timedelta(days=settings.USAGE_STATS_DEFAULT_DAYS)

        records = await self.usage_repo.get_records(member_id, start=start, end=end)
        by_type, spent = aggregate_usage(records)
        return UsageStats(
            member_id=member_id,
            start=start,
            end=end,
            by_resource_type=by_type,
            total_credits_spent=spent,
            total_records=len(records),
        )
