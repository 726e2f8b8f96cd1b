"""Repository for integration database operations."""

import uuid
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.modules.billing.models import utc_now
from creditflow.modules.integration.models import ApiIntegration, ApiQuery, IntegrationStatus


class IntegrationRepository:
    """Repository for data source integrations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **fields) -> ApiIntegration:
        integration = ApiIntegration(**fields)
        self.session.add(integration)
        await self.session.commit()
        await self.session.refresh(integration)
        return integration

    async def get_by_id(
        self, integration_id: uuid.UUID, member_id: Optional[uuid.UUID] = None
    ) -> Optional[ApiIntegration]:
        """Get an integration, optionally scoped to its owner."""
        query = (
            select(ApiIntegration)
            .where(ApiIntegration.id == integration_id)
            .execution_options(populate_existing=True)
        )
        if member_id is not None:
            query = query.where(ApiIntegration.member_id == member_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_member(
        self, member_id: uuid.UUID, status: Optional[IntegrationStatus] = None
    ) -> list[ApiIntegration]:
        query = select(ApiIntegration).where(ApiIntegration.member_id == member_id)
        if status is not None:
            query = query.where(ApiIntegration.status == IntegrationStatus(status).value)
        result = await self.session.execute(query.order_by(ApiIntegration.created_at))
        return list(result.scalars().all())

    async def count_enabled(self, member_id: uuid.UUID) -> int:
        """Count integrations that occupy a plan slot (anything not inactive)."""
        result = await self.session.execute(
            select(func.count())
            .select_from(ApiIntegration)
            .where(
                ApiIntegration.member_id == member_id,
                ApiIntegration.status != IntegrationStatus.INACTIVE.value,
            )
        )
        return result.scalar_one()

    async def update(self, integration_id: uuid.UUID, **kwargs) -> Optional[ApiIntegration]:
        integration = await self.get_by_id(integration_id)
        if not integration:
            return None
        for key, value in kwargs.items():
            if hasattr(integration, key):
                setattr(integration, key, value)
        await self.session.commit()
        await self.session.refresh(integration)
        return integration

    async def record_request(
        self,
        integration_id: uuid.UUID,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        """Bump request counters in place so concurrent calls do not lose counts."""
        now = utc_now()
        values = {
            "total_requests": ApiIntegration.total_requests + 1,
            "last_used_at": now,
            "updated_at": now,
        }
        if not success:
            values.update(
                failed_requests=ApiIntegration.failed_requests + 1,
                last_error_at=now,
                last_error_message=error_message,
            )
        await self.session.execute(
            update(ApiIntegration)
            .where(ApiIntegration.id == integration_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

    async def delete(self, integration_id: uuid.UUID) -> bool:
        """Delete an integration together with its saved queries."""
        integration = await self.get_by_id(integration_id)
        if not integration:
            return False
        await self.session.execute(
            delete(ApiQuery).where(ApiQuery.integration_id == integration_id)
        )
        await self.session.delete(integration)
        await self.session.commit()
        return True


class ApiQueryRepository:
    """Repository for saved queries."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **fields) -> ApiQuery:
        api_query = ApiQuery(**fields)
        self.session.add(api_query)
        await self.session.commit()
        await self.session.refresh(api_query)
        return api_query

    async def get_by_id(
        self, query_id: uuid.UUID, member_id: Optional[uuid.UUID] = None
    ) -> Optional[ApiQuery]:
        query = (
            select(ApiQuery)
            .where(ApiQuery.id == query_id)
            .execution_options(populate_existing=True)
        )
        if member_id is not None:
            query = query.where(ApiQuery.member_id == member_id)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_integration(self, integration_id: uuid.UUID) -> list[ApiQuery]:
        result = await self.session.execute(
            select(ApiQuery)
            .where(ApiQuery.integration_id == integration_id)
            .order_by(ApiQuery.name)
        )
        return list(result.scalars().all())

    async def increment_usage(self, query_id: uuid.UUID) -> None:
        now = utc_now()
        await self.session.execute(
            update(ApiQuery)
            .where(ApiQuery.id == query_id)
            .values(usage_count=ApiQuery.usage_count + 1, last_used_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()

    async def delete(self, query_id: uuid.UUID) -> bool:
        api_query = await self.get_by_id(query_id)
        if not api_query:
            return False
        await self.session.delete(api_query)
        await self.session.commit()
        return True
