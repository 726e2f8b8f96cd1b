"""Integration service.

Manages data source integrations and saved queries, and runs queries
through the connectors. Successful queries are billed through
``UsageRecorder`` at ``integration_query_cost`` of their latency.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.core.logging import log_info, log_warning
from creditflow.core.metrics import CONNECTOR_CALL_DURATION_SECONDS, CONNECTOR_CALLS_TOTAL
from creditflow.modules.billing.exceptions import PlanNotFound
from creditflow.modules.billing.metering import UsageRecorder, integration_query_cost
from creditflow.modules.billing.models import UsageResourceType, utc_now
from creditflow.modules.billing.repository import PlanRepository, SubscriptionRepository
from creditflow.modules.integration.connectors import (
    ConnectionTestResult,
    QueryRequest,
    get_connector,
)
from creditflow.modules.integration.credentials import decrypt_config, encrypt_config, mask_config
from creditflow.modules.integration.exceptions import (
    ApiQueryNotFound,
    ConnectorFailure,
    IntegrationLimitReached,
    IntegrationNotFound,
    NoActiveSubscription,
)
from creditflow.modules.integration.models import (
    ApiIntegration,
    ApiQuery,
    IntegrationStatus,
    QueryType,
)
from creditflow.modules.integration.repository import ApiQueryRepository, IntegrationRepository
from creditflow.modules.integration.schemas import (
    ApiQueryCreate,
    IntegrationCreate,
    IntegrationResponse,
    IntegrationUpdate,
    QueryExecuteRequest,
)

logger = logging.getLogger(__name__)


@dataclass
class QueryExecution:
    data: Any
    execution_time_ms: int
    credit_cost: int
    new_balance: int


def to_response(integration: ApiIntegration) -> IntegrationResponse:
    """Response model with the stored secrets masked."""
    response = IntegrationResponse.model_validate(integration)
    response.config = mask_config(integration.config or {})
    return response


class IntegrationService:
    """Service for data source integrations.

    ``transport`` is handed to every connector; tests pass an
    ``httpx.MockTransport``.
    """

    def __init__(
        self,
        session: AsyncSession,
        usage_recorder: Optional[UsageRecorder] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session = session
        self.integration_repo = IntegrationRepository(session)
        self.query_repo = ApiQueryRepository(session)
        self.subscription_repo = SubscriptionRepository(session)
        self.plan_repo = PlanRepository(session)
        self.usage_recorder = usage_recorder or UsageRecorder(session)
        self.transport = transport

    # ==================== Integrations ====================

    async def create_integration(self, member_id: uuid.UUID, data: IntegrationCreate) -> ApiIntegration:
        """Create an integration in ``testing`` status.

        Raises:
            NoActiveSubscription: The member has no active subscription
            PlanNotFound: The subscription's plan is gone
            IntegrationLimitReached: The plan's integration slots are used up
        """
        subscription = await self.subscription_repo.get_active_by_member(member_id)
        if not subscription:
            raise NoActiveSubscription()

        plan = await self.plan_repo.get_by_id(subscription.plan_id)
        if not plan:
            raise PlanNotFound(subscription.plan_id)

        in_use = await self.integration_repo.count_enabled(member_id)
        if not plan.max_api_integrations.allows(in_use):
            raise IntegrationLimitReached(plan.max_api_integrations.limit)

        integration = await self.integration_repo.create(
            member_id=member_id,
            project_id=data.project_id,
            name=data.name,
            description=data.description,
            provider=data.config.provider,
            status=IntegrationStatus.TESTING.value,
            config=encrypt_config(data.config),
            total_requests=0,
            failed_requests=0,
        )
        log_info(
            logger,
            "Integration created",
            member_id=str(member_id),
            integration_id=str(integration.id),
            provider=integration.provider,
        )
        return integration

    async def list_integrations(
        self, member_id: uuid.UUID, status: Optional[IntegrationStatus] = None
    ) -> list[ApiIntegration]:
        return await self.integration_repo.get_by_member(member_id, status=status)

    async def get_integration(self, member_id: uuid.UUID, integration_id: uuid.UUID) -> ApiIntegration:
        integration = await self.integration_repo.get_by_id(integration_id, member_id=member_id)
        if not integration:
            raise IntegrationNotFound(integration_id)
        return integration

    async def update_integration(
        self, member_id: uuid.UUID, integration_id: uuid.UUID, data: IntegrationUpdate
    ) -> ApiIntegration:
        integration = await self.get_integration(member_id, integration_id)

        values: dict[str, Any] = {}
        if data.name is not None:
            values["name"] = data.name
        if data.description is not None:
            values["description"] = data.description
        if data.status is not None:
            values["status"] = data.status.value
        if data.config is not None:
            values["provider"] = data.config.provider
            values["config"] = encrypt_config(data.config, previous=integration.config)

        return await self.integration_repo.update(integration.id, **values)

    async def delete_integration(self, member_id: uuid.UUID, integration_id: uuid.UUID) -> None:
        """Delete an integration and its saved queries."""
        integration = await self.get_integration(member_id, integration_id)
        await self.integration_repo.delete(integration.id)
        log_info(logger, "Integration deleted", integration_id=str(integration_id))

    async def test_connection(self, member_id: uuid.UUID, integration_id: uuid.UUID) -> ConnectionTestResult:
        """Probe the source and set status to active or error."""
        integration = await self.get_integration(member_id, integration_id)
        connector = get_connector(decrypt_config(integration.config), transport=self.transport)

        start = time.perf_counter()
        result = await connector.test()
        self._observe(integration.provider, "test", result.success, time.perf_counter() - start)

        values: dict[str, Any] = {
            "status": (IntegrationStatus.ACTIVE if result.success else IntegrationStatus.ERROR).value,
            "last_tested_at": utc_now(),
        }
        if not result.success:
            values["last_error_at"] = values["last_tested_at"]
            values["last_error_message"] = result.error
        await self.integration_repo.update(integration.id, **values)

        log_info(
            logger,
            "Integration connection tested",
            integration_id=str(integration_id),
            success=result.success,
            error=result.error,
        )
        return result

    # ==================== Queries ====================

    async def create_query(
        self, member_id: uuid.UUID, integration_id: uuid.UUID, data: ApiQueryCreate
    ) -> ApiQuery:
        integration = await self.get_integration(member_id, integration_id)
        return await self.query_repo.create(
            integration_id=integration.id,
            member_id=member_id,
            name=data.name,
            description=data.description,
            query_type=data.query_type.value,
            endpoint=data.endpoint,
            query=data.query,
            variables=data.variables,
            request_body=data.request_body,
            cache_enabled=data.cache_enabled,
            cache_ttl=data.cache_ttl,
            usage_count=0,
        )

    async def list_queries(self, member_id: uuid.UUID, integration_id: uuid.UUID) -> list[ApiQuery]:
        integration = await self.get_integration(member_id, integration_id)
        return await self.query_repo.get_by_integration(integration.id)

    async def delete_query(self, member_id: uuid.UUID, query_id: uuid.UUID) -> None:
        api_query = await self.query_repo.get_by_id(query_id, member_id=member_id)
        if not api_query:
            raise ApiQueryNotFound(query_id)
        await self.query_repo.delete(api_query.id)

    async def execute_query(
        self,
        member_id: uuid.UUID,
        integration_id: uuid.UUID,
        request: QueryExecuteRequest,
    ) -> QueryExecution:
        """Run a saved or ad-hoc query and bill it.

        Fields given in ``request`` override the saved query's. Failed
        calls are counted on the integration and not billed; they are
        not retried.

        Raises:
            IntegrationNotFound: Unknown integration
            ApiQueryNotFound: Unknown saved query
            ConnectorFailure: The source call failed
            InsufficientCredits: The query ran but could not be paid for
        """
        integration = await self.get_integration(member_id, integration_id)
        # Plain values survive a ledger rollback
        integration_id = integration.id
        provider = integration.provider

        saved: Optional[ApiQuery] = None
        if request.query_id:
            saved = await self.query_repo.get_by_id(request.query_id, member_id=member_id)
            if not saved or saved.integration_id != integration_id:
                raise ApiQueryNotFound(request.query_id)

        resolved = self._resolve_query(request, saved)
        saved_id = saved.id if saved else None
        connector = get_connector(decrypt_config(integration.config), transport=self.transport)

        start = time.perf_counter()
        try:
            if resolved is None:
                raise ConnectorFailure("Invalid query type")
            result = await connector.execute(resolved)
        except ConnectorFailure as e:
            self._observe(provider, "execute", False, time.perf_counter() - start)
            await self.integration_repo.record_request(integration_id, success=False, error_message=e.message)
            log_warning(
                logger,
                "Integration query failed",
                member_id=str(member_id),
                integration_id=str(integration_id),
                error=e.message,
            )
            raise

        elapsed = time.perf_counter() - start
        self._observe(provider, "execute", True, elapsed)
        execution_ms = int(elapsed * 1000)
        credit_cost = integration_query_cost(execution_ms)

        try:
            usage = await self.usage_recorder.record_usage(
                member_id=member_id,
                resource_type=UsageResourceType.DATA_SOURCE_QUERY,
                quantity=1,
                credit_cost=credit_cost,
                api_integration_id=integration_id,
                metadata={"queryType": resolved.query_type.value, "executionTime": execution_ms},
            )
        except Exception as e:
            await self.integration_repo.record_request(integration_id, success=False, error_message=str(e))
            raise

        await self.integration_repo.record_request(integration_id, success=True)
        if saved_id:
            await self.query_repo.increment_usage(saved_id)

        return QueryExecution(
            data=result.data,
            execution_time_ms=execution_ms,
            credit_cost=credit_cost,
            new_balance=usage.new_balance,
        )

    # ==================== Internals ====================

    @staticmethod
    def _resolve_query(request: QueryExecuteRequest, saved: Optional[ApiQuery]) -> Optional[QueryRequest]:
        def pick(name: str) -> Any:
            value = getattr(request, name)
            if value is None and saved is not None:
                value = getattr(saved, name)
            return value

        query_type = pick("query_type")
        if query_type is None:
            return None
        return QueryRequest(
            query_type=QueryType(query_type),
            endpoint=pick("endpoint"),
            query=pick("query"),
            variables=pick("variables"),
            request_body=pick("request_body"),
        )

    @staticmethod
    def _observe(provider: str, operation: str, success: bool, seconds: float) -> None:
        CONNECTOR_CALLS_TOTAL.labels(
            provider=provider, operation=operation, outcome="success" if success else "failure"
        ).inc()
        CONNECTOR_CALL_DURATION_SECONDS.labels(provider=provider, operation=operation).observe(seconds)
