"""API routes for data source integrations."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from creditflow.core.database import get_session
from creditflow.modules.billing.exceptions import (
    InsufficientCredits,
    LedgerUnavailable,
    PlanNotFound,
)
from creditflow.modules.integration.exceptions import (
    ApiQueryNotFound,
    ConnectorFailure,
    IntegrationLimitReached,
    IntegrationNotFound,
    NoActiveSubscription,
)
from creditflow.modules.integration.models import IntegrationStatus
from creditflow.modules.integration.schemas import (
    ApiQueryCreate,
    ApiQueryResponse,
    ConnectionTestResponse,
    IntegrationCreate,
    IntegrationListResponse,
    IntegrationResponse,
    IntegrationUpdate,
    QueryExecuteRequest,
    QueryExecuteResponse,
)
from creditflow.modules.integration.service import IntegrationService, to_response

router = APIRouter(prefix="/integrations", tags=["integrations"])


def _not_found(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


# ==================== Integrations ====================

@router.post("", response_model=IntegrationResponse, status_code=status.HTTP_201_CREATED)
async def create_integration(
    member_id: uuid.UUID,
    data: IntegrationCreate,
    session: AsyncSession = Depends(get_session),
):
    """Create an integration. It starts in ``testing`` until a connection test passes."""
    service = IntegrationService(session)
    try:
        integration = await service.create_integration(member_id, data)
    except NoActiveSubscription as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except IntegrationLimitReached as e:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"message": str(e), "limit": e.limit},
        )
    except PlanNotFound as e:
        raise _not_found(e)
    return to_response(integration)


@router.get("", response_model=IntegrationListResponse)
async def list_integrations(
    member_id: uuid.UUID,
    integration_status: Optional[IntegrationStatus] = Query(None, alias="status"),
    session: AsyncSession = Depends(get_session),
):
    integrations = await IntegrationService(session).list_integrations(member_id, status=integration_status)
    return IntegrationListResponse(
        integrations=[to_response(i) for i in integrations],
        total=len(integrations),
    )


@router.delete("/queries/{query_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_query(
    query_id: uuid.UUID,
    member_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    try:
        await IntegrationService(session).delete_query(member_id, query_id)
    except ApiQueryNotFound as e:
        raise _not_found(e)


@router.get("/{integration_id}", response_model=IntegrationResponse)
async def get_integration(
    integration_id: uuid.UUID,
    member_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    try:
        integration = await IntegrationService(session).get_integration(member_id, integration_id)
    except IntegrationNotFound as e:
        raise _not_found(e)
    return to_response(integration)


@router.patch("/{integration_id}", response_model=IntegrationResponse)
async def update_integration(
    integration_id: uuid.UUID,
    member_id: uuid.UUID,
    data: IntegrationUpdate,
    session: AsyncSession = Depends(get_session),
):
    try:
        integration = await IntegrationService(session).update_integration(member_id, integration_id, data)
    except IntegrationNotFound as e:
        raise _not_found(e)
    return to_response(integration)


@router.delete("/{integration_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_integration(
    integration_id: uuid.UUID,
    member_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    """Delete an integration and its saved queries."""
    try:
        await IntegrationService(session).delete_integration(member_id, integration_id)
    except IntegrationNotFound as e:
        raise _not_found(e)


@router.post("/{integration_id}/test", response_model=ConnectionTestResponse)
async def test_integration(
    integration_id: uuid.UUID,
    member_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    """Probe the data source. The integration becomes active or error."""
    try:
        result = await IntegrationService(session).test_connection(member_id, integration_id)
    except IntegrationNotFound as e:
        raise _not_found(e)
    return ConnectionTestResponse(success=result.success, error=result.error)


@router.post("/{integration_id}/execute", response_model=QueryExecuteResponse)
async def execute_query(
    integration_id: uuid.UUID,
    member_id: uuid.UUID,
    data: QueryExecuteRequest,
    session: AsyncSession = Depends(get_session),
):
    """Run a saved or ad-hoc query; the cost depends on its latency."""
    try:
        execution = await IntegrationService(session).execute_query(member_id, integration_id, data)
    except (IntegrationNotFound, ApiQueryNotFound) as e:
        raise _not_found(e)
    except ConnectorFailure as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": e.message, "upstream_status": e.status_code},
        )
    except InsufficientCredits as e:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={"message": str(e), "required": e.required, "available": e.available},
        )
    except LedgerUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return QueryExecuteResponse(
        data=execution.data,
        execution_time_ms=execution.execution_time_ms,
        credit_cost=execution.credit_cost,
        new_balance=execution.new_balance,
    )


# ==================== Saved Queries ====================

@router.post("/{integration_id}/queries", response_model=ApiQueryResponse, status_code=status.HTTP_201_CREATED)
async def create_query(
    integration_id: uuid.UUID,
    member_id: uuid.UUID,
    data: ApiQueryCreate,
    session: AsyncSession = Depends(get_session),
):
    try:
        return await IntegrationService(session).create_query(member_id, integration_id, data)
    except IntegrationNotFound as e:
        raise _not_found(e)


@router.get("/{integration_id}/queries", response_model=list[ApiQueryResponse])
async def list_queries(
    integration_id: uuid.UUID,
    member_id: uuid.UUID,
    session: AsyncSession = Depends(get_session),
):
    try:
        return await IntegrationService(session).list_queries(member_id, integration_id)
    except IntegrationNotFound as e:
        raise _not_found(e)
