"""Data source connectors.

One connector per provider family. REST and GraphQL talk HTTP through
``httpx.AsyncClient``; providers without a driver get
``UnsupportedConnector``, which fails every call with a clear message.
"""

import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from creditflow.core.config import settings
from creditflow.modules.integration.exceptions import ConnectorFailure
from creditflow.modules.integration.models import QueryType
from creditflow.modules.integration.schemas import (
    AuthenticatedConfig,
    AuthType,
    CustomConfig,
    DatabaseConfig,
    GraphQLConfig,
    IntegrationConfig,
    RestApiConfig,
    SaaSConfig,
    SpreadsheetConfig,
)

INTROSPECTION_QUERY = "{ __schema { queryType { name } } }"

REST_METHODS = {
    QueryType.REST_GET: "GET",
    QueryType.REST_POST: "POST",
    QueryType.REST_PUT: "PUT",
    QueryType.REST_DELETE: "DELETE",
}


@dataclass
class ConnectionTestResult:
    success: bool
    error: Optional[str] = None


@dataclass
class QueryRequest:
    """A fully resolved query, after saved-query defaults are applied."""
    query_type: QueryType
    endpoint: Optional[str] = None
    query: Optional[str] = None
    variables: Optional[dict] = None
    request_body: Optional[dict] = None


@dataclass
class QueryResult:
    data: Any = None
    status_code: Optional[int] = None
    headers: dict = field(default_factory=dict)


class Connector(ABC):
    """Talks to one external data source."""

    provider: str = ""

    @abstractmethod
    async def test(self) -> ConnectionTestResult:
        """Check the source is reachable with the stored credentials. Never raises."""

    @abstractmethod
    async def execute(self, request: QueryRequest) -> QueryResult:
        """Run a query.

        Raises:
            ConnectorFailure: Transport error, non-2xx response, or remote error payload
        """


def build_auth_headers(config: AuthenticatedConfig) -> dict[str, str]:
    """Request headers for a config's auth type, on top of its static headers."""
    headers = {"Content-Type": "application/json", **config.headers}

    if config.auth_type == AuthType.API_KEY and config.api_key:
        headers[config.api_key_header or "X-API-Key"] = config.api_key
    elif config.auth_type == AuthType.BEARER_TOKEN and config.bearer_token:
        headers["Authorization"] = f"Bearer {config.bearer_token}"
    elif config.auth_type == AuthType.OAUTH2 and config.oauth2_access_token:
        headers["Authorization"] = f"Bearer {config.oauth2_access_token}"
    elif config.auth_type == AuthType.BASIC_AUTH:
        credentials = f"{config.basic_auth_username or ''}:{config.basic_auth_password or ''}"
        headers["Authorization"] = "Basic " + base64.b64encode(credentials.encode()).decode()

    return headers


class HttpConnector(Connector):
    """Shared HTTP plumbing for REST and GraphQL sources."""

    def __init__(
        self,
        config: AuthenticatedConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.provider = getattr(config, "provider", "")
        self.transport = transport

    def _client(self, default_timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.config.timeout or default_timeout,
            headers=build_auth_headers(self.config),
            transport=self.transport,
        )

    async def _request(self, method: str, url: str, default_timeout: float, **kwargs) -> httpx.Response:
        try:
            async with self._client(default_timeout) as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            raise ConnectorFailure(f"Request timed out after {self.config.timeout or default_timeout}s")
        except httpx.HTTPError as e:
            raise ConnectorFailure(f"Request error: {e}")


def _json_or_text(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


class RestConnector(HttpConnector):
    """Plain JSON-over-HTTP source."""

    async def test(self) -> ConnectionTestResult:
        try:
            response = await self._request(
                "GET", self.config.base_url, settings.CONNECTOR_TEST_TIMEOUT_SECONDS
            )
        except ConnectorFailure as e:
            return ConnectionTestResult(success=False, error=e.message)

        if response.is_success:
            return ConnectionTestResult(success=True)
        return ConnectionTestResult(
            success=False, error=f"HTTP {response.status_code}: {response.reason_phrase}"
        )

    async def execute(self, request: QueryRequest) -> QueryResult:
        method = REST_METHODS.get(request.query_type)
        if method is None:
            raise ConnectorFailure(f"Query type {request.query_type.value} is not supported by REST sources")

        url = self.config.base_url
        if request.endpoint:
            url = f"{url}{request.endpoint}"

        kwargs: dict[str, Any] = {}
        if request.variables:
            kwargs["params"] = request.variables
        if request.request_body is not None and method != "GET":
            kwargs["json"] = request.request_body

        response = await self._request(
            method, url, settings.CONNECTOR_QUERY_TIMEOUT_SECONDS, **kwargs
        )
        if not response.is_success:
            raise ConnectorFailure(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )
        return QueryResult(
            data=_json_or_text(response),
            status_code=response.status_code,
            headers=dict(response.headers),
        )


class GraphQLConnector(HttpConnector):
    """GraphQL endpoint. Errors in the response body count as failures."""

    async def _post(self, payload: dict, default_timeout: float) -> tuple[httpx.Response, Any]:
        response = await self._request("POST", self.config.base_url, default_timeout, json=payload)
        try:
            body = response.json()
        except ValueError:
            raise ConnectorFailure(
                f"HTTP {response.status_code}: response is not JSON",
                status_code=response.status_code,
            )
        return response, body

    @staticmethod
    def _first_error(body: Any) -> Optional[str]:
        if not isinstance(body, dict) or not body.get("errors"):
            return None
        first = body["errors"][0]
        if isinstance(first, dict) and first.get("message"):
            return first["message"]
        return "GraphQL query failed"

    async def test(self) -> ConnectionTestResult:
        try:
            response, body = await self._post(
                {"query": INTROSPECTION_QUERY}, settings.CONNECTOR_TEST_TIMEOUT_SECONDS
            )
        except ConnectorFailure as e:
            return ConnectionTestResult(success=False, error=e.message)

        error = self._first_error(body)
        if error:
            return ConnectionTestResult(success=False, error=error)
        if not response.is_success:
            return ConnectionTestResult(
                success=False, error=f"HTTP {response.status_code}: {response.reason_phrase}"
            )
        return ConnectionTestResult(success=True)

    async def execute(self, request: QueryRequest) -> QueryResult:
        if request.query_type not in (QueryType.GRAPHQL_QUERY, QueryType.GRAPHQL_MUTATION):
            raise ConnectorFailure(f"Query type {request.query_type.value} is not supported by GraphQL sources")
        if not request.query:
            raise ConnectorFailure("GraphQL query text is required")

        response, body = await self._post(
            {"query": request.query, "variables": request.variables},
            settings.CONNECTOR_QUERY_TIMEOUT_SECONDS,
        )
        error = self._first_error(body)
        if error:
            raise ConnectorFailure(error, status_code=response.status_code)
        if not response.is_success:
            raise ConnectorFailure(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )
        return QueryResult(
            data=body.get("data") if isinstance(body, dict) else None,
            status_code=response.status_code,
        )


class UnsupportedConnector(Connector):
    """Placeholder for providers that have no driver yet."""

    def __init__(self, provider: str):
        self.provider = provider

    def _message(self) -> str:
        return f"Provider {self.provider} is not supported yet"

    async def test(self) -> ConnectionTestResult:
        return ConnectionTestResult(success=False, error=self._message())

    async def execute(self, request: QueryRequest) -> QueryResult:
        raise ConnectorFailure(self._message())


def get_connector(
    config: IntegrationConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Connector:
    """Pick the connector for a config's provider family."""
    if isinstance(config, RestApiConfig):
        return RestConnector(config, transport=transport)
    if isinstance(config, GraphQLConfig):
        return GraphQLConnector(config, transport=transport)
    if isinstance(config, (DatabaseConfig, SpreadsheetConfig, SaaSConfig, CustomConfig)):
        return UnsupportedConnector(config.provider)
    raise TypeError(f"Unknown integration config: {type(config).__name__}")
