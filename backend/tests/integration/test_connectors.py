"""Tests for data source connectors.

Outbound HTTP is served by ``httpx.MockTransport``.
"""

import base64
import json

import httpx
import pytest

from creditflow.modules.integration.connectors import (
    INTROSPECTION_QUERY,
    GraphQLConnector,
    QueryRequest,
    RestConnector,
    UnsupportedConnector,
    build_auth_headers,
    get_connector,
)
from creditflow.modules.integration.exceptions import ConnectorFailure
from creditflow.modules.integration.models import QueryType
from creditflow.modules.integration.schemas import (
    AuthType,
    DatabaseConfig,
    GraphQLConfig,
    RestApiConfig,
    integration_config_adapter,
)


class TestConfigUnion:

    def test_provider_selects_variant(self) -> None:
        config = integration_config_adapter.validate_python(
            {"provider": "graphql", "base_url": "https://api.example.com/graphql"}
        )

        assert isinstance(config, GraphQLConfig)

    def test_rest_requires_base_url(self) -> None:
        with pytest.raises(ValueError):
            integration_config_adapter.validate_python({"provider": "rest_api"})

    def test_unknown_provider_rejected(self) -> None:
        with pytest.raises(ValueError):
            integration_config_adapter.validate_python({"provider": "ftp", "base_url": "ftp://x"})

    def test_database_providers_have_no_driver(self) -> None:
        config = DatabaseConfig(provider="postgres", host="db.internal", database="app")

        assert isinstance(get_connector(config), UnsupportedConnector)


class TestAuthHeaders:

    def test_api_key_default_header(self) -> None:
        config = RestApiConfig(base_url="https://x", auth_type=AuthType.API_KEY, api_key="k-1")

        assert build_auth_headers(config)["X-API-Key"] == "k-1"

    def test_api_key_custom_header(self) -> None:
        config = RestApiConfig(
            base_url="https://x", auth_type=AuthType.API_KEY, api_key="k-1", api_key_header="apikey"
        )

        headers = build_auth_headers(config)
        assert headers["apikey"] == "k-1"
        assert "X-API-Key" not in headers

    def test_bearer_and_oauth2(self) -> None:
        bearer = RestApiConfig(base_url="https://x", auth_type=AuthType.BEARER_TOKEN, bearer_token="t")
        oauth = RestApiConfig(base_url="https://x", auth_type=AuthType.OAUTH2, oauth2_access_token="o")

        assert build_auth_headers(bearer)["Authorization"] == "Bearer t"
        assert build_auth_headers(oauth)["Authorization"] == "Bearer o"

    def test_basic_auth(self) -> None:
        config = RestApiConfig(
            base_url="https://x",
            auth_type=AuthType.BASIC_AUTH,
            basic_auth_username="user",
            basic_auth_password="pass",
        )

        expected = "Basic " + base64.b64encode(b"user:pass").decode()
        assert build_auth_headers(config)["Authorization"] == expected

    def test_static_headers_kept(self) -> None:
        config = RestApiConfig(base_url="https://x", headers={"X-Tenant": "acme"})

        headers = build_auth_headers(config)
        assert headers["X-Tenant"] == "acme"
        assert "Authorization" not in headers


class TestRestConnector:

    @pytest.mark.asyncio
    async def test_get_with_params_and_auth(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"items": [1, 2, 3]})

        config = RestApiConfig(
            base_url="https://api.example.com", auth_type=AuthType.BEARER_TOKEN, bearer_token="secret"
        )
        connector = RestConnector(config, transport=httpx.MockTransport(handler))

        result = await connector.execute(QueryRequest(
            query_type=QueryType.REST_GET, endpoint="/items", variables={"page": 2},
        ))

        assert result.data == {"items": [1, 2, 3]}
        assert result.status_code == 200
        assert seen["url"] == "https://api.example.com/items?page=2"
        assert seen["auth"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_post_sends_body(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            return httpx.Response(201, json=json.loads(request.content))

        connector = RestConnector(
            RestApiConfig(base_url="https://api.example.com"), transport=httpx.MockTransport(handler)
        )

        result = await connector.execute(QueryRequest(
            query_type=QueryType.REST_POST, endpoint="/items", request_body={"name": "widget"},
        ))

        assert result.data == {"name": "widget"}

    @pytest.mark.asyncio
    async def test_non_2xx_is_failure(self) -> None:
        connector = RestConnector(
            RestApiConfig(base_url="https://api.example.com"),
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )

        with pytest.raises(ConnectorFailure) as exc_info:
            await connector.execute(QueryRequest(query_type=QueryType.REST_GET, endpoint="/items"))

        assert exc_info.value.status_code == 503
        assert exc_info.value.message.startswith("HTTP 503")

    @pytest.mark.asyncio
    async def test_transport_error_is_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        connector = RestConnector(
            RestApiConfig(base_url="https://api.example.com"), transport=httpx.MockTransport(handler)
        )

        with pytest.raises(ConnectorFailure) as exc_info:
            await connector.execute(QueryRequest(query_type=QueryType.REST_GET))

        assert "connection refused" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_timeout_is_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("too slow", request=request)

        connector = RestConnector(
            RestApiConfig(base_url="https://api.example.com", timeout=2),
            transport=httpx.MockTransport(handler),
        )

        with pytest.raises(ConnectorFailure) as exc_info:
            await connector.execute(QueryRequest(query_type=QueryType.REST_GET))

        assert exc_info.value.message == "Request timed out after 2.0s"

    @pytest.mark.asyncio
    async def test_graphql_query_type_rejected(self) -> None:
        connector = RestConnector(RestApiConfig(base_url="https://api.example.com"))

        with pytest.raises(ConnectorFailure):
            await connector.execute(QueryRequest(query_type=QueryType.GRAPHQL_QUERY, query="{ a }"))

    @pytest.mark.asyncio
    async def test_connection_test(self) -> None:
        ok = RestConnector(
            RestApiConfig(base_url="https://api.example.com"),
            transport=httpx.MockTransport(lambda request: httpx.Response(200, text="pong")),
        )
        denied = RestConnector(
            RestApiConfig(base_url="https://api.example.com"),
            transport=httpx.MockTransport(lambda request: httpx.Response(401)),
        )

        assert (await ok.test()).success is True
        result = await denied.test()
        assert result.success is False
        assert result.error == "HTTP 401: Unauthorized"


class TestGraphQLConnector:

    @pytest.mark.asyncio
    async def test_introspection_probe(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content)["query"] == INTROSPECTION_QUERY
            return httpx.Response(200, json={"data": {"__schema": {"queryType": {"name": "Query"}}}})

        connector = GraphQLConnector(
            GraphQLConfig(base_url="https://api.example.com/graphql"),
            transport=httpx.MockTransport(handler),
        )

        assert (await connector.test()).success is True

    @pytest.mark.asyncio
    async def test_errors_payload_fails_test(self) -> None:
        connector = GraphQLConnector(
            GraphQLConfig(base_url="https://api.example.com/graphql"),
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={"errors": [{"message": "Introspection disabled"}]})
            ),
        )

        result = await connector.test()

        assert result.success is False
        assert result.error == "Introspection disabled"

    @pytest.mark.asyncio
    async def test_execute_returns_data(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert body["variables"] == {"id": "7"}
            return httpx.Response(200, json={"data": {"user": {"id": "7", "name": "Ada"}}})

        connector = GraphQLConnector(
            GraphQLConfig(base_url="https://api.example.com/graphql"),
            transport=httpx.MockTransport(handler),
        )

        result = await connector.execute(QueryRequest(
            query_type=QueryType.GRAPHQL_QUERY,
            query="query ($id: ID!) { user(id: $id) { id name } }",
            variables={"id": "7"},
        ))

        assert result.data == {"user": {"id": "7", "name": "Ada"}}

    @pytest.mark.asyncio
    async def test_execute_error_payload(self) -> None:
        connector = GraphQLConnector(
            GraphQLConfig(base_url="https://api.example.com/graphql"),
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={"errors": [{"message": "Field 'x' missing"}]})
            ),
        )

        with pytest.raises(ConnectorFailure) as exc_info:
            await connector.execute(QueryRequest(query_type=QueryType.GRAPHQL_QUERY, query="{ x }"))

        assert exc_info.value.message == "Field 'x' missing"

    @pytest.mark.asyncio
    async def test_query_text_required(self) -> None:
        connector = GraphQLConnector(GraphQLConfig(base_url="https://api.example.com/graphql"))

        with pytest.raises(ConnectorFailure):
            await connector.execute(QueryRequest(query_type=QueryType.GRAPHQL_QUERY))


class TestUnsupportedConnector:

    @pytest.mark.asyncio
    async def test_fails_clearly(self) -> None:
        connector = UnsupportedConnector("mongodb")

        result = await connector.test()
        assert result.success is False
        assert result.error == "Provider mongodb is not supported yet"
        with pytest.raises(ConnectorFailure):
            await connector.execute(QueryRequest(query_type=QueryType.SQL_SELECT, query="select 1"))
