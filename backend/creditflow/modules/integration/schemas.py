"""Pydantic schemas for integrations.

``IntegrationConfig`` is a tagged union on ``provider``: each provider
family has its own config shape, and a config for one family cannot be
mistaken for another.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from creditflow.modules.integration.models import IntegrationStatus, QueryType


class AuthType(str, Enum):
    NONE = "none"
    API_KEY = "api_key"
    BEARER_TOKEN = "bearer_token"
    BASIC_AUTH = "basic_auth"
    OAUTH2 = "oauth2"


# ==================== Provider Configs ====================

class AuthenticatedConfig(BaseModel):
    """Credentials and transport options shared by HTTP-style providers."""
    base_url: Optional[str] = Field(None, max_length=2048)
    auth_type: AuthType = AuthType.NONE
    api_key: Optional[str] = None
    api_key_header: Optional[str] = Field(None, description="Header for api_key auth, default X-API-Key")
    bearer_token: Optional[str] = None
    basic_auth_username: Optional[str] = None
    basic_auth_password: Optional[str] = None
    oauth2_access_token: Optional[str] = None
    oauth2_refresh_token: Optional[str] = None
    oauth2_token_expiry: Optional[int] = Field(None, description="Unix seconds")
    headers: dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(None, gt=0, le=300, description="Seconds")
    retry_attempts: Optional[int] = Field(None, ge=0, le=10)


class RestApiConfig(AuthenticatedConfig):
    provider: Literal["rest_api"] = "rest_api"
    base_url: str = Field(..., min_length=1, max_length=2048)


class GraphQLConfig(AuthenticatedConfig):
    provider: Literal["graphql"] = "graphql"
    base_url: str = Field(..., min_length=1, max_length=2048)


class DatabaseConfig(BaseModel):
    provider: Literal["postgres", "mysql", "mongodb", "supabase"]
    host: Optional[str] = None
    port: Optional[int] = Field(None, ge=1, le=65535)
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    connection_string: Optional[str] = None
    timeout: Optional[float] = Field(None, gt=0, le=300)


class SpreadsheetConfig(AuthenticatedConfig):
    provider: Literal["airtable", "google_sheets"]


class SaaSConfig(AuthenticatedConfig):
    provider: Literal["stripe", "salesforce", "hubspot", "shopify", "firebase"]


class CustomConfig(AuthenticatedConfig):
    provider: Literal["custom"] = "custom"
    options: dict[str, Any] = Field(default_factory=dict)


IntegrationConfig = Annotated[
    Union[RestApiConfig, GraphQLConfig, DatabaseConfig, SpreadsheetConfig, SaaSConfig, CustomConfig],
    Field(discriminator="provider"),
]

integration_config_adapter: TypeAdapter = TypeAdapter(IntegrationConfig)


# ==================== Integration Schemas ====================

class IntegrationCreate(BaseModel):
    """Schema for creating an integration."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    project_id: Optional[uuid.UUID] = None
    config: IntegrationConfig


class IntegrationUpdate(BaseModel):
    """Partial update. Masked secrets (``***``) in config keep their stored value."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    status: Optional[IntegrationStatus] = None
    config: Optional[IntegrationConfig] = None


class IntegrationResponse(BaseModel):
    """Integration with secrets masked."""
    id: uuid.UUID
    member_id: uuid.UUID
    project_id: Optional[uuid.UUID] = None
    name: str
    description: Optional[str] = None
    provider: str
    status: IntegrationStatus
    config: dict[str, Any]
    last_tested_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    last_error_message: Optional[str] = None
    total_requests: int
    failed_requests: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class IntegrationListResponse(BaseModel):
    integrations: list[IntegrationResponse]
    total: int


class ConnectionTestResponse(BaseModel):
    success: bool
    error: Optional[str] = None


# ==================== Query Schemas ====================

class ApiQueryCreate(BaseModel):
    """Schema for saving a query against an integration."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    query_type: QueryType
    endpoint: Optional[str] = Field(None, max_length=2048)
    query: Optional[str] = None
    variables: Optional[dict[str, Any]] = None
    request_body: Optional[dict[str, Any]] = None
    cache_enabled: bool = False
    cache_ttl: Optional[int] = Field(None, ge=0, description="Seconds")


class ApiQueryResponse(BaseModel):
    id: uuid.UUID
    integration_id: uuid.UUID
    member_id: uuid.UUID
    name: str
    description: Optional[str] = None
    query_type: QueryType
    endpoint: Optional[str] = None
    query: Optional[str] = None
    variables: Optional[dict[str, Any]] = None
    request_body: Optional[dict[str, Any]] = None
    cache_enabled: bool
    cache_ttl: Optional[int] = None
    usage_count: int
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class QueryExecuteRequest(BaseModel):
    """Ad-hoc query, or overrides applied on top of a saved query."""
    query_id: Optional[uuid.UUID] = None
    query_type: Optional[QueryType] = None
    endpoint: Optional[str] = Field(None, max_length=2048)
    query: Optional[str] = None
    variables: Optional[dict[str, Any]] = None
    request_body: Optional[dict[str, Any]] = None


class QueryExecuteResponse(BaseModel):
    success: bool = True
    data: Any = None
    execution_time_ms: int
    credit_cost: int
    new_balance: int
