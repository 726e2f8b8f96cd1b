"""Integration models for external data sources and saved queries.

Connection secrets inside ``ApiIntegration.config`` are stored
Fernet-encrypted; see ``creditflow.modules.integration.credentials``.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from creditflow.core.database import Base
from creditflow.modules.billing.models import utc_now


class IntegrationProvider(str, Enum):
    """Supported data source providers."""
    REST_API = "rest_api"
    GRAPHQL = "graphql"
    POSTGRES = "postgres"
    MYSQL = "mysql"
    MONGODB = "mongodb"
    AIRTABLE = "airtable"
    GOOGLE_SHEETS = "google_sheets"
    STRIPE = "stripe"
    SALESFORCE = "salesforce"
    HUBSPOT = "hubspot"
    SHOPIFY = "shopify"
    FIREBASE = "firebase"
    SUPABASE = "supabase"
    CUSTOM = "custom"


class IntegrationStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    TESTING = "testing"


class QueryType(str, Enum):
    """Saved and ad-hoc query kinds."""
    REST_GET = "rest_get"
    REST_POST = "rest_post"
    REST_PUT = "rest_put"
    REST_DELETE = "rest_delete"
    GRAPHQL_QUERY = "graphql_query"
    GRAPHQL_MUTATION = "graphql_mutation"
    SQL_SELECT = "sql_select"
    SQL_INSERT = "sql_insert"
    SQL_UPDATE = "sql_update"
    SQL_DELETE = "sql_delete"


class ApiIntegration(Base):
    """A member's connection to an external data source.

    Integrations in any status other than ``inactive`` count against the
    plan's integration limit.
    """

    __tablename__ = "api_integrations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    member_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    provider: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=IntegrationStatus.TESTING.value, nullable=False
    )

    # Provider configuration with encrypted secrets
    config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    last_tested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Usage statistics
    total_requests: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_requests: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )

    __table_args__ = (
        Index("ix_api_integrations_member_status", "member_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<ApiIntegration(id={self.id}, name={self.name}, provider={self.provider})>"


class ApiQuery(Base):
    """A named query saved against an integration."""

    __tablename__ = "api_queries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    integration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("api_integrations.id", ondelete="CASCADE"), nullable=False
    )
    member_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    query_type: Mapped[str] = mapped_column(String(30), nullable=False)

    endpoint: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    query: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    variables: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    request_body: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Caching hints for callers; results are not cached server-side
    cache_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cache_ttl: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # seconds

    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )

    __table_args__ = (
        Index("ix_api_queries_integration_name", "integration_id", "name"),
    )

    def __repr__(self) -> str:
        return f"<ApiQuery(id={self.id}, name={self.name}, type={self.query_type})>"
