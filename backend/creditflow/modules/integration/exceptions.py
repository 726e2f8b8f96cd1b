"""Integration error types."""

from typing import Optional


class IntegrationError(Exception):
    """Base exception for integration errors."""
    pass


class IntegrationNotFound(IntegrationError):
    """Raised when an integration does not exist or belongs to another member."""

    def __init__(self, integration_id: object = None):
        self.integration_id = integration_id
        super().__init__("Integration not found")


class ApiQueryNotFound(IntegrationError):
    """Raised when a saved query does not exist or belongs to another member."""

    def __init__(self, query_id: object = None):
        self.query_id = query_id
        super().__init__("Query not found")


class NoActiveSubscription(IntegrationError):
    """Raised when a member without an active subscription creates an integration."""

    def __init__(self):
        super().__init__("No active subscription found")


class IntegrationLimitReached(IntegrationError):
    """Raised when the plan's integration limit is already used up."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Integration limit reached. Your plan allows {limit} integrations.")


class ConnectorFailure(IntegrationError):
    """Raised when an external data source call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)
