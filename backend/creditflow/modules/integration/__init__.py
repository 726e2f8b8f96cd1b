"""Integration module.

External data source connections, saved queries and metered query
execution.
"""

from creditflow.modules.integration.router import router
from creditflow.modules.integration.service import IntegrationService

__all__ = ["router", "IntegrationService"]
