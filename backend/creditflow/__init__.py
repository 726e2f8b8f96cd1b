"""creditflow backend application.

Credit metering and subscription billing for a hosted backend platform.

Modules:
    - core: Configuration, database, logging, metrics, tracing, Celery setup
    - modules.billing: Plans, subscriptions, credit ledger, usage metering,
      payment provider events
    - modules.integration: External data source connectors and saved queries
"""

__version__ = "0.1.0"
