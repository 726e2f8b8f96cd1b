"""Application modules.

- billing: plan catalog, subscriptions, credit ledger, usage metering
- integration: external REST/GraphQL/database connectors
"""
