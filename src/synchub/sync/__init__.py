"""Reconciliation core -- entity models, field mapping, matching, reconciler and orchestrator.

Provides SQLAlchemy models (Agent, Listing, Transaction, CommissionPayment,
SyncLog), Pydantic schemas (batch and run results), enumerated field mapping
tables with enum lookups, the MatchKey resolver, the EntityStore boundary,
EntityReconciler, SyncLogRepository and SyncOrchestrator.
"""
