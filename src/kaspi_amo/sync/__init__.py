"""Order sync module -- persisted state, locking and the two batch pipelines.

Provides SQLAlchemy models and SyncRepository for sync state, LockManager
for TTL locks, order fingerprinting and content composition, OrderProcessor
(idempotent create path), PollPipeline, ReconcilePipeline and HealthReporter.
"""
