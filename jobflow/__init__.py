"""
jobflow

Event-driven job orchestration: jobs are delivered to workers over an ordered,
partitioned channel and reconciled into an authoritative store, with
idempotency claims, retries with backoff, and a dead-letter channel.
"""

__version__ = "1.0.0"
