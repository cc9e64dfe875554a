"""
Worker module.
Consumes job requests, runs handlers and reports status events.
"""

from jobflow.worker.main import Worker, run

__all__ = ["Worker", "run"]
