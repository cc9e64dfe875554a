"""
Reconciler module.
Applies worker status events to the job store and drives retries.
"""

from jobflow.reconciler.main import StatusReconciler, run

__all__ = ["StatusReconciler", "run"]
