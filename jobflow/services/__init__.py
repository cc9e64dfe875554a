"""
Services module.
Application operations shared by the API and other entrypoints.
"""

from jobflow.services.jobs import JobService

__all__ = ["JobService"]
