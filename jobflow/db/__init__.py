"""
Database module.
Contains database connection, models, repository and job store implementations.
"""

from jobflow.db.connection import Database, create_engine, create_session_factory
from jobflow.db.memory import InMemoryJobStore
from jobflow.db.models import Base, Job
from jobflow.db.repository import JobRepository
from jobflow.db.store import JobStore, SqlJobStore

__all__ = [
    "Database",
    "create_engine",
    "create_session_factory",
    "InMemoryJobStore",
    "Base",
    "Job",
    "JobRepository",
    "JobStore",
    "SqlJobStore",
]
