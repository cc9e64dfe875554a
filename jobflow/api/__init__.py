"""
API module.
Contains the FastAPI application, routes and dependencies.
"""

from jobflow.api.main import create_app, run

__all__ = ["create_app", "run"]
