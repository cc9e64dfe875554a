"""
API routes module.
"""

from jobflow.api.routes.health import router as health_router
from jobflow.api.routes.jobs import router as jobs_router

__all__ = ["jobs_router", "health_router"]
