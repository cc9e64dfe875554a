"""
FastAPI dependencies.

The application builds its components once in the lifespan handler and keeps
them on app.state; routes reach them through these providers.
"""

from typing import Annotated

from fastapi import Depends, Request

from jobflow.observability.metrics import MetricsCollector
from jobflow.services.jobs import JobService


def get_job_service(request: Request) -> JobService:
    return request.app.state.job_service


def get_metrics_collector(request: Request) -> MetricsCollector:
    return request.app.state.metrics


JobServiceDep = Annotated[JobService, Depends(get_job_service)]
MetricsDep = Annotated[MetricsCollector, Depends(get_metrics_collector)]
