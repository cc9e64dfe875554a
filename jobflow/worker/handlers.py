"""
Job handler registry and the built-in handlers.

Handlers must tolerate being run more than once for the same job: the
idempotency guard suppresses most duplicates, but a crash between execution
and the status publish leads to a re-execution.

A handler receives a JobContext and either returns a JobResult or raises
JobExecutionError; any other exception is reported as a failed attempt too.

The built-in handlers simulate work with a random duration and a per-type
failure rate. Two payload keys make them deterministic:
- work_seconds: exact duration of the simulated work
- simulate_failure: True forces a failure, False forces success
"""

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Iterable

from jobflow.constants import JobType
from jobflow.errors import JobExecutionError, UnknownJobTypeError
from jobflow.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[JobResult]]


class HandlerRegistry:
    """Maps each JobType to the coroutine that executes it."""

    def __init__(self) -> None:
        self._handlers: dict[JobType, JobHandler] = {}

    def register(self, job_type: JobType) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a job handler.

        Args:
            job_type: The job type this handler processes.

        Example:
            @registry.register(JobType.SEND_EMAIL)
            async def handle_send_email(context: JobContext) -> JobResult:
                ...
        """
        def decorator(handler: JobHandler) -> JobHandler:
            self._handlers[job_type] = handler
            logger.debug("Registered handler", extra={"job_type": job_type.value})
            return handler
        return decorator

    def get(self, job_type: JobType) -> JobHandler:
        handler = self._handlers.get(job_type)
        if handler is None:
            raise UnknownJobTypeError(job_type)
        return handler

    def job_types(self) -> list[JobType]:
        return list(self._handlers)

    def validate(self, job_types: Iterable[JobType] = JobType) -> None:
        """Raise UnknownJobTypeError for the first job type without a handler."""
        for job_type in job_types:
            self.get(job_type)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers


registry = HandlerRegistry()


async def simulate_work(context: JobContext, min_seconds: float, max_seconds: float) -> None:
    """Sleep for `work_seconds` from the payload, or a random duration in range."""
    duration = context.payload.get("work_seconds")
    if duration is None:
        duration = random.uniform(min_seconds, max_seconds)
    await asyncio.sleep(float(duration))


def simulate_failure(context: JobContext, probability: float, message: str) -> None:
    """Raise JobExecutionError with the given probability unless the payload decides."""
    forced = context.payload.get("simulate_failure")
    failed = bool(forced) if forced is not None else random.random() < probability
    if failed:
        raise JobExecutionError(message)


@registry.register(JobType.PROCESS_DATA)
async def handle_process_data(context: JobContext) -> JobResult:
    """Data transformation or analysis."""
    await simulate_work(context, 1.0, 3.0)
    simulate_failure(context, 0.10, "Data processing error: invalid format")

    return JobResult(
        success=True,
        output={
            "recordsProcessed": random.randint(100, 1099),
            "processingTimeMs": int(time.time() * 1000),
            "status": "success",
        },
    )


@registry.register(JobType.SEND_EMAIL)
async def handle_send_email(context: JobContext) -> JobResult:
    """
    Email notification.

    Payload should contain:
    - to: recipient address
    """
    await simulate_work(context, 0.5, 1.5)
    simulate_failure(context, 0.05, "Email sending failed: SMTP connection error")

    return JobResult(
        success=True,
        output={
            "recipient": context.payload.get("to", "unknown"),
            "sentAt": int(time.time() * 1000),
            "messageId": f"MSG-{str(context.job_id)[:8]}",
            "status": "delivered",
        },
    )


@registry.register(JobType.GENERATE_REPORT)
async def handle_generate_report(context: JobContext) -> JobResult:
    """Report or analytics document generation."""
    await simulate_work(context, 2.0, 5.0)
    simulate_failure(context, 0.08, "Report generation failed: insufficient data")

    return JobResult(
        success=True,
        output={
            "reportId": f"RPT-{str(context.job_id)[:8]}",
            "format": "PDF",
            "pages": random.randint(5, 54),
            "generatedAt": int(time.time() * 1000),
            "status": "completed",
        },
    )


@registry.register(JobType.SYNC_DATA)
async def handle_sync_data(context: JobContext) -> JobResult:
    """Synchronization between systems."""
    await simulate_work(context, 1.5, 4.0)
    simulate_failure(context, 0.12, "Data sync failed: connection timeout")

    return JobResult(
        success=True,
        output={
            "recordsSynced": random.randint(50, 549),
            "conflicts": random.randint(0, 4),
            "syncedAt": int(time.time() * 1000),
            "status": "synchronized",
        },
    )


class JobDispatcher:
    """Runs the registered handler for a job and normalizes its outcome."""

    def __init__(self, handlers: HandlerRegistry | None = None):
        self.handlers = handlers or registry

    def validate(self) -> None:
        """Fail fast at startup if any JobType has no handler."""
        self.handlers.validate()

    async def dispatch(self, context: JobContext) -> JobResult:
        """
        Execute a job using the appropriate handler.

        Args:
            context: The job context.

        Returns:
            JobResult from the handler, or a failed JobResult if it raised.

        Raises:
            UnknownJobTypeError: No handler is registered for the job type.
        """
        handler = self.handlers.get(context.job_type)
        start = time.perf_counter()

        try:
            result = await handler(context)
        except JobExecutionError as e:
            result = JobResult(success=False, error=str(e))
        except Exception as e:
            logger.exception(
                "Handler raised exception",
                extra={"job_id": str(context.job_id), "job_type": context.job_type.value},
            )
            result = JobResult(success=False, error=f"Handler exception: {e}")

        if result.duration_ms is None:
            result = result.model_copy(
                update={"duration_ms": (time.perf_counter() - start) * 1000}
            )
        return result
