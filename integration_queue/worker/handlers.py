"""
Processor registry and dispatch.

Processors are supplied per job type by the systems the queue delivers to.
They must be safe to run more than once for the same job: a claimed job is
attempted again after a crash or a lapsed lease. Processors that call a
downstream API should pass the job's idempotency key along.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from pydantic import ValidationError

from integration_queue.config import Settings, get_settings
from integration_queue.constants import IDEMPOTENCY_KEY_HEADER, SPAN_DISPATCH_JOB, JobType
from integration_queue.errors import PermanentJobError
from integration_queue.observability.tracing import annotate, traced
from integration_queue.types.job import JobContext, JobResult, validate_payload

logger = logging.getLogger(__name__)

# Type alias for processor functions
JobHandler = Callable[[JobContext], Awaitable[JobResult]]

# Handler registry
_handlers: dict[JobType, JobHandler] = {}


def register_processor(job_type: JobType, handler: JobHandler) -> JobHandler:
    """
    Register the processor for a job type, replacing any earlier one.

    Args:
        job_type: The job type this processor handles.
        handler: Async callable taking a JobContext and returning a JobResult.

    Returns:
        The handler, unchanged.
    """
    _handlers[JobType(job_type)] = handler
    logger.info(f"Registered processor for job type: {job_type}")
    return handler


def register_handler(job_type: JobType) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a processor.

    Example:
        @register_handler(JobType.INBOUND_EVENT)
        async def apply_event(context: JobContext) -> JobResult:
            ...
    """
    def decorator(handler: JobHandler) -> JobHandler:
        return register_processor(job_type, handler)
    return decorator


def clear_handlers() -> None:
    """Remove every registered processor."""
    _handlers.clear()


def get_handler(job_type: JobType) -> JobHandler | None:
    """
    Get the processor for a job type.

    Returns:
        The handler or None if none is registered.
    """
    return _handlers.get(job_type)


def list_handlers() -> list[str]:
    """List all job types with a registered processor."""
    return [job_type.value for job_type in _handlers]


def make_http_processor(
    url: str,
    timeout: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> JobHandler:
    """
    Build a processor that POSTs the job payload to a downstream endpoint.

    The job's idempotency key travels in the ``Idempotency-Key`` header so
    the receiver can recognise a repeated attempt. Timeouts, connection
    errors, 429 and 5xx responses are retried; any other 4xx and any 3xx
    are permanent. The created artifact id is read from ``external_ref`` or
    ``id`` in a JSON response body; a 2xx whose body cannot be parsed still
    counts as delivered.

    Args:
        url: Endpoint receiving the payload.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport, for tests.

    Returns:
        The processor.
    """

    async def process(context: JobContext) -> JobResult:
        headers = {
            IDEMPOTENCY_KEY_HEADER: context.idempotency_key,
            "X-Tenant-Id": context.tenant_id,
            "X-Job-Id": context.job_id,
            "X-Attempt": str(context.attempt),
        }

        logger.info(
            "Forwarding job downstream",
            extra={"job_id": context.job_id, "url": url, "attempt": context.attempt},
        )

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
                response = await client.post(url, json=context.payload, headers=headers)
        except httpx.TimeoutException as e:
            return JobResult.failed(f"Downstream timeout: {e}")
        except httpx.HTTPError as e:
            return JobResult.failed(f"Downstream request failed: {e}")

        if response.status_code == 429 or response.is_server_error:
            return JobResult.failed(f"Downstream returned HTTP {response.status_code}")
        if response.is_client_error:
            return JobResult.failed(
                f"Downstream rejected job: HTTP {response.status_code} {response.text[:500]}",
                permanent=True,
            )
        if 300 <= response.status_code < 400:
            # Redirects are not followed, so nothing was booked
            return JobResult.failed(
                f"Downstream redirected job: HTTP {response.status_code} to "
                f"{response.headers.get('location', '<none>')}",
                permanent=True,
            )

        body: Any = None
        if response.headers.get("content-type", "").startswith("application/json"):
            try:
                body = response.json()
            except ValueError:
                # Booked downstream regardless; retrying would book it twice
                logger.warning(
                    "Downstream sent an unreadable JSON body",
                    extra={"job_id": context.job_id, "status_code": response.status_code},
                )

        external_ref = None
        if isinstance(body, dict):
            ref = body.get("external_ref") or body.get("id")
            external_ref = str(ref) if ref is not None else None

        return JobResult.ok(
            output={"status_code": response.status_code, "body": body},
            external_ref=external_ref,
        )

    return process


def register_configured_processors(settings: Settings | None = None) -> list[str]:
    """
    Register an HTTP processor for every endpoint in settings.

    Returns:
        The job types that were registered.
    """
    settings = settings or get_settings()
    for job_type, url in settings.processor_endpoints.items():
        register_processor(
            job_type,
            make_http_processor(url, timeout=settings.processor_timeout_seconds),
        )
    return [JobType(job_type).value for job_type in settings.processor_endpoints]


async def dispatch(context: JobContext) -> JobResult:
    """
    Run the processor for a job and interpret its outcome.

    Unknown job types, malformed payloads and PermanentJobError are permanent
    failures. Any other exception is a transient failure.

    Args:
        context: The job context.

    Returns:
        JobResult from the processor.
    """
    start = time.monotonic()

    with traced(
        SPAN_DISPATCH_JOB,
        job_id=context.job_id,
        tenant_id=context.tenant_id,
        job_type=context.job_type,
        attempt=context.attempt,
    ) as span:
        result = await _run_handler(context)

        annotate(span, success=result.success, permanent=result.permanent)

    result.duration_ms = (time.monotonic() - start) * 1000
    return result


async def _run_handler(context: JobContext) -> JobResult:
    handler = get_handler(context.job_type)
    if handler is None:
        logger.error(
            f"No processor for job type: {context.job_type}",
            extra={"job_id": context.job_id},
        )
        return JobResult.failed(
            f"No processor registered for job type: {context.job_type}",
            permanent=True,
        )

    try:
        validate_payload(context.job_type, context.payload)
    except ValidationError as e:
        logger.error(
            "Malformed payload",
            extra={"job_id": context.job_id, "error": str(e)},
        )
        return JobResult.failed(f"Malformed payload: {e}", permanent=True)

    try:
        return await handler(context)
    except PermanentJobError as e:
        logger.error(
            "Processor reported a permanent failure",
            extra={"job_id": context.job_id, "error": str(e)},
        )
        return JobResult.failed(str(e), permanent=True)
    except Exception as e:
        logger.exception(
            "Processor raised exception",
            extra={"job_id": context.job_id, "error": str(e)},
        )
        return JobResult.failed(f"Processor exception: {e}")
