# inbox/infra/job_worker.py
"""
In-process async job worker with handler dispatch.

Polls job_queue, claims due jobs of the registered types and routes them
to handler functions. ``ai_response`` jobs belong to the AI service and
are never claimed here; this worker delivers ``send_message`` jobs.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Protocol

from inbox.core.ingestion.dispatcher import JOB_SEND_MESSAGE
from inbox.core.ingestion.domain import ChannelContext, SendMessagePayload
from inbox.core.ingestion.errors import OutboundSendError, ProviderSendError, ProviderTimeout
from inbox.infra.logging_config import get_logger, mask_identifier
from inbox.infra.metrics import inc_counter
from inbox.infra.pg_job_repo_async import AsyncPostgresJobRepository, Job

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[None]]


class _ConnectionLookup(Protocol):
    async def get_connection(self, tenant_id: str, channel_connection_id: str) -> Optional[ChannelContext]: ...


class _OutboundLog(Protocol):
    async def mark_outbound_sent(self, tenant_id: str, message_id: str, provider_message_id: str) -> None: ...

    async def mark_outbound_failed(self, tenant_id: str, message_id: str, error_message: str) -> None: ...


class _Sender(Protocol):
    async def send(self, ctx: ChannelContext, recipient_id: str, text: str) -> str: ...


# ---------------------------------------------------------------------------
# Job handler functions
# ---------------------------------------------------------------------------

def make_send_message_handler(
    sender: _Sender,
    tenants: _ConnectionLookup,
    messages: _OutboundLog,
) -> JobHandler:
    """Build the ``send_message`` handler around the outbound sender."""

    async def handle_send_message(job: Job) -> None:
        payload = SendMessagePayload(**job.payload)
        ctx = await tenants.get_connection(payload.tenant_id, payload.channel_connection_id)
        if ctx is None:
            raise ProviderSendError(
                0, None, f"Channel connection {payload.channel_connection_id} is not connected",
                retryable=False,
            )

        try:
            provider_id = await sender.send(ctx, payload.recipient_id, payload.content)
        except ProviderTimeout:
            # The provider may have accepted the message; keep the row as it is.
            logger.warning(
                f"Send job timed out, delivery unknown: channel={ctx.channel.value}, "
                f"to={mask_identifier(payload.recipient_id)}",
                extra={"tenant_id": payload.tenant_id, "conversation_id": payload.conversation_id},
            )
            inc_counter("send_delivery_unknown_total")
            raise
        except OutboundSendError as exc:
            final = not exc.retryable or job.attempts + 1 >= job.max_attempts
            if payload.message_id and final:
                await messages.mark_outbound_failed(payload.tenant_id, payload.message_id, str(exc))
            raise

        if payload.message_id:
            await messages.mark_outbound_sent(payload.tenant_id, payload.message_id, provider_id)
        logger.info(
            f"Send job delivered: channel={ctx.channel.value}, to={mask_identifier(payload.recipient_id)}",
            extra={"tenant_id": payload.tenant_id, "conversation_id": payload.conversation_id},
        )

    return handle_send_message


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------

class JobWorker:
    """
    In-process async worker that polls job_queue and executes handlers.

    Usage:
        worker = JobWorker(repo=AsyncPostgresJobRepository())
        worker.register("send_message", make_send_message_handler(sender, tenants, messages))
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        repo: AsyncPostgresJobRepository,
        *,
        poll_interval: float = 1.0,
        batch_size: int = 5,
        base_retry_delay: float = 5.0,
        stale_timeout: int = 300,
    ):
        self._repo = repo
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._base_retry_delay = base_retry_delay
        self._stale_timeout = stale_timeout
        self._handlers: dict[str, JobHandler] = {}
        self._task: asyncio.Task | None = None
        self._running = False
        self._loop_count = 0

    def register(self, job_type: str, handler: JobHandler) -> None:
        """Register a handler function for a job type."""
        self._handlers[job_type] = handler

    def list_handlers(self) -> list[str]:
        return sorted(self._handlers)

    async def start(self) -> None:
        """Start the worker loop as an asyncio task."""
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="job_worker")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Job worker started: poll={self._poll_interval}s, "
            f"batch={self._batch_size}, handlers={self.list_handlers()}",
        )

    async def stop(self) -> None:
        """Graceful shutdown: stop polling and wait for the loop to exit."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Job worker stopped")

    async def run_once(self) -> int:
        """Claim and execute one batch. Returns the number of jobs claimed."""
        jobs = await self._repo.claim_batch(self.list_handlers(), self._batch_size)
        if jobs:
            await asyncio.gather(*[self._execute(job) for job in jobs], return_exceptions=True)
        return len(jobs)

    async def _loop(self) -> None:
        """Main poll loop."""
        while self._running:
            try:
                self._loop_count += 1

                # Periodically reset stale processing jobs (~every 60 loops)
                if self._loop_count % 60 == 0:
                    try:
                        await self._repo.reset_stale_processing(self._stale_timeout, self.list_handlers())
                    except Exception as exc:
                        logger.warning(f"Stale job reset failed: {exc}")

                claimed = await self.run_once()
                await asyncio.sleep(0.1 if claimed else self._poll_interval)

            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Job worker loop error: {exc}", exc_info=True)
                inc_counter("job_worker_loop_errors")
                await asyncio.sleep(self._poll_interval * 2)

    async def _execute(self, job: Job) -> None:
        """Execute a single job via its registered handler."""
        handler = self._handlers.get(job.job_type)
        if handler is None:
            error = f"No handler registered for job_type={job.job_type}"
            logger.error(error)
            await self._repo.fail(job.id, error, base_delay=self._base_retry_delay, retryable=False)
            inc_counter("jobs_unknown_type")
            return

        try:
            await handler(job)
            await self._repo.complete(job.id)
            inc_counter("jobs_completed", job_type=job.job_type)
            logger.info(
                f"Job completed: id={job.id[:8]}, type={job.job_type}, "
                f"attempt={job.attempts + 1}",
            )
        except Exception as exc:
            retryable = getattr(exc, "retryable", True)
            error_msg = f"{exc.__class__.__name__}: {exc}"[:500]
            await self._repo.fail(
                job.id, error_msg, base_delay=self._base_retry_delay, retryable=retryable,
            )
            inc_counter("jobs_failed_attempt", job_type=job.job_type, retryable=str(retryable).lower())
            logger.warning(
                f"Job failed: id={job.id[:8]}, type={job.job_type}, "
                f"attempt={job.attempts + 1}, retryable={retryable}, error={error_msg[:100]}",
            )

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected worker death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Job worker task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )


def build_send_worker(
    repo: AsyncPostgresJobRepository,
    sender: _Sender,
    tenants: _ConnectionLookup,
    messages: _OutboundLog,
    **options,
) -> JobWorker:
    worker = JobWorker(repo, **options)
    worker.register(JOB_SEND_MESSAGE, make_send_message_handler(sender, tenants, messages))
    return worker
