import asyncio
from typing import Any, Awaitable, Callable

from courier.config import settings
from courier.logging_config import LoggerAdapter, get_logger
from courier.services.delivery_queue import DeliveryJob, DeliveryQueue

logger = get_logger("delivery_worker")

JobHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class DeliveryWorkerPool:
    """Runs queue jobs with bounded concurrency.

    A handler that raises fails the job, which the queue retries with
    backoff until attempts run out. Handlers are looked up by job name.
    """

    def __init__(
        self,
        queue: DeliveryQueue,
        handlers: dict[str, JobHandler],
        *,
        concurrency: int | None = None,
        reserve_timeout: float = 1.0,
        promote_interval: float = 1.0,
    ):
        self.queue = queue
        self.handlers = dict(handlers)
        self.concurrency = max(1, concurrency if concurrency is not None else settings.delivery_concurrency)
        self.reserve_timeout = reserve_timeout
        self.promote_interval = promote_interval
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def process_job(self, job: DeliveryJob) -> str:
        """Run one reserved job to completion. Returns the job outcome."""
        handler = self.handlers.get(job.name)
        if handler is None:
            logger.error(
                "No handler for job, discarding",
                extra={"context": {"job_id": job.id, "job_name": job.name}},
            )
            await self.queue.ack(job)
            return "discarded"

        try:
            await handler(job.payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return await self.queue.fail(job, f"{type(exc).__name__}: {exc}")

        await self.queue.ack(job)
        return "completed"

    async def _worker_loop(self, index: int) -> None:
        log = LoggerAdapter(logger, {"worker": index})
        while True:
            try:
                job = await self.queue.reserve(timeout=self.reserve_timeout)
                if job is None:
                    continue
                outcome = await self.process_job(job)
                log.info(
                    "Job processed",
                    extra={"context": {"job_id": job.id, "job_name": job.name, "outcome": outcome}},
                )
            except asyncio.CancelledError:
                break
            except Exception as exc:
                log.error("Worker loop failed", extra={"context": {"error": str(exc)}})
                await asyncio.sleep(self.reserve_timeout)

    async def _scheduler_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.promote_interval)
                promoted = await self.queue.promote_due()
                if promoted:
                    logger.info("Promoted delayed jobs", extra={"context": {"count": promoted}})
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Scheduler loop failed", extra={"context": {"error": str(exc)}})

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [asyncio.create_task(self._worker_loop(i)) for i in range(self.concurrency)]
        self._tasks.append(asyncio.create_task(self._scheduler_loop()))
        logger.info("Delivery workers started", extra={"context": {"concurrency": self.concurrency}})

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Delivery workers stopped")
