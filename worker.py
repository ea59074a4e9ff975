# worker.py
import asyncio
import logging
from typing import Optional

from models import TaskStatus
from task_queue import GENERATE_FREE, GENERATE_FULL, TaskDeferred, TaskQueue

logger = logging.getLogger(__name__)

POLL_INTERVAL = 2  # seconds


class Worker:
    """Consumes durable stage triggers and hands them to the state machine."""

    def __init__(self, queue: TaskQueue, machine, poll_interval: float = POLL_INTERVAL):
        self.queue = queue
        self.poll_interval = poll_interval
        self.handlers = {
            GENERATE_FREE: machine.run_free_generation,
            GENERATE_FULL: machine.run_full_generation,
        }
        # called once a task is dead so its job does not wait forever
        self.abandon_handlers = {
            GENERATE_FREE: machine.abandon_free_generation,
            GENERATE_FULL: machine.abandon_full_generation,
        }

    async def run_once(self) -> bool:
        """Process at most one task. Returns False when nothing was claimable."""
        task = self.queue.claim_next()
        if task is None:
            return False

        handler = self.handlers.get(task.kind)
        if handler is None:
            logger.error("No handler for task kind %s", task.kind)
            self.queue.retry(task.id, f"unknown task kind {task.kind}")
            return True

        try:
            await handler(task.job_id)
        except TaskDeferred as e:
            logger.info("Deferred %s: %s", task.dedupe_key, e.reason)
            if self.queue.defer(task.id, e.reason, e.delay_sec) == TaskStatus.DEAD:
                self._abandon(task, e.reason)
        except Exception as e:
            logger.exception("Task %s failed (attempt %d)", task.dedupe_key, task.attempts)
            if self.queue.retry(task.id, str(e)) == TaskStatus.DEAD:
                self._abandon(task, str(e))
        else:
            self.queue.complete(task.id)
            logger.info("Processed %s", task.dedupe_key)
        return True

    def _abandon(self, task, reason: str) -> None:
        handler = self.abandon_handlers.get(task.kind)
        if handler is None:
            return
        try:
            handler(task.job_id, reason)
        except Exception:
            logger.exception("Could not close out job %s after %s died", task.job_id, task.dedupe_key)

    async def drain(self, limit: int = 100) -> int:
        """Run claimable tasks until none are left (or `limit` is hit)."""
        processed = 0
        while processed < limit and await self.run_once():
            processed += 1
        return processed

    async def run_forever(self, stop: Optional[asyncio.Event] = None) -> None:
        logger.info("Worker started...")
        while stop is None or not stop.is_set():
            if not await self.run_once():
                await asyncio.sleep(self.poll_interval)
        logger.info("Worker stopped")


def main():
    from logging_config import configure_logging
    from services import build_services
    from settings import settings

    configure_logging()
    services = build_services(settings)
    worker = Worker(services.queue, services.machine, poll_interval=settings.worker_poll_interval)
    asyncio.run(worker.run_forever())


if __name__ == "__main__":
    main()
