# task_queue.py
# ------------------------------------------------------------------------------------
#  Durable stage triggers. A trigger row is written in the same transaction as the
#  job transition that produced it, so a crash can never lose the next stage.
#  Workers claim rows with a conditional update; a claim whose lease expired
#  (worker died mid-task) becomes claimable again. Delivery is at-least-once.
# ------------------------------------------------------------------------------------
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import and_, or_, update
from sqlmodel import Session, col, select

from models import PipelineTask, TaskStatus, utcnow

logger = logging.getLogger(__name__)

GENERATE_FREE = "generate_free"
GENERATE_FULL = "generate_full"


class TaskDeferred(Exception):
    """Raised by a handler whose job is not ready yet; the task is retried later without using an attempt."""

    def __init__(self, reason: str, delay_sec: Optional[float] = None):
        super().__init__(reason)
        self.reason = reason
        self.delay_sec = delay_sec


class TaskQueue:
    def __init__(self, engine, *, max_attempts: int = 5, lease_seconds: int = 1800,
                 retry_base_seconds: float = 30, defer_seconds: float = 15, max_deferrals: int = 240,
                 clock=utcnow):
        self.engine = engine
        self.max_attempts = max_attempts
        self.lease = timedelta(seconds=lease_seconds)
        self.retry_base_seconds = retry_base_seconds
        self.defer_seconds = defer_seconds
        self.max_deferrals = max_deferrals
        self.clock = clock

    def enqueue(self, session: Session, kind: str, job_id: str, delay_sec: float = 0) -> PipelineTask:
        """Add a trigger inside the caller's transaction. One row per (kind, job)."""
        key = f"{kind}:{job_id}"
        existing = session.exec(select(PipelineTask).where(PipelineTask.dedupe_key == key)).first()
        if existing is not None:
            logger.debug("Task %s already queued (status=%s)", key, existing.status)
            return existing
        task = PipelineTask(
            kind=kind,
            job_id=job_id,
            dedupe_key=key,
            available_at=self.clock() + timedelta(seconds=delay_sec),
        )
        session.add(task)
        session.flush()
        logger.info("Queued %s for job %s", kind, job_id)
        return task

    def claim_next(self) -> Optional[PipelineTask]:
        now = self.clock()
        with Session(self.engine, expire_on_commit=False) as session:
            candidate = session.exec(
                select(PipelineTask)
                .where(
                    or_(
                        and_(PipelineTask.status == TaskStatus.PENDING, PipelineTask.available_at <= now),
                        and_(PipelineTask.status == TaskStatus.RUNNING, PipelineTask.updated_at < now - self.lease),
                    )
                )
                .order_by(col(PipelineTask.available_at))
                .limit(1)
            ).first()
            if candidate is None:
                return None

            if candidate.status == TaskStatus.RUNNING:
                logger.warning("Reclaiming task %s after lease expiry", candidate.dedupe_key)

            claimed = session.exec(
                update(PipelineTask)
                .where(col(PipelineTask.id) == candidate.id)
                .where(col(PipelineTask.status) == candidate.status)
                .where(col(PipelineTask.updated_at) == candidate.updated_at)
                .values(status=TaskStatus.RUNNING, attempts=candidate.attempts + 1, updated_at=now)
            ).rowcount == 1
            if not claimed:
                # another worker got there first
                session.rollback()
                return None
            session.commit()
            session.refresh(candidate)
            return candidate

    def complete(self, task_id: int) -> None:
        self._set(task_id, status=TaskStatus.DONE, last_error=None)

    def retry(self, task_id: int, error: str) -> TaskStatus:
        with Session(self.engine) as session:
            task = session.get(PipelineTask, task_id)
            if task is None:
                return TaskStatus.DEAD
            if task.attempts >= self.max_attempts:
                task.status = TaskStatus.DEAD
                logger.error("Task %s dead after %d attempts: %s", task.dedupe_key, task.attempts, error)
            else:
                task.status = TaskStatus.PENDING
                task.available_at = self.clock() + timedelta(seconds=self.retry_base_seconds * task.attempts)
            task.last_error = error[:2000]
            task.updated_at = self.clock()
            session.add(task)
            session.commit()
            return task.status

    def defer(self, task_id: int, reason: str, delay_sec: Optional[float] = None) -> TaskStatus:
        """Push the task back without using an attempt. After max_deferrals waits it is dead."""
        delay = self.defer_seconds if delay_sec is None else delay_sec
        with Session(self.engine) as session:
            task = session.get(PipelineTask, task_id)
            if task is None:
                return TaskStatus.DEAD
            task.deferrals += 1
            if task.deferrals > self.max_deferrals:
                task.status = TaskStatus.DEAD
                reason = f"gave up after {self.max_deferrals} deferrals: {reason}"
                logger.error("Task %s dead: %s", task.dedupe_key, reason)
            else:
                task.status = TaskStatus.PENDING
                task.attempts = max(0, task.attempts - 1)
                task.available_at = self.clock() + timedelta(seconds=delay)
            task.last_error = reason[:2000]
            task.updated_at = self.clock()
            session.add(task)
            session.commit()
            return task.status

    def get(self, kind: str, job_id: str) -> Optional[PipelineTask]:
        with Session(self.engine, expire_on_commit=False) as session:
            return session.exec(select(PipelineTask).where(PipelineTask.dedupe_key == f"{kind}:{job_id}")).first()

    def _set(self, task_id: int, **fields) -> None:
        with Session(self.engine) as session:
            session.exec(
                update(PipelineTask)
                .where(col(PipelineTask.id) == task_id)
                .values(updated_at=self.clock(), **fields)
            )
            session.commit()
