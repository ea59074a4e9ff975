# job_store.py
# ------------------------------------------------------------------------------------
#  Repository over the job tables. Every status change is a conditional UPDATE:
#  "set X only if the current status is one of the allowed predecessors", so a
#  webhook-driven write never clobbers a concurrent one. Output items are appended
#  by inserting rows, never by rewriting a list.
# ------------------------------------------------------------------------------------
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import func, update
from sqlmodel import Session, col, select

from models import ALLOWED_PREDECESSORS, Job, JobStatus, OutputItem, utcnow


class JobStore:
    def __init__(self, engine):
        self.engine = engine

    def session(self) -> Session:
        # Objects stay readable after commit; callers hand them to the API layer
        return Session(self.engine, expire_on_commit=False)

    # ---------- jobs ----------

    def add(self, session: Session, job: Job) -> Job:
        session.add(job)
        session.flush()
        return job

    def get(self, session: Session, job_id: str) -> Optional[Job]:
        return session.get(Job, job_id)

    def refresh(self, session: Session, job: Job) -> Job:
        session.refresh(job)
        return job

    def get_by_training_id(self, session: Session, training_id: str) -> Optional[Job]:
        return session.exec(select(Job).where(Job.training_id == training_id)).first()

    def latest_for_submitter(
        self,
        session: Session,
        submitter_email: str,
        since: datetime,
        exclude_job_id: Optional[str] = None,
    ) -> Optional[Job]:
        stmt = (
            select(Job)
            .where(Job.submitter_email == submitter_email)
            .where(Job.created_at >= since)
            .order_by(col(Job.created_at).desc())
        )
        if exclude_job_id:
            stmt = stmt.where(Job.id != exclude_job_id)
        return session.exec(stmt.limit(1)).first()

    def list_for_submitter(self, session: Session, submitter_email: str) -> List[Job]:
        stmt = select(Job).where(Job.submitter_email == submitter_email).order_by(col(Job.created_at).desc())
        return list(session.exec(stmt).all())

    def transition(self, session: Session, job_id: str, to_status: JobStatus, **fields) -> bool:
        """Move job to `to_status` iff its current status is an allowed predecessor."""
        return self.update_if(session, job_id, ALLOWED_PREDECESSORS[to_status], status=to_status, **fields)

    def update_if(self, session: Session, job_id: str, allowed: Sequence[JobStatus], **fields) -> bool:
        stmt = (
            update(Job)
            .where(col(Job.id) == job_id)
            .where(col(Job.status).in_(list(allowed)))
            .values(updated_at=utcnow(), **fields)
        )
        return session.exec(stmt).rowcount == 1

    def mark_paid(self, session: Session, job_id: str, session_ref: Optional[str]) -> bool:
        """Flip the payment flag once; False if the job was already paid (or is missing)."""
        stmt = (
            update(Job)
            .where(col(Job.id) == job_id)
            .where(col(Job.is_paid).is_(False))
            .values(is_paid=True, payment_session_id=session_ref, updated_at=utcnow())
        )
        return session.exec(stmt).rowcount == 1

    def record_checkout_session(self, session: Session, job_id: str, session_ref: str) -> bool:
        # a paid job keeps the session that actually paid
        stmt = (
            update(Job)
            .where(col(Job.id) == job_id)
            .where(col(Job.is_paid).is_(False))
            .values(payment_session_id=session_ref, updated_at=utcnow())
        )
        return session.exec(stmt).rowcount == 1

    # ---------- output items ----------

    def items(self, session: Session, job_id: str) -> List[OutputItem]:
        stmt = select(OutputItem).where(OutputItem.job_id == job_id).order_by(col(OutputItem.position))
        return list(session.exec(stmt).all())

    def get_item(self, session: Session, job_id: str, style_id: str) -> Optional[OutputItem]:
        stmt = select(OutputItem).where(OutputItem.job_id == job_id).where(OutputItem.style_id == style_id)
        return session.exec(stmt).first()

    def append_items(self, session: Session, job_id: str, new_items: Iterable[OutputItem]) -> int:
        """Read-then-append: skips styles already present, continues the position sequence."""
        existing = {item.style_id for item in self.items(session, job_id)}
        position = session.exec(
            select(func.coalesce(func.max(OutputItem.position), -1)).where(OutputItem.job_id == job_id)
        ).one()
        added = 0
        for item in new_items:
            if item.style_id in existing:
                continue
            position += 1
            item.job_id = job_id
            item.position = position
            session.add(item)
            existing.add(item.style_id)
            added += 1
        session.flush()
        return added

    def replace_item_url(self, session: Session, item_id: int, expected_count: int, url: str) -> bool:
        """Swap in a regenerated URL iff nobody else bumped the counter meanwhile."""
        stmt = (
            update(OutputItem)
            .where(col(OutputItem.id) == item_id)
            .where(col(OutputItem.regeneration_count) == expected_count)
            .values(url=url, regeneration_count=expected_count + 1, updated_at=utcnow())
        )
        return session.exec(stmt).rowcount == 1
