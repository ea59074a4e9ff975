# models.py
# ------------------------------------------------------------------------------------
#  Persistence model (SQLModel):
#    * Job           -> one submission's pipeline state
#    * OutputItem    -> one generated expression, appended after normalization
#    * PipelineTask  -> durable stage trigger consumed by the worker
# ------------------------------------------------------------------------------------
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime, UniqueConstraint
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field as SQLField, create_engine


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC in and out. SQLite drops the offset on write, so it is re-attached on read."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            # naive values are taken as UTC
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def _ts(index: bool = False, nullable: bool = False):
    return Column(UTCDateTime(), index=index, nullable=nullable)


def new_id() -> str:
    return uuid.uuid4().hex


class JobStatus(str, Enum):
    UPLOADING = "uploading"
    TRAINING = "training"
    GENERATING_FREE = "generating_free"
    COMPLETE_FREE = "complete_free"
    GENERATING_FULL = "generating_full"
    COMPLETE = "complete"
    FAILED = "failed"


# Predecessors each status may be entered from. FAILED is reachable from any non-terminal
# state except complete_free, which only waits on payment.
ALLOWED_PREDECESSORS = {
    JobStatus.TRAINING: (JobStatus.UPLOADING,),
    JobStatus.GENERATING_FREE: (JobStatus.TRAINING,),
    JobStatus.COMPLETE_FREE: (JobStatus.GENERATING_FREE,),
    JobStatus.GENERATING_FULL: (JobStatus.COMPLETE_FREE,),
    JobStatus.COMPLETE: (JobStatus.GENERATING_FULL,),
    JobStatus.FAILED: (
        JobStatus.UPLOADING,
        JobStatus.TRAINING,
        JobStatus.GENERATING_FREE,
        JobStatus.GENERATING_FULL,
    ),
}

# Statuses in which full generation has not become possible yet.
PRE_FREE_COMPLETE = (JobStatus.UPLOADING, JobStatus.TRAINING, JobStatus.GENERATING_FREE)


class Tier(str, Enum):
    FREE = "free"
    PAID = "paid"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    DEAD = "dead"


class Job(SQLModel, table=True):
    id: str = SQLField(default_factory=new_id, primary_key=True, index=True)
    submitter_email: str = SQLField(index=True)
    status: JobStatus = SQLField(default=JobStatus.UPLOADING)
    photo_count: int = 0
    training_id: Optional[str] = SQLField(default=None, index=True)
    model_ref: Optional[str] = None
    is_paid: bool = False
    payment_session_id: Optional[str] = None
    error_detail: Optional[str] = None
    created_at: datetime = SQLField(default_factory=utcnow, sa_column=_ts(index=True))
    updated_at: datetime = SQLField(default_factory=utcnow, sa_column=_ts())
    completed_at: Optional[datetime] = SQLField(default=None, sa_column=_ts(nullable=True))


class OutputItem(SQLModel, table=True):
    __tablename__ = "output_item"
    __table_args__ = (UniqueConstraint("job_id", "style_id", name="uq_output_item_job_style"),)

    id: Optional[int] = SQLField(default=None, primary_key=True)
    job_id: str = SQLField(foreign_key="job.id", index=True)
    position: int = 0
    style_id: str
    label: str
    emoji: str = ""
    url: str
    tier: Tier = Tier.FREE
    regeneration_count: int = 0
    created_at: datetime = SQLField(default_factory=utcnow, sa_column=_ts())
    updated_at: datetime = SQLField(default_factory=utcnow, sa_column=_ts())


class PipelineTask(SQLModel, table=True):
    __tablename__ = "pipeline_task"

    id: Optional[int] = SQLField(default=None, primary_key=True)
    kind: str = SQLField(index=True)
    job_id: str = SQLField(index=True)
    dedupe_key: str = SQLField(unique=True)
    status: TaskStatus = SQLField(default=TaskStatus.PENDING, index=True)
    attempts: int = 0
    deferrals: int = 0
    available_at: datetime = SQLField(default_factory=utcnow, sa_column=_ts(index=True))
    last_error: Optional[str] = None
    created_at: datetime = SQLField(default_factory=utcnow, sa_column=_ts())
    updated_at: datetime = SQLField(default_factory=utcnow, sa_column=_ts())


# ---------------- DB setup ----------------

def make_engine(database_url: str):
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url:
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


def init_db(engine) -> None:
    SQLModel.metadata.create_all(engine)
