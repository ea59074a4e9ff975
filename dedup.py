# dedup.py
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from errors import Conflict
from job_store import JobStore
from models import utcnow

logger = logging.getLogger(__name__)


class DedupGuard:
    """
    Rejects a submission when the same identity created a job inside the window.

    This is a read at request time, not a lock: two simultaneous submissions can both
    pass and start two trainings. That cost is accepted.
    """

    def __init__(self, store: JobStore, window: timedelta = timedelta(minutes=30),
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.window = window
        self.clock = clock

    def check(self, session, submitter_email: str, exclude_job_id: Optional[str] = None) -> None:
        since = self.clock() - self.window
        existing = self.store.latest_for_submitter(session, submitter_email, since, exclude_job_id=exclude_job_id)
        if existing is not None:
            logger.info("Duplicate submission from %s, existing job %s", submitter_email, existing.id)
            raise Conflict(
                "You've already started training recently. Please wait for it to complete.",
                existing_job_id=existing.id,
            )
