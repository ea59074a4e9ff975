# state_machine.py
# ------------------------------------------------------------------------------------
#  Job lifecycle:
#     uploading -> training -> generating_free -> complete_free
#               -> (payment) generating_full -> complete
#     failed is reachable from uploading, training and either generating_* state.
#
#  Every handler here may be called more than once for the same event (webhook
#  redelivery, worker retry) and must leave the job exactly as one call would.
# ------------------------------------------------------------------------------------
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from dedup import DedupGuard
from email_client import free_pack_ready_email, payment_receipt_email, recovery_email
from errors import Conflict, Forbidden, NotFound, PartialFailure, ProviderError, ValidationError
from generation import GenerationDriver, StyleResult
from job_store import JobStore
from models import PRE_FREE_COMPLETE, Job, JobStatus, OutputItem, Tier, utcnow
from quota import QuotaTracker
from styles import FREE_STYLES, PAID_STYLES, StyleDescriptor, get_style
from task_queue import GENERATE_FREE, GENERATE_FULL, TaskDeferred, TaskQueue

logger = logging.getLogger(__name__)

MIN_PHOTOS = 10
MAX_PHOTOS = 15
TRAINING_FAILED_MESSAGE = "Training failed on provider side."
TRAINING_NO_MODEL_MESSAGE = "Training finished without a model reference."

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass
class JobView:
    job: Job
    items: List[OutputItem]


class JobStateMachine:
    def __init__(
        self,
        store: JobStore,
        dedup: DedupGuard,
        driver: GenerationDriver,
        queue: TaskQueue,
        quota: QuotaTracker,
        *,
        trainer=None,
        payment=None,
        emailer=None,
        app_url: str = "http://localhost:8000",
        trigger_word: str = "TOK",
        price_label: str = "$9.99",
        free_styles: Sequence[StyleDescriptor] = FREE_STYLES,
        paid_styles: Sequence[StyleDescriptor] = PAID_STYLES,
    ):
        self.store = store
        self.dedup = dedup
        self.driver = driver
        self.queue = queue
        self.quota = quota
        self.trainer = trainer
        self.payment = payment
        self.emailer = emailer
        self.app_url = app_url.rstrip("/")
        self.trigger_word = trigger_word
        self.price_label = price_label
        self.free_styles = list(free_styles)
        self.paid_styles = list(paid_styles)

    # ---------- submission ----------

    def create(self, submitter_email: str, photo_count: int) -> Job:
        email = (submitter_email or "").strip().lower()
        if not _EMAIL_RE.match(email):
            raise ValidationError("A valid email address is required")
        if not isinstance(photo_count, int) or not MIN_PHOTOS <= photo_count <= MAX_PHOTOS:
            raise ValidationError(f"Between {MIN_PHOTOS} and {MAX_PHOTOS} photos are required")

        with self.store.session() as session:
            self.dedup.check(session, email)
            job = self.store.add(session, Job(submitter_email=email, photo_count=photo_count))
            session.commit()
        logger.info("Created job %s for %s (%d photos)", job.id, email, photo_count)
        return job

    async def start_training(self, job_id: str, photos: List[Tuple[str, bytes]]) -> Job:
        with self.store.session() as session:
            job = self._require(session, job_id)
            if job.status != JobStatus.UPLOADING:
                logger.info("Job %s already %s, not starting training again", job_id, job.status.value)
                return job
            if not MIN_PHOTOS <= len(photos) <= MAX_PHOTOS:
                raise ValidationError(f"Between {MIN_PHOTOS} and {MAX_PHOTOS} photos are required")
            self.dedup.check(session, job.submitter_email, exclude_job_id=job.id)
            submitter = job.submitter_email

        logger.info("Starting training for job %s with %d photos", job_id, len(photos))
        training_id = await self.trainer.submit(
            photos, submitter, self.trigger_word, webhook_url=f"{self.app_url}/webhooks/replicate"
        )

        with self.store.session() as session:
            applied = self.store.transition(
                session, job_id, JobStatus.TRAINING, training_id=training_id, photo_count=len(photos)
            )
            session.commit()
            job = self.store.get(session, job_id)
        if not applied:
            logger.warning("Job %s left uploading before training %s was recorded", job_id, training_id)
        return job

    # ---------- training provider webhook ----------

    def on_training_webhook(self, training_ref: str, outcome: str, model_ref: Optional[str] = None) -> Optional[Job]:
        with self.store.session() as session:
            job = self.store.get_by_training_id(session, training_ref)
            if job is None:
                logger.warning("Job not found for training ID %s", training_ref)
                return None

            if outcome == "succeeded" and model_ref:
                applied = self.store.transition(session, job.id, JobStatus.GENERATING_FREE, model_ref=model_ref)
                if applied:
                    # trigger is committed together with the transition
                    self.queue.enqueue(session, GENERATE_FREE, job.id)
            elif outcome in ("succeeded", "failed", "canceled"):
                message = TRAINING_FAILED_MESSAGE if outcome != "succeeded" else TRAINING_NO_MODEL_MESSAGE
                applied = self.store.update_if(
                    session, job.id, (JobStatus.TRAINING,), status=JobStatus.FAILED, error_detail=message
                )
            else:
                logger.debug("Ignoring training %s status %s", training_ref, outcome)
                return job

            session.commit()
            job = self.store.refresh(session, job)

        if applied:
            logger.info("Training %s %s -> job %s is %s", training_ref, outcome, job.id, job.status.value)
        else:
            logger.info("Duplicate training webhook %s (%s) for job %s, status %s",
                        training_ref, outcome, job.id, job.status.value)
        return job

    # ---------- generation stages ----------

    def complete_free_generation(self, job_id: str, results: Sequence[StyleResult]) -> Tuple[JobView, bool]:
        return self._complete_batch(job_id, results, JobStatus.COMPLETE_FREE)

    def complete_full_generation(self, job_id: str, results: Sequence[StyleResult]) -> Tuple[JobView, bool]:
        return self._complete_batch(job_id, results, JobStatus.COMPLETE)

    def _complete_batch(self, job_id: str, results: Sequence[StyleResult], to_status: JobStatus) -> Tuple[JobView, bool]:
        succeeded = [r for r in results if r.ok]
        failed = [r.style.label for r in results if not r.ok]

        fields = {"completed_at": utcnow()}
        if failed:
            note = PartialFailure(requested=len(results), succeeded=len(succeeded), failed_styles=failed)
            fields["error_detail"] = note.message
            logger.warning("Job %s: %s", job_id, note.message)

        with self.store.session() as session:
            applied = self.store.transition(session, job_id, to_status, **fields)
            if applied:
                self.store.append_items(
                    session,
                    job_id,
                    [
                        OutputItem(
                            job_id=job_id,
                            style_id=r.style.id,
                            label=r.style.label,
                            emoji=r.style.emoji,
                            url=r.url,
                            tier=r.style.tier,
                        )
                        for r in succeeded
                    ],
                )
            session.commit()
            view = self._view(session, job_id)

        if applied:
            logger.info("Job %s is %s with %d new items", job_id, to_status.value, len(succeeded))
        else:
            logger.info("Job %s already past %s, batch result dropped", job_id, to_status.value)
        return view, applied

    async def run_free_generation(self, job_id: str) -> None:
        with self.store.session() as session:
            job = self.store.get(session, job_id)
            if job is None or job.status != JobStatus.GENERATING_FREE:
                logger.info("Skipping free generation for job %s (%s)", job_id, job.status.value if job else "missing")
                return
            model_ref, submitter = job.model_ref, job.submitter_email

        results = await self.driver.generate(job_id, model_ref, self.free_styles)
        view, applied = self.complete_free_generation(job_id, results)
        if applied:
            subject, body = free_pack_ready_email(self.app_url, job_id, view.items)
            await self._notify(submitter, subject, body)

    async def run_full_generation(self, job_id: str) -> None:
        with self.store.session() as session:
            job = self.store.get(session, job_id)
            if job is None or not job.is_paid:
                logger.warning("Skipping full generation for job %s: missing or unpaid", job_id)
                return
            if job.status in PRE_FREE_COMPLETE:
                raise TaskDeferred(f"job {job_id} is still {job.status.value}")
            if job.status == JobStatus.COMPLETE_FREE:
                self.store.transition(session, job_id, JobStatus.GENERATING_FULL)
                session.commit()
                job = self.store.refresh(session, job)
            if job.status != JobStatus.GENERATING_FULL:
                logger.info("Skipping full generation for job %s (%s)", job_id, job.status.value)
                return
            model_ref = job.model_ref

        results = await self.driver.generate(job_id, model_ref, self.paid_styles)
        self.complete_full_generation(job_id, results)

    # ---------- dead stage triggers ----------

    def abandon_free_generation(self, job_id: str, reason: str) -> None:
        """The free trigger ran out of retries: close the stage with every style failed."""
        logger.error("Free generation for job %s abandoned: %s", job_id, reason)
        self.complete_free_generation(job_id, [StyleResult(style=s, error=reason) for s in self.free_styles])

    def abandon_full_generation(self, job_id: str, reason: str) -> None:
        logger.error("Full generation for job %s abandoned: %s", job_id, reason)
        with self.store.session() as session:
            job = self.store.get(session, job_id)
            if job is None:
                return
            if job.status in PRE_FREE_COMPLETE:
                # paid, but the free stage never finished
                self.store.update_if(
                    session, job_id, PRE_FREE_COMPLETE,
                    status=JobStatus.FAILED, error_detail=f"Full pack could not be generated: {reason}",
                )
                session.commit()
                return
            if job.status == JobStatus.COMPLETE_FREE:
                self.store.transition(session, job_id, JobStatus.GENERATING_FULL)
                session.commit()
        self.complete_full_generation(job_id, [StyleResult(style=s, error=reason) for s in self.paid_styles])

    # ---------- payment ----------

    async def create_checkout(self, job_id: str) -> str:
        with self.store.session() as session:
            job = self._require(session, job_id)
            submitter = job.submitter_email

        checkout = await self.payment.create_session(
            job_id,
            submitter,
            success_url=f"{self.app_url}/success?job_id={job_id}",
            cancel_url=f"{self.app_url}/view/{job_id}",
        )
        with self.store.session() as session:
            self.store.record_checkout_session(session, job_id, checkout["id"])
            session.commit()
        logger.info("Checkout session %s created for job %s", checkout["id"], job_id)
        return checkout["url"]

    async def on_payment_webhook(self, session_ref: Optional[str], job_id: str) -> Optional[Job]:
        with self.store.session() as session:
            job = self.store.get(session, job_id)
            if job is None:
                logger.warning("Payment %s references unknown job %s", session_ref, job_id)
                return None

            first = self.store.mark_paid(session, job_id, session_ref)
            if first:
                # Before complete_free this is a no-op; the queued trigger waits for it
                self.store.transition(session, job_id, JobStatus.GENERATING_FULL)
                self.queue.enqueue(session, GENERATE_FULL, job_id)
            session.commit()
            job = self.store.refresh(session, job)

        if not first:
            logger.info("Duplicate payment webhook %s for job %s", session_ref, job_id)
            return job

        logger.info("Job %s marked as paid, status %s", job_id, job.status.value)
        subject, body = payment_receipt_email(self.app_url, job_id, self.price_label)
        await self._notify(job.submitter_email, subject, body)
        return job

    # ---------- regeneration ----------

    async def regenerate(self, job_id: str, style_id: str) -> Tuple[OutputItem, int]:
        style_id = (style_id or "").strip().lower()
        with self.store.session() as session:
            job = self._require(session, job_id)
            style = get_style(style_id)
            if style is None:
                raise NotFound("Unknown expression")
            item = self.store.get_item(session, job_id, style_id)
            tier = item.tier if item is not None else style.tier
            if tier == Tier.PAID and not job.is_paid:
                raise Forbidden("This expression requires payment")
            if item is None:
                raise NotFound("Expression not found in job")
            self.quota.next_count(item)
            if not job.model_ref:
                raise ProviderError("Model reference missing for job")
            observed, model_ref, item_id = item.regeneration_count, job.model_ref, item.id

        logger.info("Regenerating %s for job %s (attempt %d/%d)",
                    style.label, job_id, observed + 1, self.quota.max_regenerations)
        result = await self.driver.generate_one(job_id, model_ref, style)
        if not result.ok:
            raise ProviderError(f"Regeneration failed: {result.error}")

        with self.store.session() as session:
            if not self.store.replace_item_url(session, item_id, observed, result.url):
                session.rollback()
                current = self.store.get_item(session, job_id, style_id)
                self.quota.next_count(current)
                raise Conflict("Another regeneration of this expression is in progress", existing_job_id=job_id)
            session.commit()
            item = self.store.get_item(session, job_id, style_id)
            session.refresh(item)
        return item, self.quota.remaining(item.regeneration_count)

    # ---------- reads ----------

    def get_status(self, job_id: str) -> JobView:
        with self.store.session() as session:
            self._require(session, job_id)
            return self._view(session, job_id)

    async def recover(self, submitter_email: str) -> int:
        email = (submitter_email or "").strip().lower()
        if not _EMAIL_RE.match(email):
            raise ValidationError("A valid email address is required")
        with self.store.session() as session:
            jobs = self.store.list_for_submitter(session, email)
        if jobs:
            subject, body = recovery_email(self.app_url, jobs)
            await self._notify(email, subject, body)
        return len(jobs)

    # ---------- helpers ----------

    def _require(self, session, job_id: str) -> Job:
        job = self.store.get(session, job_id)
        if job is None:
            raise NotFound("Job not found")
        return job

    def _view(self, session, job_id: str) -> JobView:
        job = self.store.get(session, job_id)
        session.refresh(job)
        return JobView(job=job, items=self.store.items(session, job_id))

    async def _notify(self, to: str, subject: str, body: str) -> None:
        if self.emailer is None:
            return
        await self.emailer.send(to, subject, body)
