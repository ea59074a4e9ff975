# services.py
# ------------------------------------------------------------------------------------
#  Wires collaborators into the state machine. Every external handle can be passed
#  in explicitly (tests substitute fakes); anything omitted is built from settings.
# ------------------------------------------------------------------------------------
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from dedup import DedupGuard
from email_client import ResendEmailSender
from generation import GenerationDriver
from job_store import JobStore
from models import init_db, make_engine
from normalizer import OutputNormalizer
from quota import QuotaTracker
from replicate_client import ReplicateFaceValidator, ReplicateInference, ReplicateTrainer
from settings import Settings
from state_machine import JobStateMachine
from storage import build_storage
from stripe_client import StripeCheckout
from task_queue import TaskQueue


@dataclass
class Services:
    settings: Settings
    engine: Any
    store: JobStore
    storage: Any
    queue: TaskQueue
    machine: JobStateMachine
    payment: Any
    face_validator: Any


def build_services(
    settings: Settings,
    *,
    engine=None,
    storage=None,
    inference=None,
    trainer=None,
    payment=None,
    emailer=None,
    face_validator=None,
    http_client=None,
    clock=None,
) -> Services:
    engine = engine or make_engine(settings.database_url)
    init_db(engine)

    storage = storage or build_storage(settings)
    store = JobStore(engine)
    queue_kwargs = {"clock": clock} if clock else {}
    queue = TaskQueue(
        engine,
        max_attempts=settings.task_max_attempts,
        lease_seconds=settings.task_lease_seconds,
        max_deferrals=settings.task_max_deferrals,
        **queue_kwargs,
    )
    dedup_kwargs = {"clock": clock} if clock else {}
    dedup = DedupGuard(store, window=timedelta(minutes=settings.dedup_window_minutes), **dedup_kwargs)

    normalizer = OutputNormalizer(storage, http_client=http_client, download_timeout=settings.download_timeout_sec)
    driver = GenerationDriver(
        inference or ReplicateInference(settings),
        normalizer,
        trigger_word=settings.trigger_word,
        delay_sec=settings.generation_delay_sec,
        timeout_sec=settings.generation_timeout_sec,
        concurrency=settings.generation_concurrency,
        backoff=settings.rate_limit_backoff,
    )
    payment = payment or StripeCheckout(settings)

    machine = JobStateMachine(
        store,
        dedup,
        driver,
        queue,
        QuotaTracker(settings.max_regenerations),
        trainer=trainer or ReplicateTrainer(settings),
        payment=payment,
        emailer=emailer or ResendEmailSender(settings),
        app_url=settings.app_url,
        trigger_word=settings.trigger_word,
        price_label=f"{settings.price_cents / 100:.2f} {settings.currency.upper()}",
    )
    return Services(
        settings=settings,
        engine=engine,
        store=store,
        storage=storage,
        queue=queue,
        machine=machine,
        payment=payment,
        face_validator=face_validator or ReplicateFaceValidator(settings),
    )
