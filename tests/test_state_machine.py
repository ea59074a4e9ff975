import httpx
import pytest

from errors import Conflict, Forbidden, NotFound, ProviderError, QuotaExceeded, ValidationError
from models import JobStatus, OutputItem, TaskStatus, Tier
from state_machine import TRAINING_FAILED_MESSAGE
from task_queue import GENERATE_FREE, GENERATE_FULL
from tests.conftest import MODEL_REF, photos
from worker import Worker


async def trained_job(machine, email="ada@example.com"):
    job = machine.create(email, 12)
    job = await machine.start_training(job.id, photos(12))
    machine.on_training_webhook(job.training_id, "succeeded", MODEL_REF)
    return job


@pytest.fixture
def worker(services):
    return Worker(services.queue, services.machine, poll_interval=0)


# ---------- create / training ----------

def test_create_validates_input(machine):
    with pytest.raises(ValidationError):
        machine.create("not-an-email", 12)
    with pytest.raises(ValidationError):
        machine.create("ada@example.com", 9)
    with pytest.raises(ValidationError):
        machine.create("ada@example.com", 16)

    job = machine.create(" Ada@Example.com ", 10)
    assert job.status == JobStatus.UPLOADING
    assert job.submitter_email == "ada@example.com"


def test_second_submission_inside_window_conflicts(machine, clock):
    first = machine.create("ada@example.com", 12)

    with pytest.raises(Conflict) as exc:
        machine.create("ada@example.com", 12)
    assert exc.value.existing_job_id == first.id

    clock.advance(31 * 60)
    assert machine.create("ada@example.com", 12).id != first.id


@pytest.mark.asyncio
async def test_start_training_records_reference(machine, trainer):
    job = machine.create("ada@example.com", 12)

    job = await machine.start_training(job.id, photos(12))

    assert job.status == JobStatus.TRAINING
    assert job.training_id == "train-1"
    assert trainer.calls == [(12, "ada@example.com", "TOK", "http://testserver/webhooks/replicate")]

    # a repeated upload does not start a second training
    again = await machine.start_training(job.id, photos(12))
    assert again.training_id == "train-1"
    assert len(trainer.calls) == 1


@pytest.mark.asyncio
async def test_start_training_rejects_photo_count(machine):
    job = machine.create("ada@example.com", 12)
    with pytest.raises(ValidationError):
        await machine.start_training(job.id, photos(3))
    with pytest.raises(NotFound):
        await machine.start_training("missing", photos(12))


# ---------- training webhook ----------

@pytest.mark.asyncio
async def test_training_success_is_idempotent(machine, services, worker):
    job = await trained_job(machine)
    machine.on_training_webhook(job.training_id, "succeeded", MODEL_REF)

    view = machine.get_status(job.id)
    assert view.job.status == JobStatus.GENERATING_FREE
    assert view.job.model_ref == MODEL_REF
    assert services.queue.get(GENERATE_FREE, job.id).status == TaskStatus.PENDING

    assert await worker.drain() == 1
    machine.on_training_webhook(job.training_id, "succeeded", MODEL_REF)
    assert await worker.drain() == 0

    view = machine.get_status(job.id)
    assert view.job.status == JobStatus.COMPLETE_FREE
    assert [i.style_id for i in view.items] == ["happy", "sad", "angry"]


@pytest.mark.asyncio
async def test_training_failure_is_terminal(machine):
    job = machine.create("ada@example.com", 12)
    job = await machine.start_training(job.id, photos(12))

    machine.on_training_webhook(job.training_id, "failed")
    machine.on_training_webhook(job.training_id, "succeeded", MODEL_REF)

    view = machine.get_status(job.id)
    assert view.job.status == JobStatus.FAILED
    assert view.job.error_detail == TRAINING_FAILED_MESSAGE
    assert view.items == []


def test_unknown_training_reference_is_acknowledged(machine):
    assert machine.on_training_webhook("train-unknown", "succeeded", MODEL_REF) is None


# ---------- generation batches ----------

@pytest.mark.asyncio
async def test_free_then_full_pack_scenario(machine, worker, emailer):
    job = await trained_job(machine)

    await worker.drain()
    view = machine.get_status(job.id)
    assert view.job.status == JobStatus.COMPLETE_FREE
    assert len(view.items) == 3
    assert all(i.tier == Tier.FREE for i in view.items)
    assert view.job.error_detail is None
    assert emailer.sent[-1] == ("ada@example.com", "Your Free Expressions Are Ready!")

    checkout_url = await machine.create_checkout(job.id)
    assert checkout_url == "https://checkout.stripe.test/cs_test_1"

    paid = await machine.on_payment_webhook("cs_test_1", job.id)
    assert paid.is_paid
    assert paid.status == JobStatus.GENERATING_FULL

    await worker.drain()
    view = machine.get_status(job.id)
    assert view.job.status == JobStatus.COMPLETE
    assert len(view.items) == 12
    assert [i.position for i in view.items] == list(range(12))
    assert [i.tier for i in view.items].count(Tier.PAID) == 9
    assert view.job.payment_session_id == "cs_test_1"


@pytest.mark.asyncio
async def test_partial_failure_advances_with_note(machine, worker, inference):
    job = await trained_job(machine)
    inference.script = [["https://p/1.jpg"], ProviderError("boom"), None]

    await worker.drain()

    view = machine.get_status(job.id)
    assert view.job.status == JobStatus.COMPLETE_FREE
    assert [i.style_id for i in view.items] == ["happy"]
    assert view.job.error_detail == "Partial failure: 2 of 3 styles failed (Sad, Angry)"


@pytest.mark.asyncio
async def test_zero_success_batch_still_advances(machine, worker, inference):
    job = await trained_job(machine)
    inference.script = [ProviderError("down")] * 3

    await worker.drain()

    view = machine.get_status(job.id)
    assert view.job.status == JobStatus.COMPLETE_FREE
    assert view.items == []
    assert view.job.error_detail.startswith("Generation failed for all 3 styles")


@pytest.mark.asyncio
async def test_free_trigger_that_keeps_crashing_closes_the_stage(machine, services, worker, clock):
    job = await trained_job(machine)

    async def crash(job_id, model_ref, styles):
        raise RuntimeError("driver crashed")

    machine.driver.generate = crash
    for _ in range(10):
        await worker.drain()
        clock.advance(600)

    assert services.queue.get(GENERATE_FREE, job.id).status == TaskStatus.DEAD
    view = machine.get_status(job.id)
    assert view.job.status == JobStatus.COMPLETE_FREE
    assert view.items == []
    assert view.job.error_detail.startswith("Generation failed for all 3 styles")


@pytest.mark.asyncio
async def test_full_trigger_that_keeps_crashing_completes_with_note(machine, services, worker, clock):
    job = await trained_job(machine)
    await worker.drain()
    await machine.on_payment_webhook("cs_test_1", job.id)

    async def crash(job_id, model_ref, styles):
        raise RuntimeError("driver crashed")

    machine.driver.generate = crash
    for _ in range(10):
        await worker.drain()
        clock.advance(600)

    view = machine.get_status(job.id)
    assert view.job.status == JobStatus.COMPLETE
    assert len(view.items) == 3
    assert view.job.error_detail.startswith("Generation failed for all 9 styles")


@pytest.mark.asyncio
async def test_redelivered_batch_completion_appends_nothing(machine, worker):
    job = await trained_job(machine)
    await worker.drain()

    view, applied = machine.complete_free_generation(job.id, [])

    assert not applied
    assert len(view.items) == 3


# ---------- payment ----------

@pytest.mark.asyncio
async def test_payment_before_free_completion_is_queued(machine, services, worker, clock):
    job = machine.create("ada@example.com", 12)
    job = await machine.start_training(job.id, photos(12))

    paid = await machine.on_payment_webhook("cs_test_1", job.id)
    assert paid.is_paid
    assert paid.status == JobStatus.TRAINING

    # full generation waits without burning attempts
    assert await worker.run_once()
    task = services.queue.get(GENERATE_FULL, job.id)
    assert task.status == TaskStatus.PENDING
    assert task.attempts == 0

    machine.on_training_webhook(job.training_id, "succeeded", MODEL_REF)
    await worker.drain()
    assert machine.get_status(job.id).job.status == JobStatus.COMPLETE_FREE

    clock.advance(60)
    await worker.drain()
    view = machine.get_status(job.id)
    assert view.job.status == JobStatus.COMPLETE
    assert len(view.items) == 12


@pytest.mark.asyncio
async def test_paid_job_whose_training_never_finishes_fails(machine, services, worker, clock):
    services.queue.max_deferrals = 3
    job = machine.create("ada@example.com", 12)
    job = await machine.start_training(job.id, photos(12))
    await machine.on_payment_webhook("cs_test_1", job.id)

    for _ in range(6):
        await worker.run_once()
        clock.advance(16)

    assert services.queue.get(GENERATE_FULL, job.id).status == TaskStatus.DEAD
    view = machine.get_status(job.id)
    assert view.job.status == JobStatus.FAILED
    assert view.job.error_detail.startswith("Full pack could not be generated: job ")

    # a late training webhook cannot revive it
    machine.on_training_webhook(job.training_id, "succeeded", MODEL_REF)
    assert machine.get_status(job.id).job.status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_duplicate_payment_webhook_is_noop(machine, services, worker, emailer):
    job = await trained_job(machine)
    await worker.drain()

    await machine.on_payment_webhook("cs_test_1", job.id)
    await machine.on_payment_webhook("cs_test_1", job.id)

    receipts = [s for s in emailer.sent if s[1].startswith("Payment Successful")]
    assert len(receipts) == 1
    assert await worker.drain() == 1
    assert len(machine.get_status(job.id).items) == 12


@pytest.mark.asyncio
async def test_payment_for_unknown_job_is_acknowledged(machine):
    assert await machine.on_payment_webhook("cs_test_1", "missing") is None


# ---------- regeneration ----------

@pytest.mark.asyncio
async def test_regeneration_quota(machine, worker):
    job = await trained_job(machine)
    await worker.drain()

    for expected in (1, 2, 3):
        item, remaining = await machine.regenerate(job.id, "happy")
        assert item.regeneration_count == expected
        assert remaining == 3 - expected

    with pytest.raises(QuotaExceeded):
        await machine.regenerate(job.id, "happy")
    assert machine.get_status(job.id).items[0].regeneration_count == 3


@pytest.mark.asyncio
async def test_paid_item_unlocks_after_payment(machine, services, worker):
    job = await trained_job(machine)
    await worker.drain()

    with pytest.raises(Forbidden):
        await machine.regenerate(job.id, "shocked")

    # a paid item already present on an unpaid job stays locked
    with services.store.session() as session:
        services.store.append_items(
            session,
            job.id,
            [OutputItem(job_id=job.id, style_id="shocked", label="Shocked", emoji="😱",
                        url="https://cdn.test/shocked.jpg", tier=Tier.PAID)],
        )
        session.commit()
    with pytest.raises(Forbidden):
        await machine.regenerate(job.id, "shocked")

    await machine.on_payment_webhook("cs_test_1", job.id)
    item, remaining = await machine.regenerate(job.id, "shocked")
    assert item.regeneration_count == 1
    assert remaining == 2


@pytest.mark.asyncio
async def test_regeneration_errors(machine, worker, inference):
    job = await trained_job(machine)
    await worker.drain()

    with pytest.raises(NotFound):
        await machine.regenerate(job.id, "yodeling")
    with pytest.raises(NotFound):
        await machine.regenerate("missing", "happy")

    inference.script = [ProviderError("model offline")]
    with pytest.raises(ProviderError):
        await machine.regenerate(job.id, "sad")
    assert machine.get_status(job.id).items[1].regeneration_count == 0


@pytest.mark.asyncio
async def test_regeneration_transport_error_is_provider_error(machine, worker, inference):
    job = await trained_job(machine)
    await worker.drain()

    inference.script = [httpx.ReadTimeout("slow")]
    with pytest.raises(ProviderError) as exc:
        await machine.regenerate(job.id, "happy")

    assert "ReadTimeout" in exc.value.message
    assert machine.get_status(job.id).items[0].regeneration_count == 0


# ---------- recovery ----------

@pytest.mark.asyncio
async def test_recover_sends_history(machine, emailer):
    machine.create("ada@example.com", 12)

    assert await machine.recover("ada@example.com") == 1
    assert emailer.sent[-1] == ("ada@example.com", "Here are your expression packs")
    assert await machine.recover("nobody@example.com") == 0
