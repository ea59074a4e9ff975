# main.py
# ------------------------------------------------------------------------------------
#  FastAPI service for Expressr:
#  - POST /jobs                      -> create a job (dedup-guarded)
#  - POST /jobs/{id}/train           -> upload photos, start LoRA training
#  - GET  /jobs/{id}                 -> poll status + generated expressions
#  - POST /jobs/{id}/regenerate      -> re-roll one expression (max 3 per item)
#  - POST /jobs/{id}/checkout        -> Stripe checkout for the full pack
#  - POST /webhooks/replicate        -> training finished (may redeliver)
#  - POST /webhooks/stripe           -> payment confirmed (signed, may redeliver)
#  - POST /validate-face, /recover   -> pre-submission face check, order recovery email
#  - GET  /files/{key}               -> stream local or R2 objects
#  Stage chaining goes through the durable task queue consumed by worker.py.
# ------------------------------------------------------------------------------------
import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from errors import ExpressrError, ProviderError
from logging_config import configure_logging
from services import Services, build_services
from settings import settings
from storage import LocalStorage, R2Storage
from worker import Worker

logger = logging.getLogger(__name__)

# ------------- FastAPI app --------------
app = FastAPI(title="Expressr API", version="0.3.0")

# In prod, tighten this list to your domains
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(settings)
    return _services


@app.on_event("startup")
async def _on_startup():
    configure_logging()
    services = get_services()
    if settings.run_embedded_worker:
        app.state.worker_stop = asyncio.Event()
        worker = Worker(services.queue, services.machine, poll_interval=settings.worker_poll_interval)
        app.state.worker_task = asyncio.create_task(worker.run_forever(app.state.worker_stop))
        logger.info("Embedded worker running")


@app.on_event("shutdown")
async def _on_shutdown():
    stop = getattr(app.state, "worker_stop", None)
    if stop is not None:
        stop.set()
        await app.state.worker_task


@app.exception_handler(ExpressrError)
async def _expressr_error(request: Request, exc: ExpressrError):
    if isinstance(exc, ProviderError) and exc.rate_limited:
        return JSONResponse(status_code=429, content={"error": exc.message, "retry_after": exc.retry_after})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ---------- Schemas ----------
class CreateJobRequest(BaseModel):
    email: str = Field(..., description="Submitter email address")
    photo_count: int = Field(..., description="Number of photos the submitter will upload (10-15)")


class CreateJobResponse(BaseModel):
    job_id: str
    status: str


class TrainResponse(BaseModel):
    job_id: str
    training_id: Optional[str] = None
    status: str
    estimated_time: int = 600  # seconds


class ItemResponse(BaseModel):
    style_id: str
    label: str
    emoji: str
    url: str
    tier: str
    regeneration_count: int


class JobStatusResponse(BaseModel):
    id: str
    status: str
    error_detail: Optional[str] = None
    is_paid: bool = False
    items: List[ItemResponse] = []


class RegenerateRequest(BaseModel):
    style_id: str


class RegenerateResponse(BaseModel):
    style_id: str
    url: str
    regeneration_count: int
    remaining_attempts: int


class CheckoutResponse(BaseModel):
    checkout_url: str


class RecoverRequest(BaseModel):
    email: str


def _item_response(item) -> ItemResponse:
    return ItemResponse(
        style_id=item.style_id,
        label=item.label,
        emoji=item.emoji,
        url=item.url,
        tier=item.tier.value,
        regeneration_count=item.regeneration_count,
    )


# ---------- Health ----------
@app.get("/health")
def health():
    return {"ok": True, "storage": settings.storage}


# ---------- Jobs ----------
@app.post("/jobs", response_model=CreateJobResponse)
def create_job(payload: CreateJobRequest, services: Services = Depends(get_services)):
    job = services.machine.create(payload.email, payload.photo_count)
    return CreateJobResponse(job_id=job.id, status=job.status.value)


@app.post("/jobs/{job_id}/train", response_model=TrainResponse)
async def train_job(job_id: str, photos: List[UploadFile] = File(...), services: Services = Depends(get_services)):
    files = [(f.filename or f"photo-{i}.jpg", await f.read()) for i, f in enumerate(photos)]
    job = await services.machine.start_training(job_id, files)
    return TrainResponse(job_id=job.id, training_id=job.training_id, status=job.status.value)


@app.get("/jobs/{job_id}", response_model=JobStatusResponse)
def get_job(job_id: str, services: Services = Depends(get_services)):
    view = services.machine.get_status(job_id)
    return JobStatusResponse(
        id=view.job.id,
        status=view.job.status.value,
        error_detail=view.job.error_detail,
        is_paid=view.job.is_paid,
        items=[_item_response(item) for item in view.items],
    )


@app.post("/jobs/{job_id}/regenerate", response_model=RegenerateResponse)
async def regenerate(job_id: str, payload: RegenerateRequest, services: Services = Depends(get_services)):
    item, remaining = await services.machine.regenerate(job_id, payload.style_id)
    return RegenerateResponse(
        style_id=item.style_id,
        url=item.url,
        regeneration_count=item.regeneration_count,
        remaining_attempts=remaining,
    )


@app.post("/jobs/{job_id}/checkout", response_model=CheckoutResponse)
async def create_checkout(job_id: str, services: Services = Depends(get_services)):
    url = await services.machine.create_checkout(job_id)
    return CheckoutResponse(checkout_url=url)


# ---------- Webhooks ----------
def _model_ref(output: Any) -> Optional[str]:
    if isinstance(output, str):
        return output or None
    if isinstance(output, dict):
        # "version" is runnable; "weights" is the raw LoRA file
        return output.get("version") or output.get("weights")
    return None


@app.post("/webhooks/replicate")
async def replicate_webhook(request: Request, services: Services = Depends(get_services)):
    try:
        body: Dict[str, Any] = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid JSON")
    training_id = body.get("id")
    status = body.get("status")
    logger.info("Webhook received for training %s: %s", training_id, status)
    if not training_id or not status:
        raise HTTPException(status_code=400, detail="id and status are required")

    services.machine.on_training_webhook(training_id, status, _model_ref(body.get("output")))
    return {"received": True}


@app.post("/webhooks/stripe")
async def stripe_webhook(request: Request, services: Services = Depends(get_services)):
    payload = await request.body()
    event = services.payment.construct_event(payload, request.headers.get("stripe-signature"))

    event_type = event.get("type")
    session = (event.get("data") or {}).get("object") or {}
    paid = (
        event_type == "checkout.session.completed"
        and session.get("payment_status", "unpaid") in ("paid", "no_payment_required")
    ) or event_type == "checkout.session.async_payment_succeeded"
    if not paid:
        logger.info("Ignoring Stripe event %s", event_type)
        return {"received": True}

    job_id = (session.get("metadata") or {}).get("jobId") or session.get("client_reference_id")
    if not job_id:
        logger.error("Job ID missing in webhook metadata")
        return {"received": True}

    await services.machine.on_payment_webhook(session.get("id"), job_id)
    return {"received": True}


# ---------- Face validation + recovery ----------
@app.post("/validate-face")
async def validate_face(image: UploadFile = File(...), services: Services = Depends(get_services)):
    data = await image.read()
    if not data:
        raise HTTPException(status_code=400, detail="No image provided")
    face_count = await services.face_validator.count_faces(data, image.content_type or "image/jpeg")
    error = None
    if face_count == 0:
        error = "No face detected"
    elif face_count > 1:
        error = "Multiple faces detected"
    return {"is_valid": face_count == 1, "face_count": face_count, "error": error}


@app.post("/recover")
async def recover(payload: RecoverRequest, services: Services = Depends(get_services)):
    found = await services.machine.recover(payload.email)
    if not found:
        return {"message": "No orders found for this email."}
    return {"success": True}


# ---------- Streaming route ----------
@app.get("/files/{key:path}")
def stream_file(key: str, services: Services = Depends(get_services)):
    storage = services.storage
    if key.startswith("local/") and isinstance(storage, LocalStorage):
        try:
            file_path = storage.local_path(key.split("/", 1)[1])
        except ValueError:
            file_path = None
        if not file_path:
            raise HTTPException(status_code=404, detail="file not found")
        return FileResponse(file_path, media_type="image/jpeg")

    if isinstance(storage, R2Storage):
        try:
            body, content_type = storage.open(key)
        except Exception:
            raise HTTPException(status_code=404, detail="object not found")

        def iter_chunks():
            for chunk in iter(lambda: body.read(1024 * 1024), b""):
                yield chunk

        return StreamingResponse(iter_chunks(), media_type=content_type or "application/octet-stream")

    raise HTTPException(status_code=404, detail="file not found")


# ---------- Index ----------
@app.get("/")
def index():
    return {"service": "expressr-api", "storage": settings.storage, "public_base": settings.app_url}
