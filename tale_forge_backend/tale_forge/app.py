from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager, suppress
import logging
import uuid
import asyncio
from typing import Optional

# Ensure .env is loaded before importing modules that initialize API clients
from .settings import has_all_keys, ALLOWED_ORIGINS, SWEEP_INTERVAL_S
from .models import (
    ArtifactKind,
    CreateSegmentRequest,
    ErrorKind,
    GenerateSegmentRequest,
    GenerationRequest,
    GrantCreditsRequest,
    JobRecord,
    SegmentResult,
    SkipReason,
)
from .errors import ConflictingRequest, SegmentNotFound, TaleForgeError
from .orchestrator import PipelineOrchestrator
from .kv_storage import kv
from .ledger import CreditLedger
from .segments import SegmentRepository
from .storage import ArtifactStore
from .state_machine import derive_status
from .llm import OpenAITextAdapter
from .replicate_client import ReplicateImageAdapter, ReplicateVideoAdapter
from .elevenlabs_client import ElevenLabsAudioAdapter

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def build_orchestrator() -> PipelineOrchestrator:
    return PipelineOrchestrator(
        kv=kv,
        ledger=CreditLedger(kv),
        segments=SegmentRepository(kv),
        store=ArtifactStore(),
        adapters={
            ArtifactKind.TEXT: OpenAITextAdapter(),
            ArtifactKind.IMAGE: ReplicateImageAdapter(),
            ArtifactKind.AUDIO: ElevenLabsAudioAdapter(),
            ArtifactKind.VIDEO: ReplicateVideoAdapter(),
        },
    )


async def _sweep_forever(app: FastAPI):
    while True:
        await asyncio.sleep(SWEEP_INTERVAL_S)
        try:
            released = await app.state.pipeline.sweep()
            if released:
                logger.info(f"Sweep released {len(released)} abandoned reservation(s)")
        except TaleForgeError as e:
            logger.error(f"Reservation sweep failed: {e.message}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweeper = asyncio.create_task(_sweep_forever(app))
    try:
        yield
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        jobs = list(app.state.jobs)
        for task in jobs:
            task.cancel()
        if jobs:
            logger.info(f"Cancelling {len(jobs)} running generation job(s) on shutdown")
            await asyncio.gather(*jobs, return_exceptions=True)


app = FastAPI(title="Tale Forge Segment Pipeline", lifespan=lifespan)
app.state.pipeline = build_orchestrator()
# background generation tasks; the event loop only keeps weak references to them
app.state.jobs = set()

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS or ["*"],
    allow_credentials=True,
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["*"],
)


@app.get("/health")
def health(request: Request):
    keys_ok = has_all_keys()
    logger.info(f"Health check: API keys present = {keys_ok}")
    pipeline: PipelineOrchestrator = request.app.state.pipeline
    return {
        "ok": True,
        "has_keys": keys_ok,
        "kv_enabled": pipeline.kv.enabled,
        "providers": pipeline.breaker_statuses(),
    }


def _segment_view(segment) -> dict:
    return {**segment.model_dump(mode="json"), "status": derive_status(segment).value}


@app.post("/segments")
async def create_segment(req: CreateSegmentRequest, request: Request):
    pipeline: PipelineOrchestrator = request.app.state.pipeline
    segment = await pipeline.segments.create(req.story_id, req.story_context, text=req.text)
    return _segment_view(segment)


@app.get("/segments/{segment_id}")
async def get_segment(segment_id: str, request: Request):
    pipeline: PipelineOrchestrator = request.app.state.pipeline
    try:
        segment = await pipeline.segments.get(segment_id)
    except SegmentNotFound:
        raise HTTPException(404, "segment not found")
    return _segment_view(segment)


@app.post("/segments/{segment_id}/generate")
async def generate_segment(segment_id: str, req: GenerateSegmentRequest, request: Request,
                           x_user_id: Optional[str] = Header(None)):
    pipeline: PipelineOrchestrator = request.app.state.pipeline
    if not x_user_id:
        raise HTTPException(400, "X-User-Id header is required")
    if not req.kinds:
        raise HTTPException(400, "at least one artifact kind is required")
    gen = GenerationRequest(
        segment_id=segment_id,
        kinds=set(req.kinds),
        user_id=x_user_id,
        idempotency_token=req.idempotency_token,
        parameters=req.parameters,
    )
    logger.info(f"Generate {sorted(k.value for k in gen.kinds)} for segment {segment_id} (user {x_user_id})")

    if req.run_async:
        try:
            await pipeline.segments.get(segment_id)
        except SegmentNotFound:
            raise HTTPException(404, "segment not found")
        job = JobRecord(job_id=str(uuid.uuid4()), request_id=gen.request_id, segment_id=segment_id)
        await pipeline.kv.set_job(job)
        task = asyncio.create_task(run_generation_job(pipeline, job.job_id, gen))
        request.app.state.jobs.add(task)
        task.add_done_callback(request.app.state.jobs.discard)
        return {"job_id": job.job_id, "status": job.status}

    try:
        result = await pipeline.process(gen)
    except SegmentNotFound:
        raise HTTPException(404, "segment not found")
    except ConflictingRequest as e:
        raise HTTPException(409, e.message)
    return result.model_dump(mode="json")


def _was_cancelled(result: SegmentResult) -> bool:
    return any(
        o.error_kind == ErrorKind.CANCELLED or o.skip_reason == SkipReason.CANCELLED
        for o in result.outcomes.values()
    )


async def run_generation_job(pipeline: PipelineOrchestrator, job_id: str, gen: GenerationRequest):
    """Run one generation request in the background and record its outcome on the job."""
    try:
        job = await pipeline.kv.get_job(job_id)
        if job and job.status == "cancelled":
            logger.info(f"Job {job_id} was cancelled before it started")
            return
        await pipeline.kv.update_job_status(job_id, "running")
        result = await pipeline.process(gen)
        status = "cancelled" if _was_cancelled(result) else "succeeded"
        await pipeline.kv.update_job_status(job_id, status, result=result)
        logger.info(f"Job {job_id} finished with segment status {result.status.value}")
    except asyncio.CancelledError:
        logger.warning(f"Generation job {job_id} interrupted by shutdown")
        await pipeline.kv.update_job_status(job_id, "cancelled", error="server shutting down")
        raise
    except TaleForgeError as e:
        logger.error(f"Generation job {job_id} failed: {e.message}")
        await pipeline.kv.update_job_status(job_id, "failed", error=e.message)
    except Exception as e:
        logger.exception(f"Generation job {job_id} crashed")
        await pipeline.kv.update_job_status(job_id, "failed", error=str(e))


@app.get("/v1/jobs/{job_id}")
async def job_status(job_id: str, request: Request):
    job = await request.app.state.pipeline.kv.get_job(job_id)
    if not job:
        raise HTTPException(404, "job not found")
    return job.model_dump(mode="json")


@app.post("/v1/jobs/{job_id}:cancel")
async def cancel_job(job_id: str, request: Request):
    pipeline: PipelineOrchestrator = request.app.state.pipeline
    job = await pipeline.kv.get_job(job_id)
    if not job:
        raise HTTPException(404, "job not found")
    if job.status in ("succeeded", "failed", "cancelled"):
        raise HTTPException(409, f"job already {job.status}")
    if not pipeline.cancel(job.request_id) and job.status == "queued":
        job = await pipeline.kv.update_job_status(job_id, "cancelled")
    logger.info(f"Cancellation requested for job {job_id}")
    return {"job_id": job_id, "status": job.status, "cancel_requested": True}


@app.get("/users/{user_id}/credits")
async def get_credits(user_id: str, request: Request):
    ledger: CreditLedger = request.app.state.pipeline.ledger
    charges = await ledger.charges(user_id)
    return {
        "user_id": user_id,
        "balance": await ledger.balance(user_id),
        "charges": [c.model_dump(mode="json") for c in charges],
    }


@app.post("/users/{user_id}/credits")
async def grant_credits(user_id: str, req: GrantCreditsRequest, request: Request):
    ledger: CreditLedger = request.app.state.pipeline.ledger
    balance = await ledger.grant(user_id, req.amount)
    return {"user_id": user_id, "balance": balance}


@app.post("/v1/providers/{kind}:reset")
async def reset_provider_circuit(kind: ArtifactKind, request: Request):
    pipeline: PipelineOrchestrator = request.app.state.pipeline
    pipeline.reset_breaker(kind)
    return {"kind": kind.value, **pipeline.breakers[kind].status()}
