from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from internet_id.config import resolve_config
from internet_id.errors import JobNotFoundError
from internet_id.models import AppConfig
from internet_id.queue import (
    ExecutionMode,
    JobFilter,
    JobKind,
    JobStatus,
    JobStore,
    VerificationInput,
    VerificationJob,
    VerificationQueueService,
    create_queue_backend,
)
from internet_id.verification import HttpManifestFetcher, RegistryClient, Verifier

logger = logging.getLogger(__name__)

CONTENT_HASH_PATTERN = r"^0x[0-9a-fA-F]{64}$"


# --- Pydantic Models for Requests/Responses ---
class VerificationRequest(BaseModel):
    contentHash: str = Field(..., pattern=CONTENT_HASH_PATTERN)  # noqa: N815
    manifestUri: str = Field(..., min_length=1, max_length=2048)  # noqa: N815
    registryAddress: Optional[str] = None  # noqa: N815
    filename: Optional[str] = Field(default=None, max_length=255)

    def to_input(self) -> VerificationInput:
        return VerificationInput(
            content_hash=self.contentHash,
            manifest_uri=self.manifestUri,
            registry_address=self.registryAddress,
            original_filename=self.filename,
        )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.replace(tzinfo=timezone.utc).isoformat() if value else None


def _job_to_response(job: VerificationJob) -> dict:
    """Convert a job record to its camelCase JSON shape."""
    return {
        "id": job.id,
        "externalJobId": job.external_job_id,
        "kind": job.kind.value,
        "status": job.status.value,
        "progress": job.progress,
        "contentHash": job.content_hash,
        "manifestUri": job.manifest_uri,
        "registryAddress": job.registry_address,
        "originalFilename": job.original_filename,
        "result": job.result,
        "errorMessage": job.error_message,
        "attempt": job.attempt,
        "maxAttempts": job.max_attempts,
        "createdAt": _iso(job.created_at),
        "updatedAt": _iso(job.updated_at),
        "startedAt": _iso(job.started_at),
        "completedAt": _iso(job.completed_at),
    }


def create_app(service: VerificationQueueService) -> FastAPI:
    """Build the verification job API around an existing service."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service.start()
        yield
        await asyncio.to_thread(service.stop)

    app = FastAPI(title="Internet-ID Verification Jobs", lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        mode = await asyncio.to_thread(service.health.check)
        return {"status": "ok", "queue": mode.value}

    async def _enqueue(kind: JobKind, request: VerificationRequest):
        enqueue = service.enqueue_proof if kind == JobKind.PROOF else service.enqueue_verify
        try:
            outcome = await asyncio.to_thread(enqueue, request.to_input())
        except SQLAlchemyError as e:
            logger.error("Job store error while enqueueing %s: %s", kind.value, e)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={"code": "JOB_STORE_ERROR", "message": "Job store unavailable"},
            )
        except Exception as e:
            # Inline verification raised; queued jobs report failures through polling
            logger.warning("Inline %s failed for %s: %s", kind.value, request.contentHash, e)
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail={"code": "VERIFICATION_FAILED", "message": str(e)},
            )

        if outcome.mode == ExecutionMode.ASYNC:
            return JSONResponse(
                status_code=status.HTTP_202_ACCEPTED,
                content={
                    "mode": outcome.mode.value,
                    "jobId": outcome.job_id,
                    "status": outcome.status.value,
                    "pollUrl": f"/verification-jobs/{outcome.job_id}",
                    "message": f"{kind.value.capitalize()} job queued",
                },
            )
        return {"mode": outcome.mode.value, "result": outcome.result}

    @app.post("/verification-jobs/verify")
    async def enqueue_verify(request: VerificationRequest):
        """Verify content against its manifest and on-chain registration."""
        return await _enqueue(JobKind.VERIFY, request)

    @app.post("/verification-jobs/proof")
    async def enqueue_proof(request: VerificationRequest):
        """Generate a proof bundle for content."""
        return await _enqueue(JobKind.PROOF, request)

    @app.get("/verification-jobs")
    async def list_jobs(
        job_status: Optional[JobStatus] = Query(default=None, alias="status"),
        kind: Optional[JobKind] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
    ):
        job_filter = JobFilter(
            status=job_status,
            kind=kind,
            created_after=_naive_utc(since),
            created_before=_naive_utc(until),
            limit=limit,
            offset=offset,
        )
        jobs = await asyncio.to_thread(service.list_jobs, job_filter)
        return {"jobs": [_job_to_response(job) for job in jobs], "count": len(jobs)}

    # Registered before /{job_id} so "stats" is not taken for an id
    @app.get("/verification-jobs/stats")
    async def get_stats():
        stats = await asyncio.to_thread(service.get_stats)
        return stats.model_dump(mode="json")

    @app.get("/verification-jobs/{job_id}")
    async def get_job(job_id: str):
        try:
            job = await asyncio.to_thread(service.get_job_status, job_id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Job not found")
        return _job_to_response(job)

    return app


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC; aware query values are converted."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def build_service(
    registry: RegistryClient, config: Optional[AppConfig] = None
) -> VerificationQueueService:
    """Wire store, backend and verifier from configuration.

    The registry client is chain-specific and always supplied by the caller.
    """
    config = config or resolve_config()
    verifier = Verifier(
        HttpManifestFetcher(
            gateway=config.verification.ipfs_gateway,
            timeout_s=config.verification.http_timeout_s,
        ),
        registry,
        default_registry_address=config.verification.default_registry_address,
    )
    return VerificationQueueService(
        store=JobStore(config.database.url),
        verifier=verifier,
        backend=create_queue_backend(config.queue.url),
        config=config.queue,
    )
