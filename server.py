# ABOUTME: FastAPI server for long-form text-to-speech (sync /tts and background /jobs)
# ABOUTME: Holds the shared provider handle; restricted to localhost and Tailscale IPs by default
from __future__ import annotations

import asyncio
import base64
import ipaddress
import logging
import shutil
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse

import jobs
from assembler import output_path
from converter import JobTimeout, ValidationError, convert, parse_request_body, synthesize_text, validate_text
from scheduler import BatchFailureThresholdExceeded, BatchPlan, LoggingProgress
from segmenter import SentenceSegmenter, ensure_punkt, load_tokenizer
from settings import Settings, load_settings
from tts_client import ENCODING_FORMATS, GoogleTTSProvider, ProviderConfigError, SynthesisClient, VoiceConfig

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("longform-tts")

MEDIA_TYPES = {"ogg": "audio/ogg", "mp3": "audio/mpeg", "wav": "audio/wav"}

app = FastAPI(title="Long-form TTS API", version="0.1.0")

# Track running background tasks to prevent GC
_running_tasks: dict[str, asyncio.Task] = {}


def _settings() -> Settings:
    return app.state.settings


@app.middleware("http")
async def restrict_ip(request: Request, call_next):
    """Reject requests from outside the configured networks."""
    networks = _settings().allowed_networks if hasattr(app.state, "settings") else ()
    if networks:
        host = request.client.host if request.client else ""
        try:
            client_ip = ipaddress.ip_address(host)
        except ValueError:
            client_ip = None
        if client_ip is None or not any(client_ip in network for network in networks):
            logger.warning("Blocked request from %s", host)
            return JSONResponse(status_code=403, content={"detail": "Forbidden"})
    return await call_next(request)


@app.on_event("startup")
async def startup():
    # Anything already on app.state (tests, embedding) wins over the environment
    if not hasattr(app.state, "settings"):
        app.state.settings = load_settings()
    settings = _settings()

    settings.output_dir.mkdir(parents=True, exist_ok=True)
    jobs.DB_PATH = str(settings.db_path)
    await jobs.init_db()

    if getattr(app.state, "segmenter", None) is None:
        ensure_punkt(download=settings.nltk_download)
        app.state.segmenter = SentenceSegmenter(load_tokenizer(settings.sentence_language))

    if getattr(app.state, "provider", None) is None:
        try:
            app.state.provider = GoogleTTSProvider.from_settings(settings)
        except ProviderConfigError as e:
            logger.error("TTS provider unavailable: %s", e)
            app.state.provider = None
    logger.info("Long-form TTS API started")


@app.on_event("shutdown")
async def shutdown():
    provider = getattr(app.state, "provider", None)
    if provider is not None:
        await provider.close()


def _default_voice() -> VoiceConfig:
    settings = _settings()
    return VoiceConfig(
        language_code=settings.language_code,
        voice_name=settings.voice_name,
        audio_encoding=settings.audio_encoding,
    )


def _client_for(voice: VoiceConfig) -> SynthesisClient:
    provider = getattr(app.state, "provider", None)
    if provider is None:
        raise HTTPException(500, "TTS provider is not configured")
    if voice.audio_encoding.upper() not in ENCODING_FORMATS:
        raise HTTPException(400, f"Unsupported audio encoding: {voice.audio_encoding}. Use: {sorted(ENCODING_FORMATS)}")
    return SynthesisClient(provider, voice)


@app.get("/health")
async def health():
    """Service health + configured limits."""
    settings = _settings()
    provider_ok = getattr(app.state, "provider", None) is not None
    return {
        "status": "ok" if provider_ok else "degraded",
        "provider": "configured" if provider_ok else "missing credentials",
        "limits": {
            "max_chunk_length": settings.max_chunk_length,
            "max_concurrent": settings.max_concurrent,
            "max_requests_per_minute": settings.max_requests_per_minute,
            "max_retries": settings.max_retries,
            "failure_ratio_ceiling": settings.failure_ratio_ceiling,
        },
        "audio_encodings": sorted(ENCODING_FORMATS),
    }


@app.post("/tts")
async def text_to_speech(request: Request):
    """Convert text to speech and return the audio inline as base64."""
    settings = _settings()
    body = parse_request_body(await request.body())
    try:
        text = validate_text(body.text)
    except ValidationError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})

    client = _client_for(body.voice(_default_voice()))
    try:
        assembled = await synthesize_text(
            text, client, BatchPlan.from_settings(settings),
            max_chunk_length=settings.max_chunk_length,
            segmenter=app.state.segmenter,
            observer=LoggingProgress(),
            timeout=settings.job_timeout_secs,
        )
    except JobTimeout as e:
        logger.error("TTS request timed out: %s", e)
        return JSONResponse(status_code=504, content={"error": "Timeout", "message": str(e)})
    except BatchFailureThresholdExceeded as e:
        logger.error("TTS request failed: %s", e)
        return JSONResponse(status_code=500, content={"error": "Internal server error", "message": str(e)})

    return {
        "success": True,
        "audioData": base64.b64encode(assembled.audio).decode("ascii"),
        "format": assembled.format,
        "chunksProcessed": assembled.chunks_processed,
        "failedCount": assembled.failed_count,
    }


@app.post("/jobs")
async def start_job(request: Request):
    """Queue a background conversion."""
    settings = _settings()
    body = parse_request_body(await request.body())
    try:
        text = validate_text(body.text)
    except ValidationError as e:
        raise HTTPException(400, str(e))

    voice = body.voice(_default_voice())
    client = _client_for(voice)

    job_id = jobs.new_job_id()
    await jobs.create_job(job_id, len(text), voice.format, voice.voice_name, voice.language_code)

    task = asyncio.create_task(convert(
        job_id, text, client, BatchPlan.from_settings(settings), settings.output_dir,
        max_chunk_length=settings.max_chunk_length,
        segmenter=app.state.segmenter,
        timeout=settings.job_timeout_secs,
    ))
    _running_tasks[job_id] = task
    task.add_done_callback(lambda t: _running_tasks.pop(job_id, None))

    logger.info("Job %s created: %d chars → %s (voice=%s, lang=%s)",
                job_id, len(text), voice.format, voice.voice_name, voice.language_code)
    return {"job_id": job_id, "status": "queued"}


@app.get("/jobs")
async def list_all_jobs():
    """List all jobs with status."""
    all_jobs = await jobs.list_jobs()
    return [_format_job(j) for j in all_jobs]


@app.get("/jobs/{job_id}")
async def get_job(job_id: str):
    """Get detailed job status + progress."""
    job = await jobs.get_job(job_id)
    if not job:
        raise HTTPException(404, f"Job not found: {job_id}")
    return _format_job(job)


@app.get("/jobs/{job_id}/download")
async def download_job(job_id: str):
    """Download the finished audio."""
    job = await jobs.get_job(job_id)
    if not job:
        raise HTTPException(404, f"Job not found: {job_id}")
    if job["status"] != "completed":
        raise HTTPException(400, f"Job not completed (status: {job['status']})")

    fmt = job["format"]
    output_file = output_path(_settings().output_dir / job_id, fmt)
    if not output_file.exists():
        raise HTTPException(500, "Output file missing")

    return FileResponse(
        str(output_file),
        media_type=MEDIA_TYPES.get(fmt, "application/octet-stream"),
        filename=f"{job_id}.{fmt}",
    )


@app.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str):
    """Cancel a running job."""
    job = await jobs.get_job(job_id)
    if not job:
        raise HTTPException(404, f"Job not found: {job_id}")

    if job["status"] in ("completed", "failed", "cancelled"):
        return {"job_id": job_id, "status": job["status"], "message": "Job already finished"}

    task = _running_tasks.get(job_id)
    if task and not task.done():
        task.cancel()
        logger.info("Cancelled running task for job %s", job_id)

    await jobs.update_status(job_id, "cancelled")
    return {"job_id": job_id, "status": "cancelled"}


@app.delete("/jobs/{job_id}")
async def delete_job(job_id: str):
    """Cancel a running job or clean up a finished one."""
    job = await jobs.get_job(job_id)
    if not job:
        raise HTTPException(404, f"Job not found: {job_id}")

    task = _running_tasks.get(job_id)
    if task and not task.done():
        task.cancel()
        logger.info("Cancelled running task for job %s", job_id)

    job_dir = _settings().output_dir / job_id
    if job_dir.exists():
        shutil.rmtree(job_dir)

    await jobs.delete_job(job_id)
    return {"deleted": job_id}


def _format_job(job: dict) -> dict:
    """Format a job row for API response."""
    total = job.get("chunks_total", 0) or 0
    done = job.get("chunks_done", 0) or 0
    percent = (done / total) * 100 if total > 0 else 0.0

    elapsed_secs = 0.0
    created = job.get("created_at", "")
    if created:
        try:
            start = datetime.fromisoformat(created)
            elapsed_secs = (datetime.now(timezone.utc) - start).total_seconds()
        except (ValueError, TypeError):
            pass

    return {
        "job_id": job["id"],
        "status": job["status"],
        "text_chars": job.get("text_chars"),
        "format": job.get("format"),
        "voice": job.get("voice"),
        "language": job.get("language"),
        "progress": {
            "processed": done,
            "failed": job.get("chunks_failed", 0) or 0,
            "total": total,
            "percent": round(percent, 1),
            "status_message": job.get("status_message"),
            "eta_minutes": job.get("eta_minutes"),
            "elapsed_secs": round(elapsed_secs),
        },
        "error": job.get("error"),
        "created_at": job.get("created_at"),
        "completed_at": job.get("completed_at"),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8767)
