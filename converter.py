# ABOUTME: Pipeline orchestrator for long-form text-to-speech
# ABOUTME: Coordinates validation → segmentation → chunking → scheduled synthesis → assembly, with an overall deadline
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path

import jobs
from assembler import AssembledAudio, assemble_result, write_audio
from chunker import chunk_text
from scheduler import BatchPlan, BatchScheduler, ProgressObserver
from segmenter import SentenceSegmenter
from settings import MAX_CHUNK_LENGTH
from tts_client import SynthesisClient, VoiceConfig

logger = logging.getLogger("longform-tts.converter")


class ValidationError(ValueError):
    """Request text is missing or blank."""


class JobTimeout(TimeoutError):
    """The overall deadline elapsed before synthesis finished."""


@dataclass
class SpeechRequest:
    text: str | None
    voice_name: str | None = None
    language_code: str | None = None
    audio_encoding: str | None = None

    def voice(self, default: VoiceConfig) -> VoiceConfig:
        return default.with_overrides(
            voice_name=self.voice_name,
            language_code=self.language_code,
            audio_encoding=self.audio_encoding,
        )


def parse_request_body(body: bytes) -> SpeechRequest:
    """Read a JSON body with a `text` field, or treat the raw body as plain text."""
    raw = body.decode("utf-8", errors="replace")
    try:
        data = json.loads(raw)
    except ValueError:
        return SpeechRequest(text=raw)

    if not isinstance(data, dict):
        return SpeechRequest(text=None)
    text = data.get("text")
    return SpeechRequest(
        text=text if isinstance(text, str) else None,
        voice_name=data.get("voiceName"),
        language_code=data.get("languageCode"),
        audio_encoding=data.get("audioEncoding"),
    )


def validate_text(text: str | None) -> str:
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("No text provided")
    return text


async def synthesize_text(
    text: str | None,
    client: SynthesisClient,
    plan: BatchPlan | None = None,
    max_chunk_length: int = MAX_CHUNK_LENGTH,
    segmenter: SentenceSegmenter | None = None,
    observer: ProgressObserver | None = None,
    timeout: float | None = None,
    scheduler: BatchScheduler | None = None,
) -> AssembledAudio:
    """Turn text into one audio stream. Raises ValidationError, BatchFailureThresholdExceeded, JobTimeout."""
    text = validate_text(text)

    chunks = chunk_text(text, max_chunk_length, segmenter)
    logger.info("Split text into %d chunks", len(chunks))

    scheduler = scheduler or BatchScheduler(client, plan, observer=observer)
    try:
        batch = await asyncio.wait_for(scheduler.run(chunks), timeout=timeout or None)
    except asyncio.TimeoutError:
        logger.error("Synthesis of %d chunks exceeded the %.0fs deadline", len(chunks), timeout)
        raise JobTimeout(f"Synthesis did not finish within {timeout:.0f}s") from None

    return assemble_result(batch, client.voice.format)


async def convert(
    job_id: str,
    text: str,
    client: SynthesisClient,
    plan: BatchPlan,
    output_dir: Path,
    max_chunk_length: int = MAX_CHUNK_LENGTH,
    segmenter: SentenceSegmenter | None = None,
    timeout: float | None = None,
) -> Path | None:
    """Run the full pipeline for a background job, recording progress in the job store."""
    try:
        await jobs.update_status(job_id, "generating")
        assembled = await synthesize_text(
            text, client, plan,
            max_chunk_length=max_chunk_length,
            segmenter=segmenter,
            observer=jobs.JobProgress(job_id),
            timeout=timeout,
        )

        await jobs.update_status(job_id, "assembling")
        output = write_audio(output_dir / job_id, assembled)

        await jobs.update_status(job_id, "completed")
        logger.info("Job %s completed: %s (%d chunks, %d failed)",
                    job_id, output, assembled.chunks_processed, assembled.failed_count)
        return output

    except asyncio.CancelledError:
        logger.info("Job %s: cancelled", job_id)
        await jobs.update_status(job_id, "cancelled")
    except Exception as e:
        logger.exception("Job %s failed: %s", job_id, e)
        await jobs.update_status(job_id, "failed", error=str(e))
    return None
