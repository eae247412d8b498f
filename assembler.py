# ABOUTME: Concatenates per-chunk audio bytes in chunk order into a single stream
# ABOUTME: Failed chunks contribute nothing; callers learn about gaps from the processed/failed counts
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from scheduler import BatchResult

logger = logging.getLogger("longform-tts.assembler")


@dataclass
class AssembledAudio:
    audio: bytes
    format: str
    chunks_processed: int
    failed_count: int


def assemble_audio(results: list[bytes]) -> bytes:
    """Join result slots strictly in index order, skipping empty markers."""
    return b"".join(segment for segment in results if segment)


def assemble_result(batch: BatchResult, fmt: str) -> AssembledAudio:
    audio = assemble_audio(batch.results)
    if batch.failed_count:
        logger.warning("Assembled %d bytes with %d missing chunk(s) of %d",
                       len(audio), batch.failed_count, batch.total_count)
    else:
        logger.info("Assembled %d bytes from %d chunks", len(audio), batch.total_count)
    return AssembledAudio(
        audio=audio,
        format=fmt,
        chunks_processed=batch.total_count,
        failed_count=batch.failed_count,
    )


def output_path(job_dir: Path, fmt: str) -> Path:
    return job_dir / f"speech.{fmt}"


def write_audio(job_dir: Path, assembled: AssembledAudio) -> Path:
    """Write the assembled stream to <job_dir>/speech.<format>."""
    job_dir.mkdir(parents=True, exist_ok=True)
    path = output_path(job_dir, assembled.format)
    path.write_bytes(assembled.audio)
    logger.info("Audio written: %s (%.1f MB)", path, len(assembled.audio) / 1e6)
    return path
