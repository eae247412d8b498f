# ABOUTME: Packs sentences into provider-sized chunks (<= max_length chars) without breaking sentence flow
# ABOUTME: Single sentences over the limit are split at word boundaries, hard-cut only when no boundary exists
from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from segmenter import Sentence, SentenceSegmenter, default_segmenter, normalize_text
from settings import MAX_CHUNK_LENGTH

logger = logging.getLogger("longform-tts.chunker")

WHITESPACE = re.compile(r"\s")


@dataclass(frozen=True)
class Chunk:
    index: int   # Position in the final audio
    text: str


def _check_max_length(max_length: int):
    if max_length < 1:
        raise ValueError(f"max_length must be positive, got {max_length}")


def split_at_words(text: str, max_length: int) -> list[str]:
    """Split an oversized text at the last whitespace <= max_length, repeatedly."""
    _check_max_length(max_length)
    fragments: list[str] = []
    rest = text.strip()

    while len(rest) > max_length:
        cut = -1
        for match in WHITESPACE.finditer(rest, 0, max_length + 1):
            cut = match.start()
        if cut <= 0:
            # No word boundary in range: hard cut
            fragments.append(rest[:max_length])
            rest = rest[max_length:].lstrip()
            continue
        fragments.append(rest[:cut].rstrip())
        rest = rest[cut:].lstrip()

    if rest:
        fragments.append(rest)
    return fragments


def assemble_chunks(sentences: list[Sentence], max_length: int = MAX_CHUNK_LENGTH) -> list[Chunk]:
    """Greedily join consecutive sentences with a single space into chunks <= max_length."""
    _check_max_length(max_length)

    texts: list[str] = []
    buffer = ""

    for sentence in sentences:
        text = sentence.text

        # Oversized sentence: flush, then emit its word-split fragments on their own
        if len(text) > max_length:
            if buffer:
                texts.append(buffer)
                buffer = ""
            fragments = split_at_words(text, max_length)
            logger.info("Sentence %d (%d chars) split into %d fragments",
                        sentence.index, len(text), len(fragments))
            texts.extend(fragments)
            continue

        if not buffer:
            buffer = text
        elif len(buffer) + 1 + len(text) > max_length:
            texts.append(buffer)
            buffer = text
        else:
            buffer = f"{buffer} {text}"

    if buffer:
        texts.append(buffer)

    return [Chunk(index=i, text=t) for i, t in enumerate(texts)]


def chunk_text(
    text: str,
    max_length: int = MAX_CHUNK_LENGTH,
    segmenter: SentenceSegmenter | None = None,
) -> list[Chunk]:
    """Normalize, segment, and chunk raw text."""
    _check_max_length(max_length)
    normalized = normalize_text(text)
    if not normalized:
        return []

    # Fits in one request: send it as-is
    if len(normalized) <= max_length:
        return [Chunk(index=0, text=normalized)]

    segmenter = segmenter or default_segmenter()
    sentences = segmenter.segment(normalized)
    if not sentences:
        logger.warning("No sentences detected in %d chars; treating text as a single chunk", len(normalized))
        return [Chunk(index=i, text=t) for i, t in enumerate(split_at_words(normalized, max_length))]

    chunks = assemble_chunks(sentences, max_length)
    logger.info("Chunked %d chars (%d sentences) into %d chunks", len(normalized), len(sentences), len(chunks))
    return chunks
