# ABOUTME: Splits normalized input text into ordered sentences with the NLTK Punkt boundary model
# ABOUTME: Abbreviations, decimals, and URLs do not end a sentence; paragraph breaks always do
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

import nltk
from nltk.tokenize.punkt import PunktParameters, PunktSentenceTokenizer, PunktTokenizer

logger = logging.getLogger("longform-tts.segmenter")

PARAGRAPH_SPLIT = re.compile(r"\n{2,}")

# Seed list for the untrained Punkt model (lowercase, no trailing period)
BUILTIN_ABBREVIATIONS = {
    "mr", "mrs", "ms", "dr", "prof", "sr", "jr", "st", "mt", "ft",
    "vs", "etc", "e.g", "i.e", "cf", "al", "approx", "dept", "est",
    "inc", "ltd", "co", "corp", "no", "vol", "fig", "p", "pp", "ch",
    "jan", "feb", "mar", "apr", "jun", "jul", "aug", "sep", "sept",
    "oct", "nov", "dec", "gen", "col", "capt", "lt", "sgt", "gov",
    "sen", "rep", "rev", "u.s", "u.k", "a.m", "p.m",
}


@dataclass(frozen=True)
class Sentence:
    index: int
    text: str


class SentenceTokenizer(Protocol):
    def tokenize(self, text: str) -> list[str]: ...


def normalize_text(text: str | None) -> str:
    """Unify line endings and trim surrounding whitespace."""
    if not isinstance(text, str) or not text:
        return ""
    return text.replace("\r\n", "\n").replace("\r", "\n").strip()


def builtin_tokenizer() -> PunktSentenceTokenizer:
    """Punkt tokenizer seeded with BUILTIN_ABBREVIATIONS (needs no downloaded data)."""
    params = PunktParameters()
    params.abbrev_types = set(BUILTIN_ABBREVIATIONS)
    return PunktSentenceTokenizer(params)


def ensure_punkt(download: bool = False) -> bool:
    """Check for the trained punkt_tab model, optionally downloading it."""
    try:
        nltk.data.find("tokenizers/punkt_tab")
        return True
    except LookupError:
        if not download:
            return False
    logger.info("NLTK punkt_tab not found, downloading")
    return bool(nltk.download("punkt_tab", quiet=True))


def load_tokenizer(language: str = "english") -> PunktSentenceTokenizer:
    """Trained Punkt model for `language` if installed, else the built-in one."""
    try:
        return PunktTokenizer(language)
    except LookupError:
        logger.warning("Trained Punkt model for %s not installed; using built-in abbreviation list", language)
        return builtin_tokenizer()


class SentenceSegmenter:
    """Splits text into Sentence records. Any object with tokenize(str) -> list[str] can drive it."""

    def __init__(self, tokenizer: SentenceTokenizer | None = None):
        self.tokenizer = tokenizer if tokenizer is not None else load_tokenizer()

    def segment(self, text: str | None) -> list[Sentence]:
        normalized = normalize_text(text)
        if not normalized:
            return []

        sentences: list[Sentence] = []
        for para in PARAGRAPH_SPLIT.split(normalized):
            para = para.strip()
            if not para:
                continue
            for raw in self.tokenizer.tokenize(para):
                raw = raw.strip()
                if raw:
                    sentences.append(Sentence(index=len(sentences), text=raw))

        logger.debug("Segmented %d chars into %d sentences", len(normalized), len(sentences))
        return sentences


@lru_cache(maxsize=None)
def default_segmenter() -> SentenceSegmenter:
    """Process-wide English segmenter, built on first use."""
    return SentenceSegmenter()
