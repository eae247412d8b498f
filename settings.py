# ABOUTME: Runtime configuration for the long-form TTS service, read from TTS_* environment variables
# ABOUTME: Defaults match the provider's 5000-char request limit and 100 requests/minute quota
from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

MAX_CHUNK_LENGTH = 4900       # Provider rejects requests over 5000 chars
MAX_CONCURRENT = 10
MAX_REQUESTS_PER_MINUTE = 100
INITIAL_RETRY_DELAY_MS = 1000
MAX_RETRIES = 3
FAILURE_RATIO_CEILING = 0.10
JOB_TIMEOUT_SECS = 900.0

DEFAULT_LANGUAGE_CODE = "en-US"
DEFAULT_VOICE_NAME = "en-US-Chirp3-HD-Aoede"
DEFAULT_AUDIO_ENCODING = "OGG_OPUS"

# Localhost + Tailscale
DEFAULT_ALLOWED_NETWORKS = "127.0.0.0/8,::1/128,100.64.0.0/10"


@dataclass(frozen=True)
class Settings:
    max_chunk_length: int = MAX_CHUNK_LENGTH
    max_concurrent: int = MAX_CONCURRENT
    max_requests_per_minute: int = MAX_REQUESTS_PER_MINUTE
    initial_retry_delay_ms: int = INITIAL_RETRY_DELAY_MS
    max_retries: int = MAX_RETRIES
    failure_ratio_ceiling: float = FAILURE_RATIO_CEILING
    job_timeout_secs: float = JOB_TIMEOUT_SECS
    language_code: str = DEFAULT_LANGUAGE_CODE
    voice_name: str = DEFAULT_VOICE_NAME
    audio_encoding: str = DEFAULT_AUDIO_ENCODING
    sentence_language: str = "english"
    nltk_download: bool = False
    db_path: Path = Path("data/jobs.db")
    output_dir: Path = Path("data/output")
    allowed_networks: tuple = field(default_factory=tuple)
    credentials_json: str | None = None
    api_key: str | None = None


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _positive_int(env: Mapping[str, str], name: str, default: int) -> int:
    value = _int(env, name, default)
    if value < 1:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def parse_networks(raw: str) -> tuple:
    """Parse a comma-separated CIDR list. Empty string disables filtering."""
    return tuple(
        ipaddress.ip_network(part.strip())
        for part in raw.split(",")
        if part.strip()
    )


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from the environment (os.environ by default)."""
    env = os.environ if environ is None else environ
    return Settings(
        max_chunk_length=_positive_int(env, "TTS_MAX_CHUNK_LENGTH", MAX_CHUNK_LENGTH),
        max_concurrent=_int(env, "TTS_MAX_CONCURRENT", MAX_CONCURRENT),
        max_requests_per_minute=_int(env, "TTS_MAX_REQUESTS_PER_MINUTE", MAX_REQUESTS_PER_MINUTE),
        initial_retry_delay_ms=_int(env, "TTS_INITIAL_RETRY_DELAY_MS", INITIAL_RETRY_DELAY_MS),
        max_retries=_int(env, "TTS_MAX_RETRIES", MAX_RETRIES),
        failure_ratio_ceiling=_float(env, "TTS_FAILURE_RATIO_CEILING", FAILURE_RATIO_CEILING),
        job_timeout_secs=_float(env, "TTS_JOB_TIMEOUT_SECS", JOB_TIMEOUT_SECS),
        language_code=env.get("TTS_LANGUAGE_CODE") or DEFAULT_LANGUAGE_CODE,
        voice_name=env.get("TTS_VOICE_NAME") or DEFAULT_VOICE_NAME,
        audio_encoding=env.get("TTS_AUDIO_ENCODING") or DEFAULT_AUDIO_ENCODING,
        sentence_language=env.get("TTS_SENTENCE_LANGUAGE") or "english",
        nltk_download=_bool(env, "TTS_NLTK_DOWNLOAD", False),
        db_path=Path(env.get("TTS_DB_PATH") or "data/jobs.db"),
        output_dir=Path(env.get("TTS_OUTPUT_DIR") or "data/output"),
        allowed_networks=parse_networks(env.get("TTS_ALLOWED_NETWORKS", DEFAULT_ALLOWED_NETWORKS)),
        credentials_json=env.get("GOOGLE_APPLICATION_CREDENTIALS_JSON") or None,
        api_key=env.get("GOOGLE_TTS_API_KEY") or None,
    )
