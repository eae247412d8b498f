# ABOUTME: Async client for the Google Cloud Text-to-Speech REST API (text:synthesize)
# ABOUTME: Classifies provider errors as rate-limited (retryable) or other; retry policy lives in the scheduler
from __future__ import annotations

import asyncio
import base64
import enum
import json
import logging
from dataclasses import dataclass, replace
from typing import Protocol

import httpx

logger = logging.getLogger("longform-tts.tts")

TTS_BASE_URL = "https://texttospeech.googleapis.com"
SYNTHESIZE_PATH = "/v1/text:synthesize"
TTS_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
REQUEST_TIMEOUT = 120.0

RATE_LIMIT_MARKERS = (
    "resource_exhausted",
    "rate limit",
    "ratelimit",
    "quota",
    "too many requests",
)

# Google audio encodings -> file extension of the concatenated stream
ENCODING_FORMATS = {
    "OGG_OPUS": "ogg",
    "MP3": "mp3",
    "LINEAR16": "wav",
    "MULAW": "wav",
    "ALAW": "wav",
}


class ErrorKind(enum.Enum):
    RATE_LIMITED = "rate_limited"
    OTHER = "other"


class SynthesisError(Exception):
    """A failed synthesis call, tagged with the kind of failure."""

    def __init__(self, kind: ErrorKind, message: str, status_code: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.RATE_LIMITED


class ProviderConfigError(RuntimeError):
    """Provider credentials are missing or unusable."""


@dataclass(frozen=True)
class VoiceConfig:
    language_code: str = "en-US"
    voice_name: str = "en-US-Chirp3-HD-Aoede"
    audio_encoding: str = "OGG_OPUS"

    @property
    def format(self) -> str:
        return ENCODING_FORMATS.get(self.audio_encoding.upper(), "bin")

    def with_overrides(self, **overrides: str | None) -> VoiceConfig:
        """Copy with any non-empty overrides applied."""
        values = {k: v for k, v in overrides.items() if v}
        if "audio_encoding" in values:
            values["audio_encoding"] = values["audio_encoding"].upper()
        return replace(self, **values)


def classify_error(message: str, status_code: int | None = None) -> ErrorKind:
    """RATE_LIMITED for HTTP 429 or quota/throttling wording, OTHER for everything else."""
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    lowered = message.lower()
    if any(marker in lowered for marker in RATE_LIMIT_MARKERS):
        return ErrorKind.RATE_LIMITED
    return ErrorKind.OTHER


class SpeechProvider(Protocol):
    async def synthesize(self, text: str, voice: VoiceConfig) -> bytes: ...

    async def close(self) -> None: ...


class GoogleTTSProvider:
    """Shared provider handle. Build once at startup; safe to use from concurrent tasks."""

    def __init__(
        self,
        api_key: str | None = None,
        credentials=None,
        base_url: str = TTS_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not api_key and credentials is None:
            raise ProviderConfigError(
                "Set GOOGLE_APPLICATION_CREDENTIALS_JSON or GOOGLE_TTS_API_KEY"
            )
        self.api_key = api_key
        self.credentials = credentials
        self.base_url = base_url
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._token_lock = asyncio.Lock()

    @classmethod
    def from_service_account_json(cls, credentials_json: str, **kwargs) -> GoogleTTSProvider:
        """Build from a service-account JSON string (GOOGLE_APPLICATION_CREDENTIALS_JSON)."""
        from google.oauth2 import service_account

        try:
            info = json.loads(credentials_json)
            credentials = service_account.Credentials.from_service_account_info(info, scopes=[TTS_SCOPE])
        except (ValueError, KeyError) as e:
            raise ProviderConfigError(f"Failed to initialize Google Cloud TTS client: {e}") from e
        return cls(credentials=credentials, **kwargs)

    @classmethod
    def from_settings(cls, settings) -> GoogleTTSProvider:
        if settings.credentials_json:
            return cls.from_service_account_json(settings.credentials_json)
        return cls(api_key=settings.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(REQUEST_TIMEOUT, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _auth_headers(self) -> dict[str, str]:
        if self.credentials is None:
            return {"x-goog-api-key": self.api_key}
        async with self._token_lock:
            if not self.credentials.valid:
                import google.auth.transport.requests

                # google-auth refresh is blocking
                await asyncio.to_thread(self.credentials.refresh, google.auth.transport.requests.Request())
        return {"Authorization": f"Bearer {self.credentials.token}"}

    async def synthesize(self, text: str, voice: VoiceConfig) -> bytes:
        """POST one text:synthesize request and return decoded audio bytes."""
        payload = {
            "input": {"text": text},
            "voice": {"languageCode": voice.language_code, "name": voice.voice_name},
            "audioConfig": {"audioEncoding": voice.audio_encoding.upper()},
        }
        try:
            client = await self._get_client()
            resp = await client.post(SYNTHESIZE_PATH, json=payload, headers=await self._auth_headers())
        except httpx.HTTPError as e:
            raise SynthesisError(classify_error(str(e)), f"TTS request failed: {e}") from e

        if resp.status_code >= 400:
            message = _error_message(resp)
            raise SynthesisError(
                classify_error(message, resp.status_code),
                f"TTS synthesis failed ({resp.status_code}): {message}",
                status_code=resp.status_code,
            )

        try:
            return base64.b64decode(resp.json()["audioContent"])
        except (ValueError, KeyError, TypeError) as e:
            raise SynthesisError(ErrorKind.OTHER, f"Malformed TTS response: {e}") from e


def _error_message(resp: httpx.Response) -> str:
    """Pull "STATUS: message" out of a Google error body, falling back to raw text."""
    try:
        error = resp.json()["error"]
        return f"{error.get('status', '')}: {error.get('message', '')}".strip(": ")
    except (ValueError, KeyError, TypeError, AttributeError):
        return resp.text[:500]


class SynthesisClient:
    """Synthesizes a single chunk through a shared provider handle."""

    def __init__(self, provider: SpeechProvider, voice: VoiceConfig | None = None):
        self.provider = provider
        self.voice = voice or VoiceConfig()

    async def synthesize(self, text: str, voice: VoiceConfig | None = None) -> bytes:
        """Return audio bytes for `text`. Raises SynthesisError; never retries."""
        voice = voice or self.voice
        try:
            return await self.provider.synthesize(text, voice)
        except SynthesisError:
            raise
        except Exception as e:
            raise SynthesisError(classify_error(str(e)), f"TTS synthesis failed: {e}") from e
