import asyncio

import pytest

from segmenter import SentenceSegmenter, builtin_tokenizer
from tts_client import ErrorKind, SynthesisError


class FakeProvider:
    """Provider stub: echoes text as bytes, or raises the scripted outcome for that text."""

    def __init__(self, outcomes: dict | None = None):
        # text -> exception (every call) or list of exceptions/None (one per call)
        self.outcomes = outcomes or {}
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def synthesize(self, text, voice):
        self.calls.append(text)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            outcome = self.outcomes.get(text)
            if isinstance(outcome, list):
                outcome = outcome.pop(0) if outcome else None
            if outcome is not None:
                raise outcome
            return f"<{text}>".encode()
        finally:
            self.in_flight -= 1

    async def close(self):
        self.closed = True


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays without waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, secs: float) -> None:
        self.delays.append(secs)
        await asyncio.sleep(0)


class RecordingObserver:
    def __init__(self):
        self.updates = []

    async def on_progress(self, update):
        self.updates.append(update)


def rate_limited(message: str = "429 RESOURCE_EXHAUSTED: quota exceeded") -> SynthesisError:
    return SynthesisError(ErrorKind.RATE_LIMITED, message, status_code=429)


def hard_failure(message: str = "400 INVALID_ARGUMENT: bad voice") -> SynthesisError:
    return SynthesisError(ErrorKind.OTHER, message, status_code=400)


@pytest.fixture
def segmenter() -> SentenceSegmenter:
    return SentenceSegmenter(builtin_tokenizer())


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()
