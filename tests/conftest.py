"""
Pytest configuration and fixtures for the gateway tests.

Adapters are the real capability base classes with the network step replaced,
so validation and stream bounding still run exactly as in production.
"""

from collections.abc import AsyncGenerator
from typing import List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from billing import ConsumptionReporter
from config import Settings
from errors import ProviderError, Unauthorized
from flows import Services
from main import create_app
from models import Principal, RequestContext
from providers import (
    EmbeddingProvider,
    ImageProvider,
    LLMProvider,
    ProviderSet,
    STTProvider,
    TTSProvider,
)
from security import IdentityVerifier

VALID_TOKEN = "valid-token"
TEST_DIMENSIONS = 8


class FakeLLM(LLMProvider):
    provider_id = "fake-llm"
    label = "FakeLLM"

    def __init__(self, settings: Settings, reply: Optional[str] = "4", error: Optional[Exception] = None):
        super().__init__(settings)
        self.reply = reply
        self.error = error
        self.calls: List[dict] = []

    async def _complete(self, system, user, max_tokens):
        self.calls.append({"system": system, "user": user, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        return self.reply


class FakeTTS(TTSProvider):
    provider_id = "fake-tts"
    label = "FakeTTS"

    def __init__(self, settings: Settings, chunks=(b"ID3", b"-audio"), error: Optional[Exception] = None):
        super().__init__(settings)
        self.chunks = list(chunks)
        self.error = error
        self.invocations = 0
        self.calls: List[tuple] = []

    async def synthesize(self, text, voice_id=None):
        self.invocations += 1
        return await super().synthesize(text, voice_id)

    async def _stream_audio(self, text, voice):
        self.calls.append((text, voice))
        if self.error is not None:
            raise self.error
        for chunk in self.chunks:
            yield chunk


class FakeSTT(STTProvider):
    provider_id = "fake-stt"
    label = "FakeSTT"

    def __init__(self, settings: Settings, transcript: str = "hello world"):
        super().__init__(settings)
        self.transcript = transcript
        self.calls: List[tuple] = []

    async def _transcribe(self, audio, content_type, filename):
        self.calls.append((len(audio), content_type, filename))
        return self.transcript


class FakeImage(ImageProvider):
    provider_id = "fake-image"
    label = "FakeImage"

    def __init__(self, settings: Settings, locator: Optional[str] = "https://img.test/out.png"):
        super().__init__(settings)
        self.locator = locator
        self.calls: List[dict] = []

    async def _text_to_image(self, prompt, width, height, negative_prompt):
        self.calls.append({"mode": "text", "prompt": prompt, "width": width, "height": height})
        return self.locator

    async def _image_to_image(self, prompt, seed_image, negative_prompt):
        self.calls.append({"mode": "image", "prompt": prompt, "seed_bytes": len(seed_image)})
        return self.locator


class FakeEmbedding(EmbeddingProvider):
    provider_id = "fake-embedding"
    label = "FakeEmbedding"

    def __init__(self, settings: Settings, fail_on: tuple = (), error: Optional[Exception] = None):
        super().__init__(settings)
        self.fail_on = set(fail_on)
        self.error = error
        self.calls: List[str] = []

    async def _embed(self, text):
        self.calls.append(text)
        if text in self.fail_on:
            raise self.error or ProviderError(self.provider_id, "embedding failed")
        return [0.5] * self.dimensions


class RecordingReporter(ConsumptionReporter):
    """Stands in for the ledger: remembers every context it was asked to report."""

    def __init__(self, result: bool = True):
        self.reports: List[RequestContext] = []
        self.result = result

    async def report(self, ctx):
        self.reports.append(ctx)
        return self.result


class FakeVerifier(IdentityVerifier):
    async def verify(self, token):
        if token != VALID_TOKEN:
            raise Unauthorized("Authentication failed")
        return Principal(uid="user-1", email="user@example.com")


def make_settings(**overrides) -> Settings:
    base = dict(
        ledger_base_url="http://ledger.test",
        ledger_internal_secret="internal-secret",
        auth_jwt_secret="jwt-test-secret-with-at-least-32-bytes",
        openai_api_key="sk-test",
        elevenlabs_api_key="el-test",
        wit_api_key="wit-test",
        runware_api_key="rw-test",
        embedding_dimensions=TEST_DIMENSIONS,
    )
    base.update(overrides)
    return Settings(**base)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def fakes(settings: Settings) -> dict:
    return {
        "llm": FakeLLM(settings),
        "tts": FakeTTS(settings),
        "stt": FakeSTT(settings),
        "image": FakeImage(settings),
        "embedding": FakeEmbedding(settings),
    }


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def services(settings: Settings, fakes: dict, reporter: RecordingReporter) -> Services:
    return Services(
        settings=settings,
        providers=ProviderSet(**fakes),
        reporter=reporter,
        verifier=FakeVerifier(),
    )


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(principal_id="user-1", credential=VALID_TOKEN, cost=5)


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {VALID_TOKEN}"}


@pytest_asyncio.fixture(scope="function")
async def client(services: Services) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to an app wired with the fakes above."""
    app = create_app(services=services)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
