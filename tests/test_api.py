"""
HTTP surface: envelopes, auth, status codes and charging through the app.
"""

import base64

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from billing import ConsumptionReporter, LedgerClient
from config import MIB
from conftest import FakeLLM, FakeVerifier
from errors import ProviderError, RateLimited
from flows import Services
from main import create_app
from providers import ProviderSet

pytestmark = pytest.mark.asyncio


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


class TestHealthAndRouting:
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["service"] == "ai-credit-gateway"
        assert data["version"]
        assert data["timestamp"]

    async def test_unknown_route_uses_the_envelope(self, client: AsyncClient) -> None:
        response = await client.get("/api/nope")
        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "NOT_FOUND"
        assert body["error"]["statusCode"] == 404

    async def test_image_sizes_are_public(self, client: AsyncClient) -> None:
        response = await client.get("/api/image/sizes")
        assert response.status_code == 200
        assert {"width": 512, "height": 512} in response.json()["data"]["sizes"]


class TestAuth:
    async def test_missing_header(self, client: AsyncClient, fakes) -> None:
        response = await client.post("/api/llm", json={"prompt": "hi"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"
        assert fakes["llm"].calls == []

    async def test_bad_token(self, client: AsyncClient, reporter) -> None:
        response = await client.post(
            "/api/llm", json={"prompt": "hi"}, headers={"Authorization": "Bearer forged"}
        )
        assert response.status_code == 401
        assert reporter.reports == []


class TestSingleProviderEndpoints:
    async def test_llm(self, client: AsyncClient, auth_headers, reporter) -> None:
        response = await client.post("/api/llm", json={"prompt": "What is 2+2?"}, headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "data": {"text": "4", "providerInfo": {"provider": "FakeLLM", "model": "gpt-4o-mini"}},
        }
        [ctx] = reporter.reports
        assert (ctx.principal_id, ctx.credential, ctx.cost) == ("user-1", "valid-token", 1)

    async def test_missing_field_names_the_field(self, client: AsyncClient, auth_headers) -> None:
        response = await client.post("/api/llm", json={"systemPrompt": "x"}, headers=auth_headers)
        assert response.status_code == 400
        err = response.json()["error"]
        assert err["code"] == "VALIDATION_ERROR"
        assert err["details"]["fields"] == ["prompt"]

    async def test_empty_tts_text(self, client: AsyncClient, auth_headers, reporter) -> None:
        response = await client.post("/api/tts", json={"text": ""}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["details"]["fields"] == ["text"]
        assert reporter.reports == []

    async def test_tts_too_long_never_calls_provider(self, client: AsyncClient, auth_headers, fakes) -> None:
        response = await client.post("/api/tts", json={"text": "a" * 5001}, headers=auth_headers)
        assert response.status_code == 400
        assert fakes["tts"].calls == []

    async def test_tts(self, client: AsyncClient, auth_headers, reporter) -> None:
        response = await client.post("/api/tts", json={"text": "Hallo", "voiceId": "v1"}, headers=auth_headers)
        assert response.status_code == 200
        assert base64.b64decode(response.json()["data"]["audioBase64"]) == b"ID3-audio"
        assert reporter.reports[0].cost == 2

    async def test_stt_multipart(self, client: AsyncClient, auth_headers, fakes) -> None:
        response = await client.post(
            "/api/stt",
            files={"audio": ("clip.wav", b"RIFF0000WAVE", "audio/wav")},
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["text"] == "hello world"
        assert fakes["stt"].calls == [(12, "audio/wav", "clip.wav")]

    async def test_stt_without_file(self, client: AsyncClient, auth_headers) -> None:
        response = await client.post("/api/stt", headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["details"]["fields"] == ["audio"]

    async def test_image_seed_over_10_mib(self, client: AsyncClient, auth_headers, fakes) -> None:
        response = await client.post(
            "/api/image",
            json={"prompt": "sunset", "seedImageBase64": b64(b"\x00" * (11 * MIB))},
            headers=auth_headers,
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        assert fakes["image"].calls == []

    async def test_image(self, client: AsyncClient, auth_headers, reporter) -> None:
        response = await client.post(
            "/api/image", json={"prompt": "sunset", "width": 768, "height": 512}, headers=auth_headers
        )
        assert response.json()["data"] == {"imageLocator": "https://img.test/out.png"}
        assert reporter.reports[0].cost == 10

    async def test_embedding(self, client: AsyncClient, auth_headers) -> None:
        response = await client.post("/api/embeddings", json={"text": "hello"}, headers=auth_headers)
        assert response.json()["data"]["dimensions"] == 8

    async def test_rate_limit_surfaces_as_429(self, client: AsyncClient, auth_headers, fakes, reporter) -> None:
        fakes["llm"].error = RateLimited("openai", "OpenAI rate limit exceeded", upstream_status=429)
        response = await client.post("/api/llm", json={"prompt": "hi"}, headers=auth_headers)
        assert response.status_code == 429
        err = response.json()["error"]
        assert err["code"] == "RATE_LIMITED"
        assert err["details"]["provider"] == "openai"
        assert reporter.reports == []


class TestChainedEndpoints:
    async def test_voice_answer(self, client: AsyncClient, auth_headers, reporter) -> None:
        response = await client.post(
            "/api/voice-answer",
            json={
                "userPrompt": "Summarise",
                "groundingDocuments": [{"name": "a.txt", "text": "Alpha"}],
            },
            headers=auth_headers,
        )
        data = response.json()["data"]
        assert data["documentsUsed"] == 1
        assert data["textResponse"] == "4"
        assert reporter.reports[0].cost == 5

    async def test_voice_answer_llm_failure(self, client: AsyncClient, auth_headers, fakes, reporter) -> None:
        fakes["llm"].error = ProviderError("openai", "Empty response from OpenAI")
        response = await client.post(
            "/api/voice-answer",
            json={"userPrompt": "Summarise", "groundingDocuments": [{"name": "a.txt", "text": "Alpha"}]},
            headers=auth_headers,
        )
        assert response.status_code == 503
        assert response.json()["success"] is False
        assert fakes["tts"].invocations == 0
        assert reporter.reports == []

    async def test_rag_audio(self, client: AsyncClient, auth_headers, reporter) -> None:
        response = await client.post(
            "/api/rag/audio",
            json={"userPrompt": "Who?", "ragContext": "Ada."},
            headers=auth_headers,
        )
        assert set(response.json()["data"]) == {"audioBase64", "textResponse"}
        assert reporter.reports[0].cost == 3


class TestBatchEndpoints:
    def files(self, *named):
        return {"files": [{"filename": n, "contentBase64": b64(c)} for n, c in named]}

    async def test_convert_charges_per_file(self, client: AsyncClient, auth_headers, reporter) -> None:
        response = await client.post(
            "/api/documents/convert",
            json=self.files(("a.txt", b"alpha"), ("b.md", b"beta")),
            headers=auth_headers,
        )
        body = response.json()
        assert body["success"] is True
        assert body["data"]["totalItems"] == 2
        assert body["data"]["totalCreditsCharged"] == 2
        assert reporter.reports[0].cost == 2

    async def test_embed_batch_is_size_scaled(self, client: AsyncClient, auth_headers, reporter) -> None:
        response = await client.post(
            "/api/embeddings/batch",
            json=self.files(("a.txt", b"x" * 1500), ("b.txt", b"y" * 700)),
            headers=auth_headers,
        )
        assert response.json()["data"]["totalCreditsCharged"] == 3
        assert reporter.reports[0].cost == 3

    async def test_failed_item_fails_the_batch(self, client: AsyncClient, auth_headers, fakes, reporter) -> None:
        fakes["embedding"].fail_on = {"two"}
        response = await client.post(
            "/api/embeddings/batch",
            json=self.files(("1.txt", b"one"), ("2.txt", b"two"), ("3.txt", b"three")),
            headers=auth_headers,
        )
        body = response.json()
        assert response.status_code == 503
        assert body["success"] is False
        assert "data" not in body
        assert reporter.reports == []

    async def test_empty_batch(self, client: AsyncClient, auth_headers) -> None:
        response = await client.post("/api/documents/convert", json={"files": []}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["details"]["fields"] == ["files"]

    async def test_price_does_not_charge(self, client: AsyncClient, auth_headers, reporter) -> None:
        response = await client.post(
            "/api/documents/price",
            json=self.files(("a.txt", b"x" * 2048)),
            headers=auth_headers,
        )
        assert response.json()["data"] == {"estimatedCost": 3, "totalSizeKB": 2, "fileCount": 1}
        assert reporter.reports == []


class TestFailureBoundaries:
    async def test_ledger_down_still_returns_result(self, settings, fakes, auth_headers) -> None:
        ledger_calls = []

        def ledger(request: httpx.Request) -> httpx.Response:
            ledger_calls.append(request)
            return httpx.Response(500, json={"error": "ledger on fire"})

        services = Services(
            settings=settings,
            providers=ProviderSet(**fakes),
            reporter=ConsumptionReporter(LedgerClient(settings, transport=httpx.MockTransport(ledger))),
            verifier=FakeVerifier(),
        )
        app = create_app(services=services)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.post("/api/llm", json={"prompt": "What is 2+2?"}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["data"]["text"] == "4"
        assert len(ledger_calls) == 1

    async def test_unexpected_error_is_generic_500(self, services, settings, auth_headers) -> None:
        services.providers = ProviderSet(
            llm=FakeLLM(settings, error=RuntimeError("db password is hunter2")),
            tts=services.providers.tts,
            stt=services.providers.stt,
            image=services.providers.image,
            embedding=services.providers.embedding,
        )
        app = create_app(services=services)
        transport = ASGITransport(app=app, raise_app_exceptions=False)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post("/api/llm", json={"prompt": "hi"}, headers=auth_headers)

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "INTERNAL_SERVER_ERROR"
        assert "hunter2" not in response.text
