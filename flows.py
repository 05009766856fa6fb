# flows.py
"""
Per-endpoint compositions of adapters, cost and the consumption reporter.

Every flow receives a RequestContext that already carries the cost, runs its
provider stages in order, and reports consumption exactly once after the last
stage succeeded. Any error raised by a stage propagates untouched; nothing is
reported in that case.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

import httpx

from billing import ConsumptionReporter, LedgerClient
from config import Settings
from documents import decode_base64, extract_text
from errors import ProviderError, ValidationFailed
from logs import trace
from models import (
    BatchItem,
    BatchResult,
    EmbeddingRequest,
    ImageRequest,
    LLMRequest,
    RagAudioRequest,
    RagTextRequest,
    RequestContext,
    SpeechRequest,
    VoiceAnswerRequest,
)
from providers import ProviderSet, build_providers
from security import IdentityVerifier, JwtIdentityVerifier

RAG_SYSTEM_PROMPT = "You are a helpful AI assistant that answers questions based on provided context."

VOICE_ANSWER_SYSTEM_PROMPT = (
    "You are a voice assistant that answers questions based on provided documents. "
    "Always cite which document you used when answering."
)

DEFAULT_RAG_OUTPUT_CHARS = 300

DOCUMENT_SEPARATOR = "\n\n---\n\n"


@dataclass
class Services:
    settings: Settings
    providers: ProviderSet
    reporter: ConsumptionReporter
    verifier: IdentityVerifier


def build_services(settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> Services:
    return Services(
        settings=settings,
        providers=build_providers(settings, transport),
        reporter=ConsumptionReporter(LedgerClient(settings, transport)),
        verifier=JwtIdentityVerifier(settings),
    )


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationFailed(f"{field_name} is required", [field_name])
    return value


async def _finish(svc: Services, ctx: RequestContext, data: Dict[str, Any]) -> Dict[str, Any]:
    await svc.reporter.report(ctx)
    return data


# ---------------------------------------------------------------------------
# Single-provider flows
# ---------------------------------------------------------------------------

async def llm_flow(svc: Services, ctx: RequestContext, req: LLMRequest) -> Dict[str, Any]:
    llm = svc.providers.llm
    text = await llm.generate(
        req.prompt,
        system_prompt=req.system_prompt,
        context_text=req.context_text,
        max_output_chars=req.max_output_chars,
    )
    return await _finish(svc, ctx, {"text": text, "providerInfo": llm.provider_info().as_dict()})


async def tts_flow(svc: Services, ctx: RequestContext, req: SpeechRequest) -> Dict[str, Any]:
    speech = await svc.providers.tts.synthesize(req.text, req.voice_id)
    trace(f"[TTS] uid={ctx.principal_id} bytes={speech.byte_length}")
    return await _finish(svc, ctx, {"audioBase64": _b64(speech.audio)})


async def stt_flow(
    svc: Services,
    ctx: RequestContext,
    audio: bytes,
    *,
    content_type: str | None = None,
    filename: str = "audio.wav",
) -> Dict[str, Any]:
    stt = svc.providers.stt
    text = await stt.transcribe(audio, content_type=content_type, filename=filename)
    return await _finish(svc, ctx, {"text": text, "providerInfo": stt.provider_info().as_dict()})


def decode_seed_image(seed_b64: str | None) -> bytes | None:
    if not seed_b64:
        return None
    # tolerate data URIs
    if seed_b64.startswith("data:") and "," in seed_b64:
        seed_b64 = seed_b64.split(",", 1)[1]
    try:
        return decode_base64(seed_b64)
    except (binascii.Error, ValueError):
        raise ValidationFailed("seedImageBase64 is not valid base64", ["seedImageBase64"]) from None


async def image_flow(svc: Services, ctx: RequestContext, req: ImageRequest) -> Dict[str, Any]:
    locator = await svc.providers.image.generate(
        req.prompt,
        width=req.width,
        height=req.height,
        negative_prompt=req.negative_prompt,
        seed_image=decode_seed_image(req.seed_image_base64),
    )
    return await _finish(svc, ctx, {"imageLocator": locator})


async def embedding_flow(svc: Services, ctx: RequestContext, req: EmbeddingRequest) -> Dict[str, Any]:
    result = await svc.providers.embedding.embed(req.text)
    return await _finish(svc, ctx, {"vector": result.vector, "dimensions": result.dimensions})


async def rag_text_flow(svc: Services, ctx: RequestContext, req: RagTextRequest) -> Dict[str, Any]:
    _require_text(req.user_prompt, "userPrompt")
    _require_text(req.rag_context, "ragContext")
    llm = svc.providers.llm
    text = await llm.generate(
        req.user_prompt,
        system_prompt=req.system_prompt or RAG_SYSTEM_PROMPT,
        context_text=req.rag_context,
        max_output_chars=req.max_output_chars or DEFAULT_RAG_OUTPUT_CHARS,
    )
    return await _finish(svc, ctx, {"textResponse": text, "providerInfo": llm.provider_info().as_dict()})


# ---------------------------------------------------------------------------
# Chained flows (LLM -> TTS)
# ---------------------------------------------------------------------------

async def _speak(svc: Services, text: str, voice_id: str | None):
    # generated text over the speech ceiling is an upstream failure
    tts = svc.providers.tts
    if len(text) > tts.max_chars:
        raise ProviderError(
            svc.providers.llm.provider_id,
            f"Generated response of {len(text)} characters exceeds the speech limit of {tts.max_chars}",
            upstream_code="response_too_long",
        )
    return await tts.synthesize(text, voice_id)


async def rag_audio_flow(svc: Services, ctx: RequestContext, req: RagAudioRequest) -> Dict[str, Any]:
    _require_text(req.user_prompt, "userPrompt")
    _require_text(req.rag_context, "ragContext")

    text = await svc.providers.llm.generate(
        req.user_prompt,
        system_prompt=req.system_prompt,
        context_text=req.rag_context,
        max_output_chars=req.max_output_chars or DEFAULT_RAG_OUTPUT_CHARS,
    )
    speech = await _speak(svc, text, req.voice_id)
    return await _finish(svc, ctx, {"audioBase64": _b64(speech.audio), "textResponse": text})


def join_documents(docs: Sequence[Any]) -> str:
    return DOCUMENT_SEPARATOR.join(
        f"Document {i + 1}: {d.name}\n{d.text}" for i, d in enumerate(docs)
    )


async def voice_answer_flow(svc: Services, ctx: RequestContext, req: VoiceAnswerRequest) -> Dict[str, Any]:
    _require_text(req.user_prompt, "userPrompt")
    docs = req.grounding_documents
    if not docs:
        raise ValidationFailed("groundingDocuments must be a non-empty array", ["groundingDocuments"])
    for i, d in enumerate(docs):
        if not d.name or not d.text:
            raise ValidationFailed(
                f"groundingDocuments[{i}] missing name or text", [f"groundingDocuments[{i}]"]
            )

    context = join_documents(docs)
    trace(f"[VOICE] uid={ctx.principal_id} documents={len(docs)} context_chars={len(context)}")

    text = await svc.providers.llm.generate(
        req.user_prompt,
        system_prompt=req.system_prompt or VOICE_ANSWER_SYSTEM_PROMPT,
        context_text=context,
        max_output_chars=svc.settings.llm_max_output_chars,
    )
    speech = await _speak(svc, text, req.voice_id)
    trace(f"[VOICE] audio {round(speech.byte_length / 1024)} KB")

    return await _finish(svc, ctx, {
        "audioBase64": _b64(speech.audio),
        "textResponse": text,
        "documentsUsed": len(docs),
    })


# ---------------------------------------------------------------------------
# Batch flows: all items run concurrently, the first failure fails the batch
# ---------------------------------------------------------------------------

def _batch_payload(results: List[BatchResult], ctx: RequestContext) -> Dict[str, Any]:
    return {
        "results": [r.as_dict() for r in results],
        "totalItems": len(results),
        "totalCreditsCharged": ctx.cost,
    }


async def _convert_one(item: BatchItem) -> BatchResult:
    text = await extract_text(item)
    return BatchResult(file_id=item.file_id, filename=item.filename, text=text)


async def convert_batch_flow(svc: Services, ctx: RequestContext, items: Sequence[BatchItem]) -> Dict[str, Any]:
    trace(f"[BATCH] convert uid={ctx.principal_id} files={len(items)}")
    # gather does not cancel siblings when one fails; their results are dropped
    results = await asyncio.gather(*(_convert_one(i) for i in items))
    return await _finish(svc, ctx, _batch_payload(list(results), ctx))


async def embed_batch_flow(svc: Services, ctx: RequestContext, items: Sequence[BatchItem]) -> Dict[str, Any]:
    embedder = svc.providers.embedding

    async def one(item: BatchItem) -> BatchResult:
        text = await extract_text(item)
        emb = await embedder.embed(text)
        return BatchResult(
            file_id=item.file_id,
            filename=item.filename,
            text=text,
            vector=emb.vector,
            dimensions=emb.dimensions,
        )

    trace(f"[BATCH] embed uid={ctx.principal_id} files={len(items)}")
    results = await asyncio.gather(*(one(i) for i in items))
    return await _finish(svc, ctx, _batch_payload(list(results), ctx))
