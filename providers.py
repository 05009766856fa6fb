# providers.py
from __future__ import annotations

import base64
import json
import math
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Type

import httpx

from config import Settings
from errors import (
    GatewayError,
    ProviderError,
    ValidationFailed,
    classify_upstream_error,
)
from logs import preview, provider_failure, redact_headers, trace
from models import EmbeddingResult, ProviderInfo, SpeechResult
from streams import collect_bounded

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."

# Safety margin added to the requested output size before it becomes a token hint.
OUTPUT_HINT_BUFFER_CHARS = 100


def build_grounded_prompt(question: str, context: str) -> str:
    """
    Frame ``question`` so the model answers from ``context`` only and says so
    when the context does not contain the answer.
    """
    return (
        "Context from documents:\n"
        "---\n"
        f"{context}\n"
        "---\n\n"
        "Based on the context above, answer the following question.\n"
        "If the answer is not in the context, say so clearly.\n\n"
        f"Question: {question}"
    )


def estimate_tokens(characters: int) -> int:
    # ~4 characters per token
    return math.ceil(characters / 4)


def _error_fields(resp: httpx.Response) -> Tuple[str, Optional[str]]:
    """Pull (message, code) out of the error body shapes our providers use."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:500], None

    if isinstance(body, dict):
        err = body.get("error")
        # OpenAI: {"error": {"message", "code", "type"}}
        if isinstance(err, dict):
            return str(err.get("message") or ""), err.get("code") or err.get("type")
        # ElevenLabs: {"detail": {"status", "message"}} or {"detail": "..."}
        detail = body.get("detail")
        if isinstance(detail, dict):
            return str(detail.get("message") or ""), detail.get("status")
        if isinstance(detail, str):
            return detail, None
        # Runware: {"errors": [{"code", "message"}]}
        errs = body.get("errors")
        if isinstance(errs, list) and errs and isinstance(errs[0], dict):
            return str(errs[0].get("message") or ""), errs[0].get("code")
        # Wit.ai: {"error": "...", "code": "..."}
        if isinstance(err, str):
            return err, body.get("code")
    return preview(body, 500), None


# -----------------------------------------------------------------------------
# Shared upstream plumbing
# -----------------------------------------------------------------------------

class ProviderAdapter:
    """
    Common HTTP handling for every vendor adapter.

    One httpx client per call; tests pass a ``transport`` (httpx.MockTransport).
    Upstream failures are classified here, once, and never re-wrapped above.
    """

    provider_id: str = "provider"
    label: str = "Provider"
    not_found_applies: bool = False

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self._transport = transport
        self.timeout = settings.provider_timeout_seconds

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout or self.timeout,
            transport=self._transport,
            follow_redirects=True,
        )

    # --- classification hooks ----------------------------------------------

    def _is_quota(self, status: int | None, code: str | None, message: str) -> bool:
        return "quota" in (code or "").lower() or "quota" in (message or "").lower()

    def _effective_status(self, status: int | None, code: str | None, message: str) -> int | None:
        return status

    def _describe(self, status: int | None, message: str) -> str:
        return message

    def _classify(self, status: int | None, code: str | None, message: str) -> GatewayError:
        effective = self._effective_status(status, code, message)
        err = classify_upstream_error(
            self.provider_id,
            status=effective,
            code=code,
            message=self._describe(effective, message),
            quota_signal=self._is_quota(status, code, message),
            not_found_applies=self.not_found_applies,
            label=self.label,
        )
        provider_failure(
            f"provider={self.provider_id} status={status} code={code} -> {err.code}: {preview(message, 300)}"
        )
        return err

    def _classify_response(self, resp: httpx.Response) -> GatewayError:
        message, code = _error_fields(resp)
        return self._classify(resp.status_code, code, message)

    def _transport_failure(self, exc: httpx.HTTPError) -> ProviderError:
        if isinstance(exc, httpx.TimeoutException):
            msg = f"{self.label} request timed out"
        else:
            msg = f"{self.label} request failed ({type(exc).__name__})"
        provider_failure(f"provider={self.provider_id} transport error: {exc!r}")
        return ProviderError(self.provider_id, msg)

    async def _post(
        self,
        url: str,
        *,
        headers: Dict[str, str],
        timeout: float | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        trace(f"[UPSTREAM] POST {url} headers={redact_headers(headers)}")
        try:
            async with self._client(timeout) as client:
                r = await client.post(url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise self._transport_failure(exc) from exc
        trace(f"[UPSTREAM] status={r.status_code} provider={self.provider_id}")
        if r.status_code >= 400:
            raise self._classify_response(r)
        return r

    def _json(self, resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            raise ProviderError(self.provider_id, f"Malformed response from {self.label}") from None

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(provider=self.label)


# -----------------------------------------------------------------------------
# LLM
# -----------------------------------------------------------------------------

class LLMProvider(ProviderAdapter, ABC):

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(settings, transport)
        self.model = settings.llm_model
        self.max_output_chars = settings.llm_max_output_chars

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        context_text: str | None = None,
        max_output_chars: int | None = None,
    ) -> str:
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValidationFailed("Prompt cannot be empty", ["prompt"])
        if max_output_chars is not None and max_output_chars > self.max_output_chars:
            raise ValidationFailed(
                f"maxOutputChars cannot exceed {self.max_output_chars} characters",
                ["maxOutputChars"],
            )

        system = system_prompt or DEFAULT_SYSTEM_PROMPT
        context = (context_text or "").strip()
        user = build_grounded_prompt(prompt, context) if context else prompt

        # Length is asked for, not enforced: the reply is returned as the model wrote it.
        max_tokens = None
        if max_output_chars:
            system += (
                f"\n\nIMPORTANT: Keep the response under {max_output_chars} characters. "
                "This is a strict requirement."
            )
            max_tokens = estimate_tokens(max_output_chars + OUTPUT_HINT_BUFFER_CHARS)

        text = await self._complete(system, user, max_tokens)
        if not isinstance(text, str) or not text.strip():
            raise ProviderError(self.provider_id, f"Empty response from {self.label}")
        return text.strip()

    @abstractmethod
    async def _complete(self, system: str, user: str, max_tokens: int | None) -> str | None:
        ...

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(provider=self.label, model=self.model)


class OpenAIChatAdapter(LLMProvider):
    provider_id = "openai"
    label = "OpenAI"

    def _is_quota(self, status, code, message):
        return code == "insufficient_quota"

    async def _complete(self, system: str, user: str, max_tokens: int | None) -> str | None:
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": self.settings.llm_temperature,
        }
        if max_tokens:
            body["max_completion_tokens"] = max_tokens

        r = await self._post(
            f"{self.settings.openai_base_url}/chat/completions",
            headers={
                "Authorization": f"Bearer {self.settings.openai_api_key}",
                "Content-Type": "application/json",
            },
            json=body,
        )
        data = self._json(r)
        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return None


# -----------------------------------------------------------------------------
# Text-to-speech
# -----------------------------------------------------------------------------

class TTSProvider(ProviderAdapter, ABC):
    not_found_applies = True

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(settings, transport)
        self.max_chars = settings.tts_max_chars
        self.limits = settings.stream_limits
        self.default_voice = settings.tts_default_voice

    async def synthesize(self, text: str, voice_id: str | None = None) -> SpeechResult:
        if not isinstance(text, str) or not text.strip():
            raise ValidationFailed("Text is required", ["text"])
        if len(text) > self.max_chars:
            raise ValidationFailed(f"Text must be at most {self.max_chars} characters", ["text"])

        voice = voice_id or self.default_voice
        audio = await collect_bounded(
            self._stream_audio(text, voice), self.limits, source=self.provider_id
        )
        return SpeechResult(audio=audio, byte_length=len(audio))

    @abstractmethod
    def _stream_audio(self, text: str, voice: str) -> AsyncIterator[bytes]:
        ...

    async def _stream_post(
        self, url: str, *, headers: Dict[str, str], json_body: Dict[str, Any]
    ) -> AsyncIterator[bytes]:
        trace(f"[UPSTREAM][STREAM] POST {url} headers={redact_headers(headers)}")
        try:
            async with self._client() as client:
                async with client.stream("POST", url, headers=headers, json=json_body) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        raise self._classify_response(resp)
                    async for chunk in resp.aiter_bytes():
                        yield chunk
        except httpx.HTTPError as exc:
            raise self._transport_failure(exc) from exc


class ElevenLabsAdapter(TTSProvider):
    provider_id = "elevenlabs"
    label = "ElevenLabs"

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(settings, transport)
        self.model = settings.tts_model

    def _stream_audio(self, text: str, voice: str) -> AsyncIterator[bytes]:
        return self._stream_post(
            f"{self.settings.elevenlabs_base_url}/text-to-speech/{voice}/stream",
            headers={
                "xi-api-key": self.settings.elevenlabs_api_key,
                "Content-Type": "application/json",
                "Accept": "audio/mpeg",
            },
            json_body={"text": text, "model_id": self.model},
        )

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(provider=self.label, model=self.model, voice=self.default_voice)


class OpenAISpeechAdapter(TTSProvider):
    """OpenAI-compatible /audio/speech."""

    provider_id = "openai"
    label = "OpenAI"

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(settings, transport)
        self.model = settings.openai_tts_model
        self.default_voice = settings.openai_tts_voice

    def _is_quota(self, status, code, message):
        return code == "insufficient_quota"

    def _stream_audio(self, text: str, voice: str) -> AsyncIterator[bytes]:
        return self._stream_post(
            f"{self.settings.openai_base_url}/audio/speech",
            headers={
                "Authorization": f"Bearer {self.settings.openai_api_key}",
                "Content-Type": "application/json",
            },
            json_body={"model": self.model, "input": text, "voice": voice},
        )

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(provider=self.label, model=self.model, voice=self.default_voice)


# -----------------------------------------------------------------------------
# Speech-to-text
# -----------------------------------------------------------------------------

class STTProvider(ProviderAdapter, ABC):

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(settings, transport)
        self.max_audio_bytes = settings.stt_max_audio_bytes

    async def transcribe(
        self, audio: bytes, *, content_type: str | None = None, filename: str = "audio.wav"
    ) -> str:
        if not audio:
            raise ValidationFailed("Audio file is required", ["audio"])
        if len(audio) > self.max_audio_bytes:
            raise ValidationFailed(
                f"Audio file too large (max {self.max_audio_bytes // (1024 * 1024)}MB)", ["audio"]
            )
        text = await self._transcribe(audio, content_type or "audio/wav", filename)
        if not isinstance(text, str) or not text.strip():
            raise ProviderError(self.provider_id, f"No transcription returned from {self.label}")
        return text.strip()

    @abstractmethod
    async def _transcribe(self, audio: bytes, content_type: str, filename: str) -> str | None:
        ...


def _wit_final_text(raw: str) -> str:
    """
    Wit.ai /speech answers with several JSON objects back to back (partial
    transcripts, then the final one). Keep the last text seen, preferring
    objects marked final.
    """
    decoder = json.JSONDecoder()
    pos, text, final_text = 0, "", ""
    raw = raw.strip()
    while pos < len(raw):
        try:
            obj, end = decoder.raw_decode(raw, pos)
        except ValueError:
            break
        pos = end
        while pos < len(raw) and raw[pos] in " \t\r\n":
            pos += 1
        if not isinstance(obj, dict):
            continue
        t = obj.get("text") or obj.get("_text") or ""
        if t:
            text = t
            if obj.get("is_final") or obj.get("type") == "FINAL_TRANSCRIPTION":
                final_text = t
    return final_text or text


class WitAdapter(STTProvider):
    provider_id = "wit"
    label = "Wit.ai"
    api_version = "20240304"

    def _describe(self, status, message):
        if status == 400:
            return "Invalid audio format"
        return message

    async def _transcribe(self, audio: bytes, content_type: str, filename: str) -> str | None:
        r = await self._post(
            f"{self.settings.wit_base_url}/speech",
            headers={
                "Authorization": f"Bearer {self.settings.wit_api_key}",
                "Content-Type": content_type,
            },
            params={"v": self.api_version},
            content=audio,
        )
        return _wit_final_text(r.text)

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(provider=self.label, model=f"speech-{self.api_version}")


def _extract_transcript(asr_json: Any) -> str:
    if not isinstance(asr_json, dict):
        return ""
    if isinstance(asr_json.get("text"), str):
        return asr_json["text"]
    if isinstance(asr_json.get("transcript"), str):
        return asr_json["transcript"]
    if isinstance(asr_json.get("segments"), list):
        return " ".join(s.get("text", "") for s in asr_json["segments"] if isinstance(s, dict))
    return ""


class OpenAITranscriptionAdapter(STTProvider):
    """OpenAI-compatible /audio/transcriptions (Whisper)."""

    provider_id = "openai"
    label = "OpenAI"

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(settings, transport)
        self.model = settings.stt_model

    def _is_quota(self, status, code, message):
        return code == "insufficient_quota"

    async def _transcribe(self, audio: bytes, content_type: str, filename: str) -> str | None:
        r = await self._post(
            f"{self.settings.openai_base_url}/audio/transcriptions",
            headers={"Authorization": f"Bearer {self.settings.openai_api_key}"},
            files={"file": (filename, audio, content_type)},
            data={"model": self.model},
        )
        return _extract_transcript(self._json(r))

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(provider=self.label, model=self.model)


# -----------------------------------------------------------------------------
# Image generation
# -----------------------------------------------------------------------------

SUPPORTED_SIZES: List[Dict[str, int]] = [
    {"width": 512, "height": 512},
    {"width": 768, "height": 768},
    {"width": 1024, "height": 1024},
    {"width": 512, "height": 768},
    {"width": 768, "height": 512},
]


class ImageProvider(ProviderAdapter, ABC):
    not_found_applies = True
    default_width = 512
    default_height = 512

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(settings, transport)
        self.model = settings.image_model
        self.max_seed_bytes = settings.image_max_seed_bytes
        self.strength = settings.image_strength

    async def generate(
        self,
        prompt: str,
        *,
        width: int | None = None,
        height: int | None = None,
        negative_prompt: str | None = None,
        seed_image: bytes | None = None,
    ) -> str:
        """
        Text-to-image, or image-guided generation when ``seed_image`` is given.
        Width/height only apply to the text-to-image path.
        """
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValidationFailed("Prompt cannot be empty", ["prompt"])

        if seed_image is not None:
            if len(seed_image) > self.max_seed_bytes:
                raise ValidationFailed(
                    f"Image too large: {round(len(seed_image) / 1024 / 1024)}MB "
                    f"(max {self.max_seed_bytes // (1024 * 1024)}MB)",
                    ["seedImageBase64"],
                )
            trace(f"[IMAGE] image-to-image {round(len(seed_image) / 1024)}KB provider={self.provider_id}")
            locator = await self._image_to_image(prompt, seed_image, negative_prompt)
        else:
            w = width or self.default_width
            h = height or self.default_height
            trace(f"[IMAGE] text-to-image {w}x{h} provider={self.provider_id}")
            locator = await self._text_to_image(prompt, w, h, negative_prompt)

        if not isinstance(locator, str) or not locator:
            raise ProviderError(self.provider_id, "No image URL in response")
        return locator

    @abstractmethod
    async def _text_to_image(
        self, prompt: str, width: int, height: int, negative_prompt: str | None
    ) -> str | None:
        ...

    @abstractmethod
    async def _image_to_image(
        self, prompt: str, seed_image: bytes, negative_prompt: str | None
    ) -> str | None:
        ...

    def supported_sizes(self) -> List[Dict[str, int]]:
        return [dict(s) for s in SUPPORTED_SIZES]

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(provider=self.label, model=self.model)


class RunwareAdapter(ImageProvider):
    provider_id = "runware"
    label = "Runware"

    def _is_quota(self, status, code, message):
        m = (message or "").lower()
        return "insufficient" in m or "credits" in m or (code or "") == "insufficientCredits"

    def _effective_status(self, status, code, message):
        m = (message or "").lower()
        if "rate limit" in m:
            return 429
        if "invalid" in m and "key" in m:
            return 401
        return status

    def _task(self, prompt: str, negative_prompt: str | None) -> Dict[str, Any]:
        task: Dict[str, Any] = {
            "taskType": "imageInference",
            "taskUUID": str(uuid.uuid4()),
            "positivePrompt": prompt,
            "model": self.model,
            "numberResults": 1,
            "outputType": "URL",
            "outputFormat": "PNG",
        }
        if negative_prompt:
            task["negativePrompt"] = negative_prompt
        return task

    async def _infer(self, task: Dict[str, Any]) -> str | None:
        r = await self._post(
            self.settings.runware_base_url,
            headers={
                "Authorization": f"Bearer {self.settings.runware_api_key}",
                "Content-Type": "application/json",
            },
            json=[task],
        )
        data = self._json(r)
        # Runware may answer 200 with an "errors" array
        if isinstance(data, dict) and data.get("errors"):
            message, code = _error_fields(r)
            raise self._classify(r.status_code, code, message)
        items = data.get("data") if isinstance(data, dict) else None
        if not items or not isinstance(items[0], dict):
            return None
        return items[0].get("imageURL")

    async def _text_to_image(self, prompt, width, height, negative_prompt):
        task = self._task(prompt, negative_prompt)
        task.update({"width": width, "height": height})
        return await self._infer(task)

    async def _image_to_image(self, prompt, seed_image, negative_prompt):
        task = self._task(prompt, negative_prompt)
        task.update({
            "seedImage": base64.b64encode(seed_image).decode("ascii"),
            "strength": self.strength,
        })
        return await self._infer(task)


# -----------------------------------------------------------------------------
# Embeddings
# -----------------------------------------------------------------------------

class EmbeddingProvider(ProviderAdapter, ABC):

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(settings, transport)
        self.model = settings.embedding_model
        self.dimensions = settings.embedding_dimensions
        self.max_chars = settings.embedding_max_chars
        self.timeout = settings.embedding_timeout_seconds

    async def embed(self, text: str) -> EmbeddingResult:
        if not isinstance(text, str) or not text.strip():
            raise ValidationFailed("Text cannot be empty", ["text"])
        trimmed = text.strip()
        if len(trimmed) > self.max_chars:
            raise ValidationFailed(
                f"Text too long: {len(trimmed)} chars (max {self.max_chars})", ["text"]
            )

        vector = await self._embed(trimmed)
        if not vector or len(vector) != self.dimensions:
            raise ProviderError(
                self.provider_id,
                f"Invalid embedding dimensions: expected {self.dimensions}, got {len(vector or [])}",
            )
        return EmbeddingResult(vector=list(vector), dimensions=self.dimensions)

    @abstractmethod
    async def _embed(self, text: str) -> List[float] | None:
        ...

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(provider=self.label, model=self.model)


class OpenAIEmbeddingAdapter(EmbeddingProvider):
    provider_id = "openai"
    label = "OpenAI"

    def _is_quota(self, status, code, message):
        return code == "insufficient_quota"

    def _classify(self, status, code, message):
        if code == "context_length_exceeded":
            return ValidationFailed("Text exceeds OpenAI token limit", ["text"])
        return super()._classify(status, code, message)

    async def _embed(self, text: str) -> List[float] | None:
        r = await self._post(
            f"{self.settings.openai_base_url}/embeddings",
            headers={
                "Authorization": f"Bearer {self.settings.openai_api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": self.model,
                "input": [text],
                "encoding_format": "float",
                "dimensions": self.dimensions,
            },
        )
        data = self._json(r)
        try:
            return data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError):
            return None


# -----------------------------------------------------------------------------
# Selection at startup
# -----------------------------------------------------------------------------

LLM_ADAPTERS: Dict[str, Type[LLMProvider]] = {"openai": OpenAIChatAdapter}
TTS_ADAPTERS: Dict[str, Type[TTSProvider]] = {
    "elevenlabs": ElevenLabsAdapter,
    "openai": OpenAISpeechAdapter,
}
STT_ADAPTERS: Dict[str, Type[STTProvider]] = {
    "wit": WitAdapter,
    "openai": OpenAITranscriptionAdapter,
}
IMAGE_ADAPTERS: Dict[str, Type[ImageProvider]] = {"runware": RunwareAdapter}
EMBEDDING_ADAPTERS: Dict[str, Type[EmbeddingProvider]] = {"openai": OpenAIEmbeddingAdapter}


@dataclass(frozen=True)
class ProviderSet:
    llm: LLMProvider
    tts: TTSProvider
    stt: STTProvider
    image: ImageProvider
    embedding: EmbeddingProvider


def _pick(table: Dict[str, type], name: str, capability: str) -> type:
    try:
        return table[name]
    except KeyError:
        raise ValueError(
            f"Unknown {capability} provider '{name}'. Available: {', '.join(sorted(table))}"
        ) from None


def build_providers(
    settings: Settings, transport: httpx.AsyncBaseTransport | None = None
) -> ProviderSet:
    return ProviderSet(
        llm=_pick(LLM_ADAPTERS, settings.llm_provider, "LLM")(settings, transport),
        tts=_pick(TTS_ADAPTERS, settings.tts_provider, "TTS")(settings, transport),
        stt=_pick(STT_ADAPTERS, settings.stt_provider, "STT")(settings, transport),
        image=_pick(IMAGE_ADAPTERS, settings.image_provider, "image")(settings, transport),
        embedding=_pick(EMBEDDING_ADAPTERS, settings.embedding_provider, "embedding")(settings, transport),
    )
