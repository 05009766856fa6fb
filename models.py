# models.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# -----------------------------------------------------------------------------
# Request bodies (wire names are camelCase)
# -----------------------------------------------------------------------------

class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LLMRequest(_Body):
    prompt: str
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")
    context_text: Optional[str] = Field(default=None, alias="contextText")
    max_output_chars: Optional[int] = Field(default=None, alias="maxOutputChars", ge=1)


class SpeechRequest(_Body):
    text: str
    voice_id: Optional[str] = Field(default=None, alias="voiceId")


class ImageRequest(_Body):
    prompt: str
    width: Optional[int] = Field(default=None, ge=64, le=2048)
    height: Optional[int] = Field(default=None, ge=64, le=2048)
    negative_prompt: Optional[str] = Field(default=None, alias="negativePrompt")
    seed_image_base64: Optional[str] = Field(default=None, alias="seedImageBase64")


class EmbeddingRequest(_Body):
    text: str


class GroundingDocument(_Body):
    name: str = ""
    text: str = ""


class VoiceAnswerRequest(_Body):
    user_prompt: str = Field(alias="userPrompt")
    grounding_documents: List[GroundingDocument] = Field(default_factory=list, alias="groundingDocuments")
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")
    voice_id: Optional[str] = Field(default=None, alias="voiceId")


class RagTextRequest(_Body):
    user_prompt: str = Field(alias="userPrompt")
    rag_context: str = Field(alias="ragContext")
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")
    max_output_chars: Optional[int] = Field(default=None, alias="maxOutputChars", ge=1)


class RagAudioRequest(RagTextRequest):
    voice_id: Optional[str] = Field(default=None, alias="voiceId")


class FileUpload(_Body):
    filename: str = ""
    content_base64: str = Field(default="", alias="contentBase64")


class BatchRequest(_Body):
    files: List[FileUpload] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Per-request state
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class Principal:
    uid: str
    email: Optional[str] = None


@dataclass(frozen=True)
class RequestContext:
    """Who is calling, with which credential, and what the call will cost."""

    principal_id: str
    credential: str = field(repr=False)
    cost: int


# -----------------------------------------------------------------------------
# Capability results
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderInfo:
    provider: str
    model: Optional[str] = None
    voice: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"provider": self.provider}
        if self.model:
            out["model"] = self.model
        if self.voice:
            out["voice"] = self.voice
        return out


@dataclass(frozen=True)
class SpeechResult:
    audio: bytes = field(repr=False)
    byte_length: int


@dataclass(frozen=True)
class EmbeddingResult:
    vector: List[float] = field(repr=False)
    dimensions: int


@dataclass(frozen=True)
class BatchItem:
    filename: str
    content: bytes = field(repr=False)
    file_id: str = field(default_factory=lambda: f"file_{uuid.uuid4()}")

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class BatchResult:
    file_id: str
    filename: str
    text: str
    vector: Optional[List[float]] = field(default=None, repr=False)
    dimensions: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "fileId": self.file_id,
            "filename": self.filename,
            "text": self.text,
            "characterCount": len(self.text),
        }
        if self.vector is not None:
            out["vector"] = self.vector
            out["dimensions"] = self.dimensions
        return out
