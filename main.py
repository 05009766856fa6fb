# main.py
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import flows
from billing import calculate_cost, estimate_batch, per_item_cost
from config import SERVICE_NAME, SERVICE_VERSION, Settings
from documents import decode_uploads
from errors import INTERNAL_ERROR_CODE, ErrorKind, GatewayError, STATUS_BY_KIND
from flows import Services
from logs import provider_failure, trace
from models import (
    BatchRequest,
    EmbeddingRequest,
    ImageRequest,
    LLMRequest,
    RagAudioRequest,
    RagTextRequest,
    SpeechRequest,
    VoiceAnswerRequest,
)
from security import Caller, authenticate, credit_gate


def ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def _error_response(status: int, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    err: Dict[str, Any] = {"code": code, "message": message, "statusCode": status}
    if details:
        err["details"] = details
    return JSONResponse(status_code=status, content={"success": False, "error": err})


def _field_names(exc: RequestValidationError) -> list[str]:
    fields: list[str] = []
    for e in exc.errors():
        loc = [str(p) for p in e.get("loc", ()) if p not in ("body", "query", "header", "path")]
        name = ".".join(loc) or "body"
        if name not in fields:
            fields.append(name)
    return fields


def install_error_handlers(app: FastAPI) -> None:
    """Every failure leaves as {success: false, error: {...}}."""

    async def _gateway_handler(request: Request, exc: GatewayError):
        trace(f"[ERROR] {request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.to_payload()},
        )

    async def _validation_handler(request: Request, exc: RequestValidationError):
        fields = _field_names(exc)
        return _error_response(
            STATUS_BY_KIND[ErrorKind.VALIDATION],
            ErrorKind.VALIDATION.value,
            f"Invalid request: {', '.join(fields)}",
            {"fields": fields},
        )

    async def _http_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error_response(
                404, ErrorKind.NOT_FOUND.value, f"Route {request.method} {request.url.path} not found"
            )
        return _error_response(exc.status_code, f"HTTP_{exc.status_code}", str(exc.detail))

    async def _generic_handler(request: Request, exc: Exception):
        provider_failure(f"unhandled error on {request.method} {request.url.path}: {exc!r}")
        return _error_response(500, INTERNAL_ERROR_CODE, "Internal server error")

    app.add_exception_handler(GatewayError, _gateway_handler)
    app.add_exception_handler(RequestValidationError, _validation_handler)
    app.add_exception_handler(StarletteHTTPException, _http_handler)
    app.add_exception_handler(Exception, _generic_handler)


def get_services(request: Request) -> Services:
    return request.app.state.services


router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Single-provider endpoints
# ---------------------------------------------------------------------------

@router.post("/llm")
async def llm_route(
    body: LLMRequest,
    caller: Caller = Depends(authenticate),
    svc: Services = Depends(get_services),
):
    ctx = credit_gate(caller, svc.settings.cost_of("llm"))
    return ok(await flows.llm_flow(svc, ctx, body))


@router.post("/tts")
async def tts_route(
    body: SpeechRequest,
    caller: Caller = Depends(authenticate),
    svc: Services = Depends(get_services),
):
    ctx = credit_gate(caller, svc.settings.cost_of("tts"))
    return ok(await flows.tts_flow(svc, ctx, body))


@router.post("/stt")
async def stt_route(
    audio: Optional[UploadFile] = File(default=None),
    caller: Caller = Depends(authenticate),
    svc: Services = Depends(get_services),
):
    data = await audio.read() if audio is not None else b""
    ctx = credit_gate(caller, svc.settings.cost_of("stt"))
    return ok(await flows.stt_flow(
        svc,
        ctx,
        data,
        content_type=audio.content_type if audio is not None else None,
        filename=(audio.filename if audio is not None else None) or "audio.wav",
    ))


@router.post("/image")
async def image_route(
    body: ImageRequest,
    caller: Caller = Depends(authenticate),
    svc: Services = Depends(get_services),
):
    ctx = credit_gate(caller, svc.settings.cost_of("image"))
    return ok(await flows.image_flow(svc, ctx, body))


@router.get("/image/sizes")
async def image_sizes(svc: Services = Depends(get_services)):
    image = svc.providers.image
    return ok({"sizes": image.supported_sizes(), "providerInfo": image.provider_info().as_dict()})


@router.post("/embeddings")
async def embedding_route(
    body: EmbeddingRequest,
    caller: Caller = Depends(authenticate),
    svc: Services = Depends(get_services),
):
    ctx = credit_gate(caller, svc.settings.cost_of("embedding"))
    return ok(await flows.embedding_flow(svc, ctx, body))


@router.post("/rag/text")
async def rag_text_route(
    body: RagTextRequest,
    caller: Caller = Depends(authenticate),
    svc: Services = Depends(get_services),
):
    ctx = credit_gate(caller, svc.settings.cost_of("rag_text"))
    return ok(await flows.rag_text_flow(svc, ctx, body))


# ---------------------------------------------------------------------------
# Chained endpoints
# ---------------------------------------------------------------------------

@router.post("/rag/audio")
async def rag_audio_route(
    body: RagAudioRequest,
    caller: Caller = Depends(authenticate),
    svc: Services = Depends(get_services),
):
    ctx = credit_gate(caller, svc.settings.cost_of("rag_audio"))
    return ok(await flows.rag_audio_flow(svc, ctx, body))


@router.post("/voice-answer")
async def voice_answer_route(
    body: VoiceAnswerRequest,
    caller: Caller = Depends(authenticate),
    svc: Services = Depends(get_services),
):
    ctx = credit_gate(caller, svc.settings.cost_of("voice_answer"))
    return ok(await flows.voice_answer_flow(svc, ctx, body))


# ---------------------------------------------------------------------------
# Batch endpoints
# ---------------------------------------------------------------------------

@router.post("/documents/convert")
async def convert_route(
    body: BatchRequest,
    caller: Caller = Depends(authenticate),
    svc: Services = Depends(get_services),
):
    items = decode_uploads(body.files)
    ctx = credit_gate(caller, per_item_cost(svc.settings, len(items)))
    return ok(await flows.convert_batch_flow(svc, ctx, items))


@router.post("/embeddings/batch")
async def embed_batch_route(
    body: BatchRequest,
    caller: Caller = Depends(authenticate),
    svc: Services = Depends(get_services),
):
    items = decode_uploads(body.files)
    ctx = credit_gate(caller, calculate_cost((i.size for i in items), svc.settings))
    return ok(await flows.embed_batch_flow(svc, ctx, items))


@router.post("/documents/price")
async def price_route(
    body: BatchRequest,
    caller: Caller = Depends(authenticate),
    svc: Services = Depends(get_services),
):
    return ok(estimate_batch(svc.settings, decode_uploads(body.files)))


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())
    app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION)
    app.state.services = services or flows.build_services(settings)

    install_error_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allow_origins or ["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def _trace_requests(request: Request, call_next):
        started = time.monotonic()
        response = await call_next(request)
        trace(
            f"[REQ] {request.method} {request.url.path} -> {response.status_code} "
            f"{(time.monotonic() - started) * 1000:.0f}ms"
        )
        return response

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": SERVICE_VERSION,
        }

    app.include_router(router)
    return app
