# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from dotenv import load_dotenv
load_dotenv()

SERVICE_NAME = "ai-credit-gateway"
SERVICE_VERSION = "1.0.0"

MIB = 1024 * 1024

# ---------- Credit costs ----------

# Fixed cost per operation kind.
DEFAULT_FIXED_COSTS: Dict[str, int] = {
    "llm": 1,
    "tts": 2,
    "stt": 1,
    "embedding": 1,
    "rag_text": 1,
    "rag_audio": 3,
    "voice_answer": 5,
    "image": 10,
    "document_convert_per_file": 1,
}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    # strip inline comments & whitespace
    val = raw.split("#", 1)[0].strip()
    return int(val) if val else default


def _env_float(name: str, default: float) -> float:
    val = os.getenv(name, "").split("#", 1)[0].strip()
    return float(val) if val else default


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, "").split("#", 1)[0].strip() or default


# ---------- Persistent data dir (logs only) ----------

def _writable_dir(candidate: Path) -> Optional[Path]:
    try:
        candidate.mkdir(parents=True, exist_ok=True)
        testfile = candidate / ".wtest"
        testfile.write_text("ok", encoding="utf-8")
        testfile.unlink(missing_ok=True)
        return candidate
    except OSError:
        return None


def get_data_dir(explicit: str = "") -> Path:
    # 1) explicit / env GATEWAY_DATA_DIR
    env_dir = explicit or _env_str("GATEWAY_DATA_DIR")
    if env_dir:
        p = _writable_dir(Path(env_dir))
        if p:
            return p

    # 2) /var/lib/ai-gateway (if writable)
    p = _writable_dir(Path("/var/lib/ai-gateway"))
    if p:
        return p

    # 3) ./data next to this file
    p = _writable_dir(Path(__file__).resolve().parent / "data")
    if p:
        return p

    # 4) last resort: current working dir
    p = _writable_dir(Path.cwd() / "data")
    if p:
        return p

    raise RuntimeError("No writable data directory found. Set GATEWAY_DATA_DIR to a writable path.")


@dataclass(frozen=True)
class StreamLimits:
    max_seconds: float = 30.0
    max_bytes: int = 50 * MIB


@dataclass(frozen=True)
class Settings:
    """
    Immutable process configuration.

    Built once at startup and handed to every adapter; nothing below the app
    factory reads os.environ.
    """

    # Ledger (external credit service)
    ledger_base_url: str = ""
    ledger_consume_path: str = "/credits/consume-cost"
    ledger_internal_secret: str = ""
    ledger_secret_header: str = "X-Yanbrain-Internal-Secret"
    ledger_timeout_seconds: float = 10.0

    # Identity verification
    auth_jwt_secret: str = ""
    auth_jwt_algorithm: str = "HS256"
    auth_jwks_url: str = ""
    auth_audience: str = ""
    auth_issuer: str = ""

    # Provider selection
    llm_provider: str = "openai"
    tts_provider: str = "elevenlabs"
    stt_provider: str = "wit"
    image_provider: str = "runware"
    embedding_provider: str = "openai"

    # Provider credentials / endpoints
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    elevenlabs_api_key: str = ""
    elevenlabs_base_url: str = "https://api.elevenlabs.io/v1"
    wit_api_key: str = ""
    wit_base_url: str = "https://api.wit.ai"
    runware_api_key: str = ""
    runware_base_url: str = "https://api.runware.ai/v1"

    # Models / voices
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.7
    llm_max_output_chars: int = 300
    tts_model: str = "eleven_monolingual_v1"
    tts_default_voice: str = "EXAVITQu4vr4xnSDxMaL"
    tts_max_chars: int = 5000
    openai_tts_model: str = "tts-1"
    openai_tts_voice: str = "alloy"
    stt_model: str = "whisper-1"
    stt_max_audio_bytes: int = 10 * MIB
    image_model: str = "gemini:GEMINI_2_5_FLASH_IMAGE"
    image_max_seed_bytes: int = 10 * MIB
    image_strength: float = 0.7
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    embedding_max_chars: int = 30_000

    # Timeouts / limits
    provider_timeout_seconds: float = 60.0
    embedding_timeout_seconds: float = 100.0
    stream_limits: StreamLimits = field(default_factory=StreamLimits)

    # Costs
    fixed_costs: Mapping[str, int] = field(default_factory=lambda: dict(DEFAULT_FIXED_COSTS))
    embedding_credits_per_kb: int = 1
    embedding_min_credits: int = 1

    # HTTP
    allow_origins: List[str] = field(default_factory=list)
    data_dir: str = ""

    def __post_init__(self):
        # read-only view of the cost table
        object.__setattr__(self, "fixed_costs", MappingProxyType(dict(self.fixed_costs)))

    @classmethod
    def from_env(cls) -> "Settings":
        costs = dict(DEFAULT_FIXED_COSTS)
        for name in costs:
            costs[name] = _env_int(f"COST_{name.upper()}", costs[name])
        return cls(
            ledger_base_url=_env_str("LEDGER_BASE_URL").rstrip("/"),
            ledger_consume_path=_env_str("LEDGER_CONSUME_PATH", "/credits/consume-cost"),
            ledger_internal_secret=_env_str("LEDGER_INTERNAL_SECRET"),
            ledger_secret_header=_env_str("LEDGER_SECRET_HEADER", "X-Yanbrain-Internal-Secret"),
            ledger_timeout_seconds=_env_float("LEDGER_TIMEOUT_SECONDS", 10.0),
            auth_jwt_secret=_env_str("AUTH_JWT_SECRET"),
            auth_jwt_algorithm=_env_str("AUTH_JWT_ALGORITHM", "HS256"),
            auth_jwks_url=_env_str("AUTH_JWKS_URL"),
            auth_audience=_env_str("AUTH_AUDIENCE"),
            auth_issuer=_env_str("AUTH_ISSUER"),
            llm_provider=_env_str("LLM_PROVIDER", "openai").lower(),
            tts_provider=_env_str("TTS_PROVIDER", "elevenlabs").lower(),
            stt_provider=_env_str("STT_PROVIDER", "wit").lower(),
            image_provider=_env_str("IMAGE_PROVIDER", "runware").lower(),
            embedding_provider=_env_str("EMBEDDING_PROVIDER", "openai").lower(),
            openai_api_key=_env_str("OPENAI_API_KEY"),
            openai_base_url=_env_str("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
            elevenlabs_api_key=_env_str("ELEVENLABS_API_KEY"),
            wit_api_key=_env_str("WIT_API_KEY"),
            runware_api_key=_env_str("RUNWARE_API_KEY"),
            llm_model=_env_str("LLM_MODEL", "gpt-4o-mini"),
            tts_default_voice=_env_str("TTS_DEFAULT_VOICE", "EXAVITQu4vr4xnSDxMaL"),
            image_model=_env_str("IMAGE_MODEL", "gemini:GEMINI_2_5_FLASH_IMAGE"),
            provider_timeout_seconds=_env_float("PROVIDER_TIMEOUT_SECONDS", 60.0),
            stream_limits=StreamLimits(
                max_seconds=_env_float("STREAM_MAX_SECONDS", 30.0),
                max_bytes=_env_int("STREAM_MAX_BYTES", 50 * MIB),
            ),
            fixed_costs=costs,
            embedding_credits_per_kb=_env_int("COST_EMBEDDING_PER_KB", 1),
            embedding_min_credits=_env_int("COST_EMBEDDING_MIN", 1),
            allow_origins=[o.strip() for o in os.getenv("ALLOW_ORIGINS", "").split(",") if o.strip()],
            data_dir=_env_str("GATEWAY_DATA_DIR"),
        )

    def cost_of(self, operation: str) -> int:
        return self.fixed_costs[operation]

    def missing(self) -> List[str]:
        need: List[str] = []
        if not self.ledger_base_url:
            need.append("LEDGER_BASE_URL")
        if not self.ledger_internal_secret:
            need.append("LEDGER_INTERNAL_SECRET")
        if not (self.auth_jwt_secret or self.auth_jwks_url):
            need.append("AUTH_JWT_SECRET or AUTH_JWKS_URL")

        # provider API keys, only for the providers actually selected
        keys = {
            "openai": ("OPENAI_API_KEY", self.openai_api_key),
            "elevenlabs": ("ELEVENLABS_API_KEY", self.elevenlabs_api_key),
            "wit": ("WIT_API_KEY", self.wit_api_key),
            "runware": ("RUNWARE_API_KEY", self.runware_api_key),
        }
        selected = {
            self.llm_provider,
            self.tts_provider,
            self.stt_provider,
            self.image_provider,
            self.embedding_provider,
        }
        for name in sorted(selected):
            env_name, value = keys.get(name, (None, None))
            if env_name and not value and env_name not in need:
                need.append(env_name)
        return need

    def validate(self) -> None:
        need = self.missing()
        if need:
            raise RuntimeError(f"Missing required environment variables: {', '.join(need)}")
