# logs.py
import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict

_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"

_reqlog = logging.getLogger("reqtrace")
_errlog = logging.getLogger("provider_failures")

_SECRET_HEADERS = {"authorization", "xi-api-key", "x-api-key"}


def setup_logging(log_dir: Path) -> None:
    """
    Attach rotating file handlers (plus a console echo for the trace log).
    Safe to call more than once; handlers are only added the first time.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    fmt = logging.Formatter(_FORMAT)

    if not _reqlog.handlers:
        fh = RotatingFileHandler(log_dir / "traffic.log", maxBytes=5_000_000, backupCount=4)
        fh.setFormatter(fmt)
        _reqlog.addHandler(fh)
        console = logging.StreamHandler()
        console.setFormatter(fmt)
        _reqlog.addHandler(console)
    _reqlog.setLevel(logging.INFO)

    if not _errlog.handlers:
        h = RotatingFileHandler(log_dir / "provider_failures.log", maxBytes=2_000_000, backupCount=5)
        h.setFormatter(fmt)
        _errlog.addHandler(h)
    _errlog.setLevel(logging.INFO)


def trace(msg: str) -> None:
    _reqlog.info(msg)


def provider_failure(msg: str) -> None:
    _errlog.info(msg)


def redact_headers(h: Dict[str, str], extra_secret: str = "") -> Dict[str, str]:
    if not isinstance(h, dict):
        return {}
    secret_names = set(_SECRET_HEADERS)
    if extra_secret:
        secret_names.add(extra_secret.lower())
    out = dict(h)
    for k in list(out.keys()):
        if k.lower() in secret_names:
            out[k] = "***"
    return out


def preview(obj: Any, limit: int = 800) -> str:
    try:
        s = obj if isinstance(obj, str) else json.dumps(obj, ensure_ascii=False)
    except (TypeError, ValueError):
        s = str(obj)
    if len(s) > limit:
        return s[:limit] + f"... <{len(s)-limit} more chars>"
    return s
