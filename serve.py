# -*- coding: utf-8 -*-
"""
serve.py

Entry point that:
  1) Reads configuration from the environment (.env is honoured).
  2) Refuses to start when required variables are missing.
  3) Sets up the rotating trace / provider-failure logs under the data dir.
  4) Runs the gateway with uvicorn.
"""

import os
import sys

import uvicorn

from config import Settings, get_data_dir
from logs import setup_logging
from main import create_app

HOST = os.getenv("GATEWAY_HOST", "0.0.0.0")
PORT = int(os.getenv("GATEWAY_PORT", "3000"))


def build_app():
    settings = Settings.from_env()
    try:
        settings.validate()
    except RuntimeError as e:
        print(f"[serve] {e}", file=sys.stderr)
        raise SystemExit(1)

    data_dir = get_data_dir(settings.data_dir)
    setup_logging(data_dir / "logs")
    print(f"[serve] logs in {data_dir / 'logs'}")
    print(
        f"[serve] providers: llm={settings.llm_provider} tts={settings.tts_provider} "
        f"stt={settings.stt_provider} image={settings.image_provider} "
        f"embedding={settings.embedding_provider}"
    )
    return create_app(settings)


if __name__ == "__main__":
    app = build_app()
    print(f"[serve] starting gateway on http://{HOST}:{PORT}/")
    uvicorn.run(app, host=HOST, port=PORT, log_level="info")
