#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
OpenAI Chat Completions / Images compatible server backed by getmerlin.in

Startup entrypoint that exposes the modular app implemented in merlin2openai.
"""

from __future__ import annotations

import os
import sys

from merlinapi.config.settings import Settings
from merlinapi.core.logging import logger
from merlin2openai.app import create_app

settings = Settings.from_env()
app = create_app(settings)  # FastAPI app


def main():
    import uvicorn

    if not settings.has_secret:
        logger.error("[OpenAI Compat] 缺少 Merlin 凭据，退出")
        sys.exit(1)

    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8081")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
