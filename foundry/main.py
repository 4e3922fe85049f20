"""foundry main entry point.

Builds the orchestrator from settings and serves the control API.
"""

from __future__ import annotations

import asyncio

import uvicorn

from foundry.core.config import get_settings
from foundry.core.logging import get_logger, setup_logging
from foundry.core.orchestrator import PhasedExecutor
from foundry.web.server import create_app


def main():
    """Entry point: starts the web server."""
    settings = get_settings()
    setup_logging(settings)
    logger = get_logger("main")

    logger.info("=" * 60)
    logger.info("foundry starting")
    logger.info("=" * 60)

    if not settings.target_repo_path:
        logger.warning("TARGET_REPO_PATH not set - writing into the current directory")

    if not settings.anthropic_api_key.strip() and not settings.openai_api_key.strip():
        logger.error("No ANTHROPIC_API_KEY or OPENAI_API_KEY set - only ollama: models will work")

    executor = PhasedExecutor.from_settings(settings)
    logger.info("Working tree: %s", executor.guardian.root)
    logger.info("Control API: http://%s:%d", settings.web_host, settings.web_port)

    config = uvicorn.Config(
        create_app(executor),
        host=settings.web_host,
        port=settings.web_port,
        log_level=settings.log_level.lower(),
        reload=False,
    )
    server = uvicorn.Server(config)

    try:
        asyncio.run(server.serve())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
