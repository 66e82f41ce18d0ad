"""Tiller entry point.

Initializes all components and starts the server:
  Settings -> AnthropicProvider -> tools -> ContextCompactor -> Agent -> App -> Uvicorn

Uses Starlette lifespan so the provider's HTTP client lives on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from tiller.agent import Agent
from tiller.api.rest import create_app
from tiller.builtin_tools import create_builtin_tools
from tiller.compaction import ContextCompactor
from tiller.config import Settings
from tiller.providers.anthropic import AnthropicProvider

logger = logging.getLogger(__name__)


def create_components(settings: Settings) -> dict:
    """Build every component. Nothing here touches the network yet."""
    provider = AnthropicProvider(settings)

    compactor = None
    if settings.compaction_enabled:
        summarizer = provider.with_model(settings.background_model)
        compactor = ContextCompactor.from_settings(settings, summarizer_provider=summarizer)

    agent = Agent(
        provider,
        system_prompt=settings.system_prompt,
        tools=create_builtin_tools(settings.workspace_dir),
        transform_context=compactor,
        max_turns=settings.turn_limit,
    )
    return {"provider": provider, "compactor": compactor, "agent": agent}


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown: stop the active run, then close the HTTP client."""
    logger.info("Shutting down Tiller...")

    agent = components.get("agent")
    if agent is not None and agent.is_streaming:
        agent.abort()
        await agent.wait_for_idle()

    provider = components.get("provider")
    if provider is not None:
        await provider.close()

    logger.info("Tiller shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app with lifespan-managed components."""
    components = create_components(settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await components["provider"].start()
        app.state.components = components

        logger.info(
            "Tiller started: max_turns=%s, workspace=%s, compaction=%s",
            settings.turn_limit,
            settings.workspace_dir,
            settings.compaction_mode if settings.compaction_enabled else "off",
        )
        yield

        await shutdown_components(components)

    return create_app(components["agent"], lifespan=lifespan)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Tiller agent")
    logger.info("Model: %s (thinking: %s)", settings.model, settings.thinking_mode)

    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "/chat endpoints will fail"
        )

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
