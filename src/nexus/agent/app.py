"""FastAPI application for the agent service.

This is the main entry point for the agent API server:

    uvicorn src.nexus.agent.app:create_app --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import asyncpg
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import create_agent_dependencies, reset_agent_dependencies
from .api import router as agent_router
from .config import AgentSettings, ProviderSettings, get_settings
from .domain.ports import ILLMProvider, INotifyChannel, ISessionStore
from .memory import InMemorySessionStore, PostgresSessionStore
from .notify import WebhookNotifyChannel
from .orchestrator import (
    AgentLoop,
    ApprovalManager,
    ConcurrencyPool,
    SessionCompactor,
    SessionManager,
    SubAgentOrchestrator,
)
from .providers import (
    AnthropicProvider,
    LLMProviderConfig,
    OllamaProvider,
    OpenAIProvider,
    ProviderManager,
)
from .tools import ToolRegistry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

_PROVIDER_CLASSES = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "ollama": OllamaProvider,
}


def build_providers(settings: AgentSettings) -> list[ILLMProvider]:
    """Create provider adapters in fallback order.

    Adapters that fail to initialize (missing SDK, bad config) are skipped
    with a warning so the remaining chain still works.
    """
    providers: list[ILLMProvider] = []
    for entry in settings.providers:
        try:
            providers.append(_build_provider(entry))
            logger.info(f"Using {entry.name} provider with model: {entry.model}")
        except Exception as e:
            logger.warning(f"Failed to initialize {entry.name} provider: {e}")
    return providers


def _build_provider(entry: ProviderSettings) -> ILLMProvider:
    config = LLMProviderConfig(
        api_key=entry.api_key,
        model=entry.model,
        base_url=entry.base_url,
        timeout=entry.timeout,
    )
    if entry.name == "ollama":
        config.extra["native_tools"] = entry.native_tools
    return _PROVIDER_CLASSES[entry.name](config)


def build_channels(settings: AgentSettings) -> list[INotifyChannel]:
    return [
        WebhookNotifyChannel(url, auth_token=settings.approval_webhook_token)
        for url in settings.approval_webhook_urls
    ]


class AgentRuntime:
    """The wired execution core of one process.

    Usage:
        runtime = AgentRuntime.build(settings, providers, store)
        runtime.registry.register(...)
        await runtime.start()
        ...
        await runtime.stop()
    """

    def __init__(
        self,
        settings: AgentSettings,
        provider_manager: ProviderManager,
        registry: ToolRegistry,
        approvals: ApprovalManager,
        subagents: SubAgentOrchestrator,
        agent_loop: AgentLoop,
        sessions: SessionManager,
        store: ISessionStore,
        channels: list[INotifyChannel],
    ):
        self.settings = settings
        self.provider_manager = provider_manager
        self.registry = registry
        self.approvals = approvals
        self.subagents = subagents
        self.agent_loop = agent_loop
        self.sessions = sessions
        self.store = store
        self.channels = channels

    @classmethod
    def build(
        cls,
        settings: AgentSettings,
        providers: list[ILLMProvider],
        store: Optional[ISessionStore] = None,
        registry: Optional[ToolRegistry] = None,
        channels: Optional[list[INotifyChannel]] = None,
    ) -> AgentRuntime:
        """Wire every component from settings."""
        if store is None:
            store = InMemorySessionStore()
        if registry is None:
            registry = ToolRegistry()
        channels = channels if channels is not None else build_channels(settings)

        provider_manager = ProviderManager(
            providers,
            cooldown_seconds=settings.provider_cooldown_seconds,
            failure_threshold=settings.provider_failure_threshold,
        )
        approvals = ApprovalManager(
            channels=channels,
            store=store,
            timeout_seconds=settings.approval_timeout_seconds,
        )
        compactor = SessionCompactor(
            provider_manager,
            preserve_recent=settings.compaction_preserve_recent,
        )
        subagents = SubAgentOrchestrator(
            ConcurrencyPool(settings.subagent_concurrency),
            store=store,
            default_max_turns=settings.subagent_max_turns,
            default_max_tokens=settings.subagent_max_tokens,
        )
        subagents.register_tool(registry)

        agent_loop = AgentLoop(
            provider_manager=provider_manager,
            tool_registry=registry,
            approval_manager=approvals,
            compactor=compactor,
            subagents=subagents,
            store=store,
            config=settings.to_agent_config(),
        )
        subagents.loop_factory = lambda: agent_loop

        sessions = SessionManager(
            lambda: agent_loop,
            store=store,
            idle_timeout_seconds=settings.session_idle_timeout_seconds,
        )
        return cls(
            settings=settings,
            provider_manager=provider_manager,
            registry=registry,
            approvals=approvals,
            subagents=subagents,
            agent_loop=agent_loop,
            sessions=sessions,
            store=store,
            channels=channels,
        )

    async def start(self) -> None:
        await self.sessions.start()
        create_agent_dependencies(
            session_manager=self.sessions,
            approval_manager=self.approvals,
            subagents=self.subagents,
            provider_manager=self.provider_manager,
        )

    async def stop(self) -> None:
        """Shut down in reverse order of initialization."""
        reset_agent_dependencies()
        await self.sessions.stop()
        await self.subagents.shutdown()
        for channel in self.channels:
            close = getattr(channel, "close", None)
            if close is not None:
                await close()
        await self.provider_manager.close()


async def _open_store(settings: AgentSettings) -> tuple[ISessionStore, Optional[asyncpg.Pool]]:
    if not settings.database_url:
        logger.warning("DATABASE_URL not configured - sessions are kept in memory only")
        return InMemorySessionStore(), None

    pool = await asyncpg.create_pool(
        settings.database_url,
        min_size=2,
        max_size=10,
        command_timeout=60,
        max_inactive_connection_lifetime=300,
    )
    store = PostgresSessionStore(pool)
    await store.ensure_schema()
    logger.info("Database pool initialized")
    return store, pool


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Handles startup and shutdown events:
    - Startup: Open the session store, build providers and the execution core
    - Shutdown: Cancel active runs, close providers, channels and the pool
    """
    settings: AgentSettings = app.state.settings
    logger.info("Starting Agent API...")

    store, pool = await _open_store(settings)
    app.state.runtime = None

    providers = build_providers(settings)
    if providers:
        runtime = AgentRuntime.build(settings, providers, store=store)
        await runtime.start()
        app.state.runtime = runtime
        logger.info("Agent runtime initialized")
    else:
        logger.warning("No LLM provider could be initialized - agent will be unavailable")

    try:
        yield
    finally:
        logger.info("Shutting down Agent API...")
        if app.state.runtime is not None:
            await app.state.runtime.stop()
        if pool is not None:
            await pool.close()
            logger.info("Database pool closed")


def create_app(settings: Optional[AgentSettings] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Settings to use (read from the environment otherwise)
    """
    settings = settings or get_settings()
    logging.getLogger().setLevel(settings.log_level)

    app = FastAPI(
        title="Agent Execution API",
        description="Agent loop with tool approval, sub-agent delegation and provider fallback",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(agent_router)

    @app.get("/health")
    async def health_check():
        """Liveness probe."""
        return {"status": "healthy"}

    return app

