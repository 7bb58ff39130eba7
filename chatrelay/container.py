"""
Service wiring.

``build_services`` assembles every long-lived object once, in the FastAPI
lifespan handler; routes reach the result through ``app.state.services``.
Tests pass fakes for the external collaborators (LLM, agent runtime, GitHub).
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from chatrelay.agent.channels.github_channel import GitHubJobChannel
from chatrelay.agent.channels.registry import ChannelRegistry
from chatrelay.agent.channels.telegram_channel import TelegramChannel
from chatrelay.agent.channels.web_channel import WebChannel
from chatrelay.agent.gateway import AgentGateway
from chatrelay.agent.idempotency import IdempotencyStore
from chatrelay.agent.orchestrator import DispatchOrchestrator
from chatrelay.agent.runtime import AgentRuntime, OpenAIAgentRuntime, load_system_prompt
from chatrelay.agent.tasks import BackgroundTaskRunner
from chatrelay.agent.webhook_triggers import TriggerManager
from chatrelay.config import BotTokenCell, Settings
from chatrelay.services.conversation_store import ConversationStore
from chatrelay.services.github_service import GitHubService
from chatrelay.services.llm_service import LLMService
from chatrelay.services.notifications import NotificationPipeline, load_summary_prompt

logger = logging.getLogger(__name__)


@dataclass
class RelayServices:
    settings: Settings
    token_cell: BotTokenCell
    registry: ChannelRegistry
    web: WebChannel
    telegram: TelegramChannel
    github_channel: GitHubJobChannel
    store: ConversationStore
    gateway: AgentGateway
    notifications: NotificationPipeline
    runner: BackgroundTaskRunner
    triggers: TriggerManager
    github: GitHubService
    orchestrator: DispatchOrchestrator

    async def shutdown(self) -> None:
        await self.runner.shutdown()


def build_services(
    settings: Settings,
    session_factory: Optional[async_sessionmaker] = None,
    llm=None,
    runtime: Optional[AgentRuntime] = None,
    github: Optional[GitHubService] = None,
) -> RelayServices:
    if session_factory is None:
        from chatrelay.db.database import async_session_maker
        session_factory = async_session_maker

    if llm is None:
        llm = LLMService()
    if runtime is None:
        runtime = OpenAIAgentRuntime(
            llm=llm,
            session_factory=session_factory,
            system_prompt=load_system_prompt(
                settings.agent_system_prompt, settings.agent_system_prompt_file
            ),
            history_limit=settings.agent_history_limit,
            context_tokens=settings.agent_context_tokens,
        )
    if github is None:
        github = GitHubService(
            token=settings.gh_token,
            owner=settings.gh_owner,
            repo=settings.gh_repo,
            default_branch=settings.gh_default_branch,
        )

    token_cell = BotTokenCell(settings.telegram_bot_token)
    transcriber = getattr(llm, "transcribe", None) if settings.openai_api_key else None

    web = WebChannel()
    telegram = TelegramChannel(
        token_cell,
        allowed_chat_id=settings.telegram_chat_id,
        verification_code=settings.telegram_verification,
        transcriber=transcriber,
    )
    github_channel = GitHubJobChannel(telegram, notify_chat_id=settings.telegram_chat_id)

    registry = ChannelRegistry()
    for channel in (web, telegram, github_channel):
        registry.register(channel)
    registry.verify_complete()

    runner = BackgroundTaskRunner(max_concurrent=settings.background_max_concurrent)
    store = ConversationStore(
        session_factory,
        default_title=settings.default_chat_title,
        llm=llm,
        title_model=settings.utility_model,
    )
    gateway = AgentGateway(runtime, timeout=settings.agent_timeout_seconds)
    notifications = NotificationPipeline(
        llm,
        gateway,
        prompt=load_summary_prompt(settings.job_summary_prompt_file),
        model=settings.utility_model,
    )
    triggers = TriggerManager(
        runner,
        rules=TriggerManager.load_rules(settings.triggers_file),
        github=github,
    )
    orchestrator = DispatchOrchestrator(
        registry=registry,
        store=store,
        gateway=gateway,
        notifications=notifications,
        runner=runner,
        dedupe=IdempotencyStore(default_ttl=settings.dedupe_ttl_seconds),
    )

    logger.info(f"[STARTUP] Channels: {[c['type'] for c in registry.status()]}")
    return RelayServices(
        settings=settings,
        token_cell=token_cell,
        registry=registry,
        web=web,
        telegram=telegram,
        github_channel=github_channel,
        store=store,
        gateway=gateway,
        notifications=notifications,
        runner=runner,
        triggers=triggers,
        github=github,
        orchestrator=orchestrator,
    )
