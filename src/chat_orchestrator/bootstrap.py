from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from chat_orchestrator.app_config import AppConfig, RuntimeEnv
from chat_orchestrator.errors import ConfigurationError
from chat_orchestrator.logging_config import setup_logging
from chat_orchestrator.orchestrator import ConversationOrchestrator
from chat_orchestrator.orchestrator_config import OrchestratorConfig
from chat_orchestrator.provider import CompletionProvider, create_provider
from chat_orchestrator.storage import ConversationDatabase, ConversationStore
from chat_orchestrator.titles import TitleGenerator
from chat_orchestrator.tokens import TokenCounter


@dataclass
class AppRuntime:
    orchestrator: ConversationOrchestrator
    store: ConversationStore
    database: ConversationDatabase
    provider: CompletionProvider
    log_descriptions: list[str]


def resolve_api_key(app: AppConfig, env: RuntimeEnv) -> str:
    """Pick the bearer token for the backend.

    A self-hosted OpenAI-compatible server (``GPT_LLAMA_URL``) takes the model
    path as its token: ``GPT_LLAMA_LOCATION`` joined with the model name.
    """
    if env.provider_api_key:
        return env.provider_api_key
    if env.base_url:
        return f"{env.model_location or ''}{app.model}"
    raise ConfigurationError(
        f"{env.provider_env_var} environment variable is required "
        "(or set GPT_LLAMA_URL for a self-hosted backend)."
    )


def build_orchestrator_config(app: AppConfig) -> OrchestratorConfig:
    return OrchestratorConfig(
        model=app.model,
        endpoint=app.endpoint,
        temperature=app.temperature,
        top_p=app.top_p,
        top_k=app.top_k,
        prompt_prefix=app.prompt_prefix,
        user_label=app.user_label,
        model_label=app.model_label,
        max_context_tokens=app.max_context_tokens,
        max_response_tokens=app.max_response_tokens,
        max_prompt_tokens=app.max_prompt_tokens,
        snapshot_interval_seconds=app.snapshot_interval_seconds,
        request_timeout_seconds=app.request_timeout_seconds,
        conflict_policy=app.conflict_policy,
        title_conversations=app.title_conversations,
    )


def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    provider = create_provider(app.provider_name, resolve_api_key(app, env), base_url=env.base_url)
    counter = TokenCounter(app.encoding)

    db_path = Path(app.db_path)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    database = ConversationDatabase(str(db_path))
    store = ConversationStore(database)

    title_generator = TitleGenerator(provider, app.model) if app.title_conversations else None
    orchestrator = ConversationOrchestrator(
        build_orchestrator_config(app),
        provider=provider,
        store=store,
        counter=counter,
        title_generator=title_generator,
    )

    return AppRuntime(
        orchestrator=orchestrator,
        store=store,
        database=database,
        provider=provider,
        log_descriptions=log_descriptions,
    )
