"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

from .types import (
    ChatConfig,
    ContextConfig,
    ExtractorConfig,
    PersonaContextConfig,
    PlanTier,
    ServerConfig,
    StorageConfig,
    SummarizationConfig,
    TimeAwarenessConfig,
)

CONFIG_FILENAMES = [
    "persona-context.yaml",
    "persona-context.yml",
    "persona-context.json",
]

DEFAULT_PLANS: dict[str, dict[str, Any]] = {
    "Guest Pass": {
        "model": "openai/gpt-4o-mini",
        "credit_cost": 8,
        "max_context_tokens": 12_000,
    },
    "True Fan": {
        "model": "microsoft/wizardlm-2-8x22b",
        "credit_cost": 23,
        "max_context_tokens": 12_000,
    },
    "The Whale": {
        "model": "nousresearch/nous-hermes-2-mixtral-8x7b-dpo",
        "credit_cost": 23,
        "max_context_tokens": 12_000,
    },
}


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _parse_plans(raw: dict[str, Any] | None) -> dict[str, PlanTier]:
    plans_raw = raw if raw else DEFAULT_PLANS
    plans: dict[str, PlanTier] = {}
    for name, pconf in plans_raw.items():
        pconf = pconf if isinstance(pconf, dict) else {}
        plans[name] = PlanTier(
            name=name,
            model=pconf.get("model", DEFAULT_PLANS["Guest Pass"]["model"]),
            credit_cost=int(pconf.get("credit_cost", 8)),
            max_context_tokens=int(pconf.get("max_context_tokens", 12_000)),
        )
    return plans


def _build_config(raw: dict[str, Any]) -> PersonaContextConfig:
    """Build a PersonaContextConfig from a raw dict."""
    ctx_raw = raw.get("context", {})
    context = ContextConfig(
        max_pairs=ctx_raw.get("max_pairs", 5),
        window_token_budget=ctx_raw.get("window_token_budget", 8_000),
        safety_margin=ctx_raw.get("safety_margin", 1_000),
        recent_message_lookback=ctx_raw.get("recent_message_lookback", 5),
        max_addon_entries=ctx_raw.get("max_addon_entries", 3),
    )

    summ_raw = raw.get("summarization", {})
    summarization = SummarizationConfig(
        base_url=summ_raw.get("base_url", "https://openrouter.ai/api/v1"),
        api_key_env=summ_raw.get("api_key_env", "OPENROUTER_API_KEY"),
        model=summ_raw.get("model", "mistralai/mistral-7b-instruct"),
        interval=summ_raw.get("interval", 15),
        max_tokens=summ_raw.get("max_tokens", 2_500),
        temperature=summ_raw.get("temperature", 0.3),
        max_attempts=summ_raw.get("max_attempts", 3),
        retry_backoff=summ_raw.get("retry_backoff", 2.0),
        lock_release_delay=summ_raw.get("lock_release_delay", 2.0),
    )

    chat_raw = raw.get("chat", {})
    chat = ChatConfig(
        base_url=chat_raw.get("base_url", "https://openrouter.ai/api/v1"),
        api_key_env=chat_raw.get("api_key_env", "OPENROUTER_API_KEY"),
        temperature=chat_raw.get("temperature", 0.7),
        max_tokens=chat_raw.get("max_tokens", 1_000),
        generation_timeout=chat_raw.get("generation_timeout", 120.0),
        persist_attempts=chat_raw.get("persist_attempts", 3),
        persist_backoff=chat_raw.get("persist_backoff", 0.2),
    )

    storage_raw = raw.get("storage", {})
    storage = StorageConfig(
        sqlite_path=storage_raw.get("sqlite_path", ".persona-context/store.db"),
    )

    extractor_raw = raw.get("extractor", {})
    extractor = ExtractorConfig(
        url=extractor_raw.get("url", ""),
        timeout=extractor_raw.get("timeout", 30.0),
    )

    time_raw = raw.get("time_awareness", {})
    time_awareness = TimeAwarenessConfig(
        delay_threshold=time_raw.get("delay_threshold", 30),
    )

    server_raw = raw.get("server", {})
    server = ServerConfig(
        host=server_raw.get("host", "127.0.0.1"),
        port=server_raw.get("port", 5858),
    )

    return PersonaContextConfig(
        version=raw.get("version", "0.1"),
        token_counter=raw.get("token_counter", "estimate"),
        context=context,
        summarization=summarization,
        chat=chat,
        plans=_parse_plans(raw.get("plans")),
        default_plan=raw.get("default_plan", "Guest Pass"),
        storage=storage,
        extractor=extractor,
        time_awareness=time_awareness,
        server=server,
    )


def validate_config(config: PersonaContextConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    if config.context.max_pairs < 1:
        errors.append("context.max_pairs must be >= 1")

    if config.context.window_token_budget <= 0:
        errors.append("context.window_token_budget must be > 0")

    if config.summarization.interval < 1:
        errors.append("summarization.interval must be >= 1")

    if config.summarization.max_attempts < 1:
        errors.append("summarization.max_attempts must be >= 1")

    if not config.plans:
        errors.append("At least one plan must be defined")
    elif config.default_plan not in config.plans:
        errors.append(f"default_plan '{config.default_plan}' not found in plans section")

    for plan in config.plans.values():
        if plan.credit_cost < 0:
            errors.append(f"Plan '{plan.name}' has a negative credit_cost")
        if plan.max_context_tokens <= config.context.safety_margin:
            errors.append(
                f"Plan '{plan.name}' max_context_tokens ({plan.max_context_tokens}) "
                f"must exceed context.safety_margin ({config.context.safety_margin})"
            )

    if config.chat.generation_timeout <= 0:
        errors.append("chat.generation_timeout must be > 0")

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> PersonaContextConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        # Return defaults
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return _build_config(raw)
