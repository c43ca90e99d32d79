"""
Agent Engine — LLM Provider Factory

Single point of chat-model construction. The decision client and the
service get their models from `create_llm`, nowhere else.

Provider selection (in priority order):
  1. Explicit `provider` argument to create_llm()
  2. LLM_PROVIDER environment variable
  3. llm.default_provider in agent_config.yaml
  4. Auto-detect from available API key env vars

Model aliasing:
  Agent definitions use logical names ("default", "strong"). The
  llm.models table maps them to provider-specific identifiers;
  provider-specific names pass through unchanged.

Supported providers:
  openai   — OpenAI direct (langchain-openai)
  azure    — Azure OpenAI Service (langchain-openai)
  google   — Google Gemini (langchain-google-genai)

Provider packages are imported lazily; only the one in use needs to be
installed.
"""

from __future__ import annotations

import os
from typing import Any

from langchain_core.language_models.chat_models import BaseChatModel

from agent_engine.config import load_config


_MODEL_TO_PROVIDER = {
    "gpt-4o": "openai",
    "gpt-4o-mini": "openai",
    "gpt-4.1": "openai",
    "gpt-4.1-mini": "openai",
    "gemini-2.0-flash": "google",
    "gemini-2.5-pro": "google",
}


def _llm_section(config: dict[str, Any] | None) -> dict[str, Any]:
    if config is None:
        config = load_config()
    return config.get("llm", {}) or {}


# ═══════════════════════════════════════════════════════════════════════
# Provider detection
# ═══════════════════════════════════════════════════════════════════════

def detect_provider(config: dict[str, Any] | None = None) -> str:
    explicit = os.environ.get("LLM_PROVIDER", "").lower().strip()
    if explicit:
        return explicit

    cfg_default = _llm_section(config).get("default_provider")
    if cfg_default:
        return str(cfg_default).lower().strip()

    if os.environ.get("AZURE_OPENAI_ENDPOINT") and os.environ.get("AZURE_OPENAI_API_KEY"):
        return "azure"
    if os.environ.get("OPENAI_API_KEY"):
        return "openai"
    if os.environ.get("GOOGLE_API_KEY"):
        return "google"

    raise EnvironmentError(
        "No LLM provider detected. Set one of:\n"
        "  LLM_PROVIDER=openai|azure|google\n"
        "  Or set llm.default_provider in agent_config.yaml\n"
        "  Or set provider API key env vars (OPENAI_API_KEY, GOOGLE_API_KEY,\n"
        "  AZURE_OPENAI_ENDPOINT + AZURE_OPENAI_API_KEY)"
    )


def resolve_model(model: str, provider: str, config: dict[str, Any] | None = None) -> str:
    """Map a logical alias to the provider's model id; pass anything else through."""
    if model == "default":
        env_model = os.environ.get("LLM_DEFAULT_MODEL", "").strip()
        if env_model:
            return env_model

    aliases = _llm_section(config).get("models", {}) or {}
    alias_map = aliases.get(model)
    if isinstance(alias_map, dict):
        if provider in alias_map:
            return alias_map[provider]
        # azure deployments usually mirror the openai model names
        if provider == "azure" and "openai" in alias_map:
            return alias_map["openai"]
    return model


# ═══════════════════════════════════════════════════════════════════════
# Provider factories (lazy imports)
# ═══════════════════════════════════════════════════════════════════════

def _create_openai(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_openai import ChatOpenAI
    return ChatOpenAI(model=model, temperature=temperature, **kwargs)


def _create_azure(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_openai import AzureChatOpenAI
    return AzureChatOpenAI(
        azure_deployment=model,
        azure_endpoint=os.environ["AZURE_OPENAI_ENDPOINT"],
        api_key=os.environ.get("AZURE_OPENAI_API_KEY"),
        api_version=os.environ.get("AZURE_OPENAI_VERSION", "2024-12-01-preview"),
        temperature=temperature,
        **kwargs,
    )


def _create_google(model: str, temperature: float, **kwargs) -> BaseChatModel:
    from langchain_google_genai import ChatGoogleGenerativeAI
    return ChatGoogleGenerativeAI(model=model, temperature=temperature, **kwargs)


_FACTORIES = {
    "openai": _create_openai,
    "azure":  _create_azure,
    "google": _create_google,
}


# ═══════════════════════════════════════════════════════════════════════
# Public API
# ═══════════════════════════════════════════════════════════════════════

def create_llm(
    model: str = "default",
    temperature: float = 0.1,
    provider: str | None = None,
    config: dict[str, Any] | None = None,
    **kwargs,
) -> BaseChatModel:
    """
    Create a chat model.

    Args:
        model:       Logical alias or provider-specific model name
        temperature: Sampling temperature
        provider:    Force a provider. If None, inferred from the model
                     name or detected.
        config:      Loaded agent config (loaded from disk when omitted)
        **kwargs:    Passed through to the LangChain constructor

    Returns:
        BaseChatModel, ready for .invoke()
    """
    if config is None:
        config = load_config()

    if provider is None:
        provider = _MODEL_TO_PROVIDER.get(model) or detect_provider(config)

    provider = provider.lower().strip()
    if provider not in _FACTORIES:
        raise ValueError(
            f"Unknown provider '{provider}'. "
            f"Supported: {', '.join(_FACTORIES.keys())}"
        )

    resolved = resolve_model(model, provider, config)

    if "timeout" not in kwargs:
        timeout = (config.get("timeouts", {}) or {}).get("llm_s")
        if timeout:
            kwargs["timeout"] = float(timeout)

    max_tokens = _llm_section(config).get("max_output_tokens")
    if max_tokens and "max_tokens" not in kwargs and provider != "google":
        kwargs["max_tokens"] = int(max_tokens)

    return _FACTORIES[provider](resolved, temperature, **kwargs)
