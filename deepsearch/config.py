"""Centralised configuration.

Provider and model selection is driven by environment variables.
Supports a single default provider for all roles, with optional
per-role overrides.

Env vars
--------
LLM_PROVIDER           Default provider (gemini / openai / anthropic / huggingface)
LLM_MODEL              Default model   (auto-selected per provider if empty)

GEMINI_API_KEY         Google Gemini
OPENAI_API_KEY         OpenAI
ANTHROPIC_API_KEY      Anthropic
HF_TOKEN               HuggingFace

AGENT_PROVIDER         Per-role override example
AGENT_MODEL            Per-role override example
AGENT_TEMPERATURE      Per-role override example
AGENT_MAX_TOKENS       Per-role override example

EMBEDDING_PROVIDER     Provider used for semantic dedup and reference matching
EMBEDDING_MODEL        Embedding model name

SEARCH_PROVIDER        auto / firecrawl / duck / serper / brave
STEP_SLEEP             Seconds to wait after each step and each search query
MAX_STEPS              Hard cap on loop iterations per session
SANDBOX_TIMEOUT        Seconds a generated program may run
SNAPSHOT_DIR           Where per-step debug snapshots are written
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

load_dotenv()

# ---- sensible defaults per provider ----
DEFAULT_MODELS: Dict[str, str] = {
    "gemini": "gemini-2.5-flash",
    "openai": "gpt-4o-mini",
    "anthropic": "claude-sonnet-4-20250514",
    "huggingface": "Qwen/Qwen2.5-72B-Instruct",
}
AVAILABLE_MODELS: Dict[str, list] = {
    "gemini": ["gemini-2.5-flash", "gemini-2.5-pro", "gemini-3-pro-preview"],
    "openai": ["gpt-4o", "gpt-4o-mini", "gpt-4.1", "o3-mini"],
    "anthropic": ["claude-sonnet-4-20250514", "claude-opus-4-20250514"],
    "huggingface": ["Qwen/Qwen2.5-72B-Instruct", "meta-llama/Llama-3.3-70B-Instruct"],
}
ROLES = [
    "agent", "agent_beast_mode", "evaluator", "error_analyzer",
    "query_rewriter", "serp_cluster", "research_planner", "coder",
    "finalizer", "fallback",
]
# Roles that deviate from the 0.2 default temperature
ROLE_TEMPERATURES: Dict[str, float] = {
    "agent": 0.7,
    "agent_beast_mode": 0.7,
    "fallback": 0.0,
    "evaluator": 0.1,
}
SEARCH_PROVIDERS = ["auto", "firecrawl", "duck", "serper", "brave"]


@dataclass
class RoleConfig:
    provider: str
    model: str
    temperature: float = 0.2
    max_tokens: int = 8000


@dataclass
class AppConfig:
    default_provider: str = "gemini"
    default_model: str = ""
    embedding_provider: str = "openai"
    embedding_model: str = "text-embedding-3-small"
    search_provider: str = "auto"
    step_sleep: float = 1.0
    max_steps: int = 300
    sandbox_timeout: float = 10.0
    snapshot_dir: str = "."
    roles: Dict[str, RoleConfig] = field(default_factory=dict)

    def get_role(self, name: str) -> RoleConfig:
        """Return config for *name*, falling back to the global default."""
        if name in self.roles:
            return self.roles[name]
        return RoleConfig(
            provider=self.default_provider,
            model=self.default_model or DEFAULT_MODELS.get(self.default_provider, ""),
            temperature=ROLE_TEMPERATURES.get(name, 0.2),
        )


def load_config() -> AppConfig:
    provider = os.getenv("LLM_PROVIDER", "gemini")
    model = os.getenv("LLM_MODEL", DEFAULT_MODELS.get(provider, ""))

    cfg = AppConfig(
        default_provider=provider,
        default_model=model,
        embedding_provider=os.getenv("EMBEDDING_PROVIDER", "openai"),
        embedding_model=os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"),
        search_provider=os.getenv("SEARCH_PROVIDER", "auto"),
        step_sleep=float(os.getenv("STEP_SLEEP", "1.0")),
        max_steps=int(os.getenv("MAX_STEPS", "300")),
        sandbox_timeout=float(os.getenv("SANDBOX_TIMEOUT", "10")),
        snapshot_dir=os.getenv("SNAPSHOT_DIR", "."),
    )
    if cfg.search_provider not in SEARCH_PROVIDERS:
        raise ValueError(
            f"Unknown search provider: '{cfg.search_provider}'. "
            f"Supported: {', '.join(SEARCH_PROVIDERS)}"
        )

    for role in ROLES:
        pfx = role.upper()
        p = os.getenv(f"{pfx}_PROVIDER")
        m = os.getenv(f"{pfx}_MODEL")
        t = os.getenv(f"{pfx}_TEMPERATURE")
        mt = os.getenv(f"{pfx}_MAX_TOKENS")
        if p or m or t or mt:
            cfg.roles[role] = RoleConfig(
                provider=p or provider,
                # a provider override without a model picks that provider's default
                model=m or (DEFAULT_MODELS.get(p, model) if p else model),
                temperature=float(t) if t else ROLE_TEMPERATURES.get(role, 0.2),
                max_tokens=int(mt) if mt else 8000,
            )
    return cfg


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> AppConfig:
    global _config
    _config = load_config()
    return _config
