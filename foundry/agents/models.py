"""LLM model configuration and factory.

Provider routing is done via model name prefix:
  - "ollama:<model>"  → local Ollama  (e.g. "ollama:llama3.1:70b")
  - "claude-*"        → Anthropic API
  - anything else     → OpenAI API   (e.g. "gpt-4o", "gpt-4o-mini")

Set FAST_MODEL and STRONG_MODEL in .env to choose the two strength levels.
"""

from __future__ import annotations

from pathlib import Path

from langchain_core.language_models import BaseChatModel

from foundry.agents.backend import Strength
from foundry.core.config import Settings, get_settings
from foundry.core.logging import get_logger

logger = get_logger("agents.models")

PROMPTS_DIR = Path(__file__).parent / "prompts"

# Anthropic requires max_tokens > thinking budget; leave room for the answer.
_ANSWER_HEADROOM = 4096


# ---------------------------------------------------------------------------
# Provider detection
# ---------------------------------------------------------------------------

def _is_ollama_model(model_name: str) -> bool:
    return model_name.lower().startswith("ollama:")


def _is_anthropic_model(model_name: str) -> bool:
    return "claude" in model_name.lower()


def _strip_ollama_prefix(model_name: str) -> str:
    return model_name[len("ollama:"):]


# ---------------------------------------------------------------------------
# LLM constructors
# ---------------------------------------------------------------------------

def _make_ollama(model: str, base_url: str, temperature: float = 0.1) -> BaseChatModel:
    """Create a ChatOllama instance. langchain-ollama must be installed (extra: ollama)."""
    try:
        from langchain_ollama import ChatOllama  # type: ignore[import-untyped]
    except ImportError as exc:
        raise ImportError(
            "langchain-ollama is not installed. Run: pip install 'foundry-orchestrator[ollama]'"
        ) from exc

    bare_model = _strip_ollama_prefix(model)
    logger.info("Using Ollama model '%s' at %s", bare_model, base_url)
    return ChatOllama(model=bare_model, base_url=base_url, temperature=temperature)


def _make_anthropic(
    model: str,
    api_key: str,
    temperature: float = 0.1,
    max_tokens: int = 8192,
    reasoning_budget: int = 0,
) -> BaseChatModel:
    from langchain_anthropic import ChatAnthropic

    if reasoning_budget > 0:
        logger.info("Using Anthropic model '%s' (extended thinking, budget=%d)", model, reasoning_budget)
        # Extended thinking does not accept a custom temperature.
        return ChatAnthropic(
            model=model,
            api_key=api_key,
            max_tokens=max(max_tokens, reasoning_budget + _ANSWER_HEADROOM),
            thinking={"type": "enabled", "budget_tokens": reasoning_budget},
        )
    logger.info("Using Anthropic model '%s'", model)
    return ChatAnthropic(model=model, api_key=api_key, temperature=temperature, max_tokens=max_tokens)


def _make_openai(model: str, api_key: str, temperature: float = 0.2, max_tokens: int = 8192) -> BaseChatModel:
    from langchain_openai import ChatOpenAI

    logger.info("Using OpenAI model '%s'", model)
    return ChatOpenAI(model=model, api_key=api_key, temperature=temperature, max_tokens=max_tokens)


# ---------------------------------------------------------------------------
# Key validation helpers
# ---------------------------------------------------------------------------

def _require_key(provider: str, env_name: str, strength: Strength, model: str, api_key: str) -> str:
    key = (api_key or "").strip()
    if key:
        return key
    raise ValueError(
        f"Missing {env_name} for {strength} model '{model}'. "
        f"Set {env_name} in .env or switch to a model from another provider ({provider} selected)."
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def model_for(strength: Strength, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    return settings.strong_model if strength == "strong" else settings.fast_model


def get_llm(
    strength: Strength,
    extended_reasoning: bool = False,
    reasoning_budget: int = 0,
    settings: Settings | None = None,
) -> BaseChatModel:
    """Create an LLM instance for a reasoning strength level.

    Extended reasoning is honoured only by Anthropic models; other providers
    get a plain call at the same strength.
    """
    settings = settings or get_settings()
    model = model_for(strength, settings)
    temperature = 0.1 if strength == "fast" else 0.2
    budget = reasoning_budget if extended_reasoning else 0

    if _is_ollama_model(model):
        return _make_ollama(model, base_url=settings.ollama_base_url, temperature=temperature)

    if _is_anthropic_model(model):
        key = _require_key("anthropic", "ANTHROPIC_API_KEY", strength, model, settings.anthropic_api_key)
        return _make_anthropic(
            model, key, temperature=temperature, max_tokens=settings.llm_max_tokens, reasoning_budget=budget
        )

    if budget:
        logger.debug("Extended reasoning not supported for '%s'; plain call", model)
    key = _require_key("openai", "OPENAI_API_KEY", strength, model, settings.openai_api_key)
    return _make_openai(model, key, temperature=temperature, max_tokens=settings.llm_max_tokens)


def make_llm_factory(settings: Settings | None = None):
    """Bind *settings* into a factory usable by ``LangChainBackend``."""
    def factory(strength: Strength, extended_reasoning: bool, reasoning_budget: int) -> BaseChatModel:
        return get_llm(strength, extended_reasoning, reasoning_budget, settings=settings)
    return factory


def load_system_prompt(phase: str) -> str:
    """Load the system prompt for a pipeline phase from ``prompts/<phase>.txt``."""
    prompt_file = PROMPTS_DIR / f"{phase}.txt"
    if not prompt_file.exists():
        raise FileNotFoundError(f"System prompt not found: {prompt_file}")
    return prompt_file.read_text(encoding="utf-8")
