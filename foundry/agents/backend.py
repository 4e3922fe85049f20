"""Reasoning backend contract and its LangChain implementation.

A backend turns a prompt into text.  It must raise ``BackendError`` on any
transport/auth/provider failure and never return ``None``.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Literal, Protocol, runtime_checkable

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel

from foundry.core.circuit_breaker import CircuitBreaker
from foundry.core.errors import BackendError, BackendUnavailableError
from foundry.core.logging import get_logger

logger = get_logger("agents.backend")

Strength = Literal["fast", "strong"]

DEFAULT_SYSTEM_PROMPT = (
    "You are a senior software engineer working inside an automated pipeline. "
    "When you produce files, wrap each one as "
    '<file path="relative/path" action="create|modify|delete">complete content</file>.'
)


class InvokeOptions(BaseModel):
    strength: Strength = "fast"
    use_extended_reasoning: bool = False
    reasoning_budget: int = 0
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


@runtime_checkable
class ReasoningBackend(Protocol):
    async def invoke(self, prompt: str, options: InvokeOptions) -> str: ...


LLMFactory = Callable[[Strength, bool, int], BaseChatModel]


def _message_text(content) -> str:
    """Flatten a chat model response into plain text (drops thinking blocks)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
        return "".join(parts)
    return str(content or "")


class LangChainBackend:
    """Backend that routes each call to a chat model chosen by strength.

    One circuit per strength level: repeated provider failures open it and
    further calls fail fast with ``BackendUnavailableError``.
    """

    def __init__(self, llm_factory: LLMFactory, breaker: CircuitBreaker | None = None) -> None:
        self._llm_factory = llm_factory
        self.breaker = breaker or CircuitBreaker()
        self.calls = 0

    async def invoke(self, prompt: str, options: InvokeOptions) -> str:
        circuit_id = f"llm:{options.strength}"
        if not self.breaker.can_attempt(circuit_id):
            raise BackendUnavailableError(circuit_id, self.breaker.cooldown_remaining(circuit_id))

        try:
            llm = self._llm_factory(
                options.strength, options.use_extended_reasoning, options.reasoning_budget
            )
        except ValueError as exc:
            # Missing API key / bad model name: configuration, not a provider outage
            raise BackendError(str(exc)) from exc

        self.calls += 1
        logger.info(
            "LLM call | strength=%s extended=%s budget=%d prompt_chars=%d",
            options.strength, options.use_extended_reasoning, options.reasoning_budget, len(prompt),
        )
        try:
            response = await llm.ainvoke([
                SystemMessage(content=options.system_prompt),
                HumanMessage(content=prompt),
            ])
        except Exception as exc:
            self.breaker.record_failure(circuit_id)
            logger.warning("LLM call failed | strength=%s | %s", options.strength, exc)
            raise BackendError(f"{type(exc).__name__}: {exc}") from exc

        self.breaker.record_success(circuit_id)
        text = _message_text(getattr(response, "content", response))
        if not text.strip():
            raise BackendError("Empty response from reasoning backend")
        return text
