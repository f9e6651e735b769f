"""Language-model invocation for workflow llm nodes."""

from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol, Tuple

from pydantic import BaseModel
from pydantic_ai import Agent

logger = logging.getLogger(__name__)

# USD per 1k tokens (input, output)
MODEL_PRICES: Dict[str, Tuple[float, float]] = {
    "gpt-4o": (0.0025, 0.01),
    "gpt-4o-mini": (0.00015, 0.0006),
    "gpt-4-turbo": (0.01, 0.03),
    "gemini-2.0-flash-exp": (0.0, 0.0),
    "gemini-1.5-flash": (0.000075, 0.0003),
    "gemini-1.5-pro": (0.00125, 0.005),
}


def _model_key(model: str) -> str:
    # "openai:gpt-4o" -> "gpt-4o"
    return model.split(":", 1)[-1]


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Approximate cost of a call; unknown models cost nothing."""
    input_price, output_price = MODEL_PRICES.get(_model_key(model), (0.0, 0.0))
    return (input_tokens / 1000) * input_price + (output_tokens / 1000) * output_price


class LlmResult(BaseModel):
    text: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class LlmInvoker(Protocol):
    async def invoke(
        self, model: str, prompt: str, system_prompt: Optional[str] = None
    ) -> LlmResult:
        """Run ``prompt`` against ``model`` and return text plus token usage."""


class PydanticAIInvoker:
    """Invoke models through ``pydantic_ai.Agent``.

    Agents are cached per model and system prompt. ``model`` accepts anything
    ``Agent`` does, e.g. ``"openai:gpt-4o-mini"`` or a ``Model`` instance
    registered under a name via ``models``.
    """

    def __init__(self, models: Optional[Dict[str, object]] = None) -> None:
        self._models = dict(models or {})
        self._agents: Dict[Tuple[str, Optional[str]], Agent] = {}

    def _agent(self, model: str, system_prompt: Optional[str]) -> Agent:
        key = (model, system_prompt)
        if key not in self._agents:
            self._agents[key] = Agent(
                self._models.get(model, model),
                system_prompt=system_prompt or (),
            )
        return self._agents[key]

    async def invoke(
        self, model: str, prompt: str, system_prompt: Optional[str] = None
    ) -> LlmResult:
        result = await self._agent(model, system_prompt).run(prompt)
        usage = result.usage()
        input_tokens = getattr(usage, "input_tokens", None) or getattr(usage, "request_tokens", 0)
        output_tokens = getattr(usage, "output_tokens", None) or getattr(
            usage, "response_tokens", 0
        )
        logger.debug(f"LLM call on {model} used {input_tokens}+{output_tokens} tokens")
        return LlmResult(
            text=str(result.output),
            input_tokens=input_tokens or 0,
            output_tokens=output_tokens or 0,
        )
