"""Anthropic backend — direct API calls with tool_choice schema enforcement."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import TypeVar

import anthropic
from pydantic import BaseModel

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_MODEL_MAX_TOKENS: dict[str, int] = {
    "claude-opus-4-6": 32768,
    "claude-sonnet-4-5-20250929": 64000,
    "claude-haiku-4-5-20251001": 8192,
}
_DEFAULT_MAX_TOKENS_CAP = 8192


class AnthropicBackend:
    """Backend using the Anthropic API with tool_choice for structured extraction."""

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        api_key: str = "",
        timeout: float = 60.0,
    ) -> None:
        api_key = api_key or os.environ.get("ANTHROPIC_API_KEY", "")
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable is required.")

        self._client = anthropic.AsyncAnthropic(
            api_key=api_key,
            max_retries=2,
            timeout=timeout,
        )
        self._model = model
        self._timeout = timeout

    def _max_tokens_cap(self) -> int:
        return _MODEL_MAX_TOKENS.get(self._model, _DEFAULT_MAX_TOKENS_CAP)

    async def assess(
        self,
        schema: type[T],
        prompt: str,
        system: str,
        max_tokens: int = 1024,
    ) -> tuple[T, int, int]:
        """Call the model with schema enforcement via tool_choice.

        Raises RuntimeError when no tool_use block comes back and lets
        pydantic.ValidationError through when the block does not fit the schema.
        """
        tool_name = schema.__name__
        tool_schema = schema.model_json_schema()
        tool_schema.pop("title", None)

        try:
            message = await asyncio.wait_for(
                self._client.messages.create(
                    model=self._model,
                    max_tokens=min(max_tokens, self._max_tokens_cap()),
                    system=system,
                    messages=[{"role": "user", "content": prompt}],
                    tools=[{
                        "name": tool_name,
                        "description": schema.__doc__ or f"Extract {tool_name}",
                        "input_schema": tool_schema,
                    }],
                    tool_choice={"type": "tool", "name": tool_name},
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Anthropic API timed out after %.0fs for %s", self._timeout, tool_name)
            raise RuntimeError(
                f"Anthropic API timed out after {self._timeout:.0f}s for {tool_name}"
            )

        in_tok = message.usage.input_tokens
        out_tok = message.usage.output_tokens

        for block in message.content:
            if block.type == "tool_use" and block.name == tool_name:
                raw_input = self._coerce_fields(block.input)
                return schema.model_validate(raw_input), in_tok, out_tok

        raise RuntimeError(f"No tool_use block found for {tool_name}")

    @staticmethod
    def _coerce_fields(data: dict) -> dict:
        if not isinstance(data, dict):
            return data
        coerced = {}
        for key, value in data.items():
            if isinstance(value, str) and value.startswith(("[", "{")):
                try:
                    coerced[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    coerced[key] = value
            else:
                coerced[key] = value
        return coerced

    async def close(self) -> None:
        await self._client.close()
