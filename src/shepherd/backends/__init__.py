"""Backend protocol + factory — decouples the advisory policy from the provider.

Backend is a Protocol: any class implementing assess/close
can serve advisory calls. Factory creates backends by name.
"""

from __future__ import annotations

from typing import Protocol, TypeVar

from pydantic import BaseModel

T = TypeVar("T", bound=BaseModel)


class Backend(Protocol):
    """Protocol for reasoning backends — structured extraction."""

    async def assess(
        self,
        schema: type[T],
        prompt: str,
        system: str,
        max_tokens: int = 1024,
    ) -> tuple[T, int, int]:
        """Call the model with schema enforcement. Returns (result, input_tokens, output_tokens)."""
        ...

    async def close(self) -> None:
        """Release resources."""
        ...


def create_backend(name: str, model: str, api_key: str = "", timeout: float = 60.0) -> Backend:
    """Factory: create a Backend by name."""
    if name == "anthropic":
        from shepherd.backends.anthropic import AnthropicBackend
        return AnthropicBackend(model=model, api_key=api_key, timeout=timeout)
    raise ValueError(f"Unknown backend: {name}. Available: anthropic")
