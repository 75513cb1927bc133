"""Anthropic LLM provider implementation.

Provides Claude model access via the Anthropic API.
"""

import logging
import os
from typing import Optional

from forgeloop.adapters.llm.base import (
    LLMProvider,
    LLMResponse,
    ModelSelector,
    Purpose,
)

logger = logging.getLogger(__name__)


class AnthropicProvider(LLMProvider):
    """Anthropic Claude provider.

    Uses the Anthropic Python SDK; the client is created on first use.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_selector: Optional[ModelSelector] = None,
    ):
        """Initialize the Anthropic provider.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            model_selector: Custom model selector

        Raises:
            ValueError: If no API key is available
        """
        super().__init__(model_selector)
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ValueError(
                "ANTHROPIC_API_KEY not set. "
                "Set the environment variable or pass api_key parameter."
            )
        self._client = None

    @property
    def client(self):
        """Lazy-load the Anthropic client."""
        if self._client is None:
            from anthropic import Anthropic

            self._client = Anthropic(api_key=self.api_key)
        return self._client

    def complete(
        self,
        messages: list[dict],
        purpose: Purpose = Purpose.EXECUTION,
        max_tokens: int = 8192,
        temperature: float = 0.0,
        system: Optional[str] = None,
    ) -> LLMResponse:
        model = self.get_model(purpose)

        kwargs = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
        }
        if temperature > 0:
            kwargs["temperature"] = temperature
        if system:
            kwargs["system"] = system

        response = self.client.messages.create(**kwargs)
        result = self._parse_response(response)
        logger.debug(
            f"Anthropic {purpose.value} call: model={result.model}, "
            f"tokens={result.input_tokens}+{result.output_tokens}"
        )
        return result

    def _parse_response(self, response) -> LLMResponse:
        content = "".join(block.text for block in response.content if block.type == "text")
        return LLMResponse(
            content=content,
            stop_reason=response.stop_reason,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
