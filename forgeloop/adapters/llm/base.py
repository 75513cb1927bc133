"""Base LLM adapter interface.

Defines the protocol every LLM provider implements, along with the response
type the correction providers consume.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Purpose(str, Enum):
    """Purpose of an LLM call, used for model selection."""

    EXECUTION = "execution"  # First edit set for a task
    CORRECTION = "correction"  # Follow-up edit set after a failed round


# Default model aliases (use latest versions automatically)
DEFAULT_EXECUTION_MODEL = "claude-sonnet-4-5"
DEFAULT_CORRECTION_MODEL = "claude-opus-4-5"


@dataclass
class ModelSelector:
    """Purpose-based model selection.

    Model names can be overridden via environment variables:
    - FORGELOOP_EXECUTION_MODEL
    - FORGELOOP_CORRECTION_MODEL
    """

    execution_model: str = ""
    correction_model: str = ""

    def __post_init__(self):
        self.execution_model = self.execution_model or os.getenv(
            "FORGELOOP_EXECUTION_MODEL", DEFAULT_EXECUTION_MODEL
        )
        self.correction_model = self.correction_model or os.getenv(
            "FORGELOOP_CORRECTION_MODEL", DEFAULT_CORRECTION_MODEL
        )

    def for_purpose(self, purpose: Purpose) -> str:
        if purpose == Purpose.CORRECTION:
            return self.correction_model
        return self.execution_model


@dataclass
class LLMResponse:
    """Response from an LLM completion.

    Attributes:
        content: Text content of the response
        stop_reason: Why the model stopped generating
        model: Model that generated this response
        input_tokens: Number of input tokens used
        output_tokens: Number of output tokens generated
    """

    content: str
    stop_reason: str = "end_turn"
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    Model selection is handled via the purpose parameter.
    """

    def __init__(self, model_selector: Optional[ModelSelector] = None):
        self.model_selector = model_selector or ModelSelector()

    @abstractmethod
    def complete(
        self,
        messages: list[dict],
        purpose: Purpose = Purpose.EXECUTION,
        max_tokens: int = 8192,
        temperature: float = 0.0,
        system: Optional[str] = None,
    ) -> LLMResponse:
        """Generate a completion.

        Args:
            messages: Conversation messages (``{"role", "content"}`` dicts)
            purpose: Purpose of call (for model selection)
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature
            system: System prompt

        Returns:
            LLMResponse with the generated text
        """

    def get_model(self, purpose: Purpose) -> str:
        return self.model_selector.for_purpose(purpose)
