"""Offline LLM provider that replays recorded edit sets.

Backs the test suite and ``forgeloop run --provider mock``. Each completion
returns the next queued answer, already shaped as the JSON code output that
``LLMCorrectionProvider`` parses. Once the queue runs dry it answers with a
valid but empty edit set, which the correction loop counts as an unusable
round.
"""

import json
from collections import deque
from typing import TYPE_CHECKING, Iterable, Optional

from forgeloop.adapters.llm.base import (
    LLMProvider,
    LLMResponse,
    ModelSelector,
    Purpose,
)

if TYPE_CHECKING:
    from forgeloop.core.models import FileChange


def render_edit_set(changes: Iterable["FileChange"], description: str = "Replayed edit set") -> str:
    """Serialize FileChanges the way a model is asked to answer."""
    return json.dumps({
        "description": description,
        "risk": 1,
        "rollback": "",
        "files": [change.to_dict() for change in changes],
    })


EMPTY_EDIT_SET = render_edit_set([], "No changes proposed")


class MockProvider(LLMProvider):
    """Replays queued answers and records every request it sees."""

    def __init__(
        self,
        default_response: str = EMPTY_EDIT_SET,
        model_selector: Optional[ModelSelector] = None,
    ):
        super().__init__(model_selector)
        self.default_response = default_response
        self.calls: list[dict] = []
        self._queue: deque[str] = deque()

    def add_text_response(self, content: str) -> None:
        """Queue a raw answer, returned verbatim."""
        self._queue.append(content)

    def add_edit_set(self, changes: Iterable["FileChange"], description: str = "Replayed edit set") -> None:
        self._queue.append(render_edit_set(changes, description))

    @property
    def pending(self) -> int:
        return len(self._queue)

    def complete(
        self,
        messages: list[dict],
        purpose: Purpose = Purpose.EXECUTION,
        max_tokens: int = 8192,
        temperature: float = 0.0,
        system: Optional[str] = None,
    ) -> LLMResponse:
        model = self.get_model(purpose)
        self.calls.append({
            "messages": messages,
            "purpose": purpose,
            "system": system,
            "model": model,
        })

        content = self._queue.popleft() if self._queue else self.default_response
        return LLMResponse(content=content, model=model)

    @property
    def call_count(self) -> int:
        return len(self.calls)

    @property
    def last_call(self) -> Optional[dict]:
        return self.calls[-1] if self.calls else None
