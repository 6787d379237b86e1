"""Token counting for context assembly.

Counts are what the context manager compares against its hard ceiling, so
the estimate mode errs high (chars/4, rounded up) rather than low.
"""

from __future__ import annotations

import json
import math
from typing import Any, Literal

import structlog

logger = structlog.get_logger()

# Chat-format framing: every message costs a fixed header, every request a
# fixed reply primer.
MESSAGE_OVERHEAD = 4
REPLY_PRIMER = 3


def _content_text(content: Any) -> str:
    """Flatten message content to the text a provider would see."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # Multi-part content: only text parts are billed as text
        return "".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        )
    return _compact_json(content)


def _compact_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


class TokenCounter:
    """Counts tokens exactly via tiktoken, or estimates at chars/4.

    The mode is fixed at construction: model=None always estimates, and a
    model tiktoken cannot resolve falls back to estimating with a warning.
    """

    def __init__(self, model: str | None) -> None:
        self._model = model
        self._encoding = None
        self._mode: Literal["exact", "estimate"] = "estimate"

        if model is None:
            return
        try:
            import tiktoken

            self._encoding = tiktoken.encoding_for_model(model)
            self._mode = "exact"
        except Exception:
            logger.warning("tokenizer_fallback", model=model, mode="estimate")

    @property
    def tokenizer_mode(self) -> Literal["exact", "estimate"]:
        return self._mode

    def count_text(self, text: str) -> int:
        if not text:
            return 0
        if self._encoding is not None:
            return len(self._encoding.encode(text))
        return math.ceil(len(text) / 4)

    def count_message(self, message: dict[str, Any]) -> int:
        """One chat message: header plus role, content, name and tool-call fields."""
        total = MESSAGE_OVERHEAD
        for key in ("role", "name", "tool_call_id"):
            if value := message.get(key):
                total += self.count_text(str(value))
        if (content := message.get("content")) is not None:
            total += self.count_text(_content_text(content))
        if tool_calls := message.get("tool_calls"):
            # Whole calls as JSON; they carry no text parts
            total += self.count_text(_compact_json(tool_calls))
        return total

    def count_messages(self, messages: list[dict[str, Any]]) -> int:
        return sum(self.count_message(m) for m in messages) + REPLY_PRIMER

    def count_payload(self, summary: str | None, messages: list[dict[str, Any]]) -> int:
        """Assembled context: the summary rides as one extra system message."""
        total = self.count_messages(messages)
        if summary:
            total += self.count_message({"role": "system", "content": summary})
        return total
