"""Token estimates, running totals and the compression decision."""

from __future__ import annotations

import math
from collections.abc import Iterable

from .messages import MediaPart, Message, TextPart, UsageEvent
from .specs import CodecKind

# Lowest compress_threshold accepted anywhere in the core.
MIN_COMPRESS_THRESHOLD = 1000

# Role/formatting overhead charged per message.
MESSAGE_OVERHEAD = 4

# Flat charge for one image part.
MEDIA_TOKENS = 85

# Tokenizers differ per provider family; scale the character heuristic.
_PROVIDER_SCALE: dict[str, float] = {
    CodecKind.OPENAI: 1.0,
    CodecKind.OPENAI_COMPATIBLE: 1.0,
    CodecKind.CLAUDE: 1.1,
    CodecKind.GEMINI: 1.0,
    CodecKind.VERTEXAI: 1.0,
    CodecKind.OLLAMA: 1.1,
}


def estimate_text(text: str) -> int:
    """Estimate tokens in *text*: ~4 ASCII chars per token, 1 per other char."""
    if not text:
        return 0
    ascii_chars = sum(1 for ch in text if ord(ch) < 128)
    other = len(text) - ascii_chars
    return math.ceil(ascii_chars / 4) + other


def should_compress(running_total: int, max_input_tokens: int, threshold: int) -> bool:
    """True when the context reached *threshold* and the threshold fits the window.

    Raises:
        ValueError: If *threshold* is below :data:`MIN_COMPRESS_THRESHOLD`.
    """
    if threshold < MIN_COMPRESS_THRESHOLD:
        msg = f"compress_threshold must be >= {MIN_COMPRESS_THRESHOLD}, got {threshold}"
        raise ValueError(msg)
    return running_total >= threshold and threshold <= max_input_tokens


def budget_remaining(running_total: int, max_input_tokens: int) -> int:
    """Tokens left in the window; negative when the context already overflows."""
    return max_input_tokens - running_total


class TokenAccountant:
    """Tracks the estimated size of one session's context.

    Exact ``Usage`` from a provider supersedes the estimate: later appends are
    added on top of the exact baseline as estimate deltas.
    """

    def __init__(self, kind: CodecKind | str | None = None) -> None:
        self._scale = _PROVIDER_SCALE.get(str(kind), 1.0) if kind is not None else 1.0
        self._running_total = 0
        self._exact_baseline: int | None = None
        self._estimate_baseline = 0

    @property
    def running_total(self) -> int:
        return self._running_total

    def estimate(self, message: Message) -> int:
        """Estimate the tokens *message* costs in a request."""
        tokens = 0
        for part in message.content:
            if isinstance(part, TextPart):
                tokens += estimate_text(part.text)
            elif isinstance(part, MediaPart):
                tokens += MEDIA_TOKENS
        return math.ceil(tokens * self._scale) + MESSAGE_OVERHEAD

    def estimate_all(self, messages: Iterable[Message]) -> int:
        return sum(self.estimate(m) for m in messages)

    def recompute(self, history: Iterable[Message]) -> int:
        """Recompute the running total after an append."""
        estimated = self.estimate_all(history)
        if self._exact_baseline is None:
            self._running_total = estimated
        else:
            delta = estimated - self._estimate_baseline
            self._running_total = max(0, self._exact_baseline + delta)
        return self._running_total

    def reconcile(self, usage: UsageEvent, history: Iterable[Message]) -> int:
        """Adopt provider-reported usage as the new exact baseline."""
        self._exact_baseline = max(0, usage.total_tokens)
        self._estimate_baseline = self.estimate_all(history)
        self._running_total = self._exact_baseline
        return self._running_total

    def reset(self, history: Iterable[Message]) -> int:
        """Drop any exact baseline (after compression or a model switch)."""
        self._exact_baseline = None
        self._estimate_baseline = 0
        return self.recompute(history)

    def set_kind(self, kind: CodecKind | str) -> None:
        self._scale = _PROVIDER_SCALE.get(str(kind), 1.0)
