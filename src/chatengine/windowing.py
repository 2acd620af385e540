"""Token-budgeted context windowing.

Keeps the system message (index 0) unconditionally, then takes the longest
oldest-first prefix of the remaining messages whose cumulative cost fits the
budget. The selection is never reordered.
"""

import logging
from dataclasses import dataclass
from typing import Sequence

from .config import TOKEN_RESERVE
from .models import Message
from .tokens import TokenCounter, default_counter

logger = logging.getLogger("chatengine.windowing")

__all__ = ["ContextWindower", "Window", "truncation_limit"]


def truncation_limit(
    max_tokens: int, reserve: int = TOKEN_RESERVE, threshold: int = TOKEN_RESERVE
) -> int:
    """Budget available to the windowed history.

    ``reserve`` is subtracted only when ``max_tokens >= threshold``; below the
    threshold the whole ``max_tokens`` is used. The threshold stays at 256
    when a custom reserve is configured.

    Example:
        >>> truncation_limit(4097)
        3841
        >>> truncation_limit(200)
        200
    """
    if max_tokens < threshold:
        return max_tokens
    return max(max_tokens - reserve, 0)


@dataclass(frozen=True)
class Window:
    """Result of a windowing pass.

    Attributes:
        messages: Selected messages in original order
        token_total: Summed cost of the selected messages
        dropped: Number of messages left out
    """

    messages: tuple[Message, ...]
    token_total: int
    dropped: int = 0


class ContextWindower:
    """Selects the prefix of a conversation that fits a token budget."""

    def __init__(self, counter: TokenCounter | None = None):
        self.counter = counter or default_counter

    def _cost(self, message: Message, model: str) -> int:
        # Only text-bearing messages are charged
        if not message.is_text_bearing:
            return 0
        return message.count_tokens(model, self.counter)

    def select(self, messages: Sequence[Message], budget: int, model: str) -> Window:
        """Select the windowed prefix.

        Args:
            messages: Conversation messages, system message first
            budget: Maximum cumulative token cost
            model: Model identifier passed to the counter

        Returns:
            Window whose messages always include messages[0]. If messages[0]
            alone exceeds the budget it is returned alone.
        """
        if not messages:
            return Window(messages=(), token_total=0)

        head = messages[0]
        selected = [head]
        total = self._cost(head, model)

        if total <= budget:
            for message in messages[1:]:
                cost = self._cost(message, model)
                if total + cost > budget:
                    break
                selected.append(message)
                total += cost

        dropped = len(messages) - len(selected)
        if dropped:
            logger.info(
                "context_window_truncated",
                extra={
                    "model": model,
                    "budget": budget,
                    "kept": len(selected),
                    "dropped": dropped,
                    "token_total": total,
                },
            )
        return Window(messages=tuple(selected), token_total=total, dropped=dropped)
