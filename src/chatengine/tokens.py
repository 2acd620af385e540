"""Token counting strategies.

The default ``WordCountTokenCounter`` is a crude approximation (space-separated
words x 4). ``TiktokenTokenCounter`` counts exactly with tiktoken. Callers may
only rely on determinism and monotonicity, never on exactness.
"""

import logging
import threading
from typing import Protocol

import tiktoken

logger = logging.getLogger("chatengine.tokens")

__all__ = [
    "TiktokenTokenCounter",
    "TokenCounter",
    "WordCountTokenCounter",
    "default_counter",
]

TOKENS_PER_WORD = 4
FALLBACK_ENCODING = "cl100k_base"


class TokenCounter(Protocol):
    """Estimates the encoded-token cost of text for a model."""

    def count(self, text: str, model: str) -> int:
        ...


class WordCountTokenCounter:
    """Word-count heuristic: ``len(text.split(" ")) * 4``.

    Empty text costs nothing. Non-empty text is split on single spaces, so
    repeated spaces count as extra words; this overestimates, which keeps
    windowing conservative.
    """

    def __init__(self, tokens_per_word: int = TOKENS_PER_WORD):
        self.tokens_per_word = tokens_per_word

    def count(self, text: str, model: str) -> int:
        if not text:
            return 0
        return len(text.split(" ")) * self.tokens_per_word


class TiktokenTokenCounter:
    """Exact counting with tiktoken.

    Encoders are resolved with ``encoding_for_model`` and cached per model;
    unknown models fall back to cl100k_base.
    """

    def __init__(self, fallback_encoding: str = FALLBACK_ENCODING):
        self.fallback_encoding = fallback_encoding
        self._encoders: dict[str, tiktoken.Encoding] = {}
        self._lock = threading.Lock()

    def _encoder(self, model: str) -> tiktoken.Encoding:
        with self._lock:
            encoder = self._encoders.get(model)
            if encoder is None:
                try:
                    encoder = tiktoken.encoding_for_model(model)
                except KeyError:
                    logger.debug(
                        "tiktoken_model_unknown",
                        extra={"model": model, "fallback": self.fallback_encoding},
                    )
                    encoder = tiktoken.get_encoding(self.fallback_encoding)
                self._encoders[model] = encoder
            return encoder

    def count(self, text: str, model: str) -> int:
        if not text:
            return 0
        return len(self._encoder(model).encode(text))


default_counter = WordCountTokenCounter()
