"""Shared pieces of the API-key backends (chat and prompt completions).

Holds the model catalogue (context ceilings, knowledge cutoffs), the system
message template rendering, and the ``OpenAIBackend`` base that owns
BackendOptions, windowing and the seeded system message.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Callable, Optional

from ..client import CompletionClient
from ..config import BackendOptions, EngineConfig, get_config
from ..metrics import tokens_requested_total
from ..models import Conversation, Message, Role
from ..retry import RetryPolicy
from ..tokens import TokenCounter
from ..transport import HttpTransport
from ..windowing import Window, truncation_limit

logger = logging.getLogger("chatengine.backends")

__all__ = ["ModelSpec", "OpenAIBackend", "render_system_message"]


@dataclass(frozen=True)
class ModelSpec:
    """Static facts about a model.

    Attributes:
        name: Model identifier
        context_ceiling: Largest max_tokens the model accepts
        knowledge_cutoff: Training data cutoff (UTC)
    """

    name: str
    context_ceiling: int
    knowledge_cutoff: datetime


def _utc(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, tzinfo=timezone.utc)


def render_system_message(
    template: str,
    spec: ModelSpec,
    now: Optional[datetime] = None,
) -> str:
    """Substitute {knowledge_cutoff}, {current_date} and {running_model}.

    Dates are rendered in RFC 1123 form, e.g. ``Wed, 01 Sep 2021 00:00:00 GMT``.
    """
    now = now or datetime.now(timezone.utc)
    return (
        template.replace("{knowledge_cutoff}", format_datetime(spec.knowledge_cutoff, usegmt=True))
        .replace("{current_date}", format_datetime(now.astimezone(timezone.utc), usegmt=True))
        .replace("{running_model}", spec.name)
    )


class OpenAIBackend(CompletionClient):
    """Base for backends authenticated with an API key.

    Subclasses provide ``MODELS``, ``DEFAULT_SYSTEM_MESSAGE`` and
    ``build_payload``.
    """

    MODELS: dict[str, ModelSpec] = {}
    DEFAULT_SYSTEM_MESSAGE: str = ""
    # Extra tokens consumed by a backend's own prompt wrapping
    PROMPT_OVERHEAD: int = 0
    # EngineConfig field naming the model used when options leave it unset
    MODEL_CONFIG_FIELD: str = "chat_model"

    def __init__(
        self,
        options: BackendOptions,
        conversation: Optional[Conversation] = None,
        transport: Optional[HttpTransport] = None,
        retry_policy: Optional[RetryPolicy] = None,
        counter: Optional[TokenCounter] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the backend and seed the system message.

        Args:
            options: Per-instance configuration; a missing model is taken
                from ``config.<MODEL_CONFIG_FIELD>``
            conversation: Existing conversation to continue; a system message
                is appended only when it is empty
            transport: Shared HTTP transport
            retry_policy: Retry policy override
            counter: Token counter override
            config: Engine configuration (default: get_config())
            clock: Returns "now" for {current_date} substitution
        """
        config = config or get_config()
        super().__init__(
            conversation=conversation,
            transport=transport,
            retry_policy=retry_policy,
            counter=counter,
            config=config,
        )
        if options.model is None:
            options = options.model_copy(
                update={"model": getattr(config, self.MODEL_CONFIG_FIELD)}
            )
        self.options = options
        self.spec = self.spec_for(options.model)
        self.max_tokens = int(options.max_tokens or self.spec.context_ceiling)
        self.token_truncate_limit = truncation_limit(self.max_tokens, config.token_reserve)
        self.api_base = config.openai_api_base.rstrip("/")
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        if len(self.conversation) == 0:
            self.conversation.add_message(self.system_message())

        logger.info(
            "backend_initialized",
            extra={
                "backend": self.name,
                "model": self.spec.name,
                "max_tokens": self.max_tokens,
                "token_truncate_limit": self.token_truncate_limit,
            },
        )

    @classmethod
    def spec_for(cls, model: str) -> ModelSpec:
        spec = cls.MODELS.get(model)
        if spec is None:
            fallback = next(iter(cls.MODELS.values()))
            logger.warning(
                "model_spec_unknown",
                extra={"model": model, "fallback_ceiling": fallback.context_ceiling},
            )
            spec = ModelSpec(model, fallback.context_ceiling, fallback.knowledge_cutoff)
        return spec

    @property
    def model(self) -> str:
        return self.options.model

    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.options.api_key.get_secret_value()}",
            "Content-Type": "application/json",
        }

    def system_message(self) -> Message:
        """Fresh system message rendered from the configured template."""
        template = self.options.system_message or self.DEFAULT_SYSTEM_MESSAGE
        return Message(render_system_message(template, self.spec, self._clock()), Role.SYSTEM)

    def reset(self) -> None:
        """Discard the history and re-seed the system message."""
        self.conversation.reset(self.system_message())

    def window(self) -> Window:
        """Windowed history for the next request."""
        return self.windower.select(
            self.conversation.messages, self.token_truncate_limit, self.model
        )

    def response_budget(self, window: Window) -> int:
        """Tokens left for the response after the windowed history."""
        budget = self.max_tokens - window.token_total - self.PROMPT_OVERHEAD
        tokens_requested_total.labels(self.name, "prompt").inc(window.token_total)
        tokens_requested_total.labels(self.name, "completion_budget").inc(max(budget, 0))
        return budget
