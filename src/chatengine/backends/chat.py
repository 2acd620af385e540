"""Chat-completion backend (delta framing).

Sends the windowed history as a ``messages`` list to ``/chat/completions``.
Roles outside system/user/assistant are sent as ``user`` with a ``name``.
"""

import logging
from typing import Optional

import httpx

from ..availability import ModelAvailabilityCache
from ..errors import classify_auth_error, classify_error_body, error_from_record
from ..models import Message
from ..streaming import FramingMode
from .base import ModelSpec, OpenAIBackend, _utc

logger = logging.getLogger("chatengine.backends.chat")

__all__ = ["CHAT_MODELS", "ChatCompletionBackend"]

CHAT_MODELS: dict[str, ModelSpec] = {
    "gpt-3.5-turbo": ModelSpec("gpt-3.5-turbo", 4097, _utc(2021, 9, 1)),
    "gpt-4": ModelSpec("gpt-4", 8191, _utc(2021, 9, 1)),
    "gpt-4-32k": ModelSpec("gpt-4-32k", 32767, _utc(2021, 9, 1)),
}

CHAT_SYSTEM_MESSAGE = (
    "You are ChatGPT, a large language model powered by {running_model} trained "
    "by OpenAI. Answer as concisely as possible. Knowledge cutoff: "
    "{knowledge_cutoff} Current date: {current_date}"
)


def to_api_message(message: Message) -> dict[str, str]:
    """Convert a Message to the chat API's ``{role, content[, name]}`` shape."""
    if message.role.is_named:
        return {"role": "user", "content": message.content, "name": message.role.name}
    return {"role": message.role.value, "content": message.content}


class ChatCompletionBackend(OpenAIBackend):
    """Streaming chat-completion client.

    Example:
        >>> options = BackendOptions(api_key="sk-...", model="gpt-4")
        >>> async with ChatCompletionBackend(options) as chat:
        ...     reply = await chat.ask("Hello")
    """

    name = "chat"
    framing = FramingMode.DELTA
    MODELS = CHAT_MODELS
    DEFAULT_SYSTEM_MESSAGE = CHAT_SYSTEM_MESSAGE

    def __init__(self, *args, availability: Optional[ModelAvailabilityCache] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.availability = availability or ModelAvailabilityCache(
            ttl_seconds=self.config.availability_ttl_seconds
        )

    def endpoint(self) -> str:
        return f"{self.api_base}/chat/completions"

    def build_payload(self, user_message: Optional[Message]) -> dict:
        window = self.window()
        payload = self.options.request_parameters()
        payload.update(
            {
                "messages": [to_api_message(m) for m in window.messages],
                "max_tokens": self.response_budget(window),
                "stream": True,
            }
        )
        return payload

    # ------------------------------------------------------------------
    # Credential and model checks
    # ------------------------------------------------------------------

    async def check_auth(self) -> bool:
        """True if the credential can list models."""
        try:
            status, _ = await self.transport.request_json(
                "GET", f"{self.api_base}/models", headers=self.headers()
            )
        except httpx.TransportError as e:
            logger.warning("auth_check_failed", extra={"error": str(e)})
            return False
        return status == 200

    async def check_model(self) -> bool:
        """True if the configured model is accessible with the credential."""
        try:
            status, _ = await self.transport.request_json(
                "GET", f"{self.api_base}/models/{self.model}", headers=self.headers()
            )
        except httpx.TransportError as e:
            logger.warning("model_check_failed", extra={"error": str(e), "model": self.model})
            return False
        return status == 200

    async def check_availability(self) -> dict[str, bool]:
        """Which chat models the credential can use, memoised per credential.

        Raises:
            CompletionError: If the model listing is rejected
        """
        credential = self.options.api_key.get_secret_value()
        if not credential:
            return {model: False for model in CHAT_MODELS}
        return await self.availability.get_or_refresh(credential, self._fetch_availability)

    async def _fetch_availability(self) -> dict[str, bool]:
        status, body = await self.transport.request_json(
            "GET", f"{self.api_base}/models", headers=self.headers()
        )
        if status != 200:
            if status == 401:
                raise error_from_record(classify_auth_error(body, self.model, status))
            raise error_from_record(classify_error_body(body, status))

        data = body.get("data", []) if isinstance(body, dict) else []
        listed = {entry.get("id") for entry in data if isinstance(entry, dict)}
        return {model: model in listed for model in CHAT_MODELS}
