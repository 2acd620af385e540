"""Web-conversation backend (full-replacement framing).

Talks to the conversation endpoint of the web chat frontend (or a proxy of
it). The server keeps the history: each request carries only the new user
message and the id of its parent, and every stream frame repeats the whole
reply so far. The server assigns the conversation id on the first exchange;
it is adopted while streaming and sent on every later request.
"""

import logging
import time
from enum import Enum
from typing import Optional, Union

from pydantic import SecretStr

from ..client import CompletionClient
from ..config import EngineConfig, get_config
from ..errors import classify_auth_error, classify_error_body, error_from_record
from ..models import Conversation, Message
from ..retry import RetryPolicy
from ..streaming import DeltaEvent, FramingMode
from ..tokens import TokenCounter
from ..transport import HttpTransport

logger = logging.getLogger("chatengine.backends.web")

__all__ = ["WebConversationBackend", "WebModel"]

WEB_REFERER = "https://chat.openai.com/chat"


class WebModel(str, Enum):
    DEFAULT_GPT3 = "text-davinci-002-render-sha"
    LEGACY_GPT3 = "text-davinci-002-render-paid"
    GPT4 = "gpt-4"


def _timezone_offset_minutes() -> int:
    # Minutes to add to local time to get UTC, positive west of Greenwich
    offset = time.altzone if time.localtime().tm_isdst > 0 else time.timezone
    return offset // 60


class WebConversationBackend(CompletionClient):
    """Streaming client for the web conversation API.

    No system message is seeded; the server applies its own.

    Example:
        >>> async with WebConversationBackend(access_token="eyJ...") as web:
        ...     reply = await web.ask("Hello")
        ...     await web.rename("Greetings")
    """

    name = "web"
    framing = FramingMode.FULL_REPLACEMENT

    def __init__(
        self,
        access_token: Union[str, SecretStr, None] = None,
        model: Union[WebModel, str] = WebModel.DEFAULT_GPT3,
        api_prefix: Optional[str] = None,
        puid: str = "",
        conversation: Optional[Conversation] = None,
        transport: Optional[HttpTransport] = None,
        retry_policy: Optional[RetryPolicy] = None,
        counter: Optional[TokenCounter] = None,
        config: Optional[EngineConfig] = None,
        server_conversation_id: Optional[str] = None,
    ):
        """Initialize the backend.

        Args:
            access_token: Bearer access token (default: config.web_access_token)
            model: Web model identifier
            api_prefix: API base ending in ``/`` (default: config.web_api_prefix)
            puid: Optional ``_puid`` cookie value
            conversation: Local mirror of the server-side conversation
            transport: Shared HTTP transport
            retry_policy: Retry policy override
            counter: Token counter override
            config: Engine configuration (default: get_config())
            server_conversation_id: Id of an existing server-side conversation
                to continue
        """
        config = config or get_config()
        super().__init__(
            conversation=conversation,
            transport=transport,
            retry_policy=retry_policy,
            counter=counter,
            config=config,
        )
        if access_token is None:
            access_token = config.web_access_token or SecretStr("")
        if isinstance(access_token, str):
            access_token = SecretStr(access_token)
        self.access_token = access_token
        self._model = model.value if isinstance(model, WebModel) else model
        prefix = api_prefix or config.web_api_prefix
        self.api_prefix = prefix if prefix.endswith("/") else prefix + "/"
        self.puid = puid
        self.server_conversation_id = server_conversation_id
        if server_conversation_id:
            self.conversation.id = server_conversation_id

    @property
    def model(self) -> str:
        return self._model

    def endpoint(self) -> str:
        return f"{self.api_prefix}conversation"

    def headers(self) -> dict[str, str]:
        headers = {
            "Accept": "text/event-stream",
            "Authorization": f"Bearer {self.access_token.get_secret_value()}",
            "Content-Type": "application/json",
            "Accept-Language": "en-US,en;q=0.9",
            "Referer": WEB_REFERER,
        }
        if self.puid:
            headers["Cookie"] = f"_puid={self.puid};"
        return headers

    def validate_exchange(self, user_text: Optional[str]) -> None:
        if not user_text:
            raise ValueError("The web conversation backend requires user text for every exchange")

    def build_payload(self, user_message: Optional[Message]) -> dict:
        payload = {
            "action": "next",
            "messages": [
                {
                    "id": user_message.id,
                    "author": {"role": user_message.role.value},
                    "content": {"content_type": "text", "parts": [user_message.content]},
                }
            ],
            "parent_message_id": user_message.parent_id,
            "model": self.model,
            "timezone_offset_min": _timezone_offset_minutes(),
            "variant_purpose": "none",
        }
        if self.server_conversation_id:
            payload["conversation_id"] = self.server_conversation_id
        return payload

    def stream_parent_id(self) -> str:
        return self.conversation.current_message.parent_id

    def on_stream_event(self, event: DeltaEvent) -> None:
        if event.conversation_id and event.conversation_id != self.server_conversation_id:
            self.server_conversation_id = event.conversation_id
            self.conversation.id = event.conversation_id
            logger.info(
                "web_conversation_adopted",
                extra={"conversation_id": event.conversation_id},
            )

    async def rename(self, title: str) -> None:
        """Set the conversation title locally and on the server.

        The server call is skipped until the server has assigned an id.

        Raises:
            CompletionError: If the server rejects the rename
        """
        self.conversation.title = title
        if not self.server_conversation_id:
            logger.debug("web_rename_deferred", extra={"title": title})
            return

        status, body = await self.transport.request_json(
            "PATCH",
            f"{self.api_prefix}conversation/{self.server_conversation_id}",
            headers=self.headers(),
            json={"title": title},
        )
        if status == 401:
            raise error_from_record(classify_auth_error(body, self.model, status))
        if not 200 <= status < 300:
            raise error_from_record(classify_error_body(body, status))
        logger.info(
            "web_conversation_renamed",
            extra={"conversation_id": self.server_conversation_id},
        )
