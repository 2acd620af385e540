"""Completion exchange orchestration.

``CompletionClient`` owns one Conversation and runs exchanges against it:

1. Reject the call if the conversation is busy (no state is touched)
2. Append the user message, parented to the current last message
3. Build the backend-specific payload from the windowed history
4. Submit through the RetryPolicy (only the network call is repeated)
5. Append an empty assistant message and stream deltas into it, replacing it
   wholesale on every fragment and invoking the caller's callback
6. Release the busy flag, whatever happened

Per-exchange states: Idle -> Sending -> Streaming -> Idle, or -> Failed.
Backends subclass this and supply endpoint, headers, payload and framing.
"""

import asyncio
import inspect
import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Optional, Union

import httpx

from .config import EngineConfig, get_config
from .errors import (
    ConversationBusyError,
    ErrorKind,
    ErrorRecord,
    classify_auth_error,
    classify_error_body,
    error_from_record,
)
from .metrics import exchange_duration_seconds, exchanges_total
from .models import Conversation, Message, Role, new_id
from .retry import (
    FatalFailure,
    Outcome,
    RetryableFailure,
    RetryPolicy,
    Success,
    is_retryable_status,
    parse_retry_after,
)
from .streaming import DeltaEvent, FramingMode, StreamDecoder
from .tokens import TokenCounter, default_counter
from .transport import HttpTransport, read_error_body
from .windowing import ContextWindower

logger = logging.getLogger("chatengine.client")

__all__ = ["CompletionClient", "DeltaCallback", "ExchangeState", "invoke_callback"]

DeltaCallback = Callable[[Message, Message], Union[None, Awaitable[None]]]


class ExchangeState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    FAILED = "failed"


async def invoke_callback(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """Call a sync or async callback."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class CompletionClient(ABC):
    """Base class for streaming completion backends.

    Subclasses set ``name`` and ``framing`` and implement ``endpoint``,
    ``headers``, ``model`` and ``build_payload``.
    """

    name: ClassVar[str] = "completion"
    framing: ClassVar[FramingMode] = FramingMode.DELTA

    def __init__(
        self,
        conversation: Optional[Conversation] = None,
        transport: Optional[HttpTransport] = None,
        retry_policy: Optional[RetryPolicy] = None,
        counter: Optional[TokenCounter] = None,
        config: Optional[EngineConfig] = None,
    ):
        """Initialize the client.

        Args:
            conversation: Conversation to own (default: a fresh one)
            transport: Shared HTTP transport (default: a new HttpTransport)
            retry_policy: Retry policy (default: built from config)
            counter: Token counter (default: word-count heuristic)
            config: Engine configuration (default: get_config())
        """
        self.config = config or get_config()
        self.conversation = conversation if conversation is not None else Conversation()
        self._owns_transport = transport is None
        self.transport = transport or HttpTransport(timeout=self.config.request_timeout)
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config)
        self.counter = counter or default_counter
        self.windower = ContextWindower(self.counter)
        self.state = ExchangeState.IDLE

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def model(self) -> str:
        """Model identifier used for requests and error classification."""

    @abstractmethod
    def endpoint(self) -> str:
        """URL the exchange request is POSTed to."""

    @abstractmethod
    def headers(self) -> dict[str, str]:
        """Request headers, including the bearer credential."""

    @abstractmethod
    def build_payload(self, user_message: Optional[Message]) -> dict:
        """JSON body for one exchange."""

    def validate_exchange(self, user_text: Optional[str]) -> None:
        """Reject unusable arguments before any state changes."""

    def clean_fragment(self, fragment: str, index: int) -> str:
        """Normalise the ``index``-th fragment of a stream."""
        return fragment

    def stream_parent_id(self) -> str:
        """Parent id given to each streamed replacement of the reply.

        Default: the id of the message that precedes the reply.
        """
        messages = self.conversation.messages
        if len(messages) >= 2:
            return messages[-2].id
        return messages[-1].parent_id

    def on_stream_event(self, event: DeltaEvent) -> None:
        """Observe every decoded event (e.g. to adopt server-side ids)."""

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self.conversation.busy

    async def exchange(
        self,
        user_text: Optional[str] = None,
        on_delta: Optional[DeltaCallback] = None,
    ) -> Message:
        """Run one request/stream exchange against the conversation.

        Args:
            user_text: New user turn; None re-prompts with the existing history
            on_delta: Called as ``on_delta(fragment_message, full_message)``
                for every text fragment; may be sync or async

        Returns:
            The final assistant message

        Raises:
            ConversationBusyError: If another exchange is in flight (no mutation)
            CompletionError: On fatal upstream failure or exhausted retries
        """
        if self.conversation.busy:
            exchanges_total.labels(self.name, "rejected").inc()
            logger.warning(
                "exchange_rejected_busy",
                extra={"backend": self.name, "conversation_id": self.conversation.id},
            )
            raise ConversationBusyError(
                f"Conversation {self.conversation.id} already has an exchange in flight"
            )
        self.validate_exchange(user_text)

        start = time.perf_counter()
        with self.conversation.exclusive():
            try:
                final = await self._run_exchange(user_text, on_delta)
            except asyncio.CancelledError:
                self.state = ExchangeState.IDLE
                exchanges_total.labels(self.name, "cancelled").inc()
                logger.info(
                    "exchange_cancelled",
                    extra={"backend": self.name, "conversation_id": self.conversation.id},
                )
                raise
            except Exception as e:
                self.state = ExchangeState.FAILED
                exchanges_total.labels(self.name, "failed").inc()
                logger.error(
                    "exchange_failed",
                    extra={
                        "backend": self.name,
                        "conversation_id": self.conversation.id,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                raise

        duration = time.perf_counter() - start
        self.state = ExchangeState.IDLE
        exchanges_total.labels(self.name, "success").inc()
        exchange_duration_seconds.labels(self.name).observe(duration)
        logger.info(
            "exchange_completed",
            extra={
                "backend": self.name,
                "conversation_id": self.conversation.id,
                "duration_ms": round(duration * 1000, 2),
                "attempts": self.retry_policy.state.attempts,
                "response_chars": len(final.content),
            },
        )
        return final

    async def ask(self, text: Optional[str] = None) -> Message:
        """``exchange`` without a callback, returning the final message."""
        return await self.exchange(text)

    async def aclose(self) -> None:
        if self._owns_transport:
            await self.transport.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_exchange(
        self, user_text: Optional[str], on_delta: Optional[DeltaCallback]
    ) -> Message:
        self.state = ExchangeState.SENDING

        user_message: Optional[Message] = None
        if user_text:
            current = self.conversation.current_message
            user_message = Message(
                user_text,
                Role.USER,
                parent_id=current.id if current is not None else new_id(),
            )
            self.conversation.add_message(user_message)

        payload = self.build_payload(user_message)
        response = await self.submit(payload)

        self.state = ExchangeState.STREAMING
        try:
            return await self._stream_reply(response, on_delta)
        finally:
            await response.aclose()

    async def submit(self, payload: dict) -> httpx.Response:
        """POST ``payload`` through the retry policy.

        Returns:
            Open 2xx streaming response

        Raises:
            CompletionError: Fatal failure or retry exhaustion
        """
        url = self.endpoint()
        headers = self.headers()

        async def attempt() -> Outcome:
            return await self._attempt(url, headers, payload)

        outcome = await self.retry_policy.execute(attempt)
        if isinstance(outcome, FatalFailure):
            raise error_from_record(outcome.error)
        return outcome.payload

    async def _attempt(self, url: str, headers: dict[str, str], payload: dict) -> Outcome:
        try:
            response = await self.transport.open_stream("POST", url, headers=headers, json=payload)
        except httpx.TransportError as e:
            return FatalFailure(
                ErrorRecord(
                    kind=ErrorKind.UNKNOWN,
                    message=f"Connection to completion service failed: {e}",
                    code="connection_error",
                    status=0,
                )
            )

        if response.is_success:
            return Success(response)

        status = response.status_code
        retry_after = parse_retry_after(response.headers.get("retry-after"))
        body = await read_error_body(response)

        if status == 401:
            return FatalFailure(classify_auth_error(body, self.model, status))
        if is_retryable_status(status):
            return RetryableFailure(status=status, retry_after=retry_after, raw=body)
        return FatalFailure(classify_error_body(body, status))

    async def _stream_reply(
        self, response: httpx.Response, on_delta: Optional[DeltaCallback]
    ) -> Message:
        current = self.conversation.current_message
        placeholder = Message(
            "",
            Role.ASSISTANT,
            parent_id=current.id if current is not None else new_id(),
        )
        self.conversation.add_message(placeholder)

        decoder = StreamDecoder(self.framing)
        message_id = placeholder.id
        role = Role.ASSISTANT
        full_text = ""
        index = 0

        async for event in decoder.events(response.aiter_bytes()):
            self.on_stream_event(event)
            if event.role is not None:
                role = event.role
            if event.message_id:
                message_id = event.message_id
            if event.is_final:
                break

            fragment = self.clean_fragment(event.fragment, index) if event.fragment else ""
            if event.fragment:
                index += 1
            if not fragment:
                continue

            full_text += fragment
            parent_id = self.stream_parent_id()
            full = Message(full_text, role, id=message_id, parent_id=parent_id)
            self.conversation.update_current_message(full)
            await invoke_callback(
                on_delta,
                Message(fragment, role, id=message_id, parent_id=parent_id),
                full,
            )

        final = self.conversation.current_message
        if final.id != message_id or final.role != role:
            final = final.replace(id=message_id, role=role)
            self.conversation.update_current_message(final)
        return final
