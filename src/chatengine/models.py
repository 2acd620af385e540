"""Conversation data model.

- Role: tagged variant System | User | Assistant | Named(name)
- Message: immutable, replaced wholesale while streaming
- Conversation: append-only log with a replaceable current message and a
  busy flag that guards against concurrent exchanges
"""

import dataclasses
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Iterator, Optional
from uuid import uuid4

from .errors import ConversationBusyError
from .tokens import TokenCounter, default_counter

logger = logging.getLogger("chatengine.models")

__all__ = ["Conversation", "Message", "Role", "RoleKind", "new_id"]

DEFAULT_TITLE = "New chat"


def new_id() -> str:
    """Fresh message/conversation identifier."""
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RoleKind(str, Enum):
    """Tag of a Role variant."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    NAMED = "named"


@dataclass(frozen=True)
class Role:
    """Message author.

    Anything outside the closed set becomes ``Named(name)`` when parsed.
    Resolution happens once, in ``Role.parse``.
    """

    kind: RoleKind
    name: str = ""

    SYSTEM: ClassVar["Role"]
    USER: ClassVar["Role"]
    ASSISTANT: ClassVar["Role"]

    @classmethod
    def named(cls, name: str) -> "Role":
        return cls(RoleKind.NAMED, name)

    @classmethod
    def parse(cls, value: "str | Role") -> "Role":
        """Resolve a wire or user-supplied role tag.

        Example:
            >>> Role.parse("assistant") is Role.ASSISTANT
            True
            >>> Role.parse("critic")
            Role(kind=<RoleKind.NAMED: 'named'>, name='critic')
        """
        if isinstance(value, Role):
            return value
        for known in (cls.SYSTEM, cls.USER, cls.ASSISTANT):
            if value == known.kind.value:
                return known
        return cls.named(value)

    @property
    def is_named(self) -> bool:
        return self.kind is RoleKind.NAMED

    @property
    def value(self) -> str:
        """Tag as it appears on the wire (the name for Named roles)."""
        return self.name if self.is_named else self.kind.value

    def __str__(self) -> str:
        return self.value


Role.SYSTEM = Role(RoleKind.SYSTEM)
Role.USER = Role(RoleKind.USER)
Role.ASSISTANT = Role(RoleKind.ASSISTANT)


@dataclass(frozen=True)
class Message:
    """A single text message in a conversation tree.

    Attributes:
        content: Message text
        role: Author role
        id: Unique identifier
        parent_id: Identifier of the parent message; roots get a fresh id
    """

    content: str
    role: Role = Role.USER
    id: str = field(default_factory=new_id)
    parent_id: str = field(default_factory=new_id)

    def __post_init__(self):
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role.parse(self.role))

    def replace(self, **changes) -> "Message":
        """Return a copy with ``changes`` applied (id kept unless given)."""
        return dataclasses.replace(self, **changes)

    @property
    def is_text_bearing(self) -> bool:
        return bool(self.content)

    def count_tokens(self, model: str, counter: TokenCounter | None = None) -> int:
        return (counter or default_counter).count(self.content, model)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "role": self.role.value,
            "content": self.content,
        }


class Conversation:
    """Ordered, append-only message log.

    Insertion order is display order. Only the last element may be replaced,
    via ``update_current_message``. One exchange at a time may own the
    conversation; ``exclusive()`` enforces it through the busy flag.

    Example:
        >>> conv = Conversation([Message("Be brief.", Role.SYSTEM)])
        >>> conv.add_message(Message("Hi", Role.USER, parent_id=conv.current_message.id))
        >>> len(conv)
        2
    """

    def __init__(
        self,
        messages: Optional[list[Message]] = None,
        id: Optional[str] = None,
        time_created: Optional[datetime] = None,
        last_updated: Optional[datetime] = None,
        title: str = DEFAULT_TITLE,
    ):
        self._messages: list[Message] = list(messages or [])
        self.id = id or new_id()
        self.time_created = time_created or _now()
        self.last_updated = last_updated or self.time_created
        self.title = title
        self._busy = False

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    @property
    def messages(self) -> tuple[Message, ...]:
        """Snapshot of the messages in display order."""
        return tuple(self._messages)

    @property
    def current_message(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    @property
    def busy(self) -> bool:
        return self._busy

    def get_message(self, message_id: str) -> Optional[Message]:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def add_message(self, message: Message) -> None:
        """Append ``message`` and bump ``last_updated``."""
        self._messages.append(message)
        self.last_updated = _now()

    def update_current_message(self, message: Message) -> None:
        """Replace the last message; no-op on an empty conversation.

        The replacement's id is taken as given. Callers that want stable
        references must carry the displaced message's id over.
        """
        if not self._messages:
            return
        self._messages[-1] = message
        self.last_updated = _now()

    def count_tokens(self, model: str, counter: TokenCounter | None = None) -> int:
        """Total token cost of the text-bearing messages."""
        return sum(
            m.count_tokens(model, counter) for m in self._messages if m.is_text_bearing
        )

    def reset(self, system_message: Optional[Message] = None) -> None:
        """Discard all messages, optionally re-seeding a system message."""
        if self._busy:
            raise ConversationBusyError(
                f"Conversation {self.id} cannot be reset while an exchange is streaming"
            )
        self._messages = [system_message] if system_message is not None else []
        self.last_updated = _now()
        logger.debug("conversation_reset", extra={"conversation_id": self.id})

    @contextmanager
    def exclusive(self) -> Iterator["Conversation"]:
        """Hold the busy flag for the duration of one exchange.

        Raises:
            ConversationBusyError: If another exchange already holds it
        """
        if self._busy:
            raise ConversationBusyError(
                f"Conversation {self.id} already has an exchange in flight"
            )
        self._busy = True
        try:
            yield self
        finally:
            self._busy = False

    def __repr__(self) -> str:
        return (
            f"Conversation(id={self.id!r}, title={self.title!r}, "
            f"messages={len(self._messages)}, busy={self._busy})"
        )
