"""chatengine - Streaming conversation client for OpenAI-style completion APIs.

Provides:
- Conversation and message model with parent linkage and a busy flag
- Incremental stream decoding for delta and full-replacement framing
- Bounded retry with exponential backoff and retry-after support
- Token-budgeted context windowing
- Chat, prompt and web-conversation backends

Python Version: 3.10+ required
"""

# Logging Configuration - configure before other imports
from .logging_config import StructuredFormatter, TextFormatter, configure_logging

# Initialize structured logging on module import
configure_logging()

from .__version__ import __version__
from .availability import ModelAvailabilityCache

# Backends
from .backends import (
    ChatCompletionBackend,
    ModelSpec,
    PromptCompletionBackend,
    WebConversationBackend,
    WebModel,
)
from .client import CompletionClient, ExchangeState

# Configuration
from .config import BackendOptions, EngineConfig, get_config, reset_config

# Errors
from .errors import (
    CompletionError,
    ConversationBusyError,
    ErrorKind,
    ErrorRecord,
    InvalidCredentialError,
    InvalidModelError,
    InvalidOrganizationError,
    NoCredentialError,
    RateLimitExceededError,
    UnknownCompletionError,
)

# Models
from .models import Conversation, Message, Role, RoleKind
from .retry import RetryPolicy
from .streaming import DeltaEvent, FramingMode, StreamDecoder
from .tokens import TiktokenTokenCounter, TokenCounter, WordCountTokenCounter
from .transport import HttpTransport
from .windowing import ContextWindower, Window

# Submodule export so tests can patch("chatengine.metrics.exchanges_total")
from . import metrics

__all__ = [
    "__version__",
    # Configuration
    "EngineConfig",
    "BackendOptions",
    "get_config",
    "reset_config",
    # Models
    "Conversation",
    "Message",
    "Role",
    "RoleKind",
    # Errors
    "CompletionError",
    "ConversationBusyError",
    "ErrorKind",
    "ErrorRecord",
    "InvalidCredentialError",
    "InvalidModelError",
    "InvalidOrganizationError",
    "NoCredentialError",
    "RateLimitExceededError",
    "UnknownCompletionError",
    # Streaming
    "DeltaEvent",
    "FramingMode",
    "StreamDecoder",
    # Retry
    "RetryPolicy",
    # Tokens and windowing
    "TokenCounter",
    "WordCountTokenCounter",
    "TiktokenTokenCounter",
    "ContextWindower",
    "Window",
    # Transport and caches
    "HttpTransport",
    "ModelAvailabilityCache",
    # Client and backends
    "CompletionClient",
    "ExchangeState",
    "ModelSpec",
    "ChatCompletionBackend",
    "PromptCompletionBackend",
    "WebConversationBackend",
    "WebModel",
    # Logging
    "configure_logging",
    "StructuredFormatter",
    "TextFormatter",
    "metrics",
]
