"""Completion backends.

- ChatCompletionBackend: ``/chat/completions``, delta framing
- PromptCompletionBackend: ``/completions`` with an instruction prompt
- WebConversationBackend: web conversation API, full-replacement framing
"""

from .base import ModelSpec, OpenAIBackend, render_system_message
from .chat import CHAT_MODELS, ChatCompletionBackend
from .prompt import PROMPT_MODELS, PromptCompletionBackend, render_instruction_prompt
from .web import WebConversationBackend, WebModel

__all__ = [
    "CHAT_MODELS",
    "PROMPT_MODELS",
    "ChatCompletionBackend",
    "ModelSpec",
    "OpenAIBackend",
    "PromptCompletionBackend",
    "WebConversationBackend",
    "WebModel",
    "render_instruction_prompt",
    "render_system_message",
]
