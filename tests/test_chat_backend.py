"""Tests for the chat-completion backend and the exchange orchestration."""

import asyncio
import json

import httpx
import pytest
from prometheus_client import REGISTRY

from chatengine.backends.chat import ChatCompletionBackend, to_api_message
from chatengine.client import ExchangeState
from chatengine.config import BackendOptions, EngineConfig
from chatengine.errors import (
    ConversationBusyError,
    InvalidCredentialError,
    InvalidModelError,
    RateLimitExceededError,
    UnknownCompletionError,
)
from chatengine.models import Conversation, Message, Role
from chatengine.retry import RetryPolicy
from chatengine.tokens import default_counter

from conftest import (
    ChunkedStream,
    ScriptedHandler,
    chat_frames,
    error_response,
    sse,
    stream_response,
)

pytestmark = pytest.mark.unit

MODEL = "gpt-3.5-turbo"


def sample(name: str, labels: dict) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def auth_body(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message, "type": "invalid_request_error"}}


@pytest.fixture
def build_chat(make_transport, fast_retry, config, fixed_clock):
    """Factory: ChatCompletionBackend wired to a scripted MockTransport."""

    def factory(handler, conversation=None, retry_policy=None, **option_overrides):
        values = {"api_key": "sk-test", "model": MODEL}
        values.update(option_overrides)
        return ChatCompletionBackend(
            BackendOptions(**values),
            conversation=conversation,
            transport=make_transport(handler),
            retry_policy=retry_policy or fast_retry,
            config=config,
            clock=fixed_clock,
        )

    return factory


class TestSystemMessage:
    def test_seeded_with_rendered_template(self, build_chat):
        chat = build_chat(ScriptedHandler())

        (system,) = chat.conversation.messages
        assert system.role is Role.SYSTEM
        assert "powered by gpt-3.5-turbo" in system.content
        assert "Knowledge cutoff: Wed, 01 Sep 2021 00:00:00 GMT" in system.content
        assert "Current date: Sat, 01 Apr 2023 12:00:00 GMT" in system.content

    def test_custom_template(self, build_chat):
        chat = build_chat(ScriptedHandler(), system_message="Model {running_model}.")
        assert chat.conversation.current_message.content == "Model gpt-3.5-turbo."

    def test_existing_conversation_not_reseeded(self, build_chat):
        history = [Message("Be brief.", Role.SYSTEM), Message("Hi")]
        chat = build_chat(ScriptedHandler(), conversation=Conversation(history))
        assert chat.conversation.messages == tuple(history)

    def test_reset_reseeds(self, build_chat):
        chat = build_chat(ScriptedHandler())
        chat.conversation.add_message(Message("Hi"))

        chat.reset()

        assert len(chat.conversation) == 1
        assert chat.conversation.current_message.role is Role.SYSTEM


class TestModelCeilings:
    def test_known_model_ceiling(self, build_chat):
        chat = build_chat(ScriptedHandler(), model="gpt-4")
        assert chat.max_tokens == 8191
        assert chat.token_truncate_limit == 8191 - 256

    def test_explicit_max_tokens(self, build_chat):
        chat = build_chat(ScriptedHandler(), max_tokens=1000)
        assert chat.max_tokens == 1000
        assert chat.token_truncate_limit == 744

    def test_unbounded_max_tokens_uses_ceiling(self, build_chat):
        chat = build_chat(ScriptedHandler(), model="gpt-4-32k", max_tokens=float("inf"))
        assert chat.max_tokens == 32767

    def test_unknown_model_falls_back_to_default_ceiling(self, build_chat):
        chat = build_chat(ScriptedHandler(), model="gpt-3.5-turbo-0613")
        assert chat.max_tokens == 4097
        assert chat.model == "gpt-3.5-turbo-0613"

    def test_model_defaults_to_configured_chat_model(self, monkeypatch, make_transport, fast_retry):
        monkeypatch.setenv("CHAT_MODEL", "gpt-4")
        config = EngineConfig(_env_file=None)

        chat = ChatCompletionBackend(
            BackendOptions.from_config(config),
            transport=make_transport(ScriptedHandler()),
            retry_policy=fast_retry,
            config=config,
        )

        assert chat.model == "gpt-4"
        assert chat.max_tokens == 8191


class TestExchange:
    @pytest.mark.asyncio
    async def test_streams_reply_into_conversation(self, build_chat):
        handler = ScriptedHandler(stream_response(chat_frames("Hel", "lo")))
        chat = build_chat(handler)
        seen = []

        reply = await chat.exchange("Hello there", lambda fragment, full: seen.append((fragment, full)))

        system, user, assistant = chat.conversation.messages
        assert reply is assistant
        assert reply.content == "Hello"
        assert reply.role is Role.ASSISTANT
        assert user.content == "Hello there"
        assert user.parent_id == system.id
        assert reply.parent_id == user.id
        assert [f.content for f, _ in seen] == ["Hel", "lo"]
        assert [full.content for _, full in seen] == ["Hel", "Hello"]
        assert {f.id for f, _ in seen} == {reply.id}
        assert not chat.busy
        assert chat.state is ExchangeState.IDLE

    @pytest.mark.asyncio
    async def test_request_shape(self, build_chat):
        handler = ScriptedHandler(stream_response(chat_frames("ok")))
        chat = build_chat(handler)
        system = chat.conversation.current_message.content

        await chat.ask("Hello there")

        (request,) = handler.requests
        assert request.method == "POST"
        assert str(request.url) == "https://api.openai.com/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        payload = handler.payloads[0]
        assert payload["model"] == MODEL
        assert payload["stream"] is True
        assert payload["temperature"] == 0.7
        assert payload["top_p"] == 1.0
        assert payload["frequency_penalty"] == 0.0
        assert payload["presence_penalty"] == 0.0
        assert payload["messages"] == [
            {"role": "system", "content": system},
            {"role": "user", "content": "Hello there"},
        ]
        window_total = default_counter.count(system, MODEL) + default_counter.count("Hello there", MODEL)
        assert payload["max_tokens"] == 4097 - window_total

    @pytest.mark.asyncio
    async def test_async_callback(self, build_chat):
        chat = build_chat(ScriptedHandler(stream_response(chat_frames("a", "b"))))
        fragments = []

        async def on_delta(fragment, full):
            await asyncio.sleep(0)
            fragments.append(fragment.content)

        await chat.exchange("hi", on_delta)

        assert fragments == ["a", "b"]

    @pytest.mark.asyncio
    async def test_reprompt_without_user_text(self, build_chat):
        handler = ScriptedHandler(stream_response(chat_frames("again")))
        history = [Message("Be brief.", Role.SYSTEM), Message("Tell me more")]
        chat = build_chat(handler, conversation=Conversation(history))

        reply = await chat.ask()

        assert [m.content for m in chat.conversation.messages] == ["Be brief.", "Tell me more", "again"]
        assert handler.payloads[0]["messages"][-1] == {"role": "user", "content": "Tell me more"}
        assert reply.parent_id == history[-1].id

    @pytest.mark.asyncio
    async def test_window_drops_newest_messages_first(self, build_chat):
        handler = ScriptedHandler(stream_response(chat_frames("ok")))
        history = [
            Message("Be brief.", Role.SYSTEM),
            Message("one two three four five"),
            Message("six seven eight nine ten", Role.ASSISTANT),
        ]
        chat = build_chat(handler, conversation=Conversation(history), max_tokens=300)

        await chat.ask("eleven twelve")

        payload = handler.payloads[0]
        assert [m["content"] for m in payload["messages"]] == ["Be brief.", "one two three four five"]
        assert payload["max_tokens"] == 300 - 28

    @pytest.mark.asyncio
    async def test_named_roles_sent_as_user_with_name(self, build_chat):
        handler = ScriptedHandler(stream_response(chat_frames("ok")))
        history = [Message("Be brief.", Role.SYSTEM), Message("Looks wrong.", Role.named("critic"))]
        chat = build_chat(handler, conversation=Conversation(history))

        await chat.ask()

        assert handler.payloads[0]["messages"][1] == {
            "role": "user",
            "content": "Looks wrong.",
            "name": "critic",
        }

    def test_to_api_message(self):
        assert to_api_message(Message("hi", Role.ASSISTANT)) == {"role": "assistant", "content": "hi"}

    @pytest.mark.asyncio
    async def test_malformed_frames_tolerated(self, build_chat):
        frames = sse(
            {"choices": [{"delta": {"role": "assistant"}}]},
            "{broken",
            {"choices": [{"delta": {"content": "fine"}}]},
        )
        chat = build_chat(ScriptedHandler(stream_response(frames)))

        reply = await chat.ask("hi")

        assert reply.content == "fine"

    @pytest.mark.asyncio
    async def test_empty_stream_leaves_empty_reply(self, build_chat):
        chat = build_chat(ScriptedHandler(stream_response(sse())))

        reply = await chat.ask("hi")

        assert reply.content == ""
        assert reply.role is Role.ASSISTANT
        assert chat.conversation.current_message is reply

    @pytest.mark.asyncio
    async def test_response_closed_after_stream(self, build_chat):
        stream = ChunkedStream(chat_frames("x"))
        chat = build_chat(ScriptedHandler(httpx.Response(200, stream=stream)))

        await chat.ask("hi")

        assert stream.closed

    @pytest.mark.asyncio
    async def test_success_counted(self, build_chat):
        labels = {"backend": "chat", "status": "success"}
        before = sample("chatengine_exchanges_total", labels)
        chat = build_chat(ScriptedHandler(stream_response(chat_frames("x"))))

        await chat.ask("hi")

        assert sample("chatengine_exchanges_total", labels) == before + 1


class TestBusyFlag:
    @pytest.mark.asyncio
    async def test_busy_conversation_rejected_without_mutation(self, build_chat):
        handler = ScriptedHandler()
        chat = build_chat(handler)
        snapshot = chat.conversation.messages
        labels = {"backend": "chat", "status": "rejected"}
        before = sample("chatengine_exchanges_total", labels)

        with chat.conversation.exclusive():
            with pytest.raises(ConversationBusyError):
                await chat.ask("hi")
            assert chat.conversation.messages == snapshot

        assert handler.requests == []
        assert sample("chatengine_exchanges_total", labels) == before + 1

    @pytest.mark.asyncio
    async def test_nested_exchange_from_callback_rejected(self, build_chat):
        chat = build_chat(ScriptedHandler(stream_response(chat_frames("a"))))
        rejections = []

        async def on_delta(fragment, full):
            count = len(chat.conversation)
            with pytest.raises(ConversationBusyError):
                await chat.ask("nested")
            assert len(chat.conversation) == count
            rejections.append(fragment.content)

        await chat.exchange("hi", on_delta)

        assert rejections == ["a"]
        assert not chat.busy

    @pytest.mark.asyncio
    async def test_independent_conversations_run_concurrently(self, make_transport, fast_retry, config):
        handler = ScriptedHandler(
            stream_response(chat_frames("one")), stream_response(chat_frames("two"))
        )
        transport = make_transport(handler)
        options = BackendOptions(api_key="sk-test", model=MODEL)
        first = ChatCompletionBackend(options, transport=transport, retry_policy=fast_retry, config=config)
        second = ChatCompletionBackend(options, transport=transport, retry_policy=fast_retry, config=config)

        replies = await asyncio.gather(first.ask("a"), second.ask("b"))

        assert sorted(r.content for r in replies) == ["one", "two"]
        await first.aclose()
        assert not transport.client.is_closed


class TestFailures:
    @pytest.mark.asyncio
    async def test_invalid_api_key(self, build_chat, retry_sleep):
        body = auth_body("invalid_api_key", "Incorrect API key provided: sk-test.")
        handler = ScriptedHandler(error_response(401, body))
        chat = build_chat(handler)

        with pytest.raises(InvalidCredentialError) as exc_info:
            await chat.ask("hi")

        assert exc_info.value.raw == body
        assert len(handler.requests) == 1
        retry_sleep.assert_not_awaited()
        assert not chat.busy
        assert chat.state is ExchangeState.FAILED

    @pytest.mark.asyncio
    async def test_unknown_model(self, build_chat):
        body = auth_body("model_not_found", "The model `gpt-4` does not exist")
        chat = build_chat(ScriptedHandler(error_response(401, body)), model="gpt-4")

        with pytest.raises(InvalidModelError):
            await chat.ask("hi")

    @pytest.mark.asyncio
    async def test_other_status_is_fatal_unknown(self, build_chat, retry_sleep):
        body = {"error": {"code": "context_length_exceeded", "message": "Too many tokens."}}
        handler = ScriptedHandler(error_response(400, body))
        chat = build_chat(handler)

        with pytest.raises(UnknownCompletionError) as exc_info:
            await chat.ask("hi")

        assert exc_info.value.code == "context_length_exceeded"
        assert exc_info.value.status == 400
        assert len(handler.requests) == 1
        retry_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connection_error(self, build_chat):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        chat = build_chat(ScriptedHandler(refuse))

        with pytest.raises(UnknownCompletionError) as exc_info:
            await chat.ask("hi")

        assert exc_info.value.code == "connection_error"
        assert not chat.busy

    @pytest.mark.asyncio
    async def test_retry_does_not_duplicate_user_message(self, build_chat, retry_sleep):
        handler = ScriptedHandler(
            error_response(429, {"error": {"code": "rate_limit", "message": "slow down"}}),
            error_response(503),
            stream_response(chat_frames("done")),
        )
        chat = build_chat(handler)

        reply = await chat.ask("hi")

        assert reply.content == "done"
        assert [m.role for m in chat.conversation.messages] == [Role.SYSTEM, Role.USER, Role.ASSISTANT]
        assert len(handler.requests) == 3
        assert handler.payloads[0] == handler.payloads[2]
        assert retry_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_retry_after_header_honoured(self, build_chat, retry_sleep):
        handler = ScriptedHandler(
            error_response(429, headers={"retry-after": "3"}),
            stream_response(chat_frames("ok")),
        )
        chat = build_chat(handler)

        await chat.ask("hi")

        retry_sleep.assert_awaited_once_with(3.0)

    @pytest.mark.asyncio
    async def test_retry_exhaustion(self, build_chat):
        handler = ScriptedHandler(*(error_response(429) for _ in range(3)))
        chat = build_chat(handler)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await chat.ask("hi")

        assert exc_info.value.status == 429
        assert len(handler.requests) == 3
        assert [m.role for m in chat.conversation.messages] == [Role.SYSTEM, Role.USER]
        assert not chat.busy

    @pytest.mark.asyncio
    async def test_cancellation_clears_busy(self, build_chat):
        handler = ScriptedHandler(
            error_response(429, headers={"retry-after": "30"}),
            error_response(429, headers={"retry-after": "30"}),
        )
        chat = build_chat(handler, retry_policy=RetryPolicy(max_attempts=2))

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(chat.ask("hi"), timeout=0.05)

        assert not chat.busy
        assert chat.state is ExchangeState.IDLE
        assert len(handler.requests) == 1


class TestAvailability:
    @pytest.mark.asyncio
    async def test_check_availability_cached(self, build_chat):
        listing = {"data": [{"id": "gpt-3.5-turbo"}, {"id": "gpt-4"}, {"id": "whisper-1"}]}
        handler = ScriptedHandler(httpx.Response(200, json=listing))
        chat = build_chat(handler)

        first = await chat.check_availability()
        second = await chat.check_availability()

        assert first == {"gpt-3.5-turbo": True, "gpt-4": True, "gpt-4-32k": False}
        assert second == first
        assert len(handler.requests) == 1
        assert str(handler.requests[0].url) == "https://api.openai.com/v1/models"

    @pytest.mark.asyncio
    async def test_empty_credential_has_nothing(self, build_chat):
        handler = ScriptedHandler()
        chat = build_chat(handler, api_key="")

        assert await chat.check_availability() == {
            "gpt-3.5-turbo": False,
            "gpt-4": False,
            "gpt-4-32k": False,
        }
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_rejected_listing_raises(self, build_chat):
        body = auth_body("invalid_api_key", "Incorrect API key provided.")
        chat = build_chat(ScriptedHandler(httpx.Response(401, json=body)))

        with pytest.raises(InvalidCredentialError):
            await chat.check_availability()

    @pytest.mark.asyncio
    async def test_check_auth_and_model(self, build_chat):
        handler = ScriptedHandler(
            httpx.Response(200, json={"data": []}),
            httpx.Response(404, json={"error": {"code": "model_not_found", "message": "nope"}}),
        )
        chat = build_chat(handler)

        assert await chat.check_auth() is True
        assert await chat.check_model() is False
        assert str(handler.requests[1].url) == "https://api.openai.com/v1/models/gpt-3.5-turbo"

    @pytest.mark.asyncio
    async def test_check_auth_connection_failure(self, build_chat):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        chat = build_chat(ScriptedHandler(refuse))

        assert await chat.check_auth() is False


def test_payload_is_json_serialisable():
    chat_payload = {"messages": [to_api_message(Message("x", Role.named("n")))]}
    assert json.loads(json.dumps(chat_payload)) == chat_payload
