import asyncio

import httpx
import pytest

from cubechat.controller import GenerationBusyError, GenerationController, GenerationState
from cubechat.events import (
    AssistantDeltaEvent,
    ErrorEvent,
    GenerationFinishedEvent,
    GenerationStartedEvent,
    ReasoningDeltaEvent,
)
from cubechat.models import ChatFeature, ChatMessage, Role
from cubechat.ollama import ModelUnavailableError, OllamaConnection, OllamaError, OllamaStatusError
from cubechat.store import SessionError

from conftest import ndjson


def _reply(session):
    return session.messages[-1]


class TestStreaming:
    def test_reply_is_streamed_into_placeholder(self, store, controller, fake_ollama):
        fake_ollama.chunks = [
            ndjson({"response": "Hi", "done": False}),
            ndjson({"response": " there", "done": False}),
            ndjson({"response": "", "done": True, "total_duration": 1_500_000}),
        ]
        session = store.create_session()
        seen = []
        store.subscribe(lambda s: seen.append(s.get_session(session.id).messages[-1].content))

        message = asyncio.run(controller.start(session.id, "  Hello  "))

        stored = store.get_session(session.id)
        assert [m.role for m in stored.messages] == [Role.USER, Role.ASSISTANT]
        assert stored.messages[0].content == "Hello"
        assert message == _reply(stored)
        assert message.content == "Hi there"
        assert message.reasoning is None
        assert message.is_streaming is False
        assert message.execution_time_ms == 1
        assert message.error is None
        assert "Hi" in seen
        assert controller.state is GenerationState.IDLE
        assert controller.message_id is None

    def test_reasoning_split_across_chunks(self, store, controller, fake_ollama):
        fake_ollama.chunks = [
            ndjson({"response": "<thi"}),
            ndjson({"response": "nk>plan"}),
            ndjson({"response": "ning</th"}),
            ndjson({"response": "ink>\n\nAnswer"}),
            ndjson({"done": True}),
        ]
        session = store.create_session()
        contents = []
        store.subscribe(lambda s: contents.append(_reply(s.get_session(session.id)).content))

        message = asyncio.run(controller.start(session.id, "question"))

        assert message.content == "\n\nAnswer"
        assert message.reasoning == "planning"
        assert all("<think>" not in c for c in contents)

    def test_record_split_across_network_reads(self, store, controller, fake_ollama):
        body = ndjson({"response": "whole"}, {"done": True})
        fake_ollama.chunks = [body[:7], body[7:20], body[20:]]
        session = store.create_session()

        message = asyncio.run(controller.start(session.id, "q"))

        assert message.content == "whole"

    def test_non_streamed_body_without_trailing_newline(self, store, controller, fake_ollama, config):
        config.stream = False
        fake_ollama.chunks = [b'{"response":"single reply","done":true,"total_duration":2500000000}']
        session = store.create_session()

        message = asyncio.run(controller.start(session.id, "q"))

        assert message.content == "single reply"
        assert message.execution_time_ms == 2500
        assert fake_ollama.requests[0]["stream"] is False

    def test_request_payload(self, store, controller, fake_ollama):
        fake_ollama.chunks = [ndjson({"response": "ok", "done": True})]
        session = store.create_session()

        asyncio.run(controller.start(session.id, "find errors", feature=ChatFeature.QUERY_GENERATION))

        payload = fake_ollama.requests[0]
        assert payload["model"] == "llama3"
        assert payload["stream"] is True
        assert payload["options"] == {"temperature": 0.7, "num_predict": 2048}
        assert payload["prompt"].endswith("User: find errors\n\nAssistant:")
        assert "Query DSL" in payload["prompt"]

    def test_history_is_sent_with_next_message(self, store, controller, fake_ollama):
        fake_ollama.chunks = [ndjson({"response": "Paris", "done": True})]
        session = store.create_session()
        asyncio.run(controller.start(session.id, "Capital of France?"))

        asyncio.run(controller.start(session.id, "And Italy?"))

        prompt = fake_ollama.requests[1]["prompt"]
        assert "User: Capital of France?\n\nAssistant: Paris" in prompt
        assert prompt.count("And Italy?") == 1

    def test_events(self, store, connection, config, fake_ollama):
        events = []
        controller = GenerationController(store, connection, config, on_event=events.append)
        fake_ollama.chunks = [ndjson({"response": "<think>hm</think>"}, {"response": "yes", "done": True})]
        session = store.create_session()

        asyncio.run(controller.start(session.id, "q"))

        kinds = [type(e) for e in events]
        assert kinds[0] is GenerationStartedEvent
        assert kinds[-1] is GenerationFinishedEvent
        assert ReasoningDeltaEvent in kinds
        assert [e.text for e in events if isinstance(e, AssistantDeltaEvent)] == ["yes"]
        assert events[-1].content == "yes"

    def test_final_content_keeps_surrounding_whitespace(self, store, connection, config, fake_ollama):
        events = []
        controller = GenerationController(store, connection, config, on_event=events.append)
        fake_ollama.chunks = [
            ndjson({"response": "<think>x</think>\n\nAnswer"}),
            ndjson({"response": " end\n", "done": True}),
        ]
        session = store.create_session()
        streamed = []

        def on_change(s):
            reply = _reply(s.get_session(session.id))
            if reply.role is Role.ASSISTANT and reply.is_streaming:
                streamed.append(reply.content)

        store.subscribe(on_change)

        message = asyncio.run(controller.start(session.id, "q"))

        assert streamed[-1] == "\n\nAnswer end\n"
        assert message.content == streamed[-1]
        assert message.reasoning == "x"
        deltas = "".join(e.text for e in events if isinstance(e, AssistantDeltaEvent))
        assert deltas == message.content == events[-1].content

    def test_literal_text_resembling_open_tag_is_emitted_at_the_end(self, store, connection, config, fake_ollama):
        events = []
        controller = GenerationController(store, connection, config, on_event=events.append)
        fake_ollama.chunks = [ndjson({"response": "a <th"}), ndjson({"done": True})]
        session = store.create_session()

        message = asyncio.run(controller.start(session.id, "q"))

        deltas = [e.text for e in events if isinstance(e, AssistantDeltaEvent)]
        assert deltas == ["a ", "<th"]
        assert message.content == "a <th"

    def test_malformed_lines_are_skipped(self, store, controller, fake_ollama):
        fake_ollama.chunks = [b"garbage\n", ndjson({"response": "fine", "done": True})]
        session = store.create_session()

        message = asyncio.run(controller.start(session.id, "q"))

        assert message.content == "fine"
        assert message.error is None


class TestFailures:
    def test_connection_refused_uses_fallback(self, store, config):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        connection = OllamaConnection(config, transport=httpx.MockTransport(handler))
        connection.connected = True
        controller = GenerationController(store, connection, config)
        session = store.create_session()

        with pytest.raises(OllamaError):
            asyncio.run(controller.start(session.id, "q"))

        reply = _reply(store.get_session(session.id))
        assert reply.is_streaming is False
        assert reply.content == config.fallback_message
        assert "connection refused" in reply.error
        assert controller.state is GenerationState.IDLE

    def test_stream_broken_midway_keeps_partial_text(self, store, controller, fake_ollama):
        async def body():
            yield ndjson({"response": "Partial"})
            raise httpx.ReadError("connection reset")

        fake_ollama.body = body
        session = store.create_session()

        with pytest.raises(OllamaError):
            asyncio.run(controller.start(session.id, "q"))

        reply = _reply(store.get_session(session.id))
        assert reply.content == "Partial"
        assert reply.error
        assert reply.is_streaming is False

    def test_error_record_fails_generation(self, store, controller, fake_ollama):
        fake_ollama.chunks = [ndjson({"error": "model requires more system memory"})]
        session = store.create_session()

        with pytest.raises(OllamaError, match="more system memory"):
            asyncio.run(controller.start(session.id, "q"))

        assert _reply(store.get_session(session.id)).error == "model requires more system memory"

    def test_http_status_error(self, store, connection, config, fake_ollama):
        fake_ollama.status_code = 404
        events = []
        controller = GenerationController(store, connection, config, on_event=events.append)
        session = store.create_session()

        with pytest.raises(OllamaStatusError):
            asyncio.run(controller.start(session.id, "q"))

        assert any(isinstance(e, ErrorEvent) for e in events)
        assert "404" in _reply(store.get_session(session.id)).error

    def test_chinese_fallback(self, store, controller, fake_ollama, config):
        config.locale = "zh"
        fake_ollama.status_code = 500
        session = store.create_session()

        with pytest.raises(OllamaError):
            asyncio.run(controller.start(session.id, "q"))

        assert _reply(store.get_session(session.id)).content == "抱歉，生成响应时出现错误。请稍后重试。"

    def test_blank_partial_reply_gets_fallback(self, store, controller, fake_ollama, config):
        async def body():
            yield ndjson({"response": "<think>hmm</think>\n\n"})
            raise httpx.ReadError("connection reset")

        fake_ollama.body = body
        session = store.create_session()

        with pytest.raises(OllamaError):
            asyncio.run(controller.start(session.id, "q"))

        reply = _reply(store.get_session(session.id))
        assert reply.content == config.fallback_message
        assert reply.reasoning == "hmm"


class TestGuards:
    def test_empty_text_rejected(self, store, controller, fake_ollama):
        session = store.create_session()

        with pytest.raises(ValueError):
            asyncio.run(controller.start(session.id, "   "))

        assert store.get_session(session.id).messages == ()
        assert fake_ollama.requests == []

    def test_model_unavailable_sends_nothing(self, store, controller, connection, fake_ollama):
        connection.current_model = None
        session = store.create_session()

        with pytest.raises(ModelUnavailableError):
            asyncio.run(controller.start(session.id, "q"))

        assert store.get_session(session.id).messages == ()
        assert fake_ollama.requests == []

    def test_not_connected_sends_nothing(self, store, controller, connection, fake_ollama):
        connection.connected = False
        session = store.create_session()

        with pytest.raises(ModelUnavailableError):
            asyncio.run(controller.start(session.id, "q"))

        assert fake_ollama.requests == []

    def test_unknown_session(self, controller):
        with pytest.raises(SessionError):
            asyncio.run(controller.start("missing", "q"))

    def test_session_with_streaming_message_is_busy(self, store, controller):
        session = store.create_session()
        store.append_message(session.id, ChatMessage(role=Role.ASSISTANT, is_streaming=True))

        with pytest.raises(GenerationBusyError):
            asyncio.run(controller.start(session.id, "q"))

    def test_second_send_while_streaming_is_rejected(self, store, controller, fake_ollama):
        gate = asyncio.Event()

        async def body():
            yield ndjson({"response": "first"})
            await gate.wait()
            yield ndjson({"done": True})

        fake_ollama.body = body
        session = store.create_session()

        async def scenario():
            task = asyncio.create_task(controller.start(session.id, "one"))
            for _ in range(200):
                if controller.state is GenerationState.STREAMING:
                    break
                await asyncio.sleep(0.01)
            with pytest.raises(GenerationBusyError):
                await controller.start(session.id, "two")
            with pytest.raises(GenerationBusyError):
                await controller.send_message("three")
            gate.set()
            return await task

        message = asyncio.run(scenario())

        assert message.content == "first"
        assert len(store.get_session(session.id).messages) == 2
        assert len(fake_ollama.requests) == 1

    def test_session_deleted_mid_stream(self, store, controller, fake_ollama):
        fake_ollama.chunks = [ndjson({"response": "a"}), ndjson({"response": "b", "done": True})]
        session = store.create_session()
        other = store.create_session(title="other")

        def on_progress(visible):
            store.delete_session(session.id)

        message = asyncio.run(controller.start(session.id, "q", on_progress=on_progress))

        assert message is None
        assert [s.id for s in store.list_sessions()] == [other.id]
        assert controller.state is GenerationState.IDLE

    def test_cancellation_finalizes_message(self, store, controller, fake_ollama):
        async def body():
            yield ndjson({"response": "part"})
            await asyncio.sleep(10)

        fake_ollama.body = body
        session = store.create_session()

        async def scenario():
            task = asyncio.create_task(controller.start(session.id, "q"))
            for _ in range(200):
                if controller.state is GenerationState.STREAMING:
                    break
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        reply = _reply(store.get_session(session.id))
        assert reply.is_streaming is False
        assert reply.content == "part"
        assert reply.error == "CancelledError"
        assert controller.state is GenerationState.IDLE


class TestSendMessage:
    def test_creates_session_when_none_is_current(self, store, controller, fake_ollama):
        fake_ollama.chunks = [ndjson({"response": "hello", "done": True})]

        message = asyncio.run(controller.send_message("hi"))

        session = store.current_session
        assert session.model == "llama3"
        assert session.messages[-1] == message

    def test_progress_callback_gets_visible_text(self, store, controller, fake_ollama):
        fake_ollama.chunks = [ndjson({"response": "<think>x</think>A"}), ndjson({"response": "B", "done": True})]
        progress = []

        asyncio.run(controller.send_message("hi", on_progress=progress.append))

        assert progress == ["A", "AB"]


class TestOneShot:
    def test_generate_dsl_query_strips_reasoning(self, store, controller, fake_ollama):
        fake_ollama.generate_json = {"response": "<think>plan</think>\n{\"query\": {\"match_all\": {}}}", "done": True}

        result = asyncio.run(controller.generate_dsl_query("everything", {"index": "logs"}))

        assert result == '{"query": {"match_all": {}}}'
        assert fake_ollama.requests[0]["stream"] is False
        assert store.list_sessions() == ()
        assert controller.state is GenerationState.IDLE

    @pytest.mark.parametrize(
        "call",
        [
            lambda c: c.analyze_data([{"status": 500}], "what failed?"),
            lambda c: c.optimize_query('{"query": {"wildcard": {"msg": "*err*"}}}'),
            lambda c: c.explain_error("search_phase_execution_exception"),
        ],
    )
    def test_feature_helpers(self, controller, fake_ollama, call):
        fake_ollama.generate_json = {"response": " result ", "done": True}

        assert asyncio.run(call(controller)) == "result"
        assert len(fake_ollama.requests) == 1

    def test_one_shot_error_resets_state(self, controller, fake_ollama):
        fake_ollama.status_code = 500

        with pytest.raises(OllamaError):
            asyncio.run(controller.explain_error("boom"))

        assert controller.state is GenerationState.IDLE
