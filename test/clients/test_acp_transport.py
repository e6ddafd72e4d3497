"""Tests for the ACP transport and its frame decoder."""

import asyncio

import pytest

from bump_bridge.clients.acp import METHOD_NOT_FOUND, AgentTransport, NdjsonDecoder
from bump_bridge.errors import (
    AgentRequestError,
    HandshakeTimeout,
    ProcessExited,
    ProtocolFailure,
    SpawnFailure,
)


class TestNdjsonDecoder:
    """Tests for newline-delimited frame splitting."""

    def test_partial_reads_are_joined(self):
        decoder = NdjsonDecoder()

        assert decoder.feed(b'{"jsonrpc": "2.0", "me') == []
        assert decoder.feed(b'thod": "session/update"}\n') == [
            {"jsonrpc": "2.0", "method": "session/update"}
        ]

    def test_multiple_frames_in_one_chunk(self):
        decoder = NdjsonDecoder()

        frames = decoder.feed(b'{"id": 1, "result": {}}\n{"id": 2, "result": null}\n{"id": 3')

        assert [frame["id"] for frame in frames] == [1, 2]
        assert decoder.flush() == []

    def test_malformed_frames_are_dropped(self):
        decoder = NdjsonDecoder()

        frames = decoder.feed(b'not json\n[1, 2]\n{"jsonrpc": "2.0"}\n\n{"id": 7, "result": 1}\n')

        assert frames == [{"id": 7, "result": 1}]

    def test_long_line(self):
        decoder = NdjsonDecoder()
        payload = "x" * 300_000
        data = ('{"id": 1, "result": "' + payload + '"}\n').encode()

        frames = []
        for start in range(0, len(data), 4096):
            frames.extend(decoder.feed(data[start:start + 4096]))

        assert len(frames) == 1
        assert len(frames[0]["result"]) == 300_000

    def test_flush_parses_unterminated_frame(self):
        decoder = NdjsonDecoder()
        decoder.feed(b'{"id": 9, "result": true}')

        assert decoder.flush() == [{"id": 9, "result": True}]


class TestAgentTransport:
    """Tests against the scripted agent subprocess."""

    @pytest.mark.asyncio
    async def test_handshake_and_request(self, fake_agent_command, fake_agent_env, tmp_path):
        transport = AgentTransport()
        try:
            init = await transport.connect(fake_agent_command, cwd=str(tmp_path), env=fake_agent_env())

            assert init["protocolVersion"] == 1
            assert transport.connected
            result = await transport.request("session/new", {"cwd": str(tmp_path), "mcpServers": []})
            assert result["sessionId"] == "sess-1"
            assert result["authenticated"] is False
        finally:
            await transport.disconnect()

        assert not transport.connected

    @pytest.mark.asyncio
    async def test_authenticates_with_first_advertised_method(self, fake_agent_command, fake_agent_env, tmp_path):
        transport = AgentTransport()
        try:
            await transport.connect(fake_agent_command, cwd=str(tmp_path), env=fake_agent_env(FAKE_AGENT_AUTH=True))
            result = await transport.request("session/new", {"cwd": str(tmp_path), "mcpServers": []})
            assert result["authenticated"] is True
        finally:
            await transport.disconnect()

    @pytest.mark.asyncio
    async def test_malformed_frames_do_not_break_the_stream(self, fake_agent_command, fake_agent_env, tmp_path):
        transport = AgentTransport()
        try:
            init = await transport.connect(
                fake_agent_command, cwd=str(tmp_path), env=fake_agent_env(FAKE_AGENT_GARBAGE=True)
            )
            assert init["protocolVersion"] == 1
            assert transport.connected
        finally:
            await transport.disconnect()

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, fake_agent_command, fake_agent_env, tmp_path):
        transport = AgentTransport()

        with pytest.raises(HandshakeTimeout) as exc_info:
            await transport.connect(
                fake_agent_command,
                cwd=str(tmp_path),
                env=fake_agent_env(FAKE_AGENT_SILENT=True),
                handshake_timeout=0.5,
            )

        assert isinstance(exc_info.value, ProtocolFailure)
        assert not transport.connected

    @pytest.mark.asyncio
    async def test_missing_binary_is_spawn_failure(self, tmp_path):
        transport = AgentTransport()

        with pytest.raises(SpawnFailure):
            await transport.connect([str(tmp_path / "no-such-agent")], cwd=str(tmp_path))

    @pytest.mark.asyncio
    async def test_error_response_raises_agent_request_error(self, fake_agent_command, fake_agent_env, tmp_path):
        transport = AgentTransport()
        try:
            await transport.connect(fake_agent_command, cwd=str(tmp_path), env=fake_agent_env())

            with pytest.raises(AgentRequestError) as exc_info:
                await transport.request("session/prompt", {"sessionId": "sess-1", "prompt": [{"type": "text", "text": "fail"}]})

            assert exc_info.value.rpc_code == -32000
            # The transport stays usable after a failed request
            assert transport.connected
            result = await transport.request("session/new", {"cwd": str(tmp_path), "mcpServers": []})
            assert result["sessionId"] == "sess-1"
        finally:
            await transport.disconnect()

    @pytest.mark.asyncio
    async def test_notifications_dispatch_in_order(self, fake_agent_command, fake_agent_env, tmp_path):
        transport = AgentTransport()
        seen = []
        transport.on_notification("session/update", lambda params: seen.append(params["update"]))
        try:
            await transport.connect(fake_agent_command, cwd=str(tmp_path), env=fake_agent_env())
            result = await transport.request(
                "session/prompt", {"sessionId": "sess-1", "prompt": [{"type": "text", "text": "list files"}]}
            )
            await transport.drain()
        finally:
            await transport.disconnect()

        assert result == {"stopReason": "end_turn"}
        assert [u["sessionUpdate"] for u in seen] == [
            "agent_message_chunk",
            "tool_call",
            "tool_call_update",
            "agent_message_chunk",
        ]

    @pytest.mark.asyncio
    async def test_unknown_inbound_request_gets_method_not_found(self, fake_agent_command, fake_agent_env, tmp_path):
        transport = AgentTransport()
        texts = []
        transport.on_notification(
            "session/update", lambda params: texts.append(params["update"]["content"]["text"])
        )
        try:
            await transport.connect(fake_agent_command, cwd=str(tmp_path), env=fake_agent_env())
            await transport.request(
                "session/prompt", {"sessionId": "sess-1", "prompt": [{"type": "text", "text": "unsupported"}]}
            )
            await transport.drain()
        finally:
            await transport.disconnect()

        assert texts == [str(METHOD_NOT_FOUND)]

    @pytest.mark.asyncio
    async def test_request_handler_result_is_sent_back(self, fake_agent_command, fake_agent_env, tmp_path):
        transport = AgentTransport()
        texts = []
        transport.on_notification(
            "session/update", lambda params: texts.append(params["update"]["content"]["text"])
        )

        async def read_file(request_id, params):
            assert request_id == "fs-1"
            return {"content": f"contents of {params['path']}"}

        transport.on_request("fs/read_text_file", read_file)
        try:
            await transport.connect(fake_agent_command, cwd=str(tmp_path), env=fake_agent_env())
            await transport.request(
                "session/prompt", {"sessionId": "sess-1", "prompt": [{"type": "text", "text": "read notes.txt"}]}
            )
            await transport.drain()
        finally:
            await transport.disconnect()

        assert texts == ["contents of notes.txt"]

    @pytest.mark.asyncio
    async def test_process_exit_fails_pending_and_notifies_listeners(self, fake_agent_command, fake_agent_env, tmp_path):
        transport = AgentTransport()
        exit_codes = []
        transport.add_exit_listener(exit_codes.append)
        await transport.connect(fake_agent_command, cwd=str(tmp_path), env=fake_agent_env())

        with pytest.raises(ProcessExited) as exc_info:
            await transport.request(
                "session/prompt", {"sessionId": "sess-1", "prompt": [{"type": "text", "text": "crash"}]}
            )

        await asyncio.wait_for(transport.wait_closed(), 5)
        assert exc_info.value.returncode == 3
        assert "simulated crash" in exc_info.value.message
        assert exit_codes == [3]
        assert transport.returncode == 3
        assert not transport.connected

        with pytest.raises(ProcessExited):
            await transport.request("session/new", {})
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_fails_outstanding_requests(self, fake_agent_command, fake_agent_env, tmp_path):
        transport = AgentTransport()
        await transport.connect(fake_agent_command, cwd=str(tmp_path), env=fake_agent_env())
        pending = asyncio.create_task(
            transport.request("session/prompt", {"sessionId": "sess-1", "prompt": [{"type": "text", "text": "hang"}]})
        )
        await asyncio.sleep(0.2)

        await transport.disconnect()

        with pytest.raises(ProcessExited) as exc_info:
            await pending
        assert "ended" in exc_info.value.message
        await asyncio.wait_for(transport.wait_closed(), 5)

        # Idempotent
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_cancelled_request_frees_its_slot(self, fake_agent_command, fake_agent_env, tmp_path):
        transport = AgentTransport()
        try:
            await transport.connect(fake_agent_command, cwd=str(tmp_path), env=fake_agent_env())
            pending = asyncio.create_task(
                transport.request("session/prompt", {"sessionId": "sess-1", "prompt": [{"type": "text", "text": "hang"}]})
            )
            await asyncio.sleep(0.2)
            pending.cancel()
            with pytest.raises(asyncio.CancelledError):
                await pending

            assert transport._pending == {}
        finally:
            await transport.disconnect()


class TestResponseRouting:
    @pytest.mark.asyncio
    async def test_response_without_result_or_error_fails_request(self):
        transport = AgentTransport()
        loop = asyncio.get_running_loop()
        malformed, healthy = loop.create_future(), loop.create_future()
        transport._pending.update({1: malformed, 2: healthy})

        transport._route({"jsonrpc": "2.0", "id": 1})
        transport._route({"jsonrpc": "2.0", "id": 2, "result": {"ok": True}})

        with pytest.raises(ProtocolFailure) as exc_info:
            await malformed
        assert "Malformed response to request 1" in str(exc_info.value)
        assert await healthy == {"ok": True}

    @pytest.mark.asyncio
    async def test_response_for_unknown_id_is_dropped(self):
        transport = AgentTransport()
        waiting = asyncio.get_running_loop().create_future()
        transport._pending[1] = waiting

        transport._route({"jsonrpc": "2.0", "id": 7, "result": {}})
        transport._route({"jsonrpc": "2.0", "id": ["not", "an", "int"]})

        assert not waiting.done()
