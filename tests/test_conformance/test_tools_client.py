"""Tests for src.conformance.clients.tools using a mock MCP session."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from src.conformance.clients.tools import ToolClient, decode_tool_payload
from src.conformance.exceptions import ProtocolViolation


class TestDecodeToolPayload:
    def test_decodes_first_text_block(self, mcp_result):
        assert decode_tool_payload(mcp_result({"echoed": "x"})) == {"echoed": "x"}

    def test_empty_content(self, mcp_result):
        result = mcp_result({})
        result.content = []
        with pytest.raises(ProtocolViolation, match="content"):
            decode_tool_payload(result)

    def test_non_json_text(self, mcp_result):
        with pytest.raises(ProtocolViolation, match="JSON object"):
            decode_tool_payload(mcp_result("plain words"))

    def test_json_array_is_rejected(self, mcp_result):
        with pytest.raises(ProtocolViolation):
            decode_tool_payload(mcp_result([1, 2]))


class TestToolClient:
    @pytest.mark.asyncio
    async def test_list_tools(self, mcp_session):
        async with ToolClient.for_session(mcp_session) as tools:
            assert await tools.list_tools() == ["chat", "echo", "get_time"]

    @pytest.mark.asyncio
    async def test_call_tool_decodes_payload(self, mcp_session):
        async with ToolClient.for_session(mcp_session) as tools:
            payload = await tools.call_tool("echo", {"text": "Test message"})
        assert payload == {"echoed": "Test message"}
        mcp_session.call_tool.assert_awaited_with("echo", {"text": "Test message"})

    @pytest.mark.asyncio
    async def test_error_result_is_a_violation(self, mcp_session):
        async with ToolClient.for_session(mcp_session) as tools:
            with pytest.raises(ProtocolViolation, match="Unknown tool"):
                await tools.call_tool("nope")

    @pytest.mark.asyncio
    async def test_supplied_session_is_not_closed(self, mcp_session):
        client = ToolClient.for_session(mcp_session)
        async with client:
            pass
        assert await client.list_tools() == ["chat", "echo", "get_time"]

    def test_rejects_empty_command(self):
        with pytest.raises(ValueError):
            ToolClient([])

    def test_builds_stdio_parameters(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-live")
        client = ToolClient(["npx", "tsx", "src/mcp-server.ts"], cwd=tmp_path)
        params = client._params
        assert params.command == "npx"
        assert params.args == ["tsx", "src/mcp-server.ts"]
        assert str(params.cwd) == str(tmp_path)
        assert "OPENAI_API_KEY" not in params.env

    def test_session_required_outside_context(self):
        client = ToolClient(["node", "server.js"])
        with pytest.raises(RuntimeError):
            client.session

    @pytest.mark.asyncio
    async def test_opens_stdio_session(self, mcp_session):
        class _Streams:
            async def __aenter__(self):
                return ("read", "write")

            async def __aexit__(self, *exc):
                return False

        class _Session:
            def __init__(self, read, write):
                self.args = (read, write)

            async def __aenter__(self):
                return mcp_session

            async def __aexit__(self, *exc):
                return False

        with patch("src.conformance.clients.tools.stdio_client", return_value=_Streams()), patch(
            "src.conformance.clients.tools.ClientSession", _Session
        ):
            async with ToolClient(["node", "server.js"]) as tools:
                assert await tools.list_tools() == ["chat", "echo", "get_time"]
            mcp_session.initialize.assert_awaited_once()
            assert tools._session is None
