"""Tool-invocation (MCP) protocol client over stdio.

The generated project's tool server is spawned as a child process by the
``mcp`` SDK's stdio transport; the session lives for the duration of the
``async with`` block.
"""

from __future__ import annotations

import json
import logging
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from src.conformance.exceptions import ProtocolViolation
from src.conformance.process import child_environment

logger = logging.getLogger(__name__)


def decode_tool_payload(result: Any) -> dict[str, Any]:
    """Decode the JSON document in the first text block of a tool result.

    Raises:
        ProtocolViolation: If the result has no text content or the text
            is not a JSON object.
    """
    content = getattr(result, "content", None) or []
    if not content or not hasattr(content[0], "text"):
        raise ProtocolViolation("tool result content", "text block", content)
    text = content[0].text
    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        raise ProtocolViolation("tool result payload", "JSON object", text) from None
    if not isinstance(payload, dict):
        raise ProtocolViolation("tool result payload", "JSON object", payload)
    return payload


class ToolClient:
    """Async context manager holding one MCP session.

    Usage::

        async with ToolClient(["npx", "tsx", "src/mcp-server.ts"], cwd=project_dir) as tools:
            names = await tools.list_tools()
            payload = await tools.call_tool("echo", {"text": "hi"})

    A pre-initialised session (or a test double) can be supplied with
    :meth:`for_session`.
    """

    def __init__(
        self,
        command: list[str],
        cwd: Path | str | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("ToolClient needs a non-empty command")
        self._params = StdioServerParameters(
            command=command[0],
            args=list(command[1:]),
            env=env if env is not None else child_environment(),
            cwd=str(cwd) if cwd is not None else None,
        )
        self._stack: AsyncExitStack | None = None
        self._session: Any = None

    @classmethod
    def for_session(cls, session: Any) -> ToolClient:
        client = cls.__new__(cls)
        client._params = None
        client._stack = None
        client._session = session
        return client

    async def __aenter__(self) -> ToolClient:
        if self._session is not None:
            return self
        stack = AsyncExitStack()
        try:
            read, write = await stack.enter_async_context(stdio_client(self._params))
            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
        except BaseException:
            await stack.aclose()
            raise
        self._stack = stack
        self._session = session
        logger.debug("MCP session open: %s %s", self._params.command, self._params.args)
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._stack is not None:
            await self._stack.aclose()
            self._stack = None
            self._session = None

    @property
    def session(self) -> Any:
        if self._session is None:
            raise RuntimeError("ToolClient used outside 'async with'")
        return self._session

    async def list_tools(self) -> list[str]:
        """Return the names of the tools the server advertises."""
        response = await self.session.list_tools()
        return [tool.name for tool in response.tools]

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        """Call *name* and return its decoded JSON payload."""
        result = await self.session.call_tool(name, arguments or {})
        if getattr(result, "isError", False) is True:
            raise ProtocolViolation(f"{name} tool call", "success", _error_text(result))
        return decode_tool_payload(result)


def _error_text(result: Any) -> str:
    content = getattr(result, "content", None) or []
    return " ".join(getattr(block, "text", "") for block in content) or "<no content>"
