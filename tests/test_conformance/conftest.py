"""Fixtures for the conformance harness unit tests.

Provides an in-process fake agent server (an ``httpx.MockTransport``
handler), mock MCP session utilities, and a deterministic payer key.
"""

from __future__ import annotations

import base64
import json
import uuid
from dataclasses import dataclass
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from src.conformance.constants import AGENT_CARD_PATH

# Well-known Hardhat development key; holds nothing on any public network.
PAYER_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
PAYER_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

USDC_BASE_SEPOLIA = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
PAYEE = "0x742d35cc6634c0532925a3b844bc9e7595f0beb0"


# ---------------------------------------------------------------------------
# Fake agent server
# ---------------------------------------------------------------------------


def payment_challenge(network: str = "eip155:84532", version: int = 2) -> dict[str, Any]:
    return {
        "x402Version": version,
        "error": "Payment required",
        "resource": {"url": "http://localhost/a2a", "description": "Agent call"},
        "accepts": [
            {
                "scheme": "exact",
                "network": network,
                "amount": "1000",
                "asset": USDC_BASE_SEPOLIA,
                "payTo": PAYEE,
                "maxTimeoutSeconds": 300,
                "extra": {"name": "USDC", "version": "2"},
            }
        ],
    }


def encode_b64_json(data: dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(data).encode()).decode()


class FakeAgentServer:
    """Handler implementing the agent-task surface the harness checks.

    Knobs let individual tests break one behavior at a time.
    """

    def __init__(
        self,
        *,
        streaming: bool = False,
        require_payment: bool = False,
        network: str = "eip155:84532",
        agent_prefix: str = "[MOCK]",
        echo_context: bool = True,
        invalid_request_message: str = "Invalid Request",
        challenge_in_header: bool = True,
        cancel_status: str = "canceled",
    ) -> None:
        self.streaming = streaming
        self.require_payment = require_payment
        self.network = network
        self.agent_prefix = agent_prefix
        self.echo_context = echo_context
        self.invalid_request_message = invalid_request_message
        self.challenge_in_header = challenge_in_header
        self.cancel_status = cancel_status
        self.tasks: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET" and request.url.path == AGENT_CARD_PATH:
            return httpx.Response(200, json=self._card(request))
        if request.url.path != "/a2a":
            return httpx.Response(404, json={"error": "not found"})

        if self.require_payment and "PAYMENT-SIGNATURE" not in request.headers:
            return self._challenge()

        body = json.loads(request.content)
        request_id = body.get("id")
        if body.get("jsonrpc") != "2.0":
            return self._error(request_id, -32600, self.invalid_request_message, status=400)

        method = body.get("method")
        params = body.get("params") or {}
        if method == "message/send":
            return self._result(request_id, self._create_task(params))
        if method == "message/stream":
            return self._stream(request_id, params)
        if method == "tasks/get":
            task = self.tasks.get(params.get("id"))
            if task is None:
                return self._error(request_id, -32001, "Task not found")
            return self._result(request_id, task)
        if method == "tasks/cancel":
            task = self.tasks.get(params.get("id"))
            if task is None:
                return self._error(request_id, -32001, "Task not found")
            task["status"] = self.cancel_status
            return self._result(request_id, task)
        return self._error(request_id, -32601, "Method not found")

    def _card(self, request: httpx.Request) -> dict[str, Any]:
        return {
            "name": "test-agent",
            "description": "Agent under test",
            "url": f"{request.url.scheme}://{request.url.host}/a2a",
            "capabilities": {"streaming": self.streaming},
        }

    def _create_task(self, params: dict[str, Any]) -> dict[str, Any]:
        message = params.get("message") or {}
        text = "".join(p.get("text", "") for p in message.get("parts", []))
        context_id = params.get("contextId") or message.get("contextId")
        if not self.echo_context or context_id is None:
            context_id = str(uuid.uuid4())
        task = {
            "id": str(uuid.uuid4()),
            "contextId": context_id,
            "status": "completed",
            "messages": [
                {"role": "user", "parts": [{"type": "text", "text": text}]},
                {
                    "role": "agent",
                    "parts": [{"type": "text", "text": f"{self.agent_prefix} You said: {text}"}],
                },
            ],
        }
        self.tasks[task["id"]] = task
        return task

    def _stream(self, request_id: Any, params: dict[str, Any]) -> httpx.Response:
        task = self._create_task(params)
        if not self.streaming:
            return self._result(request_id, task)
        events = [
            {"jsonrpc": "2.0", "id": request_id, "result": {**task, "status": "working"}},
            {"jsonrpc": "2.0", "id": request_id, "result": task},
        ]
        content = "".join(f"data: {json.dumps(e)}\n\n" for e in events).encode()
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=content
        )

    def _challenge(self) -> httpx.Response:
        challenge = payment_challenge(self.network)
        if self.challenge_in_header:
            return httpx.Response(
                402, headers={"PAYMENT-REQUIRED": encode_b64_json(challenge)}, json={}
            )
        return httpx.Response(402, json=challenge)

    @staticmethod
    def _result(request_id: Any, task: dict[str, Any]) -> httpx.Response:
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": request_id, "result": task})

    @staticmethod
    def _error(request_id: Any, code: int, message: str, status: int = 200) -> httpx.Response:
        return httpx.Response(
            status,
            json={"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}},
        )


@pytest.fixture
def agent_server() -> Callable[..., FakeAgentServer]:
    """Factory for a fake agent server; wrap it in ``httpx.MockTransport``."""
    return FakeAgentServer


# ---------------------------------------------------------------------------
# Mock MCP session
# ---------------------------------------------------------------------------


@dataclass
class MockToolResult:
    """Lightweight stand-in for an MCP ``CallToolResult``."""

    content: list[Any]
    isError: bool = False


@dataclass
class MockTextContent:
    """Lightweight stand-in for MCP ``TextContent``."""

    type: str = "text"
    text: str = ""


def make_mcp_result(data: Any, is_error: bool = False) -> MockToolResult:
    text = data if isinstance(data, str) else json.dumps(data)
    return MockToolResult(content=[MockTextContent(text=text)], isError=is_error)


def _tool(name: str) -> MagicMock:
    tool = MagicMock()
    tool.name = name
    return tool


@pytest.fixture
def mcp_session() -> AsyncMock:
    """A session whose tools behave like a conformant mocked project."""
    session = AsyncMock()
    session.list_tools.return_value = MagicMock(
        tools=[_tool("chat"), _tool("echo"), _tool("get_time")]
    )

    async def _call_tool(name: str, arguments: dict[str, Any]) -> MockToolResult:
        if name == "echo":
            return make_mcp_result({"echoed": arguments.get("text")})
        if name == "get_time":
            return make_mcp_result({"time": "2026-10-17T12:34:56.789Z"})
        if name == "chat":
            return make_mcp_result({"response": f"[MOCK] {arguments.get('message')}"})
        return make_mcp_result(f"Unknown tool: {name}", is_error=True)

    session.call_tool.side_effect = _call_tool
    return session


@pytest.fixture
def mcp_result() -> Callable[..., MockToolResult]:
    return make_mcp_result


# ---------------------------------------------------------------------------
# Payment fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def payer_key() -> tuple[str, str]:
    """(private key, checksum address) of the deterministic test payer."""
    return PAYER_PRIVATE_KEY, PAYER_ADDRESS


@pytest.fixture
def challenge() -> Callable[..., dict[str, Any]]:
    return payment_challenge


@pytest.fixture
def b64_json() -> Callable[[dict[str, Any]], str]:
    return encode_b64_json
