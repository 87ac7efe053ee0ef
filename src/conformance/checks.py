"""Protocol assertions and the checks each sub-suite runs.

Assertion helpers raise :class:`~src.conformance.exceptions.ProtocolViolation`
naming the check, the expected value and the observed value. Checks are
registered per sub-suite with :func:`check` and executed in registration
order by the runner; each receives a :class:`CheckContext` that lazily
opens the protocol clients it needs.
"""

from __future__ import annotations

import json
import logging
import re
from collections import defaultdict
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable

import httpx
from pydantic import ValidationError

from src.conformance import constants
from src.conformance.chains import ChainScenario
from src.conformance.clients.a2a import A2AClient, build_envelope, build_send_params
from src.conformance.clients.payment import ExactEvmSigner, PaymentFlowClient
from src.conformance.clients.tools import ToolClient
from src.conformance.config import HarnessConfig, ProjectLayout
from src.conformance.exceptions import ProtocolViolation, ScenarioSkipped
from src.conformance.models import (
    AgentCard,
    JsonRpcResponse,
    MessageRole,
    Task,
    TaskStatus,
)
from src.conformance.process import child_environment
from src.conformance.retry import RetryPolicy
from src.conformance.scaffold import file_exists, read_generated_file
from src.conformance.suite import SubSuite

logger = logging.getLogger(__name__)

ECHO_TEXT = "Test message"
CHAT_TEXT = "Hello"
CONTEXT_ID = "test-context-123"


# ---------------------------------------------------------------------------
# Assertion helpers
# ---------------------------------------------------------------------------


def expect(condition: bool, check: str, expected: Any, observed: Any) -> None:
    if not condition:
        raise ProtocolViolation(check, expected, observed)


def expect_equal(check: str, expected: Any, observed: Any) -> None:
    expect(observed == expected, check, expected, observed)


def assert_files_present(project_dir: Path, paths: Iterable[str]) -> None:
    missing = [p for p in paths if not file_exists(project_dir, p)]
    expect(not missing, "generated files", "all present", {"missing": missing})


def assert_contains_all(check: str, text: str, markers: Iterable[str]) -> None:
    markers = list(markers)
    missing = [m for m in markers if m not in text]
    expect(not missing, check, markers, {"missing": missing})


def task_of(response: JsonRpcResponse, check: str) -> Task:
    """Return the ``Task`` in *response*'s result, or raise a violation named *check*."""
    expect(response.result is not None, f"{check} result", "task object", response.error)
    try:
        return response.task()
    except ValidationError as exc:
        raise ProtocolViolation(f"{check} task shape", "Task object", str(exc)) from None


def assert_task_round_trip(response: JsonRpcResponse) -> Task:
    """A completed synchronous exchange: user message followed by one agent message."""
    expect_equal("jsonrpc version", constants.JSONRPC_VERSION, response.jsonrpc)
    task = task_of(response, "message/send")
    expect_equal("task status", TaskStatus.COMPLETED, task.status)
    expect_equal("message count", 2, len(task.messages))
    expect_equal("second message role", MessageRole.AGENT, task.messages[1].role)
    return task


def assert_agent_card(card: AgentCard, streaming: bool) -> None:
    for name in ("name", "description", "url", "capabilities"):
        expect(getattr(card, name) is not None, f"agent card {name}", "present", None)
    expect_equal("capabilities.streaming", streaming, card.capabilities.streaming)


def assert_invalid_request(response: JsonRpcResponse) -> None:
    expect(response.error is not None, "error object", "non-null error", response.result)
    expect(
        constants.INVALID_REQUEST_TEXT in response.error.message,
        "error message",
        constants.INVALID_REQUEST_TEXT,
        response.error.message,
    )


def assert_required_tools(names: list[str]) -> None:
    expect(
        len(names) >= constants.MIN_TOOL_COUNT,
        "tool count",
        f">= {constants.MIN_TOOL_COUNT}",
        len(names),
    )
    missing = [t for t in constants.REQUIRED_TOOLS if t not in names]
    expect(not missing, "tool names", list(constants.REQUIRED_TOOLS), names)


def render_iso_timestamp(moment: datetime) -> str:
    """Render *moment* in UTC with millisecond precision and a ``Z`` suffix."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def assert_iso_timestamp_round_trip(value: Any) -> datetime:
    """Parse *value* and re-render it; the result must equal *value* exactly."""
    expect(isinstance(value, str), "time type", "ISO-8601 string", value)
    try:
        # fromisoformat only accepts the Z suffix from 3.11 on
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise ProtocolViolation("time format", "ISO-8601 timestamp", value) from None
    expect(moment.tzinfo is not None, "time zone", "UTC offset", value)
    expect_equal("time round trip", value, render_iso_timestamp(moment))
    return moment


def assert_network_identifier(source: str, caip2: str) -> None:
    identifiers = sorted(set(re.findall(r"eip155:\d+", source)))
    expect(caip2 in identifiers, "CAIP-2 network identifier", caip2, identifiers)


def assert_manifest_dependencies(manifest_text: str, key: str, packages: Iterable[str]) -> None:
    try:
        manifest = json.loads(manifest_text)
    except json.JSONDecodeError as exc:
        raise ProtocolViolation("package manifest", "JSON document", str(exc)) from None
    declared = manifest.get(key) or {}
    missing = [p for p in packages if p not in declared]
    expect(not missing, f"manifest {key}", list(packages), {"missing": missing})


def _parse_rpc(response: httpx.Response, check: str) -> JsonRpcResponse:
    try:
        return JsonRpcResponse.model_validate(response.json())
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError):
        raise ProtocolViolation(check, "JSON-RPC response", response.text[:200]) from None


# ---------------------------------------------------------------------------
# Check context and registry
# ---------------------------------------------------------------------------


@dataclass
class CheckContext:
    """Everything a check may touch for one sub-suite of one scenario.

    Clients are opened on first use and closed by :meth:`aclose`.
    """

    scenario: ChainScenario
    sub_suite: SubSuite
    project_dir: Path
    config: HarnessConfig = field(default_factory=HarnessConfig)
    port: int | None = None
    host: str = "localhost"
    transport: httpx.AsyncBaseTransport | None = None
    tool_client_factory: Callable[[], ToolClient] | None = None

    _stack: AsyncExitStack = field(default_factory=AsyncExitStack, repr=False)
    _a2a: A2AClient | None = field(default=None, repr=False)
    _payment: PaymentFlowClient | None = field(default=None, repr=False)
    _tools: ToolClient | None = field(default=None, repr=False)

    @property
    def layout(self) -> ProjectLayout:
        return self.config.layout

    @property
    def base_url(self) -> str:
        if self.port is None:
            raise RuntimeError(f"{self.sub_suite.value} has no server port")
        return f"http://{self.host}:{self.port}"

    @property
    def streaming(self) -> bool:
        return self.sub_suite.profile.streaming

    def read(self, relative_path: str) -> str:
        return read_generated_file(self.project_dir, relative_path)

    def server_source(self) -> str:
        return self.read(self.layout.entrypoint_path(self.layout.a2a_entrypoint))

    async def a2a(self) -> A2AClient:
        if self._a2a is None:
            self._a2a = await self._stack.enter_async_context(
                A2AClient(self.base_url, self.config.request_timeout_s, transport=self.transport)
            )
        return self._a2a

    async def payment(self) -> PaymentFlowClient:
        if self._payment is None:
            policy = RetryPolicy(
                max_attempts=self.config.probe_attempts, delay_s=self.config.probe_delay_s
            )
            self._payment = await self._stack.enter_async_context(
                PaymentFlowClient(
                    self.base_url,
                    policy,
                    timeout_s=self.config.request_timeout_s,
                    transport=self.transport,
                )
            )
        return self._payment

    async def tools(self) -> ToolClient:
        if self._tools is None:
            factory = self.tool_client_factory or self._default_tool_client
            self._tools = await self._stack.enter_async_context(factory())
        return self._tools

    def _default_tool_client(self) -> ToolClient:
        entrypoint = self.layout.entrypoint_path(self.layout.mcp_entrypoint)
        return ToolClient(
            self.config.launch_argv(entrypoint, self.project_dir, self.port),
            cwd=self.project_dir,
            env=child_environment(self.port),
        )

    async def aclose(self) -> None:
        await self._stack.aclose()
        self._a2a = self._payment = self._tools = None


CheckFn = Callable[[CheckContext], Awaitable[None]]


@dataclass(frozen=True)
class Check:
    name: str
    run: CheckFn


_REGISTRY: dict[SubSuite, list[Check]] = defaultdict(list)


def check(name: str, *sub_suites: SubSuite) -> Callable[[CheckFn], CheckFn]:
    """Register the decorated coroutine as check *name* of each of *sub_suites*."""

    def decorator(fn: CheckFn) -> CheckFn:
        for sub_suite in sub_suites:
            _REGISTRY[sub_suite].append(Check(name, fn))
        return fn

    return decorator


def checks_for(sub_suite: SubSuite) -> tuple[Check, ...]:
    return tuple(_REGISTRY[sub_suite])


# ---------------------------------------------------------------------------
# Agent-task protocol
# ---------------------------------------------------------------------------


@check("generates agent server files", SubSuite.A2A)
async def a2a_files(ctx: CheckContext) -> None:
    layout = ctx.layout
    assert_files_present(
        ctx.project_dir,
        [
            layout.entrypoint_path(layout.a2a_entrypoint),
            layout.agent_file,
            layout.agent_card_file,
            layout.manifest_file,
            layout.readme_file,
        ],
    )


@check("generates streaming-enabled server", SubSuite.A2A_STREAMING)
async def streaming_files(ctx: CheckContext) -> None:
    assert_files_present(
        ctx.project_dir, [ctx.layout.entrypoint_path(ctx.layout.a2a_entrypoint)]
    )
    assert_contains_all("streaming server source", ctx.server_source(), ctx.layout.streaming_markers)


@check("serves agent card", SubSuite.A2A, SubSuite.A2A_STREAMING)
async def agent_card(ctx: CheckContext) -> None:
    client = await ctx.a2a()
    assert_agent_card(await client.get_agent_card(), ctx.streaming)


@check("handles message/send", SubSuite.A2A, SubSuite.A2A_STREAMING)
async def message_send(ctx: CheckContext) -> None:
    client = await ctx.a2a()
    assert_task_round_trip(await client.send_message("Hello, test!"))


@check("streams message/stream as server-sent events", SubSuite.A2A_STREAMING)
async def message_stream(ctx: CheckContext) -> None:
    client = await ctx.a2a()
    result = await client.stream_message("Hello streaming!")
    expect_equal("stream status", 200, result.status_code)
    expect(
        result.is_event_stream,
        "stream content type",
        constants.EVENT_STREAM_CONTENT_TYPE,
        result.content_type,
    )


@check("maintains conversation context", SubSuite.A2A)
async def context_continuity(ctx: CheckContext) -> None:
    client = await ctx.a2a()
    for text in ("My name is Alice", "What is my name?"):
        task = assert_task_round_trip(await client.send_message(text, CONTEXT_ID))
        expect_equal("contextId echo", CONTEXT_ID, task.context_id)


@check("handles tasks/get", SubSuite.A2A)
async def tasks_get(ctx: CheckContext) -> None:
    client = await ctx.a2a()
    sent = assert_task_round_trip(await client.send_message("Test message"))
    task = task_of(await client.get_task(sent.id), "tasks/get")
    expect_equal("tasks/get id", sent.id, task.id)
    expect_equal("tasks/get status", TaskStatus.COMPLETED, task.status)


@check("handles tasks/cancel", SubSuite.A2A)
async def tasks_cancel(ctx: CheckContext) -> None:
    client = await ctx.a2a()
    sent = task_of(await client.send_message("Test message"), "message/send")
    cancelled = task_of(await client.cancel_task(sent.id), "tasks/cancel")
    expect_equal("tasks/cancel status", TaskStatus.CANCELED, cancelled.status)


@check("rejects invalid JSON-RPC version", SubSuite.A2A)
async def invalid_version(ctx: CheckContext) -> None:
    client = await ctx.a2a()
    response = await client.post_raw(
        build_envelope(constants.METHOD_SEND, {}, jsonrpc="1.0", request_id=1)
    )
    assert_invalid_request(_parse_rpc(response, "invalid version response"))


@check("rejects unknown method", SubSuite.A2A)
async def unknown_method(ctx: CheckContext) -> None:
    client = await ctx.a2a()
    response = await client.post_raw(build_envelope("unknown/method", {}, request_id=1))
    parsed = _parse_rpc(response, "unknown method response")
    expect(parsed.error is not None, "error object", "non-null error", parsed.result)


# ---------------------------------------------------------------------------
# Tool-invocation protocol
# ---------------------------------------------------------------------------


@check("generates tool server files", SubSuite.TOOLS)
async def tool_files(ctx: CheckContext) -> None:
    layout = ctx.layout
    assert_files_present(
        ctx.project_dir,
        [layout.entrypoint_path(layout.mcp_entrypoint), layout.tools_file],
    )


@check("lists available tools", SubSuite.TOOLS)
async def list_tools(ctx: CheckContext) -> None:
    tools = await ctx.tools()
    assert_required_tools(await tools.list_tools())


@check("executes echo tool", SubSuite.TOOLS)
async def echo_tool(ctx: CheckContext) -> None:
    tools = await ctx.tools()
    payload = await tools.call_tool("echo", {"text": ECHO_TEXT, "message": ECHO_TEXT})
    expect_equal("echoed", ECHO_TEXT, payload.get("echoed"))


@check("executes get_time tool", SubSuite.TOOLS)
async def get_time_tool(ctx: CheckContext) -> None:
    tools = await ctx.tools()
    payload = await tools.call_tool("get_time", {})
    expect("time" in payload, "time field", "present", sorted(payload))
    assert_iso_timestamp_round_trip(payload["time"])


@check("executes chat tool in mock mode", SubSuite.TOOLS)
async def chat_tool(ctx: CheckContext) -> None:
    tools = await ctx.tools()
    payload = await tools.call_tool("chat", {"message": CHAT_TEXT})
    reply = payload.get("response")
    expect(
        isinstance(reply, str) and constants.MOCK_MARKER in reply,
        "chat response",
        f"text containing {constants.MOCK_MARKER}",
        reply,
    )


# ---------------------------------------------------------------------------
# Generated file content
# ---------------------------------------------------------------------------


@check("generates registration script", SubSuite.REGISTRATION)
async def registration_script(ctx: CheckContext) -> None:
    assert_files_present(ctx.project_dir, [ctx.layout.register_file])
    assert_contains_all(
        "registration script", ctx.read(ctx.layout.register_file), ctx.layout.registration_markers
    )


@check("generates README", SubSuite.README)
async def readme_sections(ctx: CheckContext) -> None:
    assert_files_present(ctx.project_dir, [ctx.layout.readme_file])
    assert_contains_all("README", ctx.read(ctx.layout.readme_file), ctx.layout.readme_markers)


@check("names the chain in README", SubSuite.README)
async def readme_chain_name(ctx: CheckContext) -> None:
    first_word = ctx.scenario.chain_name.split()[0]
    assert_contains_all("README chain name", ctx.read(ctx.layout.readme_file), [first_word])


# ---------------------------------------------------------------------------
# Payment-gated flow
# ---------------------------------------------------------------------------


def _payment_probe_body(text: str) -> dict[str, Any]:
    return build_envelope(constants.METHOD_SEND, build_send_params(text), request_id=1)


@check("declares payment dependencies", SubSuite.PAYMENTS)
async def payment_dependencies(ctx: CheckContext) -> None:
    assert_files_present(ctx.project_dir, [ctx.layout.manifest_file])
    assert_manifest_dependencies(
        ctx.read(ctx.layout.manifest_file),
        ctx.layout.manifest_dependency_key,
        ctx.layout.payment_dependencies,
    )


@check("includes payment middleware", SubSuite.PAYMENTS)
async def payment_middleware(ctx: CheckContext) -> None:
    assert_contains_all("payment server source", ctx.server_source(), ctx.layout.payment_server_markers)


@check("requires payment", SubSuite.PAYMENTS)
async def payment_required(ctx: CheckContext) -> None:
    client = await ctx.payment()
    response = await client.probe_unpaid(_payment_probe_body("test"))
    expect_equal("unpaid status", constants.PAYMENT_REQUIRED_STATUS, response.status_code)


@check("advertises the chain's network", SubSuite.PAYMENTS)
async def network_identifier(ctx: CheckContext) -> None:
    assert_network_identifier(ctx.server_source(), ctx.scenario.network.caip2)


@check("pays the configured payee", SubSuite.PAYMENTS)
async def payee_configuration(ctx: CheckContext) -> None:
    assert_contains_all("payee configuration", ctx.server_source(), ["payTo", constants.PAYEE_ENV_KEY])


@check("accepts a valid payment", SubSuite.PAID_REQUEST)
async def paid_request(ctx: CheckContext) -> None:
    if not ctx.config.has_funded_credential:
        raise ScenarioSkipped(f"{constants.FUNDED_CREDENTIAL_ENV} not set")
    signer = ExactEvmSigner(
        ctx.config.payer_private_key.get_secret_value(), ctx.scenario.network.caip2
    )
    client = await ctx.payment()
    body = _payment_probe_body("Hello with payment!")
    challenged = await client.probe_unpaid(body)
    expect_equal("unpaid status", constants.PAYMENT_REQUIRED_STATUS, challenged.status_code)
    response = await client.pay_for(body, challenged, signer)
    expect_equal("paid status", 200, response.status_code)
    task = assert_task_round_trip(_parse_rpc(response, "paid response"))
    agent_text = task.messages[1].text
    expect(
        constants.MOCK_MARKER in agent_text,
        "agent reply",
        f"text containing {constants.MOCK_MARKER}",
        agent_text,
    )
