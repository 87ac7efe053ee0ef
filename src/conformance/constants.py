"""Wire constants and defaults shared across the conformance harness."""
from __future__ import annotations

# Agent-task (A2A) protocol surface
A2A_PATH: str = "/a2a"
AGENT_CARD_PATH: str = "/.well-known/agent-card.json"
JSONRPC_VERSION: str = "2.0"
METHOD_SEND: str = "message/send"
METHOD_STREAM: str = "message/stream"
METHOD_TASK_GET: str = "tasks/get"
METHOD_TASK_CANCEL: str = "tasks/cancel"
INVALID_REQUEST_TEXT: str = "Invalid Request"
EVENT_STREAM_CONTENT_TYPE: str = "text/event-stream"

# Tool-invocation (MCP) protocol surface
REQUIRED_TOOLS: tuple[str, ...] = ("chat", "echo", "get_time")
MIN_TOOL_COUNT: int = 3

# Mock-mode marker returned by every language-model call in a mocked project
MOCK_MARKER: str = "[MOCK]"

# x402 payment flow
PAYMENT_REQUIRED_STATUS: int = 402
PAYEE_ENV_KEY: str = "X402_PAYEE_ADDRESS"
PAYMENT_REQUIRED_HEADERS: tuple[str, ...] = ("PAYMENT-REQUIRED", "X-PAYMENT-REQUIRED")
PAYMENT_SIGNATURE_HEADER: str = "PAYMENT-SIGNATURE"
LEGACY_PAYMENT_HEADER: str = "X-PAYMENT"
PAYMENT_RESPONSE_HEADERS: tuple[str, ...] = ("PAYMENT-RESPONSE", "X-PAYMENT-RESPONSE")

# Environment inputs to the harness process
FUNDED_CREDENTIAL_ENV: str = "TEST_PAYER_PRIVATE_KEY"

# Keys never forwarded to generated-project processes.
SECRET_ENV_KEYS: frozenset[str] = frozenset({
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "PINATA_JWT",
    FUNDED_CREDENTIAL_ENV,
})

# Port allocation
DEFAULT_PORT_BASE: int = 30000
DEFAULT_PORT_CEILING: int = 39999

# Payment probe retry budget
PROBE_MAX_ATTEMPTS: int = 3
PROBE_DELAY_S: float = 0.5
