"""Pydantic v2 wire models for the protocols under test.

Field names follow Python conventions; camelCase wire names are mapped with
aliases. Unknown wire fields are kept so checks can report on them.
"""
from __future__ import annotations

import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from src.conformance import constants

_WIRE = {"populate_by_name": True, "extra": "allow"}


# ---------------------------------------------------------------------------
# Agent-task protocol
# ---------------------------------------------------------------------------


class TaskStatus(str, Enum):
    """Lifecycle states of a task, as reported by the server."""
    SUBMITTED = "submitted"
    WORKING = "working"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"


TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.CANCELED, TaskStatus.FAILED}
)


class MessageRole(str, Enum):
    USER = "user"
    AGENT = "agent"


class TextPart(BaseModel):
    type: str = "text"
    text: str = ""

    model_config = _WIRE


class Message(BaseModel):
    role: MessageRole
    parts: list[TextPart] = Field(default_factory=list)

    model_config = _WIRE

    @property
    def text(self) -> str:
        """Concatenated text of all parts."""
        return "".join(part.text for part in self.parts)

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role=MessageRole.USER, parts=[TextPart(text=text)])


class Task(BaseModel):
    """A unit of conversational work owned by the server under test."""
    id: str
    context_id: str | None = Field(default=None, alias="contextId")
    status: TaskStatus
    messages: list[Message] = Field(default_factory=list)

    model_config = _WIRE

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class AgentCapabilities(BaseModel):
    streaming: bool | None = None

    model_config = _WIRE


class AgentCard(BaseModel):
    """Discovery document served at the well-known path."""
    name: str | None = None
    description: str | None = None
    url: str | None = None
    capabilities: AgentCapabilities | None = None

    model_config = _WIRE


# ---------------------------------------------------------------------------
# JSON-RPC 2.0 envelope
# ---------------------------------------------------------------------------


class JsonRpcRequest(BaseModel):
    jsonrpc: str = constants.JSONRPC_VERSION
    method: str
    params: dict[str, Any] = Field(default_factory=dict)
    id: str | int = Field(default_factory=lambda: str(uuid.uuid4()))


class JsonRpcError(BaseModel):
    code: int | None = None
    message: str = ""
    data: Any = None

    model_config = _WIRE


class JsonRpcResponse(BaseModel):
    jsonrpc: str | None = None
    id: str | int | None = None
    result: dict[str, Any] | None = None
    error: JsonRpcError | None = None

    model_config = _WIRE

    def task(self) -> Task:
        """Parse ``result`` as a :class:`Task`.

        Raises:
            ValueError: If the response carries no result.
        """
        if self.result is None:
            raise ValueError(f"JSON-RPC response has no result (error={self.error})")
        return Task.model_validate(self.result)


# ---------------------------------------------------------------------------
# x402 payment challenge
# ---------------------------------------------------------------------------


class PaymentRequirements(BaseModel):
    """One acceptable way to pay, as advertised by a 402 challenge."""
    scheme: str
    network: str
    amount: str | None = None
    max_amount_required: str | None = Field(default=None, alias="maxAmountRequired")
    asset: str
    pay_to: str = Field(alias="payTo")
    max_timeout_seconds: int = Field(default=60, alias="maxTimeoutSeconds")
    extra: dict[str, Any] = Field(default_factory=dict)

    model_config = _WIRE

    @property
    def value(self) -> str:
        """Amount in atomic units; v2 uses ``amount``, v1 ``maxAmountRequired``."""
        return self.amount or self.max_amount_required or "0"


class PaymentRequired(BaseModel):
    """Body (or header payload) of an HTTP 402 response."""
    x402_version: int = Field(default=2, alias="x402Version")
    error: str | None = None
    resource: Any = None
    accepts: list[PaymentRequirements] = Field(default_factory=list)

    model_config = _WIRE

    def for_network(self, network: str) -> PaymentRequirements | None:
        """Return the first requirement advertised for *network*."""
        for requirement in self.accepts:
            if requirement.network == network:
                return requirement
        return None
