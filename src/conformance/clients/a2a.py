"""Agent-task (A2A) protocol client.

JSON-RPC 2.0 over HTTP POST to ``/a2a`` with a discovery document at
``/.well-known/agent-card.json``. Methods return parsed wire models and
never judge them; judging is done in :mod:`src.conformance.checks`.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

import httpx
from pydantic import ValidationError

from src.conformance import constants
from src.conformance.exceptions import ProtocolViolation
from src.conformance.models import AgentCard, JsonRpcResponse, Message

logger = logging.getLogger(__name__)


@dataclass
class StreamResult:
    """Outcome of a ``message/stream`` request."""
    status_code: int
    content_type: str
    events: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_event_stream(self) -> bool:
        return self.content_type.split(";")[0].strip() == constants.EVENT_STREAM_CONTENT_TYPE


def build_send_params(text: str, context_id: str | None = None) -> dict[str, Any]:
    """Params for ``message/send`` / ``message/stream`` carrying one user text message."""
    message = Message.user(text).model_dump(mode="json", by_alias=True)
    params: dict[str, Any] = {"message": message}
    if context_id is not None:
        message["contextId"] = context_id
        params["contextId"] = context_id
    return params


def build_envelope(
    method: str,
    params: dict[str, Any] | None = None,
    *,
    jsonrpc: str = constants.JSONRPC_VERSION,
    request_id: str | int | None = None,
) -> dict[str, Any]:
    return {
        "jsonrpc": jsonrpc,
        "method": method,
        "params": params or {},
        "id": request_id if request_id is not None else str(uuid.uuid4()),
    }


def _parse_json(response: httpx.Response, what: str) -> Any:
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ProtocolViolation(
            f"{what} body", "JSON document", response.text[:200]
        ) from None


class A2AClient:
    """Async client for one running agent server.

    Usage::

        async with A2AClient("http://localhost:30001") as client:
            card = await client.get_agent_card()
            response = await client.send_message("Hello")
    """

    def __init__(
        self,
        base_url: str,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout_s, transport=transport
        )

    async def __aenter__(self) -> A2AClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_agent_card(self) -> AgentCard:
        """GET the discovery document."""
        response = await self._client.get(constants.AGENT_CARD_PATH)
        if response.status_code != 200:
            raise ProtocolViolation("agent card status", 200, response.status_code)
        data = _parse_json(response, "agent card")
        try:
            return AgentCard.model_validate(data)
        except ValidationError as exc:
            raise ProtocolViolation("agent card shape", "agent card object", str(exc)) from None

    async def post_raw(self, envelope: dict[str, Any]) -> httpx.Response:
        """POST an arbitrary body to the agent-task endpoint."""
        return await self._client.post(constants.A2A_PATH, json=envelope)

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        jsonrpc: str = constants.JSONRPC_VERSION,
    ) -> JsonRpcResponse:
        """Invoke *method* and parse the JSON-RPC response, whatever its HTTP status."""
        envelope = build_envelope(method, params, jsonrpc=jsonrpc)
        response = await self.post_raw(envelope)
        logger.debug("%s -> HTTP %d", method, response.status_code)
        data = _parse_json(response, f"{method} response")
        try:
            return JsonRpcResponse.model_validate(data)
        except ValidationError as exc:
            raise ProtocolViolation(
                f"{method} envelope", "JSON-RPC response object", str(exc)
            ) from None

    async def send_message(self, text: str, context_id: str | None = None) -> JsonRpcResponse:
        return await self.call(constants.METHOD_SEND, build_send_params(text, context_id))

    async def get_task(self, task_id: str) -> JsonRpcResponse:
        return await self.call(constants.METHOD_TASK_GET, {"id": task_id})

    async def cancel_task(self, task_id: str) -> JsonRpcResponse:
        return await self.call(constants.METHOD_TASK_CANCEL, {"id": task_id})

    async def stream_message(self, text: str, max_events: int = 100) -> StreamResult:
        """Send ``message/stream`` and collect server-sent events until the stream ends."""
        envelope = build_envelope(constants.METHOD_STREAM, build_send_params(text))
        headers = {"Accept": constants.EVENT_STREAM_CONTENT_TYPE}
        async with self._client.stream(
            "POST", constants.A2A_PATH, json=envelope, headers=headers
        ) as response:
            result = StreamResult(
                status_code=response.status_code,
                content_type=response.headers.get("content-type", ""),
            )
            if not result.is_event_stream:
                await response.aread()
                return result
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                payload = line[len("data:"):].strip()
                if not payload:
                    continue
                try:
                    result.events.append(json.loads(payload))
                except json.JSONDecodeError:
                    result.events.append({"raw": payload})
                if len(result.events) >= max_events:
                    break
        return result
