"""Payment-gated (x402) HTTP flow client.

The protected resource is the agent-task endpoint itself. An unpaid POST
must be answered with HTTP 402 and a payment challenge; the same request
resent with a signed payment proof must be processed normally.

Probe semantics: only transport-level failures (connection refused,
reset, timeouts) consume the retry budget. Any HTTP response, a 402
included, ends probing immediately.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import secrets
import time
from typing import Any, Protocol, runtime_checkable

import httpx
from eth_account import Account
from pydantic import ValidationError

from src.conformance import constants
from src.conformance.exceptions import PaymentProbeError, ProtocolViolation
from src.conformance.models import PaymentRequired, PaymentRequirements
from src.conformance.retry import RetryExhausted, RetryPolicy, retry_async

logger = logging.getLogger(__name__)

_TRANSFER_WITH_AUTHORIZATION_TYPES: dict[str, list[dict[str, str]]] = {
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ],
}

# Clock skew allowance for the authorization's validAfter bound.
_VALID_AFTER_SKEW_S = 600


def encode_header_payload(payload: dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(payload, separators=(",", ":")).encode()).decode()


def decode_header_payload(value: str) -> dict[str, Any]:
    """Decode a base64 JSON header value.

    Raises:
        ValueError: If the value is not base64 encoded JSON.
    """
    try:
        return json.loads(base64.b64decode(value, validate=True))
    except (binascii.Error, json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValueError(f"Header value is not base64 JSON: {exc}") from exc


def caip2_chain_id(network: str) -> int:
    """Return the numeric chain id of an ``eip155:<id>`` network identifier."""
    namespace, _, reference = network.partition(":")
    if namespace != "eip155" or not reference.isdigit():
        raise ValueError(f"Not an EVM CAIP-2 network identifier: {network!r}")
    return int(reference)


@runtime_checkable
class PaymentSigner(Protocol):
    """Builds a payment proof for one advertised requirement."""

    network: str

    def sign(self, requirement: PaymentRequirements, challenge: PaymentRequired) -> dict[str, Any]: ...


class ExactEvmSigner:
    """Signs "exact" scheme payments as EIP-3009 ``TransferWithAuthorization``.

    The token contract named by the requirement's ``asset`` is the EIP-712
    verifying contract; its domain name and version come from the
    requirement's ``extra`` block.
    """

    def __init__(self, private_key: str, network: str) -> None:
        self._account = Account.from_key(private_key)
        self.network = network
        self.chain_id = caip2_chain_id(network)

    @property
    def address(self) -> str:
        return self._account.address

    def sign(self, requirement: PaymentRequirements, challenge: PaymentRequired) -> dict[str, Any]:
        if requirement.scheme != "exact":
            raise ValueError(f"Unsupported payment scheme: {requirement.scheme!r}")

        now = int(time.time())
        authorization = {
            "from": self.address,
            "to": requirement.pay_to,
            "value": requirement.value,
            "validAfter": str(now - _VALID_AFTER_SKEW_S),
            "validBefore": str(now + requirement.max_timeout_seconds),
            "nonce": "0x" + secrets.token_hex(32),
        }
        domain = {
            "name": requirement.extra.get("name", "USDC"),
            "version": str(requirement.extra.get("version", "2")),
            "chainId": self.chain_id,
            "verifyingContract": requirement.asset,
        }
        message = {
            "from": authorization["from"],
            "to": authorization["to"],
            "value": int(authorization["value"]),
            "validAfter": int(authorization["validAfter"]),
            "validBefore": int(authorization["validBefore"]),
            "nonce": bytes.fromhex(authorization["nonce"][2:]),
        }
        signed = self._account.sign_typed_data(
            domain_data=domain,
            message_types=_TRANSFER_WITH_AUTHORIZATION_TYPES,
            message_data=message,
        )
        signature = "0x" + bytes(signed.signature).hex()

        payload: dict[str, Any] = {"signature": signature, "authorization": authorization}
        if challenge.x402_version >= 2:
            return {
                "x402Version": challenge.x402_version,
                "resource": challenge.resource,
                "accepted": requirement.model_dump(mode="json", by_alias=True, exclude_none=True),
                "payload": payload,
            }
        return {
            "x402Version": challenge.x402_version,
            "scheme": requirement.scheme,
            "network": requirement.network,
            "payload": payload,
        }


class PaymentFlowClient:
    """Drives the 402 challenge and the paid retry against one server."""

    def __init__(
        self,
        base_url: str,
        policy: RetryPolicy | None = None,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.url = self.base_url + constants.A2A_PATH
        self.policy = policy or RetryPolicy(
            max_attempts=constants.PROBE_MAX_ATTEMPTS, delay_s=constants.PROBE_DELAY_S
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout_s, transport=transport
        )

    async def __aenter__(self) -> PaymentFlowClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def probe_unpaid(self, body: dict[str, Any]) -> httpx.Response:
        """POST *body* without payment and return the first HTTP response.

        Raises:
            PaymentProbeError: If every attempt failed at the transport level.
        """

        async def _post() -> httpx.Response:
            return await self._client.post(constants.A2A_PATH, json=body)

        try:
            response = await retry_async(
                _post,
                self.policy,
                retry_on=lambda exc: isinstance(exc, httpx.TransportError),
            )
        except RetryExhausted as exc:
            raise PaymentProbeError(self.url, exc.attempts, exc.last_error) from exc
        logger.info("Unpaid probe of %s -> HTTP %d", self.url, response.status_code)
        return response

    @staticmethod
    def parse_challenge(response: httpx.Response) -> PaymentRequired:
        """Extract the payment challenge from a 402 response's header or body.

        Raises:
            ProtocolViolation: If neither carries a well-formed challenge.
        """
        data: Any = None
        for name in constants.PAYMENT_REQUIRED_HEADERS:
            value = response.headers.get(name)
            if value:
                try:
                    data = decode_header_payload(value)
                except ValueError as exc:
                    raise ProtocolViolation(f"{name} header", "base64 JSON challenge", str(exc)) from None
                break
        if data is None:
            try:
                data = response.json()
            except (json.JSONDecodeError, UnicodeDecodeError):
                raise ProtocolViolation("402 body", "payment challenge JSON", response.text[:200]) from None
        try:
            return PaymentRequired.model_validate(data)
        except ValidationError as exc:
            raise ProtocolViolation("payment challenge", "x402 PaymentRequired", str(exc)) from None

    async def paid_request(self, body: dict[str, Any], signer: PaymentSigner) -> httpx.Response:
        """Probe, pay for the requirement matching *signer*'s network, and resend.

        Returns the response to the paid request; a probe that was not
        challenged with 402 is returned as is.
        """
        probe = await self.probe_unpaid(body)
        if probe.status_code != constants.PAYMENT_REQUIRED_STATUS:
            logger.warning("Expected a 402 challenge from %s, got %d", self.url, probe.status_code)
            return probe
        return await self.pay_for(body, probe, signer)

    async def pay_for(
        self, body: dict[str, Any], challenged: httpx.Response, signer: PaymentSigner
    ) -> httpx.Response:
        """Answer the 402 *challenged* response by resending *body* with a signed payment.

        Raises:
            ProtocolViolation: If the challenge is malformed or offers no
                requirement on *signer*'s network.
        """
        challenge = self.parse_challenge(challenged)
        requirement = challenge.for_network(signer.network)
        if requirement is None:
            offered = [r.network for r in challenge.accepts]
            raise ProtocolViolation("payment challenge network", signer.network, offered)

        proof = signer.sign(requirement, challenge)
        header = (
            constants.PAYMENT_SIGNATURE_HEADER
            if challenge.x402_version >= 2
            else constants.LEGACY_PAYMENT_HEADER
        )
        response = await self._client.post(
            constants.A2A_PATH, json=body, headers={header: encode_header_payload(proof)}
        )
        settlement = settlement_of(response)
        logger.info(
            "Paid request to %s -> HTTP %d (settlement=%s)",
            self.url,
            response.status_code,
            settlement.get("transaction") if settlement else None,
        )
        return response


def settlement_of(response: httpx.Response) -> dict[str, Any] | None:
    """Decode the settlement receipt header of a paid response, if present."""
    for name in constants.PAYMENT_RESPONSE_HEADERS:
        value = response.headers.get(name)
        if value:
            try:
                return decode_header_payload(value)
            except ValueError:
                logger.warning("Unreadable %s header: %s", name, value[:80])
                return None
    return None
