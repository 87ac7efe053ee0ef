"""Exception taxonomy for the conformance harness.

Provisioning errors are fatal to the affected sub-suite only. Protocol
violations fail a single check. Skips short-circuit a sub-suite without
marking it failed.
"""

from __future__ import annotations

from typing import Any


class HarnessError(Exception):
    """Base exception for all harness errors."""

    pass


class ProvisioningError(HarnessError):
    """Raised when a project cannot be generated, installed or started."""

    pass


class ScaffoldError(ProvisioningError):
    """Raised when an external collaborator command fails."""

    def __init__(self, step: str, returncode: int, output: str = "") -> None:
        self.step = step
        self.returncode = returncode
        self.output = output
        message = f"{step} failed with exit code {returncode}"
        if output:
            message += f"\n{output}"
        super().__init__(message)


class ServerStartupError(ProvisioningError):
    """Raised when a server process never accepted connections on its port."""

    def __init__(
        self,
        entrypoint: str,
        elapsed_s: float,
        port: int,
        output: str = "",
        reason: str = "did not accept connections",
    ) -> None:
        self.entrypoint = entrypoint
        self.elapsed_s = elapsed_s
        self.port = port
        self.output = output
        message = (
            f"Server '{entrypoint}' {reason} on port {port} "
            f"after {elapsed_s:.1f}s"
        )
        if output:
            message += f"\n--- server output ---\n{output}"
        super().__init__(message)


class PaymentProbeError(ProvisioningError):
    """Raised when the unpaid probe never reached the server."""

    def __init__(self, url: str, attempts: int, cause: BaseException | None = None) -> None:
        self.url = url
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Could not reach {url} after {attempts} attempt(s): {cause}"
        )


class ProtocolViolation(HarnessError, AssertionError):
    """Raised when a response is missing a required field or carries a wrong value."""

    def __init__(self, check: str, expected: Any, observed: Any) -> None:
        self.check = check
        self.expected = expected
        self.observed = observed
        super().__init__(
            f"{check}: expected {expected!r}, observed {observed!r}"
        )


class ScenarioSkipped(HarnessError):
    """Raised to skip a sub-suite, e.g. when an optional credential is absent."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)
