"""Suite composition: which sub-suites run for a chain scenario.

:func:`plan_suite` is a pure function of the scenario's two booleans. Each
:class:`SubSuite` carries a static :class:`SubSuiteProfile` describing the
project it needs and how that project is brought up.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from src.conformance.chains import ChainScenario
from src.conformance.scaffold import Feature, ProjectRequest


class ServerKind(str, Enum):
    """Which entry point a sub-suite's managed process runs."""
    A2A = "a2a"


@dataclass(frozen=True)
class SubSuiteProfile:
    """Provisioning needs of one sub-suite.

    Attributes:
        features: Features requested from the scaffold generator.
        streaming: Whether the agent server is generated with streaming.
        project_suffix: Appended to the chain key to name the project.
        runtime: Install dependencies, inject mock mode and write the env
            file (with an allocated port) after generation.
        server: Entry point started by the supervisor, or ``None`` when the
            sub-suite owns no long-lived process.
        needs_funded_credential: Skip the sub-suite when the funded test
            credential is absent.
    """

    features: tuple[Feature, ...]
    project_suffix: str
    streaming: bool = False
    runtime: bool = False
    server: ServerKind | None = None
    needs_funded_credential: bool = False

    @property
    def owns_server(self) -> bool:
        return self.server is not None


class SubSuite(str, Enum):
    A2A = "a2a"
    A2A_STREAMING = "a2a-streaming"
    TOOLS = "tools"
    REGISTRATION = "registration"
    README = "readme"
    PAYMENTS = "payments"
    PAID_REQUEST = "paid-request"

    @property
    def profile(self) -> SubSuiteProfile:
        return _PROFILES[self]

    @property
    def title(self) -> str:
        return _TITLES[self]


_PROFILES: dict[SubSuite, SubSuiteProfile] = {
    SubSuite.A2A: SubSuiteProfile(
        features=(Feature.A2A,),
        project_suffix="a2a-no-stream",
        runtime=True,
        server=ServerKind.A2A,
    ),
    SubSuite.A2A_STREAMING: SubSuiteProfile(
        features=(Feature.A2A,),
        project_suffix="a2a-streaming",
        streaming=True,
        runtime=True,
        server=ServerKind.A2A,
    ),
    SubSuite.TOOLS: SubSuiteProfile(
        features=(Feature.MCP,),
        project_suffix="mcp",
        runtime=True,
    ),
    SubSuite.REGISTRATION: SubSuiteProfile(
        features=(Feature.A2A, Feature.MCP),
        project_suffix="registration",
    ),
    SubSuite.README: SubSuiteProfile(
        features=(Feature.A2A, Feature.MCP),
        project_suffix="readme",
    ),
    SubSuite.PAYMENTS: SubSuiteProfile(
        features=(Feature.A2A, Feature.X402),
        project_suffix="x402",
        runtime=True,
        server=ServerKind.A2A,
    ),
    SubSuite.PAID_REQUEST: SubSuiteProfile(
        features=(Feature.A2A, Feature.X402),
        project_suffix="x402-paid",
        runtime=True,
        server=ServerKind.A2A,
        needs_funded_credential=True,
    ),
}

_TITLES: dict[SubSuite, str] = {
    SubSuite.A2A: "A2A Server (No Streaming)",
    SubSuite.A2A_STREAMING: "A2A Server (With Streaming)",
    SubSuite.TOOLS: "MCP Server",
    SubSuite.REGISTRATION: "Registration File",
    SubSuite.README: "README Generation",
    SubSuite.PAYMENTS: "x402 Payments",
    SubSuite.PAID_REQUEST: "x402 Paid Request",
}

_ALWAYS: tuple[SubSuite, ...] = (
    SubSuite.A2A,
    SubSuite.A2A_STREAMING,
    SubSuite.TOOLS,
    SubSuite.REGISTRATION,
    SubSuite.README,
)


def plan_suite(scenario: ChainScenario) -> tuple[SubSuite, ...]:
    """Return the ordered sub-suites for *scenario*."""
    plan = list(_ALWAYS)
    if scenario.payments_supported:
        plan.append(SubSuite.PAYMENTS)
        if scenario.is_test_network:
            plan.append(SubSuite.PAID_REQUEST)
    return tuple(plan)


def project_request(scenario: ChainScenario, sub_suite: SubSuite) -> ProjectRequest:
    """Build the scaffold request for *sub_suite* on *scenario*'s chain."""
    profile = sub_suite.profile
    return ProjectRequest(
        chain=scenario.chain_key,
        features=profile.features,
        project_name=f"{scenario.chain_key}-{profile.project_suffix}",
        streaming=profile.streaming,
    )
