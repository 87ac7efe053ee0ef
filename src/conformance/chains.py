"""Chain scenarios exercised by the harness.

Each scenario is static configuration: which chain the project targets,
whether the chain supports x402 payments, and whether it is a test network.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ChainNetwork:
    """Numeric chain id and CAIP-2 network identifier for a chain."""

    chain_id: int
    caip2: str


@dataclass(frozen=True)
class ChainScenario:
    """One conformance scenario per supported chain."""

    chain_key: str
    chain_name: str
    payments_supported: bool
    is_test_network: bool = False

    @property
    def network(self) -> ChainNetwork:
        return CHAIN_NETWORKS[self.chain_key]


CHAIN_NETWORKS: dict[str, ChainNetwork] = {
    "base-mainnet": ChainNetwork(chain_id=8453, caip2="eip155:8453"),
    "base-sepolia": ChainNetwork(chain_id=84532, caip2="eip155:84532"),
    "eth-mainnet": ChainNetwork(chain_id=1, caip2="eip155:1"),
    "eth-sepolia": ChainNetwork(chain_id=11155111, caip2="eip155:11155111"),
    "monad-mainnet": ChainNetwork(chain_id=143, caip2="eip155:143"),
    "monad-testnet": ChainNetwork(chain_id=10143, caip2="eip155:10143"),
    "polygon-amoy": ChainNetwork(chain_id=80002, caip2="eip155:80002"),
    "polygon-mainnet": ChainNetwork(chain_id=137, caip2="eip155:137"),
}

# x402 is only wired up for Base and Polygon; the Monad facilitator speaks
# x402 v1 only and Ethereum has no facilitator.
SCENARIOS: tuple[ChainScenario, ...] = (
    ChainScenario("base-mainnet", "Base Mainnet", payments_supported=True),
    ChainScenario("base-sepolia", "Base Sepolia", payments_supported=True, is_test_network=True),
    ChainScenario("eth-mainnet", "Ethereum Mainnet", payments_supported=False),
    ChainScenario("eth-sepolia", "Ethereum Sepolia", payments_supported=False, is_test_network=True),
    ChainScenario("monad-mainnet", "Monad Mainnet", payments_supported=False),
    ChainScenario("monad-testnet", "Monad Testnet", payments_supported=False, is_test_network=True),
    ChainScenario("polygon-amoy", "Polygon Amoy", payments_supported=True, is_test_network=True),
    ChainScenario("polygon-mainnet", "Polygon Mainnet", payments_supported=True),
)

PAYMENT_NETWORKS: frozenset[str] = frozenset(
    s.network.caip2 for s in SCENARIOS if s.payments_supported
)


def get_scenario(chain_key: str) -> ChainScenario:
    """Look up a scenario by chain key.

    Raises:
        KeyError: If *chain_key* is not a supported chain.
    """
    for scenario in SCENARIOS:
        if scenario.chain_key == chain_key:
            return scenario
    known = ", ".join(s.chain_key for s in SCENARIOS)
    raise KeyError(f"Unknown chain '{chain_key}' (known: {known})")
