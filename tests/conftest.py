"""Shared test fixtures for the conformance harness test suite."""
from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Callable

import pytest

from src.conformance.chains import ChainScenario, get_scenario
from src.conformance.config import HarnessConfig


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolated_harness_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's CONFORMANCE_* settings and funded key out of tests."""
    for key in list(os.environ):
        if key.startswith("CONFORMANCE_") or key == "TEST_PAYER_PRIVATE_KEY":
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def harness_config() -> HarnessConfig:
    """Fast timings and a Python launcher so tests can start real processes."""
    return HarnessConfig(
        startup_timeout_s=10.0,
        startup_poll_interval_s=0.05,
        stop_grace_s=2.0,
        probe_attempts=3,
        probe_delay_s=0.01,
        request_timeout_s=5.0,
        launch_command=[sys.executable, "{entrypoint}"],
    )


@pytest.fixture
def base_sepolia() -> ChainScenario:
    return get_scenario("base-sepolia")


# ---------------------------------------------------------------------------
# Generated project on disk
# ---------------------------------------------------------------------------


A2A_SERVER_SOURCE = """\
import express from 'express';
import { paymentMiddleware, x402ResourceServer } from '@x402/express';
import { ExactEvmScheme } from '@x402/evm/exact/server';
import { streamResponse } from './agent.js';

const payTo = process.env.X402_PAYEE_ADDRESS;
const network = '{caip2}';

app.post('/a2a', (req, res) => {
  res.setHeader('Content-Type', 'text/event-stream');
});
"""

REGISTER_SOURCE = """\
import { SDK } from 'agent0-sdk';

const sdk = new SDK({ chainId: {chain_id} });
agent.setTrust(true, false, false);
await agent.registerIPFS();
"""

README_TEMPLATE = """\
# Test agent on {chain_name}

## Quick Start

1. Configure environment: set PINATA_JWT and OPENAI_API_KEY in .env
2. Fund your wallet on {chain_name}
3. npm run register

See OASF skills and domains.
"""


def write_fake_project(project_dir: Path, scenario: ChainScenario) -> Path:
    """Write a project tree that satisfies every file-content check."""
    network = scenario.network
    files = {
        "src/a2a-server.ts": A2A_SERVER_SOURCE.replace("{caip2}", network.caip2),
        "src/mcp-server.ts": "// tool server\n",
        "src/agent.ts": "export async function generateResponse() { return '[MOCK] hi'; }\n",
        "src/tools.ts": "export const tools = ['chat', 'echo', 'get_time'];\n",
        "src/register.ts": REGISTER_SOURCE.replace("{chain_id}", str(network.chain_id)),
        ".well-known/agent-card.json": json.dumps({"name": "test-agent"}),
        "package.json": json.dumps(
            {
                "name": project_dir.name,
                "dependencies": {
                    "@x402/express": "^2.0.0",
                    "@x402/core": "^2.0.0",
                    "@x402/evm": "^2.0.0",
                },
            }
        ),
        "README.md": README_TEMPLATE.format(chain_name=scenario.chain_name),
    }
    for relative, content in files.items():
        path = project_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return project_dir


@pytest.fixture
def make_project(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing a conformant fake project for a scenario."""

    def _make(scenario: ChainScenario, name: str = "project") -> Path:
        return write_fake_project(tmp_path / name, scenario)

    return _make
