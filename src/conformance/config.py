"""Harness configuration using pydantic-settings, with YAML loading."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.conformance import constants

logger = logging.getLogger(__name__)


class ProjectLayout(BaseModel):
    """Where a generated project keeps its files, and what they must contain.

    Defaults describe the TypeScript scaffold generator. A generator that
    emits a different layout overrides these in the ``layout:`` block of the
    YAML config.
    """

    source_dir: str = "src"
    a2a_entrypoint: str = "a2a-server.ts"
    mcp_entrypoint: str = "mcp-server.ts"
    agent_file: str = "src/agent.ts"
    tools_file: str = "src/tools.ts"
    register_file: str = "src/register.ts"
    agent_card_file: str = ".well-known/agent-card.json"
    manifest_file: str = "package.json"
    manifest_dependency_key: str = "dependencies"
    readme_file: str = "README.md"
    env_file: str = ".env"

    streaming_markers: list[str] = Field(
        default_factory=lambda: ["streamResponse", constants.EVENT_STREAM_CONTENT_TYPE]
    )
    registration_markers: list[str] = Field(
        default_factory=lambda: ["agent0-sdk", "registerIPFS", "chainId", "SDK", "setTrust"]
    )
    readme_markers: list[str] = Field(
        default_factory=lambda: [
            "Quick Start",
            "Configure environment",
            "PINATA_JWT",
            "OPENAI_API_KEY",
            "Fund your wallet",
            "npm run register",
            "OASF",
        ]
    )
    payment_dependencies: list[str] = Field(
        default_factory=lambda: ["@x402/express", "@x402/core", "@x402/evm"]
    )
    payment_server_markers: list[str] = Field(
        default_factory=lambda: ["paymentMiddleware", "x402ResourceServer", "ExactEvmScheme"]
    )

    def entrypoint_path(self, entrypoint: str) -> str:
        """Return *entrypoint* relative to the project root."""
        if not self.source_dir:
            return entrypoint
        return f"{self.source_dir}/{entrypoint}"


class HarnessConfig(BaseSettings):
    """Configuration for one conformance harness run.

    Every field can be set from the environment with the ``CONFORMANCE_``
    prefix (lists and the layout as JSON). The funded test credential is
    read from ``TEST_PAYER_PRIVATE_KEY`` directly.
    """

    # Ports
    port_base: int = constants.DEFAULT_PORT_BASE
    port_ceiling: int = constants.DEFAULT_PORT_CEILING

    # Process lifecycle
    startup_timeout_s: float = 90.0
    startup_poll_interval_s: float = 0.5
    stop_grace_s: float = 5.0
    output_tail_lines: int = 200

    # Protocol clients
    request_timeout_s: float = 30.0
    probe_attempts: int = constants.PROBE_MAX_ATTEMPTS
    probe_delay_s: float = constants.PROBE_DELAY_S

    # Collaborators
    output_dir: str = ".test-output"
    launch_command: list[str] = Field(
        default_factory=lambda: ["npx", "tsx", "{entrypoint}"]
    )
    generator_command: list[str] = Field(default_factory=list)
    install_command: list[str] = Field(default_factory=lambda: ["npm", "install"])
    install_timeout_s: float = 600.0
    mock_overlay_dir: str = ""
    layout: ProjectLayout = Field(default_factory=ProjectLayout)

    # Optional funded credential gating the paid round trip
    payer_private_key: SecretStr | None = Field(
        default=None, validation_alias=constants.FUNDED_CREDENTIAL_ENV
    )

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="CONFORMANCE_",
        populate_by_name=True,
        extra="ignore",
    )

    def launch_argv(self, entrypoint: str, project_dir: Path | str, port: int | None = None) -> list[str]:
        """Expand ``launch_command`` for *entrypoint* run from *project_dir*.

        Raises:
            ValueError: If the template uses an unknown placeholder.
        """
        values = {
            "entrypoint": entrypoint,
            "project_dir": str(project_dir),
            "port": "" if port is None else str(port),
        }
        try:
            return [part.format(**values) for part in self.launch_command]
        except (KeyError, IndexError) as exc:
            raise ValueError(f"Unknown placeholder {exc} in launch_command") from exc

    @property
    def has_funded_credential(self) -> bool:
        """Whether a funded test credential was supplied."""
        return bool(self.payer_private_key and self.payer_private_key.get_secret_value())


def load_harness_config(path: str | Path | None = None) -> HarnessConfig:
    """Build a ``HarnessConfig`` from the ``conformance:`` section of a YAML file.

    Unknown keys are silently ignored for forward-compatibility. Values from
    the file take precedence over environment variables. With no *path* the
    configuration comes from the environment and defaults only.

    Args:
        path: Filesystem path to the YAML config file.

    Returns:
        Populated ``HarnessConfig`` instance.

    Raises:
        FileNotFoundError: If *path* does not exist.
        ValueError: If the ``conformance:`` section is missing.
    """
    if path is None:
        return HarnessConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, "r", encoding="utf-8") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    section = raw.get("conformance", {})
    if not section:
        raise ValueError(f"No 'conformance:' section found in {path}")

    known_fields = set(HarnessConfig.model_fields)
    filtered = {k: v for k, v in section.items() if k in known_fields}

    logger.info("Loaded HarnessConfig from %s (%d keys)", path, len(filtered))
    return HarnessConfig(**filtered)
