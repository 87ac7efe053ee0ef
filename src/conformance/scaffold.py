"""Interfaces to the project-producing collaborators, plus project file helpers.

The harness never writes template logic itself. It asks a scaffold
generator for a project directory, asks a mock-mode injector to rewire the
project's language-model calls, asks an installer for dependencies, and
writes the test environment file that carries the allocated port.

Command-driven adapters are provided for all three collaborators; any
object with the matching method satisfies the protocols.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable

from src.conformance.config import ProjectLayout
from src.conformance.constants import PAYEE_ENV_KEY, SECRET_ENV_KEYS
from src.conformance.exceptions import ProvisioningError, ScaffoldError

logger = logging.getLogger(__name__)

# Placeholder values written into test env files. None of them are live.
TEST_PAYEE_ADDRESS = "0x742d35Cc6634C0532925a3b844Bc9e7595f0bEb0"
_TEST_ENV_DEFAULTS: dict[str, str] = {
    "OPENAI_API_KEY": "sk-test-mock",
    "PINATA_JWT": "test-pinata-jwt",
    "PRIVATE_KEY": "0x" + "ab" * 32,
    PAYEE_ENV_KEY: TEST_PAYEE_ADDRESS,
}


class Feature(str, Enum):
    """Optional capabilities a generated project can include."""
    A2A = "a2a"
    MCP = "mcp"
    X402 = "x402"


@dataclass(frozen=True)
class ProjectRequest:
    """Input to the scaffold generator."""
    chain: str
    features: tuple[Feature, ...]
    project_name: str
    streaming: bool = False

    def has(self, feature: Feature) -> bool:
        return feature in self.features


@runtime_checkable
class ScaffoldGenerator(Protocol):
    async def generate(self, request: ProjectRequest) -> Path: ...


@runtime_checkable
class MockModeInjector(Protocol):
    async def apply(self, project_dir: Path) -> None: ...


@runtime_checkable
class DependencyInstaller(Protocol):
    async def install(self, project_dir: Path) -> None: ...


# ---------------------------------------------------------------------------
# Command-driven adapters
# ---------------------------------------------------------------------------


def _collaborator_env() -> dict[str, str]:
    return {k: v for k, v in os.environ.items() if k not in SECRET_ENV_KEYS}


def expand_command(template: list[str], values: dict[str, str], step: str) -> list[str]:
    """Fill ``{placeholder}`` fields of a command template.

    Raises:
        ScaffoldError: If the template names a placeholder not in *values*
            or is not a valid format string.
    """
    try:
        return [part.format(**values) for part in template]
    except (KeyError, IndexError, ValueError) as exc:
        known = ", ".join("{" + key + "}" for key in values)
        raise ScaffoldError(
            step, -1, f"bad placeholder {exc} in command template (known: {known})"
        ) from exc


async def run_command(
    cmd: list[str],
    *,
    cwd: Path,
    step: str,
    timeout_s: float,
) -> str:
    """Run *cmd* in *cwd* and return its combined output.

    Raises:
        ScaffoldError: On a non-zero exit code, a timeout, or a command that
            could not be started at all.
    """
    logger.info("%s: %s (cwd=%s)", step, " ".join(cmd), cwd)
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=_collaborator_env(),
        )
    except OSError as exc:
        raise ScaffoldError(step, -1, f"could not start {cmd[0]!r}: {exc}") from exc
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ScaffoldError(step, -1, f"timed out after {timeout_s:.0f}s")

    output = stdout.decode("utf-8", errors="replace") if stdout else ""
    if proc.returncode:
        raise ScaffoldError(step, proc.returncode, output[-4000:])
    return output


@dataclass
class CommandScaffoldGenerator:
    """Runs an external generator command built from a template.

    Placeholders: ``{chain}``, ``{features}`` (comma separated),
    ``{streaming}`` (``true``/``false``), ``{project_name}``,
    ``{output_dir}``, ``{project_dir}``. The generator must create
    ``output_dir/project_name``.
    """

    command: list[str]
    output_dir: Path
    timeout_s: float = 300.0

    async def generate(self, request: ProjectRequest) -> Path:
        if not self.command:
            raise ProvisioningError("No generator command configured")
        output_dir = Path(self.output_dir).resolve()
        output_dir.mkdir(parents=True, exist_ok=True)
        project_dir = output_dir / request.project_name
        if project_dir.exists():
            shutil.rmtree(project_dir)

        values = {
            "chain": request.chain,
            "features": ",".join(f.value for f in request.features),
            "streaming": "true" if request.streaming else "false",
            "project_name": request.project_name,
            "output_dir": str(output_dir),
            "project_dir": str(project_dir),
        }
        cmd = expand_command(self.command, values, step="generate")
        await run_command(cmd, cwd=output_dir, step="generate", timeout_s=self.timeout_s)

        if not project_dir.is_dir():
            raise ProvisioningError(
                f"Generator finished but {project_dir} was not created"
            )
        return project_dir


@dataclass
class CommandInstaller:
    """Installs a project's dependencies with a fixed command (e.g. ``npm install``)."""

    command: list[str] = field(default_factory=lambda: ["npm", "install"])
    timeout_s: float = 600.0

    async def install(self, project_dir: Path) -> None:
        if not self.command:
            logger.info("No install command configured; skipping install")
            return
        await run_command(
            list(self.command), cwd=project_dir, step="install", timeout_s=self.timeout_s
        )


@dataclass
class OverlayMockInjector:
    """Copies an overlay tree over the project so model calls return marker text.

    The overlay mirrors the project layout, e.g. an ``src/agent.ts`` whose
    ``generateResponse`` returns ``"[MOCK] ..."``.
    """

    overlay_dir: Path

    async def apply(self, project_dir: Path) -> None:
        overlay = Path(self.overlay_dir)
        if not overlay.is_dir():
            raise ProvisioningError(f"Mock overlay directory not found: {overlay}")
        try:
            shutil.copytree(overlay, project_dir, dirs_exist_ok=True)
        except (shutil.Error, OSError) as exc:
            raise ProvisioningError(f"Could not apply mock overlay {overlay}: {exc}") from exc
        logger.info("Applied mock overlay %s to %s", overlay, project_dir)


class GeneratorMockMode:
    """Injector for generators that already emit mock mode; does nothing."""

    async def apply(self, project_dir: Path) -> None:
        logger.debug("Mock mode provided by generator for %s", project_dir)


# ---------------------------------------------------------------------------
# Project files
# ---------------------------------------------------------------------------


def write_test_env(
    project_dir: Path,
    port: int,
    layout: ProjectLayout | None = None,
    extra: dict[str, str] | None = None,
) -> Path:
    """Write the project's env file with the allocated port and placeholder secrets.

    Keys already present in the file are overwritten; other lines are kept.
    """
    layout = layout or ProjectLayout()
    env_path = Path(project_dir) / layout.env_file
    values = dict(_TEST_ENV_DEFAULTS)
    values["PORT"] = str(port)
    values.update(extra or {})

    kept: list[str] = []
    if env_path.exists():
        for line in env_path.read_text(encoding="utf-8").splitlines():
            key = line.split("=", 1)[0].strip()
            if key and not key.startswith("#") and key in values:
                continue
            kept.append(line)

    lines = kept + [f"{key}={value}" for key, value in values.items()]
    env_path.parent.mkdir(parents=True, exist_ok=True)
    env_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return env_path


def file_exists(project_dir: Path, relative_path: str) -> bool:
    return (Path(project_dir) / relative_path).is_file()


def read_generated_file(project_dir: Path, relative_path: str) -> str:
    """Read a generated file as text.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    return (Path(project_dir) / relative_path).read_text(encoding="utf-8")
