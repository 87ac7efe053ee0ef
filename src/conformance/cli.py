"""Command-line interface for the conformance harness.

Commands: ``run``, ``list-chains``, ``plan``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from src.conformance import __version__
from src.conformance.chains import SCENARIOS, ChainScenario, get_scenario
from src.conformance.config import HarnessConfig, load_harness_config
from src.conformance.display import (
    print_chain_table,
    print_error_panel,
    print_plan,
    print_run_summary,
)
from src.conformance.logging import setup_logging
from src.conformance.report import RunReport, render_markdown
from src.conformance.runner import ConformanceRunner
from src.conformance.scaffold import (
    CommandInstaller,
    CommandScaffoldGenerator,
    GeneratorMockMode,
    MockModeInjector,
    OverlayMockInjector,
)
from src.conformance.suite import plan_suite

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="conformance",
    help="Protocol conformance harness for generated agent servers.",
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"conformance {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit."
    ),
) -> None:
    """Protocol conformance harness for generated agent servers."""


def _select_scenarios(chains: list[str] | None) -> list[ChainScenario]:
    if not chains:
        return list(SCENARIOS)
    try:
        return [get_scenario(key) for key in chains]
    except KeyError as exc:
        raise typer.BadParameter(str(exc.args[0]), param_hint="--chain") from None


def build_runner(config: HarnessConfig) -> ConformanceRunner:
    """Wire the command-driven collaborators described by *config*."""
    generator = CommandScaffoldGenerator(
        command=list(config.generator_command),
        output_dir=Path(config.output_dir),
    )
    injector: MockModeInjector
    if config.mock_overlay_dir:
        injector = OverlayMockInjector(Path(config.mock_overlay_dir))
    else:
        injector = GeneratorMockMode()
    installer = CommandInstaller(
        command=list(config.install_command), timeout_s=config.install_timeout_s
    )
    return ConformanceRunner(config, generator, injector, installer)


def write_report(report: RunReport, path: Path) -> None:
    """Write *report* as JSON for ``.json`` paths, Markdown otherwise."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() == ".json":
        path.write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
    else:
        path.write_text(render_markdown(report), encoding="utf-8")


@app.command("run")
def run(
    chain: Optional[List[str]] = typer.Option(
        None, "--chain", "-c", help="Chain key to test; repeatable. Defaults to all chains."
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="YAML file with a 'conformance:' section."
    ),
    report_path: Optional[Path] = typer.Option(
        None, "--report", help="Write the report here (.json or Markdown)."
    ),
) -> None:
    """Generate, start and check projects for the selected chains."""
    scenarios = _select_scenarios(chain)
    try:
        config = load_harness_config(config_path)
    except (FileNotFoundError, ValueError) as exc:
        print_error_panel(exc)
        raise typer.Exit(code=2)

    setup_logging(level=config.log_level)
    if not config.generator_command:
        print_error_panel(
            "No generator command configured. Set 'generator_command' in the config "
            "file or CONFORMANCE_GENERATOR_COMMAND."
        )
        raise typer.Exit(code=2)

    report = asyncio.run(build_runner(config).run(scenarios))

    if report_path is not None:
        write_report(report, report_path)
        typer.echo(f"Report written to {report_path}")
    print_run_summary(report)
    if not report.ok:
        raise typer.Exit(code=1)


@app.command("list-chains")
def list_chains() -> None:
    """List supported chains."""
    print_chain_table(SCENARIOS)


@app.command("plan")
def plan(
    chain: str = typer.Option(..., "--chain", "-c", help="Chain key."),
) -> None:
    """Show the sub-suites that would run for a chain."""
    scenario = _select_scenarios([chain])[0]
    print_plan(scenario, plan_suite(scenario))


if __name__ == "__main__":
    app()
