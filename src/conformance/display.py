"""Rich-based terminal output for harness runs.

All functions share the module-level ``_console`` so output stays
consistent across a session.
"""

from __future__ import annotations

from typing import Iterable

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from src.conformance.chains import ChainScenario
from src.conformance.report import CheckStatus, RunReport, ScenarioReport
from src.conformance.suite import SubSuite

_console = Console()

_STATUS_STYLE: dict[CheckStatus, str] = {
    CheckStatus.PASSED: "[green]PASSED[/green]",
    CheckStatus.FAILED: "[red]FAILED[/red]",
    CheckStatus.ERROR: "[bold red]ERROR[/bold red]",
    CheckStatus.SKIPPED: "[dim]SKIPPED[/dim]",
}


def print_chain_table(scenarios: Iterable[ChainScenario]) -> None:
    """Print the supported chains and their payment flags."""
    table = Table(title="Chains", show_header=True, header_style="bold magenta")
    table.add_column("Key", style="cyan", min_width=16)
    table.add_column("Name", min_width=18)
    table.add_column("Network", min_width=16)
    table.add_column("x402", justify="center")
    table.add_column("Testnet", justify="center")

    for scenario in scenarios:
        table.add_row(
            scenario.chain_key,
            scenario.chain_name,
            scenario.network.caip2,
            "yes" if scenario.payments_supported else "-",
            "yes" if scenario.is_test_network else "-",
        )
    _console.print(table)


def print_plan(scenario: ChainScenario, plan: Iterable[SubSuite]) -> None:
    """Print the ordered sub-suites planned for *scenario*."""
    table = Table(title=f"Plan: {scenario.chain_name}", show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right")
    table.add_column("Sub-suite", style="cyan", min_width=28)
    table.add_column("Features")
    table.add_column("Server", justify="center")

    for index, sub_suite in enumerate(plan, start=1):
        profile = sub_suite.profile
        server = "yes" if profile.owns_server else "-"
        if profile.needs_funded_credential:
            server += " (funded credential)"
        table.add_row(
            str(index),
            sub_suite.title,
            ", ".join(f.value for f in profile.features),
            server,
        )
    _console.print(table)


def print_scenario_table(scenario: ScenarioReport) -> None:
    table = Table(
        title=f"{scenario.chain_name} ({scenario.chain_key})",
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Sub-suite", style="cyan", min_width=26)
    table.add_column("Check", min_width=30)
    table.add_column("Status", justify="center", min_width=10)

    for sub in scenario.sub_suites:
        for result in sub.checks:
            table.add_row(sub.title, result.name, _STATUS_STYLE[result.status])
    _console.print(table)


def print_run_summary(report: RunReport) -> None:
    """Print a per-scenario table and a closing verdict panel."""
    for scenario in report.scenarios:
        print_scenario_table(scenario)

    totals = report.totals()
    body = Text()
    body.append("PASSED\n" if report.ok else "FAILED\n", style="bold green" if report.ok else "bold red")
    body.append(f"Passed:  {totals['passed']}\n", style="green")
    body.append(f"Failed:  {totals['failed']}\n", style="red")
    body.append(f"Errors:  {totals['error']}\n", style="red")
    body.append(f"Skipped: {totals['skipped']}", style="dim")
    _console.print(
        Panel(
            body,
            title="[bold]Conformance Summary[/bold]",
            border_style="green" if report.ok else "red",
            expand=False,
        )
    )


def print_error_panel(error: str | Exception) -> None:
    _console.print(
        Panel(
            Text(str(error), style="bold white"),
            title="[bold red]Error[/bold red]",
            border_style="red",
            expand=False,
        )
    )
