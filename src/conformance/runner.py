"""Runs the conformance plan for each chain scenario.

Scenarios and sub-suites run strictly one after another on a single event
loop. For each sub-suite the project is generated, then (when the
sub-suite needs a runtime) dependencies are installed, mock mode is
injected and the env file is written with a freshly allocated port. A
server-owning sub-suite runs its checks inside ``supervisor.managed(...)``
so the process is stopped on every exit path.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Iterable

from src.conformance.chains import SCENARIOS, ChainScenario
from src.conformance.checks import CheckContext, checks_for
from src.conformance.config import HarnessConfig
from src.conformance.constants import FUNDED_CREDENTIAL_ENV
from src.conformance.exceptions import (
    ProtocolViolation,
    ProvisioningError,
    ScenarioSkipped,
)
from src.conformance.logging import log_context
from src.conformance.ports import PortAllocator
from src.conformance.process import ProcessSupervisor
from src.conformance.report import CheckStatus, RunReport, ScenarioReport, SubSuiteReport
from src.conformance.scaffold import (
    DependencyInstaller,
    MockModeInjector,
    ScaffoldGenerator,
    write_test_env,
)
from src.conformance.suite import ServerKind, SubSuite, plan_suite, project_request

logger = logging.getLogger(__name__)


class ConformanceRunner:
    """Composes the collaborators, the supervisor and the checks into a run.

    Usage::

        runner = ConformanceRunner(config, generator, injector, installer)
        report = await runner.run(SCENARIOS)
    """

    def __init__(
        self,
        config: HarnessConfig,
        generator: ScaffoldGenerator,
        injector: MockModeInjector,
        installer: DependencyInstaller,
        supervisor: ProcessSupervisor | None = None,
    ) -> None:
        self.config = config
        self.generator = generator
        self.injector = injector
        self.installer = installer
        self.supervisor = supervisor or ProcessSupervisor(config)

    async def run(self, scenarios: Iterable[ChainScenario] = SCENARIOS) -> RunReport:
        """Run every scenario and return the aggregated report."""
        allocator = PortAllocator(self.config.port_base, self.config.port_ceiling)
        report = RunReport()
        try:
            for scenario in scenarios:
                report.scenarios.append(await self.run_scenario(scenario, allocator))
        finally:
            await self.supervisor.stop_all()
            report.finish()
        logger.info("Run finished: %s", report.totals())
        return report

    async def run_scenario(self, scenario: ChainScenario, allocator: PortAllocator) -> ScenarioReport:
        with log_context(scenario_id=scenario.chain_key):
            logger.info("Scenario %s (%s)", scenario.chain_key, scenario.chain_name)
            result = ScenarioReport(scenario.chain_key, scenario.chain_name)
            for sub_suite in plan_suite(scenario):
                result.sub_suites.append(
                    await self.run_sub_suite(scenario, sub_suite, allocator)
                )
            return result

    async def run_sub_suite(
        self,
        scenario: ChainScenario,
        sub_suite: SubSuite,
        allocator: PortAllocator,
    ) -> SubSuiteReport:
        with log_context(sub_suite=sub_suite.value):
            return await self._run_sub_suite(scenario, sub_suite, allocator)

    async def _run_sub_suite(
        self,
        scenario: ChainScenario,
        sub_suite: SubSuite,
        allocator: PortAllocator,
    ) -> SubSuiteReport:
        profile = sub_suite.profile
        checks = checks_for(sub_suite)
        report = SubSuiteReport(sub_suite=sub_suite.value, title=sub_suite.title)

        if profile.needs_funded_credential and not self.config.has_funded_credential:
            reason = f"{FUNDED_CREDENTIAL_ENV} not set"
            logger.warning("Skipping %s for %s: %s", sub_suite.value, scenario.chain_key, reason)
            for item in checks:
                report.record(item.name, CheckStatus.SKIPPED, reason)
            return report

        port = allocator.next_port() if profile.runtime else None
        report.port = port
        try:
            project_dir = await self._provision(scenario, sub_suite, port)
            report.project_dir = str(project_dir)
            ctx = CheckContext(
                scenario=scenario,
                sub_suite=sub_suite,
                project_dir=project_dir,
                config=self.config,
                port=port,
                host=self.supervisor.host,
            )
            if profile.server is None:
                await self._run_checks(ctx, report)
            else:
                entrypoint = self._entrypoint(profile.server)
                async with self.supervisor.managed(project_dir, entrypoint, port) as process:
                    logger.debug("Running %s against %r", sub_suite.value, process)
                    await self._run_checks(ctx, report)
        except ProvisioningError as exc:
            logger.error(
                "Provisioning %s for %s failed: %s", sub_suite.value, scenario.chain_key, exc
            )
            report.provisioning_error = str(exc)
            done = {c.name for c in report.checks}
            for item in checks:
                if item.name not in done:
                    report.record(item.name, CheckStatus.ERROR, "not run: provisioning failed")
        return report

    def _entrypoint(self, server: ServerKind) -> str:
        layout = self.config.layout
        if server is ServerKind.A2A:
            return layout.entrypoint_path(layout.a2a_entrypoint)
        raise ValueError(f"Unknown server kind: {server}")

    async def _provision(
        self, scenario: ChainScenario, sub_suite: SubSuite, port: int | None
    ) -> Path:
        request = project_request(scenario, sub_suite)
        logger.info("Generating %s", request.project_name)
        project_dir = await self.generator.generate(request)
        if port is not None:
            await self.installer.install(project_dir)
            await self.injector.apply(project_dir)
            try:
                write_test_env(project_dir, port, self.config.layout)
            except OSError as exc:
                raise ProvisioningError(f"Could not write the test env file: {exc}") from exc
        return project_dir

    async def _run_checks(self, ctx: CheckContext, report: SubSuiteReport) -> None:
        try:
            for item in checks_for(ctx.sub_suite):
                start = time.monotonic()
                try:
                    with log_context(check=item.name):
                        await item.run(ctx)
                except ProtocolViolation as exc:
                    report.record(item.name, CheckStatus.FAILED, str(exc), time.monotonic() - start)
                    logger.warning("FAIL %s / %s: %s", ctx.sub_suite.value, item.name, exc)
                except ScenarioSkipped as exc:
                    report.record(item.name, CheckStatus.SKIPPED, exc.reason, time.monotonic() - start)
                except ProvisioningError as exc:
                    report.record(item.name, CheckStatus.ERROR, str(exc), time.monotonic() - start)
                    raise
                except Exception as exc:
                    report.record(
                        item.name,
                        CheckStatus.ERROR,
                        f"{type(exc).__name__}: {exc}",
                        time.monotonic() - start,
                    )
                    logger.warning(
                        "ERROR %s / %s: %s", ctx.sub_suite.value, item.name, exc, exc_info=True
                    )
                else:
                    report.record(item.name, CheckStatus.PASSED, duration_s=time.monotonic() - start)
                    logger.info("PASS %s / %s", ctx.sub_suite.value, item.name)
        finally:
            await ctx.aclose()
