"""Result records for a harness run, and their JSON / Markdown renderings.

The rendering functions are pure: no I/O, no side effects.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class CheckStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"


_STATUS_DISPLAY: dict[CheckStatus, str] = {
    CheckStatus.PASSED: "\u2705 PASSED",
    CheckStatus.FAILED: "\u274c FAILED",
    CheckStatus.ERROR: "\U0001f4a5 ERROR",
    CheckStatus.SKIPPED: "\u23ed\ufe0f SKIPPED",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class CheckResult:
    name: str
    status: CheckStatus
    message: str = ""
    duration_s: float = 0.0


@dataclass
class SubSuiteReport:
    """Outcome of one sub-suite: its project, port and check results."""

    sub_suite: str
    title: str
    project_dir: str = ""
    port: int | None = None
    provisioning_error: str = ""
    checks: list[CheckResult] = field(default_factory=list)

    def record(self, name: str, status: CheckStatus, message: str = "", duration_s: float = 0.0) -> CheckResult:
        result = CheckResult(name, status, message, round(duration_s, 3))
        self.checks.append(result)
        return result

    def count(self, status: CheckStatus) -> int:
        return sum(1 for c in self.checks if c.status == status)

    @property
    def ok(self) -> bool:
        return not self.provisioning_error and all(
            c.status in (CheckStatus.PASSED, CheckStatus.SKIPPED) for c in self.checks
        )


@dataclass
class ScenarioReport:
    chain_key: str
    chain_name: str
    sub_suites: list[SubSuiteReport] = field(default_factory=list)

    def count(self, status: CheckStatus) -> int:
        return sum(s.count(status) for s in self.sub_suites)

    @property
    def ok(self) -> bool:
        return all(s.ok for s in self.sub_suites)


@dataclass
class RunReport:
    started_at: str = field(default_factory=_now_iso)
    finished_at: str = ""
    scenarios: list[ScenarioReport] = field(default_factory=list)

    def finish(self) -> None:
        self.finished_at = _now_iso()

    def count(self, status: CheckStatus) -> int:
        return sum(s.count(status) for s in self.scenarios)

    @property
    def ok(self) -> bool:
        return all(s.ok for s in self.scenarios)

    def totals(self) -> dict[str, int]:
        return {status.value: self.count(status) for status in CheckStatus}

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["ok"] = self.ok
        data["totals"] = self.totals()
        return data


# ---------------------------------------------------------------------------
# Markdown
# ---------------------------------------------------------------------------


def _status_label(status: CheckStatus) -> str:
    return _STATUS_DISPLAY.get(status, status.value)


def _escape_cell(text: str) -> str:
    return text.replace("|", "\\|").replace("\n", " ")


def _render_summary(report: RunReport) -> list[str]:
    totals = report.totals()
    verdict = "\u2705 PASSED" if report.ok else "\u274c FAILED"
    return [
        "# Conformance Report",
        "",
        f"**Verdict:** {verdict}",
        f"**Started:** {report.started_at}",
        f"**Finished:** {report.finished_at or '-'}",
        "",
        "| Passed | Failed | Errors | Skipped |",
        "|--------|--------|--------|---------|",
        f"| {totals['passed']} | {totals['failed']} | {totals['error']} | {totals['skipped']} |",
        "",
    ]


def _render_scenario(scenario: ScenarioReport) -> list[str]:
    lines = [f"## {scenario.chain_name} (`{scenario.chain_key}`)", ""]
    for sub in scenario.sub_suites:
        port = f" (port {sub.port})" if sub.port is not None else ""
        lines.append(f"### {sub.title}{port}")
        lines.append("")
        if sub.provisioning_error:
            lines.append(f"> Provisioning failed: {_escape_cell(sub.provisioning_error)}")
            lines.append("")
        if sub.checks:
            lines.append("| Check | Status | Detail |")
            lines.append("|-------|--------|--------|")
            for result in sub.checks:
                lines.append(
                    f"| {result.name} | {_status_label(result.status)} | "
                    f"{_escape_cell(result.message)} |"
                )
            lines.append("")
    return lines


def render_markdown(report: RunReport) -> str:
    """Render *report* as a Markdown document."""
    lines = _render_summary(report)
    for scenario in report.scenarios:
        lines.extend(_render_scenario(scenario))
    return "\n".join(lines).rstrip() + "\n"
