import typing
from collections import OrderedDict
from enum import Enum

import click

from chainplan.models import ChainId, Step, StepId, StepResult


class ReportStatus(Enum):
    SUCCESS = "success"
    CACHED = "cached"
    FAILED = "failed"
    WARNING = "warning"
    SKIPPED = "skipped"
    NOT_RUN = "not_run"


# statuses that leave the deployment incomplete
INCOMPLETE = (ReportStatus.FAILED, ReportStatus.SKIPPED, ReportStatus.NOT_RUN)

STATUS_COLORS = {
    ReportStatus.SUCCESS: "green",
    ReportStatus.CACHED: "blue",
    ReportStatus.FAILED: "red",
    ReportStatus.WARNING: "yellow",
    ReportStatus.SKIPPED: "magenta",
    ReportStatus.NOT_RUN: None,
}


class StepReport(typing.NamedTuple):
    step_id: StepId
    kind: str
    status: ReportStatus
    attempts: int = 0
    address: typing.Optional[str] = None
    generation: typing.Optional[int] = None
    tx_hash: typing.Optional[str] = None
    error: typing.Optional[str] = None

    def to_dict(self) -> typing.Dict[str, typing.Any]:
        data = self._asdict()
        data["status"] = self.status.value
        return data


class RunSummary:
    """Final status of every step of one run on one chain."""

    def __init__(self, chain_id: ChainId, steps: typing.Iterable[Step]):
        self.chain_id = chain_id
        self.cancelled = False
        self.reports: typing.Dict[StepId, StepReport] = OrderedDict(
            (step.id, StepReport(step.id, step.kind.value, ReportStatus.NOT_RUN)) for step in steps
        )

    def __getitem__(self, step_id: StepId) -> StepReport:
        return self.reports[step_id]

    def _update(self, step_id: StepId, **fields) -> None:
        self.reports[step_id] = self.reports[step_id]._replace(**fields)

    def _from_result(
        self, result: StepResult, status: ReportStatus, attempts: int
    ) -> typing.Dict[str, typing.Any]:
        artifact = result.artifact
        return dict(
            status=status,
            attempts=attempts,
            address=artifact.address if artifact else None,
            generation=artifact.generation if artifact else None,
            tx_hash=result.tx_hash,
            error=result.error,
        )

    def cached(self, result: StepResult) -> None:
        self._update(result.step_id, **self._from_result(result, ReportStatus.CACHED, 0))

    def succeeded(self, result: StepResult, attempts: int) -> None:
        self._update(result.step_id, **self._from_result(result, ReportStatus.SUCCESS, attempts))

    def failed(self, result: StepResult, attempts: int) -> None:
        self._update(result.step_id, **self._from_result(result, ReportStatus.FAILED, attempts))

    def warning(self, result: StepResult, attempts: int) -> None:
        self._update(result.step_id, **self._from_result(result, ReportStatus.WARNING, attempts))

    def skipped(self, step_id: StepId, cause: StepId) -> None:
        self._update(step_id, status=ReportStatus.SKIPPED, error=f"dependency '{cause}' failed")

    def with_status(self, status: ReportStatus) -> typing.List[StepReport]:
        return [report for report in self.reports.values() if report.status is status]

    @property
    def counts(self) -> typing.Dict[str, int]:
        counts = OrderedDict((status.value, 0) for status in ReportStatus)
        for report in self.reports.values():
            counts[report.status.value] += 1
        return counts

    @property
    def complete(self) -> bool:
        return not any(report.status in INCOMPLETE for report in self.reports.values())

    @property
    def exit_code(self) -> int:
        return 0 if self.complete and not self.cancelled else 1

    def to_dict(self) -> typing.Dict[str, typing.Any]:
        return {
            "chain_id": self.chain_id,
            "complete": self.complete,
            "cancelled": self.cancelled,
            "counts": self.counts,
            "steps": [report.to_dict() for report in self.reports.values()],
        }

    def render(self) -> None:
        click.secho(f"\nRun summary for chain {self.chain_id}", bold=True)
        width = max((len(step_id) for step_id in self.reports), default=0)
        for report in self.reports.values():
            status = click.style(
                f"{report.status.value:<8}", fg=STATUS_COLORS[report.status], bold=True
            )
            line = f"  {report.step_id:<{width}}  {status}"
            if report.address:
                line += f"  {report.address}"
                if report.generation and report.generation > 1:
                    line += f" (generation {report.generation})"
            if report.attempts > 1:
                line += f"  [{report.attempts} attempts]"
            click.echo(line)
            if report.error and report.status is not ReportStatus.SUCCESS:
                click.echo(f"  {'':<{width}}  {report.error}")

        counts = ", ".join(f"{count} {status}" for status, count in self.counts.items() if count)
        color = "green" if self.exit_code == 0 else "red"
        click.secho(f"\n{counts}", fg=color)
        if self.cancelled:
            click.secho("Run was cancelled before all steps were scheduled.", fg="yellow")
