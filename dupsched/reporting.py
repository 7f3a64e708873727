"""Results of backup jobs and the run summary."""

from enum import Enum
from typing import List, Optional

from .decision import BackupType


class JobStatus(str, Enum):
    """Outcome of one target in a run."""

    SUCCESS = "success"
    NOTHING_DUE = "nothing_due"
    FAILED = "failed"
    LOCKED = "locked"
    ERROR = "error"


class JobResult:
    """Result of processing one target."""

    def __init__(
        self,
        target: str,
        status: JobStatus,
        decision: Optional[BackupType] = None,
        exit_code: Optional[int] = None,
        failed_step: str = "",
        error_message: str = "",
        execution_time: float = 0.0,
        commands: Optional[List[str]] = None,
    ):
        self.target = target
        self.status = status
        self.decision = decision
        self.exit_code = exit_code
        self.failed_step = failed_step
        self.error_message = error_message
        self.execution_time = execution_time
        self.commands = commands or []

    @property
    def is_problem(self) -> bool:
        """True for outcomes an operator has to look at."""
        return self.status in (JobStatus.FAILED, JobStatus.ERROR)

    def __repr__(self) -> str:
        return f"JobResult({self.target!r}, {self.status.value})"


class RunSummary:
    """Summary of all targets processed in a run."""

    def __init__(self, results: Optional[List[JobResult]] = None):
        self.results = results or []

    def add_result(self, result: JobResult) -> None:
        self.results.append(result)

    def count(self, status: JobStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def has_errors(self) -> bool:
        return any(r.is_problem for r in self.results)

    def result_for(self, target: str) -> Optional[JobResult]:
        for result in self.results:
            if result.target == target:
                return result
        return None


def format_duration(seconds: float) -> str:
    """Format duration in human-readable format."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        return f"{minutes}m {seconds % 60:.0f}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"


def format_run_summary(summary: RunSummary, total_execution_time: float) -> str:
    """Format run results into a readable summary."""
    lines = ["=== Backup Run Summary ===", ""]

    lines.append(f"Targets processed: {len(summary.results)}")
    lines.append(f"Backed up: {summary.count(JobStatus.SUCCESS)}")
    lines.append(f"Nothing due: {summary.count(JobStatus.NOTHING_DUE)}")
    lines.append(f"Skipped (locked): {summary.count(JobStatus.LOCKED)}")
    lines.append(f"Failed: {summary.count(JobStatus.FAILED)}")
    lines.append(f"Errors: {summary.count(JobStatus.ERROR)}")
    lines.append(f"Total execution time: {format_duration(total_execution_time)}")
    lines.append("")

    lines.append("=== Individual Target Results ===")
    for result in summary.results:
        decision = f" ({result.decision.value})" if result.decision else ""
        lines.append(f"\n[{result.status.value.upper()}] {result.target}{decision}")
        if result.status in (JobStatus.SUCCESS, JobStatus.FAILED):
            lines.append(f"  Execution time: {format_duration(result.execution_time)}")
        if result.status == JobStatus.FAILED:
            lines.append(f"  Failed step: {result.failed_step}")
            if result.exit_code is not None:
                lines.append(f"  Exit status: {result.exit_code}")
        if result.error_message:
            lines.append(f"  {result.error_message}")

    return "\n".join(lines)
