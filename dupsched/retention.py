"""
Retention policy enforcement.

A retention of N means that, counting the full backup about to be made,
N full chains remain at the target. Before a new full is written the
older chains are pruned down to N-1, so storage never holds more than N+1
full generations at once.

duplicity cannot prune down to zero chains, so with N == 1 the whole
target location is wiped before the new full is written. The old backup
is gone before the new one exists, but the target never needs room for
two full backups.
"""

from typing import TYPE_CHECKING, Tuple

from .decision import BackupType
from .duplicity import DuplicityTool
from .steps import NoOpStep, Step, ToolStep, WipeStep

if TYPE_CHECKING:
    from .jobs import Target


def plan_retention(
    decision: BackupType,
    retention: int,
    tool: DuplicityTool,
    target: "Target",
    has_prior_full: bool = True,
) -> Tuple[Step, Step, Step]:
    """
    Build the three pruning steps that precede a backup.

    Args:
        decision: Backup type chosen for the target
        retention: Number of full backups to keep (at least 1)
        tool: Adapter used to build duplicity commands
        target: Target being backed up
        has_prior_full: False when collection-status found no full backup at
            the target, in which case there are no chains to prune. The wipe
            for a retention of 1 still runs, clearing volumes left behind by
            a failed first full.

    Returns:
        Three steps: prune old fulls, prune their increments, and either
        clean archive metadata or wipe the target location
    """
    if retention < 1:
        raise ValueError(f"retention must be at least 1, got {retention}")

    if decision != BackupType.FULL:
        return NoOpStep("prune-fulls"), NoOpStep("prune-increments"), NoOpStep("cleanup")

    if retention == 1:
        return (
            NoOpStep("prune-fulls"),
            NoOpStep("prune-increments"),
            WipeStep("wipe-target", target.target_path),
        )

    if not has_prior_full:
        return NoOpStep("prune-fulls"), NoOpStep("prune-increments"), NoOpStep("cleanup")

    keep = retention - 1
    return (
        ToolStep(
            "prune-fulls", tool, tool.remove_all_but_n_full_command(target.target_url, keep)
        ),
        ToolStep(
            "prune-increments",
            tool,
            tool.remove_all_inc_of_but_n_full_command(target.target_url, keep),
        ),
        ToolStep("cleanup", tool, tool.cleanup_command(target.target_url)),
    )
