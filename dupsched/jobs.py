"""Backup targets and the jobs built for them."""

import logging
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import List, Optional, Tuple

from .config import AppConfig, Section
from .decision import BackupType, decide_backup_type
from .duplicity import ChainTimestamps, DuplicityTool
from .errors import ExcludeFileError
from .excludes import exclude_file_path, read_section_excludes, target_excludes
from .locks import LockKey, LockProvider
from .retention import plan_retention
from .steps import HookStep, NothingDueStep, ReleaseLockStep, Step, ToolStep

JOB_LENGTH = 5


@dataclass(frozen=True)
class Target:
    """A directory backed up on its own: a section source or one of its subdirectories."""

    section_name: str
    section: Section
    source_dir: str
    subdir: Optional[str] = None

    @property
    def lock_key(self) -> LockKey:
        return LockKey(self.section_name, self.subdir)

    @property
    def target_path(self) -> str:
        """Local directory holding this target's backup chains."""
        if self.subdir:
            return f"{self.section.target}/{self.subdir}"
        return self.section.target

    @property
    def target_url(self) -> str:
        return f"file://{self.target_path}"

    @property
    def label(self) -> str:
        return str(self.lock_key)


def resolve_targets(section_name: str, section: Section) -> List[Target]:
    """
    Expand a section into the targets to back up.

    With multiple_dirs every subdirectory of the source becomes a target
    of its own, in name order; plain files in the source are ignored.

    Raises:
        OSError: If the source directory cannot be listed
    """
    if not section.multiple_dirs:
        return [Target(section_name, section, section.source)]

    subdirs = sorted(entry.name for entry in Path(section.source).iterdir() if entry.is_dir())
    return [
        Target(section_name, section, f"{section.source}/{name}", subdir=name)
        for name in subdirs
    ]


class Job:
    """The ordered steps that back up one target."""

    def __init__(
        self,
        target: Target,
        decision: BackupType,
        steps: Tuple[Step, ...],
        timestamps: ChainTimestamps = ChainTimestamps(),
        pre_hook: Optional[HookStep] = None,
        post_hook: Optional[HookStep] = None,
    ):
        if len(steps) != JOB_LENGTH:
            raise ValueError(f"a job has exactly {JOB_LENGTH} steps, got {len(steps)}")
        self.target = target
        self.decision = decision
        self.steps = tuple(steps)
        self.timestamps = timestamps
        self.pre_hook = pre_hook
        self.post_hook = post_hook

    @property
    def prune_steps(self) -> Tuple[Step, ...]:
        return self.steps[:3]

    @property
    def backup_step(self) -> Step:
        return self.steps[3]

    @property
    def release_step(self) -> Step:
        return self.steps[4]

    def describe(self) -> List[str]:
        return [step.describe() for step in self.steps]


class JobBuilder:
    """Builds the job for a target from its section policy and backup history."""

    def __init__(
        self,
        config: AppConfig,
        tool: DuplicityTool,
        locks: LockProvider,
        today: date,
    ):
        self.config = config
        self.tool = tool
        self.locks = locks
        self.today = today
        self.logger = logging.getLogger(__name__)

    def exclude_entries(self, section_name: str) -> List[str]:
        """
        Entries of a section's exclude file.

        Raises:
            ExcludeFileError: If the file cannot be used, or is missing while
                exclude files are required
        """
        path = exclude_file_path(self.config.profile_dir, section_name)
        if not self.config.exclude_file_required and not path.exists():
            self.logger.debug(f"No exclude file for section '{section_name}'")
            return []
        return read_section_excludes(self.config.profile_dir, section_name)

    def build(self, target: Target) -> Job:
        """
        Build the five step job for a target.

        Steps: prune old fulls, prune their increments, clean up or wipe the
        target, run the backup (or the nothing-due placeholder), release
        the target's lock.

        Raises:
            ExcludeFileError: If the section's exclude file cannot be used
            ToolInvocationError: If duplicity cannot be run to query the
                target's backup history
        """
        section = target.section

        try:
            file_entries = self.exclude_entries(target.section_name)
        except ExcludeFileError as e:
            self.logger.error(f"Cannot build job for '{target.label}': {e}")
            raise

        excludes = target_excludes(section, target.source_dir, file_entries)

        timestamps = self.tool.query_chain_timestamps(target.target_url)
        decision = decide_backup_type(
            self.today,
            section.full_interval,
            section.diff_interval,
            section.full_bak_day,
            timestamps.last_full,
            timestamps.last_diff,
        )
        self.logger.info(
            f"Target '{target.label}': last full {timestamps.last_full or 'never'}, "
            f"last incremental {timestamps.last_diff or 'never'} -> {decision.value}"
        )

        prune_fulls, prune_increments, cleanup = plan_retention(
            decision,
            section.retention,
            self.tool,
            target,
            has_prior_full=timestamps.last_full is not None,
        )

        if decision == BackupType.NONE:
            backup: Step = NothingDueStep("backup")
        else:
            backup = ToolStep(
                "backup",
                self.tool,
                self.tool.backup_command(
                    decision.value,
                    target.source_dir,
                    target.target_url,
                    section.volsize,
                    excludes,
                ),
            )

        release = ReleaseLockStep("release-lock", self.locks, target.lock_key)

        return Job(
            target,
            decision,
            (prune_fulls, prune_increments, cleanup, backup, release),
            timestamps=timestamps,
            pre_hook=HookStep("precmd", section.precmd) if section.precmd else None,
            post_hook=HookStep("postcmd", section.postcmd) if section.postcmd else None,
        )
