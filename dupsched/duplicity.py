"""Adapter around the duplicity command line tool."""

import logging
import subprocess
from datetime import datetime
from typing import List, NamedTuple, Optional, Sequence

from .config import AppConfig
from .errors import ToolInvocationError

NO_CHAINS_MARKER = "No backup chains with active signatures found"
PRIMARY_CHAIN_MARKER = "Found primary backup chain with matching signature chain:"
CHAIN_START_PREFIX = "Chain start time:"
TIMESTAMP_FORMAT = "%a %b %d %H:%M:%S %Y"

logger = logging.getLogger(__name__)


class ChainTimestamps(NamedTuple):
    """Times of the latest full backup and the latest increment on top of it."""

    last_full: Optional[datetime] = None
    last_diff: Optional[datetime] = None


def parse_timestamp(text: str) -> Optional[datetime]:
    """Parse a duplicity timestamp such as 'Tue Jan  4 12:00:01 2011'."""
    try:
        return datetime.strptime(text.strip(), TIMESTAMP_FORMAT)
    except ValueError:
        logger.warning(f"Unrecognised duplicity timestamp: '{text.strip()}'")
        return None


def parse_collection_status(output: str) -> ChainTimestamps:
    """
    Extract chain timestamps from 'duplicity collection-status' output.

    Only two markers matter: the "no chains" line, which means nothing has
    been backed up yet, and the primary chain header, after which the
    "Chain start time:" line gives the full backup time and the line right
    after it gives the time of the latest increment. Everything else in
    the output is ignored.
    """
    lines = iter(output.splitlines())

    for line in lines:
        line = line.rstrip()
        if line == NO_CHAINS_MARKER:
            return ChainTimestamps()
        if line != PRIMARY_CHAIN_MARKER:
            continue

        for chain_line in lines:
            if not chain_line.startswith(CHAIN_START_PREFIX):
                continue
            last_full = parse_timestamp(chain_line[len(CHAIN_START_PREFIX):])
            end_line = next(lines, "")
            last_diff = parse_timestamp(end_line.partition("time:")[2]) if end_line else None
            return ChainTimestamps(last_full, last_diff)

        break

    return ChainTimestamps()


class DuplicityTool:
    """Builds duplicity command lines and runs them."""

    def __init__(self, config: AppConfig):
        self.config = config
        self.binary = config.duplicity_binary
        self.logger = logging.getLogger(__name__)

    def validate_installation(self) -> bool:
        """Check if duplicity is installed and accessible."""
        try:
            result = subprocess.run(
                [self.binary, "--version"],
                capture_output=True,
                text=True,
                timeout=30,
            )
            return result.returncode == 0
        except (subprocess.TimeoutExpired, FileNotFoundError, subprocess.SubprocessError):
            return False

    def _key_options(self) -> List[str]:
        options = []
        if self.config.encrypt_key:
            options.extend(["--encrypt-key", self.config.encrypt_key])
        if self.config.sign_key:
            options.extend(["--sign-key", self.config.sign_key])
        return options

    def backup_command(
        self,
        backup_type: str,
        source_dir: str,
        target_url: str,
        volsize: int,
        excludes: Sequence[str] = (),
    ) -> List[str]:
        """Build the command for a full or incremental backup."""
        cmd = [self.binary, backup_type]
        cmd.extend(self._key_options())
        cmd.extend(
            [
                "--archive-dir",
                self.config.archive_dir,
                "--no-print-statistics",
                "--volsize",
                str(volsize),
            ]
        )
        if self.config.allow_source_mismatch:
            cmd.append("--allow-source-mismatch")
        for path in excludes:
            cmd.extend(["--exclude", path])
        cmd.extend([source_dir, target_url])
        return cmd

    def remove_all_but_n_full_command(self, target_url: str, count: int) -> List[str]:
        """Build the command deleting all but the newest `count` full chains."""
        return [
            self.binary,
            "remove-all-but-n-full",
            str(count),
            "--archive-dir",
            self.config.archive_dir,
            "--force",
            target_url,
        ]

    def remove_all_inc_of_but_n_full_command(self, target_url: str, count: int) -> List[str]:
        """Build the command deleting increments of all but the newest `count` fulls."""
        return [
            self.binary,
            "remove-all-inc-of-but-n-full",
            str(count),
            "--archive-dir",
            self.config.archive_dir,
            "--force",
            target_url,
        ]

    def cleanup_command(self, target_url: str) -> List[str]:
        """Build the command removing leftover archive metadata."""
        return (
            [self.binary, "cleanup"]
            + self._key_options()
            + ["--extra-clean", "--archive-dir", self.config.archive_dir, "--force", target_url]
        )

    def collection_status_command(self, target_url: str) -> List[str]:
        return [
            self.binary,
            "collection-status",
            "--archive-dir",
            self.config.archive_dir,
            target_url,
        ]

    def run(self, cmd: Sequence[str]) -> int:
        """
        Run a duplicity command and wait for it to exit.

        There is no timeout: a hung duplicity blocks the caller.

        Returns:
            The process exit status

        Raises:
            ToolInvocationError: If the process could not be started
        """
        self.logger.debug(f"Running duplicity command: {' '.join(cmd)}")
        try:
            result = subprocess.run(list(cmd), capture_output=True, text=True)
        except (OSError, subprocess.SubprocessError) as e:
            raise ToolInvocationError(f"Could not run '{cmd[0]}': {e}") from e

        if result.returncode != 0:
            self.logger.error(
                f"duplicity exited with status {result.returncode}: "
                f"{result.stderr.strip() or result.stdout.strip()}"
            )
        elif result.stdout.strip():
            self.logger.debug(result.stdout.strip())
        return result.returncode

    def query_chain_timestamps(self, target_url: str) -> ChainTimestamps:
        """
        Ask duplicity for the latest full and incremental times at a target.

        The exit status of collection-status is not checked; a target that
        does not exist yet simply produces no chain markers.

        Raises:
            ToolInvocationError: If duplicity could not be started
        """
        cmd = self.collection_status_command(target_url)
        self.logger.debug(f"Querying collection status: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except (OSError, subprocess.SubprocessError) as e:
            raise ToolInvocationError(f"Could not run '{cmd[0]}': {e}") from e

        if result.returncode != 0:
            self.logger.debug(
                f"collection-status for {target_url} exited with status {result.returncode}"
            )
        return parse_collection_status(result.stdout)
