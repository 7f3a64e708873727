"""Typed steps that make up a backup job."""

import logging
import shlex
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .duplicity import DuplicityTool
    from .locks import LockKey, LockProvider

logger = logging.getLogger(__name__)


class Step(ABC):
    """One command in a job; run() returns 0 on success like a process would."""

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def run(self) -> int:
        """Run the step and return its exit status."""

    @abstractmethod
    def describe(self) -> str:
        """Shell-like rendering of the step for logs and dry runs."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}: {self.describe()})"


class NoOpStep(Step):
    """Placeholder for a step that has nothing to do; always succeeds."""

    def run(self) -> int:
        return 0

    def describe(self) -> str:
        return "true"


class NothingDueStep(Step):
    """
    Stands in for the backup when no backup is due.

    It always fails so the job stops before the lock release step; the
    dispatcher recognises it by type and releases the lock itself.
    """

    def __init__(self, name: str = "backup"):
        super().__init__(name)

    def run(self) -> int:
        return 1

    def describe(self) -> str:
        return "false (no backup due)"


class ToolStep(Step):
    """Runs a duplicity command."""

    def __init__(self, name: str, tool: "DuplicityTool", cmd: Sequence[str]):
        super().__init__(name)
        self.tool = tool
        self.cmd = list(cmd)

    def run(self) -> int:
        return self.tool.run(self.cmd)

    def describe(self) -> str:
        return shlex.join(self.cmd)


class WipeStep(Step):
    """Deletes a local backup location and everything in it."""

    def __init__(self, name: str, path: str):
        super().__init__(name)
        self.path = Path(path)

    def run(self) -> int:
        if not self.path.exists():
            logger.info(f"Nothing to wipe at {self.path}")
            return 0
        try:
            shutil.rmtree(self.path)
        except OSError as e:
            logger.error(f"Error wiping backup location '{self.path}': {e}")
            return 1
        logger.info(f"Wiped backup location: {self.path}")
        return 0

    def describe(self) -> str:
        return f"rm -rf {shlex.quote(str(self.path))}"


class ReleaseLockStep(Step):
    """Removes the lock of the job's target."""

    def __init__(self, name: str, locks: "LockProvider", key: "LockKey"):
        super().__init__(name)
        self.locks = locks
        self.key = key

    def run(self) -> int:
        try:
            self.locks.release(self.key)
        except OSError as e:
            logger.error(f"Could not release lock '{self.key}': {e}")
            return 1
        return 0

    def describe(self) -> str:
        return f"release lock {self.key.filename}"


class HookStep(Step):
    """Runs a user supplied shell command before or after a backup."""

    def __init__(self, name: str, command: str):
        super().__init__(name)
        self.command = command

    def run(self) -> int:
        logger.info(f"Running {self.name}: {self.command}")
        try:
            result = subprocess.run(self.command, shell=True, capture_output=True, text=True)
        except OSError as e:
            logger.error(f"Could not run {self.name} '{self.command}': {e}")
            return 1
        if result.returncode != 0:
            logger.error(
                f"{self.name} exited with status {result.returncode}: {result.stderr.strip()}"
            )
        return result.returncode

    def describe(self) -> str:
        return self.command
