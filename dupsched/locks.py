"""
Per-target lock files.

Each target is guarded by a lock file holding the PID of the process that
is backing it up. A lock whose PID no longer belongs to a running process
is stale and gets reclaimed by the next run.

Liveness is checked by PID only. If the PID of a dead owner has been reused
by an unrelated process, the lock looks live and the target is skipped
until that process exits.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

import psutil

from .errors import LockContentionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockKey:
    """Identifies the lock of a section, or of one subdirectory of a section."""

    section: str
    subdir: Optional[str] = None

    @property
    def filename(self) -> str:
        if self.subdir:
            return f"duplicity.{self.section}.{self.subdir}.lock"
        return f"duplicity.{self.section}.lock"

    def __str__(self) -> str:
        if self.subdir:
            return f"{self.section}/{self.subdir}"
        return self.section


class LockOutcome(str, Enum):
    """How a lock was obtained."""

    CREATED = "created"
    RECLAIMED = "reclaimed"


class LockProvider(ABC):
    """Mutual exclusion between runs, one lock per target."""

    @abstractmethod
    def acquire(self, key: LockKey) -> LockOutcome:
        """
        Take the lock for a key.

        Raises:
            LockContentionError: If a live process holds the lock
        """

    @abstractmethod
    def release(self, key: LockKey) -> None:
        """Give the lock for a key back."""

    @abstractmethod
    def probe(self, pid: int) -> bool:
        """Return True if the process owning a lock is still running."""


def describe_process(pid: int) -> str:
    """Short description of a running process for log messages."""
    try:
        proc = psutil.Process(pid)
        cmdline = " ".join(proc.cmdline()) or proc.name()
        return f"pid {pid} ({cmdline}, started {proc.create_time():.0f})"
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return f"pid {pid}"


class PidFileLockProvider(LockProvider):
    """Lock files named after the key, containing the owner's PID."""

    def __init__(self, lock_dir: Union[str, Path], pid: Optional[int] = None):
        self.lock_dir = Path(lock_dir)
        self.pid = pid if pid is not None else os.getpid()

    def path_for(self, key: LockKey) -> Path:
        return self.lock_dir / key.filename

    def probe(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            return psutil.pid_exists(pid)
        except OverflowError:
            return False

    def acquire(self, key: LockKey) -> LockOutcome:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(key)

        if self._create(path):
            logger.debug(f"Created lock: {path}")
            return LockOutcome.CREATED

        owner = self._read_owner(path)
        if owner is not None and self.probe(owner):
            raise LockContentionError(str(key), owner)

        if not self._remove_stale(path, owner) or not self._create(path):
            # Another run reclaimed the same stale lock first.
            owner = self._read_owner(path)
            raise LockContentionError(str(key), owner or 0)

        previous = f"process {owner} which is not running" if owner else "no valid process"
        logger.info(f"Lock {path} belonged to {previous}, reclaimed it for process {self.pid}")
        return LockOutcome.RECLAIMED

    def release(self, key: LockKey) -> None:
        path = self.path_for(key)
        path.unlink(missing_ok=True)
        logger.debug(f"Removed lock: {path}")

    def owner(self, key: LockKey) -> Optional[int]:
        """PID recorded in a key's lock file, or None if unlocked."""
        return self._read_owner(self.path_for(key))

    def _scratch_path(self, path: Path, purpose: str) -> Path:
        return path.with_name(f".{path.name}.{purpose}.{self.pid}.{threading.get_ident()}")

    def _create(self, path: Path) -> bool:
        """Create a lock file that holds our PID from the moment it appears."""
        scratch = self._scratch_path(path, "new")
        scratch.write_text(f"{self.pid}\n")
        try:
            os.link(scratch, path)
        except FileExistsError:
            return False
        finally:
            scratch.unlink(missing_ok=True)
        return True

    def _remove_stale(self, path: Path, owner: Optional[int]) -> bool:
        """
        Move a stale lock out of the way.

        Returns False if the lock changed hands after it was found stale, in
        which case the new owner's lock is put back.
        """
        moved = self._scratch_path(path, "stale")
        try:
            os.rename(path, moved)
        except FileNotFoundError:
            return True
        try:
            if self._read_owner(moved) == owner:
                return True
            try:
                os.link(moved, path)
            except FileExistsError:
                pass
            return False
        finally:
            moved.unlink(missing_ok=True)

    def _read_owner(self, path: Path) -> Optional[int]:
        try:
            content = path.read_bytes().decode("utf-8", errors="replace").strip()
        except FileNotFoundError:
            return None
        try:
            return int(content.splitlines()[0])
        except (ValueError, IndexError):
            logger.warning(f"Lock {path} does not contain a PID: '{content}'")
            return None
