"""
Shared pytest fixtures for dupsched tests.

This module provides fixtures for:
- Policy sections and application configuration on a temporary tree
- A duplicity adapter double that records commands instead of running them
- Lock providers writing into a temporary lock directory
"""

import threading
from typing import Dict, List, Optional

import pytest

from dupsched.config import AppConfig, Section
from dupsched.duplicity import ChainTimestamps, DuplicityTool
from dupsched.locks import PidFileLockProvider


class FakeTool(DuplicityTool):
    """DuplicityTool that records commands and answers from canned data."""

    def __init__(
        self,
        config: AppConfig,
        codes: Optional[Dict[str, int]] = None,
        history: Optional[Dict[str, ChainTimestamps]] = None,
    ):
        super().__init__(config)
        self.codes = codes or {}
        self.history = history or {}
        self.commands: List[List[str]] = []
        self._commands_lock = threading.Lock()

    def run(self, cmd):
        with self._commands_lock:
            self.commands.append(list(cmd))
        return self.codes.get(cmd[1], 0)

    def query_chain_timestamps(self, target_url):
        return self.history.get(target_url, ChainTimestamps())

    def subcommands(self) -> List[str]:
        return [cmd[1] for cmd in self.commands]


@pytest.fixture
def make_section():
    """Factory for sections with sensible defaults."""

    def _make(**overrides) -> Section:
        params = {
            "source": "/srv/data",
            "target": "/backup/data",
            "full_interval": 4,
            "diff_interval": 1,
            "full_bak_day": "Saturday",
            "retention": 3,
            "volsize": 250,
        }
        params.update(overrides)
        return Section(**params)

    return _make


@pytest.fixture
def profile_dir(tmp_path):
    """Empty profile directory for policy and exclude files."""
    path = tmp_path / "profile"
    path.mkdir()
    return path


@pytest.fixture
def app_config(tmp_path, profile_dir):
    """Configuration whose directories all live under tmp_path."""
    return AppConfig(
        lock_dir=str(tmp_path / "locks"),
        archive_dir=str(tmp_path / "archive"),
        log_file=str(tmp_path / "log" / "dupsched.log"),
        profile_dir=str(profile_dir),
        workers=2,
        exclude_file_required=False,
    )


@pytest.fixture
def fake_tool(app_config):
    return FakeTool(app_config)


@pytest.fixture
def locks(app_config):
    return PidFileLockProvider(app_config.lock_dir)


@pytest.fixture
def source_tree(tmp_path):
    """
    A section source with three user directories and a stray file.

    Returns the (source, target) directory pair.
    """
    source = tmp_path / "home"
    for name in ("alice", "bob", "carol"):
        (source / name).mkdir(parents=True)
    (source / "notes.txt").write_text("not a directory\n")
    target = tmp_path / "backup" / "home"
    return source, target
