"""
Unit tests for job execution and dispatch (dupsched/dispatcher.py).

Tests step execution rules, the serial and parallel dispatchers and the
runner that locks, builds and dispatches every target.
"""

import os
import threading
from datetime import date, datetime
from unittest.mock import MagicMock

import pytest

from dupsched.decision import BackupType
from dupsched.dispatcher import (
    BackupRunner,
    ParallelDispatcher,
    SerialDispatcher,
    create_dispatcher,
    execute_job,
    run_job_safely,
)
from dupsched.duplicity import ChainTimestamps
from dupsched.errors import ToolInvocationError
from dupsched.jobs import JobBuilder, Target
from dupsched.locks import LockKey, PidFileLockProvider
from dupsched.reporting import JobResult, JobStatus

SATURDAY = date(2024, 6, 1)
TUESDAY = date(2024, 6, 4)


def make_runner(config, tool, locks, dispatcher=None, today=SATURDAY):
    builder = JobBuilder(config, tool, locks, today)
    return BackupRunner(config, locks, builder, dispatcher or SerialDispatcher())


@pytest.fixture
def builder(app_config, fake_tool, locks):
    return JobBuilder(app_config, fake_tool, locks, SATURDAY)


@pytest.fixture
def data_target(make_section):
    return Target("data", make_section(), "/srv/data")


class TestExecuteJob:
    """Test running the steps of a single job."""

    def test_successful_full_releases_lock(self, builder, locks, fake_tool, data_target):
        """Test a first full backup: only the backup runs and the lock is removed."""
        locks.acquire(data_target.lock_key)
        job = builder.build(data_target)

        result = execute_job(job)

        assert result.status == JobStatus.SUCCESS
        assert result.decision == BackupType.FULL
        assert fake_tool.subcommands() == ["full"]
        assert locks.owner(data_target.lock_key) is None

    def test_nothing_due_releases_lock(self, app_config, fake_tool, locks, data_target):
        """Test that a target with nothing due is released without running anything."""
        fake_tool.history[data_target.target_url] = ChainTimestamps(
            datetime(2024, 6, 3, 2), datetime(2024, 6, 4, 1)
        )
        locks.acquire(data_target.lock_key)
        job = JobBuilder(app_config, fake_tool, locks, TUESDAY).build(data_target)

        result = execute_job(job)

        assert result.status == JobStatus.NOTHING_DUE
        assert not result.is_problem
        assert fake_tool.commands == []
        assert locks.owner(data_target.lock_key) is None

    def test_failed_backup_keeps_lock(self, builder, locks, fake_tool, data_target):
        """Test that a failing duplicity command stops the job and keeps the lock."""
        fake_tool.codes["full"] = 31
        locks.acquire(data_target.lock_key)

        result = execute_job(builder.build(data_target))

        assert result.status == JobStatus.FAILED
        assert result.failed_step == "backup"
        assert result.exit_code == 31
        assert locks.owner(data_target.lock_key) == locks.pid

    def test_failed_prune_stops_before_backup(self, builder, locks, fake_tool, make_section):
        """Test that the backup is not attempted after a pruning failure."""
        target = Target("data", make_section(), "/srv/data")
        fake_tool.history[target.target_url] = ChainTimestamps(datetime(2024, 4, 6, 2), None)
        fake_tool.codes["remove-all-inc-of-but-n-full"] = 1
        locks.acquire(target.lock_key)

        result = execute_job(builder.build(target))

        assert result.status == JobStatus.FAILED
        assert result.failed_step == "prune-increments"
        assert fake_tool.subcommands() == ["remove-all-but-n-full", "remove-all-inc-of-but-n-full"]
        assert locks.owner(target.lock_key) == locks.pid

    def test_tool_that_cannot_start_fails_job(self, builder, fake_tool, data_target):
        fake_tool.run = MagicMock(side_effect=ToolInvocationError("duplicity not found"))

        result = execute_job(builder.build(data_target))

        assert result.status == JobStatus.FAILED
        assert "duplicity not found" in result.error_message

    def test_failing_precmd_skips_backup_and_releases_lock(
        self, app_config, fake_tool, locks, make_section
    ):
        """Test that a failing pre-backup command stops the job before any backup step."""
        target = Target("data", make_section(precmd="exit 3"), "/srv/data")
        locks.acquire(target.lock_key)
        job = JobBuilder(app_config, fake_tool, locks, SATURDAY).build(target)

        result = execute_job(job)

        assert result.status == JobStatus.FAILED
        assert result.failed_step == "precmd"
        assert result.exit_code == 3
        assert fake_tool.commands == []
        assert locks.owner(target.lock_key) is None

    def test_failing_postcmd_only_warns(self, app_config, fake_tool, locks, make_section):
        """Test that a failing post-backup command does not fail the backup."""
        target = Target("data", make_section(postcmd="exit 4"), "/srv/data")
        job = JobBuilder(app_config, fake_tool, locks, SATURDAY).build(target)

        result = execute_job(job)

        assert result.status == JobStatus.SUCCESS
        assert "status 4" in result.error_message

    def test_unexpected_exception_becomes_error(self, builder, data_target):
        job = builder.build(data_target)

        result = run_job_safely(job, MagicMock(side_effect=RuntimeError("boom")))

        assert result.status == JobStatus.ERROR
        assert "boom" in result.error_message


class TestDispatchers:
    """Test serial and parallel dispatchers."""

    def test_create_dispatcher(self, app_config):
        assert isinstance(create_dispatcher(app_config), ParallelDispatcher)
        assert isinstance(create_dispatcher(app_config, serial=True), SerialDispatcher)
        single = app_config.model_copy(update={"workers": 1})
        assert isinstance(create_dispatcher(single), SerialDispatcher)

    def test_parallel_jobs_run_concurrently(self, builder, make_section):
        """Test that two workers run two jobs at the same time."""
        barrier = threading.Barrier(2, timeout=5)

        def wait_for_partner(job):
            barrier.wait()
            return JobResult(job.target.label, JobStatus.SUCCESS, decision=job.decision)

        dispatcher = ParallelDispatcher(2, run_job=wait_for_partner)
        dispatcher.start()
        for name in ("alice", "bob"):
            section = make_section(source="/srv/home", target="/backup/home", multiple_dirs="yes")
            dispatcher.submit(builder.build(Target("home", section, f"/srv/home/{name}", name)))

        results = dispatcher.finish()

        assert sorted(r.target for r in results) == ["home/alice", "home/bob"]
        assert all(r.status == JobStatus.SUCCESS for r in results)

    def test_parallel_dispatcher_requires_a_worker(self):
        with pytest.raises(ValueError):
            ParallelDispatcher(0)


class TestBackupRunner:
    """Test walking the policy and dispatching every target."""

    @pytest.fixture
    def home_config(self, app_config, make_section, source_tree):
        source, target = source_tree
        section = make_section(source=str(source), target=str(target), multiple_dirs="yes")
        return app_config.model_copy(update={"sections": {"home": section}})

    def test_every_target_backed_up_in_order(self, home_config, fake_tool, locks):
        """Test that the parallel runner reports every subdirectory in order."""
        runner = make_runner(home_config, fake_tool, locks, ParallelDispatcher(2))

        summary = runner.run()

        assert [r.target for r in summary.results] == ["home/alice", "home/bob", "home/carol"]
        assert summary.count(JobStatus.SUCCESS) == 3
        assert not summary.has_errors
        assert list(locks.lock_dir.iterdir()) == []

    def test_locked_target_skipped_while_others_run(self, home_config, fake_tool, locks):
        """Test that a target held by a live process is skipped and left locked."""
        holder = PidFileLockProvider(locks.lock_dir, pid=os.getpid())
        holder.acquire(LockKey("home", "bob"))

        summary = make_runner(home_config, fake_tool, locks).run()

        assert summary.result_for("home/bob").status == JobStatus.LOCKED
        assert summary.result_for("home/alice").status == JobStatus.SUCCESS
        assert summary.result_for("home/carol").status == JobStatus.SUCCESS
        assert not summary.has_errors
        assert holder.owner(LockKey("home", "bob")) == os.getpid()
        assert len(fake_tool.commands) == 2

    def test_build_error_releases_lock(self, home_config, fake_tool, locks):
        """Test that a target whose job cannot be built is reported and unlocked."""
        config = home_config.model_copy(update={"exclude_file_required": True})

        summary = make_runner(config, fake_tool, locks).run()

        assert summary.count(JobStatus.ERROR) == 3
        assert summary.has_errors
        assert "Exclude file not found" in summary.results[0].error_message
        assert list(locks.lock_dir.iterdir()) == []
        assert fake_tool.commands == []

    def test_unreadable_source_reported(self, app_config, fake_tool, locks, make_section, tmp_path):
        section = make_section(source=str(tmp_path / "missing"), multiple_dirs="yes")
        config = app_config.model_copy(update={"sections": {"home": section}})

        summary = make_runner(config, fake_tool, locks).run()

        assert summary.result_for("home").status == JobStatus.ERROR

    def test_unreadable_source_reported_in_policy_order(
        self, app_config, fake_tool, locks, make_section, tmp_path
    ):
        """Test that a section error keeps its place among the target results."""
        sections = {
            "aaa": make_section(target="/backup/aaa"),
            "home": make_section(source=str(tmp_path / "missing"), multiple_dirs="yes"),
            "zzz": make_section(target="/backup/zzz"),
        }
        config = app_config.model_copy(update={"sections": sections})

        summary = make_runner(config, fake_tool, locks, ParallelDispatcher(2)).run()

        assert [r.target for r in summary.results] == ["aaa", "home", "zzz"]

    def test_corrupt_lock_does_not_stop_run(self, app_config, fake_tool, locks, make_section):
        """Test that a lock file with garbage in it is reclaimed and the run goes on."""
        sections = {
            "aaa": make_section(target="/backup/aaa"),
            "bbb": make_section(target="/backup/bbb"),
        }
        config = app_config.model_copy(update={"sections": sections})
        locks.lock_dir.mkdir(parents=True)
        (locks.lock_dir / "duplicity.aaa.lock").write_bytes(b"\xff\xfe\x00")

        summary = make_runner(config, fake_tool, locks).run()

        assert summary.result_for("aaa").status == JobStatus.SUCCESS
        assert summary.result_for("bbb").status == JobStatus.SUCCESS
        assert list(locks.lock_dir.iterdir()) == []

    def test_unexpected_build_error_is_local(self, app_config, fake_tool, locks, make_section):
        """Test that a job that fails to build is reported, unlocked and others still run."""
        sections = {
            name: make_section(target=f"/backup/{name}") for name in ("aaa", "bbb", "ccc")
        }
        config = app_config.model_copy(update={"sections": sections})
        runner = make_runner(config, fake_tool, locks, ParallelDispatcher(2))
        real_build = runner.builder.build

        def build(target):
            if target.section_name == "bbb":
                raise RuntimeError("collection-status output exploded")
            return real_build(target)

        runner.builder.build = build

        summary = runner.run()

        assert summary.result_for("aaa").status == JobStatus.SUCCESS
        assert summary.result_for("bbb").status == JobStatus.ERROR
        assert "exploded" in summary.result_for("bbb").error_message
        assert summary.result_for("ccc").status == JobStatus.SUCCESS
        assert list(locks.lock_dir.iterdir()) == []

    def test_workers_stopped_when_enumeration_fails(self, home_config, fake_tool, locks):
        """Test that worker threads are stopped and joined even if the producer raises."""
        dispatcher = ParallelDispatcher(2)
        runner = make_runner(home_config, fake_tool, locks, dispatcher)
        runner.dispatch = MagicMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError, match="boom"):
            runner.run()

        assert dispatcher.workers == []
        assert not any(t.name.startswith("backup-worker-") for t in threading.enumerate())

    def test_falls_back_to_serial_when_threads_cannot_start(self, home_config, fake_tool, locks):
        """Test that the runner keeps going serially if worker threads fail to start."""
        dispatcher = ParallelDispatcher(2)
        dispatcher.start = MagicMock(side_effect=RuntimeError("can't start new thread"))
        runner = make_runner(home_config, fake_tool, locks, dispatcher)

        summary = runner.run()

        assert isinstance(runner.dispatcher, SerialDispatcher)
        assert summary.count(JobStatus.SUCCESS) == 3

    def test_plan_locks_and_runs_nothing(self, home_config, fake_tool, locks):
        """Test that planning builds jobs without side effects."""
        planned = make_runner(home_config, fake_tool, locks).plan()

        assert [target.label for target, _, _ in planned] == [
            "home/alice",
            "home/bob",
            "home/carol",
        ]
        assert all(job is not None and job.decision == BackupType.FULL for _, job, _ in planned)
        assert fake_tool.commands == []
        assert not locks.lock_dir.exists() or list(locks.lock_dir.iterdir()) == []
