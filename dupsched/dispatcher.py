"""
Running backup jobs, serially or on a pool of worker threads.

The producer (BackupRunner) walks the policy sections, locks each target,
builds its job and hands it to a dispatcher. A target is only handed over
once its lock is held, so no two queued jobs ever share a lock and the
workers need no coordination beyond the job queue.

Jobs have no timeout: a duplicity process that hangs keeps its worker busy
until it exits.
"""

import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple

from .config import AppConfig
from .decision import BackupType
from .errors import ExcludeFileError, LockContentionError, ToolInvocationError
from .jobs import Job, JobBuilder, Target, resolve_targets
from .locks import LockProvider, describe_process
from .reporting import JobResult, JobStatus, RunSummary, format_duration
from .steps import NothingDueStep

logger = logging.getLogger(__name__)

_STOP = None


def execute_job(job: Job) -> JobResult:
    """
    Run the steps of a job in order, stopping at the first one that fails.

    - The nothing-due placeholder failing is not an error: the lock release
      step it kept from running is invoked directly.
    - Any other failing step is a genuine failure. The lock is left in
      place so the failure stays visible until a later run reclaims it.
    - A failing pre-backup hook stops the job before anything is touched,
      so the lock is released.
    """
    label = job.target.label
    commands = job.describe()
    start_time = time.monotonic()

    def finish(status: JobStatus, **kwargs) -> JobResult:
        return JobResult(
            label,
            status,
            decision=job.decision,
            execution_time=time.monotonic() - start_time,
            commands=commands,
            **kwargs,
        )

    if job.decision != BackupType.NONE and job.pre_hook is not None:
        code = job.pre_hook.run()
        if code != 0:
            job.release_step.run()
            logger.error(f"BACKUP NOT STARTED for '{label}': precmd exited with status {code}")
            return finish(
                JobStatus.FAILED,
                exit_code=code,
                failed_step=job.pre_hook.name,
                error_message="Pre-backup command failed, backup not attempted",
            )

    for step in job.steps:
        try:
            code = step.run()
        except ToolInvocationError as e:
            logger.error(f"BACKUP FAILED for '{label}' at step {step.name}: {e}")
            return finish(JobStatus.FAILED, failed_step=step.name, error_message=str(e))

        if code == 0:
            continue

        if isinstance(step, NothingDueStep):
            logger.info(f"BACKUP NOT DONE for '{label}': no backup due")
            job.release_step.run()
            return finish(JobStatus.NOTHING_DUE)

        logger.error(
            f"BACKUP FAILED for '{label}' at step {step.name}: exit status {code}; "
            f"lock left in place\n" + "\n".join(commands)
        )
        return finish(JobStatus.FAILED, exit_code=code, failed_step=step.name)

    elapsed = time.monotonic() - start_time
    logger.info(
        f"SUCCESS: {job.decision.value} backup of '{label}' finished, "
        f"runtime = {format_duration(elapsed)}"
    )

    error_message = ""
    if job.post_hook is not None:
        code = job.post_hook.run()
        if code != 0:
            error_message = f"Post-backup command exited with status {code}"
            logger.warning(f"'{label}': {error_message}")

    return finish(JobStatus.SUCCESS, error_message=error_message)


def run_job_safely(job: Job, run_job: Callable[[Job], JobResult] = execute_job) -> JobResult:
    """Run a job, turning unexpected exceptions into an error result."""
    try:
        return run_job(job)
    except Exception as e:
        logger.exception(f"Unexpected error while backing up '{job.target.label}'")
        return JobResult(
            job.target.label,
            JobStatus.ERROR,
            decision=job.decision,
            error_message=f"Unexpected error: {e}",
        )


class Dispatcher(ABC):
    """Executes jobs handed over by the producer."""

    mode = ""

    def start(self) -> None:
        """Prepare to accept jobs."""

    @abstractmethod
    def submit(self, job: Job) -> None:
        """Hand a job over for execution."""

    @abstractmethod
    def finish(self) -> List[JobResult]:
        """Wait for all submitted jobs and return their results."""


class SerialDispatcher(Dispatcher):
    """Runs every job as soon as it is submitted."""

    mode = "serial"

    def __init__(self, run_job: Callable[[Job], JobResult] = execute_job):
        self.run_job = run_job
        self.results: List[JobResult] = []

    def submit(self, job: Job) -> None:
        self.results.append(run_job_safely(job, self.run_job))

    def finish(self) -> List[JobResult]:
        results, self.results = self.results, []
        return results


class Worker(threading.Thread):
    """Takes jobs off the queue until it receives a stop marker."""

    def __init__(
        self,
        index: int,
        jobs: "queue.Queue[Optional[Job]]",
        run_job: Callable[[Job], JobResult] = execute_job,
    ):
        super().__init__(name=f"backup-worker-{index}", daemon=True)
        self.jobs = jobs
        self.run_job = run_job
        self.results: List[JobResult] = []

    def run(self) -> None:
        while True:
            job = self.jobs.get()
            if job is _STOP:
                break
            self.results.append(run_job_safely(job, self.run_job))


class ParallelDispatcher(Dispatcher):
    """A fixed pool of worker threads sharing a FIFO job queue."""

    mode = "parallel"

    def __init__(self, workers: int, run_job: Callable[[Job], JobResult] = execute_job):
        if workers < 1:
            raise ValueError("at least one worker is required")
        self.worker_count = workers
        self.run_job = run_job
        self.jobs: "queue.Queue[Optional[Job]]" = queue.Queue()
        self.workers: List[Worker] = []

    def start(self) -> None:
        """
        Start the worker threads.

        Raises:
            RuntimeError: If the threads cannot be started; workers already
                running are stopped first
        """
        for index in range(1, self.worker_count + 1):
            worker = Worker(index, self.jobs, self.run_job)
            try:
                worker.start()
            except RuntimeError:
                self._stop_workers()
                raise
            self.workers.append(worker)

    def submit(self, job: Job) -> None:
        self.jobs.put(job)

    def finish(self) -> List[JobResult]:
        self._stop_workers()
        results = []
        for worker in self.workers:
            results.extend(worker.results)
        self.workers = []
        return results

    def _stop_workers(self) -> None:
        for _ in self.workers:
            self.jobs.put(_STOP)
        for worker in self.workers:
            worker.join()


def create_dispatcher(config: AppConfig, serial: bool = False) -> Dispatcher:
    """Pick the parallel dispatcher unless serial mode is requested or pointless."""
    if serial or config.workers <= 1:
        return SerialDispatcher()
    return ParallelDispatcher(config.workers)


class BackupRunner:
    """Walks the policy, locks and builds a job per target, and dispatches the jobs."""

    def __init__(
        self,
        config: AppConfig,
        locks: LockProvider,
        builder: JobBuilder,
        dispatcher: Dispatcher,
    ):
        self.config = config
        self.locks = locks
        self.builder = builder
        self.dispatcher = dispatcher
        self.logger = logging.getLogger(__name__)

    def _start_dispatcher(self) -> Dispatcher:
        try:
            self.dispatcher.start()
        except RuntimeError as e:
            self.logger.warning(f"Could not start worker threads ({e}), running serially")
            self.dispatcher = SerialDispatcher()
            self.dispatcher.start()
        return self.dispatcher

    def iter_targets(self, summary: RunSummary, order: Optional[List[str]] = None):
        """Yield every target of every section, recording sections that cannot be expanded."""
        for name, section in self.config.sections.items():
            self.logger.info(f"Processing section [{name}] of policy")
            try:
                targets = resolve_targets(name, section)
            except OSError as e:
                self.logger.error(f"Cannot open source directory of section '{name}': {e}")
                if order is not None:
                    order.append(name)
                summary.add_result(
                    JobResult(name, JobStatus.ERROR, error_message=f"Source not readable: {e}")
                )
                continue
            if not targets:
                self.logger.warning(f"Section '{name}' has no subdirectories to back up")
            yield from targets

    def run(self) -> RunSummary:
        """Back up every configured target and return the results."""
        summary = RunSummary()
        order: List[str] = []

        dispatcher = self._start_dispatcher()
        self.logger.info(f"Performing a {dispatcher.mode} backup")

        try:
            for target in self.iter_targets(summary, order):
                order.append(target.label)
                result = self.dispatch(target, dispatcher)
                if result is not None:
                    summary.add_result(result)
        finally:
            for result in dispatcher.finish():
                summary.add_result(result)

        position = {label: index for index, label in enumerate(order)}
        summary.results.sort(key=lambda r: position.get(r.target, -1))
        return summary

    def dispatch(self, target: Target, dispatcher: Dispatcher) -> Optional[JobResult]:
        """
        Lock a target, build its job and submit it.

        Returns:
            A result when the target was not submitted, otherwise None
        """
        key = target.lock_key
        try:
            self.locks.acquire(key)
        except LockContentionError as e:
            self.logger.warning(
                f"Unable to lock '{target.label}': {describe_process(e.pid)} appears "
                f"to be backing it up. Skipping."
            )
            return JobResult(target.label, JobStatus.LOCKED, error_message=str(e))
        except OSError as e:
            self.logger.error(f"Unable to create lock for '{target.label}': {e}")
            return JobResult(target.label, JobStatus.ERROR, error_message=f"Lock error: {e}")

        try:
            job = self.builder.build(target)
        except (ExcludeFileError, ToolInvocationError) as e:
            self.locks.release(key)
            return JobResult(target.label, JobStatus.ERROR, error_message=str(e))
        except Exception as e:
            self.logger.exception(f"Unexpected error while building the job for '{target.label}'")
            self.locks.release(key)
            return JobResult(
                target.label, JobStatus.ERROR, error_message=f"Unexpected error: {e}"
            )

        dispatcher.submit(job)
        return None

    def plan(self) -> List[Tuple[Target, Optional[Job], str]]:
        """
        Build the job of every target without locking or running anything.

        Returns:
            List of (target, job, error message); job is None when it could
            not be built
        """
        planned = []
        for target in self.iter_targets(RunSummary()):
            try:
                planned.append((target, self.builder.build(target), ""))
            except (ExcludeFileError, ToolInvocationError) as e:
                planned.append((target, None, str(e)))
        return planned
