#!/usr/bin/env python3
"""
dupsched: scheduled duplicity backups with retention and per-target locking.

Main entry point, meant to be run once a day from cron.
"""

import argparse
import logging
import sys
from datetime import date, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from dupsched.config import AppConfig, describe_parameters, load_config
from dupsched.decision import BackupType
from dupsched.dispatcher import BackupRunner, create_dispatcher
from dupsched.duplicity import DuplicityTool
from dupsched.excludes import find_orphan_exclude_files
from dupsched.jobs import JobBuilder
from dupsched.locks import PidFileLockProvider
from dupsched.reporting import format_run_summary

LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(threadName)s] %(message)s"


def setup_logging(config: AppConfig, console: bool = False) -> logging.Logger:
    """Set up logging configuration."""
    log_file_path = Path(config.log_file)
    log_file_path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("dupsched")
    logger.setLevel(config.log_level)
    logger.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = RotatingFileHandler(
        log_file_path,
        maxBytes=10485760,  # 10MB
        backupCount=10,
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    return logger


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run the duplicity backups that are due according to a backup policy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py                          # Run the 'main' profile (cron mode)
  python main.py --profile servers        # Use ./config/servers/policy.yaml
  python main.py --dry-run                # Show what would run today
  python main.py --serial --debug         # One backup at a time, verbose
  python main.py --describe-policy        # List the policy file parameters
        """,
    )

    parser.add_argument(
        "--profile", default="main", help="Configuration profile name (default: main)"
    )
    parser.add_argument(
        "--config-root",
        default="config",
        help="Directory holding the profile directories (default: ./config)",
    )
    parser.add_argument(
        "--dry-run",
        "-n",
        action="store_true",
        help="Decide and print the planned commands without locking or running anything",
    )
    parser.add_argument(
        "--serial", action="store_true", help="Run backups one at a time"
    )
    parser.add_argument(
        "--workers", type=int, help="Number of backups run concurrently"
    )
    parser.add_argument(
        "--today",
        type=date.fromisoformat,
        help="Pretend today is this date (YYYY-MM-DD) when deciding what is due",
    )
    parser.add_argument("--debug", action="store_true", help="Log at DEBUG level")
    parser.add_argument(
        "--describe-policy",
        action="store_true",
        help="Print the parameters a policy section accepts and exit",
    )

    return parser.parse_args(argv)


def describe_policy(profile_dir: Path) -> str:
    """Help text describing the policy file format."""
    lines = [f"To configure backup policy, edit the file: {profile_dir}/policy.yaml", ""]
    lines.append("Each entry under 'sections' accepts these parameters:")
    lines.append("")
    for name, description, default in describe_parameters():
        lines.append(f"{name:>15} = {description} [{default}]")
    lines.append("")
    lines.append(
        f"Paths to exclude may also be listed one per line in {profile_dir}/<section>.exclude"
    )
    return "\n".join(lines)


def perform_preflight_checks(config: AppConfig, tool: DuplicityTool) -> List[str]:
    """
    Perform pre-flight checks before starting backups.

    Returns:
        List of error messages (empty if all checks pass)
    """
    errors = []

    if not tool.validate_installation():
        errors.append(f"duplicity is not installed or not accessible: {config.duplicity_binary}")

    for label, directory in (("Lock", config.lock_dir), ("Archive", config.archive_dir)):
        try:
            Path(directory).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            errors.append(f"{label} directory {directory} cannot be created: {e}")

    return errors


def run_dry_run_mode(runner: BackupRunner, logger: logging.Logger) -> int:
    """Execute dry run mode."""
    logger.info("Running in DRY RUN mode - nothing will be locked or backed up")

    planned = runner.plan()
    if not planned:
        logger.warning("No backup targets configured")
        return 0

    logger.info("=== DRY RUN SUMMARY ===")
    failures = 0
    for target, job, error_message in planned:
        if job is None:
            failures += 1
            logger.error(f"[ERROR] {target.label}: {error_message}")
            continue
        logger.info(f"[{job.decision.value.upper()}] {target.label} -> {target.target_url}")
        if job.decision != BackupType.NONE:
            for command in job.describe():
                logger.info(f"    {command}")

    return 2 if failures else 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point."""
    start_time = datetime.now()
    logger = None

    try:
        args = parse_arguments(argv)
        profile_dir = Path(args.config_root) / args.profile

        if args.describe_policy:
            print(describe_policy(profile_dir))
            return 0

        config = load_config(str(profile_dir))

        overrides = {}
        if args.workers is not None:
            overrides["workers"] = max(1, args.workers)
        if args.debug:
            overrides["log_level"] = "DEBUG"
        if overrides:
            config = config.model_copy(update=overrides)

        logger = setup_logging(config, console=args.dry_run or sys.stdout.isatty())
        logger.info(f"Starting dupsched with profile '{args.profile}'")
        logger.info(f"Policy loaded with {len(config.sections)} sections")

        for name, message in config.rejected_sections.items():
            logger.error(f"Skipping invalid section [{name}]: {message}")
        for path in find_orphan_exclude_files(profile_dir, config.sections):
            logger.warning(f"Exclude file {path} does not match any configured section")

        tool = DuplicityTool(config)
        locks = PidFileLockProvider(config.lock_dir)
        today = args.today or date.today()
        builder = JobBuilder(config, tool, locks, today)
        runner = BackupRunner(
            config, locks, builder, create_dispatcher(config, serial=args.serial)
        )

        logger.info("Performing pre-flight checks...")
        preflight_errors = perform_preflight_checks(config, tool)
        if preflight_errors:
            logger.critical("Pre-flight checks failed:")
            for error in preflight_errors:
                logger.critical(f"  - {error}")
            return 1
        logger.info("Pre-flight checks passed")

        if args.dry_run:
            return run_dry_run_mode(runner, logger)

        summary = runner.run()

        total_execution_time = (datetime.now() - start_time).total_seconds()
        logger.info("\n" + format_run_summary(summary, total_execution_time))

        if summary.has_errors or config.rejected_sections:
            logger.warning("Some backups failed - check logs for details")
            return 2

        logger.info("All due backups completed successfully")
        return 0

    except FileNotFoundError as e:
        error_msg = f"Configuration file error: {e}"
        print(f"ERROR: {error_msg}", file=sys.stderr)
        if logger:
            logger.critical(error_msg)
        return 1

    except ValueError as e:
        error_msg = f"Configuration validation error: {e}"
        print(f"ERROR: {error_msg}", file=sys.stderr)
        if logger:
            logger.critical(error_msg)
        return 1

    except KeyboardInterrupt:
        error_msg = "Backup process interrupted by user"
        print(f"\nINTERRUPTED: {error_msg}", file=sys.stderr)
        if logger:
            logger.warning(error_msg)
        return 130

    except Exception as e:
        error_msg = f"Unexpected error: {e}"
        print(f"ERROR: {error_msg}", file=sys.stderr)
        if logger:
            logger.critical(error_msg, exc_info=True)
        return 1

    finally:
        if logger:
            total_time = (datetime.now() - start_time).total_seconds()
            logger.info(f"Backup process completed in {total_time:.2f} seconds")


if __name__ == "__main__":
    exit_code = main()
    sys.exit(exit_code)
