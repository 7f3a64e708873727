"""Section exclude files and per-target exclude lists."""

import logging
import re
from pathlib import Path
from typing import Iterable, List, Sequence, Union

from .config import RELATIVE_PATH, Section
from .errors import ExcludeFileError

EXCLUDE_SUFFIX = ".exclude"

_EXCLUDE_LINE = re.compile(rf"^{RELATIVE_PATH}$")

logger = logging.getLogger(__name__)


def exclude_file_path(profile_dir: Union[str, Path], section_name: str) -> Path:
    return Path(profile_dir) / f"{section_name}{EXCLUDE_SUFFIX}"


def read_section_excludes(profile_dir: Union[str, Path], section_name: str) -> List[str]:
    """
    Read the exclude file of a section.

    The file holds one path relative to the section source per line; blank
    lines are ignored.

    Raises:
        ExcludeFileError: If the file is missing, unreadable or holds a
            line that is not a relative path
    """
    path = exclude_file_path(profile_dir, section_name)
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        raise ExcludeFileError(f"Exclude file not found: {path}")
    except (OSError, UnicodeDecodeError) as e:
        raise ExcludeFileError(f"Exclude file {path} could not be read: {e}")

    entries = []
    for number, line in enumerate(lines, start=1):
        entry = line.strip()
        if not entry:
            continue
        if not _EXCLUDE_LINE.match(entry):
            raise ExcludeFileError(f"{path}:{number}: '{entry}' is not a valid relative path")
        entries.append(entry)
    return entries


def find_orphan_exclude_files(
    profile_dir: Union[str, Path], section_names: Iterable[str]
) -> List[Path]:
    """Exclude files in a profile that do not belong to any configured section."""
    known = set(section_names)
    return sorted(
        path
        for path in Path(profile_dir).glob(f"*{EXCLUDE_SUFFIX}")
        if path.name[: -len(EXCLUDE_SUFFIX)] not in known
    )


def _is_within(path: str, directory: str) -> bool:
    directory = directory.rstrip("/")
    return path == directory or path.startswith(directory + "/")


def target_excludes(
    section: Section, target_source: str, file_entries: Sequence[str] = ()
) -> List[str]:
    """
    Build the absolute exclude paths that apply to one target.

    Inline and exclude-file entries are made absolute against the section
    source, then only those inside the target's own source directory are
    kept, so a subdirectory target never receives another subdirectory's
    excludes.

    Args:
        section: Section the target belongs to
        target_source: Source directory of the target being backed up
        file_entries: Entries read from the section's exclude file

    Returns:
        Absolute paths to pass to the backup tool, in configuration order
    """
    excludes = []
    for entry in list(section.exclude_list) + list(file_entries):
        entry = entry.replace(" ", "")
        if not entry:
            continue
        path = f"{section.source}/{entry}"
        if _is_within(path, target_source) and path not in excludes:
            excludes.append(path)
    return excludes
