"""Configuration management for the dupsched backup policy."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError

POLICY_FILE_NAME = "policy.yaml"

WEEKDAY_NAMES = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

DIR_COMPONENT = r"[a-zA-Z][a-zA-Z0-9_.-]*"
_ABSOLUTE_PATH = re.compile(rf"^/(?:{DIR_COMPONENT}/?)+$")
RELATIVE_PATH = rf"(?:{DIR_COMPONENT}/?)+"
_EXCLUDE_LIST = re.compile(rf"^{RELATIVE_PATH}(?:\s*,\s*{RELATIVE_PATH})*$")
_SECTION_NAME = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")

logger = logging.getLogger(__name__)


def _parse_yes_no(value, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("yes", "no"):
        return value.strip().lower() == "yes"
    raise ValueError(f"{field_name} must be 'yes' or 'no'")


class Section(BaseModel):
    """Backup policy for one configured directory tree."""

    model_config = ConfigDict(frozen=True)

    source: str = Field(description="Absolute path of the directory to be backed up")
    target: str = Field(
        description="Absolute path of the location where the backup is stored"
    )
    method: str = Field(
        default="duplicity",
        description="Backup tool to use; only 'duplicity' is supported",
    )
    full_interval: int = Field(
        ge=0, le=52, description="Weeks between full backups (0 to 52)"
    )
    diff_interval: int = Field(
        ge=0, le=30, description="Days between incremental backups (0 to 30)"
    )
    full_bak_day: str = Field(
        default="Saturday",
        description="Day of the week on which full backups run (e.g. Sat, Sunday)",
    )
    volsize: int = Field(
        default=500,
        ge=25,
        le=2000,
        description="Size in MB of the volumes written by the backup tool (25 to 2000)",
    )
    exclude: Optional[str] = Field(
        default=None,
        description="Comma separated list of relative paths to exclude from this backup",
    )
    retention: int = Field(
        ge=1, le=12, description="Number of full backups to keep, including the newest (1 to 12)"
    )
    multiple_dirs: bool = Field(
        default=False,
        description="'yes' to back up every subdirectory of source separately",
    )
    precmd: Optional[str] = Field(
        default=None, description="Shell command run before this section's backups"
    )
    postcmd: Optional[str] = Field(
        default=None, description="Shell command run after this section's backups"
    )
    description: str = Field(default="", description="Short description of the section")

    @field_validator("source", "target")
    @classmethod
    def validate_absolute_path(cls, v: str) -> str:
        """Validate that source and target are plain absolute paths."""
        if not _ABSOLUTE_PATH.match(v):
            raise ValueError(f"'{v}' is not a valid absolute path")
        return v.rstrip("/") or "/"

    @field_validator("method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        if v.strip().lower() != "duplicity":
            raise ValueError("method must be 'duplicity'")
        return "duplicity"

    @field_validator("full_bak_day")
    @classmethod
    def validate_full_bak_day(cls, v: str) -> str:
        """Accept full weekday names and their three letter abbreviations."""
        day = v.strip().lower()
        if day not in WEEKDAY_NAMES and day not in [name[:3] for name in WEEKDAY_NAMES]:
            raise ValueError(f"'{v}' is not a day of the week")
        return v.strip()

    @field_validator("exclude")
    @classmethod
    def validate_exclude(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not _EXCLUDE_LIST.match(v.strip()):
            raise ValueError(f"exclude list '{v}' contains an invalid relative path")
        return v.strip()

    @field_validator("multiple_dirs", mode="before")
    @classmethod
    def validate_multiple_dirs(cls, v):
        return _parse_yes_no(v, "multiple_dirs")

    @field_validator("precmd", "postcmd")
    @classmethod
    def validate_hook(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not re.search(r"\w", v):
            raise ValueError("hook command must not be blank")
        return v

    @property
    def exclude_list(self) -> List[str]:
        """Inline exclude entries with whitespace removed."""
        if not self.exclude:
            return []
        entries = [entry.replace(" ", "") for entry in self.exclude.split(",")]
        return [entry for entry in entries if entry]


class AppConfig(BaseModel):
    """Main application configuration."""

    model_config = ConfigDict(frozen=True)

    lock_dir: str = Field(
        default="/tmp/dupsched", description="Directory holding per-target lock files"
    )
    archive_dir: str = Field(
        default="/var/cache/dupsched",
        description="duplicity archive directory for signature caches",
    )
    workers: int = Field(
        default=12, ge=1, description="Number of backups run concurrently"
    )
    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_file: str = Field(
        default="log/dupsched.log", description="Path of the rotating log file"
    )
    duplicity_binary: str = Field(
        default="duplicity", description="Name or path of the duplicity executable"
    )
    encrypt_key: Optional[str] = Field(
        default=None, description="GPG key id passed to duplicity --encrypt-key"
    )
    sign_key: Optional[str] = Field(
        default=None, description="GPG key id passed to duplicity --sign-key"
    )
    allow_source_mismatch: bool = Field(
        default=False, description="Pass --allow-source-mismatch to backup commands"
    )
    exclude_file_required: bool = Field(
        default=True,
        description="Skip a section's targets when its exclude file is missing",
    )
    profile_dir: str = Field(
        default="config/main", description="Directory holding the policy and exclude files"
    )
    sections: Dict[str, Section] = Field(default_factory=dict)
    rejected_sections: Dict[str, str] = Field(default_factory=dict)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v_upper

    @field_validator("lock_dir", "archive_dir")
    @classmethod
    def validate_directory(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"'{v}' must be an absolute path")
        return v


def parse_sections(raw_sections) -> Tuple[Dict[str, Section], Dict[str, str]]:
    """
    Validate policy sections one at a time.

    A section that fails validation is reported but does not prevent the
    remaining sections from loading.

    Args:
        raw_sections: Mapping of section name to its parameter mapping

    Returns:
        Tuple of (valid sections by name, error message by rejected section name)
    """
    sections: Dict[str, Section] = {}
    rejected: Dict[str, str] = {}

    if raw_sections is None:
        return sections, rejected
    if not isinstance(raw_sections, dict):
        raise ValueError("'sections' must be a mapping of section names to parameters")

    for name, params in raw_sections.items():
        name = str(name)
        if params is None:
            logger.debug(f"Section '{name}' has no parameters, ignoring it")
            continue
        try:
            sections[name] = build_section(name, params)
        except ConfigurationError as e:
            rejected[name] = str(e)

    return sections, rejected


def build_section(name: str, params) -> Section:
    """Validate a single section, raising ConfigurationError on any problem."""
    if not _SECTION_NAME.match(name):
        raise ConfigurationError(name, "section names must start with a letter")
    if not isinstance(params, dict):
        raise ConfigurationError(name, "parameters must be a mapping")

    try:
        return Section(**params)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'section'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigurationError(name, problems) from e


def load_config(profile_dir: str = "config/main") -> AppConfig:
    """Load and validate the policy file of a configuration profile."""
    profile_path = Path(profile_dir)

    if not profile_path.is_dir():
        raise FileNotFoundError(f"Profile directory not found: {profile_dir}")

    policy_file = profile_path / POLICY_FILE_NAME
    if not policy_file.exists():
        raise FileNotFoundError(f"Policy file not found: {policy_file}")

    try:
        with open(policy_file, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML format in policy file: {e}")
    except OSError as e:
        raise ValueError(f"Policy file could not be read: {e}")

    if config_data is None:
        raise ValueError("Policy file is empty")
    if not isinstance(config_data, dict):
        raise ValueError("Policy file must contain a mapping")

    sections, rejected = parse_sections(config_data.pop("sections", None))
    config_data.update(
        profile_dir=str(profile_path),
        sections=sections,
        rejected_sections=rejected,
    )

    try:
        return AppConfig(**config_data)
    except ValidationError as e:
        raise ValueError(f"Configuration validation error: {e}")


def describe_parameters() -> List[Tuple[str, str, str]]:
    """
    List every section parameter with its description and default.

    Returns:
        List of (name, description, default) tuples; default is "required"
        for parameters without one.
    """
    rows = []
    for name, field in Section.model_fields.items():
        if field.is_required():
            default = "required"
        elif field.default is None:
            default = "unset"
        else:
            default = str(field.default)
        rows.append((name, field.description or "", default))
    return sorted(rows)
