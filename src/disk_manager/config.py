"""Configuration management with validation.

The four scalar settings (annotation key, project, zone, region) come from a
YAML file. Runtime knobs that are not part of the file (dry run, worker count,
request timeout) come from CLI options with environment fallbacks. Invalid
configuration fails at load time rather than part-way through a run.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import ConfigFileModel

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


DEFAULT_CONFIG_FILE = Path("/etc/disk-manager/config.yaml")

# Configuration constants with documented bounds
DEFAULT_MAX_WORKERS = 1
MIN_MAX_WORKERS = 1
MAX_MAX_WORKERS = 32

DEFAULT_REQUEST_TIMEOUT_SECONDS = 60
MIN_REQUEST_TIMEOUT_SECONDS = 1
MAX_REQUEST_TIMEOUT_SECONDS = 600

MAX_CONFIG_FILE_SIZE_BYTES = 64 * 1024

# Input validation patterns
VALID_PROJECT_PATTERN = r"^([a-z][a-z0-9.-]*[a-z0-9]:)?[a-z][a-z0-9-]{4,28}[a-z0-9]$"
VALID_REGION_PATTERN = r"^[a-z]+-[a-z]+[0-9]+$"
VALID_ZONE_PATTERN = r"^[a-z]+-[a-z]+[0-9]+-[a-z]$"
VALID_ANNOTATION_PATTERN = (
    r"^([a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*/)?"
    r"[A-Za-z0-9]([-A-Za-z0-9_.]{0,61}[A-Za-z0-9])?$"
)


@dataclass(frozen=True)
class Config:
    """Disk manager configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError listing every problem found.
    """

    # Required fields
    target_annotation: str
    google_project: str
    zone: str
    region: str

    # Behavior
    dry_run: bool = False
    max_workers: int = DEFAULT_MAX_WORKERS
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.target_annotation:
            errors.append("targetAnnotation is required")
        elif not re.match(VALID_ANNOTATION_PATTERN, self.target_annotation):
            errors.append(
                f"targetAnnotation must be a valid Kubernetes annotation key: "
                f"{self.target_annotation}"
            )

        if not self.google_project:
            errors.append("googleProject is required")
        elif not re.match(VALID_PROJECT_PATTERN, self.google_project):
            errors.append(f"googleProject must be a valid GCP project id: {self.google_project}")

        if not self.region:
            errors.append("region is required")
        elif not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"region must be a valid GCP region: {self.region}")

        if not self.zone:
            errors.append("zone is required")
        elif not re.match(VALID_ZONE_PATTERN, self.zone):
            errors.append(f"zone must be a valid GCP zone: {self.zone}")
        elif self.region and self.zone.rsplit("-", 1)[0] != self.region:
            errors.append(f"zone {self.zone} is not in region {self.region}")

        if not (MIN_MAX_WORKERS <= self.max_workers <= MAX_MAX_WORKERS):
            errors.append(
                f"max_workers must be between {MIN_MAX_WORKERS} and {MAX_MAX_WORKERS}"
            )

        if not (
            MIN_REQUEST_TIMEOUT_SECONDS
            <= self.request_timeout_seconds
            <= MAX_REQUEST_TIMEOUT_SECONDS
        ):
            errors.append(
                f"request_timeout_seconds must be between {MIN_REQUEST_TIMEOUT_SECONDS} "
                f"and {MAX_REQUEST_TIMEOUT_SECONDS}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_file(
        cls,
        path: Path,
        *,
        dry_run: bool | None = None,
        max_workers: int | None = None,
        request_timeout_seconds: int | None = None,
    ) -> Config:
        """Load configuration from a YAML file.

        Keyword arguments left as None fall back to the environment:
            DISK_MANAGER_DRY_RUN: If "true", compare only, never attach (default: false)
            DISK_MANAGER_MAX_WORKERS: Concurrent reconciliations (default: 1)
            DISK_MANAGER_REQUEST_TIMEOUT: Per-call timeout in seconds (default: 60)

        Raises:
            ConfigurationError: If the file cannot be read or fails validation.
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        file_model = _read_config_file(path)

        config = cls(
            target_annotation=file_model.target_annotation,
            google_project=file_model.google_project,
            zone=file_model.zone,
            region=file_model.region,
            dry_run=dry_run if dry_run is not None else get_bool("DISK_MANAGER_DRY_RUN", False),
            max_workers=(
                max_workers
                if max_workers is not None
                else get_int("DISK_MANAGER_MAX_WORKERS", DEFAULT_MAX_WORKERS)
            ),
            request_timeout_seconds=(
                request_timeout_seconds
                if request_timeout_seconds is not None
                else get_int("DISK_MANAGER_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS)
            ),
        )
        logger.info("Loaded configuration from %s", path)
        return config


def _read_config_file(path: Path) -> ConfigFileModel:
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ConfigurationError(f"Failed to stat config file {path}: {e}") from e

    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise ConfigurationError(
            f"Config file exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Error reading config file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Error parsing config {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise ConfigurationError(f"Config file must contain a YAML mapping: {path}")

    try:
        return ConfigFileModel.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise ConfigurationError(f"Validation failed for {path}:\n{error_list}") from e
