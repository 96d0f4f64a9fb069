"""Data model for disk reconciliation.

Disk locality is a sum type: a resolved disk is either ``Zonal`` or
``Regional`` and carries exactly one scope value. The config file model is a
pydantic model so the YAML is validated at the boundary.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, Field, field_validator

ZONES_SCOPE_PREFIX = "zones"
REGIONS_SCOPE_PREFIX = "regions"


# =============================================================================
# Locality
# =============================================================================


@dataclass(frozen=True)
class Zonal:
    """Disk lives in a single zone."""

    zone: str

    @property
    def scope(self) -> str:
        return f"{ZONES_SCOPE_PREFIX}/{self.zone}"


@dataclass(frozen=True)
class Regional:
    """Disk is replicated across zones of a region."""

    region: str

    @property
    def scope(self) -> str:
        return f"{REGIONS_SCOPE_PREFIX}/{self.region}"


Locality = Zonal | Regional


def locality_from_scope(scope: str) -> Locality | None:
    """Classify an aggregated-list scope key.

    Args:
        scope: Key such as ``zones/us-central1-a`` or ``regions/us-central1``.

    Returns:
        The matching locality, or None if the key is neither zonal nor regional.
    """
    kind, _, value = scope.partition("/")
    if not value or "/" in value:
        return None
    if kind == ZONES_SCOPE_PREFIX:
        return Zonal(value)
    if kind == REGIONS_SCOPE_PREFIX:
        return Regional(value)
    return None


# =============================================================================
# Disks, policies, targets
# =============================================================================


@dataclass(frozen=True)
class DiskTarget:
    """A disk and the snapshot policy it should carry."""

    disk_name: str
    policy_name: str
    # namespace/name of the claim that produced this target, for logging
    claim: str | None = None

    def __post_init__(self) -> None:
        if not self.disk_name:
            raise ValueError("disk_name must not be empty")
        if not self.policy_name:
            raise ValueError("policy_name must not be empty")


@dataclass(frozen=True)
class Policy:
    """A resource policy. ``self_link`` is what gets compared and attached."""

    name: str
    self_link: str


@dataclass(frozen=True)
class ScopedDisk:
    """One entry of an aggregated disk listing."""

    scope: str
    name: str
    resource_policies: tuple[str, ...] = ()


@dataclass(frozen=True)
class ResolvedDisk:
    """A disk with confirmed locality and current policy attachments."""

    name: str
    locality: Locality
    resource_policies: tuple[str, ...] = ()

    @property
    def is_regional(self) -> bool:
        return isinstance(self.locality, Regional)


# =============================================================================
# Config file
# =============================================================================


class ConfigFileModel(BaseModel):
    """Shape of the YAML config file.

    Example:
        targetAnnotation: bio.terra/snapshot-policy
        googleProject: my-project
        zone: us-central1-a
        region: us-central1
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    target_annotation: str = Field(alias="targetAnnotation")
    google_project: str = Field(alias="googleProject")
    zone: str
    region: str

    @field_validator("target_annotation", "google_project", "zone", "region")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        return v.strip()
