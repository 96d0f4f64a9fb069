"""Disk resolution.

A disk name is resolved with one aggregated listing filtered by name across
every zone and region of the project. The scope each match came from decides
its locality, so a zonal disk outside the configured default zone is still
found and attached in its own zone.
"""

from __future__ import annotations

import logging

from .errors import AmbiguousDisk, DiskNotFound, ProviderError
from .models import ResolvedDisk, locality_from_scope
from .provider import DiskPolicyProvider

logger = logging.getLogger(__name__)


class DiskLocator:
    """Resolves disk names to exactly one zonal or regional disk."""

    def __init__(self, provider: DiskPolicyProvider) -> None:
        self._provider = provider

    def locate(self, disk_name: str) -> ResolvedDisk:
        """Resolve a disk name.

        Args:
            disk_name: Name of the disk, unique within the project.

        Returns:
            The resolved disk with its locality and attached policies.

        Raises:
            ValueError: If disk_name is empty.
            DiskNotFound: If no zone or region holds a disk with this name.
            AmbiguousDisk: If more than one disk matches.
            ProviderError: If the listing fails or returns an unknown scope.
        """
        if not disk_name:
            raise ValueError("disk_name must not be empty")

        candidates = [
            c for c in self._provider.list_disks_by_name(disk_name) if c.name == disk_name
        ]

        if not candidates:
            raise DiskNotFound(disk_name, self._provider.project)
        if len(candidates) > 1:
            raise AmbiguousDisk(disk_name, [c.scope for c in candidates])

        match = candidates[0]
        locality = locality_from_scope(match.scope)
        if locality is None:
            raise ProviderError(
                f"list disks named {disk_name}",
                f"unrecognized scope {match.scope!r} for disk {disk_name}",
            )

        logger.info(
            "Found disk %s in %s",
            disk_name,
            locality.scope,
            extra={"disk": disk_name, "scope": locality.scope},
        )
        return ResolvedDisk(
            name=match.name,
            locality=locality,
            resource_policies=match.resource_policies,
        )
