"""Disk and resource-policy access for Compute Engine.

``DiskPolicyProvider`` is the only cloud surface the locator and reconciler
see. ``ComputeProvider`` implements it with ``google-cloud-compute``.

Lookups that find nothing return None (or an empty list). A missing disk in
one scope is an expected answer, not an error. Every other API, auth or
transport failure is raised as ProviderError with the underlying exception
chained.

Each method issues exactly one bounded request. Attach calls return as soon
as Compute Engine accepts the operation; the operation is not polled.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any, TypeVar
from urllib.parse import urlparse

import requests
from google.api_core.exceptions import GoogleAPIError, NotFound
from google.auth.exceptions import GoogleAuthError
from google.cloud import compute_v1

from .errors import ProviderError
from .models import Policy, Regional, ResolvedDisk, ScopedDisk, Zonal

logger = logging.getLogger(__name__)

T = TypeVar("T")


def last_path_component(value: str) -> str:
    """Return the last path segment of a URL or resource path.

    ``https://www.googleapis.com/compute/v1/projects/p/zones/us-central1-a``
    and ``projects/p/zones/us-central1-a`` both give ``us-central1-a``.

    Raises:
        ValueError: If the path has no non-empty last segment.
    """
    path = urlparse(value).path if "://" in value else value
    last = path.rstrip("/").rsplit("/", 1)[-1] if path else ""
    if not last:
        raise ValueError(f"failed to extract last component from path: {value!r}")
    return last


class DiskPolicyProvider(ABC):
    """Cloud operations needed to reconcile disk snapshot policies.

    Implementations are bound to a single project.
    """

    project: str

    @abstractmethod
    def get_zonal_disk(self, zone: str, name: str) -> ResolvedDisk | None:
        """Fetch a zonal disk, or None if it does not exist in ``zone``."""

    @abstractmethod
    def get_regional_disk(self, region: str, name: str) -> ResolvedDisk | None:
        """Fetch a regional disk, or None if it does not exist in ``region``."""

    @abstractmethod
    def list_disks_by_name(self, name: str) -> list[ScopedDisk]:
        """List every disk with this name across all zones and regions."""

    @abstractmethod
    def get_policy(self, region: str, name: str) -> Policy | None:
        """Fetch a resource policy, or None if it does not exist."""

    @abstractmethod
    def attach_policy_zonal(self, zone: str, disk_name: str, policy_link: str) -> None:
        """Attach a policy to a zonal disk."""

    @abstractmethod
    def attach_policy_regional(self, region: str, disk_name: str, policy_link: str) -> None:
        """Attach a policy to a regional disk."""


class ComputeProvider(DiskPolicyProvider):
    """DiskPolicyProvider backed by the Compute Engine API."""

    def __init__(
        self,
        project: str,
        *,
        credentials: Any = None,
        timeout_seconds: float = 60,
        disks_client: compute_v1.DisksClient | None = None,
        region_disks_client: compute_v1.RegionDisksClient | None = None,
        policies_client: compute_v1.ResourcePoliciesClient | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            project: GCP project holding the disks and policies.
            credentials: google-auth credentials; None uses ADC.
            timeout_seconds: Timeout applied to every API request.
            disks_client: Optional prebuilt zonal disks client.
            region_disks_client: Optional prebuilt regional disks client.
            policies_client: Optional prebuilt resource policies client.
        """
        self.project = project
        self._timeout = timeout_seconds
        self._disks = disks_client or compute_v1.DisksClient(credentials=credentials)
        self._region_disks = region_disks_client or compute_v1.RegionDisksClient(
            credentials=credentials
        )
        self._policies = policies_client or compute_v1.ResourcePoliciesClient(
            credentials=credentials
        )

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except (GoogleAPIError, GoogleAuthError, requests.RequestException) as e:
            raise ProviderError(operation, str(e)) from e

    def _lookup(self, operation: str, fn: Callable[[], T]) -> T | None:
        try:
            return self._call(operation, fn)
        except ProviderError as e:
            if isinstance(e.__cause__, NotFound):
                logger.debug("%s: not found", operation)
                return None
            raise

    def get_zonal_disk(self, zone: str, name: str) -> ResolvedDisk | None:
        disk = self._lookup(
            f"get disk {name} in zone {zone}",
            lambda: self._disks.get(
                project=self.project, zone=zone, disk=name, retry=None, timeout=self._timeout
            ),
        )
        if disk is None:
            return None
        return ResolvedDisk(
            name=disk.name,
            locality=Zonal(zone),
            resource_policies=tuple(disk.resource_policies),
        )

    def get_regional_disk(self, region: str, name: str) -> ResolvedDisk | None:
        disk = self._lookup(
            f"get disk {name} in region {region}",
            lambda: self._region_disks.get(
                project=self.project,
                region=region,
                disk=name,
                retry=None,
                timeout=self._timeout,
            ),
        )
        if disk is None:
            return None
        return ResolvedDisk(
            name=disk.name,
            locality=Regional(region),
            resource_policies=tuple(disk.resource_policies),
        )

    def list_disks_by_name(self, name: str) -> list[ScopedDisk]:
        request = compute_v1.AggregatedListDisksRequest(
            project=self.project,
            filter=f"name = {name}",
        )

        def collect() -> list[ScopedDisk]:
            found: list[ScopedDisk] = []
            # The pager fetches further pages while iterating
            pager = self._disks.aggregated_list(request=request, retry=None, timeout=self._timeout)
            for scope, scoped_list in pager:
                for disk in scoped_list.disks:
                    found.append(
                        ScopedDisk(
                            scope=scope,
                            name=disk.name,
                            resource_policies=tuple(disk.resource_policies),
                        )
                    )
            return found

        return self._call(f"list disks named {name}", collect)

    def get_policy(self, region: str, name: str) -> Policy | None:
        policy = self._lookup(
            f"get resource policy {name} in region {region}",
            lambda: self._policies.get(
                project=self.project,
                region=region,
                resource_policy=name,
                retry=None,
                timeout=self._timeout,
            ),
        )
        if policy is None:
            return None
        return Policy(name=policy.name, self_link=policy.self_link)

    def attach_policy_zonal(self, zone: str, disk_name: str, policy_link: str) -> None:
        body = compute_v1.DisksAddResourcePoliciesRequest(resource_policies=[policy_link])
        self._call(
            f"attach policy to disk {disk_name} in zone {zone}",
            lambda: self._disks.add_resource_policies(
                project=self.project,
                zone=zone,
                disk=disk_name,
                disks_add_resource_policies_request_resource=body,
                retry=None,
                timeout=self._timeout,
            ),
        )

    def attach_policy_regional(self, region: str, disk_name: str, policy_link: str) -> None:
        body = compute_v1.RegionDisksAddResourcePoliciesRequest(resource_policies=[policy_link])
        self._call(
            f"attach policy to disk {disk_name} in region {region}",
            lambda: self._region_disks.add_resource_policies(
                project=self.project,
                region=region,
                disk=disk_name,
                region_disks_add_resource_policies_request_resource=body,
                retry=None,
                timeout=self._timeout,
            ),
        )
