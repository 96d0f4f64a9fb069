"""Error taxonomy for disk reconciliation.

Every error is terminal for the disk it concerns. Nothing here is retried;
the reconciler records the error on the disk's outcome and moves on.
"""

from __future__ import annotations


class DiskManagerError(Exception):
    """Base class for all disk-manager failures."""

    pass


class DiskNotFound(DiskManagerError):
    """Raised when no zonal or regional disk matches a name."""

    def __init__(self, disk_name: str, project: str) -> None:
        self.disk_name = disk_name
        self.project = project
        super().__init__(
            f"Could not find disk {disk_name} in any zone or region of project {project}"
        )


class AmbiguousDisk(DiskManagerError):
    """Raised when a disk name matches more than one disk resource."""

    def __init__(self, disk_name: str, scopes: list[str]) -> None:
        self.disk_name = disk_name
        self.scopes = scopes
        super().__init__(
            f"Expected exactly one disk matching name {disk_name}, "
            f"got {len(scopes)}: {', '.join(scopes)}"
        )


class PolicyNotFound(DiskManagerError):
    """Raised when the desired resource policy does not exist."""

    def __init__(self, policy_name: str, region: str) -> None:
        self.policy_name = policy_name
        self.region = region
        super().__init__(f"Snapshot policy {policy_name} not found in region {region}")


class PolicyConflict(DiskManagerError):
    """Raised when a different policy is already attached to the disk.

    Requires an operator to detach the existing policy by hand.
    """

    def __init__(self, disk_name: str, attached: str, desired: str) -> None:
        self.disk_name = disk_name
        self.attached = attached
        self.desired = desired
        super().__init__(
            f"Unexpected policy {attached} is already attached to disk {disk_name} "
            f"(wanted {desired}), please detach it manually and re-run"
        )


class UnexpectedPolicyState(DiskManagerError):
    """Raised when a disk reports more than one attached resource policy."""

    def __init__(self, disk_name: str, attached: tuple[str, ...]) -> None:
        self.disk_name = disk_name
        self.attached = attached
        super().__init__(
            f"Disk {disk_name} has {len(attached)} resource policies attached, "
            f"expected at most one: {list(attached)}"
        )


class ConflictingTargets(DiskManagerError):
    """Raised when two claims request different policies for one disk."""

    def __init__(self, disk_name: str, policies: list[str]) -> None:
        self.disk_name = disk_name
        self.policies = policies
        super().__init__(
            f"Disk {disk_name} is targeted with conflicting policies: {sorted(policies)}"
        )


class ProviderError(DiskManagerError):
    """Raised when a cloud API call fails for a reason other than not-found.

    The underlying SDK exception is chained as ``__cause__``.
    """

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        super().__init__(f"{operation} failed: {message}")


class ScanError(DiskManagerError):
    """Raised when a claim cannot be mapped to its backing disk."""

    pass
