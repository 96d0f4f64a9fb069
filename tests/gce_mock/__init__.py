"""Compute Engine mock for reconciliation tests.

Provides an in-memory implementation of the disk/policy provider so the
locator and reconciler can be tested without GCP connectivity.

Usage:
    from gce_mock import MockComputeProvider, MockComputeState

    state = MockComputeState()
    link = state.add_policy("policy-a", "us-central1")
    state.add_zonal_disk("disk-1", "us-central1-a")

    provider = MockComputeProvider(state)
    outcome = Reconciler(provider, config).reconcile(DiskTarget("disk-1", "policy-a"))

    assert provider.attach_calls == [
        ("attach_policy_zonal", "us-central1-a", "disk-1", link)
    ]
"""

from .provider import MockComputeProvider
from .state import MockComputeState, MockDisk

__all__ = [
    "MockComputeProvider",
    "MockComputeState",
    "MockDisk",
]
