"""Tests for snapshot policy reconciliation.

Covers:
- Idempotent no-op when the desired policy is already attached
- Zonal vs regional attach paths
- Conflict and unexpected-state detection
- Partial-failure isolation across a run
- Duplicate and conflicting targets, dry run and shutdown
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import threading

import pytest
from gce_mock import MockComputeProvider, MockComputeState

from disk_manager.config import Config
from disk_manager.errors import (
    ConflictingTargets,
    DiskNotFound,
    PolicyConflict,
    PolicyNotFound,
    ProviderError,
    UnexpectedPolicyState,
)
from disk_manager.models import DiskTarget, Regional, Zonal
from disk_manager.reconciler import Reconciler, ReconcileState, RunResult

REGION = "us-central1"
ZONE = "us-central1-a"


class TestReconcile:
    """Tests for reconciling a single disk."""

    def test_attaches_policy_to_unpolicied_zonal_disk(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        link = state.add_policy("policy-a", REGION)
        state.add_zonal_disk("disk-1", ZONE)

        outcome = Reconciler(provider, config).reconcile(DiskTarget("disk-1", "policy-a"))

        assert outcome.state == ReconcileState.ATTACHED
        assert outcome.success is True
        assert outcome.locality == Zonal(ZONE)
        assert provider.attach_calls == [("attach_policy_zonal", ZONE, "disk-1", link)]
        assert provider.call_count("attach_policy_regional") == 0

    def test_attaches_policy_to_unpolicied_regional_disk(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        link = state.add_policy("policy-z", REGION)
        state.add_regional_disk("disk-2", REGION)

        outcome = Reconciler(provider, config).reconcile(DiskTarget("disk-2", "policy-z"))

        assert outcome.state == ReconcileState.ATTACHED
        assert outcome.locality == Regional(REGION)
        assert provider.attach_calls == [("attach_policy_regional", REGION, "disk-2", link)]
        assert provider.call_count("attach_policy_zonal") == 0

    def test_zonal_disk_outside_configured_zone_uses_its_own_zone(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        link = state.add_policy("policy-a", REGION)
        state.add_zonal_disk("disk-f", "us-central1-f")

        outcome = Reconciler(provider, config).reconcile(DiskTarget("disk-f", "policy-a"))

        assert outcome.state == ReconcileState.ATTACHED
        assert provider.attach_calls == [("attach_policy_zonal", "us-central1-f", "disk-f", link)]

    def test_already_attached_is_noop(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        link = state.add_policy("policy-a", REGION)
        state.add_zonal_disk("disk-3", ZONE, [link])

        outcome = Reconciler(provider, config).reconcile(DiskTarget("disk-3", "policy-a"))

        assert outcome.state == ReconcileState.NO_OP
        assert outcome.success is True
        assert provider.attach_calls == []

    def test_reconcile_is_idempotent(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        link = state.add_policy("policy-a", REGION)
        state.add_zonal_disk("disk-1", ZONE)
        reconciler = Reconciler(provider, config)

        first = reconciler.reconcile(DiskTarget("disk-1", "policy-a"))
        second = reconciler.reconcile(DiskTarget("disk-1", "policy-a"))
        third = reconciler.reconcile(DiskTarget("disk-1", "policy-a"))

        assert first.state == ReconcileState.ATTACHED
        assert second.state == ReconcileState.NO_OP
        assert third.state == ReconcileState.NO_OP
        assert len(provider.attach_calls) == 1
        assert state.attached_policies("disk-1") == [link]

    def test_different_policy_attached_is_conflict(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        state.add_policy("policy-a", REGION)
        other = state.add_policy("policy-b", REGION)
        state.add_zonal_disk("disk-1", ZONE, [other])

        outcome = Reconciler(provider, config).reconcile(DiskTarget("disk-1", "policy-a"))

        assert outcome.state == ReconcileState.FAILED
        assert isinstance(outcome.error, PolicyConflict)
        assert outcome.error.attached == other
        assert "policy-b" in str(outcome.error)
        assert "policy-a" in str(outcome.error)
        assert provider.attach_calls == []
        assert state.attached_policies("disk-1") == [other]

    @pytest.mark.parametrize("includes_desired", [True, False])
    def test_multiple_policies_is_unexpected_state(
        self,
        config: Config,
        state: MockComputeState,
        provider: MockComputeProvider,
        includes_desired: bool,
    ) -> None:
        desired = state.add_policy("policy-a", REGION)
        other = state.add_policy("policy-b", REGION)
        third = state.add_policy("policy-c", REGION)
        attached = [desired, other] if includes_desired else [other, third]
        state.add_regional_disk("disk-1", REGION, attached)

        outcome = Reconciler(provider, config).reconcile(DiskTarget("disk-1", "policy-a"))

        assert outcome.state == ReconcileState.FAILED
        assert isinstance(outcome.error, UnexpectedPolicyState)
        assert provider.attach_calls == []

    def test_missing_policy_fails_before_disk_lookup(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        state.add_zonal_disk("disk-1", ZONE)

        outcome = Reconciler(provider, config).reconcile(DiskTarget("disk-1", "missing"))

        assert isinstance(outcome.error, PolicyNotFound)
        assert provider.call_count("list_disks_by_name") == 0
        assert provider.attach_calls == []

    def test_missing_disk_is_disk_not_found(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        state.add_policy("policy-a", REGION)

        outcome = Reconciler(provider, config).reconcile(DiskTarget("ghost", "policy-a"))

        assert outcome.state == ReconcileState.FAILED
        assert isinstance(outcome.error, DiskNotFound)

    def test_attach_failure_is_reported(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        state.add_policy("policy-a", REGION)
        state.add_zonal_disk("disk-1", ZONE)
        provider.set_failure("attach_policy_zonal")

        outcome = Reconciler(provider, config).reconcile(DiskTarget("disk-1", "policy-a"))

        assert outcome.state == ReconcileState.FAILED
        assert isinstance(outcome.error, ProviderError)
        assert len(provider.attach_calls) == 1

    def test_unexpected_exception_is_captured(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        state.add_policy("policy-a", REGION)
        provider.set_failure("list_disks_by_name", RuntimeError("boom"))

        outcome = Reconciler(provider, config).reconcile(DiskTarget("disk-1", "policy-a"))

        assert outcome.state == ReconcileState.FAILED
        assert isinstance(outcome.error, RuntimeError)

    def test_dry_run_never_attaches(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        state.add_policy("policy-a", REGION)
        state.add_zonal_disk("disk-1", ZONE)
        dry_config = dataclasses.replace(config, dry_run=True)

        outcome = Reconciler(provider, dry_config).reconcile(DiskTarget("disk-1", "policy-a"))

        assert outcome.state == ReconcileState.DRY_RUN
        assert outcome.success is True
        assert provider.attach_calls == []

    def test_dry_run_still_reports_conflicts(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        state.add_policy("policy-a", REGION)
        other = state.add_policy("policy-b", REGION)
        state.add_zonal_disk("disk-1", ZONE, [other])
        dry_config = dataclasses.replace(config, dry_run=True)

        outcome = Reconciler(provider, dry_config).reconcile(DiskTarget("disk-1", "policy-a"))

        assert isinstance(outcome.error, PolicyConflict)


class TestRun:
    """Tests for the aggregate run over many targets."""

    @pytest.mark.asyncio
    async def test_no_targets(self, config: Config, provider: MockComputeProvider) -> None:
        result = await Reconciler(provider, config).run([])

        assert result.success is True
        assert result.outcomes == []
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_mixed_zonal_regional_and_already_attached(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        """3 disks, 2 zonal, 1 regional; 1 with policy already attached."""
        link_a = state.add_policy("policy-a", REGION)
        link_z = state.add_policy("policy-z", REGION)
        state.add_zonal_disk("disk-1", ZONE)
        state.add_regional_disk("disk-2", REGION)
        state.add_zonal_disk("disk-3", ZONE, [link_a])

        targets = [
            DiskTarget("disk-1", "policy-a"),
            DiskTarget("disk-2", "policy-z"),
            DiskTarget("disk-3", "policy-a"),
        ]
        result = await Reconciler(provider, config).run(targets)

        assert result.success is True
        assert result.failed == 0
        assert [o.state for o in result.outcomes] == [
            ReconcileState.ATTACHED,
            ReconcileState.ATTACHED,
            ReconcileState.NO_OP,
        ]
        assert provider.attach_calls == [
            ("attach_policy_zonal", ZONE, "disk-1", link_a),
            ("attach_policy_regional", REGION, "disk-2", link_z),
        ]
        # policy-a is looked up once and reused for disk-3
        assert provider.call_count("get_policy") == 2

    @pytest.mark.asyncio
    async def test_first_target_failure_does_not_stop_others(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        state.add_policy("policy-a", REGION)
        state.add_zonal_disk("disk-2", ZONE)
        state.add_regional_disk("disk-3", REGION)

        targets = [
            DiskTarget("missing-disk", "policy-a"),
            DiskTarget("disk-2", "policy-a"),
            DiskTarget("disk-3", "policy-a"),
        ]
        result = await Reconciler(provider, config).run(targets)

        assert result.success is False
        assert result.failed == 1
        assert result.attached == 2
        assert isinstance(result.failures[0].error, DiskNotFound)
        assert result.failures[0].target.disk_name == "missing-disk"

    @pytest.mark.asyncio
    async def test_unknown_disk_is_sole_failure(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        state.add_policy("policy-a", REGION)

        result = await Reconciler(provider, config).run([DiskTarget("nowhere", "policy-a")])

        assert result.failed == 1
        assert isinstance(result.failures[0].error, DiskNotFound)
        assert provider.attach_calls == []

    @pytest.mark.asyncio
    async def test_second_run_performs_no_attach(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        state.add_policy("policy-a", REGION)
        state.add_zonal_disk("disk-1", ZONE)
        state.add_regional_disk("disk-2", REGION)
        targets = [DiskTarget("disk-1", "policy-a"), DiskTarget("disk-2", "policy-a")]

        first = await Reconciler(provider, config).run(targets)
        attaches_after_first = len(provider.attach_calls)
        second = await Reconciler(provider, config).run(targets)

        assert first.attached == 2
        assert second.success is True
        assert second.attached == 0
        assert len(provider.attach_calls) == attaches_after_first

    @pytest.mark.asyncio
    async def test_concurrent_workers(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        state.add_policy("policy-a", REGION)
        for i in range(10):
            state.add_zonal_disk(f"disk-{i}", ZONE)
        targets = [DiskTarget(f"disk-{i}", "policy-a") for i in range(10)]
        parallel = dataclasses.replace(config, max_workers=4)

        result = await Reconciler(provider, parallel).run(targets)

        assert result.success is True
        assert result.attached == 10
        assert [o.target.disk_name for o in result.outcomes] == [t.disk_name for t in targets]
        assert len(provider.attach_calls) == 10

    @pytest.mark.asyncio
    async def test_duplicate_targets_reconciled_once(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        state.add_policy("policy-a", REGION)
        state.add_zonal_disk("disk-1", ZONE)
        targets = [DiskTarget("disk-1", "policy-a"), DiskTarget("disk-1", "policy-a")]

        result = await Reconciler(provider, config).run(targets)

        assert result.success is True
        assert len(result.outcomes) == 1
        assert len(provider.attach_calls) == 1

    @pytest.mark.asyncio
    async def test_conflicting_targets_fail_without_cloud_calls(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        state.add_policy("policy-a", REGION)
        state.add_policy("policy-b", REGION)
        state.add_zonal_disk("disk-1", ZONE)
        state.add_zonal_disk("disk-2", ZONE)
        targets = [
            DiskTarget("disk-1", "policy-a", claim="ns/a"),
            DiskTarget("disk-1", "policy-b", claim="ns/b"),
            DiskTarget("disk-2", "policy-a"),
        ]

        result = await Reconciler(provider, config).run(targets)

        assert result.failed == 2
        assert all(isinstance(o.error, ConflictingTargets) for o in result.failures)
        assert provider.attach_calls == [
            ("attach_policy_zonal", ZONE, "disk-2", state.policy_link("policy-a", REGION))
        ]
        assert ("list_disks_by_name", "disk-1") not in provider.calls

    @pytest.mark.asyncio
    async def test_shutdown_cancels_unstarted_targets(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        state.add_policy("policy-a", REGION)
        state.add_zonal_disk("disk-1", ZONE)
        reconciler = Reconciler(provider, config)
        reconciler.shutdown()

        result = await reconciler.run([DiskTarget("disk-1", "policy-a")])

        assert result.cancelled == 1
        assert result.failed == 0
        assert result.success is False
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_shutdown_during_attach_lets_it_finish(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        state.add_policy("policy-a", REGION)
        for i in range(3):
            state.add_zonal_disk(f"disk-{i}", ZONE)
        started = threading.Event()
        release = threading.Event()
        attach = provider.attach_policy_zonal

        def blocking_attach(zone: str, disk_name: str, policy_link: str) -> None:
            started.set()
            release.wait(timeout=5)
            attach(zone, disk_name, policy_link)

        provider.attach_policy_zonal = blocking_attach  # type: ignore[method-assign]
        reconciler = Reconciler(provider, config)

        task = asyncio.create_task(
            reconciler.run([DiskTarget(f"disk-{i}", "policy-a") for i in range(3)])
        )
        assert await asyncio.to_thread(started.wait, 5)
        reconciler.shutdown()
        release.set()
        result = await task

        assert [o.state for o in result.outcomes] == [
            ReconcileState.ATTACHED,
            ReconcileState.CANCELLED,
            ReconcileState.CANCELLED,
        ]
        assert state.attached_policies("disk-0") == [
            state.policy_link("policy-a", REGION)
        ]
        assert len(provider.attach_calls) == 1

    @pytest.mark.asyncio
    async def test_shutdown_applies_to_one_run(
        self, config: Config, state: MockComputeState, provider: MockComputeProvider
    ) -> None:
        state.add_policy("policy-a", REGION)
        state.add_zonal_disk("disk-1", ZONE)
        reconciler = Reconciler(provider, config)
        targets = [DiskTarget("disk-1", "policy-a")]

        reconciler.shutdown()
        interrupted = await reconciler.run(targets)
        resumed = await reconciler.run(targets)

        assert interrupted.cancelled == 1
        assert [o.state for o in resumed.outcomes] == [ReconcileState.ATTACHED]

    @pytest.mark.asyncio
    async def test_cancelled_target_is_logged(
        self,
        config: Config,
        state: MockComputeState,
        provider: MockComputeProvider,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        state.add_policy("policy-a", REGION)
        state.add_zonal_disk("disk-1", ZONE)
        reconciler = Reconciler(provider, config)
        reconciler.shutdown()

        with caplog.at_level(logging.WARNING, logger="disk_manager.reconciler"):
            await reconciler.run([DiskTarget("disk-1", "policy-a", claim="ns/pvc-1")])

        cancelled = [r for r in caplog.records if getattr(r, "state", None) == "cancelled"]
        assert len(cancelled) == 1
        assert cancelled[0].disk == "disk-1"
        assert cancelled[0].claim == "ns/pvc-1"


class TestRunResult:
    """Tests for RunResult accounting."""

    def test_empty_result_is_success(self) -> None:
        result = RunResult()

        assert result.success is True
        assert result.failed == 0
        assert result.failures == []
