"""Snapshot policy reconciliation.

For each target disk the reconciler:
1. Looks up the desired resource policy (cached per run by name)
2. Resolves the disk to exactly one zonal or regional resource
3. Compares the disk's attached policy with the desired one
4. Attaches the policy only when nothing is attached yet

A different policy already on the disk is reported and left alone. Detaching
it is an operator decision. Two or more policies on one disk is reported as
an unexpected state.

Targets are reconciled independently. A failure on one disk is recorded and
the run continues with the rest; the run fails at the end if any disk failed.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .config import Config
from .errors import (
    ConflictingTargets,
    DiskManagerError,
    PolicyConflict,
    PolicyNotFound,
    UnexpectedPolicyState,
)
from .locator import DiskLocator
from .models import DiskTarget, Locality, Policy, Regional, ResolvedDisk, Zonal
from .provider import DiskPolicyProvider

logger = logging.getLogger(__name__)


class ReconcileState(str, Enum):
    """Terminal state of one disk's reconciliation."""

    NO_OP = "no_op"
    ATTACHED = "attached"
    DRY_RUN = "dry_run"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class ReconcileOutcome:
    """Result of reconciling a single disk."""

    target: DiskTarget
    state: ReconcileState = ReconcileState.FAILED
    locality: Locality | None = None
    error: Exception | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.state in (ReconcileState.NO_OP, ReconcileState.ATTACHED, ReconcileState.DRY_RUN)


@dataclass
class RunResult:
    """Outcomes of one pass over all targets, in target order."""

    outcomes: list[ReconcileOutcome] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.state == ReconcileState.FAILED)

    @property
    def cancelled(self) -> int:
        return sum(1 for o in self.outcomes if o.state == ReconcileState.CANCELLED)

    @property
    def attached(self) -> int:
        return sum(1 for o in self.outcomes if o.state == ReconcileState.ATTACHED)

    @property
    def success(self) -> bool:
        """True only if every target was attempted and none failed."""
        return self.failed == 0 and self.cancelled == 0

    @property
    def failures(self) -> list[ReconcileOutcome]:
        return [o for o in self.outcomes if o.state == ReconcileState.FAILED]


class Reconciler:
    """Attaches snapshot policies to disks, at most once per disk per run."""

    def __init__(self, provider: DiskPolicyProvider, config: Config) -> None:
        """Initialize reconciler.

        Args:
            provider: Cloud disk/policy provider bound to the configured project.
            config: Validated configuration; region is used for policy lookups.
        """
        self._provider = provider
        self._config = config
        self._locator = DiskLocator(provider)

        self._policy_cache: dict[str, Policy] = {}
        self._cache_lock = threading.Lock()

        self._shutdown_event = asyncio.Event()

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    def shutdown(self) -> None:
        """Stop starting new reconciliations. In-flight ones run to completion.

        Applies to the run in progress, or to the next run if none is active.
        """
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def run(self, targets: Sequence[DiskTarget]) -> RunResult:
        """Reconcile every target.

        Up to ``config.max_workers`` disks are reconciled at once, each in a
        worker thread. Targets naming the same disk with different policies
        fail without any cloud call.

        Returns:
            RunResult with one outcome per distinct target, in input order.
        """
        with self._cache_lock:
            self._policy_cache.clear()

        unique_targets, conflicting = _group_targets(targets)
        semaphore = asyncio.Semaphore(self._config.max_workers)

        logger.info(
            "Reconciling snapshot policies",
            extra={
                "target_count": len(unique_targets),
                "max_workers": self._config.max_workers,
                "dry_run": self._config.dry_run,
            },
        )

        async def worker(target: DiskTarget) -> ReconcileOutcome:
            if target.disk_name in conflicting:
                outcome = ReconcileOutcome(target=target)
                outcome.error = ConflictingTargets(
                    target.disk_name, conflicting[target.disk_name]
                )
                outcome.end_time = datetime.now(UTC)
                self._log_outcome(outcome)
                return outcome

            async with semaphore:
                if self._shutdown_event.is_set():
                    outcome = ReconcileOutcome(target=target, state=ReconcileState.CANCELLED)
                    outcome.end_time = datetime.now(UTC)
                    self._log_outcome(outcome)
                    return outcome
                return await asyncio.to_thread(self.reconcile, target)

        try:
            outcomes = await asyncio.gather(*(worker(t) for t in unique_targets))
        finally:
            # A shutdown stops this run only
            self._shutdown_event.clear()
        result = RunResult(outcomes=list(outcomes))
        self._log_run(result)
        return result

    def reconcile(self, target: DiskTarget) -> ReconcileOutcome:
        """Reconcile a single disk. Never raises; errors land on the outcome."""
        outcome = ReconcileOutcome(target=target)
        try:
            self._reconcile_disk(target, outcome)
        except DiskManagerError as e:
            outcome.state = ReconcileState.FAILED
            outcome.error = e
        except Exception as e:
            logger.exception(
                "Unexpected error reconciling disk",
                extra={"disk": target.disk_name, "policy": target.policy_name},
            )
            outcome.state = ReconcileState.FAILED
            outcome.error = e
        outcome.end_time = datetime.now(UTC)
        self._log_outcome(outcome)
        return outcome

    def _reconcile_disk(self, target: DiskTarget, outcome: ReconcileOutcome) -> None:
        policy = self._get_policy(target.policy_name)

        disk = self._locator.locate(target.disk_name)
        outcome.locality = disk.locality

        attached = disk.resource_policies
        if len(attached) > 1:
            raise UnexpectedPolicyState(disk.name, attached)
        if len(attached) == 1:
            if attached[0] == policy.self_link:
                logger.info(
                    "Policy %s is already attached to disk %s, nothing to do",
                    policy.name,
                    disk.name,
                    extra={"disk": disk.name, "policy": policy.name},
                )
                outcome.state = ReconcileState.NO_OP
                return
            raise PolicyConflict(disk.name, attached[0], policy.self_link)

        if self._config.dry_run:
            logger.info(
                "Dry run: would attach policy %s to disk %s",
                policy.name,
                disk.name,
                extra={"disk": disk.name, "policy": policy.name, "scope": disk.locality.scope},
            )
            outcome.state = ReconcileState.DRY_RUN
            return

        self._attach(disk, policy)
        outcome.state = ReconcileState.ATTACHED

    def _attach(self, disk: ResolvedDisk, policy: Policy) -> None:
        match disk.locality:
            case Zonal(zone=zone):
                self._provider.attach_policy_zonal(zone, disk.name, policy.self_link)
            case Regional(region=region):
                self._provider.attach_policy_regional(region, disk.name, policy.self_link)

        logger.info(
            "Added policy %s to disk %s",
            policy.name,
            disk.name,
            extra={"disk": disk.name, "policy": policy.name, "scope": disk.locality.scope},
        )

    def _get_policy(self, name: str) -> Policy:
        with self._cache_lock:
            cached = self._policy_cache.get(name)
        if cached is not None:
            return cached

        policy = self._provider.get_policy(self._config.region, name)
        if policy is None:
            raise PolicyNotFound(name, self._config.region)

        with self._cache_lock:
            return self._policy_cache.setdefault(name, policy)

    def _log_outcome(self, outcome: ReconcileOutcome) -> None:
        extra: dict[str, Any] = {
            "disk": outcome.target.disk_name,
            "policy": outcome.target.policy_name,
            "state": outcome.state.value,
            "duration_seconds": outcome.duration_seconds,
        }
        if outcome.target.claim is not None:
            extra["claim"] = outcome.target.claim
        if outcome.locality is not None:
            extra["scope"] = outcome.locality.scope

        if outcome.error is not None:
            extra["error_type"] = type(outcome.error).__name__
            extra["error"] = str(outcome.error)
            logger.error(
                "Error adding policy %s to disk %s: %s",
                outcome.target.policy_name,
                outcome.target.disk_name,
                outcome.error,
                extra=extra,
            )
        elif outcome.state == ReconcileState.CANCELLED:
            logger.warning(
                "Skipped disk %s, shutdown in progress", outcome.target.disk_name, extra=extra
            )
        else:
            logger.debug("Reconciliation result", extra=extra)

    def _log_run(self, result: RunResult) -> None:
        extra = {
            "targets": len(result.outcomes),
            "attached": result.attached,
            "failed": result.failed,
            "cancelled": result.cancelled,
        }
        if result.failed:
            logger.error(
                "Encountered %d error(s) adding snapshot policies to disks",
                result.failed,
                extra=extra,
            )
        elif result.cancelled:
            logger.warning("Run interrupted before all disks were reconciled", extra=extra)
        else:
            logger.info("Finished updating snapshot policies", extra=extra)


def _group_targets(
    targets: Sequence[DiskTarget],
) -> tuple[list[DiskTarget], dict[str, list[str]]]:
    """Collapse duplicate targets and find disks with conflicting policies.

    Returns:
        Tuple of (targets with exact duplicates removed, disk name to the
        distinct policies requested for it, for disks requested with more
        than one policy).
    """
    policies_by_disk: dict[str, list[str]] = {}
    unique: list[DiskTarget] = []
    seen: set[tuple[str, str]] = set()

    for target in targets:
        key = (target.disk_name, target.policy_name)
        if key in seen:
            logger.info(
                "Disk %s is targeted more than once with policy %s, reconciling once",
                target.disk_name,
                target.policy_name,
                extra={"disk": target.disk_name, "policy": target.policy_name},
            )
            continue
        seen.add(key)
        unique.append(target)
        policies_by_disk.setdefault(target.disk_name, []).append(target.policy_name)

    conflicting = {disk: p for disk, p in policies_by_disk.items() if len(p) > 1}
    return unique, conflicting
