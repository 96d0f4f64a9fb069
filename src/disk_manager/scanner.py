"""Discovery of annotated PersistentVolumeClaims.

Each claim carrying the configured annotation becomes a DiskTarget: the
annotation value names the snapshot policy and the bound PersistentVolume
names the GCE persistent disk. Both in-tree ``gcePersistentDisk`` volumes and
volumes provisioned by the GKE PD CSI driver are supported.
"""

from __future__ import annotations

import logging

from kubernetes import client
from kubernetes.client.rest import ApiException

from .errors import ScanError
from .models import DiskTarget
from .provider import last_path_component

logger = logging.getLogger(__name__)

GCE_PD_CSI_DRIVER = "pd.csi.storage.gke.io"


class StorageScanner:
    """Maps annotated claims to the disks backing them."""

    def __init__(self, core_api: client.CoreV1Api, annotation_key: str) -> None:
        self._core = core_api
        self._annotation_key = annotation_key

    def scan(self) -> list[DiskTarget]:
        """List targets for every claim bearing the annotation.

        Claims that are not bound to a volume yet are skipped.

        Returns:
            Targets in the order the API listed the claims.

        Raises:
            ScanError: If claims cannot be listed, a bound volume cannot be
                read, or a volume is not backed by a GCE persistent disk.
        """
        logger.info(
            "Searching for persistent volume claims",
            extra={"annotation": self._annotation_key},
        )
        try:
            pvcs = self._core.list_persistent_volume_claim_for_all_namespaces()
        except ApiException as e:
            raise ScanError(f"Error retrieving persistent volume claims: {e.reason}") from e

        targets: list[DiskTarget] = []
        for pvc in pvcs.items:
            annotations = pvc.metadata.annotations or {}
            if self._annotation_key not in annotations:
                continue

            claim = f"{pvc.metadata.namespace}/{pvc.metadata.name}"
            policy = (annotations[self._annotation_key] or "").strip()
            if not policy:
                raise ScanError(f"Claim {claim} has an empty {self._annotation_key} annotation")

            volume_name = pvc.spec.volume_name if pvc.spec else None
            if not volume_name:
                logger.warning(
                    "Claim %s is not bound to a volume yet, skipping",
                    claim,
                    extra={"claim": claim, "policy": policy},
                )
                continue

            disk_name = self._disk_for_volume(volume_name)
            logger.info(
                "Found PersistentVolumeClaim %s with disk %s",
                claim,
                disk_name,
                extra={"claim": claim, "disk": disk_name, "policy": policy},
            )
            targets.append(DiskTarget(disk_name=disk_name, policy_name=policy, claim=claim))

        return targets

    def _disk_for_volume(self, volume_name: str) -> str:
        try:
            pv = self._core.read_persistent_volume(volume_name)
        except ApiException as e:
            if e.status == 404:
                raise ScanError(f"Persistent volume not found: {volume_name}") from e
            raise ScanError(f"Error retrieving persistent volume {volume_name}: {e.reason}") from e

        spec = pv.spec
        if spec.gce_persistent_disk is not None and spec.gce_persistent_disk.pd_name:
            return spec.gce_persistent_disk.pd_name

        # CSI handle: projects/<project>/zones/<zone>/disks/<name>
        if spec.csi is not None and spec.csi.driver == GCE_PD_CSI_DRIVER:
            try:
                return last_path_component(spec.csi.volume_handle or "")
            except ValueError as e:
                raise ScanError(
                    f"Persistent volume {volume_name} has malformed volume handle: "
                    f"{spec.csi.volume_handle!r}"
                ) from e

        raise ScanError(f"Persistent volume {volume_name} is not backed by a GCE persistent disk")
