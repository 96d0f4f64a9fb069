"""Construction of the Kubernetes and Compute Engine clients.

Inside a cluster the pod's service account is used for Kubernetes. Outside,
``--local`` runs pick up a kubeconfig. Compute Engine always authenticates
with Application Default Credentials (Workload Identity in GKE).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import google.auth
from google.auth.exceptions import DefaultCredentialsError
from kubernetes import client
from kubernetes import config as k8s_config
from kubernetes.config.config_exception import ConfigException

from .config import Config
from .provider import ComputeProvider, DiskPolicyProvider

logger = logging.getLogger(__name__)

COMPUTE_SCOPE = "https://www.googleapis.com/auth/compute"


class ClientBuildError(Exception):
    """Raised when a Kubernetes or GCP client cannot be constructed."""

    pass


@dataclass
class Clients:
    """Kubernetes core API and Compute Engine provider used by a run."""

    k8s: client.CoreV1Api
    gcp: DiskPolicyProvider


def default_kubeconfig() -> Path | None:
    """Return ~/.kube/config if a home directory exists."""
    try:
        return Path.home() / ".kube" / "config"
    except RuntimeError:
        return None


def build_k8s_client(*, local: bool, kubeconfig: Path | None = None) -> client.CoreV1Api:
    """Build the Kubernetes core API client.

    Args:
        local: Use a kubeconfig file instead of in-cluster configuration.
        kubeconfig: Kubeconfig path for local runs (default: ~/.kube/config).

    Raises:
        ClientBuildError: If configuration cannot be loaded.
    """
    try:
        if local:
            path = kubeconfig or default_kubeconfig()
            logger.info("Using local kubeconfig", extra={"kubeconfig": str(path)})
            k8s_config.load_kube_config(config_file=str(path) if path else None)
        else:
            k8s_config.load_incluster_config()
    except (ConfigException, OSError) as e:
        raise ClientBuildError(f"Error building k8s config: {e}") from e
    return client.CoreV1Api()


def build_gcp_provider(config: Config) -> ComputeProvider:
    """Build the Compute Engine provider from Application Default Credentials.

    Raises:
        ClientBuildError: If no default credentials are available.
    """
    try:
        credentials, _ = google.auth.default(scopes=[COMPUTE_SCOPE])
    except DefaultCredentialsError as e:
        raise ClientBuildError(f"Error authenticating to GCP: {e}") from e

    return ComputeProvider(
        config.google_project,
        credentials=credentials,
        timeout_seconds=config.request_timeout_seconds,
    )


def build_clients(
    config: Config, *, local: bool = False, kubeconfig: Path | None = None
) -> Clients:
    """Build both clients used by a disk-manager run."""
    logger.info("Building clients", extra={"local": local})
    return Clients(
        k8s=build_k8s_client(local=local, kubeconfig=kubeconfig),
        gcp=build_gcp_provider(config),
    )
