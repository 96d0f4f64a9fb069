"""disk-manager CLI.

Usage:
    disk-manager run                      # Attach snapshot policies (in cluster)
    disk-manager run --local --dry-run    # Compare only, using ~/.kube/config
    disk-manager targets --local          # List annotated claims and their disks
    disk-manager inspect DISK             # Show a disk's locality and policies
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from .clients import ClientBuildError, build_gcp_provider, build_k8s_client, default_kubeconfig
from .config import DEFAULT_CONFIG_FILE, Config, ConfigurationError
from .errors import DiskManagerError
from .locator import DiskLocator
from .main import main, setup_logging
from .scanner import StorageScanner

config_file_option = click.option(
    "--config-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_FILE,
    show_default=True,
    help="Path to yaml file with disk-manager config",
)
local_option = click.option(
    "--local",
    is_flag=True,
    help="Running outside the cluster; use the local kubeconfig",
)
kubeconfig_option = click.option(
    "--kubeconfig",
    type=click.Path(dir_okay=False, path_type=Path),
    default=default_kubeconfig,
    help="Absolute path to kubeconfig (only used with --local)",
)


def _load_config(config_file: Path) -> Config:
    try:
        return Config.from_file(config_file)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version="0.1.0", prog_name="disk-manager")
def cli() -> None:
    """Attach GCE snapshot policies to disks backing annotated PVCs."""
    pass


@cli.command()
@config_file_option
@local_option
@kubeconfig_option
@click.option(
    "--dry-run",
    is_flag=True,
    help="Compare only, never attach (env: DISK_MANAGER_DRY_RUN)",
)
@click.option(
    "--workers",
    "max_workers",
    type=click.IntRange(1, 32),
    default=None,
    help="Disks reconciled concurrently (default: 1)",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default="json",
    show_default=True,
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def run(
    config_file: Path,
    local: bool,
    kubeconfig: Path | None,
    dry_run: bool,
    max_workers: int | None,
    log_format: str,
    verbose: bool,
) -> None:
    """Attach snapshot policies to every annotated disk."""
    setup_logging(json_format=log_format == "json", verbose=verbose)
    exit_code = asyncio.run(
        main(
            config_file,
            local=local,
            kubeconfig=kubeconfig,
            # an unset flag defers to the environment
            dry_run=dry_run or None,
            max_workers=max_workers,
        )
    )
    sys.exit(exit_code)


@cli.command()
@config_file_option
@local_option
@kubeconfig_option
def targets(config_file: Path, local: bool, kubeconfig: Path | None) -> None:
    """List annotated claims and the disks and policies they map to."""
    config = _load_config(config_file)
    try:
        core = build_k8s_client(local=local, kubeconfig=kubeconfig)
        found = StorageScanner(core, config.target_annotation).scan()
    except (ClientBuildError, DiskManagerError) as e:
        raise click.ClickException(str(e)) from e

    if not found:
        click.echo(f"No claims annotated with {config.target_annotation}")
        return
    for target in found:
        click.echo(f"{target.claim}\t{target.disk_name}\t{target.policy_name}")


@cli.command()
@config_file_option
@click.argument("disk_name")
def inspect(config_file: Path, disk_name: str) -> None:
    """Show where DISK lives and which policies are attached to it.

    Resolves the disk the same way a run does, across every zone and region
    of the configured project.
    """
    config = _load_config(config_file)
    try:
        disk = DiskLocator(build_gcp_provider(config)).locate(disk_name)
    except (ClientBuildError, DiskManagerError) as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"disk:     {disk.name}")
    click.echo(f"scope:    {disk.locality.scope}")
    if disk.resource_policies:
        for link in disk.resource_policies:
            click.echo(f"policy:   {link}")
    else:
        click.echo("policy:   (none)")


if __name__ == "__main__":
    cli()
