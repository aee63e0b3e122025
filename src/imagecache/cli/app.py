# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/cli/app.py
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from imagecache import __version__
from imagecache.cache.pipeline import OPERATIONS, BuildContext, WorkerOperation
from imagecache.cloud.gce import GceProvider
from imagecache.cloud.metadata import MetadataClient
from imagecache.cloud.provider import CloudProvider, Instance
from imagecache.config.loader import load_config
from imagecache.config.models import AuthMechanism, BuildConfig
from imagecache.config.templates import TEMPLATES, render_template, write_template
from imagecache.errors import ImageCacheError
from imagecache.execution.runner import CommandRunner
from imagecache.logging.log import init_logging
from imagecache.observers.dispatcher import EventBus
from imagecache.observers.jsonfile import JsonFileObserver
from imagecache.observers.logger import LoggerObserver
from imagecache.remote.dispatch import MetadataDispatcher, SSHDispatcher
from imagecache.runtime.containerd import CtrRuntime
from imagecache.utils.polling import Deadline
from imagecache.utils.ssh_runner import open_ssh
from imagecache.workflow.executors import Executor, LocalExecutor, RemoteExecutor
from imagecache.workflow.orchestrator import BuildOrchestrator, vm_name


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="Build GKE secondary boot disk images preloaded with container images")
worker_app = typer.Typer(help="Steps that run on the build host (used by remote mode)")
app.add_typer(worker_app, name="worker")


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def parse_labels(values: Optional[List[str]]) -> Dict[str, str]:
    labels: Dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"labels must look like key=value, got {item!r}")
        labels[key.strip()] = value.strip()
    return labels


def cli_overrides(
    *,
    mode: Optional[str],
    project_name: Optional[str],
    disk_image_name: Optional[str],
    container_images: Optional[List[str]],
    zone: Optional[str],
    disk_size: Optional[int],
    disk_type: Optional[str],
    disk_family: Optional[str],
    disk_labels: Dict[str, str],
    timeout: Optional[str],
    image_pull_auth: Optional[str],
    machine_type: Optional[str],
    preemptible: Optional[bool],
    network: Optional[str],
    subnet: Optional[str],
    service_account: Optional[str],
    job_name: Optional[str],
    verify: Optional[bool],
    verbose: bool,
    quiet: bool,
    events_file: Optional[str],
) -> Dict[str, Any]:
    """Map command-line flags onto the config layout; unset flags are dropped by the merge."""
    return {
        "execution": {"mode": mode, "zone": zone, "timeout": timeout, "job_name": job_name},
        "project": {"name": project_name},
        "disk": {
            "name": disk_image_name,
            "size_gb": disk_size,
            "disk_type": disk_type,
            "family": disk_family,
            "labels": disk_labels,
        },
        "images": list(container_images or []),
        "auth": {"image_pull_auth": image_pull_auth, "service_account": service_account},
        "remote": {
            "machine_type": machine_type,
            "preemptible": preemptible,
            "network": network,
            "subnet": subnet,
        },
        "verification": {"enabled": verify},
        "logging": {"verbose": verbose or None, "quiet": quiet or None, "events_file": events_file},
    }


def build_executor(cfg: BuildConfig, provider: CloudProvider, metadata: MetadataClient) -> Executor:
    if cfg.is_local:
        def context(deadline: Deadline) -> BuildContext:
            return BuildContext(
                device_name=cfg.disk.device_name,
                mount_point=cfg.disk.mount_point,
                runner=CommandRunner(label="local", deadline=deadline),
                runtime=CtrRuntime(CommandRunner(label="ctr", deadline=deadline)),
                images=list(cfg.images),
                auth_mechanism=cfg.auth.image_pull_auth,
                store_checksums=cfg.verification.store_checksums,
                token_source=lambda: metadata.access_token(cfg.auth.service_account),
                deadline=deadline,
            )

        return LocalExecutor(context)

    name = vm_name(cfg)
    if cfg.remote.dispatch == "ssh":
        def dispatcher(instance: Instance):
            return SSHDispatcher(lambda: open_ssh(
                instance.external_ip or instance.internal_ip,
                username=cfg.remote.ssh_username,
                pkey_path=cfg.remote.ssh_private_key_path,
            ))
    else:
        def dispatcher(instance: Instance):
            return MetadataDispatcher(provider, instance.name, cfg.zone)

    return RemoteExecutor(cfg, provider, name, dispatcher)


def fail(exc: ImageCacheError, prefix: str = "build failed") -> None:
    step = exc.step or "startup"
    typer.secho(f"{prefix} during {step}: {exc}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


# ------------------------------------------------------------------------------
# build
# ------------------------------------------------------------------------------

@app.command()
def build(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML build config"),
    local: bool = typer.Option(False, "--local", "-L", help="Build on the current GCE VM"),
    remote: bool = typer.Option(False, "--remote", "-R", help="Build on a temporary GCE VM"),
    project_name: Optional[str] = typer.Option(None, "--project-name"),
    disk_image_name: Optional[str] = typer.Option(None, "--disk-image-name"),
    container_image: Optional[List[str]] = typer.Option(None, "--container-image", help="Repeatable"),
    zone: Optional[str] = typer.Option(None, "--zone"),
    disk_size: Optional[int] = typer.Option(None, "--disk-size", help="GB, 10-1000"),
    disk_type: Optional[str] = typer.Option(None, "--disk-type"),
    disk_family: Optional[str] = typer.Option(None, "--disk-family"),
    disk_label: Optional[List[str]] = typer.Option(None, "--disk-label", help="key=value, repeatable"),
    timeout: Optional[str] = typer.Option(None, "--timeout", help="e.g. 20m, 1h"),
    image_pull_auth: Optional[str] = typer.Option(None, "--image-pull-auth"),
    machine_type: Optional[str] = typer.Option(None, "--machine-type"),
    preemptible: Optional[bool] = typer.Option(None, "--preemptible/--no-preemptible"),
    network: Optional[str] = typer.Option(None, "--network"),
    subnet: Optional[str] = typer.Option(None, "--subnet"),
    service_account: Optional[str] = typer.Option(None, "--service-account"),
    job_name: Optional[str] = typer.Option(None, "--job-name"),
    no_verify: bool = typer.Option(False, "--no-verify", help="Skip image verification"),
    events_file: Optional[str] = typer.Option(None, "--events-file", help="Append lifecycle events as JSON lines"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    quiet: bool = typer.Option(False, "--quiet", "-q"),
):
    """Build a disk image cache."""
    if local and remote:
        raise typer.BadParameter("--local and --remote are mutually exclusive")
    mode = "local" if local else "remote" if remote else None

    overrides = cli_overrides(
        mode=mode,
        project_name=project_name,
        disk_image_name=disk_image_name,
        container_images=container_image,
        zone=zone,
        disk_size=disk_size,
        disk_type=disk_type,
        disk_family=disk_family,
        disk_labels=parse_labels(disk_label),
        timeout=timeout,
        image_pull_auth=image_pull_auth,
        machine_type=machine_type,
        preemptible=preemptible,
        network=network,
        subnet=subnet,
        service_account=service_account,
        job_name=job_name,
        verify=False if no_verify else None,
        verbose=verbose,
        quiet=quiet,
        events_file=events_file,
    )

    try:
        cfg = load_config(config, overrides)
    except ImageCacheError as e:
        fail(e.annotate("validating"))

    logger, run_id, log_path = init_logging(
        base_dir=Path(cfg.logging.log_dir) if cfg.logging.log_dir else None,
        verbose=cfg.logging.verbose,
        quiet=cfg.logging.quiet,
    )

    if not cfg.logging.quiet:
        typer.echo("")
        typer.secho("Image Cache Build Started", bold=True)
        typer.echo(f"  Run ID   : {run_id}")
        typer.echo(f"  Logs     : {log_path}")
        typer.echo("")

    observers = [LoggerObserver(logger)]
    if cfg.logging.events_file:
        observers.append(JsonFileObserver(cfg.logging.events_file))
    bus = EventBus(observers=observers)

    metadata = MetadataClient()
    host_instance = None
    try:
        if cfg.is_local:
            host_instance = metadata.instance_name()
            if not cfg.zone:
                detected = metadata.zone()
                logger.info("Detected zone from metadata server: %s", detected)
                cfg = cfg.model_copy(update={"execution": cfg.execution.model_copy(update={"zone": detected})})

        provider = GceProvider(cfg.project.name, credentials_file=cfg.project.credentials_file)
        executor = build_executor(cfg, provider, metadata)
        report = BuildOrchestrator(
            cfg,
            provider,
            executor,
            bus=bus,
            run_id=run_id,
            host_instance=host_instance,
        ).run()
    except ImageCacheError as e:
        fail(e)

    typer.secho(f"Image cache {cfg.disk.name} is ready ({report.summary()})", fg=typer.colors.GREEN)


# ------------------------------------------------------------------------------
# worker (build host side)
# ------------------------------------------------------------------------------

def _worker_context(
    device_name: str,
    mount_point: str,
    images: Optional[List[str]] = None,
    auth: AuthMechanism = AuthMechanism.NONE,
    service_account: str = "default",
    store_checksums: bool = True,
) -> BuildContext:
    metadata = MetadataClient()
    return BuildContext(
        device_name=device_name,
        mount_point=mount_point,
        runner=CommandRunner(label="worker"),
        runtime=CtrRuntime(CommandRunner(label="ctr")),
        images=list(images or []),
        auth_mechanism=auth,
        store_checksums=store_checksums,
        token_source=lambda: metadata.access_token(service_account),
    )


def _run_worker(operation: WorkerOperation, ctx: BuildContext) -> None:
    try:
        OPERATIONS[operation](ctx)
    except ImageCacheError as e:
        typer.echo(f"ERROR: {operation.value} failed during {e.step or operation.value}: {e}")
        raise typer.Exit(code=1)


@worker_app.command("build")
def worker_build(
    device_name: str = typer.Option("secondary-disk-image-disk", "--device-name"),
    mount_point: str = typer.Option("/mnt/disks/container_layers", "--mount-point"),
    image: List[str] = typer.Option(..., "--image", help="Repeatable"),
    image_pull_auth: str = typer.Option("None", "--image-pull-auth"),
    service_account: str = typer.Option("default", "--service-account"),
    checksums: bool = typer.Option(True, "--checksums/--no-checksums"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Format the attached disk, pull images and extract their layers onto it."""
    init_logging(verbose=verbose)
    try:
        auth = AuthMechanism.parse(image_pull_auth)
    except ValueError as e:
        raise typer.BadParameter(str(e))
    ctx = _worker_context(device_name, mount_point, image, auth, service_account, checksums)
    _run_worker(WorkerOperation.BUILD, ctx)


@worker_app.command("verify")
def worker_verify(
    device_name: str = typer.Option("secondary-disk-image-disk", "--device-name"),
    mount_point: str = typer.Option("/mnt/disks/container_layers", "--mount-point"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Recompute and compare every stored snapshot checksum."""
    init_logging(verbose=verbose)
    _run_worker(WorkerOperation.VERIFY, _worker_context(device_name, mount_point))


# ------------------------------------------------------------------------------
# config helpers
# ------------------------------------------------------------------------------

@app.command("validate-config")
def validate_config(config: Path = typer.Argument(..., help="YAML build config")):
    """Validate a config file without creating anything."""
    try:
        cfg = load_config(config)
    except ImageCacheError as e:
        typer.secho(f"invalid config {config}: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(
        f"{config}: OK ({cfg.execution.mode.value} mode, {len(cfg.images)} images, "
        f"disk image {cfg.disk.name})"
    )


@app.command("generate-config")
def generate_config(
    kind: str = typer.Argument("basic", help=f"One of: {', '.join(TEMPLATES)}"),
    output: Optional[Path] = typer.Option(None, "--output", "-o"),
):
    """Print or write a config template."""
    try:
        if output is None:
            typer.echo(render_template(kind), nl=False)
            return
        path = write_template(kind, output)
    except ImageCacheError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Wrote {kind} config template to {path}")


@app.command()
def version():
    """Show the version."""
    typer.echo(f"gke-image-cache-builder {__version__}")


if __name__ == "__main__":
    app()
