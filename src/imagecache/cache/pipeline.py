# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/cache/pipeline.py
"""
In-host build steps.

These run on whichever machine has the cache disk attached: the local VM in
local mode, or the temporary VM (via ``imagecache worker``) in remote mode.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from imagecache.cache.extractor import SnapshotExtractor
from imagecache.cache.metadata import SnapshotRecord, append_image_metadata
from imagecache.cache.puller import ImagePuller, PullReport
from imagecache.cache.verifier import IntegrityVerifier, VerificationReport
from imagecache.config.models import AuthMechanism
from imagecache.disk.device import resolve_device_path
from imagecache.disk.filesystem import FilesystemPreparer
from imagecache.errors import CommandError, ImageCacheError, MountError
from imagecache.execution.runner import CommandRunner
from imagecache.registry.auth import RegistryAuthenticator
from imagecache.registry.reference import normalize_reference, registry_host
from imagecache.runtime.containerd import ContainerRuntime
from imagecache.utils.polling import Deadline

log = logging.getLogger("imagecache")


class WorkerOperation(str, Enum):
    BUILD = "build"
    VERIFY = "verify"

    @property
    def success_marker(self) -> str:
        return {
            WorkerOperation.BUILD: "Unpacking is completed.",
            WorkerOperation.VERIFY: "Verification is completed.",
        }[self]


READY_MARKER = "Environment setup completed."


@dataclass
class BuildContext:
    device_name: str
    mount_point: str
    runner: CommandRunner
    runtime: ContainerRuntime
    images: List[str] = field(default_factory=list)
    auth_mechanism: AuthMechanism = AuthMechanism.NONE
    store_checksums: bool = True
    token_source: Optional[Callable[[], str]] = None
    resolve_device: Callable[[str], str] = resolve_device_path
    sleep: Callable[[float], None] = time.sleep
    deadline: Deadline = field(default_factory=Deadline.never)


@dataclass
class BuildResult:
    device_path: str
    pull_report: PullReport
    records: List[SnapshotRecord]


def _step(ctx: BuildContext, name: str, fn: Callable[[], object]):
    try:
        ctx.deadline.check(name)
        return fn()
    except ImageCacheError as e:
        raise e.annotate(name)


def _release_mount(preparer: FilesystemPreparer, mount_point: str) -> None:
    try:
        preparer.unmount(mount_point)
    except MountError as e:
        log.warning("%s", e)


def run_build(ctx: BuildContext) -> BuildResult:
    preparer = FilesystemPreparer(ctx.runner)

    device_path = _step(ctx, "resolve-device", lambda: ctx.resolve_device(ctx.device_name))
    log.info("Using device: %s", device_path)
    _step(ctx, "prepare-disk", lambda: preparer.prepare(device_path, ctx.mount_point))

    try:
        authenticator = RegistryAuthenticator(ctx.auth_mechanism, token_source=ctx.token_source)
        hosts = [registry_host(normalize_reference(i)) for i in ctx.images]
        credentials = _step(ctx, "authenticate", lambda: authenticator.resolve_all(hosts))

        puller = ImagePuller(ctx.runtime, deadline=ctx.deadline)
        report = _step(ctx, "pull-images", lambda: puller.pull_all(ctx.images, credentials))
        _step(ctx, "pull-images", lambda: append_image_metadata(ctx.mount_point, ctx.runtime.list_images()))

        extractor = SnapshotExtractor(ctx.runtime, ctx.runner, sleep=ctx.sleep, deadline=ctx.deadline)
        extractor.remove_stale_views()
        records = _step(
            ctx,
            "extract-snapshots",
            lambda: extractor.extract_all(ctx.mount_point, ctx.store_checksums),
        )
    except Exception:
        # a failed build must not leave the cache disk mounted
        _release_mount(preparer, ctx.mount_point)
        raise

    _remove_pulled_images(ctx.runtime, report.pulled)
    try:
        preparer.unmount(ctx.mount_point)
    except MountError as e:
        raise e.annotate("unmount")

    log.info("Unpacking is completed.")
    return BuildResult(device_path=device_path, pull_report=report, records=records)


def run_verify(ctx: BuildContext) -> VerificationReport:
    preparer = FilesystemPreparer(ctx.runner)
    device_path = _step(ctx, "resolve-device", lambda: ctx.resolve_device(ctx.device_name))
    try:
        report = _step(
            ctx,
            "verify-image",
            lambda: IntegrityVerifier(preparer).verify(ctx.mount_point, device_path),
        )
    finally:
        _release_mount(preparer, ctx.mount_point)
    log.info("Verification is completed.")
    return report


def _remove_pulled_images(runtime: ContainerRuntime, references: List[str]) -> None:
    log.info("Cleaning up original pulled images...")
    for ref in references:
        try:
            runtime.remove_image(ref)
        except CommandError as e:
            log.warning("failed to remove image %s: %s", ref, e)


OPERATIONS = {
    WorkerOperation.BUILD: run_build,
    WorkerOperation.VERIFY: run_verify,
}
