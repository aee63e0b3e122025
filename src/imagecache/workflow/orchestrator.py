# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/workflow/orchestrator.py
from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from imagecache.cache.pipeline import WorkerOperation
from imagecache.cloud.provider import CloudProvider, DiskRequest, ImageRequest, VMRequest
from imagecache.config.models import BuildConfig
from imagecache.errors import (
    ExecutionError,
    ImageCacheError,
    RemoteExecutionError,
    ValidationError,
    VerificationError,
)
from imagecache.observers.dispatcher import EventBus
from imagecache.observers.events import (
    BuildStarted,
    BuildSummary,
    CleanupResult,
    RemoteStatusChanged,
    ResourceCreated,
    ResourceDeleted,
    StateEntered,
    StepFailed,
    StepSucceeded,
    VerificationResult,
    new_ctx,
)
from imagecache.registry.reference import validate_reference
from imagecache.remote.startup import render_startup_script
from imagecache.remote.status import RemoteStatus
from imagecache.utils.polling import Deadline
from .executors import Executor

log = logging.getLogger("imagecache")

LOCAL_PREREQUISITES = ("mount", "umount", "mkfs.ext4", "ctr")
SOURCE_LABEL = ("imagecache-source", "gke-image-cache-builder")
VERIFIED_LABEL = "imagecache-verified"
CLEANUP_TIMEOUT_SECONDS = 600


class BuildState(str, Enum):
    VALIDATING = "validating"
    PREPARING_ENVIRONMENT = "preparing-environment"
    LOCAL_EXECUTION = "local-execution"
    REMOTE_EXECUTION = "remote-execution"
    CREATING_IMAGE = "creating-image"
    VERIFYING_IMAGE = "verifying-image"
    CLEANUP = "cleanup"
    DONE = "done"


@dataclass
class WorkflowResources:
    disk: Optional[str] = None
    vm: Optional[str] = None
    attached_to: Optional[str] = None

    @property
    def empty(self) -> bool:
        return self.disk is None and self.vm is None


@dataclass
class BuildReport:
    image: str
    state: BuildState = BuildState.VALIDATING
    resources: WorkflowResources = field(default_factory=WorkflowResources)
    image_created: bool = False
    verified: Optional[bool] = None
    cleanup_errors: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def summary(self) -> str:
        status = "OK" if self.ok else f"FAILED during {self.failed_step}"
        verified = {None: "skipped", True: "yes", False: "no"}[self.verified]
        return f"image={self.image} status={status} verified={verified} cleanup_errors={len(self.cleanup_errors)}"


def vm_name(cfg: BuildConfig) -> str:
    return cfg.execution.job_name


class BuildOrchestrator:
    """
    Runs one build: validate, provision, execute, create the image, verify,
    and always clean up.

    Whatever fails, the caller gets the originating error annotated with the
    state it failed in; cleanup problems are only logged and reported.
    """

    def __init__(
        self,
        cfg: BuildConfig,
        provider: CloudProvider,
        executor: Executor,
        *,
        bus: Optional[EventBus] = None,
        run_id: Optional[str] = None,
        host_instance: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        self.cfg = cfg
        self.provider = provider
        self.executor = executor
        self.bus = bus or EventBus()
        self.host_instance = host_instance
        self.sleep = sleep
        self.clock = clock
        self.which = which
        self.run_ctx = new_ctx(project=cfg.project.name, image=cfg.disk.name, run_id=run_id)
        self.report = BuildReport(image=cfg.disk.name)
        self.cleanup_runs = 0

    @property
    def zone(self) -> str:
        return self.cfg.zone

    @property
    def resources(self) -> WorkflowResources:
        return self.report.resources

    # ------------------------------------------------------------------
    # driver
    # ------------------------------------------------------------------
    def run(self) -> BuildReport:
        cfg = self.cfg
        started = self.clock()
        deadline = Deadline(cfg.execution.timeout_seconds, clock=self.clock)
        self.bus.emit(BuildStarted(
            mode=cfg.execution.mode.value, zone=self.zone, images=list(cfg.images), **self.run_ctx
        ))
        execution_state = BuildState.LOCAL_EXECUTION if cfg.is_local else BuildState.REMOTE_EXECUTION

        steps = [
            (BuildState.VALIDATING, self._validate),
            (BuildState.PREPARING_ENVIRONMENT, self._prepare_environment),
            (execution_state, self._execute),
            (BuildState.CREATING_IMAGE, self._create_image),
        ]
        if cfg.verification.enabled:
            steps.append((BuildState.VERIFYING_IMAGE, self._verify_image))

        try:
            for state, step in steps:
                self._enter(state)
                t0 = self.clock()
                step(deadline)
                self.bus.emit(StepSucceeded(
                    step=state.value, duration_ms=int((self.clock() - t0) * 1000), **self.run_ctx
                ))
        except Exception as e:
            error = self._annotate(e, self.report.state)
            self.report.failed_step = error.step
            self.report.error = str(error)
            log.error("Build failed during %s: %s", error.step, error)
            self.bus.emit(StepFailed(step=error.step, error=str(error), **self.run_ctx))
            self._cleanup(failed=True)
            self._summary(started)
            if error is e:
                raise
            raise error from e

        self._cleanup(failed=False)
        self._enter(BuildState.DONE)
        self._summary(started)
        log.info("Image cache %s built successfully", cfg.disk.name)
        return self.report

    def _enter(self, state: BuildState) -> None:
        self.report.state = state
        log.debug("entering state %s", state.value)
        self.bus.emit(StateEntered(state=state.value, **self.run_ctx))

    @staticmethod
    def _annotate(exc: Exception, state: BuildState) -> ImageCacheError:
        if isinstance(exc, ImageCacheError):
            return exc.annotate(state.value)
        return ExecutionError(f"{type(exc).__name__}: {exc}", step=state.value)

    def _summary(self, started: float) -> None:
        r = self.report
        self.bus.emit(BuildSummary(
            status="OK" if r.ok else "FAILED",
            duration_s=int(self.clock() - started),
            failed_step=r.failed_step,
            error=r.error,
            **self.run_ctx,
        ))

    # ------------------------------------------------------------------
    # states
    # ------------------------------------------------------------------
    def _validate(self, deadline: Deadline) -> None:
        cfg = self.cfg
        log.info("Validating build of %s (%d images, %s mode)", cfg.disk.name, len(cfg.images), cfg.execution.mode.value)
        self.provider.check_permissions(self.zone)

        if cfg.is_local:
            missing = [tool for tool in LOCAL_PREREQUISITES if self.which(tool) is None]
            if missing:
                raise ValidationError(f"local mode requires these tools on PATH: {', '.join(missing)}")
            if not self.host_instance:
                raise ValidationError("local mode requires the name of the current GCE instance")

        for image in cfg.images:
            validate_reference(image)

        if self.provider.get_image(cfg.disk.name) is not None:
            raise ValidationError(f"disk image {cfg.disk.name} already exists in project {cfg.project.name}")

    def _prepare_environment(self, deadline: Deadline) -> None:
        cfg = self.cfg
        disk_name = cfg.disk.working_disk_name

        # the disk goes first; it usually takes longer than the VM
        self.provider.create_disk(
            DiskRequest(
                name=disk_name,
                zone=self.zone,
                size_gb=cfg.disk.size_gb,
                disk_type=cfg.disk.disk_type,
                labels=dict(cfg.disk.labels),
            ),
            deadline=deadline,
        )
        self.resources.disk = disk_name
        self.bus.emit(ResourceCreated(kind="disk", name=disk_name, **self.run_ctx))

        if cfg.is_remote:
            name = vm_name(cfg)
            self.provider.create_vm(self._vm_request(name), deadline=deadline)
            self.resources.vm = name
            self.bus.emit(ResourceCreated(kind="vm", name=name, **self.run_ctx))
            host = name
        else:
            host = self.host_instance

        self._attach(host, deadline)

    def _vm_request(self, name: str) -> VMRequest:
        cfg = self.cfg
        ssh_keys = None
        if cfg.remote.ssh_public_key:
            key = cfg.remote.ssh_public_key.strip()
            ssh_keys = key if ":" in key.split(" ", 1)[0] else f"{cfg.remote.ssh_username}:{key}"
        return VMRequest(
            name=name,
            zone=self.zone,
            machine_type=cfg.remote.machine_type,
            network=cfg.remote.network,
            subnet=cfg.remote.subnet,
            service_account=cfg.auth.service_account,
            startup_script=render_startup_script(cfg),
            boot_image=cfg.remote.boot_image,
            boot_disk_size_gb=cfg.remote.boot_disk_size_gb,
            preemptible=cfg.remote.preemptible,
            ssh_keys=ssh_keys,
        )

    def _attach(self, instance: str, deadline: Deadline) -> None:
        self.provider.attach_disk(
            self.resources.disk, instance, self.zone, self.cfg.disk.device_name, deadline=deadline
        )
        self.resources.attached_to = instance

    def _detach(self, deadline: Deadline) -> None:
        instance = self.resources.attached_to
        if instance is None:
            return
        self.provider.detach_disk(instance, self.zone, self.cfg.disk.device_name, deadline=deadline)
        self.resources.attached_to = None

    def _on_remote_status(self, operation: str, status: RemoteStatus) -> None:
        instance = self.resources.vm or self.host_instance or ""
        self.bus.emit(RemoteStatusChanged(
            instance=instance, operation=operation, status=status.value, **self.run_ctx
        ))

    def _execute(self, deadline: Deadline) -> None:
        self.executor.run(WorkerOperation.BUILD, deadline=deadline, on_status=self._on_remote_status)
        self._detach(deadline)

    def _create_image(self, deadline: Deadline) -> None:
        cfg = self.cfg
        labels = dict(cfg.disk.labels)
        labels[SOURCE_LABEL[0]] = SOURCE_LABEL[1]
        self.provider.create_image(
            ImageRequest(
                name=cfg.disk.name,
                source_disk=self.resources.disk,
                zone=self.zone,
                family=cfg.disk.family,
                description=f"Image cache containing {len(cfg.images)} container images",
                labels=labels,
            ),
            deadline=deadline,
        )
        self.report.image_created = True
        self.bus.emit(ResourceCreated(kind="image", name=cfg.disk.name, **self.run_ctx))

    def _verify_image(self, deadline: Deadline) -> None:
        name = self.cfg.disk.name
        image = self.provider.get_image(name)
        if image is None or image.status != "READY":
            status = image.status if image else "MISSING"
            raise VerificationError(f"image {name} is not ready, status: {status}")

        host = self.resources.vm or self.host_instance
        self._attach(host, deadline)
        try:
            result = self.executor.run(WorkerOperation.VERIFY, deadline=deadline, on_status=self._on_remote_status)
        except (VerificationError, RemoteExecutionError) as e:
            self.report.verified = False
            report = getattr(e, "report", None)
            self.bus.emit(VerificationResult(
                ok=False,
                verified=len(report.verified) if report else 0,
                mismatched=list(report.mismatched) if report else [],
                unreadable=list(report.unreadable) if report else [],
                error=str(e),
                **self.run_ctx,
            ))
            self._apply_verification_policy(deadline)
            raise
        self._detach(deadline)

        self.report.verified = True
        self.bus.emit(VerificationResult(
            ok=True, verified=len(getattr(result, "verified", None) or []), **self.run_ctx
        ))
        self._label_image({VERIFIED_LABEL: "true"}, deadline)

    def _apply_verification_policy(self, deadline: Deadline) -> None:
        name = self.cfg.disk.name
        if self.cfg.verification.on_failure == "delete":
            log.warning("Deleting unverified image %s", name)
            try:
                self.provider.delete_image(name, deadline=deadline)
                self.report.image_created = False
                self.bus.emit(ResourceDeleted(kind="image", name=name, **self.run_ctx))
            except ImageCacheError as e:
                log.error("Failed to delete unverified image %s: %s", name, e)
        else:
            log.warning("Marking image %s as unverified", name)
            self._label_image({VERIFIED_LABEL: "false"}, deadline)

    def _label_image(self, labels: dict, deadline: Deadline) -> None:
        try:
            self.provider.set_image_labels(self.cfg.disk.name, labels, deadline=deadline)
        except ImageCacheError as e:
            log.error("Failed to label image %s: %s", self.cfg.disk.name, e)

    # ------------------------------------------------------------------
    # cleanup
    # ------------------------------------------------------------------
    def _cleanup(self, *, failed: bool) -> None:
        self.cleanup_runs += 1
        self.report.state = BuildState.CLEANUP
        self.bus.emit(StateEntered(state=BuildState.CLEANUP.value, **self.run_ctx))
        res = self.resources
        if res.empty:
            log.debug("nothing to clean up")
            self.bus.emit(CleanupResult(status="OK", **self.run_ctx))
            return

        grace = self.cfg.execution.cleanup_grace_seconds
        if failed and grace > 0:
            log.info("Cleanup scheduled in %d seconds (resources kept for inspection)", grace)
            self.sleep(grace)

        deadline = Deadline(CLEANUP_TIMEOUT_SECONDS, clock=self.clock)
        errors = self.report.cleanup_errors

        try:
            self.executor.close()
        except Exception as e:
            errors.append(f"close executor: {e}")

        if res.vm is not None:
            try:
                self.provider.delete_vm(res.vm, self.zone, deadline=deadline)
                self.bus.emit(ResourceDeleted(kind="vm", name=res.vm, **self.run_ctx))
                if res.attached_to == res.vm:
                    res.attached_to = None
                res.vm = None
            except Exception as e:
                errors.append(f"delete VM {res.vm}: {e}")

        if res.attached_to is not None:
            try:
                self._detach(deadline)
            except Exception as e:
                errors.append(f"detach disk from {res.attached_to}: {e}")

        if res.disk is not None:
            try:
                self.provider.delete_disk(res.disk, self.zone, deadline=deadline)
                self.bus.emit(ResourceDeleted(kind="disk", name=res.disk, **self.run_ctx))
                res.disk = None
            except Exception as e:
                errors.append(f"delete disk {res.disk}: {e}")

        for err in errors:
            log.error("Cleanup failed: %s", err)
        if not errors:
            log.info("Cleanup completed")
        self.bus.emit(CleanupResult(status="PARTIAL" if errors else "OK", errors=list(errors), **self.run_ctx))
