# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/remote/dispatch.py
from __future__ import annotations

import logging
import shlex
import uuid
from typing import Callable, List, Protocol, Sequence

from imagecache.cache.pipeline import WorkerOperation
from imagecache.cloud.provider import CloudProvider
from imagecache.config.models import BuildConfig
from imagecache.errors import RemoteExecutionError
from imagecache.utils.polling import Deadline
from imagecache.utils.ssh_runner import SSHRunner
from .startup import OPERATION_KEY
from .status import SerialConsoleStatusChannel, SSHLogStatusChannel, StatusChannel

log = logging.getLogger("imagecache")


def worker_args(cfg: BuildConfig, operation: WorkerOperation) -> List[str]:
    """Arguments for ``imagecache worker <operation>`` on the build host."""
    args = [
        "--device-name", cfg.disk.device_name,
        "--mount-point", cfg.disk.mount_point,
    ]
    if operation is WorkerOperation.BUILD:
        args += ["--image-pull-auth", cfg.auth.image_pull_auth.value]
        args += ["--service-account", cfg.auth.service_account]
        args.append("--checksums" if cfg.verification.store_checksums else "--no-checksums")
        for image in cfg.images:
            args += ["--image", image]
    return args


class RemoteDispatcher(Protocol):
    def dispatch(
        self, operation: WorkerOperation, args: Sequence[str], *, deadline: Deadline
    ) -> StatusChannel: ...

    def close(self) -> None: ...


class MetadataDispatcher:
    """
    Posts the operation to the instance metadata key the startup-script
    agent watches, then follows it on the serial console.
    """

    def __init__(self, provider: CloudProvider, instance: str, zone: str):
        self.provider = provider
        self.instance = instance
        self.zone = zone

    def dispatch(
        self, operation: WorkerOperation, args: Sequence[str], *, deadline: Deadline
    ) -> StatusChannel:
        # only output produced after this point belongs to the new operation
        _, offset = self.provider.get_serial_output(self.instance, self.zone, 0)
        op_id = uuid.uuid4().hex[:12]
        payload = f"{op_id} {operation.value} {shlex.join(args)}"
        log.info("Dispatching %s operation %s to %s", operation.value, op_id, self.instance)
        self.provider.set_instance_metadata(
            self.instance, self.zone, {OPERATION_KEY: payload}, deadline=deadline
        )
        return SerialConsoleStatusChannel(
            self.provider,
            self.instance,
            self.zone,
            success_marker=operation.success_marker,
            start=offset,
        )

    def close(self) -> None:
        pass


class SSHDispatcher:
    """Starts the worker over SSH in the background and tails its log file."""

    def __init__(self, connect: Callable[[], SSHRunner]):
        self.connect = connect
        self._ssh: SSHRunner | None = None

    @property
    def ssh(self) -> SSHRunner:
        if self._ssh is None:
            self._ssh = self.connect()
        return self._ssh

    def dispatch(
        self, operation: WorkerOperation, args: Sequence[str], *, deadline: Deadline
    ) -> StatusChannel:
        op_id = uuid.uuid4().hex[:12]
        log_path = f"/var/log/imagecache-{operation.value}-{op_id}.log"
        worker = f"imagecache worker {operation.value} {shlex.join(args)}"
        script = worker + ' || echo "ERROR: worker exited with status $?"'
        cmd = f"nohup sh -c {shlex.quote(script)} > {log_path} 2>&1 &"
        log.info("Starting %s operation %s over SSH", operation.value, op_id)
        rc, _, err = self.ssh.run(cmd, sudo=True, timeout=deadline.timeout())
        if rc != 0:
            raise RemoteExecutionError(f"failed to start remote {operation.value}: {err.strip()}")
        return SSHLogStatusChannel(self.ssh, log_path, success_marker=operation.success_marker)

    def close(self) -> None:
        if self._ssh is not None:
            self._ssh.close()
            self._ssh = None
