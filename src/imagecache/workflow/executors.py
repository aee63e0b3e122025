# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/workflow/executors.py
from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Protocol

from imagecache.cache.pipeline import OPERATIONS, READY_MARKER, BuildContext, WorkerOperation
from imagecache.cloud.provider import CloudProvider, Instance
from imagecache.config.models import BuildConfig
from imagecache.errors import ProvisioningError, RemoteExecutionError
from imagecache.remote.dispatch import RemoteDispatcher, worker_args
from imagecache.remote.status import RemoteStatus, SerialConsoleStatusChannel, StatusChannel
from imagecache.utils.polling import Deadline, poll_until

log = logging.getLogger("imagecache")

StatusCallback = Callable[[str, RemoteStatus], None]


class Executor(Protocol):
    """Runs a worker operation on whichever host has the cache disk attached."""

    def run(
        self,
        operation: WorkerOperation,
        *,
        deadline: Deadline,
        on_status: Optional[StatusCallback] = None,
    ) -> Optional[object]: ...

    def close(self) -> None: ...


class LocalExecutor:
    """
    Runs the in-host pipeline in this process (local mode).

    The context factory receives the build deadline so every command the
    pipeline runs is bounded by it.
    """

    def __init__(self, context_factory: Callable[[Deadline], BuildContext]):
        self.context_factory = context_factory

    def run(
        self,
        operation: WorkerOperation,
        *,
        deadline: Deadline,
        on_status: Optional[StatusCallback] = None,
    ) -> Optional[object]:
        deadline.check(f"local {operation.value}")
        if on_status:
            on_status(operation.value, RemoteStatus.RUNNING)
        result = OPERATIONS[operation](self.context_factory(deadline))
        if on_status:
            on_status(operation.value, RemoteStatus.SUCCEEDED)
        return result

    def close(self) -> None:
        pass


class RemoteExecutor:
    """
    Drives ``imagecache worker`` on the temporary build VM.

    The first operation waits for the startup script to report the
    environment ready; every operation is then dispatched and polled until
    its status channel reports success or failure.
    """

    def __init__(
        self,
        cfg: BuildConfig,
        provider: CloudProvider,
        instance_name: str,
        dispatcher_factory: Callable[[Instance], RemoteDispatcher],
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cfg = cfg
        self.provider = provider
        self.instance_name = instance_name
        self.dispatcher_factory = dispatcher_factory
        self.sleep = sleep
        self._dispatcher: Optional[RemoteDispatcher] = None
        self._ready = False

    @property
    def zone(self) -> str:
        return self.cfg.zone

    def _poll(self, channel: StatusChannel, what: str, deadline: Deadline) -> RemoteStatus:
        def probe() -> Optional[RemoteStatus]:
            status = channel.poll()
            return None if status is RemoteStatus.RUNNING else status

        return poll_until(
            probe,
            what=what,
            interval=self.cfg.remote.poll_interval_seconds,
            deadline=deadline,
            sleep=self.sleep,
        )

    def wait_ready(self, deadline: Deadline) -> None:
        if self._ready:
            return
        initial = min(self.cfg.remote.initial_wait_seconds, deadline.remaining())
        log.info("Waiting %ds for VM %s to boot...", initial, self.instance_name)
        self.sleep(initial)

        channel = SerialConsoleStatusChannel(
            self.provider, self.instance_name, self.zone, success_marker=READY_MARKER
        )
        status = self._poll(channel, f"VM {self.instance_name} environment setup", deadline)
        if status is RemoteStatus.FAILED:
            raise RemoteExecutionError(
                f"environment setup failed on {self.instance_name}:\n{channel.tail()}"
            )
        log.info("Remote environment is ready on %s", self.instance_name)
        self._ready = True

    def _get_dispatcher(self) -> RemoteDispatcher:
        if self._dispatcher is None:
            instance = self.provider.get_instance(self.instance_name, self.zone)
            if instance is None:
                raise ProvisioningError(f"build VM {self.instance_name} not found")
            self._dispatcher = self.dispatcher_factory(instance)
        return self._dispatcher

    def run(
        self,
        operation: WorkerOperation,
        *,
        deadline: Deadline,
        on_status: Optional[StatusCallback] = None,
    ) -> None:
        self.wait_ready(deadline)
        channel = self._get_dispatcher().dispatch(
            operation, worker_args(self.cfg, operation), deadline=deadline
        )
        if on_status:
            on_status(operation.value, RemoteStatus.RUNNING)

        status = self._poll(channel, f"remote {operation.value} on {self.instance_name}", deadline)
        if on_status:
            on_status(operation.value, status)
        if status is RemoteStatus.FAILED:
            raise RemoteExecutionError(
                f"remote {operation.value} failed on {self.instance_name}, last output:\n{channel.tail()}"
            )
        log.info("Remote %s completed successfully", operation.value)

    def close(self) -> None:
        if self._dispatcher is not None:
            self._dispatcher.close()
            self._dispatcher = None
