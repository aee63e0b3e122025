# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/remote/status.py
from __future__ import annotations

import logging
from enum import Enum
from typing import List, Optional, Protocol, Sequence

from imagecache.cloud.provider import CloudProvider
from imagecache.errors import ProvisioningError
from imagecache.utils.ssh_runner import SSHRunner

log = logging.getLogger("imagecache")

FAILURE_MARKERS = ("ERROR", "FAILED")

# GCE prefixes every startup-script line on the serial console with this tag
STARTUP_SCRIPT_TAG = "startup-script"


class RemoteStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class StatusChannel(Protocol):
    def poll(self) -> RemoteStatus: ...
    def tail(self, lines: int = 20) -> str: ...


class _MarkerScanner:
    """Accumulates remote output and classifies it by marker lines."""

    def __init__(
        self,
        success_marker: str,
        failure_markers: Sequence[str] = FAILURE_MARKERS,
        tag: Optional[str] = None,
    ):
        self.success_marker = success_marker
        self.failure_markers = tuple(failure_markers)
        self.tag = tag
        self.lines: List[str] = []
        self._partial = ""

    def feed(self, chunk: str) -> None:
        text = self._partial + chunk
        *complete, self._partial = text.split("\n")
        for line in complete:
            if self.tag is None or self.tag in line:
                self.lines.append(line.rstrip("\r"))

    def status(self) -> RemoteStatus:
        if any(self.success_marker in line for line in self.lines):
            return RemoteStatus.SUCCEEDED
        if any(m in line for line in self.lines for m in self.failure_markers):
            return RemoteStatus.FAILED
        return RemoteStatus.RUNNING

    def tail(self, lines: int = 20) -> str:
        return "\n".join(self.lines[-lines:])


class SerialConsoleStatusChannel:
    """
    Reads the VM's serial console incrementally from ``start`` and looks for
    the success marker or a failure marker in the new output.
    """

    def __init__(
        self,
        provider: CloudProvider,
        instance: str,
        zone: str,
        *,
        success_marker: str,
        failure_markers: Sequence[str] = FAILURE_MARKERS,
        start: int = 0,
        tag: Optional[str] = STARTUP_SCRIPT_TAG,
    ):
        self.provider = provider
        self.instance = instance
        self.zone = zone
        self.offset = start
        self._scanner = _MarkerScanner(success_marker, failure_markers, tag)

    def poll(self) -> RemoteStatus:
        try:
            contents, self.offset = self.provider.get_serial_output(self.instance, self.zone, self.offset)
        except ProvisioningError as e:
            # the console is not readable until the VM has booted
            log.debug("Failed to get serial console output: %s", e)
            return RemoteStatus.RUNNING
        if contents:
            self._scanner.feed(contents)
        return self._scanner.status()

    def tail(self, lines: int = 20) -> str:
        return self._scanner.tail(lines)


class SSHLogStatusChannel:
    """Same protocol over SSH: re-reads a log file the worker writes on the VM."""

    def __init__(
        self,
        ssh: SSHRunner,
        log_path: str,
        *,
        success_marker: str,
        failure_markers: Sequence[str] = FAILURE_MARKERS,
    ):
        self.ssh = ssh
        self.log_path = log_path
        self.success_marker = success_marker
        self.failure_markers = failure_markers
        self._scanner = _MarkerScanner(success_marker, failure_markers)

    def poll(self) -> RemoteStatus:
        rc, out, err = self.ssh.run(f"cat {self.log_path}", sudo=True)
        if rc != 0:
            log.debug("cannot read %s yet: %s", self.log_path, err.strip())
            return RemoteStatus.RUNNING
        self._scanner = _MarkerScanner(self.success_marker, self.failure_markers)
        self._scanner.feed(out if out.endswith("\n") else out + "\n")
        return self._scanner.status()

    def tail(self, lines: int = 20) -> str:
        return self._scanner.tail(lines)
