# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/cloud/provider.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol, Tuple

from imagecache.utils.polling import Deadline


@dataclass(frozen=True)
class DiskRequest:
    name: str
    zone: str
    size_gb: int
    disk_type: str = "pd-standard"
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class VMRequest:
    name: str
    zone: str
    machine_type: str
    network: str
    subnet: str
    service_account: str
    startup_script: str
    boot_image: str
    boot_disk_size_gb: int = 20
    preemptible: bool = False
    ssh_keys: Optional[str] = None
    tags: Tuple[str, ...] = ("gke-image-cache-builder",)


@dataclass(frozen=True)
class ImageRequest:
    name: str
    source_disk: str
    zone: str
    family: str
    description: str
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Disk:
    name: str
    zone: str


@dataclass(frozen=True)
class Instance:
    name: str
    zone: str
    status: str = "RUNNING"
    external_ip: Optional[str] = None
    internal_ip: Optional[str] = None


@dataclass(frozen=True)
class Image:
    name: str
    status: str
    family: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    label_fingerprint: Optional[str] = None


class CloudProvider(Protocol):
    """
    Everything the orchestrator needs from the cloud.

    Mutating calls block until the underlying operation finishes or the
    deadline passes.
    """

    def check_permissions(self, zone: str) -> None: ...
    def create_disk(self, req: DiskRequest, *, deadline: Deadline) -> Disk: ...
    def delete_disk(self, name: str, zone: str, *, deadline: Deadline) -> None: ...
    def attach_disk(self, disk: str, instance: str, zone: str, device_name: str, *, deadline: Deadline) -> None: ...
    def detach_disk(self, instance: str, zone: str, device_name: str, *, deadline: Deadline) -> None: ...
    def create_vm(self, req: VMRequest, *, deadline: Deadline) -> Instance: ...
    def delete_vm(self, name: str, zone: str, *, deadline: Deadline) -> None: ...
    def create_image(self, req: ImageRequest, *, deadline: Deadline) -> Image: ...
    def get_image(self, name: str) -> Optional[Image]: ...
    def set_image_labels(self, name: str, labels: Dict[str, str], *, deadline: Deadline) -> None: ...
    def delete_image(self, name: str, *, deadline: Deadline) -> None: ...
    def get_instance(self, name: str, zone: str) -> Optional[Instance]: ...
    def get_serial_output(self, name: str, zone: str, start: int = 0) -> Tuple[str, int]: ...
    def set_instance_metadata(self, name: str, zone: str, items: Dict[str, str], *, deadline: Deadline) -> None: ...
    def wait_for_operation(self, operation: dict, *, zone: Optional[str] = None, deadline: Deadline) -> dict: ...


def region_of(zone: str) -> str:
    """us-central1-a -> us-central1"""
    return zone.rsplit("-", 1)[0]


