# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/config/models.py

from __future__ import annotations

import re
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from imagecache.errors import InvalidImageReferenceError
from imagecache.registry.reference import validate_reference


class ExecutionMode(str, Enum):
    LOCAL = "local"     # run on the current GCE VM
    REMOTE = "remote"   # provision a temporary GCE VM


class AuthMechanism(str, Enum):
    NONE = "None"
    SERVICE_ACCOUNT_TOKEN = "ServiceAccountToken"
    DOCKER_CONFIG = "DockerConfig"
    BASIC_AUTH = "BasicAuth"

    @classmethod
    def parse(cls, value: str) -> "AuthMechanism":
        for member in cls:
            if member.value.lower() == str(value).lower():
                return member
        raise ValueError(
            f"unsupported image pull auth {value!r}, expected one of: "
            + ", ".join(m.value for m in cls)
        )


SUPPORTED_MACHINE_TYPES = [
    "e2-standard-2", "e2-standard-4", "e2-standard-8", "e2-standard-16",
    "e2-highmem-2", "e2-highmem-4", "e2-highmem-8", "e2-highmem-16",
    "e2-highcpu-2", "e2-highcpu-4", "e2-highcpu-8", "e2-highcpu-16",
    "n1-standard-1", "n1-standard-2", "n1-standard-4", "n1-standard-8",
    "n2-standard-2", "n2-standard-4", "n2-standard-8", "n2-standard-16",
]

SUPPORTED_DISK_TYPES = ["pd-standard", "pd-balanced", "pd-ssd", "pd-extreme"]

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$")
_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}


def parse_duration(value) -> int:
    """Accept plain seconds or Go-style ``90s`` / ``20m`` / ``1h``."""
    if isinstance(value, (int, float)):
        return int(value)
    m = _DURATION.match(str(value))
    if not m:
        raise ValueError(f"invalid duration {value!r} (use e.g. 600, 90s, 20m, 1h)")
    return int(float(m.group(1)) * _UNITS[m.group(2)])


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ExecutionSpec(_Frozen):
    mode: ExecutionMode
    zone: Optional[str] = None
    timeout_seconds: int = Field(1200, alias="timeout")
    job_name: str = "image-cache-build"
    cleanup_grace_seconds: int = Field(300, ge=0)

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    @field_validator("timeout_seconds", mode="before")
    @classmethod
    def _duration(cls, v):
        return parse_duration(v)

    @field_validator("timeout_seconds")
    @classmethod
    def _min_timeout(cls, v: int) -> int:
        if v < 60:
            raise ValueError("timeout must be at least 1 minute")
        return v


class ProjectSpec(_Frozen):
    name: str = Field(min_length=1)
    credentials_file: Optional[str] = None


class DiskSpec(_Frozen):
    name: str = Field(min_length=1)                  # name of the produced disk image
    size_gb: int = Field(10, ge=10, le=1000)
    disk_type: str = "pd-standard"
    family: str = "gke-image-cache"
    labels: Dict[str, str] = Field(default_factory=dict)
    device_name: str = "secondary-disk-image-disk"
    mount_point: str = "/mnt/disks/container_layers"

    @field_validator("disk_type")
    @classmethod
    def _disk_type(cls, v: str) -> str:
        if v not in SUPPORTED_DISK_TYPES:
            raise ValueError(f"unsupported disk type, supported types: {', '.join(SUPPORTED_DISK_TYPES)}")
        return v

    @property
    def working_disk_name(self) -> str:
        return f"{self.name}-disk"


class AuthSpec(_Frozen):
    image_pull_auth: AuthMechanism = AuthMechanism.NONE
    service_account: str = "default"

    @field_validator("image_pull_auth", mode="before")
    @classmethod
    def _mechanism(cls, v):
        if isinstance(v, AuthMechanism):
            return v
        return AuthMechanism.parse(v)


class RemoteSpec(_Frozen):
    machine_type: str = "e2-standard-2"
    network: str = "default"
    subnet: str = "default"
    preemptible: bool = False
    boot_image: str = "projects/ubuntu-os-cloud/global/images/family/ubuntu-2204-lts"
    boot_disk_size_gb: int = 20
    dispatch: Literal["metadata", "ssh"] = "metadata"
    package_spec: str = "gke-image-cache-builder"
    poll_interval_seconds: int = Field(30, ge=1)
    initial_wait_seconds: int = Field(120, ge=0)
    ssh_username: str = "imagecache"
    ssh_private_key_path: Optional[str] = None
    ssh_public_key: Optional[str] = None

    @field_validator("machine_type")
    @classmethod
    def _machine_type(cls, v: str) -> str:
        if v not in SUPPORTED_MACHINE_TYPES:
            raise ValueError(f"unsupported machine type, supported types: {', '.join(SUPPORTED_MACHINE_TYPES)}")
        return v

    @model_validator(mode="after")
    def _ssh_needs_key(self) -> "RemoteSpec":
        if self.dispatch == "ssh" and not (self.ssh_private_key_path and self.ssh_public_key):
            raise ValueError("ssh dispatch requires ssh_private_key_path and ssh_public_key")
        return self


class VerificationSpec(_Frozen):
    enabled: bool = True
    store_checksums: bool = True
    on_failure: Literal["label", "delete"] = "label"


class LoggingSpec(_Frozen):
    verbose: bool = False
    quiet: bool = False
    log_dir: Optional[str] = None
    events_file: Optional[str] = None


class BuildConfig(_Frozen):
    """
    A fully validated build request. Nothing downstream re-checks these
    fields; resources are only created once this model validates.
    """

    execution: ExecutionSpec
    project: ProjectSpec
    disk: DiskSpec
    images: List[str] = Field(min_length=1)
    auth: AuthSpec = AuthSpec()
    remote: RemoteSpec = RemoteSpec()
    verification: VerificationSpec = VerificationSpec()
    logging: LoggingSpec = LoggingSpec()

    @field_validator("images")
    @classmethod
    def _images(cls, images: List[str]) -> List[str]:
        for i, image in enumerate(images, start=1):
            try:
                validate_reference(image)
            except InvalidImageReferenceError as e:
                raise ValueError(f"invalid container image #{i}: {e}") from e
        return images

    @model_validator(mode="after")
    def _cross_checks(self) -> "BuildConfig":
        if self.execution.mode is ExecutionMode.REMOTE and not self.execution.zone:
            raise ValueError("zone is required for remote mode")
        if self.verification.enabled and not self.verification.store_checksums:
            raise ValueError("verification requires verification.store_checksums to be true")
        return self

    @property
    def is_local(self) -> bool:
        return self.execution.mode is ExecutionMode.LOCAL

    @property
    def is_remote(self) -> bool:
        return self.execution.mode is ExecutionMode.REMOTE

    @property
    def zone(self) -> str:
        return self.execution.zone or ""
