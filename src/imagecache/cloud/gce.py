# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/cloud/gce.py
from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional, Tuple

import google.auth
import googleapiclient.discovery
from google.oauth2 import service_account
from googleapiclient.errors import HttpError

from imagecache.errors import ProvisioningError
from imagecache.utils.polling import Deadline, poll_until
from .provider import Disk, DiskRequest, Image, ImageRequest, Instance, VMRequest, region_of

log = logging.getLogger("imagecache")

COMPUTE_SCOPE = "https://www.googleapis.com/auth/compute"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


def build_compute(credentials_file: Optional[str] = None):
    """Compute v1 client from a service account key file or application default credentials."""
    if credentials_file:
        credentials = service_account.Credentials.from_service_account_file(
            credentials_file, scopes=[COMPUTE_SCOPE]
        )
    else:
        credentials, _ = google.auth.default(scopes=[COMPUTE_SCOPE])
    return googleapiclient.discovery.build("compute", "v1", credentials=credentials, cache_discovery=False)


def _http_status(e: HttpError) -> Optional[int]:
    return getattr(getattr(e, "resp", None), "status", None)


class GceProvider:
    """CloudProvider over the Compute Engine v1 REST API."""

    def __init__(
        self,
        project: str,
        *,
        credentials_file: Optional[str] = None,
        compute=None,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: float = 2.0,
    ):
        self.project = project
        self.compute = compute if compute is not None else build_compute(credentials_file)
        self.sleep = sleep
        self.poll_interval = poll_interval

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------
    def _execute(self, request, what: str):
        try:
            return request.execute()
        except HttpError as e:
            raise ProvisioningError(f"failed to {what}: {e}") from e

    def wait_for_operation(self, operation: dict, *, zone: Optional[str] = None, deadline: Deadline) -> dict:
        name = operation["name"]

        def probe() -> Optional[dict]:
            if zone:
                req = self.compute.zoneOperations().get(project=self.project, zone=zone, operation=name)
            else:
                req = self.compute.globalOperations().get(project=self.project, operation=name)
            op = self._execute(req, f"poll operation {name}")
            if op.get("status") == "DONE":
                return op
            return None

        op = poll_until(probe, what=f"operation {name}", interval=self.poll_interval, deadline=deadline, sleep=self.sleep)
        if "error" in op:
            errors = op["error"].get("errors") or [op["error"]]
            detail = "; ".join(e.get("message", str(e)) for e in errors)
            raise ProvisioningError(f"operation {name} failed: {detail}")
        return op

    def _run(self, request, what: str, *, zone: Optional[str], deadline: Deadline) -> dict:
        op = self._execute(request, what)
        return self.wait_for_operation(op, zone=zone, deadline=deadline)

    # ------------------------------------------------------------------
    # project
    # ------------------------------------------------------------------
    def check_permissions(self, zone: str) -> None:
        log.debug("Validating GCP permissions...")
        try:
            self.compute.instances().list(project=self.project, zone=zone, maxResults=1).execute()
            self.compute.disks().list(project=self.project, zone=zone, maxResults=1).execute()
        except HttpError as e:
            raise ProvisioningError(
                f"insufficient GCP permissions in project {self.project}, zone {zone}: {e}"
            ) from e

    # ------------------------------------------------------------------
    # disks
    # ------------------------------------------------------------------
    def create_disk(self, req: DiskRequest, *, deadline: Deadline) -> Disk:
        log.info("Creating disk: %s in zone: %s", req.name, req.zone)
        body = {
            "name": req.name,
            "sizeGb": str(req.size_gb),
            "type": f"projects/{self.project}/zones/{req.zone}/diskTypes/{req.disk_type}",
            "labels": dict(req.labels),
        }
        self._run(
            self.compute.disks().insert(project=self.project, zone=req.zone, body=body),
            f"create disk {req.name}", zone=req.zone, deadline=deadline,
        )
        return Disk(name=req.name, zone=req.zone)

    def delete_disk(self, name: str, zone: str, *, deadline: Deadline) -> None:
        log.info("Deleting disk: %s", name)
        self._run(
            self.compute.disks().delete(project=self.project, zone=zone, disk=name),
            f"delete disk {name}", zone=zone, deadline=deadline,
        )

    def attach_disk(self, disk: str, instance: str, zone: str, device_name: str, *, deadline: Deadline) -> None:
        log.info("Attaching disk %s to instance %s", disk, instance)
        body = {
            "source": f"projects/{self.project}/zones/{zone}/disks/{disk}",
            "deviceName": device_name,
            "mode": "READ_WRITE",
            "boot": False,
            "autoDelete": False,
        }
        self._run(
            self.compute.instances().attachDisk(project=self.project, zone=zone, instance=instance, body=body),
            f"attach disk {disk} to {instance}", zone=zone, deadline=deadline,
        )

    def detach_disk(self, instance: str, zone: str, device_name: str, *, deadline: Deadline) -> None:
        log.info("Detaching disk %s from instance %s", device_name, instance)
        self._run(
            self.compute.instances().detachDisk(
                project=self.project, zone=zone, instance=instance, deviceName=device_name
            ),
            f"detach disk {device_name} from {instance}", zone=zone, deadline=deadline,
        )

    # ------------------------------------------------------------------
    # instances
    # ------------------------------------------------------------------
    def create_vm(self, req: VMRequest, *, deadline: Deadline) -> Instance:
        log.info("Creating VM: %s in zone: %s", req.name, req.zone)
        items = [{"key": "startup-script", "value": req.startup_script}]
        if req.ssh_keys:
            items.append({"key": "ssh-keys", "value": req.ssh_keys})

        body = {
            "name": req.name,
            "machineType": f"projects/{self.project}/zones/{req.zone}/machineTypes/{req.machine_type}",
            "disks": [
                {
                    "boot": True,
                    "autoDelete": True,
                    "initializeParams": {
                        "sourceImage": req.boot_image,
                        "diskSizeGb": str(req.boot_disk_size_gb),
                        "diskType": f"projects/{self.project}/zones/{req.zone}/diskTypes/pd-standard",
                    },
                }
            ],
            "networkInterfaces": [
                {
                    "network": f"projects/{self.project}/global/networks/{req.network}",
                    "subnetwork": (
                        f"projects/{self.project}/regions/{region_of(req.zone)}/subnetworks/{req.subnet}"
                    ),
                    "accessConfigs": [{"name": "External NAT", "type": "ONE_TO_ONE_NAT"}],
                }
            ],
            "serviceAccounts": [{"email": req.service_account, "scopes": [CLOUD_PLATFORM_SCOPE]}],
            "metadata": {"items": items},
            "scheduling": {"preemptible": req.preemptible},
            "tags": {"items": list(req.tags)},
        }
        self._run(
            self.compute.instances().insert(project=self.project, zone=req.zone, body=body),
            f"create VM {req.name}", zone=req.zone, deadline=deadline,
        )

        def running() -> Optional[Instance]:
            inst = self.get_instance(req.name, req.zone)
            if inst is not None and inst.status == "RUNNING":
                return inst
            log.debug("VM status: %s, waiting...", inst.status if inst else "UNKNOWN")
            return None

        instance = poll_until(
            running, what=f"VM {req.name} to be RUNNING",
            interval=self.poll_interval, deadline=deadline, sleep=self.sleep,
        )
        log.info("VM created: %s (external IP %s)", instance.name, instance.external_ip or "-")
        return instance

    def delete_vm(self, name: str, zone: str, *, deadline: Deadline) -> None:
        log.info("Deleting VM: %s", name)
        self._run(
            self.compute.instances().delete(project=self.project, zone=zone, instance=name),
            f"delete VM {name}", zone=zone, deadline=deadline,
        )

    def get_instance(self, name: str, zone: str) -> Optional[Instance]:
        try:
            data = self.compute.instances().get(project=self.project, zone=zone, instance=name).execute()
        except HttpError as e:
            if _http_status(e) == 404:
                return None
            raise ProvisioningError(f"failed to get instance {name}: {e}") from e

        external_ip = internal_ip = None
        nics = data.get("networkInterfaces") or []
        if nics:
            internal_ip = nics[0].get("networkIP")
            access = nics[0].get("accessConfigs") or []
            if access:
                external_ip = access[0].get("natIP")
        return Instance(
            name=data.get("name", name),
            zone=zone,
            status=data.get("status", "UNKNOWN"),
            external_ip=external_ip,
            internal_ip=internal_ip,
        )

    def get_serial_output(self, name: str, zone: str, start: int = 0) -> Tuple[str, int]:
        data = self._execute(
            self.compute.instances().getSerialPortOutput(
                project=self.project, zone=zone, instance=name, port=1, start=start
            ),
            f"read serial console of {name}",
        )
        return data.get("contents", ""), int(data.get("next", start))

    def set_instance_metadata(self, name: str, zone: str, items: Dict[str, str], *, deadline: Deadline) -> None:
        current = self._execute(
            self.compute.instances().get(project=self.project, zone=zone, instance=name),
            f"get instance {name}",
        )
        metadata = current.get("metadata") or {}
        merged = {i["key"]: i.get("value") for i in metadata.get("items") or []}
        merged.update(items)
        body = {
            "fingerprint": metadata.get("fingerprint"),
            "items": [{"key": k, "value": v} for k, v in merged.items()],
        }
        self._run(
            self.compute.instances().setMetadata(project=self.project, zone=zone, instance=name, body=body),
            f"set metadata on {name}", zone=zone, deadline=deadline,
        )

    # ------------------------------------------------------------------
    # images
    # ------------------------------------------------------------------
    def create_image(self, req: ImageRequest, *, deadline: Deadline) -> Image:
        log.info("Creating image: %s from disk: %s", req.name, req.source_disk)
        body = {
            "name": req.name,
            "sourceDisk": f"projects/{self.project}/zones/{req.zone}/disks/{req.source_disk}",
            "description": req.description,
            "family": req.family,
            "labels": dict(req.labels),
        }
        self._run(
            self.compute.images().insert(project=self.project, body=body),
            f"create image {req.name}", zone=None, deadline=deadline,
        )
        image = self.get_image(req.name)
        if image is None:
            raise ProvisioningError(f"image {req.name} not found after creation")
        return image

    def get_image(self, name: str) -> Optional[Image]:
        try:
            data = self.compute.images().get(project=self.project, image=name).execute()
        except HttpError as e:
            if _http_status(e) == 404:
                return None
            raise ProvisioningError(f"failed to get image {name}: {e}") from e
        return Image(
            name=data.get("name", name),
            status=data.get("status", "UNKNOWN"),
            family=data.get("family"),
            labels=data.get("labels") or {},
            label_fingerprint=data.get("labelFingerprint"),
        )

    def set_image_labels(self, name: str, labels: Dict[str, str], *, deadline: Deadline) -> None:
        image = self.get_image(name)
        if image is None:
            raise ProvisioningError(f"image {name} not found")
        body = {"labels": {**image.labels, **labels}, "labelFingerprint": image.label_fingerprint}
        self._run(
            self.compute.images().setLabels(project=self.project, resource=name, body=body),
            f"label image {name}", zone=None, deadline=deadline,
        )

    def delete_image(self, name: str, *, deadline: Deadline) -> None:
        log.info("Deleting image: %s", name)
        self._run(
            self.compute.images().delete(project=self.project, image=name),
            f"delete image {name}", zone=None, deadline=deadline,
        )
