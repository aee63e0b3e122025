from types import SimpleNamespace

import pytest
from googleapiclient.errors import HttpError

from imagecache.cloud.gce import GceProvider
from imagecache.cloud.provider import DiskRequest, ImageRequest, VMRequest, region_of
from imagecache.errors import BuildTimeoutError, ProvisioningError
from imagecache.utils.polling import Deadline


def http_error(status):
    return HttpError(SimpleNamespace(status=status, reason="boom"), b"boom")


class Request:
    def __init__(self, result):
        self.result = result

    def execute(self):
        if isinstance(self.result, Exception):
            raise self.result
        return self.result() if callable(self.result) else self.result


class Collection:
    def __init__(self, compute, name):
        self.compute, self.name = compute, name

    def __getattr__(self, method):
        def call(**kwargs):
            self.compute.calls.append((self.name, method, kwargs))
            key = (self.name, method)
            result = self.compute.responses.get(key, {"name": f"op-{method}"})
            if isinstance(result, list):
                result = result.pop(0) if len(result) > 1 else result[0]
            return Request(result)
        return call


class FakeCompute:
    """Stands in for the googleapiclient discovery object."""

    def __init__(self, responses=None):
        self.calls = []
        self.responses = {
            ("zoneOperations", "get"): {"status": "DONE"},
            ("globalOperations", "get"): {"status": "DONE"},
            **(responses or {}),
        }

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return lambda: Collection(self, name)

    def called(self, collection, method):
        return [kw for c, m, kw in self.calls if (c, m) == (collection, method)]


def provider(compute):
    return GceProvider("demo", compute=compute, sleep=lambda _: None)


def test_region_of():
    assert region_of("us-central1-a") == "us-central1"
    assert region_of("europe-west4-b") == "europe-west4"


def test_create_disk_waits_for_zone_operation():
    compute = FakeCompute({("zoneOperations", "get"): [{"status": "RUNNING"}, {"status": "DONE"}]})
    disk = provider(compute).create_disk(
        DiskRequest("img-disk", "us-central1-a", 20, "pd-ssd", {"team": "web"}), deadline=Deadline(60)
    )
    assert disk.name == "img-disk"
    body = compute.called("disks", "insert")[0]["body"]
    assert body["sizeGb"] == "20"
    assert body["type"].endswith("/zones/us-central1-a/diskTypes/pd-ssd")
    assert body["labels"] == {"team": "web"}
    assert len(compute.called("zoneOperations", "get")) == 2


def test_operation_error_is_provisioning_error():
    compute = FakeCompute({
        ("zoneOperations", "get"): {"status": "DONE", "error": {"errors": [{"message": "QUOTA_EXCEEDED"}]}},
    })
    with pytest.raises(ProvisioningError) as ei:
        provider(compute).delete_disk("img-disk", "us-central1-a", deadline=Deadline(60))
    assert "QUOTA_EXCEEDED" in str(ei.value)


def test_operation_that_never_finishes_times_out():
    compute = FakeCompute({("globalOperations", "get"): {"status": "RUNNING"}})
    clock = SimpleNamespace(now=0.0)
    deadline = Deadline(10, clock=lambda: clock.now)

    def sleep(s):
        clock.now += s

    gce = GceProvider("demo", compute=compute, sleep=sleep)
    with pytest.raises(BuildTimeoutError):
        gce.delete_image("img", deadline=deadline)


def test_api_error_is_provisioning_error():
    compute = FakeCompute({("disks", "insert"): http_error(403)})
    with pytest.raises(ProvisioningError):
        provider(compute).create_disk(DiskRequest("d", "us-central1-a", 10), deadline=Deadline(60))


def test_check_permissions():
    provider(FakeCompute()).check_permissions("us-central1-a")
    with pytest.raises(ProvisioningError) as ei:
        provider(FakeCompute({("disks", "list"): http_error(403)})).check_permissions("us-central1-a")
    assert "permissions" in str(ei.value)


def test_attach_and_detach_bodies():
    compute = FakeCompute()
    gce = provider(compute)
    gce.attach_disk("img-disk", "builder", "us-central1-a", "secondary-disk-image-disk", deadline=Deadline(60))
    gce.detach_disk("builder", "us-central1-a", "secondary-disk-image-disk", deadline=Deadline(60))
    body = compute.called("instances", "attachDisk")[0]["body"]
    assert body["deviceName"] == "secondary-disk-image-disk"
    assert body["mode"] == "READ_WRITE" and body["autoDelete"] is False
    assert compute.called("instances", "detachDisk")[0]["deviceName"] == "secondary-disk-image-disk"


def test_create_vm_waits_until_running():
    instance = {
        "name": "builder",
        "status": "RUNNING",
        "networkInterfaces": [{"networkIP": "10.0.0.2", "accessConfigs": [{"natIP": "34.1.2.3"}]}],
    }
    compute = FakeCompute({("instances", "get"): [{"status": "STAGING"}, instance]})
    req = VMRequest(
        name="builder", zone="us-central1-a", machine_type="e2-standard-2", network="default",
        subnet="default", service_account="default", startup_script="#!/bin/bash\n",
        boot_image="projects/ubuntu-os-cloud/global/images/family/ubuntu-2204-lts",
        preemptible=True, ssh_keys="imagecache:ssh-ed25519 AAAA",
    )
    inst = provider(compute).create_vm(req, deadline=Deadline(60))
    assert (inst.external_ip, inst.internal_ip) == ("34.1.2.3", "10.0.0.2")

    body = compute.called("instances", "insert")[0]["body"]
    assert body["networkInterfaces"][0]["subnetwork"].endswith("/regions/us-central1/subnetworks/default")
    assert body["networkInterfaces"][0]["accessConfigs"][0]["type"] == "ONE_TO_ONE_NAT"
    assert body["scheduling"] == {"preemptible": True}
    assert body["tags"] == {"items": ["gke-image-cache-builder"]}
    keys = {i["key"] for i in body["metadata"]["items"]}
    assert keys == {"startup-script", "ssh-keys"}
    assert body["serviceAccounts"][0]["scopes"] == ["https://www.googleapis.com/auth/cloud-platform"]


def test_get_instance_and_image_not_found():
    compute = FakeCompute({("instances", "get"): http_error(404), ("images", "get"): http_error(404)})
    gce = provider(compute)
    assert gce.get_instance("gone", "us-central1-a") is None
    assert gce.get_image("gone") is None

    with pytest.raises(ProvisioningError):
        provider(FakeCompute({("images", "get"): http_error(500)})).get_image("img")


def test_serial_output_offsets():
    compute = FakeCompute({("instances", "getSerialPortOutput"): {"contents": "hello\n", "next": "42"}})
    assert provider(compute).get_serial_output("builder", "us-central1-a", start=6) == ("hello\n", 42)
    assert compute.called("instances", "getSerialPortOutput")[0]["start"] == 6


def test_set_instance_metadata_merges_and_keeps_fingerprint():
    current = {"metadata": {"fingerprint": "fp1", "items": [{"key": "startup-script", "value": "x"}]}}
    compute = FakeCompute({("instances", "get"): current})
    provider(compute).set_instance_metadata(
        "builder", "us-central1-a", {"imagecache-operation": "1 build"}, deadline=Deadline(60)
    )
    body = compute.called("instances", "setMetadata")[0]["body"]
    assert body["fingerprint"] == "fp1"
    assert {i["key"]: i["value"] for i in body["items"]} == {
        "startup-script": "x",
        "imagecache-operation": "1 build",
    }


def test_create_image_and_labels():
    image = {"name": "web-cache", "status": "READY", "family": "f", "labels": {"a": "1"}, "labelFingerprint": "lf"}
    compute = FakeCompute({("images", "get"): image})
    gce = provider(compute)
    created = gce.create_image(
        ImageRequest("web-cache", "web-cache-disk", "us-central1-a", "f", "Image cache containing 2 container images"),
        deadline=Deadline(60),
    )
    assert created.status == "READY"
    body = compute.called("images", "insert")[0]["body"]
    assert body["sourceDisk"] == "projects/demo/zones/us-central1-a/disks/web-cache-disk"
    assert compute.called("globalOperations", "get")

    gce.set_image_labels("web-cache", {"imagecache-verified": "true"}, deadline=Deadline(60))
    body = compute.called("images", "setLabels")[0]["body"]
    assert body == {"labels": {"a": "1", "imagecache-verified": "true"}, "labelFingerprint": "lf"}
