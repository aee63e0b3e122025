# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/config/templates.py
from __future__ import annotations

from pathlib import Path

from imagecache.errors import ValidationError

BASIC = """\
# gke-image-cache-builder: basic configuration
execution:
  mode: remote              # local | remote
  zone: us-central1-a

project:
  name: my-gcp-project

disk:
  name: web-app-cache
  size_gb: 10

images:
  - nginx:latest
  - redis:alpine
"""

ADVANCED = """\
# gke-image-cache-builder: every available option
execution:
  mode: remote
  zone: us-central1-a
  timeout: 30m
  job_name: web-app-cache-build
  cleanup_grace_seconds: 300

project:
  name: ${GCP_PROJECT}
  credentials_file: null    # defaults to application default credentials

disk:
  name: web-app-cache
  size_gb: 20
  disk_type: pd-ssd
  family: web-app-cache
  labels:
    team: web
    env: prod
  device_name: secondary-disk-image-disk
  mount_point: /mnt/disks/container_layers

images:
  - nginx:1.25
  - gcr.io/my-gcp-project/api:v1.4.0
  - us-docker.pkg.dev/my-gcp-project/apps/worker:v2

auth:
  image_pull_auth: ServiceAccountToken   # None | ServiceAccountToken | DockerConfig | BasicAuth
  service_account: default

remote:
  machine_type: e2-standard-4
  network: default
  subnet: default
  preemptible: false
  dispatch: metadata        # metadata | ssh
  poll_interval_seconds: 30
  initial_wait_seconds: 120

verification:
  enabled: true
  store_checksums: true
  on_failure: label         # label | delete

logging:
  verbose: false
  events_file: ~/.imagecache/events.jsonl
"""

CI_CD = """\
# gke-image-cache-builder: CI pipeline configuration
execution:
  mode: remote
  zone: ${GCP_ZONE}
  timeout: 45m
  job_name: ci-image-cache-${BUILD_ID}
  cleanup_grace_seconds: 0

project:
  name: ${GCP_PROJECT}

disk:
  name: ci-cache-${BUILD_ID}
  size_gb: 50
  family: ci-image-cache
  labels:
    pipeline: ci

images:
  - ${APP_IMAGE}

auth:
  image_pull_auth: ServiceAccountToken

remote:
  preemptible: true

logging:
  quiet: true
"""

TEMPLATES = {
    "basic": BASIC,
    "advanced": ADVANCED,
    "ci-cd": CI_CD,
}


def render_template(kind: str) -> str:
    try:
        return TEMPLATES[kind]
    except KeyError:
        raise ValidationError(
            f"unknown template {kind!r}, expected one of: {', '.join(TEMPLATES)}"
        ) from None


def write_template(kind: str, output: str | Path) -> Path:
    output = Path(output)
    if output.exists():
        raise ValidationError(f"{output} already exists, refusing to overwrite")
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(render_template(kind))
    return output
