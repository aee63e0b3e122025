# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/cloud/metadata.py
from __future__ import annotations

import logging
from typing import Optional

import requests

from imagecache.errors import AuthError, ValidationError

log = logging.getLogger("imagecache")

METADATA_URL = "http://metadata.google.internal/computeMetadata/v1"
HEADERS = {"Metadata-Flavor": "Google"}


class MetadataClient:
    """GCE instance metadata server, reachable only from inside a VM."""

    def __init__(self, base_url: str = METADATA_URL, *, session: Optional[requests.Session] = None, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _get(self, path: str, **params) -> requests.Response:
        resp = self.session.get(
            f"{self.base_url}/{path.lstrip('/')}",
            headers=HEADERS,
            params=params or None,
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp

    def instance_name(self) -> str:
        try:
            return self._get("instance/name").text.strip()
        except requests.RequestException as e:
            raise ValidationError(
                f"local mode must run on a GCE VM; metadata server unavailable: {e}"
            ) from e

    def zone(self) -> str:
        """Zone of the current VM (the server answers ``projects/<n>/zones/<zone>``)."""
        try:
            return self._get("instance/zone").text.strip().rsplit("/", 1)[-1]
        except requests.RequestException as e:
            raise ValidationError(f"cannot detect zone from metadata server: {e}") from e

    def access_token(self, service_account: str = "default") -> str:
        try:
            data = self._get(f"instance/service-accounts/{service_account}/token").json()
        except (requests.RequestException, ValueError) as e:
            raise AuthError(f"failed to fetch access token from metadata server: {e}") from e
        token = data.get("access_token")
        if not token:
            raise AuthError("metadata server returned no access token")
        return token
