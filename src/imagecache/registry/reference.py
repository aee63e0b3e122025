# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/registry/reference.py
from __future__ import annotations

import re

from imagecache.errors import InvalidImageReferenceError

DEFAULT_REGISTRY = "docker.io"
OFFICIAL_NAMESPACE = "library"

# name components are lowercase alnum separated by . _ __ or -
_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_TAG = r"[\w][\w.-]{0,127}"
_DIGEST = r"[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}"
_DOMAIN = r"(?:localhost|[A-Za-z0-9.-]+\.[A-Za-z0-9-]+|[A-Za-z0-9.-]+:[0-9]+|[A-Za-z0-9.-]+\.[A-Za-z0-9-]+:[0-9]+)"

_REFERENCE = re.compile(
    rf"^(?:{_DOMAIN}/)?{_COMPONENT}(?:/{_COMPONENT})*(?::{_TAG})?(?:@{_DIGEST})?$"
)


def split_domain(reference: str) -> tuple[str | None, str]:
    """
    Split ``reference`` into (domain, remainder).

    The first path segment is a registry domain when it contains a dot or a
    port, or is ``localhost``; otherwise the reference has no domain.
    """
    if "/" not in reference:
        return None, reference
    first, rest = reference.split("/", 1)
    if "." in first or ":" in first or first == "localhost":
        return first, rest
    return None, reference


def normalize_reference(reference: str) -> str:
    """
    Return the fully qualified form containerd expects.

        nginx:latest          -> docker.io/library/nginx:latest
        bitnami/redis:7       -> docker.io/bitnami/redis:7
        gcr.io/proj/app:v1    -> gcr.io/proj/app:v1
    """
    domain, remainder = split_domain(reference)
    if domain is not None:
        return reference
    if "/" not in remainder:
        return f"{DEFAULT_REGISTRY}/{OFFICIAL_NAMESPACE}/{remainder}"
    return f"{DEFAULT_REGISTRY}/{remainder}"


def registry_host(reference: str) -> str:
    domain, _ = split_domain(reference)
    return domain or DEFAULT_REGISTRY


def validate_reference(reference: str) -> str:
    if not reference:
        raise InvalidImageReferenceError("image name cannot be empty")
    if any(c.isspace() for c in reference):
        raise InvalidImageReferenceError(f"image name cannot contain spaces: {reference!r}")

    _, remainder = split_domain(reference)
    last = remainder.rsplit("/", 1)[-1]
    if ":" not in last and "@" not in remainder:
        raise InvalidImageReferenceError(
            f"image should include a tag or digest (e.g., nginx:latest): {reference!r}"
        )
    if not _REFERENCE.match(reference):
        raise InvalidImageReferenceError(f"malformed image reference: {reference!r}")
    return reference
