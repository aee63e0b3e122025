# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/cache/puller.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from imagecache.errors import CommandError, ImagePullError
from imagecache.registry.auth import AuthConfig
from imagecache.registry.reference import normalize_reference, registry_host
from imagecache.runtime.containerd import ContainerRuntime
from imagecache.utils.polling import Deadline

log = logging.getLogger("imagecache")


@dataclass
class PullOutcome:
    image: str
    reference: str
    ok: bool
    exit_status: int = 0
    error: Optional[str] = None


@dataclass
class PullReport:
    outcomes: List[PullOutcome] = field(default_factory=list)
    failed: bool = False

    def add(self, outcome: PullOutcome) -> None:
        self.outcomes.append(outcome)
        if not outcome.ok:
            self.failed = True

    @property
    def pulled(self) -> List[str]:
        return [o.reference for o in self.outcomes if o.ok]

    def summary(self) -> str:
        ok = sum(1 for o in self.outcomes if o.ok)
        return f"PULLED={ok} FAILED={len(self.outcomes) - ok}"


class ImagePuller:
    """
    Pulls images strictly in order and stops at the first failure.

    Already pulled content is left in containerd; the build disk is thrown
    away on failure anyway.
    """

    def __init__(self, runtime: ContainerRuntime, deadline: Optional[Deadline] = None):
        self.runtime = runtime
        self.deadline = deadline or Deadline.never()

    def pull_all(
        self,
        images: Sequence[str],
        credentials: Dict[str, AuthConfig],
    ) -> PullReport:
        report = PullReport()
        total = len(images)
        for i, image in enumerate(images, start=1):
            self.deadline.check(f"pull of {image}")
            reference = normalize_reference(image)
            auth = credentials.get(registry_host(reference)) or AuthConfig()
            log.info("[%d/%d] Pulling image: %s", i, total, reference)
            try:
                self.runtime.pull(reference, auth)
            except CommandError as e:
                report.add(PullOutcome(image, reference, ok=False, exit_status=e.returncode, error=str(e)))
                log.error("Failed to pull image %s (exit %d)", reference, e.returncode)
                raise ImagePullError(f"failed to pull image {reference}: {e}", report=report) from e
            report.add(PullOutcome(image, reference, ok=True))
            log.info("Successfully pulled: %s", reference)
        return report
