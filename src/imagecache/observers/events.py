# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict, field
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str                 # ISO timestamp
    run_id: str             # correlates all events of a single build
    project: str            # GCP project
    image: str              # name of the disk image being built

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(project: str, image: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": run_id or str(uuid.uuid4()),
        "project": project,
        "image": image,
    }


# ---------------------------------------------------------------------
# Build lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BuildStarted(BaseEvent):
    mode: str
    zone: str
    images: List[str] = field(default_factory=list)

@dataclass(frozen=True)
class StateEntered(BaseEvent):
    state: str

@dataclass(frozen=True)
class StepSucceeded(BaseEvent):
    step: str
    duration_ms: int

@dataclass(frozen=True)
class StepFailed(BaseEvent):
    step: str
    error: str


# ---------------------------------------------------------------------
# Cloud resources
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ResourceCreated(BaseEvent):
    kind: str           # "disk" | "vm" | "image"
    name: str

@dataclass(frozen=True)
class ResourceDeleted(BaseEvent):
    kind: str
    name: str

@dataclass(frozen=True)
class CleanupResult(BaseEvent):
    status: str         # "OK" | "PARTIAL"
    errors: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------
# Remote host and verification
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RemoteStatusChanged(BaseEvent):
    instance: str
    operation: str
    status: str

@dataclass(frozen=True)
class VerificationResult(BaseEvent):
    ok: bool
    verified: int
    mismatched: List[str] = field(default_factory=list)
    unreadable: List[str] = field(default_factory=list)
    error: Optional[str] = None


# ---------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BuildSummary(BaseEvent):
    status: str         # "OK" | "FAILED"
    duration_s: int
    failed_step: Optional[str] = None
    error: Optional[str] = None
