# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/errors.py
from __future__ import annotations

from typing import Optional


class ImageCacheError(RuntimeError):
    """Base class for every failure raised by the image cache builder.

    ``step`` names the workflow step the error surfaced in. Components leave it
    unset; the orchestrator and the in-host pipeline stamp it on the way up.
    """

    def __init__(self, message: str, *, step: Optional[str] = None):
        super().__init__(message)
        self.step = step

    def annotate(self, step: str) -> "ImageCacheError":
        if self.step is None:
            self.step = step
        return self


# ---------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------
class ValidationError(ImageCacheError):
    """Bad input detected before any cloud resource exists."""


class InvalidImageReferenceError(ValidationError):
    pass


# ---------------------------------------------------------------------
# Provisioning (disk / VM / image lifecycle)
# ---------------------------------------------------------------------
class ProvisioningError(ImageCacheError):
    """A cloud provider call failed."""


# ---------------------------------------------------------------------
# Execution (work done on the build host)
# ---------------------------------------------------------------------
class ExecutionError(ImageCacheError):
    pass


class CommandError(ExecutionError):
    def __init__(self, cmd: str, returncode: int, stdout: str = "", stderr: str = ""):
        detail = (stderr or stdout).strip()
        msg = f"command failed (rc={returncode}): {cmd}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)
        self.cmd = cmd
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class DeviceNotFoundError(ExecutionError):
    pass


class FormatError(ExecutionError):
    pass


class MountError(ExecutionError):
    pass


class AuthError(ExecutionError):
    pass


class ImagePullError(ExecutionError):
    def __init__(self, message: str, report=None):
        super().__init__(message)
        self.report = report


class SnapshotResolutionError(ExecutionError):
    pass


class SnapshotCopyError(ExecutionError):
    pass


class MetadataWriteError(ExecutionError):
    pass


class RemoteExecutionError(ExecutionError):
    """The remote host reported a failure on its status channel."""


# ---------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------
class VerificationError(ImageCacheError):
    def __init__(self, message: str, report=None):
        super().__init__(message)
        self.report = report


class MissingChecksumError(VerificationError):
    pass


class ChecksumMismatchError(VerificationError):
    pass


# ---------------------------------------------------------------------
# Deadlines
# ---------------------------------------------------------------------
class BuildTimeoutError(ImageCacheError):
    """A blocking wait ran past the build deadline."""
