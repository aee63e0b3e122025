# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/execution/runner.py
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

from imagecache.errors import BuildTimeoutError, CommandError
from imagecache.utils.polling import Deadline

Cmd = Sequence[Union[str, "os.PathLike[str]"]]


@dataclass
class CommandRunner:
    """
    Runs external commands with debug logging.

    When a ``deadline`` is set every command is killed once the build
    deadline passes, and ``BuildTimeoutError`` is raised in its place.
    """

    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("imagecache"))
    label: Optional[str] = None
    deadline: Optional[Deadline] = None

    def run(
        self,
        cmd: Cmd,
        *,
        check: bool = False,
        text: bool = True,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        redact: Sequence[str] = (),
    ) -> subprocess.CompletedProcess:
        label = self.label or "cmd"
        cmd_str = " ".join(map(str, cmd))
        for secret in redact:
            if secret:
                cmd_str = cmd_str.replace(secret, "***")

        # --- Log command ---
        self.logger.debug(f"[{label}] $ {cmd_str}")

        timeout = None
        if self.deadline is not None:
            self.deadline.check(cmd_str)
            timeout = self.deadline.timeout()

        start = time.time()

        try:
            result = subprocess.run(
                [str(c) for c in cmd],
                capture_output=True,
                check=False,
                text=text,
                cwd=cwd,
                env=env,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise CommandError(cmd_str, 127, stderr=str(e)) from e
        except subprocess.TimeoutExpired as e:
            self.logger.debug(f"[{label}][killed after {time.time() - start:.2f}s]")
            raise BuildTimeoutError(
                f"timed out after {self.deadline.timeout_seconds}s running: {cmd_str}"
            ) from e

        duration = time.time() - start

        # --- Log outputs ---
        if result.stdout:
            self.logger.debug(f"[{label}][stdout]\n{result.stdout.rstrip()}")
        if result.stderr:
            self.logger.debug(f"[{label}][stderr]\n{result.stderr.rstrip()}")
        self.logger.debug(f"[{label}][exit {result.returncode}] ({duration:.2f}s)")

        if check and result.returncode != 0:
            raise CommandError(cmd_str, result.returncode, result.stdout or "", result.stderr or "")

        return result

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)
