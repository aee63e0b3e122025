# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/observers/logger.py
from __future__ import annotations

import logging

from .events import BaseEvent

# carried by every event; already in the run log header
_CONTEXT_FIELDS = ("ts", "run_id", "project")


class LoggerObserver:
    """Mirrors build events into the per-run log file at DEBUG."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        fields = [
            f"{k}={v}"
            for k, v in event.dict().items()
            if k not in _CONTEXT_FIELDS and v not in (None, [], "")
        ]
        self.logger.debug("[EVENT] %s: %s", type(event).__name__, ", ".join(fields))
