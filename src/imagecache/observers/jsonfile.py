# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/observers/jsonfile.py
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

from .events import BaseEvent


class JsonFileObserver:
    """
    Appends build events to a JSON-lines file. The file may be shared by
    many builds; ``run_id`` on every record tells them apart.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def record(event: BaseEvent) -> Dict[str, Any]:
        return {"type": type(event).__name__, **event.dict()}

    def notify(self, event: BaseEvent) -> None:
        line = json.dumps(self.record(event), default=str)
        with self.path.open("a") as f:
            f.write(line + "\n")
