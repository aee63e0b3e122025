# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/remote/startup.py
from __future__ import annotations

import os
import re
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from imagecache.cloud.metadata import METADATA_URL
from imagecache.config.models import BuildConfig
from imagecache.cache.pipeline import READY_MARKER

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
STARTUP_TEMPLATE = "startup-script.sh.j2"

OPERATION_KEY = "imagecache-operation"
REGISTRY_MIRROR = "mirror.gcr.io"


def expand_env_vars(value: str) -> str:
    return re.sub(r"\$\{([^}^{]+)\}", lambda m: os.getenv(m.group(1), m.group(0)), value)


class TemplateRenderer:
    def __init__(self, templates_dir: Path = TEMPLATES_DIR):
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=False,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )

    def render(self, template_name: str, context: dict) -> str:
        expanded = {k: expand_env_vars(str(v)) if isinstance(v, str) else v for k, v in context.items()}
        tmpl = self.env.get_template(template_name)
        return tmpl.render(**expanded)


def render_startup_script(cfg: BuildConfig, renderer: TemplateRenderer | None = None) -> str:
    renderer = renderer or TemplateRenderer()
    return renderer.render(
        STARTUP_TEMPLATE,
        {
            "job_name": cfg.execution.job_name,
            "package_spec": cfg.remote.package_spec,
            "venv": "/opt/imagecache",
            "registry_mirror": REGISTRY_MIRROR,
            "ready_marker": READY_MARKER,
            "operation_key": OPERATION_KEY,
            "metadata_url": METADATA_URL,
            "agent_poll_seconds": 5,
        },
    )
