# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/config/loader.py

import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from imagecache.errors import ValidationError
from .models import BuildConfig

log = logging.getLogger("imagecache")


def _deep_merge(base: dict, override: Mapping[str, Any]) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Only overwrites when the override value is non-empty.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        elif isinstance(value, dict):
            merged = _deep_merge({}, value)
            if merged:
                base[key] = merged
        else:
            if value not in (None, "", [], {}):
                base[key] = value
    return base


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    raw = path.read_text()
    expanded = os.path.expandvars(raw)
    data = yaml.safe_load(expanded) or {}
    if not isinstance(data, dict):
        raise ValidationError(f"{path}: top level of a config file must be a mapping")
    return data


def format_errors(exc: PydanticValidationError) -> str:
    lines = []
    for err in exc.errors():
        where = ".".join(str(p) for p in err.get("loc", ())) or "config"
        lines.append(f"{where}: {err.get('msg')}")
    return "; ".join(lines)


def build_config(data: Mapping[str, Any]) -> BuildConfig:
    try:
        return BuildConfig.model_validate(dict(data))
    except PydanticValidationError as e:
        raise ValidationError(f"invalid configuration: {format_errors(e)}") from e


def load_config(
    path: Optional[str | Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> BuildConfig:
    """
    Load and validate a build config.

    Values come from the YAML file at ``path`` (if any) with ``overrides``
    deep-merged on top, so command-line flags win over the file.
    ``${ENV_VAR}`` placeholders in the file are expanded at load time.
    """
    data: dict = {}
    if path is not None:
        path = Path(path)
        if not path.is_file():
            raise ValidationError(f"config file not found: {path}")
        log.debug("Loading config from %s", path)
        data = _load_yaml(path)

    if overrides:
        _deep_merge(data, overrides)

    return build_config(data)
