# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/registry/auth.py
from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping, Optional

from imagecache.config.models import AuthMechanism
from imagecache.errors import AuthError

log = logging.getLogger("imagecache")

TOKEN_USERNAME = "oauth2accesstoken"

CLOUD_REGISTRY_DOMAINS = ("gcr.io", "pkg.dev")


class AuthType(str, Enum):
    NONE = "none"
    BEARER = "bearer"
    BASIC = "basic"


@dataclass(frozen=True)
class AuthConfig:
    type: AuthType = AuthType.NONE
    registry: Optional[str] = None
    token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.type is AuthType.NONE

    def user_argument(self) -> Optional[str]:
        """``user:secret`` as understood by ``ctr image pull --user``."""
        if self.type is AuthType.BEARER:
            return f"{self.username or TOKEN_USERNAME}:{self.token}"
        if self.type is AuthType.BASIC:
            return f"{self.username}:{self.password}"
        return None

    def secret(self) -> Optional[str]:
        return self.token if self.type is AuthType.BEARER else self.password

    def __repr__(self) -> str:
        return f"AuthConfig(type={self.type.value}, registry={self.registry!r}, username={self.username!r})"


def is_cloud_registry(host: str) -> bool:
    host = host.split(":", 1)[0].lower()
    return any(host == d or host.endswith("." + d) for d in CLOUD_REGISTRY_DOMAINS)


class RegistryAuthenticator:
    """
    Resolves the pull credential for one registry host.

    ServiceAccountToken credentials are scoped to Google registries; any
    other host downgrades to an anonymous pull and a warning is logged.
    """

    def __init__(
        self,
        mechanism: AuthMechanism,
        *,
        token_source: Optional[Callable[[], str]] = None,
        environ: Optional[Mapping[str, str]] = None,
        docker_config_dir: Optional[Path] = None,
    ):
        self.mechanism = mechanism
        self.token_source = token_source
        self.environ = os.environ if environ is None else environ
        self.docker_config_dir = docker_config_dir
        self._token: Optional[str] = None

    def resolve(self, registry: str) -> AuthConfig:
        if self.mechanism is AuthMechanism.NONE:
            return AuthConfig(registry=registry)
        if self.mechanism is AuthMechanism.SERVICE_ACCOUNT_TOKEN:
            return self._service_account(registry)
        if self.mechanism is AuthMechanism.DOCKER_CONFIG:
            return self._docker_config(registry)
        if self.mechanism is AuthMechanism.BASIC_AUTH:
            return self._basic(registry)
        raise AuthError(f"unsupported auth mechanism: {self.mechanism}")

    def resolve_all(self, registries) -> dict[str, AuthConfig]:
        return {host: self.resolve(host) for host in dict.fromkeys(registries)}

    # ------------------------------------------------------------------

    def _service_account(self, registry: str) -> AuthConfig:
        if not is_cloud_registry(registry):
            log.warning(
                "ServiceAccountToken auth does not apply to %s; pulling anonymously", registry
            )
            return AuthConfig(registry=registry)

        if self._token is None:
            if self.token_source is None:
                raise AuthError("no token source configured for ServiceAccountToken auth")
            log.info("Fetching OAuth token...")
            try:
                token = self.token_source()
            except Exception as e:
                raise AuthError(f"failed to fetch access token for {registry}: {e}") from e
            if not token:
                raise AuthError(f"failed to fetch access token for {registry}: empty token")
            self._token = token
            log.info("OAuth token obtained successfully")

        return AuthConfig(
            type=AuthType.BEARER,
            registry=registry,
            token=self._token,
            username=TOKEN_USERNAME,
        )

    def _docker_config_path(self) -> Path:
        if self.docker_config_dir is not None:
            return Path(self.docker_config_dir) / "config.json"
        env_dir = self.environ.get("DOCKER_CONFIG")
        base = Path(env_dir) if env_dir else Path.home() / ".docker"
        return base / "config.json"

    def _docker_config(self, registry: str) -> AuthConfig:
        path = self._docker_config_path()
        if not path.is_file():
            log.debug("docker config %s not found; pulling %s anonymously", path, registry)
            return AuthConfig(registry=registry)

        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise AuthError(f"cannot read docker config {path}: {e}") from e

        auths = data.get("auths") or {}
        entry = None
        for key in (registry, f"https://{registry}", f"https://{registry}/v1/"):
            if key in auths:
                entry = auths[key]
                break
        if registry == "docker.io" and entry is None:
            entry = auths.get("https://index.docker.io/v1/")
        if not entry:
            return AuthConfig(registry=registry)

        username, password = entry.get("username"), entry.get("password")
        if entry.get("auth"):
            try:
                decoded = base64.b64decode(entry["auth"]).decode()
            except (binascii.Error, UnicodeDecodeError) as e:
                raise AuthError(f"invalid auth entry for {registry} in {path}") from e
            username, _, password = decoded.partition(":")

        if not username or not password:
            return AuthConfig(registry=registry)
        return AuthConfig(type=AuthType.BASIC, registry=registry, username=username, password=password)

    def _basic(self, registry: str) -> AuthConfig:
        username = self.environ.get("REGISTRY_USERNAME")
        password = self.environ.get("REGISTRY_PASSWORD")
        if not username or not password:
            log.warning("REGISTRY_USERNAME/REGISTRY_PASSWORD not set; pulling %s anonymously", registry)
            return AuthConfig(registry=registry)
        return AuthConfig(type=AuthType.BASIC, registry=registry, username=username, password=password)
