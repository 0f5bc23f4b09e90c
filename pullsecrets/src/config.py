from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass

SECRET_NAME_ENV = "AURORA_SECRET_NAME"
SECRET_PAYLOAD_ENV = "AURORA_SECRET_DOCKERCONFIGJSON"

_DNS1123_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded once at startup.

    Attributes:
        secret_name: Name of the registry credential secret, also the image
                     pull secret reference added to service accounts.
        payload:     Docker ``config.json`` document stored in the secret.
        workers:     Worker threads per controller.
        max_retries: Rate-limited requeues before a failing key is dropped.
    """

    secret_name: str
    payload: str
    workers: int = 2
    max_retries: int = 15
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 1000.0
    resync_period_seconds: int = 300
    cache_sync_timeout_seconds: int = 300
    health_port: int = 8080


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _required(values: Mapping[str, str], name: str) -> str:
    value = values.get(name, "")
    if not value.strip():
        raise ConfigError(
            f"{name} is not set. Every reconciliation would produce an empty "
            "or invalid secret, refusing to start."
        )
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Load and validate controller config from the environment.

    Both credential values are required.  The payload must be a JSON object
    because it is stored verbatim as a ``kubernetes.io/dockerconfigjson``
    secret.
    """
    values = env if env is not None else os.environ

    secret_name = _required(values, SECRET_NAME_ENV).strip()
    if len(secret_name) > 253 or not _DNS1123_SUBDOMAIN.match(secret_name):
        raise ConfigError(
            f"{SECRET_NAME_ENV} must be a valid DNS-1123 subdomain, got: {secret_name!r}"
        )

    payload = _required(values, SECRET_PAYLOAD_ENV)
    try:
        document = json.loads(payload)
    except ValueError as exc:
        raise ConfigError(f"{SECRET_PAYLOAD_ENV} must be a JSON document") from exc
    if not isinstance(document, dict):
        raise ConfigError(f"{SECRET_PAYLOAD_ENV} must be a JSON object")

    backoff_base_seconds = env_int("BACKOFF_BASE_SECONDS", 5, minimum=1, env=values)
    backoff_max_seconds = env_int("BACKOFF_MAX_SECONDS", 1000, minimum=1, env=values)
    if backoff_max_seconds < backoff_base_seconds:
        raise ConfigError("BACKOFF_MAX_SECONDS must be >= BACKOFF_BASE_SECONDS")

    return ControllerConfig(
        secret_name=secret_name,
        payload=payload,
        workers=env_int("WORKERS", 2, minimum=1, env=values),
        max_retries=env_int("MAX_RETRIES", 15, minimum=0, env=values),
        backoff_base_seconds=float(backoff_base_seconds),
        backoff_max_seconds=float(backoff_max_seconds),
        resync_period_seconds=env_int("RESYNC_PERIOD_SECONDS", 300, minimum=0, env=values),
        cache_sync_timeout_seconds=env_int("CACHE_SYNC_TIMEOUT_SECONDS", 300, minimum=1, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
    )
