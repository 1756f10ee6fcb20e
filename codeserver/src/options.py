from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Options:
    """Process-wide operator configuration, shared read-only by every component."""

    domain_name: str = "pool1.playground.osinfra.cn"
    exporter_image: str = "ghcr.io/artificial-aidan/active-exporter:latest"
    probe_interval_seconds: int = 20
    max_probe_retry: int = 10
    probe_timeout_seconds: int = 5
    probe_concurrency: int = 16
    https_secret_name: str = "code-server-secret"
    lxd_client_secret_name: str = "lxd-client-secret"
    enable_user_ingress: bool = False
    max_concurrency: int = 10
    watch_namespace: str | None = None
    operator_namespace: str = "code-server-operator"
    ingress_class_name: str | None = None
    resync_seconds: int = 300
    max_backoff_seconds: int = 300


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_optional(name: str) -> str | None:
    raw = os.getenv(name, "").strip()
    return raw or None


def build_options_from_env() -> Options:
    """Construct :class:`Options` from environment variables.

    The probe timeout must fit inside one probe interval, otherwise a single
    unresponsive instance could push a watcher pass past the next tick.
    """
    domain_name = os.getenv("DOMAIN_NAME", Options.domain_name).strip()
    if not domain_name:
        raise ValueError("DOMAIN_NAME must be a non-empty string")

    probe_interval = env_int("PROBE_INTERVAL_SECONDS", Options.probe_interval_seconds, minimum=1)
    probe_timeout = env_int("PROBE_TIMEOUT_SECONDS", Options.probe_timeout_seconds, minimum=1)
    if probe_timeout >= probe_interval:
        raise ValueError(
            "PROBE_TIMEOUT_SECONDS must be smaller than PROBE_INTERVAL_SECONDS"
        )

    return Options(
        domain_name=domain_name,
        exporter_image=os.getenv("EXPORTER_IMAGE", Options.exporter_image),
        probe_interval_seconds=probe_interval,
        max_probe_retry=env_int("MAX_PROBE_RETRY", Options.max_probe_retry, minimum=1),
        probe_timeout_seconds=probe_timeout,
        probe_concurrency=env_int("PROBE_CONCURRENCY", Options.probe_concurrency, minimum=1),
        https_secret_name=os.getenv("HTTPS_SECRET_NAME", Options.https_secret_name),
        lxd_client_secret_name=os.getenv(
            "LXD_CLIENT_SECRET_NAME", Options.lxd_client_secret_name
        ),
        enable_user_ingress=env_bool("ENABLE_USER_INGRESS", default=False),
        max_concurrency=env_int("MAX_CONCURRENCY", Options.max_concurrency, minimum=1),
        watch_namespace=_env_optional("WATCH_NAMESPACE"),
        operator_namespace=os.getenv("OPERATOR_NAMESPACE", Options.operator_namespace),
        ingress_class_name=_env_optional("INGRESS_CLASS_NAME"),
        resync_seconds=env_int("RESYNC_SECONDS", Options.resync_seconds, minimum=1),
        max_backoff_seconds=env_int(
            "MAX_BACKOFF_SECONDS", Options.max_backoff_seconds, minimum=1
        ),
    )
