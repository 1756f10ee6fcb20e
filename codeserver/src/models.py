from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from codeserver.src.errors import ValidationError

CRD_GROUP = "cs.opensourceways.com"
CRD_VERSION = "v1alpha1"
CRD_PLURAL = "codeservers"
CRD_KIND = "CodeServer"
FINALIZER = f"{CRD_GROUP}/finalizer"

RUNTIME_KUBERNETES = "kubernetes"
RUNTIME_LXD = "lxd"

_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")
_ENV_NAME = re.compile(r"^[-._a-zA-Z][-._a-zA-Z0-9]*$")
# Kubernetes resource.Quantity, without negative values.
_QUANTITY = re.compile(
    r"^\+?(?P<number>\d+(\.\d*)?|\.\d+)(?P<suffix>[eE][+-]?\d+|[KMGTPE]i|[numkMGTPE])?$"
)
_QUANTITY_MULTIPLIERS = {
    "": Decimal(1),
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    **{unit: Decimal(1000) ** power for power, unit in enumerate("kMGTPE", start=1)},
    **{f"{unit}i": Decimal(1024) ** power for power, unit in enumerate("KMGTPE", start=1)},
}
# The subset an LXD instance can express: whole cores or whole millicores,
# and whole bytes with an optional SI or binary unit.
LXD_CPU_QUANTITY = re.compile(r"^\+?(?P<value>\d+)(?P<milli>m?)$")
LXD_MEMORY_QUANTITY = re.compile(r"^\+?(?P<value>\d+)(?P<unit>[KMGTPE]i|[kMGTPE])?$")


class Phase(StrEnum):
    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    ACTIVE = "Active"
    DEGRADED = "Degraded"
    INACTIVE = "Inactive"
    FAILED = "Failed"
    TERMINATING = "Terminating"


# Phases the watcher probes. Inactive is included so recovery can be seen.
PROBED_PHASES = frozenset({Phase.ACTIVE, Phase.DEGRADED, Phase.INACTIVE})


class Reason(StrEnum):
    SPEC_CHANGED = "SpecChanged"
    PROBE_FAILURE_THRESHOLD_REACHED = "ProbeFailureThresholdReached"
    PROBE_RECOVERED = "ProbeRecovered"
    RESOURCE_DELETED = "ResourceDeleted"

    @property
    def probe_related(self) -> bool:
        return self in {Reason.PROBE_FAILURE_THRESHOLD_REACHED, Reason.PROBE_RECOVERED}


@dataclass(frozen=True)
class ReconcileRequest:
    """A unit of work for the reconciler, keyed by ``namespace/name``.

    ``probe_failure_count`` is only set on probe-related requests and carries
    the watcher's counter at the moment the request was emitted.
    """

    key: str
    reason: Reason
    probe_failure_count: int | None = None

    def merge(self, newer: ReconcileRequest) -> ReconcileRequest:
        """Coalesce *newer* into this pending request.

        The newest reason wins; the newest known probe count wins, so a
        ``SpecChanged`` arriving after a threshold request does not lose the
        count the threshold request carried.
        """
        count = newer.probe_failure_count
        if count is None:
            count = self.probe_failure_count
        return replace(newer, probe_failure_count=count)


def make_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def split_key(key: str) -> tuple[str, str]:
    namespace, separator, name = key.partition("/")
    if not separator or not namespace or not name:
        raise ValueError(f"invalid resource key: {key!r}")
    return namespace, name


def object_key(obj: dict[str, Any]) -> str:
    metadata = obj.get("metadata") or {}
    return make_key(metadata.get("namespace", ""), metadata.get("name", ""))


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_time(value: datetime) -> str:
    """Format *value* as a compact RFC 3339 UTC string (``2024-01-15T08:30:00Z``)."""
    return value.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class CodeServerSpec:
    image: str
    runtime: str = RUNTIME_KUBERNETES
    resources: dict[str, dict[str, str]] = field(default_factory=dict)
    ingress: bool = True
    subdomain: str | None = None
    exporter_image: str | None = None
    max_probe_retry: int | None = None
    envs: tuple[tuple[str, str], ...] = ()
    args: tuple[str, ...] = ()

    @classmethod
    def parse(cls, raw: Any) -> CodeServerSpec:
        """Validate a raw CodeServer ``spec`` mapping.

        Raises :class:`ValidationError` describing the first problem found.
        """
        if not isinstance(raw, dict):
            raise ValidationError("spec must be an object")

        image = raw.get("image")
        if not isinstance(image, str) or not image.strip():
            raise ValidationError("spec.image must be a non-empty string")

        runtime = raw.get("runtime", RUNTIME_KUBERNETES)
        if runtime not in {RUNTIME_KUBERNETES, RUNTIME_LXD}:
            raise ValidationError(
                f"spec.runtime must be one of {RUNTIME_KUBERNETES!r}, {RUNTIME_LXD!r}, got: {runtime!r}"
            )

        resources = _parse_resources(raw.get("resources"))
        if runtime == RUNTIME_LXD:
            _check_lxd_limits(resources.get("limits", {}))

        ingress = raw.get("ingress", True)
        if not isinstance(ingress, bool):
            raise ValidationError("spec.ingress must be a boolean")

        subdomain = raw.get("subdomain")
        if subdomain is not None and (
            not isinstance(subdomain, str) or not _DNS_LABEL.match(subdomain)
        ):
            raise ValidationError(f"spec.subdomain must be a DNS label, got: {subdomain!r}")

        exporter_image = raw.get("exporterImage")
        if exporter_image is not None and (
            not isinstance(exporter_image, str) or not exporter_image.strip()
        ):
            raise ValidationError("spec.exporterImage must be a non-empty string")

        max_probe_retry = raw.get("maxProbeRetry")
        if max_probe_retry is not None and (
            isinstance(max_probe_retry, bool)
            or not isinstance(max_probe_retry, int)
            or max_probe_retry < 1
        ):
            raise ValidationError("spec.maxProbeRetry must be an integer >= 1")

        return cls(
            image=image.strip(),
            runtime=runtime,
            resources=resources,
            ingress=ingress,
            subdomain=subdomain,
            exporter_image=exporter_image,
            max_probe_retry=max_probe_retry,
            envs=_parse_envs(raw.get("envs")),
            args=_parse_args(raw.get("args")),
        )


def _parse_resources(raw: Any) -> dict[str, dict[str, str]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError("spec.resources must be an object")
    parsed: dict[str, dict[str, str]] = {}
    for section in ("requests", "limits"):
        values = raw.get(section)
        if values is None:
            continue
        if not isinstance(values, dict):
            raise ValidationError(f"spec.resources.{section} must be an object")
        parsed[section] = {}
        for name, quantity in values.items():
            if isinstance(quantity, bool) or not isinstance(quantity, (str, int, float)):
                raise ValidationError(
                    f"spec.resources.{section}.{name} must be a quantity, got: {quantity!r}"
                )
            text = str(quantity).strip()
            if not _QUANTITY.match(text):
                raise ValidationError(
                    f"spec.resources.{section}.{name} is not a valid quantity: {quantity!r}"
                )
            parsed[section][str(name)] = text
    unknown = set(raw) - {"requests", "limits"}
    if unknown:
        raise ValidationError(f"spec.resources has unknown keys: {', '.join(sorted(unknown))}")
    return parsed


def quantity_value(text: str) -> Decimal | None:
    """Return the numeric value of a Kubernetes quantity, or ``None`` if malformed.

    ``quantity_value("1500m") == quantity_value("1.5")``.
    """
    match = _QUANTITY.match(text.strip())
    if match is None:
        return None
    number = Decimal(match["number"])
    suffix = match["suffix"] or ""
    if len(suffix) > 1 and suffix[0] in "eE":
        return number.scaleb(int(suffix[1:]))
    return number * _QUANTITY_MULTIPLIERS[suffix]


def _check_lxd_limits(limits: dict[str, str]) -> None:
    cpu = limits.get("cpu")
    if cpu is not None:
        match = LXD_CPU_QUANTITY.match(cpu)
        if match is None or int(match["value"]) == 0:
            raise ValidationError(
                "spec.resources.limits.cpu must be a positive whole number of cores "
                f"or millicores for the lxd runtime, got: {cpu!r}"
            )
    memory = limits.get("memory")
    if memory is not None:
        match = LXD_MEMORY_QUANTITY.match(memory)
        if match is None or int(match["value"]) == 0:
            raise ValidationError(
                "spec.resources.limits.memory must be a positive whole number of bytes "
                f"with an optional unit for the lxd runtime, got: {memory!r}"
            )
    unsupported = set(limits) - {"cpu", "memory"}
    if unsupported:
        raise ValidationError(
            f"spec.resources.limits has keys the lxd runtime cannot apply: {', '.join(sorted(unsupported))}"
        )


def _parse_envs(raw: Any) -> tuple[tuple[str, str], ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValidationError("spec.envs must be a list")
    envs = []
    for entry in raw:
        name = entry.get("name") if isinstance(entry, dict) else None
        if not isinstance(name, str) or not _ENV_NAME.match(name):
            raise ValidationError(f"spec.envs entry has an invalid name: {entry!r}")
        value = entry.get("value", "")
        envs.append((name, "" if value is None else str(value)))
    return tuple(envs)


def _parse_args(raw: Any) -> tuple[str, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list) or not all(isinstance(arg, str) for arg in raw):
        raise ValidationError("spec.args must be a list of strings")
    return tuple(raw)


def current_phase(status: dict[str, Any] | None) -> Phase:
    raw = (status or {}).get("phase")
    try:
        return Phase(raw)
    except ValueError:
        return Phase.PENDING


def probe_failure_count(status: dict[str, Any] | None) -> int:
    raw = (status or {}).get("probeFailureCount", 0)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
        return 0
    return raw


def compute_phase(
    *,
    failure_count: int,
    max_probe_retry: int,
    workload_available: bool,
    previous: Phase,
) -> Phase:
    """Apply the phase transition rule for a resource that is not being deleted.

    The probe failure count alone decides ``Inactive``; otherwise workload
    availability decides between ``Active``, ``Degraded`` (it was up before) and
    ``Provisioning``.
    """
    if failure_count >= max_probe_retry:
        return Phase.INACTIVE
    if workload_available:
        return Phase.ACTIVE
    if previous in {Phase.ACTIVE, Phase.DEGRADED, Phase.INACTIVE}:
        return Phase.DEGRADED
    return Phase.PROVISIONING


def set_condition(
    conditions: list[dict[str, Any]],
    condition_type: str,
    status: bool,
    reason: str,
    message: str,
    now: str,
) -> list[dict[str, Any]]:
    """Return a copy of *conditions* with *condition_type* set.

    ``lastTransitionTime`` only moves when the status value actually changes.
    """
    status_text = "True" if status else "False"
    updated: list[dict[str, Any]] = []
    found = False
    for condition in conditions:
        if condition.get("type") != condition_type:
            updated.append(condition)
            continue
        found = True
        transition_time = condition.get("lastTransitionTime", now)
        if condition.get("status") != status_text:
            transition_time = now
        updated.append(
            {
                "type": condition_type,
                "status": status_text,
                "reason": reason,
                "message": message,
                "lastTransitionTime": transition_time,
            }
        )
    if not found:
        updated.append(
            {
                "type": condition_type,
                "status": status_text,
                "reason": reason,
                "message": message,
                "lastTransitionTime": now,
            }
        )
    return updated


def find_condition(conditions: list[dict[str, Any]], condition_type: str) -> dict[str, Any] | None:
    for condition in conditions:
        if condition.get("type") == condition_type:
            return condition
    return None
