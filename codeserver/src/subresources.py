from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import ApiException

from codeserver.src.errors import TransientError, is_not_found
from codeserver.src.kube import KubeClients
from codeserver.src.lxd import LXD_IMAGE_KEY, LXD_SPEC_HASH_KEY, LXDClient, instance_config
from codeserver.src.models import RUNTIME_LXD, CodeServerSpec
from codeserver.src.options import Options
from codeserver.src.resources import (
    MANAGED_BY,
    SPEC_HASH_ANNOTATION,
    address_probe_url,
    build_deployment,
    build_endpoints,
    build_ingress,
    build_service,
    hash_body,
    live_annotations,
    live_matches,
    lxd_instance_name,
    service_probe_url,
)

LOGGER = logging.getLogger(__name__)

CREATED = "created"
PATCHED = "patched"
UNCHANGED = "unchanged"
DELETED = "deleted"
ABSENT = "absent"
PENDING = "pending"

_ENVELOPE_KEYS = frozenset({"apiVersion", "kind", "metadata"})


@dataclass
class ReconcileContext:
    """Everything one reconciliation pass knows about a single CodeServer.

    Kinds record what they observe (availability, instance address) on the
    context so later kinds and the status computation can use it.
    """

    name: str
    namespace: str
    owner: dict[str, Any]
    spec: CodeServerSpec
    options: Options
    clients: KubeClients
    status: dict[str, Any] = field(default_factory=dict)
    lxd: Callable[[], LXDClient] | None = None
    logger: logging.Logger = LOGGER
    workload_available: bool = False
    instance_address: str | None = None
    lxd_instance: str | None = None

    @property
    def lxd_runtime(self) -> bool:
        return self.spec.runtime == RUNTIME_LXD

    @property
    def probe_url(self) -> str | None:
        if self.lxd_runtime:
            return address_probe_url(self.instance_address) if self.instance_address else None
        return service_probe_url(self.name, self.namespace)


def _labels(obj: Any) -> dict[str, str]:
    if isinstance(obj, dict):
        labels = (obj.get("metadata") or {}).get("labels")
    else:
        labels = getattr(getattr(obj, "metadata", None), "labels", None)
    return labels if isinstance(labels, dict) else {}


def managed_by_operator(obj: Any) -> bool:
    return _labels(obj).get("app.kubernetes.io/managed-by") == MANAGED_BY


class ApiKind:
    """Ensure-desired-state operations for one namespaced built-in API kind.

    The CRUD calls are looked up on the API client by naming convention
    (``read_namespaced_<resource>`` and friends), so each kind is just a
    resource name, the client that serves it, and a builder.
    """

    def __init__(
        self,
        kind: str,
        client_attr: str,
        resource: str,
        build: Callable[[ReconcileContext], dict[str, Any] | None],
        *,
        adopt_unmanaged: bool = False,
    ) -> None:
        self.kind = kind
        self.client_attr = client_attr
        self.resource = resource
        self.build = build
        self.adopt_unmanaged = adopt_unmanaged

    def _call(self, clients: KubeClients, verb: str, **kwargs: Any) -> Any:
        api = getattr(clients, self.client_attr)
        return getattr(api, f"{verb}_namespaced_{self.resource}")(**kwargs)

    def read(self, clients: KubeClients, namespace: str, name: str) -> Any | None:
        try:
            return self._call(clients, "read", name=name, namespace=namespace)
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise

    def observe(self, ctx: ReconcileContext, live: Any) -> None:
        """Hook for kinds whose live state feeds the status computation."""

    def ensure(self, ctx: ReconcileContext) -> str:
        desired = self.build(ctx)
        live = self.read(ctx.clients, ctx.namespace, ctx.name)

        if desired is None:
            if live is None or not managed_by_operator(live):
                return ABSENT
            self.delete(ctx.clients, ctx.namespace, ctx.name)
            ctx.logger.info("Deleted %s %s/%s", self.kind, ctx.namespace, ctx.name)
            return DELETED

        if live is None:
            created = self._call(ctx.clients, "create", namespace=ctx.namespace, body=desired)
            ctx.logger.info("Created %s %s/%s", self.kind, ctx.namespace, ctx.name)
            self.observe(ctx, created)
            return CREATED

        if not managed_by_operator(live) and not self.adopt_unmanaged:
            raise TransientError(
                f"{self.kind} {ctx.namespace}/{ctx.name} exists and is not managed by {MANAGED_BY}"
            )

        live_body = self._as_dict(ctx.clients, live)
        if not self.drifted(desired, live_body):
            self.observe(ctx, live)
            return UNCHANGED

        replaced = self._call(
            ctx.clients,
            "replace",
            name=ctx.name,
            namespace=ctx.namespace,
            body=self.replace_body(desired, live_body),
        )
        ctx.logger.info("Replaced drifted %s %s/%s", self.kind, ctx.namespace, ctx.name)
        self.observe(ctx, replaced)
        return PATCHED

    def _as_dict(self, clients: KubeClients, obj: Any) -> dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        api = getattr(clients, self.client_attr)
        return api.api_client.sanitize_for_serialization(obj)

    @staticmethod
    def drifted(desired: dict[str, Any], live: dict[str, Any]) -> bool:
        """Whether *live* differs from *desired* in anything the operator owns.

        The hash annotation catches changes to the desired body; the field
        comparison catches edits made to the live object behind our back.
        """
        desired_metadata = desired["metadata"]
        desired_hash = desired_metadata["annotations"][SPEC_HASH_ANNOTATION]
        if live_annotations(live).get(SPEC_HASH_ANNOTATION) != desired_hash:
            return True
        live_labels = (live.get("metadata") or {}).get("labels")
        if not live_matches(live_labels, desired_metadata["labels"]):
            return True
        owned = {key: value for key, value in desired.items() if key not in _ENVELOPE_KEYS}
        return not live_matches(live, owned)

    def replace_body(self, desired: dict[str, Any], live: dict[str, Any]) -> dict[str, Any]:
        """The full desired object, pinned to the live ``resourceVersion``.

        A replace drops fields the desired body leaves out, which a patch
        would keep. Annotations and finalizers written by others survive.
        """
        body = copy.deepcopy(desired)
        live_metadata = live.get("metadata") or {}
        metadata = body["metadata"]
        metadata["resourceVersion"] = live_metadata.get("resourceVersion")
        kept = live_metadata.get("annotations") or {}
        metadata["annotations"] = {**kept, **metadata["annotations"]}
        if live_metadata.get("finalizers"):
            metadata["finalizers"] = list(live_metadata["finalizers"])
        return body

    def delete(self, clients: KubeClients, namespace: str, name: str) -> None:
        try:
            self._call(
                clients,
                "delete",
                name=name,
                namespace=namespace,
                propagation_policy="Background",
            )
        except ApiException as exc:
            if not is_not_found(exc):
                raise

    def remove(self, clients: KubeClients, namespace: str, name: str) -> bool:
        """Delete the operator-managed object if present; returns whether a delete was issued."""
        live = self.read(clients, namespace, name)
        if live is None or not managed_by_operator(live):
            return False
        self.delete(clients, namespace, name)
        return True

    def present(self, clients: KubeClients, namespace: str, name: str) -> bool:
        live = self.read(clients, namespace, name)
        return live is not None and managed_by_operator(live)


class DeploymentKind(ApiKind):
    def __init__(self) -> None:
        super().__init__("Deployment", "apps", "deployment", self._build)

    @staticmethod
    def _build(ctx: ReconcileContext) -> dict[str, Any] | None:
        if ctx.lxd_runtime:
            return None
        return build_deployment(ctx.name, ctx.namespace, ctx.spec, ctx.options, ctx.owner)

    def observe(self, ctx: ReconcileContext, live: Any) -> None:
        if isinstance(live, dict):
            available = (live.get("status") or {}).get("availableReplicas")
        else:
            available = getattr(getattr(live, "status", None), "available_replicas", None)
        ctx.workload_available = (available or 0) >= 1


class ServiceKind(ApiKind):
    def __init__(self) -> None:
        super().__init__("Service", "core", "service", self._build)

    @staticmethod
    def _build(ctx: ReconcileContext) -> dict[str, Any]:
        return build_service(ctx.name, ctx.namespace, ctx.owner, with_selector=not ctx.lxd_runtime)

    def replace_body(self, desired: dict[str, Any], live: dict[str, Any]) -> dict[str, Any]:
        body = super().replace_body(desired, live)
        # The allocated cluster IP is immutable.
        live_spec = live.get("spec") or {}
        for key in ("clusterIP", "clusterIPs"):
            if live_spec.get(key):
                body["spec"][key] = live_spec[key]
        return body


class EndpointsKind(ApiKind):
    """Endpoints backing the selector-less Service of an LXD instance."""

    def __init__(self) -> None:
        super().__init__("Endpoints", "core", "endpoints", self._build, adopt_unmanaged=True)

    @staticmethod
    def _build(ctx: ReconcileContext) -> dict[str, Any] | None:
        if not ctx.lxd_runtime or ctx.instance_address is None:
            return None
        return build_endpoints(ctx.name, ctx.namespace, ctx.owner, ctx.instance_address)

    def ensure(self, ctx: ReconcileContext) -> str:
        # Selector Services get Endpoints from the endpoints controller, which
        # copies the Service labels onto them; leave those alone.
        if not ctx.lxd_runtime:
            return ABSENT
        if ctx.instance_address is None:
            return PENDING
        return super().ensure(ctx)


class IngressKind(ApiKind):
    def __init__(self) -> None:
        super().__init__("Ingress", "networking", "ingress", self._build)

    @staticmethod
    def _build(ctx: ReconcileContext) -> dict[str, Any] | None:
        if not (ctx.options.enable_user_ingress and ctx.spec.ingress):
            return None
        return build_ingress(ctx.name, ctx.namespace, ctx.spec, ctx.options, ctx.owner)


class TLSSecretKind:
    """Make the shared TLS secret available in the instance namespace.

    The secret is shared by every instance in a namespace, so it is copied
    from the operator namespace without an owner reference and never deleted
    by instance cleanup.
    """

    kind = "Secret"

    def ensure(self, ctx: ReconcileContext) -> str:
        secret_name = ctx.options.https_secret_name
        source = self._read(ctx.clients, ctx.options.operator_namespace, secret_name)
        if source is None:
            raise TransientError(
                f"TLS secret {ctx.options.operator_namespace}/{secret_name} not found"
            )
        if ctx.namespace == ctx.options.operator_namespace:
            return UNCHANGED

        data = dict(getattr(source, "data", None) or {})
        data_hash = hash_body(data)
        live = self._read(ctx.clients, ctx.namespace, secret_name)
        body = {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": getattr(source, "type", None) or "kubernetes.io/tls",
            "metadata": {
                "name": secret_name,
                "namespace": ctx.namespace,
                "labels": {"app.kubernetes.io/managed-by": MANAGED_BY},
                "annotations": {SPEC_HASH_ANNOTATION: data_hash},
            },
            "data": data,
        }
        if live is None:
            ctx.clients.core.create_namespaced_secret(namespace=ctx.namespace, body=body)
            ctx.logger.info("Copied TLS secret %s into namespace %s", secret_name, ctx.namespace)
            return CREATED
        if not managed_by_operator(live):
            # A user-provided secret of the same name takes precedence.
            return UNCHANGED
        live_data = dict(getattr(live, "data", None) or {})
        annotated_hash = live_annotations(live).get(SPEC_HASH_ANNOTATION)
        if annotated_hash == data_hash and hash_body(live_data) == data_hash:
            return UNCHANGED
        body["metadata"]["resourceVersion"] = getattr(live.metadata, "resource_version", None)
        ctx.clients.core.replace_namespaced_secret(
            name=secret_name, namespace=ctx.namespace, body=body
        )
        ctx.logger.info("Refreshed TLS secret %s in namespace %s", secret_name, ctx.namespace)
        return PATCHED

    @staticmethod
    def _read(clients: KubeClients, namespace: str, name: str) -> Any | None:
        try:
            return clients.core.read_namespaced_secret(name=name, namespace=namespace)
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise


class LXDInstanceKind:
    """Ensure the LXD instance of an ``lxd`` runtime CodeServer.

    For the Kubernetes runtime it only removes an instance left over from an
    earlier ``lxd`` spec, found through ``status.lxdInstance``.
    """

    kind = "LXDInstance"

    def ensure(self, ctx: ReconcileContext) -> str:
        leftover = ctx.status.get("lxdInstance")
        if not ctx.lxd_runtime:
            if not leftover:
                return ABSENT
            self._client(ctx).delete_instance(leftover)
            ctx.logger.info("Deleted leftover LXD instance %s", leftover)
            return DELETED

        lxd = self._client(ctx)
        name = lxd_instance_name(ctx.namespace, ctx.name)
        ctx.lxd_instance = name
        config = instance_config(ctx.spec, "")
        config.pop(LXD_SPEC_HASH_KEY)
        config[LXD_IMAGE_KEY] = ctx.spec.image
        spec_hash = hash_body(config)
        config[LXD_SPEC_HASH_KEY] = spec_hash

        outcome = UNCHANGED
        instance = lxd.get_instance(name)
        if instance is not None:
            live_config = instance.get("config") or {}
            live_hash = live_config.get(LXD_SPEC_HASH_KEY)
            if live_hash != spec_hash and live_config.get(LXD_IMAGE_KEY) != ctx.spec.image:
                # Image changes cannot be applied in place.
                lxd.delete_instance(name)
                instance = None
            elif live_hash != spec_hash:
                lxd.update_config(name, config)
                outcome = PATCHED
        if instance is None:
            lxd.create_instance(name, ctx.spec.image, config)
            outcome = CREATED
            instance = {"status": "Stopped"}
        if instance.get("status") != "Running":
            lxd.set_state(name, "start")

        ctx.instance_address = lxd.instance_address(name)
        ctx.workload_available = ctx.instance_address is not None
        return outcome

    @staticmethod
    def _client(ctx: ReconcileContext) -> LXDClient:
        if ctx.lxd is None:
            raise TransientError("LXD backend is not configured")
        return ctx.lxd()


TLS_SECRET = TLSSecretKind()
LXD_INSTANCE = LXDInstanceKind()
DEPLOYMENT = DeploymentKind()
SERVICE = ServiceKind()
ENDPOINTS = EndpointsKind()
INGRESS = IngressKind()

# Order matters: the TLS secret is mounted by the workload, and Endpoints need
# the LXD instance address.
ENSURE_ORDER = (TLS_SECRET, LXD_INSTANCE, DEPLOYMENT, SERVICE, ENDPOINTS, INGRESS)
CLEANUP_ORDER: tuple[ApiKind, ...] = (INGRESS, SERVICE, ENDPOINTS, DEPLOYMENT)


def ensure_all(ctx: ReconcileContext) -> dict[str, str]:
    """Run every kind's ensure in order and return the outcome per kind."""
    return {kind.kind: kind.ensure(ctx) for kind in ENSURE_ORDER}


def cleanup(
    clients: KubeClients,
    namespace: str,
    name: str,
    *,
    lxd_instances: Iterable[str] = (),
    lxd: Callable[[], LXDClient] | None = None,
    logger: logging.Logger = LOGGER,
) -> list[str]:
    """Delete every operator-managed sub-resource of ``namespace/name``.

    ``lxd_instances`` lists candidate instance names; each is deleted if it
    exists. Reads before deleting, so running it on an already clean
    resource issues no mutation and returns an empty list. Raises
    :class:`TransientError` while anything is still present after the
    deletes.
    """
    deleted: list[str] = []
    for kind in CLEANUP_ORDER:
        if kind.remove(clients, namespace, name):
            deleted.append(f"{kind.kind}/{name}")
            logger.info("Deleted %s %s/%s", kind.kind, namespace, name)

    for instance in dict.fromkeys(lxd_instances):
        if lxd is None:
            raise TransientError("LXD backend is not configured")
        if lxd().delete_instance(instance):
            deleted.append(f"{LXD_INSTANCE.kind}/{instance}")
            logger.info("Deleted LXD instance %s of %s/%s", instance, namespace, name)

    remaining = [kind.kind for kind in CLEANUP_ORDER if kind.present(clients, namespace, name)]
    if remaining:
        raise TransientError(
            f"cleanup of {namespace}/{name} still in progress: {', '.join(remaining)}"
        )
    return deleted
